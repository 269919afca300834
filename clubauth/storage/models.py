from __future__ import annotations

import uuid
from dataclasses import asdict, dataclass, field, fields
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, List, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Role(str, Enum):
    COACH = "coach"
    ADMIN = "admin"
    SUPER_ADMIN = "super_admin"

    @classmethod
    def parse(cls, value: str) -> "Role":
        """Read a stored role, folding the legacy ``sysadmin`` label into super_admin."""

        if value == "sysadmin":
            return cls.SUPER_ADMIN
        return cls(value)

    @property
    def uses_password(self) -> bool:
        return self in (Role.ADMIN, Role.SUPER_ADMIN)


# Roles matched by the email+password login flow, including the legacy label.
ADMIN_ROLE_LABELS = ("admin", "super_admin", "sysadmin")


def canonical_username(username: str) -> str:
    """Stored form of a coach username: trimmed, lowercase, first letter capitalised."""

    return username.strip().lower().capitalize()


@dataclass
class Principal:
    id: str
    tenant_id: str
    role: Role
    email: str
    username: Optional[str] = None
    password_hash: Optional[str] = None
    pin_hash: Optional[str] = None
    email_verified: bool = False
    email_verification_token: Optional[str] = None
    email_verification_expires: Optional[datetime] = None
    password_reset_token: Optional[str] = None
    password_reset_expires: Optional[datetime] = None
    pin_reset_token: Optional[str] = None
    pin_reset_expires: Optional[datetime] = None
    two_factor_enabled: bool = False
    two_factor_secret: Optional[str] = None
    two_factor_backup_codes: Optional[List[str]] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    last_login: Optional[datetime] = None

    @classmethod
    def new(
        cls,
        *,
        tenant_id: str,
        role: Role,
        email: str,
        username: Optional[str] = None,
        password_hash: Optional[str] = None,
        pin_hash: Optional[str] = None,
        email_verified: bool = False,
        email_verification_token: Optional[str] = None,
        email_verification_expires: Optional[datetime] = None,
    ) -> "Principal":
        return cls(
            id=str(uuid.uuid4()),
            tenant_id=tenant_id,
            role=role,
            email=email,
            username=canonical_username(username) if username else None,
            password_hash=password_hash,
            pin_hash=pin_hash,
            email_verified=email_verified,
            email_verification_token=email_verification_token,
            email_verification_expires=email_verification_expires,
        )

    def credentials_consistent(self) -> bool:
        """Exactly one secret hash is set, and it is the one the role logs in with."""

        if self.role.uses_password:
            return bool(self.password_hash) and self.pin_hash is None
        return bool(self.pin_hash) and self.password_hash is None

    def snapshot(self) -> Dict[str, Any]:
        """Non-secret view returned to clients."""

        return {
            "id": self.id,
            "email": self.email,
            "username": self.username,
            "tenantId": self.tenant_id,
            "role": self.role.value,
            "emailVerified": self.email_verified,
            "twoFactorEnabled": self.two_factor_enabled,
            "createdAt": self.created_at.isoformat() if self.created_at else None,
            "lastLogin": self.last_login.isoformat() if self.last_login else None,
        }


@dataclass
class Session:
    id: str
    principal_id: str
    token_hash: str
    expires_at: datetime
    created_at: datetime = field(default_factory=utcnow)

    @classmethod
    def new(cls, principal_id: str, token_hash: str, ttl_days: int = 7) -> "Session":
        now = utcnow()
        return cls(
            id=str(uuid.uuid4()),
            principal_id=principal_id,
            token_hash=token_hash,
            expires_at=now + timedelta(days=ttl_days),
            created_at=now,
        )

    def is_live(self, now: Optional[datetime] = None) -> bool:
        return self.expires_at > (now or utcnow())


@dataclass
class LoginAttempt:
    id: str
    identifier: str
    ip: str
    success: bool
    principal_id: Optional[str] = None
    occurred_at: datetime = field(default_factory=utcnow)


@dataclass
class CoachPatch:
    """Column assignments allowed when updating a coach.

    The field names are the column names; only fields that are not ``None``
    are written.
    """

    email: Optional[str] = None
    username: Optional[str] = None
    pin_hash: Optional[str] = None

    def assignments(self) -> Dict[str, str]:
        return {f.name: getattr(self, f.name) for f in fields(self) if getattr(self, f.name) is not None}

    def is_empty(self) -> bool:
        return not self.assignments()


DEFAULT_TENANT_LOGO = "fulllogo_transparent_nobuffer_horizontal.png"
DEFAULT_MAX_COURTS = 8


@dataclass
class TenantConfig:
    id: str
    name: str
    subdomain: str
    logo: str = DEFAULT_TENANT_LOGO
    max_courts: int = DEFAULT_MAX_COURTS
    features: Dict[str, Any] = field(default_factory=dict)
    plan_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "id": self.id,
            "name": self.name,
            "subdomain": self.subdomain,
            "logo": self.logo,
            "maxCourts": self.max_courts,
            "features": dict(self.features),
        }
        if self.plan_id:
            data["planId"] = self.plan_id
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TenantConfig":
        return cls(
            id=str(data["id"]),
            name=str(data.get("name") or data["id"]),
            subdomain=str(data.get("subdomain") or data["id"]),
            logo=data.get("logo") or DEFAULT_TENANT_LOGO,
            max_courts=int(data.get("maxCourts") or DEFAULT_MAX_COURTS),
            features=dict(data.get("features") or {}),
            plan_id=data.get("planId"),
        )


@dataclass
class ColdCallEmail:
    id: str
    email: str
    club_name: str
    president_name: str
    status: str
    sent_at: datetime = field(default_factory=utcnow)
    error: Optional[str] = None

    @classmethod
    def new(
        cls, email: str, club_name: str, president_name: str, status: str, error: Optional[str] = None
    ) -> "ColdCallEmail":
        return cls(
            id=str(uuid.uuid4()),
            email=email,
            club_name=club_name,
            president_name=president_name,
            status=status,
            error=error,
        )

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        return {
            "id": data["id"],
            "email": data["email"],
            "clubName": data["club_name"],
            "presidentName": data["president_name"],
            "status": data["status"],
            "sentAt": self.sent_at.isoformat(),
            "error": data["error"],
        }

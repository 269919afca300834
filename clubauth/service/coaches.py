from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from clubauth.logging import get_logger
from clubauth.service.auth import PIN_RESET_TTL, PrincipalStore, detail
from clubauth.service.email import EmailDeliveryError, EmailService
from clubauth.service.errors import (
    ConflictError,
    ForbiddenError,
    NotFoundError,
    ServerError,
    ValidationError,
)
from clubauth.service.pins import generate_random_pin, hash_pin, pin_format_errors
from clubauth.service.tenants import TenantRegistry
from clubauth.service.tokens import generate_opaque_token
from clubauth.storage.errors import ConstraintViolation
from clubauth.storage.models import CoachPatch, Principal, Role, canonical_username, utcnow

logger = get_logger(__name__)

# Coach seats per plan; plans not listed here are unlimited.
PLAN_COACH_LIMITS: Dict[str, int] = {"basic": 2}


def coach_view(coach: Principal) -> Dict[str, Any]:
    return {
        "id": coach.id,
        "email": coach.email,
        "username": coach.username,
        "role": coach.role.value,
        "emailVerified": coach.email_verified,
        "createdAt": coach.created_at.isoformat() if coach.created_at else None,
        "lastLogin": coach.last_login.isoformat() if coach.last_login else None,
    }


def _conflict_message(exc: ConstraintViolation) -> str:
    field = exc.detail.get("field")
    if field == "username":
        return "Username already exists for this tenant"
    if field == "email":
        return "Email already exists for this tenant"
    return exc.message


@dataclass
class CreatedCoach:
    coach: Principal
    pin: Optional[str]
    email_sent: bool


class CoachService:
    def __init__(self, store: PrincipalStore, *, tenants: TenantRegistry, email: EmailService) -> None:
        self.store = store
        self.tenants = tenants
        self.email = email

    def _require_coach(self, tenant_id: str, coach_id: str) -> Principal:
        coach = self.store.get_coach(tenant_id, coach_id)
        if coach is None:
            raise NotFoundError("Coach not found")
        return coach

    @staticmethod
    def _check_pin(pin: str) -> None:
        errors = pin_format_errors(pin)
        if errors:
            raise ValidationError("Invalid PIN format", details=[detail("pin", e) for e in errors])

    def list_coaches(self, tenant_id: str) -> List[Principal]:
        return self.store.list_coaches(tenant_id)

    def get_coach(self, tenant_id: str, coach_id: str) -> Principal:
        return self._require_coach(tenant_id, coach_id)

    def _enforce_plan_limit(self, tenant_id: str) -> None:
        plan = self.tenants.plan_for(tenant_id)
        limit = PLAN_COACH_LIMITS.get(plan or "")
        if limit is None:
            return
        current = self.store.count_coaches(tenant_id)
        if current >= limit:
            raise ForbiddenError(
                f"Coach limit reached for the {plan} plan",
                extra={"limit": limit, "current": current},
            )

    async def create_coach(
        self,
        tenant_id: str,
        *,
        email: str,
        username: str,
        pin: Optional[str] = None,
        send_email: bool = False,
    ) -> CreatedCoach:
        """Create a coach; the plaintext PIN is returned only when it was not mailed."""

        self._enforce_plan_limit(tenant_id)
        if self.store.username_taken(tenant_id, username):
            raise ConflictError("Username already exists for this tenant")
        if self.store.email_taken(tenant_id, email):
            raise ConflictError("Email already exists for this tenant")
        if pin:
            self._check_pin(pin)
        else:
            pin = generate_random_pin()

        pin_hash = await asyncio.to_thread(hash_pin, pin)
        coach = Principal.new(
            tenant_id=tenant_id,
            role=Role.COACH,
            email=email,
            username=username,
            pin_hash=pin_hash,
            email_verified=True,
        )
        try:
            coach = self.store.create_principal(coach)
        except ConstraintViolation as exc:
            raise ConflictError(_conflict_message(exc))
        logger.info("coach_created", coach_id=coach.id, tenant_id=tenant_id)

        sent = False
        if send_email:
            sent = await asyncio.to_thread(
                self.email.send_coach_welcome, email, pin, tenant_id, coach.username or username
            )
        return CreatedCoach(coach=coach, pin=None if sent else pin, email_sent=sent)

    async def update_coach(
        self,
        tenant_id: str,
        coach_id: str,
        *,
        email: Optional[str] = None,
        username: Optional[str] = None,
        pin: Optional[str] = None,
    ) -> Principal:
        self._require_coach(tenant_id, coach_id)
        patch = CoachPatch()
        if username is not None:
            if self.store.username_taken(tenant_id, username, exclude_id=coach_id):
                raise ConflictError("Username already exists for this tenant")
            patch.username = canonical_username(username)
        if email is not None:
            if self.store.email_taken(tenant_id, email, exclude_id=coach_id):
                raise ConflictError("Email already exists for this tenant")
            patch.email = email
        if pin is not None:
            self._check_pin(pin)
            patch.pin_hash = await asyncio.to_thread(hash_pin, pin)
        if patch.is_empty():
            raise ValidationError("No fields to update")

        try:
            updated = self.store.update_coach(tenant_id, coach_id, patch)
        except ConstraintViolation as exc:
            raise ConflictError(_conflict_message(exc))
        if updated is None:
            raise NotFoundError("Coach not found")
        if patch.pin_hash is not None:
            self.store.delete_principal_sessions(coach_id)
        logger.info("coach_updated", coach_id=coach_id, fields=sorted(patch.assignments()))
        return updated

    def delete_coach(self, tenant_id: str, coach_id: str) -> None:
        if not self.store.delete_coach(tenant_id, coach_id):
            raise NotFoundError("Coach not found")
        logger.info("coach_deleted", coach_id=coach_id, tenant_id=tenant_id)

    async def send_pin_reset(self, tenant_id: str, coach_id: str) -> Principal:
        coach = self._require_coach(tenant_id, coach_id)
        token = generate_opaque_token()
        self.store.set_pin_reset_token(coach.id, token, utcnow() + PIN_RESET_TTL)
        try:
            await asyncio.to_thread(
                self.email.send_pin_reset, coach.email, token, tenant_id, coach.username or ""
            )
        except EmailDeliveryError as exc:
            logger.error("pin_reset_email_failed", coach_id=coach.id, error=str(exc))
            raise ServerError("Failed to send PIN reset email", extra={"message": str(exc)})
        logger.info("coach_pin_reset_sent", coach_id=coach.id)
        return coach

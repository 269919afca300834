from __future__ import annotations

import re
import unicodedata
from typing import Any, Dict, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9!#$%&'*+/=?^_`{|}~.-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")

_ZERO_WIDTH = "\u200b\u200c\u200d\ufeff"


def _normalize_unicode(value: str) -> str:
    """Drop zero-width characters and apply NFKC."""
    cleaned = "".join(c for c in value if c not in _ZERO_WIDTH)
    return unicodedata.normalize("NFKC", cleaned)


def _validate_email(value: str) -> str:
    normalized = _normalize_unicode(value.strip().lower())
    if len(normalized) > 254:
        raise ValueError("Email address too long")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain or len(local) > 64:
        raise ValueError("Invalid email address")
    if not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("Invalid email address")
    labels = domain.split(".")
    if len(labels) < 2:
        raise ValueError("Invalid email address")
    for label in labels:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("Invalid email address")
    return normalized


def _validate_optional_email(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    return _validate_email(value)


def _validate_pin_shape(value: Optional[str]) -> Optional[str]:
    if value is not None and len(value) != 6:
        raise ValueError("PIN must be 6 digits")
    return value


class RequestModel(BaseModel):
    """Base for request bodies: camelCase on the wire, unknown keys ignored."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class SignupRequest(RequestModel):
    email: str
    password: str = Field(min_length=8)
    club_name: str = Field(alias="clubName", min_length=2, max_length=100)
    plan_id: Optional[Literal["basic", "professional"]] = Field(default=None, alias="planId")

    @field_validator("email")
    @classmethod
    def _email(cls, value: str) -> str:
        return _validate_email(value)


class RegisterRequest(RequestModel):
    email: str
    password: str = Field(min_length=8)
    tenant_id: str = Field(alias="tenantId", min_length=1)

    @field_validator("email")
    @classmethod
    def _email(cls, value: str) -> str:
        return _validate_email(value)


class LoginRequest(RequestModel):
    tenant_id: str = Field(alias="tenantId", min_length=1)
    email: Optional[str] = None
    password: Optional[str] = Field(default=None, min_length=1)
    username: Optional[str] = Field(default=None, min_length=1)
    pin: Optional[str] = None
    totp_code: Optional[str] = Field(default=None, alias="totpCode")

    @field_validator("email")
    @classmethod
    def _email(cls, value: Optional[str]) -> Optional[str]:
        return _validate_optional_email(value)

    @field_validator("pin")
    @classmethod
    def _pin(cls, value: Optional[str]) -> Optional[str]:
        return _validate_pin_shape(value)

    @model_validator(mode="after")
    def _require_credential_pair(self) -> "LoginRequest":
        if not (self.email and self.password) and not (self.username and self.pin):
            raise ValueError("Either email/password or username/PIN must be provided")
        return self


class RefreshRequest(RequestModel):
    refresh_token: Optional[str] = Field(default=None, alias="refreshToken")


class LogoutRequest(RequestModel):
    refresh_token: Optional[str] = Field(default=None, alias="refreshToken")


class VerifyEmailRequest(RequestModel):
    token: str = Field(min_length=1)


class ForgotPasswordRequest(RequestModel):
    email: str
    tenant_id: str = Field(alias="tenantId", min_length=1)

    @field_validator("email")
    @classmethod
    def _email(cls, value: str) -> str:
        return _validate_email(value)


class ResetPasswordRequest(RequestModel):
    token: str = Field(min_length=1)
    password: str = Field(min_length=8)


class ChangePasswordRequest(RequestModel):
    current_password: str = Field(alias="currentPassword", min_length=1)
    new_password: str = Field(alias="newPassword", min_length=8)


class ChangePinRequest(RequestModel):
    current_pin: str = Field(alias="currentPIN", min_length=6, max_length=6)
    new_pin: str = Field(alias="newPIN", min_length=6, max_length=6)


class PinResetRequest(RequestModel):
    email: str
    username: str = Field(min_length=1)
    tenant_id: str = Field(alias="tenantId", min_length=1)

    @field_validator("email")
    @classmethod
    def _email(cls, value: str) -> str:
        return _validate_email(value)


class PinResetValidateRequest(RequestModel):
    token: str = Field(min_length=1)
    tenant_id: str = Field(alias="tenantId", min_length=1)


class PinResetConfirmRequest(RequestModel):
    token: str = Field(min_length=1)
    pin: str = Field(min_length=6, max_length=6)
    tenant_id: str = Field(alias="tenantId", min_length=1)


class TwoFactorVerifyRequest(RequestModel):
    code: str = Field(min_length=6, max_length=8)


class TwoFactorDisableRequest(RequestModel):
    password: str = Field(min_length=1)


class UpdateProfileRequest(RequestModel):
    email: Optional[str] = None

    @field_validator("email")
    @classmethod
    def _email(cls, value: Optional[str]) -> Optional[str]:
        return _validate_optional_email(value)


class CoachCreateRequest(RequestModel):
    email: str
    username: str = Field(min_length=3, max_length=50)
    pin: Optional[str] = None
    send_email: bool = Field(default=False, alias="sendEmail")

    @field_validator("email")
    @classmethod
    def _email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("pin")
    @classmethod
    def _pin(cls, value: Optional[str]) -> Optional[str]:
        return _validate_pin_shape(value)


class CoachUpdateRequest(RequestModel):
    email: Optional[str] = None
    username: Optional[str] = Field(default=None, min_length=3, max_length=50)
    pin: Optional[str] = None

    @field_validator("email")
    @classmethod
    def _email(cls, value: Optional[str]) -> Optional[str]:
        return _validate_optional_email(value)

    @field_validator("pin")
    @classmethod
    def _pin(cls, value: Optional[str]) -> Optional[str]:
        return _validate_pin_shape(value)


class CoachActionRequest(RequestModel):
    action: str


class TenantCreateRequest(RequestModel):
    name: str = Field(min_length=1)
    subdomain: Optional[str] = None
    logo: Optional[str] = None
    max_courts: Optional[int] = Field(default=None, alias="maxCourts", ge=1, le=20)
    admin_email: str = Field(alias="adminEmail")
    admin_password: str = Field(alias="adminPassword", min_length=8)
    plan_id: Optional[Literal["basic", "professional", "enterprise"]] = Field(
        default=None, alias="planId"
    )

    @field_validator("admin_email")
    @classmethod
    def _email(cls, value: str) -> str:
        return _validate_email(value)


class TenantUpdateRequest(RequestModel):
    name: Optional[str] = Field(default=None, min_length=1)
    logo: Optional[str] = None
    max_courts: Optional[int] = Field(default=None, alias="maxCourts", ge=1, le=20)
    features: Optional[Dict[str, Any]] = None
    plan_id: Optional[Literal["basic", "professional", "enterprise"]] = Field(
        default=None, alias="planId"
    )

    def changes(self) -> Dict[str, Any]:
        """Fields the caller actually sent, keyed by ``TenantConfig`` attribute."""
        return self.model_dump(exclude_unset=True)


class ColdCallRequest(RequestModel):
    email: str
    club_name: str = Field(alias="clubName", min_length=1)
    president_name: str = Field(alias="presidentName", min_length=1)

    @field_validator("email")
    @classmethod
    def _email(cls, value: str) -> str:
        return _validate_email(value)

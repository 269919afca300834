"""Helpers shared between the memory and postgres store implementations.

Both stores keep TOTP secrets encrypted at rest and map the same row shape
onto :class:`Principal`, so the cipher and the row mapping live here.
"""

from __future__ import annotations

import base64
import hashlib
import os
from datetime import datetime, timezone
from typing import Any, Dict, Mapping, Optional

from cryptography.fernet import Fernet, InvalidToken

from clubauth.logging import get_logger
from clubauth.storage.models import Principal, Role

logger = get_logger(__name__)


class SecretCipher:
    """Fernet wrapper for two-factor secrets stored in principal rows."""

    def __init__(self, key_material: str | None = None) -> None:
        material = key_material or os.getenv("MFA_SECRET_KEY") or os.getenv("JWT_SECRET")
        if not material:
            raise RuntimeError("MFA_SECRET_KEY or JWT_SECRET is required to store TOTP secrets")
        try:
            self._fernet = Fernet(self.derive_key(material))
        except Exception as exc:
            raise RuntimeError("Unable to initialize MFA cipher") from exc

    @staticmethod
    def derive_key(key_material: str) -> bytes:
        return base64.urlsafe_b64encode(hashlib.sha256(key_material.encode()).digest())

    def encrypt(self, secret: Optional[str]) -> Optional[str]:
        if not secret:
            return secret
        return self._fernet.encrypt(secret.encode()).decode()

    def decrypt(self, secret: Optional[str]) -> Optional[str]:
        if not secret:
            return secret
        try:
            return self._fernet.decrypt(secret.encode()).decode()
        except InvalidToken:
            # Rows written before encryption was enabled hold the plain base32 value.
            logger.warning("mfa_secret_decrypt_failed")
            return secret


def ensure_aware(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def serialize_datetime(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def deserialize_datetime(raw: Optional[str]) -> Optional[datetime]:
    if not raw:
        return None
    return ensure_aware(datetime.fromisoformat(raw))


PRINCIPAL_COLUMNS = (
    "id",
    "tenant_id",
    "role",
    "email",
    "username",
    "password_hash",
    "pin_hash",
    "email_verified",
    "email_verification_token",
    "email_verification_expires",
    "password_reset_token",
    "password_reset_expires",
    "pin_reset_token",
    "pin_reset_expires",
    "two_factor_enabled",
    "two_factor_secret",
    "two_factor_backup_codes",
    "created_at",
    "updated_at",
    "last_login",
)

_TIMESTAMP_COLUMNS = {
    "email_verification_expires",
    "password_reset_expires",
    "pin_reset_expires",
    "created_at",
    "updated_at",
    "last_login",
}


def principal_from_row(row: Mapping[str, Any], cipher: SecretCipher) -> Principal:
    """Build a principal from a database row or JSON document."""

    values: Dict[str, Any] = {}
    for column in PRINCIPAL_COLUMNS:
        value = row.get(column)
        if column in _TIMESTAMP_COLUMNS:
            value = deserialize_datetime(value) if isinstance(value, str) else ensure_aware(value)
        values[column] = value
    values["id"] = str(values["id"])
    values["role"] = Role.parse(values["role"])
    values["email_verified"] = bool(values["email_verified"])
    values["two_factor_enabled"] = bool(values["two_factor_enabled"])
    values["two_factor_secret"] = cipher.decrypt(values["two_factor_secret"])
    codes = values["two_factor_backup_codes"]
    values["two_factor_backup_codes"] = list(codes) if codes is not None else None
    return Principal(**values)


def principal_to_document(principal: Principal, cipher: SecretCipher) -> Dict[str, Any]:
    """JSON-safe row for a principal, with the TOTP secret encrypted."""

    doc: Dict[str, Any] = {}
    for column in PRINCIPAL_COLUMNS:
        value = getattr(principal, column)
        if column in _TIMESTAMP_COLUMNS:
            value = serialize_datetime(value)
        doc[column] = value
    doc["role"] = principal.role.value
    doc["two_factor_secret"] = cipher.encrypt(principal.two_factor_secret)
    return doc

from __future__ import annotations

import hashlib
import re
from dataclasses import dataclass, field
from typing import List, Optional

import httpx
from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from clubauth.logging import get_logger

logger = get_logger(__name__)

MIN_PASSWORD_LENGTH = 8
MAX_PASSWORD_LENGTH = 128

# 64 MiB, 32-byte output, 4 lanes.
_MEMORY_COST_KIB = 65536
_HASH_LEN = 32
_PARALLELISM = 4


def build_hasher(time_cost: int) -> PasswordHasher:
    return PasswordHasher(
        time_cost=time_cost,
        memory_cost=_MEMORY_COST_KIB,
        parallelism=_PARALLELISM,
        hash_len=_HASH_LEN,
        type=Type.ID,
    )


_password_hasher = build_hasher(time_cost=3)


def hash_password(password: str) -> str:
    return _password_hasher.hash(password)


def verify_secret(hasher: PasswordHasher, stored_hash: Optional[str], secret: str) -> bool:
    """Check ``secret`` against an argon2 hash; every failure mode reads as a mismatch."""

    if not stored_hash:
        return False
    try:
        return hasher.verify(stored_hash, secret)
    except VerifyMismatchError:
        return False
    except (InvalidHash, VerificationError) as exc:
        logger.warning("secret_verification_error", error=type(exc).__name__)
        return False


def verify_password(stored_hash: Optional[str], password: str) -> bool:
    return verify_secret(_password_hasher, stored_hash, password)


@dataclass
class StrengthResult:
    errors: List[str] = field(default_factory=list)
    breach_count: Optional[int] = None

    @property
    def is_valid(self) -> bool:
        return not self.errors


def password_rule_errors(password: str) -> List[str]:
    errors: List[str] = []
    if len(password) < MIN_PASSWORD_LENGTH:
        errors.append("Password must be at least 8 characters long")
    if len(password) > MAX_PASSWORD_LENGTH:
        errors.append("Password must be less than 128 characters")
    if not re.search(r"[a-z]", password):
        errors.append("Password must contain at least one lowercase letter")
    if not re.search(r"[A-Z]", password):
        errors.append("Password must contain at least one uppercase letter")
    if not re.search(r"[0-9]", password):
        errors.append("Password must contain at least one number")
    if not re.search(r"[^a-zA-Z0-9]", password):
        errors.append("Password must contain at least one special character")
    return errors


class BreachChecker:
    """k-anonymity lookup against a Pwned Passwords style range API.

    Only the first five hex characters of the SHA-1 digest leave the process.
    Network or protocol failures count as "not breached".
    """

    def __init__(self, base_url: str, *, timeout: float = 5.0, enabled: bool = True) -> None:
        self.base_url = base_url if base_url.endswith("/") else base_url + "/"
        self.timeout = timeout
        self.enabled = enabled

    async def breach_count(self, password: str) -> int:
        digest = hashlib.sha1(password.encode("utf-8")).hexdigest().upper()
        prefix, suffix = digest[:5], digest[5:]
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.get(
                    f"{self.base_url}{prefix}", headers={"Add-Padding": "true"}
                )
                response.raise_for_status()
        except httpx.HTTPError as exc:
            logger.warning("password_breach_check_failed", error=str(exc))
            return 0
        for line in response.text.splitlines():
            candidate, _, count = line.strip().partition(":")
            if candidate.upper() == suffix:
                try:
                    return int(count)
                except ValueError:
                    return 1
        return 0

    async def check_strength(self, password: str, *, check_breach: bool = True) -> StrengthResult:
        result = StrengthResult(errors=password_rule_errors(password))
        if result.errors or not (check_breach and self.enabled):
            return result
        count = await self.breach_count(password)
        if count > 0:
            plural = "es" if count > 1 else ""
            result.errors.append(
                f"This password has been found in {count} data breach{plural}. "
                "Please choose a different password."
            )
            result.breach_count = count
        return result

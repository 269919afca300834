from __future__ import annotations

import re
import secrets
from typing import List, Optional

from clubauth.service.passwords import build_hasher, verify_secret

PIN_LENGTH = 6

# Higher time cost than passwords: the PIN space is only 10**6.
_pin_hasher = build_hasher(time_cost=5)


def pin_format_errors(pin: str) -> List[str]:
    errors: List[str] = []
    if not re.fullmatch(r"\d+", pin or ""):
        errors.append("PIN skal kun indeholde tal")
    if len(pin or "") != PIN_LENGTH:
        errors.append(f"PIN skal være præcis {PIN_LENGTH} cifre")
    return errors


def is_valid_pin(pin: str) -> bool:
    return not pin_format_errors(pin)


def generate_random_pin() -> str:
    """Uniform sample from 100000..999999."""

    return str(100000 + secrets.randbelow(900000))


def hash_pin(pin: str) -> str:
    errors = pin_format_errors(pin)
    if errors:
        raise ValueError("Invalid PIN format: " + ", ".join(errors))
    return _pin_hasher.hash(pin)


def verify_pin(stored_hash: Optional[str], pin: str) -> bool:
    return verify_secret(_pin_hasher, stored_hash, pin)

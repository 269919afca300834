from __future__ import annotations

import base64
import hashlib
import hmac
import io
import secrets
import time
from typing import List, Optional
from urllib.parse import quote, urlencode

import qrcode

from clubauth.logging import get_logger

logger = get_logger(__name__)

TOTP_INTERVAL = 30
TOTP_DIGITS = 6
BACKUP_CODE_COUNT = 10


def generate_secret() -> str:
    """Random 160-bit base32 secret without padding."""

    return base64.b32encode(secrets.token_bytes(20)).decode("ascii").rstrip("=")


def generate_code(secret: str, timestamp: float, *, interval: int = TOTP_INTERVAL) -> str:
    padded = secret.upper() + "=" * ((8 - len(secret) % 8) % 8)
    try:
        key = base64.b32decode(padded, True)
    except ValueError:
        logger.warning("totp_secret_invalid")
        return ""
    counter = int(timestamp // interval).to_bytes(8, "big")
    # SHA-1 is what authenticator apps assume when the URI names no algorithm.
    digest = hmac.new(key, counter, hashlib.sha1).digest()
    offset = digest[-1] & 0x0F
    code_int = (int.from_bytes(digest[offset : offset + 4], "big") & 0x7FFFFFFF) % (
        10**TOTP_DIGITS
    )
    return str(code_int).zfill(TOTP_DIGITS)


def verify_code(
    secret: Optional[str], code: str, *, window: int = 1, now: Optional[float] = None
) -> bool:
    """Accept ``code`` for the current step or up to ``window`` steps either side."""

    if not secret or not code or not code.isdigit() or len(code) != TOTP_DIGITS:
        return False
    current = time.time() if now is None else now
    for offset in range(-window, window + 1):
        generated = generate_code(secret, current + offset * TOTP_INTERVAL)
        if generated and hmac.compare_digest(generated, code):
            return True
    return False


def otpauth_uri(secret: str, account: str, issuer: str) -> str:
    label = quote(f"{issuer}:{account}")
    query = urlencode({"secret": secret, "issuer": issuer})
    return f"otpauth://totp/{label}?{query}"


def qr_data_uri(uri: str) -> str:
    """Render ``uri`` as a PNG QR code and return it as a data URI."""

    qr = qrcode.QRCode(
        version=1,
        error_correction=qrcode.constants.ERROR_CORRECT_M,
        box_size=10,
        border=4,
    )
    qr.add_data(uri)
    qr.make(fit=True)
    img = qr.make_image(fill_color="black", back_color="white")
    buffer = io.BytesIO()
    img.save(buffer, format="PNG")
    return "data:image/png;base64," + base64.b64encode(buffer.getvalue()).decode("ascii")


def generate_backup_codes(count: int = BACKUP_CODE_COUNT) -> List[str]:
    return [secrets.token_hex(4).upper() for _ in range(count)]


def hash_backup_code(code: str) -> str:
    return hashlib.sha256(code.strip().upper().encode()).hexdigest()

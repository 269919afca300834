from __future__ import annotations

import base64
import hashlib
import hmac
import json
import secrets
import time
from dataclasses import dataclass
from typing import Any, Optional

from clubauth.config import Settings
from clubauth.logging import get_logger

logger = get_logger(__name__)


def generate_opaque_token() -> str:
    """32 random bytes, hex encoded. Used for refresh, verify and reset tokens."""

    return secrets.token_hex(32)


def hash_refresh_token(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


@dataclass
class AccessClaims:
    club_id: str
    tenant_id: str
    role: str
    email: str

    def to_payload(self) -> dict[str, Any]:
        return {
            "clubId": self.club_id,
            "tenantId": self.tenant_id,
            "role": self.role,
            "email": self.email,
            "type": "access",
        }


class TokenService:
    """HS256 access tokens with a fixed issuer and a short TTL."""

    def __init__(self, settings: Settings) -> None:
        if not settings.jwt_secret:
            raise RuntimeError("JWT_SECRET must be set")
        self._secret = settings.jwt_secret.encode()
        self.issuer = settings.jwt_issuer
        self.ttl_seconds = settings.access_token_ttl_minutes * 60

    @staticmethod
    def _encode_segment(data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    @staticmethod
    def _decode_segment(segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(self._secret, signing_input.encode(), hashlib.sha256).digest()
        )

    def mint_access_token(self, claims: AccessClaims, *, now: Optional[float] = None) -> str:
        issued_at = int(time.time() if now is None else now)
        payload = claims.to_payload()
        payload.update({"iss": self.issuer, "iat": issued_at, "exp": issued_at + self.ttl_seconds})
        header_enc = self._encode_segment(
            json.dumps({"alg": "HS256", "typ": "JWT"}, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def verify_access_token(self, token: str, *, now: Optional[float] = None) -> Optional[AccessClaims]:
        """Claims when signature, issuer, expiry and type all hold; otherwise ``None``."""

        if not token or not isinstance(token, str):
            return None
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            return None
        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, TypeError):
            logger.warning("jwt_header_decode_failed")
            return None
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning("jwt_invalid_algorithm")
            return None
        expected = self._sign(f"{header_b64}.{payload_b64}").encode()
        if not hmac.compare_digest(expected, sig_b64.encode("utf-8", "surrogatepass")):
            return None
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            return None
        if not isinstance(payload, dict):
            return None
        if payload.get("iss") != self.issuer or payload.get("type") != "access":
            return None
        exp = payload.get("exp")
        current = time.time() if now is None else now
        if not isinstance(exp, (int, float)) or exp <= current:
            return None
        try:
            return AccessClaims(
                club_id=str(payload["clubId"]),
                tenant_id=str(payload["tenantId"]),
                role=str(payload["role"]),
                email=str(payload["email"]),
            )
        except KeyError:
            return None

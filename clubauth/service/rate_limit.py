from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import List, Optional, Protocol

from clubauth.logging import get_logger
from clubauth.storage.models import LoginAttempt, utcnow

logger = get_logger(__name__)


class AttemptStore(Protocol):
    def record_login_attempt(self, attempt: LoginAttempt) -> None: ...

    def recent_failed_attempts(self, identifier: str, ip: str, since: datetime) -> List[datetime]: ...


@dataclass
class RateLimitDecision:
    allowed: bool
    lockout_until: Optional[datetime] = None
    failures: int = 0


def client_ip(forwarded_for: Optional[str]) -> str:
    """First hop of ``X-Forwarded-For``, or ``"unknown"``."""

    if not forwarded_for:
        return "unknown"
    first = forwarded_for.split(",")[0].strip()
    return first or "unknown"


class LoginRateLimiter:
    """Sliding-window failure counter keyed by (identifier, ip)."""

    def __init__(self, store: AttemptStore, *, max_failures: int = 5, window_minutes: int = 15) -> None:
        self.store = store
        self.max_failures = max_failures
        self.window = timedelta(minutes=window_minutes)

    @staticmethod
    def _key(identifier: str) -> str:
        return identifier.strip().lower()

    def check(self, identifier: str, ip: str, *, now: Optional[datetime] = None) -> RateLimitDecision:
        current = now or utcnow()
        failures = self.store.recent_failed_attempts(self._key(identifier), ip, current - self.window)
        if len(failures) >= self.max_failures:
            # Newest first, so this is the failure that tripped the limit.
            tripping = failures[self.max_failures - 1]
            lockout_until = tripping + self.window
            logger.warning("login_rate_limited", ip=ip, failures=len(failures))
            return RateLimitDecision(allowed=False, lockout_until=lockout_until, failures=len(failures))
        return RateLimitDecision(allowed=True, failures=len(failures))

    def record(
        self,
        identifier: str,
        ip: str,
        *,
        success: bool,
        principal_id: Optional[str] = None,
    ) -> None:
        self.store.record_login_attempt(
            LoginAttempt(
                id=str(uuid.uuid4()),
                identifier=self._key(identifier),
                ip=ip,
                success=success,
                principal_id=principal_id,
            )
        )

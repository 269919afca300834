from __future__ import annotations

import copy
import json
import threading
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional

from clubauth.logging import get_logger
from clubauth.storage.common import (
    SecretCipher,
    deserialize_datetime,
    principal_from_row,
    principal_to_document,
    serialize_datetime,
)
from clubauth.storage.errors import ConstraintViolation
from clubauth.storage.models import (
    ADMIN_ROLE_LABELS,
    CoachPatch,
    ColdCallEmail,
    LoginAttempt,
    Principal,
    Role,
    Session,
    canonical_username,
    utcnow,
)


class MemoryStore:
    """In-process backing store used for tests and local development.

    Mirrors the postgres store's contract. State is snapshotted to
    ``<fs_root>/state/memory_store.json`` after every write so a dev server
    keeps its accounts across restarts.
    """

    def __init__(
        self, fs_root: str = "/tmp/clubauth", *, mfa_encryption_key: str | None = None
    ) -> None:
        self.logger = get_logger(__name__)
        self.principals: Dict[str, Principal] = {}
        self.sessions: Dict[str, Session] = {}
        self.login_attempts: List[LoginAttempt] = []
        self.cold_call_emails: List[ColdCallEmail] = []
        # RLock so helpers may re-enter while a write holds the lock
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)
        self._cipher = SecretCipher(mfa_encryption_key)
        self._load_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "memory_store.json"

    def ping(self) -> bool:
        return True

    # -- principals -----------------------------------------------------

    def _check_unique(
        self, tenant_id: str, email: str, username: Optional[str], exclude_id: Optional[str] = None
    ) -> None:
        for other in self.principals.values():
            if other.id == exclude_id or other.tenant_id != tenant_id:
                continue
            if other.email.lower() == email.lower():
                raise ConstraintViolation("email exists", {"field": "email"})
            if username and other.username and other.username.lower() == username.lower():
                raise ConstraintViolation("username exists", {"field": "username"})

    def create_principal(self, principal: Principal) -> Principal:
        if not principal.credentials_consistent():
            raise ConstraintViolation(
                "credential hash does not match role", {"role": principal.role.value}
            )
        with self._data_lock:
            self._check_unique(principal.tenant_id, principal.email, principal.username)
            self.principals[principal.id] = copy.deepcopy(principal)
            self._persist_state()
        return copy.deepcopy(principal)

    def get_principal(self, principal_id: str, tenant_id: Optional[str] = None) -> Optional[Principal]:
        with self._data_lock:
            principal = self.principals.get(principal_id)
            if not principal or (tenant_id is not None and principal.tenant_id != tenant_id):
                return None
            return copy.deepcopy(principal)

    def _find(self, predicate) -> Optional[Principal]:
        with self._data_lock:
            for principal in self.principals.values():
                if predicate(principal):
                    return copy.deepcopy(principal)
        return None

    def find_admin_by_email(self, tenant_id: str, email: str) -> Optional[Principal]:
        return self._find(
            lambda p: p.tenant_id == tenant_id
            and p.email.lower() == email.lower()
            and p.role.value in ADMIN_ROLE_LABELS
        )

    def find_coach_by_username(self, tenant_id: str, username: str) -> Optional[Principal]:
        needle = username.strip().lower()
        return self._find(
            lambda p: p.tenant_id == tenant_id
            and p.role == Role.COACH
            and (p.username or "").lower() == needle
        )

    def find_coach_for_pin_reset(
        self, tenant_id: str, email: str, username: str
    ) -> Optional[Principal]:
        needle = username.strip().lower()
        return self._find(
            lambda p: p.tenant_id == tenant_id
            and p.role == Role.COACH
            and p.email.lower() == email.lower()
            and (p.username or "").lower() == needle
        )

    def email_exists(self, email: str, tenant_id: Optional[str] = None) -> bool:
        return (
            self._find(
                lambda p: p.email.lower() == email.lower()
                and (tenant_id is None or p.tenant_id == tenant_id)
            )
            is not None
        )

    def find_by_verification_token(self, token: str) -> Optional[Principal]:
        return self._find(
            lambda p: p.email_verification_token == token and not p.email_verified
        )

    def find_by_password_reset_token(self, token: str) -> Optional[Principal]:
        return self._find(lambda p: p.password_reset_token == token)

    def find_by_pin_reset_token(self, tenant_id: str, token: str) -> Optional[Principal]:
        return self._find(
            lambda p: p.tenant_id == tenant_id
            and p.role == Role.COACH
            and p.pin_reset_token == token
        )

    def _update(self, principal_id: str, **changes) -> Optional[Principal]:
        with self._data_lock:
            principal = self.principals.get(principal_id)
            if not principal:
                return None
            for key, value in changes.items():
                setattr(principal, key, value)
            principal.updated_at = utcnow()
            self._persist_state()
            return copy.deepcopy(principal)

    def set_email_verification(self, principal_id: str, token: str, expires: datetime) -> None:
        self._update(
            principal_id, email_verification_token=token, email_verification_expires=expires
        )

    def mark_email_verified(self, principal_id: str) -> None:
        self._update(
            principal_id,
            email_verified=True,
            email_verification_token=None,
            email_verification_expires=None,
        )

    def set_password_reset_token(self, principal_id: str, token: str, expires: datetime) -> None:
        self._update(principal_id, password_reset_token=token, password_reset_expires=expires)

    def set_pin_reset_token(self, principal_id: str, token: str, expires: datetime) -> None:
        self._update(principal_id, pin_reset_token=token, pin_reset_expires=expires)

    def update_password(self, principal_id: str, password_hash: str) -> None:
        self._update(
            principal_id,
            password_hash=password_hash,
            password_reset_token=None,
            password_reset_expires=None,
        )

    def update_pin(self, principal_id: str, pin_hash: str) -> None:
        self._update(
            principal_id, pin_hash=pin_hash, pin_reset_token=None, pin_reset_expires=None
        )

    def update_email(
        self, principal_id: str, email: str, token: str, expires: datetime
    ) -> Optional[Principal]:
        with self._data_lock:
            principal = self.principals.get(principal_id)
            if not principal:
                return None
            self._check_unique(principal.tenant_id, email, None, exclude_id=principal_id)
            return self._update(
                principal_id,
                email=email,
                email_verified=False,
                email_verification_token=token,
                email_verification_expires=expires,
            )

    def set_two_factor_secret(self, principal_id: str, secret: str) -> None:
        self._update(principal_id, two_factor_secret=secret, two_factor_enabled=False)

    def enable_two_factor(self, principal_id: str, backup_code_hashes: List[str]) -> None:
        self._update(
            principal_id,
            two_factor_enabled=True,
            two_factor_backup_codes=list(backup_code_hashes),
        )

    def disable_two_factor(self, principal_id: str) -> None:
        self._update(
            principal_id,
            two_factor_enabled=False,
            two_factor_secret=None,
            two_factor_backup_codes=None,
        )

    def consume_backup_code(self, principal_id: str, code_hash: str) -> bool:
        with self._data_lock:
            principal = self.principals.get(principal_id)
            codes = principal.two_factor_backup_codes if principal else None
            if not codes or code_hash not in codes:
                return False
            principal.two_factor_backup_codes = [c for c in codes if c != code_hash]
            principal.updated_at = utcnow()
            self._persist_state()
            return True

    def set_role(self, principal_id: str, role: Role) -> None:
        with self._data_lock:
            principal = self.principals.get(principal_id)
            if principal is None:
                return
            if role.uses_password != principal.role.uses_password:
                raise ConstraintViolation(
                    "credential hash does not match role", {"role": role.value}
                )
            self._update(principal_id, role=role)

    def touch_last_login(self, principal_id: str) -> None:
        self._update(principal_id, last_login=utcnow())

    def count_principals_by_tenant(self) -> Dict[str, int]:
        counts: Dict[str, int] = {}
        with self._data_lock:
            for principal in self.principals.values():
                counts[principal.tenant_id] = counts.get(principal.tenant_id, 0) + 1
        return counts

    # -- coaches --------------------------------------------------------

    def list_coaches(self, tenant_id: str) -> List[Principal]:
        with self._data_lock:
            coaches = [
                copy.deepcopy(p)
                for p in self.principals.values()
                if p.tenant_id == tenant_id and p.role == Role.COACH
            ]
        coaches.sort(key=lambda p: p.created_at, reverse=True)
        return coaches

    def get_coach(self, tenant_id: str, coach_id: str) -> Optional[Principal]:
        principal = self.get_principal(coach_id, tenant_id)
        if principal and principal.role == Role.COACH:
            return principal
        return None

    def count_coaches(self, tenant_id: str) -> int:
        return len(self.list_coaches(tenant_id))

    def username_taken(
        self, tenant_id: str, username: str, exclude_id: Optional[str] = None
    ) -> bool:
        needle = username.strip().lower()
        return (
            self._find(
                lambda p: p.tenant_id == tenant_id
                and p.id != exclude_id
                and (p.username or "").lower() == needle
            )
            is not None
        )

    def email_taken(self, tenant_id: str, email: str, exclude_id: Optional[str] = None) -> bool:
        return (
            self._find(
                lambda p: p.tenant_id == tenant_id
                and p.id != exclude_id
                and p.email.lower() == email.lower()
            )
            is not None
        )

    def update_coach(self, tenant_id: str, coach_id: str, patch: CoachPatch) -> Optional[Principal]:
        changes = patch.assignments()
        if "username" in changes:
            changes["username"] = canonical_username(changes["username"])
        with self._data_lock:
            if not self.get_coach(tenant_id, coach_id):
                return None
            self._check_unique(
                tenant_id,
                changes.get("email", ""),
                changes.get("username"),
                exclude_id=coach_id,
            )
            return self._update(coach_id, **changes)

    def delete_coach(self, tenant_id: str, coach_id: str) -> bool:
        with self._data_lock:
            if not self.get_coach(tenant_id, coach_id):
                return False
            del self.principals[coach_id]
            self.sessions = {
                sid: s for sid, s in self.sessions.items() if s.principal_id != coach_id
            }
            self._persist_state()
        return True

    # -- sessions -------------------------------------------------------

    def create_session(self, session: Session) -> Session:
        with self._data_lock:
            self.sessions[session.id] = copy.deepcopy(session)
            self._persist_state()
        return session

    def _session_by_hash(self, token_hash: str) -> Optional[Session]:
        for session in self.sessions.values():
            if session.token_hash == token_hash:
                return session
        return None

    def get_live_session(self, token_hash: str) -> Optional[Session]:
        with self._data_lock:
            session = self._session_by_hash(token_hash)
            if session and session.is_live():
                return copy.deepcopy(session)
        return None

    def rotate_session(self, old_token_hash: str, new_session: Session) -> Optional[Session]:
        """Swap one session row for another; ``None`` when the old row is already gone."""

        with self._data_lock:
            old = self._session_by_hash(old_token_hash)
            if old is None:
                return None
            del self.sessions[old.id]
            self.sessions[new_session.id] = copy.deepcopy(new_session)
            self._persist_state()
        return new_session

    def delete_session_by_hash(self, token_hash: str) -> bool:
        with self._data_lock:
            session = self._session_by_hash(token_hash)
            if session is None:
                return False
            del self.sessions[session.id]
            self._persist_state()
        return True

    def delete_principal_sessions(self, principal_id: str) -> int:
        with self._data_lock:
            doomed = [sid for sid, s in self.sessions.items() if s.principal_id == principal_id]
            for sid in doomed:
                del self.sessions[sid]
            if doomed:
                self._persist_state()
        return len(doomed)

    def list_sessions(self, principal_id: str) -> List[Session]:
        with self._data_lock:
            return [
                copy.deepcopy(s) for s in self.sessions.values() if s.principal_id == principal_id
            ]

    # -- login attempts -------------------------------------------------

    def record_login_attempt(self, attempt: LoginAttempt) -> None:
        with self._data_lock:
            self.login_attempts.append(attempt)
            self._persist_state()

    def recent_failed_attempts(self, identifier: str, ip: str, since: datetime) -> List[datetime]:
        """Failure timestamps for the key newer than ``since``, newest first."""

        with self._data_lock:
            times = [
                a.occurred_at
                for a in self.login_attempts
                if a.identifier == identifier
                and a.ip == ip
                and not a.success
                and a.occurred_at > since
            ]
        return sorted(times, reverse=True)

    # -- maintenance ----------------------------------------------------

    def purge_expired(self, now: datetime, attempts_before: datetime) -> tuple[int, int]:
        with self._data_lock:
            live = {sid: s for sid, s in self.sessions.items() if s.expires_at > now}
            sessions_removed = len(self.sessions) - len(live)
            self.sessions = live
            kept = [a for a in self.login_attempts if a.occurred_at >= attempts_before]
            attempts_removed = len(self.login_attempts) - len(kept)
            self.login_attempts = kept
            if sessions_removed or attempts_removed:
                self._persist_state()
        return sessions_removed, attempts_removed

    # -- cold outreach --------------------------------------------------

    def record_cold_call_email(self, record: ColdCallEmail) -> ColdCallEmail:
        with self._data_lock:
            self.cold_call_emails.append(record)
            self._persist_state()
        return record

    def list_cold_call_emails(self, limit: int = 100) -> List[ColdCallEmail]:
        with self._data_lock:
            records = sorted(self.cold_call_emails, key=lambda r: r.sent_at, reverse=True)
        return records[:limit]

    # -- snapshot -------------------------------------------------------

    def _persist_state(self) -> None:
        state = {
            "principals": [
                principal_to_document(p, self._cipher) for p in self.principals.values()
            ],
            "sessions": [
                {
                    "id": s.id,
                    "principal_id": s.principal_id,
                    "token_hash": s.token_hash,
                    "expires_at": serialize_datetime(s.expires_at),
                    "created_at": serialize_datetime(s.created_at),
                }
                for s in self.sessions.values()
            ],
            "login_attempts": [
                {
                    "id": a.id,
                    "principal_id": a.principal_id,
                    "identifier": a.identifier,
                    "ip": a.ip,
                    "success": a.success,
                    "occurred_at": serialize_datetime(a.occurred_at),
                }
                for a in self.login_attempts
            ],
            "cold_call_emails": [
                {
                    "id": r.id,
                    "email": r.email,
                    "club_name": r.club_name,
                    "president_name": r.president_name,
                    "status": r.status,
                    "sent_at": serialize_datetime(r.sent_at),
                    "error": r.error,
                }
                for r in self.cold_call_emails
            ],
        }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}")

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.principals = {
            doc["id"]: principal_from_row(doc, self._cipher) for doc in data.get("principals", [])
        }
        self.sessions = {
            s["id"]: Session(
                id=s["id"],
                principal_id=s["principal_id"],
                token_hash=s["token_hash"],
                expires_at=deserialize_datetime(s["expires_at"]),
                created_at=deserialize_datetime(s["created_at"]),
            )
            for s in data.get("sessions", [])
        }
        self.login_attempts = [
            LoginAttempt(
                id=a["id"],
                principal_id=a.get("principal_id"),
                identifier=a["identifier"],
                ip=a["ip"],
                success=bool(a["success"]),
                occurred_at=deserialize_datetime(a["occurred_at"]),
            )
            for a in data.get("login_attempts", [])
        ]
        self.cold_call_emails = [
            ColdCallEmail(
                id=r["id"],
                email=r["email"],
                club_name=r["club_name"],
                president_name=r["president_name"],
                status=r["status"],
                sent_at=deserialize_datetime(r["sent_at"]),
                error=r.get("error"),
            )
            for r in data.get("cold_call_emails", [])
        ]
        self.logger.info("memory_store_loaded", principals=len(self.principals))
        return True

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional

from psycopg import errors, sql
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from clubauth.logging import get_logger
from clubauth.storage.common import PRINCIPAL_COLUMNS, SecretCipher, ensure_aware, principal_from_row
from clubauth.storage.errors import ConstraintViolation, StorageUnavailable
from clubauth.storage.models import (
    ADMIN_ROLE_LABELS,
    CoachPatch,
    ColdCallEmail,
    LoginAttempt,
    Principal,
    Role,
    Session,
    canonical_username,
)

_SELECT_PRINCIPAL = sql.SQL("SELECT {} FROM principals").format(
    sql.SQL(", ").join(sql.Identifier(c) for c in PRINCIPAL_COLUMNS)
)


def _unique_field(exc: errors.UniqueViolation) -> str:
    constraint = getattr(exc.diag, "constraint_name", None) or ""
    return "username" if "username" in constraint else "email"


def _uuid_or_none(value: Optional[str]) -> Optional[str]:
    """Principal ids are UUIDs; anything else cannot match a row."""

    if value is None:
        return None
    try:
        return str(uuid.UUID(str(value)))
    except ValueError:
        return None


class PostgresStore:
    """Postgres-backed store for principals, sessions and login attempts."""

    def __init__(
        self,
        dsn: str,
        *,
        max_size: int = 1,
        connect_timeout: float = 10.0,
        idle_timeout: float = 20.0,
        mfa_encryption_key: str | None = None,
    ) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self._cipher = SecretCipher(mfa_encryption_key)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=1,
            max_size=max_size,
            timeout=connect_timeout,
            max_idle=idle_timeout,
            kwargs={
                "row_factory": dict_row,
                "autocommit": False,
                "connect_timeout": int(connect_timeout),
            },
            open=True,
        )
        self._verify_required_schema()

    def _connect(self):
        return self.pool.connection()

    def _verify_required_schema(self) -> None:
        """Fail fast when scripts/schema.sql has not been applied."""

        required_tables = ["principals", "sessions", "login_attempts", "cold_call_emails"]
        with self._connect() as conn:
            missing = [
                table
                for table in required_tables
                if conn.execute("SELECT to_regclass(%s) AS reg", (table,)).fetchone()["reg"]
                is None
            ]
        if missing:
            raise StorageUnavailable(
                "missing required tables: " + ", ".join(missing)
                + "; apply scripts/schema.sql"
            )

    def ping(self) -> bool:
        try:
            with self._connect() as conn:
                conn.execute("SELECT 1")
        except Exception as exc:
            self.logger.error("postgres_ping_failed", error=str(exc))
            return False
        return True

    def close(self) -> None:
        self.pool.close()

    # -- principals -----------------------------------------------------

    def _one(self, where: sql.Composable, params: tuple) -> Optional[Principal]:
        query = sql.SQL("{} WHERE {} LIMIT 1").format(_SELECT_PRINCIPAL, where)
        with self._connect() as conn:
            row = conn.execute(query, params).fetchone()
        return principal_from_row(row, self._cipher) if row else None

    def create_principal(self, principal: Principal) -> Principal:
        if not principal.credentials_consistent():
            raise ConstraintViolation(
                "credential hash does not match role", {"role": principal.role.value}
            )
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO principals (
                        id, tenant_id, role, email, username, password_hash, pin_hash,
                        email_verified, email_verification_token, email_verification_expires,
                        created_at, updated_at
                    ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        principal.id,
                        principal.tenant_id,
                        principal.role.value,
                        principal.email,
                        principal.username,
                        principal.password_hash,
                        principal.pin_hash,
                        principal.email_verified,
                        principal.email_verification_token,
                        principal.email_verification_expires,
                        principal.created_at,
                        principal.updated_at,
                    ),
                )
        except errors.UniqueViolation as exc:
            field = _unique_field(exc)
            raise ConstraintViolation(f"{field} exists", {"field": field})
        except errors.CheckViolation:
            raise ConstraintViolation(
                "credential hash does not match role", {"role": principal.role.value}
            )
        return principal

    def get_principal(self, principal_id: str, tenant_id: Optional[str] = None) -> Optional[Principal]:
        if _uuid_or_none(principal_id) is None:
            return None
        if tenant_id is None:
            return self._one(sql.SQL("id = %s"), (principal_id,))
        return self._one(sql.SQL("id = %s AND tenant_id = %s"), (principal_id, tenant_id))

    def find_admin_by_email(self, tenant_id: str, email: str) -> Optional[Principal]:
        return self._one(
            sql.SQL("tenant_id = %s AND lower(email) = lower(%s) AND role = ANY(%s)"),
            (tenant_id, email, list(ADMIN_ROLE_LABELS)),
        )

    def find_coach_by_username(self, tenant_id: str, username: str) -> Optional[Principal]:
        return self._one(
            sql.SQL("tenant_id = %s AND lower(username) = lower(%s) AND role = 'coach'"),
            (tenant_id, username.strip()),
        )

    def find_coach_for_pin_reset(
        self, tenant_id: str, email: str, username: str
    ) -> Optional[Principal]:
        return self._one(
            sql.SQL(
                "tenant_id = %s AND lower(email) = lower(%s)"
                " AND lower(username) = lower(%s) AND role = 'coach'"
            ),
            (tenant_id, email, username.strip()),
        )

    def email_exists(self, email: str, tenant_id: Optional[str] = None) -> bool:
        with self._connect() as conn:
            if tenant_id is None:
                row = conn.execute(
                    "SELECT 1 FROM principals WHERE lower(email) = lower(%s) LIMIT 1", (email,)
                ).fetchone()
            else:
                row = conn.execute(
                    "SELECT 1 FROM principals WHERE lower(email) = lower(%s) AND tenant_id = %s LIMIT 1",
                    (email, tenant_id),
                ).fetchone()
        return row is not None

    def find_by_verification_token(self, token: str) -> Optional[Principal]:
        return self._one(
            sql.SQL("email_verification_token = %s AND email_verified = false"), (token,)
        )

    def find_by_password_reset_token(self, token: str) -> Optional[Principal]:
        return self._one(sql.SQL("password_reset_token = %s"), (token,))

    def find_by_pin_reset_token(self, tenant_id: str, token: str) -> Optional[Principal]:
        return self._one(
            sql.SQL("tenant_id = %s AND pin_reset_token = %s AND role = 'coach'"),
            (tenant_id, token),
        )

    def _set(self, principal_id: str, changes: Dict[str, Any]) -> int:
        assignments = sql.SQL(", ").join(
            sql.SQL("{} = %s").format(sql.Identifier(column)) for column in changes
        )
        query = sql.SQL("UPDATE principals SET {}, updated_at = now() WHERE id = %s").format(
            assignments
        )
        try:
            with self._connect() as conn:
                result = conn.execute(query, (*changes.values(), principal_id))
                return result.rowcount
        except errors.UniqueViolation as exc:
            field = _unique_field(exc)
            raise ConstraintViolation(f"{field} exists", {"field": field})

    def set_email_verification(self, principal_id: str, token: str, expires: datetime) -> None:
        self._set(
            principal_id,
            {"email_verification_token": token, "email_verification_expires": expires},
        )

    def mark_email_verified(self, principal_id: str) -> None:
        self._set(
            principal_id,
            {
                "email_verified": True,
                "email_verification_token": None,
                "email_verification_expires": None,
            },
        )

    def set_password_reset_token(self, principal_id: str, token: str, expires: datetime) -> None:
        self._set(principal_id, {"password_reset_token": token, "password_reset_expires": expires})

    def set_pin_reset_token(self, principal_id: str, token: str, expires: datetime) -> None:
        self._set(principal_id, {"pin_reset_token": token, "pin_reset_expires": expires})

    def update_password(self, principal_id: str, password_hash: str) -> None:
        self._set(
            principal_id,
            {
                "password_hash": password_hash,
                "password_reset_token": None,
                "password_reset_expires": None,
            },
        )

    def update_pin(self, principal_id: str, pin_hash: str) -> None:
        self._set(
            principal_id,
            {"pin_hash": pin_hash, "pin_reset_token": None, "pin_reset_expires": None},
        )

    def update_email(
        self, principal_id: str, email: str, token: str, expires: datetime
    ) -> Optional[Principal]:
        updated = self._set(
            principal_id,
            {
                "email": email,
                "email_verified": False,
                "email_verification_token": token,
                "email_verification_expires": expires,
            },
        )
        return self.get_principal(principal_id) if updated else None

    def set_two_factor_secret(self, principal_id: str, secret: str) -> None:
        self._set(
            principal_id,
            {"two_factor_secret": self._cipher.encrypt(secret), "two_factor_enabled": False},
        )

    def enable_two_factor(self, principal_id: str, backup_code_hashes: List[str]) -> None:
        self._set(
            principal_id,
            {"two_factor_enabled": True, "two_factor_backup_codes": list(backup_code_hashes)},
        )

    def disable_two_factor(self, principal_id: str) -> None:
        self._set(
            principal_id,
            {
                "two_factor_enabled": False,
                "two_factor_secret": None,
                "two_factor_backup_codes": None,
            },
        )

    def consume_backup_code(self, principal_id: str, code_hash: str) -> bool:
        """Remove one backup code hash; ``False`` when another login already spent it."""

        with self._connect() as conn:
            result = conn.execute(
                "UPDATE principals"
                " SET two_factor_backup_codes = array_remove(two_factor_backup_codes, %s),"
                " updated_at = now()"
                " WHERE id = %s AND %s = ANY(two_factor_backup_codes)",
                (code_hash, principal_id, code_hash),
            )
            return result.rowcount > 0

    def set_role(self, principal_id: str, role: Role) -> None:
        try:
            self._set(principal_id, {"role": role.value})
        except errors.CheckViolation as exc:
            raise ConstraintViolation(
                "credential hash does not match role", {"role": role.value}
            ) from exc

    def touch_last_login(self, principal_id: str) -> None:
        with self._connect() as conn:
            conn.execute("UPDATE principals SET last_login = now() WHERE id = %s", (principal_id,))

    def count_principals_by_tenant(self) -> Dict[str, int]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT tenant_id, count(*) AS n FROM principals GROUP BY tenant_id"
            ).fetchall()
        return {row["tenant_id"]: int(row["n"]) for row in rows}

    # -- coaches --------------------------------------------------------

    def list_coaches(self, tenant_id: str) -> List[Principal]:
        query = sql.SQL("{} WHERE tenant_id = %s AND role = 'coach' ORDER BY created_at DESC").format(
            _SELECT_PRINCIPAL
        )
        with self._connect() as conn:
            rows = conn.execute(query, (tenant_id,)).fetchall()
        return [principal_from_row(row, self._cipher) for row in rows]

    def get_coach(self, tenant_id: str, coach_id: str) -> Optional[Principal]:
        if _uuid_or_none(coach_id) is None:
            return None
        return self._one(
            sql.SQL("id = %s AND tenant_id = %s AND role = 'coach'"), (coach_id, tenant_id)
        )

    def count_coaches(self, tenant_id: str) -> int:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT count(*) AS n FROM principals WHERE tenant_id = %s AND role = 'coach'",
                (tenant_id,),
            ).fetchone()
        return int(row["n"])

    def username_taken(
        self, tenant_id: str, username: str, exclude_id: Optional[str] = None
    ) -> bool:
        exclude_id = _uuid_or_none(exclude_id)
        with self._connect() as conn:
            row = conn.execute(
                "SELECT 1 FROM principals WHERE tenant_id = %s AND lower(username) = lower(%s)"
                " AND (%s::uuid IS NULL OR id <> %s::uuid) LIMIT 1",
                (tenant_id, username.strip(), exclude_id, exclude_id),
            ).fetchone()
        return row is not None

    def email_taken(self, tenant_id: str, email: str, exclude_id: Optional[str] = None) -> bool:
        exclude_id = _uuid_or_none(exclude_id)
        with self._connect() as conn:
            row = conn.execute(
                "SELECT 1 FROM principals WHERE tenant_id = %s AND lower(email) = lower(%s)"
                " AND (%s::uuid IS NULL OR id <> %s::uuid) LIMIT 1",
                (tenant_id, email, exclude_id, exclude_id),
            ).fetchone()
        return row is not None

    def update_coach(self, tenant_id: str, coach_id: str, patch: CoachPatch) -> Optional[Principal]:
        """Write the non-empty fields of ``patch``; column names come from the patch type."""

        if _uuid_or_none(coach_id) is None:
            return None
        changes = patch.assignments()
        if "username" in changes:
            changes["username"] = canonical_username(changes["username"])
        assignments = sql.SQL(", ").join(
            sql.SQL("{} = %s").format(sql.Identifier(column)) for column in changes
        )
        query = sql.SQL(
            "UPDATE principals SET {}, updated_at = now()"
            " WHERE id = %s AND tenant_id = %s AND role = 'coach'"
        ).format(assignments)
        try:
            with self._connect() as conn:
                result = conn.execute(query, (*changes.values(), coach_id, tenant_id))
                if result.rowcount == 0:
                    return None
        except errors.UniqueViolation as exc:
            field = _unique_field(exc)
            raise ConstraintViolation(f"{field} exists", {"field": field})
        return self.get_coach(tenant_id, coach_id)

    def delete_coach(self, tenant_id: str, coach_id: str) -> bool:
        if _uuid_or_none(coach_id) is None:
            return False
        with self._connect() as conn:
            result = conn.execute(
                "DELETE FROM principals WHERE id = %s AND tenant_id = %s AND role = 'coach'",
                (coach_id, tenant_id),
            )
            return result.rowcount > 0

    # -- sessions -------------------------------------------------------

    @staticmethod
    def _session_from_row(row: Dict[str, Any]) -> Session:
        return Session(
            id=str(row["id"]),
            principal_id=str(row["principal_id"]),
            token_hash=row["token_hash"],
            expires_at=ensure_aware(row["expires_at"]),
            created_at=ensure_aware(row["created_at"]),
        )

    def create_session(self, session: Session) -> Session:
        with self._connect() as conn:
            conn.execute(
                "INSERT INTO sessions (id, principal_id, token_hash, expires_at, created_at)"
                " VALUES (%s, %s, %s, %s, %s)",
                (
                    session.id,
                    session.principal_id,
                    session.token_hash,
                    session.expires_at,
                    session.created_at,
                ),
            )
        return session

    def get_live_session(self, token_hash: str) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT s.* FROM sessions s JOIN principals p ON p.id = s.principal_id"
                " WHERE s.token_hash = %s AND s.expires_at > now()",
                (token_hash,),
            ).fetchone()
        return self._session_from_row(row) if row else None

    def rotate_session(self, old_token_hash: str, new_session: Session) -> Optional[Session]:
        """Swap one session row for another in a single transaction.

        Returns ``None`` when the delete matched no row, which is how a
        concurrent rotation of the same token shows up.
        """

        with self._connect() as conn, conn.transaction():
            deleted = conn.execute(
                "DELETE FROM sessions WHERE token_hash = %s", (old_token_hash,)
            ).rowcount
            if deleted == 0:
                return None
            conn.execute(
                "INSERT INTO sessions (id, principal_id, token_hash, expires_at, created_at)"
                " VALUES (%s, %s, %s, %s, %s)",
                (
                    new_session.id,
                    new_session.principal_id,
                    new_session.token_hash,
                    new_session.expires_at,
                    new_session.created_at,
                ),
            )
        return new_session

    def delete_session_by_hash(self, token_hash: str) -> bool:
        with self._connect() as conn:
            result = conn.execute("DELETE FROM sessions WHERE token_hash = %s", (token_hash,))
            return result.rowcount > 0

    def delete_principal_sessions(self, principal_id: str) -> int:
        with self._connect() as conn:
            result = conn.execute("DELETE FROM sessions WHERE principal_id = %s", (principal_id,))
            return result.rowcount

    def list_sessions(self, principal_id: str) -> List[Session]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM sessions WHERE principal_id = %s", (principal_id,)
            ).fetchall()
        return [self._session_from_row(row) for row in rows]

    # -- login attempts -------------------------------------------------

    def record_login_attempt(self, attempt: LoginAttempt) -> None:
        with self._connect() as conn:
            conn.execute(
                "INSERT INTO login_attempts (id, principal_id, identifier, ip, success, occurred_at)"
                " VALUES (%s, %s, %s, %s, %s, %s)",
                (
                    attempt.id,
                    attempt.principal_id,
                    attempt.identifier,
                    attempt.ip,
                    attempt.success,
                    attempt.occurred_at,
                ),
            )

    def recent_failed_attempts(self, identifier: str, ip: str, since: datetime) -> List[datetime]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT occurred_at FROM login_attempts"
                " WHERE identifier = %s AND ip = %s AND success = false AND occurred_at > %s"
                " ORDER BY occurred_at DESC",
                (identifier, ip, since),
            ).fetchall()
        return [ensure_aware(row["occurred_at"]) for row in rows]

    # -- maintenance ----------------------------------------------------

    def purge_expired(self, now: datetime, attempts_before: datetime) -> tuple[int, int]:
        with self._connect() as conn:
            sessions = conn.execute("DELETE FROM sessions WHERE expires_at <= %s", (now,)).rowcount
            attempts = conn.execute(
                "DELETE FROM login_attempts WHERE occurred_at < %s", (attempts_before,)
            ).rowcount
        return sessions, attempts

    # -- cold outreach --------------------------------------------------

    def record_cold_call_email(self, record: ColdCallEmail) -> ColdCallEmail:
        with self._connect() as conn:
            conn.execute(
                "INSERT INTO cold_call_emails (id, email, club_name, president_name, status, error, sent_at)"
                " VALUES (%s, %s, %s, %s, %s, %s, %s)",
                (
                    record.id,
                    record.email,
                    record.club_name,
                    record.president_name,
                    record.status,
                    record.error,
                    record.sent_at,
                ),
            )
        return record

    def list_cold_call_emails(self, limit: int = 100) -> List[ColdCallEmail]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM cold_call_emails ORDER BY sent_at DESC LIMIT %s", (limit,)
            ).fetchall()
        return [
            ColdCallEmail(
                id=str(row["id"]),
                email=row["email"],
                club_name=row["club_name"],
                president_name=row["president_name"],
                status=row["status"],
                sent_at=ensure_aware(row["sent_at"]),
                error=row["error"],
            )
            for row in rows
        ]

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Protocol

from clubauth.config import Settings
from clubauth.logging import get_logger
from clubauth.service import totp
from clubauth.service.email import EmailDeliveryError, EmailService
from clubauth.service.errors import (
    AuthenticationError,
    ConflictError,
    ForbiddenError,
    NotFoundError,
    RateLimitedError,
    ServerError,
    ValidationError,
)
from clubauth.service.passwords import BreachChecker, hash_password, verify_password
from clubauth.service.pins import hash_pin, pin_format_errors, verify_pin
from clubauth.service.rate_limit import LoginRateLimiter
from clubauth.service.tenants import TenantRegistry, name_to_subdomain, validate_subdomain
from clubauth.service.tokens import (
    AccessClaims,
    TokenService,
    generate_opaque_token,
    hash_refresh_token,
)
from clubauth.storage.errors import ConstraintViolation
from clubauth.storage.models import (
    CoachPatch,
    ColdCallEmail,
    LoginAttempt,
    Principal,
    Role,
    Session,
    TenantConfig,
    utcnow,
)

logger = get_logger(__name__)

EMAIL_VERIFICATION_TTL = timedelta(hours=24)
PASSWORD_RESET_TTL = timedelta(hours=1)
PIN_RESET_TTL = timedelta(hours=1)

REGISTER_MESSAGE = (
    "If an account does not already exist for this email, it has been created. "
    "Please check your email to verify your account."
)


class PrincipalStore(Protocol):
    """Persistence operations the identity services rely on."""

    def create_principal(self, principal: Principal) -> Principal: ...
    def get_principal(self, principal_id: str, tenant_id: Optional[str] = None) -> Optional[Principal]: ...
    def find_admin_by_email(self, tenant_id: str, email: str) -> Optional[Principal]: ...
    def find_coach_by_username(self, tenant_id: str, username: str) -> Optional[Principal]: ...
    def find_coach_for_pin_reset(self, tenant_id: str, email: str, username: str) -> Optional[Principal]: ...
    def email_exists(self, email: str, tenant_id: Optional[str] = None) -> bool: ...
    def find_by_verification_token(self, token: str) -> Optional[Principal]: ...
    def find_by_password_reset_token(self, token: str) -> Optional[Principal]: ...
    def find_by_pin_reset_token(self, tenant_id: str, token: str) -> Optional[Principal]: ...
    def set_email_verification(self, principal_id: str, token: str, expires: datetime) -> None: ...
    def mark_email_verified(self, principal_id: str) -> None: ...
    def set_password_reset_token(self, principal_id: str, token: str, expires: datetime) -> None: ...
    def set_pin_reset_token(self, principal_id: str, token: str, expires: datetime) -> None: ...
    def update_password(self, principal_id: str, password_hash: str) -> None: ...
    def update_pin(self, principal_id: str, pin_hash: str) -> None: ...
    def update_email(self, principal_id: str, email: str, token: str, expires: datetime) -> Optional[Principal]: ...
    def set_two_factor_secret(self, principal_id: str, secret: str) -> None: ...
    def enable_two_factor(self, principal_id: str, backup_code_hashes: List[str]) -> None: ...
    def disable_two_factor(self, principal_id: str) -> None: ...
    def consume_backup_code(self, principal_id: str, code_hash: str) -> bool: ...
    def set_role(self, principal_id: str, role: Role) -> None: ...
    def touch_last_login(self, principal_id: str) -> None: ...
    def count_principals_by_tenant(self) -> Dict[str, int]: ...
    def list_coaches(self, tenant_id: str) -> List[Principal]: ...
    def get_coach(self, tenant_id: str, coach_id: str) -> Optional[Principal]: ...
    def count_coaches(self, tenant_id: str) -> int: ...
    def username_taken(self, tenant_id: str, username: str, exclude_id: Optional[str] = None) -> bool: ...
    def email_taken(self, tenant_id: str, email: str, exclude_id: Optional[str] = None) -> bool: ...
    def update_coach(self, tenant_id: str, coach_id: str, patch: CoachPatch) -> Optional[Principal]: ...
    def delete_coach(self, tenant_id: str, coach_id: str) -> bool: ...
    def create_session(self, session: Session) -> Session: ...
    def get_live_session(self, token_hash: str) -> Optional[Session]: ...
    def rotate_session(self, old_token_hash: str, new_session: Session) -> Optional[Session]: ...
    def delete_session_by_hash(self, token_hash: str) -> bool: ...
    def delete_principal_sessions(self, principal_id: str) -> int: ...
    def list_sessions(self, principal_id: str) -> List[Session]: ...
    def record_login_attempt(self, attempt: LoginAttempt) -> None: ...
    def recent_failed_attempts(self, identifier: str, ip: str, since: datetime) -> List[datetime]: ...
    def purge_expired(self, now: datetime, attempts_before: datetime) -> tuple[int, int]: ...
    def record_cold_call_email(self, record: ColdCallEmail) -> ColdCallEmail: ...
    def list_cold_call_emails(self, limit: int = 100) -> List[ColdCallEmail]: ...
    def ping(self) -> bool: ...


@dataclass
class AuthContext:
    """The authenticated caller, with the role taken from the stored row."""

    club_id: str
    tenant_id: str
    role: Role
    email: str
    principal: Principal


@dataclass
class TokenPair:
    access_token: str
    refresh_token: str
    principal: Principal


@dataclass
class LoginResult:
    requires_2fa: bool = False
    tokens: Optional[TokenPair] = None


@dataclass
class TwoFactorSetup:
    secret: str
    otpauth_url: str
    qr_code: str


def detail(path: str, message: str) -> Dict[str, Any]:
    return {"path": [path], "message": message}


def _expired(expires: Optional[datetime]) -> bool:
    return expires is None or expires <= utcnow()


class AuthService:
    """Credential, session and account-lifecycle operations for every tenant."""

    def __init__(
        self,
        store: PrincipalStore,
        *,
        tenants: TenantRegistry,
        email: EmailService,
        tokens: TokenService,
        breach: BreachChecker,
        limiter: LoginRateLimiter,
        settings: Settings,
    ) -> None:
        self.store = store
        self.tenants = tenants
        self.email = email
        self.tokens = tokens
        self.breach = breach
        self.limiter = limiter
        self.settings = settings
        self.logger = logger

    # -- helpers --------------------------------------------------------

    async def require_strong_password(self, password: str, *, path: str = "password") -> None:
        result = await self.breach.check_strength(password)
        if not result.is_valid:
            extra = {"breachCount": result.breach_count} if result.breach_count else None
            raise ValidationError(
                "Password does not meet requirements",
                details=[detail(path, message) for message in result.errors],
                extra=extra,
            )

    @staticmethod
    def _require_pin_format(pin: str, *, path: str = "pin") -> None:
        errors = pin_format_errors(pin)
        if errors:
            raise ValidationError(
                "Invalid PIN format", details=[detail(path, message) for message in errors]
            )

    def _issue_tokens(self, principal: Principal) -> TokenPair:
        access = self.tokens.mint_access_token(
            AccessClaims(
                club_id=principal.id,
                tenant_id=principal.tenant_id,
                role=principal.role.value,
                email=principal.email,
            )
        )
        refresh = generate_opaque_token()
        self.store.create_session(
            Session.new(
                principal.id,
                hash_refresh_token(refresh),
                ttl_days=self.settings.refresh_token_ttl_days,
            )
        )
        return TokenPair(access_token=access, refresh_token=refresh, principal=principal)

    def _revoke_all_sessions(self, principal_id: str, reason: str) -> None:
        removed = self.store.delete_principal_sessions(principal_id)
        self.logger.info("sessions_revoked", principal_id=principal_id, reason=reason, count=removed)

    async def _send(self, func, *args) -> bool:
        """Run a blocking best-effort email send off the event loop."""

        return await asyncio.to_thread(func, *args)

    def _fresh(self, ctx: AuthContext) -> Principal:
        principal = self.store.get_principal(ctx.club_id, ctx.tenant_id)
        if principal is None:
            raise NotFoundError("Club not found")
        return principal

    # -- middleware -----------------------------------------------------

    def authenticate(self, token: Optional[str]) -> AuthContext:
        """Resolve a bearer token to the caller.

        The role in the token is only a hint; the stored row decides.
        """

        if not token:
            raise AuthenticationError("Missing or invalid authorization header")
        claims = self.tokens.verify_access_token(token)
        if claims is None:
            raise AuthenticationError("Invalid or expired token")
        principal = self.store.get_principal(claims.club_id, claims.tenant_id)
        if principal is None:
            raise AuthenticationError("Invalid or expired token")
        if principal.role.value != claims.role:
            self.logger.info(
                "token_role_stale", principal_id=principal.id, claimed=claims.role, stored=principal.role.value
            )
        return AuthContext(
            club_id=principal.id,
            tenant_id=principal.tenant_id,
            role=principal.role,
            email=principal.email,
            principal=principal,
        )

    # -- signup / register ----------------------------------------------

    async def signup(
        self, *, email: str, password: str, club_name: str, plan_id: Optional[str] = None
    ) -> tuple[Principal, TenantConfig]:
        """Self-service admin signup that also provisions the tenant.

        Raises:
            ValidationError: weak password or a club name that yields no valid subdomain.
            ConflictError: subdomain or email already taken.
        """

        await self.require_strong_password(password)
        subdomain = name_to_subdomain(club_name)
        check = validate_subdomain(subdomain)
        if not check.valid:
            raise ValidationError("Invalid club name", details=[detail("clubName", check.error or "")])
        if not self.tenants.is_available(subdomain):
            raise ConflictError(
                f'En klub med navnet "{club_name}" eksisterer allerede. Vælg venligst et andet navn.'
            )
        if self.store.email_exists(email):
            raise ConflictError("En konto med denne email eksisterer allerede")

        tenant = self.tenants.create(name=club_name, subdomain=subdomain, plan_id=plan_id)
        password_hash = await asyncio.to_thread(hash_password, password)
        token = generate_opaque_token()
        principal = Principal.new(
            tenant_id=tenant.id,
            role=Role.ADMIN,
            email=email,
            password_hash=password_hash,
            email_verified=False,
            email_verification_token=token,
            email_verification_expires=utcnow() + EMAIL_VERIFICATION_TTL,
        )
        try:
            principal = self.store.create_principal(principal)
        except ConstraintViolation:
            raise ConflictError("En konto med denne email eksisterer allerede")
        self.logger.info("signup_completed", principal_id=principal.id, tenant_id=tenant.id)

        await self._send(self.email.send_verification, email, token, tenant.id)
        await self._send(self.email.send_signup_notification, club_name, email, tenant.id, plan_id)
        return principal, tenant

    async def register(self, *, email: str, password: str, tenant_id: str) -> None:
        """Create an admin in an existing tenant.

        An existing email produces the same outcome as a fresh registration,
        so the caller cannot tell which happened.
        """

        await self.require_strong_password(password)
        if self.store.email_exists(email):
            self.logger.info("register_conflict_absorbed", tenant_id=tenant_id)
            return
        password_hash = await asyncio.to_thread(hash_password, password)
        token = generate_opaque_token()
        principal = Principal.new(
            tenant_id=tenant_id,
            role=Role.ADMIN,
            email=email,
            password_hash=password_hash,
            email_verification_token=token,
            email_verification_expires=utcnow() + EMAIL_VERIFICATION_TTL,
        )
        try:
            self.store.create_principal(principal)
        except ConstraintViolation:
            self.logger.info("register_conflict_absorbed", tenant_id=tenant_id)
            return
        self.logger.info("register_completed", principal_id=principal.id, tenant_id=tenant_id)
        await self._send(self.email.send_verification, email, token, tenant_id)

    async def create_admin(
        self,
        *,
        tenant_id: str,
        email: str,
        password: str,
        role: Role = Role.ADMIN,
        email_verified: bool = True,
    ) -> Principal:
        """Operator-side admin creation used by tenant provisioning and bootstrap."""

        await self.require_strong_password(password, path="adminPassword")
        password_hash = await asyncio.to_thread(hash_password, password)
        principal = Principal.new(
            tenant_id=tenant_id,
            role=role,
            email=email,
            password_hash=password_hash,
            email_verified=email_verified,
        )
        try:
            return self.store.create_principal(principal)
        except ConstraintViolation:
            raise ConflictError("Email already exists for this tenant")

    # -- login / session ------------------------------------------------

    async def login(
        self,
        *,
        tenant_id: str,
        ip: str,
        email: Optional[str] = None,
        password: Optional[str] = None,
        username: Optional[str] = None,
        pin: Optional[str] = None,
        totp_code: Optional[str] = None,
    ) -> LoginResult:
        """Authenticate either an admin (email+password) or a coach (username+PIN).

        Raises:
            RateLimitedError: too many recent failures for this identifier and ip.
            AuthenticationError: unknown principal, wrong secret or wrong 2FA code.
            ForbiddenError: admin whose email is not verified.
        """

        pin_flow = bool(username and pin is not None) and not (email and password)
        identifier = (username if pin_flow else email) or ""
        decision = self.limiter.check(identifier, ip)
        if not decision.allowed:
            raise RateLimitedError("Too many login attempts", lockout_until=decision.lockout_until)

        failure_message = "Invalid username or PIN" if pin_flow else "Invalid email or password"
        if pin_flow:
            principal = self.store.find_coach_by_username(tenant_id, username)
        else:
            principal = self.store.find_admin_by_email(tenant_id, email)
        if principal is None:
            self.limiter.record(identifier, ip, success=False)
            raise AuthenticationError(failure_message)

        if pin_flow:
            ok = await asyncio.to_thread(verify_pin, principal.pin_hash, pin)
        else:
            ok = await asyncio.to_thread(verify_password, principal.password_hash, password)
        if not ok:
            self.limiter.record(identifier, ip, success=False, principal_id=principal.id)
            self.logger.warning("login_failed", principal_id=principal.id, tenant_id=tenant_id)
            raise AuthenticationError(failure_message)

        if not pin_flow and not principal.email_verified:
            raise ForbiddenError("Email not verified. Please check your email for verification link.")

        if principal.two_factor_enabled:
            if not totp_code:
                return LoginResult(requires_2fa=True)
            if not principal.two_factor_secret:
                raise ServerError("2FA enabled but secret not found")
            if not self._accept_second_factor(principal, totp_code):
                self.limiter.record(identifier, ip, success=False, principal_id=principal.id)
                raise AuthenticationError("Invalid 2FA code")

        pair = self._issue_tokens(principal)
        self.store.touch_last_login(principal.id)
        self.limiter.record(identifier, ip, success=True, principal_id=principal.id)
        self.logger.info("login_succeeded", principal_id=principal.id, tenant_id=tenant_id, method="pin" if pin_flow else "password")
        refreshed = self.store.get_principal(principal.id) or principal
        return LoginResult(tokens=TokenPair(pair.access_token, pair.refresh_token, refreshed))

    def _accept_second_factor(self, principal: Principal, code: str) -> bool:
        if totp.verify_code(principal.two_factor_secret, code.strip()):
            return True
        if not code.strip():
            return False
        if not self.store.consume_backup_code(principal.id, totp.hash_backup_code(code)):
            return False
        self.logger.info("backup_code_consumed", principal_id=principal.id)
        return True

    def refresh(self, refresh_token: Optional[str]) -> TokenPair:
        """Rotate a refresh token. The presented token stops working either way."""

        if not refresh_token:
            raise AuthenticationError("Invalid or expired refresh token")
        old_hash = hash_refresh_token(refresh_token)
        session = self.store.get_live_session(old_hash)
        if session is None:
            raise AuthenticationError("Invalid or expired refresh token")
        principal = self.store.get_principal(session.principal_id)
        if principal is None:
            raise AuthenticationError("Invalid or expired refresh token")

        new_refresh = generate_opaque_token()
        rotated = self.store.rotate_session(
            old_hash,
            Session.new(
                principal.id,
                hash_refresh_token(new_refresh),
                ttl_days=self.settings.refresh_token_ttl_days,
            ),
        )
        if rotated is None:
            # Lost a race with another rotation of the same token.
            self.logger.warning("refresh_rotation_conflict", principal_id=principal.id)
            raise AuthenticationError("Invalid or expired refresh token")
        access = self.tokens.mint_access_token(
            AccessClaims(principal.id, principal.tenant_id, principal.role.value, principal.email)
        )
        self.logger.info("session_rotated", principal_id=principal.id)
        return TokenPair(access_token=access, refresh_token=new_refresh, principal=principal)

    def logout(self, refresh_token: Optional[str]) -> bool:
        if not refresh_token:
            return False
        removed = self.store.delete_session_by_hash(hash_refresh_token(refresh_token))
        self.logger.info("logout", session_removed=removed)
        return removed

    # -- email verification / password reset ----------------------------

    def verify_email(self, token: str) -> Principal:
        principal = self.store.find_by_verification_token(token)
        if principal is None or _expired(principal.email_verification_expires):
            raise ValidationError("Invalid or expired verification token")
        self.store.mark_email_verified(principal.id)
        self.logger.info("email_verified", principal_id=principal.id)
        return self.store.get_principal(principal.id) or principal

    async def forgot_password(self, *, email: str, tenant_id: str) -> None:
        principal = self.store.find_admin_by_email(tenant_id, email)
        if principal is None:
            return
        token = generate_opaque_token()
        self.store.set_password_reset_token(principal.id, token, utcnow() + PASSWORD_RESET_TTL)
        self.logger.info("password_reset_requested", principal_id=principal.id)
        await self._send(self.email.send_password_reset, principal.email, token, tenant_id)

    async def reset_password(self, *, token: str, password: str) -> None:
        principal = self.store.find_by_password_reset_token(token)
        if principal is None or _expired(principal.password_reset_expires):
            raise ValidationError("Invalid or expired reset token")
        await self.require_strong_password(password)
        password_hash = await asyncio.to_thread(hash_password, password)
        self.store.update_password(principal.id, password_hash)
        self._revoke_all_sessions(principal.id, "password_reset")

    async def change_password(self, ctx: AuthContext, *, current_password: str, new_password: str) -> None:
        principal = self._fresh(ctx)
        if not principal.role.uses_password:
            raise ForbiddenError(
                "Password change is only available for administrators. "
                "Coaches should use PIN change instead."
            )
        if not await asyncio.to_thread(verify_password, principal.password_hash, current_password):
            raise AuthenticationError("Current password is incorrect")
        await self.require_strong_password(new_password, path="newPassword")
        password_hash = await asyncio.to_thread(hash_password, new_password)
        self.store.update_password(principal.id, password_hash)
        self._revoke_all_sessions(principal.id, "password_change")

    # -- PIN ------------------------------------------------------------

    async def change_pin(self, ctx: AuthContext, *, current_pin: str, new_pin: str) -> None:
        principal = self.store.get_principal(ctx.club_id, ctx.tenant_id)
        if principal is None or principal.role != Role.COACH:
            raise NotFoundError("Coach not found")
        if not principal.pin_hash:
            raise ValidationError("PIN not set for this account")
        if not await asyncio.to_thread(verify_pin, principal.pin_hash, current_pin):
            raise AuthenticationError("Current PIN is incorrect")
        self._require_pin_format(new_pin, path="newPIN")
        pin_hash = await asyncio.to_thread(hash_pin, new_pin)
        self.store.update_pin(principal.id, pin_hash)
        self._revoke_all_sessions(principal.id, "pin_change")

    async def request_pin_reset(self, *, email: str, username: str, tenant_id: str) -> None:
        """Mail a PIN reset link.

        Unlike password reset, delivery failures surface as a 500.
        """

        principal = self.store.find_coach_for_pin_reset(tenant_id, email, username)
        if principal is None:
            return
        token = generate_opaque_token()
        self.store.set_pin_reset_token(principal.id, token, utcnow() + PIN_RESET_TTL)
        self.logger.info("pin_reset_requested", principal_id=principal.id)
        try:
            await self._send(
                self.email.send_pin_reset, principal.email, token, tenant_id, principal.username or ""
            )
        except EmailDeliveryError as exc:
            self.logger.error("pin_reset_email_failed", principal_id=principal.id, error=str(exc))
            raise ServerError("Failed to send PIN reset email", extra={"message": str(exc)})

    def _principal_for_pin_token(self, token: str, tenant_id: str) -> Principal:
        principal = self.store.find_by_pin_reset_token(tenant_id, token)
        if principal is None:
            raise ValidationError("Invalid or expired reset token")
        if _expired(principal.pin_reset_expires):
            raise ValidationError("Reset token has expired")
        return principal

    def validate_pin_reset(self, *, token: str, tenant_id: str) -> str:
        return self._principal_for_pin_token(token, tenant_id).username or ""

    async def reset_pin(self, *, token: str, pin: str, tenant_id: str) -> str:
        principal = self._principal_for_pin_token(token, tenant_id)
        self._require_pin_format(pin)
        pin_hash = await asyncio.to_thread(hash_pin, pin)
        self.store.update_pin(principal.id, pin_hash)
        self._revoke_all_sessions(principal.id, "pin_reset")
        return principal.username or ""

    # -- two-factor -----------------------------------------------------

    @staticmethod
    def _require_two_factor_role(principal: Principal) -> None:
        if not principal.role.uses_password:
            raise ForbiddenError("Two-factor authentication is only available for administrators")

    def setup_two_factor(self, ctx: AuthContext) -> TwoFactorSetup:
        principal = self._fresh(ctx)
        self._require_two_factor_role(principal)
        if principal.two_factor_enabled:
            raise ValidationError("Two-factor authentication is already enabled")
        secret = totp.generate_secret()
        self.store.set_two_factor_secret(principal.id, secret)
        uri = totp.otpauth_uri(secret, principal.email, self.settings.totp_issuer)
        self.logger.info("two_factor_setup_started", principal_id=principal.id)
        return TwoFactorSetup(secret=secret, otpauth_url=uri, qr_code=totp.qr_data_uri(uri))

    async def verify_two_factor(self, ctx: AuthContext, *, code: str) -> List[str]:
        """Confirm enrolment and hand out the backup codes, once."""

        principal = self._fresh(ctx)
        self._require_two_factor_role(principal)
        if principal.two_factor_enabled:
            raise ValidationError("Two-factor authentication is already enabled")
        if not principal.two_factor_secret:
            raise ValidationError("Two-factor authentication has not been set up")
        if not totp.verify_code(principal.two_factor_secret, code.strip()):
            raise AuthenticationError("Invalid verification code")
        codes = totp.generate_backup_codes()
        self.store.enable_two_factor(principal.id, [totp.hash_backup_code(c) for c in codes])
        self.logger.info("two_factor_enabled", principal_id=principal.id)
        await self._send(self.email.send_two_factor_enabled, principal.email)
        return codes

    async def disable_two_factor(self, ctx: AuthContext, *, password: str) -> None:
        principal = self._fresh(ctx)
        self._require_two_factor_role(principal)
        if not principal.two_factor_enabled:
            raise ValidationError("Two-factor authentication is not enabled")
        if not await asyncio.to_thread(verify_password, principal.password_hash, password):
            raise AuthenticationError("Invalid password")
        self.store.disable_two_factor(principal.id)
        self.logger.info("two_factor_disabled", principal_id=principal.id)

    # -- profile --------------------------------------------------------

    async def update_profile(self, ctx: AuthContext, *, email: Optional[str]) -> tuple[Principal, str]:
        principal = self._fresh(ctx)
        if not email or email.lower() == principal.email.lower():
            return principal, "Profile updated successfully"
        if self.store.email_taken(principal.tenant_id, email, exclude_id=principal.id):
            raise ConflictError("Email already in use")
        token = generate_opaque_token()
        try:
            updated = self.store.update_email(
                principal.id, email, token, utcnow() + EMAIL_VERIFICATION_TTL
            )
        except ConstraintViolation:
            raise ConflictError("Email already in use")
        if updated is None:
            raise NotFoundError("Club not found")
        self.logger.info("email_changed", principal_id=principal.id)
        await self._send(self.email.send_verification, email, token, principal.tenant_id)
        return updated, "Email updated. Please check your email to verify the new address."

    def whoami(self, ctx: AuthContext) -> Principal:
        return self._fresh(ctx)

    # -- maintenance ----------------------------------------------------

    def purge_expired(self) -> tuple[int, int]:
        now = utcnow()
        sessions, attempts = self.store.purge_expired(now, now - timedelta(hours=24))
        if sessions or attempts:
            self.logger.info("expired_rows_purged", sessions=sessions, login_attempts=attempts)
        return sessions, attempts

"""Unit tests for the auth service.

Tests for:
- Signup, registration and admin creation
- Login for both credential flows, including 2FA and backup codes
- Refresh rotation and logout
- Email verification, password reset and PIN reset
- Credential changes revoking sessions
- Profile updates
"""

import time
from datetime import timedelta

import pytest

from clubauth.service import totp
from clubauth.service.errors import (
    AuthenticationError,
    ConflictError,
    ForbiddenError,
    NotFoundError,
    RateLimitedError,
    ServerError,
    ValidationError,
)
from clubauth.service.tokens import hash_refresh_token
from clubauth.storage.models import Role, utcnow

from conftest import RecordingTransport


def _ctx(runtime, principal):
    pair = runtime.auth._issue_tokens(principal)
    return runtime.auth.authenticate(pair.access_token)


class TestSignup:
    """Self-service signup provisions a tenant and its first admin."""

    async def test_signup_creates_tenant_and_unverified_admin(self, runtime, outbox):
        runtime.email.notification_email = "ops@rundeklar.dk"
        principal, tenant = await runtime.auth.signup(
            email="a@b.dk", password="Passw0rd!", club_name="Foo Bar", plan_id="basic"
        )
        assert tenant.id == "foo-bar"
        assert tenant.plan_id == "basic"
        assert principal.role == Role.ADMIN
        assert principal.email_verified is False
        assert principal.credentials_consistent()
        assert len(outbox.to("a@b.dk")) == 1
        assert len(outbox.to("ops@rundeklar.dk")) == 1

    async def test_taken_club_name_conflicts(self, runtime, outbox):
        await runtime.auth.signup(email="a@b.dk", password="Passw0rd!", club_name="Foo Bar")
        with pytest.raises(ConflictError):
            await runtime.auth.signup(email="c@d.dk", password="Passw0rd!", club_name="foo bar")

    async def test_existing_email_conflicts(self, runtime, outbox):
        await runtime.auth.signup(email="a@b.dk", password="Passw0rd!", club_name="Foo Bar")
        with pytest.raises(ConflictError) as excinfo:
            await runtime.auth.signup(email="a@b.dk", password="Passw0rd!", club_name="Other Club")
        assert excinfo.value.message == "En konto med denne email eksisterer allerede"
        assert runtime.tenants.get("other-club") is None

    async def test_reserved_club_name_rejected(self, runtime):
        with pytest.raises(ValidationError) as excinfo:
            await runtime.auth.signup(email="a@b.dk", password="Passw0rd!", club_name="Admin")
        assert excinfo.value.details == [{"path": ["clubName"], "message": "This subdomain is reserved"}]

    async def test_weak_password_lists_rule_failures(self, runtime):
        with pytest.raises(ValidationError) as excinfo:
            await runtime.auth.signup(email="a@b.dk", password="password", club_name="Foo Bar")
        assert excinfo.value.message == "Password does not meet requirements"
        assert all(d["path"] == ["password"] for d in excinfo.value.details)


class TestRegister:
    """Registration never reveals whether an email is known."""

    async def test_existing_email_is_absorbed(self, runtime, outbox, make_admin):
        make_admin(email="a@b.dk")
        await runtime.auth.register(email="a@b.dk", password="Passw0rd!", tenant_id="foo-bar")
        assert runtime.store.count_principals_by_tenant() == {"foo-bar": 1}
        assert outbox.sent == []

    async def test_new_email_creates_unverified_admin(self, runtime, outbox):
        await runtime.auth.register(email="new@b.dk", password="Passw0rd!", tenant_id="foo-bar")
        principal = runtime.store.find_admin_by_email("foo-bar", "new@b.dk")
        assert principal is not None
        assert not principal.email_verified
        assert len(outbox.to("new@b.dk")) == 1


class TestLogin:
    """Both credential flows and their failure modes."""

    async def test_admin_login_issues_tokens(self, runtime, make_admin):
        admin = make_admin()
        result = await runtime.auth.login(
            tenant_id="foo-bar", ip="1.1.1.1", email="admin@club.dk", password="Passw0rd!"
        )
        assert not result.requires_2fa
        assert runtime.auth.authenticate(result.tokens.access_token).club_id == admin.id
        session = runtime.store.get_live_session(hash_refresh_token(result.tokens.refresh_token))
        assert session.principal_id == admin.id
        assert result.tokens.principal.last_login is not None

    async def test_unverified_admin_forbidden(self, runtime, make_admin):
        make_admin(verified=False)
        with pytest.raises(ForbiddenError):
            await runtime.auth.login(
                tenant_id="foo-bar", ip="1.1.1.1", email="admin@club.dk", password="Passw0rd!"
            )

    async def test_coach_login_ignores_username_case(self, runtime, make_coach):
        coach = make_coach()
        result = await runtime.auth.login(tenant_id="foo-bar", ip="1.1.1.1", username="JOHN", pin="314159")
        assert result.tokens.principal.id == coach.id

    async def test_coach_cannot_use_password_flow(self, runtime, make_coach):
        make_coach(email="john@club.dk")
        with pytest.raises(AuthenticationError) as excinfo:
            await runtime.auth.login(
                tenant_id="foo-bar", ip="1.1.1.1", email="john@club.dk", password="Passw0rd!"
            )
        assert excinfo.value.message == "Invalid email or password"

    async def test_wrong_pin_recorded_as_failure(self, runtime, make_coach):
        make_coach()
        with pytest.raises(AuthenticationError) as excinfo:
            await runtime.auth.login(tenant_id="foo-bar", ip="1.1.1.1", username="john", pin="000000")
        assert excinfo.value.message == "Invalid username or PIN"
        assert runtime.limiter.check("john", "1.1.1.1").failures == 1

    async def test_other_tenant_cannot_log_in(self, runtime, make_coach):
        make_coach(tenant_id="foo-bar")
        with pytest.raises(AuthenticationError):
            await runtime.auth.login(tenant_id="other-club", ip="1.1.1.1", username="john", pin="314159")

    async def test_lockout_after_five_failures(self, runtime, make_admin):
        make_admin()
        for _ in range(5):
            with pytest.raises(AuthenticationError):
                await runtime.auth.login(
                    tenant_id="foo-bar", ip="1.1.1.1", email="admin@club.dk", password="Wrong!pass1"
                )
        with pytest.raises(RateLimitedError) as excinfo:
            await runtime.auth.login(
                tenant_id="foo-bar", ip="1.1.1.1", email="admin@club.dk", password="Passw0rd!"
            )
        assert excinfo.value.lockout_until > utcnow()


class TestTwoFactor:
    """TOTP enrolment, login challenge and backup codes."""

    async def _enrol(self, runtime, admin):
        ctx = _ctx(runtime, admin)
        setup = runtime.auth.setup_two_factor(ctx)
        assert setup.qr_code.startswith("data:image/png;base64,")
        codes = await runtime.auth.verify_two_factor(ctx, code=totp.generate_code(setup.secret, time.time()))
        return setup.secret, codes

    async def test_enrolment_returns_backup_codes_and_mails(self, runtime, outbox, make_admin):
        admin = make_admin()
        _, codes = await self._enrol(runtime, admin)
        assert len(codes) == 10
        stored = runtime.store.get_principal(admin.id)
        assert stored.two_factor_enabled
        assert codes[0] not in stored.two_factor_backup_codes
        assert outbox.to("admin@club.dk")[0]["subject"] == "Two-factor authentication enabled"

    async def test_login_requires_second_factor(self, runtime, make_admin):
        admin = make_admin()
        secret, _ = await self._enrol(runtime, admin)
        first = await runtime.auth.login(
            tenant_id="foo-bar", ip="1.1.1.1", email="admin@club.dk", password="Passw0rd!"
        )
        assert first.requires_2fa and first.tokens is None
        second = await runtime.auth.login(
            tenant_id="foo-bar",
            ip="1.1.1.1",
            email="admin@club.dk",
            password="Passw0rd!",
            totp_code=totp.generate_code(secret, time.time()),
        )
        assert second.tokens is not None

    async def test_backup_code_is_single_use(self, runtime, make_admin):
        admin = make_admin()
        _, codes = await self._enrol(runtime, admin)
        kwargs = dict(tenant_id="foo-bar", ip="1.1.1.1", email="admin@club.dk", password="Passw0rd!")
        assert (await runtime.auth.login(totp_code=codes[0], **kwargs)).tokens is not None
        assert len(runtime.store.get_principal(admin.id).two_factor_backup_codes) == 9
        with pytest.raises(AuthenticationError):
            await runtime.auth.login(totp_code=codes[0], **kwargs)

    async def test_backup_code_spent_once_from_stale_snapshots(self, runtime, make_admin):
        admin = make_admin()
        _, codes = await self._enrol(runtime, admin)
        first = runtime.store.get_principal(admin.id)
        second = runtime.store.get_principal(admin.id)
        assert runtime.auth._accept_second_factor(first, codes[0])
        assert not runtime.auth._accept_second_factor(second, codes[0])
        assert runtime.auth._accept_second_factor(second, codes[1])

    async def test_coach_cannot_use_two_factor(self, runtime, make_coach):
        ctx = _ctx(runtime, make_coach())
        with pytest.raises(ForbiddenError):
            runtime.auth.setup_two_factor(ctx)
        with pytest.raises(ForbiddenError):
            await runtime.auth.verify_two_factor(ctx, code="123456")
        with pytest.raises(ForbiddenError):
            await runtime.auth.disable_two_factor(ctx, password="314159")
        assert runtime.store.get_principal(ctx.club_id).two_factor_secret is None

    async def test_setup_twice_rejected(self, runtime, make_admin):
        admin = make_admin()
        await self._enrol(runtime, admin)
        with pytest.raises(ValidationError):
            runtime.auth.setup_two_factor(_ctx(runtime, admin))

    async def test_disable_needs_password(self, runtime, make_admin):
        admin = make_admin()
        await self._enrol(runtime, admin)
        ctx = _ctx(runtime, admin)
        with pytest.raises(AuthenticationError):
            await runtime.auth.disable_two_factor(ctx, password="Wrong!pass1")
        await runtime.auth.disable_two_factor(ctx, password="Passw0rd!")
        stored = runtime.store.get_principal(admin.id)
        assert not stored.two_factor_enabled
        assert stored.two_factor_secret is None


class TestSessions:
    """Refresh rotation and logout."""

    async def test_refresh_rotates_once(self, runtime, make_coach):
        coach = make_coach()
        pair = runtime.auth._issue_tokens(coach)
        rotated = runtime.auth.refresh(pair.refresh_token)
        assert rotated.refresh_token != pair.refresh_token
        with pytest.raises(AuthenticationError):
            runtime.auth.refresh(pair.refresh_token)
        assert len(runtime.store.list_sessions(coach.id)) == 1
        runtime.auth.refresh(rotated.refresh_token)

    def test_logout_twice(self, runtime, make_coach):
        pair = runtime.auth._issue_tokens(make_coach())
        assert runtime.auth.logout(pair.refresh_token) is True
        assert runtime.auth.logout(pair.refresh_token) is False

    def test_authenticate_uses_stored_role(self, runtime, make_admin):
        admin = make_admin()
        pair = runtime.auth._issue_tokens(admin)
        runtime.store.set_role(admin.id, Role.SUPER_ADMIN)
        assert runtime.auth.authenticate(pair.access_token).role == Role.SUPER_ADMIN

    def test_deleted_principal_token_rejected(self, runtime, make_coach):
        coach = make_coach()
        pair = runtime.auth._issue_tokens(coach)
        runtime.store.delete_coach("foo-bar", coach.id)
        with pytest.raises(AuthenticationError):
            runtime.auth.authenticate(pair.access_token)

    def test_purge_expired_sessions(self, runtime, make_coach):
        coach = make_coach()
        pair = runtime.auth._issue_tokens(coach)
        session = runtime.store.get_live_session(hash_refresh_token(pair.refresh_token))
        runtime.store.sessions[session.id].expires_at = utcnow() - timedelta(minutes=1)
        assert runtime.auth.purge_expired()[0] == 1


class TestEmailVerificationAndPasswordReset:
    """Token-based flows for admins."""

    async def test_verify_email_is_one_shot(self, runtime, outbox):
        principal, _ = await runtime.auth.signup(email="a@b.dk", password="Passw0rd!", club_name="Foo Bar")
        token = runtime.store.get_principal(principal.id).email_verification_token
        assert runtime.auth.verify_email(token).email_verified
        with pytest.raises(ValidationError):
            runtime.auth.verify_email(token)

    async def test_expired_verification_rejected(self, runtime, outbox):
        principal, _ = await runtime.auth.signup(email="a@b.dk", password="Passw0rd!", club_name="Foo Bar")
        runtime.store.set_email_verification(principal.id, "tok", utcnow() - timedelta(seconds=1))
        with pytest.raises(ValidationError):
            runtime.auth.verify_email("tok")

    async def test_forgot_password_unknown_email_is_silent(self, runtime, outbox):
        await runtime.auth.forgot_password(email="nobody@b.dk", tenant_id="foo-bar")
        assert outbox.sent == []

    async def test_reset_password_revokes_sessions(self, runtime, outbox, make_admin):
        admin = make_admin()
        runtime.auth._issue_tokens(admin)
        await runtime.auth.forgot_password(email="admin@club.dk", tenant_id="foo-bar")
        token = runtime.store.get_principal(admin.id).password_reset_token
        assert token in outbox.to("admin@club.dk")[0]["html"]
        await runtime.auth.reset_password(token=token, password="N3w!Password")
        assert runtime.store.list_sessions(admin.id) == []
        result = await runtime.auth.login(
            tenant_id="foo-bar", ip="1.1.1.1", email="admin@club.dk", password="N3w!Password"
        )
        assert result.tokens is not None
        with pytest.raises(ValidationError):
            await runtime.auth.reset_password(token=token, password="An0ther!Password")


class TestCredentialChanges:
    """Password and PIN changes end every session."""

    async def test_change_password(self, runtime, make_admin):
        admin = make_admin()
        ctx = _ctx(runtime, admin)
        with pytest.raises(AuthenticationError):
            await runtime.auth.change_password(ctx, current_password="nope", new_password="N3w!Password")
        await runtime.auth.change_password(ctx, current_password="Passw0rd!", new_password="N3w!Password")
        assert runtime.store.list_sessions(admin.id) == []

    async def test_coach_cannot_change_password(self, runtime, make_coach):
        ctx = _ctx(runtime, make_coach())
        with pytest.raises(ForbiddenError):
            await runtime.auth.change_password(ctx, current_password="x", new_password="N3w!Password")

    async def test_change_pin(self, runtime, make_coach):
        coach = make_coach()
        ctx = _ctx(runtime, coach)
        with pytest.raises(AuthenticationError):
            await runtime.auth.change_pin(ctx, current_pin="000000", new_pin="271828")
        await runtime.auth.change_pin(ctx, current_pin="314159", new_pin="271828")
        assert runtime.store.list_sessions(coach.id) == []

    async def test_admin_cannot_change_pin(self, runtime, make_admin):
        ctx = _ctx(runtime, make_admin())
        with pytest.raises(NotFoundError):
            await runtime.auth.change_pin(ctx, current_pin="314159", new_pin="271828")

    async def test_new_pin_format_checked(self, runtime, make_coach):
        ctx = _ctx(runtime, make_coach())
        with pytest.raises(ValidationError) as excinfo:
            await runtime.auth.change_pin(ctx, current_pin="314159", new_pin="12ab56")
        assert excinfo.value.details[0]["path"] == ["newPIN"]


class TestPinReset:
    """Three-phase PIN reset."""

    async def test_request_validate_reset(self, runtime, outbox, make_coach):
        coach = make_coach()
        await runtime.auth.request_pin_reset(email="john@club.dk", username="john", tenant_id="foo-bar")
        token = runtime.store.get_principal(coach.id).pin_reset_token
        assert token in outbox.to("john@club.dk")[0]["html"]
        assert runtime.auth.validate_pin_reset(token=token, tenant_id="foo-bar") == "John"
        assert await runtime.auth.reset_pin(token=token, pin="271828", tenant_id="foo-bar") == "John"
        result = await runtime.auth.login(tenant_id="foo-bar", ip="1.1.1.1", username="john", pin="271828")
        assert result.tokens is not None
        with pytest.raises(ValidationError):
            runtime.auth.validate_pin_reset(token=token, tenant_id="foo-bar")

    async def test_token_bound_to_tenant(self, runtime, outbox, make_coach):
        coach = make_coach()
        await runtime.auth.request_pin_reset(email="john@club.dk", username="john", tenant_id="foo-bar")
        token = runtime.store.get_principal(coach.id).pin_reset_token
        with pytest.raises(ValidationError):
            runtime.auth.validate_pin_reset(token=token, tenant_id="other-club")

    def test_expired_token(self, runtime, make_coach):
        coach = make_coach()
        runtime.store.set_pin_reset_token(coach.id, "tok", utcnow() - timedelta(seconds=1))
        with pytest.raises(ValidationError) as excinfo:
            runtime.auth.validate_pin_reset(token="tok", tenant_id="foo-bar")
        assert excinfo.value.message == "Reset token has expired"

    async def test_delivery_failure_surfaces(self, runtime, make_coach):
        make_coach()
        runtime.email.transport = RecordingTransport(fail=True)
        with pytest.raises(ServerError) as excinfo:
            await runtime.auth.request_pin_reset(email="john@club.dk", username="john", tenant_id="foo-bar")
        assert excinfo.value.message == "Failed to send PIN reset email"

    async def test_unknown_coach_is_silent(self, runtime, outbox):
        await runtime.auth.request_pin_reset(email="x@club.dk", username="nobody", tenant_id="foo-bar")
        assert outbox.sent == []


class TestProfile:
    """Profile updates and whoami."""

    async def test_email_change_requires_reverification(self, runtime, outbox, make_admin):
        admin = make_admin()
        principal, message = await runtime.auth.update_profile(_ctx(runtime, admin), email="new@club.dk")
        assert principal.email == "new@club.dk"
        assert not principal.email_verified
        assert message.startswith("Email updated")
        assert len(outbox.to("new@club.dk")) == 1

    async def test_email_in_use_conflicts(self, runtime, make_admin):
        admin = make_admin()
        make_admin(email="taken@club.dk")
        with pytest.raises(ConflictError):
            await runtime.auth.update_profile(_ctx(runtime, admin), email="taken@club.dk")

    async def test_same_email_is_noop(self, runtime, make_admin):
        admin = make_admin()
        principal, message = await runtime.auth.update_profile(_ctx(runtime, admin), email="ADMIN@club.dk")
        assert message == "Profile updated successfully"
        assert principal.email_verified

    def test_whoami_reads_current_row(self, runtime, make_admin):
        admin = make_admin()
        ctx = _ctx(runtime, admin)
        runtime.store.delete_principal_sessions(admin.id)
        assert runtime.auth.whoami(ctx).id == admin.id

"""Integration tests for the /auth HTTP surface.

Tests the complete auth flow including:
- Admin signup and enumeration-resistant registration
- Coach PIN login, refresh rotation and logout
- Login lockout
- PIN change invalidating sessions
- HttpOnly cookie transport
- Error envelope, CORS and OPTIONS handling
"""

from datetime import datetime, timedelta
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

from clubauth import app as app_module
from clubauth.service.tokens import hash_refresh_token
from clubauth.storage.models import Role, utcnow


@pytest.fixture
def client():
    """Create a test client for the API."""
    return TestClient(app_module.app)


def _bearer(runtime, principal):
    token = runtime.auth._issue_tokens(principal).access_token
    return {"Authorization": f"Bearer {token}"}


def _coach_login(client):
    response = client.post("/auth/login", json={"tenantId": "foo-bar", "username": "John", "pin": "314159"})
    assert response.status_code == 200, response.text
    return response.json()


class TestSignupFlow:
    """Admin self-service signup."""

    def test_signup_happy_path(self, client, runtime, outbox):
        runtime.email.notification_email = "ops@rundeklar.dk"
        response = client.post(
            "/auth/signup",
            json={"email": "a@b.dk", "password": "Passw0rd!", "clubName": "Foo Bar", "planId": "basic"},
        )

        assert response.status_code == 201
        data = response.json()
        assert data["success"] is True
        assert data["club"]["email"] == "a@b.dk"
        assert data["club"]["tenantId"] == "foo-bar"
        assert data["club"]["emailVerified"] is False
        assert (Path(runtime.settings.tenant_config_dir) / "foo-bar.json").exists()
        assert runtime.store.count_principals_by_tenant() == {"foo-bar": 1}
        assert runtime.store.find_admin_by_email("foo-bar", "a@b.dk").role == Role.ADMIN
        assert len(outbox.to("a@b.dk")) == 1
        assert len(outbox.to("ops@rundeklar.dk")) == 1

    def test_signup_duplicate_club_conflicts(self, client, outbox):
        body = {"email": "a@b.dk", "password": "Passw0rd!", "clubName": "Foo Bar"}
        client.post("/auth/signup", json=body)
        response = client.post("/auth/signup", json={**body, "email": "c@d.dk"})
        assert response.status_code == 409

    def test_signup_weak_password_details(self, client):
        response = client.post(
            "/auth/signup", json={"email": "a@b.dk", "password": "password1", "clubName": "Foo Bar"}
        )
        assert response.status_code == 400
        data = response.json()
        assert data["error"] == "Password does not meet requirements"
        assert {"path": ["password"], "message": "Password must contain at least one uppercase letter"} in data[
            "details"
        ]

    def test_signup_validates_email_format(self, client):
        response = client.post(
            "/auth/signup", json={"email": "invalid-email", "password": "Passw0rd!", "clubName": "Foo Bar"}
        )
        assert response.status_code == 400
        data = response.json()
        assert data["error"] == "Validation error"
        assert data["details"] == [{"path": ["email"], "message": "Invalid email address"}]


class TestRegistration:
    """Registration never reveals existing accounts."""

    def test_existing_email_gets_generic_success(self, client, runtime, outbox, make_admin):
        make_admin(email="a@b.dk")
        response = client.post(
            "/auth/register", json={"email": "a@b.dk", "password": "Passw0rd!", "tenantId": "foo-bar"}
        )
        assert response.status_code == 201
        assert response.json()["message"].startswith("If an account does not already exist")
        assert runtime.store.count_principals_by_tenant() == {"foo-bar": 1}
        assert outbox.sent == []

    def test_new_email_gets_same_body(self, client, make_admin, outbox):
        make_admin(email="a@b.dk")
        existing = client.post(
            "/auth/register", json={"email": "a@b.dk", "password": "Passw0rd!", "tenantId": "foo-bar"}
        )
        fresh = client.post(
            "/auth/register", json={"email": "z@b.dk", "password": "Passw0rd!", "tenantId": "foo-bar"}
        )
        assert existing.json() == fresh.json()


class TestLogin:
    """Coach and admin login over HTTP."""

    def test_coach_login_with_correct_pin(self, client, runtime, make_coach):
        coach = make_coach()
        data = _coach_login(client)

        assert data["club"]["role"] == "coach"
        [session] = runtime.store.list_sessions(coach.id)
        assert session.token_hash == hash_refresh_token(data["refreshToken"])
        remaining = session.expires_at - utcnow()
        assert timedelta(days=7) - timedelta(minutes=1) < remaining <= timedelta(days=7)

    def test_rate_limit_trip(self, client, runtime, make_admin):
        admin = make_admin(email="a@b.dk")
        for _ in range(5):
            response = client.post(
                "/auth/login", json={"tenantId": "foo-bar", "email": "a@b.dk", "password": "Wrong!pass1"}
            )
            assert response.status_code == 401
        response = client.post(
            "/auth/login", json={"tenantId": "foo-bar", "email": "a@b.dk", "password": "Passw0rd!"}
        )

        assert response.status_code == 429
        lockout = datetime.fromisoformat(response.json()["lockoutUntil"])
        assert lockout > utcnow()
        assert runtime.store.list_sessions(admin.id) == []

    def test_failures_keyed_by_forwarded_ip(self, client, runtime, make_coach):
        make_coach()
        bad = {"tenantId": "foo-bar", "username": "john", "pin": "000000"}
        client.post("/auth/login", json=bad)
        client.post("/auth/login", json=bad, headers={"X-Forwarded-For": "203.0.113.7, 10.0.0.1"})
        assert runtime.limiter.check("john", "unknown").failures == 1
        assert runtime.limiter.check("john", "203.0.113.7").failures == 1
        assert runtime.limiter.check("john", "testclient").failures == 0

    def test_unverified_admin_forbidden(self, client, make_admin):
        make_admin(email="a@b.dk", verified=False)
        response = client.post(
            "/auth/login", json={"tenantId": "foo-bar", "email": "a@b.dk", "password": "Passw0rd!"}
        )
        assert response.status_code == 403

    def test_missing_credential_pair(self, client):
        response = client.post("/auth/login", json={"tenantId": "foo-bar", "username": "john"})
        assert response.status_code == 400
        data = response.json()
        assert data["error"] == "Validation error"
        assert data["details"][0]["message"] == "Either email/password or username/PIN must be provided"

    def test_two_factor_challenge(self, client, runtime, make_admin):
        admin = make_admin(email="a@b.dk")
        runtime.store.set_two_factor_secret(admin.id, "JBSWY3DPEHPK3PXP")
        runtime.store.enable_two_factor(admin.id, [])
        response = client.post(
            "/auth/login", json={"tenantId": "foo-bar", "email": "a@b.dk", "password": "Passw0rd!"}
        )
        assert response.status_code == 200
        assert response.json() == {"requires2FA": True, "message": "Two-factor authentication required"}


class TestSessionLifecycle:
    """Refresh rotation, logout and credential changes."""

    def test_refresh_rotation_single_shot(self, client, make_coach):
        make_coach()
        first = _coach_login(client)["refreshToken"]

        rotated = client.post("/auth/refresh", json={"refreshToken": first})
        assert rotated.status_code == 200
        second = rotated.json()["refreshToken"]
        assert second != first
        assert "accessToken" in rotated.json()

        assert client.post("/auth/refresh", json={"refreshToken": first}).status_code == 401
        assert client.post("/auth/refresh", json={"refreshToken": second}).status_code == 200

    def test_change_pin_invalidates_sessions(self, client, runtime, make_coach):
        coach = make_coach()
        tokens = _coach_login(client)
        response = client.post(
            "/auth/change-pin",
            json={"currentPIN": "314159", "newPIN": "271828"},
            headers={"Authorization": f"Bearer {tokens['accessToken']}"},
        )

        assert response.status_code == 200
        assert runtime.store.list_sessions(coach.id) == []
        assert client.post("/auth/refresh", json={"refreshToken": tokens["refreshToken"]}).status_code == 401

    def test_logout_twice(self, client, runtime, make_coach):
        coach = make_coach()
        refresh = _coach_login(client)["refreshToken"]
        assert client.post("/auth/logout", json={"refreshToken": refresh}).status_code == 200
        assert client.post("/auth/logout", json={"refreshToken": refresh}).status_code == 200
        assert runtime.store.list_sessions(coach.id) == []

    def test_change_password_requires_current(self, client, runtime, make_admin):
        admin = make_admin()
        response = client.post(
            "/auth/change-password",
            json={"currentPassword": "nope", "newPassword": "N3w!Password"},
            headers=_bearer(runtime, admin),
        )
        assert response.status_code == 401
        assert response.json() == {"error": "Current password is incorrect"}


class TestAccountEndpoints:
    """Verification, resets, 2FA setup and profile."""

    def test_verify_email_twice(self, client, runtime, outbox):
        client.post("/auth/signup", json={"email": "a@b.dk", "password": "Passw0rd!", "clubName": "Foo Bar"})
        token = runtime.store.find_admin_by_email("foo-bar", "a@b.dk").email_verification_token
        assert client.post("/auth/verify-email", json={"token": token}).status_code == 200
        assert client.post("/auth/verify-email", json={"token": token}).status_code == 400

    def test_forgot_password_is_generic(self, client, outbox):
        response = client.post("/auth/forgot-password", json={"email": "nobody@b.dk", "tenantId": "foo-bar"})
        assert response.status_code == 200
        assert outbox.sent == []

    def test_reset_pin_phases(self, client, runtime, outbox, make_coach):
        coach = make_coach()
        response = client.post(
            "/auth/reset-pin?action=request",
            json={"email": "john@club.dk", "username": "john", "tenantId": "foo-bar"},
        )
        assert response.status_code == 200
        token = runtime.store.get_principal(coach.id).pin_reset_token

        response = client.post("/auth/reset-pin?action=validate", json={"token": token, "tenantId": "foo-bar"})
        assert response.json() == {"success": True, "username": "John"}

        response = client.post(
            "/auth/reset-pin?action=reset", json={"token": token, "pin": "271828", "tenantId": "foo-bar"}
        )
        assert response.status_code == 200
        login = client.post("/auth/login", json={"tenantId": "foo-bar", "username": "john", "pin": "271828"})
        assert login.status_code == 200

    def test_reset_pin_unknown_action(self, client):
        response = client.post("/auth/reset-pin?action=bogus", json={})
        assert response.status_code == 400
        assert response.json()["error"].startswith("Invalid action")

    def test_reset_pin_validates_body(self, client):
        response = client.post("/auth/reset-pin?action=reset", json={"token": "t", "tenantId": "foo-bar"})
        assert response.status_code == 400
        assert response.json()["error"] == "Validation error"

    def test_setup_two_factor(self, client, runtime, make_admin):
        admin = make_admin()
        response = client.post("/auth/setup-2fa", headers=_bearer(runtime, admin))
        assert response.status_code == 200
        data = response.json()
        assert data["qrCode"].startswith("data:image/png;base64,")
        assert data["otpauthUrl"].startswith("otpauth://totp/")
        assert runtime.store.get_principal(admin.id).two_factor_secret == data["secret"]

    def test_whoami_and_update_profile(self, client, runtime, outbox, make_admin):
        admin = make_admin()
        headers = _bearer(runtime, admin)
        me = client.get("/auth/club", headers=headers)
        assert me.status_code == 200
        assert me.json()["email"] == "admin@club.dk"
        assert "password_hash" not in me.json()

        response = client.put("/auth/update-profile", json={"email": "new@club.dk"}, headers=headers)
        assert response.status_code == 200
        assert response.json()["club"]["emailVerified"] is False
        assert len(outbox.to("new@club.dk")) == 1

    def test_missing_bearer(self, client):
        response = client.get("/auth/club")
        assert response.status_code == 401
        assert response.json() == {"error": "Missing or invalid authorization header"}

    def test_invalid_bearer(self, client):
        response = client.get("/auth/club", headers={"Authorization": "Bearer nope"})
        assert response.status_code == 401
        assert response.json() == {"error": "Invalid or expired token"}

    def test_change_pin_is_coach_only(self, client, runtime, make_admin):
        response = client.post(
            "/auth/change-pin",
            json={"currentPIN": "314159", "newPIN": "271828"},
            headers=_bearer(runtime, make_admin()),
        )
        assert response.status_code == 403
        assert response.json() == {"error": "Coach access required"}

    def test_non_ascii_signature_is_401(self, client, runtime, make_admin):
        token = runtime.auth._issue_tokens(make_admin()).access_token
        head, payload, sig = token.split(".")
        mangled = f"Bearer {head}.{payload}.é{sig[1:]}".encode("latin-1")
        response = client.get("/auth/club", headers={"Authorization": mangled})
        assert response.status_code == 401
        assert response.json() == {"error": "Invalid or expired token"}


class TestCookieTransport:
    """USE_HTTPONLY_COOKIES moves tokens out of the body."""

    @pytest.fixture(autouse=True)
    def cookie_mode(self, runtime):
        runtime.settings.use_httponly_cookies = True

    def test_login_sets_cookies_and_omits_tokens(self, client, make_coach):
        make_coach()
        data = _coach_login(client)
        assert "accessToken" not in data
        assert "refreshToken" not in data
        assert client.cookies.get("auth_access_token")
        assert client.cookies.get("auth_refresh_token")

    def test_cookie_authenticates_and_refreshes(self, client, make_coach):
        make_coach()
        _coach_login(client)
        old_refresh = client.cookies.get("auth_refresh_token")
        assert client.get("/auth/club").status_code == 200

        response = client.post("/auth/refresh")
        assert response.status_code == 200
        assert client.cookies.get("auth_refresh_token") != old_refresh

    def test_logout_clears_cookies(self, client, runtime, make_coach):
        coach = make_coach()
        _coach_login(client)
        assert client.post("/auth/logout").status_code == 200
        assert runtime.store.list_sessions(coach.id) == []
        assert not client.cookies.get("auth_access_token")


class TestHttpEnvelope:
    """CORS, OPTIONS, security headers and the error shape."""

    def test_options_always_200(self, client):
        assert client.options("/auth/login").status_code == 200
        assert client.options("/no/such/path").status_code == 200

    def test_preflight_from_allowed_origin(self, client):
        response = client.options(
            "/auth/login",
            headers={"Origin": "http://localhost:5173", "Access-Control-Request-Method": "POST"},
        )
        assert response.status_code == 200
        assert response.headers["access-control-allow-origin"] == "http://localhost:5173"

    def test_preflight_from_unknown_origin(self, client):
        response = client.options(
            "/auth/login",
            headers={"Origin": "https://evil.example", "Access-Control-Request-Method": "POST"},
        )
        assert response.status_code == 200
        assert "access-control-allow-origin" not in response.headers

    def test_security_and_correlation_headers(self, client):
        response = client.get("/auth/club", headers={"X-Request-ID": "req-123"})
        assert response.headers["x-content-type-options"] == "nosniff"
        assert response.headers["x-frame-options"] == "DENY"
        assert response.headers["cache-control"] == "no-store"
        assert response.headers["x-request-id"] == "req-123"
        assert response.headers["content-type"].startswith("application/json")

    def test_unknown_route_is_json(self, client):
        response = client.get("/no/such/path")
        assert response.status_code == 404
        assert response.json() == {"error": "Not found"}

    def test_unexpected_error_is_generic(self, runtime, make_admin, monkeypatch):
        admin = make_admin()

        def _boom(ctx):
            raise RuntimeError("database exploded")

        monkeypatch.setattr(runtime.auth, "whoami", _boom)
        client = TestClient(app_module.app, raise_server_exceptions=False)
        response = client.get("/auth/club", headers=_bearer(runtime, admin))
        assert response.status_code == 500
        assert response.json() == {"error": "Internal server error"}

    def test_healthz(self, client):
        response = client.get("/healthz")
        assert response.status_code == 200
        assert response.json()["status"] == "healthy"

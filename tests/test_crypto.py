"""Unit tests for the credential primitives.

Tests for:
- Password and PIN hashing
- Password strength rules and the breach lookup
- TOTP codes and backup codes
- Access token minting and verification
"""

import time
from unittest.mock import AsyncMock, patch

import httpx

from clubauth.config import Settings
from clubauth.service import totp
from clubauth.service.passwords import (
    BreachChecker,
    hash_password,
    password_rule_errors,
    verify_password,
)
from clubauth.service.pins import generate_random_pin, hash_pin, is_valid_pin, pin_format_errors, verify_pin
from clubauth.service.tokens import AccessClaims, TokenService, generate_opaque_token, hash_refresh_token


class TestPasswordHashing:
    """Tests for argon2 password hashing."""

    def test_hash_verifies_original_password(self):
        stored = hash_password("Passw0rd!")
        assert stored.startswith("$argon2id$")
        assert verify_password(stored, "Passw0rd!")

    def test_wrong_password_rejected(self):
        stored = hash_password("Passw0rd!")
        assert not verify_password(stored, "Passw0rd?")

    def test_same_password_hashes_differently(self):
        assert hash_password("Passw0rd!") != hash_password("Passw0rd!")

    def test_malformed_hash_reads_as_mismatch(self):
        assert not verify_password("not-a-hash", "Passw0rd!")
        assert not verify_password(None, "Passw0rd!")


class TestPasswordRules:
    """Tests for the password policy."""

    def test_strong_password_has_no_errors(self):
        assert password_rule_errors("Passw0rd!") == []

    def test_each_missing_class_reported(self):
        errors = password_rule_errors("password")
        assert "Password must contain at least one uppercase letter" in errors
        assert "Password must contain at least one number" in errors
        assert "Password must contain at least one special character" in errors

    def test_too_short(self):
        assert "Password must be at least 8 characters long" in password_rule_errors("Pa0!")


class TestBreachChecker:
    """Tests for the k-anonymity breach lookup."""

    async def test_breached_password_reported_with_count(self):
        checker = BreachChecker("https://breach.example/range")
        with patch.object(checker, "breach_count", AsyncMock(return_value=42)):
            result = await checker.check_strength("Passw0rd!")
        assert not result.is_valid
        assert result.breach_count == 42
        assert "42 data breaches" in result.errors[0]

    async def test_disabled_checker_skips_lookup(self):
        checker = BreachChecker("https://breach.example/range", enabled=False)
        lookup = AsyncMock(return_value=5)
        with patch.object(checker, "breach_count", lookup):
            result = await checker.check_strength("Passw0rd!")
        assert result.is_valid
        lookup.assert_not_called()

    async def test_rule_failures_skip_lookup(self):
        checker = BreachChecker("https://breach.example/range")
        lookup = AsyncMock(return_value=5)
        with patch.object(checker, "breach_count", lookup):
            result = await checker.check_strength("weak")
        assert not result.is_valid
        lookup.assert_not_called()

    async def test_network_failure_counts_as_not_breached(self):
        checker = BreachChecker("https://breach.example/range", timeout=0.1)

        class _FailingClient:
            def __init__(self, *args, **kwargs):
                pass

            async def __aenter__(self):
                return self

            async def __aexit__(self, *exc):
                return False

            async def get(self, *args, **kwargs):
                raise httpx.ConnectError("unreachable")

        with patch("clubauth.service.passwords.httpx.AsyncClient", _FailingClient):
            assert await checker.breach_count("Passw0rd!") == 0


class TestPins:
    """Tests for PIN format and hashing."""

    def test_format_rules(self):
        assert is_valid_pin("314159")
        assert pin_format_errors("31415") == ["PIN skal være præcis 6 cifre"]
        assert "PIN skal kun indeholde tal" in pin_format_errors("31415a")

    def test_random_pin_is_six_digits(self):
        for _ in range(50):
            pin = generate_random_pin()
            assert is_valid_pin(pin)
            assert 100000 <= int(pin) <= 999999

    def test_hash_round_trip(self):
        stored = hash_pin("314159")
        assert verify_pin(stored, "314159")
        assert not verify_pin(stored, "271828")

    def test_hash_rejects_bad_format(self):
        try:
            hash_pin("12ab56")
        except ValueError as exc:
            assert "Invalid PIN format" in str(exc)
        else:
            raise AssertionError("expected ValueError")


class TestTotp:
    """Tests for TOTP generation and verification."""

    def test_current_code_accepted(self):
        secret = totp.generate_secret()
        now = time.time()
        code = totp.generate_code(secret, now)
        assert totp.verify_code(secret, code, now=now)

    def test_adjacent_step_accepted(self):
        secret = totp.generate_secret()
        now = 1_700_000_000.0
        previous = totp.generate_code(secret, now - 30)
        assert totp.verify_code(secret, previous, now=now)

    def test_zero_window_rejects_other_steps(self):
        secret = "GEZDGNBVGY3TQOJQGEZDGNBVGY3TQOJQ"
        assert totp.verify_code(secret, "287082", window=0, now=59)
        assert not totp.verify_code(secret, "287082", window=0, now=59 + 90)

    def test_known_rfc_vector(self):
        # RFC 6238 SHA-1 vector for T=59, truncated to 6 digits.
        secret = "GEZDGNBVGY3TQOJQGEZDGNBVGY3TQOJQ"
        assert totp.generate_code(secret, 59) == "287082"

    def test_non_numeric_code_rejected(self):
        assert not totp.verify_code(totp.generate_secret(), "abcdef")

    def test_otpauth_uri_names_issuer_and_account(self):
        uri = totp.otpauth_uri("ABC", "a@b.dk", "Herlev Hjorten")
        assert uri.startswith("otpauth://totp/Herlev%20Hjorten%3Aa%40b.dk?")
        assert "secret=ABC" in uri

    def test_qr_data_uri_is_png(self):
        assert totp.qr_data_uri("otpauth://totp/x?secret=ABC").startswith("data:image/png;base64,")

    def test_backup_code_hash_ignores_case_and_spacing(self):
        codes = totp.generate_backup_codes()
        assert len(codes) == totp.BACKUP_CODE_COUNT
        assert totp.hash_backup_code(f" {codes[3].lower()} ") == totp.hash_backup_code(codes[3])
        assert totp.hash_backup_code("nope") != totp.hash_backup_code(codes[3])


class TestAccessTokens:
    """Tests for HS256 access tokens."""

    def _service(self, **overrides):
        return TokenService(Settings(jwt_secret="unit-test-secret", **overrides))

    def _claims(self):
        return AccessClaims(club_id="c1", tenant_id="foo-bar", role="coach", email="j@club.dk")

    def test_round_trip(self):
        service = self._service()
        assert service.verify_access_token(service.mint_access_token(self._claims())) == self._claims()

    def test_tampered_signature_rejected(self):
        service = self._service()
        token = service.mint_access_token(self._claims())
        head, payload, sig = token.split(".")
        flipped = ("A" if sig[0] != "A" else "B") + sig[1:]
        assert service.verify_access_token(f"{head}.{payload}.{flipped}") is None

    def test_non_ascii_signature_rejected(self):
        service = self._service()
        head, payload, sig = service.mint_access_token(self._claims()).split(".")
        assert service.verify_access_token(f"{head}.{payload}.é{sig[1:]}") is None

    def test_expired_token_rejected(self):
        service = self._service()
        token = service.mint_access_token(self._claims(), now=time.time() - 16 * 60)
        assert service.verify_access_token(token) is None

    def test_other_secret_rejected(self):
        token = self._service().mint_access_token(self._claims())
        other = TokenService(Settings(jwt_secret="another-secret"))
        assert other.verify_access_token(token) is None

    def test_other_issuer_rejected(self):
        token = self._service(jwt_issuer="someone-else").mint_access_token(self._claims())
        assert self._service().verify_access_token(token) is None

    def test_garbage_rejected(self):
        assert self._service().verify_access_token("not.a.token") is None
        assert self._service().verify_access_token("") is None


class TestOpaqueTokens:
    """Tests for refresh and reset tokens."""

    def test_opaque_token_is_64_hex(self):
        token = generate_opaque_token()
        assert len(token) == 64
        int(token, 16)

    def test_refresh_hash_is_sha256_hex(self):
        assert hash_refresh_token("abc") == (
            "ba7816bf8f01cfea414140de5dae2223b00361a396177a9cb410ff61f20015ad"
        )

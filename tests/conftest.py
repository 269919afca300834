import asyncio
import inspect
import os
import sys
import tempfile
from pathlib import Path

# Create temp directory for tests before any imports that might initialize runtime
_test_tmp_dir = tempfile.mkdtemp(prefix="clubauth_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TENANT_CONFIG_DIR", os.path.join(_test_tmp_dir, "tenants"))
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("NODE_ENV", "test")
os.environ.setdefault("PASSWORD_BREACH_CHECK", "false")
os.environ.setdefault("SESSION_REAPER_INTERVAL_SECONDS", "0")
os.environ.setdefault("ALLOWED_ORIGINS", "http://localhost:5173")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from clubauth.service.email import EmailDeliveryError  # noqa: E402
from clubauth.service.passwords import hash_password  # noqa: E402
from clubauth.service.pins import hash_pin  # noqa: E402
from clubauth.service.runtime import reset_runtime_for_tests  # noqa: E402
from clubauth.storage.models import Principal, Role  # noqa: E402


class RecordingTransport:
    """Email transport that keeps every message instead of sending it."""

    def __init__(self, fail: bool = False):
        self.sent = []
        self.fail = fail

    def send(self, sender, to, subject, html, text=None):
        if self.fail:
            raise EmailDeliveryError("transport down")
        self.sent.append({"from": sender, "to": to, "subject": subject, "html": html, "text": text})

    def to(self, address):
        return [m for m in self.sent if m["to"] == address]


@pytest.fixture(autouse=True)
def reset_runtime_state(tmp_path, monkeypatch):
    # Each test gets its own snapshot and tenant directories.
    monkeypatch.setenv("SHARED_FS_ROOT", str(tmp_path / "state"))
    monkeypatch.setenv("TENANT_CONFIG_DIR", str(tmp_path / "tenants"))
    runtime = reset_runtime_for_tests()
    yield runtime
    reset_runtime_for_tests()


@pytest.fixture
def runtime(reset_runtime_state):
    return reset_runtime_state


@pytest.fixture
def outbox(runtime):
    transport = RecordingTransport()
    runtime.email.transport = transport
    return transport


@pytest.fixture
def make_admin(runtime):
    def _make(
        email="admin@club.dk",
        password="Passw0rd!",
        tenant_id="foo-bar",
        role=Role.ADMIN,
        verified=True,
    ):
        principal = Principal.new(
            tenant_id=tenant_id,
            role=role,
            email=email,
            password_hash=hash_password(password),
            email_verified=verified,
        )
        return runtime.store.create_principal(principal)

    return _make


@pytest.fixture
def make_coach(runtime):
    def _make(username="john", pin="314159", tenant_id="foo-bar", email=None):
        principal = Principal.new(
            tenant_id=tenant_id,
            role=Role.COACH,
            email=email or f"{username}@club.dk",
            username=username,
            pin_hash=hash_pin(pin),
            email_verified=True,
        )
        return runtime.store.create_principal(principal)

    return _make


def pytest_pyfunc_call(pyfuncitem):
    if inspect.iscoroutinefunction(pyfuncitem.obj):
        call_kwargs = {
            name: pyfuncitem.funcargs[name]
            for name in pyfuncitem._fixtureinfo.argnames
            if name in pyfuncitem.funcargs
        }
        asyncio.run(pyfuncitem.obj(**call_kwargs))
        return True
    return None


def pytest_configure(config):
    config.addinivalue_line("markers", "asyncio: mark test as async")

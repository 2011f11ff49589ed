import asyncio
import inspect
import os
import sys
from pathlib import Path

# Signing secrets must exist before any module reads settings
os.environ.setdefault("ACCESS_TOKEN_SECRET", "access-secret-for-automated-tests-only-0123456789")
os.environ.setdefault("REFRESH_TOKEN_SECRET", "refresh-secret-for-automated-tests-only-9876543210")
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("LOG_JSON", "false")

import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from ticketdesk.app import create_app  # noqa: E402
from ticketdesk.config import Settings, reset_settings_cache  # noqa: E402
from ticketdesk.service.rate_limit import MemoryRateLimitBackend  # noqa: E402
from ticketdesk.service.runtime import Runtime  # noqa: E402
from ticketdesk.storage.memory import MemoryStore  # noqa: E402
from ticketdesk.storage.models import ApprovalStatus, Department, Role  # noqa: E402

TEST_PASSWORD = "CorrectHorse42!"


def make_settings(**overrides) -> Settings:
    values = dict(
        access_token_secret="access-secret-for-automated-tests-only-0123456789",
        refresh_token_secret="refresh-secret-for-automated-tests-only-9876543210",
        test_mode=True,
    )
    values.update(overrides)
    return Settings(**values)


@pytest.fixture(autouse=True)
def reset_settings_state():
    reset_settings_cache()
    yield
    reset_settings_cache()


@pytest.fixture
def settings():
    return make_settings()


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def runtime(settings, store):
    """Runtime wired to in-memory storage and rate-limit counters."""
    return Runtime(settings, store=store, rate_limit_backend=MemoryRateLimitBackend())


@pytest.fixture
def client(runtime):
    return TestClient(create_app(runtime))


@pytest.fixture
def create_account(runtime):
    """Factory creating an account with ``TEST_PASSWORD`` directly in the store."""

    def _create(
        email: str = "u@x.com",
        role: Role = Role.USER,
        *,
        approval_status: ApprovalStatus = ApprovalStatus.APPROVED,
        department: Department | None = None,
        legacy_refresh_token: str | None = None,
        password: str = TEST_PASSWORD,
    ):
        if role in (Role.DEPARTMENT_USER, Role.EMPLOYEE) and department is None:
            department = Department.OPERATIONS
        return runtime.store.create_account(
            "Test Account",
            email,
            runtime.auth.hash_password(password),
            role,
            department=department,
            approval_status=approval_status,
            legacy_refresh_token=legacy_refresh_token,
        )

    return _create


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

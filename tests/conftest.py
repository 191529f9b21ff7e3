import asyncio
import inspect
import os
import sys
from pathlib import Path

# Fast, deterministic settings before any import that might build the runtime
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("SECRET_KEY", "test-secret-key-for-testing-only-do-not-use-in-production")
os.environ.setdefault("WORK_FACTOR", "1")
os.environ.setdefault("ARGON2_MEMORY_COST_KIB", "1024")
os.environ.setdefault("ARGON2_PARALLELISM", "1")
# TestClient talks plain http to testserver; secure cookies would never be sent back
os.environ.setdefault("COOKIE_SECURE", "false")
os.environ.setdefault("REVOCATION_BACKEND", "memory")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from authcore.config import HashAlgorithm  # noqa: E402
from authcore.service.csrf import CsrfGuard  # noqa: E402
from authcore.service.passwords import PasswordHasher  # noqa: E402
from authcore.service.runtime import reset_runtime_for_tests  # noqa: E402
from authcore.service.session import AuthSessionCoordinator  # noqa: E402
from authcore.service.tokens import TokenAuthority  # noqa: E402
from authcore.storage.memory import MemoryCredentialStore  # noqa: E402
from authcore.storage.revocation import MemoryRevocationSet  # noqa: E402

TEST_SECRET = b"unit-test-secret-key-0123456789abcdef"


class FakeClock:
    """Settable clock shared by the components under test."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def hasher():
    """Argon2id hasher with the cheapest parameters argon2 accepts."""
    return PasswordHasher(
        algorithm=HashAlgorithm.ARGON2ID,
        work_factor=1,
        argon2_memory_cost_kib=1024,
        argon2_parallelism=1,
    )


@pytest.fixture
def bcrypt_hasher():
    return PasswordHasher(algorithm=HashAlgorithm.BCRYPT, work_factor=4)


@pytest.fixture
def revocations(clock):
    return MemoryRevocationSet(shards=4, leeway_seconds=30, clock=clock)


@pytest.fixture
def tokens(revocations, clock):
    return TokenAuthority(
        TEST_SECRET,
        default_ttl_seconds=900,
        max_ttl_seconds=86400,
        clock_skew_seconds=30,
        revocations=revocations,
        clock=clock,
    )


@pytest.fixture
def csrf():
    return CsrfGuard(TEST_SECRET)


@pytest.fixture
def credential_store():
    return MemoryCredentialStore()


@pytest.fixture
def coordinator(hasher, tokens, csrf, credential_store, revocations, clock):
    return AuthSessionCoordinator(
        hasher,
        tokens,
        csrf,
        credential_store,
        revocations=revocations,
        store_timeout=1.0,
        clock=clock,
    )


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

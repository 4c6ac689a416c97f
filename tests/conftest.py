import asyncio
import inspect
import os
import sys
import tempfile
from pathlib import Path

# Create temp directory for tests before any imports that might initialize runtime
_test_tmp_dir = tempfile.mkdtemp(prefix="recordkeep_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
os.environ.setdefault("LOG_LEVEL", "WARNING")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from recordkeep.config import Settings  # noqa: E402
from recordkeep.service.auth import AuthenticationService  # noqa: E402
from recordkeep.service.passwords import Argon2PasswordHasher  # noqa: E402
from recordkeep.service.runtime import reset_runtime_for_tests  # noqa: E402
from recordkeep.service.tokens import CredentialIssuer  # noqa: E402
from recordkeep.storage.collection import MemoryCollection  # noqa: E402
from recordkeep.storage.sessions import RefreshSessionStore  # noqa: E402
from recordkeep.storage.users import RoleCatalog, UserDirectory  # noqa: E402


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def settings():
    """Create test settings."""
    return Settings(
        jwt_secret="Test-Secret-Key_for-Automation-Only-987654321!",
        access_token_ttl_minutes=15,
        use_memory_store=True,
        test_mode=True,
    )


@pytest.fixture
def users():
    return UserDirectory(MemoryCollection("users"))


@pytest.fixture
def roles():
    return RoleCatalog(MemoryCollection("roles", unique_fields=("name",)))


@pytest.fixture
def sessions():
    return RefreshSessionStore(MemoryCollection("refresh_sessions", unique_fields=("token",)))


@pytest.fixture
def issuer(settings):
    return CredentialIssuer(settings)


@pytest.fixture
def hasher():
    # Minimal argon2 cost keeps the suite fast
    return Argon2PasswordHasher(time_cost=1, memory_cost=8, parallelism=1)


@pytest.fixture
def make_auth_service(users, roles, sessions, issuer, hasher):
    """Build an AuthenticationService over the shared memory stores."""

    def _make(settings: Settings) -> AuthenticationService:
        return AuthenticationService(settings, users, roles, sessions, issuer, hasher)

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

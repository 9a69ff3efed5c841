import asyncio
import inspect
import os
import sys
import tempfile
from pathlib import Path

# Create temp directory for tests before any imports that might initialize runtime
_test_tmp_dir = tempfile.mkdtemp(prefix="tenantgate_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
# Blank REDIS_URL selects the in-process revocation store; point it at a real
# Redis to run the same suite through SyncRedisCache.
os.environ.setdefault("REDIS_URL", "")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from tenantgate.service.runtime import get_runtime, reset_runtime_for_tests  # noqa: E402
from tenantgate.storage.models import Role  # noqa: E402

PASSWORD = "CorrectHorse1!"


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


class Seed:
    """Builds users, orgs and memberships straight through the runtime."""

    def __init__(self, runtime):
        self.runtime = runtime

    def user(self, email, password=PASSWORD, *, super_admin=False, name=None):
        hasher = self.runtime.hasher
        return self.runtime.store.create_user(
            email,
            name=name,
            password_hash=hasher.hash(password) if password else None,
            password_algo=hasher.algorithm if password else None,
            is_super_admin=super_admin,
        )

    def org(self, name="Acme"):
        from tenantgate.storage.common import slugify

        return self.runtime.store.create_org(name, slugify(name))

    def member(self, user, org, role=Role.USER):
        return self.runtime.store.create_membership(user.id, org.id, role)


@pytest.fixture
def runtime():
    return get_runtime()


@pytest.fixture
def seed(runtime):
    return Seed(runtime)


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

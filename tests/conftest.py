import asyncio
import inspect
import os
import sys
import tempfile
import time
from pathlib import Path

# Create temp directory for tests before any imports that might initialize runtime
_test_tmp_dir = tempfile.mkdtemp(prefix="keeper_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
# RFC 8032 test vector 1 seed; never use outside tests
os.environ.setdefault(
    "JWT_KEY", "9d61b19deffd5a60ba844af492ec2cc44449c5697b326919703bac031cae7f60"
)

import pytest  # noqa: E402
from argon2 import PasswordHasher, Type  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from keeper.service.passwords import PasswordVerifier  # noqa: E402
from keeper.service.runtime import reset_runtime_for_tests  # noqa: E402

TEST_KEY_HEX = os.environ["JWT_KEY"]


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def fast_verifier():
    """Argon2id verifier with minimal cost parameters."""
    return PasswordVerifier(
        PasswordHasher(time_cost=1, memory_cost=8, parallelism=1, type=Type.ID)
    )


class FakeClock:
    """Settable wall clock in seconds."""

    def __init__(self, now: float | None = None):
        self.now = float(int(time.time())) if now is None else now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


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

import asyncio
import inspect
import os
import sys
import tempfile
from pathlib import Path

# Environment must be in place before anything imports the app or the runtime
_test_tmp_dir = tempfile.mkdtemp(prefix="ephemera_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
# In-process rate limiting; no Redis needed for the suite
os.environ.setdefault("REDIS_URL", "")
os.environ.setdefault("SESSION_SWEEP_ENABLED", "false")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from ephemera.service.passwords import CredentialVerifier  # noqa: E402
from ephemera.service.runtime import reset_runtime_for_tests  # noqa: E402


@pytest.fixture(autouse=True)
def reset_runtime_state(tmp_path_factory, monkeypatch):
    # Fresh snapshot directory per test so MemoryStore state never leaks
    monkeypatch.setenv("SHARED_FS_ROOT", str(tmp_path_factory.mktemp("runtime")))
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def fast_verifier():
    return CredentialVerifier(time_cost=1, memory_cost=8192, parallelism=1)


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

import asyncio
import inspect
import os
import sys
import tempfile
from pathlib import Path

# Configure the environment before any import that might initialize the runtime
_test_tmp_dir = tempfile.mkdtemp(prefix="chatcoord_test_")
os.environ.setdefault("REPORT_OUTPUT_DIR", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("JOB_WORKER_ENABLED", "false")
os.environ.setdefault("LOG_JSON", "false")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from chatcoord.service.errors import StoreUnavailableError  # noqa: E402
from chatcoord.service.runtime import reset_runtime_for_tests  # noqa: E402
from chatcoord.storage.memory import MemoryKeyValueStore  # noqa: E402


class FakeClock:
    """Manually advanced clock, in seconds."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FailingStore:
    """Store double that behaves like an unreachable redis server."""

    backend = "redis"

    def __init__(self):
        self.calls = 0

    async def _fail(self, *args, **kwargs):
        self.calls += 1
        raise StoreUnavailableError("connection refused", detail={"operation": "test"})

    get = set = delete = compare_and_delete = scan = _fail

    async def ping(self) -> bool:
        return False

    async def close(self) -> None:
        return None


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store(clock):
    return MemoryKeyValueStore(1000, clock=clock)


@pytest.fixture
def failing_store():
    return FailingStore()


@pytest.fixture
def report_dir(tmp_path):
    return str(tmp_path / "reports")


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


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

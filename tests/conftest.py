import asyncio
import inspect
import os
import sys
import tempfile
from pathlib import Path

# Environment must be in place before anything initializes the runtime
_test_tmp_dir = tempfile.mkdtemp(prefix="streamline_test_")
os.environ.setdefault("DATA_DIR", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
# No Redis in tests: rate limits and reset tokens use the in-process fallbacks
os.environ.setdefault("REDIS_URL", "")
# Every API test client shares the "unknown" client IP
os.environ.setdefault("REGISTRATION_RATE_LIMIT", "1000")
os.environ.setdefault("GENERAL_RATE_LIMIT", "1000")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from streamline.config import Settings  # noqa: E402
from streamline.service.runtime import reset_runtime_for_tests  # noqa: E402
from streamline.storage.memory import MemoryStore  # noqa: E402


class RecordingEmail:
    """Stands in for EmailService; keeps every dispatched message."""

    def __init__(self):
        self.sent = []

    def dispatch(self, send, *args, **kwargs):
        self.sent.append((send.__name__, args, kwargs))

    def send_invitation(self, *args, **kwargs):
        return True

    def send_password_reset(self, *args, **kwargs):
        return True

    def last_token(self, kind):
        for name, args, _ in reversed(self.sent):
            if name == kind:
                return args[1]
        raise AssertionError(f"no {kind} email was dispatched")


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def memory_store():
    return MemoryStore()


@pytest.fixture
def settings(tmp_path):
    return Settings(data_dir=str(tmp_path), test_mode=True, use_memory_store=True)


@pytest.fixture
def recording_email():
    return RecordingEmail()


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

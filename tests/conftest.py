import asyncio
import inspect
import os
import sys
import tempfile
from pathlib import Path

# Environment must be in place before anything imports authcore.config
_test_tmp_dir = tempfile.mkdtemp(prefix="authcore_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("JWT_SECRET", "test-access-secret-for-testing-only-do-not-use")
os.environ.setdefault("JWT_REFRESH_SECRET", "test-refresh-secret-for-testing-only-do-not-use")
# Signup codes fall back to the in-process map
os.environ.setdefault("REDIS_URL", "")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from authcore.service.runtime import reset_runtime_for_tests  # noqa: E402


class RecordingEmail:
    """Stands in for EmailService and keeps every code it was asked to send."""

    def __init__(self):
        self.sent: list[tuple[str, str, str]] = []
        self.fail = False

    def _record(self, purpose: str, to_email: str, code: str) -> bool:
        if self.fail:
            return False
        self.sent.append((purpose, to_email, code))
        return True

    def send_signup_otp(self, to_email: str, code: str) -> bool:
        return self._record("signup", to_email, code)

    def send_reset_otp(self, to_email: str, code: str) -> bool:
        return self._record("reset", to_email, code)

    def last_code(self, purpose: str, to_email: str) -> str:
        for sent_purpose, sent_to, code in reversed(self.sent):
            if sent_purpose == purpose and sent_to == to_email:
                return code
        raise AssertionError(f"no {purpose} code sent to {to_email}")


@pytest.fixture(autouse=True)
def reset_runtime_state(tmp_path, monkeypatch):
    # Fresh state file per test so memory store contents never leak across tests
    runtime_root = tmp_path / "runtime"
    runtime_root.mkdir()
    monkeypatch.setenv("SHARED_FS_ROOT", str(runtime_root))
    runtime = reset_runtime_for_tests()
    yield runtime
    reset_runtime_for_tests()


@pytest.fixture
def outbox(reset_runtime_state):
    recorder = RecordingEmail()
    reset_runtime_state.auth.email = recorder
    return recorder


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

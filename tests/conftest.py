import os
import sys
import tempfile
from pathlib import Path

# Set env before any imports that might initialize the runtime
_test_tmp_dir = tempfile.mkdtemp(prefix="gatewarden_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("SECRET_ENCRYPTION_KEY", "test-secret-key-for-testing-only")
# TestClient talks plain http; Secure cookies would never be sent back
os.environ.setdefault("COOKIE_SECURE", "false")
os.environ.setdefault("LOG_JSON", "false")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from gatewarden.service.runtime import reset_runtime_for_tests  # noqa: E402
from gatewarden.service.totp import generate_secret  # noqa: E402
from gatewarden.storage.memory import MemoryStore  # noqa: E402


@pytest.fixture(autouse=True)
def reset_runtime_state(tmp_path, monkeypatch):
    # Fresh state directory per test so memory-store snapshots never leak between tests
    monkeypatch.setenv("SHARED_FS_ROOT", str(tmp_path / "shared"))
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def store():
    return MemoryStore(persist=False, secret_key="unit-test-key")


@pytest.fixture
def account_secret():
    return generate_secret()


class ManualClock:
    """Monotonic-style clock advanced explicitly by tests."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return ManualClock()

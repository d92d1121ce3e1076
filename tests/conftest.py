import pytest

from authguard.core.config import LoggingConfig, RateLimitConfig, StateConfig, StorageConfig
from authguard.security.events import SecurityLog
from authguard.security.rate_limiter import RateLimiter
from authguard.security.state import SecurityStateManager
from authguard.storage.secure_store import SecureStore

START_MS = 1_700_000_000_000


class FakeClock:
    """Millisecond clock that only moves when told to."""

    def __init__(self, start: int = START_MS) -> None:
        self.now = start

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> int:
        self.now += ms
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def memory_store(clock):
    # Encrypted, memory tier only
    return SecureStore(StorageConfig(durable_path=None, enable_session_tier=False), clock=clock)


@pytest.fixture
def security_log(clock):
    return SecurityLog(LoggingConfig(enable_console=False), clock=clock, sinks=[])


@pytest.fixture
def state_manager(memory_store, clock):
    manager = SecurityStateManager(memory_store, StateConfig(enable_background_tasks=False), clock=clock)
    yield manager
    manager.cleanup()


@pytest.fixture
def rate_limiter(state_manager, security_log, clock):
    return RateLimiter(state_manager, security_log, RateLimitConfig(), clock=clock)

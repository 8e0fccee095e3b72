import asyncio

import pytest

from agentflow.core.config import settings

# Override settings for tests
settings.fernet_key = "KxJCocbnA3KD20pkgSN3uUZybasKP1X9lAJDX4oLxoQ="  # test-only Fernet key
settings.app_env = "development"
settings.mock_agent_response = ""

from agentflow.core.encryption import reset_fernet  # noqa: E402
from agentflow.store.memory import InMemoryStore  # noqa: E402


class FakeClock:
    """Monotonic clock whose sleep() advances time instantly."""

    def __init__(self, start: float = 1000.0):
        self.now = start
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds
        await asyncio.sleep(0)


@pytest.fixture(autouse=True)
def _fresh_fernet():
    reset_fernet()
    yield
    reset_fernet()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store() -> InMemoryStore:
    return InMemoryStore()

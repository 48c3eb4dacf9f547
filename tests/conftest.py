"""
Pytest configuration and fixtures for Air Monitor tests.
"""

import asyncio
import sys
from pathlib import Path

import pytest

# Add project root to path for imports
PROJECT_ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

START_MS = 1_700_000_000_000


class FakeClock:
    """Manually advanced millisecond clock."""

    def __init__(self, start: int = START_MS):
        self.now = start

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> None:
        self.now += ms


class FakeTransport:
    """Records pushed messages; can fail from the n-th push on, or be slow."""

    def __init__(self, fail_from: int | None = None, delay: float = 0):
        self.fail_from = fail_from
        self.delay = delay
        self.calls = 0
        self.closed = False
        self.messages: list[dict] = []

    async def send_json(self, data):
        self.calls += 1
        if self.fail_from is not None and self.calls >= self.fail_from:
            raise ConnectionError("viewer went away")
        if self.delay:
            await asyncio.sleep(self.delay)
        self.messages.append(data)

    async def close(self):
        self.closed = True


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store(clock):
    """Store with a small capacity and a fake clock."""
    from airmonitor.services.store import ReadingStore

    return ReadingStore(capacity=5, clock=clock)


@pytest.fixture
def make_transport():
    return FakeTransport


@pytest.fixture
def settings():
    """Settings isolated from the environment's .env file."""
    from airmonitor.core.config import Settings

    return Settings(
        _env_file=None,
        history_capacity=3,
        storage_backend="memory",
        database_url="",
        mqtt_enabled=False,
    )


@pytest.fixture
def client(settings):
    """TestClient running the app lifespan (watchdog included)."""
    from fastapi.testclient import TestClient

    from airmonitor.api.main import create_app

    with TestClient(create_app(settings)) as test_client:
        yield test_client


@pytest.fixture
def sample_reading():
    """Sample sensor payload as posted by the device."""
    return {
        "temperature": 24.5,
        "humidity": 41.0,
        "heatIndex": 24.8,
    }

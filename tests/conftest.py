"""Shared pytest configuration and fixtures for the pub/sub client test suite."""

import socket
import sys
from pathlib import Path

import pytest
import pytest_asyncio

# Ensure the project root and the test helpers are importable
PROJECT_ROOT = Path(__file__).parent.parent
for path in (PROJECT_ROOT, Path(__file__).parent):
    if str(path) not in sys.path:
        sys.path.insert(0, str(path))

from config import Config  # noqa: E402
from fakes import FakeClock, FakeConnection, FakeRedisServer  # noqa: E402


@pytest.fixture
def config() -> Config:
    return Config(address="127.0.0.1", port=6379, channel="test-channel", retry_delay=1)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def connection(clock) -> FakeConnection:
    return FakeConnection(clock)


@pytest.fixture
def free_port() -> int:
    """Return a local TCP port with nothing listening on it."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


@pytest_asyncio.fixture
async def redis_server():
    server = await FakeRedisServer().start()
    yield server
    await server.stop()

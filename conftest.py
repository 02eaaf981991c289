"""
Shared pytest fixtures for the client sync layer.
"""

import asyncio
from dataclasses import replace
from typing import Any, Callable, Dict, List, Optional

import pytest

from shared.config import SyncSettings
from shared.errors import ChannelError
from client_sync.app.network import NetworkClass, NetworkProfile


class FakeClock:
    """Manually advanced wall clock."""

    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


class RecordingSleep:
    """Records requested delays and yields one loop turn instead of waiting."""

    def __init__(self):
        self.delays: List[float] = []

    async def __call__(self, delay: float):
        self.delays.append(delay)
        await asyncio.sleep(0)


class FakeChannel:
    """In-memory realtime channel."""

    def __init__(self, topic: str, on_message: Callable[[Dict[str, Any]], None]):
        self.topic = topic
        self.on_message = on_message
        self.closed = False
        self._done = asyncio.get_running_loop().create_future()

    async def close(self):
        self.closed = True
        if not self._done.done():
            self._done.set_result(None)

    async def wait_closed(self):
        await asyncio.shield(self._done)

    def push(self, message: Dict[str, Any]):
        self.on_message(message)

    def drop(self):
        if not self._done.done():
            self._done.set_exception(ChannelError("Connection dropped", details={"topic": self.topic}))


class FakeChannelClient:
    """ChannelClient whose connects fail while `fail` is set."""

    def __init__(self, fail: bool = False):
        self.fail = fail
        self.topics: List[str] = []
        self.channels: List[FakeChannel] = []

    async def subscribe(self, topic: str, on_message) -> FakeChannel:
        self.topics.append(topic)
        if self.fail:
            raise ChannelError("Connection refused", details={"topic": topic})
        channel = FakeChannel(topic, on_message)
        self.channels.append(channel)
        return channel

    @property
    def attempts(self) -> int:
        return len(self.topics)


@pytest.fixture
def fake_clock():
    """Wall clock starting at t=1000."""
    return FakeClock()


@pytest.fixture
def recording_sleep():
    return RecordingSleep()


@pytest.fixture
def channel_client():
    return FakeChannelClient()


@pytest.fixture
def settings():
    """Settings independent of the environment."""
    return SyncSettings(
        _env_file=None,
        network_class="desktop",
        realtime_backoff_jitter=False,
        persistent_cache_enabled=False,
    )


@pytest.fixture
def desktop_profile(settings):
    return NetworkProfile.from_settings(settings, NetworkClass.DESKTOP)


@pytest.fixture
def low_bandwidth_profile(settings):
    return NetworkProfile.from_settings(settings, NetworkClass.LOW_BANDWIDTH)


@pytest.fixture
def make_profile(desktop_profile):
    """Desktop profile with overrides."""
    def _make(**overrides) -> NetworkProfile:
        return replace(desktop_profile, **overrides)
    return _make


@pytest.fixture
def wait_until():
    """Run loop turns until a predicate holds."""
    async def _wait(predicate: Callable[[], bool], turns: int = 500, message: Optional[str] = None):
        for _ in range(turns):
            if predicate():
                return
            await asyncio.sleep(0)
        raise AssertionError(message or "Condition not reached")
    return _wait

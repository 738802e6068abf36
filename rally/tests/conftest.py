"""
Pytest fixtures for Rally tests.
"""

import pytest

from ..backend import MemoryBackend, MemoryRealtime
from ..notifications import RecordingNotifier
from ..realtime import SubscriptionCoordinator


class RecordedSleep:
    """Stand-in for asyncio.sleep that records delays and returns at once."""

    def __init__(self):
        self.delays: list[float] = []

    async def __call__(self, delay: float):
        self.delays.append(delay)


@pytest.fixture
def realtime() -> MemoryRealtime:
    return MemoryRealtime()


@pytest.fixture
def backend(realtime: MemoryRealtime) -> MemoryBackend:
    """
    A backend with three players and a handful of sessions.

    alex (u1): 50 tokens, created s-mine, joined s-joined and s-done
    blake (u2): 5 tokens, created s-open and s-private
    casey (u3): 0 tokens, created s-joined, s-done and s-done-other
    """
    backend = MemoryBackend(realtime=realtime)
    backend.add_profile("u1", "Alex", tokens=50)
    backend.add_profile("u2", "Blake", tokens=5)
    backend.add_profile("u3", "Casey", tokens=0)

    backend.create_session(
        "u2", id="s-open", stakes_amount=10, created_at="2024-05-01T10:00:00+00:00",
    )
    backend.create_session(
        "u2", id="s-private", is_private=True, created_at="2024-05-02T10:00:00+00:00",
    )
    backend.create_session(
        "u1", id="s-mine", session_type="training", status="active",
        created_at="2024-05-03T10:00:00+00:00",
    )
    backend.create_session(
        "u3", id="s-joined", max_players=4, created_at="2024-05-04T10:00:00+00:00",
    )
    backend.create_session(
        "u3", id="s-done", status="completed", created_at="2024-04-01T10:00:00+00:00",
    )
    backend.create_session(
        "u3", id="s-done-other", status="completed", created_at="2024-04-02T10:00:00+00:00",
    )

    backend.add_participant("s-joined", "u3")
    backend.add_participant("s-joined", "u1")
    backend.add_participant("s-done", "u1")
    backend.add_participant("s-done", "u3")
    backend.add_participant("s-done-other", "u3")
    return backend


@pytest.fixture
def coordinator(realtime: MemoryRealtime) -> SubscriptionCoordinator:
    return SubscriptionCoordinator(realtime, subscribe_timeout=1.0, subscribe_spacing=0)


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def recorded_sleep() -> RecordedSleep:
    return RecordedSleep()

"""
Tests for the subscription coordinator.

Tests:
- Channel sharing and reference-counted teardown
- Queue ordering and priority-ordered dispatch
- Failure handling (no automatic retry, on_error, retry_failed)
- Removal while queued or subscribing
"""

import asyncio

import pytest

from ..backend import ChangeEvent, ChangeType, MemoryRealtime
from ..errors import SubscriptionError
from ..realtime import SubscriptionCoordinator, ChannelState


def noop(event):
    pass


def session_update(**new) -> ChangeEvent:
    return ChangeEvent(table="sessions", change_type=ChangeType.UPDATE, new=new)


class BrokenSocketRealtime(MemoryRealtime):
    """Realtime client whose next `broken` channel() calls raise."""

    def __init__(self, broken: int = 1):
        super().__init__()
        self.broken = broken

    def channel(self, name):
        if self.broken:
            self.broken -= 1
            raise RuntimeError("socket closed")
        return super().channel(name)


class TestChannelSharing:
    """Requests with the same (table, prefix) share a channel."""

    def test_same_key_opens_one_channel(self, realtime, coordinator):
        async def scenario():
            first = coordinator.add_subscription_request("sessions", noop, 1, "p")
            second = coordinator.add_subscription_request("sessions", noop, 2, "p")
            await coordinator.wait_idle()

            assert len(realtime.channels) == 1
            assert [c.name for c in realtime.open_channels] == ["p-sessions"]

            coordinator.remove_subscription_request(first)
            assert len(realtime.open_channels) == 1

            coordinator.remove_subscription_request(second)
            assert realtime.open_channels == []

        asyncio.run(scenario())

    def test_different_prefixes_open_separate_channels(self, realtime, coordinator):
        async def scenario():
            coordinator.add_subscription_request("sessions", noop, 1, "a")
            coordinator.add_subscription_request("sessions", noop, 1, "b")
            coordinator.add_subscription_request("session_participants", noop, 1, "a")
            await coordinator.wait_idle()

        asyncio.run(scenario())

        assert sorted(c.name for c in realtime.open_channels) == [
            "a-session_participants", "a-sessions", "b-sessions",
        ]
        status = coordinator.get_queue_status()
        assert status.active_count == 3
        assert status.request_count == 3
        assert status.queue_length == 0

    def test_request_joining_active_channel_opens_nothing(self, realtime, coordinator):
        async def scenario():
            coordinator.add_subscription_request("sessions", noop, 1, "p")
            await coordinator.wait_idle()
            coordinator.add_subscription_request("sessions", noop, 5, "p")
            await coordinator.wait_idle()

        asyncio.run(scenario())
        assert len(realtime.channels) == 1

    def test_unknown_id_is_ignored(self, coordinator):
        coordinator.remove_subscription_request("does-not-exist")
        assert coordinator.get_queue_status().request_count == 0

    def test_active_subscription_introspection(self, coordinator):
        async def scenario():
            coordinator.add_subscription_request("sessions", noop, 1, "p")
            await coordinator.wait_idle()

        asyncio.run(scenario())
        assert coordinator.get_active_subscriptions() == ["p-sessions"]
        assert coordinator.has_active_subscription_for_table("sessions")
        assert not coordinator.has_active_subscription_for_table("session_participants")


class TestQueueAndDispatch:
    """Queue ordering and change fan-out."""

    def test_requests_without_event_loop_stay_queued(self, realtime, coordinator):
        """Channels open on the next wait_idle, highest priority first."""
        coordinator.add_subscription_request("session_participants", noop, 1, "a")
        coordinator.add_subscription_request("sessions", noop, 2, "a")
        coordinator.add_subscription_request("profiles", noop, 0, "a")

        assert coordinator.get_queue_status().queue_length == 3
        assert realtime.channels == []

        asyncio.run(coordinator.wait_idle())

        assert [c.name for c in realtime.channels] == [
            "a-sessions", "a-session_participants", "a-profiles",
        ]

    def test_dispatch_in_priority_order(self, realtime, coordinator):
        calls = []

        async def scenario():
            coordinator.add_subscription_request("sessions", lambda e: calls.append("low"), 0, "p")
            coordinator.add_subscription_request("sessions", lambda e: calls.append("high"), 2, "p")
            coordinator.add_subscription_request("sessions", lambda e: calls.append("mid"), 1, "p")
            await coordinator.wait_idle()
            await realtime.publish(session_update(id="s1", status="active"))

        asyncio.run(scenario())
        assert calls == ["high", "mid", "low"]

    def test_callbacks_receive_the_event(self, realtime, coordinator):
        received = []

        async def on_change(event):
            received.append(event)

        async def scenario():
            coordinator.add_subscription_request("sessions", on_change, 1, "p")
            await coordinator.wait_idle()
            await realtime.publish(session_update(id="s1"))
            # Other tables are not delivered
            await realtime.publish(ChangeEvent(table="profiles", change_type=ChangeType.INSERT))

        asyncio.run(scenario())
        assert len(received) == 1
        assert received[0].record == {"id": "s1"}

    def test_failing_callback_does_not_stop_fan_out(self, realtime, coordinator):
        calls = []

        def broken(event):
            raise ValueError("boom")

        async def scenario():
            coordinator.add_subscription_request("sessions", broken, 2, "p")
            coordinator.add_subscription_request("sessions", lambda e: calls.append(e), 1, "p")
            await coordinator.wait_idle()
            await realtime.publish(session_update(id="s1"))

        asyncio.run(scenario())
        assert len(calls) == 1

    def test_removed_request_stops_receiving(self, realtime, coordinator):
        calls = []

        async def scenario():
            keep = coordinator.add_subscription_request("sessions", lambda e: calls.append("keep"), 1, "p")
            drop = coordinator.add_subscription_request("sessions", lambda e: calls.append("drop"), 1, "p")
            await coordinator.wait_idle()
            coordinator.remove_subscription_request(drop)
            await realtime.publish(session_update(id="s1"))
            return keep

        asyncio.run(scenario())
        assert calls == ["keep"]


class TestFailures:
    """Channels that fail to open."""

    def test_failed_channel_is_not_retried(self, realtime, coordinator):
        errors = []

        async def scenario():
            realtime.fail_next_subscribe()
            sub_id = coordinator.add_subscription_request(
                "sessions", noop, 1, "p", on_error=errors.append,
            )
            await coordinator.wait_idle()
            return sub_id

        sub_id = asyncio.run(scenario())

        assert coordinator.channel_state(sub_id) is ChannelState.FAILED
        assert len(errors) == 1
        assert isinstance(errors[0], SubscriptionError)
        assert "CHANNEL_ERROR" in str(errors[0])

        status = coordinator.get_queue_status()
        assert status.failed_count == 1
        assert status.request_count == 1
        assert status.queue_length == 0
        assert len(realtime.channels) == 1
        assert realtime.open_channels == []

    def test_retry_failed_requeues(self, realtime, coordinator):
        async def scenario():
            realtime.fail_next_subscribe()
            sub_id = coordinator.add_subscription_request("sessions", noop, 1, "p")
            await coordinator.wait_idle()
            assert coordinator.retry_failed() == 1
            await coordinator.wait_idle()
            return sub_id

        sub_id = asyncio.run(scenario())
        assert coordinator.channel_state(sub_id) is ChannelState.ACTIVE
        assert len(realtime.channels) == 2
        assert len(realtime.open_channels) == 1

    def test_retry_failed_with_nothing_failed(self, coordinator):
        assert coordinator.retry_failed() == 0

    def test_handshake_timeout(self, realtime):
        coordinator = SubscriptionCoordinator(realtime, subscribe_timeout=0.05, subscribe_spacing=0)
        errors = []

        async def scenario():
            realtime.hang_next_subscribe()
            sub_id = coordinator.add_subscription_request(
                "sessions", noop, 1, "p", on_error=errors.append,
            )
            await coordinator.wait_idle()
            return sub_id

        sub_id = asyncio.run(scenario())
        assert coordinator.channel_state(sub_id) is ChannelState.FAILED
        assert "timed out" in str(errors[0])

    def test_failing_error_callback_is_contained(self, realtime, coordinator):
        def broken(error):
            raise RuntimeError("handler failed")

        async def scenario():
            realtime.fail_next_subscribe()
            coordinator.add_subscription_request("sessions", noop, 1, "p", on_error=broken)
            coordinator.add_subscription_request("profiles", noop, 0, "p")
            await coordinator.wait_idle()

        asyncio.run(scenario())
        assert coordinator.get_active_subscriptions() == ["p-profiles"]

    def test_channel_creation_error_marks_failed(self):
        """A client that raises while creating the channel fails the group."""
        realtime = BrokenSocketRealtime()
        coordinator = SubscriptionCoordinator(realtime, subscribe_spacing=0)
        errors = []

        async def scenario():
            sub_id = coordinator.add_subscription_request(
                "sessions", noop, 2, "p", on_error=errors.append,
            )
            coordinator.add_subscription_request("profiles", noop, 1, "p")
            await coordinator.wait_idle()

            assert coordinator.channel_state(sub_id) is ChannelState.FAILED
            assert coordinator.get_active_subscriptions() == ["p-profiles"]

            assert coordinator.retry_failed() == 1
            await coordinator.wait_idle()
            return sub_id

        sub_id = asyncio.run(scenario())

        assert len(errors) == 1
        assert isinstance(errors[0], SubscriptionError)
        assert "socket closed" in str(errors[0])
        assert coordinator.channel_state(sub_id) is ChannelState.ACTIVE
        assert coordinator.get_queue_status().failed_count == 0


class TestRemoval:
    """Removal while queued, while subscribing and all at once."""

    def test_remove_while_queued_never_opens(self, realtime, coordinator):
        sub_id = coordinator.add_subscription_request("sessions", noop, 1, "p")
        coordinator.remove_subscription_request(sub_id)

        asyncio.run(coordinator.wait_idle())
        assert realtime.channels == []
        assert coordinator.get_queue_status().queue_length == 0

    def test_remove_while_subscribing_closes_channel(self):
        realtime = MemoryRealtime(handshake_delay=0.01)
        coordinator = SubscriptionCoordinator(realtime, subscribe_spacing=0)

        async def scenario():
            sub_id = coordinator.add_subscription_request("sessions", noop, 1, "p")
            await asyncio.sleep(0)
            assert coordinator.channel_state(sub_id) is ChannelState.SUBSCRIBING
            coordinator.remove_subscription_request(sub_id)
            await coordinator.wait_idle()

        asyncio.run(scenario())
        assert len(realtime.channels) == 1
        assert realtime.open_channels == []
        assert realtime.channels[0] in realtime.removed

    def test_clear_all(self, realtime, coordinator):
        async def scenario():
            coordinator.add_subscription_request("sessions", noop, 1, "p")
            coordinator.add_subscription_request("session_participants", noop, 1, "p")
            await coordinator.wait_idle()
            coordinator.clear_all()

        asyncio.run(scenario())
        assert realtime.open_channels == []
        status = coordinator.get_queue_status()
        assert status.request_count == 0
        assert status.active_count == 0
        assert not status.processing

    def test_clear_all_during_handshake_closes_channel(self, realtime, coordinator):
        async def scenario():
            realtime.hang_next_subscribe()
            sub_id = coordinator.add_subscription_request("sessions", noop, 1, "p")
            await asyncio.sleep(0)
            assert coordinator.channel_state(sub_id) is ChannelState.SUBSCRIBING

            coordinator.clear_all()
            await asyncio.sleep(0)
            await asyncio.sleep(0)

        asyncio.run(scenario())

        assert [c.name for c in realtime.channels] == ["p-sessions"]
        assert realtime.channels[0] in realtime.removed
        assert not coordinator.get_queue_status().processing


@pytest.mark.parametrize("spacing", [0, 0.01])
def test_spacing_between_handshakes(realtime, spacing):
    delays = []

    async def record(delay):
        delays.append(delay)

    coordinator = SubscriptionCoordinator(realtime, subscribe_spacing=spacing, sleep=record)

    async def scenario():
        coordinator.add_subscription_request("sessions", noop, 2, "p")
        coordinator.add_subscription_request("session_participants", noop, 1, "p")
        await coordinator.wait_idle()

    asyncio.run(scenario())
    assert len(realtime.open_channels) == 2
    assert delays == ([spacing] if spacing else [])

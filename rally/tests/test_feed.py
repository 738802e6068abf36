"""
Tests for SessionFeed.

Tests:
- Tab queries and per-session derived fields
- Retry with backoff, exhaustion and error state
- Join / leave flows and their notifications
- Realtime refresh, channel sharing and cleanup
"""

import asyncio

import pytest

from ..errors import BackendError, ErrorCode, SessionActionError
from ..notifications import NotificationLevel
from ..sessions import SessionFeed, FeedOptions, FetchState, SessionTab


def make_feed(backend, coordinator, notifier, tab="my-sessions", user_id="u1", sleep=None, **options):
    kwargs = {"sleep": sleep} if sleep is not None else {}
    return SessionFeed(
        backend, coordinator, notifier, tab,
        user_id=user_id,
        options=FeedOptions(**options),
        **kwargs,
    )


def ids(sessions):
    return [s.id for s in sessions]


class TestTabs:
    """Tab filtering and post-processing."""

    def test_my_sessions(self, backend, coordinator, notifier):
        feed = make_feed(backend, coordinator, notifier, SessionTab.MY_SESSIONS)
        sessions = asyncio.run(feed.fetch_sessions())

        # Created s-mine; joined s-joined and s-done; newest first
        assert ids(sessions) == ["s-joined", "s-mine", "s-done"]
        assert feed.state is FetchState.SUCCESS
        assert feed.error is None

    def test_available(self, backend, coordinator, notifier):
        feed = make_feed(backend, coordinator, notifier, "available")
        sessions = asyncio.run(feed.fetch_sessions())

        # s-private is waiting but private
        assert ids(sessions) == ["s-joined", "s-open"]

    def test_completed(self, backend, coordinator, notifier):
        feed = make_feed(backend, coordinator, notifier, "completed")
        sessions = asyncio.run(feed.fetch_sessions())

        # s-done-other is completed but u1 never took part
        assert ids(sessions) == ["s-done"]

    def test_derived_fields(self, backend, coordinator, notifier):
        backend.add_participant("s-open", "u3", status="left")
        feed = make_feed(backend, coordinator, notifier, "available")
        sessions = {s.id: s for s in asyncio.run(feed.fetch_sessions())}

        joined = sessions["s-joined"]
        assert joined.participant_count == 2
        assert joined.creator_name == "Casey"
        assert joined.user_joined is True
        assert sorted(p.user_id for p in joined.participants) == ["u1", "u3"]

        open_session = sessions["s-open"]
        assert open_session.participant_count == 0
        assert open_session.participants == []
        assert open_session.creator_name == "Blake"
        assert open_session.user_joined is False

    def test_missing_creator_profile(self, backend, coordinator, notifier):
        backend.create_session("ghost", id="s-ghost", created_at="2024-06-01T00:00:00+00:00")
        feed = make_feed(backend, coordinator, notifier, "available")
        sessions = asyncio.run(feed.fetch_sessions())

        assert sessions[0].id == "s-ghost"
        assert sessions[0].creator_name == "Unknown"

    def test_participant_lookup_failure_falls_back_to_created(self, backend, coordinator, notifier):
        backend.fail_next("fetch_participant_session_ids")
        feed = make_feed(backend, coordinator, notifier)
        sessions = asyncio.run(feed.fetch_sessions())

        assert ids(sessions) == ["s-mine"]
        assert feed.state is FetchState.SUCCESS
        assert notifier.notifications == []

    def test_disabled_feed_does_not_query(self, backend, coordinator, notifier):
        feed = make_feed(backend, coordinator, notifier, enabled=False)
        sessions = asyncio.run(feed.fetch_sessions())

        assert sessions == []
        assert feed.state is FetchState.IDLE
        assert "fetch_sessions" not in backend.calls

    def test_feed_without_user_does_not_query(self, backend, coordinator, notifier):
        feed = make_feed(backend, coordinator, notifier, user_id=None)
        asyncio.run(feed.fetch_sessions())

        assert feed.state is FetchState.IDLE
        assert backend.calls == []

    def test_on_update_receives_sessions(self, backend, coordinator, notifier):
        updates = []

        async def on_update(sessions):
            updates.append(ids(sessions))

        feed = SessionFeed(backend, coordinator, notifier, "completed", "u1", on_update=on_update)
        asyncio.run(feed.fetch_sessions())
        assert updates == [["s-done"]]


class TestRetry:
    """Fetch retries with exponential backoff."""

    def test_three_failures_then_success(self, backend, coordinator, notifier, recorded_sleep):
        errors = []
        backend.fail_next("fetch_sessions", times=3)
        feed = make_feed(
            backend, coordinator, notifier,
            sleep=recorded_sleep, on_error=errors.append,
        )

        sessions = asyncio.run(feed.fetch_sessions())

        assert recorded_sleep.delays == [2.0, 4.0, 8.0]
        assert backend.calls.count("fetch_sessions") == 4
        assert len(errors) == 3
        assert ids(sessions) == ["s-joined", "s-mine", "s-done"]
        assert feed.state is FetchState.SUCCESS
        assert feed.error is None
        assert feed.retry_count == 0
        # Retries are silent
        assert notifier.notifications == []

    def test_custom_retry_settings(self, backend, coordinator, notifier, recorded_sleep):
        backend.fail_next("fetch_sessions", times=2)
        feed = make_feed(
            backend, coordinator, notifier,
            sleep=recorded_sleep, retry_attempts=5, retry_delay=0.5,
        )
        asyncio.run(feed.fetch_sessions())
        assert recorded_sleep.delays == [1.0, 2.0]

    def test_exhaustion_notifies_once(self, backend, coordinator, notifier, recorded_sleep):
        backend.fail_next("fetch_sessions", times=4)
        feed = make_feed(backend, coordinator, notifier, sleep=recorded_sleep)

        sessions = asyncio.run(feed.fetch_sessions())

        assert sessions == []
        assert backend.calls.count("fetch_sessions") == 4
        assert feed.state is FetchState.ERROR
        assert feed.error == "fetch_sessions failed"
        assert feed.retry_count == 3
        assert notifier.messages(NotificationLevel.ERROR) == [
            "Failed to load sessions after multiple attempts",
        ]
        assert len(notifier.notifications) == 1

    def test_error_state_kept_until_next_success(self, backend, coordinator, notifier, recorded_sleep):
        backend.fail_next("fetch_sessions", times=4)
        feed = make_feed(backend, coordinator, notifier, "completed", sleep=recorded_sleep)

        async def scenario():
            await feed.fetch_sessions()
            assert feed.state is FetchState.ERROR
            await feed.fetch_sessions()

        asyncio.run(scenario())
        assert feed.state is FetchState.SUCCESS
        assert feed.error is None
        assert ids(feed.sessions) == ["s-done"]

    def test_raising_error_handler_does_not_stop_retries(self, backend, coordinator, notifier, recorded_sleep):
        def broken(error):
            raise ValueError("handler bug")

        backend.fail_next("fetch_sessions", times=1)
        feed = make_feed(backend, coordinator, notifier, "completed", sleep=recorded_sleep, on_error=broken)

        sessions = asyncio.run(feed.fetch_sessions())

        assert ids(sessions) == ["s-done"]
        assert recorded_sleep.delays == [2.0]
        assert feed.state is FetchState.SUCCESS

    def test_raising_error_handler_still_notifies_on_exhaustion(
        self, backend, coordinator, notifier, recorded_sleep,
    ):
        def broken(error):
            raise ValueError("handler bug")

        backend.fail_next("fetch_sessions", times=4)
        feed = make_feed(backend, coordinator, notifier, sleep=recorded_sleep, on_error=broken)

        asyncio.run(feed.fetch_sessions())

        assert backend.calls.count("fetch_sessions") == 4
        assert feed.state is FetchState.ERROR
        assert notifier.messages(NotificationLevel.ERROR) == [
            "Failed to load sessions after multiple attempts",
        ]

    def test_raising_update_handler_is_contained(self, backend, coordinator, notifier):
        async def broken(sessions):
            raise ValueError("render bug")

        feed = SessionFeed(backend, coordinator, notifier, "completed", "u1", on_update=broken)
        sessions = asyncio.run(feed.fetch_sessions())

        assert ids(sessions) == ["s-done"]
        assert feed.state is FetchState.SUCCESS


class TestJoin:
    """join_session flow."""

    def test_join_debits_stakes_and_refetches(self, backend, coordinator, notifier):
        feed = make_feed(backend, coordinator, notifier)
        result = asyncio.run(feed.join_session("s-open"))

        assert result.success
        assert result.participant_count == 1
        assert result.session_ready is False
        assert backend.token_balances["u1"] == 40
        assert notifier.messages() == ["Successfully joined session!"]
        assert "s-open" in ids(feed.sessions)

    def test_join_fills_session(self, backend, coordinator, notifier):
        backend.create_session("u2", id="s-duo", max_players=2)
        backend.add_participant("s-duo", "u2")
        feed = make_feed(backend, coordinator, notifier)

        result = asyncio.run(feed.join_session("s-duo"))

        assert result.session_ready is True
        assert notifier.messages(NotificationLevel.SUCCESS) == [
            "Successfully joined session!",
            "Session is ready to start!",
        ]

    def test_insufficient_tokens_message(self, backend, coordinator, notifier):
        """Blake has 5 tokens; s-open stakes 10."""
        feed = make_feed(backend, coordinator, notifier, user_id="u2")

        with pytest.raises(SessionActionError) as exc_info:
            asyncio.run(feed.join_session("s-open"))

        error = exc_info.value
        assert error.error_code is ErrorCode.INSUFFICIENT_TOKENS
        assert error.user_message == "Not enough tokens! You need more tokens to join this session."
        assert "Insufficient tokens" in error.server_error
        assert notifier.messages() == [error.user_message]
        # All-or-nothing
        assert backend.token_balances["u2"] == 5
        assert backend.token_ledger == []
        assert asyncio.run(backend.find_participant("s-open", "u2")) is None

    def test_other_rejection_uses_server_message(self, backend, coordinator, notifier):
        feed = make_feed(backend, coordinator, notifier)

        with pytest.raises(SessionActionError) as exc_info:
            asyncio.run(feed.join_session("s-mine"))

        assert exc_info.value.error_code is ErrorCode.JOIN_FAILED
        assert notifier.messages() == ["Session is not open for joining"]

    def test_transport_error_with_token_text(self, backend, coordinator, notifier):
        backend.fail_next("join_session", error=BackendError("Insufficient tokens for stakes"))
        feed = make_feed(backend, coordinator, notifier)

        with pytest.raises(SessionActionError) as exc_info:
            asyncio.run(feed.join_session("s-open"))

        assert exc_info.value.error_code is ErrorCode.INSUFFICIENT_TOKENS
        assert notifier.messages() == [
            "Not enough tokens! Please visit the store to purchase more tokens.",
        ]

    def test_transport_error_generic(self, backend, coordinator, notifier):
        backend.fail_next("join_session")
        feed = make_feed(backend, coordinator, notifier)

        with pytest.raises(SessionActionError):
            asyncio.run(feed.join_session("s-open"))

        assert notifier.messages() == ["Failed to join session"]

    def test_join_without_user(self, backend, coordinator, notifier):
        feed = make_feed(backend, coordinator, notifier, user_id=None)

        assert asyncio.run(feed.join_session("s-open")) is None
        assert notifier.messages(NotificationLevel.ERROR) == ["User not authenticated"]
        assert "join_session" not in backend.calls


class TestLeave:
    """leave_session flow."""

    def test_leave_without_stakes(self, backend, coordinator, notifier):
        feed = make_feed(backend, coordinator, notifier)
        result = asyncio.run(feed.leave_session("s-joined"))

        assert result.success
        assert result.refunded_amount == 0
        assert notifier.messages() == ["Successfully left session"]
        assert "s-joined" not in ids(feed.sessions)

    def test_leave_refunds_stakes(self, backend, coordinator, notifier):
        feed = make_feed(backend, coordinator, notifier)

        async def scenario():
            await feed.join_session("s-open")
            notifier.drain()
            return await feed.leave_session("s-open")

        result = asyncio.run(scenario())

        assert result.refunded_amount == 10
        assert backend.token_balances["u1"] == 50
        assert backend.token_ledger[-1].source == "session_leave_refund"
        assert notifier.messages() == ["Left session and received 10 tokens refund"]

    def test_actions_without_refresh_skip_refetch(self, backend, coordinator, notifier):
        feed = make_feed(backend, coordinator, notifier, refresh_after_action=False)

        async def scenario():
            await feed.join_session("s-open")
            return await feed.leave_session("s-open")

        result = asyncio.run(scenario())

        assert result.refunded_amount == 10
        assert "fetch_sessions" not in backend.calls
        assert feed.sessions == []
        assert feed.state is FetchState.IDLE

    def test_leave_when_not_participant(self, backend, coordinator, notifier):
        feed = make_feed(backend, coordinator, notifier)
        result = asyncio.run(feed.leave_session("s-open"))

        assert not result.success
        assert result.error_code == ErrorCode.NOT_A_PARTICIPANT.value
        assert notifier.messages() == ["Could not find your participation in this session"]

    def test_leave_transport_error(self, backend, coordinator, notifier):
        backend.fail_next("leave_session")
        feed = make_feed(backend, coordinator, notifier)
        result = asyncio.run(feed.leave_session("s-joined"))

        assert not result.success
        assert result.error_code == ErrorCode.LEAVE_FAILED.value
        assert notifier.messages() == ["Failed to leave session"]
        assert asyncio.run(backend.find_participant("s-joined", "u1")) is not None

    def test_leave_without_user(self, backend, coordinator, notifier):
        feed = make_feed(backend, coordinator, notifier, user_id=None)
        result = asyncio.run(feed.leave_session("s-joined"))

        assert result.error_code == ErrorCode.NOT_AUTHENTICATED.value
        assert notifier.messages() == ["User not authenticated"]
        assert "leave_session" not in backend.calls


class TestRealtime:
    """Subscriptions, refresh on change and cleanup."""

    def test_change_triggers_refetch(self, backend, coordinator, notifier):
        feed = make_feed(backend, coordinator, notifier, "available")

        async def scenario():
            await feed.start()
            assert ids(feed.sessions) == ["s-joined", "s-open"]
            await coordinator.wait_idle()

            await backend.update_session("s-open", status="cancelled")
            await feed.wait_pending()
            await feed.close()

        asyncio.run(scenario())
        assert ids(feed.sessions) == ["s-joined"]

    def test_feeds_of_one_user_share_channels(self, realtime, backend, coordinator, notifier):
        mine = make_feed(backend, coordinator, notifier, "my-sessions")
        available = make_feed(backend, coordinator, notifier, "available")

        async def scenario():
            await mine.start()
            await available.start()
            await coordinator.wait_idle()
            assert sorted(c.name for c in realtime.open_channels) == [
                "coordinated-u1-session_participants",
                "coordinated-u1-sessions",
            ]
            assert coordinator.get_queue_status().request_count == 4

            await mine.close()
            assert len(realtime.open_channels) == 2
            await available.close()

        asyncio.run(scenario())
        assert realtime.open_channels == []
        assert len(realtime.channels) == 2
        assert coordinator.get_queue_status().request_count == 0

    def test_join_event_refreshes_other_feeds(self, backend, coordinator, notifier):
        watcher_feed = make_feed(backend, coordinator, notifier, "available", user_id="u1")
        joiner_feed = make_feed(backend, coordinator, notifier, "my-sessions", user_id="u1")

        async def scenario():
            await watcher_feed.start()
            await coordinator.wait_idle()
            await joiner_feed.join_session("s-open")
            await watcher_feed.wait_pending()
            await watcher_feed.close()

        asyncio.run(scenario())
        open_session = {s.id: s for s in watcher_feed.sessions}["s-open"]
        assert open_session.user_joined is True
        assert open_session.participant_count == 1

    def test_close_cancels_pending_retry(self, backend, coordinator, notifier):
        backend.fail_next("fetch_sessions", times=5)
        feed = make_feed(backend, coordinator, notifier, retry_delay=10)

        async def scenario():
            feed.subscribe()
            task = feed.refresh()
            await asyncio.sleep(0)
            await feed.close()
            return task

        task = asyncio.run(scenario())

        assert task.cancelled()
        assert backend.calls.count("fetch_sessions") == 1
        assert notifier.notifications == []
        assert coordinator.get_queue_status().request_count == 0
        assert feed.refresh() is None

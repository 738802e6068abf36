"""
Subscription Coordinator - Multiplexes change interests onto few channels.

Many consumers want "sessions changed" / "participants changed" callbacks.
Without coordination each would open its own channels. The coordinator:
1. Groups requests by (table, channel_prefix) -> one channel per group
2. Opens queued channels one at a time, highest priority first
3. Fans each change out to every request of the group, highest priority first
4. Closes a channel when its last request is removed (reference counting)

FAILURE RULES:
- A channel that fails to open is NOT retried here
- Its requests stay registered (pending) and their on_error callbacks fire
- Callers decide when to retry (retry_failed)

Registration and removal are synchronous and run under a lock; channel
handshakes run in a single background task on the running event loop.
"""

from __future__ import annotations
from dataclasses import dataclass, field
from enum import Enum
from typing import Awaitable, Callable, Union
import asyncio
import inspect
import itertools
import logging
import threading
import time
import uuid

from ..backend.base import RealtimeClient, RealtimeChannel, ChangeEvent, ChannelStatus
from ..errors import SubscriptionError

logger = logging.getLogger(__name__)

ChangeCallback = Callable[[ChangeEvent], Union[None, Awaitable[None]]]
ErrorCallback = Callable[[Exception], None]

DEFAULT_CHANNEL_PREFIX = "coordinated"


class ChannelState(Enum):
    QUEUED = "queued"
    SUBSCRIBING = "subscribing"
    ACTIVE = "active"
    FAILED = "failed"
    CLOSED = "closed"


@dataclass
class SubscriptionRequest:
    """One consumer's interest in a table."""
    id: str
    table: str
    callback: ChangeCallback
    priority: int
    channel_prefix: str
    on_error: ErrorCallback | None = None
    sequence: int = 0
    created_at: float = field(default_factory=time.time)


@dataclass
class ChannelGroup:
    """All requests sharing one (table, channel_prefix) channel."""
    table: str
    channel_prefix: str
    requests: list[SubscriptionRequest] = field(default_factory=list)
    state: ChannelState = ChannelState.QUEUED
    channel: RealtimeChannel | None = None
    error: Exception | None = None

    @property
    def key(self) -> tuple[str, str]:
        return (self.table, self.channel_prefix)

    @property
    def channel_name(self) -> str:
        return f"{self.channel_prefix}-{self.table}"

    @property
    def priority(self) -> int:
        return max((r.priority for r in self.requests), default=0)

    def ordered_requests(self) -> list[SubscriptionRequest]:
        """Highest priority first; ties keep registration order."""
        return sorted(self.requests, key=lambda r: (-r.priority, r.sequence))


@dataclass
class QueueStatus:
    """Snapshot for diagnostics."""
    queue_length: int
    active_count: int
    request_count: int
    failed_count: int
    processing: bool


class SubscriptionCoordinator:
    """
    Owns every realtime channel and the queue of channels waiting to open.

    Usage:
        coordinator = SubscriptionCoordinator(realtime)

        sub_id = coordinator.add_subscription_request(
            "sessions", on_change, priority=2, channel_prefix="coordinated-u1"
        )
        ...
        coordinator.remove_subscription_request(sub_id)

    Consumers keep only the returned id.
    """

    def __init__(
        self,
        realtime: RealtimeClient,
        subscribe_timeout: float = 30.0,
        subscribe_spacing: float = 0.1,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.realtime = realtime
        self.subscribe_timeout = subscribe_timeout
        self.subscribe_spacing = subscribe_spacing
        self._sleep = sleep

        self._groups: dict[tuple[str, str], ChannelGroup] = {}
        self._request_groups: dict[str, ChannelGroup] = {}
        self._queue: list[ChannelGroup] = []
        self._lock = threading.RLock()
        self._sequence = itertools.count()
        self._processor: asyncio.Task | None = None

    # =========================================================================
    # Registration
    # =========================================================================

    def add_subscription_request(
        self,
        table: str,
        on_change: ChangeCallback,
        priority: int = 1,
        channel_prefix: str = DEFAULT_CHANNEL_PREFIX,
        on_error: ErrorCallback | None = None,
    ) -> str:
        """
        Register interest in changes to `table`.

        Returns an opaque subscription id for later removal. Opens a new
        channel only if no request with the same (table, channel_prefix)
        exists yet.
        """
        request = SubscriptionRequest(
            id=f"{channel_prefix}-{table}-{uuid.uuid4().hex[:12]}",
            table=table,
            callback=on_change,
            priority=priority,
            channel_prefix=channel_prefix,
            on_error=on_error,
            sequence=next(self._sequence),
        )

        with self._lock:
            group = self._groups.get((table, channel_prefix))
            created = group is None
            if created:
                group = ChannelGroup(table=table, channel_prefix=channel_prefix)
                self._groups[group.key] = group

            group.requests.append(request)
            self._request_groups[request.id] = group

            if created:
                self._enqueue(group)
            elif group.state is ChannelState.QUEUED:
                # A higher priority request may move the group forward
                self._queue.sort(key=lambda g: -g.priority)

        if created:
            logger.debug("Queued channel %s for request %s", group.channel_name, request.id)
            self._schedule_processing()
        else:
            logger.debug(
                "Request %s attached to %s channel %s",
                request.id, group.state.value, group.channel_name,
            )
        return request.id

    def remove_subscription_request(self, subscription_id: str) -> None:
        """
        Unregister a request. The last request of a group closes its channel.

        Unknown ids are ignored.
        """
        with self._lock:
            group = self._request_groups.pop(subscription_id, None)
            if group is None:
                logger.debug("Ignoring removal of unknown subscription %s", subscription_id)
                return

            group.requests = [r for r in group.requests if r.id != subscription_id]
            if group.requests:
                return

            self._groups.pop(group.key, None)
            if group in self._queue:
                self._queue.remove(group)

            # A SUBSCRIBING group is closed by the processor once its handshake returns
            channel = group.channel if group.state is ChannelState.ACTIVE else None
            if group.state is not ChannelState.SUBSCRIBING:
                group.state = ChannelState.CLOSED
            group.channel = None

        if channel is not None:
            self._close_channel(channel)
            logger.info("Closed channel %s (no remaining requests)", group.channel_name)

    def retry_failed(self) -> int:
        """Re-queue every failed channel. Returns how many were re-queued."""
        with self._lock:
            failed = [g for g in self._groups.values() if g.state is ChannelState.FAILED]
            for group in failed:
                group.state = ChannelState.QUEUED
                group.error = None
                self._enqueue(group)

        if failed:
            logger.info("Retrying %d failed channel(s)", len(failed))
            self._schedule_processing()
        return len(failed)

    def clear_all(self) -> None:
        """Drop every request and close every channel."""
        logger.info("Clearing all subscriptions and queue")
        with self._lock:
            channels = [g.channel for g in self._groups.values() if g.channel is not None]
            for group in self._groups.values():
                group.state = ChannelState.CLOSED
                group.channel = None
            self._groups.clear()
            self._request_groups.clear()
            self._queue.clear()
            processor = self._processor
            self._processor = None

        if processor is not None and not processor.done():
            processor.cancel()
        for channel in channels:
            self._close_channel(channel)

    # =========================================================================
    # Introspection
    # =========================================================================

    def get_queue_status(self) -> QueueStatus:
        with self._lock:
            return QueueStatus(
                queue_length=len(self._queue),
                active_count=self._count(ChannelState.ACTIVE),
                request_count=len(self._request_groups),
                failed_count=self._count(ChannelState.FAILED),
                processing=self._processor is not None and not self._processor.done(),
            )

    def get_active_subscriptions(self) -> list[str]:
        """Names of open channels."""
        with self._lock:
            return [
                g.channel_name for g in self._groups.values()
                if g.state is ChannelState.ACTIVE
            ]

    def has_active_subscription_for_table(self, table: str) -> bool:
        with self._lock:
            return any(
                g.table == table and g.state is ChannelState.ACTIVE
                for g in self._groups.values()
            )

    def channel_state(self, subscription_id: str) -> ChannelState | None:
        """State of the channel serving a request, or None if unknown."""
        with self._lock:
            group = self._request_groups.get(subscription_id)
            return group.state if group else None

    async def wait_idle(self) -> None:
        """Wait until every queued channel has been processed."""
        self._schedule_processing()
        while self._processor is not None and not self._processor.done():
            await self._processor

    # =========================================================================
    # Queue processing
    # =========================================================================

    def _enqueue(self, group: ChannelGroup):
        """Insert before the first group with lower priority."""
        priority = group.priority
        for index, queued in enumerate(self._queue):
            if queued.priority < priority:
                self._queue.insert(index, group)
                return
        self._queue.append(group)

    def _schedule_processing(self):
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug("No running event loop; %d channel(s) stay queued", len(self._queue))
            return

        with self._lock:
            if not self._queue:
                return
            if self._processor is None or self._processor.done():
                self._processor = loop.create_task(self._process_queue())

    async def _process_queue(self):
        while True:
            with self._lock:
                if not self._queue:
                    return
                group = self._queue.pop(0)
                if self._groups.get(group.key) is not group:
                    continue
                group.state = ChannelState.SUBSCRIBING

            await self._open_channel(group)

            if self._queue and self.subscribe_spacing:
                await self._sleep(self.subscribe_spacing)

    async def _open_channel(self, group: ChannelGroup):
        logger.debug("Opening channel %s for table %s", group.channel_name, group.table)

        channel: RealtimeChannel | None = None
        error: SubscriptionError | None = None
        try:
            channel = self.realtime.channel(group.channel_name)
            channel.on_change(group.table, lambda event: self._dispatch(group, event))
            status = await asyncio.wait_for(channel.subscribe(), timeout=self.subscribe_timeout)
        except asyncio.TimeoutError:
            error = SubscriptionError(f"Subscription {group.channel_name} timed out")
        except asyncio.CancelledError:
            # Cancelled mid-handshake (clear_all); the channel is still ours
            if channel is not None:
                self._close_channel(channel)
            raise
        except Exception as e:
            error = SubscriptionError(f"Subscription {group.channel_name} failed: {e}")
        else:
            if status is not ChannelStatus.SUBSCRIBED:
                error = SubscriptionError(
                    f"Subscription {group.channel_name} failed with status: {status.value}"
                )

        if error is not None:
            if channel is not None:
                self._close_channel(channel)
            self._mark_failed(group, error)
            return

        with self._lock:
            orphaned = self._groups.get(group.key) is not group
            if orphaned:
                group.state = ChannelState.CLOSED
            else:
                group.channel = channel
                group.state = ChannelState.ACTIVE

        if orphaned:
            logger.debug("Channel %s lost all requests while subscribing", group.channel_name)
            self._close_channel(channel)
            return

        logger.info("Subscribed channel %s", group.channel_name)

    def _mark_failed(self, group: ChannelGroup, error: SubscriptionError):
        with self._lock:
            if self._groups.get(group.key) is not group:
                group.state = ChannelState.CLOSED
                return
            group.state = ChannelState.FAILED
            group.error = error
            requests = list(group.requests)

        logger.error("%s; %d request(s) left pending", error, len(requests))
        for request in requests:
            if request.on_error is None:
                continue
            try:
                request.on_error(error)
            except Exception:
                logger.exception("on_error callback for %s raised", request.id)

    async def _dispatch(self, group: ChannelGroup, event: ChangeEvent):
        with self._lock:
            requests = group.ordered_requests()

        logger.debug(
            "Change on %s (%s) -> %d callback(s)",
            event.table, event.change_type.value, len(requests),
        )
        for request in requests:
            try:
                result = request.callback(event)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception("Subscription callback %s failed", request.id)

    def _close_channel(self, channel: RealtimeChannel):
        try:
            self.realtime.remove_channel(channel)
        except Exception:
            logger.warning("Error removing channel %s", channel.name, exc_info=True)

    def _count(self, state: ChannelState) -> int:
        return sum(1 for g in self._groups.values() if g.state is state)

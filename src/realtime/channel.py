"""Realtime channel manager.

Wraps a bidirectional ``Transport`` with subscriptions, heartbeat and
reconnect-with-backoff. Stage notifications use ``offer``, which never
waits on a reconnect: while the link is down they sit in a bounded outbox
that is flushed once the heartbeat has restored the connection. Nothing delivered over the channel is durable:
after a reconnect the registered callbacks are expected to drop cached
results and re-fetch from the store.
"""
from __future__ import annotations

import logging
import threading
import time
from collections import deque
from dataclasses import dataclass
from typing import Any, Callable, Deque, Dict, List, Optional, Protocol, Set, runtime_checkable

from tenacity import (
    Retrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from core.config import Settings, get_settings
from core.exceptions import InvalidInputError, TransportUnavailableError
from core.logging_config import get_logger
from core.types import FunnelStage, TransitionTrigger
from realtime.messages import (
    FUNNEL_TOPIC,
    MessageType,
    RealtimeMessage,
    funnel_update_message,
    lead_topic,
    ping_message,
    pong_message,
    status_update_message,
    subscribe_message,
    unsubscribe_message,
)
from services.cache import ResultCache

LOGGER = get_logger(__name__)

# Transport failures that trigger a reconnect
TRANSPORT_ERRORS = (ConnectionError, TimeoutError, OSError)

# A connection with no pong for this many heartbeat intervals is dead
MISSED_HEARTBEATS_LIMIT = 2

# Oldest queued messages are dropped beyond this many
OUTBOX_LIMIT = 1000

MessageHandler = Callable[[RealtimeMessage], None]


@runtime_checkable
class Transport(Protocol):
    """Bidirectional text channel provided by the host application."""

    def connect(self, url: str) -> None: ...

    def send(self, text: str) -> None: ...

    def receive(self, timeout: float) -> Optional[str]: ...

    def close(self) -> None: ...

    @property
    def is_open(self) -> bool: ...


@dataclass(frozen=True)
class ReconnectPolicy:
    """Exponential backoff between reconnect attempts."""

    base_seconds: float = 5.0
    max_seconds: float = 60.0
    max_attempts: int = 5

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None) -> "ReconnectPolicy":
        settings = settings or get_settings()
        return cls(
            base_seconds=settings.realtime_reconnect_base_seconds,
            max_seconds=settings.realtime_reconnect_max_seconds,
            max_attempts=settings.realtime_max_reconnect_attempts,
        )

    def delay_for(self, failed_attempts: int) -> float:
        """Wait after the given number of failed attempts: base, 2x base, ... capped."""
        return min(self.base_seconds * (2 ** max(failed_attempts - 1, 0)), self.max_seconds)


class RealtimeChannel:
    """
    Channel manager over a ``Transport``.

    Features:
    - Topic subscriptions, restored after every reconnect
    - Heartbeat ping with dead-connection detection
    - Reconnect with exponential backoff and a bounded attempt count
    - Reconnect callbacks for cache reconciliation
    - Non-blocking ``offer`` with a bounded outbox for use on hot paths
    """

    def __init__(
        self,
        transport: Transport,
        url: Optional[str] = None,
        policy: Optional[ReconnectPolicy] = None,
        heartbeat_seconds: Optional[float] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
        outbox_limit: int = OUTBOX_LIMIT,
    ):
        """
        Initialize the channel. Call ``connect`` to open it.

        Args:
            transport: Transport implementation.
            url: Endpoint to connect to. Defaults to ``realtime_url``.
            policy: Reconnect policy. Defaults to settings.
            heartbeat_seconds: Ping interval. Defaults to settings.
            sleep: Backoff sleep, injectable for tests.
            clock: Monotonic time source, injectable for tests.
            outbox_limit: Capacity of the queue used by ``offer``.
        """
        settings = get_settings()
        self.transport = transport
        self.url = url or settings.realtime_url or ""
        self.policy = policy or ReconnectPolicy.from_settings(settings)
        self.heartbeat_seconds = heartbeat_seconds or settings.realtime_heartbeat_seconds
        self._sleep = sleep
        self._clock = clock
        self._lock = threading.RLock()
        self._subscriptions: Set[str] = set()
        self._handlers: Dict[MessageType, List[MessageHandler]] = {}
        self._reconnect_callbacks: List[Callable[[], None]] = []
        self._last_pong: Optional[float] = None
        self._reconnects = 0
        self._messages_sent = 0
        self._messages_received = 0
        self._outbox: Deque[RealtimeMessage] = deque()
        self._outbox_limit = outbox_limit
        self._outbox_lock = threading.Lock()
        self._dropped = 0

    # =========================================================================
    # Connection lifecycle
    # =========================================================================

    @property
    def is_connected(self) -> bool:
        return self.transport.is_open

    @property
    def subscriptions(self) -> Set[str]:
        return set(self._subscriptions)

    def connect(self) -> None:
        """
        Open the transport, retrying with backoff.

        Raises:
            TransportUnavailableError: All attempts failed.
        """
        with self._lock:
            self._open_with_retry()
            self._resubscribe()
            self._flush_outbox_quietly()
        LOGGER.info(f"Realtime channel connected to {self.url}")

    def reconnect(self) -> None:
        """
        Drop the current connection and open a new one.

        Subscriptions are restored, then reconnect callbacks run.

        Raises:
            TransportUnavailableError: All attempts failed.
        """
        with self._lock:
            self._close_quietly()
            self._open_with_retry()
            self._resubscribe()
            self._reconnects += 1
            self._flush_outbox_quietly()

        LOGGER.info(f"Realtime channel reconnected (total reconnects: {self._reconnects})")
        for callback in list(self._reconnect_callbacks):
            try:
                callback()
            except Exception as e:
                LOGGER.warning(f"Realtime reconnect callback failed: {e}")

    def close(self) -> None:
        with self._lock:
            self._close_quietly()
        LOGGER.info("Realtime channel closed")

    def on_reconnect(self, callback: Callable[[], None]) -> None:
        """Register a callback run after every successful reconnect."""
        self._reconnect_callbacks.append(callback)

    def _open_with_retry(self) -> None:
        retrying = Retrying(
            retry=retry_if_exception_type(TRANSPORT_ERRORS),
            stop=stop_after_attempt(self.policy.max_attempts),
            wait=wait_exponential(
                multiplier=self.policy.base_seconds,
                min=self.policy.base_seconds,
                max=self.policy.max_seconds,
            ),
            before_sleep=before_sleep_log(LOGGER, log_level=logging.WARNING),
            sleep=self._sleep,
            reraise=True,
        )
        try:
            retrying(self.transport.connect, self.url)
        except TRANSPORT_ERRORS as e:
            LOGGER.error(
                f"Realtime transport unavailable after {self.policy.max_attempts} attempts: {e}"
            )
            raise TransportUnavailableError(
                f"Could not connect to {self.url} after {self.policy.max_attempts} attempts: {e}"
            ) from e
        self._last_pong = self._clock()

    def _close_quietly(self) -> None:
        try:
            self.transport.close()
        except TRANSPORT_ERRORS as e:
            LOGGER.debug(f"Ignoring error while closing transport: {e}")

    # =========================================================================
    # Subscriptions
    # =========================================================================

    def subscribe(self, topic: str) -> None:
        """Subscribe to a topic; remembered across reconnects."""
        if not topic:
            raise InvalidInputError("topic is required")
        with self._lock:
            self._subscriptions.add(topic)
            if self.is_connected:
                self._send(subscribe_message(topic))

    def unsubscribe(self, topic: str) -> None:
        with self._lock:
            self._subscriptions.discard(topic)
            if self.is_connected:
                self._send(unsubscribe_message(topic))

    def subscribe_lead(self, lead_id: str) -> None:
        self.subscribe(lead_topic(lead_id))

    def subscribe_funnel(self) -> None:
        self.subscribe(FUNNEL_TOPIC)

    def _resubscribe(self) -> None:
        for topic in sorted(self._subscriptions):
            self._send(subscribe_message(topic))

    # =========================================================================
    # Sending and receiving
    # =========================================================================

    def publish(self, message: RealtimeMessage) -> None:
        """
        Send a message, reconnecting once if the transport has dropped.

        Raises:
            TransportUnavailableError: The channel could not be restored.
        """
        with self._lock:
            if not self.is_connected:
                self.reconnect()
            try:
                self._send(message)
            except TRANSPORT_ERRORS as e:
                LOGGER.warning(f"Send failed ({e}); reconnecting")
                self.reconnect()
                try:
                    self._send(message)
                except TRANSPORT_ERRORS as retry_error:
                    raise TransportUnavailableError(
                        f"Send failed after reconnect: {retry_error}"
                    ) from retry_error

    def offer(self, message: RealtimeMessage) -> bool:
        """
        Send a message if that can be done right now, otherwise queue it.

        Never reconnects and never waits for another thread holding the
        channel. Queued messages go out, in order, after the next
        successful connect, reconnect or heartbeat.

        Returns:
            True if the message was sent, False if it was queued.
        """
        if self._lock.acquire(blocking=False):
            try:
                if self.is_connected:
                    try:
                        self._flush_outbox()
                        self._send(message)
                        return True
                    except TRANSPORT_ERRORS as e:
                        LOGGER.warning(f"Send failed ({e}); queueing until the heartbeat reconnects")
            finally:
                self._lock.release()

        self._enqueue(message)
        return False

    def _enqueue(self, message: RealtimeMessage) -> None:
        with self._outbox_lock:
            if len(self._outbox) >= self._outbox_limit:
                self._outbox.popleft()
                self._dropped += 1
                LOGGER.warning(f"Realtime outbox full; dropped oldest message ({self._dropped} dropped so far)")
            self._outbox.append(message)

    def _flush_outbox(self) -> int:
        sent = 0
        while True:
            with self._outbox_lock:
                if not self._outbox:
                    return sent
                message = self._outbox.popleft()
            try:
                self._send(message)
            except TRANSPORT_ERRORS:
                with self._outbox_lock:
                    self._outbox.appendleft(message)
                raise
            sent += 1

    def _flush_outbox_quietly(self) -> None:
        try:
            sent = self._flush_outbox()
        except TRANSPORT_ERRORS as e:
            LOGGER.warning(f"Could not flush realtime outbox: {e}")
            return
        if sent:
            LOGGER.info(f"Flushed {sent} queued realtime messages")

    def _send(self, message: RealtimeMessage) -> None:
        self.transport.send(message.to_json())
        self._messages_sent += 1

    def on_message(self, message_type: MessageType, handler: MessageHandler) -> None:
        """Register a handler for incoming messages of one type."""
        self._handlers.setdefault(message_type, []).append(handler)

    def poll(self, timeout: float = 0.0, max_messages: int = 100) -> List[RealtimeMessage]:
        """
        Drain incoming messages and dispatch them.

        Pongs refresh liveness and pings are answered. Malformed messages
        are logged and skipped.

        Returns:
            Messages received, in arrival order.
        """
        received: List[RealtimeMessage] = []
        while len(received) < max_messages:
            with self._lock:
                raw = self.transport.receive(timeout)
            if raw is None:
                break
            try:
                message = RealtimeMessage.from_json(raw)
            except InvalidInputError as e:
                LOGGER.warning(f"Dropping malformed realtime message: {e}")
                continue

            self._messages_received += 1
            received.append(message)
            self._dispatch(message)
            timeout = 0.0
        return received

    def _dispatch(self, message: RealtimeMessage) -> None:
        if message.type is MessageType.PONG:
            self._last_pong = self._clock()
        elif message.type is MessageType.PING:
            with self._lock:
                self._send(pong_message())

        for handler in list(self._handlers.get(message.type, [])):
            try:
                handler(message)
            except Exception as e:
                LOGGER.warning(f"Realtime handler for {message.type.value} failed: {e}")

    # =========================================================================
    # Heartbeat
    # =========================================================================

    def is_stale(self) -> bool:
        """True when no pong arrived within the allowed number of heartbeat intervals."""
        if self._last_pong is None:
            return False
        return self._clock() - self._last_pong > self.heartbeat_seconds * MISSED_HEARTBEATS_LIMIT

    def heartbeat(self) -> bool:
        """
        Run one heartbeat: reconnect a dead connection, otherwise send a ping.

        Intended to be called every ``heartbeat_seconds`` by the scheduler.

        Returns:
            True if a ping was sent on a healthy connection, False if a
            reconnect was needed.

        Raises:
            TransportUnavailableError: The connection was dead and could
                not be restored.
        """
        with self._lock:
            if not self.is_connected or self.is_stale():
                LOGGER.warning("Realtime connection is dead; reconnecting")
                self.reconnect()
                return False
            try:
                self._send(ping_message())
                self._flush_outbox()
            except TRANSPORT_ERRORS as e:
                LOGGER.warning(f"Heartbeat ping failed ({e}); reconnecting")
                self.reconnect()
                return False
        return True

    def stats(self) -> Dict[str, Any]:
        return {
            "connected": self.is_connected,
            "subscriptions": sorted(self._subscriptions),
            "reconnects": self._reconnects,
            "messages_sent": self._messages_sent,
            "messages_received": self._messages_received,
            "queued": len(self._outbox),
            "dropped": self._dropped,
        }


class RealtimeStageNotifier:
    """
    Publishes funnel stage changes on a ``RealtimeChannel``.

    A ``status_update`` goes to the lead's topic and a ``funnel_update`` to
    the funnel-wide topic. Messages are handed to ``RealtimeChannel.offer``,
    so a dead link queues them instead of stalling the caller; the store
    stays authoritative.
    """

    def __init__(self, channel: RealtimeChannel):
        self.channel = channel

    def notify_stage_change(
        self,
        lead_id: str,
        from_stage: FunnelStage,
        to_stage: FunnelStage,
        trigger: TransitionTrigger,
        event_id: Optional[int] = None,
    ) -> None:
        sent = self.channel.offer(
            status_update_message(
                lead_id,
                from_stage.value,
                to_stage.value,
                trigger.value,
                event_id=event_id,
            )
        )
        sent = self.channel.offer(funnel_update_message(lead_id, to_stage.value)) and sent
        if not sent:
            LOGGER.info(
                f"Realtime notification for lead {lead_id} queued until the channel reconnects",
                extra={"lead_id": lead_id, "event_id": event_id},
            )


def reconcile_cache_on_reconnect(channel: RealtimeChannel, cache: ResultCache) -> None:
    """Clear cached results whenever the channel reconnects, forcing a re-fetch."""
    channel.on_reconnect(cache.clear)


__all__ = [
    "Transport",
    "ReconnectPolicy",
    "RealtimeChannel",
    "RealtimeStageNotifier",
    "reconcile_cache_on_reconnect",
    "TRANSPORT_ERRORS",
    "MISSED_HEARTBEATS_LIMIT",
    "OUTBOX_LIMIT",
]

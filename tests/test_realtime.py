"""Tests for the realtime channel, message envelope and stage notifier."""
from __future__ import annotations

import json
import sys
import threading
from pathlib import Path
from unittest.mock import MagicMock

import pytest

# Add src to path
src_path = Path(__file__).parent.parent / "src"
if str(src_path) not in sys.path:
    sys.path.insert(0, str(src_path))

from core.exceptions import InvalidInputError, TransportUnavailableError
from core.types import FunnelStage, TransitionTrigger
from realtime.channel import (
    RealtimeChannel,
    RealtimeStageNotifier,
    ReconnectPolicy,
    reconcile_cache_on_reconnect,
)
from realtime.messages import (
    FUNNEL_TOPIC,
    MessageType,
    RealtimeMessage,
    lead_topic,
    ping_message,
    pong_message,
    status_update_message,
)
from services.cache import FUNNEL_NAMESPACE, ResultCache

from conftest import FakeTransport, SleepRecorder


class MonotonicClock:
    """Manually advanced stand-in for time.monotonic."""

    def __init__(self) -> None:
        self.value = 1000.0

    def __call__(self) -> float:
        return self.value


POLICY = ReconnectPolicy(base_seconds=1, max_seconds=4, max_attempts=4)


def _channel(transport, sleeps=None, clock=None) -> RealtimeChannel:
    return RealtimeChannel(
        transport,
        url="wss://crm.example.com/realtime",
        policy=POLICY,
        heartbeat_seconds=30,
        sleep=sleeps or SleepRecorder(),
        clock=clock or MonotonicClock(),
    )


def _sent(transport) -> list:
    return [json.loads(text) for text in transport.sent]


# =============================================================================
# Messages
# =============================================================================


class TestMessages:
    """Tests for the JSON envelope."""

    def test_status_update_envelope(self):
        message = status_update_message("lead-1", "qualified", "showing_scheduled", "automatic", event_id=12)
        decoded = json.loads(message.to_json())

        assert decoded["type"] == "status_update"
        assert decoded["payload"]["topic"] == "lead:lead-1"
        assert decoded["payload"]["event_id"] == 12

        restored = RealtimeMessage.from_json(message.to_json())
        assert restored.type is MessageType.STATUS_UPDATE
        assert restored.payload == message.payload
        assert restored.timestamp == message.timestamp

    @pytest.mark.parametrize(
        "raw",
        [
            "not json",
            "[1, 2]",
            '{"type": "shout"}',
            '{"type": "ping", "payload": [1]}',
            '{"type": "ping", "timestamp": "yesterday"}',
        ],
    )
    def test_malformed_messages_rejected(self, raw):
        with pytest.raises(InvalidInputError):
            RealtimeMessage.from_json(raw)

    def test_missing_timestamp_defaults_to_now(self):
        message = RealtimeMessage.from_json('{"type": "pong"}')
        assert message.type is MessageType.PONG
        assert message.timestamp.tzinfo is not None


# =============================================================================
# Connection and reconnect
# =============================================================================


class TestReconnect:
    """Connection retries with exponential backoff."""

    def test_policy_delays_are_capped(self):
        policy = ReconnectPolicy(base_seconds=5, max_seconds=60, max_attempts=5)
        assert [policy.delay_for(n) for n in range(1, 6)] == [5, 10, 20, 40, 60]

    def test_connect_retries_with_backoff(self):
        transport = FakeTransport(fail_connects=3)
        sleeps = SleepRecorder()
        channel = _channel(transport, sleeps)

        channel.connect()

        assert channel.is_connected
        assert transport.connect_calls == 4
        assert sleeps.calls == [1, 2, 4]

    def test_connect_gives_up_after_max_attempts(self):
        transport = FakeTransport(fail_connects=10)
        sleeps = SleepRecorder()
        channel = _channel(transport, sleeps)

        with pytest.raises(TransportUnavailableError):
            channel.connect()

        assert transport.connect_calls == 4
        assert len(sleeps.calls) == 3
        assert not channel.is_connected

    def test_subscriptions_restored_after_reconnect(self, transport):
        channel = _channel(transport)
        channel.connect()
        channel.subscribe_lead("lead-1")
        channel.subscribe_funnel()
        transport.sent.clear()

        transport.drop()
        channel.reconnect()

        topics = [m["payload"]["topic"] for m in _sent(transport) if m["type"] == "subscribe"]
        assert sorted(topics) == [FUNNEL_TOPIC, lead_topic("lead-1")]
        assert channel.stats()["reconnects"] == 1

    def test_unsubscribe_is_not_restored(self, transport):
        channel = _channel(transport)
        channel.connect()
        channel.subscribe("a")
        channel.unsubscribe("a")
        transport.sent.clear()

        channel.reconnect()

        assert _sent(transport) == []
        assert channel.subscriptions == set()

    def test_blank_topic_rejected(self, transport):
        with pytest.raises(InvalidInputError):
            _channel(transport).subscribe("")

    def test_reconnect_callbacks_run(self, transport):
        channel = _channel(transport)
        channel.connect()
        callback = MagicMock()
        failing = MagicMock(side_effect=RuntimeError("boom"))
        channel.on_reconnect(failing)
        channel.on_reconnect(callback)

        channel.reconnect()

        failing.assert_called_once()
        callback.assert_called_once()


class TestPublish:
    """Outbound messages."""

    def test_publish_reconnects_dropped_transport(self, transport):
        channel = _channel(transport)
        channel.connect()
        transport.drop()

        channel.publish(ping_message())

        assert transport.connect_calls == 2
        assert _sent(transport)[-1]["type"] == "ping"

    def test_publish_retries_failed_send_once(self, transport):
        channel = _channel(transport)
        channel.connect()
        transport.fail_sends = 1

        channel.publish(ping_message())

        assert [m["type"] for m in _sent(transport)] == ["ping"]

    def test_publish_raises_when_send_keeps_failing(self, transport):
        channel = _channel(transport)
        channel.connect()
        transport.fail_sends = 2

        with pytest.raises(TransportUnavailableError):
            channel.publish(ping_message())


# =============================================================================
# Heartbeat and incoming messages
# =============================================================================


class TestHeartbeat:
    """Dead-connection detection."""

    def test_healthy_heartbeat_sends_ping(self, transport):
        clock = MonotonicClock()
        channel = _channel(transport, clock=clock)
        channel.connect()

        assert channel.heartbeat() is True
        assert _sent(transport)[-1]["type"] == "ping"

    def test_pong_keeps_connection_alive(self, transport):
        clock = MonotonicClock()
        channel = _channel(transport, clock=clock)
        channel.connect()

        clock.value += 50
        transport.push(pong_message().to_json())
        channel.poll()
        clock.value += 50

        assert not channel.is_stale()
        assert channel.heartbeat() is True

    def test_missed_pongs_trigger_reconnect(self, transport):
        clock = MonotonicClock()
        channel = _channel(transport, clock=clock)
        channel.connect()

        clock.value += 61
        assert channel.is_stale()
        assert channel.heartbeat() is False
        assert transport.connect_calls == 2
        assert not channel.is_stale()

    def test_ping_is_answered_with_pong(self, transport):
        channel = _channel(transport)
        channel.connect()
        transport.push(ping_message().to_json())

        received = channel.poll()

        assert [m.type for m in received] == [MessageType.PING]
        assert _sent(transport)[-1]["type"] == "pong"

    def test_poll_dispatches_and_skips_malformed(self, transport):
        channel = _channel(transport)
        channel.connect()
        handler = MagicMock()
        channel.on_message(MessageType.STATUS_UPDATE, handler)
        transport.push("{broken")
        transport.push(status_update_message("lead-2", "qualified", "offer_submitted", "manual").to_json())

        received = channel.poll()

        assert len(received) == 1
        handler.assert_called_once()
        assert handler.call_args[0][0].payload["lead_id"] == "lead-2"
        assert channel.stats()["messages_received"] == 1


# =============================================================================
# Stage notifier and cache reconciliation
# =============================================================================


class TestStageNotifier:
    """Funnel transitions published on the channel."""

    def test_notifier_publishes_status_and_funnel_updates(self, transport):
        channel = _channel(transport)
        channel.connect()
        notifier = RealtimeStageNotifier(channel)

        notifier.notify_stage_change(
            "lead-1", FunnelStage.QUALIFIED, FunnelStage.SHOWING_SCHEDULED, TransitionTrigger.AUTOMATIC, event_id=5,
        )

        status, funnel = _sent(transport)
        assert status["type"] == "status_update"
        assert status["payload"]["to_stage"] == "showing_scheduled"
        assert status["payload"]["event_id"] == 5
        assert funnel["type"] == "funnel_update"
        assert funnel["payload"]["topic"] == FUNNEL_TOPIC

    def test_notifier_queues_instead_of_reconnecting(self):
        sleeps = SleepRecorder()
        transport = FakeTransport()
        channel = _channel(transport, sleeps=sleeps)
        channel.connect()
        transport.drop()
        transport.fail_connects = 100

        notifier = RealtimeStageNotifier(channel)
        notifier.notify_stage_change(
            "lead-1", FunnelStage.LEAD_CREATED, FunnelStage.CONTACT_MADE, TransitionTrigger.AUTOMATIC,
        )

        assert transport.sent == []
        assert transport.connect_calls == 1
        assert sleeps.calls == []
        assert channel.stats()["queued"] == 2

        # The heartbeat owns reconnection and delivers the backlog in order
        transport.fail_connects = 0
        assert channel.heartbeat() is False
        assert [m["type"] for m in _sent(transport)] == ["status_update", "funnel_update"]
        assert channel.stats()["queued"] == 0

    def test_offer_does_not_wait_for_busy_channel(self, transport):
        channel = _channel(transport)
        channel.connect()
        held = threading.Event()
        release = threading.Event()

        def busy_reconnect():
            with channel._lock:
                held.set()
                release.wait(5)

        thread = threading.Thread(target=busy_reconnect)
        thread.start()
        held.wait(5)
        try:
            assert channel.offer(status_update_message("lead-1", "qualified", "offer_submitted", "manual")) is False
        finally:
            release.set()
            thread.join()

        assert transport.sent == []
        assert channel.heartbeat() is True
        assert [m["type"] for m in _sent(transport)] == ["ping", "status_update"]

    def test_outbox_drops_oldest_when_full(self, transport):
        channel = RealtimeChannel(
            transport,
            url="wss://crm.example.com/realtime",
            policy=POLICY,
            heartbeat_seconds=30,
            sleep=SleepRecorder(),
            clock=MonotonicClock(),
            outbox_limit=2,
        )

        for lead_id in ("lead-1", "lead-2", "lead-3"):
            assert channel.offer(status_update_message(lead_id, "qualified", "offer_submitted", "manual")) is False

        assert channel.stats()["dropped"] == 1
        channel.connect()
        assert [m["payload"]["lead_id"] for m in _sent(transport)] == ["lead-2", "lead-3"]

    def test_service_transition_reaches_channel(self, store, cache, registry, sleeps, clock, transport):
        from domain.conversion import ConversionService, EngineContext

        channel = _channel(transport)
        channel.connect()
        context = EngineContext.create(
            store=store,
            cache=cache,
            registry=registry,
            notifier=RealtimeStageNotifier(channel),
            sleep=sleeps,
            clock=clock,
        )

        ConversionService(context).log_conversion_event("lead-1", "contact_made")

        assert [m["type"] for m in _sent(transport)] == ["status_update", "funnel_update"]

    def test_reconnect_clears_cached_results(self, transport):
        cache = ResultCache()
        channel = _channel(transport)
        channel.connect()
        reconcile_cache_on_reconnect(channel, cache)
        cache.set(ResultCache.make_key(FUNNEL_NAMESPACE), {"total_leads": 3})

        channel.reconnect()

        assert cache.size == 0

"""Realtime message envelope.

Every message on the channel is JSON ``{"type", "payload", "timestamp"}``
with an ISO-8601 timestamp.
"""
from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from core.exceptions import InvalidInputError
from core.utils import ensure_aware, utcnow

FUNNEL_TOPIC = "funnel"
LEAD_TOPIC_PREFIX = "lead:"


def lead_topic(lead_id: str) -> str:
    """Channel topic for a single lead."""
    return f"{LEAD_TOPIC_PREFIX}{lead_id}"


class MessageType(str, Enum):
    """Kinds of messages exchanged with the realtime transport."""
    CONVERSION_EVENT = "conversion_event"
    STATUS_UPDATE = "status_update"
    FUNNEL_UPDATE = "funnel_update"
    NOTIFICATION = "notification"
    PING = "ping"
    PONG = "pong"
    SUBSCRIBE = "subscribe"
    UNSUBSCRIBE = "unsubscribe"


@dataclass
class RealtimeMessage:
    """One message on the realtime channel."""

    type: MessageType
    payload: Dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=utcnow)

    @property
    def topic(self) -> Optional[str]:
        return self.payload.get("topic")

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "type": self.type.value,
            "payload": self.payload,
            "timestamp": self.timestamp.isoformat(),
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), default=str)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RealtimeMessage":
        """
        Build a message from a decoded dictionary.

        Raises:
            InvalidInputError: Unknown type, or a payload/timestamp of the
                wrong shape.
        """
        try:
            kind = MessageType(data.get("type"))
        except ValueError as e:
            raise InvalidInputError(f"Unknown realtime message type: {data.get('type')!r}") from e

        payload = data.get("payload") or {}
        if not isinstance(payload, dict):
            raise InvalidInputError("Realtime message payload must be an object")

        raw_timestamp = data.get("timestamp")
        if raw_timestamp:
            try:
                timestamp = ensure_aware(datetime.fromisoformat(str(raw_timestamp)))
            except ValueError as e:
                raise InvalidInputError(f"Invalid realtime timestamp: {raw_timestamp!r}") from e
        else:
            timestamp = utcnow()

        return cls(type=kind, payload=payload, timestamp=timestamp)

    @classmethod
    def from_json(cls, text: str) -> "RealtimeMessage":
        try:
            data = json.loads(text)
        except json.JSONDecodeError as e:
            raise InvalidInputError(f"Realtime message is not valid JSON: {e}") from e
        if not isinstance(data, dict):
            raise InvalidInputError("Realtime message must be a JSON object")
        return cls.from_dict(data)


# Convenience constructors

def ping_message() -> RealtimeMessage:
    return RealtimeMessage(type=MessageType.PING)


def pong_message() -> RealtimeMessage:
    return RealtimeMessage(type=MessageType.PONG)


def subscribe_message(topic: str) -> RealtimeMessage:
    return RealtimeMessage(type=MessageType.SUBSCRIBE, payload={"topic": topic})


def unsubscribe_message(topic: str) -> RealtimeMessage:
    return RealtimeMessage(type=MessageType.UNSUBSCRIBE, payload={"topic": topic})


def status_update_message(
    lead_id: str,
    from_stage: str,
    to_stage: str,
    trigger: str,
    event_id: Optional[int] = None,
) -> RealtimeMessage:
    """Lead-level stage change, sent on the lead's topic."""
    return RealtimeMessage(
        type=MessageType.STATUS_UPDATE,
        payload={
            "topic": lead_topic(lead_id),
            "lead_id": lead_id,
            "from_stage": from_stage,
            "to_stage": to_stage,
            "trigger": trigger,
            "event_id": event_id,
        },
    )


def funnel_update_message(lead_id: str, to_stage: str) -> RealtimeMessage:
    """Funnel-wide signal that stage counts changed."""
    return RealtimeMessage(
        type=MessageType.FUNNEL_UPDATE,
        payload={"topic": FUNNEL_TOPIC, "lead_id": lead_id, "to_stage": to_stage},
    )


__all__ = [
    "MessageType",
    "RealtimeMessage",
    "FUNNEL_TOPIC",
    "lead_topic",
    "ping_message",
    "pong_message",
    "subscribe_message",
    "unsubscribe_message",
    "status_update_message",
    "funnel_update_message",
]

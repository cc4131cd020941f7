"""Realtime channel manager and message envelope."""
from __future__ import annotations

from .channel import ReconnectPolicy, RealtimeChannel, RealtimeStageNotifier, Transport, reconcile_cache_on_reconnect
from .messages import MessageType, RealtimeMessage, lead_topic

__all__ = [
    "Transport",
    "ReconnectPolicy",
    "RealtimeChannel",
    "RealtimeStageNotifier",
    "reconcile_cache_on_reconnect",
    "MessageType",
    "RealtimeMessage",
    "lead_topic",
]

"""Append-only conversion event logging with bounded retries."""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, Optional, Union

from core.config import get_settings
from core.exceptions import EventLogError, InvalidInputError
from core.logging_config import get_logger
from core.types import ConversionEventType
from core.utils import ensure_aware, utcnow
from services.retry import TRANSIENT_ERRORS, retrying_call
from services.store import ConversionStore, EventRecord

LOGGER = get_logger(__name__)


@dataclass(slots=True)
class EventLogEntry:
    """One event to be logged, as submitted by a caller."""

    lead_id: str
    event_type: Union[ConversionEventType, str]
    description: str = ""
    data: Optional[Dict[str, Any]] = None
    actor_id: Optional[str] = None
    occurred_at: Optional[datetime] = None



def parse_event_type(value: Union[ConversionEventType, str]) -> ConversionEventType:
    """Coerce a string to a ConversionEventType, raising InvalidInputError if unknown."""
    if isinstance(value, ConversionEventType):
        return value
    try:
        return ConversionEventType(str(value).strip().lower())
    except ValueError as e:
        raise InvalidInputError(f"Unknown conversion event type: {value!r}") from e


def require_lead_id(lead_id: Optional[str]) -> str:
    """Return the stripped lead id or raise InvalidInputError."""
    if lead_id is None or not str(lead_id).strip():
        raise InvalidInputError("lead_id is required")
    return str(lead_id).strip()


class EventLogger:
    """
    Appends conversion events to the store.

    Transient store failures are retried with exponential backoff up to
    ``max_attempts``; after that ``EventLogError`` is raised and nothing is
    assumed to have been written.
    """

    def __init__(
        self,
        store: ConversionStore,
        max_attempts: Optional[int] = None,
        sleep: Optional[Callable[[float], None]] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.max_attempts = max_attempts or get_settings().event_log_max_attempts
        self._sleep = sleep
        self._clock = clock

    def log(
        self,
        lead_id: str,
        event_type: Union[ConversionEventType, str],
        description: str = "",
        data: Optional[Dict[str, Any]] = None,
        actor_id: Optional[str] = None,
        occurred_at: Optional[datetime] = None,
    ) -> EventRecord:
        """
        Append one event.

        Args:
            lead_id: Lead the event belongs to.
            event_type: One of the conversion event types.
            description: Human-readable description.
            data: Arbitrary JSON-serializable payload.
            actor_id: Agent or system that caused the event.
            occurred_at: Event time. Defaults to now.

        Returns:
            The stored event, including its id.

        Raises:
            InvalidInputError: Missing lead id or unknown event type.
            EventLogError: The store kept failing after all attempts.
        """
        lead_id = require_lead_id(lead_id)
        kind = parse_event_type(event_type)
        timestamp = ensure_aware(occurred_at) or self._clock()

        try:
            record = retrying_call(
                lambda: self.store.append_event(
                    lead_id=lead_id,
                    event_type=kind,
                    description=description,
                    occurred_at=timestamp,
                    event_data=data,
                    actor_id=actor_id,
                ),
                max_attempts=self.max_attempts,
                retry_exceptions=TRANSIENT_ERRORS,
                sleep=self._sleep,
            )
        except TRANSIENT_ERRORS as e:
            LOGGER.error(
                f"Failed to log {kind.value} for lead {lead_id} after {self.max_attempts} attempts: {e}",
                extra={"lead_id": lead_id},
            )
            raise EventLogError(f"Could not log {kind.value} for lead {lead_id}: {e}") from e

        LOGGER.info(
            f"Logged {kind.value} event {record.id} for lead {lead_id}",
            extra={"lead_id": lead_id, "event_id": record.id},
        )
        return record


__all__ = [
    "EventLogger",
    "EventLogEntry",
    "parse_event_type",
    "require_lead_id",
]

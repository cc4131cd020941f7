"""Infrastructure services for the conversion engine.

- Conversion store (SQLAlchemy)
- Event logging with retries
- Result cache with invalidation hooks
- Per-lead locking
- Background ingestion and exports
"""
from __future__ import annotations

from .cache import ResultCache, CacheEntry
from .event_logger import EventLogger, EventLogEntry
from .locking import LeadLockRegistry, LockAcquisitionError
from .retry import retrying_call, timed_call, TRANSIENT_ERRORS
from .store import (
    ConversionStore,
    SqlConversionStore,
    EventRecord,
    StateRecord,
    TransitionRecord,
    OverrideRecord,
)

__all__ = [
    # Cache
    "ResultCache",
    "CacheEntry",
    # Event logging
    "EventLogger",
    "EventLogEntry",
    # Locking
    "LeadLockRegistry",
    "LockAcquisitionError",
    # Retry
    "retrying_call",
    "timed_call",
    "TRANSIENT_ERRORS",
    # Store
    "ConversionStore",
    "SqlConversionStore",
    "EventRecord",
    "StateRecord",
    "TransitionRecord",
    "OverrideRecord",
]

"""Core module exports."""
from __future__ import annotations

from core.config import Settings, get_settings, reload_settings
from core.db import Base, SessionLocal, get_session, init_db
from core.exceptions import (
    # Base
    LeadEngineError,
    # Configuration
    ConfigurationError,
    # Database
    DatabaseError,
    # Input
    InvalidInputError,
    InsufficientDataError,
    # Attribution
    ModelNotFoundError,
    # Conversion tracking
    EventLogError,
    StageUpdateFailedError,
    # Concurrency
    LockAcquisitionError,
    # Realtime
    TransportUnavailableError,
    # Jobs
    OperationCancelledError,
)
from core.logging_config import (
    setup_logging,
    setup_logging_from_settings,
    get_logger,
    get_context_logger,
    log_store_call,
    JSONFormatter,
    ContextLogger,
)
from core.models import (
    ConversionEvent,
    LeadConversionState,
    StageTransition,
    ScoreOverride,
)
from core.types import (
    ConversionEventType,
    FunnelStage,
    LeadAttributes,
    MarketContext,
    Touchpoint,
)

__all__ = [
    # Config
    "Settings",
    "get_settings",
    "reload_settings",
    # Database
    "get_session",
    "init_db",
    "SessionLocal",
    "Base",
    # Models
    "ConversionEvent",
    "LeadConversionState",
    "StageTransition",
    "ScoreOverride",
    # Types
    "ConversionEventType",
    "FunnelStage",
    "LeadAttributes",
    "MarketContext",
    "Touchpoint",
    # Exceptions
    "LeadEngineError",
    "ConfigurationError",
    "DatabaseError",
    "InvalidInputError",
    "InsufficientDataError",
    "ModelNotFoundError",
    "EventLogError",
    "StageUpdateFailedError",
    "LockAcquisitionError",
    "TransportUnavailableError",
    "OperationCancelledError",
    # Logging
    "setup_logging",
    "setup_logging_from_settings",
    "get_logger",
    "get_context_logger",
    "log_store_call",
    "JSONFormatter",
    "ContextLogger",
]

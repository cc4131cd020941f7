"""Custom exceptions for the lead conversion engine."""
from __future__ import annotations

from typing import Optional


class LeadEngineError(Exception):
    """Base exception for all application errors."""

    pass


# =============================================================================
# Configuration Errors
# =============================================================================


class ConfigurationError(LeadEngineError):
    """Raised when required configuration is missing or invalid."""

    pass


# =============================================================================
# Database Errors
# =============================================================================


class DatabaseError(LeadEngineError):
    """Base exception for persistence-store errors."""

    pass


# =============================================================================
# Input Errors
# =============================================================================


class InvalidInputError(LeadEngineError):
    """Raised when input is structurally invalid (e.g. no lead id)."""

    pass


class InsufficientDataError(LeadEngineError):
    """Raised when there is nothing to compute over (e.g. no touchpoints)."""

    pass


# =============================================================================
# Attribution Errors
# =============================================================================


class ModelNotFoundError(LeadEngineError):
    """Raised when an attribution model id is not registered."""

    def __init__(self, model_id: str):
        super().__init__(f"Attribution model {model_id!r} not found")
        self.model_id = model_id


# =============================================================================
# Conversion Tracking Errors
# =============================================================================


class EventLogError(LeadEngineError):
    """Raised when a conversion event could not be appended after all retries."""

    pass


class StageUpdateFailedError(LeadEngineError):
    """
    Raised when the stage write exhausted its retries.

    The triggering event is already durable; callers should re-query the
    lead's state instead of trusting the returned stage.
    """

    def __init__(
        self,
        lead_id: str,
        target_stage: str,
        event_id: Optional[int] = None,
        cause: Optional[BaseException] = None,
    ):
        message = f"Failed to persist stage {target_stage!r} for lead {lead_id}"
        if event_id is not None:
            message += f" (event {event_id} is logged)"
        if cause is not None:
            message += f": {cause}"
        super().__init__(message)
        self.lead_id = lead_id
        self.target_stage = target_stage
        self.event_id = event_id
        self.cause = cause


# =============================================================================
# Realtime Errors
# =============================================================================


class TransportUnavailableError(LeadEngineError):
    """Raised when the realtime channel is down and reconnection is exhausted."""

    pass


# =============================================================================
# Concurrency Errors
# =============================================================================


class LockAcquisitionError(LeadEngineError):
    """Raised when a lead lock cannot be acquired in time."""

    pass


# =============================================================================
# Job Errors
# =============================================================================


class OperationCancelledError(LeadEngineError):
    """Raised inside a job when its cancellation token was triggered."""

    pass


# Short names used throughout the public contract
InvalidInput = InvalidInputError
InsufficientData = InsufficientDataError
ModelNotFound = ModelNotFoundError
StageUpdateFailed = StageUpdateFailedError
TransportUnavailable = TransportUnavailableError


__all__ = [
    # Base
    "LeadEngineError",
    # Configuration
    "ConfigurationError",
    # Database
    "DatabaseError",
    # Input
    "InvalidInputError",
    "InsufficientDataError",
    "InvalidInput",
    "InsufficientData",
    # Attribution
    "ModelNotFoundError",
    "ModelNotFound",
    # Conversion tracking
    "EventLogError",
    "StageUpdateFailedError",
    "StageUpdateFailed",
    # Concurrency
    "LockAcquisitionError",
    # Realtime
    "TransportUnavailableError",
    "TransportUnavailable",
    # Jobs
    "OperationCancelledError",
]

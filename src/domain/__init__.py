"""Domain layer for lead conversion tracking.

Funnel state machine, analytics and the ``ConversionService`` facade that
surrounding application code calls.
"""
from __future__ import annotations

from .analytics import ConversionMetrics, ConversionTimeline, DateRange, FunnelSnapshot, FunnelStageStats
from .conversion import (
    BatchEventLogResult,
    ConversionService,
    DisplayScore,
    EngineContext,
    EventLogResult,
)
from .funnel import ConversionFunnelStateMachine, StageDecision, evaluate

__all__ = [
    # Conversion service
    "ConversionService",
    "EngineContext",
    "EventLogResult",
    "BatchEventLogResult",
    "DisplayScore",
    # Funnel
    "ConversionFunnelStateMachine",
    "StageDecision",
    "evaluate",
    # Analytics
    "DateRange",
    "FunnelSnapshot",
    "FunnelStageStats",
    "ConversionMetrics",
    "ConversionTimeline",
]

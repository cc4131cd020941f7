"""Lead quality scoring."""
from __future__ import annotations

from .engine import (
    ConversionSnapshot,
    LeadScoreProfile,
    ScoreBreakdown,
    ScoringEngine,
    grade_for,
)

__all__ = [
    "ScoringEngine",
    "ScoreBreakdown",
    "LeadScoreProfile",
    "ConversionSnapshot",
    "grade_for",
]

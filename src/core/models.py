"""SQLAlchemy ORM models for the conversion store."""
from __future__ import annotations

from datetime import datetime
from typing import Optional

from sqlalchemy import (
    DateTime,
    Float,
    Index,
    Integer,
    JSON,
    String,
    Text,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column

from core.db import Base
from core.types import FunnelStage, TransitionTrigger


# =============================================================================
# ConversionEvent Model
# =============================================================================


class ConversionEvent(Base):
    """
    A business event in a lead's conversion history.

    Append-only: rows are never updated or deleted. Per-lead order is
    (occurred_at, id).
    """
    __tablename__ = "conversion_event"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    lead_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)

    # Event data
    event_type: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")
    event_data: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    actor_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)

    # Timestamps
    occurred_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    __table_args__ = (
        Index("ix_conversion_event_lead_order", "lead_id", "occurred_at", "id"),
    )

    def __repr__(self) -> str:
        return f"<ConversionEvent(id={self.id}, lead_id={self.lead_id}, type={self.event_type})>"


# =============================================================================
# LeadConversionState Model
# =============================================================================


class LeadConversionState(Base):
    """
    Current funnel position of a lead.

    One row per lead, written only by the funnel state machine and never
    deleted; it remains the historical record after the sale closes.
    """
    __tablename__ = "lead_conversion_state"

    lead_id: Mapped[str] = mapped_column(String(64), primary_key=True)

    # Funnel position
    current_stage: Mapped[str] = mapped_column(
        String(50), nullable=False, default=FunnelStage.LEAD_CREATED.value, index=True
    )
    current_stage_order: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    last_transition_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    # Conversion tracking
    conversion_status: Mapped[str] = mapped_column(String(20), nullable=False, default="in_progress")
    conversion_value: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    conversion_start_date: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    conversion_complete_date: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    @property
    def stage(self) -> FunnelStage:
        return FunnelStage(self.current_stage)

    def __repr__(self) -> str:
        return f"<LeadConversionState(lead_id={self.lead_id}, stage={self.current_stage})>"


# =============================================================================
# StageTransition Model
# =============================================================================


class StageTransition(Base):
    """Audit row for every stage change, automatic or manual."""
    __tablename__ = "stage_transition"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    lead_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)

    from_stage: Mapped[str] = mapped_column(String(50), nullable=False)
    to_stage: Mapped[str] = mapped_column(String(50), nullable=False)
    from_order: Mapped[int] = mapped_column(Integer, nullable=False)
    to_order: Mapped[int] = mapped_column(Integer, nullable=False)

    trigger: Mapped[str] = mapped_column(
        String(20), nullable=False, default=TransitionTrigger.AUTOMATIC.value
    )
    reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    actor_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    event_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    transitioned_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


# =============================================================================
# ScoreOverride Model
# =============================================================================


class ScoreOverride(Base):
    """
    A manual score set by an agent.

    Shadows the computed profile for display; the computed profile is
    never overwritten.
    """
    __tablename__ = "score_override"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    lead_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    score: Mapped[float] = mapped_column(Float, nullable=False)
    reason: Mapped[str] = mapped_column(Text, nullable=False)
    actor_id: Mapped[str] = mapped_column(String(64), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


__all__ = [
    "ConversionEvent",
    "LeadConversionState",
    "StageTransition",
    "ScoreOverride",
]

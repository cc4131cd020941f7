"""Conversion store: the persistence collaborator behind event logging and the funnel.

The core only depends on the ``ConversionStore`` protocol. ``SqlConversionStore``
implements it on SQLAlchemy sessions and hands back plain records, never live
ORM rows, so callers can use results after the session is closed.
"""
from __future__ import annotations

import time
from contextlib import AbstractContextManager
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Protocol, TypeVar, runtime_checkable

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from core.db import get_session
from core.exceptions import DatabaseError
from core.logging_config import get_logger, log_store_call
from core.models import ConversionEvent, LeadConversionState, ScoreOverride, StageTransition
from core.types import ConversionEventType, FunnelStage, TransitionTrigger
from core.utils import ensure_aware

LOGGER = get_logger(__name__)

T = TypeVar("T")

SessionFactory = Callable[[], AbstractContextManager[Session]]


# =============================================================================
# Records
# =============================================================================


@dataclass(slots=True)
class EventRecord:
    """A logged conversion event."""

    id: int
    lead_id: str
    event_type: ConversionEventType
    description: str
    occurred_at: datetime
    event_data: Dict[str, Any] = field(default_factory=dict)
    actor_id: Optional[str] = None


@dataclass(slots=True)
class StateRecord:
    """A lead's current funnel position plus conversion bookkeeping."""

    lead_id: str
    current_stage: FunnelStage
    last_transition_at: datetime
    conversion_status: str = "in_progress"
    conversion_value: Optional[float] = None
    conversion_start_date: Optional[datetime] = None
    conversion_complete_date: Optional[datetime] = None

    @property
    def current_stage_order(self) -> int:
        return self.current_stage.order


@dataclass(slots=True)
class TransitionRecord:
    """One audited stage change."""

    lead_id: str
    from_stage: FunnelStage
    to_stage: FunnelStage
    trigger: TransitionTrigger
    transitioned_at: datetime
    reason: Optional[str] = None
    actor_id: Optional[str] = None
    event_id: Optional[int] = None
    id: Optional[int] = None


@dataclass(slots=True)
class OverrideRecord:
    """A manual score override."""

    lead_id: str
    score: float
    reason: str
    actor_id: str
    created_at: datetime
    id: Optional[int] = None


# =============================================================================
# Protocol
# =============================================================================


@runtime_checkable
class ConversionStore(Protocol):
    """Persistence operations the engine needs."""

    def append_event(
        self,
        lead_id: str,
        event_type: ConversionEventType,
        description: str,
        occurred_at: datetime,
        event_data: Optional[Dict[str, Any]] = None,
        actor_id: Optional[str] = None,
    ) -> EventRecord: ...

    def list_events(self, lead_id: str) -> List[EventRecord]: ...

    def list_all_events(
        self,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> List[EventRecord]: ...

    def get_state(self, lead_id: str) -> Optional[StateRecord]: ...

    def save_state(self, state: StateRecord) -> StateRecord: ...

    def list_states(self) -> List[StateRecord]: ...

    def record_transition(self, transition: TransitionRecord) -> TransitionRecord: ...

    def list_transitions(self, lead_id: Optional[str] = None) -> List[TransitionRecord]: ...

    def save_override(self, override: OverrideRecord) -> OverrideRecord: ...

    def get_latest_override(self, lead_id: str) -> Optional[OverrideRecord]: ...


# =============================================================================
# SQLAlchemy implementation
# =============================================================================


def _event_record(row: ConversionEvent) -> EventRecord:
    return EventRecord(
        id=row.id,
        lead_id=row.lead_id,
        event_type=ConversionEventType(row.event_type),
        description=row.description or "",
        occurred_at=ensure_aware(row.occurred_at),
        event_data=dict(row.event_data or {}),
        actor_id=row.actor_id,
    )


def _state_record(row: LeadConversionState) -> StateRecord:
    return StateRecord(
        lead_id=row.lead_id,
        current_stage=FunnelStage(row.current_stage),
        last_transition_at=ensure_aware(row.last_transition_at),
        conversion_status=row.conversion_status,
        conversion_value=row.conversion_value,
        conversion_start_date=ensure_aware(row.conversion_start_date),
        conversion_complete_date=ensure_aware(row.conversion_complete_date),
    )


def _transition_record(row: StageTransition) -> TransitionRecord:
    return TransitionRecord(
        id=row.id,
        lead_id=row.lead_id,
        from_stage=FunnelStage(row.from_stage),
        to_stage=FunnelStage(row.to_stage),
        trigger=TransitionTrigger(row.trigger),
        transitioned_at=ensure_aware(row.transitioned_at),
        reason=row.reason,
        actor_id=row.actor_id,
        event_id=row.event_id,
    )


def _override_record(row: ScoreOverride) -> OverrideRecord:
    return OverrideRecord(
        id=row.id,
        lead_id=row.lead_id,
        score=row.score,
        reason=row.reason,
        actor_id=row.actor_id,
        created_at=ensure_aware(row.created_at),
    )


class SqlConversionStore:
    """
    ``ConversionStore`` backed by SQLAlchemy ORM sessions.

    Every operation runs in its own session/transaction. SQLAlchemy errors
    surface as ``DatabaseError`` so the retry layer can treat them as
    transient.
    """

    COLLABORATOR = "conversion_store"

    def __init__(self, session_factory: SessionFactory = get_session):
        """
        Initialize the store.

        Args:
            session_factory: Zero-arg callable returning a session context
                manager that commits on success and rolls back on error.
        """
        self._session_factory = session_factory

    def _run(self, operation: str, work: Callable[[Session], T], **extra: Any) -> T:
        start = time.perf_counter()
        try:
            with self._session_factory() as session:
                result = work(session)
        except SQLAlchemyError as e:
            log_store_call(
                LOGGER, self.COLLABORATOR, operation, False,
                (time.perf_counter() - start) * 1000, error=str(e), **extra,
            )
            raise DatabaseError(f"{operation} failed: {e}") from e

        log_store_call(
            LOGGER, self.COLLABORATOR, operation, True,
            (time.perf_counter() - start) * 1000, **extra,
        )
        return result

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    def append_event(
        self,
        lead_id: str,
        event_type: ConversionEventType,
        description: str,
        occurred_at: datetime,
        event_data: Optional[Dict[str, Any]] = None,
        actor_id: Optional[str] = None,
    ) -> EventRecord:
        def work(session: Session) -> EventRecord:
            row = ConversionEvent(
                lead_id=lead_id,
                event_type=ConversionEventType(event_type).value,
                description=description,
                event_data=event_data or {},
                actor_id=actor_id,
                occurred_at=ensure_aware(occurred_at),
            )
            session.add(row)
            session.flush()
            return _event_record(row)

        return self._run("append_event", work, lead_id=lead_id)

    def list_events(self, lead_id: str) -> List[EventRecord]:
        def work(session: Session) -> List[EventRecord]:
            rows = session.scalars(
                select(ConversionEvent)
                .where(ConversionEvent.lead_id == lead_id)
                .order_by(ConversionEvent.occurred_at, ConversionEvent.id)
            ).all()
            return [_event_record(row) for row in rows]

        return self._run("list_events", work, lead_id=lead_id)

    def list_all_events(
        self,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> List[EventRecord]:
        def work(session: Session) -> List[EventRecord]:
            stmt = select(ConversionEvent)
            if start is not None:
                stmt = stmt.where(ConversionEvent.occurred_at >= ensure_aware(start))
            if end is not None:
                stmt = stmt.where(ConversionEvent.occurred_at <= ensure_aware(end))
            rows = session.scalars(
                stmt.order_by(ConversionEvent.lead_id, ConversionEvent.occurred_at, ConversionEvent.id)
            ).all()
            return [_event_record(row) for row in rows]

        return self._run("list_all_events", work)

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    def get_state(self, lead_id: str) -> Optional[StateRecord]:
        def work(session: Session) -> Optional[StateRecord]:
            row = session.get(LeadConversionState, lead_id)
            return _state_record(row) if row is not None else None

        return self._run("get_state", work, lead_id=lead_id)

    def save_state(self, state: StateRecord) -> StateRecord:
        def work(session: Session) -> StateRecord:
            row = session.get(LeadConversionState, state.lead_id)
            if row is None:
                row = LeadConversionState(lead_id=state.lead_id)
                session.add(row)
            row.current_stage = state.current_stage.value
            row.current_stage_order = state.current_stage.order
            row.last_transition_at = ensure_aware(state.last_transition_at)
            row.conversion_status = state.conversion_status
            row.conversion_value = state.conversion_value
            row.conversion_start_date = ensure_aware(state.conversion_start_date)
            row.conversion_complete_date = ensure_aware(state.conversion_complete_date)
            session.flush()
            return _state_record(row)

        return self._run("save_state", work, lead_id=state.lead_id)

    def list_states(self) -> List[StateRecord]:
        def work(session: Session) -> List[StateRecord]:
            rows = session.scalars(
                select(LeadConversionState).order_by(LeadConversionState.lead_id)
            ).all()
            return [_state_record(row) for row in rows]

        return self._run("list_states", work)

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def record_transition(self, transition: TransitionRecord) -> TransitionRecord:
        def work(session: Session) -> TransitionRecord:
            row = StageTransition(
                lead_id=transition.lead_id,
                from_stage=transition.from_stage.value,
                to_stage=transition.to_stage.value,
                from_order=transition.from_stage.order,
                to_order=transition.to_stage.order,
                trigger=transition.trigger.value,
                reason=transition.reason,
                actor_id=transition.actor_id,
                event_id=transition.event_id,
                transitioned_at=ensure_aware(transition.transitioned_at),
            )
            session.add(row)
            session.flush()
            return _transition_record(row)

        return self._run("record_transition", work, lead_id=transition.lead_id)

    def list_transitions(self, lead_id: Optional[str] = None) -> List[TransitionRecord]:
        def work(session: Session) -> List[TransitionRecord]:
            stmt = select(StageTransition)
            if lead_id is not None:
                stmt = stmt.where(StageTransition.lead_id == lead_id)
            rows = session.scalars(
                stmt.order_by(StageTransition.transitioned_at, StageTransition.id)
            ).all()
            return [_transition_record(row) for row in rows]

        return self._run("list_transitions", work, lead_id=lead_id)

    # ------------------------------------------------------------------
    # Score overrides
    # ------------------------------------------------------------------

    def save_override(self, override: OverrideRecord) -> OverrideRecord:
        def work(session: Session) -> OverrideRecord:
            row = ScoreOverride(
                lead_id=override.lead_id,
                score=override.score,
                reason=override.reason,
                actor_id=override.actor_id,
                created_at=ensure_aware(override.created_at),
            )
            session.add(row)
            session.flush()
            return _override_record(row)

        return self._run("save_override", work, lead_id=override.lead_id)

    def get_latest_override(self, lead_id: str) -> Optional[OverrideRecord]:
        def work(session: Session) -> Optional[OverrideRecord]:
            row = session.scalars(
                select(ScoreOverride)
                .where(ScoreOverride.lead_id == lead_id)
                .order_by(ScoreOverride.created_at.desc(), ScoreOverride.id.desc())
                .limit(1)
            ).first()
            return _override_record(row) if row is not None else None

        return self._run("get_latest_override", work, lead_id=lead_id)


__all__ = [
    "ConversionStore",
    "SqlConversionStore",
    "SessionFactory",
    "EventRecord",
    "StateRecord",
    "TransitionRecord",
    "OverrideRecord",
]

"""Conversion service: the operations surrounding application code calls.

``EngineContext`` bundles every collaborator (store, cache, registry,
engines, locks) and is built explicitly, so tests and callers can supply
isolated instances. ``ConversionService`` exposes the public operations
on top of a context.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Sequence, Union

from attribution.calculator import (
    AttributionCalculator,
    AttributionResult,
    ConversionInput,
    ModelComparison,
    MultiTouchAttribution,
)
from attribution.registry import AttributionModelRegistry
from core.config import Settings, get_settings
from core.exceptions import (
    EventLogError,
    InvalidInputError,
    StageUpdateFailedError,
)
from core.logging_config import get_logger
from core.types import (
    ACTIVITY_EVENT_MAP,
    ActivityType,
    ConversionEventType,
    ConversionType,
    FunnelStage,
    LeadAttributes,
    LeadGrade,
    Touchpoint,
)
from core.utils import utcnow
from domain.analytics import (
    ConversionMetrics,
    ConversionTimeline,
    DateRange,
    FunnelSnapshot,
    build_conversion_metrics,
    build_funnel_snapshot,
    build_timeline,
)
from domain.funnel import ConversionFunnelStateMachine, StageChangeNotifier
from scoring.engine import ConversionSnapshot, LeadScoreProfile, ScoringEngine, grade_for
from services.cache import (
    ATTRIBUTION_NAMESPACE,
    FUNNEL_NAMESPACE,
    METRICS_NAMESPACE,
    TIMELINE_NAMESPACE,
    ResultCache,
)
from services.event_logger import EventLogEntry, EventLogger, require_lead_id
from services.locking import LeadLockRegistry
from services.store import ConversionStore, OverrideRecord, SqlConversionStore, StateRecord

LOGGER = get_logger(__name__)


# =============================================================================
# Result types
# =============================================================================


@dataclass(frozen=True, slots=True)
class EventLogResult:
    """Outcome of logging one conversion event."""

    event_id: int
    lead_id: str
    current_stage: FunnelStage
    new_stage: Optional[FunnelStage] = None

    @property
    def transitioned(self) -> bool:
        return self.new_stage is not None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "event_id": self.event_id,
            "lead_id": self.lead_id,
            "current_stage": self.current_stage.value,
            "new_stage": self.new_stage.value if self.new_stage else None,
        }


@dataclass(slots=True)
class BatchEventItem:
    """One entry of a batch: either a result or an error message."""

    index: int
    entry: EventLogEntry
    result: Optional[EventLogResult] = None
    error: Optional[str] = None
    # Set when the event was logged but the stage write failed
    event_id: Optional[int] = None

    @property
    def success(self) -> bool:
        return self.result is not None


@dataclass
class BatchEventLogResult:
    """Per-item outcomes for a batch of conversion events."""

    items: List[BatchEventItem] = field(default_factory=list)

    @property
    def succeeded(self) -> List[BatchEventItem]:
        return [item for item in self.items if item.success]

    @property
    def failed(self) -> List[BatchEventItem]:
        return [item for item in self.items if not item.success]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total": len(self.items),
            "succeeded": len(self.succeeded),
            "failed": len(self.failed),
            "results": [item.result.to_dict() for item in self.succeeded],
            "errors": {item.index: item.error for item in self.failed},
        }


@dataclass(frozen=True)
class DisplayScore:
    """What a user sees: the computed profile, shadowed by a manual override if present."""

    profile: LeadScoreProfile
    override: Optional[OverrideRecord] = None

    @property
    def score(self) -> float:
        return self.override.score if self.override else self.profile.total_score

    @property
    def grade(self) -> LeadGrade:
        return grade_for(self.override.score) if self.override else self.profile.grade

    @property
    def is_overridden(self) -> bool:
        return self.override is not None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "lead_id": self.profile.lead_id,
            "score": self.score,
            "grade": self.grade.value,
            "is_overridden": self.is_overridden,
            "computed_score": self.profile.total_score,
            "override_reason": self.override.reason if self.override else None,
            "override_actor_id": self.override.actor_id if self.override else None,
        }


# =============================================================================
# Engine context
# =============================================================================


@dataclass
class EngineContext:
    """Explicitly constructed bundle of engine collaborators."""

    settings: Settings
    store: ConversionStore
    cache: ResultCache
    registry: AttributionModelRegistry
    scoring: ScoringEngine
    attribution: AttributionCalculator
    event_logger: EventLogger
    funnel: ConversionFunnelStateMachine
    locks: LeadLockRegistry
    clock: Callable[[], datetime] = utcnow

    @classmethod
    def create(
        cls,
        store: Optional[ConversionStore] = None,
        cache: Optional[ResultCache] = None,
        registry: Optional[AttributionModelRegistry] = None,
        notifier: Optional[StageChangeNotifier] = None,
        settings: Optional[Settings] = None,
        sleep: Optional[Callable[[float], None]] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> "EngineContext":
        """
        Build a context, filling in defaults from settings.

        Args:
            store: Persistence collaborator. Defaults to the SQL store on
                the configured database.
            cache: Result cache. A fresh one is created when None.
            registry: Attribution model registry. Seeded with the default
                models when None.
            notifier: Stage-change listener, e.g. a realtime channel.
            settings: Settings to read defaults from.
            sleep: Retry backoff sleep, injectable for tests.
            clock: Time source.
        """
        settings = settings or get_settings()
        store = store if store is not None else SqlConversionStore()
        cache = cache if cache is not None else ResultCache(default_ttl_seconds=settings.cache_ttl_seconds)
        registry = registry if registry is not None else AttributionModelRegistry()
        registry.on_change(
            lambda model_id, action: cache.invalidate_prefix(
                ATTRIBUTION_NAMESPACE, f"attribution model {model_id} {action}"
            )
        )

        return cls(
            settings=settings,
            store=store,
            cache=cache,
            registry=registry,
            scoring=ScoringEngine(expiry_hours=settings.score_expiry_hours),
            attribution=AttributionCalculator(
                registry,
                recent_days=settings.attribution_recent_days,
                default_model_id=settings.default_attribution_model,
                clock=clock,
            ),
            event_logger=EventLogger(
                store,
                max_attempts=settings.event_log_max_attempts,
                sleep=sleep,
                clock=clock,
            ),
            funnel=ConversionFunnelStateMachine(
                store,
                cache=cache,
                notifier=notifier,
                max_attempts=settings.stage_update_max_attempts,
                sleep=sleep,
                clock=clock,
            ),
            locks=LeadLockRegistry(),
            clock=clock,
        )


# =============================================================================
# Conversion service
# =============================================================================


class ConversionService:
    """Public operations of the scoring, funnel and attribution engine."""

    def __init__(self, context: EngineContext):
        self.context = context

    # ------------------------------------------------------------------
    # Scoring
    # ------------------------------------------------------------------

    def calculate_score(self, attrs: LeadAttributes) -> LeadScoreProfile:
        """Score a lead from its attributes alone."""
        return self.context.scoring.score(attrs, self.context.clock())

    def calculate_score_with_conversion(self, attrs: LeadAttributes) -> LeadScoreProfile:
        """Score a lead and blend in its current funnel position."""
        lead_id = require_lead_id(attrs.lead_id)
        snapshot = self._conversion_snapshot(lead_id)
        return self.context.scoring.score_with_conversion(attrs, snapshot, self.context.clock())

    def override_score(
        self,
        lead_id: str,
        score: float,
        reason: str,
        actor_id: str,
    ) -> OverrideRecord:
        """
        Record a manual score for display. The computed profile is untouched.

        Raises:
            InvalidInputError: Missing lead id, reason or actor, or a score
                outside [0, 100].
        """
        lead_id = require_lead_id(lead_id)
        if not reason or not reason.strip():
            raise InvalidInputError("A reason is required for a score override")
        if not actor_id or not str(actor_id).strip():
            raise InvalidInputError("actor_id is required for a score override")
        if not 0 <= score <= 100:
            raise InvalidInputError(f"Override score must be between 0 and 100, got {score}")

        record = self.context.store.save_override(
            OverrideRecord(
                lead_id=lead_id,
                score=float(score),
                reason=reason.strip(),
                actor_id=str(actor_id),
                created_at=self.context.clock(),
            )
        )
        self.context.cache.invalidate_lead(lead_id, f"score override for lead {lead_id}")
        LOGGER.info(
            f"Score for lead {lead_id} overridden to {score} by {actor_id}",
            extra={"lead_id": lead_id},
        )
        return record

    def get_display_score(self, attrs: LeadAttributes, with_conversion: bool = False) -> DisplayScore:
        """Computed profile plus the latest manual override, if any."""
        if with_conversion:
            profile = self.calculate_score_with_conversion(attrs)
        else:
            profile = self.calculate_score(attrs)
        override = self.context.store.get_latest_override(profile.lead_id)
        return DisplayScore(profile=profile, override=override)

    # ------------------------------------------------------------------
    # Event logging and funnel
    # ------------------------------------------------------------------

    def log_conversion_event(
        self,
        lead_id: str,
        event_type: Union[ConversionEventType, str],
        description: str = "",
        data: Optional[Dict[str, Any]] = None,
        actor_id: Optional[str] = None,
        occurred_at: Optional[datetime] = None,
    ) -> EventLogResult:
        """
        Log an event and advance the lead's stage if the event moves it forward.

        The lead's lock is held across append, evaluate and persist. The
        stage-change notification is sent after the lock is released.

        Returns:
            EventLogResult with the event id and the new stage, if any.

        Raises:
            InvalidInputError: Missing lead id or unknown event type.
            EventLogError: The event could not be logged.
            StageUpdateFailedError: The event is logged but the stage
                write failed; re-query the lead's state.
        """
        lead_id = require_lead_id(lead_id)
        funnel = self.context.funnel
        with funnel.deferred_notifications(), self.context.locks.lead_lock(lead_id):
            event = self.context.event_logger.log(
                lead_id,
                event_type,
                description=description,
                data=data,
                actor_id=actor_id,
                occurred_at=occurred_at,
            )
            self._invalidate_for_event(lead_id)
            new_stage = funnel.apply(event)
            state = self.context.store.get_state(lead_id)

        current = state.current_stage if state else (new_stage or FunnelStage.LEAD_CREATED)
        return EventLogResult(
            event_id=event.id,
            lead_id=lead_id,
            current_stage=current,
            new_stage=new_stage,
        )

    def log_conversion_events(self, entries: Sequence[EventLogEntry]) -> BatchEventLogResult:
        """Log a batch; each entry succeeds or fails on its own."""
        result = BatchEventLogResult()
        for index, entry in enumerate(entries):
            item = BatchEventItem(index=index, entry=entry)
            try:
                item.result = self.log_conversion_event(
                    entry.lead_id,
                    entry.event_type,
                    description=entry.description,
                    data=entry.data,
                    actor_id=entry.actor_id,
                    occurred_at=entry.occurred_at,
                )
            except StageUpdateFailedError as e:
                item.error = str(e)
                item.event_id = e.event_id
            except (InvalidInputError, EventLogError) as e:
                item.error = str(e)
            result.items.append(item)

        summary = result.to_dict()
        LOGGER.info(f"Batch of {summary['total']} conversion events: {summary['failed']} failed")
        return result

    def log_activity(
        self,
        lead_id: str,
        activity_type: Union[ActivityType, str],
        description: str = "",
        data: Optional[Dict[str, Any]] = None,
        actor_id: Optional[str] = None,
        occurred_at: Optional[datetime] = None,
    ) -> Optional[EventLogResult]:
        """
        Log the conversion event implied by a CRM activity.

        Returns:
            The event result, or None for activities with no funnel meaning
            (notes).
        """
        try:
            activity = ActivityType(activity_type)
        except ValueError as e:
            raise InvalidInputError(f"Unknown activity type: {activity_type!r}") from e

        event_type = ACTIVITY_EVENT_MAP.get(activity)
        if event_type is None:
            LOGGER.debug(f"Activity {activity.value} for lead {lead_id} has no conversion event")
            return None

        payload = dict(data or {})
        payload.setdefault("activity_type", activity.value)
        return self.log_conversion_event(
            lead_id,
            event_type,
            description=description or f"Activity: {activity.value}",
            data=payload,
            actor_id=actor_id,
            occurred_at=occurred_at,
        )

    def override_stage(
        self,
        lead_id: str,
        stage: Union[FunnelStage, str],
        reason: str,
        actor_id: Optional[str] = None,
    ) -> StateRecord:
        """Manually set a lead's stage; the only path that may move it backwards."""
        lead_id = require_lead_id(lead_id)
        funnel = self.context.funnel
        with funnel.deferred_notifications(), self.context.locks.lead_lock(lead_id):
            return funnel.manual_override(lead_id, stage, reason, actor_id)

    def get_conversion_funnel(self) -> FunnelSnapshot:
        """Per-stage funnel snapshot over all leads (cached)."""
        key = ResultCache.make_key(FUNNEL_NAMESPACE)
        return self.context.cache.get_or_compute(
            key,
            lambda: build_funnel_snapshot(
                self.context.store.list_states(),
                self.context.store.list_transitions(),
                self.context.clock(),
            ),
        )

    def get_leads_by_stage(self, stage: Union[FunnelStage, str, None] = None) -> List[StateRecord]:
        """
        Lead states, optionally only those currently at one stage.

        Most recently moved leads come first. Read straight from the store,
        not cached.

        Raises:
            InvalidInputError: Unknown stage.
        """
        target: Optional[FunnelStage] = None
        if stage is not None:
            try:
                target = FunnelStage(stage)
            except ValueError as e:
                raise InvalidInputError(f"Unknown funnel stage: {stage!r}") from e

        states = self.context.store.list_states()
        if target is not None:
            states = [state for state in states if state.current_stage is target]
        return sorted(states, key=lambda state: state.last_transition_at, reverse=True)

    def get_conversion_metrics(self, date_range: Optional[DateRange] = None) -> ConversionMetrics:
        """Conversion totals over an optional date range (cached per range)."""
        date_range = date_range or DateRange()
        key = ResultCache.make_key(METRICS_NAMESPACE, **date_range.to_dict())
        return self.context.cache.get_or_compute(
            key,
            lambda: build_conversion_metrics(
                self.context.store.list_states(),
                self.context.store.list_all_events(date_range.start, date_range.end),
                date_range,
            ),
        )

    def get_conversion_timeline(self, lead_id: str) -> ConversionTimeline:
        """One lead's events and stage history (cached per lead)."""
        lead_id = require_lead_id(lead_id)
        key = ResultCache.make_key(TIMELINE_NAMESPACE, lead_id)
        return self.context.cache.get_or_compute(
            key,
            lambda: build_timeline(
                lead_id,
                self.context.store.get_state(lead_id),
                self.context.store.list_events(lead_id),
                self.context.store.list_transitions(lead_id),
                self.context.clock(),
            ),
        )

    # ------------------------------------------------------------------
    # Attribution
    # ------------------------------------------------------------------

    def calculate_attribution(
        self,
        lead_id: str,
        conversion_id: str,
        conversion_type: Union[ConversionType, str],
        conversion_value: float,
        touchpoints: Sequence[Touchpoint],
        model_id: Optional[str] = None,
    ) -> AttributionResult:
        """Attribute one conversion under one model (cached per lead and parameters)."""
        model_id = model_id or self.context.settings.default_attribution_model
        key = ResultCache.make_key(
            ATTRIBUTION_NAMESPACE,
            lead_id,
            conversion_id=conversion_id,
            conversion_type=str(getattr(conversion_type, "value", conversion_type)),
            conversion_value=conversion_value,
            model_id=model_id,
            touchpoints=[
                (tp.template_id, tp.interaction_type.value, tp.timestamp.isoformat())
                for tp in touchpoints
            ],
        )
        return self.context.cache.get_or_compute(
            key,
            lambda: self.context.attribution.attribute(
                lead_id,
                conversion_id,
                conversion_type,
                conversion_value,
                touchpoints,
                model_id,
            ),
        )

    def calculate_multi_touch_attribution(
        self,
        lead_id: str,
        touchpoints: Sequence[Touchpoint],
        conversion: ConversionInput,
    ) -> MultiTouchAttribution:
        """Attribute one conversion under every active model."""
        return self.context.attribution.multi_touch(lead_id, touchpoints, conversion)

    def compare_attribution_models(
        self,
        conversions: Sequence[ConversionInput],
    ) -> Dict[str, ModelComparison]:
        """Per-model aggregates over the same set of conversions."""
        return self.context.attribution.compare_models(conversions)

    # ------------------------------------------------------------------
    # Housekeeping
    # ------------------------------------------------------------------

    def refresh(self, reason: str = "refresh") -> None:
        """Drop every cached result; used after a realtime reconnect."""
        self.context.cache.clear()
        LOGGER.info(f"Result cache cleared ({reason})")

    def get_statistics(self) -> Dict[str, Any]:
        """Engine-wide counters for dashboards and health checks."""
        return {
            "cache": self.context.cache.stats(),
            "attribution_models": self.context.registry.statistics(),
            "locked_leads": self.context.locks.size,
            "funnel": self.get_conversion_funnel().to_dict(),
        }

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _conversion_snapshot(self, lead_id: str) -> ConversionSnapshot:
        state = self.context.store.get_state(lead_id)
        if state is None:
            return ConversionSnapshot()
        events = self.context.store.list_events(lead_id)
        return ConversionSnapshot(
            current_stage=state.current_stage,
            event_count=len(events),
            funnel_entered_at=state.conversion_start_date,
            last_event_at=events[-1].occurred_at if events else None,
        )

    def _invalidate_for_event(self, lead_id: str) -> None:
        reason = f"new event for lead {lead_id}"
        self.context.cache.invalidate_lead(lead_id, reason)
        self.context.cache.invalidate_prefix(METRICS_NAMESPACE, reason)


__all__ = [
    "ConversionService",
    "EngineContext",
    "EventLogResult",
    "BatchEventItem",
    "BatchEventLogResult",
    "DisplayScore",
]

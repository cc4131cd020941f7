"""Conversion funnel state machine.

Stage progression is driven by logged conversion events. Automatic
transitions only ever move a lead forward; the stage order is
non-decreasing, so replaying an event (or logging a duplicate) is a no-op.
``manual_override`` is the single path that may move a lead backwards.
"""
from __future__ import annotations

import threading
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, Generator, List, Optional, Protocol, Union

from core.config import get_settings
from core.exceptions import InvalidInputError, StageUpdateFailedError
from core.logging_config import get_logger
from core.types import ConversionEventType, FunnelStage, TransitionTrigger
from core.utils import utcnow
from services.cache import FUNNEL_NAMESPACE, METRICS_NAMESPACE, ResultCache
from services.retry import TRANSIENT_ERRORS, retrying_call
from services.store import ConversionStore, EventRecord, StateRecord, TransitionRecord

LOGGER = get_logger(__name__)

CONVERTED = "converted"
IN_PROGRESS = "in_progress"

# Keys looked up in sale_closed event data for the conversion value
SALE_VALUE_KEYS = ("value", "sale_price", "conversion_value")


class StageChangeNotifier(Protocol):
    """Receives stage-change notifications after a transition is persisted."""

    def notify_stage_change(
        self,
        lead_id: str,
        from_stage: FunnelStage,
        to_stage: FunnelStage,
        trigger: TransitionTrigger,
        event_id: Optional[int] = None,
    ) -> None: ...


@dataclass(frozen=True, slots=True)
class StageDecision:
    """Result of evaluating one event against a lead's current stage."""

    current: FunnelStage
    target: FunnelStage

    @property
    def transition(self) -> bool:
        return self.target.order > self.current.order

    @property
    def resulting_stage(self) -> FunnelStage:
        return self.target if self.transition else self.current


def evaluate(
    current_stage: FunnelStage,
    event_type: Union[ConversionEventType, str],
) -> StageDecision:
    """
    Decide whether an event moves a lead forward.

    Pure: no I/O. An event whose stage order is not above the current
    order yields ``transition == False``.
    """
    kind = ConversionEventType(event_type)
    return StageDecision(current=FunnelStage(current_stage), target=kind.stage)


def _sale_value(data: Optional[Dict[str, Any]]) -> Optional[float]:
    if not data:
        return None
    for key in SALE_VALUE_KEYS:
        raw = data.get(key)
        if raw is None:
            continue
        try:
            return float(raw)
        except (TypeError, ValueError):
            LOGGER.warning(f"Ignoring non-numeric sale value {key}={raw!r}")
    return None


class ConversionFunnelStateMachine:
    """
    Applies logged events to a lead's ``LeadConversionState``.

    The caller is responsible for per-lead serialization (see
    ``LeadLockRegistry``); this class assumes it is the only writer for
    the lead while ``apply`` or ``manual_override`` runs.

    Every successful state write invalidates the funnel and metrics caches.
    Stage-change notifications go out straight after the write unless the
    caller wraps the work in ``deferred_notifications``, in which case they
    are sent when that block exits.
    """

    def __init__(
        self,
        store: ConversionStore,
        cache: Optional[ResultCache] = None,
        notifier: Optional[StageChangeNotifier] = None,
        max_attempts: Optional[int] = None,
        sleep: Optional[Callable[[float], None]] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        """
        Initialize the state machine.

        Args:
            store: Persistence collaborator.
            cache: Result cache to invalidate on transitions.
            notifier: Optional stage-change listener (realtime channel).
            max_attempts: Attempt ceiling for the state write.
            sleep: Backoff sleep, injectable for tests.
            clock: Time source for manual overrides.
        """
        self.store = store
        self.cache = cache
        self.notifier = notifier
        self.max_attempts = max_attempts or get_settings().stage_update_max_attempts
        self._sleep = sleep
        self._clock = clock
        self._deferred = threading.local()

    # =========================================================================
    # Event-driven transitions
    # =========================================================================

    def apply(self, event: EventRecord) -> Optional[FunnelStage]:
        """
        Apply an already-logged event.

        Args:
            event: The stored event.

        Returns:
            The new stage if the lead moved forward, otherwise None.

        Raises:
            StageUpdateFailedError: The state write kept failing. The event
                itself stays logged.
        """
        state = self.store.get_state(event.lead_id)
        created = state is None
        if state is None:
            state = StateRecord(
                lead_id=event.lead_id,
                current_stage=FunnelStage.LEAD_CREATED,
                last_transition_at=event.occurred_at,
                conversion_start_date=event.occurred_at,
            )

        decision = evaluate(state.current_stage, event.event_type)

        if not decision.transition:
            if created:
                self._persist(state, decision.current, event.id)
            LOGGER.debug(
                f"Event {event.id} ({event.event_type.value}) leaves lead {event.lead_id} "
                f"at {state.current_stage.value}",
                extra={"lead_id": event.lead_id, "event_id": event.id},
            )
            return None

        state.current_stage = decision.target
        state.last_transition_at = event.occurred_at
        if decision.target is FunnelStage.SALE_CLOSED:
            state.conversion_status = CONVERTED
            state.conversion_complete_date = event.occurred_at
            state.conversion_value = _sale_value(event.event_data)

        self._persist(state, decision.target, event.id)
        self._after_transition(
            TransitionRecord(
                lead_id=event.lead_id,
                from_stage=decision.current,
                to_stage=decision.target,
                trigger=TransitionTrigger.AUTOMATIC,
                transitioned_at=event.occurred_at,
                actor_id=event.actor_id,
                event_id=event.id,
            )
        )

        LOGGER.info(
            f"Lead {event.lead_id} moved {decision.current.value} -> {decision.target.value}",
            extra={"lead_id": event.lead_id, "event_id": event.id},
        )
        return decision.target

    # =========================================================================
    # Manual correction
    # =========================================================================

    def manual_override(
        self,
        lead_id: str,
        stage: Union[FunnelStage, str],
        reason: str,
        actor_id: Optional[str] = None,
    ) -> StateRecord:
        """
        Set a lead's stage explicitly, forwards or backwards.

        Args:
            lead_id: Lead to correct.
            stage: Stage to set.
            reason: Why the correction is needed. Required.
            actor_id: Agent making the correction.

        Returns:
            The persisted state.

        Raises:
            InvalidInputError: Blank reason or unknown stage.
            StageUpdateFailedError: The state write kept failing.
        """
        if not reason or not reason.strip():
            raise InvalidInputError("A reason is required for a manual stage override")
        try:
            target = FunnelStage(stage)
        except ValueError as e:
            raise InvalidInputError(f"Unknown funnel stage: {stage!r}") from e

        now = self._clock()
        state = self.store.get_state(lead_id)
        if state is None:
            state = StateRecord(
                lead_id=lead_id,
                current_stage=FunnelStage.LEAD_CREATED,
                last_transition_at=now,
                conversion_start_date=now,
            )

        previous = state.current_stage
        state.current_stage = target
        state.last_transition_at = now
        if target is FunnelStage.SALE_CLOSED:
            state.conversion_status = CONVERTED
            state.conversion_complete_date = state.conversion_complete_date or now
        elif previous is FunnelStage.SALE_CLOSED:
            state.conversion_status = IN_PROGRESS
            state.conversion_complete_date = None
            state.conversion_value = None

        saved = self._persist(state, target, None)
        if previous is not target:
            self._after_transition(
                TransitionRecord(
                    lead_id=lead_id,
                    from_stage=previous,
                    to_stage=target,
                    trigger=TransitionTrigger.MANUAL,
                    transitioned_at=now,
                    reason=reason.strip(),
                    actor_id=actor_id,
                )
            )

        LOGGER.info(
            f"Manual override for lead {lead_id}: {previous.value} -> {target.value} ({reason.strip()})",
            extra={"lead_id": lead_id},
        )
        return saved

    # =========================================================================
    # Notification batching
    # =========================================================================

    @contextmanager
    def deferred_notifications(self) -> Generator[None, None, None]:
        """
        Hold stage-change notifications made by this thread until the block exits.

        Usage:
            with funnel.deferred_notifications():
                with locks.lead_lock(lead_id):
                    funnel.apply(event)
            # notifier runs here, after the lead lock is released

        Nested blocks flush only when the outermost one exits.
        """
        if getattr(self._deferred, "pending", None) is not None:
            yield
            return

        pending: List[TransitionRecord] = []
        self._deferred.pending = pending
        try:
            yield
        finally:
            self._deferred.pending = None
            for transition in pending:
                self._notify(transition)

    # =========================================================================
    # Internals
    # =========================================================================

    def _persist(
        self,
        state: StateRecord,
        target: FunnelStage,
        event_id: Optional[int],
    ) -> StateRecord:
        try:
            saved = retrying_call(
                lambda: self.store.save_state(state),
                max_attempts=self.max_attempts,
                retry_exceptions=TRANSIENT_ERRORS,
                sleep=self._sleep,
            )
        except TRANSIENT_ERRORS as e:
            LOGGER.error(
                f"Stage update to {target.value} failed for lead {state.lead_id} "
                f"after {self.max_attempts} attempts: {e}",
                extra={"lead_id": state.lead_id, "event_id": event_id},
            )
            raise StageUpdateFailedError(
                lead_id=state.lead_id,
                target_stage=target.value,
                event_id=event_id,
                cause=e,
            ) from e

        self._invalidate(state.lead_id)
        return saved

    def _invalidate(self, lead_id: str) -> None:
        if self.cache is None:
            return
        reason = f"stage write for lead {lead_id}"
        self.cache.invalidate_prefix(FUNNEL_NAMESPACE, reason)
        self.cache.invalidate_prefix(METRICS_NAMESPACE, reason)
        self.cache.invalidate_lead(lead_id, reason)

    def _after_transition(self, transition: TransitionRecord) -> None:
        try:
            self.store.record_transition(transition)
        except TRANSIENT_ERRORS as e:
            LOGGER.warning(
                f"Could not record transition audit row for lead {transition.lead_id}: {e}",
                extra={"lead_id": transition.lead_id, "event_id": transition.event_id},
            )
        # Timeline and metrics read the audit rows too
        self._invalidate(transition.lead_id)

        pending = getattr(self._deferred, "pending", None)
        if pending is not None:
            pending.append(transition)
        else:
            self._notify(transition)

    def _notify(self, transition: TransitionRecord) -> None:
        if self.notifier is not None:
            try:
                self.notifier.notify_stage_change(
                    lead_id=transition.lead_id,
                    from_stage=transition.from_stage,
                    to_stage=transition.to_stage,
                    trigger=transition.trigger,
                    event_id=transition.event_id,
                )
            except Exception as e:
                LOGGER.warning(
                    f"Stage change notification dropped for lead {transition.lead_id}: {e}",
                    extra={"lead_id": transition.lead_id},
                )


__all__ = [
    "ConversionFunnelStateMachine",
    "StageChangeNotifier",
    "StageDecision",
    "evaluate",
    "CONVERTED",
    "IN_PROGRESS",
]

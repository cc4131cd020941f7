"""Funnel and conversion analytics computed from stored state.

Everything here is a pure function over records already read from the
store; ``ConversionService`` handles fetching and caching.
"""
from __future__ import annotations

from collections import Counter, defaultdict
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from core.exceptions import InvalidInputError
from core.types import FunnelStage, StageTrend
from core.utils import days_between, ensure_aware
from services.store import EventRecord, StateRecord, TransitionRecord

TOP_STAGES_LIMIT = 5

# Bottleneck scoring, rates in percent
BOTTLENECK_DROP_THRESHOLD = 20.0
BOTTLENECK_SCORE_CUTOFF = 50.0
SLOW_STAGE_DAYS = 30.0
CROWDED_STAGE_LEADS = 100
IMPROVING_RATE = 70.0
DECLINING_RATE = 30.0


# =============================================================================
# Result types
# =============================================================================


@dataclass(frozen=True, slots=True)
class DateRange:
    """Inclusive date range. Either bound may be open."""

    start: Optional[datetime] = None
    end: Optional[datetime] = None

    def __post_init__(self) -> None:
        if self.start is not None and self.end is not None and ensure_aware(self.start) > ensure_aware(self.end):
            raise InvalidInputError("date range start must not be after end")

    def contains(self, moment: Optional[datetime]) -> bool:
        if moment is None:
            return False
        moment = ensure_aware(moment)
        if self.start is not None and moment < ensure_aware(self.start):
            return False
        if self.end is not None and moment > ensure_aware(self.end):
            return False
        return True

    def to_dict(self) -> Dict[str, Optional[str]]:
        return {
            "start": self.start.isoformat() if self.start else None,
            "end": self.end.isoformat() if self.end else None,
        }


@dataclass
class FunnelStageStats:
    """Per-stage numbers in a funnel snapshot."""

    stage: FunnelStage
    order: int
    leads_in_stage: int
    leads_at_stage: int
    conversion_rate: float
    average_days_in_stage: float
    total_conversion_value: float = 0.0
    bottleneck_score: float = 0.0
    trend: StageTrend = StageTrend.STABLE

    def to_dict(self) -> Dict[str, Any]:
        return {
            "stage": self.stage.value,
            "order": self.order,
            "leads_in_stage": self.leads_in_stage,
            "leads_at_stage": self.leads_at_stage,
            "conversion_rate": round(self.conversion_rate, 4),
            "average_days_in_stage": round(self.average_days_in_stage, 2),
            "total_conversion_value": self.total_conversion_value,
            "bottleneck_score": round(self.bottleneck_score, 2),
            "trend": self.trend.value,
        }


@dataclass
class FunnelSnapshot:
    """Funnel-wide view: how many leads reached each stage and how fast they move."""

    stages: List[FunnelStageStats]
    total_leads: int
    converted_leads: int
    overall_conversion_rate: float
    total_conversion_value: float
    calculated_at: datetime
    bottlenecks: List[FunnelStage] = field(default_factory=list)
    recommendations: List[str] = field(default_factory=list)

    def stage(self, stage: FunnelStage) -> FunnelStageStats:
        for stats in self.stages:
            if stats.stage is stage:
                return stats
        raise KeyError(stage)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "stages": [stats.to_dict() for stats in self.stages],
            "total_leads": self.total_leads,
            "converted_leads": self.converted_leads,
            "overall_conversion_rate": round(self.overall_conversion_rate, 4),
            "total_conversion_value": self.total_conversion_value,
            "calculated_at": self.calculated_at.isoformat(),
            "bottlenecks": [stage.value for stage in self.bottlenecks],
            "recommendations": list(self.recommendations),
        }


@dataclass
class ConversionMetrics:
    """Conversion totals over a date range."""

    total_conversions: int
    total_leads: int
    conversion_rate: float
    average_time_to_convert: float
    top_stages: List[Tuple[FunnelStage, int]] = field(default_factory=list)
    total_conversion_value: float = 0.0
    date_range: DateRange = field(default_factory=DateRange)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total_conversions": self.total_conversions,
            "total_leads": self.total_leads,
            "conversion_rate": round(self.conversion_rate, 4),
            "average_time_to_convert": round(self.average_time_to_convert, 2),
            "top_stages": [{"stage": stage.value, "count": count} for stage, count in self.top_stages],
            "total_conversion_value": self.total_conversion_value,
            "date_range": self.date_range.to_dict(),
        }


@dataclass
class ConversionTimeline:
    """A single lead's event log and stage history."""

    lead_id: str
    current_stage: Optional[FunnelStage]
    conversion_status: Optional[str]
    events: List[EventRecord]
    transitions: List[TransitionRecord]
    days_in_funnel: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "lead_id": self.lead_id,
            "current_stage": self.current_stage.value if self.current_stage else None,
            "conversion_status": self.conversion_status,
            "days_in_funnel": round(self.days_in_funnel, 2),
            "events": [
                {
                    "id": event.id,
                    "event_type": event.event_type.value,
                    "description": event.description,
                    "occurred_at": event.occurred_at.isoformat(),
                    "actor_id": event.actor_id,
                    "data": event.event_data,
                }
                for event in self.events
            ],
            "transitions": [
                {
                    "from_stage": t.from_stage.value,
                    "to_stage": t.to_stage.value,
                    "trigger": t.trigger.value,
                    "reason": t.reason,
                    "actor_id": t.actor_id,
                    "event_id": t.event_id,
                    "transitioned_at": t.transitioned_at.isoformat(),
                }
                for t in self.transitions
            ],
        }


# =============================================================================
# Computations
# =============================================================================


def stage_durations(
    state: StateRecord,
    transitions: Sequence[TransitionRecord],
    now: datetime,
) -> Dict[FunnelStage, float]:
    """
    Days a lead spent in each stage it has visited.

    The lead enters lead_created at ``conversion_start_date`` and every
    transition opens the next segment. The current segment runs until
    ``now`` unless the lead has closed.
    """
    entered_at = state.conversion_start_date or state.last_transition_at
    segments: List[Tuple[FunnelStage, datetime]] = [(FunnelStage.LEAD_CREATED, entered_at)]
    for transition in sorted(transitions, key=lambda t: (t.transitioned_at, t.id or 0)):
        segments.append((transition.to_stage, transition.transitioned_at))

    durations: Dict[FunnelStage, float] = defaultdict(float)
    for index, (stage, started) in enumerate(segments):
        if index + 1 < len(segments):
            ended = segments[index + 1][1]
        elif stage.is_terminal:
            continue
        else:
            ended = now
        durations[stage] += max(days_between(started, ended), 0.0)
    return dict(durations)


def bottleneck_score(stats: FunnelStageStats, next_stats: Optional[FunnelStageStats]) -> float:
    """
    Score from 0 to 100; higher means the stage holds leads back.

    Adds up four penalties: a pass-through rate under 50%, an average
    dwell over SLOW_STAGE_DAYS, a crowded stage with a rate under 30%, and
    a drop to the next stage above BOTTLENECK_DROP_THRESHOLD percent.
    A stage no lead has reached scores 0.
    """
    if stats.leads_in_stage == 0:
        return 0.0

    rate = stats.conversion_rate * 100
    score = 0.0
    if rate < 50:
        score += (50 - rate) * 2
    if stats.average_days_in_stage > SLOW_STAGE_DAYS:
        score += min((stats.average_days_in_stage - SLOW_STAGE_DAYS) * 0.5, 30)
    if stats.leads_in_stage > CROWDED_STAGE_LEADS and rate < DECLINING_RATE:
        score += 20
    if next_stats is not None and stats.leads_in_stage > next_stats.leads_in_stage:
        drop = (stats.leads_in_stage - next_stats.leads_in_stage) / stats.leads_in_stage * 100
        if drop > BOTTLENECK_DROP_THRESHOLD:
            score += drop - BOTTLENECK_DROP_THRESHOLD
    return min(max(score, 0.0), 100.0)


def stage_trend(stats: FunnelStageStats) -> StageTrend:
    if stats.leads_in_stage == 0:
        return StageTrend.STABLE
    rate = stats.conversion_rate * 100
    if rate > IMPROVING_RATE:
        return StageTrend.IMPROVING
    if rate < DECLINING_RATE:
        return StageTrend.DECLINING
    return StageTrend.STABLE


def identify_bottlenecks(stats: Sequence[FunnelStageStats]) -> List[FunnelStage]:
    """Stages scoring above BOTTLENECK_SCORE_CUTOFF, worst first."""
    flagged = [s for s in stats if s.bottleneck_score > BOTTLENECK_SCORE_CUTOFF]
    flagged.sort(key=lambda s: (-s.bottleneck_score, s.order))
    return [s.stage for s in flagged]


def _stage_label(stage: FunnelStage) -> str:
    return stage.value.replace("_", " ")


def funnel_recommendations(
    stats: Sequence[FunnelStageStats],
    bottlenecks: Sequence[FunnelStage],
) -> List[str]:
    """Plain-language suggestions for the stages leads have reached."""
    populated = [s for s in stats if s.leads_in_stage > 0]
    if not populated:
        return []

    recommendations: List[str] = []
    if any(s.conversion_rate < 0.5 for s in populated):
        recommendations.append(
            "Focus on improving conversion rates in early stages through better lead qualification"
        )
    if any(s.average_days_in_stage > 14 for s in populated):
        recommendations.append(
            "Reduce time spent in stages by streamlining processes and improving follow-up"
        )

    by_stage = {s.stage: s for s in populated}
    for stage in bottlenecks:
        stage_stats = by_stage.get(stage)
        if stage_stats is None:
            continue
        label = _stage_label(stage)
        if stage_stats.conversion_rate * 100 < DECLINING_RATE:
            recommendations.append(
                f"Address low conversion in {label}: consider revising qualification criteria or process"
            )
        if stage_stats.average_days_in_stage > 21:
            recommendations.append(
                f"Reduce dwell time in {label}: implement automated reminders and follow-ups"
            )

    if all(s.conversion_rate > 0.6 for s in populated):
        recommendations.append("Excellent conversion performance: focus on scaling successful processes")
    return recommendations


def build_funnel_snapshot(
    states: Iterable[StateRecord],
    transitions: Iterable[TransitionRecord],
    now: datetime,
) -> FunnelSnapshot:
    """
    Aggregate every lead's state into per-stage funnel stats.

    ``leads_in_stage`` counts leads that reached the stage (current order
    at or beyond it); ``conversion_rate`` is the share of those that
    reached the next stage.
    """
    states = list(states)
    by_lead: Dict[str, List[TransitionRecord]] = defaultdict(list)
    for transition in transitions:
        by_lead[transition.lead_id].append(transition)

    stage_days: Dict[FunnelStage, List[float]] = defaultdict(list)
    for state in states:
        for stage, days in stage_durations(state, by_lead.get(state.lead_id, []), now).items():
            stage_days[stage].append(days)

    ordered = FunnelStage.ordered()
    reached = {stage: 0 for stage in ordered}
    current = Counter(state.current_stage for state in states)
    value_by_stage: Dict[FunnelStage, float] = defaultdict(float)
    for state in states:
        for stage in ordered:
            if state.current_stage.order >= stage.order:
                reached[stage] += 1
                if state.conversion_value:
                    value_by_stage[stage] += state.conversion_value

    stats: List[FunnelStageStats] = []
    for index, stage in enumerate(ordered):
        in_stage = reached[stage]
        if index + 1 < len(ordered):
            rate = reached[ordered[index + 1]] / in_stage if in_stage else 0.0
        else:
            rate = 1.0 if in_stage else 0.0
        days = stage_days.get(stage, [])
        stats.append(
            FunnelStageStats(
                stage=stage,
                order=stage.order,
                leads_in_stage=in_stage,
                leads_at_stage=current.get(stage, 0),
                conversion_rate=rate,
                average_days_in_stage=sum(days) / len(days) if days else 0.0,
                total_conversion_value=value_by_stage.get(stage, 0.0),
            )
        )

    for index, stage_stats in enumerate(stats):
        next_stats = stats[index + 1] if index + 1 < len(stats) else None
        stage_stats.bottleneck_score = bottleneck_score(stage_stats, next_stats)
        stage_stats.trend = stage_trend(stage_stats)
    bottlenecks = identify_bottlenecks(stats)

    total = len(states)
    converted = reached[FunnelStage.SALE_CLOSED]
    return FunnelSnapshot(
        stages=stats,
        total_leads=total,
        converted_leads=converted,
        overall_conversion_rate=converted / total if total else 0.0,
        total_conversion_value=sum(state.conversion_value or 0.0 for state in states),
        calculated_at=now,
        bottlenecks=bottlenecks,
        recommendations=funnel_recommendations(stats, bottlenecks),
    )


def build_conversion_metrics(
    states: Iterable[StateRecord],
    events: Iterable[EventRecord],
    date_range: Optional[DateRange] = None,
) -> ConversionMetrics:
    """
    Conversion totals for leads and events inside a date range.

    A lead counts toward ``total_leads`` when it entered the funnel in the
    range, and toward ``total_conversions`` when its sale closed in the
    range. ``top_stages`` ranks stages by the number of events logged in
    the range.
    """
    date_range = date_range or DateRange()
    states = list(states)

    entered = [
        state for state in states
        if date_range.contains(state.conversion_start_date or state.last_transition_at)
    ]
    converted = [
        state for state in states
        if state.current_stage is FunnelStage.SALE_CLOSED
        and date_range.contains(state.conversion_complete_date or state.last_transition_at)
    ]

    convert_days = [
        days_between(state.conversion_start_date, state.conversion_complete_date)
        for state in converted
        if state.conversion_start_date and state.conversion_complete_date
    ]

    stage_counts = Counter(
        event.event_type.stage for event in events if date_range.contains(event.occurred_at)
    )
    top_stages = sorted(stage_counts.items(), key=lambda item: (-item[1], item[0].order))[:TOP_STAGES_LIMIT]

    return ConversionMetrics(
        total_conversions=len(converted),
        total_leads=len(entered),
        conversion_rate=len(converted) / len(entered) if entered else 0.0,
        average_time_to_convert=sum(convert_days) / len(convert_days) if convert_days else 0.0,
        top_stages=top_stages,
        total_conversion_value=sum(state.conversion_value or 0.0 for state in converted),
        date_range=date_range,
    )


def build_timeline(
    lead_id: str,
    state: Optional[StateRecord],
    events: Sequence[EventRecord],
    transitions: Sequence[TransitionRecord],
    now: datetime,
) -> ConversionTimeline:
    """Assemble one lead's timeline; a lead with no state has an empty funnel."""
    days_in_funnel = 0.0
    if state is not None and state.conversion_start_date is not None:
        until = state.conversion_complete_date if state.current_stage.is_terminal else now
        days_in_funnel = max(days_between(state.conversion_start_date, until or now), 0.0)

    return ConversionTimeline(
        lead_id=lead_id,
        current_stage=state.current_stage if state else None,
        conversion_status=state.conversion_status if state else None,
        events=list(events),
        transitions=list(transitions),
        days_in_funnel=days_in_funnel,
    )


__all__ = [
    "DateRange",
    "FunnelStageStats",
    "FunnelSnapshot",
    "ConversionMetrics",
    "ConversionTimeline",
    "stage_durations",
    "build_funnel_snapshot",
    "bottleneck_score",
    "stage_trend",
    "identify_bottlenecks",
    "funnel_recommendations",
    "build_conversion_metrics",
    "build_timeline",
]

"""
Lead Scoring Engine.

Produces a weighted quality score (0-100), a letter grade and a confidence
value for a real-estate lead from its raw attributes. An enhanced variant
blends in the lead's conversion-funnel progress.

Pure: no I/O. ``now`` is injectable so results are reproducible.
"""
from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from core.config import get_settings
from core.exceptions import ConfigurationError, InvalidInputError
from core.logging_config import get_logger
from core.types import (
    FunnelStage,
    LeadAttributes,
    LeadGrade,
    MarketContext,
    MarketTrend,
    PropertyType,
    QualificationStatus,
)
from core.utils import clamp, days_between, utcnow

LOGGER = get_logger(__name__)

# =============================================================================
# WEIGHTS & RULE TABLES
# =============================================================================

DEFAULT_WEIGHTS: Dict[str, float] = {
    "budget": 0.25,
    "timeline": 0.20,
    "property_type": 0.15,
    "location": 0.15,
    "engagement": 0.10,
    "qualification": 0.10,
    "market_fit": 0.05,
}

WEIGHT_TOLERANCE = 1e-9

# Budget bands by budget / market-average ratio
BUDGET_HIGH_RATIO = 1.2
BUDGET_MEDIUM_RATIO = 0.8
BUDGET_SCORES = {"high": 100, "medium": 75, "low": 50}
BUDGET_UNKNOWN = 50

URGENT_KEYWORDS = ("asap", "immediately", "urgent", "now", "today", "this week")
SOON_KEYWORDS = ("this month", "next month", "soon", "1-2 months", "within 2 months")
TIMELINE_SCORES = {"urgent": 100, "soon": 80, "flexible": 60}
TIMELINE_UNKNOWN = 60

PROPERTY_TYPE_SCORES: Dict[PropertyType, int] = {
    PropertyType.SINGLE_FAMILY: 90,
    PropertyType.CONDO: 85,
    PropertyType.TOWNHOUSE: 80,
    PropertyType.MULTI_FAMILY: 75,
    PropertyType.COMMERCIAL: 70,
    PropertyType.LAND: 65,
    PropertyType.OTHER: 60,
}
PROPERTY_TYPE_UNKNOWN = 60

PREFERRED_LOCATIONS = ("downtown", "uptown", "suburb", "family-friendly")
CHALLENGING_LOCATIONS = ("industrial", "high-crime", "flood-zone")
LOCATION_SCORES = {"preferred": 90, "acceptable": 70, "challenging": 50}
LOCATION_UNKNOWN = 70

ENGAGEMENT_BASE = 50
# (minimum inquiries, score floor), checked top-down
INQUIRY_TIERS = ((5, 90), (3, 75), (1, 60))

QUALIFICATION_SCORES: Dict[QualificationStatus, int] = {
    QualificationStatus.PRE_QUALIFIED: 95,
    QualificationStatus.QUALIFIED: 80,
    QualificationStatus.NEEDS_QUALIFICATION: 60,
}
QUALIFICATION_DEFAULT = 60

MARKET_FIT_BASE = 70

GRADE_THRESHOLDS = (
    (95.0, LeadGrade.A_PLUS),
    (85.0, LeadGrade.A),
    (77.5, LeadGrade.B_PLUS),
    (70.0, LeadGrade.B),
    (62.5, LeadGrade.C_PLUS),
    (55.0, LeadGrade.C),
    (40.0, LeadGrade.D),
)

# Confidence penalties for missing fields
CONFIDENCE_PENALTIES = {
    "budget": 15,
    "timeline": 10,
    "property_type": 10,
    "location": 10,
    "qualification": 15,
    "engagement": 10,
}
STALENESS_GRACE_DAYS = 30
STALENESS_MAX_PENALTY = 20

# =============================================================================
# CONVERSION BLEND
# =============================================================================

CONVERSION_WEIGHT = 0.15

STAGE_PROGRESS_SCORES: Dict[FunnelStage, int] = {
    FunnelStage.LEAD_CREATED: 10,
    FunnelStage.CONTACT_MADE: 20,
    FunnelStage.QUALIFIED: 35,
    FunnelStage.SHOWING_SCHEDULED: 50,
    FunnelStage.SHOWING_COMPLETED: 70,
    FunnelStage.OFFER_SUBMITTED: 85,
    FunnelStage.OFFER_ACCEPTED: 95,
    FunnelStage.SALE_CLOSED: 100,
}

STAGE_PROBABILITY: Dict[FunnelStage, float] = {
    FunnelStage.LEAD_CREATED: 0.1,
    FunnelStage.CONTACT_MADE: 0.15,
    FunnelStage.QUALIFIED: 0.25,
    FunnelStage.SHOWING_SCHEDULED: 0.4,
    FunnelStage.SHOWING_COMPLETED: 0.6,
    FunnelStage.OFFER_SUBMITTED: 0.75,
    FunnelStage.OFFER_ACCEPTED: 0.9,
    FunnelStage.SALE_CLOSED: 1.0,
}

ADVANCED_STAGES = frozenset({
    FunnelStage.SHOWING_COMPLETED,
    FunnelStage.OFFER_SUBMITTED,
    FunnelStage.OFFER_ACCEPTED,
})


# =============================================================================
# Result types
# =============================================================================


@dataclass(frozen=True)
class ScoreBreakdown:
    """Per-category sub-scores, each in [0, 100]."""
    budget: float
    timeline: float
    property_type: float
    location: float
    engagement: float
    qualification: float
    market_fit: float

    def as_dict(self) -> Dict[str, float]:
        return {
            "budget": self.budget,
            "timeline": self.timeline,
            "property_type": self.property_type,
            "location": self.location,
            "engagement": self.engagement,
            "qualification": self.qualification,
            "market_fit": self.market_fit,
        }


@dataclass(frozen=True)
class ScoreFactor:
    """A weighted category with a human-readable explanation."""
    name: str
    value: float
    weight: float
    impact: str  # positive | neutral | negative
    description: str


@dataclass(frozen=True)
class ConversionSnapshot:
    """A lead's funnel position as seen by the enhanced score."""
    current_stage: FunnelStage = FunnelStage.LEAD_CREATED
    event_count: int = 0
    funnel_entered_at: Optional[datetime] = None
    last_event_at: Optional[datetime] = None


@dataclass(frozen=True)
class ConversionComponents:
    """Conversion-derived parts of an enhanced score."""
    progress: float
    probability: float
    days_in_funnel: int
    days_since_last_event: Optional[int]


@dataclass(frozen=True)
class LeadScoreProfile:
    """
    Result of one scoring call.

    Immutable; a newer profile supersedes an older one rather than
    modifying it.
    """
    lead_id: str
    total_score: float
    grade: LeadGrade
    confidence: float
    breakdown: ScoreBreakdown
    calculated_at: datetime
    expires_at: datetime
    factors: List[ScoreFactor] = field(default_factory=list)
    insights: List[str] = field(default_factory=list)
    recommended_actions: List[str] = field(default_factory=list)
    risk_factors: List[str] = field(default_factory=list)
    conversion: Optional[ConversionComponents] = None

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return (now or utcnow()) >= self.expires_at

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for API responses and logging."""
        data: Dict[str, Any] = {
            "lead_id": self.lead_id,
            "total_score": round(self.total_score, 2),
            "grade": self.grade.value,
            "confidence": round(self.confidence, 2),
            "breakdown": self.breakdown.as_dict(),
            "calculated_at": self.calculated_at.isoformat(),
            "expires_at": self.expires_at.isoformat(),
            "factors": [
                {
                    "name": f.name,
                    "value": f.value,
                    "weight": f.weight,
                    "impact": f.impact,
                    "description": f.description,
                }
                for f in self.factors
            ],
            "insights": list(self.insights),
            "recommended_actions": list(self.recommended_actions),
            "risk_factors": list(self.risk_factors),
        }
        if self.conversion is not None:
            data["conversion"] = {
                "progress": round(self.conversion.progress, 2),
                "probability": round(self.conversion.probability, 4),
                "days_in_funnel": self.conversion.days_in_funnel,
                "days_since_last_event": self.conversion.days_since_last_event,
            }
        return data


# =============================================================================
# Category rules
# =============================================================================


def _days_since(moment: Optional[datetime], now: datetime) -> Optional[float]:
    if moment is None:
        return None
    return days_between(moment, now)


def _score_budget(budget: Optional[float], market: Optional[MarketContext]) -> float:
    average_price = market.average_price if market else None
    if not budget or not average_price:
        return BUDGET_UNKNOWN

    ratio = budget / average_price
    if ratio >= BUDGET_HIGH_RATIO:
        return BUDGET_SCORES["high"]
    if ratio >= BUDGET_MEDIUM_RATIO:
        return BUDGET_SCORES["medium"]
    return BUDGET_SCORES["low"]


def _score_timeline(timeline: Optional[str]) -> float:
    if not timeline or not timeline.strip():
        return TIMELINE_UNKNOWN

    text = timeline.lower()
    if any(keyword in text for keyword in URGENT_KEYWORDS):
        return TIMELINE_SCORES["urgent"]
    if any(keyword in text for keyword in SOON_KEYWORDS):
        return TIMELINE_SCORES["soon"]
    return TIMELINE_SCORES["flexible"]


def _score_property_type(property_type: Optional[str]) -> float:
    parsed = PropertyType.parse(property_type)
    if parsed is None:
        return PROPERTY_TYPE_UNKNOWN
    return PROPERTY_TYPE_SCORES.get(parsed, PROPERTY_TYPE_SCORES[PropertyType.OTHER])


def _score_location(location: Optional[str]) -> float:
    if not location or not location.strip():
        return LOCATION_UNKNOWN

    text = location.lower()
    if any(area in text for area in PREFERRED_LOCATIONS):
        return LOCATION_SCORES["preferred"]
    if any(area in text for area in CHALLENGING_LOCATIONS):
        return LOCATION_SCORES["challenging"]
    return LOCATION_SCORES["acceptable"]


def _score_engagement(attrs: LeadAttributes, now: datetime) -> float:
    score = float(ENGAGEMENT_BASE)
    if attrs.engagement_score is not None:
        score = float(attrs.engagement_score)

    for minimum, floor in INQUIRY_TIERS:
        if attrs.inquiry_count >= minimum:
            score = max(score, floor)
            break

    days = _days_since(attrs.last_activity, now)
    if days is not None:
        if days > 30:
            score *= 0.7
        elif days > 14:
            score *= 0.85

    return clamp(score, 0, 100)


def _score_qualification(status: Optional[QualificationStatus]) -> float:
    if status is None:
        return QUALIFICATION_DEFAULT
    return QUALIFICATION_SCORES.get(status, QUALIFICATION_DEFAULT)


def _score_market_fit(market: Optional[MarketContext]) -> float:
    if market is None:
        return MARKET_FIT_BASE

    score = MARKET_FIT_BASE
    if market.trend == MarketTrend.HOT:
        score += 10
    elif market.trend == MarketTrend.COOL:
        score -= 10

    if market.competition_count:
        if market.competition_count < 5:
            score += 15
        elif market.competition_count > 15:
            score -= 15

    return clamp(score, 0, 100)


def grade_for(total_score: float) -> LeadGrade:
    """Map a total score to its letter grade."""
    for threshold, grade in GRADE_THRESHOLDS:
        if total_score >= threshold:
            return grade
    return LeadGrade.F


def _impact(value: float, positive_at: float, neutral_at: Optional[float]) -> str:
    if value >= positive_at:
        return "positive"
    if neutral_at is None or value >= neutral_at:
        return "neutral"
    return "negative"


# =============================================================================
# Engine
# =============================================================================


class ScoringEngine:
    """
    Weighted multi-factor lead scorer.

    Weights are validated at construction: they must cover every category
    and sum to 1.0.
    """

    def __init__(
        self,
        weights: Optional[Dict[str, float]] = None,
        expiry_hours: Optional[int] = None,
    ):
        self.weights = dict(weights or DEFAULT_WEIGHTS)
        self.expiry_hours = expiry_hours or get_settings().score_expiry_hours
        self._validate_weights()

    def _validate_weights(self) -> None:
        missing = set(DEFAULT_WEIGHTS) - set(self.weights)
        unknown = set(self.weights) - set(DEFAULT_WEIGHTS)
        if missing or unknown:
            raise ConfigurationError(
                f"Scoring weights must cover exactly {sorted(DEFAULT_WEIGHTS)} "
                f"(missing={sorted(missing)}, unknown={sorted(unknown)})"
            )
        if any(w < 0 for w in self.weights.values()):
            raise ConfigurationError("Scoring weights must be non-negative")
        total = math.fsum(self.weights.values())
        if abs(total - 1.0) > WEIGHT_TOLERANCE:
            raise ConfigurationError(f"Scoring weights must sum to 1.0, got {total}")

    # ------------------------------------------------------------------
    # Base score
    # ------------------------------------------------------------------

    def breakdown(self, attrs: LeadAttributes, now: Optional[datetime] = None) -> ScoreBreakdown:
        """Compute the seven category sub-scores."""
        now = now or utcnow()
        return ScoreBreakdown(
            budget=_score_budget(attrs.budget, attrs.market),
            timeline=_score_timeline(attrs.timeline),
            property_type=_score_property_type(attrs.property_type),
            location=_score_location(attrs.location),
            engagement=_score_engagement(attrs, now),
            qualification=_score_qualification(attrs.qualification_status),
            market_fit=_score_market_fit(attrs.market),
        )

    def total(self, breakdown: ScoreBreakdown) -> float:
        """Weighted sum of the breakdown, clamped to [0, 100]."""
        values = breakdown.as_dict()
        return clamp(math.fsum(values[name] * weight for name, weight in self.weights.items()), 0, 100)

    def confidence(self, attrs: LeadAttributes, now: Optional[datetime] = None) -> float:
        """
        How much of the score rests on real data.

        Starts at 100, loses a fixed penalty per missing field and up to
        20 points for activity older than 30 days.
        """
        now = now or utcnow()
        confidence = 100.0

        present = {
            "budget": bool(attrs.budget),
            "timeline": bool(attrs.timeline and attrs.timeline.strip()),
            "property_type": bool(attrs.property_type and attrs.property_type.strip()),
            "location": bool(attrs.location and attrs.location.strip()),
            "qualification": attrs.qualification_status is not None,
            "engagement": attrs.engagement_score is not None,
        }
        for name, penalty in CONFIDENCE_PENALTIES.items():
            if not present[name]:
                confidence -= penalty

        days = _days_since(attrs.last_activity, now)
        if days is not None and days > STALENESS_GRACE_DAYS:
            confidence -= min(STALENESS_MAX_PENALTY, days / 30 * 10)

        return clamp(confidence, 0, 100)

    def score(self, attrs: LeadAttributes, now: Optional[datetime] = None) -> LeadScoreProfile:
        """
        Score a lead.

        Args:
            attrs: Raw lead attributes. Only ``lead_id`` is required.
            now: Evaluation time. Defaults to the current UTC time.

        Returns:
            A new LeadScoreProfile.

        Raises:
            InvalidInputError: If the lead id is missing or blank.
        """
        if not attrs.lead_id or not str(attrs.lead_id).strip():
            raise InvalidInputError("lead_id is required for scoring")

        now = now or utcnow()
        breakdown = self.breakdown(attrs, now)
        total_score = self.total(breakdown)
        grade = grade_for(total_score)

        profile = LeadScoreProfile(
            lead_id=attrs.lead_id,
            total_score=total_score,
            grade=grade,
            confidence=self.confidence(attrs, now),
            breakdown=breakdown,
            calculated_at=now,
            expires_at=now + timedelta(hours=self.expiry_hours),
            factors=self._factors(attrs, breakdown),
            insights=self._insights(breakdown, grade),
            recommended_actions=self._actions(attrs, grade),
            risk_factors=self._risk_factors(attrs, breakdown, now),
        )

        LOGGER.debug(
            f"Scored lead {attrs.lead_id}: {total_score:.1f} ({grade.value})",
            extra={"lead_id": attrs.lead_id},
        )
        return profile

    # ------------------------------------------------------------------
    # Enhanced score
    # ------------------------------------------------------------------

    def conversion_components(
        self,
        snapshot: ConversionSnapshot,
        now: Optional[datetime] = None,
    ) -> ConversionComponents:
        """Derive conversion progress (0-100) and probability (0-1) from a funnel snapshot."""
        now = now or utcnow()
        days_in_funnel = 0
        if snapshot.funnel_entered_at is not None:
            days_in_funnel = max(0, math.floor(days_between(snapshot.funnel_entered_at, now)))
        days_since_last: Optional[int] = None
        if snapshot.last_event_at is not None:
            days_since_last = max(0, math.floor(days_between(snapshot.last_event_at, now)))

        progress = float(STAGE_PROGRESS_SCORES[snapshot.current_stage])
        if snapshot.event_count > 3:
            progress += 10
        if days_in_funnel > 60:
            progress *= 0.9
        progress = clamp(progress, 0, 100)

        probability = STAGE_PROBABILITY[snapshot.current_stage]
        if snapshot.event_count > 5:
            probability *= 1.2
        elif snapshot.event_count > 2:
            probability *= 1.1

        if days_in_funnel > 90:
            probability *= 0.7
        elif days_in_funnel > 30:
            probability *= 0.85

        if days_since_last is not None:
            if days_since_last > 30:
                probability *= 0.8
            elif days_since_last > 7:
                probability *= 0.9

        return ConversionComponents(
            progress=progress,
            probability=clamp(probability, 0, 1),
            days_in_funnel=days_in_funnel,
            days_since_last_event=days_since_last,
        )

    def score_with_conversion(
        self,
        attrs: LeadAttributes,
        snapshot: Optional[ConversionSnapshot] = None,
        now: Optional[datetime] = None,
    ) -> LeadScoreProfile:
        """
        Score a lead and blend in its funnel progress at a fixed 15% weight.

        Args:
            attrs: Raw lead attributes.
            snapshot: Funnel position; a fresh lead is assumed when None.
            now: Evaluation time.

        Returns:
            A new LeadScoreProfile whose total and grade include conversion.
        """
        now = now or utcnow()
        base = self.score(attrs, now)
        snapshot = snapshot or ConversionSnapshot()
        components = self.conversion_components(snapshot, now)

        conversion_score = (components.progress + components.probability * 100) / 2
        enhanced_total = clamp(
            base.total_score * (1 - CONVERSION_WEIGHT) + conversion_score * CONVERSION_WEIGHT,
            0,
            100,
        )

        return LeadScoreProfile(
            lead_id=base.lead_id,
            total_score=enhanced_total,
            grade=grade_for(enhanced_total),
            confidence=base.confidence,
            breakdown=base.breakdown,
            calculated_at=base.calculated_at,
            expires_at=base.expires_at,
            factors=base.factors,
            insights=base.insights + self._conversion_insights(snapshot, components),
            recommended_actions=base.recommended_actions + self._conversion_actions(snapshot, components),
            risk_factors=base.risk_factors,
            conversion=components,
        )

    # ------------------------------------------------------------------
    # Explanations
    # ------------------------------------------------------------------

    def _factors(self, attrs: LeadAttributes, breakdown: ScoreBreakdown) -> List[ScoreFactor]:
        w = self.weights
        return [
            ScoreFactor(
                "Budget Strength", breakdown.budget, w["budget"],
                _impact(breakdown.budget, 75, 50),
                f"Budget alignment with market prices ({attrs.budget or 'unknown'})",
            ),
            ScoreFactor(
                "Timeline Urgency", breakdown.timeline, w["timeline"],
                _impact(breakdown.timeline, 80, 60),
                f"Purchase timeline: {attrs.timeline or 'unknown'}",
            ),
            ScoreFactor(
                "Property Type Match", breakdown.property_type, w["property_type"],
                _impact(breakdown.property_type, 80, None),
                f"Property type preference: {attrs.property_type or 'unknown'}",
            ),
            ScoreFactor(
                "Location Suitability", breakdown.location, w["location"],
                _impact(breakdown.location, 80, 60),
                f"Location preference: {attrs.location or 'unknown'}",
            ),
            ScoreFactor(
                "Engagement Level", breakdown.engagement, w["engagement"],
                _impact(breakdown.engagement, 75, 50),
                "Lead engagement and activity level",
            ),
            ScoreFactor(
                "Qualification Status", breakdown.qualification, w["qualification"],
                _impact(breakdown.qualification, 80, 60),
                "Pre-qualification and financial readiness",
            ),
            ScoreFactor(
                "Market Fit", breakdown.market_fit, w["market_fit"],
                _impact(breakdown.market_fit, 75, None),
                "Alignment with current market conditions",
            ),
        ]

    @staticmethod
    def _insights(breakdown: ScoreBreakdown, grade: LeadGrade) -> List[str]:
        insights: List[str] = []

        if grade in (LeadGrade.A_PLUS, LeadGrade.A):
            insights.append("High-quality lead with strong conversion potential")
        elif grade in (LeadGrade.B_PLUS, LeadGrade.B):
            insights.append("Good lead with solid fundamentals - focus on relationship building")
        elif grade in (LeadGrade.C_PLUS, LeadGrade.C):
            insights.append("Moderate lead requiring additional qualification")
        else:
            insights.append("Low-priority lead - consider deprioritizing or nurturing")

        if breakdown.budget >= 90:
            insights.append("Strong budget position - excellent buying power")
        elif breakdown.budget < 60:
            insights.append("Budget constraints may limit options")

        if breakdown.timeline >= 90:
            insights.append("Urgent timeline - prioritize immediate response")

        if breakdown.engagement >= 80:
            insights.append("Highly engaged lead - excellent response to marketing")
        elif breakdown.engagement < 50:
            insights.append("Low engagement - may need re-engagement campaign")

        return insights

    @staticmethod
    def _actions(attrs: LeadAttributes, grade: LeadGrade) -> List[str]:
        if grade in (LeadGrade.A_PLUS, LeadGrade.A):
            actions = [
                "Prioritize for immediate follow-up",
                "Schedule property showing within 24 hours",
                "Prepare personalized property recommendations",
            ]
        elif grade in (LeadGrade.B_PLUS, LeadGrade.B):
            actions = [
                "Follow up within 48 hours",
                "Send property market update",
                "Schedule discovery call",
            ]
        else:
            actions = [
                "Add to nurture campaign",
                "Send educational content",
                "Monitor for engagement improvements",
            ]

        if attrs.qualification_status == QualificationStatus.NEEDS_QUALIFICATION:
            actions.append("Conduct qualification assessment")
        if attrs.engagement_score is not None and attrs.engagement_score < 50:
            actions.append("Implement re-engagement strategy")

        return actions

    @staticmethod
    def _risk_factors(attrs: LeadAttributes, breakdown: ScoreBreakdown, now: datetime) -> List[str]:
        risks: List[str] = []

        if breakdown.budget < 60:
            risks.append("Budget may be insufficient for target market")
        if breakdown.qualification < 70:
            risks.append("Lead requires additional qualification")
        if breakdown.engagement < 50:
            risks.append("Low engagement may indicate lack of serious intent")

        days = _days_since(attrs.last_activity, now)
        if days is not None and days > 30:
            risks.append(f"Lead inactive for {round(days)} days")

        return risks

    @staticmethod
    def _conversion_insights(snapshot: ConversionSnapshot, components: ConversionComponents) -> List[str]:
        insights: List[str] = []

        if components.probability > 0.7:
            insights.append("High conversion probability - prioritize this lead")
        elif components.probability < 0.3:
            insights.append("Low conversion probability - consider nurturing strategies")

        if components.days_in_funnel > 30:
            insights.append(
                f"Lead has been in funnel for {components.days_in_funnel} days - may need re-engagement"
            )
        if snapshot.event_count > 5:
            insights.append("Highly engaged lead with multiple touchpoints")
        if snapshot.current_stage in ADVANCED_STAGES:
            insights.append(f"Lead is in advanced stage: {snapshot.current_stage.value.replace('_', ' ')}")

        return insights

    @staticmethod
    def _conversion_actions(snapshot: ConversionSnapshot, components: ConversionComponents) -> List[str]:
        actions: List[str] = []
        stage = snapshot.current_stage

        if components.probability > 0.8:
            actions.append("Fast-track this high-probability lead")
            actions.append("Schedule immediate follow-up")
        if components.days_in_funnel > 14 and stage == FunnelStage.CONTACT_MADE:
            actions.append("Send follow-up email or call to move lead forward")
        if stage == FunnelStage.QUALIFIED and components.days_in_funnel < 7:
            actions.append("Schedule property showing within 48 hours")
        if stage == FunnelStage.SHOWING_COMPLETED:
            actions.append("Follow up on showing feedback and prepare offer")
        if components.probability < 0.4:
            actions.append("Implement lead nurturing campaign")
            actions.append("Send educational content about buying process")

        return actions


__all__ = [
    "ScoringEngine",
    "ScoreBreakdown",
    "ScoreFactor",
    "LeadScoreProfile",
    "ConversionSnapshot",
    "ConversionComponents",
    "grade_for",
    "DEFAULT_WEIGHTS",
    "STAGE_PROGRESS_SCORES",
    "STAGE_PROBABILITY",
    "CONVERSION_WEIGHT",
]

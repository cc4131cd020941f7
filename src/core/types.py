"""Shared enums, dataclasses and type helpers."""
from __future__ import annotations

import enum
import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Optional


# =============================================================================
# Enums
# =============================================================================


class FunnelStage(str, enum.Enum):
    """Canonical conversion funnel stages, identical for every lead."""
    LEAD_CREATED = "lead_created"
    CONTACT_MADE = "contact_made"
    QUALIFIED = "qualified"
    SHOWING_SCHEDULED = "showing_scheduled"
    SHOWING_COMPLETED = "showing_completed"
    OFFER_SUBMITTED = "offer_submitted"
    OFFER_ACCEPTED = "offer_accepted"
    SALE_CLOSED = "sale_closed"

    @property
    def order(self) -> int:
        """1-based position in the funnel."""
        return STAGE_ORDER[self]

    @classmethod
    def from_order(cls, order: int) -> "FunnelStage":
        for stage, stage_order in STAGE_ORDER.items():
            if stage_order == order:
                return stage
        raise ValueError(f"No funnel stage with order {order}")

    @classmethod
    def ordered(cls) -> list["FunnelStage"]:
        return sorted(cls, key=lambda s: s.order)

    @property
    def is_terminal(self) -> bool:
        return self is FunnelStage.SALE_CLOSED


STAGE_ORDER: Dict[FunnelStage, int] = {
    FunnelStage.LEAD_CREATED: 1,
    FunnelStage.CONTACT_MADE: 2,
    FunnelStage.QUALIFIED: 3,
    FunnelStage.SHOWING_SCHEDULED: 4,
    FunnelStage.SHOWING_COMPLETED: 5,
    FunnelStage.OFFER_SUBMITTED: 6,
    FunnelStage.OFFER_ACCEPTED: 7,
    FunnelStage.SALE_CLOSED: 8,
}


class ConversionEventType(str, enum.Enum):
    """Business events that can move a lead through the funnel.

    ``lead_created`` never causes a transition; it lets an intake system
    register a lead so it is counted in the funnel before any contact.
    """
    LEAD_CREATED = "lead_created"
    CONTACT_MADE = "contact_made"
    QUALIFIED = "qualified"
    SHOWING_SCHEDULED = "showing_scheduled"
    SHOWING_COMPLETED = "showing_completed"
    OFFER_SUBMITTED = "offer_submitted"
    OFFER_ACCEPTED = "offer_accepted"
    SALE_CLOSED = "sale_closed"

    @property
    def stage(self) -> FunnelStage:
        """Funnel stage this event moves a lead to."""
        return FunnelStage(self.value)


class ActivityType(str, enum.Enum):
    """CRM activities that imply a conversion event."""
    PHONE_CALL = "phone_call"
    EMAIL_SENT = "email_sent"
    MEETING_SCHEDULED = "meeting_scheduled"
    PROPERTY_SHOWN = "property_shown"
    OFFER_MADE = "offer_made"
    NOTE = "note"


ACTIVITY_EVENT_MAP: Dict[ActivityType, ConversionEventType] = {
    ActivityType.PHONE_CALL: ConversionEventType.CONTACT_MADE,
    ActivityType.EMAIL_SENT: ConversionEventType.CONTACT_MADE,
    ActivityType.MEETING_SCHEDULED: ConversionEventType.SHOWING_SCHEDULED,
    ActivityType.PROPERTY_SHOWN: ConversionEventType.SHOWING_COMPLETED,
    ActivityType.OFFER_MADE: ConversionEventType.OFFER_SUBMITTED,
}


class InteractionType(str, enum.Enum):
    """Touchpoint interaction kinds."""
    SENT = "sent"
    OPENED = "opened"
    CLICKED = "clicked"
    RESPONDED = "responded"


class AttributionModelType(str, enum.Enum):
    """Attribution model families."""
    FIRST_TOUCH = "first_touch"
    LAST_TOUCH = "last_touch"
    LINEAR = "linear"
    TIME_DECAY = "time_decay"
    POSITION_BASED = "position_based"
    CUSTOM = "custom"


class ConversionType(str, enum.Enum):
    """Kind of conversion being attributed."""
    SALE = "sale"
    APPOINTMENT = "appointment"
    INQUIRY = "inquiry"
    ENGAGEMENT = "engagement"


class LeadGrade(str, enum.Enum):
    """Letter grades derived from the total score."""
    A_PLUS = "A+"
    A = "A"
    B_PLUS = "B+"
    B = "B"
    C_PLUS = "C+"
    C = "C"
    D = "D"
    F = "F"


class QualificationStatus(str, enum.Enum):
    """Buyer qualification status."""
    PRE_QUALIFIED = "preQualified"
    QUALIFIED = "qualified"
    NEEDS_QUALIFICATION = "needsQualification"
    UNQUALIFIED = "unqualified"


class PropertyType(str, enum.Enum):
    """Property categories with a scoring preference."""
    SINGLE_FAMILY = "single-family"
    CONDO = "condo"
    TOWNHOUSE = "townhouse"
    MULTI_FAMILY = "multi-family"
    COMMERCIAL = "commercial"
    LAND = "land"
    OTHER = "other"

    @classmethod
    def parse(cls, value: Optional[str]) -> Optional["PropertyType"]:
        """
        Normalize free text ("Single Family", "single_family", "CONDO") to a member.

        Returns None for missing input and OTHER for anything unrecognized.
        """
        if value is None or not value.strip():
            return None
        normalized = re.sub(r"[\s_]+", "-", value.strip().lower())
        try:
            return cls(normalized)
        except ValueError:
            return cls.OTHER


class MarketTrend(str, enum.Enum):
    """Direction of the local market."""
    HOT = "hot"
    STABLE = "stable"
    COOL = "cool"


class TransitionTrigger(str, enum.Enum):
    """How a stage transition came about."""
    AUTOMATIC = "automatic"
    MANUAL = "manual"


class StageTrend(str, enum.Enum):
    """Direction a funnel stage is heading, judged from its pass-through rate."""
    IMPROVING = "improving"
    STABLE = "stable"
    DECLINING = "declining"


# =============================================================================
# Value objects
# =============================================================================


@dataclass(slots=True, frozen=True)
class MarketContext:
    """Local market snapshot used for budget and market-fit scoring."""

    average_price: Optional[float] = None
    trend: Optional[MarketTrend] = None
    competition_count: Optional[int] = None


@dataclass(slots=True, frozen=True)
class LeadAttributes:
    """Raw lead attributes supplied by the caller for a single scoring call."""

    lead_id: str
    budget: Optional[float] = None
    timeline: Optional[str] = None
    property_type: Optional[str] = None
    location: Optional[str] = None
    qualification_status: Optional[QualificationStatus] = None
    engagement_score: Optional[float] = None
    inquiry_count: int = 0
    last_activity: Optional[datetime] = None
    market: Optional[MarketContext] = None


@dataclass(slots=True, frozen=True)
class Touchpoint:
    """A single interaction between a marketing artifact and a lead."""

    template_id: str
    interaction_type: InteractionType
    timestamp: datetime
    position: int = 0
    metadata: Dict[str, Any] = field(default_factory=dict)


__all__ = [
    "FunnelStage",
    "STAGE_ORDER",
    "ConversionEventType",
    "ActivityType",
    "ACTIVITY_EVENT_MAP",
    "InteractionType",
    "AttributionModelType",
    "ConversionType",
    "LeadGrade",
    "QualificationStatus",
    "PropertyType",
    "MarketTrend",
    "TransitionTrigger",
    "StageTrend",
    "MarketContext",
    "LeadAttributes",
    "Touchpoint",
]

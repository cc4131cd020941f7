"""Test lead scoring engine."""
from __future__ import annotations

import sys
from datetime import timedelta
from pathlib import Path

import pytest

# Add src to path
src_path = Path(__file__).parent.parent / "src"
if str(src_path) not in sys.path:
    sys.path.insert(0, str(src_path))

from core.exceptions import ConfigurationError, InvalidInputError
from core.types import (
    FunnelStage,
    LeadAttributes,
    LeadGrade,
    MarketContext,
    MarketTrend,
    PropertyType,
    QualificationStatus,
)
from scoring.engine import (
    DEFAULT_WEIGHTS,
    ConversionSnapshot,
    ScoringEngine,
    grade_for,
)

from conftest import NOW


def _hot_lead(**overrides) -> LeadAttributes:
    values = dict(
        lead_id="lead-1",
        budget=500_000,
        timeline="ASAP",
        property_type="single-family",
        location="Downtown loft district",
        qualification_status=QualificationStatus.PRE_QUALIFIED,
        engagement_score=90,
        last_activity=NOW,
        market=MarketContext(average_price=400_000),
    )
    values.update(overrides)
    return LeadAttributes(**values)


class TestScoreProfile:
    """Tests for the base score."""

    def test_hot_lead_scores_grade_a(self):
        """Strong budget, urgent timeline and pre-qualification give an A."""
        profile = ScoringEngine().score(_hot_lead(), NOW)

        assert profile.total_score >= 85
        assert profile.grade in {LeadGrade.A, LeadGrade.A_PLUS}
        assert profile.breakdown.budget == 100
        assert profile.breakdown.timeline == 100
        assert profile.breakdown.property_type == 90
        assert profile.breakdown.location == 90
        assert profile.total_score == pytest.approx(94.0)
        assert profile.confidence == 100

    def test_minimal_lead_uses_defaults(self):
        """Only a lead id: every category falls back to its default."""
        profile = ScoringEngine().score(LeadAttributes(lead_id="bare"), NOW)

        breakdown = profile.breakdown.as_dict()
        assert breakdown == {
            "budget": 50,
            "timeline": 60,
            "property_type": 60,
            "location": 70,
            "engagement": 50,
            "qualification": 60,
            "market_fit": 70,
        }
        # Every optional field missing: 15+10+10+10+15+10
        assert profile.confidence == 30
        assert profile.grade == LeadGrade.C

    def test_blank_lead_id_rejected(self):
        with pytest.raises(InvalidInputError):
            ScoringEngine().score(LeadAttributes(lead_id="  "), NOW)

    def test_expiry_follows_configured_hours(self):
        profile = ScoringEngine(expiry_hours=6).score(_hot_lead(), NOW)
        assert profile.calculated_at == NOW
        assert profile.expires_at == NOW + timedelta(hours=6)
        assert not profile.is_expired(NOW + timedelta(hours=5))
        assert profile.is_expired(NOW + timedelta(hours=6))

    def test_score_is_deterministic(self):
        engine = ScoringEngine()
        assert engine.score(_hot_lead(), NOW) == engine.score(_hot_lead(), NOW)


class TestCategoryRules:
    """Tests for individual category rule tables."""

    @pytest.mark.parametrize(
        "budget,expected",
        [(480_000, 100), (400_000, 75), (320_000, 75), (319_999, 50), (None, 50)],
    )
    def test_budget_bands(self, budget, expected):
        attrs = _hot_lead(budget=budget)
        assert ScoringEngine().breakdown(attrs, NOW).budget == expected

    def test_budget_without_market_price(self):
        attrs = _hot_lead(market=None)
        assert ScoringEngine().breakdown(attrs, NOW).budget == 50

    @pytest.mark.parametrize(
        "timeline,expected",
        [("asap", 100), ("This week please", 100), ("next month", 80), ("within a year", 60), (None, 60)],
    )
    def test_timeline_keywords(self, timeline, expected):
        assert ScoringEngine().breakdown(_hot_lead(timeline=timeline), NOW).timeline == expected

    @pytest.mark.parametrize(
        "raw,expected",
        [
            ("Single Family", 90),
            ("single_family", 90),
            ("CONDO", 85),
            ("Multi-Family", 75),
            ("land", 65),
            ("houseboat", 60),
            (None, 60),
        ],
    )
    def test_property_type_normalized(self, raw, expected):
        assert ScoringEngine().breakdown(_hot_lead(property_type=raw), NOW).property_type == expected

    def test_property_type_parse(self):
        assert PropertyType.parse(" Town House ") is PropertyType.OTHER
        assert PropertyType.parse("townhouse") is PropertyType.TOWNHOUSE
        assert PropertyType.parse("") is None

    @pytest.mark.parametrize(
        "location,expected",
        [("quiet suburb", 90), ("near the industrial park", 50), ("midtown", 70), (None, 70)],
    )
    def test_location_tiers(self, location, expected):
        assert ScoringEngine().breakdown(_hot_lead(location=location), NOW).location == expected

    def test_engagement_inquiry_floor(self):
        attrs = _hot_lead(engagement_score=20, inquiry_count=5)
        assert ScoringEngine().breakdown(attrs, NOW).engagement == 90

    def test_engagement_decays_with_stale_activity(self):
        engine = ScoringEngine()
        recent = engine.breakdown(_hot_lead(last_activity=NOW - timedelta(days=20)), NOW)
        stale = engine.breakdown(_hot_lead(last_activity=NOW - timedelta(days=45)), NOW)
        assert recent.engagement == pytest.approx(90 * 0.85)
        assert stale.engagement == pytest.approx(90 * 0.7)

    def test_engagement_zero_counts_as_present(self):
        """An engagement score of 0 is data, not a missing field."""
        engine = ScoringEngine()
        attrs = _hot_lead(engagement_score=0)
        assert engine.breakdown(attrs, NOW).engagement == 0
        assert engine.confidence(attrs, NOW) == 100

    @pytest.mark.parametrize(
        "status,expected",
        [
            (QualificationStatus.PRE_QUALIFIED, 95),
            (QualificationStatus.QUALIFIED, 80),
            (QualificationStatus.NEEDS_QUALIFICATION, 60),
            (QualificationStatus.UNQUALIFIED, 60),
        ],
    )
    def test_qualification(self, status, expected):
        attrs = _hot_lead(qualification_status=status)
        assert ScoringEngine().breakdown(attrs, NOW).qualification == expected

    def test_market_fit_adjustments(self):
        engine = ScoringEngine()
        hot = MarketContext(average_price=400_000, trend=MarketTrend.HOT, competition_count=2)
        cool = MarketContext(average_price=400_000, trend=MarketTrend.COOL, competition_count=30)
        assert engine.breakdown(_hot_lead(market=hot), NOW).market_fit == 95
        assert engine.breakdown(_hot_lead(market=cool), NOW).market_fit == 45


class TestConfidence:
    """Tests for confidence penalties."""

    def test_stale_activity_penalty_is_capped(self):
        engine = ScoringEngine()
        assert engine.confidence(_hot_lead(last_activity=NOW - timedelta(days=45)), NOW) == pytest.approx(85)
        assert engine.confidence(_hot_lead(last_activity=NOW - timedelta(days=400)), NOW) == 80

    def test_missing_budget_and_qualification(self):
        attrs = _hot_lead(budget=None, qualification_status=None)
        assert ScoringEngine().confidence(attrs, NOW) == 70


class TestGrades:
    """Tests for grade thresholds."""

    @pytest.mark.parametrize(
        "score,grade",
        [
            (95, LeadGrade.A_PLUS),
            (85, LeadGrade.A),
            (77.5, LeadGrade.B_PLUS),
            (70, LeadGrade.B),
            (62.5, LeadGrade.C_PLUS),
            (55, LeadGrade.C),
            (40, LeadGrade.D),
            (39.9, LeadGrade.F),
        ],
    )
    def test_thresholds(self, score, grade):
        assert grade_for(score) == grade


class TestWeights:
    """Tests for weight validation."""

    def test_default_weights_sum_to_one(self):
        assert sum(DEFAULT_WEIGHTS.values()) == pytest.approx(1.0)
        ScoringEngine()

    def test_weights_not_summing_to_one_rejected(self):
        weights = dict(DEFAULT_WEIGHTS, budget=0.5)
        with pytest.raises(ConfigurationError):
            ScoringEngine(weights=weights)

    def test_missing_category_rejected(self):
        weights = {k: v for k, v in DEFAULT_WEIGHTS.items() if k != "market_fit"}
        weights["budget"] += DEFAULT_WEIGHTS["market_fit"]
        with pytest.raises(ConfigurationError):
            ScoringEngine(weights=weights)


class TestConversionBlend:
    """Tests for the conversion-enhanced score."""

    def test_fresh_lead_components(self):
        components = ScoringEngine().conversion_components(ConversionSnapshot(), NOW)
        assert components.progress == 10
        assert components.probability == pytest.approx(0.1)
        assert components.days_in_funnel == 0
        assert components.days_since_last_event is None

    def test_active_offer_components(self):
        snapshot = ConversionSnapshot(
            current_stage=FunnelStage.OFFER_SUBMITTED,
            event_count=6,
            funnel_entered_at=NOW - timedelta(days=45),
            last_event_at=NOW - timedelta(days=10),
        )
        components = ScoringEngine().conversion_components(snapshot, NOW)

        assert components.progress == 95
        assert components.probability == pytest.approx(0.75 * 1.2 * 0.85 * 0.9)
        assert components.days_in_funnel == 45
        assert components.days_since_last_event == 10

    def test_long_funnel_reduces_progress(self):
        snapshot = ConversionSnapshot(
            current_stage=FunnelStage.QUALIFIED,
            event_count=1,
            funnel_entered_at=NOW - timedelta(days=100),
        )
        components = ScoringEngine().conversion_components(snapshot, NOW)
        assert components.progress == pytest.approx(35 * 0.9)
        assert components.probability == pytest.approx(0.25 * 0.7)

    def test_enhanced_total_blends_at_fifteen_percent(self):
        engine = ScoringEngine()
        base = engine.score(_hot_lead(), NOW)
        snapshot = ConversionSnapshot(current_stage=FunnelStage.SALE_CLOSED, event_count=8, funnel_entered_at=NOW)
        enhanced = engine.score_with_conversion(_hot_lead(), snapshot, NOW)

        expected = base.total_score * 0.85 + ((100 + 100) / 2) * 0.15
        assert enhanced.total_score == pytest.approx(expected)
        assert enhanced.grade == grade_for(expected)
        assert enhanced.conversion is not None
        assert enhanced.breakdown == base.breakdown
        assert len(enhanced.insights) > len(base.insights)

    @pytest.mark.parametrize("stage", list(FunnelStage))
    def test_enhanced_score_bounds(self, stage):
        snapshot = ConversionSnapshot(current_stage=stage, event_count=10, funnel_entered_at=NOW)
        profile = ScoringEngine().score_with_conversion(LeadAttributes(lead_id="x"), snapshot, NOW)
        assert 0 <= profile.total_score <= 100
        assert 0 <= profile.conversion.probability <= 1

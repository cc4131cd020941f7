"""Integration tests for ConversionService over the SQL store."""
from __future__ import annotations

import sys
from datetime import timedelta
from pathlib import Path

import pytest

# Add src to path
src_path = Path(__file__).parent.parent / "src"
if str(src_path) not in sys.path:
    sys.path.insert(0, str(src_path))

from attribution.calculator import ConversionInput
from core.exceptions import InvalidInputError, ModelNotFoundError
from core.types import (
    ActivityType,
    FunnelStage,
    InteractionType,
    LeadAttributes,
    LeadGrade,
    MarketContext,
    QualificationStatus,
    StageTrend,
    Touchpoint,
)
from domain.analytics import (
    DateRange,
    FunnelStageStats,
    bottleneck_score,
    funnel_recommendations,
    identify_bottlenecks,
)
from domain.conversion import EngineContext
from services.cache import ResultCache

from conftest import NOW


def _attrs(lead_id: str = "lead-1") -> LeadAttributes:
    return LeadAttributes(
        lead_id=lead_id,
        budget=500_000,
        timeline="asap",
        property_type="single-family",
        qualification_status=QualificationStatus.PRE_QUALIFIED,
        engagement_score=90,
        last_activity=NOW,
        market=MarketContext(average_price=400_000),
    )


def _touchpoints():
    return [
        Touchpoint("welcome", InteractionType.SENT, NOW - timedelta(days=9)),
        Touchpoint("listing-digest", InteractionType.OPENED, NOW - timedelta(days=5)),
        Touchpoint("open-house", InteractionType.CLICKED, NOW - timedelta(days=1)),
    ]


def test_engine_context_defaults(store):
    """Each context gets its own cache and registry."""
    first = EngineContext.create(store=store)
    second = EngineContext.create(store=store)
    assert first.cache is not second.cache
    assert first.registry is not second.registry
    assert first.scoring.expiry_hours == first.settings.score_expiry_hours


def _stage_stats(stage, leads, rate, days, score=0.0):
    return FunnelStageStats(
        stage=stage,
        order=stage.order,
        leads_in_stage=leads,
        leads_at_stage=0,
        conversion_rate=rate,
        average_days_in_stage=days,
        bottleneck_score=score,
    )


def test_bottleneck_score_is_capped():
    crowded = _stage_stats(FunnelStage.QUALIFIED, 200, 0.2, 50)
    following = _stage_stats(FunnelStage.SHOWING_SCHEDULED, 40, 0.9, 3)

    assert bottleneck_score(crowded, following) == 100
    assert bottleneck_score(following, None) == 0
    assert bottleneck_score(_stage_stats(FunnelStage.QUALIFIED, 0, 0.0, 0), None) == 0


def test_bottlenecks_ranked_with_targeted_recommendations():
    stats = [
        _stage_stats(FunnelStage.CONTACT_MADE, 50, 0.4, 10, score=60),
        _stage_stats(FunnelStage.QUALIFIED, 20, 0.2, 25, score=80),
        _stage_stats(FunnelStage.SHOWING_SCHEDULED, 4, 0.75, 2, score=10),
    ]

    bottlenecks = identify_bottlenecks(stats)
    recommendations = funnel_recommendations(stats, bottlenecks)

    assert bottlenecks == [FunnelStage.QUALIFIED, FunnelStage.CONTACT_MADE]
    assert recommendations[0].startswith("Focus on improving conversion rates")
    assert "Address low conversion in qualified: consider revising qualification criteria or process" in recommendations
    assert "Reduce dwell time in qualified: implement automated reminders and follow-ups" in recommendations
    assert not any("contact made" in text for text in recommendations)


class TestScoringOperations:
    """Score calculation, enhancement and overrides."""

    def test_calculate_score(self, service):
        profile = service.calculate_score(_attrs())
        assert profile.total_score >= 85
        assert profile.grade in {LeadGrade.A, LeadGrade.A_PLUS}
        assert profile.calculated_at == NOW

    def test_enhanced_score_uses_funnel_position(self, service, clock):
        fresh = service.calculate_score_with_conversion(_attrs())
        assert fresh.conversion.progress == 10

        clock.advance(days=2)
        service.log_conversion_event("lead-1", "offer_accepted")
        advanced = service.calculate_score_with_conversion(_attrs())

        assert advanced.conversion.progress == 95
        assert advanced.conversion.days_in_funnel == 0
        assert advanced.total_score > fresh.total_score

    def test_override_shadows_computed_score(self, service):
        service.override_score("lead-1", 42, "Duplicate of an existing client", actor_id="agent-1")

        display = service.get_display_score(_attrs())

        assert display.is_overridden
        assert display.score == 42
        assert display.grade is LeadGrade.D
        assert display.profile.total_score >= 85
        assert display.to_dict()["override_reason"] == "Duplicate of an existing client"

    def test_latest_override_wins(self, service, clock):
        service.override_score("lead-1", 20, "first pass", actor_id="agent-1")
        clock.advance(minutes=5)
        service.override_score("lead-1", 70, "second look", actor_id="agent-2")

        assert service.get_display_score(_attrs()).score == 70

    def test_no_override(self, service):
        display = service.get_display_score(_attrs("lead-9"), with_conversion=True)
        assert not display.is_overridden
        assert display.score == display.profile.total_score

    @pytest.mark.parametrize(
        "score,reason,actor",
        [(101, "too high", "a"), (-1, "too low", "a"), (50, "  ", "a"), (50, "no actor", "")],
    )
    def test_override_validation(self, service, score, reason, actor):
        with pytest.raises(InvalidInputError):
            service.override_score("lead-1", score, reason, actor_id=actor)


class TestActivities:
    """CRM activity mapping."""

    def test_activity_maps_to_event(self, service, store):
        result = service.log_activity("lead-1", ActivityType.PROPERTY_SHOWN, actor_id="agent-4")

        assert result.new_stage is FunnelStage.SHOWING_COMPLETED
        event = store.list_events("lead-1")[0]
        assert event.event_data["activity_type"] == "property_shown"
        assert event.description == "Activity: property_shown"

    def test_note_has_no_funnel_effect(self, service, store):
        assert service.log_activity("lead-1", "note") is None
        assert store.list_events("lead-1") == []

    def test_unknown_activity(self, service):
        with pytest.raises(InvalidInputError):
            service.log_activity("lead-1", "carrier_pigeon")


class TestAnalytics:
    """Funnel snapshot, metrics and timeline."""

    def _seed(self, service, clock):
        service.log_conversion_event("a", "lead_created")
        service.log_conversion_event("b", "contact_made")
        service.log_conversion_event("c", "qualified")
        clock.advance(days=10)
        service.log_conversion_event("c", "showing_completed")
        clock.advance(days=5)
        service.log_conversion_event("c", "sale_closed", data={"value": 300000})

    def test_funnel_snapshot(self, service, clock):
        self._seed(service, clock)

        funnel = service.get_conversion_funnel()

        assert funnel.total_leads == 3
        assert funnel.converted_leads == 1
        assert funnel.overall_conversion_rate == pytest.approx(1 / 3)
        assert funnel.total_conversion_value == 300000
        assert funnel.stage(FunnelStage.LEAD_CREATED).leads_in_stage == 3
        assert funnel.stage(FunnelStage.CONTACT_MADE).leads_in_stage == 2
        assert funnel.stage(FunnelStage.CONTACT_MADE).conversion_rate == pytest.approx(0.5)
        assert funnel.stage(FunnelStage.SALE_CLOSED).conversion_rate == 1.0
        assert funnel.stage(FunnelStage.SHOWING_COMPLETED).average_days_in_stage == pytest.approx(5)
        assert funnel.stage(FunnelStage.LEAD_CREATED).leads_at_stage == 1

    def test_funnel_bottleneck_analysis(self, service, clock):
        self._seed(service, clock)

        funnel = service.get_conversion_funnel()

        # 3 -> 2 leads is a 33% drop against a 20% threshold
        assert funnel.stage(FunnelStage.LEAD_CREATED).bottleneck_score == pytest.approx(100 / 3 - 20)
        assert funnel.stage(FunnelStage.CONTACT_MADE).bottleneck_score == pytest.approx(30)
        assert funnel.stage(FunnelStage.CONTACT_MADE).trend is StageTrend.STABLE
        assert funnel.stage(FunnelStage.QUALIFIED).trend is StageTrend.IMPROVING
        assert funnel.bottlenecks == []
        assert funnel.recommendations == [
            "Reduce time spent in stages by streamlining processes and improving follow-up"
        ]
        assert funnel.to_dict()["stages"][1]["trend"] == "stable"

    def test_empty_funnel_has_no_bottlenecks(self, service):
        funnel = service.get_conversion_funnel()

        assert all(stats.bottleneck_score == 0 for stats in funnel.stages)
        assert funnel.bottlenecks == []
        assert funnel.recommendations == []

    def test_leads_by_stage(self, service, clock):
        self._seed(service, clock)

        everyone = service.get_leads_by_stage()
        assert len(everyone) == 3
        assert everyone[0].lead_id == "c"
        assert [s.lead_id for s in service.get_leads_by_stage("contact_made")] == ["b"]
        assert service.get_leads_by_stage(FunnelStage.QUALIFIED) == []

    def test_leads_by_unknown_stage(self, service):
        with pytest.raises(InvalidInputError):
            service.get_leads_by_stage("teleported")

    def test_conversion_metrics(self, service, clock):
        self._seed(service, clock)

        metrics = service.get_conversion_metrics()

        assert metrics.total_leads == 3
        assert metrics.total_conversions == 1
        assert metrics.conversion_rate == pytest.approx(1 / 3)
        assert metrics.average_time_to_convert == pytest.approx(15)
        assert metrics.total_conversion_value == 300000
        assert len(metrics.top_stages) == 5

    def test_metrics_date_range(self, service, clock):
        self._seed(service, clock)

        window = DateRange(start=NOW + timedelta(days=1), end=NOW + timedelta(days=30))
        metrics = service.get_conversion_metrics(window)

        assert metrics.total_leads == 0
        assert metrics.total_conversions == 1
        assert [(stage, count) for stage, count in metrics.top_stages] == [
            (FunnelStage.SHOWING_COMPLETED, 1),
            (FunnelStage.SALE_CLOSED, 1),
        ]

    def test_inverted_date_range_rejected(self):
        with pytest.raises(InvalidInputError):
            DateRange(start=NOW, end=NOW - timedelta(days=1))

    def test_new_event_invalidates_metrics(self, service):
        service.log_conversion_event("a", "qualified")
        before = service.get_conversion_metrics()
        assert service.get_conversion_metrics() is before

        service.log_conversion_event("a", "contact_made")

        after = service.get_conversion_metrics()
        assert after is not before
        assert sum(count for _, count in after.top_stages) == 2

    def test_timeline(self, service, clock):
        service.log_conversion_event("lead-1", "contact_made", actor_id="agent-1")
        clock.advance(days=3)
        service.log_conversion_event("lead-1", "qualified")
        service.override_stage("lead-1", "contact_made", "Buyer paused search", actor_id="agent-2")

        timeline = service.get_conversion_timeline("lead-1")

        assert timeline.current_stage is FunnelStage.CONTACT_MADE
        assert [e.event_type.value for e in timeline.events] == ["contact_made", "qualified"]
        assert [t.trigger.value for t in timeline.transitions] == ["automatic", "automatic", "manual"]
        assert timeline.days_in_funnel == pytest.approx(3)
        assert timeline.to_dict()["transitions"][-1]["reason"] == "Buyer paused search"

    def test_timeline_refreshed_after_event(self, service):
        service.log_conversion_event("lead-1", "contact_made")
        first = service.get_conversion_timeline("lead-1")

        service.log_conversion_event("lead-1", "contact_made")

        assert len(service.get_conversion_timeline("lead-1").events) == 2
        assert len(first.events) == 1

    def test_unknown_lead_timeline(self, service):
        timeline = service.get_conversion_timeline("ghost")
        assert timeline.current_stage is None
        assert timeline.events == []
        assert timeline.days_in_funnel == 0


class TestAttributionOperations:
    """Attribution through the service."""

    def test_attribution_is_cached_per_lead(self, service, cache):
        first = service.calculate_attribution("lead-1", "sale-1", "sale", 10_000, _touchpoints())
        second = service.calculate_attribution("lead-1", "sale-1", "sale", 10_000, _touchpoints())

        assert first is second
        assert first.weights == pytest.approx([0.4, 0.2, 0.4])

        service.log_conversion_event("lead-1", "contact_made")
        third = service.calculate_attribution("lead-1", "sale-1", "sale", 10_000, _touchpoints())
        assert third is not first

    def test_different_model_not_served_from_cache(self, service):
        position = service.calculate_attribution("lead-1", "sale-1", "sale", 100, _touchpoints())
        linear = service.calculate_attribution("lead-1", "sale-1", "sale", 100, _touchpoints(), "linear")
        assert position.model_id == "position_based"
        assert linear.model_id == "linear"

    def test_model_update_drops_cached_results(self, service):
        before = service.calculate_attribution("lead-1", "sale-1", "sale", 100, _touchpoints())
        assert before.weights == pytest.approx([0.4, 0.2, 0.4])

        service.context.registry.update_model(
            "position_based",
            config={"first_touch_weight": 0.5, "last_touch_weight": 0.3},
        )
        after = service.calculate_attribution("lead-1", "sale-1", "sale", 100, _touchpoints())

        assert after.weights == pytest.approx([0.5, 0.2, 0.3])

    def test_deleted_model_is_not_served_from_cache(self, service):
        model = service.context.registry.create_custom_model(
            "Clicks only", config={"custom_weights": {"clicked": 1.0}}
        )
        service.calculate_attribution("lead-1", "sale-1", "sale", 100, _touchpoints(), model.id)

        service.context.registry.delete_model(model.id)

        with pytest.raises(ModelNotFoundError):
            service.calculate_attribution("lead-1", "sale-1", "sale", 100, _touchpoints(), model.id)

    def test_unknown_model(self, service):
        with pytest.raises(ModelNotFoundError):
            service.calculate_attribution("lead-1", "sale-1", "sale", 100, _touchpoints(), "markov")

    def test_multi_touch_and_compare(self, service):
        conversion = ConversionInput("lead-1", "sale-1", "sale", 1000, _touchpoints())

        multi = service.calculate_multi_touch_attribution("lead-1", conversion.touchpoints, conversion)
        comparison = service.compare_attribution_models([conversion])

        assert set(multi.results) == set(comparison)
        assert comparison["last_touch"].top_templates[0][0] == "open-house"


class TestHousekeeping:
    """Refresh and statistics."""

    def test_refresh_clears_cache(self, service, cache):
        service.get_conversion_funnel()
        assert cache.size == 1

        service.refresh("reconnect")

        assert cache.size == 0

    def test_statistics(self, service):
        service.log_conversion_event("lead-1", "qualified")

        stats = service.get_statistics()

        assert stats["attribution_models"]["total_models"] == 5
        assert stats["locked_leads"] == 0
        assert stats["funnel"]["total_leads"] == 1
        assert ResultCache.make_key("funnel").startswith("funnel|")

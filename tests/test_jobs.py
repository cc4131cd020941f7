"""Tests for background ingestion and analytics exports."""
from __future__ import annotations

import sys
import threading
from pathlib import Path
from unittest.mock import MagicMock

import pytest

# Add src to path
src_path = Path(__file__).parent.parent / "src"
if str(src_path) not in sys.path:
    sys.path.insert(0, str(src_path))

from core.exceptions import InvalidInputError, OperationCancelledError
from core.types import FunnelStage
from services.event_logger import EventLogEntry
from services.jobs import AnalyticsExporter, CancellationToken, EventIngestionQueue, JobStatus


def test_cancellation_token():
    token = CancellationToken()
    token.raise_if_cancelled()
    token.cancel()
    assert token.is_cancelled
    with pytest.raises(OperationCancelledError):
        token.raise_if_cancelled()


class TestEventIngestionQueue:
    """Tests for the threaded ingestion queue."""

    def test_same_lead_events_apply_in_submission_order(self, service, store):
        entries = [
            EventLogEntry("lead-1", "contact_made"),
            EventLogEntry("lead-1", "qualified"),
            EventLogEntry("lead-1", "showing_scheduled"),
            EventLogEntry("lead-2", "offer_submitted"),
        ]

        with EventIngestionQueue(service, workers=1) as queue:
            futures = [queue.submit(entry) for entry in entries]
            results = [future.result(timeout=10) for future in futures]

        assert [r.new_stage for r in results[:3]] == [
            FunnelStage.CONTACT_MADE,
            FunnelStage.QUALIFIED,
            FunnelStage.SHOWING_SCHEDULED,
        ]
        assert [e.event_type.value for e in store.list_events("lead-1")] == [
            "contact_made",
            "qualified",
            "showing_scheduled",
        ]
        assert store.get_state("lead-2").current_stage is FunnelStage.OFFER_SUBMITTED

    def test_failed_event_surfaces_on_future(self, service):
        with EventIngestionQueue(service, workers=1) as queue:
            bad = queue.submit(EventLogEntry("lead-1", "not_a_stage"))
            good = queue.submit(EventLogEntry("lead-1", "qualified"))

            with pytest.raises(InvalidInputError):
                bad.result(timeout=10)
            assert good.result(timeout=10).new_stage is FunnelStage.QUALIFIED

    def test_later_event_waits_for_earlier_one(self):
        """A second event for the lead does not start until the first finishes."""
        started = threading.Event()
        release = threading.Event()
        order = []

        def log_conversion_event(lead_id, event_type, **kwargs):
            if event_type == "contact_made":
                started.set()
                release.wait(5)
            order.append(event_type)
            return event_type

        service = MagicMock()
        service.log_conversion_event.side_effect = log_conversion_event

        with EventIngestionQueue(service, workers=4) as queue:
            first = queue.submit(EventLogEntry("lead-1", "contact_made"))
            started.wait(5)
            second = queue.submit(EventLogEntry("lead-1", "qualified"))
            other = queue.submit(EventLogEntry("lead-2", "qualified"))
            other.result(timeout=5)
            assert not second.done()
            release.set()
            first.result(timeout=5)
            second.result(timeout=5)

        assert order == ["qualified", "contact_made", "qualified"]


class TestAnalyticsExporter:
    """Tests for cancellable exports."""

    def test_export_completes_and_reaches_sink(self, service):
        service.log_conversion_event("lead-1", "qualified")
        sink = MagicMock()
        exporter = AnalyticsExporter(service, sink=sink, workers=1)
        try:
            job = exporter.export()
            payload = job.result(timeout=10)
        finally:
            exporter.shutdown()

        assert payload["funnel"]["total_leads"] == 1
        assert {m["id"] for m in payload["attribution_models"]} >= {"linear", "position_based"}
        sink.assert_called_once_with(payload)
        status = exporter.get_job_status(job.job_id)
        assert status["status"] == JobStatus.COMPLETED
        assert status["duration_ms"] is not None

    def test_cancelled_export_writes_nothing(self, service):
        sink = MagicMock()
        token = CancellationToken()
        token.cancel()
        exporter = AnalyticsExporter(service, sink=sink, workers=1)
        try:
            job = exporter.export(token=token)
            with pytest.raises(OperationCancelledError):
                job.result(timeout=10)
        finally:
            exporter.shutdown()

        sink.assert_not_called()
        assert exporter.get_job_status(job.job_id)["status"] == JobStatus.CANCELLED

    def test_cancel_during_build(self, service):
        sink = MagicMock()
        exporter = AnalyticsExporter(service, sink=sink, workers=1)
        real_funnel = service.get_conversion_funnel
        job_holder = {}

        def funnel_then_cancel():
            job_holder["job"].cancel()
            return real_funnel()

        service.get_conversion_funnel = funnel_then_cancel
        gate = threading.Event()
        # Occupy the single worker so the job handle exists before it runs
        exporter._executor.submit(gate.wait, 5)
        try:
            job = exporter.export()
            job_holder["job"] = job
            gate.set()
            with pytest.raises(OperationCancelledError):
                job.result(timeout=10)
        finally:
            exporter.shutdown()

        sink.assert_not_called()
        assert job.status == JobStatus.CANCELLED

    def test_failed_export_records_error(self, service):
        service.get_conversion_metrics = MagicMock(side_effect=RuntimeError("store offline"))
        exporter = AnalyticsExporter(service, workers=1)
        try:
            job = exporter.export()
            with pytest.raises(RuntimeError):
                job.result(timeout=10)
        finally:
            exporter.shutdown()

        status = exporter.get_job_status(job.job_id)
        assert status["status"] == JobStatus.FAILED
        assert status["error"] == "store offline"

    def test_unknown_job_status(self, service):
        exporter = AnalyticsExporter(service, workers=1)
        try:
            assert exporter.get_job_status("export_missing") is None
        finally:
            exporter.shutdown()

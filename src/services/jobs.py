"""Background execution: event ingestion queue and cancellable analytics exports."""
from __future__ import annotations

import threading
from concurrent.futures import Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, Any, Callable, Dict, Optional

from core.config import get_settings
from core.exceptions import OperationCancelledError
from core.logging_config import get_context_logger, get_logger
from core.utils import generate_unique_key, utcnow
from services.event_logger import EventLogEntry
from services.retry import timed_call

if TYPE_CHECKING:
    from domain.analytics import DateRange
    from domain.conversion import ConversionService, EventLogResult

LOGGER = get_logger(__name__)


class JobStatus:
    """Constants for job states."""
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


# =============================================================================
# Cancellation
# =============================================================================


class CancellationToken:
    """Cooperative cancellation flag shared between a caller and a running job."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        """Raise OperationCancelledError if cancellation was requested."""
        if self._event.is_set():
            raise OperationCancelledError("Operation was cancelled")


# =============================================================================
# Event ingestion
# =============================================================================


class EventIngestionQueue:
    """
    Logs conversion events on a thread pool.

    ``submit`` returns a Future. Events for the same lead are applied in
    submission order; events for different leads run in parallel.
    """

    def __init__(self, service: "ConversionService", workers: Optional[int] = None):
        self.service = service
        self.workers = workers or get_settings().ingestion_workers
        self._executor = ThreadPoolExecutor(max_workers=self.workers, thread_name_prefix="ingest")
        self._tails: Dict[str, Future] = {}
        self._guard = threading.Lock()

    def submit(self, entry: EventLogEntry) -> "Future[EventLogResult]":
        """Queue one event; the Future resolves to its EventLogResult or raises its error."""
        with self._guard:
            previous = self._tails.get(entry.lead_id)
            future = self._executor.submit(self._run, entry, previous)
            self._tails[entry.lead_id] = future
        future.add_done_callback(lambda done, lead_id=entry.lead_id: self._release(lead_id, done))
        return future

    def _run(self, entry: EventLogEntry, previous: Optional[Future]) -> "EventLogResult":
        # Earlier submissions are dequeued first, so waiting here cannot starve the pool
        if previous is not None:
            wait([previous])
        return self.service.log_conversion_event(
            entry.lead_id,
            entry.event_type,
            description=entry.description,
            data=entry.data,
            actor_id=entry.actor_id,
            occurred_at=entry.occurred_at,
        )

    def _release(self, lead_id: str, done: Future) -> None:
        with self._guard:
            if self._tails.get(lead_id) is done:
                del self._tails[lead_id]

    def shutdown(self, wait_for_pending: bool = True) -> None:
        self._executor.shutdown(wait=wait_for_pending)

    def __enter__(self) -> "EventIngestionQueue":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.shutdown()


# =============================================================================
# Analytics export
# =============================================================================


@dataclass
class ExportJob:
    """Handle for a running export."""

    job_id: str
    future: "Future[Dict[str, Any]]"
    token: CancellationToken
    status: str = JobStatus.PENDING
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    duration_ms: Optional[float] = None
    error: Optional[str] = None

    def cancel(self) -> None:
        """Request cancellation; the job stops at its next checkpoint."""
        self.token.cancel()
        if self.future.cancel():
            self.status = JobStatus.CANCELLED

    def result(self, timeout: Optional[float] = None) -> Dict[str, Any]:
        return self.future.result(timeout)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "job_id": self.job_id,
            "status": self.status,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "duration_ms": round(self.duration_ms, 1) if self.duration_ms is not None else None,
            "error": self.error,
        }


@dataclass
class AnalyticsExporter:
    """
    Builds analytics exports in the background.

    The export is assembled in memory and handed to ``sink`` only after it
    is complete, so cancelling at any point leaves nothing written.
    """

    service: "ConversionService"
    sink: Optional[Callable[[Dict[str, Any]], None]] = None
    workers: Optional[int] = None
    jobs: Dict[str, ExportJob] = field(default_factory=dict)

    def __post_init__(self) -> None:
        self.workers = self.workers or get_settings().export_workers
        self._executor = ThreadPoolExecutor(max_workers=self.workers, thread_name_prefix="export")
        self._lock = threading.Lock()

    def export(
        self,
        date_range: Optional["DateRange"] = None,
        token: Optional[CancellationToken] = None,
    ) -> ExportJob:
        """
        Start an export.

        Args:
            date_range: Range for the conversion metrics section.
            token: Cancellation token. A new one is created when None.

        Returns:
            ExportJob whose future resolves to the export dict, or raises
            OperationCancelledError if cancelled.
        """
        token = token or CancellationToken()
        job_id = f"export_{generate_unique_key()[:12]}"
        future: "Future[Dict[str, Any]]" = Future()
        job = ExportJob(job_id=job_id, future=future, token=token)
        with self._lock:
            self.jobs[job_id] = job

        job.future = self._executor.submit(self._run, job, date_range)
        LOGGER.info(f"Export {job_id} queued", extra={"job_id": job_id})
        return job

    def _run(self, job: ExportJob, date_range: Optional["DateRange"]) -> Dict[str, Any]:
        log = get_context_logger(__name__, job_id=job.job_id)
        job.status = JobStatus.RUNNING
        job.started_at = utcnow()
        try:
            payload, duration_ms = timed_call(self._build)(job, date_range)
            job.token.raise_if_cancelled()
            if self.sink is not None:
                self.sink(payload)
        except OperationCancelledError:
            job.status = JobStatus.CANCELLED
            job.completed_at = utcnow()
            log.info(f"Export {job.job_id} cancelled")
            raise
        except Exception as e:
            job.status = JobStatus.FAILED
            job.error = str(e)
            job.completed_at = utcnow()
            log.error(f"Export {job.job_id} failed: {e}")
            raise

        job.status = JobStatus.COMPLETED
        job.completed_at = utcnow()
        job.duration_ms = duration_ms
        log.info(f"Export {job.job_id} completed in {duration_ms:.1f}ms")
        return payload

    def _build(self, job: ExportJob, date_range: Optional["DateRange"]) -> Dict[str, Any]:
        token = job.token
        token.raise_if_cancelled()
        funnel = self.service.get_conversion_funnel()

        token.raise_if_cancelled()
        metrics = self.service.get_conversion_metrics(date_range)

        token.raise_if_cancelled()
        models = [model.to_dict() for model in self.service.context.registry.list_models()]

        return {
            "job_id": job.job_id,
            "generated_at": utcnow().isoformat(),
            "funnel": funnel.to_dict(),
            "metrics": metrics.to_dict(),
            "attribution_models": models,
        }

    def get_job_status(self, job_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            job = self.jobs.get(job_id)
        return job.to_dict() if job else None

    def shutdown(self, wait_for_pending: bool = True) -> None:
        self._executor.shutdown(wait=wait_for_pending)


__all__ = [
    "CancellationToken",
    "EventIngestionQueue",
    "AnalyticsExporter",
    "ExportJob",
    "JobStatus",
]

"""Background scheduler for engine maintenance."""
from __future__ import annotations

import signal
import sys
import time
from typing import Optional

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger

from core.config import Settings, get_settings
from core.logging_config import get_logger, setup_logging_from_settings
from realtime.channel import RealtimeChannel
from scheduler.jobs import run_cache_cleanup, run_realtime_heartbeat
from services.cache import ResultCache

LOGGER = get_logger(__name__)

CACHE_CLEANUP_JOB_ID = "cache_cleanup"
HEARTBEAT_JOB_ID = "realtime_heartbeat"


def build_scheduler(
    cache: ResultCache,
    channel: Optional[RealtimeChannel] = None,
    settings: Optional[Settings] = None,
) -> BackgroundScheduler:
    """
    Create a scheduler with the maintenance jobs registered but not started.

    Args:
        cache: Result cache to sweep for expired entries.
        channel: Realtime channel to heartbeat. The heartbeat job is only
            added when a channel is given.
        settings: Source of the job intervals.

    Returns:
        A configured, stopped BackgroundScheduler.
    """
    settings = settings or get_settings()
    scheduler = BackgroundScheduler()

    scheduler.add_job(
        run_cache_cleanup,
        IntervalTrigger(minutes=settings.cache_cleanup_minutes),
        args=[cache],
        id=CACHE_CLEANUP_JOB_ID,
        replace_existing=True,
        name="Expired Cache Cleanup",
        max_instances=1,
        coalesce=True,
    )

    if channel is not None:
        scheduler.add_job(
            run_realtime_heartbeat,
            IntervalTrigger(seconds=settings.realtime_heartbeat_seconds),
            args=[channel],
            id=HEARTBEAT_JOB_ID,
            replace_existing=True,
            name="Realtime Heartbeat",
            max_instances=1,
            coalesce=True,
        )

    return scheduler


def start_scheduler(
    cache: ResultCache,
    channel: Optional[RealtimeChannel] = None,
    settings: Optional[Settings] = None,
) -> BackgroundScheduler:
    """
    Build and start the maintenance scheduler.

    Returns:
        The running BackgroundScheduler instance.
    """
    scheduler = build_scheduler(cache, channel, settings)
    scheduler.start()
    LOGGER.info(f"Scheduler started with {len(scheduler.get_jobs())} jobs.")
    return scheduler


def stop_scheduler(scheduler: Optional[BackgroundScheduler]) -> None:
    """Stop a scheduler gracefully."""
    if scheduler is not None and scheduler.running:
        LOGGER.info("Stopping scheduler...")
        scheduler.shutdown(wait=True)
        LOGGER.info("Scheduler stopped.")
    else:
        LOGGER.warning("Scheduler is not running")


def run_scheduler_blocking(
    cache: ResultCache,
    channel: Optional[RealtimeChannel] = None,
) -> None:
    """
    Start the scheduler and block until interrupted.

    Entry point for running maintenance as a standalone process.
    """
    settings = get_settings()
    setup_logging_from_settings(settings)

    scheduler = start_scheduler(cache, channel, settings)

    def _signal_handler(signum: int, frame: object) -> None:
        LOGGER.info(f"Received signal {signum}, shutting down...")
        stop_scheduler(scheduler)
        sys.exit(0)

    signal.signal(signal.SIGINT, _signal_handler)
    signal.signal(signal.SIGTERM, _signal_handler)

    LOGGER.info(f"Environment: {settings.environment}, realtime enabled: {settings.is_realtime_enabled()}")

    try:
        # Keep main thread alive
        while True:
            time.sleep(60)
    except (KeyboardInterrupt, SystemExit):
        stop_scheduler(scheduler)
        LOGGER.info("Scheduler shutdown complete.")


__all__ = [
    "build_scheduler",
    "start_scheduler",
    "stop_scheduler",
    "run_scheduler_blocking",
    "CACHE_CLEANUP_JOB_ID",
    "HEARTBEAT_JOB_ID",
]

"""Scheduler module for engine maintenance jobs."""
from __future__ import annotations

from .jobs import run_cache_cleanup, run_realtime_heartbeat
from .runner import build_scheduler, start_scheduler, stop_scheduler, run_scheduler_blocking

__all__ = [
    "run_cache_cleanup",
    "run_realtime_heartbeat",
    "build_scheduler",
    "start_scheduler",
    "stop_scheduler",
    "run_scheduler_blocking",
]

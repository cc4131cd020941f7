"""Maintenance jobs run by the scheduler."""
from __future__ import annotations

from typing import Any, Dict, Optional

from core.exceptions import TransportUnavailableError
from core.logging_config import get_logger
from core.utils import utcnow
from realtime.channel import RealtimeChannel
from services.cache import ResultCache

LOGGER = get_logger(__name__)


def run_cache_cleanup(cache: ResultCache) -> Dict[str, Any]:
    """
    Remove expired entries from the result cache.

    Returns:
        Dict with the number of entries removed and the cache stats.
    """
    removed = cache.cleanup_expired()
    if removed:
        LOGGER.info(f"Cache cleanup removed {removed} expired entries")
    else:
        LOGGER.debug("Cache cleanup found no expired entries")
    return {
        "success": True,
        "removed": removed,
        "stats": cache.stats(),
        "ran_at": utcnow().isoformat(),
    }


def run_realtime_heartbeat(channel: Optional[RealtimeChannel]) -> Dict[str, Any]:
    """
    Ping the realtime channel, reconnecting a dead connection.

    A channel that cannot be restored is reported, not raised; the next
    heartbeat tries again.
    """
    if channel is None:
        return {"success": True, "skipped": True}

    try:
        healthy = channel.heartbeat()
    except TransportUnavailableError as e:
        LOGGER.warning(f"Realtime heartbeat could not restore the channel: {e}")
        return {"success": False, "error": str(e)}

    return {"success": True, "healthy": healthy, "reconnected": not healthy}


__all__ = [
    "run_cache_cleanup",
    "run_realtime_heartbeat",
]

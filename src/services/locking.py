"""Per-lead locking.

Event ingestion is the only mutating path, and two events for the same lead
must not interleave between "read current stage" and "write new stage".
Leads are independent, so each gets its own lock. A lead's lock lives only
while some thread holds it or waits for it.
"""
from __future__ import annotations

import threading
from contextlib import contextmanager
from typing import Dict, Generator, Optional

from core.exceptions import LockAcquisitionError
from core.logging_config import get_logger

LOGGER = get_logger(__name__)


class _LeadLock:
    """A re-entrant lock plus the number of threads using it."""

    __slots__ = ("lock", "users")

    def __init__(self) -> None:
        self.lock = threading.RLock()
        self.users = 0


class LeadLockRegistry:
    """
    Hands out one re-entrant lock per lead id.

    Re-entrant so a batch that already holds a lead's lock can call back
    into single-event logging for the same lead. Entries are reference
    counted and dropped when the last holder or waiter leaves.
    """

    def __init__(self) -> None:
        self._locks: Dict[str, _LeadLock] = {}
        self._guard = threading.Lock()

    def _checkout(self, lead_id: str) -> _LeadLock:
        with self._guard:
            entry = self._locks.get(lead_id)
            if entry is None:
                entry = _LeadLock()
                self._locks[lead_id] = entry
            entry.users += 1
            return entry

    def _checkin(self, lead_id: str, entry: _LeadLock) -> None:
        with self._guard:
            entry.users -= 1
            if entry.users == 0 and self._locks.get(lead_id) is entry:
                del self._locks[lead_id]

    @contextmanager
    def lead_lock(
        self,
        lead_id: str,
        timeout_seconds: Optional[float] = None,
    ) -> Generator[None, None, None]:
        """
        Context manager serializing work on one lead.

        Usage:
            with locks.lead_lock(lead_id):
                # append event, evaluate, persist

        Args:
            lead_id: Lead to lock.
            timeout_seconds: Give up after this long. Waits forever when None.

        Raises:
            LockAcquisitionError: If the lock was not acquired in time.
        """
        entry = self._checkout(lead_id)
        try:
            acquired = entry.lock.acquire(timeout=timeout_seconds if timeout_seconds is not None else -1)
            if not acquired:
                LOGGER.warning(f"Timed out waiting for lock on lead {lead_id}", extra={"lead_id": lead_id})
                raise LockAcquisitionError(f"Could not lock lead {lead_id} within {timeout_seconds}s")
            try:
                yield
            finally:
                entry.lock.release()
        finally:
            self._checkin(lead_id, entry)

    def is_locked(self, lead_id: str) -> bool:
        """True while some thread holds or waits for the lead's lock."""
        with self._guard:
            return lead_id in self._locks

    @property
    def size(self) -> int:
        """Number of leads whose lock is currently held or awaited."""
        with self._guard:
            return len(self._locks)


__all__ = [
    "LeadLockRegistry",
    "LockAcquisitionError",
]

"""
store.py — Latest population snapshot held for the whole app instance.

One writer: the feed-delivery path (successful query fetches and live
pushes, see services/query_cache.py). Everyone else only reads. All access
happens on the event loop thread, so reads never block and never see a
half-written snapshot.

Before the first snapshot arrives current() returns ([], None) — an empty
but valid view.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Callable, Optional

from crowdpulse.models.population import PopulationRecord, Snapshot

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(tz=timezone.utc)


class SnapshotStore:
    """Latest snapshot + receipt time + last error + loading flag."""

    def __init__(self, now: Callable[[], datetime] = _utcnow):
        self._now = now
        self._records: list[PopulationRecord] = []
        self._index: dict[str, PopulationRecord] = {}
        self._updated_at: Optional[datetime] = None
        self._captured_at: Optional[datetime] = None
        self._error: Optional[str] = None
        self._is_loading = False

    # ── Writer side ──────────────────────────────────────────────────────────

    def set(self, snapshot: Snapshot) -> None:
        """
        Replace the current snapshot. The timestamp is the receipt time, so
        the most recently received snapshot always wins regardless of when
        it was requested. Clears any recorded error.
        """
        self._records = list(snapshot.records)
        self._index = {r.id: r for r in self._records}
        self._captured_at = snapshot.captured_at
        self._updated_at = self._now()
        self._error = None
        logger.debug("Snapshot stored: %d regions", len(self._records))

    def set_error(self, message: Optional[str]) -> None:
        """Record (or clear) the last error without touching the snapshot."""
        self._error = message

    def set_loading(self, is_loading: bool) -> None:
        self._is_loading = is_loading

    # ── Reader side ──────────────────────────────────────────────────────────

    def current(self) -> tuple[list[PopulationRecord], Optional[datetime]]:
        """The latest records (a copy) and when they were received."""
        return list(self._records), self._updated_at

    def find(self, region_id: Optional[str]) -> Optional[PopulationRecord]:
        """The selected region's record, or None."""
        if not region_id:
            return None
        return self._index.get(region_id)

    @property
    def updated_at(self) -> Optional[datetime]:
        return self._updated_at

    @property
    def captured_at(self) -> Optional[datetime]:
        return self._captured_at

    @property
    def error(self) -> Optional[str]:
        return self._error

    @property
    def is_loading(self) -> bool:
        return self._is_loading

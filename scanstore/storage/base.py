"""The storage contract shared by the relational and graph backends.

Every selector returns normalized records (see ``normalize``) or ``None``;
writes that need an existing parent raise ``NotFound``. Adapters add no
retries and no locking of their own.
"""

from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from typing import Any, Callable, Mapping, Optional

from scanstore.errors import ValidationError
from scanstore.settings import StoreSettings
from scanstore.storage.normalize import (
    GradeCount,
    HistoryEntry,
    RecordId,
    ScanRecord,
    TestResultRecord,
    utc_now,
)
from scanstore.storage.scan_result import ScanResult


class ScanStore(ABC):
    """Scan persistence over one backend.

    Subclasses must call ``create_pool()`` once before any other operation.
    Calling it again builds a second, independent pool; tracking that is the
    caller's job.
    """

    backend: str = ""

    def __init__(
        self,
        settings: StoreSettings,
        now: Callable[[], datetime] = utc_now,
    ):
        """
        Args:
            settings: Connection, pool and cache-window settings
            now: Clock used for start/end times and recency windows
        """
        self.settings = settings
        self._now = now

    # ── Connection ────────────────────────────────────────────

    @abstractmethod
    def create_pool(self) -> Any:
        """Open the connection pool (engine or driver) and return it."""
        ...

    @abstractmethod
    def migrate(self) -> None:
        """Idempotently apply schema constraints and indexes."""
        ...

    @abstractmethod
    def close(self) -> None:
        """Release all held connections."""
        ...

    # ── Writes ────────────────────────────────────────────────

    @abstractmethod
    def ensure_site(self, key: str) -> RecordId:
        """Return the id of the site for ``key``, creating it if absent.

        Raises:
            ConstraintViolation: A concurrent caller created the same site;
                call again to read it back.
        """
        ...

    @abstractmethod
    def insert_scan(self, site_id: RecordId) -> ScanRecord:
        """Create a RUNNING scan with zero counts.

        Raises:
            NotFound: If the site does not exist
        """
        ...

    @abstractmethod
    def insert_test_results(
        self,
        site_id: RecordId,
        scan_id: RecordId,
        result: ScanResult | Mapping[str, Any],
    ) -> ScanRecord:
        """Write all test results, then move the scan to its terminal state.

        Results are always written before the terminal update, so a scan seen
        in a terminal state has its results in place.

        Raises:
            NotFound: If the scan does not exist
            InvalidStateTransition: If the scan is no longer RUNNING
        """
        ...

    @abstractmethod
    def update_scan_state(
        self, scan_id: RecordId, state, error: Optional[str] = None
    ) -> ScanRecord:
        """Force a RUNNING scan into FAILED or ABORTED."""
        ...

    # ── Reads ─────────────────────────────────────────────────

    @abstractmethod
    def select_scan(self, scan_id: RecordId) -> Optional[ScanRecord]:
        ...

    @abstractmethod
    def select_scan_by_id(self, scan_id: RecordId) -> Optional[ScanRecord]:
        """Like select_scan, but only returns FINISHED scans."""
        ...

    @abstractmethod
    def select_scan_recent_scan(
        self, site_id: RecordId, window_seconds: Optional[int] = None
    ) -> Optional[ScanRecord]:
        """Most recent FINISHED scan of a site started within the window."""
        ...

    @abstractmethod
    def select_scan_latest_scan_by_host(
        self, host: str, max_age_seconds: Optional[int] = None
    ) -> Optional[ScanRecord]:
        """Most recent FINISHED scan of a domain started within max age."""
        ...

    @abstractmethod
    def select_scan_host_history(self, site_id: RecordId) -> list[HistoryEntry]:
        """Chronological score history with repeated scores collapsed."""
        ...

    @abstractmethod
    def select_test_results(self, scan_id: RecordId) -> list[TestResultRecord]:
        """All test results of a scan; an empty list for an unknown scan.

        The pass/fail flag is the ``passed`` attribute on each record and the
        ``"pass"`` key in ``record.as_dict()``.
        """
        ...

    @abstractmethod
    def select_grade_distribution(self) -> list[GradeCount]:
        """FINISHED scan counts per grade, best grade first."""
        ...

    @abstractmethod
    def refresh_materialized_views(self) -> None:
        """Recompute precomputed aggregates; a no-op where there are none."""
        ...

    # ── Shared helpers ────────────────────────────────────────

    def _cutoff(self, seconds: Optional[int], default: int) -> datetime:
        if seconds is None:
            seconds = default
        if seconds < 0:
            raise ValidationError(f"Time window must be non-negative, got {seconds}")
        return self._now() - timedelta(seconds=seconds)

    @staticmethod
    def _require_key(key: str) -> str:
        if not isinstance(key, str) or not key.strip():
            raise ValidationError(f"Site key must be a non-empty string, got {key!r}")
        return key

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()

    def __repr__(self):
        return f"<{self.__class__.__name__} backend={self.backend}>"

"""Storage adapters for scan results.

Two interchangeable backends implement the ``ScanStore`` contract:
1. Relational (SQLAlchemy; PostgreSQL in production, SQLite for local use)
2. Graph (Neo4j)

Pick one with ``create_adapter`` or ``open_store``; nothing else should
import an adapter class directly.
"""

from scanstore.storage.base import ScanStore
from scanstore.storage.factory import create_adapter, open_store, resolve_backend
from scanstore.storage.lifecycle import ALGORITHM_VERSION, ScanState
from scanstore.storage.normalize import (
    GradeCount,
    HistoryEntry,
    ScanRecord,
    TestResultRecord,
)
from scanstore.storage.scan_result import CheckOutcome, ScanResult, ScanSummary

__all__ = [
    "ALGORITHM_VERSION",
    "CheckOutcome",
    "GradeCount",
    "HistoryEntry",
    "ScanRecord",
    "ScanResult",
    "ScanState",
    "ScanStore",
    "ScanSummary",
    "TestResultRecord",
    "create_adapter",
    "open_store",
    "resolve_backend",
]

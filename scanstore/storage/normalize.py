"""Row normalizer: backend-native records to the caller-facing shape.

Relational rows carry snake_case columns and SQL timestamps; graph nodes carry
camelCase properties and millisecond counters. Everything returned from a
store goes through the functions here, so callers only ever see
``ScanRecord``/``TestResultRecord`` with timezone-aware UTC datetimes.
"""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from typing import Any, Iterable, Mapping, Optional, Union

from scanstore.errors import ValidationError
from scanstore.storage.lifecycle import ScanState, coerce_state

RecordId = Union[int, str]

# Best to worst; grade_distribution is ordered by position in this tuple
GRADE_RANKING = (
    "A+", "A", "A-",
    "B+", "B", "B-",
    "C+", "C", "C-",
    "D+", "D", "D-",
    "F",
)

# Serialized blobs are wrapped as {"format": N, "data": ...}
BLOB_FORMAT_VERSION = 1


@dataclass(frozen=True)
class ScanRecord:
    id: RecordId
    site_id: RecordId
    state: ScanState
    start_time: datetime
    end_time: Optional[datetime]
    tests_failed: int
    tests_passed: int
    tests_quantity: int
    grade: Optional[str]
    score: Optional[int]
    error: Optional[str]
    algorithm_version: Optional[int]

    def as_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["state"] = self.state.value
        return data


@dataclass(frozen=True)
class TestResultRecord:
    """One stored test result.

    ``pass`` is a keyword, so the flag is the ``passed`` attribute; ``as_dict()``
    returns it under ``"pass"``, the name used at the storage boundary.
    """

    __test__ = False

    id: RecordId
    scan_id: RecordId
    name: str
    expectation: Optional[str]
    result: Optional[str]
    passed: bool
    output: Any
    score_modifier: int

    def as_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["pass"] = data.pop("passed")
        return data


@dataclass(frozen=True)
class HistoryEntry:
    id: RecordId
    grade: Optional[str]
    score: Optional[int]
    end_time: datetime
    end_time_unix_timestamp: int


@dataclass(frozen=True)
class GradeCount:
    grade: str
    count: int


# Timestamps


def to_utc(value) -> Optional[datetime]:
    """Normalize any backend timestamp to an aware UTC datetime.

    Accepts naive datetimes (SQLite returns these; they are stored as UTC),
    aware datetimes, neo4j temporal values and millisecond counters.
    """
    if value is None:
        return None
    if isinstance(value, bool):
        raise ValidationError(f"Not a timestamp: {value!r}")
    if isinstance(value, (int, float)):
        return from_epoch_millis(value)
    if hasattr(value, "to_native"):
        value = value.to_native()
    if isinstance(value, str):
        value = datetime.fromisoformat(value)
    if not isinstance(value, datetime):
        raise ValidationError(f"Not a timestamp: {value!r}")
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def from_epoch_millis(millis) -> datetime:
    return datetime.fromtimestamp(millis / 1000, tz=timezone.utc)


def to_epoch_millis(value: datetime) -> int:
    return int(round(to_utc(value).timestamp() * 1000))


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


# Serialized blobs


def encode_blob(value) -> Optional[str]:
    if value is None:
        return None
    return json.dumps({"format": BLOB_FORMAT_VERSION, "data": value})


def decode_blob(raw):
    """Decode a version-tagged blob.

    Untagged JSON written before the envelope existed is returned as-is.
    An envelope with an unknown format version is rejected rather than
    guessed at.
    """
    if raw is None:
        return None
    value = json.loads(raw) if isinstance(raw, (str, bytes)) else raw
    if isinstance(value, dict) and set(value) == {"format", "data"}:
        if value["format"] != BLOB_FORMAT_VERSION:
            raise ValidationError(
                f"Unsupported blob format {value['format']!r}, "
                f"expected {BLOB_FORMAT_VERSION}"
            )
        return value["data"]
    return value


# Scans


def scan_from_row(row) -> ScanRecord:
    """Map a relational ``scans`` row (ORM object or mapping)."""
    get = row.get if isinstance(row, Mapping) else lambda key: getattr(row, key)
    return ScanRecord(
        id=get("id"),
        site_id=get("site_id"),
        state=coerce_state(get("state")),
        start_time=to_utc(get("start_time")),
        end_time=to_utc(get("end_time")),
        tests_failed=get("tests_failed") or 0,
        tests_passed=get("tests_passed") or 0,
        tests_quantity=get("tests_quantity") or 0,
        grade=get("grade"),
        score=get("score"),
        error=get("error"),
        algorithm_version=get("algorithm_version"),
    )


def scan_from_node(props: Mapping[str, Any]) -> ScanRecord:
    """Map the properties of a graph ``:Scan`` node."""
    return ScanRecord(
        id=props["id"],
        site_id=props["siteId"],
        state=coerce_state(props["state"]),
        start_time=to_utc(props["startTime"]),
        end_time=to_utc(props.get("endTime")),
        tests_failed=props.get("testsFailed") or 0,
        tests_passed=props.get("testsPassed") or 0,
        tests_quantity=props.get("testsQuantity") or 0,
        grade=props.get("grade"),
        score=props.get("score"),
        error=props.get("error"),
        algorithm_version=props.get("algorithmVersion"),
    )


# Test results


def result_from_row(row) -> TestResultRecord:
    """Map a relational ``tests`` row; ``output`` is already decoded by its column type."""
    get = row.get if isinstance(row, Mapping) else lambda key: getattr(row, key)
    return TestResultRecord(
        id=get("id"),
        scan_id=get("scan_id"),
        name=get("name"),
        expectation=get("expectation"),
        result=get("result"),
        passed=bool(get("pass_")),
        output=get("output"),
        score_modifier=get("score_modifier") or 0,
    )


def result_from_node(props: Mapping[str, Any]) -> TestResultRecord:
    return TestResultRecord(
        id=props["id"],
        scan_id=props["scanId"],
        name=props["name"],
        expectation=props.get("expectation"),
        result=props.get("result"),
        passed=bool(props.get("pass")),
        output=decode_blob(props.get("output")),
        score_modifier=props.get("scoreModifier") or 0,
    )


# History


def history_entry(scan_id: RecordId, grade, score, start_time) -> HistoryEntry:
    when = to_utc(start_time)
    return HistoryEntry(
        id=scan_id,
        grade=grade,
        score=score,
        end_time=when,
        end_time_unix_timestamp=int(round(when.timestamp())),
    )


def compress_history(entries: Iterable[HistoryEntry]) -> list[HistoryEntry]:
    """Keep the first entry and every entry whose score differs from its predecessor.

    ``entries`` must already be in chronological order.
    """
    compressed: list[HistoryEntry] = []
    previous = None
    for index, entry in enumerate(entries):
        if index == 0 or entry.score != previous:
            compressed.append(entry)
        previous = entry.score
    return compressed


# Grade distribution


def grade_rank(grade: Optional[str]) -> int:
    try:
        return GRADE_RANKING.index(grade)
    except ValueError:
        return len(GRADE_RANKING)


def sort_grade_distribution(rows: Iterable[tuple[str, int]]) -> list[GradeCount]:
    """Order (grade, count) pairs best-to-worst, unknown grades last."""
    counts = [GradeCount(grade=grade, count=int(count)) for grade, count in rows]
    return sorted(counts, key=lambda item: (grade_rank(item.grade), item.grade))

"""Relational models for sites, scans and test results.

Ownership is expressed with foreign keys: a site owns its scans and a scan
owns its test results. Column names match the normalized record shape so
rows map onto it without renaming.
"""

from datetime import datetime
from typing import Any, List, Optional

from sqlalchemy import (
    Boolean,
    ForeignKey,
    Index,
    Integer,
    String,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

from scanstore.storage.db_helpers import UtcDateTime, VersionedJson
from scanstore.storage.lifecycle import ALGORITHM_VERSION, INITIAL_STATE

# Schema version (increment on breaking changes)
SCAN_SCHEMA_VERSION = "1.0.0"


class ScanBase(DeclarativeBase):
    pass


class Site(ScanBase):
    """A scanned domain. Created on first request, never updated."""

    __tablename__ = "sites"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    domain: Mapped[str] = mapped_column(String, unique=True)
    creation_time: Mapped[datetime] = mapped_column(UtcDateTime)

    scans: Mapped[List["Scan"]] = relationship(back_populates="site")

    __table_args__ = (Index("idx_sites_creation_time", "creation_time"),)


class Scan(ScanBase):
    """One audit of a site.

    end_time is set when the scan reaches a terminal state; grade and score
    only when that state is FINISHED.
    """

    __tablename__ = "scans"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    site_id: Mapped[int] = mapped_column(ForeignKey("sites.id"))
    state: Mapped[str] = mapped_column(String, default=INITIAL_STATE.value)
    start_time: Mapped[datetime] = mapped_column(UtcDateTime)
    end_time: Mapped[Optional[datetime]] = mapped_column(UtcDateTime)
    tests_failed: Mapped[int] = mapped_column(Integer, default=0)
    tests_passed: Mapped[int] = mapped_column(Integer, default=0)
    tests_quantity: Mapped[int] = mapped_column(Integer, default=0)
    grade: Mapped[Optional[str]] = mapped_column(String(2))
    score: Mapped[Optional[int]]
    algorithm_version: Mapped[int] = mapped_column(
        Integer, default=ALGORITHM_VERSION
    )
    status_code: Mapped[Optional[int]]
    response_headers: Mapped[Optional[Any]] = mapped_column(VersionedJson)
    error: Mapped[Optional[str]]

    site: Mapped["Site"] = relationship(back_populates="scans")
    tests: Mapped[List["TestResult"]] = relationship(back_populates="scan")

    __table_args__ = (
        Index("idx_scans_site_state_start", "site_id", "state", "start_time"),
        Index("idx_scans_state", "state"),
        Index("idx_scans_grade", "grade"),
        Index("idx_scans_end_time", "end_time"),
    )


class TestResult(ScanBase):
    """Outcome of one named check, written with the scan's terminal transition."""

    __test__ = False
    __tablename__ = "tests"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    site_id: Mapped[int] = mapped_column(ForeignKey("sites.id"))
    scan_id: Mapped[int] = mapped_column(ForeignKey("scans.id"))
    name: Mapped[str] = mapped_column(String)
    expectation: Mapped[Optional[str]]
    result: Mapped[Optional[str]]
    pass_: Mapped[bool] = mapped_column("pass", Boolean)
    output: Mapped[Optional[Any]] = mapped_column(VersionedJson)
    score_modifier: Mapped[int] = mapped_column(Integer, default=0)

    scan: Mapped["Scan"] = relationship(back_populates="tests")

    __table_args__ = (
        UniqueConstraint("scan_id", "name", name="uq_tests_scan_name"),
        Index("idx_tests_name", "name"),
    )


class Meta(ScanBase):
    """Metadata key-value store.

    Used for storing schema_version and other database-level metadata.
    """

    __tablename__ = "meta"

    key: Mapped[str] = mapped_column(String, primary_key=True)
    value: Mapped[Optional[str]]

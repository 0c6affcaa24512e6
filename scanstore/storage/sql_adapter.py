"""Relational scan store backed by SQLAlchemy.

PostgreSQL is the production engine (connection pool, materialized
``grade_distribution`` view); SQLite works for local use and tests, with the
grade distribution aggregated on demand.

The terminal transition in ``insert_test_results`` runs in one transaction:
test rows are flushed first and the guarded scan update last, then both
commit together.
"""

import logging
from contextlib import contextmanager
from typing import Any, Iterator, Mapping, Optional

from sqlalchemy import (
    case,
    column,
    create_engine,
    event,
    func,
    select,
    table,
    text,
    update,
)
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from scanstore.errors import (
    ConnectionError,
    ConstraintViolation,
    InvalidStateTransition,
    NotFound,
)
from scanstore.storage.base import ScanStore
from scanstore.storage.lifecycle import (
    ALGORITHM_VERSION,
    INITIAL_STATE,
    ScanState,
    check_transition,
    validate_forced_state,
)
from scanstore.storage.models import Scan, Site, TestResult
from scanstore.storage.normalize import (
    GRADE_RANKING,
    GradeCount,
    HistoryEntry,
    RecordId,
    ScanRecord,
    TestResultRecord,
    history_entry,
    result_from_row,
    scan_from_row,
)
from scanstore.storage.scan_result import ScanResult, parse_scan_result
from scanstore.storage.schema import GRADE_DISTRIBUTION_VIEW, init_relational_schema

logger = logging.getLogger(__name__)

FINISHED = ScanState.FINISHED.value


def set_sqlite_pragma(dbapi_conn, connection_record):
    """Set SQLite PRAGMAs for every new connection.

    Without this, new connections silently skip foreign key enforcement.
    """
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.close()


class RelationalScanStore(ScanStore):
    """Scan store over PostgreSQL or SQLite."""

    backend = "relational"

    def __init__(self, settings, **kwargs):
        super().__init__(settings, **kwargs)
        self.engine: Optional[Engine] = None
        self._session_factory: Optional[sessionmaker] = None

    # ── Connection ────────────────────────────────────────────

    def create_pool(self) -> Engine:
        url = make_url(self.settings.relational.sqlalchemy_url())
        pool = self.settings.pool
        options: dict[str, Any] = {"pool_pre_ping": True}

        if url.get_backend_name() == "sqlite":
            options["connect_args"] = {"check_same_thread": False}
            if url.database in (None, "", ":memory:"):
                # Every session must see the same in-memory database
                options["poolclass"] = StaticPool
        else:
            # SQLAlchemy pools have no per-connection use limit; max_uses is
            # approximated by recycling connections after idle_timeout.
            options.update(
                pool_size=pool.max_connections,
                max_overflow=0,
                pool_timeout=pool.connection_timeout,
                pool_recycle=pool.idle_timeout,
            )

        engine = create_engine(url, **options)
        if url.get_backend_name() == "sqlite":
            event.listen(engine, "connect", set_sqlite_pragma)

        self.engine = engine
        self._session_factory = sessionmaker(bind=engine, expire_on_commit=False)
        logger.info(
            f"Relational pool created for {url.render_as_string(hide_password=True)}"
        )
        return engine

    def migrate(self) -> None:
        engine = self._require_engine()
        try:
            init_relational_schema(engine)
        except OperationalError as e:
            raise ConnectionError(f"Cannot reach relational backend: {e.orig}") from e

    def close(self) -> None:
        if self.engine is not None:
            self.engine.dispose()
            logger.info("Relational pool closed")
        self.engine = None
        self._session_factory = None

    def _require_engine(self) -> Engine:
        if self.engine is None:
            raise RuntimeError("Relational pool not created. Call create_pool() first")
        return self.engine

    @property
    def _has_materialized_view(self) -> bool:
        return self._require_engine().dialect.name == "postgresql"

    @contextmanager
    def _session(self) -> Iterator[Session]:
        """One session per operation; the connection returns to the pool on exit."""
        self._require_engine()
        session = self._session_factory()
        try:
            try:
                session.connection()
            except OperationalError as e:
                raise ConnectionError(
                    f"Cannot reach relational backend: {e.orig}"
                ) from e
            yield session
        finally:
            session.close()

    # ── Writes ────────────────────────────────────────────────

    def ensure_site(self, key: str) -> int:
        key = self._require_key(key)
        with self._session() as session:
            site_id = session.execute(
                select(Site.id)
                .where(Site.domain == key)
                .order_by(Site.creation_time.desc())
                .limit(1)
            ).scalar()
            if site_id is not None:
                return site_id

            site = Site(domain=key, creation_time=self._now())
            session.add(site)
            try:
                session.commit()
            except IntegrityError as e:
                session.rollback()
                raise ConstraintViolation(
                    f"Site {key!r} was created concurrently; read it again"
                ) from e
            logger.info(f"Created site {key} with id {site.id}")
            return site.id

    def insert_scan(self, site_id: RecordId) -> ScanRecord:
        with self._session() as session:
            if session.get(Site, site_id) is None:
                raise NotFound(f"Site not found: {site_id}")

            scan = Scan(
                site_id=site_id,
                state=INITIAL_STATE.value,
                start_time=self._now(),
                tests_failed=0,
                tests_passed=0,
                tests_quantity=0,
                algorithm_version=ALGORITHM_VERSION,
            )
            session.add(scan)
            session.commit()
            logger.debug(f"Started scan {scan.id} for site {site_id}")
            return scan_from_row(scan)

    def insert_test_results(
        self,
        site_id: RecordId,
        scan_id: RecordId,
        result: ScanResult | Mapping[str, Any],
    ) -> ScanRecord:
        scan_result = parse_scan_result(result)
        target = scan_result.terminal_state
        summary = scan_result.scan

        with self._session() as session:
            scan = self._get_scan(session, scan_id)
            if scan.site_id != site_id:
                raise NotFound(f"Scan {scan_id} does not belong to site {site_id}")
            check_transition(scan_id, scan.state, target)

            session.add_all(
                TestResult(
                    site_id=site_id,
                    scan_id=scan_id,
                    name=row["name"],
                    expectation=row["expectation"],
                    result=row["result"],
                    pass_=row["pass"],
                    output=row["output"],
                    score_modifier=row["score_modifier"],
                )
                for row in scan_result.outcome_rows()
            )
            session.flush()

            self._finish_scan(
                session,
                scan,
                target,
                end_time=self._now(),
                tests_failed=summary.tests_failed,
                tests_passed=summary.tests_passed,
                tests_quantity=summary.tests_quantity,
                grade=summary.grade,
                score=summary.score,
                algorithm_version=summary.algorithm_version,
                status_code=summary.status_code,
                response_headers=summary.response_headers,
                error=scan_result.error_message,
            )
            logger.info(
                f"Scan {scan_id} {target.value} with "
                f"{len(scan_result.tests)} test results"
            )
            return scan_from_row(scan)

    def update_scan_state(
        self, scan_id: RecordId, state, error: Optional[str] = None
    ) -> ScanRecord:
        target = validate_forced_state(state, error)
        values: dict[str, Any] = {"end_time": self._now()}
        if error:
            values["error"] = error

        with self._session() as session:
            scan = self._get_scan(session, scan_id)
            check_transition(scan_id, scan.state, target)
            self._finish_scan(session, scan, target, **values)
            logger.info(f"Scan {scan_id} forced to {target.value}")
            return scan_from_row(scan)

    def _get_scan(self, session: Session, scan_id: RecordId) -> Scan:
        scan = session.get(Scan, scan_id)
        if scan is None:
            raise NotFound(f"Scan not found: {scan_id}")
        return scan

    def _finish_scan(self, session: Session, scan: Scan, target: ScanState, **values):
        """Apply the terminal update, guarded so only a RUNNING scan moves."""
        updated = session.execute(
            update(Scan)
            .where(Scan.id == scan.id, Scan.state == ScanState.RUNNING.value)
            .values(state=target.value, **values)
            .execution_options(synchronize_session=False)
        )
        if updated.rowcount != 1:
            # Another writer moved the scan first
            session.rollback()
            session.refresh(scan)
            raise InvalidStateTransition(scan.id, scan.state, target)
        session.commit()
        session.refresh(scan)

    # ── Reads ─────────────────────────────────────────────────

    def select_scan(self, scan_id: RecordId) -> Optional[ScanRecord]:
        with self._session() as session:
            scan = session.get(Scan, scan_id)
            return scan_from_row(scan) if scan is not None else None

    def select_scan_by_id(self, scan_id: RecordId) -> Optional[ScanRecord]:
        return self._first_scan(
            select(Scan).where(Scan.id == scan_id, Scan.state == FINISHED).limit(1)
        )

    def select_scan_recent_scan(
        self, site_id: RecordId, window_seconds: Optional[int] = None
    ) -> Optional[ScanRecord]:
        cutoff = self._cutoff(window_seconds, self.settings.cooldown)
        return self._first_scan(
            select(Scan)
            .where(
                Scan.site_id == site_id,
                Scan.start_time >= cutoff,
                Scan.state == FINISHED,
            )
            .order_by(Scan.start_time.desc(), Scan.id.desc())
            .limit(1)
        )

    def select_scan_latest_scan_by_host(
        self, host: str, max_age_seconds: Optional[int] = None
    ) -> Optional[ScanRecord]:
        cutoff = self._cutoff(max_age_seconds, self.settings.cache_time_for_get)
        return self._first_scan(
            select(Scan)
            .join(Site, Scan.site_id == Site.id)
            .where(
                Site.domain == host,
                Scan.start_time >= cutoff,
                Scan.state == FINISHED,
            )
            .order_by(Scan.start_time.desc(), Scan.id.desc())
            .limit(1)
        )

    def _first_scan(self, statement) -> Optional[ScanRecord]:
        with self._session() as session:
            scan = session.execute(statement).scalars().first()
            return scan_from_row(scan) if scan is not None else None

    def select_scan_host_history(self, site_id: RecordId) -> list[HistoryEntry]:
        prev_score = (
            func.lag(Scan.score)
            .over(order_by=[Scan.start_time, Scan.id])
            .label("prev_score")
        )
        finished = (
            select(Scan.id, Scan.grade, Scan.score, Scan.start_time, prev_score)
            .where(Scan.site_id == site_id, Scan.state == FINISHED)
            .subquery()
        )
        statement = (
            select(finished.c.id, finished.c.grade, finished.c.score, finished.c.start_time)
            .where(finished.c.score.is_distinct_from(finished.c.prev_score))
            .order_by(finished.c.start_time, finished.c.id)
        )
        with self._session() as session:
            return [
                history_entry(row.id, row.grade, row.score, row.start_time)
                for row in session.execute(statement)
            ]

    def select_test_results(self, scan_id: RecordId) -> list[TestResultRecord]:
        with self._session() as session:
            tests = session.execute(
                select(TestResult)
                .where(TestResult.scan_id == scan_id)
                .order_by(TestResult.id)
            ).scalars()
            return [result_from_row(test) for test in tests]

    def select_grade_distribution(self) -> list[GradeCount]:
        if self._has_materialized_view:
            view = table(GRADE_DISTRIBUTION_VIEW, column("grade"), column("count"))
            grade, count = view.c.grade, view.c.count
            statement = select(grade, count)
        else:
            grade, count = Scan.grade, func.count(Scan.id).label("count")
            statement = (
                select(grade, count)
                .where(Scan.state == FINISHED, Scan.grade.is_not(None))
                .group_by(grade)
            )

        rank = case(
            {value: position for position, value in enumerate(GRADE_RANKING)},
            value=grade,
            else_=len(GRADE_RANKING),
        )
        statement = statement.order_by(rank, grade)
        with self._session() as session:
            return [
                GradeCount(grade=row[0], count=int(row[1]))
                for row in session.execute(statement)
            ]

    def refresh_materialized_views(self) -> None:
        if not self._has_materialized_view:
            logger.debug("No materialized views on this engine; nothing to refresh")
            return
        try:
            with self._require_engine().begin() as connection:
                connection.execute(
                    text(f"REFRESH MATERIALIZED VIEW CONCURRENTLY {GRADE_DISTRIBUTION_VIEW}")
                )
        except OperationalError as e:
            raise ConnectionError(f"Cannot reach relational backend: {e.orig}") from e
        logger.info(f"Refreshed materialized view {GRADE_DISTRIBUTION_VIEW}")

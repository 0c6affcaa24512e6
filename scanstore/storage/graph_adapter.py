"""Graph scan store backed by Neo4j.

Sites, scans and test results are nodes joined by ``HAS_SCAN`` and
``HAS_TEST`` relationships. Timestamps are stored as epoch-millisecond
integers and converted to datetimes before leaving this module.

Every operation opens its own driver session; sessions are never shared
between calls.

``insert_test_results`` is two transactions, not one: the test results are
merged first and the scan's terminal update runs second, guarded on the scan
still being RUNNING. A crash in between leaves the scan RUNNING with some or
all results present; retrying is safe because results are merged on
``(scan, name)``. This is a weaker guarantee than the relational store's
single transaction.
"""

import logging
import uuid
from typing import Any, Callable, Mapping, Optional

from neo4j import GraphDatabase, Driver
from neo4j.exceptions import ConstraintError, ServiceUnavailable

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
from scanstore.storage.normalize import (
    GradeCount,
    HistoryEntry,
    RecordId,
    ScanRecord,
    TestResultRecord,
    compress_history,
    encode_blob,
    history_entry,
    result_from_node,
    scan_from_node,
    sort_grade_distribution,
    to_epoch_millis,
)
from scanstore.storage.scan_result import ScanResult, parse_scan_result
from scanstore.storage.schema import init_graph_schema

logger = logging.getLogger(__name__)

FINISHED = ScanState.FINISHED.value

SITE_BY_DOMAIN = """
MATCH (s:Site {domain: $domain})
RETURN s.id AS id
ORDER BY s.creationTime DESC
LIMIT 1
"""

CREATE_SITE = """
CREATE (s:Site {id: $siteId, domain: $domain, creationTime: $creationTime})
RETURN s.id AS id
"""

CREATE_SCAN = """
MATCH (s:Site {id: $siteId})
CREATE (scan:Scan {
  id: $scanId,
  siteId: $siteId,
  state: $state,
  startTime: $startTime,
  testsFailed: 0,
  testsPassed: 0,
  testsQuantity: 0,
  algorithmVersion: $algorithmVersion
})
CREATE (s)-[:HAS_SCAN]->(scan)
RETURN scan
"""

SCAN_STATE = """
MATCH (scan:Scan {id: $scanId})
RETURN scan.state AS state, scan.siteId AS siteId
"""

MERGE_TEST_RESULTS = """
MATCH (scan:Scan {id: $scanId})
UNWIND $tests AS test
MERGE (scan)-[:HAS_TEST]->(result:TestResult {scanId: $scanId, name: test.name})
  ON CREATE SET result.id = randomUUID()
SET result.expectation = test.expectation,
    result.result = test.result,
    result.pass = test.pass,
    result.scoreModifier = test.scoreModifier,
    result.output = test.output
RETURN count(result) AS written
"""

FINISH_SCAN = """
MATCH (scan:Scan {id: $scanId})
WHERE scan.state = $running
SET scan += $props
RETURN scan
"""

SELECT_SCAN = """
MATCH (scan:Scan {id: $scanId})
RETURN scan
"""

SELECT_SCAN_IN_STATE = """
MATCH (scan:Scan {id: $scanId})
WHERE scan.state = $state
RETURN scan
LIMIT 1
"""

RECENT_SCAN_BY_SITE = """
MATCH (s:Site {id: $siteId})-[:HAS_SCAN]->(scan:Scan)
WHERE scan.state = $state AND scan.startTime >= $cutoffTime
RETURN scan
ORDER BY scan.startTime DESC
LIMIT 1
"""

RECENT_SCAN_BY_HOST = """
MATCH (s:Site {domain: $host})-[:HAS_SCAN]->(scan:Scan)
WHERE scan.state = $state AND scan.startTime >= $cutoffTime
RETURN scan
ORDER BY scan.startTime DESC
LIMIT 1
"""

SCAN_HISTORY = """
MATCH (s:Site {id: $siteId})-[:HAS_SCAN]->(scan:Scan)
WHERE scan.state = $state AND scan.score IS NOT NULL
RETURN scan.id AS id, scan.grade AS grade, scan.score AS score,
       scan.startTime AS startTime
ORDER BY scan.startTime, scan.id
"""

SELECT_TEST_RESULTS = """
MATCH (scan:Scan {id: $scanId})-[:HAS_TEST]->(test:TestResult)
RETURN test
ORDER BY test.name
"""

GRADE_DISTRIBUTION = """
MATCH (scan:Scan)
WHERE scan.state = $state AND scan.grade IS NOT NULL
RETURN scan.grade AS grade, count(*) AS count
"""


def _fetch_all(tx, query: str, params: Mapping[str, Any]) -> list:
    return list(tx.run(query, params))


def _fetch_one(tx, query: str, params: Mapping[str, Any]):
    return tx.run(query, params).single()


class GraphScanStore(ScanStore):
    """Scan store over a Neo4j database."""

    backend = "graph"

    def __init__(self, settings, **kwargs):
        super().__init__(settings, **kwargs)
        self.driver: Optional[Driver] = None

    # ── Connection ────────────────────────────────────────────

    def create_pool(self) -> Driver:
        graph = self.settings.graph
        pool = self.settings.pool
        self.driver = GraphDatabase.driver(
            graph.uri,
            auth=(graph.username, graph.password),
            max_connection_pool_size=pool.max_connections,
            connection_acquisition_timeout=pool.connection_timeout,
            connection_timeout=pool.connection_timeout,
            liveness_check_timeout=pool.idle_timeout,
        )
        logger.info(f"Graph driver created for {graph.uri} ({graph.database})")
        return self.driver

    def migrate(self) -> None:
        try:
            init_graph_schema(self._require_driver(), self.settings.graph.database)
        except ServiceUnavailable as e:
            raise ConnectionError(f"Cannot reach graph backend: {e}") from e

    def close(self) -> None:
        if self.driver is not None:
            self.driver.close()
            logger.info("Graph driver closed")
        self.driver = None

    def _require_driver(self) -> Driver:
        if self.driver is None:
            raise RuntimeError("Graph driver not created. Call create_pool() first")
        return self.driver

    def _execute(self, write: bool, work: Callable, query: str, params: Mapping[str, Any]):
        """Run one managed transaction in a session of its own."""
        driver = self._require_driver()
        try:
            with driver.session(database=self.settings.graph.database) as session:
                if write:
                    return session.execute_write(work, query, params)
                return session.execute_read(work, query, params)
        except ServiceUnavailable as e:
            raise ConnectionError(f"Cannot reach graph backend: {e}") from e
        except ConstraintError as e:
            raise ConstraintViolation(str(e)) from e

    def _read_one(self, query: str, **params):
        return self._execute(False, _fetch_one, query, params)

    def _read_all(self, query: str, **params) -> list:
        return self._execute(False, _fetch_all, query, params)

    def _write_one(self, query: str, **params):
        return self._execute(True, _fetch_one, query, params)

    # ── Writes ────────────────────────────────────────────────

    def ensure_site(self, key: str) -> str:
        key = self._require_key(key)
        existing = self._read_one(SITE_BY_DOMAIN, domain=key)
        if existing is not None:
            return existing["id"]

        # A concurrent create trips the unique domain constraint
        created = self._write_one(
            CREATE_SITE,
            siteId=str(uuid.uuid4()),
            domain=key,
            creationTime=to_epoch_millis(self._now()),
        )
        logger.info(f"Created site {key} with id {created['id']}")
        return created["id"]

    def insert_scan(self, site_id: RecordId) -> ScanRecord:
        record = self._write_one(
            CREATE_SCAN,
            siteId=site_id,
            scanId=str(uuid.uuid4()),
            state=INITIAL_STATE.value,
            startTime=to_epoch_millis(self._now()),
            algorithmVersion=ALGORITHM_VERSION,
        )
        if record is None:
            raise NotFound(f"Site not found: {site_id}")
        scan = scan_from_node(record["scan"])
        logger.debug(f"Started scan {scan.id} for site {site_id}")
        return scan

    def insert_test_results(
        self,
        site_id: RecordId,
        scan_id: RecordId,
        result: ScanResult | Mapping[str, Any],
    ) -> ScanRecord:
        scan_result = parse_scan_result(result)
        target = scan_result.terminal_state
        summary = scan_result.scan

        current = self._scan_state(scan_id)
        if current["siteId"] != site_id:
            raise NotFound(f"Scan {scan_id} does not belong to site {site_id}")
        check_transition(scan_id, current["state"], target)

        tests = [
            {
                "name": row["name"],
                "expectation": row["expectation"],
                "result": row["result"],
                "pass": row["pass"],
                "scoreModifier": row["score_modifier"],
                "output": encode_blob(row["output"]),
            }
            for row in scan_result.outcome_rows()
        ]
        if tests:
            self._write_one(MERGE_TEST_RESULTS, scanId=scan_id, tests=tests)

        scan = self._finish_scan(
            scan_id,
            target,
            {
                "endTime": to_epoch_millis(self._now()),
                "testsFailed": summary.tests_failed,
                "testsPassed": summary.tests_passed,
                "testsQuantity": summary.tests_quantity,
                "grade": summary.grade,
                "score": summary.score,
                "algorithmVersion": summary.algorithm_version,
                "statusCode": summary.status_code,
                "responseHeaders": encode_blob(summary.response_headers),
                "error": scan_result.error_message,
            },
        )
        logger.info(f"Scan {scan_id} {target.value} with {len(tests)} test results")
        return scan

    def update_scan_state(
        self, scan_id: RecordId, state, error: Optional[str] = None
    ) -> ScanRecord:
        target = validate_forced_state(state, error)
        current = self._scan_state(scan_id)
        check_transition(scan_id, current["state"], target)

        props: dict[str, Any] = {"endTime": to_epoch_millis(self._now())}
        if error:
            props["error"] = error
        scan = self._finish_scan(scan_id, target, props)
        logger.info(f"Scan {scan_id} forced to {target.value}")
        return scan

    def _scan_state(self, scan_id: RecordId):
        record = self._read_one(SCAN_STATE, scanId=scan_id)
        if record is None:
            raise NotFound(f"Scan not found: {scan_id}")
        return record

    def _finish_scan(
        self, scan_id: RecordId, target: ScanState, props: dict[str, Any]
    ) -> ScanRecord:
        """Apply the terminal update, guarded so only a RUNNING scan moves."""
        record = self._write_one(
            FINISH_SCAN,
            scanId=scan_id,
            running=ScanState.RUNNING.value,
            props={**props, "state": target.value},
        )
        if record is None:
            # Another writer moved the scan first
            current = self._scan_state(scan_id)
            raise InvalidStateTransition(scan_id, current["state"], target)
        return scan_from_node(record["scan"])

    # ── Reads ─────────────────────────────────────────────────

    def select_scan(self, scan_id: RecordId) -> Optional[ScanRecord]:
        record = self._read_one(SELECT_SCAN, scanId=scan_id)
        return scan_from_node(record["scan"]) if record is not None else None

    def select_scan_by_id(self, scan_id: RecordId) -> Optional[ScanRecord]:
        record = self._read_one(SELECT_SCAN_IN_STATE, scanId=scan_id, state=FINISHED)
        return scan_from_node(record["scan"]) if record is not None else None

    def select_scan_recent_scan(
        self, site_id: RecordId, window_seconds: Optional[int] = None
    ) -> Optional[ScanRecord]:
        cutoff = self._cutoff(window_seconds, self.settings.cooldown)
        record = self._read_one(
            RECENT_SCAN_BY_SITE,
            siteId=site_id,
            state=FINISHED,
            cutoffTime=to_epoch_millis(cutoff),
        )
        return scan_from_node(record["scan"]) if record is not None else None

    def select_scan_latest_scan_by_host(
        self, host: str, max_age_seconds: Optional[int] = None
    ) -> Optional[ScanRecord]:
        cutoff = self._cutoff(max_age_seconds, self.settings.cache_time_for_get)
        record = self._read_one(
            RECENT_SCAN_BY_HOST,
            host=host,
            state=FINISHED,
            cutoffTime=to_epoch_millis(cutoff),
        )
        return scan_from_node(record["scan"]) if record is not None else None

    def select_scan_host_history(self, site_id: RecordId) -> list[HistoryEntry]:
        records = self._read_all(SCAN_HISTORY, siteId=site_id, state=FINISHED)
        return compress_history(
            history_entry(r["id"], r["grade"], r["score"], r["startTime"])
            for r in records
        )

    def select_test_results(self, scan_id: RecordId) -> list[TestResultRecord]:
        records = self._read_all(SELECT_TEST_RESULTS, scanId=scan_id)
        return [result_from_node(record["test"]) for record in records]

    def select_grade_distribution(self) -> list[GradeCount]:
        records = self._read_all(GRADE_DISTRIBUTION, state=FINISHED)
        return sort_grade_distribution((r["grade"], r["count"]) for r in records)

    def refresh_materialized_views(self) -> None:
        # Neo4j has no materialized views; the distribution is computed on read
        logger.debug("No materialized views on the graph backend; nothing to refresh")

"""One-time schema setup for both backends.

Both initializers are idempotent: they succeed on an empty store and on one
that is already initialized, so ``migrate()`` can run on every deploy.
"""

import logging

from neo4j.exceptions import ClientError
from sqlalchemy import text
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker

from scanstore.storage.lifecycle import ScanState
from scanstore.storage.models import SCAN_SCHEMA_VERSION, Meta, ScanBase

logger = logging.getLogger(__name__)

GRADE_DISTRIBUTION_VIEW = "grade_distribution"

# PostgreSQL only; other engines aggregate on demand
POSTGRES_VIEW_STATEMENTS = (
    f"""
    CREATE MATERIALIZED VIEW IF NOT EXISTS {GRADE_DISTRIBUTION_VIEW} AS
        SELECT grade, count(*) AS count
        FROM scans
        WHERE state = '{ScanState.FINISHED.value}' AND grade IS NOT NULL
        GROUP BY grade
    """,
    # REFRESH ... CONCURRENTLY needs a unique index on the view
    f"""
    CREATE UNIQUE INDEX IF NOT EXISTS idx_{GRADE_DISTRIBUTION_VIEW}_grade
        ON {GRADE_DISTRIBUTION_VIEW} (grade)
    """,
)

GRAPH_SCHEMA_STATEMENTS = (
    # Constraints
    "CREATE CONSTRAINT site_domain IF NOT EXISTS FOR (s:Site) REQUIRE s.domain IS UNIQUE",
    "CREATE CONSTRAINT site_id IF NOT EXISTS FOR (s:Site) REQUIRE s.id IS UNIQUE",
    "CREATE CONSTRAINT scan_id IF NOT EXISTS FOR (scan:Scan) REQUIRE scan.id IS UNIQUE",
    "CREATE CONSTRAINT test_id IF NOT EXISTS FOR (test:TestResult) REQUIRE test.id IS UNIQUE",
    # Indexes for common queries
    "CREATE INDEX site_creation_time IF NOT EXISTS FOR (s:Site) ON (s.creationTime)",
    "CREATE INDEX scan_site_id IF NOT EXISTS FOR (scan:Scan) ON (scan.siteId)",
    "CREATE INDEX scan_state IF NOT EXISTS FOR (scan:Scan) ON (scan.state)",
    "CREATE INDEX scan_start_time IF NOT EXISTS FOR (scan:Scan) ON (scan.startTime)",
    "CREATE INDEX scan_end_time IF NOT EXISTS FOR (scan:Scan) ON (scan.endTime)",
    "CREATE INDEX scan_algorithm_version IF NOT EXISTS FOR (scan:Scan) ON (scan.algorithmVersion)",
    "CREATE INDEX scan_grade IF NOT EXISTS FOR (scan:Scan) ON (scan.grade)",
    "CREATE INDEX scan_score IF NOT EXISTS FOR (scan:Scan) ON (scan.score)",
    "CREATE INDEX test_name IF NOT EXISTS FOR (test:TestResult) ON (test.name)",
)

# Neo4j error codes meaning the rule is already in place
_ALREADY_EXISTS_CODES = (
    "Neo.ClientError.Schema.EquivalentSchemaRuleAlreadyExists",
    "Neo.ClientError.Schema.ConstraintAlreadyExists",
    "Neo.ClientError.Schema.IndexAlreadyExists",
)


def init_relational_schema(engine: Engine) -> None:
    """Create tables, indexes and (on PostgreSQL) the grade distribution view."""
    ScanBase.metadata.create_all(engine)

    if engine.dialect.name == "postgresql":
        with engine.begin() as connection:
            for statement in POSTGRES_VIEW_STATEMENTS:
                connection.execute(text(statement))
        logger.debug(f"Ensured materialized view {GRADE_DISTRIBUTION_VIEW}")

    _verify_schema_version(engine)
    logger.info(f"Relational schema ready on {engine.dialect.name}")


def _verify_schema_version(engine: Engine) -> None:
    """Verify the stored schema version matches code version.

    Raises:
        RuntimeError: If schema version mismatch detected
    """
    Session = sessionmaker(bind=engine)
    session = Session()

    try:
        meta = session.query(Meta).filter_by(key="schema_version").first()

        if meta is None:
            # New database, set version
            session.add(Meta(key="schema_version", value=SCAN_SCHEMA_VERSION))
            session.commit()
        elif meta.value != SCAN_SCHEMA_VERSION:
            raise RuntimeError(
                f"Scan schema version mismatch: "
                f"database is v{meta.value}, code expects v{SCAN_SCHEMA_VERSION}."
            )
    finally:
        session.close()


def is_already_exists(error: ClientError) -> bool:
    code = getattr(error, "code", None) or ""
    return code in _ALREADY_EXISTS_CODES or "AlreadyExists" in code


def init_graph_schema(driver, database: str) -> None:
    """Apply graph constraints and indexes.

    Rules that already exist are logged and skipped; any other error is
    raised.
    """
    with driver.session(database=database) as session:
        for statement in GRAPH_SCHEMA_STATEMENTS:
            try:
                session.run(statement).consume()
                logger.debug(f"Applied schema statement: {statement}")
            except ClientError as e:
                if not is_already_exists(e):
                    raise
                logger.warning(
                    f"Schema initialization warning: {getattr(e, 'message', None) or e}"
                )

    logger.info(f"Graph schema ready on database {database}")

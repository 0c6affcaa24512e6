"""Tests for schema statements and the already-exists check."""

from neo4j.exceptions import ClientError
from sqlalchemy import inspect

from scanstore.storage.schema import (
    GRAPH_SCHEMA_STATEMENTS,
    POSTGRES_VIEW_STATEMENTS,
    is_already_exists,
)


class _SchemaError(ClientError):
    code = None


def _client_error(code):
    return type("CodedClientError", (_SchemaError,), {"code": code})("schema error")


def test_already_exists_codes():
    assert is_already_exists(
        _client_error("Neo.ClientError.Schema.EquivalentSchemaRuleAlreadyExists")
    )
    assert is_already_exists(_client_error("Neo.ClientError.Schema.IndexAlreadyExists"))
    assert not is_already_exists(_client_error("Neo.ClientError.Statement.SyntaxError"))
    assert not is_already_exists(_client_error(None))


def test_graph_statements_are_idempotent():
    assert all("IF NOT EXISTS" in statement for statement in GRAPH_SCHEMA_STATEMENTS)


def test_view_statements_are_idempotent():
    assert all("IF NOT EXISTS" in statement for statement in POSTGRES_VIEW_STATEMENTS)


def test_relational_tables_and_indexes(relational_store):
    inspector = inspect(relational_store.engine)

    assert {"sites", "scans", "tests", "meta"} <= set(inspector.get_table_names())
    assert "idx_scans_site_state_start" in {
        index["name"] for index in inspector.get_indexes("scans")
    }
    assert {"scan_id", "name"} in [
        set(constraint["column_names"])
        for constraint in inspector.get_unique_constraints("tests")
    ]

"""Tests for backend selection."""

import pytest

from scanstore.errors import ConfigurationError
from scanstore.settings import StoreSettings
from scanstore.storage.factory import create_adapter, open_store, resolve_backend
from scanstore.storage.graph_adapter import GraphScanStore
from scanstore.storage.sql_adapter import RelationalScanStore


@pytest.mark.parametrize(
    "name, expected",
    [
        ("relational", "relational"),
        ("postgresql", "relational"),
        ("Postgres", "relational"),
        ("sqlite", "relational"),
        ("graph", "graph"),
        (" neo4j ", "graph"),
    ],
)
def test_resolve_aliases(name, expected):
    assert resolve_backend(name) == expected


@pytest.mark.parametrize("name", ["mysql", "", None])
def test_unknown_backend(name):
    with pytest.raises(ConfigurationError, match="Unknown backend"):
        resolve_backend(name)


def test_adapter_from_settings():
    assert isinstance(create_adapter(StoreSettings(backend="postgres")), RelationalScanStore)
    assert isinstance(create_adapter(StoreSettings(backend="neo4j")), GraphScanStore)


def test_explicit_backend_overrides_settings():
    adapter = create_adapter(StoreSettings(backend="relational"), backend="graph")
    assert adapter.backend == "graph"


def test_default_settings_from_environment(monkeypatch):
    monkeypatch.setenv("SCANSTORE_BACKEND", "neo4j")
    assert isinstance(create_adapter(), GraphScanStore)


def test_unknown_backend_in_settings():
    with pytest.raises(ConfigurationError):
        create_adapter(StoreSettings(backend="cassandra"))


def test_adapter_is_not_connected():
    adapter = create_adapter(StoreSettings())
    assert adapter.engine is None


def test_open_store_connects_and_closes(sqlite_settings, clock):
    with open_store(sqlite_settings, migrate=True, now=clock) as store:
        assert isinstance(store, RelationalScanStore)
        site_id = store.ensure_site("example.com")
        assert store.insert_scan(site_id).start_time == clock()

    assert store.engine is None


def test_open_store_closes_on_error(sqlite_settings):
    with pytest.raises(ValueError):
        with open_store(sqlite_settings, migrate=True) as store:
            raise ValueError("boom")

    assert store.engine is None

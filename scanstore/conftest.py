"""Shared test fixtures for the scan store."""

import os
import random
from datetime import datetime, timedelta, timezone

import pytest
from faker import Faker

from scanstore.settings import RelationalSettings, StoreSettings
from scanstore.storage.sql_adapter import RelationalScanStore


class FakeClock:
    """Settable clock handed to adapters in place of utc_now."""

    def __init__(self, start: datetime):
        self.current = start

    def __call__(self) -> datetime:
        return self.current

    def advance(self, seconds: float) -> datetime:
        self.current += timedelta(seconds=seconds)
        return self.current


@pytest.fixture(scope="session", autouse=True)
def setup_factory_seed():
    """Configure factory_boy/Faker to use a deterministic seed for reproducibility.

    The seed can be set via FACTORY_SEED environment variable, or will be
    randomly generated. The seed is printed to stdout for reproducibility.
    """
    seed = os.environ.get("FACTORY_SEED")
    if seed:
        seed = int(seed)
    else:
        seed = random.randint(0, 2**32 - 1)

    print(f"\n{'=' * 70}")
    print(f"Factory seed: {seed}")
    print(f"To reproduce this test run, set: FACTORY_SEED={seed}")
    print(f"{'=' * 70}\n")

    Faker.seed(seed)
    random.seed(seed)

    return seed


@pytest.fixture(autouse=True)
def clean_environment(monkeypatch):
    """Keep SCANSTORE_* variables from the developer's shell out of tests."""
    for name in list(os.environ):
        if name.startswith("SCANSTORE_"):
            monkeypatch.delenv(name)


@pytest.fixture
def clock():
    return FakeClock(datetime(2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc))


@pytest.fixture
def sqlite_settings(tmp_path) -> StoreSettings:
    """Settings pointing the relational backend at a SQLite file."""
    return StoreSettings(
        backend="sqlite",
        relational=RelationalSettings(url=f"sqlite:///{tmp_path / 'scans.db'}"),
    )


@pytest.fixture
def relational_store(sqlite_settings, clock):
    """A migrated relational store on a temporary SQLite database."""
    store = RelationalScanStore(sqlite_settings, now=clock)
    store.create_pool()
    store.migrate()
    yield store
    store.close()

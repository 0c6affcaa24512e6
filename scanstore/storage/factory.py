"""Backend selection.

The configured backend name is resolved through a small alias table and the
matching adapter class is instantiated with the settings.
"""

import logging
from contextlib import contextmanager
from typing import Iterator, Optional

from scanstore.errors import ConfigurationError
from scanstore.settings import StoreSettings
from scanstore.storage.base import ScanStore
from scanstore.storage.graph_adapter import GraphScanStore
from scanstore.storage.sql_adapter import RelationalScanStore

logger = logging.getLogger(__name__)

_BACKENDS = {
    "relational": "relational",
    "postgresql": "relational",
    "postgres": "relational",
    "sqlite": "relational",
    "graph": "graph",
    "neo4j": "graph",
}

_ADAPTERS: dict[str, type[ScanStore]] = {
    "relational": RelationalScanStore,
    "graph": GraphScanStore,
}


def resolve_backend(name: str) -> str:
    """Map a backend name or alias to ``relational`` or ``graph``."""
    backend = _BACKENDS.get((name or "").strip().lower())
    if backend is None:
        raise ConfigurationError(
            f"Unknown backend '{name}'. Choose one of: {', '.join(sorted(_BACKENDS))}"
        )
    return backend


def create_adapter(
    settings: Optional[StoreSettings] = None, backend: Optional[str] = None, **kwargs
) -> ScanStore:
    """Build an adapter for the configured backend without connecting it."""
    settings = settings or StoreSettings()
    name = resolve_backend(backend or settings.backend)
    adapter = _ADAPTERS[name](settings, **kwargs)
    logger.debug(f"Created {adapter!r}")
    return adapter


@contextmanager
def open_store(
    settings: Optional[StoreSettings] = None,
    backend: Optional[str] = None,
    migrate: bool = False,
    **kwargs,
) -> Iterator[ScanStore]:
    """Context manager yielding a connected store, closed on exit."""
    store = create_adapter(settings, backend=backend, **kwargs)
    store.create_pool()
    try:
        if migrate:
            store.migrate()
        yield store
    finally:
        store.close()

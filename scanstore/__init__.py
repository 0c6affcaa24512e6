"""Scan persistence over a relational or a graph backend."""

from scanstore.settings import StoreSettings
from scanstore.storage import ScanStore, create_adapter, open_store

__all__ = ["ScanStore", "StoreSettings", "create_adapter", "open_store"]

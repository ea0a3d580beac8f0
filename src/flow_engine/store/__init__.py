"""Storage backends for workflows, executions, jobs and record collections."""

from flow_engine.store.base import (
    ConflictError,
    Hooks,
    IntegrityError,
    NotFoundError,
    Store,
    StoreError,
    Transaction,
    match_filter,
)
from flow_engine.store.json_store import JsonStore

__all__ = [
    "ConflictError",
    "Hooks",
    "IntegrityError",
    "JsonStore",
    "NotFoundError",
    "Store",
    "StoreError",
    "Transaction",
    "match_filter",
]

"""Shared services for the sync engine."""

from typing import Any

__all__ = [
    "run_alembic_upgrade",
    "session_scope",
    "SqlKeyValueStore",
    "MemoryKeyValueStore",
]


def __getattr__(name: str) -> Any:
    if name == "run_alembic_upgrade":
        from .db import run_alembic_upgrade as _run_alembic_upgrade

        return _run_alembic_upgrade
    if name == "session_scope":
        from .db import session_scope as _session_scope

        return _session_scope
    if name == "SqlKeyValueStore":
        from .kv_store import SqlKeyValueStore as _SqlKeyValueStore

        return _SqlKeyValueStore
    if name == "MemoryKeyValueStore":
        from .kv_store import MemoryKeyValueStore as _MemoryKeyValueStore

        return _MemoryKeyValueStore
    raise AttributeError(name)

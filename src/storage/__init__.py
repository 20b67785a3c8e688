"""
Record store abstraction for the integrity engine.

Backends:
- Memory (default, tests and development)
- PostgreSQL (production; atomic conditional writes via row locks)

Usage:
    from storage import get_record_store

    store = get_record_store()
    store.create("recognitions", rec.id, rec.to_dict())
    store.update_if("recognitions", rec.id, {"status": "PENDING"}, {"status": "VERIFIED"})

The store is built once by the process entry point and passed to each
component; there is no module-level default instance.
"""

import os
from typing import TYPE_CHECKING

from storage.base import (
    CounterResult,
    DuplicateRecordError,
    PreconditionFailedError,
    RecordNotFoundError,
    RecordStore,
    StorageConnectionError,
    StorageError,
    StorageReadError,
    StorageWriteError,
)
from storage.memory import MemoryRecordStore

# Lazy import for PostgreSQL to avoid connecting unless asked to
if TYPE_CHECKING:
    from storage.postgresql import PostgreSQLRecordStore

__all__ = [
    "CounterResult",
    "DuplicateRecordError",
    "MemoryRecordStore",
    "PreconditionFailedError",
    "RecordNotFoundError",
    "RecordStore",
    "StorageConnectionError",
    "StorageError",
    "StorageReadError",
    "StorageWriteError",
    "get_record_store",
]


def get_record_store() -> RecordStore:
    """
    Build the configured record store from environment variables.

    Environment variables:
        STORAGE_BACKEND: Backend type ("memory", "postgresql")
        DATABASE_URL: PostgreSQL connection URL
        DATABASE_POOL_SIZE: Connection pool size (default: 5)
        DATABASE_CONNECT_TIMEOUT: Seconds to wait for a connection (default: 5)
        DATABASE_STATEMENT_TIMEOUT_MS: Per-statement timeout (default: 5000)

    Returns:
        Configured RecordStore instance
    """
    backend_type = os.getenv("STORAGE_BACKEND", "memory").lower()

    if backend_type in ("postgresql", "postgres"):
        database_url = os.getenv("DATABASE_URL")
        if not database_url:
            raise StorageError("DATABASE_URL environment variable required for PostgreSQL backend")
        from storage.postgresql import PostgreSQLRecordStore

        return PostgreSQLRecordStore(
            database_url,
            pool_size=int(os.getenv("DATABASE_POOL_SIZE", "5")),
            connect_timeout=int(os.getenv("DATABASE_CONNECT_TIMEOUT", "5")),
            statement_timeout_ms=int(os.getenv("DATABASE_STATEMENT_TIMEOUT_MS", "5000")),
        )

    elif backend_type == "memory":
        return MemoryRecordStore()

    else:
        raise StorageError(f"Unknown storage backend: {backend_type}")

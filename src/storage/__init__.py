"""
Storage abstraction layer for InfraShare.

This package provides a pluggable storage backend system for profit
distributions, claims and the audit trail:

- JSON file (default, single process)
- PostgreSQL (for production scalability)
- Memory (for testing)

Usage:
    from storage import get_storage_backend, ProfitStore

    # Get configured backend (based on environment)
    store = get_storage_backend()

    existing = store.insert_distribution_if_absent(distribution)
"""

import os
from typing import TYPE_CHECKING

from encryption import FieldCipher
from storage.base import (
    ProfitStore,
    StorageConnectionError,
    StorageError,
    StorageReadError,
    StorageWriteError,
    decode_cursor,
    encode_cursor,
)
from storage.json_file import JSONFileStorage
from storage.memory import MemoryStorage

# Lazy import for PostgreSQL to avoid requiring psycopg2
if TYPE_CHECKING:
    from storage.postgresql import PostgreSQLStorage

__all__ = [
    "JSONFileStorage",
    "MemoryStorage",
    "ProfitStore",
    "StorageConnectionError",
    "StorageError",
    "StorageReadError",
    "StorageWriteError",
    "decode_cursor",
    "encode_cursor",
    "get_storage_backend",
]


def get_storage_backend() -> ProfitStore:
    """
    Get the configured storage backend based on environment variables.

    Environment variables:
        STORAGE_BACKEND: Backend type ("json", "postgresql", "memory")
        PROFIT_DATA_FILE: Path for JSON file storage (default: profit_data.json)
        DATABASE_URL: PostgreSQL connection URL
        INFRASHARE_ENCRYPTION_KEY: Enables bank account encryption at rest

    Returns:
        Configured ProfitStore instance
    """
    backend_type = os.getenv("STORAGE_BACKEND", "json").lower()

    if backend_type == "json":
        data_file = os.getenv("PROFIT_DATA_FILE", "profit_data.json")
        return JSONFileStorage(data_file, cipher=FieldCipher.from_env())

    elif backend_type == "postgresql" or backend_type == "postgres":
        database_url = os.getenv("DATABASE_URL")
        if not database_url:
            raise StorageError("DATABASE_URL environment variable required for PostgreSQL backend")
        from storage.postgresql import PostgreSQLStorage

        return PostgreSQLStorage(database_url, cipher=FieldCipher.from_env())

    elif backend_type == "memory":
        return MemoryStorage()

    else:
        raise StorageError(f"Unknown storage backend: {backend_type}")

"""Stable constants shared across the helper layers."""

from __future__ import annotations

from pathlib import PurePosixPath
from typing import Final

# Default on-disk layout below the application data directory.
DATABASES_DIR: Final[PurePosixPath] = PurePosixPath("databases")
DEFAULT_APP_NAME: Final[str] = "sqlite_open_helper"

# ``PRAGMA user_version`` of a freshly created file.
UNSET_SCHEMA_VERSION: Final[int] = 0
MIN_SCHEMA_VERSION: Final[int] = 1

DEFAULT_BUSY_TIMEOUT_MS: Final[int] = 5_000

ASYNC_BLOCKING_POLICIES: Final[tuple[str, ...]] = ("allow", "strict")
DEFAULT_ASYNC_BLOCKING_POLICY: Final[str] = "allow"

# Suffixes of files SQLite keeps next to the main database file.
SIDECAR_SUFFIXES: Final[tuple[str, ...]] = ("-journal", "-wal", "-shm")

__all__ = [
    "ASYNC_BLOCKING_POLICIES",
    "DATABASES_DIR",
    "DEFAULT_APP_NAME",
    "DEFAULT_ASYNC_BLOCKING_POLICY",
    "DEFAULT_BUSY_TIMEOUT_MS",
    "MIN_SCHEMA_VERSION",
    "SIDECAR_SUFFIXES",
    "UNSET_SCHEMA_VERSION",
]

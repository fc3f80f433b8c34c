"""Shared builders, recording hooks and fault injection for persistence tests."""

from __future__ import annotations

import sqlite3
from collections.abc import Callable
from pathlib import Path
from typing import Any

import pytest

from sqlite_open_helper.config.schema import ManagerConfig
from sqlite_open_helper.persistence.handle import DatabaseHandle
from sqlite_open_helper.persistence.hooks import MigrationHooks

DB_NAME = "notes.db"

ITEMS_TABLE_SQL = "CREATE TABLE IF NOT EXISTS items (id INTEGER PRIMARY KEY, label TEXT NOT NULL)"


def make_config(tmp_path: Path, *, version: int = 1, **overrides: Any) -> ManagerConfig:
    params: dict[str, Any] = {
        "name": DB_NAME,
        "version": version,
        "storage_directory": tmp_path,
    }
    params.update(overrides)
    return ManagerConfig(**params)


def seed_database(path: Path, *, version: int, statements: tuple[str, ...] = ()) -> None:
    """Create ``path`` outside the helper with a given persisted version."""

    path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(path)
    try:
        for statement in statements:
            conn.execute(statement)
        conn.execute(f"PRAGMA user_version = {version}")
        conn.commit()
    finally:
        conn.close()


def persisted_version(path: Path) -> int:
    conn = sqlite3.connect(path)
    try:
        return int(conn.execute("PRAGMA user_version").fetchone()[0])
    finally:
        conn.close()


def table_names(path: Path) -> set[str]:
    conn = sqlite3.connect(path)
    try:
        rows = conn.execute("SELECT name FROM sqlite_master WHERE type = 'table'").fetchall()
    finally:
        conn.close()
    return {str(row[0]) for row in rows}


class RecordingHooks(MigrationHooks):
    """Hooks that record each call; ``create`` builds the ``items`` table."""

    def __init__(
        self,
        *,
        on_configure: Callable[[DatabaseHandle], None] | None = None,
        on_create: Callable[[DatabaseHandle], None] | None = None,
        on_upgrade: Callable[[DatabaseHandle, int, int], None] | None = None,
        on_opened: Callable[[DatabaseHandle], None] | None = None,
    ) -> None:
        self.calls: list[tuple[object, ...]] = []
        self._on_configure = on_configure
        self._on_create = on_create
        self._on_upgrade = on_upgrade
        self._on_opened = on_opened

    def configure(self, db: DatabaseHandle) -> None:
        self.calls.append(("configure",))
        if self._on_configure is not None:
            self._on_configure(db)

    def create(self, db: DatabaseHandle) -> None:
        self.calls.append(("create",))
        db.execute(ITEMS_TABLE_SQL)
        if self._on_create is not None:
            self._on_create(db)

    def upgrade(self, db: DatabaseHandle, old_version: int, new_version: int) -> None:
        self.calls.append(("upgrade", old_version, new_version))
        if self._on_upgrade is not None:
            self._on_upgrade(db, old_version, new_version)

    def opened(self, db: DatabaseHandle) -> None:
        self.calls.append(("opened",))
        if self._on_opened is not None:
            self._on_opened(db)

    def names(self) -> list[object]:
        return [call[0] for call in self.calls]


class RecordingLogger:
    """Stand-in for a structlog bound logger."""

    def __init__(self) -> None:
        self.events: list[tuple[str, str, dict[str, object]]] = []

    def info(self, event: str, **fields: object) -> None:
        self.events.append(("info", event, fields))

    def warning(self, event: str, **fields: object) -> None:
        self.events.append(("warning", event, fields))

    def error(self, event: str, **fields: object) -> None:
        self.events.append(("error", event, fields))

    def names(self) -> list[str]:
        return [event for _, event, _ in self.events]


class OpenCounter:
    """Wraps ``DatabaseHandle.open`` to count calls and optionally fail per mode."""

    def __init__(self, monkeypatch: pytest.MonkeyPatch) -> None:
        self.calls: list[bool] = []
        self.fail_read_write = False
        self.fail_read_only = False
        real_open = DatabaseHandle.open

        def _open(path: str | Path, *, read_only: bool = False, **kwargs: Any) -> DatabaseHandle:
            self.calls.append(read_only)
            if read_only and self.fail_read_only:
                raise sqlite3.OperationalError("unable to open database file")
            if not read_only and self.fail_read_write:
                raise sqlite3.OperationalError("attempt to write a readonly database")
            return real_open(path, read_only=read_only, **kwargs)

        monkeypatch.setattr(DatabaseHandle, "open", staticmethod(_open))

    @property
    def count(self) -> int:
        return len(self.calls)


__all__ = [
    "DB_NAME",
    "ITEMS_TABLE_SQL",
    "OpenCounter",
    "RecordingHooks",
    "RecordingLogger",
    "make_config",
    "persisted_version",
    "seed_database",
    "table_names",
]

"""
sqlite-open-helper — connection lifecycle manager.

File: src/sqlite_open_helper/persistence/open_helper.py

Purpose
- Own at most one cached ``DatabaseHandle`` for one database file, open it
  lazily, and reconcile its persisted schema version with the configured target
  through the migration hooks.

Functional requirements
- Read-write open first; on failure fall back once to read-only.
- Version reconciliation (create/upgrade/downgrade plus the version bump) runs
  in one transaction; on failure the on-disk version is unchanged.
- A hook calling back into the same helper raises ``ReentrancyError``.
- Every failed acquire leaves the helper ``Idle`` and reusable, with no leaked
  connection.

Non-functional requirements
- Acquire/close transitions are serialized by a per-instance re-entrant lock.
- Optional "strict" async policy rejects sync calls from event loop threads.
"""

from __future__ import annotations

import asyncio
import sqlite3
import threading
from dataclasses import dataclass
from pathlib import Path
from types import TracebackType
from typing import TYPE_CHECKING, Any, Final

import structlog

from sqlite_open_helper.config.schema import ManagerConfig
from sqlite_open_helper.constants import UNSET_SCHEMA_VERSION
from sqlite_open_helper.errors import (
    AsyncPolicyError,
    DatabaseCorruptionError,
    MigrationHookError,
    OpenFailure,
    OpenHelperError,
    ReentrancyError,
    UpgradeOnReadOnlyError,
)
from sqlite_open_helper.persistence.handle import DatabaseHandle, close_quietly
from sqlite_open_helper.persistence.hooks import MigrationHooks

if TYPE_CHECKING:
    from sqlite_open_helper.config.loader import HelperSettings


@dataclass(frozen=True, slots=True)
class Idle:
    """No cached handle and no acquire in progress."""


@dataclass(frozen=True, slots=True)
class Initializing:
    """An acquire is running; re-entry from a hook is rejected."""

    writable: bool


@dataclass(frozen=True, slots=True)
class Ready:
    """A handle is cached and owned by the helper until ``close()``."""

    handle: DatabaseHandle


LifecycleState = Idle | Initializing | Ready

IDLE: Final[Idle] = Idle()


class _NoOpHooks(MigrationHooks):
    def create(self, db: DatabaseHandle) -> None:
        return None

    def upgrade(self, db: DatabaseHandle, old_version: int, new_version: int) -> None:
        return None


class SQLiteOpenHelper:
    """Lazily opens, migrates and caches one SQLite database."""

    def __init__(
        self,
        config: ManagerConfig,
        hooks: MigrationHooks | None = None,
        *,
        logger: Any | None = None,
    ) -> None:
        if not isinstance(config, ManagerConfig):
            raise TypeError(f"config must be a ManagerConfig, got {type(config).__name__}")
        self._config = config
        self._hooks = hooks if hooks is not None else _NoOpHooks()
        self._path = config.database_path
        self._logger = logger if logger is not None else structlog.get_logger(__name__)
        self._lock = threading.RLock()
        self._state: LifecycleState = IDLE

    @classmethod
    def from_settings(
        cls,
        settings: HelperSettings,
        hooks: MigrationHooks | None = None,
        *,
        logger: Any | None = None,
    ) -> SQLiteOpenHelper:
        return cls(settings.database, hooks, logger=logger)

    @property
    def database_name(self) -> str:
        return self._config.name

    @property
    def database_path(self) -> Path:
        """Absolute path of the database file; computed once at construction."""

        return self._path

    @property
    def version(self) -> int:
        """Target schema version."""

        return self._config.version

    @property
    def config(self) -> ManagerConfig:
        return self._config

    @property
    def state(self) -> LifecycleState:
        with self._lock:
            return self._state

    def get_writable_database(self) -> DatabaseHandle:
        """
        Return a read-write handle, opening and migrating the database if needed.

        A cached read-only handle is closed and replaced. If the database can
        only be opened read-only, the read-only handle is returned.
        """

        self._assert_sync_io_allowed(operation="get_writable_database")
        return self._acquire(writable=True)

    def get_readable_database(self) -> DatabaseHandle:
        """Return the cached handle, or open one (read-write preferred)."""

        self._assert_sync_io_allowed(operation="get_readable_database")
        return self._acquire(writable=False)

    def close(self) -> None:
        """Close the cached handle; a no-op when nothing is cached."""

        self._assert_sync_io_allowed(operation="close")
        with self._lock:
            state = self._state
            if isinstance(state, Initializing):
                raise ReentrancyError(f"close() called while opening {self._config.name}")
            if isinstance(state, Ready):
                self._state = IDLE
                if state.handle.is_open:
                    state.handle.close()
                    self._logger.info(
                        "database_closed", database=self._config.name, path=str(self._path)
                    )

    async def get_writable_database_async(self) -> DatabaseHandle:
        return await asyncio.to_thread(self.get_writable_database)

    async def get_readable_database_async(self) -> DatabaseHandle:
        return await asyncio.to_thread(self.get_readable_database)

    async def close_async(self) -> None:
        await asyncio.to_thread(self.close)

    def __enter__(self) -> SQLiteOpenHelper:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.close()

    def __repr__(self) -> str:
        return (
            f"SQLiteOpenHelper(name={self._config.name!r}, version={self._config.version}, "
            f"state={type(self.state).__name__})"
        )

    def _acquire(self, *, writable: bool) -> DatabaseHandle:
        with self._lock:
            state = self._state
            if isinstance(state, Initializing):
                raise ReentrancyError(
                    f"database {self._config.name} requested while it is being opened"
                )

            stale: DatabaseHandle | None = None
            if isinstance(state, Ready):
                cached = state.handle
                if not cached.is_open:
                    self._logger.info(
                        "database_handle_discarded",
                        database=self._config.name,
                        path=str(self._path),
                    )
                    self._state = IDLE
                elif not writable or not cached.is_read_only:
                    return cached
                else:
                    stale = cached

            self._state = Initializing(writable=writable)
            handle: DatabaseHandle | None = None
            try:
                if stale is not None:
                    stale.close()
                handle = self._open()
                self._hooks.configure(handle)
                self._reconcile_version(handle)
                self._hooks.opened(handle)
                if handle.is_read_only:
                    self._logger.warning(
                        "database_opened_read_only",
                        database=self._config.name,
                        path=str(self._path),
                    )
                ready = Ready(handle)
                self._state = ready
            finally:
                if not isinstance(self._state, Ready):
                    self._state = IDLE
                    close_quietly(handle)

            self._logger.info(
                "database_opened",
                database=self._config.name,
                path=str(self._path),
                read_only=ready.handle.is_read_only,
                schema_version=self._config.version,
            )
            return ready.handle

    def _open(self) -> DatabaseHandle:
        try:
            return self._open_mode(read_only=False)
        except (sqlite3.Error, OSError, DatabaseCorruptionError) as exc:
            self._logger.warning(
                "database_open_read_write_failed",
                database=self._config.name,
                path=str(self._path),
                error=str(exc),
                error_type=type(exc).__name__,
                exc_info=exc,
            )

        try:
            return self._open_mode(read_only=True)
        except (sqlite3.Error, OSError, DatabaseCorruptionError) as exc:
            raise OpenFailure(
                f"unable to open database {self._config.name} at {self._path}: {exc}",
                path=str(self._path),
            ) from exc

    def _open_mode(self, *, read_only: bool) -> DatabaseHandle:
        return DatabaseHandle.open(
            self._path,
            read_only=read_only,
            busy_timeout_ms=self._config.busy_timeout_ms,
            cursor_factory=self._config.cursor_factory,
            error_handler=self._config.error_handler,
        )

    def _reconcile_version(self, handle: DatabaseHandle) -> None:
        old_version = handle.version
        new_version = self._config.version
        if old_version == new_version:
            return
        if handle.is_read_only:
            raise UpgradeOnReadOnlyError(
                name=self._config.name, old_version=old_version, new_version=new_version
            )

        if old_version == UNSET_SCHEMA_VERSION:
            hook = "create"
        elif old_version > new_version:
            hook = "downgrade"
        else:
            hook = "upgrade"

        try:
            with handle.transaction():
                self._run_hook(hook, handle, old_version, new_version)
                handle.set_version(new_version)
        except Exception as exc:
            self._log_migration_failure(hook, old_version, new_version, exc)
            raise

        self._logger.info(
            "database_migration_applied",
            database=self._config.name,
            hook=hook,
            old_version=old_version,
            new_version=new_version,
        )

    def _run_hook(
        self, hook: str, handle: DatabaseHandle, old_version: int, new_version: int
    ) -> None:
        try:
            if hook == "create":
                self._hooks.create(handle)
            elif hook == "downgrade":
                self._hooks.downgrade(handle, old_version, new_version)
            else:
                self._hooks.upgrade(handle, old_version, new_version)
        except OpenHelperError:
            raise
        except Exception as exc:
            raise MigrationHookError(
                hook=hook, old_version=old_version, new_version=new_version, error=exc
            ) from exc
        if not handle.in_transaction:
            raise MigrationHookError(
                hook=hook,
                old_version=old_version,
                new_version=new_version,
                error=RuntimeError("hook ended the migration transaction"),
            )

    def _log_migration_failure(
        self, hook: str, old_version: int, new_version: int, exc: BaseException
    ) -> None:
        self._logger.error(
            "database_migration_failed",
            database=self._config.name,
            hook=hook,
            old_version=old_version,
            new_version=new_version,
            error=str(exc),
        )

    def _assert_sync_io_allowed(self, *, operation: str) -> None:
        if self._config.async_blocking_policy != "strict":
            return
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            return
        raise AsyncPolicyError(
            f"{operation} is disallowed from an active event loop thread for {self._path}; "
            f"use {operation}_async() or offload via asyncio.to_thread(...)"
        )


__all__ = [
    "IDLE",
    "Idle",
    "Initializing",
    "LifecycleState",
    "Ready",
    "SQLiteOpenHelper",
]

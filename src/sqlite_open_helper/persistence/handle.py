"""
sqlite-open-helper — database handle.

File: src/sqlite_open_helper/persistence/handle.py

Purpose
- Thin wrapper over one ``sqlite3.Connection`` exposing what the open helper
  needs from the storage engine: open read-write / read-only, close, is-open,
  is-read-only, persisted schema version, and transaction boundaries.

Functional requirements
- The persisted schema version lives in ``PRAGMA user_version``; 0 means unset.
- A closed handle refuses further use with ``HandleClosedError`` so a caller
  holding a stale reference fails loudly instead of touching a new connection.
- Corruption reported while opening is routed to the configured error handler
  and the open is attempted once more.

Non-functional requirements
- No retry loops beyond SQLite's own busy timeout.
"""

from __future__ import annotations

import contextlib
import sqlite3
import threading
from collections.abc import Callable, Iterable, Iterator, Sequence
from contextlib import contextmanager
from pathlib import Path
from typing import Final

from sqlite_open_helper.constants import DEFAULT_BUSY_TIMEOUT_MS, SIDECAR_SUFFIXES
from sqlite_open_helper.errors import DatabaseCorruptionError, HandleClosedError

SQLValue = str | int | float | bytes | None
SQLParams = Sequence[SQLValue]
RowValue = str | int | float | bytes | None
CursorFactory = Callable[[sqlite3.Connection], sqlite3.Cursor]
ErrorHandler = Callable[[Path], None]

_SQLITE_CORRUPTION_CODES: Final[frozenset[int]] = frozenset(
    code
    for code in (
        getattr(sqlite3, "SQLITE_CORRUPT", None),
        getattr(sqlite3, "SQLITE_NOTADB", None),
    )
    if isinstance(code, int)
)

_CORRUPTION_SUBSTRINGS: Final[tuple[str, ...]] = (
    "database disk image is malformed",
    "malformed database",
    "file is not a database",
)


def is_corruption_error(exc: sqlite3.Error) -> bool:
    code = getattr(exc, "sqlite_errorcode", None)
    if isinstance(code, int) and code in _SQLITE_CORRUPTION_CODES:
        return True
    message = str(exc).lower()
    return any(fragment in message for fragment in _CORRUPTION_SUBSTRINGS)


def split_sql_script(script: str) -> list[str]:
    """Split ``script`` into complete statements, keeping trigger bodies intact."""

    statements: list[str] = []
    buffer = ""
    pieces = script.split(";")
    for index, piece in enumerate(pieces):
        buffer += piece
        if index < len(pieces) - 1:
            buffer += ";"
        if sqlite3.complete_statement(buffer):
            statement = buffer.strip()
            if statement.rstrip(";").strip():
                statements.append(statement)
            buffer = ""
    if buffer.strip():
        statements.append(buffer.strip())
    return statements


def delete_database_files(path: Path) -> None:
    """Stock corruption handler: remove the database file and its sidecar files."""

    target = Path(path)
    for candidate in (target, *(Path(f"{target}{suffix}") for suffix in SIDECAR_SUFFIXES)):
        candidate.unlink(missing_ok=True)


class DatabaseHandle:
    """One open connection to a single database file."""

    def __init__(
        self,
        conn: sqlite3.Connection,
        *,
        path: Path,
        read_only: bool,
        cursor_factory: CursorFactory | None = None,
    ) -> None:
        self._conn = conn
        self._path = path
        self._read_only = read_only
        self._cursor_factory = cursor_factory
        self._closed = False
        self._close_lock = threading.Lock()
        self._savepoint_counter = 0

    @classmethod
    def open(
        cls,
        path: str | Path,
        *,
        read_only: bool = False,
        busy_timeout_ms: int = DEFAULT_BUSY_TIMEOUT_MS,
        cursor_factory: CursorFactory | None = None,
        error_handler: ErrorHandler | None = None,
    ) -> DatabaseHandle:
        """
        Open ``path`` read-write (creating it) or read-only.

        Corruption detected while opening is handed to ``error_handler`` and the
        open is retried once; without a handler it raises
        ``DatabaseCorruptionError``. Other ``sqlite3.Error``s propagate.
        """

        target = Path(path)
        try:
            return cls._open_once(
                target,
                read_only=read_only,
                busy_timeout_ms=busy_timeout_ms,
                cursor_factory=cursor_factory,
            )
        except sqlite3.DatabaseError as exc:
            if not is_corruption_error(exc):
                raise
            if error_handler is None:
                raise DatabaseCorruptionError(f"database {target} is corrupt: {exc}") from exc
            error_handler(target)

        return cls._open_once(
            target,
            read_only=read_only,
            busy_timeout_ms=busy_timeout_ms,
            cursor_factory=cursor_factory,
        )

    @classmethod
    def _open_once(
        cls,
        path: Path,
        *,
        read_only: bool,
        busy_timeout_ms: int,
        cursor_factory: CursorFactory | None,
    ) -> DatabaseHandle:
        mode = "ro" if read_only else "rwc"
        conn = sqlite3.connect(
            f"{path.absolute().as_uri()}?mode={mode}",
            uri=True,
            timeout=busy_timeout_ms / 1000.0,
            isolation_level=None,
            check_same_thread=False,
        )
        try:
            conn.row_factory = sqlite3.Row
            conn.execute(f"PRAGMA busy_timeout={int(busy_timeout_ms)}")
            # Forces the header to be read so corrupt or foreign files fail here.
            conn.execute("PRAGMA user_version").fetchone()
            if not read_only:
                # SQLite silently downgrades write-protected files to read-only;
                # taking the write lock surfaces that as SQLITE_READONLY.
                conn.execute("BEGIN IMMEDIATE")
                conn.execute("ROLLBACK")
        except Exception:
            conn.close()
            raise
        return cls(conn, path=path, read_only=read_only, cursor_factory=cursor_factory)

    @property
    def path(self) -> Path:
        return self._path

    @property
    def is_open(self) -> bool:
        return not self._closed

    @property
    def is_read_only(self) -> bool:
        return self._read_only

    @property
    def in_transaction(self) -> bool:
        return self._connection().in_transaction

    @property
    def version(self) -> int:
        row = self._connection().execute("PRAGMA user_version").fetchone()
        return 0 if row is None else int(row[0])

    def set_version(self, version: int) -> None:
        if isinstance(version, bool) or not isinstance(version, int) or version < 0:
            raise ValueError(f"schema version must be a non-negative integer, got {version!r}")
        # PRAGMA does not accept bound parameters.
        self._connection().execute(f"PRAGMA user_version = {version}")

    def close(self) -> None:
        """Close the connection; safe to call more than once."""

        with self._close_lock:
            if self._closed:
                return
            self._closed = True
        self._conn.close()

    def cursor(self) -> sqlite3.Cursor:
        conn = self._connection()
        if self._cursor_factory is None:
            return conn.cursor()
        return conn.cursor(factory=self._cursor_factory)  # type: ignore[arg-type]

    def execute(self, sql: str, params: SQLParams = ()) -> sqlite3.Cursor:
        cursor = self.cursor()
        cursor.execute(sql, tuple(params))
        return cursor

    def executemany(self, sql: str, params_iter: Iterable[SQLParams]) -> int:
        cursor = self.cursor()
        cursor.executemany(sql, [tuple(params) for params in params_iter])
        return cursor.rowcount

    def executescript(self, script: str) -> None:
        """
        Run a multi-statement script.

        ``sqlite3`` commits any open transaction before ``executescript``, so
        inside a transaction the statements are executed one at a time instead.
        """

        conn = self._connection()
        if not conn.in_transaction:
            conn.executescript(script)
            return
        for statement in split_sql_script(script):
            self.execute(statement)

    def query_all(self, sql: str, params: SQLParams = ()) -> list[dict[str, RowValue]]:
        """Run a query and return rows as dictionaries."""

        cursor = self.execute(sql, params)
        return [_row_to_dict(cursor, row) for row in cursor.fetchall()]

    def query_one(self, sql: str, params: SQLParams = ()) -> dict[str, RowValue] | None:
        cursor = self.execute(sql, params)
        row = cursor.fetchone()
        return None if row is None else _row_to_dict(cursor, row)

    def begin_transaction(self, *, immediate: bool = True) -> None:
        self._connection().execute("BEGIN IMMEDIATE" if immediate else "BEGIN")

    def commit(self) -> None:
        self._connection().execute("COMMIT")

    def rollback(self) -> None:
        self._connection().execute("ROLLBACK")

    @contextmanager
    def transaction(self, *, immediate: bool = True) -> Iterator[DatabaseHandle]:
        """Run statements inside an atomic transaction with savepoint support."""

        conn = self._connection()
        if conn.in_transaction:
            savepoint = self._next_savepoint_name()
            conn.execute(f"SAVEPOINT {savepoint}")
            try:
                yield self
            except Exception:
                conn.execute(f"ROLLBACK TO SAVEPOINT {savepoint}")
                conn.execute(f"RELEASE SAVEPOINT {savepoint}")
                raise
            else:
                conn.execute(f"RELEASE SAVEPOINT {savepoint}")
            return

        self.begin_transaction(immediate=immediate)
        try:
            yield self
        except Exception:
            if conn.in_transaction:
                conn.execute("ROLLBACK")
            raise
        else:
            self.commit()

    def enable_write_ahead_logging(self) -> bool:
        """Switch the journal to WAL; returns ``False`` when SQLite kept another mode."""

        row = self._connection().execute("PRAGMA journal_mode=WAL").fetchone()
        return row is not None and str(row[0]).lower() == "wal"

    def set_foreign_key_constraints_enabled(self, enabled: bool) -> None:
        self._connection().execute(f"PRAGMA foreign_keys={'ON' if enabled else 'OFF'}")

    def _connection(self) -> sqlite3.Connection:
        if self._closed:
            raise HandleClosedError(f"database handle for {self._path} is closed")
        return self._conn

    def _next_savepoint_name(self) -> str:
        self._savepoint_counter += 1
        return f"sp_{self._savepoint_counter}"

    def __repr__(self) -> str:
        state = "closed" if self._closed else ("read-only" if self._read_only else "read-write")
        return f"DatabaseHandle(path={str(self._path)!r}, {state})"


def _row_to_dict(
    cursor: sqlite3.Cursor, row: Sequence[RowValue] | sqlite3.Row
) -> dict[str, RowValue]:
    if isinstance(row, sqlite3.Row):
        return {str(key): row[key] for key in row.keys()}
    if isinstance(row, dict):
        return {str(key): value for key, value in row.items()}
    names = [str(column[0]) for column in cursor.description or ()]
    return dict(zip(names, row, strict=False))


def close_quietly(handle: DatabaseHandle | None) -> None:
    """Close ``handle`` while an earlier error is already propagating."""

    if handle is None:
        return
    with contextlib.suppress(sqlite3.Error):
        handle.close()


__all__ = [
    "CursorFactory",
    "DatabaseHandle",
    "ErrorHandler",
    "RowValue",
    "SQLParams",
    "SQLValue",
    "close_quietly",
    "delete_database_files",
    "is_corruption_error",
    "split_sql_script",
]

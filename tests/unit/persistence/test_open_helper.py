"""
sqlite-open-helper — unit tests for the connection lifecycle manager

File: tests/unit/persistence/test_open_helper.py

Purpose
- Validate lazy open, version reconciliation, caching, escalation and
  failure recovery of ``SQLiteOpenHelper``.

What this test file should cover
- Fresh create, upgrade, refused downgrade, read-only fallback.
- Cache reuse, close idempotence, out-of-band close, escalation.
- Atomic migrations and reentrancy detection from hooks.
- Serialization of concurrent acquires.

Functional requirements
- Offline; storage failures are injected with monkeypatch.
"""

from __future__ import annotations

import sqlite3
import threading
import time
from pathlib import Path

import pytest

from sqlite_open_helper.errors import (
    ConfigurationError,
    DowngradeUnsupportedError,
    HandleClosedError,
    MigrationHookError,
    OpenFailure,
    ReentrancyError,
    UpgradeOnReadOnlyError,
)
from sqlite_open_helper.persistence.handle import DatabaseHandle
from sqlite_open_helper.persistence.hooks import MigrationHooks
from sqlite_open_helper.persistence.open_helper import Idle, Ready, SQLiteOpenHelper

from . import (
    DB_NAME,
    OpenCounter,
    RecordingHooks,
    RecordingLogger,
    make_config,
    persisted_version,
    seed_database,
    table_names,
)


def _helper(
    tmp_path: Path,
    hooks: MigrationHooks | None = None,
    *,
    version: int = 1,
    logger: RecordingLogger | None = None,
    **overrides: object,
) -> SQLiteOpenHelper:
    return SQLiteOpenHelper(
        make_config(tmp_path, version=version, **overrides),
        hooks,
        logger=logger if logger is not None else RecordingLogger(),
    )


@pytest.mark.unit
class TestVersionReconciliation:
    def test_fresh_database_runs_create_once_and_stamps_target_version(
        self, tmp_path: Path
    ) -> None:
        hooks = RecordingHooks()
        helper = _helper(tmp_path, hooks, version=3)

        db = helper.get_writable_database()

        assert hooks.names() == ["configure", "create", "opened"]
        assert db.version == 3
        assert db.is_read_only is False
        assert persisted_version(tmp_path / DB_NAME) == 3
        assert "items" in table_names(tmp_path / DB_NAME)
        helper.close()

    def test_older_database_is_upgraded_exactly_once(self, tmp_path: Path) -> None:
        seed_database(tmp_path / DB_NAME, version=2)
        hooks = RecordingHooks(
            on_upgrade=lambda db, old, new: db.execute("CREATE TABLE tags (id INTEGER)")
        )
        helper = _helper(tmp_path, hooks, version=3)

        db = helper.get_writable_database()
        helper.get_readable_database()

        assert hooks.calls == [("configure",), ("upgrade", 2, 3), ("opened",)]
        assert db.version == 3
        assert "tags" in table_names(tmp_path / DB_NAME)
        helper.close()

    def test_newer_database_is_never_downgraded(self, tmp_path: Path) -> None:
        seed_database(tmp_path / DB_NAME, version=4)
        hooks = RecordingHooks()
        helper = _helper(tmp_path, hooks, version=3)

        with pytest.raises(DowngradeUnsupportedError) as excinfo:
            helper.get_writable_database()

        assert excinfo.value.old_version == 4
        assert excinfo.value.new_version == 3
        assert "can't downgrade database from version 4 to 3" in str(excinfo.value)
        assert persisted_version(tmp_path / DB_NAME) == 4
        assert "opened" not in hooks.names()
        assert isinstance(helper.state, Idle)

    def test_matching_version_runs_no_migration(self, tmp_path: Path) -> None:
        seed_database(tmp_path / DB_NAME, version=2)
        hooks = RecordingHooks()
        helper = _helper(tmp_path, hooks, version=2)

        helper.get_readable_database()

        assert hooks.names() == ["configure", "opened"]
        helper.close()

    def test_default_hooks_only_stamp_the_version(self, tmp_path: Path) -> None:
        helper = _helper(tmp_path, None, version=5)

        assert helper.get_writable_database().version == 5
        helper.close()
        assert persisted_version(tmp_path / DB_NAME) == 5

    def test_failed_upgrade_rolls_back_schema_and_version(self, tmp_path: Path) -> None:
        seed_database(tmp_path / DB_NAME, version=1)

        def broken_upgrade(db: DatabaseHandle, old: int, new: int) -> None:
            db.execute("CREATE TABLE half_done (id INTEGER)")
            raise RuntimeError("disk full halfway through")

        logger = RecordingLogger()
        helper = _helper(
            tmp_path, RecordingHooks(on_upgrade=broken_upgrade), version=2, logger=logger
        )

        with pytest.raises(MigrationHookError) as excinfo:
            helper.get_writable_database()

        assert excinfo.value.hook == "upgrade"
        assert (excinfo.value.old_version, excinfo.value.new_version) == (1, 2)
        assert isinstance(excinfo.value.__cause__, RuntimeError)
        assert persisted_version(tmp_path / DB_NAME) == 1
        assert "half_done" not in table_names(tmp_path / DB_NAME)
        assert "database_migration_failed" in logger.names()
        assert isinstance(helper.state, Idle)

    def test_helper_is_reusable_after_failed_acquire(self, tmp_path: Path) -> None:
        attempts: list[int] = []

        def flaky_create(db: DatabaseHandle) -> None:
            attempts.append(1)
            if len(attempts) == 1:
                raise RuntimeError("first attempt fails")

        helper = _helper(tmp_path, RecordingHooks(on_create=flaky_create), version=2)

        with pytest.raises(MigrationHookError):
            helper.get_writable_database()
        db = helper.get_writable_database()

        assert db.version == 2
        assert len(attempts) == 2
        helper.close()

    def test_configure_failure_propagates_unwrapped_and_closes_handle(
        self, tmp_path: Path
    ) -> None:
        seen: list[DatabaseHandle] = []

        def bad_configure(db: DatabaseHandle) -> None:
            seen.append(db)
            raise ValueError("bad pragma")

        helper = _helper(tmp_path, RecordingHooks(on_configure=bad_configure))

        with pytest.raises(ValueError, match="bad pragma"):
            helper.get_writable_database()

        assert len(seen) == 1
        assert seen[0].is_open is False
        assert isinstance(helper.state, Idle)

    def test_upgrade_without_callable_reports_missing_path(self, tmp_path: Path) -> None:
        seed_database(tmp_path / DB_NAME, version=1)
        hooks = MigrationHooks.from_callables(create=lambda db: None)
        helper = _helper(tmp_path, hooks, version=2)

        with pytest.raises(ConfigurationError, match="no upgrade path from version 1 to 2"):
            helper.get_writable_database()

        assert persisted_version(tmp_path / DB_NAME) == 1

    def test_failed_upgrade_using_script_rolls_back(self, tmp_path: Path) -> None:
        seed_database(tmp_path / DB_NAME, version=1)

        def scripted_upgrade(db: DatabaseHandle, old: int, new: int) -> None:
            db.executescript(
                "CREATE TABLE half_done (id INTEGER); CREATE INDEX half_idx ON half_done (id);"
            )
            raise RuntimeError("later step failed")

        helper = _helper(tmp_path, RecordingHooks(on_upgrade=scripted_upgrade), version=2)

        with pytest.raises(MigrationHookError):
            helper.get_writable_database()

        assert persisted_version(tmp_path / DB_NAME) == 1
        assert "half_done" not in table_names(tmp_path / DB_NAME)

    def test_create_using_script_commits_with_version(self, tmp_path: Path) -> None:
        def scripted_create(db: DatabaseHandle) -> None:
            db.executescript("CREATE TABLE notes (id INTEGER); CREATE TABLE tags (id INTEGER);")

        helper = _helper(tmp_path, RecordingHooks(on_create=scripted_create), version=2)

        db = helper.get_writable_database()

        assert db.version == 2
        assert {"notes", "tags"} <= table_names(tmp_path / DB_NAME)
        helper.close()

    def test_hook_that_commits_the_migration_transaction_is_rejected(
        self, tmp_path: Path
    ) -> None:
        def committing_create(db: DatabaseHandle) -> None:
            db.execute("CREATE TABLE notes (id INTEGER)")
            db.commit()

        helper = _helper(tmp_path, RecordingHooks(on_create=committing_create), version=2)

        with pytest.raises(MigrationHookError, match="ended the migration transaction") as excinfo:
            helper.get_writable_database()

        assert excinfo.value.hook == "create"
        assert persisted_version(tmp_path / DB_NAME) == 0
        assert isinstance(helper.state, Idle)


@pytest.mark.unit
class TestReadOnlyFallback:
    def test_read_write_failure_falls_back_to_read_only(
        self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        seed_database(tmp_path / DB_NAME, version=3)
        opens = OpenCounter(monkeypatch)
        opens.fail_read_write = True
        logger = RecordingLogger()
        helper = _helper(tmp_path, RecordingHooks(), version=3, logger=logger)

        db = helper.get_readable_database()

        assert db.is_read_only is True
        assert opens.calls == [False, True]
        assert "database_open_read_write_failed" in logger.names()
        assert "database_opened_read_only" in logger.names()
        failed = next(e for e in logger.events if e[1] == "database_open_read_write_failed")
        assert isinstance(failed[2]["exc_info"], sqlite3.OperationalError)
        with pytest.raises(sqlite3.OperationalError):
            db.execute("CREATE TABLE nope (id INTEGER)")
        helper.close()

    def test_version_mismatch_on_read_only_handle_is_refused(
        self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        seed_database(tmp_path / DB_NAME, version=2)
        opens = OpenCounter(monkeypatch)
        opens.fail_read_write = True
        hooks = RecordingHooks()
        helper = _helper(tmp_path, hooks, version=3)

        with pytest.raises(UpgradeOnReadOnlyError) as excinfo:
            helper.get_readable_database()

        assert (excinfo.value.old_version, excinfo.value.new_version) == (2, 3)
        assert DB_NAME in str(excinfo.value)
        assert "upgrade" not in hooks.names()
        assert persisted_version(tmp_path / DB_NAME) == 2
        assert isinstance(helper.state, Idle)

    def test_both_opens_failing_raises_open_failure(
        self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        opens = OpenCounter(monkeypatch)
        opens.fail_read_write = True
        opens.fail_read_only = True
        helper = _helper(tmp_path, RecordingHooks())

        with pytest.raises(OpenFailure) as excinfo:
            helper.get_writable_database()

        assert excinfo.value.path == str(tmp_path / DB_NAME)
        assert isinstance(excinfo.value.__cause__, sqlite3.OperationalError)
        assert opens.calls == [False, True]
        assert isinstance(helper.state, Idle)

    def test_missing_file_cannot_be_opened_read_only(
        self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        opens = OpenCounter(monkeypatch)
        opens.fail_read_write = True
        helper = _helper(tmp_path, RecordingHooks())

        with pytest.raises(OpenFailure):
            helper.get_readable_database()
        assert not (tmp_path / DB_NAME).exists()

    def test_writable_request_escalates_cached_read_only_handle(
        self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        seed_database(tmp_path / DB_NAME, version=2)
        opens = OpenCounter(monkeypatch)
        opens.fail_read_write = True
        helper = _helper(tmp_path, RecordingHooks(), version=2)

        read_only = helper.get_readable_database()
        assert read_only.is_read_only is True

        opens.fail_read_write = False
        writable = helper.get_writable_database()

        assert writable is not read_only
        assert read_only.is_open is False
        assert writable.is_read_only is False
        assert writable.version == 2
        assert helper.get_readable_database() is writable
        helper.close()

    def test_writable_request_over_read_only_stays_read_only_when_still_blocked(
        self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        seed_database(tmp_path / DB_NAME, version=1)
        opens = OpenCounter(monkeypatch)
        opens.fail_read_write = True
        helper = _helper(tmp_path, RecordingHooks(), version=1)

        first = helper.get_readable_database()
        second = helper.get_writable_database()

        assert first.is_open is False
        assert second.is_read_only is True
        assert opens.calls == [False, True, False, True]
        helper.close()


@pytest.mark.unit
class TestCachingAndClose:
    def test_repeated_acquires_open_storage_once(
        self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        opens = OpenCounter(monkeypatch)
        helper = _helper(tmp_path, RecordingHooks())

        handles = {
            id(helper.get_readable_database()),
            id(helper.get_writable_database()),
            id(helper.get_readable_database()),
            id(helper.get_writable_database()),
        }

        assert len(handles) == 1
        assert opens.count == 1
        assert isinstance(helper.state, Ready)
        helper.close()

    def test_close_is_idempotent(self, tmp_path: Path) -> None:
        logger = RecordingLogger()
        helper = _helper(tmp_path, RecordingHooks(), logger=logger)
        helper.close()

        db = helper.get_writable_database()
        helper.close()
        helper.close()

        assert db.is_open is False
        assert logger.names().count("database_closed") == 1
        assert isinstance(helper.state, Idle)

    def test_handle_is_unusable_after_close(self, tmp_path: Path) -> None:
        helper = _helper(tmp_path, RecordingHooks())
        db = helper.get_writable_database()
        helper.close()

        with pytest.raises(HandleClosedError):
            db.query_one("SELECT 1 AS one")

    def test_reopen_after_close_yields_fresh_handle(
        self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        opens = OpenCounter(monkeypatch)
        hooks = RecordingHooks()
        helper = _helper(tmp_path, hooks, version=2)

        first = helper.get_writable_database()
        helper.close()
        second = helper.get_writable_database()

        assert first is not second
        assert second.is_open is True
        assert opens.count == 2
        assert hooks.names().count("create") == 1
        helper.close()

    def test_out_of_band_close_is_detected(self, tmp_path: Path) -> None:
        logger = RecordingLogger()
        helper = _helper(tmp_path, RecordingHooks(), logger=logger)

        first = helper.get_readable_database()
        first.close()
        second = helper.get_readable_database()

        assert second is not first
        assert second.is_open is True
        assert "database_handle_discarded" in logger.names()
        helper.close()

    def test_context_manager_closes_on_exit(self, tmp_path: Path) -> None:
        with _helper(tmp_path, RecordingHooks()) as helper:
            db = helper.get_writable_database()
            db.execute("INSERT INTO items (label) VALUES (?)", ("first",))

        assert db.is_open is False
        assert isinstance(helper.state, Idle)

    def test_events_for_successful_open(self, tmp_path: Path) -> None:
        logger = RecordingLogger()
        helper = _helper(tmp_path, RecordingHooks(), version=2, logger=logger)

        helper.get_writable_database()
        helper.close()

        assert logger.names() == [
            "database_migration_applied",
            "database_opened",
            "database_closed",
        ]
        _, _, fields = logger.events[0]
        assert fields["hook"] == "create"
        assert fields["database"] == DB_NAME
        assert (fields["old_version"], fields["new_version"]) == (0, 2)


@pytest.mark.unit
class TestReentrancy:
    def test_acquire_from_opened_hook_is_rejected(self, tmp_path: Path) -> None:
        helper: SQLiteOpenHelper | None = None

        def call_back(db: DatabaseHandle) -> None:
            assert helper is not None
            helper.get_readable_database()

        helper = _helper(tmp_path, RecordingHooks(on_opened=call_back))

        with pytest.raises(ReentrancyError):
            helper.get_writable_database()
        assert isinstance(helper.state, Idle)

    def test_acquire_from_create_hook_rolls_back(self, tmp_path: Path) -> None:
        helper: SQLiteOpenHelper | None = None

        def call_back(db: DatabaseHandle) -> None:
            assert helper is not None
            helper.get_writable_database()

        helper = _helper(tmp_path, RecordingHooks(on_create=call_back), version=2)

        with pytest.raises(ReentrancyError):
            helper.get_writable_database()
        assert persisted_version(tmp_path / DB_NAME) == 0

    def test_close_from_configure_hook_is_rejected(self, tmp_path: Path) -> None:
        helper: SQLiteOpenHelper | None = None

        def call_back(db: DatabaseHandle) -> None:
            assert helper is not None
            helper.close()

        helper = _helper(tmp_path, RecordingHooks(on_configure=call_back))

        with pytest.raises(ReentrancyError):
            helper.get_writable_database()
        assert isinstance(helper.state, Idle)


@pytest.mark.unit
def test_concurrent_acquires_are_serialized(tmp_path: Path) -> None:
    active = 0
    peak = 0
    guard = threading.Lock()

    def slow_create(db: DatabaseHandle) -> None:
        nonlocal active, peak
        with guard:
            active += 1
            peak = max(peak, active)
        time.sleep(0.05)
        with guard:
            active -= 1

    hooks = RecordingHooks(on_create=slow_create)
    helper = _helper(tmp_path, hooks, version=2)
    results: list[DatabaseHandle] = []
    errors: list[BaseException] = []

    def worker(writable: bool) -> None:
        try:
            if writable:
                results.append(helper.get_writable_database())
            else:
                results.append(helper.get_readable_database())
        except BaseException as exc:  # noqa: BLE001
            errors.append(exc)

    threads = [threading.Thread(target=worker, args=(index % 2 == 0,)) for index in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert not errors
    assert peak == 1
    assert hooks.names().count("create") == 1
    assert len({id(handle) for handle in results}) == 1
    helper.close()


@pytest.mark.unit
def test_database_path_and_identity_properties(tmp_path: Path) -> None:
    helper = _helper(tmp_path, version=7)

    assert helper.database_name == DB_NAME
    assert helper.database_path == (tmp_path / DB_NAME).absolute()
    assert helper.version == 7
    assert isinstance(helper.state, Idle)
    assert not helper.database_path.exists()


@pytest.mark.unit
def test_invalid_construction_fails_immediately(tmp_path: Path) -> None:
    with pytest.raises(ConfigurationError):
        _helper(tmp_path, version=0)
    with pytest.raises(ConfigurationError):
        SQLiteOpenHelper(make_config(tmp_path, name=""))
    with pytest.raises(TypeError):
        SQLiteOpenHelper({"name": DB_NAME})  # type: ignore[arg-type]

"""
sqlite-open-helper — migration hooks.

File: src/sqlite_open_helper/persistence/hooks.py

Purpose
- Lifecycle callbacks the open helper invokes around version reconciliation:
  ``configure`` → (``create`` | ``upgrade`` | ``downgrade``) → ``opened``.

Functional requirements
- ``create``/``upgrade``/``downgrade`` run inside the helper's migration
  transaction; ``configure`` and ``opened`` run outside it.
- ``downgrade`` always fails and cannot be overridden: versions are assumed to
  increase monotonically.
- ``StatementMigrations`` applies an ordered, checksummed chain of SQL steps.
"""

from __future__ import annotations

import hashlib
from abc import ABC, abstractmethod
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Final, final

from sqlite_open_helper.errors import ConfigurationError, DowngradeUnsupportedError

if TYPE_CHECKING:
    from sqlite_open_helper.persistence.handle import DatabaseHandle

HandleCallback = Callable[["DatabaseHandle"], None]
UpgradeCallback = Callable[["DatabaseHandle", int, int], None]

MIGRATION_HISTORY_TABLE: Final[str] = "schema_migrations"

_HISTORY_TABLE_SQL: Final[str] = f"""
CREATE TABLE IF NOT EXISTS {MIGRATION_HISTORY_TABLE} (
    version INTEGER PRIMARY KEY CHECK (version > 0),
    name TEXT NOT NULL,
    checksum TEXT NOT NULL CHECK (length(checksum) = 64),
    applied_at TEXT NOT NULL
)
"""


class MigrationHooks(ABC):
    """Caller-supplied lifecycle callbacks for one database."""

    def __init_subclass__(cls, **kwargs: object) -> None:
        super().__init_subclass__(**kwargs)
        if "downgrade" in cls.__dict__:
            raise TypeError(
                f"{cls.__name__} must not override downgrade(); "
                "schema downgrades are never supported"
            )

    def configure(self, db: DatabaseHandle) -> None:
        """
        Configure connection parameters (WAL, foreign keys, other pragmas).

        Called before any version reconciliation; must not change the schema.
        """

    @abstractmethod
    def create(self, db: DatabaseHandle) -> None:
        """Build the schema of a brand-new database (persisted version 0)."""

    @abstractmethod
    def upgrade(self, db: DatabaseHandle, old_version: int, new_version: int) -> None:
        """Apply forward migrations; ``old_version < new_version`` always holds."""

    @final
    def downgrade(self, db: DatabaseHandle, old_version: int, new_version: int) -> None:
        raise DowngradeUnsupportedError(old_version=old_version, new_version=new_version)

    def opened(self, db: DatabaseHandle) -> None:
        """Called after version reconciliation; must not start a transaction."""

    @classmethod
    def from_callables(
        cls,
        *,
        create: HandleCallback,
        upgrade: UpgradeCallback | None = None,
        configure: HandleCallback | None = None,
        opened: HandleCallback | None = None,
    ) -> MigrationHooks:
        """Build hooks from plain functions instead of a subclass."""

        return _CallableHooks(
            on_create=create,
            on_upgrade=upgrade,
            on_configure=configure,
            on_opened=opened,
        )


class _CallableHooks(MigrationHooks):
    def __init__(
        self,
        *,
        on_create: HandleCallback,
        on_upgrade: UpgradeCallback | None,
        on_configure: HandleCallback | None,
        on_opened: HandleCallback | None,
    ) -> None:
        self._on_create = on_create
        self._on_upgrade = on_upgrade
        self._on_configure = on_configure
        self._on_opened = on_opened

    def configure(self, db: DatabaseHandle) -> None:
        if self._on_configure is not None:
            self._on_configure(db)

    def create(self, db: DatabaseHandle) -> None:
        self._on_create(db)

    def upgrade(self, db: DatabaseHandle, old_version: int, new_version: int) -> None:
        if self._on_upgrade is None:
            raise ConfigurationError(
                f"no upgrade path from version {old_version} to {new_version}"
            )
        self._on_upgrade(db, old_version, new_version)

    def opened(self, db: DatabaseHandle) -> None:
        if self._on_opened is not None:
            self._on_opened(db)


def migration_checksum(version: int, name: str, statements: Sequence[str]) -> str:
    digest = hashlib.sha256()
    digest.update(f"{version}:{name}\n".encode())
    for statement in statements:
        normalized = "\n".join(line.rstrip() for line in statement.strip().splitlines())
        digest.update(normalized.encode("utf-8"))
        digest.update(b"\n--\n")
    return digest.hexdigest()


@dataclass(frozen=True, slots=True)
class Migration:
    """One schema step that moves the database from ``version - 1`` to ``version``."""

    version: int
    name: str
    statements: tuple[str, ...]
    checksum: str = field(init=False)

    def __post_init__(self) -> None:
        if isinstance(self.version, bool) or not isinstance(self.version, int):
            raise ConfigurationError(f"migration version must be an integer: {self.version!r}")
        if self.version < 1:
            raise ConfigurationError(f"migration version must be >= 1, was {self.version}")
        if not self.name.strip():
            raise ConfigurationError(f"migration {self.version} needs a name")
        object.__setattr__(self, "statements", tuple(self.statements))
        object.__setattr__(
            self, "checksum", migration_checksum(self.version, self.name, self.statements)
        )


@dataclass(frozen=True, slots=True)
class MigrationRecord:
    version: int
    name: str
    checksum: str
    applied_at: str


class StatementMigrations(MigrationHooks):
    """
    Hooks backed by an ordered chain of SQL migrations.

    ``create`` applies every step; ``upgrade(old, new)`` applies the steps in
    ``(old, new]``. Applied steps are recorded in ``schema_migrations`` and
    their checksums are verified before further steps run; a step already
    recorded with a matching checksum is not run again.
    """

    def __init__(
        self,
        migrations: Sequence[Migration],
        *,
        configure: HandleCallback | None = None,
        opened: HandleCallback | None = None,
    ) -> None:
        ordered = tuple(sorted(migrations, key=lambda item: item.version))
        if not ordered:
            raise ConfigurationError("at least one migration is required")
        for expected, migration in enumerate(ordered, start=1):
            if migration.version != expected:
                raise ConfigurationError(f"missing migration for schema version {expected}")
        self._migrations = ordered
        self._on_configure = configure
        self._on_opened = opened

    @property
    def latest_version(self) -> int:
        return self._migrations[-1].version

    @property
    def migrations(self) -> tuple[Migration, ...]:
        return self._migrations

    def configure(self, db: DatabaseHandle) -> None:
        if self._on_configure is not None:
            self._on_configure(db)

    def create(self, db: DatabaseHandle) -> None:
        self._apply(db, after=0, upto=self.latest_version)

    def upgrade(self, db: DatabaseHandle, old_version: int, new_version: int) -> None:
        if new_version > self.latest_version:
            raise ConfigurationError(
                "schema target exceeds known migrations "
                f"(target={new_version}, known={self.latest_version})"
            )
        self._verify_history(db, upto=old_version)
        self._apply(db, after=old_version, upto=new_version)

    def opened(self, db: DatabaseHandle) -> None:
        if self._on_opened is not None:
            self._on_opened(db)

    def applied_migrations(self, db: DatabaseHandle) -> list[MigrationRecord]:
        db.execute(_HISTORY_TABLE_SQL)
        rows = db.query_all(
            f"""
            SELECT version, name, checksum, applied_at
            FROM {MIGRATION_HISTORY_TABLE}
            ORDER BY version ASC
            """
        )
        return [
            MigrationRecord(
                version=int(row["version"]),  # type: ignore[arg-type]
                name=str(row["name"]),
                checksum=str(row["checksum"]),
                applied_at=str(row["applied_at"]),
            )
            for row in rows
        ]

    def _apply(self, db: DatabaseHandle, *, after: int, upto: int) -> None:
        applied = {record.version: record for record in self.applied_migrations(db)}
        for migration in self._migrations:
            if migration.version <= after or migration.version > upto:
                continue
            record = applied.get(migration.version)
            if record is not None:
                # Steps past the stamped version may already be in place.
                if record.checksum != migration.checksum:
                    raise ConfigurationError(
                        "migration checksum mismatch for version "
                        f"{record.version}: db={record.checksum} code={migration.checksum}"
                    )
                continue
            for statement in migration.statements:
                db.execute(statement)
            db.execute(
                f"""
                INSERT OR REPLACE INTO {MIGRATION_HISTORY_TABLE}
                    (version, name, checksum, applied_at)
                VALUES (?, ?, ?, ?)
                """,
                (migration.version, migration.name, migration.checksum, _utc_now_iso()),
            )

    def _verify_history(self, db: DatabaseHandle, *, upto: int) -> None:
        known = {migration.version: migration for migration in self._migrations}
        for record in self.applied_migrations(db):
            if record.version > upto:
                continue
            migration = known.get(record.version)
            if migration is not None and migration.checksum != record.checksum:
                raise ConfigurationError(
                    "migration checksum mismatch for version "
                    f"{record.version}: db={record.checksum} code={migration.checksum}"
                )


def _utc_now_iso() -> str:
    return datetime.now(UTC).isoformat(timespec="microseconds").replace("+00:00", "Z")


__all__ = [
    "MIGRATION_HISTORY_TABLE",
    "HandleCallback",
    "Migration",
    "MigrationHooks",
    "MigrationRecord",
    "StatementMigrations",
    "UpgradeCallback",
    "migration_checksum",
]

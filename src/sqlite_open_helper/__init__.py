"""
sqlite-open-helper — package root.

File: src/sqlite_open_helper/__init__.py

Purpose
- Lazily open, version and cache one SQLite database per helper, running
  create/upgrade hooks inside a single transaction.

Functional requirements
- Must not have side effects at import time (no config loading, no logging init).
"""

from sqlite_open_helper.config.loader import HelperSettings, load_settings
from sqlite_open_helper.config.schema import ManagerConfig
from sqlite_open_helper.errors import (
    AsyncPolicyError,
    ConfigurationError,
    DatabaseCorruptionError,
    DowngradeUnsupportedError,
    HandleClosedError,
    MigrationHookError,
    OpenFailure,
    OpenHelperError,
    ReentrancyError,
    UpgradeOnReadOnlyError,
)
from sqlite_open_helper.observability.logging import LoggingConfig, setup_logging
from sqlite_open_helper.persistence.handle import DatabaseHandle, delete_database_files
from sqlite_open_helper.persistence.hooks import Migration, MigrationHooks, StatementMigrations
from sqlite_open_helper.persistence.open_helper import (
    Idle,
    Initializing,
    LifecycleState,
    Ready,
    SQLiteOpenHelper,
)
from sqlite_open_helper.persistence.paths import default_data_dir, resolve_database_path

__version__ = "0.1.0"

__all__ = [
    "AsyncPolicyError",
    "ConfigurationError",
    "DatabaseCorruptionError",
    "DatabaseHandle",
    "DowngradeUnsupportedError",
    "HandleClosedError",
    "HelperSettings",
    "Idle",
    "Initializing",
    "LifecycleState",
    "LoggingConfig",
    "ManagerConfig",
    "Migration",
    "MigrationHookError",
    "MigrationHooks",
    "OpenFailure",
    "OpenHelperError",
    "Ready",
    "ReentrancyError",
    "SQLiteOpenHelper",
    "StatementMigrations",
    "UpgradeOnReadOnlyError",
    "__version__",
    "default_data_dir",
    "delete_database_files",
    "load_settings",
    "resolve_database_path",
    "setup_logging",
]

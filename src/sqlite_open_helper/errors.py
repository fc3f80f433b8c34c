"""Error hierarchy for the open helper and its storage collaborator."""

from __future__ import annotations


class OpenHelperError(RuntimeError):
    """Base class for open helper errors."""


class ConfigurationError(OpenHelperError, ValueError):
    """Raised when construction arguments or loaded settings are invalid."""


class ReentrancyError(OpenHelperError):
    """Raised when the helper is re-entered while a database is initializing."""


class OpenFailure(OpenHelperError):
    """Raised when neither a read-write nor a read-only open succeeded."""

    def __init__(self, message: str, *, path: str) -> None:
        super().__init__(message)
        self.path = path


class UpgradeOnReadOnlyError(OpenHelperError):
    """Raised when a schema change is required but only read access was obtained."""

    def __init__(self, *, name: str, old_version: int, new_version: int) -> None:
        super().__init__(
            f"can't upgrade read-only database from version {old_version} "
            f"to {new_version}: {name}"
        )
        self.old_version = old_version
        self.new_version = new_version


class DowngradeUnsupportedError(OpenHelperError):
    """Raised when the persisted schema version is newer than the target version."""

    def __init__(self, *, old_version: int, new_version: int) -> None:
        super().__init__(
            f"can't downgrade database from version {old_version} to {new_version}"
        )
        self.old_version = old_version
        self.new_version = new_version


class MigrationHookError(OpenHelperError):
    """Raised when a migration hook failed; the original error is the ``__cause__``."""

    def __init__(self, *, hook: str, old_version: int, new_version: int, error: BaseException):
        super().__init__(
            f"{hook} hook failed migrating from version {old_version} "
            f"to {new_version}: {error}"
        )
        self.hook = hook
        self.old_version = old_version
        self.new_version = new_version


class HandleClosedError(OpenHelperError):
    """Raised when a database handle is used after it was closed or superseded."""


class DatabaseCorruptionError(OpenHelperError):
    """Raised when SQLite reports corruption and no error handler recovered it."""


class AsyncPolicyError(OpenHelperError):
    """Raised when sync database I/O is attempted from an active event loop thread."""


__all__ = [
    "AsyncPolicyError",
    "ConfigurationError",
    "DatabaseCorruptionError",
    "DowngradeUnsupportedError",
    "HandleClosedError",
    "MigrationHookError",
    "OpenFailure",
    "OpenHelperError",
    "ReentrancyError",
    "UpgradeOnReadOnlyError",
]

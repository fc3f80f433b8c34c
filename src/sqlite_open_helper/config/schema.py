"""
sqlite-open-helper — configuration schema and validation.

File: src/sqlite_open_helper/config/schema.py

Purpose
- Define configuration defaults, strict validation rules, and the immutable
  ``ManagerConfig`` captured by every open helper at construction time.

Functional requirements
- Invalid values (empty name, version < 1, negative timeouts) fail at
  construction with ``ConfigurationError``, never on first use.
- Validation reports every issue with a dotted field path.

Non-functional requirements
- Keep rules deterministic and easy to audit.
"""

from __future__ import annotations

import copy
import sqlite3
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Final

from sqlite_open_helper.constants import (
    ASYNC_BLOCKING_POLICIES,
    DEFAULT_APP_NAME,
    DEFAULT_ASYNC_BLOCKING_POLICY,
    DEFAULT_BUSY_TIMEOUT_MS,
    MIN_SCHEMA_VERSION,
)
from sqlite_open_helper.errors import ConfigurationError
from sqlite_open_helper.persistence.paths import resolve_database_path

CursorFactory = Callable[[sqlite3.Connection], sqlite3.Cursor]
ErrorHandler = Callable[[Path], None]

LOG_LEVELS: Final[tuple[str, ...]] = ("DEBUG", "INFO", "WARNING", "ERROR")

# Config paths that are normalized relative to the config file location.
PATH_FIELDS: Final[tuple[tuple[str, ...], ...]] = (
    ("database", "storage_directory"),
    ("logging", "log_file"),
)

_DEFAULT_CONFIG: Final[dict[str, Any]] = {
    "database": {
        "version": MIN_SCHEMA_VERSION,
        "busy_timeout_ms": DEFAULT_BUSY_TIMEOUT_MS,
        "async_blocking_policy": DEFAULT_ASYNC_BLOCKING_POLICY,
        "app_name": DEFAULT_APP_NAME,
    },
    "logging": {
        "level": "INFO",
        "json": False,
    },
}

_DATABASE_KEYS: Final[frozenset[str]] = frozenset(
    {"name", "storage_directory", "version", "busy_timeout_ms", "async_blocking_policy", "app_name"}
)
_LOGGING_KEYS: Final[frozenset[str]] = frozenset({"level", "json", "log_file"})


@dataclass(frozen=True, slots=True)
class ConfigValidationIssue:
    """Single structured validation failure."""

    path: str
    message: str


def _render_issues(issues: Sequence[ConfigValidationIssue]) -> str:
    if not issues:
        return "unknown validation failure"
    return "\n".join(f"- {item.path}: {item.message}" for item in issues)


class ConfigValidationError(ConfigurationError):
    """Raised when strict config validation fails."""

    def __init__(self, issues: Sequence[ConfigValidationIssue]) -> None:
        self.issues = tuple(issues)
        super().__init__(f"invalid config:\n{_render_issues(self.issues)}")


class _IssueCollector:
    __slots__ = ("_items",)

    def __init__(self) -> None:
        self._items: list[ConfigValidationIssue] = []

    def add(self, path: str, message: str) -> None:
        self._items.append(ConfigValidationIssue(path=path, message=message))

    def items(self) -> tuple[ConfigValidationIssue, ...]:
        return tuple(self._items)

    @property
    def has_issues(self) -> bool:
        return bool(self._items)


@dataclass(frozen=True, slots=True)
class ManagerConfig:
    """Immutable open helper configuration; validated on construction."""

    name: str
    version: int = MIN_SCHEMA_VERSION
    storage_directory: str | Path | None = None
    cursor_factory: CursorFactory | None = None
    error_handler: ErrorHandler | None = None
    busy_timeout_ms: int = DEFAULT_BUSY_TIMEOUT_MS
    async_blocking_policy: str = DEFAULT_ASYNC_BLOCKING_POLICY
    app_name: str = DEFAULT_APP_NAME

    def __post_init__(self) -> None:
        issues = _IssueCollector()
        _as_str(self.name, "name", issues)
        _as_int(self.version, "version", issues, minimum=MIN_SCHEMA_VERSION)
        if self.storage_directory is not None and not isinstance(self.storage_directory, Path):
            _as_path_text(self.storage_directory, "storage_directory", issues)
        if self.cursor_factory is not None and not callable(self.cursor_factory):
            issues.add("cursor_factory", "must be callable")
        if self.error_handler is not None and not callable(self.error_handler):
            issues.add("error_handler", "must be callable")
        _as_int(self.busy_timeout_ms, "busy_timeout_ms", issues, minimum=0)
        _as_enum(
            self.async_blocking_policy,
            "async_blocking_policy",
            issues,
            allowed_values=ASYNC_BLOCKING_POLICIES,
        )
        _as_str(self.app_name, "app_name", issues)
        if issues.has_issues:
            raise ConfigValidationError(issues.items())

    @property
    def database_path(self) -> Path:
        return resolve_database_path(
            self.name, self.storage_directory, app_name=self.app_name
        )

    @classmethod
    def from_mapping(
        cls,
        payload: Mapping[str, object],
        *,
        cursor_factory: CursorFactory | None = None,
        error_handler: ErrorHandler | None = None,
    ) -> ManagerConfig:
        """Build from a validated ``[database]`` section plus the non-serializable hooks."""

        if "name" not in payload:
            raise ConfigValidationError(
                (ConfigValidationIssue(path="database.name", message="missing required field"),)
            )
        storage_directory = payload.get("storage_directory")
        return cls(
            name=payload["name"],  # type: ignore[arg-type]
            version=payload.get("version", MIN_SCHEMA_VERSION),  # type: ignore[arg-type]
            storage_directory=storage_directory,  # type: ignore[arg-type]
            cursor_factory=cursor_factory,
            error_handler=error_handler,
            busy_timeout_ms=payload.get(  # type: ignore[arg-type]
                "busy_timeout_ms", DEFAULT_BUSY_TIMEOUT_MS
            ),
            async_blocking_policy=payload.get(  # type: ignore[arg-type]
                "async_blocking_policy", DEFAULT_ASYNC_BLOCKING_POLICY
            ),
            app_name=payload.get("app_name", DEFAULT_APP_NAME),  # type: ignore[arg-type]
        )


def default_config() -> dict[str, Any]:
    return copy.deepcopy(_DEFAULT_CONFIG)


def merge_config(base: Mapping[str, object], overlay: Mapping[str, object]) -> dict[str, Any]:
    """Deterministically deep-merge ``overlay`` onto ``base``."""

    merged = _deep_copy_mapping(base)
    _merge_into(merged, overlay)
    return merged


def validate_config(config: Mapping[str, object] | object) -> tuple[ConfigValidationIssue, ...]:
    """Validate a raw config payload and return structured issues."""

    issues = _IssueCollector()
    root = _as_object(config, "<root>", issues)
    if root is None:
        return issues.items()

    _reject_unknown_keys(root, {"database", "logging"}, "", issues)

    database = _as_object(root.get("database", {}), "database", issues)
    if database is not None:
        _reject_unknown_keys(database, set(_DATABASE_KEYS), "database", issues)
        if "name" in database:
            _as_path_text(database["name"], "database.name", issues)
        if "storage_directory" in database:
            _as_path_text(database["storage_directory"], "database.storage_directory", issues)
        if "version" in database:
            _as_int(database["version"], "database.version", issues, minimum=MIN_SCHEMA_VERSION)
        if "busy_timeout_ms" in database:
            _as_int(database["busy_timeout_ms"], "database.busy_timeout_ms", issues, minimum=0)
        if "async_blocking_policy" in database:
            _as_enum(
                database["async_blocking_policy"],
                "database.async_blocking_policy",
                issues,
                allowed_values=ASYNC_BLOCKING_POLICIES,
            )
        if "app_name" in database:
            _as_str(database["app_name"], "database.app_name", issues)

    logging_section = _as_object(root.get("logging", {}), "logging", issues)
    if logging_section is not None:
        _reject_unknown_keys(logging_section, set(_LOGGING_KEYS), "logging", issues)
        if "level" in logging_section:
            level = logging_section["level"]
            normalized = level.strip().upper() if isinstance(level, str) else level
            _as_enum(normalized, "logging.level", issues, allowed_values=LOG_LEVELS)
        if "json" in logging_section:
            _as_bool(logging_section["json"], "logging.json", issues)
        if "log_file" in logging_section:
            _as_path_text(logging_section["log_file"], "logging.log_file", issues)

    return issues.items()


def assert_valid_config(config: Mapping[str, object] | object) -> dict[str, Any]:
    """Validate config and raise ``ConfigValidationError`` on failure."""

    issues = validate_config(config)
    if issues:
        raise ConfigValidationError(issues)
    if not isinstance(config, Mapping):
        raise ConfigurationError(f"expected config mapping, got {type(config).__name__}")
    return _deep_copy_mapping(config)


def _as_object(value: object, path: str, issues: _IssueCollector) -> dict[str, object] | None:
    if not isinstance(value, Mapping):
        issues.add(path, f"expected object, got {type(value).__name__}")
        return None
    out: dict[str, object] = {}
    for key, item in value.items():
        if not isinstance(key, str):
            issues.add(path, f"object key must be string, got {type(key).__name__}")
            continue
        out[key] = item
    return out


def _as_str(value: object, path: str, issues: _IssueCollector) -> str | None:
    if not isinstance(value, str):
        issues.add(path, f"expected string, got {type(value).__name__}")
        return None
    parsed = value.strip()
    if not parsed:
        issues.add(path, "must not be empty")
        return None
    return parsed


def _as_path_text(value: object, path: str, issues: _IssueCollector) -> str | None:
    parsed = _as_str(value, path, issues)
    if parsed is None:
        return None
    if "\x00" in parsed:
        issues.add(path, "must not contain NUL bytes")
        return None
    return parsed


def _as_bool(value: object, path: str, issues: _IssueCollector) -> bool | None:
    if isinstance(value, bool):
        return value
    issues.add(path, f"expected boolean, got {type(value).__name__}")
    return None


def _as_int(
    value: object,
    path: str,
    issues: _IssueCollector,
    *,
    minimum: int | None = None,
) -> int | None:
    if isinstance(value, bool) or not isinstance(value, int):
        issues.add(path, f"expected integer, got {type(value).__name__}")
        return None
    if minimum is not None and value < minimum:
        issues.add(path, f"must be >= {minimum}")
        return None
    return value


def _as_enum(
    value: object,
    path: str,
    issues: _IssueCollector,
    *,
    allowed_values: tuple[str, ...],
) -> str | None:
    parsed = _as_str(value, path, issues)
    if parsed is None:
        return None
    if parsed not in allowed_values:
        expected = ", ".join(sorted(allowed_values))
        issues.add(path, f"invalid value {parsed!r}; expected one of: {expected}")
        return None
    return parsed


def _reject_unknown_keys(
    payload: Mapping[str, object],
    allowed: set[str],
    path: str,
    issues: _IssueCollector,
) -> None:
    for key in sorted(payload):
        if key not in allowed:
            issues.add(_join(path, key), "unknown field")


def _join(path: str, key: str) -> str:
    if not path:
        return key
    return f"{path}.{key}"


def _merge_into(target: dict[str, Any], overlay: Mapping[str, object]) -> None:
    for key in sorted(overlay):
        value = overlay[key]
        if isinstance(value, Mapping):
            existing = target.get(key)
            if isinstance(existing, dict):
                _merge_into(existing, value)
            else:
                nested: dict[str, Any] = {}
                _merge_into(nested, value)
                target[key] = nested
        else:
            target[key] = copy.deepcopy(value)


def _deep_copy_mapping(value: Mapping[str, object]) -> dict[str, Any]:
    out: dict[str, Any] = {}
    for key in sorted(value):
        item = value[key]
        out[key] = _deep_copy_mapping(item) if isinstance(item, Mapping) else copy.deepcopy(item)
    return out


__all__ = [
    "LOG_LEVELS",
    "PATH_FIELDS",
    "ConfigValidationError",
    "ConfigValidationIssue",
    "CursorFactory",
    "ErrorHandler",
    "ManagerConfig",
    "assert_valid_config",
    "default_config",
    "merge_config",
    "validate_config",
]

"""
sqlite-open-helper — settings loader.

File: src/sqlite_open_helper/config/loader.py

Purpose
- Load effective settings from defaults, a TOML file, env vars, and
  programmatic overrides.

What should be included in this file
- Precedence logic: overrides > env (SQLITE_HELPER_) > file > defaults.
- TOML loading via ``tomllib``.
- Deterministic environment variable mapping and coercion.
- Path normalization relative to config file location.
"""

from __future__ import annotations

import os
import tomllib
from collections.abc import Iterator, Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Final, Literal

from sqlite_open_helper.config.schema import (
    PATH_FIELDS,
    CursorFactory,
    ErrorHandler,
    ManagerConfig,
    assert_valid_config,
    default_config,
    merge_config,
)
from sqlite_open_helper.errors import ConfigurationError
from sqlite_open_helper.observability.logging import LoggingConfig

DEFAULT_CONFIG_FILE: Final[str] = "sqlite_helper.toml"
ENV_PREFIX: Final[str] = "SQLITE_HELPER_"

_BOOLEAN_TRUE: Final[frozenset[str]] = frozenset({"1", "true", "t", "yes", "y", "on"})
_BOOLEAN_FALSE: Final[frozenset[str]] = frozenset({"0", "false", "f", "no", "n", "off"})

ValueKind = Literal["str", "int", "bool"]


@dataclass(frozen=True, slots=True)
class _Binding:
    path: tuple[str, ...]
    value_type: ValueKind


# Fields without a default that can still be supplied from the environment.
_OPTIONAL_BINDINGS: Final[tuple[_Binding, ...]] = (
    _Binding(("database", "name"), "str"),
    _Binding(("database", "storage_directory"), "str"),
    _Binding(("logging", "log_file"), "str"),
)


@dataclass(frozen=True, slots=True)
class HelperSettings:
    """Typed effective settings: one database plus logging output."""

    database: ManagerConfig
    logging: LoggingConfig


def load_config(
    config_path: str | Path | None = None,
    *,
    overrides: Mapping[str, object] | None = None,
    environ: Mapping[str, str] | None = None,
) -> dict[str, Any]:
    """Load the effective raw config: overrides > env > file > defaults."""

    resolved_path = _resolve_config_path(config_path)
    env_map = dict(os.environ if environ is None else environ)

    file_payload = _load_toml_file(resolved_path, required=config_path is not None)
    merged = merge_config(default_config(), file_payload)
    merged = assert_valid_config(merged)

    merged = merge_config(merged, _collect_env_overrides(merged, env_map))
    merged = merge_config(merged, _materialize_overrides(dict(overrides or {})))
    merged = assert_valid_config(merged)

    return normalize_paths(merged, base_dir=resolved_path.parent)


def load_settings(
    config_path: str | Path | None = None,
    *,
    overrides: Mapping[str, object] | None = None,
    environ: Mapping[str, str] | None = None,
    cursor_factory: CursorFactory | None = None,
    error_handler: ErrorHandler | None = None,
) -> HelperSettings:
    """Load config and build the typed settings used to construct an open helper."""

    config = load_config(config_path, overrides=overrides, environ=environ)
    database = ManagerConfig.from_mapping(
        config["database"],
        cursor_factory=cursor_factory,
        error_handler=error_handler,
    )
    logging_section = config["logging"]
    log_file = logging_section.get("log_file")
    return HelperSettings(
        database=database,
        logging=LoggingConfig(
            level=str(logging_section["level"]).upper(),
            json=bool(logging_section["json"]),
            log_file=None if log_file is None else Path(log_file),
        ),
    )


def normalize_paths(config: Mapping[str, object], *, base_dir: Path) -> dict[str, Any]:
    """Normalize configured path fields relative to ``base_dir``."""

    materialized = merge_config({}, config)
    for field_path in PATH_FIELDS:
        value = _get_nested(materialized, field_path)
        if isinstance(value, str):
            _set_nested(materialized, field_path, _normalize_one_path(value, base_dir))
    return materialized


def _resolve_config_path(config_path: str | Path | None) -> Path:
    if config_path is None:
        return (Path.cwd() / DEFAULT_CONFIG_FILE).resolve()
    return Path(config_path).expanduser().resolve()


def _load_toml_file(path: Path, *, required: bool) -> dict[str, Any]:
    if not path.exists():
        if required:
            raise ConfigurationError(f"config file not found: {path}")
        return {}

    try:
        with path.open("rb") as handle:
            parsed = tomllib.load(handle)
    except tomllib.TOMLDecodeError as exc:
        raise ConfigurationError(f"invalid TOML in {path}: {exc}") from exc
    except OSError as exc:
        raise ConfigurationError(f"unable to read config file {path}: {exc}") from exc

    return parsed


def _collect_env_overrides(
    config: Mapping[str, object], environ: Mapping[str, str]
) -> dict[str, Any]:
    overrides: dict[str, Any] = {}
    for env_name, binding in sorted(_env_bindings(config).items()):
        if env_name in environ:
            value = _coerce_env(environ[env_name], binding, env_name)
            _set_nested(overrides, binding.path, value)
    return overrides


def _env_bindings(config: Mapping[str, object]) -> dict[str, _Binding]:
    """Every scalar of the effective config plus the optional fields, keyed by env name."""

    return {
        _env_name_for_path(binding.path): binding
        for binding in (*_OPTIONAL_BINDINGS, *_scalar_bindings(config))
    }


def _scalar_bindings(
    payload: Mapping[str, object], prefix: tuple[str, ...] = ()
) -> Iterator[_Binding]:
    for key, value in payload.items():
        path = (*prefix, key)
        if isinstance(value, Mapping):
            yield from _scalar_bindings(value, path)
        elif isinstance(value, bool):
            yield _Binding(path, "bool")
        elif isinstance(value, int):
            yield _Binding(path, "int")
        elif isinstance(value, str):
            yield _Binding(path, "str")


def _coerce_env(raw: str, binding: _Binding, env_name: str) -> object:
    value = raw.strip()
    dotted = ".".join(binding.path)
    if binding.value_type == "str":
        return value
    if binding.value_type == "int":
        try:
            return int(value)
        except ValueError as exc:
            raise ConfigurationError(f"{env_name} -> {dotted} must be an integer") from exc

    lowered = value.lower()
    if lowered in _BOOLEAN_TRUE:
        return True
    if lowered in _BOOLEAN_FALSE:
        return False
    raise ConfigurationError(
        f"{env_name} -> {dotted} must be a boolean (true/false/1/0/yes/no/on/off)"
    )


def _materialize_overrides(overrides: Mapping[str, object]) -> dict[str, Any]:
    payload: dict[str, Any] = {}
    for key in sorted(overrides):
        value = overrides[key]
        path = tuple(part for part in key.split(".") if part)
        if not path:
            raise ConfigurationError(f"invalid override key {key!r}")
        if isinstance(value, Path):
            value = str(value)
        nested: dict[str, Any] = {}
        _set_nested(nested, path, value)
        payload = merge_config(payload, nested)
    return payload


def _set_nested(target: dict[str, Any], path: tuple[str, ...], value: object) -> None:
    cursor = target
    for part in path[:-1]:
        next_node = cursor.get(part)
        if not isinstance(next_node, dict):
            next_node = {}
            cursor[part] = next_node
        cursor = next_node
    cursor[path[-1]] = value


def _get_nested(payload: Mapping[str, object], path: tuple[str, ...]) -> object | None:
    cursor: object = payload
    for part in path:
        if not isinstance(cursor, Mapping) or part not in cursor:
            return None
        cursor = cursor[part]
    return cursor


def _normalize_one_path(raw: str, base_dir: Path) -> str:
    expanded = os.path.expandvars(raw)
    candidate = Path(expanded).expanduser()
    if not candidate.is_absolute():
        candidate = base_dir / candidate
    return Path(os.path.normpath(str(candidate))).as_posix()


def _env_name_for_path(path: tuple[str, ...]) -> str:
    return ENV_PREFIX + "_".join(part.upper() for part in path)


__all__ = [
    "DEFAULT_CONFIG_FILE",
    "ENV_PREFIX",
    "HelperSettings",
    "load_config",
    "load_settings",
    "normalize_paths",
]

"""
sqlite-open-helper config package public API.

File: src/sqlite_open_helper/config/__init__.py

Purpose
- Export settings loading/validation entrypoints and the immutable helper config.

Functional requirements
- Support loading from ``sqlite_helper.toml`` + ``SQLITE_HELPER_`` env overrides.
- Fail fast with clear structured validation errors.
"""

from sqlite_open_helper.config.loader import (
    DEFAULT_CONFIG_FILE,
    ENV_PREFIX,
    HelperSettings,
    load_config,
    load_settings,
    normalize_paths,
)
from sqlite_open_helper.config.schema import (
    PATH_FIELDS,
    ConfigValidationError,
    ConfigValidationIssue,
    ManagerConfig,
    assert_valid_config,
    default_config,
    merge_config,
    validate_config,
)

__all__ = [
    "DEFAULT_CONFIG_FILE",
    "ENV_PREFIX",
    "PATH_FIELDS",
    "ConfigValidationError",
    "ConfigValidationIssue",
    "HelperSettings",
    "ManagerConfig",
    "assert_valid_config",
    "default_config",
    "load_config",
    "load_settings",
    "merge_config",
    "normalize_paths",
    "validate_config",
]

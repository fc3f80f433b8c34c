"""Database file location: default application data directory and path resolution."""

from __future__ import annotations

import os
import platform
from pathlib import Path

from sqlite_open_helper.constants import DATABASES_DIR, DEFAULT_APP_NAME
from sqlite_open_helper.errors import ConfigurationError


def default_data_dir(app_name: str = DEFAULT_APP_NAME) -> Path:
    """Return the platform-appropriate private data directory for ``app_name``."""
    if platform.system() == "Windows":
        base = Path(os.environ.get("LOCALAPPDATA", Path.home() / "AppData" / "Local"))
    elif platform.system() == "Darwin":
        base = Path.home() / "Library" / "Application Support"
    else:
        xdg = os.environ.get("XDG_DATA_HOME")
        base = Path(xdg) if xdg else Path.home() / ".local" / "share"
    return base / app_name


def resolve_database_path(
    name: str,
    storage_directory: str | os.PathLike[str] | None = None,
    *,
    app_name: str = DEFAULT_APP_NAME,
) -> Path:
    """
    Return the absolute file path used for every open attempt.

    ``storage_directory`` is used verbatim when given; the caller is responsible
    for it existing and being writable. Otherwise the file lives in
    ``<default_data_dir(app_name)>/databases``. Nothing is created on disk.
    """

    if not isinstance(name, str) or not name.strip():
        raise ConfigurationError("database name must be a non-empty string")

    if storage_directory is not None:
        directory = Path(storage_directory).expanduser()
    else:
        directory = default_data_dir(app_name) / DATABASES_DIR
    return Path(os.path.abspath(directory / name))


__all__ = [
    "default_data_dir",
    "resolve_database_path",
]

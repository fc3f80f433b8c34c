"""Logging setup: stdlib handlers with JSON-lines or key=value output, fed by structlog."""

from __future__ import annotations

import json
import logging
import math
import sys
import threading
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Final

import structlog

JSONScalar = str | int | float | bool | None
JSONValue = JSONScalar | list["JSONValue"] | dict[str, "JSONValue"]

_DEFAULT_LOGGER_NAME: Final[str] = "sqlite_open_helper"
_TEXT_FORMAT: Final[str] = "%(asctime)s %(levelname)s %(name)s %(message)s"

_STANDARD_LOG_RECORD_FIELDS: Final[frozenset[str]] = frozenset(
    {
        "args",
        "asctime",
        "created",
        "exc_info",
        "exc_text",
        "filename",
        "funcName",
        "levelname",
        "levelno",
        "lineno",
        "message",
        "module",
        "msecs",
        "msg",
        "name",
        "pathname",
        "process",
        "processName",
        "relativeCreated",
        "stack_info",
        "thread",
        "threadName",
        "taskName",
    }
)

_ACTIVE_HANDLERS_LOCK = threading.Lock()
_ACTIVE_HANDLERS: list[tuple[str, logging.Handler]] = []


@dataclass(frozen=True, slots=True)
class LoggingConfig:
    """Output settings for helper lifecycle logs."""

    level: int | str = "INFO"
    json: bool = False
    log_file: Path | None = None
    log_to_stderr: bool = True
    logger_name: str = _DEFAULT_LOGGER_NAME


class _JsonLineFormatter(logging.Formatter):
    """Formatter that emits one canonical JSON object per log line."""

    def format(self, record: logging.LogRecord) -> str:
        event: dict[str, JSONValue] = {
            "timestamp": _iso8601z_from_epoch(record.created),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        extras = _extract_extra_fields(record)
        if extras:
            event["fields"] = extras
        if record.exc_info is not None:
            event["exception"] = self.formatException(record.exc_info)
        if record.stack_info:
            event["stack"] = str(record.stack_info)
        return json.dumps(event, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


class _KeyValueFormatter(logging.Formatter):
    """Human-readable formatter that appends structured fields as ``key=value`` pairs."""

    def __init__(self) -> None:
        super().__init__(_TEXT_FORMAT)

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        extras = _extract_extra_fields(record)
        if not extras:
            return line
        rendered = " ".join(
            f"{key}={json.dumps(value, sort_keys=True, ensure_ascii=False)}"
            for key, value in sorted(extras.items())
        )
        head, sep, tail = line.partition("\n")
        return f"{head} {rendered}{sep}{tail}"


def setup_logging(config: LoggingConfig | None = None) -> logging.Logger:
    """Install handlers on the package logger and route structlog through stdlib logging."""

    cfg = config if config is not None else LoggingConfig()
    level = _parse_log_level(cfg.level)
    shutdown_logging()

    formatter: logging.Formatter = _JsonLineFormatter() if cfg.json else _KeyValueFormatter()
    handlers: list[logging.Handler] = []
    if cfg.log_file is not None:
        log_path = Path(cfg.log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_path, encoding="utf-8"))
    if cfg.log_to_stderr:
        handlers.append(logging.StreamHandler(sys.stderr))

    logger = logging.getLogger(cfg.logger_name)
    logger.setLevel(level)
    logger.propagate = False
    for handler in handlers:
        handler.setLevel(level)
        handler.setFormatter(formatter)
        logger.addHandler(handler)

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.StackInfoRenderer(),
            structlog.stdlib.render_to_log_kwargs,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=False,
    )

    with _ACTIVE_HANDLERS_LOCK:
        _ACTIVE_HANDLERS.extend((logger.name, handler) for handler in handlers)
    return logger


def shutdown_logging() -> None:
    """Detach and close every handler installed by ``setup_logging``."""

    with _ACTIVE_HANDLERS_LOCK:
        installed = list(_ACTIVE_HANDLERS)
        _ACTIVE_HANDLERS.clear()

    for logger_name, handler in installed:
        logging.getLogger(logger_name).removeHandler(handler)
        handler.flush()
        handler.close()


def _parse_log_level(value: int | str) -> int:
    if isinstance(value, int):
        return value
    normalized = value.strip().upper()
    parsed = logging.getLevelName(normalized)
    if isinstance(parsed, int):
        return parsed
    raise ValueError(f"unsupported logging level {value!r}")


def _iso8601z_from_epoch(epoch_seconds: float) -> str:
    timestamp = datetime.fromtimestamp(epoch_seconds, tz=UTC)
    return timestamp.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _extract_extra_fields(record: logging.LogRecord) -> dict[str, JSONValue]:
    fields: dict[str, JSONValue] = {}
    for key, value in record.__dict__.items():
        if key in _STANDARD_LOG_RECORD_FIELDS or key.startswith("_"):
            continue
        fields[key] = _normalize_json_value(value)
    return fields


def _normalize_json_value(value: object) -> JSONValue:
    if value is None or isinstance(value, (bool, int, str)):
        return value
    if isinstance(value, float):
        return value if math.isfinite(value) else str(value)
    if isinstance(value, Path):
        return str(value)
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    if isinstance(value, dict):
        return {str(key): _normalize_json_value(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_normalize_json_value(item) for item in value]
    return repr(value)


__all__ = [
    "JSONScalar",
    "JSONValue",
    "LoggingConfig",
    "setup_logging",
    "shutdown_logging",
]

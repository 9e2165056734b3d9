"""Structured logging: structlog processors rendered as JSON lines, with redaction.

Component loggers are ``structlog`` bound loggers. ``configure_logging`` routes them
through stdlib ``logging`` so every event lands as one JSON object per line in
``<log_dir>/<run_id>/buildwave.jsonl``, optionally mirrored to stderr.

Line shape::

    {"timestamp": "...Z", "level": "INFO", "logger": "buildwave.x", "event": "name",
     "run_id": "...", "feature": "...", "fields": {...}}

Correlation keys (``run_id``, ``feature``, ``role``, ``phase``, ``stage``) sit at the top
level; every other keyword lands under ``fields``.
"""

from __future__ import annotations

import logging
import math
import re
from collections.abc import Callable, Mapping, MutableMapping
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path
from typing import Any, Final

import structlog

JSONScalar = str | int | float | bool | None
JSONValue = JSONScalar | list["JSONValue"] | dict[str, "JSONValue"]
LogRedactor = Callable[[JSONValue], JSONValue]
EventDict = MutableMapping[str, Any]

REDACTED: Final[str] = "***REDACTED***"
DEFAULT_LOG_FILENAME: Final[str] = "buildwave.jsonl"
ROOT_LOGGER_NAME: Final[str] = "buildwave"
CORRELATION_KEYS: Final[tuple[str, ...]] = ("run_id", "feature", "role", "phase", "stage")

_HEADER_KEYS: Final[tuple[str, ...]] = ("timestamp", "level", "logger", "event", "exception")
_LEVEL_ALIASES: Final[Mapping[str, str]] = {"warn": "WARNING", "exception": "ERROR"}

_SECRET_KEY_FRAGMENTS: Final[tuple[str, ...]] = (
    "secret",
    "token",
    "password",
    "passphrase",
    "api_key",
    "apikey",
    "authorization",
    "credential",
    "cookie",
    "private_key",
)
_INLINE_SECRET: Final[re.Pattern[str]] = re.compile(
    r"(?i)\b(api[_-]?key|token|password|secret|client_secret|authorization)\b\s*([:=])\s*"
    r"([^\s,;]+)"
)
_BEARER: Final[re.Pattern[str]] = re.compile(r"(?i)\bbearer\s+[A-Za-z0-9._~+/-]+=*")


@dataclass(frozen=True, slots=True)
class LoggingConfig:
    """Settings mirrored from the ``[observability]`` config section."""

    run_id: str
    base_log_dir: Path | str = Path(".buildwave/logs")
    level: int | str = "INFO"
    log_filename: str = DEFAULT_LOG_FILENAME
    log_to_console: bool = False
    redact_secrets: bool = True


@dataclass(slots=True)
class LoggingHandle:
    """Active logging setup; ``close()`` detaches and closes the sinks."""

    logger: logging.Logger
    run_id: str
    log_path: Path
    handlers: tuple[logging.Handler, ...]

    def flush(self) -> None:
        for handler in self.handlers:
            handler.flush()

    def close(self) -> None:
        for handler in self.handlers:
            handler.flush()
            self.logger.removeHandler(handler)
            handler.close()
        structlog.contextvars.unbind_contextvars("run_id")


def configure_logging(config: LoggingConfig) -> LoggingHandle:
    """Route structlog through stdlib logging into the per-run JSON-lines file."""
    run_id = config.run_id.strip()
    if not run_id:
        raise ValueError("run_id must not be empty")
    filename = config.log_filename.strip()
    if not filename or Path(filename).name != filename:
        raise ValueError("log_filename must be a bare file name")
    level = _level_number(config.level)

    log_dir = Path(config.base_log_dir) / run_id
    log_dir.mkdir(parents=True, exist_ok=True)
    log_path = log_dir / filename

    shared: list[Any] = [
        _add_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True, key="timestamp"),
        structlog.processors.format_exc_info,
        _shape_event,
    ]
    if config.redact_secrets:
        shared.append(_redact_event)

    formatter = structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=[structlog.stdlib.add_logger_name, *shared],
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            structlog.processors.JSONRenderer(
                sort_keys=True, separators=(",", ":"), ensure_ascii=False
            ),
        ],
    )
    handlers: list[logging.Handler] = [logging.FileHandler(log_path, encoding="utf-8")]
    if config.log_to_console:
        handlers.append(logging.StreamHandler())

    logger = logging.getLogger(ROOT_LOGGER_NAME)
    logger.setLevel(level)
    logger.propagate = False
    for stale in list(logger.handlers):
        logger.removeHandler(stale)
        stale.close()
    for handler in handlers:
        handler.setLevel(level)
        handler.setFormatter(formatter)
        logger.addHandler(handler)

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_logger_name,
            *shared,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.make_filtering_bound_logger(level),
        cache_logger_on_first_use=False,
    )
    structlog.contextvars.bind_contextvars(run_id=run_id)
    return LoggingHandle(logger=logger, run_id=run_id, log_path=log_path, handlers=tuple(handlers))


def default_log_redactor(value: JSONValue) -> JSONValue:
    """Deep redaction of secret-looking keys and inline credentials."""
    return _redact(value, key=None)


def _level_number(value: int | str) -> int:
    if isinstance(value, int):
        return value
    number = logging.getLevelName(value.strip().upper())
    if not isinstance(number, int):
        raise ValueError(f"unsupported logging level {value!r}")
    return number


def _add_level(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    event_dict["level"] = _LEVEL_ALIASES.get(method_name, method_name.upper())
    return event_dict


def _shape_event(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    """Lift header and correlation keys; everything else moves under ``fields``."""
    shaped: dict[str, Any] = {
        key: event_dict.pop(key) for key in _HEADER_KEYS if key in event_dict
    }
    shaped["event"] = str(shaped.get("event", ""))
    for key in CORRELATION_KEYS:
        value = event_dict.get(key)
        if isinstance(value, str) and value.strip():
            shaped[key] = value.strip()
            del event_dict[key]
        elif value is None:
            event_dict.pop(key, None)

    fields: dict[str, Any] = {}
    for key, value in event_dict.items():
        if key.startswith("_"):
            # ProcessorFormatter bookkeeping such as ``_record``.
            shaped[key] = value
        else:
            fields[key] = value
    if fields:
        shaped["fields"] = _to_json(fields)
    return shaped


def _redact_event(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    for key in ("event", "exception", "fields"):
        if key in event_dict:
            event_dict[key] = default_log_redactor(event_dict[key])
    return event_dict


def _to_json(value: object) -> JSONValue:
    if value is None or isinstance(value, (bool, int, str)):
        return value
    if isinstance(value, Enum):
        return _to_json(value.value)
    if isinstance(value, float):
        return value if math.isfinite(value) else str(value)
    if isinstance(value, datetime):
        moment = value if value.tzinfo is not None else value.replace(tzinfo=UTC)
        return moment.astimezone(UTC).isoformat().replace("+00:00", "Z")
    if isinstance(value, Path):
        return value.as_posix()
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    if isinstance(value, Mapping):
        return {str(key): _to_json(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_to_json(item) for item in value]
    if isinstance(value, (set, frozenset)):
        return sorted((_to_json(item) for item in value), key=repr)
    return repr(value)


def _redact(value: JSONValue, *, key: str | None) -> JSONValue:
    if key is not None and any(fragment in key.lower() for fragment in _SECRET_KEY_FRAGMENTS):
        return REDACTED
    if isinstance(value, str):
        masked = _INLINE_SECRET.sub(lambda match: f"{match[1]}{match[2]}{REDACTED}", value)
        return _BEARER.sub(f"Bearer {REDACTED}", masked)
    if isinstance(value, list):
        return [_redact(item, key=None) for item in value]
    if isinstance(value, dict):
        return {name: _redact(item, key=name) for name, item in value.items()}
    return value


__all__ = [
    "CORRELATION_KEYS",
    "JSONValue",
    "LogRedactor",
    "LoggingConfig",
    "LoggingHandle",
    "configure_logging",
    "default_log_redactor",
]

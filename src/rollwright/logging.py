"""Structured logging for Rollwright.

structlog renders every event (JSON for machines, console for people) and
stdlib logging owns the output handler, so a rotating log file works the
same as stdout. Two kinds of context ride along on each line:

- the request correlation id, set by the web middleware for the life of one
  HTTP request (a webhook delivery can be followed into the releases it
  queued);
- the release context (``unit``, ``commit_id``, ``release_id``), bound by the
  unit worker for the release it is currently driving.

Example usage:
    >>> from rollwright.config import LoggingConfig
    >>> from rollwright.logging import setup_logging, get_logger, bind_release_context
    >>>
    >>> setup_logging(LoggingConfig(level="INFO", format="json"))
    >>> logger = get_logger(__name__)
    >>> bind_release_context(unit="shop", commit_id="c1", release_id="r-1")
    >>> logger.info("release_started", state="pending")
"""

from __future__ import annotations

import contextvars
import logging
import logging.handlers
import sys
from typing import Any

import structlog

from rollwright.config import LoggingConfig

_RELEASE_KEYS = ("unit", "commit_id", "release_id")

_correlation_id: contextvars.ContextVar[str | None] = contextvars.ContextVar(
    "rollwright_correlation_id", default=None
)


def add_correlation_id(
    logger: Any, method_name: str, event_dict: dict[str, Any]
) -> dict[str, Any]:
    """structlog processor copying the request correlation id into the event."""
    correlation_id = _correlation_id.get()
    if correlation_id is not None:
        event_dict.setdefault("correlation_id", correlation_id)
    return event_dict


def set_correlation_id(correlation_id: str | None) -> None:
    _correlation_id.set(correlation_id)


def get_correlation_id() -> str | None:
    return _correlation_id.get()


def bind_release_context(
    unit: str, commit_id: str | None = None, release_id: str | None = None
) -> None:
    """Attach release context to every later log line of the current task.

    Unit workers run as separate asyncio tasks, and each task has its own
    copy of the context, so one unit's binding never shows up in another's
    logs.

    Args:
        unit: Deployable unit name
        commit_id: Commit being released, if any
        release_id: Release identifier, if any
    """
    structlog.contextvars.bind_contextvars(
        **dict(zip(_RELEASE_KEYS, (unit, commit_id, release_id)))
    )


def clear_release_context() -> None:
    structlog.contextvars.unbind_contextvars(*_RELEASE_KEYS)


def _output_handler(config: LoggingConfig) -> logging.Handler:
    if config.file is None:
        return logging.StreamHandler(sys.stdout)
    config.file.parent.mkdir(parents=True, exist_ok=True)
    return logging.handlers.RotatingFileHandler(
        filename=config.file,
        maxBytes=config.rotation_size_mb * 1024 * 1024,
        backupCount=config.retention_count,
        encoding="utf-8",
    )


def _renderer(log_format: str) -> Any:
    if log_format == "console":
        return structlog.dev.ConsoleRenderer()
    return structlog.processors.JSONRenderer()


def setup_logging(config: LoggingConfig) -> None:
    """Install the root handler and configure structlog.

    Calling it again replaces the previous handler, so the CLI can switch
    to debug output after the configuration has been loaded.

    Args:
        config: Logging section of RollwrightConfig
    """
    level = logging.getLevelName(config.level)

    handler = _output_handler(config)
    handler.setLevel(level)
    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(level)

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            add_correlation_id,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            _renderer(config.format),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=structlog.stdlib.LoggerFactory(),
        context_class=dict,
        cache_logger_on_first_use=True,
    )


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Return a structlog logger named after the calling module."""
    return structlog.get_logger(name)

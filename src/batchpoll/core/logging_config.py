"""Central logging configuration utilities.

A single composition-root driven `configure_logging` wires separate
stdout/stderr sinks and injects a correlation id into all log records.
Adapters and domain code never mutate global logging; they only emit via
`LoggingPort`. The poll orchestrator sets a fresh correlation id for every
tick so all lines produced by one pass can be grouped.
"""

from __future__ import annotations

import logging
import sys
import uuid
from typing import Optional
import contextvars

# Correlation id context variable (populated per tick by the orchestrator)
correlation_id_var: contextvars.ContextVar[str] = contextvars.ContextVar(
    "correlation_id", default="-"
)

DEFAULT_FORMAT = (
    "[%(asctime)s] %(levelname)s %(name)s %(correlation_id)s: %(message)s"
)


def new_correlation_id() -> str:
    return uuid.uuid4().hex[:12]


def coerce_level(level: int | str | None) -> int:
    if level is None:
        return logging.INFO
    if isinstance(level, int):
        return level
    key = str(level).upper().strip()
    mapping = logging.getLevelNamesMapping()
    return mapping.get(key, logging.INFO)


class _CorrelationIdFilter(logging.Filter):
    """Inject correlation id from contextvar into every log record."""

    def filter(self, record: logging.LogRecord) -> bool:  # pragma: no cover - simple
        record.correlation_id = correlation_id_var.get()
        return True


class _MaxLevelFilter(logging.Filter):
    def __init__(self, max_level: int):
        super().__init__()
        self.max_level = max_level

    def filter(self, record: logging.LogRecord) -> bool:  # pragma: no cover
        return record.levelno <= self.max_level


class _MinLevelFilter(logging.Filter):
    def __init__(self, min_level: int):
        super().__init__()
        self.min_level = min_level

    def filter(self, record: logging.LogRecord) -> bool:  # pragma: no cover
        return record.levelno >= self.min_level


def configure_logging(
    level: int | str | None = None,
    fmt: Optional[str] = None,
    quiet_loggers: tuple[str, ...] = ("aiohttp.access", "sqlalchemy.engine"),
) -> None:
    """Configure root logger with separate stdout/stderr sinks & correlation id.

    Existing root handlers are removed first so repeated calls (tests,
    reloads) do not duplicate output. Loggers listed in `quiet_loggers` are
    raised to WARNING.
    """
    numeric_level = coerce_level(level)
    fmt = fmt or DEFAULT_FORMAT

    root = logging.getLogger()
    root.setLevel(numeric_level)

    # Clear existing handlers to avoid duplication on reload
    for h in list(root.handlers):
        root.removeHandler(h)

    formatter = logging.Formatter(fmt)
    cid_filter = _CorrelationIdFilter()

    # stdout handler for DEBUG/INFO
    stdout_handler = logging.StreamHandler(stream=sys.stdout)
    stdout_handler.setLevel(logging.DEBUG)
    stdout_handler.addFilter(_MaxLevelFilter(logging.INFO))
    stdout_handler.addFilter(cid_filter)
    stdout_handler.setFormatter(formatter)

    # stderr handler for WARNING+
    stderr_handler = logging.StreamHandler(stream=sys.stderr)
    stderr_handler.setLevel(logging.WARNING)
    stderr_handler.addFilter(_MinLevelFilter(logging.WARNING))
    stderr_handler.addFilter(cid_filter)
    stderr_handler.setFormatter(formatter)

    root.addHandler(stdout_handler)
    root.addHandler(stderr_handler)

    for name in quiet_loggers:
        logging.getLogger(name).setLevel(logging.WARNING)

    logging.getLogger("batchpoll").debug(
        "Logging configured level=%s quiet_loggers=%s", numeric_level, quiet_loggers
    )

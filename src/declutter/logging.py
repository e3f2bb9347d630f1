"""Structured logging helpers for Declutter.

File log lines carry the id of the run that produced them, and every audited
mailbox mutation is also written to a separate ``actions.log``.
"""

from __future__ import annotations

import contextvars
import logging
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from logging.handlers import RotatingFileHandler
from pathlib import Path

from .config import ConfigError, LoggingConfig

FILE_FORMAT = "%(asctime)s %(levelname)s [run=%(run_id)s] %(name)s: %(message)s"
MAIN_LOG_NAME = "declutter.log"
DEBUG_LOG_NAME = "debug.log"
ACTIONS_LOG_NAME = "actions.log"
ACTIONS_LOGGER = "declutter.ledger"
ACTIONS_HANDLER_NAME = "declutter-actions"

_RUN_ID: contextvars.ContextVar[str] = contextvars.ContextVar("declutter_run_id", default="-")


@contextmanager
def run_context(run_id: str | None) -> Iterator[None]:
    """Tag log records emitted inside the block with ``run_id``."""

    token = _RUN_ID.set(run_id or "-")
    try:
        yield
    finally:
        _RUN_ID.reset(token)


class RunContextFilter(logging.Filter):
    """Attach the current run id to every record passing through a handler."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.run_id = _RUN_ID.get()
        return True


class ConsoleFormatter(logging.Formatter):
    """Formatter that prepends colourised level symbols."""

    SYMBOLS: dict[int, tuple[str, str]] = {
        logging.DEBUG: ("D", "\x1b[36m"),
        logging.INFO: ("I", "\x1b[32m"),
        logging.WARNING: ("!", "\x1b[33m"),
        logging.ERROR: ("X", "\x1b[31m"),
        logging.CRITICAL: ("X", "\x1b[35m"),
    }

    RESET = "\x1b[0m"

    def __init__(self, use_color: bool) -> None:
        super().__init__("%(message)s")
        self.use_color = use_color

    def format(self, record: logging.LogRecord) -> str:
        symbol, color = self.SYMBOLS.get(record.levelno, ("?", "\x1b[37m"))
        base_message = super().format(record)
        if self.use_color:
            return f"{color}{symbol}{self.RESET} {base_message}"
        return f"{symbol} {base_message}"


def configure_logging(logging_config: LoggingConfig, root_dir: Path) -> None:
    """Initialise logging handlers."""

    level = level_from_string(logging_config.level)
    log_dir = (root_dir / "logs").expanduser()
    log_dir.mkdir(parents=True, exist_ok=True)

    handlers: list[logging.Handler] = [
        _build_file_handler(log_dir / MAIN_LOG_NAME, level=logging.INFO),
        _build_console_handler(),
    ]
    if logging_config.debug_file:
        handlers.append(_build_file_handler(log_dir / DEBUG_LOG_NAME, level=logging.DEBUG))

    logging.basicConfig(level=level, handlers=handlers, force=True)
    _install_actions_handler(log_dir / ACTIONS_LOG_NAME)
    # googleapiclient logs every discovery lookup at INFO.
    logging.getLogger("googleapiclient.discovery_cache").setLevel(logging.ERROR)


def level_from_string(level: str) -> int:
    normalized = level.strip().upper()
    mapping = {
        "DEBUG": logging.DEBUG,
        "INFO": logging.INFO,
        "WARNING": logging.WARNING,
        "WARN": logging.WARNING,
        "ERROR": logging.ERROR,
        "CRITICAL": logging.CRITICAL,
    }
    try:
        return mapping[normalized]
    except KeyError as exc:
        raise ConfigError(f"Unknown log level: {level}") from exc


def _build_file_handler(path: Path, level: int) -> logging.Handler:
    handler = RotatingFileHandler(path, maxBytes=5_000_000, backupCount=5)
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter(FILE_FORMAT))
    handler.addFilter(RunContextFilter())
    return handler


def _install_actions_handler(path: Path) -> None:
    # At most one actions handler stays attached across repeated calls.
    actions = logging.getLogger(ACTIONS_LOGGER)
    for existing in list(actions.handlers):
        if existing.get_name() == ACTIONS_HANDLER_NAME:
            actions.removeHandler(existing)
            existing.close()
    handler = _build_file_handler(path, level=logging.INFO)
    handler.set_name(ACTIONS_HANDLER_NAME)
    actions.addHandler(handler)


def _build_console_handler() -> logging.Handler:
    handler = logging.StreamHandler(sys.stderr)
    handler.setLevel(logging.DEBUG)
    handler.setFormatter(ConsoleFormatter(_stream_supports_color(handler)))
    return handler


def _stream_supports_color(handler: logging.Handler) -> bool:
    stream = getattr(handler, "stream", None)
    return bool(getattr(stream, "isatty", lambda: False)())


__all__ = [
    "ConsoleFormatter",
    "RunContextFilter",
    "configure_logging",
    "level_from_string",
    "run_context",
]

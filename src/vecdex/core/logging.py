"""Logging helpers for :mod:`vecdex`."""

from __future__ import annotations

import gzip
import logging
from logging.handlers import TimedRotatingFileHandler
from pathlib import Path
import shutil
from typing import Any, Iterable

from rich.console import Console
from rich.logging import RichHandler
import structlog
from structlog.typing import EventDict, WrappedLogger

from vecdex.core.secrets import SecureCredential

Logger = structlog.stdlib.BoundLogger

_CONSOLE_PROCESSOR = structlog.dev.ConsoleRenderer(colors=False)
_FILE_PROCESSOR = structlog.processors.JSONRenderer(sort_keys=True)
_TIMESTAMPER = structlog.processors.TimeStamper(fmt="iso", utc=True)

_ROTATION_BACKUP_COUNT = 7
_DEFAULT_LOG_FILENAME = "vecdex.log"

_SECRET_KEYS = frozenset({"api_key", "password", "secret", "token"})
_REDACTED = "***"


def _redact_secrets(
    logger: WrappedLogger,
    method_name: str,
    event_dict: EventDict,
) -> EventDict:
    """Mask credential values and well-known secret keys in ``event_dict``."""

    for key, value in event_dict.items():
        if isinstance(value, SecureCredential) or (
            key in _SECRET_KEYS and value is not None
        ):
            event_dict[key] = _REDACTED
    return event_dict


_PRE_CHAIN = [
    structlog.contextvars.merge_contextvars,
    structlog.stdlib.add_log_level,
    _TIMESTAMPER,
    _redact_secrets,
]


def _normalize_level(level: str | int) -> int:
    """Return the logging module level constant for ``level``.

    Raises:
        ValueError: If the level name is not recognized.
    """

    if isinstance(level, int):
        return level
    normalized = level.strip().upper()
    value = logging.getLevelName(normalized)
    if isinstance(value, str):  # ``getLevelName`` echoes unknown names.
        raise ValueError(f"Unsupported log level: {level!r}")
    return value


def _install_handlers(
    logger: logging.Logger,
    handlers: Iterable[logging.Handler],
) -> None:
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()
    for handler in handlers:
        logger.addHandler(handler)


def _configure_structlog() -> None:
    structlog.reset_defaults()
    structlog.configure(
        processors=[
            *_PRE_CHAIN,
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


def _gzip_rotator(source: str, dest: str) -> None:
    with open(source, "rb") as src, gzip.open(dest, "wb") as target:
        shutil.copyfileobj(src, target)
    Path(source).unlink(missing_ok=True)


def _build_file_handler(log_file: Path, level: int) -> TimedRotatingFileHandler:
    """Return a midnight-rotating JSON handler with gzip archives."""

    handler = TimedRotatingFileHandler(
        log_file,
        when="midnight",
        backupCount=_ROTATION_BACKUP_COUNT,
        utc=True,
        encoding="utf-8",
        delay=True,
    )
    handler.setLevel(level)
    handler.suffix = "%Y-%m-%d"
    handler.namer = lambda name: f"{name}.gz"
    handler.rotator = _gzip_rotator
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            processor=_FILE_PROCESSOR,
            foreign_pre_chain=_PRE_CHAIN,
        )
    )
    return handler


def _build_console_handler(
    level: int,
    console: Console | None = None,
) -> RichHandler:
    handler = RichHandler(
        console=console or Console(stderr=True),
        rich_tracebacks=True,
        show_path=False,
        markup=False,
        enable_link_path=False,
        log_time_format="%Y-%m-%d %H:%M:%S",
    )
    handler.setLevel(level)
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            processor=_CONSOLE_PROCESSOR,
            foreign_pre_chain=_PRE_CHAIN,
        )
    )
    return handler


def configure_logging(
    *,
    level: str | int = "INFO",
    log_dir: str | Path | None = None,
    console: Console | None = None,
) -> Path | None:
    """Configure structlog on top of stdlib logging.

    A Rich console handler is always installed. When ``log_dir`` is given, a
    JSON file handler writing ``vecdex.log`` is added as well.

    Args:
        level: Log level name or number for the root logger.
        log_dir: Optional directory receiving the rotating JSON log file.
        console: Optional Rich console override, primarily for testing.

    Returns:
        The log file path when file logging is enabled, otherwise ``None``.

    Raises:
        ValueError: If ``level`` is not a recognized log level name.
    """

    log_level = _normalize_level(level)

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)

    _configure_structlog()

    handlers: list[logging.Handler] = [
        _build_console_handler(log_level, console=console)
    ]

    log_file: Path | None = None
    if log_dir is not None:
        directory = Path(log_dir).expanduser().resolve(strict=False)
        directory.mkdir(parents=True, exist_ok=True)
        log_file = directory / _DEFAULT_LOG_FILENAME
        handlers.append(_build_file_handler(log_file, log_level))

    _install_handlers(root_logger, handlers)
    logging.captureWarnings(True)
    return log_file


def get_logger(name: str | None = None, **initial_context: Any) -> Logger:
    """Return a structured logger bound to an optional context.

    Example:
        >>> logger = get_logger(__name__, component="pool")
        >>> logger.debug("pool-ready", size=4)
    """

    return structlog.get_logger(name).bind(**initial_context)


__all__ = ["Logger", "configure_logging", "get_logger"]

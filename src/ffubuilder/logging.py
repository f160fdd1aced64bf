"""
Structured logging for ffubuilder using structlog.

Everything goes through stdlib ``logging`` so third-party libraries (urllib3
under requests) land in the same handlers. Files always receive JSON lines;
the console gets either the dev renderer or JSON.
"""

import logging
import sys
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Any, List, Optional

import structlog

# Event keys whose values never reach a log sink.
SECRET_KEYS = frozenset({"password", "vmrest_password", "secret", "token", "authorization"})
REDACTED = "***"

NOISY_LOGGERS = ("urllib3", "requests")


def redact_secrets(logger: Any, method_name: str, event_dict: dict) -> dict:
    """structlog processor masking credential values (vmrest password, capture share password)."""
    for key in list(event_dict):
        if key.lower() in SECRET_KEYS and event_dict[key] is not None:
            event_dict[key] = REDACTED
    return event_dict


def _level_number(level: str) -> int:
    number = logging.getLevelName(level.upper())
    if not isinstance(number, int):
        raise ValueError(f"Unknown log level: {level}")
    return number


def _shared_processors() -> List[Any]:
    return [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.stdlib.PositionalArgumentsFormatter(),
        redact_secrets,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]


def _handler(stream_or_file, renderer, shared: List[Any]) -> logging.Handler:
    if isinstance(stream_or_file, Path):
        stream_or_file.parent.mkdir(parents=True, exist_ok=True)
        handler: logging.Handler = logging.FileHandler(stream_or_file, encoding="utf-8")
    else:
        handler = logging.StreamHandler(stream_or_file)
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(processor=renderer, foreign_pre_chain=shared)
    )
    return handler


def configure_logging(
    level: str = "INFO",
    json_output: bool = False,
    log_file: Optional[Path] = None,
    console_output: bool = True,
) -> None:
    """
    Configure structured logging for a build host.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR)
        json_output: If True, render console output as JSON
        log_file: Optional file path; file output is always JSON
        console_output: If True, also log to stderr

    Raises:
        ValueError: unknown level name
    """
    level_number = _level_number(level)
    shared = _shared_processors()

    structlog.configure(
        processors=shared + [structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    handlers: List[logging.Handler] = []
    if console_output:
        if json_output:
            console_renderer = structlog.processors.JSONRenderer()
        else:
            console_renderer = structlog.dev.ConsoleRenderer(
                colors=sys.stderr.isatty(),
                exception_formatter=structlog.dev.plain_traceback,
            )
        handlers.append(_handler(sys.stderr, console_renderer, shared))
    if log_file:
        handlers.append(_handler(log_file, structlog.processors.JSONRenderer(), shared))

    logging.basicConfig(format="%(message)s", level=level_number, handlers=handlers, force=True)

    # vmrest polling logs every connection at DEBUG.
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(level_number, logging.WARNING))


def get_logger(name: str = "ffubuilder") -> structlog.stdlib.BoundLogger:
    """Get a structured logger instance."""
    return structlog.get_logger(name)


def bind_build_context(build: str, provider: str) -> None:
    """Tag every log line emitted on the current thread with the build and provider."""
    structlog.contextvars.bind_contextvars(build=build, provider=provider)


def clear_build_context() -> None:
    structlog.contextvars.clear_contextvars()


@contextmanager
def log_operation(logger: structlog.stdlib.BoundLogger, operation: str, **kwargs):
    """
    Log ``<operation>.started`` and then ``.completed`` or ``.failed`` with the elapsed time.

    Usage:
        with log_operation(log, "phase.PrepareDisk", disk="C:/FFUDevelopment/VM/_FFU.vhdx"):
            ...
    """
    log = logger.bind(operation=operation, **kwargs)
    started = time.monotonic()
    log.info(f"{operation}.started")

    try:
        yield log
    except Exception as e:
        log.error(
            f"{operation}.failed",
            error=str(e),
            error_type=type(e).__name__,
            duration_ms=round((time.monotonic() - started) * 1000, 2),
        )
        raise
    log.info(f"{operation}.completed", duration_ms=round((time.monotonic() - started) * 1000, 2))

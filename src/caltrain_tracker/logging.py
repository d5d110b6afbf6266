"""Structured logging for the tracker's services and command line."""

import logging
import sys
from typing import TextIO

import structlog

HANDLER_NAME = "caltrain_tracker"

# Lowered to WARNING; their per-request INFO lines drown out tracker events
QUIET_LOGGERS = ("httpx", "httpcore", "apscheduler")


def _renderer(log_format: str, stream: TextIO) -> list[structlog.types.Processor]:
    if log_format.lower() == "json":
        return [structlog.processors.dict_tracebacks, structlog.processors.JSONRenderer()]
    return [structlog.dev.ConsoleRenderer(colors=stream.isatty())]


def configure_logging(
    log_level: str = "INFO",
    log_format: str = "json",
    stream: TextIO | None = None,
) -> None:
    """Route structlog and stdlib logging through one handler.

    Calling this again replaces the handler installed by the previous call
    and leaves handlers installed by anything else alone.

    Args:
        log_level: Logging level name; unknown names fall back to INFO.
        log_format: 'json' for the background refresher, 'text' for terminals.
        stream: Destination, stderr by default so stdout carries only command output.
    """
    stream = stream or sys.stderr
    level = logging.getLevelNamesMapping().get(log_level.upper(), logging.INFO)

    shared_processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]

    structlog.configure(
        processors=[*shared_processors, structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    handler = logging.StreamHandler(stream)
    handler.set_name(HANDLER_NAME)
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            foreign_pre_chain=shared_processors,
            processors=[
                structlog.stdlib.ProcessorFormatter.remove_processors_meta,
                *_renderer(log_format, stream),
            ],
        )
    )

    root_logger = logging.getLogger()
    for existing in list(root_logger.handlers):
        if existing.get_name() == HANDLER_NAME:
            root_logger.removeHandler(existing)
    root_logger.addHandler(handler)
    root_logger.setLevel(level)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def bind_command(command: str) -> None:
    """Tag every event logged from here on with the CLI command being run."""
    structlog.contextvars.clear_contextvars()
    structlog.contextvars.bind_contextvars(command=command)


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    logger: structlog.stdlib.BoundLogger = structlog.get_logger(name)
    return logger

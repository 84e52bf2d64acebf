"""Logging configuration and utilities."""

import sys
import logging
import logging.handlers
from pathlib import Path
from typing import Any, Callable, Dict
import structlog
from structlog.stdlib import LoggerFactory

from btc_graph.models.config import ImporterConfig

EventDict = Dict[str, Any]


def filter_by_verbosity(verbose: int) -> Callable[[Any, str, EventDict], EventDict]:
    """
    Drop events tagged with a ``verbosity`` above the configured ``-v`` count.

    Per-entity events (transactions, inputs, outputs, addresses) pass
    ``verbosity=n`` so that a plain run only reports block-level progress.
    """
    def processor(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
        level = event_dict.pop("verbosity", 0)
        if level > verbose:
            raise structlog.DropEvent
        return event_dict

    return processor


def strip_payloads(debug: int) -> Callable[[Any, str, EventDict], EventDict]:
    """Keep ``payload`` attachments (raw RPC documents) only in debug mode."""
    def processor(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
        if debug < 1:
            event_dict.pop("payload", None)
        return event_dict

    return processor


def strip_tracebacks(debug: int) -> Callable[[Any, str, EventDict], EventDict]:
    """Render tracebacks only at debug level 2; otherwise keep the message."""
    def processor(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
        if debug < 2:
            exc_info = event_dict.pop("exc_info", None)
            if exc_info and "error" not in event_dict:
                error = exc_info[1] if isinstance(exc_info, tuple) else exc_info
                if isinstance(error, BaseException):
                    event_dict["error"] = str(error)
        return event_dict

    return processor


def setup_logging(config: ImporterConfig) -> None:
    """Setup structured logging with the specified configuration."""

    # Configure standard library logging
    logging.basicConfig(
        level=getattr(logging, config.log_level.upper()),
        format="%(message)s",
        stream=sys.stdout,
    )

    # Create log directory if specified
    if config.log_file:
        log_path = Path(config.log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)

    processors = [
        structlog.stdlib.filter_by_level,
        filter_by_verbosity(config.verbose),
        strip_payloads(config.debug),
        strip_tracebacks(config.debug),
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="ISO"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]

    if config.log_format.lower() == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty()))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    # Setup file logging if specified
    if config.log_file:
        file_handler = logging.handlers.RotatingFileHandler(
            config.log_file,
            maxBytes=config.log_max_size_mb * 1024 * 1024,
            backupCount=config.log_backup_count
        )
        file_handler.setLevel(getattr(logging, config.log_level.upper()))

        root_logger = logging.getLogger()
        root_logger.addHandler(file_handler)


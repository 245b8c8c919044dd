"""
Structured logging configuration.

All modules log through structlog with snake_case event names and key/value
context (``service=``, ``deployment=`` ...). ``configure_logging`` is called
once by the CLI; library users may skip it and get structlog's defaults.
"""
import logging
import sys
from typing import Any, List, Optional

import structlog


def configure_logging(level: str = "info", format: str = "console", log_file: Optional[str] = None) -> None:
    """
    Configures structlog on top of stdlib logging.

    :param level: One of debug, info, warning, error, critical.
    :param format: ``console`` for human-readable output, ``json`` for structured lines.
    :param log_file: Optional file receiving the same records.
    """
    shared_processors: List[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
    ]

    if format == "json":
        renderer: Any = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty())

    structlog.configure(
        processors=[
            *shared_processors,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    formatter = structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=shared_processors,
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            renderer,
        ],
    )

    # Operator output goes to stdout, diagnostics to stderr.
    handlers: List[logging.Handler] = []
    stream_handler = logging.StreamHandler(sys.stderr)
    stream_handler.setFormatter(formatter)
    handlers.append(stream_handler)

    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(formatter)
        handlers.append(file_handler)

    root_logger = logging.getLogger()
    root_logger.handlers = handlers
    root_logger.setLevel(level.upper())


def get_logger(name: str) -> Any:
    """
    Returns a structlog logger for ``name``.

    Usage::

        log = get_logger(__name__)
        log.info("service_started", service="db", attempt=1)
    """
    return structlog.get_logger(name)


def bind_deployment(deployment: str) -> None:
    """Binds the deployment name to every record of the current thread/context."""
    structlog.contextvars.bind_contextvars(deployment=deployment)

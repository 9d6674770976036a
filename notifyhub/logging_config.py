"""
Structured logging configuration using structlog.

All logs are output as JSON with consistent context fields
(message_id, provider, channel, job).
"""
import structlog
import logging
import sys


def configure_logging(level: str = "INFO", json_output: bool = True):
    """Configure structlog for JSON output with context."""
    log_level = logging.getLevelName(level.upper())
    if not isinstance(log_level, int):
        log_level = logging.INFO

    # Configure standard library logging (arq, sqlalchemy, httpx log through it)
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=log_level,
    )

    renderer = structlog.processors.JSONRenderer() if json_output else structlog.dev.ConsoleRenderer()

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )

    return structlog.get_logger()


def get_logger(**context):
    """
    Get a logger with additional context bound.

    Usage:
        log = get_logger(message_id=message.id, provider="beem")
        log.info("message_sent", external_id=external_id)
    """
    return structlog.get_logger().bind(**context)

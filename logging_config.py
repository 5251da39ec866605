"""Structured logging setup shared by the API and its routers."""

import logging
import sys

import structlog
from structlog.contextvars import merge_contextvars

import config

_configured = False


def configure_logging(level: str = None, json_logs: bool = None) -> None:
    global _configured
    if _configured:
        return

    level = (level or config.LOG_LEVEL).upper()
    if json_logs is None:
        json_logs = config.is_production()

    processors = [
        merge_contextvars,
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]
    if json_logs:
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=getattr(logging, level, logging.INFO))

    if config.is_production():
        logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
        logging.getLogger("pymongo").setLevel(logging.WARNING)

    _configured = True

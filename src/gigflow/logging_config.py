"""structlog setup for the worker, the simulation and Alembic runs.

Every record carries the service name and environment, plus whatever the
caller bound into contextvars (the job worker binds `worker_id` for the
duration of a drain cycle). Production renders one JSON object per line;
development renders coloured key/value output.

Usage:
    from gigflow.logging_config import configure_logging, get_logger
    configure_logging(settings)
    logger = get_logger(__name__)
    logger.info("escrow.transitioned", task_id="abc-123", to_state="funded")
"""

from __future__ import annotations

import logging
import sys
from typing import TYPE_CHECKING

import structlog

if TYPE_CHECKING:
    from gigflow.config import Settings

SERVICE_NAME = "gigflow"

# create_engine(echo=True) still logs SQL; echo bypasses the logger level.
QUIET_LOGGERS = ("sqlalchemy.engine", "sqlalchemy.pool", "aiosqlite", "asyncio")


def _static_fields(service: str, environment: str) -> structlog.types.Processor:
    def add_fields(_logger, _method, event_dict):
        event_dict.setdefault("service", service)
        event_dict.setdefault("env", environment)
        return event_dict

    return add_fields


def setup_logging(
    log_level: str = "INFO",
    json_logs: bool = False,
    *,
    environment: str = "development",
) -> None:
    """Route structlog and stdlib logging through one stdout handler."""
    shared: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        _static_fields(SERVICE_NAME, environment),
        structlog.processors.StackInfoRenderer(),
    ]
    if json_logs:
        renderer: structlog.types.Processor = structlog.processors.JSONRenderer()
        shared.append(structlog.processors.format_exc_info)
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty())

    structlog.configure(
        processors=[*shared, structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            foreign_pre_chain=shared,
            processors=[structlog.stdlib.ProcessorFormatter.remove_processors_meta, renderer],
        )
    )
    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(getattr(logging, log_level.upper(), logging.INFO))

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def configure_logging(settings: Settings) -> None:
    """setup_logging() driven by Settings: JSON everywhere except development."""
    setup_logging(
        log_level=settings.app_log_level,
        json_logs=not settings.is_development,
        environment=settings.app_env,
    )


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)

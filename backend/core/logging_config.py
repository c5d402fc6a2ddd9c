"""Service logging for the workflow runtime.

structlog renders both structlog and stdlib records: JSON in production,
console output in development or with ``LOG_FORMAT=text``.

This is the service log. The per-run log users see lives on the shared
store and is mirrored here at debug level. While a run executes, the engine
binds ``execution_id``, ``workflow_id`` and ``node_id`` as context vars, so
every line emitted from inside a run carries them.
"""

import logging
import sys
from typing import Optional

import structlog

from app.config import Settings, get_settings

# Third-party loggers kept at WARNING unless asked otherwise
QUIET_LOGGERS = ("uvicorn.access", "aiosqlite")


def build_renderer(settings: Settings):
    if settings.is_development or settings.LOG_FORMAT == "text":
        return structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty())
    return structlog.processors.JSONRenderer()


def setup_logging(settings: Optional[Settings] = None) -> None:
    """Configure structlog and route stdlib logging through it."""
    settings = settings or get_settings()

    shared_processors: list = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]

    structlog.configure(
        processors=[*shared_processors, structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    # api/ and core/ log through stdlib; same renderer, same run context
    formatter = structlog.stdlib.ProcessorFormatter(
        processors=[structlog.stdlib.ProcessorFormatter.remove_processors_meta, build_renderer(settings)],
        foreign_pre_chain=shared_processors,
    )
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    root_logger.setLevel(getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO))

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.DEBUG if settings.SQLALCHEMY_ECHO else logging.WARNING)

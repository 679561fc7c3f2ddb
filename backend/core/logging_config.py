"""Logging setup for the automation engine, built on structlog.

Stdlib loggers (engine, scheduler, services) and structlog loggers (step
handlers, integrations) share one formatter, so both carry the run ids
bound with ``run_log_context`` and both pass through credential redaction.
"""

import logging
import sys
from contextlib import AbstractContextManager

import structlog
from app.config import get_settings

REDACTED = "***"

# Event keys that may hold integration credentials or auth material
SENSITIVE_KEYS = frozenset({
    "api_key",
    "auth_header",
    "authorization",
    "client_secret",
    "credentials",
    "password",
    "secret",
    "token",
})

QUIET_LOGGERS = ("httpx", "httpcore", "aiosqlite")


def redact_sensitive(logger, method_name: str, event_dict: dict) -> dict:
    """structlog processor masking top-level credential fields."""
    for key in event_dict.keys() & SENSITIVE_KEYS:
        if event_dict[key]:
            event_dict[key] = REDACTED
    return event_dict


def run_log_context(**ids: str) -> AbstractContextManager:
    """Bind run identifiers to every log line emitted inside the block.

        with run_log_context(run_id=run.id, workflow_id=workflow.id):
            ...
    """
    return structlog.contextvars.bound_contextvars(**ids)


def setup_logging() -> None:
    """Route all logging through structlog.

    ``LOG_FORMAT=text`` (or a development environment) renders console
    lines; anything else renders one JSON object per line.
    """
    settings = get_settings()

    pre_chain: list = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        redact_sensitive,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]

    if settings.is_development or settings.LOG_FORMAT == "text":
        renderer = structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty())
    else:
        renderer = structlog.processors.JSONRenderer()

    structlog.configure(
        processors=[*pre_chain, structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            processors=[structlog.stdlib.ProcessorFormatter.remove_processors_meta, renderer],
            foreign_pre_chain=pre_chain,
        )
    )

    root = logging.getLogger()
    root.handlers[:] = [handler]
    root.setLevel(getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO))

    logging.getLogger("sqlalchemy.engine").setLevel(
        logging.INFO if settings.SQLALCHEMY_ECHO else logging.WARNING
    )
    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

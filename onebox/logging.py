"""Logging for the onebox process.

structlog events are rendered through a single stdlib handler, so
library records (uvicorn, elastic_transport, SQLAlchemy) come out in the
same format.  Context travels in :mod:`structlog.contextvars`: the
service name is bound once at setup, and every account worker binds its
mailbox with :func:`account_context`, which tags all events emitted from
that worker's task, including those of the sync engine it drives.
"""

from __future__ import annotations

import logging
import sys
import uuid
from contextlib import AbstractContextManager

import structlog

# Chatty third-party loggers that drown the pipeline's own events at INFO.
_QUIET_LOGGERS = ("elastic_transport", "httpx", "aiosqlite", "sqlalchemy.engine")

_TIMESTAMPER = structlog.processors.TimeStamper(fmt="iso", utc=True)


def _renderer(json: bool) -> structlog.types.Processor:
    if json:
        return structlog.processors.JSONRenderer()
    return structlog.dev.ConsoleRenderer()


def setup_logging(*, service: str = "onebox", json: bool = True, level: str = "INFO") -> None:
    """Route structlog and stdlib logging to stdout and bind *service*.

    ``json=False`` switches to the console renderer for local runs.
    """
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_log_level,
            structlog.stdlib.add_logger_name,
            _TIMESTAMPER,
            structlog.processors.format_exc_info,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            foreign_pre_chain=[
                structlog.contextvars.merge_contextvars,
                structlog.stdlib.add_log_level,
                structlog.stdlib.add_logger_name,
                _TIMESTAMPER,
            ],
            processors=[
                structlog.stdlib.ProcessorFormatter.remove_processors_meta,
                _renderer(json),
            ],
        )
    )

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(level.upper())

    if root.level <= logging.INFO:
        for name in _QUIET_LOGGERS:
            logging.getLogger(name).setLevel(logging.WARNING)

    structlog.contextvars.clear_contextvars()
    structlog.contextvars.bind_contextvars(service=service)


def account_context(email: str, account_id: uuid.UUID) -> AbstractContextManager[None]:
    """Tag every event logged inside the block with the account."""
    return structlog.contextvars.bound_contextvars(account=email, account_id=str(account_id))

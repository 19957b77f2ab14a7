"""Structured JSON logging for workers and CLI commands."""

from __future__ import annotations

import logging
from typing import Any

import structlog

from src.core.config import get_settings


_CONFIGURED = False


def _job_context_defaults(service: str):
    def processor(logger: Any, method_name: str, event_dict: dict[str, Any]) -> dict[str, Any]:
        del logger, method_name
        event_dict.setdefault("service", service)
        for key in ("job_id", "publication_id", "workspace_id"):
            event_dict.setdefault(key, None)
        return event_dict

    return processor


def configure_logging() -> None:
    """Configure structlog once; later calls are no-ops."""

    global _CONFIGURED
    if _CONFIGURED:
        return

    settings = get_settings()
    level = getattr(logging, settings.log_level.upper(), logging.INFO)
    logging.basicConfig(level=level, format="%(message)s")

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            _job_context_defaults(settings.app_name),
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(sort_keys=True),
        ],
        logger_factory=structlog.PrintLoggerFactory(),
        wrapper_class=structlog.make_filtering_bound_logger(level),
        cache_logger_on_first_use=True,
    )
    _CONFIGURED = True


def get_logger(name: str | None = None) -> structlog.BoundLogger:
    configure_logging()
    return structlog.get_logger(name)


def bind_job_context(
    job_id: str,
    *,
    publication_id: str | None = None,
    workspace_id: str | None = None,
) -> None:
    """Attach job identifiers to every log line emitted by the current worker thread."""

    structlog.contextvars.bind_contextvars(
        job_id=job_id,
        publication_id=publication_id,
        workspace_id=workspace_id,
    )


def clear_job_context() -> None:
    structlog.contextvars.clear_contextvars()

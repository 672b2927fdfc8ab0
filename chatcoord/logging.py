from __future__ import annotations

import logging
import os
import uuid
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Any, Dict, Iterator, Optional
from urllib.parse import urlparse, urlunparse

import structlog

# Request id of the HTTP call, or job id of the job, being handled
correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)

_REDACTED_KEYS = frozenset({"password", "secret", "api_key", "authorization"})


def get_correlation_id() -> Optional[str]:
    return correlation_id_var.get()


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Set or generate the correlation id for the current context."""
    cid = correlation_id or str(uuid.uuid4())
    correlation_id_var.set(cid)
    return cid


@contextmanager
def job_log_context(job_id: str, job_type: str, worker_id: str, attempt: int) -> Iterator[str]:
    """Tag every log line emitted while a job runs with the job and worker.

    The job id doubles as the correlation id, so lines logged by the queue,
    the lock service and collaborators during the job can be joined up.
    """
    cid_token = correlation_id_var.set(job_id)
    try:
        with structlog.contextvars.bound_contextvars(
            job_type=job_type, worker_id=worker_id, attempt=attempt
        ):
            yield job_id
    finally:
        correlation_id_var.reset(cid_token)


def _add_correlation_id(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    cid = get_correlation_id()
    if cid:
        event_dict.setdefault("correlation_id", cid)
    return event_dict


def _scrub_credentials(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Mask credential fields and passwords embedded in store URLs.

    Lock owner tokens and job claim tokens are opaque ids and stay readable.
    """
    for key, value in list(event_dict.items()):
        if not isinstance(value, str):
            continue
        lower_key = key.lower()
        if lower_key.endswith("_url"):
            event_dict[key] = mask_url_password(value)
        elif any(secret in lower_key for secret in _REDACTED_KEYS) and len(value) > 4:
            event_dict[key] = value[:2] + "***" + value[-2:]
    return event_dict


def configure_logging(log_level: str = "INFO", json_output: bool = True) -> None:
    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        _add_correlation_id,
        _scrub_credentials,
        structlog.processors.StackInfoRenderer(),
    ]
    if json_output:
        processors += [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=False))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, log_level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


configure_logging(
    log_level=os.getenv("LOG_LEVEL", "INFO"),
    json_output=os.getenv("LOG_JSON", "true").lower() in {"1", "true", "yes", "on"},
)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


def mask_url_password(url: Optional[str]) -> Optional[str]:
    """redis://:pw@host:6379/0 -> redis://:***@host:6379/0"""
    if not url:
        return url
    try:
        parsed = urlparse(url)
        if not parsed.password:
            return url
        host = parsed.hostname or ""
        if parsed.port:
            host = f"{host}:{parsed.port}"
        return urlunparse(parsed._replace(netloc=f"{parsed.username or ''}:***@{host}"))
    except ValueError:
        return "***url_parse_error***"

import sys
import uuid
import logging
from contextlib import contextmanager
from typing import Iterator

import structlog

from billing_engine.shared.core.config import get_settings


def pii_redactor(logger, method_name, event_dict):
    """
    Redact common PII and sensitive fields from logs.
    Tenant contact details travel through reminder and suspension events.
    """
    pii_fields = {
        "email", "to_email", "contact", "phone", "password", "token",
        "secret", "access_token", "api_key", "admin_key"
    }

    for field in pii_fields:
        if field in event_dict:
            event_dict[field] = "[REDACTED]"

    for container in ["metadata", "payload", "details", "context"]:
        if container in event_dict and isinstance(event_dict[container], dict):
            for field in pii_fields:
                if field in event_dict[container]:
                    event_dict[container][field] = "[REDACTED]"

    return event_dict


def add_service_context(logger, method_name, event_dict):
    """Tag every event with the service and environment it came from."""
    settings = get_settings()
    event_dict.setdefault("service", settings.APP_NAME)
    event_dict.setdefault("environment", settings.ENVIRONMENT)
    return event_dict


def setup_logging():
    settings = get_settings()

    if settings.DEBUG:
        renderer = structlog.dev.ConsoleRenderer()
        min_level = logging.DEBUG
    else:
        renderer = structlog.processors.JSONRenderer()
        min_level = logging.INFO

    processors = [
        structlog.contextvars.merge_contextvars,  # run_id and job bindings
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        add_service_context,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        pii_redactor,
        renderer
    ]

    structlog.configure(
        processors=processors,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )

    # Route library logs (uvicorn, apscheduler, sqlalchemy) to stdout as well
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=min_level,
    )


@contextmanager
def bound_run(job: str) -> Iterator[str]:
    """
    Bind a fresh run_id for one billing pass so every event of the pass,
    including per-subscription failures, can be correlated.
    """
    run_id = str(uuid.uuid4())
    structlog.contextvars.bind_contextvars(run_id=run_id, job=job)
    try:
        yield run_id
    finally:
        structlog.contextvars.unbind_contextvars("run_id", "job")


def audit_log(event: str, actor: str, tenant_id: str, details: dict = None):
    """
    Standardized helper for security-critical audit events.
    Enforces a consistent schema for SIEM ingestion.
    """
    logger = structlog.get_logger("audit")
    logger.info(
        "audit_event",
        event=event,
        actor=str(actor),
        tenant_id=str(tenant_id),
        details=details or {},
    )

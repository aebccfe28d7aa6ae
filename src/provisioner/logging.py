"""Log output for the provisioner CLI.

Library modules log through plain ``logging.getLogger(__name__)``;
:func:`configure_logging` routes those records through structlog so a
terminal user gets readable lines and a pipeline gets JSON lines (``format = "json"``
under ``[provisioner.logging]``).  Each line names the tenant being provisioned
and, inside a saga span, the OpenTelemetry trace and span ids.
"""

from __future__ import annotations

import logging
import sys
from contextvars import ContextVar

import structlog
from opentelemetry import trace

_current_tenant: ContextVar[str | None] = ContextVar("provisioner_tenant", default=None)

# Third-party loggers that log every HTTP request at INFO.
_CHATTY_LOGGERS = ("httpx", "httpcore")


def set_tenant_context(tenant: str) -> None:
    _current_tenant.set(tenant)


def get_tenant_context() -> str | None:
    return _current_tenant.get()


def tenant_processor(
    logger: logging.Logger,  # noqa: ARG001
    method_name: str,  # noqa: ARG001
    event_dict: dict,
) -> dict:
    event_dict["tenant"] = _current_tenant.get()
    return event_dict


def trace_ids_processor(
    logger: logging.Logger,  # noqa: ARG001
    method_name: str,  # noqa: ARG001
    event_dict: dict,
) -> dict:
    """Add hex ``trace_id``/``span_id`` when a valid span is active."""
    span_context = trace.get_current_span().get_span_context()
    if span_context.is_valid:
        event_dict["trace_id"] = format(span_context.trace_id, "032x")
        event_dict["span_id"] = format(span_context.span_id, "016x")
    return event_dict


def _shared_processors(timestamp_fmt: str) -> list[structlog.types.Processor]:
    return [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt=timestamp_fmt),
        tenant_processor,
        trace_ids_processor,
        structlog.stdlib.ExtraAdder(),
    ]


def configure_logging(level: str = "INFO", fmt: str = "text", tenant: str | None = None) -> None:
    """Install a single stderr handler on the root logger.

    Parameters
    ----------
    level:
        Root level name, e.g. ``"DEBUG"``; unknown names fall back to INFO.
    fmt:
        ``"json"`` for one JSON object per line, anything else for the
        console renderer.
    tenant:
        Tenant stamped on every line of this process.
    """
    if tenant:
        set_tenant_context(tenant)

    if fmt == "json":
        shared = _shared_processors(timestamp_fmt="iso")
        renderer: structlog.types.Processor = structlog.processors.JSONRenderer()
    else:
        shared = _shared_processors(timestamp_fmt="%H:%M:%S")
        renderer = structlog.dev.ConsoleRenderer()

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            processors=[structlog.stdlib.ProcessorFormatter.remove_processors_meta, renderer],
            foreign_pre_chain=shared,
        )
    )

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(getattr(logging, level.upper(), logging.INFO))

    for name in _CHATTY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    structlog.configure(
        processors=[*shared, structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

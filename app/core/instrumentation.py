"""Ledger service – Instrumentation.

Structlog configuration plus Prometheus counters for the billing ledgers.
"""

import time
import logging
from typing import Any, Callable

import structlog
from fastapi import FastAPI, Request, Response, APIRouter
from prometheus_client import (
    CONTENT_TYPE_LATEST,
    Counter,
    Histogram,
    generate_latest,
)

router = APIRouter(tags=["monitoring"])

REQUEST_COUNT = Counter(
    "ledger_http_requests_total",
    "Total HTTP requests by method, endpoint and status",
    ["method", "endpoint", "status"],
)

REQUEST_LATENCY = Histogram(
    "ledger_http_request_duration_seconds",
    "HTTP request latency by method and endpoint",
    ["method", "endpoint"],
)

WEBHOOK_EVENTS = Counter(
    "ledger_webhook_events_total",
    "Provider webhook deliveries by event kind and outcome",
    ["kind", "outcome"],
)

CREDIT_GRANTS = Counter(
    "ledger_credit_grants_total",
    "Credit grant attempts by grant type and outcome",
    ["grant_type", "outcome"],
)

USAGE_CHARGES = Counter(
    "ledger_usage_charges_total",
    "Usage charge attempts by charge kind and outcome",
    ["charge_kind", "outcome"],
)

_REDACTED_KEYS = {"signature", "sig_header", "stripe_signature", "authorization", "email", "secret"}


def redact_sensitive_fields(_logger: Any, _method: str, event_dict: dict) -> dict:
    """Mask secrets and contact data before the record is rendered."""
    for key in list(event_dict):
        if key.lower() in _REDACTED_KEYS and event_dict[key]:
            event_dict[key] = "***"
    return event_dict


@router.get("/metrics")
def metrics():
    """Expose Prometheus metrics."""
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)


def setup_logging(log_level: str = "info"):
    """Configure structlog JSON output with secret masking."""
    level = logging.getLevelName(log_level.upper())
    if not isinstance(level, int):
        level = logging.INFO
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.StackInfoRenderer(),
            structlog.dev.set_exc_info,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.format_exc_info,
            redact_sensitive_fields,
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


def setup_instrumentation(app: FastAPI, log_level: str = "info") -> None:
    """Configure logging and attach the request metrics middleware."""
    setup_logging(log_level)

    @app.middleware("http")
    async def metrics_middleware(request: Request, call_next: Callable) -> Response:
        start_time = time.time()
        path = request.url.path
        status = "500"
        try:
            response = await call_next(request)
            status = str(response.status_code)
        finally:
            duration = time.time() - start_time
            REQUEST_COUNT.labels(method=request.method, endpoint=path, status=status).inc()
            REQUEST_LATENCY.labels(method=request.method, endpoint=path).observe(duration)

        return response

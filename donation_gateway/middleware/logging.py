"""
Request logging with trace correlation

The trace id and request path are bound to structlog's context variables, so
every event logged while handling the request carries them.
"""
import time

import structlog
from fastapi import Request
from opentelemetry import trace

from donation_gateway.core.rate_limiter import client_ip

logger = structlog.get_logger(__name__)


def current_trace_id() -> str:
    span_context = trace.get_current_span().get_span_context()
    if not span_context.is_valid:
        return ""
    return format(span_context.trace_id, '032x')


async def logging_middleware(request: Request, call_next):
    started = time.perf_counter()

    structlog.contextvars.clear_contextvars()
    structlog.contextvars.bind_contextvars(
        trace_id=current_trace_id(),
        method=request.method,
        path=request.url.path,
    )

    # Query strings stay out of the logs: result redirects carry payment details
    logger.info(
        "Request started",
        client_ip=client_ip(request),
        user_agent=request.headers.get("user-agent", "")
    )

    try:
        response = await call_next(request)
    except Exception:
        logger.error("Request raised", latency_seconds=round(time.perf_counter() - started, 3))
        raise

    logger.info(
        "Request completed",
        status_code=response.status_code,
        latency_seconds=round(time.perf_counter() - started, 3)
    )
    return response

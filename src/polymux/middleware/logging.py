"""Request logging middleware for Polymux

Every REST call gets a correlation id and the calling user bound to the
structlog context, so adapter and dispatcher log lines emitted while serving
it carry both. Health and metrics probes are not logged.
"""

import time
import uuid

import structlog
from fastapi import Request
from structlog.contextvars import bind_contextvars, clear_contextvars

from polymux.config import get_settings


QUIET_PATHS = ("/health", "/metrics")
CORRELATION_HEADER = "X-Correlation-ID"

logger = structlog.get_logger("polymux.requests")


async def request_logging_middleware(request: Request, call_next):
    if request.url.path in QUIET_PATHS:
        return await call_next(request)

    correlation_id = request.headers.get(CORRELATION_HEADER) or uuid.uuid4().hex
    bind_contextvars(
        correlation_id=correlation_id,
        user_id=request.headers.get(get_settings().user_id_header),
    )

    started = time.perf_counter()
    try:
        response = await call_next(request)
    except Exception as e:
        logger.error("Request failed",
                     method=request.method,
                     path=request.url.path,
                     duration_ms=round((time.perf_counter() - started) * 1000, 2),
                     error=str(e))
        raise
    else:
        logger.info("Request handled",
                    method=request.method,
                    path=request.url.path,
                    status_code=response.status_code,
                    duration_ms=round((time.perf_counter() - started) * 1000, 2))
        response.headers[CORRELATION_HEADER] = correlation_id
        return response
    finally:
        clear_contextvars()

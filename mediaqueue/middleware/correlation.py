"""
Correlation ID middleware for request tracing.

Accepts X-Correlation-ID from the client or generates a UUID4, keeps it in a
context variable for the duration of the request and echoes it back.
"""
import contextvars
import time
import uuid

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from mediaqueue.utils.logger import logger

correlation_id_var: contextvars.ContextVar[str] = contextvars.ContextVar("correlation_id", default="")


def get_correlation_id() -> str:
    """Get the current request's correlation ID"""
    return correlation_id_var.get("")


class CorrelationMiddleware(BaseHTTPMiddleware):
    """Logs each request with timing and tags it with a correlation ID."""

    async def dispatch(self, request: Request, call_next) -> Response:
        cid = request.headers.get("x-correlation-id") or str(uuid.uuid4())
        correlation_id_var.set(cid)

        start = time.monotonic()
        method = request.method
        path = request.url.path

        logger.debug(
            "request.started",
            extra={
                "correlation_id": cid,
                "method": method,
                "path": path,
                "client_ip": request.client.host if request.client else "",
            },
        )

        try:
            response = await call_next(request)
        except Exception as exc:
            logger.error(
                "request.failed",
                extra={
                    "correlation_id": cid,
                    "method": method,
                    "path": path,
                    "duration_ms": round((time.monotonic() - start) * 1000),
                    "error": str(exc),
                    "error_type": type(exc).__name__,
                },
            )
            raise

        status = response.status_code
        log_fn = logger.warning if status >= 400 else logger.info
        log_fn(
            "request.completed",
            extra={
                "correlation_id": cid,
                "method": method,
                "path": path,
                "status": status,
                "duration_ms": round((time.monotonic() - start) * 1000),
            },
        )

        response.headers["X-Correlation-ID"] = cid
        return response

"""
Request id context and request logging middleware.
Logs method, path, status and timing only.
NEVER logs: request bodies (they carry environment values), sensitive headers.
"""
import logging
import re
import time
import uuid
from contextvars import ContextVar
from typing import Optional

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from buildforge.core.metrics import metrics

logger = logging.getLogger("buildforge.request")

request_id_var: ContextVar[str] = ContextVar("request_id", default="")

# Caller-supplied ids are accepted only if they look like ids
_REQUEST_ID_PATTERN = re.compile(r"^[A-Za-z0-9._-]{1,128}$")

QUIET_PATHS = {"/health", "/metrics"}


def get_request_id() -> str:
    return request_id_var.get()


def set_request_id(request_id: Optional[str] = None) -> str:
    """Set the request id for the current context, generating one if needed."""
    if not request_id or not _REQUEST_ID_PATTERN.match(request_id):
        request_id = str(uuid.uuid4())
    request_id_var.set(request_id)
    return request_id


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """
    Middleware that:
    - Accepts or generates X-Request-Id
    - Logs request/response with timing
    - Updates request metrics
    """

    async def dispatch(self, request: Request, call_next) -> Response:
        request_id = set_request_id(request.headers.get("x-request-id"))

        client_ip = request.client.host if request.client else "unknown"
        forwarded = request.headers.get("x-forwarded-for")
        if forwarded:
            client_ip = forwarded.split(",")[0].strip()

        start_time = time.perf_counter()
        response: Response = await call_next(request)
        duration_ms = int((time.perf_counter() - start_time) * 1000)

        response.headers["X-Request-Id"] = request_id

        metrics.inc("requests_total")
        status_class = response.status_code // 100
        if status_class in (2, 4, 5):
            metrics.inc(f"requests_{status_class}xx")

        if request.url.path not in QUIET_PATHS:
            logger.info(
                "request",
                extra={
                    "request_id": request_id,
                    "method": request.method,
                    "path": request.url.path,
                    "status_code": response.status_code,
                    "duration_ms": duration_ms,
                    "client_ip": client_ip,
                },
            )

        return response

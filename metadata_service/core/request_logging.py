"""
Per-request correlation id, access log and HTTP counters.

Bodies (git URLs, archives) are never read here.
"""
import logging
import time
import uuid
from contextvars import ContextVar

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from metadata_service.core.metrics import metrics

logger = logging.getLogger("programs.request")

REQUEST_ID_HEADER = "X-Request-Id"
JOB_ID_HEADER = "X-Build-Job-Id"
UNLOGGED_PATHS = {"/health", "/metrics"}

request_id_var: ContextVar[str] = ContextVar("request_id", default="")


def get_request_id() -> str:
    return request_id_var.get()


def _client_ip(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else "unknown"


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """
    Assigns each request an id (echoed in X-Request-Id), counts responses by
    status class and writes one access log line.

    Build submissions answer with a stream; the logged duration is the time
    to the first byte and the line carries the job id so the build's own log
    lines can be joined to it.
    """

    async def dispatch(self, request: Request, call_next) -> Response:
        request_id = uuid.uuid4().hex
        token = request_id_var.set(request_id)
        started = time.perf_counter()
        try:
            response = await call_next(request)
        finally:
            request_id_var.reset(token)

        response.headers[REQUEST_ID_HEADER] = request_id
        metrics.inc("requests_total")
        metrics.inc(f"requests_{response.status_code // 100}xx")

        if request.url.path not in UNLOGGED_PATHS:
            logger.info(
                "request",
                extra={
                    "request_id": request_id,
                    "job_id": response.headers.get(JOB_ID_HEADER),
                    "method": request.method,
                    "path": request.url.path,
                    "status_code": response.status_code,
                    "duration_ms": int((time.perf_counter() - started) * 1000),
                    "client_ip": _client_ip(request),
                },
            )
        return response

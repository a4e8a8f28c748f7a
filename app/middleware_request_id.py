import logging
import time
import uuid

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

log = logging.getLogger("api.access")


class RequestIdMiddleware(BaseHTTPMiddleware):
    """Tags each request with a request id and logs its status and latency.

    The id comes from the X-Request-Id header when present, else r-<hex>. It is
    stored on request.state and echoed back with the elapsed time so client
    logs and API logs can be joined.
    """

    async def dispatch(self, request: Request, call_next):  # type: ignore[override]
        req_id = request.headers.get("x-request-id") or f"r-{uuid.uuid4().hex[:16]}"
        request.state.request_id = req_id
        started = time.perf_counter()
        response: Response = await call_next(request)
        elapsed_ms = (time.perf_counter() - started) * 1000.0
        response.headers["x-request-id"] = req_id
        response.headers["x-response-time-ms"] = f"{elapsed_ms:.1f}"
        log.info(
            "%s %s -> %s in %.1fms request_id=%s",
            request.method, request.url.path, response.status_code, elapsed_ms, req_id,
        )
        return response

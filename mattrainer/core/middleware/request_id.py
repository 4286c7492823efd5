import time
from uuid import uuid4

from starlette.middleware.base import BaseHTTPMiddleware

from mattrainer.core.logging import log_event, request_id_ctx_var, latency_bucket_ms

REQUEST_ID_HEADER = "x-request-id"
_MAX_INCOMING_LENGTH = 128


def _accept_incoming(value):
    """Reuse a caller-supplied id only when it is short and printable."""
    if not value or len(value) > _MAX_INCOMING_LENGTH or not value.isprintable():
        return None
    return value


class RequestIdMiddleware(BaseHTTPMiddleware):
    """Bind a request id for logging and echo it back on the response."""

    def __init__(self, app, header_name: str = REQUEST_ID_HEADER):
        super().__init__(app)
        self.header_name = header_name

    async def dispatch(self, request, call_next):
        rid = _accept_incoming(request.headers.get(self.header_name)) or uuid4().hex
        request.state.request_id = rid
        token = request_id_ctx_var.set(rid)
        started = time.perf_counter()
        try:
            response = await call_next(request)
            response.headers[self.header_name] = rid
            log_event(
                "info",
                "http.request.complete",
                request_id=rid,
                extra={
                    "method": request.method,
                    "path": request.url.path,
                    "status": response.status_code,
                    "latency_bucket": latency_bucket_ms((time.perf_counter() - started) * 1000),
                },
            )
            return response
        finally:
            request_id_ctx_var.reset(token)

import logging
import time
from uuid import uuid4

from starlette.middleware.base import BaseHTTPMiddleware

from bookshelf.core.logging import request_id_ctx_var, latency_bucket_ms

logger = logging.getLogger("bookshelf")

# Health checks are polled constantly and carry no billing context
QUIET_PATHS = {"/healthz", "/readyz", "/metrics"}


class RequestIdMiddleware(BaseHTTPMiddleware):
    """
    Correlate every request with an id.

    The id comes from the inbound header (so a Stripe retry or an upstream proxy
    keeps its own) or is generated, is bound to the logging context while the
    request runs, and is echoed back on the response. Completion is logged with
    the resolved user so billing actions can be traced per account.
    """

    def __init__(self, app, header_name: str = "x-request-id"):
        super().__init__(app)
        self.header_name = header_name

    async def dispatch(self, request, call_next):
        rid = request.headers.get(self.header_name) or str(uuid4())
        request.state.request_id = rid
        token = request_id_ctx_var.set(rid)

        start = time.perf_counter()
        try:
            response = await call_next(request)
        finally:
            request_id_ctx_var.reset(token)
        response.headers[self.header_name] = rid

        path = request.url.path
        status = getattr(response, "status_code", None)
        if path not in QUIET_PATHS or (status or 0) >= 500:
            logger.info(
                "request.complete",
                extra={
                    "request_id": rid,
                    "user_id": getattr(request.state, "user_id", None),
                    "path": path,
                    "method": request.method,
                    "status": status,
                    "latency_bucket": latency_bucket_ms((time.perf_counter() - start) * 1000),
                },
            )
        return response

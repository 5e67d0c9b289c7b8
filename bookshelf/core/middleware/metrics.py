import time
from starlette.middleware.base import BaseHTTPMiddleware

from bookshelf.core.logging import latency_bucket_ms
from bookshelf.core.metrics import billing_http_latency_total, http_requests_total, normalize_path


class MetricsMiddleware(BaseHTTPMiddleware):
    """Count requests per route and status; billing routes also get a latency bucket."""

    async def dispatch(self, request, call_next):
        start = time.perf_counter()
        response = await call_next(request)
        _record_request_metric(request, response, (time.perf_counter() - start) * 1000)
        return response


def _record_request_metric(request, response, duration_ms: float) -> None:
    path = normalize_path(request.url.path)
    status = str(getattr(response, "status_code", None) or 0)
    http_requests_total.inc(labels={
        "method": request.method.upper(),
        "path": path,
        "status": status,
    })
    # Checkout and cancel wait on Stripe synchronously
    if "/billing/" in path:
        billing_http_latency_total.inc(labels={
            "path": path,
            "bucket": latency_bucket_ms(duration_ms),
        })

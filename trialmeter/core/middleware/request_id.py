import logging
import time
from uuid import uuid4

from starlette.middleware.base import BaseHTTPMiddleware

from trialmeter.core.logging import request_id_ctx_var, latency_bucket_ms
from trialmeter.core.metrics import http_requests_total, normalize_path


class RequestIdMiddleware(BaseHTTPMiddleware):
    """Attach a request_id to each request, count it and log completion."""

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
        duration_ms = (time.perf_counter() - start) * 1000

        response.headers[self.header_name] = rid
        http_requests_total.inc(labels={
            "method": request.method.upper(),
            "path": normalize_path(request.url.path),
            "status": str(response.status_code),
        })

        logging.getLogger("trialmeter").info(
            "request.complete",
            extra={
                "request_id": rid,
                "path": request.url.path,
                "method": request.method,
                "status": response.status_code,
                "latency_bucket": latency_bucket_ms(duration_ms),
            },
        )
        return response

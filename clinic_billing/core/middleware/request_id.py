import logging
import time
from uuid import uuid4

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from clinic_billing.core.logging import latency_bucket_ms, request_id_ctx_var, tenant_id_ctx_var

logger = logging.getLogger("clinic_billing")

REQUEST_ID_HEADER = "x-request-id"


class RequestIdMiddleware(BaseHTTPMiddleware):
    """Correlate each request: reuse or mint x-request-id, echo it, log completion."""

    def __init__(self, app, header_name: str = REQUEST_ID_HEADER):
        super().__init__(app)
        self.header_name = header_name

    async def dispatch(self, request: Request, call_next):
        rid = request.headers.get(self.header_name) or str(uuid4())
        request.state.request_id = rid
        rid_token = request_id_ctx_var.set(rid)
        tenant_token = tenant_id_ctx_var.set(None)
        start = time.perf_counter()
        try:
            response = await call_next(request)
        finally:
            request_id_ctx_var.reset(rid_token)
            tenant_id_ctx_var.reset(tenant_token)

        response.headers[self.header_name] = rid
        logger.info(
            "request.complete",
            extra={
                "request_id": rid,
                "tenant_id": getattr(request.state, "tenant_id", None),
                "method": request.method,
                "path": request.url.path,
                "status": response.status_code,
                "latency_bucket": latency_bucket_ms((time.perf_counter() - start) * 1000),
            },
        )
        return response

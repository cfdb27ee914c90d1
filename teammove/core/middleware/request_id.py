import time
from uuid import uuid4

from starlette.middleware.base import BaseHTTPMiddleware

from teammove.core.logging import log_event, organization_ctx_var, request_id_ctx_var


class RequestIdMiddleware(BaseHTTPMiddleware):
    """
    Correlate each request: reuse the caller's x-request-id (Stripe retries
    keep theirs) or mint one, echo it back, and log one completion line.
    """

    def __init__(self, app, header_name: str = "x-request-id"):
        super().__init__(app)
        self.header_name = header_name

    async def dispatch(self, request, call_next):
        rid = request.headers.get(self.header_name) or str(uuid4())
        request.state.request_id = rid
        rid_token = request_id_ctx_var.set(rid)
        org_token = organization_ctx_var.set(None)

        start = time.perf_counter()
        try:
            response = await call_next(request)
            response.headers[self.header_name] = rid
            log_event(
                "info",
                "request.complete",
                request_id=rid,
                organization_id=getattr(request.state, "organization_id", None),
                extra={
                    "method": request.method,
                    "path": request.url.path,
                    "status": response.status_code,
                    "duration_ms": round((time.perf_counter() - start) * 1000, 1),
                },
            )
            return response
        finally:
            organization_ctx_var.reset(org_token)
            request_id_ctx_var.reset(rid_token)

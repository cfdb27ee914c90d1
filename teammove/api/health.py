"""
Health endpoints.

/healthz is liveness and never touches dependencies. /readyz is readiness:
the billing tables must exist, and the response says whether the Stripe
gateway is wired (checkout and webhooks are refused without it).
"""

import logging

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse
from sqlalchemy import inspect

from teammove.core.database import get_engine

logger = logging.getLogger("teammove")

root_router = APIRouter(tags=["health"])

REQUIRED_TABLES = (
    "organization_subscriptions",
    "checkout_sessions",
    "billing_customers",
    "billing_events",
)


def _not_ready(detail: str) -> JSONResponse:
    logger.warning("readyz.failed", extra={"detail": detail})
    return JSONResponse(status_code=503, content={"status": "error", "detail": detail})


@root_router.get("/healthz")
def healthz():
    return {"status": "ok"}


@root_router.get("/readyz")
def readyz(request: Request):
    try:
        inspector = inspect(get_engine())
        missing = [t for t in REQUIRED_TABLES if not inspector.has_table(t)]
    except Exception as e:
        logger.error("readyz.database_unreachable", extra={"error": str(e)})
        return _not_ready("database unreachable")

    if missing:
        return _not_ready(f"missing tables: {', '.join(missing)}")

    billing = getattr(request.app.state, "billing", None)
    gateway = "configured" if billing is not None and billing.provider is not None else "disabled"
    return {"status": "ok", "billing_gateway": gateway}

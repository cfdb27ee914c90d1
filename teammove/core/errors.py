"""Error normalization and handlers."""

from typing import Optional
from uuid import uuid4

from fastapi import HTTPException
from fastapi.responses import JSONResponse
from starlette.requests import Request

from teammove.core.logging import get_request_id, log_event


class AppError(Exception):
    code = "app_error"
    status_code = 500
    retryable = False

    def __init__(self, message: str, *, code: Optional[str] = None, status_code: Optional[int] = None, request_id: Optional[str] = None):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code
        if status_code:
            self.status_code = status_code
        self.request_id = request_id


class ValidationError(AppError, ValueError):
    code = "validation_error"
    status_code = 400


class NotFoundError(AppError, ValueError):
    code = "not_found"
    status_code = 404


class QuotaExceededError(AppError):
    code = "quota_exceeded"
    status_code = 403


class ConflictError(AppError):
    code = "conflict"
    status_code = 409


# Billing: client input errors (never retried automatically)

class PlanNotFoundError(NotFoundError):
    code = "plan_not_found"


class NoPaymentRequiredError(ValidationError):
    code = "no_payment_required"


class SessionNotFoundError(NotFoundError):
    code = "session_not_found"


class SessionNotAuthorizedError(AppError):
    code = "session_not_authorized"
    status_code = 403


class PaymentNotConfirmedError(AppError):
    code = "payment_not_confirmed"
    status_code = 402


# Billing: authenticity

class WebhookSignatureError(AppError):
    code = "invalid_signature"
    status_code = 400


# Billing: transient gateway failures

class GatewayUnavailableError(AppError):
    code = "gateway_unavailable"
    status_code = 503
    retryable = True


class BillingDisabledError(AppError):
    code = "billing_disabled"
    status_code = 503


# Billing: data integrity

class CatalogIntegrityError(AppError):
    """A stored record references a plan id the catalog does not know."""
    code = "catalog_integrity_error"
    status_code = 500


class ConcurrentUpdateError(ConflictError):
    code = "concurrent_update"
    retryable = True


_HTTP_CODES = {401: "unauthorized", 403: "forbidden", 404: "not_found", 422: "validation_error"}


def _extract_request_id(request: Request, fallback: Optional[str] = None) -> str:
    return (
        getattr(request.state, "request_id", None)
        or get_request_id()
        or fallback
        or str(uuid4())
    )


def _error_response(
    request: Request,
    status_code: int,
    code: str,
    message: str,
    *,
    request_id: Optional[str] = None,
    retryable: bool = False,
    log_msg: str = "app.error",
    exc_info: bool = False,
) -> JSONResponse:
    rid = request_id or _extract_request_id(request)
    log_event(
        "error" if status_code >= 500 else "warning",
        log_msg,
        request_id=rid,
        organization_id=getattr(request.state, "organization_id", None),
        error_code=code,
        extra={"status": status_code, "path": request.url.path, "error_message": message},
        exc_info=exc_info,
    )
    response = JSONResponse(
        status_code=status_code,
        content={
            "error": {"code": code, "message": message, "request_id": rid, "retryable": retryable},
            "detail": message,
        },
    )
    response.headers["x-request-id"] = rid
    if retryable:
        response.headers["retry-after"] = "5"
    return response


async def app_error_handler(request: Request, exc: AppError):
    return _error_response(
        request, exc.status_code, exc.code, exc.message,
        request_id=exc.request_id, retryable=exc.retryable,
    )


async def http_error_handler(request: Request, exc: HTTPException):
    code = _HTTP_CODES.get(exc.status_code, "http_error")
    message = exc.detail or "HTTP error"
    if isinstance(message, dict):
        code = message.get("error", code)
        message = message.get("message", code)
    return _error_response(request, exc.status_code, code, str(message), log_msg="http.error")


async def unhandled_exception_handler(request: Request, exc: Exception):
    return _error_response(
        request, 500, "internal_error", "Unexpected error", log_msg="unhandled.exception", exc_info=True,
    )

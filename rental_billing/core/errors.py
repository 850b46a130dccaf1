from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

logger = logging.getLogger(__name__)


class BillingError(HTTPException):
    """HTTPException carrying a stable machine-readable code.

    Rendered as ``{"success": false, "error": {"message", "code"}}`` by the
    handlers installed in :func:`install_error_handlers`.
    """

    status_code_default = 500
    code_default = "INTERNAL_ERROR"
    message_default = "Internal server error"

    def __init__(
        self,
        message: Optional[str] = None,
        *,
        code: Optional[str] = None,
        status_code: Optional[int] = None,
    ) -> None:
        self.code = code or self.code_default
        super().__init__(status_code or self.status_code_default, message or self.message_default)


class AuthenticationRequired(BillingError):
    status_code_default = 401
    code_default = "AUTH_REQUIRED"
    message_default = "Authentication required"


class SignatureInvalid(BillingError):
    status_code_default = 400
    code_default = "SIGNATURE_INVALID"
    message_default = "Webhook signature verification failed"


class InvalidRequest(BillingError):
    status_code_default = 400
    code_default = "INVALID_REQUEST"
    message_default = "Invalid request"


class InvalidSession(BillingError):
    status_code_default = 400
    code_default = "INVALID_SESSION"
    message_default = "Missing product/user in session"


class NoCreditsAvailable(BillingError):
    status_code_default = 402
    code_default = "NO_CREDITS"
    message_default = "No file credits available"


class SessionOwnershipMismatch(BillingError):
    status_code_default = 403
    code_default = "SESSION_USER_MISMATCH"
    message_default = "Checkout session belongs to a different user"


class RecordNotFound(BillingError):
    status_code_default = 404
    code_default = "BILLING_NOT_FOUND"
    message_default = "Billing record not found"


class ProviderLookupFailed(BillingError):
    status_code_default = 502
    code_default = "PROVIDER_ERROR"
    message_default = "Billing provider request failed"

    @classmethod
    def not_found(cls, message: str = "Not found at billing provider") -> "ProviderLookupFailed":
        return cls(message, code="PROVIDER_NOT_FOUND", status_code=404)


class SessionNotCompleted(BillingError):
    status_code_default = 409
    code_default = "SESSION_NOT_COMPLETED"
    message_default = "Session not completed"


class WebhookProcessingFailed(BillingError):
    status_code_default = 500
    code_default = "WEBHOOK_FAILED"
    message_default = "Webhook handler failure"


class ProviderNotConfigured(BillingError):
    status_code_default = 501
    code_default = "STRIPE_NOT_CONFIGURED"
    message_default = "Stripe not configured"


class PortalNotConfigured(BillingError):
    status_code_default = 503
    code_default = "PORTAL_NOT_CONFIGURED"
    message_default = "Customer portal not configured. Please contact support to manage your subscription."


_STATUS_CODES = {
    400: "BAD_REQUEST",
    401: "AUTH_REQUIRED",
    403: "FORBIDDEN",
    404: "NOT_FOUND",
    405: "METHOD_NOT_ALLOWED",
    409: "CONFLICT",
    422: "VALIDATION_ERROR",
    429: "RATE_LIMITED",
}


def error_body(message: str, code: str) -> Dict[str, Any]:
    return {"success": False, "error": {"message": message, "code": code}}


async def billing_error_handler(request: Request, exc: BillingError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.warning("billing error %s on %s %s", exc.code, request.method, request.url.path)
    return JSONResponse(error_body(str(exc.detail), exc.code), status_code=exc.status_code, headers=exc.headers)


async def http_error_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    code = _STATUS_CODES.get(exc.status_code, "INTERNAL_ERROR" if exc.status_code >= 500 else "HTTP_ERROR")
    return JSONResponse(
        error_body(str(exc.detail), code),
        status_code=exc.status_code,
        headers=getattr(exc, "headers", None),
    )


async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    fields = [".".join(str(p) for p in err.get("loc", ()) if p != "body") for err in exc.errors()]
    message = "Invalid request"
    if fields:
        message = f"Invalid request: {', '.join(f for f in fields if f)}"
    return JSONResponse(error_body(message, "VALIDATION_ERROR"), status_code=422)


async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(error_body("Internal server error", "INTERNAL_ERROR"), status_code=500)


def install_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(BillingError, billing_error_handler)
    app.add_exception_handler(StarletteHTTPException, http_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)
    app.add_exception_handler(Exception, unhandled_error_handler)

"""
API error types and the handlers that render them.

Every JSON error response has the same shape:

    {"error": {"code": ..., "message": ..., "request_id": ...}, "detail": ...}

and echoes the request id in the x-request-id header. The webhook route
does not use these; it answers the provider in plain text.
"""

import logging
from typing import Optional
from uuid import uuid4

from fastapi import FastAPI, HTTPException
from fastapi.responses import JSONResponse
from starlette.requests import Request

from clinic_billing.core.logging import get_request_id

logger = logging.getLogger("clinic_billing")

# Codes for HTTPExceptions raised by FastAPI or by dependencies (auth)
_HTTP_CODES = {
    401: "unauthorized",
    403: "forbidden",
    404: "not_found",
}


class AppError(Exception):
    """Base for errors the API reports to clients."""
    code = "app_error"
    status_code = 500

    def __init__(self, message: str, *, code: Optional[str] = None, status_code: Optional[int] = None, request_id: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.code = code or self.code
        self.status_code = status_code or self.status_code
        self.request_id = request_id


class ValidationError(AppError, ValueError):
    code = "validation_error"
    status_code = 400


class UnauthorizedError(AppError):
    code = "unauthorized"
    status_code = 401


class NotFoundError(AppError, LookupError):
    code = "not_found"
    status_code = 404


class UpstreamError(AppError):
    """The billing provider rejected or failed a request."""
    code = "upstream_error"
    status_code = 502


class ServiceUnavailableError(AppError):
    code = "service_unavailable"
    status_code = 503


class BillingDisabledError(ServiceUnavailableError):
    code = "billing_disabled"

    def __init__(self, message: str = "Stripe is not configured. Set STRIPE_SECRET_KEY environment variable.", **kwargs):
        super().__init__(message, **kwargs)


def _request_id(request: Request) -> str:
    return getattr(request.state, "request_id", None) or get_request_id() or str(uuid4())


def error_response(status_code: int, code: str, message: str, request_id: str) -> JSONResponse:
    response = JSONResponse(
        status_code=status_code,
        content={
            "error": {"code": code, "message": message, "request_id": request_id},
            "detail": message,
        },
    )
    response.headers["x-request-id"] = request_id
    return response


async def app_error_handler(request: Request, exc: AppError):
    rid = exc.request_id or _request_id(request)
    logger.log(
        logging.ERROR if exc.status_code >= 500 else logging.WARNING,
        "app.error",
        extra={"request_id": rid, "error_code": exc.code, "status": exc.status_code, "error_message": exc.message},
    )
    return error_response(exc.status_code, exc.code, exc.message, rid)


async def http_error_handler(request: Request, exc: HTTPException):
    rid = _request_id(request)
    code = _HTTP_CODES.get(exc.status_code, "http_error")
    logger.warning("http.error", extra={"request_id": rid, "error_code": code, "status": exc.status_code})
    return error_response(exc.status_code, code, str(exc.detail or "HTTP error"), rid)


async def unhandled_exception_handler(request: Request, exc: Exception):
    rid = _request_id(request)
    logger.error("unhandled.exception", exc_info=exc, extra={"request_id": rid, "error_code": "internal_error"})
    return error_response(500, "internal_error", "Unexpected error", rid)


def register_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(AppError, app_error_handler)
    app.add_exception_handler(HTTPException, http_error_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)

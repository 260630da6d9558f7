"""FastAPI exception handlers for converting BookingError to HTTP responses.

This module provides exception handlers that convert domain errors (BookingError)
to HTTP responses with a consistent JSON body matching ToolError.

The ErrorCode-to-HTTP status mapping follows REST conventions:
- 400 Bad Request: Validation failures and bad webhook signatures
- 401 Unauthorized: Authentication required
- 403 Forbidden: Authorization failures
- 404 Not Found: Booking missing or not visible to the caller
- 409 Conflict: The booking's state does not allow the operation
- 429 Too Many Requests: Rate limiting (with a Retry-After header)
- 500 Internal Server Error: Payment configuration and provider failures

Usage:
    from rental_api.exceptions import register_exception_handlers
    register_exception_handlers(app)
"""

import logging

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.status import (
    HTTP_400_BAD_REQUEST,
    HTTP_401_UNAUTHORIZED,
    HTTP_403_FORBIDDEN,
    HTTP_404_NOT_FOUND,
    HTTP_409_CONFLICT,
    HTTP_429_TOO_MANY_REQUESTS,
    HTTP_500_INTERNAL_SERVER_ERROR,
)

from rental_core.models.errors import BookingError, ErrorCode, RateLimitedError, ToolError

logger = logging.getLogger(__name__)

ERROR_CODE_TO_HTTP_STATUS: dict[ErrorCode, int] = {
    # Request errors -> 400 Bad Request
    ErrorCode.VALIDATION_FAILED: HTTP_400_BAD_REQUEST,
    ErrorCode.INVALID_WEBHOOK_SIGNATURE: HTTP_400_BAD_REQUEST,
    # Authentication / authorization
    ErrorCode.AUTH_REQUIRED: HTTP_401_UNAUTHORIZED,
    ErrorCode.FORBIDDEN: HTTP_403_FORBIDDEN,
    # Not found (also returned to non-owners)
    ErrorCode.BOOKING_NOT_FOUND: HTTP_404_NOT_FOUND,
    # State conflicts -> 409 Conflict
    ErrorCode.BOOKING_NOT_PAYABLE: HTTP_409_CONFLICT,
    ErrorCode.AMOUNT_DUE_ZERO: HTTP_409_CONFLICT,
    ErrorCode.INVALID_STATE_TRANSITION: HTTP_409_CONFLICT,
    ErrorCode.DEPOSIT_NOT_AUTHORIZED: HTTP_409_CONFLICT,
    ErrorCode.DEPOSIT_HOLD_MISSING: HTTP_409_CONFLICT,
    # Rate limiting
    ErrorCode.RATE_LIMITED: HTTP_429_TOO_MANY_REQUESTS,
    # Server-side
    ErrorCode.PAYMENT_NOT_CONFIGURED: HTTP_500_INTERNAL_SERVER_ERROR,
    ErrorCode.STRIPE_API_ERROR: HTTP_500_INTERNAL_SERVER_ERROR,
    ErrorCode.WEBHOOK_PROCESSING_FAILED: HTTP_500_INTERNAL_SERVER_ERROR,
}


def get_http_status_for_error(code: ErrorCode) -> int:
    """HTTP status for an ErrorCode, 400 if not explicitly mapped."""
    return ERROR_CODE_TO_HTTP_STATUS.get(code, HTTP_400_BAD_REQUEST)


def error_response(error: ToolError, status_code: int) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=error.model_dump(by_alias=True, mode="json"),
    )


async def booking_error_handler(request: Request, exc: BookingError) -> JSONResponse:
    """Convert a BookingError to a ToolError JSON response.

    Args:
        request: The incoming request
        exc: The BookingError exception

    Returns:
        JSONResponse with the mapped status code.
    """
    status_code = get_http_status_for_error(exc.code)
    if status_code >= HTTP_500_INTERNAL_SERVER_ERROR:
        logger.error("%s on %s: %s", exc.code.value, request.url.path, exc.details)
    response = error_response(exc.to_tool_error(), status_code)
    if isinstance(exc, RateLimitedError):
        response.headers["Retry-After"] = str(exc.retry_after_seconds)
    return response


async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Report request validation failures as 400 VALIDATION_FAILED."""
    errors = [
        {
            "loc": [str(part) for part in err.get("loc", ())],
            "msg": err.get("msg", ""),
            "type": err.get("type", ""),
        }
        for err in exc.errors()
    ]
    return error_response(
        ToolError.from_code(ErrorCode.VALIDATION_FAILED, {"errors": errors}),
        HTTP_400_BAD_REQUEST,
    )


async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Fallback for uncaught exceptions. Never exposes internal details."""
    logger.exception("Unhandled exception on %s: %s", request.url.path, exc)
    return JSONResponse(
        status_code=HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "success": False,
            "errorCode": "ERR_INTERNAL",
            "message": "An unexpected error occurred",
            "recovery": "Please try again later or contact support",
            "details": None,
        },
    )


def register_exception_handlers(app: FastAPI) -> None:
    """Register all exception handlers with the FastAPI app."""
    app.add_exception_handler(BookingError, booking_error_handler)  # type: ignore[arg-type]
    app.add_exception_handler(RequestValidationError, validation_error_handler)  # type: ignore[arg-type]
    app.add_exception_handler(Exception, generic_exception_handler)

"""
Error Handling
==============

Domain exceptions, standardized wire error codes and exception handlers.

Domain code (validators, ledger, pipeline) raises plain exceptions derived
from ``SubscriptionError``. The API layer converts them to ``AppException``
through ``to_app_exception`` so the wire taxonomy lives in one place.
"""

import logging
from typing import Optional

from fastapi import HTTPException, Request, status
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

logger = logging.getLogger(__name__)


# =============================================================================
# Error Codes
# =============================================================================

class ErrorCodes:
    """Wire error codes returned to clients."""

    UNAUTHENTICATED = "unauthenticated"
    INVALID_ARGUMENT = "invalid-argument"
    NOT_FOUND = "not-found"
    FAILED_PRECONDITION = "failed-precondition"
    ALREADY_EXISTS = "already-exists"
    PERMISSION_DENIED = "permission-denied"
    INTERNAL = "internal"


# =============================================================================
# Domain Exceptions
# =============================================================================

class SubscriptionError(Exception):
    """Base class for all domain errors."""

    code: str = ErrorCodes.INTERNAL
    retryable: bool = False

    def __init__(self, message: str = "", *, reason: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.reason = reason


class InvalidArgumentError(SubscriptionError):
    """Bad or missing arguments, unknown product ids."""

    code = ErrorCodes.INVALID_ARGUMENT


class UnauthenticatedError(SubscriptionError):
    """Caller identity is missing."""

    code = ErrorCodes.UNAUTHENTICATED


class ReferenceInUseError(SubscriptionError):
    """The purchase reference is already bound to a different user."""

    code = ErrorCodes.ALREADY_EXISTS


class LedgerError(SubscriptionError):
    """The ledger could not be read or written."""

    code = ErrorCodes.INTERNAL


class StaleRecordError(LedgerError):
    """A conditional update lost the race against a concurrent writer."""


# =============================================================================
# HTTP Exceptions
# =============================================================================

class AppException(HTTPException):
    """Base application exception with structured error response."""

    def __init__(
        self,
        status_code: int,
        code: str,
        message: str,
        reason: Optional[str] = None,
        **extra,
    ):
        self.code = code
        self.reason = reason
        self.extra = extra

        detail = {
            "code": code,
            "message": message,
        }

        if reason:
            detail["reason"] = reason

        detail.update(extra)

        super().__init__(status_code=status_code, detail=detail)


class AuthenticationError(AppException):
    """Missing or invalid caller identity."""

    def __init__(self, message: str = "User must be authenticated", **extra):
        super().__init__(
            status_code=status.HTTP_401_UNAUTHORIZED,
            code=ErrorCodes.UNAUTHENTICATED,
            message=message,
            **extra,
        )


class InvalidArgumentException(AppException):
    def __init__(self, message: str, reason: Optional[str] = None, **extra):
        super().__init__(
            status_code=status.HTTP_400_BAD_REQUEST,
            code=ErrorCodes.INVALID_ARGUMENT,
            message=message,
            reason=reason,
            **extra,
        )


class NotFoundException(AppException):
    def __init__(self, message: str = "Resource not found", reason: Optional[str] = None, **extra):
        super().__init__(
            status_code=status.HTTP_404_NOT_FOUND,
            code=ErrorCodes.NOT_FOUND,
            message=message,
            reason=reason,
            **extra,
        )


class FailedPreconditionException(AppException):
    def __init__(self, message: str, reason: Optional[str] = None, **extra):
        super().__init__(
            status_code=status.HTTP_400_BAD_REQUEST,
            code=ErrorCodes.FAILED_PRECONDITION,
            message=message,
            reason=reason,
            **extra,
        )


class AlreadyExistsException(AppException):
    def __init__(self, message: str, reason: Optional[str] = None, **extra):
        super().__init__(
            status_code=status.HTTP_409_CONFLICT,
            code=ErrorCodes.ALREADY_EXISTS,
            message=message,
            reason=reason,
            **extra,
        )


class PermissionDeniedException(AppException):
    def __init__(self, message: str = "Permission denied", reason: Optional[str] = None, **extra):
        super().__init__(
            status_code=status.HTTP_403_FORBIDDEN,
            code=ErrorCodes.PERMISSION_DENIED,
            message=message,
            reason=reason,
            **extra,
        )


class InternalException(AppException):
    def __init__(
        self,
        message: str = "An unexpected error occurred",
        reason: Optional[str] = None,
        status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR,
        **extra,
    ):
        super().__init__(
            status_code=status_code,
            code=ErrorCodes.INTERNAL,
            message=message,
            reason=reason,
            **extra,
        )


_EXCEPTION_BY_CODE = {
    ErrorCodes.INVALID_ARGUMENT: InvalidArgumentException,
    ErrorCodes.NOT_FOUND: NotFoundException,
    ErrorCodes.FAILED_PRECONDITION: FailedPreconditionException,
    ErrorCodes.ALREADY_EXISTS: AlreadyExistsException,
    ErrorCodes.PERMISSION_DENIED: PermissionDeniedException,
}


def to_app_exception(exc: SubscriptionError) -> AppException:
    """Map a domain error onto its wire representation."""
    if exc.code == ErrorCodes.UNAUTHENTICATED:
        return AuthenticationError(exc.message or "User must be authenticated")

    exc_class = _EXCEPTION_BY_CODE.get(exc.code)
    if exc_class is not None:
        return exc_class(exc.message, reason=exc.reason)

    # Retryable platform failures surface as a 503 so clients back off.
    if exc.retryable:
        return InternalException(
            exc.message or "Platform temporarily unavailable",
            reason=exc.reason,
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        )
    return InternalException(exc.message or "An unexpected error occurred", reason=exc.reason)


# =============================================================================
# Exception Handlers
# =============================================================================

async def app_exception_handler(
    request: Request,
    exc: AppException,
) -> JSONResponse:
    """Handler for AppException."""
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "success": False,
            "error": exc.detail,
        },
        headers=getattr(exc, "headers", None),
    )


async def http_exception_handler(
    request: Request,
    exc: StarletteHTTPException,
) -> JSONResponse:
    """Handler for HTTPException, including routing 404/405 raised by Starlette."""
    if isinstance(exc.detail, dict) and "code" in exc.detail:
        error = exc.detail
    else:
        error = {
            "code": "HTTP_ERROR",
            "message": str(exc.detail),
        }

    return JSONResponse(
        status_code=exc.status_code,
        content={
            "success": False,
            "error": error,
        },
        headers=getattr(exc, "headers", None),
    )


async def subscription_error_handler(
    request: Request,
    exc: SubscriptionError,
) -> JSONResponse:
    """Handler for domain errors that escaped an endpoint unmapped."""
    return await app_exception_handler(request, to_app_exception(exc))


async def validation_exception_handler(
    request: Request,
    exc: Exception,
) -> JSONResponse:
    """Handler for request validation errors."""
    errors = exc.errors() if hasattr(exc, "errors") else []
    if errors:
        first_error = errors[0]
        field = ".".join(str(loc) for loc in first_error.get("loc", []))
        message = first_error.get("msg", "Validation error")
    else:
        field = None
        message = str(exc) or "Validation error"

    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={
            "success": False,
            "error": {
                "code": ErrorCodes.INVALID_ARGUMENT,
                "message": message,
                "field": field,
            },
        },
    )


async def global_exception_handler(
    request: Request,
    exc: Exception,
) -> JSONResponse:
    """Handler for unhandled exceptions."""
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)

    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "success": False,
            "error": {
                "code": ErrorCodes.INTERNAL,
                "message": "An unexpected error occurred",
            },
        },
    )


def setup_exception_handlers(app):
    """
    Register exception handlers with FastAPI app.

    Usage:
        from subrecon.core.errors import setup_exception_handlers
        setup_exception_handlers(app)
    """
    from fastapi.exceptions import RequestValidationError

    app.add_exception_handler(AppException, app_exception_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(SubscriptionError, subscription_error_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(Exception, global_exception_handler)

"""Domain exceptions and exception handlers for consistent error responses.

Error taxonomy for the loading / pallet engine:

  LoadValidationError  → malformed request; rejected before any mutation
  DuplicateLoadError   → soft; the load is skipped and reported per item
  DataIntegrityError   → quantities on a pallet or box split do not add up
  PersistenceError     → ledger or inventory write failed after retries
  ResourceNotFoundError

Batch operations catch these per item and report them in the result body;
single-entity operations let them propagate to the handlers below.
"""

import logging
from typing import Union

from fastapi import Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy.exc import IntegrityError, OperationalError
from starlette.exceptions import HTTPException as StarletteHTTPException

logger = logging.getLogger(__name__)


class ColdRoomException(Exception):
    """Base exception for cold-room application errors."""

    def __init__(
        self,
        message: str,
        status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR,
        error_code: str = "INTERNAL_ERROR",
        details: dict | None = None,
    ):
        self.message = message
        self.status_code = status_code
        self.error_code = error_code
        self.details = details
        super().__init__(self.message)


class BusinessLogicError(ColdRoomException):
    """Exception for business logic violations."""

    def __init__(
        self,
        message: str,
        error_code: str = "BUSINESS_LOGIC_ERROR",
        details: dict | None = None,
    ):
        super().__init__(
            message=message,
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            error_code=error_code,
            details=details,
        )


class LoadValidationError(BusinessLogicError):
    """Quantity ≤ 0, quantity over remaining, missing pallet name, unknown room."""

    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message, error_code="VALIDATION_ERROR", details=details)


class DuplicateLoadError(ColdRoomException):
    """The target cold room already holds the requested quantity for this bucket."""

    def __init__(self, unique_key: str, cold_room_id: str, existing_quantity: int):
        self.unique_key = unique_key
        self.cold_room_id = cold_room_id
        self.existing_quantity = existing_quantity
        super().__init__(
            message=(
                f"{unique_key} already has {existing_quantity} box(es) "
                f"in {cold_room_id}"
            ),
            status_code=status.HTTP_409_CONFLICT,
            error_code="DUPLICATE_LOAD",
            details={
                "unique_key": unique_key,
                "cold_room_id": cold_room_id,
                "existing_quantity": existing_quantity,
            },
        )


class DataIntegrityError(ColdRoomException):
    """Pallet or box quantities no longer reconcile."""

    def __init__(self, message: str, details: dict | None = None):
        super().__init__(
            message=message,
            status_code=status.HTTP_409_CONFLICT,
            error_code="DATA_INTEGRITY_ERROR",
            details=details,
        )


class PersistenceError(ColdRoomException):
    """A ledger or inventory write failed; safe for the caller to retry."""

    def __init__(self, message: str, error_code: str = "PERSISTENCE_ERROR"):
        super().__init__(
            message=message,
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            error_code=error_code,
        )


class StaleBalanceError(PersistenceError):
    """A ledger row changed between read and write."""

    def __init__(self, unique_key: str):
        self.unique_key = unique_key
        super().__init__(
            message=f"Balance for {unique_key} was updated concurrently",
            error_code="STALE_BALANCE",
        )


class ResourceNotFoundError(ColdRoomException):
    """Exception for resources not found."""

    def __init__(self, resource: str, identifier: str):
        super().__init__(
            message=f"{resource} not found: {identifier}",
            status_code=status.HTTP_404_NOT_FOUND,
            error_code="RESOURCE_NOT_FOUND",
        )


def create_error_response(
    status_code: int,
    message: str,
    error_code: str,
    details: Union[dict, list, None] = None,
) -> JSONResponse:
    """`{"status": "failed", "error": {"code", "message", "details"?}}`"""
    error = {"code": error_code, "message": message}
    if details:
        error["details"] = details
    return JSONResponse(status_code=status_code, content={"status": "failed", "error": error})


async def coldroom_exception_handler(
    request: Request,
    exc: ColdRoomException,
) -> JSONResponse:
    log = logger.error if exc.status_code >= 500 or isinstance(exc, DataIntegrityError) else logger.warning
    log(
        f"{request.method} {request.url.path}: {exc.error_code} - {exc.message}",
        extra={"error_code": exc.error_code},
    )
    return create_error_response(exc.status_code, exc.message, exc.error_code, exc.details)


async def http_exception_handler(
    request: Request,
    exc: StarletteHTTPException,
) -> JSONResponse:
    """Unknown routes, wrong methods and other framework-raised errors."""
    return create_error_response(exc.status_code, str(exc.detail), f"HTTP_{exc.status_code}")


async def validation_exception_handler(
    request: Request,
    exc: RequestValidationError,
) -> JSONResponse:
    logger.warning(f"Validation error on {request.method} {request.url.path}")

    errors = [
        {
            "field": " -> ".join(str(loc) for loc in error["loc"]),
            "message": error["msg"],
            "type": error["type"],
        }
        for error in exc.errors()
    ]
    return create_error_response(
        status.HTTP_422_UNPROCESSABLE_ENTITY,
        "Validation error",
        "VALIDATION_ERROR",
        {"errors": errors},
    )


async def integrity_exception_handler(
    request: Request,
    exc: IntegrityError,
) -> JSONResponse:
    """A request-level commit lost a race on a unique key."""
    logger.error(f"Integrity error on {request.method} {request.url.path}: {exc.orig}")
    return create_error_response(
        status.HTTP_409_CONFLICT,
        "The write conflicts with an existing record",
        "INTEGRITY_ERROR",
    )


async def operational_exception_handler(
    request: Request,
    exc: OperationalError,
) -> JSONResponse:
    logger.error(f"Database operational error on {request.method} {request.url.path}: {exc}")
    return create_error_response(
        status.HTTP_503_SERVICE_UNAVAILABLE,
        "Database temporarily unavailable. Please try again.",
        "DATABASE_UNAVAILABLE",
    )


async def general_exception_handler(
    request: Request,
    exc: Exception,
) -> JSONResponse:
    logger.error(f"Unhandled exception on {request.method} {request.url.path}: {exc}", exc_info=True)
    return create_error_response(
        status.HTTP_500_INTERNAL_SERVER_ERROR,
        "An unexpected error occurred. Please try again later.",
        "INTERNAL_SERVER_ERROR",
    )


def register_exception_handlers(app):
    app.add_exception_handler(ColdRoomException, coldroom_exception_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(IntegrityError, integrity_exception_handler)
    app.add_exception_handler(OperationalError, operational_exception_handler)
    app.add_exception_handler(Exception, general_exception_handler)

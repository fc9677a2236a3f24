"""
Centralized error handling utilities for the commission engine API.

All HTTP errors carry the detail shape {"error": CODE, "message": ...}.
"""

import logging
from typing import Any, Dict, Optional

from fastapi import HTTPException, status

logger = logging.getLogger(__name__)


class AppError(Exception):
    """Base application error with structured data."""

    def __init__(
        self,
        message: str,
        code: str = "INTERNAL_ERROR",
        status_code: int = 500,
        details: Optional[Dict[str, Any]] = None
    ):
        self.message = message
        self.code = code
        self.status_code = status_code
        self.details = details or {}
        super().__init__(message)


class ErrorCodes:
    """Standard error codes for API responses."""
    INTERNAL_ERROR = "INTERNAL_ERROR"
    NOT_FOUND = "NOT_FOUND"
    VALIDATION_ERROR = "VALIDATION_ERROR"
    HOLD_PERIOD_ACTIVE = "HOLD_PERIOD_ACTIVE"
    SERVICE_UNAVAILABLE = "SERVICE_UNAVAILABLE"
    PROCESSING_FAILED = "PROCESSING_FAILED"
    DATABASE_ERROR = "DATABASE_ERROR"
    INSUFFICIENT_BALANCE = "INSUFFICIENT_BALANCE"
    BELOW_MIN_WITHDRAWAL = "BELOW_MIN_WITHDRAWAL"
    INVALID_STATUS = "INVALID_STATUS"


def handle_exception(
    error: Exception,
    operation: str,
    *,
    resource_id: Optional[str] = None,
) -> HTTPException:
    """
    Log an exception with context and turn it into an HTTPException.

    HTTPExceptions pass through unchanged and AppErrors keep their code and
    status; anything else maps to a generic message that does not expose
    internals.

    Example:
        try:
            report = await pipeline.run_payout_batch(manual=True)
        except Exception as e:
            raise handle_exception(e, "payout_run")
    """
    context = {
        "operation": operation,
        "error_type": type(error).__name__,
        "error_message": str(error),
    }
    if resource_id:
        context["resource_id"] = resource_id

    if isinstance(error, HTTPException):
        return error

    if isinstance(error, AppError):
        logger.warning(f"{operation} failed: {error.message}", extra=context)
        return HTTPException(
            status_code=error.status_code,
            detail={
                "error": error.code,
                "message": error.message,
                "details": error.details
            }
        )

    logger.error(f"Error in {operation}: {error}", extra=context, exc_info=True)

    error_str = str(error).lower()
    if "connection" in error_str or "timeout" in error_str:
        return HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={
                "error": ErrorCodes.SERVICE_UNAVAILABLE,
                "message": "Service temporarily unavailable. Please try again."
            }
        )

    return HTTPException(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail={
            "error": ErrorCodes.PROCESSING_FAILED if "run" in operation else ErrorCodes.INTERNAL_ERROR,
            "message": "An unexpected error occurred. Please try again."
        }
    )


def raise_not_found(resource: str, resource_id: Optional[str] = None) -> HTTPException:
    """
    Raise a standardized 404 Not Found error.

    Example:
        if not settlement:
            raise_not_found("Settlement", settlement_id)
    """
    if resource_id:
        logger.warning(f"{resource} not found: {resource_id}")

    raise HTTPException(
        status_code=status.HTTP_404_NOT_FOUND,
        detail={
            "error": ErrorCodes.NOT_FOUND,
            "message": f"{resource} not found"
        }
    )


def raise_validation_error(
    message: str,
    field: Optional[str] = None,
    code: str = ErrorCodes.VALIDATION_ERROR,
) -> HTTPException:
    """Raise a standardized 400 Validation error."""
    detail = {
        "error": code,
        "message": message
    }
    if field:
        detail["field"] = field

    raise HTTPException(
        status_code=status.HTTP_400_BAD_REQUEST,
        detail=detail
    )

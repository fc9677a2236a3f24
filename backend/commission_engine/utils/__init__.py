"""
Utility modules for the commission engine.
"""

from .errors import (
    handle_exception,
    raise_not_found,
    raise_validation_error,
    AppError,
    ErrorCodes,
)

__all__ = [
    "handle_exception",
    "raise_not_found",
    "raise_validation_error",
    "AppError",
    "ErrorCodes",
]

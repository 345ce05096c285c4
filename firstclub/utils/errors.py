"""
Standardized error responses for the membership API.

Every error body has the same shape:
{
    "error": {
        "message": "User-friendly error message",
        "code": "ERROR_CODE",
        ...optional client-facing details
    }
}

Usage:
    from firstclub.utils.errors import error_response, ErrorCode

    return error_response("Plan not found", ErrorCode.NOT_FOUND, 404)
"""
import logging
from enum import Enum
from typing import Optional
from flask import jsonify

from .exceptions import (
    MembershipError,
    NotFoundError,
    ActiveSubscriptionExistsError,
    NoActiveSubscriptionError,
    TierEligibilityError,
    InvalidTierChangeError,
    RenewalNotAllowedError,
    InvalidActivityError,
    BatchTooLargeError,
    ValidationError,
    BusyError,
)

logger = logging.getLogger(__name__)


class ErrorCode(str, Enum):
    """Error codes that are not produced by a MembershipError subclass."""

    INVALID_REQUEST = "INVALID_REQUEST"
    MISSING_FIELD = "MISSING_FIELD"
    NOT_FOUND = "NOT_FOUND"
    INTERNAL_ERROR = "INTERNAL_ERROR"


# Business errors -> HTTP status. Checked in order, first isinstance match wins.
STATUS_BY_ERROR = (
    (NotFoundError, 404),
    (ActiveSubscriptionExistsError, 409),
    (NoActiveSubscriptionError, 409),
    (InvalidTierChangeError, 409),
    (RenewalNotAllowedError, 409),
    (TierEligibilityError, 422),
    (BatchTooLargeError, 413),
    (InvalidActivityError, 400),
    (ValidationError, 400),
    (BusyError, 503),
)


def error_response(
    message: str,
    code=ErrorCode.INTERNAL_ERROR,
    status_code: int = 500,
    log_error: bool = True,
    details: Optional[dict] = None,
    extra: Optional[dict] = None
) -> tuple:
    """
    Create a standardized error response.

    Args:
        message: User-friendly error message
        code: ErrorCode member or a MembershipError code string
        status_code: HTTP status code
        log_error: Whether to log the error
        details: Internal details, logged but never returned to the client
        extra: Client-facing fields merged into the error body

    Returns:
        Tuple of (response, status_code) for Flask
    """
    code_value = code.value if isinstance(code, ErrorCode) else code

    if log_error and status_code >= 500:
        logger.error(f"API Error [{code_value}]: {message}", extra={"details": details})
    elif log_error and status_code >= 400:
        logger.warning(f"API Error [{code_value}]: {message}", extra={"details": details})

    body = {"message": message, "code": code_value}
    if extra:
        body.update(extra)

    return jsonify({"error": body}), status_code


def membership_error_response(error: MembershipError) -> tuple:
    """Render a MembershipError with its mapped status code."""
    status_code = 500
    for error_class, status in STATUS_BY_ERROR:
        if isinstance(error, error_class):
            status_code = status
            break

    if status_code >= 500 and not isinstance(error, BusyError):
        # Configuration/internal failures: do not leak the message
        return internal_error(details={'code': error.code, 'message': error.message})

    payload = error.to_dict()
    message = payload.pop('message')
    code = payload.pop('code')
    response, status = error_response(message, code, status_code, log_error=status_code >= 500, extra=payload)
    if isinstance(error, BusyError):
        response.headers['Retry-After'] = '1'
    return response, status


def bad_request(message: str, code: ErrorCode = ErrorCode.INVALID_REQUEST) -> tuple:
    """400 Bad Request error."""
    return error_response(message, code, 400, log_error=False)


def not_found(message: str, code: ErrorCode = ErrorCode.NOT_FOUND) -> tuple:
    """404 Not Found error."""
    return error_response(message, code, 404, log_error=False)


def internal_error(message: str = "An unexpected error occurred", details: Optional[dict] = None) -> tuple:
    """500 Internal Server Error."""
    return error_response(message, ErrorCode.INTERNAL_ERROR, 500, log_error=True, details=details)

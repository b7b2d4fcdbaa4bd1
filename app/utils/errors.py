"""
Standardized error response utilities for the referral engine API.

Provides consistent error response format across all endpoints:
{
    "error": {
        "message": "User-friendly error message",
        "code": "ERROR_CODE"
    }
}

Usage:
    from app.utils.errors import error_response, ErrorCode

    return error_response("Code not found", ErrorCode.NOT_FOUND, 404)
"""
import logging
from enum import Enum
from flask import jsonify
from typing import Optional

from .exceptions import ReferralError

logger = logging.getLogger(__name__)


class ErrorCode(str, Enum):
    """Standardized error codes for API responses."""

    # Authentication & Authorization (401, 403)
    AUTH_REQUIRED = "AUTH_REQUIRED"
    PERMISSION_DENIED = "PERMISSION_DENIED"

    # Validation Errors (400, 422)
    INVALID_REQUEST = "INVALID_REQUEST"
    MISSING_FIELD = "MISSING_FIELD"
    VALIDATION_ERROR = "VALIDATION_ERROR"
    INVALID_CODE = "INVALID_CODE"

    # Not Found (404)
    NOT_FOUND = "NOT_FOUND"

    # Conflict (409)
    DUPLICATE_ENTRY = "DUPLICATE_ENTRY"
    ALREADY_CONVERTED = "ALREADY_CONVERTED"
    STATE_CONFLICT = "STATE_CONFLICT"

    # Policy (403)
    FRAUD_BLOCKED = "FRAUD_BLOCKED"

    # Server Errors (500, 503)
    INTERNAL_ERROR = "INTERNAL_ERROR"
    GENERATION_EXHAUSTED = "GENERATION_EXHAUSTED"
    SETTLEMENT_FAILED = "SETTLEMENT_FAILED"


# HTTP status per error kind; individual codes can override below
KIND_STATUS = {
    'validation': 400,
    'not_found': 404,
    'conflict': 409,
    'policy': 403,
    'operational': 500,
}

CODE_STATUS = {
    'INVALID_CODE': 422,
    'GENERATION_EXHAUSTED': 503,
    'AUTHORIZATION_ERROR': 403,
}


def error_response(
    message: str,
    code: ErrorCode = ErrorCode.INTERNAL_ERROR,
    status_code: int = 500,
    log_error: bool = True,
    details: Optional[dict] = None
) -> tuple:
    """
    Create a standardized error response.

    Args:
        message: User-friendly error message
        code: Error code from ErrorCode enum (or a raw string code)
        status_code: HTTP status code
        log_error: Whether to log the error (default True for 500s)
        details: Optional additional details returned to the caller

    Returns:
        Tuple of (response, status_code) for Flask
    """
    if log_error and status_code >= 500:
        logger.error(f"API Error [{code}]: {message}", extra={"details": details})
    elif log_error and status_code >= 400:
        logger.warning(f"API Error [{code}]: {message}", extra={"details": details})

    response = {
        "error": {
            "message": message,
            "code": code.value if isinstance(code, ErrorCode) else code
        }
    }
    if details:
        response["error"]["details"] = details

    return jsonify(response), status_code


def error_from_exception(error: ReferralError) -> tuple:
    """
    Render a ReferralError with the status matching its kind.

    Only operational errors are logged; validation failures, duplicates and
    fraud blocks are expected outcomes, not incidents.
    """
    status_code = CODE_STATUS.get(error.code, KIND_STATUS.get(error.kind, 500))
    details = {}
    reason = getattr(error, 'reason', None)
    if reason:
        details['reason'] = reason
    fraud_event_id = getattr(error, 'fraud_event_id', None)
    if fraud_event_id:
        details['fraud_event_id'] = fraud_event_id
    return error_response(
        error.message,
        error.code,
        status_code,
        log_error=error.kind == 'operational',
        details=details or None
    )


# Convenience functions for common error types
def bad_request(message: str, code: ErrorCode = ErrorCode.INVALID_REQUEST) -> tuple:
    """400 Bad Request error."""
    return error_response(message, code, 400, log_error=False)


def unauthorized(message: str = "Authentication required", code: ErrorCode = ErrorCode.AUTH_REQUIRED) -> tuple:
    """401 Unauthorized error."""
    return error_response(message, code, 401, log_error=False)


def forbidden(message: str = "Permission denied", code: ErrorCode = ErrorCode.PERMISSION_DENIED) -> tuple:
    """403 Forbidden error."""
    return error_response(message, code, 403, log_error=False)


def not_found(message: str, code: ErrorCode = ErrorCode.NOT_FOUND) -> tuple:
    """404 Not Found error."""
    return error_response(message, code, 404, log_error=False)


def internal_error(message: str = "An unexpected error occurred", details: Optional[dict] = None) -> tuple:
    """500 Internal Server Error."""
    return error_response(message, ErrorCode.INTERNAL_ERROR, 500, log_error=True, details=details)

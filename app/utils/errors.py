"""
Standardized error response utilities for the SipGrounds API.

Provides consistent error response format across all endpoints:
{
    "success": false,
    "error": {
        "message": "User-friendly error message",
        "code": "ERROR_CODE"
    }
}

Usage:
    from app.utils.errors import error_response, ErrorCode

    return error_response("Order not found", ErrorCode.ORDER_NOT_FOUND, 404)
"""
import logging
from enum import Enum
from flask import jsonify
from typing import Optional

logger = logging.getLogger(__name__)

GENERIC_ERROR_MESSAGE = "Something went wrong, please try again"


class ErrorCode(str, Enum):
    """Standardized error codes for API responses."""

    # Authentication & Authorization (401, 403)
    AUTH_REQUIRED = "AUTH_REQUIRED"
    INVALID_SIGNATURE = "INVALID_SIGNATURE"
    PERMISSION_DENIED = "PERMISSION_DENIED"

    # Validation Errors (400)
    INVALID_REQUEST = "INVALID_REQUEST"
    MISSING_FIELD = "MISSING_FIELD"
    VALIDATION_ERROR = "VALIDATION_ERROR"

    # Not Found (404)
    NOT_FOUND = "NOT_FOUND"
    ITEM_NOT_FOUND = "ITEM_NOT_FOUND"
    ORDER_NOT_FOUND = "ORDER_NOT_FOUND"
    USER_NOT_FOUND = "USER_NOT_FOUND"
    REWARD_NOT_FOUND = "REWARD_NOT_FOUND"

    # Business Logic Errors (400, 409)
    INSUFFICIENT_STOCK = "INSUFFICIENT_STOCK"
    INSUFFICIENT_POINTS = "INSUFFICIENT_POINTS"
    INVALID_COUPON = "INVALID_COUPON"
    REWARD_UNAVAILABLE = "REWARD_UNAVAILABLE"
    INVALID_STATUS_TRANSITION = "INVALID_STATUS_TRANSITION"
    PAYMENT_FAILED = "PAYMENT_FAILED"

    # External Service Errors (502, 504)
    GATEWAY_ERROR = "GATEWAY_ERROR"
    GATEWAY_TIMEOUT = "GATEWAY_TIMEOUT"

    # Server Errors (500)
    INTERNAL_ERROR = "INTERNAL_ERROR"
    DATABASE_ERROR = "DATABASE_ERROR"


# HTTP status for each code a service result can carry
STATUS_BY_CODE = {
    ErrorCode.AUTH_REQUIRED: 401,
    ErrorCode.INVALID_SIGNATURE: 400,
    ErrorCode.PERMISSION_DENIED: 403,
    ErrorCode.INVALID_REQUEST: 400,
    ErrorCode.MISSING_FIELD: 400,
    ErrorCode.VALIDATION_ERROR: 400,
    ErrorCode.NOT_FOUND: 404,
    ErrorCode.ITEM_NOT_FOUND: 404,
    ErrorCode.ORDER_NOT_FOUND: 404,
    ErrorCode.USER_NOT_FOUND: 404,
    ErrorCode.REWARD_NOT_FOUND: 404,
    ErrorCode.INSUFFICIENT_STOCK: 400,
    ErrorCode.INSUFFICIENT_POINTS: 400,
    ErrorCode.INVALID_COUPON: 400,
    ErrorCode.REWARD_UNAVAILABLE: 400,
    ErrorCode.INVALID_STATUS_TRANSITION: 409,
    ErrorCode.PAYMENT_FAILED: 400,
    ErrorCode.GATEWAY_ERROR: 502,
    ErrorCode.GATEWAY_TIMEOUT: 504,
    ErrorCode.INTERNAL_ERROR: 500,
    ErrorCode.DATABASE_ERROR: 500,
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
        code: Error code from ErrorCode enum
        status_code: HTTP status code
        log_error: Whether to log the error (default True for 500s)
        details: Optional additional details (only logged, not returned to user)

    Returns:
        Tuple of (response, status_code) for Flask
    """
    if log_error and status_code >= 500:
        logger.error(f"API Error [{code}]: {message}", extra={"details": details})
    elif log_error and status_code >= 400:
        logger.warning(f"API Error [{code}]: {message}", extra={"details": details})

    response = {
        "success": False,
        "error": {
            "message": message,
            "code": code.value if isinstance(code, ErrorCode) else code
        }
    }

    return jsonify(response), status_code


def result_error_response(result: dict) -> tuple:
    """
    Turn a failed service result dict into an HTTP error response.

    Service methods return {'success': False, 'error': ..., 'error_code': ...};
    the code picks the status, unknown codes are treated as bad requests.
    """
    raw_code = result.get('error_code') or ErrorCode.INVALID_REQUEST.value
    try:
        code = ErrorCode(raw_code)
    except ValueError:
        code = raw_code
    status_code = STATUS_BY_CODE.get(code, 400)
    return error_response(result.get('error') or GENERIC_ERROR_MESSAGE, code, status_code)


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


def internal_error(message: str = GENERIC_ERROR_MESSAGE, details: Optional[dict] = None) -> tuple:
    """500 Internal Server Error."""
    return error_response(message, ErrorCode.INTERNAL_ERROR, 500, log_error=True, details=details)

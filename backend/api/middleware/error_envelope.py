"""
Error envelope middleware - Standardize all error responses.

Every error leaves the API in the same shape:
{
    "error": {
        "code": "NOT_FOUND",
        "message": "...",
        "requestId": "uuid",
        "field": "...",      (optional)
        "details": {...},    (optional)
        "hint": "..."        (optional)
    }
}
"""

import logging

from flask import Flask, g, jsonify
from werkzeug.exceptions import HTTPException

logger = logging.getLogger('api.middleware.error')


# Error codes reference
ERROR_CODES = {
    # Client errors (4xx)
    "BAD_REQUEST": 400,
    "NOT_FOUND": 404,
    "METHOD_NOT_ALLOWED": 405,
    "UNSUPPORTED_MEDIA_TYPE": 415,
    "TOO_MANY_REQUESTS": 429,

    # Param validation
    "INVALID_PARAMS": 400,

    # Change feed: since older than the retained change log
    "DELTA_EXPIRED": 410,

    # Server errors (5xx)
    "INTERNAL_ERROR": 500,
    "SERVICE_UNAVAILABLE": 503,
}


def _envelope(code: str, message: str, field: str = None, details: dict = None, hint: str = None):
    request_id = getattr(g, 'request_id', None)
    error = {
        "code": code,
        "message": message,
        "requestId": request_id,
    }
    if field:
        error["field"] = field
    if details:
        error["details"] = details
    if hint:
        error["hint"] = hint

    response = jsonify({"error": error})
    if request_id:
        response.headers['X-Request-ID'] = request_id
    return response


def setup_error_handlers(app: Flask) -> None:
    """
    Set up standardized error handlers on Flask app.

    HTTP exceptions keep their status code; anything else is logged with its
    traceback and answered with a 500 INTERNAL_ERROR envelope.
    """

    @app.errorhandler(HTTPException)
    def handle_http_error(error):
        # "Not Found" -> "NOT_FOUND"
        code = error.name.upper().replace(' ', '_')
        return _envelope(code, error.description), error.code

    @app.errorhandler(Exception)
    def handle_generic_error(error):
        request_id = getattr(g, 'request_id', None)
        logger.exception(
            f"Unhandled error: {error}",
            extra={
                "event": "unhandled_error",
                "request_id": request_id,
                "error_type": type(error).__name__,
            }
        )
        return _envelope("INTERNAL_ERROR", "An unexpected error occurred"), 500


def make_error_response(
    code: str,
    message: str,
    status_code: int = None,
    field: str = None,
    details: dict = None,
    hint: str = None,
):
    """
    Create a standardized error response.

    Args:
        code: Error code (e.g., "INVALID_PARAMS")
        message: Human-readable error message
        status_code: HTTP status code (defaults based on error code)
        field: Optional field name that caused the error
        details: Optional additional details dict
        hint: Optional hint for fixing the error

    Returns:
        Tuple of (response, status_code)
    """
    if status_code is None:
        status_code = ERROR_CODES.get(code, 500)
    return _envelope(code, message, field=field, details=details, hint=hint), status_code

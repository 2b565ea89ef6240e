# core/errors.py
"""
Closed error taxonomy for the Corridor Web backend

Every failure that crosses a request boundary is expressed as one of the
AppError subclasses below. classify_error() folds anything else into the
INTERNAL kind so handlers only ever deal with known shapes.
"""

import logging
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from werkzeug.exceptions import HTTPException
import httpx

logger = logging.getLogger(__name__)


class ErrorKind(Enum):
    """Known failure categories"""
    VALIDATION = "validation"
    UNAUTHORIZED = "unauthorized"
    FORBIDDEN = "forbidden"
    NOT_FOUND = "not_found"
    METHOD_NOT_ALLOWED = "method_not_allowed"
    CONSENT_REQUIRED = "consent_required"
    RATE_LIMITED = "rate_limited"
    CSRF = "csrf"
    CONFLICT = "conflict"
    UPSTREAM = "upstream"
    DATABASE = "database"
    INTERNAL = "internal"


class AppError(Exception):
    """Base application error carrying its HTTP status and response flags"""

    kind = ErrorKind.INTERNAL
    status_code = 500
    default_message = 'Internal server error'

    def __init__(self, message: Optional[str] = None, *, flags: Optional[Dict[str, Any]] = None,
                 details: Optional[Dict[str, Any]] = None):
        self.message = message or self.default_message
        self.flags = flags or {}
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        """JSON body for the error response, without internals"""
        body = {'error': self.message}
        body.update(self.flags)
        return body


class ValidationError(AppError):
    kind = ErrorKind.VALIDATION
    status_code = 400
    default_message = 'Invalid request'


class AuthenticationError(AppError):
    kind = ErrorKind.UNAUTHORIZED
    status_code = 401
    default_message = 'Authentication required'


class PermissionDeniedError(AppError):
    kind = ErrorKind.FORBIDDEN
    status_code = 403
    default_message = 'Admin access required'


class NotFoundError(AppError):
    kind = ErrorKind.NOT_FOUND
    status_code = 404
    default_message = 'Not found'


class MethodNotAllowedError(AppError):
    kind = ErrorKind.METHOD_NOT_ALLOWED
    status_code = 405
    default_message = 'Method not allowed'


class ConsentRequiredError(AppError):
    kind = ErrorKind.CONSENT_REQUIRED
    status_code = 403
    default_message = 'Analytics consent required'

    def __init__(self, message: Optional[str] = None, **kwargs):
        kwargs.setdefault('flags', {'consentRequired': True})
        super().__init__(message, **kwargs)


class RateLimitedError(AppError):
    kind = ErrorKind.RATE_LIMITED
    status_code = 429
    default_message = 'Too many requests'

    def __init__(self, message: Optional[str] = None, retry_after: float = 0, **kwargs):
        kwargs.setdefault('flags', {'retryAfter': int(retry_after + 0.999)})
        super().__init__(message, **kwargs)


class CSRFError(AppError):
    kind = ErrorKind.CSRF
    status_code = 403
    default_message = 'CSRF token validation failed'


class CSRFTokenMissingError(CSRFError):
    default_message = 'CSRF token not found. Please refresh the page.'


class ConflictError(AppError):
    kind = ErrorKind.CONFLICT
    status_code = 409
    default_message = 'Resource already exists'


class UpstreamError(AppError):
    kind = ErrorKind.UPSTREAM
    status_code = 500
    default_message = 'Upstream service failed'


class RequestRejectedError(ValidationError):
    """Client error raised by the HTTP layer itself (413, 415, ...); keeps its status"""

    def __init__(self, message: Optional[str] = None, status_code: int = 400, **kwargs):
        self.status_code = status_code
        super().__init__(message, **kwargs)


class DatabaseError(AppError):
    kind = ErrorKind.DATABASE
    status_code = 500
    default_message = 'Database operation failed'


class InternalError(AppError):
    kind = ErrorKind.INTERNAL


_HTTP_STATUS_ERRORS = {
    400: ValidationError,
    401: AuthenticationError,
    403: PermissionDeniedError,
    404: NotFoundError,
    405: MethodNotAllowedError,
}

# Used when a 429 carries no reset information
DEFAULT_RETRY_AFTER = 60


def _retry_after_seconds(exc: HTTPException) -> float:
    retry_after = getattr(exc, 'retry_after', None)
    if isinstance(retry_after, datetime):
        return max((retry_after - datetime.now(timezone.utc)).total_seconds(), 1)
    if isinstance(retry_after, (int, float)) and retry_after > 0:
        return retry_after
    return DEFAULT_RETRY_AFTER


def classify_error(exc: BaseException) -> AppError:
    """
    Map any caught exception onto the taxonomy

    Args:
        exc: Exception raised somewhere below a request handler

    Returns:
        An AppError instance; unknown exceptions become InternalError
    """
    if isinstance(exc, AppError):
        return exc

    if isinstance(exc, HTTPException):
        if exc.code == 429:
            return RateLimitedError(retry_after=_retry_after_seconds(exc))
        error_cls = _HTTP_STATUS_ERRORS.get(exc.code)
        if error_cls is not None:
            return error_cls(exc.description)
        if exc.code is not None and 400 <= exc.code < 500:
            return RequestRejectedError(exc.description, status_code=exc.code)
        return InternalError()

    if isinstance(exc, IntegrityError):
        return ConflictError()

    if isinstance(exc, SQLAlchemyError):
        return DatabaseError()

    if isinstance(exc, httpx.HTTPError):
        return UpstreamError()

    return InternalError()

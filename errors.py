"""
Service-level exceptions.

Each carries the HTTP status it maps to and a short machine-readable code,
so the Flask layer can turn any of them into a JSON error response.
"""

from typing import Optional


class PlasError(Exception):
    """Base class for errors surfaced to API clients"""
    status_code = 500
    default_code = "INTERNAL_ERROR"

    def __init__(self, message: str, code: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code

    def to_dict(self) -> dict:
        return {"error": self.message, "code": self.code}


class ValidationError(PlasError):
    status_code = 400
    default_code = "VALIDATION_ERROR"


class AuthenticationError(PlasError):
    status_code = 401
    default_code = "UNAUTHORIZED"


class PermissionDenied(PlasError):
    status_code = 403
    default_code = "FORBIDDEN"


class NotFoundError(PlasError):
    status_code = 404
    default_code = "NOT_FOUND"


class ConflictError(PlasError):
    status_code = 409
    default_code = "CONFLICT"


class ServiceUnavailable(PlasError):
    status_code = 503
    default_code = "SERVICE_UNAVAILABLE"

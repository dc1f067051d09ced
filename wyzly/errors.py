"""
Service-layer error taxonomy.

Services raise these with a human-readable message; the API layer turns them
into ``{"success": false, "error": ..., "details": ...}`` responses using the
attached status code.
"""

from typing import Any, Optional


class ServiceError(Exception):
    status_code = 500

    def __init__(self, message: str, details: Optional[Any] = None):
        super().__init__(message)
        self.message = message
        self.details = details


class ValidationError(ServiceError):
    status_code = 400


class AuthenticationError(ServiceError):
    status_code = 401


class PaymentError(ServiceError):
    status_code = 402


class PermissionDenied(ServiceError):
    status_code = 403


class NotFoundError(ServiceError):
    status_code = 404


class ConflictError(ServiceError):
    status_code = 409

from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions.

    Each subclass carries an HTTP-style ``status_code`` and a stable
    ``error_code`` so an outer API layer can map it without inspecting the
    message:
    - validation_error (400)
    - forbidden (403)
    - not_found (404)
    - conflict (409)
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ValidationError(ServiceError):
    """Input failed validation (400)."""
    status_code = 400
    error_code = "validation_error"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class PermissionDeniedError(ServiceError):
    """The operation is switched off or not allowed for the caller (403)."""
    status_code = 403
    error_code = "forbidden"


class StateConflictError(ServiceError):
    """The record is not in a state that allows the transition (409)."""
    status_code = 409
    error_code = "conflict"


__all__ = [
    "ServiceError",
    "ValidationError",
    "NotFoundError",
    "PermissionDeniedError",
    "StateConflictError",
]

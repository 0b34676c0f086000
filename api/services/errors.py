"""
Domain errors for the booking & ledger core.

Services raise these; the API layer maps each to its HTTP status through a
single exception handler registered in main.py. Messages are user-facing.
"""

from typing import Any


class StudioError(Exception):
    """Base class for every business-rule failure."""

    status_code: int = 400

    def __init__(self, message: str, **details: Any) -> None:
        self.message = message
        self.details = details
        super().__init__(message)

    @property
    def code(self) -> str:
        return self.__class__.__name__

    def to_dict(self) -> dict:
        return {"detail": self.message, "code": self.code, **self.details}


class InvalidRequest(StudioError):
    status_code = 400


class Unauthenticated(StudioError):
    status_code = 401


class Forbidden(StudioError):
    status_code = 403


class NotFound(StudioError):
    status_code = 404


class Conflict(StudioError):
    status_code = 409


class CapacityExceeded(StudioError):
    status_code = 422


class InsufficientBalance(StudioError):
    status_code = 422


class CancellationWindowExpired(StudioError):
    status_code = 422


class OutOfStock(StudioError):
    status_code = 422


class InvalidSignature(StudioError):
    status_code = 403


class GatewayError(StudioError):
    status_code = 502

from __future__ import annotations

from enum import Enum


class ErrorKind(str, Enum):
    NOT_FOUND = "not_found"
    UNAUTHORIZED = "unauthorized"
    FORBIDDEN = "forbidden"
    CONFLICT = "conflict"
    INVALID_STATE = "invalid_state"
    VALIDATION = "validation"
    UPSTREAM = "upstream"


# Conflict and invalid-state errors share 400 with validation errors; upstream failures surface as 500.
STATUS_BY_KIND = {
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.UNAUTHORIZED: 401,
    ErrorKind.FORBIDDEN: 403,
    ErrorKind.CONFLICT: 400,
    ErrorKind.INVALID_STATE: 400,
    ErrorKind.VALIDATION: 400,
    ErrorKind.UPSTREAM: 500,
}


class RentalWorkflowError(RuntimeError):
    kind = ErrorKind.VALIDATION

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    @property
    def status_code(self) -> int:
        return STATUS_BY_KIND[self.kind]


class NotFoundError(RentalWorkflowError):
    kind = ErrorKind.NOT_FOUND


class UnauthorizedError(RentalWorkflowError):
    kind = ErrorKind.UNAUTHORIZED


class ForbiddenError(RentalWorkflowError):
    kind = ErrorKind.FORBIDDEN


class ConflictError(RentalWorkflowError):
    kind = ErrorKind.CONFLICT


class InvalidStateError(RentalWorkflowError):
    kind = ErrorKind.INVALID_STATE


class ValidationFailedError(RentalWorkflowError):
    kind = ErrorKind.VALIDATION


class UpstreamFailureError(RentalWorkflowError):
    kind = ErrorKind.UPSTREAM

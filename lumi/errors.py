"""Caller-facing error taxonomy shared by the synchronous operations."""
from fastapi import status


class ServiceError(Exception):
    """Base error: a stable kind tag plus a human-readable message."""

    kind = "internal"
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict:
        return {"error": self.kind, "detail": self.message}


class InvalidArgument(ServiceError):
    kind = "invalid-argument"
    status_code = status.HTTP_400_BAD_REQUEST


class Unauthenticated(ServiceError):
    kind = "unauthenticated"
    status_code = status.HTTP_401_UNAUTHORIZED


class PermissionDenied(ServiceError):
    kind = "permission-denied"
    status_code = status.HTTP_403_FORBIDDEN


class NotFound(ServiceError):
    kind = "not-found"
    status_code = status.HTTP_404_NOT_FOUND


class FailedPrecondition(ServiceError):
    kind = "failed-precondition"
    status_code = status.HTTP_412_PRECONDITION_FAILED


class RateExceeded(ServiceError):
    kind = "resource-exhausted"
    status_code = status.HTTP_429_TOO_MANY_REQUESTS


class InternalError(ServiceError):
    kind = "internal"
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR

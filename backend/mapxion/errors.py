from __future__ import annotations


class AppError(Exception):
    """Base for failures that map onto a stable error code and HTTP status."""

    status_code = 500
    default_code = "internal_error"

    def __init__(self, message: str, *, code: str | None = None) -> None:
        super().__init__(message)
        self.code = code or self.default_code
        self.message = message

    def to_dict(self) -> dict:
        return {"error": self.code, "message": self.message}


class ValidationError(AppError):
    status_code = 400
    default_code = "invalid_request"


class NotFoundError(AppError):
    status_code = 404
    default_code = "not_found"


class ConflictError(AppError):
    status_code = 409
    default_code = "conflict"


class PayloadTooLargeError(AppError):
    status_code = 413
    default_code = "file_too_large"


class ServiceUnavailableError(AppError):
    status_code = 503
    default_code = "queue_unavailable"


class InternalError(AppError):
    status_code = 500
    default_code = "internal_error"

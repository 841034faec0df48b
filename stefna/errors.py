"""
Error taxonomy for the generation worker.

Every failure the worker can report carries a stable `ErrorCode`.  Routes
translate these into HTTP responses; the orchestrator records them on the
job row once a job exists.
"""

from enum import Enum
from typing import Optional

ERROR_MAX_LENGTH = 2000


class ErrorCode(str, Enum):
    VALIDATION_FAILED = "VALIDATION_FAILED"
    DAILY_CAP_REACHED = "DAILY_CAP_REACHED"
    INSUFFICIENT_CREDITS = "INSUFFICIENT_CREDITS"
    INVALID_ACTION = "INVALID_ACTION"
    DUPLICATE_RUN = "DUPLICATE_RUN"
    PROVIDER_ERROR = "PROVIDER_ERROR"
    TIMEOUT = "TIMEOUT"
    UPLOAD_FAILED = "UPLOAD_FAILED"
    COMPOSITION_FAILED = "COMPOSITION_FAILED"
    TOKEN_EXPIRED = "TOKEN_EXPIRED"
    AUTH_REQUIRED = "AUTH_REQUIRED"
    DB_ERROR = "DB_ERROR"
    NOT_FOUND = "NOT_FOUND"
    CAPACITY_EXHAUSTED = "CAPACITY_EXHAUSTED"
    INTERNAL_ERROR = "INTERNAL_ERROR"


def truncate_error(message: str, limit: int = ERROR_MAX_LENGTH) -> str:
    """Bound an error string before it is persisted on a job."""
    message = (message or "").strip() or "failed"
    if len(message) <= limit:
        return message
    return message[: limit - 3] + "..."


class StefnaError(Exception):
    code = ErrorCode.INTERNAL_ERROR

    def __init__(self, message: str = "", code: Optional[ErrorCode] = None):
        super().__init__(message)
        if code is not None:
            self.code = code
        self.message = message or self.code.value

    def to_detail(self) -> dict:
        return {"error": self.code.value, "message": self.message}


class ValidationFailed(StefnaError):
    code = ErrorCode.VALIDATION_FAILED


class CreditError(StefnaError):
    """Reservation denied. `code` tells which rule rejected it."""

    code = ErrorCode.INSUFFICIENT_CREDITS

    def __init__(self, code: ErrorCode, message: str = "", balance: Optional[int] = None):
        super().__init__(message, code)
        self.balance = balance

    def to_detail(self) -> dict:
        detail = super().to_detail()
        if self.balance is not None:
            detail["balance"] = self.balance
        return detail


class ProviderError(StefnaError):
    code = ErrorCode.PROVIDER_ERROR


class JobTimeout(StefnaError):
    code = ErrorCode.TIMEOUT


class UploadFailed(StefnaError):
    code = ErrorCode.UPLOAD_FAILED


class CompositionError(StefnaError):
    code = ErrorCode.COMPOSITION_FAILED


class StoreUnavailable(StefnaError):
    code = ErrorCode.DB_ERROR


class DuplicateRunError(StoreUnavailable):
    """Raised by a job store when the run_id unique index rejects an insert."""

    code = ErrorCode.DUPLICATE_RUN

    def __init__(self, run_id: str):
        super().__init__(f"run_id {run_id} already exists")
        self.run_id = run_id


class JobNotFound(StefnaError):
    code = ErrorCode.NOT_FOUND


class AuthError(StefnaError):
    code = ErrorCode.AUTH_REQUIRED

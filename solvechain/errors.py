"""Service error taxonomy shared by every layer."""

from datetime import datetime
from typing import Any, Dict


class ServiceError(Exception):
    """Base error rendered by the API exception handler."""

    status_code = 500
    code = "INTERNAL_ERROR"

    def __init__(self, message: str, *, code: str | None = None, **extra: Any):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code
        self.extra = extra

    def to_detail(self) -> Dict[str, Any]:
        detail: Dict[str, Any] = {"code": self.code, "message": self.message}
        detail.update(self.extra)
        return detail


class AuthenticationError(ServiceError):
    status_code = 401
    code = "NO_AUTH"


class ValidationError(ServiceError):
    status_code = 400
    code = "VALIDATION_ERROR"


class NotFoundError(ServiceError):
    status_code = 404
    code = "NOT_FOUND"


class InsufficientBalanceError(ServiceError):
    status_code = 402
    code = "INSUFFICIENT_BALANCE"


class StorageError(ServiceError):
    status_code = 500
    code = "STORAGE_ERROR"


class QuotaExceededError(ServiceError):
    """Raised when an identity reaches its rolling request ceiling."""

    status_code = 429
    code = "QUOTA_EXCEEDED"

    def __init__(
        self,
        message: str,
        *,
        limit: int,
        current_count: int,
        reset_at: datetime,
        retry_after_seconds: int,
    ):
        super().__init__(
            message,
            limit=limit,
            current_count=current_count,
            reset_at=reset_at.isoformat(),
            retry_after_seconds=retry_after_seconds,
        )
        self.limit = limit
        self.current_count = current_count
        self.reset_at = reset_at
        self.retry_after_seconds = retry_after_seconds


class ModelInvocationError(ServiceError):
    """A single provider call failed."""

    status_code = 502
    code = "MODEL_INVOCATION_FAILED"

    def __init__(self, provider: str, cause: Any):
        super().__init__(f"Model '{provider}' failed: {cause}", provider=provider)
        self.provider = provider
        self.cause = cause

"""
Domain errors for the store platform.

Request-time errors (validation, quota, conflict, authorization, not found)
are raised synchronously and mapped to HTTP responses in main.py.
ClusterError wraps any Kubernetes / Helm failure. ProvisioningTimeoutError
only ever lives inside a background task, where it becomes a FAILED store.
"""
from typing import Optional


class StorePlatformError(Exception):
    """Base class for all platform errors."""

    code = "PLATFORM_ERROR"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(StorePlatformError):
    code = "VALIDATION_ERROR"


class QuotaExceeded(StorePlatformError):
    code = "QUOTA_EXCEEDED"

    def __init__(self, current: int, maximum: int):
        super().__init__(
            f"Store quota exceeded: you can create a maximum of {maximum} stores "
            f"({current} active). Delete existing stores to create new ones."
        )
        self.current = current
        self.max = maximum


class ConflictError(StorePlatformError):
    code = "CONFLICT"


class AuthorizationError(StorePlatformError):
    code = "FORBIDDEN"


class NotFoundError(StorePlatformError):
    code = "NOT_FOUND"


class ClusterError(StorePlatformError):
    """A Kubernetes API or Helm failure.

    `status` carries the HTTP-equivalent status (404, 409, ...) when the
    failure has one, so callers can apply their idempotency policy.
    """

    code = "CLUSTER_ERROR"

    def __init__(self, message: str, status: Optional[int] = None, detail: str = ""):
        super().__init__(message)
        self.status = status
        self.detail = detail

    @property
    def is_not_found(self) -> bool:
        return self.status == 404

    @property
    def is_conflict(self) -> bool:
        return self.status == 409


class ProvisioningTimeoutError(StorePlatformError, TimeoutError):
    code = "PROVISIONING_TIMEOUT"

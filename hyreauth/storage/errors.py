from __future__ import annotations

from typing import Any, Dict, Optional

from hyreauth.service.errors import ServiceUnavailableError


class ConstraintViolation(Exception):
    """Raised when a storage-layer uniqueness constraint is violated."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class StoreUnavailableError(ServiceUnavailableError):
    """The TTL store could not complete an operation (connection, timeout, protocol)."""

    def __init__(self, operation: str, cause: Optional[BaseException] = None) -> None:
        super().__init__(
            "Session store is temporarily unavailable",
            detail={"operation": operation},
        )
        self.operation = operation
        self.cause = cause


__all__ = ["ConstraintViolation", "StoreUnavailableError"]

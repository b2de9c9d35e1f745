from __future__ import annotations

from typing import Any, Dict, Optional


class PersistenceError(Exception):
    """Raised when a store call cannot complete.

    ``retryable`` marks transient failures (pool exhaustion, statement
    timeouts, dropped connections) that a client may safely retry.
    """

    def __init__(
        self,
        message: str,
        detail: Optional[Dict[str, Any]] = None,
        *,
        retryable: bool = False,
    ):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}
        self.retryable = retryable


class ConstraintViolation(PersistenceError):
    """Raised when a storage-layer uniqueness or FK constraint is violated."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message, detail, retryable=False)


__all__ = ["ConstraintViolation", "PersistenceError"]

from __future__ import annotations

from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    """Raised when a storage-layer uniqueness constraint is violated."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class DuplicateToken(ConstraintViolation):
    """A refresh token with the same value is already stored."""

    def __init__(self, detail: Optional[Dict[str, Any]] = None):
        super().__init__("refresh token already exists", detail)


class BackendUnavailable(Exception):
    """The directory database could not be reached or timed out."""

    def __init__(self, operation: str, cause: Optional[BaseException] = None):
        super().__init__(f"{operation} failed: {type(cause).__name__ if cause else 'unavailable'}")
        self.operation = operation


__all__ = ["BackendUnavailable", "ConstraintViolation", "DuplicateToken"]

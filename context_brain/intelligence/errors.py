from __future__ import annotations

from enum import Enum
from typing import Any, Dict, Optional


class ContextErrorClass(str, Enum):
    # Surfaced failure taxonomy. Minter outages are recovered locally and never appear here.
    NOT_FOUND = "NOT_FOUND"
    VALIDATION = "VALIDATION"
    POLICY_DENIED = "POLICY_DENIED"
    CONFLICT = "CONFLICT"
    STORE_FAILURE = "STORE_FAILURE"


class ContextError(Exception):
    """Base error for context operations. `details` is safe to return to callers."""

    failure_class: ContextErrorClass = ContextErrorClass.VALIDATION

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.details: Dict[str, Any] = dict(details or {})

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ok": False,
            "error": self.failure_class.value,
            "message": self.message,
            "details": self.details,
        }


class ContextNotFound(ContextError):
    failure_class = ContextErrorClass.NOT_FOUND


class ContextValidationError(ContextError):
    failure_class = ContextErrorClass.VALIDATION


class PolicyDenied(ContextError):
    """Confirmation missing, or the analysis recommends against proceeding."""

    failure_class = ContextErrorClass.POLICY_DENIED


class LifecycleConflict(ContextError):
    """Optimistic version check failed; another operation already moved the row."""

    failure_class = ContextErrorClass.CONFLICT


class StoreFailure(ContextError):
    failure_class = ContextErrorClass.STORE_FAILURE

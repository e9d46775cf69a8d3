"""
Error taxonomy for routine operations.

Expected, user-facing conditions (completing an unknown habit, skipping a
required one, finishing too early) are returned as ``OperationResult``
values rather than raised. Only malformed persisted data raises.
"""

from __future__ import annotations
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional


class ValidationError(ValueError):
    """Raised when persisted routine data fails validation."""
    pass


class RoutineErrorKind(Enum):
    EMPTY_ROUTINE = "empty_routine"
    INVALID_STATE = "invalid_state"
    UNKNOWN_HABIT = "unknown_habit"
    UNKNOWN_OPTION = "unknown_option"
    REQUIRED_HABIT = "required_habit"
    INCOMPLETE_ROUTINE = "incomplete_routine"
    INVALID_OPERATION = "invalid_operation"
    SESSION_ALREADY_ACTIVE = "session_already_active"
    NO_ACTIVE_SESSION = "no_active_session"
    SESSION_NOT_FOUND = "session_not_found"
    TEMPLATE_NOT_FOUND = "template_not_found"
    TEMPLATE_INVALID = "template_invalid"


@dataclass
class OperationResult:
    """Outcome of a session or service operation."""

    ok: bool
    error: Optional[RoutineErrorKind] = None
    message: str = ""
    changed: bool = False
    warnings: List[str] = field(default_factory=list)
    snapshot: Optional[Any] = None

    @classmethod
    def success(cls, snapshot: Any = None, changed: bool = True, message: str = "",
                warnings: Optional[List[str]] = None) -> "OperationResult":
        return cls(ok=True, changed=changed, message=message,
                   warnings=list(warnings or []), snapshot=snapshot)

    @classmethod
    def failure(cls, error: RoutineErrorKind, message: str, snapshot: Any = None) -> "OperationResult":
        return cls(ok=False, error=error, message=message, snapshot=snapshot)

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {"ok": self.ok, "changed": self.changed}
        if self.error is not None:
            result["error"] = self.error.value
        if self.message:
            result["message"] = self.message
        if self.warnings:
            result["warnings"] = list(self.warnings)
        if self.snapshot is not None and hasattr(self.snapshot, "to_dict"):
            result["snapshot"] = self.snapshot.to_dict()
        return result

from __future__ import annotations

from enum import StrEnum
from typing import Any


class ErrorKind(StrEnum):
    NOT_FOUND = "NotFound"
    INVALID_MODE = "InvalidMode"
    ALREADY_ASSIGNED = "AlreadyAssigned"
    CROSS_SCOPE_REFERENCE = "CrossScopeReference"
    CYCLE_DETECTED = "CycleDetected"
    BLOCKED = "Blocked"
    MERGE_CONFLICT = "MergeConflict"
    TOOL_FAILURE = "ToolFailure"
    VALIDATION_ERROR = "ValidationError"
    STORAGE_FAILURE = "StorageFailure"


class OrchestrationError(RuntimeError):
    """Raised when an orchestration operation cannot be applied."""

    kind: ErrorKind = ErrorKind.VALIDATION_ERROR

    def __init__(self, message: str, *, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"kind": str(self.kind), "message": str(self)}
        if self.details:
            payload["details"] = dict(self.details)
        return payload


class NotFoundError(OrchestrationError):
    kind = ErrorKind.NOT_FOUND


class InvalidModeError(OrchestrationError):
    kind = ErrorKind.INVALID_MODE


class AlreadyAssignedError(OrchestrationError):
    kind = ErrorKind.ALREADY_ASSIGNED


class CrossScopeReferenceError(OrchestrationError):
    kind = ErrorKind.CROSS_SCOPE_REFERENCE


class CycleDetectedError(OrchestrationError):
    kind = ErrorKind.CYCLE_DETECTED


class BlockedError(OrchestrationError):
    kind = ErrorKind.BLOCKED


class MergeConflictError(OrchestrationError):
    kind = ErrorKind.MERGE_CONFLICT


class ToolFailureError(OrchestrationError):
    kind = ErrorKind.TOOL_FAILURE


class ValidationError(OrchestrationError):
    kind = ErrorKind.VALIDATION_ERROR

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional


class ErrorKind(str, Enum):
    validation_error = "validation_error"
    unresolved_identifier = "unresolved_identifier"
    not_found = "not_found"
    precondition_failed = "precondition_failed"
    dispatch_error = "dispatch_error"
    internal_error = "internal_error"


class FollowupError(Exception):
    """Expected domain failure. Converted to an OperationResult at the operation boundary."""

    kind: ErrorKind = ErrorKind.internal_error


class WebhookValidationError(FollowupError):
    kind = ErrorKind.validation_error


class UnresolvedIdentifierError(FollowupError):
    kind = ErrorKind.unresolved_identifier


class NotFoundError(FollowupError):
    kind = ErrorKind.not_found

    def __init__(self, resource: str, identifier: Optional[str] = None) -> None:
        self.resource = resource
        self.identifier = identifier
        detail = f"{resource} not found"
        if identifier:
            detail = f"{detail}: {identifier}"
        super().__init__(detail)


class PreconditionError(FollowupError):
    kind = ErrorKind.precondition_failed

    def __init__(self, reason: str, message: Optional[str] = None) -> None:
        self.reason = reason
        super().__init__(message or reason)


class DispatchError(FollowupError):
    kind = ErrorKind.dispatch_error


@dataclass(frozen=True)
class OperationResult:
    success: bool
    message: str
    data: Optional[dict[str, Any]] = None
    error: Optional[ErrorKind] = None
    reason: Optional[str] = None
    detail: Optional[str] = None

    @classmethod
    def ok(cls, message: str, data: Optional[dict[str, Any]] = None) -> "OperationResult":
        return cls(success=True, message=message, data=data)

    @classmethod
    def from_error(cls, exc: FollowupError) -> "OperationResult":
        return cls(
            success=False,
            message=str(exc),
            error=exc.kind,
            reason=getattr(exc, "reason", None) or getattr(exc, "resource", None),
        )

    @classmethod
    def internal(cls, message: str, exc: BaseException) -> "OperationResult":
        return cls(
            success=False,
            message=message,
            error=ErrorKind.internal_error,
            detail=f"{type(exc).__name__}: {exc}",
        )

    def public_message(self, *, expose_detail: bool) -> str:
        if self.error == ErrorKind.internal_error and expose_detail and self.detail:
            return f"{self.message} ({self.detail})"
        return self.message

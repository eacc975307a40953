"""
Review Desk Error Handling

Error taxonomy shared by the review engine, the REST client and the HTTP surface.
Every error carries a stable code, a user-facing message and debugging context.
"""
from typing import Optional, Dict, Any
from fastapi import HTTPException
from enum import Enum


class ErrorCode(str, Enum):
    """Standardized error codes for client handling."""
    # Caught before any network call
    VALIDATION_FAILED = "VALIDATION_FAILED"
    MISSING_REMARKS = "MISSING_REMARKS"
    MISSING_COLLABORATOR = "MISSING_COLLABORATOR"
    EMPTY_MESSAGE = "EMPTY_MESSAGE"

    # Role gates
    NOT_PERMITTED = "NOT_PERMITTED"

    # Lookups
    NOT_FOUND = "NOT_FOUND"

    # Recoverable conflicts
    CONFLICT = "CONFLICT"
    ALREADY_EXISTS = "ALREADY_EXISTS"
    CLOSURE_PENDING = "CLOSURE_PENDING"
    CLOSURE_RESOLVED = "CLOSURE_RESOLVED"
    TRANSITION_IN_PROGRESS = "TRANSITION_IN_PROGRESS"
    STALE_UPDATE = "STALE_UPDATE"

    # Network
    TRANSIENT_NETWORK = "TRANSIENT_NETWORK"


class ReviewDeskError(Exception):
    """Base exception with structured error info."""

    def __init__(
        self,
        code: ErrorCode,
        message: str,
        detail: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None
    ):
        self.code = code
        self.message = message
        self.detail = detail
        self.context = context or {}
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to API response format."""
        result = {
            "error": self.code.value,
            "message": self.message
        }
        if self.detail:
            result["detail"] = self.detail
        if self.context:
            result["context"] = self.context
        return result


class TransitionError(ReviewDeskError):
    """Common base for failures raised while planning or executing a status transition."""


class ValidationError(TransitionError):
    """Input rejected locally, before any network call."""

    def __init__(
        self,
        message: str,
        code: ErrorCode = ErrorCode.VALIDATION_FAILED,
        detail: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(code=code, message=message, detail=detail, context=context)


class NotPermittedError(TransitionError):
    """Action attempted outside the actor's allowed transitions."""

    def __init__(self, message: str, detail: Optional[str] = None, context: Optional[Dict[str, Any]] = None):
        super().__init__(
            code=ErrorCode.NOT_PERMITTED,
            message=message,
            detail=detail,
            context=context,
        )


class NotFoundError(ReviewDeskError):
    """A required record does not exist."""

    def __init__(self, resource: str, resource_id: str, detail: Optional[str] = None):
        super().__init__(
            code=ErrorCode.NOT_FOUND,
            message=f"{resource} {resource_id} not found",
            detail=detail,
            context={"resource": resource, "id": str(resource_id)},
        )


class ConflictError(TransitionError):
    """Recoverable conflict; callers refresh from the source of truth."""

    def __init__(
        self,
        message: str,
        code: ErrorCode = ErrorCode.CONFLICT,
        detail: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(code=code, message=message, detail=detail, context=context)


class AlreadyExistsError(ConflictError):
    """Adding something that is already present."""

    def __init__(self, message: str, context: Optional[Dict[str, Any]] = None):
        super().__init__(message, code=ErrorCode.ALREADY_EXISTS, context=context)


class TransitionInProgressError(ConflictError):
    """A transition for the same record is still awaiting the server."""

    def __init__(self, kind: str, entity_id: str):
        super().__init__(
            f"A status update for {kind} {entity_id} is already in progress",
            code=ErrorCode.TRANSITION_IN_PROGRESS,
            context={"kind": kind, "id": str(entity_id)},
        )


class TransientNetworkError(ReviewDeskError):
    """Network or upstream failure that may succeed on retry."""

    def __init__(self, operation: str, detail: str, status_code: Optional[int] = None):
        context: Dict[str, Any] = {"operation": operation}
        if status_code is not None:
            context["status_code"] = status_code
        super().__init__(
            code=ErrorCode.TRANSIENT_NETWORK,
            message=f"{operation} failed",
            detail=detail,
            context=context,
        )


def to_http_exception(error: ReviewDeskError) -> HTTPException:
    """Convert ReviewDeskError to HTTPException."""
    status_map = {
        ErrorCode.VALIDATION_FAILED: 400,
        ErrorCode.MISSING_REMARKS: 400,
        ErrorCode.MISSING_COLLABORATOR: 400,
        ErrorCode.EMPTY_MESSAGE: 400,
        ErrorCode.NOT_PERMITTED: 403,
        ErrorCode.NOT_FOUND: 404,
        ErrorCode.CONFLICT: 409,
        ErrorCode.ALREADY_EXISTS: 409,
        ErrorCode.CLOSURE_PENDING: 409,
        ErrorCode.CLOSURE_RESOLVED: 409,
        ErrorCode.TRANSITION_IN_PROGRESS: 409,
        ErrorCode.STALE_UPDATE: 409,
        ErrorCode.TRANSIENT_NETWORK: 503,
    }

    return HTTPException(
        status_code=status_map.get(error.code, 500),
        detail=error.to_dict()
    )

"""Custom exceptions for the playbook engine.

Every error carries a stable ``kind`` so callers can branch on it and
retries of an already-successful call see the same shape.
"""

from typing import Any, Dict, List, Optional


class BaseAPIException(Exception):
    """Base exception for all API exceptions."""

    kind = "Error"

    def __init__(
        self,
        message: str = "An error occurred",
        status_code: int = 500,
        details: Optional[Dict[str, Any]] = None,
        kind: Optional[str] = None,
    ):
        self.message = message
        self.status_code = status_code
        self.details = details or {}
        if kind:
            self.kind = kind
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        return {"kind": self.kind, "message": self.message, "details": self.details}


class ValidationError(BaseAPIException):
    """Raised when validation fails. Never retried."""

    kind = "ValidationError"

    def __init__(
        self,
        message: str = "Validation failed",
        details: Optional[Dict[str, Any]] = None,
        kind: Optional[str] = None,
    ):
        super().__init__(message, 422, details, kind)


class NotFoundError(BaseAPIException):
    """Raised when a resource is not found."""

    kind = "NotFound"

    def __init__(
        self,
        message: str = "Resource not found",
        details: Optional[Dict[str, Any]] = None,
        kind: Optional[str] = None,
    ):
        super().__init__(message, 404, details, kind)


class AuthorizationError(BaseAPIException):
    """Raised when an org acts on an entity it has no rights over."""

    kind = "AuthorizationError"

    def __init__(
        self,
        message: str = "Forbidden",
        details: Optional[Dict[str, Any]] = None,
        kind: Optional[str] = None,
    ):
        super().__init__(message, 403, details, kind)


class ConflictError(BaseAPIException):
    """Raised when there's a conflict with existing data."""

    kind = "Conflict"

    def __init__(
        self,
        message: str = "Conflict",
        details: Optional[Dict[str, Any]] = None,
        kind: Optional[str] = None,
    ):
        super().__init__(message, 409, details, kind)


class TransitionError(BaseAPIException):
    """Raised when a publication state machine move is not in the table."""

    kind = "InvalidTransition"

    def __init__(
        self,
        from_status: str,
        action: str,
        allowed_actions: List[str],
    ):
        super().__init__(
            f"Cannot {action} a playbook in status {from_status}",
            409,
            {
                "from_status": from_status,
                "action": action,
                "allowed_actions": allowed_actions,
            },
        )
        self.from_status = from_status
        self.action = action
        self.allowed_actions = allowed_actions


class PartialDeploymentError(BaseAPIException):
    """Raised after a failed deployment has been rolled back."""

    kind = "PartialDeployment"

    def __init__(
        self,
        installation_id: str,
        step: str,
        cause: str,
        rollback: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(
            f"Deployment failed during {step}: {cause}",
            500,
            {
                "installation_id": installation_id,
                "step": step,
                "cause": cause,
                "rollback": rollback or {},
            },
        )
        self.installation_id = installation_id
        self.step = step

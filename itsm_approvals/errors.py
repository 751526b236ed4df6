"""
Approval Errors - Centralized Exception Hierarchy

Every outcome the engine reports to callers is one of these typed errors.
Each carries a stable machine-readable code and the HTTP status the service
boundary translates it to.
"""

from typing import Any, Dict, Optional


class ApprovalError(Exception):
    """Base error - all approval-core errors extend this"""

    error_code: str = "APPROVAL_ERROR"
    http_status: int = 400

    def __init__(
        self,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        error_code: Optional[str] = None
    ):
        super().__init__(message)
        self.message = message
        self.details = details or {}
        if error_code:
            self.error_code = error_code

    def to_dict(self) -> Dict[str, Any]:
        """Convert error to API response dict"""
        return {
            "error": {
                "code": self.error_code,
                "message": self.message,
                "details": self.details
            }
        }


# Not Found Errors
class NotFoundError(ApprovalError):
    """Resource not found"""
    error_code = "NOT_FOUND"
    http_status = 404


class WorkflowNotFoundError(NotFoundError):
    error_code = "WORKFLOW_NOT_FOUND"


class InstanceNotFoundError(NotFoundError):
    error_code = "INSTANCE_NOT_FOUND"


class UserNotFoundError(NotFoundError):
    error_code = "USER_NOT_FOUND"


class RoleNotFoundError(NotFoundError):
    error_code = "ROLE_NOT_FOUND"


class GroupNotFoundError(NotFoundError):
    error_code = "GROUP_NOT_FOUND"


# Invalid State Errors
class InvalidStateError(ApprovalError):
    """Action not valid for current state"""
    error_code = "INVALID_STATE"
    http_status = 409


class WrongStepError(InvalidStateError):
    """Only the open step can be acted on"""
    error_code = "WRONG_STEP"


class InstanceAlreadyTerminalError(InvalidStateError):
    """Instance is approved, rejected or cancelled"""
    error_code = "INSTANCE_ALREADY_TERMINAL"


class WorkflowInactiveError(InvalidStateError):
    error_code = "WORKFLOW_INACTIVE"


class ConcurrencyConflictError(InvalidStateError):
    """Lost a compare-and-swap race; re-read before retrying"""
    error_code = "CONCURRENCY_CONFLICT"


# Authorization Errors
class NotAuthorizedError(ApprovalError):
    """Actor may not act, delegate or cancel"""
    error_code = "NOT_AUTHORIZED"
    http_status = 403


class NoEligibleApproversError(NotAuthorizedError):
    """
    The open step currently resolves to nobody, so the actor cannot be on it.

    Reaches HTTP callers as a plain NOT_AUTHORIZED. The stuck instance is
    reported to operators through the warning log and the
    approval.no_eligible_approvers event instead.
    """


# Validation Errors
class ValidationError(ApprovalError):
    """Input validation failed"""
    error_code = "VALIDATION_ERROR"
    http_status = 422


class WorkflowValidationError(ValidationError):
    """Workflow definition validation failed"""
    error_code = "WORKFLOW_VALIDATION_ERROR"


# Infrastructure
class StorageUnavailableError(ApprovalError):
    """Persistence failed after bounded retries"""
    error_code = "STORAGE_UNAVAILABLE"
    http_status = 503

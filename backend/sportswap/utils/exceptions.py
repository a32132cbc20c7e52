"""
Marketplace business exceptions.

WHAT: Domain-specific error kinds raised by the offer and messaging core
WHY: Callers (UI layer, API handlers) branch on the kind, not on the message
HOW: Custom exception classes with error codes, messages and details
"""

from typing import Optional, Any, List


class MarketplaceError(Exception):
    """Base class for marketplace business exceptions."""

    code = "MARKETPLACE_ERROR"
    retryable = False

    def __init__(self, message: str, code: Optional[str] = None, details: Optional[Any] = None):
        super().__init__(message)
        self.message = message
        self.code = code or self.code
        self.details = details


class ValidationError(MarketplaceError):
    """Malformed or out-of-policy input. The input has to change before retrying."""

    code = "VALIDATION_ERROR"

    def __init__(self, message: str, field: Optional[str] = None, code: Optional[str] = None):
        super().__init__(
            message=message,
            code=code,
            details={"field": field} if field else None
        )
        self.field = field


class AuthorizationError(MarketplaceError):
    """Raised when the acting user lacks rights for the action."""

    code = "NOT_AUTHORIZED"

    def __init__(self, action: str, user_id: str, resource_id: Optional[str] = None):
        super().__init__(
            message=f"User {user_id} is not allowed to {action}",
            details={"action": action, "user_id": user_id, "resource_id": resource_id}
        )
        self.action = action


class NotFoundError(MarketplaceError):
    """Raised when a referenced listing, offer, conversation or profile is missing."""

    code = "NOT_FOUND"

    def __init__(self, resource: str, resource_id: Optional[str]):
        super().__init__(
            message=f"{resource.capitalize()} not found: {resource_id}",
            code=f"{resource.upper()}_NOT_FOUND",
            details={"resource": resource, "id": resource_id}
        )
        self.resource = resource
        self.resource_id = resource_id


class TransientStoreError(MarketplaceError):
    """A single read or write against the store failed. Safe to retry."""

    code = "STORE_UNAVAILABLE"
    retryable = True

    def __init__(self, operation: str, reason: Optional[str] = None):
        message = f"Store operation failed: {operation}"
        if reason:
            message = f"{message} ({reason})"
        super().__init__(
            message=message,
            details={"operation": operation, "reason": reason}
        )
        self.operation = operation


class PartialWorkflowFailure(MarketplaceError):
    """
    Accept-offer failed after the offer was already marked accepted.

    Not retryable from scratch: the workflow has to be resumed instead.
    """

    code = "PARTIAL_WORKFLOW_FAILURE"

    def __init__(
        self,
        offer_id: str,
        completed_steps: List[str],
        failed_steps: List[str],
        workflow: Optional[Any] = None,
    ):
        super().__init__(
            message=(
                f"Offer {offer_id} was accepted but the workflow did not finish "
                f"(failed steps: {', '.join(failed_steps)})"
            ),
            details={
                "offer_id": offer_id,
                "completed_steps": completed_steps,
                "failed_steps": failed_steps,
            }
        )
        self.offer_id = offer_id
        self.completed_steps = completed_steps
        self.failed_steps = failed_steps
        self.workflow = workflow

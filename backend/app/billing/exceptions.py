"""
Billing exceptions.

Every failure a billing operation can report to a caller is one of these.
Each carries a machine-readable error code, the HTTP status it maps to,
and optional context so support staff can explain the outcome.
"""

from typing import Any


class BillingError(Exception):
    """
    Base billing error.

    Attributes:
        message: Human-readable error message
        error_code: Machine-readable error code for API responses
        status_code: HTTP status code for this error type
        context: Additional context data about the error
    """

    error_code = "BILLING_ERROR"
    status_code = 400

    def __init__(self, message: str, context: dict[str, Any] | None = None):
        self.message = message
        self.context = context or {}
        super().__init__(self.message)

    def to_dict(self) -> dict[str, Any]:
        """Convert error to dictionary for API responses."""
        return {
            "error_code": self.error_code,
            "message": self.message,
            "context": self.context,
        }


class ValidationError(BillingError):
    """Malformed or missing request fields."""

    error_code = "VALIDATION_ERROR"
    status_code = 400

    def __init__(self, message: str, field: str | None = None):
        super().__init__(message, context={"field": field} if field else None)
        self.field = field


class AuthorizationError(BillingError):
    """Caller lacks the role or tenant scope for the subscription."""

    error_code = "FORBIDDEN"
    status_code = 403


class StateConflictError(BillingError):
    """Requested transition is not valid for the subscription's current status."""

    error_code = "STATE_CONFLICT"
    status_code = 400

    def __init__(self, message: str, current_status: str | None = None, **context: Any):
        if current_status is not None:
            context["current_status"] = current_status
        super().__init__(message, context=context)
        self.current_status = current_status


class GatewayError(BillingError):
    """The payment provider call failed or timed out."""

    error_code = "GATEWAY_ERROR"
    status_code = 502


class SignatureError(BillingError):
    """Inbound gateway notification failed signature verification."""

    error_code = "INVALID_SIGNATURE"
    status_code = 401


class NotFoundError(BillingError):
    """Referenced subscription, plan, transaction or order does not exist."""

    error_code = "NOT_FOUND"
    status_code = 404

    def __init__(self, entity: str, identifier: Any):
        super().__init__(f"{entity} not found", context={"entity": entity, "id": str(identifier)})

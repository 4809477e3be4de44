"""
Custom exception hierarchy for structured error handling.

WHY: Custom exceptions provide:
1. Consistent error handling across the API
2. HTTP status code mapping for FastAPI
3. Structured error responses with contextual data
4. No sensitive data leaks in error messages (OWASP A04)

Billing errors fall into five families, each with its own base class:
validation (400), authorization (401/403), state (400), external
dependency (502) and not-found (404). Everything propagates to the
handlers in billing.core.exception_handlers.
"""

from typing import Any, Dict, Optional


class AppException(Exception):
    """
    Base exception class for all application exceptions.

    WHY: Centralizing exception handling in a base class ensures consistent
    error responses, HTTP status code mapping, and prevents sensitive data
    leaks in error messages.
    """

    status_code: int = 500
    default_message: str = "An unexpected error occurred"

    def __init__(
        self,
        message: Optional[str] = None,
        status_code: Optional[int] = None,
        **context: Any,
    ):
        """
        Initialize exception with message and context.

        Args:
            message: Human-readable error message
            status_code: HTTP status code (overrides class default)
            **context: Additional context for debugging (filtered in to_dict)
        """
        self.message = message or self.default_message
        if status_code is not None:
            self.status_code = status_code
        self.context = context
        super().__init__(self.message)

    @property
    def code(self) -> str:
        """Machine-readable error code sent to clients."""
        return self.__class__.__name__

    def to_dict(self) -> Dict[str, Any]:
        """
        Serialize exception to the error envelope.

        Returns:
            {"success": False, "message": ..., "code": ..., "details": ...}
        """
        # WHY: Filter out sensitive fields to prevent data leaks
        sensitive_fields = {"password", "token", "secret", "key", "api_key"}
        filtered_context = {
            k: v for k, v in self.context.items() if k.lower() not in sensitive_fields
        }

        return {
            "success": False,
            "message": self.message,
            "code": self.code,
            "details": filtered_context if filtered_context else None,
        }


# ============================================================================
# Authentication & Authorization Exceptions (OWASP A07)
# ============================================================================


class AuthenticationError(AppException):
    """
    Raised when authentication fails.

    HTTP Status: 401 Unauthorized
    """

    status_code = 401
    default_message = "Authentication failed"


class AuthorizationError(AppException):
    """
    Raised when user lacks permissions for an action.

    WHY: Distinguishing authorization (403) from authentication (401) helps
    frontends show appropriate messages ("You don't have permission" vs
    "Please log in").

    HTTP Status: 403 Forbidden
    """

    status_code = 403
    default_message = "You do not have permission to perform this action"


class OwnershipError(AuthorizationError):
    """
    Raised when the requester does not own the invoice, project,
    proposal or transaction they are acting on.

    HTTP Status: 403 Forbidden
    """

    default_message = "You do not own this resource"


class TokenExpiredError(AuthenticationError):
    """
    Raised when JWT token has expired.

    HTTP Status: 401 Unauthorized
    """

    default_message = "Token has expired"


class TokenInvalidError(AuthenticationError):
    """
    Raised when JWT token is malformed or has invalid signature.

    HTTP Status: 401 Unauthorized
    """

    default_message = "Token is invalid"


# ============================================================================
# Validation & Input Exceptions
# ============================================================================


class ValidationError(AppException):
    """
    Raised when input validation fails.

    WHY: Validation errors should return 400 Bad Request with details
    about which fields failed validation, helping users correct their input.

    HTTP Status: 400 Bad Request
    """

    status_code = 400
    default_message = "Validation failed"


class InvalidAmountError(ValidationError):
    """
    Raised when a money amount is zero, negative or otherwise unusable.

    HTTP Status: 400 Bad Request
    """

    default_message = "Invalid amount"


# ============================================================================
# Resource Exceptions
# ============================================================================


class ResourceNotFoundError(AppException):
    """
    Raised when a requested resource doesn't exist.

    HTTP Status: 404 Not Found
    """

    status_code = 404
    default_message = "Resource not found"


class InvoiceNotFoundError(ResourceNotFoundError):
    """Raised when invoice doesn't exist."""

    default_message = "Invoice not found"


class TransactionNotFoundError(ResourceNotFoundError):
    """Raised when transaction doesn't exist."""

    default_message = "Transaction not found"


class ProjectNotFoundError(ResourceNotFoundError):
    """Raised when project doesn't exist."""

    default_message = "Project not found"


class ProposalNotFoundError(ResourceNotFoundError):
    """Raised when proposal doesn't exist."""

    default_message = "Proposal not found"


class UserNotFoundError(ResourceNotFoundError):
    """Raised when a referenced user (client, consultant) doesn't exist."""

    default_message = "User not found"


class PaymentMethodNotFoundError(ResourceNotFoundError):
    """Raised when a saved payment method is not on the client's customer."""

    default_message = "Payment method not found"


# ============================================================================
# Business Logic Exceptions
# ============================================================================


class BusinessRuleViolation(AppException):
    """
    Raised when a business rule is violated.

    WHY: The request was well-formed but cannot be honoured given the
    current state of the billing records.

    HTTP Status: 400 Bad Request
    """

    status_code = 400
    default_message = "Business rule violation"


class InvalidStateTransitionError(BusinessRuleViolation):
    """
    Raised when an invalid state transition is attempted.

    WHY: Invoice and transaction statuses follow explicit transition
    tables. Refunding an unpaid invoice or cancelling a paid one must
    fail loudly instead of silently corrupting the ledger.

    HTTP Status: 400 Bad Request
    """

    default_message = "Invalid state transition"


class OverpaymentError(BusinessRuleViolation):
    """
    Raised when a payment exceeds the amount due and the configured
    overpayment policy is "reject".

    HTTP Status: 400 Bad Request
    """

    default_message = "Payment exceeds the amount due"


class UnsupportedPaymentMethodError(BusinessRuleViolation):
    """
    Raised when a payment or payout method has no processing branch.

    HTTP Status: 400 Bad Request
    """

    default_message = "Payment method not supported"


class RecurringConfigError(BusinessRuleViolation):
    """
    Raised when a recurring invoice is generated from an invoice that is
    not recurring or has no recurring configuration.

    HTTP Status: 400 Bad Request
    """

    default_message = "Invoice is not configured as recurring"


# ============================================================================
# External Service Exceptions (OWASP A08: Software Integrity)
# ============================================================================


class ExternalServiceError(AppException):
    """
    Base exception for external service failures.

    WHY: External API failures should return 502 Bad Gateway, indicating
    the problem is with an upstream service, not our application.

    HTTP Status: 502 Bad Gateway
    """

    status_code = 502
    default_message = "External service error"


class PaymentGatewayError(ExternalServiceError):
    """
    Raised when payment gateway (Stripe) calls fail.

    WHY: Gateway responses are the source of truth for whether money
    moved. A failed call surfaces as a failed request; there are no
    retries in the billing path.

    HTTP Status: 502 Bad Gateway
    """

    default_message = "Payment processing error"


class EmailServiceError(ExternalServiceError):
    """
    Raised when email sending fails.

    WHY: Email failures are logged by callers and never block billing
    operations.

    HTTP Status: 502 Bad Gateway
    """

    default_message = "Email service error"

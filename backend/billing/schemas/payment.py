"""
Payment schemas for API request/response validation.

WHAT: Request bodies for payments, confirmations, refunds, payouts and
saved cards, and the transaction, checkout, summary and Connect
onboarding responses.

HOW: Pydantic v2. Amounts arrive as Decimal and must be positive; the
payment context (invoice, project or proposal) must name exactly one
target.
"""

from datetime import datetime
from decimal import Decimal
from typing import Optional, List, Dict, Any

from pydantic import BaseModel, Field, model_validator, ConfigDict

from billing.models.transaction import (
    PaymentMethod,
    RefundReason,
    TransactionStatus,
    TransactionType,
)


# ============================================================================
# Request Schemas
# ============================================================================


class ProcessPaymentRequest(BaseModel):
    """
    Schema for taking a payment.

    WHY: A payment settles exactly one thing: an invoice, a project or an
    accepted proposal.
    """

    model_config = ConfigDict(str_strip_whitespace=True)

    amount: Decimal = Field(..., gt=0, description="Amount in major units")
    method: PaymentMethod = PaymentMethod.CREDIT_CARD
    currency: Optional[str] = Field(default=None, min_length=3, max_length=3)
    invoice_id: Optional[int] = None
    project_id: Optional[int] = None
    proposal_id: Optional[int] = None
    payment_method_id: Optional[str] = Field(
        default=None,
        max_length=255,
        description="Gateway payment method; confirms the payment immediately",
    )
    description: Optional[str] = Field(default=None, max_length=500)
    billing_details: Optional[Dict[str, Any]] = None
    metadata: Optional[Dict[str, str]] = None

    @model_validator(mode="after")
    def check_single_context(self) -> "ProcessPaymentRequest":
        targets = [t for t in (self.invoice_id, self.project_id, self.proposal_id) if t is not None]
        if len(targets) != 1:
            raise ValueError("Exactly one of invoice_id, project_id or proposal_id is required")
        return self


class ConfirmPaymentRequest(BaseModel):
    payment_intent_id: str = Field(..., min_length=1, max_length=255)
    payment_method_id: Optional[str] = Field(default=None, max_length=255)


class RefundRequest(BaseModel):
    """Refund a payment; omit amount to refund everything not yet refunded."""

    transaction_ref: str = Field(..., min_length=1, max_length=100)
    amount: Optional[Decimal] = Field(default=None, gt=0)
    reason: RefundReason = RefundReason.REQUESTED_BY_CUSTOMER
    description: Optional[str] = Field(default=None, max_length=500)


class PayoutRequest(BaseModel):
    consultant_id: int
    amount: Decimal = Field(..., gt=0)
    method: Optional[PaymentMethod] = Field(
        default=None,
        description="Defaults to the consultant's preferred payout method",
    )
    currency: Optional[str] = Field(default=None, min_length=3, max_length=3)
    project_id: Optional[int] = None
    description: Optional[str] = Field(default=None, max_length=500)


class AddPaymentMethodRequest(BaseModel):
    """
    Save a card on the client's customer.

    WHY: Cards are collected by Stripe.js; only the resulting pm_ id
    reaches the API, never card numbers.
    """

    payment_method_id: str = Field(..., min_length=1, max_length=255)
    set_as_default: bool = False


# ============================================================================
# Response Schemas
# ============================================================================


class TransactionResponse(BaseModel):
    """
    Transaction as shown to its parties.

    Gateway payloads are not exposed; the error snapshot and the card
    details snapshot are.
    """

    model_config = ConfigDict(from_attributes=True)

    id: int
    transaction_ref: str
    transaction_type: TransactionType
    payment_method: PaymentMethod
    status: TransactionStatus

    amount: float
    currency: str
    fee: float
    net: float

    invoice_id: Optional[int]
    project_id: Optional[int]
    proposal_id: Optional[int]
    client_id: Optional[int]
    consultant_id: Optional[int]
    original_transaction_id: Optional[int]

    payment_intent_id: Optional[str]
    receipt_url: Optional[str]
    payment_method_details: Optional[Dict[str, Any]]
    error: Optional[Dict[str, Any]]
    refund_reason: Optional[RefundReason]
    description: Optional[str]
    notes: Optional[str]

    processed_at: Optional[datetime]
    completed_at: Optional[datetime]
    failed_at: Optional[datetime]
    created_at: datetime


class PaymentResponse(BaseModel):
    """Result of processing or confirming a payment."""

    transaction: TransactionResponse
    payment_intent_id: Optional[str] = None
    client_secret: Optional[str] = None
    requires_action: bool = False
    next_action: Optional[Dict[str, Any]] = None
    receipt_url: Optional[str] = None


class CheckoutResponse(BaseModel):
    """
    Response for checkout session creation.

    WHY: Provides client with:
    - Checkout URL for redirect
    - Session ID for status checks
    """

    session_id: str = Field(description="Stripe Checkout Session ID")
    session_url: str = Field(description="URL to redirect the client to")
    expires_at: datetime


class FinancialSummary(BaseModel):
    """
    Dashboard totals. Which fields are set depends on the caller's role.
    """

    role: str
    total_spent: Optional[float] = None
    outstanding_balance: Optional[float] = None
    total_earnings: Optional[float] = None
    pending_earnings: Optional[float] = None
    total_revenue: Optional[float] = None
    pending_payouts: Optional[float] = None
    total_outstanding: Optional[float] = None
    active_projects: Optional[int] = None
    total_clients: Optional[int] = None
    total_consultants: Optional[int] = None
    invoice_counts: Optional[Dict[str, int]] = None
    recent_transactions: List[TransactionResponse] = Field(default_factory=list)


class WebhookAck(BaseModel):
    received: bool = True
    event_type: str
    handled: bool
    detail: Optional[str] = None


class SavedPaymentMethodResponse(BaseModel):
    """A saved card, display details only."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    type: str
    brand: Optional[str] = None
    last4: Optional[str] = None
    exp_month: Optional[int] = None
    exp_year: Optional[int] = None
    is_default: bool = False


class PaymentMethodRemoved(BaseModel):
    payment_method_id: str
    default_payment_method_id: Optional[str] = None


class ConnectOnboardingResponse(BaseModel):
    """
    Stripe Connect onboarding link for a consultant.

    The consultant is redirected to onboarding_url before expires_at;
    after that a new link must be requested.
    """

    model_config = ConfigDict(from_attributes=True)

    account_id: str
    onboarding_url: str
    expires_at: datetime
    created: bool = Field(description="Whether the account was created by this request")

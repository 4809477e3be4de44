"""
Invoice schemas for API request/response validation.

WHAT: Pydantic schemas for invoice data validation.

WHY: Schemas provide:
1. Type-safe request/response handling
2. Automatic validation with clear error messages
3. OpenAPI documentation generation

Derived amounts (line amounts, subtotal, tax, discount, total, amount
due) are never accepted from the client. They are recomputed by the
model from items, rates and the platform fee.

HOW: Uses Pydantic v2 with Field constraints and model validators.
"""

from datetime import datetime, date
from decimal import Decimal
from typing import Optional, List, Dict, Any

from pydantic import BaseModel, Field, model_validator, ConfigDict

from billing.models.invoice import InvoiceType
from billing.models.invoice_calculator import RecurringFrequency
from billing.models.invoice_state import InvoiceStatus


PAYMENT_TERMS_PATTERN = r"^(due_on_receipt|net_15|net_30|net_45|net_60|custom)$"
RECURRING_PATTERN = rf"^({'|'.join(RecurringFrequency.ALL)})$"


# ============================================================================
# Request Schemas
# ============================================================================


class LineItem(BaseModel):
    """One billed line. amount, tax_amount and discount_amount are derived."""

    model_config = ConfigDict(str_strip_whitespace=True)

    description: str = Field(..., min_length=1, max_length=500)
    quantity: Decimal = Field(default=Decimal(1), ge=0)
    unit_price: Decimal = Field(..., ge=0)
    tax_rate: Decimal = Field(default=Decimal(0), ge=0, description="Percent")
    discount_rate: Decimal = Field(default=Decimal(0), ge=0, le=100, description="Percent")


class Installment(BaseModel):
    """One dated installment of a payment schedule."""

    description: Optional[str] = Field(default=None, max_length=255)
    due_date: date
    amount: Decimal = Field(..., gt=0)


class InvoiceCreate(BaseModel):
    """
    Schema for creating an invoice.

    WHY: client and refund invoices bill a client, consultant invoices are
    a consultant billing the platform, platform invoices need neither.
    """

    model_config = ConfigDict(str_strip_whitespace=True)

    invoice_type: InvoiceType = InvoiceType.CLIENT
    client_id: Optional[int] = None
    consultant_id: Optional[int] = None
    project_id: Optional[int] = None
    proposal_id: Optional[int] = None

    items: List[LineItem] = Field(..., min_length=1)
    currency: Optional[str] = Field(default=None, min_length=3, max_length=3)
    tax_rate: Decimal = Field(default=Decimal(0), ge=0, description="Invoice-level tax percent")
    discount_rate: Decimal = Field(default=Decimal(0), ge=0, le=100, description="Invoice-level discount percent")
    platform_fee_amount: Optional[Decimal] = Field(default=None, ge=0)
    platform_fee_percentage: Optional[Decimal] = Field(default=None, ge=0, le=100)
    platform_fee_description: Optional[str] = Field(default=None, max_length=255)

    payment_terms: Optional[str] = Field(default="net_30", pattern=PAYMENT_TERMS_PATTERN)
    payment_method: Optional[str] = Field(default=None, max_length=50)
    payment_instructions: Optional[str] = Field(default=None, max_length=5000)
    payment_schedule: Optional[List[Installment]] = None
    issue_date: Optional[date] = Field(default=None, description="Defaults to today")
    due_date: Optional[date] = Field(default=None, description="Defaults from payment terms")

    notes: Optional[str] = Field(default=None, max_length=5000)
    terms: Optional[str] = Field(default=None, max_length=5000)
    tags: List[str] = Field(default_factory=list)
    billing_details: Optional[Dict[str, Any]] = None
    recipient_details: Optional[Dict[str, Any]] = None

    is_recurring: bool = False
    recurring_frequency: Optional[str] = Field(default=None, pattern=RECURRING_PATTERN)
    next_invoice_date: Optional[date] = None
    recurring_end_date: Optional[date] = None
    remaining_cycles: Optional[int] = Field(default=None, ge=0)

    @model_validator(mode="after")
    def check_parties(self) -> "InvoiceCreate":
        if self.invoice_type in (InvoiceType.CLIENT, InvoiceType.REFUND) and not self.client_id:
            raise ValueError(f"A {self.invoice_type.value} invoice requires client_id")
        if self.invoice_type == InvoiceType.CONSULTANT and not self.consultant_id:
            raise ValueError("A consultant invoice requires consultant_id")
        return self

    @model_validator(mode="after")
    def check_dates(self) -> "InvoiceCreate":
        if self.issue_date and self.due_date and self.due_date < self.issue_date:
            raise ValueError("due_date cannot be before issue_date")
        if self.is_recurring and not self.recurring_frequency:
            raise ValueError("A recurring invoice requires recurring_frequency")
        return self


class InvoiceUpdate(BaseModel):
    """
    Schema for updating an invoice (draft only).

    Only the fields present in the request are changed.
    """

    model_config = ConfigDict(str_strip_whitespace=True)

    items: Optional[List[LineItem]] = Field(default=None, min_length=1)
    currency: Optional[str] = Field(default=None, min_length=3, max_length=3)
    tax_rate: Optional[Decimal] = Field(default=None, ge=0)
    discount_rate: Optional[Decimal] = Field(default=None, ge=0, le=100)
    platform_fee_percentage: Optional[Decimal] = Field(default=None, ge=0, le=100)
    platform_fee_description: Optional[str] = Field(default=None, max_length=255)
    payment_terms: Optional[str] = Field(default=None, pattern=PAYMENT_TERMS_PATTERN)
    payment_method: Optional[str] = Field(default=None, max_length=50)
    payment_instructions: Optional[str] = Field(default=None, max_length=5000)
    payment_schedule: Optional[List[Installment]] = Field(
        default=None,
        description="Replaces the schedule; an empty list removes it",
    )
    issue_date: Optional[date] = None
    due_date: Optional[date] = None
    notes: Optional[str] = Field(default=None, max_length=5000)
    terms: Optional[str] = Field(default=None, max_length=5000)
    tags: Optional[List[str]] = None
    billing_details: Optional[Dict[str, Any]] = None
    recipient_details: Optional[Dict[str, Any]] = None


class CancelRequest(BaseModel):
    reason: Optional[str] = Field(default=None, max_length=1000)


class ReminderRequest(BaseModel):
    reminder_type: str = Field(default="manual", max_length=50)


# ============================================================================
# Response Schemas
# ============================================================================


class LineItemResponse(BaseModel):
    description: str
    quantity: float
    unit_price: float
    tax_rate: float
    discount_rate: float
    amount: float
    discount_amount: float
    tax_amount: float


class InstallmentResponse(BaseModel):
    description: Optional[str] = None
    due_date: date
    amount: float
    paid_amount: float
    status: str
    paid_date: Optional[datetime] = None
    transaction_id: Optional[str] = None


class ReminderResponse(BaseModel):
    sent_at: datetime
    reminder_type: str
    sent_to: Optional[str] = None


class InvoiceResponse(BaseModel):
    """
    Schema for invoice response data.

    WHY: Complete invoice data for display including:
    - All financial fields
    - Payment schedule and reminders
    - Recurring configuration
    - Computed properties
    """

    model_config = ConfigDict(from_attributes=True)

    id: int
    invoice_number: str
    invoice_type: InvoiceType
    status: InvoiceStatus

    # Parties
    org_id: int
    client_id: Optional[int]
    consultant_id: Optional[int]
    project_id: Optional[int]
    proposal_id: Optional[int]

    # Amounts
    items: List[LineItemResponse]
    currency: str
    tax_rate: float
    discount_rate: float
    subtotal: float
    tax_amount: float
    discount_amount: float
    platform_fee_amount: float
    platform_fee_description: Optional[str]
    total: float
    paid_amount: float
    amount_due: float

    # Payment
    payment_terms: Optional[str]
    payment_method: Optional[str]
    payment_instructions: Optional[str]
    payment_schedule: Optional[List[InstallmentResponse]]
    stripe_checkout_session_id: Optional[str]

    # Dates
    issue_date: date
    due_date: Optional[date]
    sent_at: Optional[datetime]
    viewed_at: Optional[datetime]
    paid_at: Optional[datetime]

    # Metadata
    notes: Optional[str]
    terms: Optional[str]
    tags: List[str]
    reminders_sent: List[ReminderResponse]

    # Recurring
    is_recurring: bool
    recurring_frequency: Optional[str]
    next_invoice_date: Optional[date]
    recurring_end_date: Optional[date]
    remaining_cycles: Optional[int]
    parent_invoice_id: Optional[int]
    related_invoice_ids: List[int]

    created_at: datetime
    updated_at: datetime

    # Computed properties
    is_editable: bool
    is_payable: bool
    is_overdue: bool


class InvoiceStats(BaseModel):
    """
    Invoice statistics for dashboard.

    WHY: Aggregated metrics for:
    - Financial overview
    - Payment tracking
    - Status distribution
    """

    total: int = Field(description="Total number of invoices")
    by_status: Dict[str, int] = Field(description="Count by status")
    total_outstanding: float = Field(description="Total unpaid balance")
    total_paid: float = Field(description="Total payments received")

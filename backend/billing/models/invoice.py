"""
Invoice model for billing and payment tracking.

WHAT: SQLAlchemy model representing a bill between marketplace parties:
client invoices, consultant invoices, platform invoices and refund notes.

WHY: Invoices are the financial documents of the marketplace. They:
1. Aggregate line items into a payable total with tax, discount and fee
2. Track cumulative payments and the amount still due
3. Split the total into dated installments when a schedule is agreed
4. Regenerate themselves on a cadence when recurring

HOW: Derived money fields are never set directly. recalculate() runs the
pure functions in invoice_calculator and invoice_state, and mapper event
listeners run it again before every INSERT/UPDATE so recomputation always
wins over whatever was assigned. Line items and installments are JSON
columns; every mutation assigns a new list so SQLAlchemy sees the change.
"""

from datetime import datetime, date
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional
from sqlalchemy import (
    Column,
    Integer,
    String,
    Text,
    DateTime,
    Date,
    Boolean,
    ForeignKey,
    JSON,
    Numeric,
    event,
    inspect,
)
from sqlalchemy.orm import Mapped

from billing.core.config import settings
from billing.core.exceptions import (
    InvalidAmountError,
    InvalidStateTransitionError,
    OverpaymentError,
    RecurringConfigError,
    ValidationError,
)
from billing.models.base import Base, enum_column, money_column
from billing.models.invoice_calculator import (
    ZERO,
    apply_payment_to_schedule,
    next_due_date,
    quantize_money,
    recompute_totals,
    to_decimal,
)
from billing.models.invoice_state import (
    InvoiceStatus,
    InvoiceTrigger,
    PAYABLE_STATUSES,
    TERMINAL_STATUSES,
    apply_due_date,
    derive_status,
    try_transition,
)


class InvoiceType(str, Enum):
    """
    Who the invoice bills.

    - CLIENT: Client pays for consulting work (requires client)
    - CONSULTANT: Consultant bills the platform (requires consultant)
    - PLATFORM: Platform fees and adjustments (no party required)
    - REFUND: Credit note returned to a client (requires client)
    """

    CLIENT = "client"
    CONSULTANT = "consultant"
    PLATFORM = "platform"
    REFUND = "refund"


class OverpaymentPolicy(str, Enum):
    """What add_payment does with money beyond the amount due."""

    ALLOW = "allow"
    CLAMP = "clamp"
    REJECT = "reject"


class Invoice(Base):
    """
    Invoice model for billing and payments.

    Attributes:
        invoice_number: Unique {PREFIX}-{YYMM}-{NNNN} identifier
        invoice_type: client / consultant / platform / refund
        items: Line items with derived amount, tax_amount, discount_amount

        Derived amounts:
        subtotal, tax_amount, discount_amount, total, amount_due

        Payment tracking:
        paid_amount: Cumulative amount received
        payment_schedule: Ordered installments
        stripe_checkout_session_id / stripe_payment_intent_id

        Recurring:
        is_recurring, recurring_frequency, next_invoice_date,
        recurring_end_date, remaining_cycles, parent_invoice_id,
        related_invoice_ids
    """

    __tablename__ = "invoices"

    id: Mapped[int] = Column(Integer, primary_key=True, index=True)

    invoice_number: Mapped[str] = Column(
        String(50),
        unique=True,
        nullable=False,
        index=True,
        comment="Unique invoice number (e.g., INV-2410-0001)",
    )
    invoice_type: Mapped[InvoiceType] = enum_column(
        InvoiceType,
        "invoicetype",
        nullable=False,
        default=InvoiceType.CLIENT,
        index=True,
    )
    status: Mapped[InvoiceStatus] = enum_column(
        InvoiceStatus,
        "invoicestatus",
        nullable=False,
        default=InvoiceStatus.DRAFT,
        index=True,
        comment="Current invoice status (derived, see invoice_state)",
    )

    # Parties and context
    org_id: Mapped[int] = Column(
        Integer,
        ForeignKey("organizations.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    client_id: Mapped[Optional[int]] = Column(
        Integer, ForeignKey("users.id"), nullable=True, index=True
    )
    consultant_id: Mapped[Optional[int]] = Column(
        Integer, ForeignKey("users.id"), nullable=True, index=True
    )
    project_id: Mapped[Optional[int]] = Column(
        Integer, ForeignKey("projects.id", ondelete="SET NULL"), nullable=True, index=True
    )
    proposal_id: Mapped[Optional[int]] = Column(
        Integer, ForeignKey("proposals.id", ondelete="SET NULL"), nullable=True, index=True
    )
    created_by_id: Mapped[Optional[int]] = Column(Integer, ForeignKey("users.id"), nullable=True)

    # Line items and rates
    items: Mapped[List[Dict[str, Any]]] = Column(JSON, nullable=False, default=list)
    currency: Mapped[str] = Column(String(3), nullable=False, default="USD")
    tax_rate: Mapped[Decimal] = Column(Numeric(5, 2), nullable=False, default=0)
    discount_rate: Mapped[Decimal] = Column(Numeric(5, 2), nullable=False, default=0)
    platform_fee_amount: Mapped[Decimal] = money_column("Flat platform fee added to total")
    platform_fee_percentage: Mapped[Optional[Decimal]] = Column(Numeric(5, 2), nullable=True)
    platform_fee_description: Mapped[Optional[str]] = Column(String(255), nullable=True)

    # Derived amounts
    subtotal: Mapped[Decimal] = money_column("Sum of line amounts")
    tax_amount: Mapped[Decimal] = money_column("Line taxes plus invoice-level tax")
    discount_amount: Mapped[Decimal] = money_column("Line discounts plus invoice-level discount")
    total: Mapped[Decimal] = money_column("subtotal + tax - discount + platform fee")
    paid_amount: Mapped[Decimal] = money_column("Cumulative amount paid")
    amount_due: Mapped[Decimal] = money_column("total - paid_amount (negative when overpaid)")

    # Payment details
    payment_terms: Mapped[Optional[str]] = Column(String(20), nullable=True, default="net_30")
    payment_method: Mapped[Optional[str]] = Column(String(50), nullable=True)
    payment_instructions: Mapped[Optional[str]] = Column(Text, nullable=True)
    payment_schedule: Mapped[Optional[List[Dict[str, Any]]]] = Column(JSON, nullable=True)
    stripe_payment_intent_id: Mapped[Optional[str]] = Column(String(255), nullable=True, index=True)
    stripe_checkout_session_id: Mapped[Optional[str]] = Column(String(255), nullable=True, index=True)

    # Dates
    issue_date: Mapped[date] = Column(Date, nullable=False, default=date.today)
    due_date: Mapped[Optional[date]] = Column(Date, nullable=True, index=True)
    sent_at: Mapped[Optional[datetime]] = Column(DateTime, nullable=True)
    viewed_at: Mapped[Optional[datetime]] = Column(DateTime, nullable=True)
    paid_at: Mapped[Optional[datetime]] = Column(DateTime, nullable=True)

    # Free text and snapshots
    notes: Mapped[Optional[str]] = Column(Text, nullable=True)
    terms: Mapped[Optional[str]] = Column(Text, nullable=True)
    tags: Mapped[List[str]] = Column(JSON, nullable=False, default=list)
    billing_details: Mapped[Optional[Dict[str, Any]]] = Column(JSON, nullable=True)
    recipient_details: Mapped[Optional[Dict[str, Any]]] = Column(JSON, nullable=True)
    reminders_sent: Mapped[List[Dict[str, Any]]] = Column(JSON, nullable=False, default=list)

    # Recurring configuration
    is_recurring: Mapped[bool] = Column(Boolean, nullable=False, default=False, index=True)
    recurring_frequency: Mapped[Optional[str]] = Column(String(20), nullable=True)
    next_invoice_date: Mapped[Optional[date]] = Column(Date, nullable=True, index=True)
    recurring_end_date: Mapped[Optional[date]] = Column(Date, nullable=True)
    remaining_cycles: Mapped[Optional[int]] = Column(Integer, nullable=True)
    parent_invoice_id: Mapped[Optional[int]] = Column(
        Integer, ForeignKey("invoices.id", ondelete="SET NULL"), nullable=True, index=True
    )
    related_invoice_ids: Mapped[List[int]] = Column(JSON, nullable=False, default=list)

    created_at: Mapped[datetime] = Column(DateTime, nullable=False, default=datetime.utcnow, index=True)
    updated_at: Mapped[datetime] = Column(
        DateTime,
        nullable=False,
        default=datetime.utcnow,
        onupdate=datetime.utcnow,
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return f"<Invoice(id={self.id}, number={self.invoice_number}, status={self.status})>"

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def current_status(self) -> InvoiceStatus:
        return InvoiceStatus(self.status or InvoiceStatus.DRAFT)

    @property
    def is_editable(self) -> bool:
        """Only drafts may have their items, rates or parties changed."""
        return self.current_status == InvoiceStatus.DRAFT

    @property
    def is_payable(self) -> bool:
        return self.current_status in PAYABLE_STATUSES

    @property
    def is_overdue(self) -> bool:
        """Past due without being settled, whether or not status caught up yet."""
        if not self.due_date:
            return False
        if self.current_status in TERMINAL_STATUSES or self.current_status in (
            InvoiceStatus.PAID,
            InvoiceStatus.DRAFT,
        ):
            return False
        return date.today() > self.due_date

    def has_party(self, user_id: int) -> bool:
        """True if user_id is the client or consultant on this invoice."""
        return user_id is not None and user_id in (self.client_id, self.consultant_id)

    # ------------------------------------------------------------------
    # Derived state
    # ------------------------------------------------------------------

    def validate_parties(self) -> None:
        """
        Check the party required by the invoice type is present.

        Raises:
            ValidationError: client/refund invoice without client, or
                consultant invoice without consultant
        """
        invoice_type = InvoiceType(self.invoice_type or InvoiceType.CLIENT)
        if invoice_type in (InvoiceType.CLIENT, InvoiceType.REFUND) and not self.client_id:
            raise ValidationError(
                message=f"A {invoice_type.value} invoice requires a client",
                field="client_id",
            )
        if invoice_type == InvoiceType.CONSULTANT and not self.consultant_id:
            raise ValidationError(
                message="A consultant invoice requires a consultant",
                field="consultant_id",
            )

    def recalculate(
        self,
        today: Optional[date] = None,
        derive_payment_status: bool = True,
    ) -> None:
        """
        Recompute every derived field from items, rates, fee and payments.

        WHAT: Rewrites items with their derived amounts, sets subtotal,
        tax_amount, discount_amount, total and amount_due, then derives
        status.

        WHY: These fields are a function of the inputs. Nothing else may
        set them, so a stale or hand-edited total is overwritten here.

        Args:
            today: Date used for the overdue check
            derive_payment_status: When False only the overdue check runs,
                so an explicit refund status is not undone by a save that
                did not touch any amount
        """
        totals = recompute_totals(
            self.items or [],
            tax_rate=self.tax_rate,
            discount_rate=self.discount_rate,
            platform_fee=self.platform_fee_amount,
        )
        paid = quantize_money(to_decimal(self.paid_amount))

        self.items = [item.to_dict() for item in totals.items]
        self.subtotal = totals.subtotal
        self.tax_amount = totals.tax_amount
        self.discount_amount = totals.discount_amount
        self.platform_fee_amount = totals.platform_fee
        self.total = totals.total
        self.paid_amount = paid
        self.amount_due = totals.total - paid

        if derive_payment_status:
            self.status = derive_status(self.current_status, totals.total, paid, self.due_date, today)
        else:
            self.status = apply_due_date(
                self.current_status, self.due_date, today, amount_due=self.amount_due
            )

    # ------------------------------------------------------------------
    # Payments
    # ------------------------------------------------------------------

    def add_payment(
        self,
        amount: Any,
        transaction_id: Optional[str] = None,
        policy: Optional[OverpaymentPolicy] = None,
        now: Optional[datetime] = None,
    ) -> Decimal:
        """
        Fold a payment into the invoice.

        WHAT: Increments paid_amount, recomputes amount_due and status, then
        allocates the payment across the payment schedule in order.

        WHY: This is the only way paid_amount grows. The payment service
        calls it in the same database transaction that completes the
        matching Transaction row.

        Args:
            amount: Positive payment amount
            transaction_id: Reference stamped on the installments it pays
            policy: Overpayment policy (defaults to settings.OVERPAYMENT_POLICY)
            now: Payment timestamp (defaults to utcnow)

        Returns:
            The amount actually applied (less than amount only under CLAMP)

        Raises:
            InvalidAmountError: amount is not positive
            InvalidStateTransitionError: invoice is cancelled or refunded
            OverpaymentError: amount exceeds amount_due under REJECT, or
                nothing is due under CLAMP
        """
        amount = to_decimal(amount, "amount")
        if amount <= 0:
            raise InvalidAmountError(
                message="Payment amount must be greater than zero",
                amount=str(amount),
            )
        if self.current_status in TERMINAL_STATUSES:
            raise InvalidStateTransitionError(
                message=f"Cannot apply a payment to a {self.current_status.value} invoice",
                invoice_id=self.id,
                current_status=self.current_status.value,
            )

        now = now or datetime.utcnow()
        policy = OverpaymentPolicy(policy or settings.OVERPAYMENT_POLICY)
        paid_before = to_decimal(self.paid_amount)
        outstanding = to_decimal(self.total) - paid_before

        if amount > outstanding:
            if policy == OverpaymentPolicy.REJECT:
                raise OverpaymentError(
                    message=f"Payment of {amount} exceeds the amount due of {outstanding}",
                    invoice_id=self.id,
                    amount=str(amount),
                    amount_due=str(outstanding),
                )
            if policy == OverpaymentPolicy.CLAMP:
                if outstanding <= 0:
                    raise OverpaymentError(
                        message="Invoice has no amount due",
                        invoice_id=self.id,
                    )
                amount = outstanding

        self.paid_amount = paid_before + amount
        self.recalculate(today=now.date())

        if self.payment_schedule:
            self.payment_schedule, _ = apply_payment_to_schedule(
                self.payment_schedule, amount, transaction_id, now
            )

        if self.current_status == InvoiceStatus.PAID and not self.paid_at:
            self.paid_at = now

        return amount

    def mark_awaiting_transfer(self) -> None:
        """Record that a bank transfer is on its way (sent -> pending)."""
        self.status = try_transition(self.current_status, InvoiceTrigger.AWAIT_TRANSFER)

    # ------------------------------------------------------------------
    # Lifecycle actions
    # ------------------------------------------------------------------

    def mark_sent(self, now: Optional[datetime] = None) -> None:
        """
        Issue a draft invoice.

        Raises:
            InvalidStateTransitionError: If the invoice is not a draft
        """
        self.status = try_transition(self.current_status, InvoiceTrigger.SEND)
        self.sent_at = now or datetime.utcnow()

    def mark_viewed(self, now: Optional[datetime] = None) -> bool:
        """Stamp the first time the recipient opened the invoice."""
        if self.viewed_at:
            return False
        self.viewed_at = now or datetime.utcnow()
        return True

    def add_reminder(
        self,
        reminder_type: str,
        sent_to: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        """Append a payment reminder record."""
        reminder = {
            "sent_at": (now or datetime.utcnow()).isoformat(),
            "reminder_type": reminder_type,
            "sent_to": sent_to,
        }
        self.reminders_sent = [*(self.reminders_sent or []), reminder]
        return reminder

    def _append_note(self, line: str) -> None:
        self.notes = f"{self.notes}\n{line}" if self.notes else line

    def cancel(self, reason: Optional[str] = None) -> None:
        """
        Void the invoice.

        Args:
            reason: Appended to notes as "Cancelled: {reason}"

        Raises:
            InvalidStateTransitionError: If the invoice is paid or refunded
        """
        if self.current_status in (InvoiceStatus.PAID, InvoiceStatus.REFUNDED):
            raise InvalidStateTransitionError(
                message="Cannot cancel a paid or refunded invoice",
                invoice_id=self.id,
                current_status=self.current_status.value,
            )
        self.status = try_transition(self.current_status, InvoiceTrigger.CANCEL)
        if reason:
            self._append_note(f"Cancelled: {reason}")

    def refund(self, amount: Any = None) -> None:
        """
        Record a refund on the invoice's presentation state.

        WHAT: A full refund (no amount, or amount >= paid_amount) makes the
        invoice refunded. A smaller amount makes it partial and appends
        "Partial refund: {amount} {currency}" to notes.

        WHY: paid_amount keeps the gross amount received and no
        Transaction is created here. The payment service creates the
        refund Transaction and calls this in the same database
        transaction, so the two can never disagree.

        Raises:
            InvalidStateTransitionError: If the invoice is not paid or partial
        """
        status = self.current_status
        if status not in (InvoiceStatus.PAID, InvoiceStatus.PARTIAL):
            raise InvalidStateTransitionError(
                message="Cannot refund an unpaid invoice",
                invoice_id=self.id,
                current_status=status.value,
            )

        refund_amount = to_decimal(amount, "amount") if amount is not None else None
        if refund_amount is not None and refund_amount <= 0:
            raise InvalidAmountError(
                message="Refund amount must be greater than zero",
                amount=str(refund_amount),
            )

        if refund_amount is not None and refund_amount < to_decimal(self.paid_amount):
            self.status = try_transition(status, InvoiceTrigger.REFUND_PARTIAL)
            self._append_note(
                f"Partial refund: {quantize_money(refund_amount)} {self.currency}"
            )
        else:
            self.status = try_transition(status, InvoiceTrigger.REFUND_FULL)

    # ------------------------------------------------------------------
    # Recurring
    # ------------------------------------------------------------------

    def build_recurring_successor(
        self,
        invoice_number: str,
        now: Optional[datetime] = None,
    ) -> "Invoice":
        """
        Build the next invoice of a recurring series.

        WHAT: Copies items, parties, terms, rates, fee, details and the
        recurring configuration into a new draft with nothing paid, a due
        date one period after now, one fewer remaining cycle and
        parent_invoice_id pointing here.

        WHY: Each generated invoice becomes the head of the series, so the
        series is a singly linked chain. next_invoice_date is advanced by
        one period so the scheduler does not pick the same slot twice.

        The caller persists the result and links it back through
        related_invoice_ids (see InvoiceDAO.generate_recurring_invoice).

        Args:
            invoice_number: Fresh unique number for the new invoice
            now: Generation time (defaults to utcnow)

        Returns:
            Unsaved Invoice

        Raises:
            RecurringConfigError: If the invoice is not recurring or has no
                frequency configured
        """
        if not self.is_recurring or not self.recurring_frequency:
            raise RecurringConfigError(
                message="This is not a recurring invoice",
                invoice_id=self.id,
            )

        now = now or datetime.utcnow()
        today = now.date()

        remaining = self.remaining_cycles
        if remaining is not None and remaining > 0:
            remaining -= 1

        next_invoice_date = self.next_invoice_date
        if next_invoice_date is not None:
            next_invoice_date = next_due_date(self.recurring_frequency, next_invoice_date)

        successor = Invoice(
            invoice_number=invoice_number,
            invoice_type=self.invoice_type,
            status=InvoiceStatus.DRAFT,
            org_id=self.org_id,
            client_id=self.client_id,
            consultant_id=self.consultant_id,
            project_id=self.project_id,
            proposal_id=self.proposal_id,
            created_by_id=self.created_by_id,
            items=[dict(item) for item in self.items or []],
            currency=self.currency,
            tax_rate=self.tax_rate,
            discount_rate=self.discount_rate,
            platform_fee_amount=self.platform_fee_amount,
            platform_fee_percentage=self.platform_fee_percentage,
            platform_fee_description=self.platform_fee_description,
            paid_amount=ZERO,
            payment_terms=self.payment_terms,
            payment_method=self.payment_method,
            payment_instructions=self.payment_instructions,
            issue_date=today,
            due_date=next_due_date(self.recurring_frequency, today),
            notes=self.notes,
            terms=self.terms,
            tags=list(self.tags or []),
            billing_details=self.billing_details,
            recipient_details=self.recipient_details,
            reminders_sent=[],
            is_recurring=True,
            recurring_frequency=self.recurring_frequency,
            next_invoice_date=next_invoice_date,
            recurring_end_date=self.recurring_end_date,
            remaining_cycles=remaining,
            parent_invoice_id=self.id,
            related_invoice_ids=[],
        )
        successor.recalculate(today=today)
        return successor

    def link_successor(self, successor_id: int) -> None:
        """Append a generated invoice id to related_invoice_ids."""
        self.related_invoice_ids = [*(self.related_invoice_ids or []), successor_id]

    @classmethod
    def generate_invoice_number(cls, prefix: str, sequence: int, now: Optional[datetime] = None) -> str:
        """
        Format an invoice number as {PREFIX}-{YYMM}-{NNNN}.

        Example:
            >>> Invoice.generate_invoice_number("INV", 7, datetime(2024, 10, 3))
            'INV-2410-0007'
        """
        now = now or datetime.utcnow()
        return f"{prefix}-{now:%y%m}-{sequence:04d}"


# ============================================================================
# Save-time recomputation
# ============================================================================

# Columns whose change re-derives the payment part of the status
_PAYMENT_INPUTS = (
    "items",
    "tax_rate",
    "discount_rate",
    "platform_fee_amount",
    "paid_amount",
)


def _payment_inputs_changed(target: Invoice) -> bool:
    state = inspect(target)
    return any(state.attrs[name].history.has_changes() for name in _PAYMENT_INPUTS)


@event.listens_for(Invoice, "before_insert")
def _recalculate_before_insert(mapper, connection, target: Invoice) -> None:
    target.validate_parties()
    target.recalculate()


@event.listens_for(Invoice, "before_update")
def _recalculate_before_update(mapper, connection, target: Invoice) -> None:
    target.recalculate(derive_payment_status=_payment_inputs_changed(target))

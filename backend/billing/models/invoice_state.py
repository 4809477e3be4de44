"""
Invoice status state machine.

WHAT: The invoice status enum, the triggers that move an invoice between
statuses, and the table of legal transitions.

WHY: Invoice status is driven by two independent inputs (payments against
the total and the wall clock against the due date) plus explicit
cancel/refund actions. Keeping every legal move in one table makes
illegal moves such as paid -> overdue or cancelled -> paid impossible,
instead of depending on the order of a chain of if-statements.

HOW: try_transition(current, trigger) returns the next status or raises
InvalidStateTransitionError. derive_status() turns the payment and due
date facts into triggers and feeds them through the same table.
"""

from datetime import date
from decimal import Decimal
from enum import Enum
from typing import Dict, Optional

from billing.core.exceptions import InvalidStateTransitionError


class InvoiceStatus(str, Enum):
    """
    Invoice payment workflow status.

    - DRAFT: Invoice created but not issued
    - SENT: Issued to the recipient, nothing paid yet
    - PENDING: Awaiting payment (bank transfer in flight, or payments cleared)
    - PARTIAL: Some payment received, balance due
    - PAID: Paid in full (terminal for payments)
    - OVERDUE: Past due date without full payment
    - CANCELLED: Voided (terminal)
    - REFUNDED: Payment returned (terminal)
    """

    DRAFT = "draft"
    SENT = "sent"
    PENDING = "pending"
    PARTIAL = "partial"
    PAID = "paid"
    OVERDUE = "overdue"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"


class InvoiceTrigger(str, Enum):
    """Events that can move an invoice to a new status."""

    SEND = "send"
    AWAIT_TRANSFER = "await_transfer"
    PAYMENT_PARTIAL = "payment_partial"
    PAYMENT_FULL = "payment_full"
    PAYMENT_CLEARED = "payment_cleared"
    DUE_DATE_PASSED = "due_date_passed"
    CANCEL = "cancel"
    REFUND_PARTIAL = "refund_partial"
    REFUND_FULL = "refund_full"


S = InvoiceStatus
T = InvoiceTrigger

_PAYMENT_MOVES = {
    T.PAYMENT_PARTIAL: S.PARTIAL,
    T.PAYMENT_FULL: S.PAID,
}

INVOICE_TRANSITIONS: Dict[InvoiceStatus, Dict[InvoiceTrigger, InvoiceStatus]] = {
    S.DRAFT: {
        T.SEND: S.SENT,
        T.CANCEL: S.CANCELLED,
        **_PAYMENT_MOVES,
    },
    S.SENT: {
        T.AWAIT_TRANSFER: S.PENDING,
        T.DUE_DATE_PASSED: S.OVERDUE,
        T.CANCEL: S.CANCELLED,
        **_PAYMENT_MOVES,
    },
    S.PENDING: {
        T.AWAIT_TRANSFER: S.PENDING,
        T.DUE_DATE_PASSED: S.OVERDUE,
        T.CANCEL: S.CANCELLED,
        **_PAYMENT_MOVES,
    },
    S.PARTIAL: {
        T.PAYMENT_CLEARED: S.PENDING,
        T.DUE_DATE_PASSED: S.OVERDUE,
        T.CANCEL: S.CANCELLED,
        T.REFUND_PARTIAL: S.PARTIAL,
        T.REFUND_FULL: S.REFUNDED,
        **_PAYMENT_MOVES,
    },
    S.OVERDUE: {
        T.AWAIT_TRANSFER: S.OVERDUE,
        T.PAYMENT_CLEARED: S.PENDING,
        T.DUE_DATE_PASSED: S.OVERDUE,
        T.CANCEL: S.CANCELLED,
        **_PAYMENT_MOVES,
    },
    S.PAID: {
        T.PAYMENT_FULL: S.PAID,
        T.PAYMENT_PARTIAL: S.PARTIAL,
        T.PAYMENT_CLEARED: S.PENDING,
        T.REFUND_PARTIAL: S.PARTIAL,
        T.REFUND_FULL: S.REFUNDED,
    },
    S.CANCELLED: {
        T.CANCEL: S.CANCELLED,
    },
    S.REFUNDED: {},
}

TERMINAL_STATUSES = frozenset({S.CANCELLED, S.REFUNDED})

# Statuses a client may pay against through the payment service
PAYABLE_STATUSES = frozenset({S.SENT, S.PENDING, S.PARTIAL, S.OVERDUE})


def can_transition(current: InvoiceStatus, trigger: InvoiceTrigger) -> bool:
    """Check whether trigger is legal from current without raising."""
    return trigger in INVOICE_TRANSITIONS.get(InvoiceStatus(current), {})


def try_transition(current: InvoiceStatus, trigger: InvoiceTrigger) -> InvoiceStatus:
    """
    Apply a trigger to a status.

    Args:
        current: Current invoice status
        trigger: Event being applied

    Returns:
        The next status

    Raises:
        InvalidStateTransitionError: If the table has no such move
    """
    current = InvoiceStatus(current)
    next_status = INVOICE_TRANSITIONS.get(current, {}).get(trigger)
    if next_status is None:
        raise InvalidStateTransitionError(
            message=f"Cannot {trigger.value.replace('_', ' ')} an invoice that is {current.value}",
            current_status=current.value,
            trigger=trigger.value,
        )
    return next_status


def payment_trigger(total: Decimal, paid_amount: Decimal) -> Optional[InvoiceTrigger]:
    """
    Map paid amount against total to a payment trigger.

    Returns:
        PAYMENT_FULL when something is paid and it covers the total,
        PAYMENT_PARTIAL when something is paid but less than the total,
        None when nothing is paid.
    """
    if paid_amount > 0 and paid_amount >= total:
        return InvoiceTrigger.PAYMENT_FULL
    if paid_amount > 0:
        return InvoiceTrigger.PAYMENT_PARTIAL
    return None


def derive_status(
    current: InvoiceStatus,
    total: Decimal,
    paid_amount: Decimal,
    due_date: Optional[date],
    today: Optional[date] = None,
) -> InvoiceStatus:
    """
    Derive an invoice's status from its amounts and due date.

    WHAT: paid if paid_amount covers total, partial if something but not
    everything is paid, paid/partial fall back to pending when paid_amount
    is zero, then overdue once the due date has passed.

    WHY: Status is a function of the invoice's values. Terminal statuses
    are never touched, and every move goes through the transition table so
    a paid invoice can never be marked overdue.

    Args:
        current: Status before derivation
        total: Invoice total
        paid_amount: Cumulative paid amount
        due_date: Payment due date (None disables the overdue check)
        today: Date to compare the due date against (defaults to today)

    Returns:
        The derived status
    """
    status = InvoiceStatus(current)
    if status in TERMINAL_STATUSES:
        return status

    trigger = payment_trigger(total, paid_amount)
    if trigger is not None:
        status = try_transition(status, trigger)
    elif status in (InvoiceStatus.PAID, InvoiceStatus.PARTIAL):
        status = try_transition(status, InvoiceTrigger.PAYMENT_CLEARED)

    return apply_due_date(status, due_date, today, amount_due=total - paid_amount)


def apply_due_date(
    current: InvoiceStatus,
    due_date: Optional[date],
    today: Optional[date] = None,
    amount_due: Optional[Decimal] = None,
) -> InvoiceStatus:
    """
    Move an invoice to overdue once its due date has passed.

    Statuses with no due_date_passed move in the table (draft, paid,
    cancelled, refunded) are returned unchanged, and so is an invoice with
    nothing left to pay. A paid invoice that was partly refunded is
    partial with paid_amount == total and must stay refundable.
    """
    status = InvoiceStatus(current)
    today = today or date.today()
    if (
        due_date is not None
        and (amount_due is None or amount_due > 0)
        and today > due_date
        and can_transition(status, InvoiceTrigger.DUE_DATE_PASSED)
    ):
        status = try_transition(status, InvoiceTrigger.DUE_DATE_PASSED)
    return status

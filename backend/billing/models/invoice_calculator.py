"""
Invoice money calculations.

WHAT: Pure functions for line item amounts, invoice aggregates, payment
schedule allocation and recurring due dates.

WHY: Every derived money field on an invoice is a function of its line
items, rates and platform fee. Computing them here, with no session and
no model instance involved, lets the invariant
total == subtotal + tax_amount - discount_amount + platform_fee be
tested in isolation and reused by the model, the DAO and the API.

HOW: All money is Decimal. Component values are rounded half-up to cents
before the total is summed, so the total equation holds exactly rather
than within a floating point tolerance. Line items and installments are
stored on the invoice as JSON, so money inside them is serialized as
strings.
"""

from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from decimal import Decimal, ROUND_HALF_UP, InvalidOperation
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

from dateutil.relativedelta import relativedelta

from billing.core.exceptions import ValidationError


CENT = Decimal("0.01")
ZERO = Decimal("0")
HUNDRED = Decimal("100")


class InstallmentStatus:
    """Status values for payment schedule installments."""

    PENDING = "pending"
    PARTIAL = "partial"
    PAID = "paid"


class RecurringFrequency:
    """Supported recurring periods."""

    WEEKLY = "weekly"
    BIWEEKLY = "biweekly"
    MONTHLY = "monthly"
    QUARTERLY = "quarterly"
    ANNUALLY = "annually"

    ALL = (WEEKLY, BIWEEKLY, MONTHLY, QUARTERLY, ANNUALLY)


# Anything not listed falls back to DEFAULT_PERIOD
RECURRING_PERIODS = {
    RecurringFrequency.WEEKLY: relativedelta(days=7),
    RecurringFrequency.BIWEEKLY: relativedelta(days=14),
    RecurringFrequency.MONTHLY: relativedelta(months=1),
    RecurringFrequency.QUARTERLY: relativedelta(months=3),
    RecurringFrequency.ANNUALLY: relativedelta(years=1),
}
DEFAULT_PERIOD = relativedelta(days=30)


def to_decimal(value: Any, field_name: str = "value") -> Decimal:
    """
    Convert a JSON or user supplied number to Decimal.

    None counts as zero. Floats go through str() so 0.1 stays 0.1.

    Raises:
        ValidationError: If the value is not a number
    """
    if value is None or value == "":
        return ZERO
    if isinstance(value, Decimal):
        return value
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError):
        raise ValidationError(
            message=f"{field_name} must be a number",
            field=field_name,
            value=str(value),
        )


def quantize_money(value: Decimal) -> Decimal:
    """Round to cents, half-up."""
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


@dataclass(frozen=True)
class ComputedLineItem:
    """A line item with its derived amounts filled in."""

    description: str
    quantity: Decimal
    unit_price: Decimal
    tax_rate: Decimal = ZERO
    discount_rate: Decimal = ZERO
    amount: Decimal = ZERO
    discount_amount: Decimal = ZERO
    tax_amount: Decimal = ZERO

    def to_dict(self) -> Dict[str, str]:
        """JSON-safe representation stored in Invoice.items."""
        return {
            "description": self.description,
            "quantity": str(self.quantity),
            "unit_price": str(self.unit_price),
            "tax_rate": str(self.tax_rate),
            "discount_rate": str(self.discount_rate),
            "amount": str(self.amount),
            "discount_amount": str(self.discount_amount),
            "tax_amount": str(self.tax_amount),
        }


@dataclass(frozen=True)
class InvoiceTotals:
    """Result of recompute_totals()."""

    items: List[ComputedLineItem] = field(default_factory=list)
    subtotal: Decimal = ZERO
    tax_amount: Decimal = ZERO
    discount_amount: Decimal = ZERO
    platform_fee: Decimal = ZERO
    total: Decimal = ZERO


def _non_negative(value: Decimal, field_name: str) -> Decimal:
    if value < 0:
        raise ValidationError(
            message=f"{field_name} cannot be negative",
            field=field_name,
            value=str(value),
        )
    return value


def _rate(value: Any, field_name: str) -> Decimal:
    rate = _non_negative(to_decimal(value, field_name), field_name)
    if field_name.endswith("discount_rate") and rate > HUNDRED:
        raise ValidationError(
            message=f"{field_name} cannot exceed 100",
            field=field_name,
            value=str(rate),
        )
    return rate


def compute_line_item(item: Mapping[str, Any]) -> ComputedLineItem:
    """
    Derive amount, discount and tax for a single line item.

    discounted unit price = unit_price * (1 - discount_rate / 100)
    amount = discounted unit price * quantity
    discount_amount = unit_price * quantity - amount
    tax_amount = amount * tax_rate / 100

    Args:
        item: Mapping with description, quantity, unit_price and optional
            tax_rate / discount_rate. Derived keys, if present, are ignored.

    Returns:
        ComputedLineItem with amounts rounded to cents

    Raises:
        ValidationError: On negative quantity, price or rates
    """
    quantity = _non_negative(to_decimal(item.get("quantity"), "quantity"), "quantity")
    unit_price = _non_negative(to_decimal(item.get("unit_price"), "unit_price"), "unit_price")
    tax_rate = _rate(item.get("tax_rate"), "tax_rate")
    discount_rate = _rate(item.get("discount_rate"), "discount_rate")

    gross = unit_price * quantity
    amount = quantize_money(unit_price * (1 - discount_rate / HUNDRED) * quantity)
    discount_amount = quantize_money(gross) - amount
    tax_amount = quantize_money(amount * tax_rate / HUNDRED)

    return ComputedLineItem(
        description=str(item.get("description") or ""),
        quantity=quantity,
        unit_price=unit_price,
        tax_rate=tax_rate,
        discount_rate=discount_rate,
        amount=amount,
        discount_amount=discount_amount,
        tax_amount=tax_amount,
    )


def recompute_totals(
    items: Sequence[Mapping[str, Any]],
    tax_rate: Any = ZERO,
    discount_rate: Any = ZERO,
    platform_fee: Any = ZERO,
) -> InvoiceTotals:
    """
    Recompute every derived money field of an invoice.

    subtotal = sum of line amounts
    tax_amount = sum of line taxes + subtotal * tax_rate / 100
    discount_amount = sum of line discounts + subtotal * discount_rate / 100
    total = subtotal + tax_amount - discount_amount + platform_fee

    Args:
        items: Line items (dicts as stored on the invoice, or schema dumps)
        tax_rate: Invoice-level tax percentage
        discount_rate: Invoice-level discount percentage (0-100)
        platform_fee: Flat platform fee amount

    Returns:
        InvoiceTotals

    Raises:
        ValidationError: On negative inputs, which is the only way a
            derived value could go negative
    """
    computed = [compute_line_item(item) for item in items or []]
    invoice_tax_rate = _rate(tax_rate, "tax_rate")
    invoice_discount_rate = _rate(discount_rate, "discount_rate")
    fee = quantize_money(
        _non_negative(to_decimal(platform_fee, "platform_fee"), "platform_fee")
    )

    subtotal = sum((item.amount for item in computed), ZERO)
    tax_amount = sum((item.tax_amount for item in computed), ZERO) + quantize_money(
        subtotal * invoice_tax_rate / HUNDRED
    )
    discount_amount = sum((item.discount_amount for item in computed), ZERO) + quantize_money(
        subtotal * invoice_discount_rate / HUNDRED
    )

    subtotal = quantize_money(subtotal)
    tax_amount = quantize_money(tax_amount)
    discount_amount = quantize_money(discount_amount)

    return InvoiceTotals(
        items=computed,
        subtotal=subtotal,
        tax_amount=tax_amount,
        discount_amount=discount_amount,
        platform_fee=fee,
        total=subtotal + tax_amount - discount_amount + fee,
    )


def calculate_platform_fee(subtotal: Decimal, percentage: Any) -> Decimal:
    """Platform fee as a percentage of the subtotal, rounded to cents."""
    rate = _non_negative(to_decimal(percentage, "platform_fee_percentage"), "platform_fee_percentage")
    return quantize_money(to_decimal(subtotal) * rate / HUNDRED)


def build_installment(
    amount: Any,
    due_date: date,
    description: Optional[str] = None,
) -> Dict[str, Any]:
    """Create a fresh, unpaid installment dict for Invoice.payment_schedule."""
    return {
        "description": description,
        "due_date": due_date.isoformat(),
        "amount": str(quantize_money(_non_negative(to_decimal(amount, "amount"), "amount"))),
        "paid_amount": "0.00",
        "status": InstallmentStatus.PENDING,
        "paid_date": None,
        "transaction_id": None,
    }


def apply_payment_to_schedule(
    schedule: Sequence[Mapping[str, Any]],
    amount: Decimal,
    transaction_id: Optional[str] = None,
    paid_on: Optional[datetime] = None,
) -> Tuple[List[Dict[str, Any]], Decimal]:
    """
    Allocate a payment across installments, greedily and in list order.

    Each unpaid or partially paid installment absorbs
    min(remaining, installment amount - installment paid amount). Covered
    installments become "paid", touched ones "partial". paid_date and
    transaction_id are stamped the first time an installment is touched.
    Allocation stops as soon as the payment is exhausted.

    Args:
        schedule: Current installments (not modified)
        amount: Payment amount to allocate
        transaction_id: Reference of the transaction that paid
        paid_on: Timestamp to stamp (defaults to now)

    Returns:
        (new schedule, amount left unallocated)
    """
    paid_on = paid_on or datetime.utcnow()
    remaining = to_decimal(amount)
    updated: List[Dict[str, Any]] = []

    for installment in schedule:
        entry = dict(installment)
        if remaining > 0 and entry.get("status") != InstallmentStatus.PAID:
            due = to_decimal(entry.get("amount"))
            paid = to_decimal(entry.get("paid_amount"))
            to_apply = min(remaining, due - paid)

            if to_apply > 0:
                paid += to_apply
                remaining -= to_apply
                entry["paid_amount"] = str(quantize_money(paid))
                entry["status"] = (
                    InstallmentStatus.PAID if paid >= due else InstallmentStatus.PARTIAL
                )
                if not entry.get("paid_date"):
                    entry["paid_date"] = paid_on.isoformat()
                if transaction_id and not entry.get("transaction_id"):
                    entry["transaction_id"] = transaction_id
        updated.append(entry)

    return updated, remaining


def next_due_date(frequency: Optional[str], start: date) -> date:
    """
    Add one recurring period to a date.

    weekly +7 days, biweekly +14 days, monthly +1 calendar month,
    quarterly +3 months, annually +1 year, anything else +30 days.
    Month arithmetic clamps to the last day of shorter months.
    """
    return start + RECURRING_PERIODS.get(frequency, DEFAULT_PERIOD)


def due_date_for_terms(payment_terms: Optional[str], issue_date: date, default_days: int) -> date:
    """
    Due date implied by payment terms.

    net_N terms add N days, due_on_receipt is the issue date, anything else
    uses the configured default.
    """
    if payment_terms == "due_on_receipt":
        return issue_date
    if payment_terms and payment_terms.startswith("net_") and payment_terms[4:].isdigit():
        return issue_date + timedelta(days=int(payment_terms[4:]))
    return issue_date + timedelta(days=default_days)

"""
Transaction model: the append-only money ledger.

WHAT: One row per attempted money movement: a payment, a refund, a payout
to a consultant, a transfer, an adjustment or a fee.

WHY: The gateway is the source of truth for whether money moved; this
table is our record of every attempt and its outcome. Rows are created
once per gateway attempt and never reversed in place. A refund is a new
row of type refund named refund_{original_ref}, it never edits the
original's amount.

HOW: net = amount - fee is recomputed by mapper listeners on every
INSERT/UPDATE. Status moves only through TRANSACTION_TRANSITIONS;
completed rows only accept the disputed flag.
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional
from sqlalchemy import (
    Column,
    Integer,
    String,
    Text,
    DateTime,
    ForeignKey,
    JSON,
    event,
)
from sqlalchemy.orm import Mapped, validates

from billing.core.exceptions import InvalidStateTransitionError
from billing.models.base import Base, enum_column, money_column
from billing.models.invoice_calculator import to_decimal


class TransactionType(str, Enum):
    """Kind of money movement."""

    PAYMENT = "payment"
    REFUND = "refund"
    PAYOUT = "payout"
    TRANSFER = "transfer"
    ADJUSTMENT = "adjustment"
    FEE = "fee"


class PaymentMethod(str, Enum):
    """
    How the money moves.

    Only CREDIT_CARD/STRIPE (gateway) and BANK_TRANSFER (manual
    reconciliation) have processing branches; the rest are recorded for
    completeness and rejected by the payment service.
    """

    CREDIT_CARD = "credit_card"
    BANK_TRANSFER = "bank_transfer"
    PAYPAL = "paypal"
    STRIPE = "stripe"
    WALLET = "wallet"
    OTHER = "other"


class TransactionStatus(str, Enum):
    """Outcome of the attempt."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"
    DISPUTED = "disputed"


class RefundReason(str, Enum):
    """Reasons accepted by the gateway for refunds."""

    DUPLICATE = "duplicate"
    FRAUDULENT = "fraudulent"
    REQUESTED_BY_CUSTOMER = "requested_by_customer"
    ABANDONED = "abandoned"
    OTHER = "other"


_TS = TransactionStatus

TRANSACTION_TRANSITIONS = {
    _TS.PENDING: {_TS.PROCESSING, _TS.COMPLETED, _TS.FAILED, _TS.CANCELLED},
    _TS.PROCESSING: {_TS.PENDING, _TS.COMPLETED, _TS.FAILED, _TS.CANCELLED},
    # A completed movement is reversed by a new refund row, never in place
    _TS.COMPLETED: {_TS.DISPUTED},
    _TS.FAILED: set(),
    _TS.CANCELLED: set(),
    _TS.REFUNDED: set(),
    _TS.DISPUTED: set(),
}

# Map gateway payment intent statuses onto ours
GATEWAY_STATUS_MAP = {
    "succeeded": _TS.COMPLETED,
    "requires_payment_method": _TS.PENDING,
    "requires_confirmation": _TS.PENDING,
    "requires_action": _TS.PENDING,
    "canceled": _TS.CANCELLED,
}


def map_gateway_status(gateway_status: Optional[str]) -> TransactionStatus:
    """succeeded -> completed, requires_* -> pending, canceled -> cancelled, else processing."""
    return GATEWAY_STATUS_MAP.get(gateway_status or "", _TS.PROCESSING)


class Transaction(Base):
    """
    Ledger record of one money movement attempt.

    Attributes:
        transaction_ref: Unique public reference (txn_..., refund_txn_...)
        amount: Signed amount (refunds are negative)
        fee: Gateway or platform fee
        net: amount - fee, always derived (may be negative)
        original_transaction_id: For refunds, the payment being refunded
        error: {code, message, type, param} snapshot from a failed attempt
    """

    __tablename__ = "transactions"

    id: Mapped[int] = Column(Integer, primary_key=True, index=True)

    transaction_ref: Mapped[str] = Column(
        String(100),
        unique=True,
        nullable=False,
        index=True,
        comment="Public reference, refunds are refund_{original_ref}",
    )
    transaction_type: Mapped[TransactionType] = enum_column(
        TransactionType, "transactiontype", nullable=False, index=True
    )
    payment_method: Mapped[PaymentMethod] = enum_column(
        PaymentMethod, "paymentmethod", nullable=False
    )
    status: Mapped[TransactionStatus] = enum_column(
        TransactionStatus,
        "transactionstatus",
        nullable=False,
        default=TransactionStatus.PENDING,
        index=True,
    )

    # Money
    amount: Mapped[Decimal] = money_column("Signed amount")
    currency: Mapped[str] = Column(String(3), nullable=False, default="USD")
    fee: Mapped[Decimal] = money_column("Processing fee")
    net: Mapped[Decimal] = money_column("amount - fee, derived on save")

    # Context
    org_id: Mapped[int] = Column(
        Integer,
        ForeignKey("organizations.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    invoice_id: Mapped[Optional[int]] = Column(
        Integer, ForeignKey("invoices.id", ondelete="SET NULL"), nullable=True, index=True
    )
    project_id: Mapped[Optional[int]] = Column(
        Integer, ForeignKey("projects.id", ondelete="SET NULL"), nullable=True, index=True
    )
    proposal_id: Mapped[Optional[int]] = Column(
        Integer, ForeignKey("proposals.id", ondelete="SET NULL"), nullable=True, index=True
    )
    client_id: Mapped[Optional[int]] = Column(Integer, ForeignKey("users.id"), nullable=True, index=True)
    consultant_id: Mapped[Optional[int]] = Column(Integer, ForeignKey("users.id"), nullable=True, index=True)
    original_transaction_id: Mapped[Optional[int]] = Column(
        Integer, ForeignKey("transactions.id"), nullable=True, index=True
    )
    created_by_id: Mapped[Optional[int]] = Column(Integer, ForeignKey("users.id"), nullable=True)

    # Gateway references
    gateway_provider: Mapped[Optional[str]] = Column(String(50), nullable=True)
    payment_intent_id: Mapped[Optional[str]] = Column(String(255), nullable=True, index=True)
    charge_id: Mapped[Optional[str]] = Column(String(255), nullable=True)
    transfer_id: Mapped[Optional[str]] = Column(String(255), nullable=True)
    refund_id: Mapped[Optional[str]] = Column(String(255), nullable=True)
    payout_id: Mapped[Optional[str]] = Column(String(255), nullable=True)
    checkout_session_id: Mapped[Optional[str]] = Column(String(255), nullable=True, index=True)
    receipt_url: Mapped[Optional[str]] = Column(Text, nullable=True)
    gateway_response: Mapped[Optional[Dict[str, Any]]] = Column(JSON, nullable=True)

    # Snapshots
    billing_details: Mapped[Optional[Dict[str, Any]]] = Column(JSON, nullable=True)
    payment_method_details: Mapped[Optional[Dict[str, Any]]] = Column(JSON, nullable=True)
    error: Mapped[Optional[Dict[str, Any]]] = Column(JSON, nullable=True)

    refund_reason: Mapped[Optional[RefundReason]] = enum_column(
        RefundReason, "refundreason", nullable=True
    )
    description: Mapped[Optional[str]] = Column(Text, nullable=True)
    notes: Mapped[Optional[str]] = Column(Text, nullable=True)
    extra_data: Mapped[Optional[Dict[str, Any]]] = Column(JSON, nullable=True)

    processed_at: Mapped[Optional[datetime]] = Column(DateTime, nullable=True)
    completed_at: Mapped[Optional[datetime]] = Column(DateTime, nullable=True)
    failed_at: Mapped[Optional[datetime]] = Column(DateTime, nullable=True)
    created_at: Mapped[datetime] = Column(DateTime, nullable=False, default=datetime.utcnow, index=True)
    updated_at: Mapped[datetime] = Column(
        DateTime,
        nullable=False,
        default=datetime.utcnow,
        onupdate=datetime.utcnow,
    )

    def __repr__(self) -> str:
        return (
            f"<Transaction(ref={self.transaction_ref}, type={self.transaction_type}, "
            f"status={self.status}, amount={self.amount})>"
        )

    @validates("amount", "fee")
    def _validate_money(self, key: str, value: Any) -> Decimal:
        # Persisted completed rows are immutable money records
        if self.id is not None and self.status == TransactionStatus.COMPLETED:
            raise InvalidStateTransitionError(
                message=f"Cannot change {key} of a completed transaction",
                transaction_ref=self.transaction_ref,
            )
        return to_decimal(value, key)

    @property
    def is_refundable(self) -> bool:
        return (
            self.transaction_type == TransactionType.PAYMENT
            and self.status == TransactionStatus.COMPLETED
        )

    def involves(self, user_id: int) -> bool:
        """True if user_id is the client or consultant on this transaction."""
        return user_id is not None and user_id in (self.client_id, self.consultant_id)

    def recompute_net(self) -> None:
        self.net = to_decimal(self.amount) - to_decimal(self.fee)

    def transition_to(self, new_status: TransactionStatus) -> None:
        """
        Move to a new status through TRANSACTION_TRANSITIONS.

        Raises:
            InvalidStateTransitionError: If the move is not allowed
        """
        current = TransactionStatus(self.status or TransactionStatus.PENDING)
        new_status = TransactionStatus(new_status)
        if new_status == current:
            return
        if new_status not in TRANSACTION_TRANSITIONS[current]:
            raise InvalidStateTransitionError(
                message=f"Cannot move transaction from {current.value} to {new_status.value}",
                transaction_ref=self.transaction_ref,
                current_status=current.value,
                requested_status=new_status.value,
            )
        self.status = new_status

    def mark_processing(self) -> None:
        self.transition_to(TransactionStatus.PROCESSING)

    def mark_completed(self, processed_at: Optional[datetime] = None) -> None:
        self.transition_to(TransactionStatus.COMPLETED)
        now = processed_at or datetime.utcnow()
        self.processed_at = self.processed_at or now
        self.completed_at = now

    def mark_failed(self, error: Optional[Dict[str, Any]] = None) -> None:
        """Record a failed attempt with the gateway error snapshot."""
        self.transition_to(TransactionStatus.FAILED)
        self.failed_at = datetime.utcnow()
        if error:
            self.error = {
                "code": error.get("code"),
                "message": error.get("message"),
                "type": error.get("type"),
                "param": error.get("param"),
            }

    def mark_cancelled(self) -> None:
        self.transition_to(TransactionStatus.CANCELLED)

    def mark_disputed(self) -> None:
        self.transition_to(TransactionStatus.DISPUTED)

    def build_refund(
        self,
        amount: Decimal,
        transaction_ref: str,
        reason: Optional[RefundReason] = None,
        created_by_id: Optional[int] = None,
    ) -> "Transaction":
        """
        Create the refund row for this payment.

        The refund is a new pending Transaction with a negative amount,
        linked through original_transaction_id. This row is not modified.

        Args:
            amount: Positive amount being returned
            transaction_ref: refund_{original_ref} (with a counter suffix for
                later partial refunds of the same payment)
            reason: Refund reason
            created_by_id: User issuing the refund
        """
        return Transaction(
            transaction_ref=transaction_ref,
            transaction_type=TransactionType.REFUND,
            payment_method=self.payment_method,
            status=TransactionStatus.PENDING,
            amount=-to_decimal(amount),
            currency=self.currency,
            fee=Decimal("0"),
            org_id=self.org_id,
            invoice_id=self.invoice_id,
            project_id=self.project_id,
            proposal_id=self.proposal_id,
            client_id=self.client_id,
            consultant_id=self.consultant_id,
            original_transaction_id=self.id,
            created_by_id=created_by_id,
            gateway_provider=self.gateway_provider,
            payment_intent_id=self.payment_intent_id,
            charge_id=self.charge_id,
            refund_reason=reason or RefundReason.REQUESTED_BY_CUSTOMER,
            description=f"Refund for {self.transaction_ref}",
        )


@event.listens_for(Transaction, "before_insert")
@event.listens_for(Transaction, "before_update")
def _recompute_net(mapper, connection, target: Transaction) -> None:
    target.recompute_net()

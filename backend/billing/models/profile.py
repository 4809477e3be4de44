"""
Client and consultant billing profiles.

WHAT: Per-user billing data that lives beside the User row.

WHY: The payment gateway customer for a client is created lazily on
first card payment and cached here so later payments reuse it. A
consultant's profile holds where payouts go: a Stripe Connect account
or bank details for manual transfers.
"""

from datetime import datetime
from typing import Any, Dict, Optional
from sqlalchemy import Column, Integer, String, DateTime, ForeignKey, JSON
from sqlalchemy.orm import Mapped

from billing.models.base import Base, TimestampMixin, PrimaryKeyMixin


class ClientProfile(Base, PrimaryKeyMixin, TimestampMixin):
    """Billing profile of a client user."""

    __tablename__ = "client_profiles"

    user_id: Mapped[int] = Column(
        Integer,
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        unique=True,
        index=True,
    )
    company_name: Mapped[Optional[str]] = Column(String(255), nullable=True)

    stripe_customer_id: Mapped[Optional[str]] = Column(
        String(255),
        nullable=True,
        index=True,
        comment="Gateway customer, created on first card payment",
    )
    default_payment_method_id: Mapped[Optional[str]] = Column(String(255), nullable=True)

    # {"name", "email", "address": {...}, "tax_id"}
    billing_details: Mapped[Optional[Dict[str, Any]]] = Column(JSON, nullable=True)

    def __repr__(self) -> str:
        return f"<ClientProfile(user_id={self.user_id}, customer={self.stripe_customer_id})>"


class ConsultantProfile(Base, PrimaryKeyMixin, TimestampMixin):
    """Billing profile of a consultant user."""

    __tablename__ = "consultant_profiles"

    user_id: Mapped[int] = Column(
        Integer,
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        unique=True,
        index=True,
    )

    stripe_connect_id: Mapped[Optional[str]] = Column(
        String(255),
        nullable=True,
        comment="Stripe Connect account receiving transfers",
    )
    preferred_payout_method: Mapped[Optional[str]] = Column(
        String(50),
        nullable=True,
        comment="bank_transfer or stripe",
    )
    # {"account_name", "account_number_last4", "routing_number", "bank_name"}
    bank_details: Mapped[Optional[Dict[str, Any]]] = Column(JSON, nullable=True)
    last_payout_at: Mapped[Optional[datetime]] = Column(
        DateTime,
        nullable=True,
    )

    def __repr__(self) -> str:
        return f"<ConsultantProfile(user_id={self.user_id}, connect={self.stripe_connect_id})>"

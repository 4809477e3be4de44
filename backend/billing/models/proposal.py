"""
Proposal model.

WHAT: A consultant's priced offer for a project.

WHY: Clients may pay against an accepted proposal directly (deposit or
full fixed price). Invoices can also be drafted from a proposal's line
items. Billing reads the parties and prices; proposal negotiation lives
elsewhere.
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional
from sqlalchemy import (
    Column,
    Integer,
    String,
    DateTime,
    ForeignKey,
    JSON,
)
from sqlalchemy.orm import Mapped

from billing.models.base import Base, enum_column, money_column
from billing.models.invoice_calculator import recompute_totals


class ProposalStatus(str, Enum):
    """Proposal status as seen by billing."""

    SUBMITTED = "submitted"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    WITHDRAWN = "withdrawn"


class Proposal(Base):
    """Consultant proposal for a project."""

    __tablename__ = "proposals"

    id: Mapped[int] = Column(Integer, primary_key=True, index=True)

    title: Mapped[str] = Column(String(255), nullable=False)

    status: Mapped[ProposalStatus] = enum_column(
        ProposalStatus,
        "proposalstatus",
        nullable=False,
        default=ProposalStatus.SUBMITTED,
        index=True,
    )

    project_id: Mapped[int] = Column(
        Integer,
        ForeignKey("projects.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    org_id: Mapped[int] = Column(
        Integer,
        ForeignKey("organizations.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    client_id: Mapped[int] = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    consultant_id: Mapped[int] = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)

    # Same shape as invoice line items: description, quantity, unit_price,
    # tax_rate, discount_rate
    line_items: Mapped[Optional[List[Dict[str, Any]]]] = Column(JSON, nullable=True)
    total: Mapped[Decimal] = money_column("Proposal price")
    currency: Mapped[str] = Column(String(3), nullable=False, default="USD")

    created_at: Mapped[datetime] = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = Column(
        DateTime,
        nullable=False,
        default=datetime.utcnow,
        onupdate=datetime.utcnow,
    )

    def __repr__(self) -> str:
        return f"<Proposal(id={self.id}, title={self.title}, status={self.status})>"

    def calculate_totals(self) -> None:
        """Recalculate total from line items with the invoice rules."""
        self.total = recompute_totals(self.line_items or []).total

"""
Audit Log Model.

WHAT: SQLAlchemy model for billing audit events.

WHY: Every money movement and every one-way invoice action (cancel,
refund, recurring generation) is recorded with who did it and from
where, so finance can reconstruct what happened to an invoice
independently of its current state.

HOW: Append-only table. JSON columns hold before/after values and
event-specific context.
"""

import enum
from sqlalchemy import Column, Integer, String, ForeignKey, Text, JSON

from billing.models.base import Base, TimestampMixin, PrimaryKeyMixin, enum_column


class AuditAction(str, enum.Enum):
    """Auditable billing actions."""

    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"

    INVOICE_SENT = "invoice_sent"
    INVOICE_CANCELLED = "invoice_cancelled"
    INVOICE_REFUNDED = "invoice_refunded"
    RECURRING_GENERATED = "recurring_generated"

    PAYMENT_PROCESSED = "payment_processed"
    PAYMENT_FAILED = "payment_failed"
    REFUND_PROCESSED = "refund_processed"
    PAYOUT_PROCESSED = "payout_processed"
    WEBHOOK_RECEIVED = "webhook_received"


class AuditLog(Base, PrimaryKeyMixin, TimestampMixin):
    """
    Immutable audit log entry.

    Fields:
    - actor_user_id: Who performed the action (null for scheduler/webhooks)
    - action: AuditAction
    - resource_type / resource_id: "invoice", "transaction", ...
    - org_id: Tenant
    - changes: {"field": {"old": ..., "new": ...}}
    - extra_data: Event context (amounts, references)
    - ip_address / user_agent: From the request context when available
    """

    __tablename__ = "audit_logs"

    actor_user_id = Column(
        Integer,
        ForeignKey("users.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )

    action = enum_column(AuditAction, "auditaction", nullable=False, index=True)

    resource_type = Column(String(100), nullable=False, index=True)
    resource_id = Column(Integer, nullable=True, index=True)

    org_id = Column(
        Integer,
        ForeignKey("organizations.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )

    changes = Column(JSON, nullable=True)
    extra_data = Column(JSON, nullable=True)

    ip_address = Column(String(45), nullable=True)  # IPv6 max length
    user_agent = Column(Text, nullable=True)

    def __repr__(self) -> str:
        return (
            f"<AuditLog(id={self.id}, action={self.action}, "
            f"resource={self.resource_type}:{self.resource_id})>"
        )

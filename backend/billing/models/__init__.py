"""
Database models package.

WHY: Centralizing model imports ensures Alembic and metadata.create_all
see every table, and gives the rest of the code one import location.
"""

from billing.models.base import Base, TimestampMixin, PrimaryKeyMixin
from billing.models.organization import Organization
from billing.models.user import User, UserRole
from billing.models.profile import ClientProfile, ConsultantProfile
from billing.models.audit_log import AuditLog, AuditAction
from billing.models.project import Project, ProjectStatus
from billing.models.proposal import Proposal, ProposalStatus
from billing.models.invoice_state import InvoiceStatus, InvoiceTrigger
from billing.models.invoice import Invoice, InvoiceType, OverpaymentPolicy
from billing.models.transaction import (
    Transaction,
    TransactionType,
    TransactionStatus,
    PaymentMethod,
    RefundReason,
)

__all__ = [
    "Base",
    "TimestampMixin",
    "PrimaryKeyMixin",
    "Organization",
    "User",
    "UserRole",
    "ClientProfile",
    "ConsultantProfile",
    "AuditLog",
    "AuditAction",
    "Project",
    "ProjectStatus",
    "Proposal",
    "ProposalStatus",
    "Invoice",
    "InvoiceStatus",
    "InvoiceTrigger",
    "InvoiceType",
    "OverpaymentPolicy",
    "Transaction",
    "TransactionType",
    "TransactionStatus",
    "PaymentMethod",
    "RefundReason",
]

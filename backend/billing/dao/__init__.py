"""
Data Access Object (DAO) package.

WHY: DAOs provide a clean separation between database operations and business logic,
making the codebase more testable and maintainable.
"""

from billing.dao.base import BaseDAO
from billing.dao.user import UserDAO
from billing.dao.profile import ClientProfileDAO, ConsultantProfileDAO
from billing.dao.audit_log import AuditLogDAO
from billing.dao.project import ProjectDAO, ProposalDAO
from billing.dao.invoice import InvoiceDAO
from billing.dao.transaction import TransactionDAO

__all__ = [
    "BaseDAO",
    "UserDAO",
    "ClientProfileDAO",
    "ConsultantProfileDAO",
    "AuditLogDAO",
    "ProjectDAO",
    "ProposalDAO",
    "InvoiceDAO",
    "TransactionDAO",
]

"""
User model.

WHY: Users are the parties on invoices and transactions. Their role decides
what they may do in billing: clients pay invoices, consultants receive
payouts, admins issue payouts and see everything in their organization.
Ownership is always re-derived from these rows at request time.
"""

import enum
from sqlalchemy import Column, Integer, String, ForeignKey, Boolean

from billing.models.base import Base, TimestampMixin, PrimaryKeyMixin, enum_column


class UserRole(str, enum.Enum):
    """
    User role enumeration.

    WHY: Enum ensures only valid roles can be assigned, preventing typos
    and making role-based access control (RBAC) more reliable.
    """

    ADMIN = "admin"  # Platform staff: payouts, all org records
    CLIENT = "client"  # Buys consulting work, pays invoices
    CONSULTANT = "consultant"  # Sells consulting work, receives payouts


class User(Base, PrimaryKeyMixin, TimestampMixin):
    """
    User model representing individuals who use the platform.

    WHY: The org_id foreign key ensures every user belongs to exactly one
    organization (required for multi-tenant data isolation).
    """

    __tablename__ = "users"

    name = Column(String(255), nullable=False)
    email = Column(String(255), unique=True, index=True, nullable=False)

    role = enum_column(UserRole, "userrole", nullable=False, default=UserRole.CLIENT)

    org_id = Column(Integer, ForeignKey("organizations.id"), nullable=False, index=True)

    # WHY: is_active allows suspension without losing billing history
    is_active = Column(Boolean, default=True, nullable=False)

    @property
    def is_admin(self) -> bool:
        return self.role == UserRole.ADMIN

    def __repr__(self) -> str:
        return f"<User(id={self.id}, email={self.email}, role={self.role})>"

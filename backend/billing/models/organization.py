"""
Organization model.

WHY: Organizations are the tenants of the marketplace. Every invoice and
transaction carries an org_id and every query is scoped by it, so one
tenant can never read another tenant's billing records.
"""

from sqlalchemy import Column, String, JSON, Boolean

from billing.models.base import Base, TimestampMixin, PrimaryKeyMixin


class Organization(Base, PrimaryKeyMixin, TimestampMixin):
    """
    Organization model representing a tenant in the multi-tenant system.

    settings may carry per-tenant billing overrides such as
    {"invoice_prefix": "ACME"}.
    """

    __tablename__ = "organizations"

    name = Column(String(255), nullable=False, index=True)

    settings = Column(JSON, nullable=False, default=dict)

    is_active = Column(Boolean, nullable=False, default=True)

    def __repr__(self) -> str:
        return f"<Organization(id={self.id}, name={self.name})>"

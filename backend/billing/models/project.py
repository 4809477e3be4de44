"""
Project model.

WHAT: A piece of consulting work a client has engaged a consultant for.

WHY: Payments and payouts may reference a project for context (an
upfront deposit, a milestone payout). Billing only needs to know who
the client and consultant are, to re-derive ownership at request time.
"""

from datetime import datetime
from enum import Enum
from typing import Optional
from sqlalchemy import (
    Column,
    Integer,
    String,
    DateTime,
    ForeignKey,
)
from sqlalchemy.orm import Mapped

from billing.models.base import Base, enum_column


class ProjectStatus(str, Enum):
    """
    Project lifecycle status as seen by billing.

    - OPEN: Posted, no consultant hired yet
    - IN_PROGRESS: Consultant hired, work ongoing
    - COMPLETED: Work delivered
    - CANCELLED: Terminated before completion
    """

    OPEN = "open"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class Project(Base):
    """Consulting project linking a client to a consultant."""

    __tablename__ = "projects"

    id: Mapped[int] = Column(Integer, primary_key=True, index=True)

    name: Mapped[str] = Column(String(255), nullable=False)

    status: Mapped[ProjectStatus] = enum_column(
        ProjectStatus,
        "projectstatus",
        nullable=False,
        default=ProjectStatus.OPEN,
        index=True,
    )

    org_id: Mapped[int] = Column(
        Integer,
        ForeignKey("organizations.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    client_id: Mapped[int] = Column(
        Integer,
        ForeignKey("users.id"),
        nullable=False,
        index=True,
        comment="Client who owns the project",
    )
    consultant_id: Mapped[Optional[int]] = Column(
        Integer,
        ForeignKey("users.id"),
        nullable=True,
        index=True,
        comment="Hired consultant",
    )

    created_at: Mapped[datetime] = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = Column(
        DateTime,
        nullable=False,
        default=datetime.utcnow,
        onupdate=datetime.utcnow,
    )

    def __repr__(self) -> str:
        return f"<Project(id={self.id}, name={self.name}, status={self.status})>"

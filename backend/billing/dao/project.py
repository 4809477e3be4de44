"""
Project and Proposal Data Access Objects.

WHAT: Read access to the projects and proposals a payment can be made
against.

WHY: Project and proposal CRUD live outside the billing service. Billing
only needs to load them and re-derive who the client and consultant are
at request time.
"""

from typing import List, Optional
from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession

from billing.dao.base import BaseDAO
from billing.models.project import Project, ProjectStatus
from billing.models.proposal import Proposal, ProposalStatus


class ProjectDAO(BaseDAO[Project]):
    """Data Access Object for Project model."""

    def __init__(self, session: AsyncSession):
        super().__init__(Project, session)

    async def get_for_client(self, client_id: int) -> List[Project]:
        result = await self.session.execute(
            select(Project)
            .where(Project.client_id == client_id)
            .order_by(Project.created_at.desc())
        )
        return list(result.scalars().all())

    async def count_active(
        self,
        client_id: Optional[int] = None,
        consultant_id: Optional[int] = None,
    ) -> int:
        """Count in-progress projects for a client or consultant."""
        query = select(func.count(Project.id)).where(Project.status == ProjectStatus.IN_PROGRESS)
        if client_id is not None:
            query = query.where(Project.client_id == client_id)
        if consultant_id is not None:
            query = query.where(Project.consultant_id == consultant_id)
        result = await self.session.execute(query)
        return result.scalar_one()

    async def count_clients_for_consultant(self, consultant_id: int) -> int:
        """Number of distinct clients a consultant has worked for."""
        result = await self.session.execute(
            select(func.count(func.distinct(Project.client_id))).where(
                Project.consultant_id == consultant_id
            )
        )
        return result.scalar_one()


class ProposalDAO(BaseDAO[Proposal]):
    """Data Access Object for Proposal model."""

    def __init__(self, session: AsyncSession):
        super().__init__(Proposal, session)

    async def get_accepted_for_project(self, project_id: int) -> Optional[Proposal]:
        """
        Get the accepted proposal for a project.

        WHY: When an invoice is raised for a project, the accepted proposal
        supplies the consultant and the agreed amount.
        """
        result = await self.session.execute(
            select(Proposal)
            .where(
                Proposal.project_id == project_id,
                Proposal.status == ProposalStatus.ACCEPTED,
            )
            .order_by(Proposal.created_at.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

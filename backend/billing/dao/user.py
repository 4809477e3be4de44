"""
User Data Access Object.

WHY: UserDAO provides database operations for User model, following
the DAO pattern for separation of concerns and testability.
"""

from typing import Optional
from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession

from billing.dao.base import BaseDAO
from billing.models.user import User, UserRole


class UserDAO(BaseDAO[User]):
    """
    Data Access Object for User model.

    WHY: Billing never manages accounts, it only re-reads them to check
    roles and find the parties of an invoice or payout.
    """

    def __init__(self, session: AsyncSession):
        super().__init__(User, session)

    async def get_by_email(self, email: str) -> Optional[User]:
        """
        Retrieve user by email address (case-insensitive).

        Example:
            >>> user = await user_dao.get_by_email("client@example.com")
        """
        result = await self.session.execute(
            select(User).where(func.lower(User.email) == email.lower())
        )
        return result.scalar_one_or_none()

    async def get_active(self, user_id: int) -> Optional[User]:
        """Get a user only if the account is active."""
        result = await self.session.execute(
            select(User).where(User.id == user_id, User.is_active.is_(True))
        )
        return result.scalar_one_or_none()

    async def get_with_role(self, user_id: int, role: UserRole) -> Optional[User]:
        """
        Get a user holding a specific role.

        WHY: A payout recipient must be a consultant, an invoice client
        must be a client. A user id of the wrong role is treated as not
        found.
        """
        result = await self.session.execute(
            select(User).where(User.id == user_id, User.role == role)
        )
        return result.scalar_one_or_none()

    async def get_admin_emails(self, org_id: int) -> list:
        """Email addresses of active admins, used for refund notices."""
        result = await self.session.execute(
            select(User.email).where(
                User.org_id == org_id,
                User.role == UserRole.ADMIN,
                User.is_active.is_(True),
            )
        )
        return list(result.scalars().all())

    async def count_by_role(self, org_id: int, role: UserRole) -> int:
        result = await self.session.execute(
            select(func.count(User.id)).where(User.org_id == org_id, User.role == role)
        )
        return result.scalar_one()

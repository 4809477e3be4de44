"""
Client and consultant profile DAOs.

WHAT: Lookups for the billing details cached on each party's profile.

WHY: The gateway customer id is created lazily the first time a client
pays by card and cached on ClientProfile with the default saved card.
Payouts read the consultant's Connect account, created on onboarding,
and bank details from ConsultantProfile.
"""

from typing import Optional
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from billing.dao.base import BaseDAO
from billing.models.profile import ClientProfile, ConsultantProfile


class ClientProfileDAO(BaseDAO[ClientProfile]):
    """Data Access Object for ClientProfile."""

    def __init__(self, session: AsyncSession):
        super().__init__(ClientProfile, session)

    async def get_by_user_id(self, user_id: int) -> Optional[ClientProfile]:
        result = await self.session.execute(
            select(ClientProfile).where(ClientProfile.user_id == user_id)
        )
        return result.scalar_one_or_none()

    async def get_or_create(self, user_id: int) -> ClientProfile:
        """
        Get the client's profile, creating an empty one on first use.

        WHY: Clients onboarded before billing existed have no profile row
        yet, and we still need somewhere to cache their customer id.
        """
        profile = await self.get_by_user_id(user_id)
        if profile is None:
            profile = await self.create(user_id=user_id)
        return profile

    async def set_stripe_customer(self, profile: ClientProfile, customer_id: str) -> ClientProfile:
        profile.stripe_customer_id = customer_id
        return await self.save(profile)

    async def set_default_payment_method(
        self, profile: ClientProfile, payment_method_id: Optional[str]
    ) -> ClientProfile:
        profile.default_payment_method_id = payment_method_id
        return await self.save(profile)


class ConsultantProfileDAO(BaseDAO[ConsultantProfile]):
    """Data Access Object for ConsultantProfile."""

    def __init__(self, session: AsyncSession):
        super().__init__(ConsultantProfile, session)

    async def get_by_user_id(self, user_id: int) -> Optional[ConsultantProfile]:
        result = await self.session.execute(
            select(ConsultantProfile).where(ConsultantProfile.user_id == user_id)
        )
        return result.scalar_one_or_none()

    async def get_or_create(self, user_id: int) -> ConsultantProfile:
        """Get the consultant's profile, creating an empty one on first use."""
        profile = await self.get_by_user_id(user_id)
        if profile is None:
            profile = await self.create(user_id=user_id)
        return profile

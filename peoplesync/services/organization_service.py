"""
SECURITY: All queries MUST include organization_id filter.
Failure to do so will result in data leakage between tenants.
"""
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from peoplesync.models.organization import Organization


class OrganizationService:
    """Service for managing organizations."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_by_pco_organization_id(self, pco_organization_id: str) -> Organization | None:
        """
        Get the organization linked to an upstream organization.

        Args:
            pco_organization_id: Upstream organization id

        Returns:
            Organization or None if not found
        """
        stmt = select(Organization).where(Organization.pco_organization_id == pco_organization_id)
        result = await self.db.execute(stmt)
        return result.scalar_one_or_none()

    async def create(self, name: str, pco_organization_id: str | None = None) -> Organization:
        """
        Create a new organization.

        Args:
            name: Display name
            pco_organization_id: Upstream organization id, if already known

        Returns:
            Newly created Organization
        """
        org = Organization(name=name, pco_organization_id=pco_organization_id)
        self.db.add(org)
        await self.db.commit()
        await self.db.refresh(org)
        return org

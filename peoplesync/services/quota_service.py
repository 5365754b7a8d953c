"""
SECURITY: All queries MUST include organization_id filter.
Failure to do so will result in data leakage between tenants.
"""
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from peoplesync.models.quota import OrgEmailUsage


class QuotaService:
    """Read access to an organization's send allowance."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_usage(self, organization_id: str) -> OrgEmailUsage | None:
        """
        Get the usage record for an organization.

        Args:
            organization_id: Organization UUID

        Returns:
            OrgEmailUsage or None if the organization has no allowance yet
        """
        stmt = select(OrgEmailUsage).where(OrgEmailUsage.organization_id == organization_id)
        result = await self.db.execute(stmt)
        return result.scalar_one_or_none()

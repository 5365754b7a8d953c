"""
Sync status model.

Written only after a full sync of a resource type completes without aborting.
"""
from datetime import datetime
from sqlalchemy import String, Integer, Boolean, DateTime, ForeignKey, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column
from peoplesync.models.base import Base, new_id


class SyncStatus(Base):
    __tablename__ = "pco_sync_status"
    __table_args__ = (
        UniqueConstraint("organization_id", "resource_type", name="uq_sync_status_org_resource"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    organization_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("organizations.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    resource_type: Mapped[str] = mapped_column(String(32), nullable=False)
    synced_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    pages_fetched: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    truncated: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    def __repr__(self):
        return f"<SyncStatus(org_id={self.organization_id}, type={self.resource_type}, synced_at={self.synced_at})>"

"""
Organization model.

Represents a tenant organization in the multi-tenant system.
"""
from sqlalchemy import String
from sqlalchemy.orm import Mapped, mapped_column, relationship
from peoplesync.models.base import Base, TimestampMixin, new_id


class Organization(Base, TimestampMixin):
    """
    Organization model representing a tenant in the system.

    Credentials, quotas and every mirrored row are isolated per organization.
    """
    __tablename__ = "organizations"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    pco_organization_id: Mapped[str | None] = mapped_column(String(64), nullable=True, unique=True)

    # Relationships
    pco_connection = relationship(
        "PcoConnection",
        back_populates="organization",
        uselist=False,
        cascade="all, delete-orphan",
        passive_deletes=True,
    )
    email_usage = relationship(
        "OrgEmailUsage",
        back_populates="organization",
        uselist=False,
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    def __repr__(self):
        return f"<Organization(id={self.id}, name={self.name}, pco_org={self.pco_organization_id})>"

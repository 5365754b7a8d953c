"""
Upstream connection model.

SECURITY: holds live OAuth credentials. At most one row per organization;
any failed validation deletes the row instead of leaving a half-valid token.
"""
from datetime import datetime
from sqlalchemy import String, Text, DateTime, ForeignKey
from sqlalchemy.orm import Mapped, mapped_column, relationship
from peoplesync.models.base import Base, TimestampMixin, new_id


class PcoConnection(Base, TimestampMixin):
    """OAuth credential for one organization's upstream account."""
    __tablename__ = "pco_connections"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    organization_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("organizations.id", ondelete="CASCADE"),
        unique=True,
        nullable=False,
        index=True
    )
    access_token: Mapped[str] = mapped_column(Text, nullable=False)
    refresh_token: Mapped[str] = mapped_column(Text, nullable=False)
    scope: Mapped[str | None] = mapped_column(String(255), nullable=True)
    last_refreshed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    pco_user_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    pco_organization_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    connected_by: Mapped[str | None] = mapped_column(String(36), nullable=True)

    organization = relationship("Organization", back_populates="pco_connection")

    def __repr__(self):
        return f"<PcoConnection(org_id={self.organization_id}, last_refreshed_at={self.last_refreshed_at})>"

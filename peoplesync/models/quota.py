"""
Send quota model.

Each organization has exactly one usage record. The eligibility pipeline only
reads it; the bulk dispatcher decrements it after a successful send.
"""
from sqlalchemy import String, ForeignKey, Integer
from sqlalchemy.orm import Mapped, mapped_column, relationship
from peoplesync.models.base import Base, TimestampMixin, new_id


class OrgEmailUsage(Base, TimestampMixin):
    """Organization send allowance for the current billing period."""
    __tablename__ = "org_email_usage"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    organization_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("organizations.id", ondelete="CASCADE"),
        unique=True,
        nullable=False,
        index=True
    )
    sends_remaining: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    sends_used: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    # Relationships
    organization = relationship("Organization", back_populates="email_usage")

    def __repr__(self):
        return f"<OrgEmailUsage(org_id={self.organization_id}, remaining={self.sends_remaining}, used={self.sends_used})>"

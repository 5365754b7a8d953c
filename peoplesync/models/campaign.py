"""
Email campaign, category and category-unsubscribe models.

SECURITY: All queries MUST include organization_id filter.
"""
import enum
from datetime import datetime
from sqlalchemy import String, Text, Integer, DateTime, ForeignKey, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column
from peoplesync.models.base import Base, TimestampMixin, new_id


class CampaignStatus(str, enum.Enum):
    DRAFT = "draft"
    SCHEDULED = "scheduled"
    SENDING = "sending"
    SENT = "sent"
    FAILED = "failed"


class EmailCategory(Base, TimestampMixin):
    """Audience category a recipient can unsubscribe from."""
    __tablename__ = "email_categories"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    organization_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("organizations.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)


class CategoryUnsubscribe(Base, TimestampMixin):
    __tablename__ = "email_category_unsubscribes"
    __table_args__ = (
        UniqueConstraint(
            "organization_id", "category_id", "email_address",
            name="uq_category_unsubscribes_org_category_address",
        ),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    organization_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    category_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("email_categories.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    email_address: Mapped[str] = mapped_column(String(320), nullable=False)


class EmailCampaign(Base, TimestampMixin):
    """A bulk email addressed to one list under one category."""
    __tablename__ = "emails"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    organization_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("organizations.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    subject: Mapped[str | None] = mapped_column(String(998), nullable=True)
    from_email: Mapped[str | None] = mapped_column(String(320), nullable=True)
    from_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    reply_to: Mapped[str | None] = mapped_column(String(320), nullable=True)
    list_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    category_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    scheduled_for: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default=CampaignStatus.DRAFT.value)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    recipient_count: Mapped[int | None] = mapped_column(Integer, nullable=True)

    def __repr__(self):
        return f"<EmailCampaign(id={self.id}, org_id={self.organization_id}, status={self.status})>"

"""
Webhook subscription model.

One row per (organization, event name): the subscription registered upstream
and the authenticity secret its deliveries are signed with.
"""
import uuid
from datetime import datetime, timezone
from sqlalchemy import Column, String, DateTime, Text, ForeignKey, UniqueConstraint
from peoplesync.models.base import Base


class PcoWebhook(Base):
    """Upstream webhook subscription and its signing secret."""
    __tablename__ = "pco_webhooks"
    __table_args__ = (
        UniqueConstraint("organization_id", "name", name="uq_pco_webhooks_org_name"),
    )

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    organization_id = Column(
        String(36),
        ForeignKey("organizations.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    name = Column(String(128), nullable=False)  # e.g. people.v2.events.email.updated
    webhook_id = Column(String(64), nullable=True)  # upstream subscription id
    authenticity_secret = Column(Text, nullable=False)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

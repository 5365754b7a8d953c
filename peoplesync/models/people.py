"""
Mirrored people, their email addresses and global email statuses.

SECURITY: All queries MUST include organization_id filter.
Failure to do so will result in data leakage between tenants.
"""
import enum
from sqlalchemy import String, UniqueConstraint, Index
from sqlalchemy.orm import Mapped, mapped_column
from peoplesync.models.base import Base, TimestampMixin, new_id


class EmailStatusValue(str, enum.Enum):
    """Global (organization-wide) subscription state of an address."""
    SUBSCRIBED = "subscribed"
    UNSUBSCRIBED = "unsubscribed"
    PCO_BLOCKED = "pco_blocked"
    BOUNCED = "bounced"
    CLEANED = "cleaned"


class Person(Base, TimestampMixin):
    """Local copy of an upstream person."""
    __tablename__ = "people"
    __table_args__ = (
        UniqueConstraint("organization_id", "pco_id", name="uq_people_org_pco_id"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    organization_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    pco_id: Mapped[str] = mapped_column(String(64), nullable=False)
    first_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    middle_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    last_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    nickname: Mapped[str | None] = mapped_column(String(255), nullable=True)
    given_name: Mapped[str | None] = mapped_column(String(255), nullable=True)

    def __repr__(self):
        return f"<Person(org_id={self.organization_id}, pco_id={self.pco_id})>"


class PersonEmail(Base, TimestampMixin):
    """
    Local copy of an upstream primary email address.

    ``id`` is the internal per-address record id handed to the dispatcher.
    """
    __tablename__ = "people_emails"
    __table_args__ = (
        UniqueConstraint("organization_id", "pco_email_id", name="uq_people_emails_org_pco_email_id"),
        Index("ix_people_emails_org_person", "organization_id", "pco_person_id"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    organization_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    pco_email_id: Mapped[str] = mapped_column(String(64), nullable=False)
    pco_person_id: Mapped[str] = mapped_column(String(64), nullable=False)
    email: Mapped[str] = mapped_column(String(320), nullable=False)

    def __repr__(self):
        return f"<PersonEmail(org_id={self.organization_id}, pco_email_id={self.pco_email_id})>"


class EmailStatus(Base, TimestampMixin):
    """Organization-wide opt-in/opt-out state for one address."""
    __tablename__ = "people_email_statuses"
    __table_args__ = (
        UniqueConstraint("organization_id", "email_address", name="uq_email_statuses_org_address"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    organization_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    email_address: Mapped[str] = mapped_column(String(320), nullable=False)
    status: Mapped[str] = mapped_column(String(32), nullable=False, default=EmailStatusValue.SUBSCRIBED.value)

    def __repr__(self):
        return f"<EmailStatus(org_id={self.organization_id}, address={self.email_address}, status={self.status})>"

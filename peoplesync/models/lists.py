"""
Mirrored upstream lists, list categories and list membership.

SECURITY: All queries MUST include organization_id filter.
"""
from datetime import datetime
from sqlalchemy import String, Integer, DateTime, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column
from peoplesync.models.base import Base, TimestampMixin, new_id


class PcoListCategory(Base, TimestampMixin):
    __tablename__ = "pco_list_categories"
    __table_args__ = (
        UniqueConstraint("organization_id", "pco_id", name="uq_list_categories_org_pco_id"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    organization_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    pco_id: Mapped[str] = mapped_column(String(64), nullable=False)
    pco_name: Mapped[str | None] = mapped_column(String(255), nullable=True)


class PcoList(Base, TimestampMixin):
    """Local copy of an upstream list (the audience of a campaign)."""
    __tablename__ = "pco_lists"
    __table_args__ = (
        UniqueConstraint("organization_id", "pco_list_id", name="uq_pco_lists_org_pco_list_id"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    organization_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    pco_list_id: Mapped[str] = mapped_column(String(64), nullable=False)
    pco_list_description: Mapped[str | None] = mapped_column(String(1024), nullable=True)
    pco_last_refreshed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    pco_total_people: Mapped[int | None] = mapped_column(Integer, nullable=True)
    # Upstream category id, not a local FK: categories and lists sync independently
    pco_list_category_id: Mapped[str | None] = mapped_column(String(64), nullable=True)

    def __repr__(self):
        return f"<PcoList(org_id={self.organization_id}, pco_list_id={self.pco_list_id})>"


class PcoListMember(Base, TimestampMixin):
    """Membership of an upstream person in an upstream list."""
    __tablename__ = "pco_list_members"
    __table_args__ = (
        UniqueConstraint(
            "organization_id", "pco_list_id", "pco_person_id",
            name="uq_list_members_org_list_person",
        ),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    organization_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    pco_list_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    pco_person_id: Mapped[str] = mapped_column(String(64), nullable=False)

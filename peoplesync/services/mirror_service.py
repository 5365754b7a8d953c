"""
Mirror table writes.

Upsert and delete-by-key are first-class here: every write to a mirror table
goes through INSERT ... ON CONFLICT keyed on (organization_id, upstream id),
so the webhook path and the full-sync path can run concurrently and
redundantly without producing duplicates.

SECURITY: All queries MUST include organization_id filter.
Failure to do so will result in data leakage between tenants.
"""
from typing import Any, Iterable, Sequence

from sqlalchemy import delete, func, select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from peoplesync.errors import PersistenceError
from peoplesync.models.base import new_id
from peoplesync.models.lists import PcoList, PcoListCategory, PcoListMember
from peoplesync.models.people import EmailStatus, EmailStatusValue, Person, PersonEmail
from peoplesync.models.sync_status import SyncStatus


def _insert_for(session: AsyncSession, model):
    dialect = session.get_bind().dialect.name
    if dialect == "postgresql":
        return postgresql.insert(model)
    if dialect == "sqlite":
        return sqlite.insert(model)
    raise PersistenceError(f"Upsert not supported on dialect {dialect}")


class MirrorService:
    """Idempotent writes for people, emails, statuses, lists and list members."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def _upsert(
        self,
        model,
        values: dict[str, Any],
        conflict_columns: Sequence[str],
        update_columns: Iterable[str] | None = None,
    ) -> None:
        """
        Insert ``values`` or merge them into the row matching ``conflict_columns``.

        With ``update_columns=None`` every non-key column is merged; an empty
        iterable turns the statement into insert-or-ignore.
        """
        values = {"id": new_id(), **values}
        stmt = _insert_for(self.db, model).values(**values)
        if update_columns is None:
            update_columns = [c for c in values if c not in conflict_columns and c != "id"]
        update_columns = list(update_columns)
        if update_columns:
            set_ = {c: stmt.excluded[c] for c in update_columns}
            if hasattr(model, "updated_at"):
                set_["updated_at"] = func.now()
            stmt = stmt.on_conflict_do_update(index_elements=list(conflict_columns), set_=set_)
        else:
            stmt = stmt.on_conflict_do_nothing(index_elements=list(conflict_columns))
        await self._execute(stmt)

    async def _execute(self, stmt):
        try:
            return await self.db.execute(stmt)
        except SQLAlchemyError as exc:
            await self.db.rollback()
            raise PersistenceError(str(exc)) from exc

    async def commit(self) -> None:
        try:
            await self.db.commit()
        except SQLAlchemyError as exc:
            await self.db.rollback()
            raise PersistenceError(str(exc)) from exc

    # ------------------------------------------------------------------
    # People and emails
    # ------------------------------------------------------------------

    async def upsert_person(self, organization_id: str, pco_id: str, attributes: dict) -> None:
        await self._upsert(
            Person,
            {
                "organization_id": organization_id,
                "pco_id": pco_id,
                "first_name": attributes.get("first_name"),
                "middle_name": attributes.get("middle_name"),
                "last_name": attributes.get("last_name"),
                "nickname": attributes.get("nickname"),
                "given_name": attributes.get("given_name"),
            },
            conflict_columns=("organization_id", "pco_id"),
        )

    async def delete_person(self, organization_id: str, pco_id: str) -> int:
        result = await self._execute(
            delete(Person).where(
                Person.organization_id == organization_id,
                Person.pco_id == pco_id,
            )
        )
        return result.rowcount or 0

    async def upsert_email(
        self,
        organization_id: str,
        pco_email_id: str,
        pco_person_id: str,
        address: str,
    ) -> None:
        await self._upsert(
            PersonEmail,
            {
                "organization_id": organization_id,
                "pco_email_id": pco_email_id,
                "pco_person_id": pco_person_id,
                "email": address,
            },
            conflict_columns=("organization_id", "pco_email_id"),
        )

    async def update_email(
        self,
        organization_id: str,
        pco_email_id: str,
        pco_person_id: str,
        address: str,
    ) -> int:
        """Update an existing email row by key. Returns the number of rows touched."""
        result = await self._execute(
            update(PersonEmail)
            .where(
                PersonEmail.organization_id == organization_id,
                PersonEmail.pco_email_id == pco_email_id,
            )
            .values(email=address, pco_person_id=pco_person_id, updated_at=func.now())
        )
        return result.rowcount or 0

    async def delete_email(self, organization_id: str, pco_email_id: str) -> int:
        result = await self._execute(
            delete(PersonEmail).where(
                PersonEmail.organization_id == organization_id,
                PersonEmail.pco_email_id == pco_email_id,
            )
        )
        return result.rowcount or 0

    async def record_email_status(
        self,
        organization_id: str,
        address: str,
        status: EmailStatusValue = EmailStatusValue.SUBSCRIBED,
    ) -> None:
        """Insert a global status only if the address has none yet."""
        await self._upsert(
            EmailStatus,
            {
                "organization_id": organization_id,
                "email_address": address,
                "status": status.value,
            },
            conflict_columns=("organization_id", "email_address"),
            update_columns=(),
        )

    # ------------------------------------------------------------------
    # Lists
    # ------------------------------------------------------------------

    async def upsert_category(self, organization_id: str, pco_id: str, name: str | None) -> None:
        await self._upsert(
            PcoListCategory,
            {"organization_id": organization_id, "pco_id": pco_id, "pco_name": name},
            conflict_columns=("organization_id", "pco_id"),
        )

    async def upsert_list(
        self,
        organization_id: str,
        pco_list_id: str,
        description: str | None,
        refreshed_at,
        total_people: int | None,
        category_id: str | None,
    ) -> None:
        await self._upsert(
            PcoList,
            {
                "organization_id": organization_id,
                "pco_list_id": pco_list_id,
                "pco_list_description": description,
                "pco_last_refreshed_at": refreshed_at,
                "pco_total_people": total_people,
                "pco_list_category_id": category_id,
            },
            conflict_columns=("organization_id", "pco_list_id"),
        )

    async def delete_list(self, organization_id: str, pco_list_id: str) -> int:
        await self._execute(
            delete(PcoListMember).where(
                PcoListMember.organization_id == organization_id,
                PcoListMember.pco_list_id == pco_list_id,
            )
        )
        result = await self._execute(
            delete(PcoList).where(
                PcoList.organization_id == organization_id,
                PcoList.pco_list_id == pco_list_id,
            )
        )
        return result.rowcount or 0

    async def add_list_member(self, organization_id: str, pco_list_id: str, pco_person_id: str) -> None:
        await self._upsert(
            PcoListMember,
            {
                "organization_id": organization_id,
                "pco_list_id": pco_list_id,
                "pco_person_id": pco_person_id,
            },
            conflict_columns=("organization_id", "pco_list_id", "pco_person_id"),
            update_columns=(),
        )

    async def remove_list_member(self, organization_id: str, pco_list_id: str, pco_person_id: str) -> int:
        result = await self._execute(
            delete(PcoListMember).where(
                PcoListMember.organization_id == organization_id,
                PcoListMember.pco_list_id == pco_list_id,
                PcoListMember.pco_person_id == pco_person_id,
            )
        )
        return result.rowcount or 0

    # ------------------------------------------------------------------
    # Stale cleanup after a complete full sync
    # ------------------------------------------------------------------

    async def _delete_unseen(self, model, key_column, organization_id: str, seen: set[str]) -> int:
        rows = await self._execute(
            select(key_column).where(model.organization_id == organization_id)
        )
        stale = [key for key in rows.scalars().all() if key not in seen]
        removed = 0
        # Chunked to stay under driver bind-parameter limits
        for start in range(0, len(stale), 500):
            chunk = stale[start:start + 500]
            result = await self._execute(
                delete(model).where(model.organization_id == organization_id, key_column.in_(chunk))
            )
            removed += result.rowcount or 0
        return removed

    async def delete_stale_list_members(self, organization_id: str, pco_list_id: str, seen_people: set[str]) -> int:
        """Drop members of one list that the latest walk of that list did not return."""
        rows = await self._execute(
            select(PcoListMember.pco_person_id).where(
                PcoListMember.organization_id == organization_id,
                PcoListMember.pco_list_id == pco_list_id,
            )
        )
        stale = [key for key in rows.scalars().all() if key not in seen_people]
        removed = 0
        for start in range(0, len(stale), 500):
            result = await self._execute(
                delete(PcoListMember).where(
                    PcoListMember.organization_id == organization_id,
                    PcoListMember.pco_list_id == pco_list_id,
                    PcoListMember.pco_person_id.in_(stale[start:start + 500]),
                )
            )
            removed += result.rowcount or 0
        return removed

    async def delete_stale_people(self, organization_id: str, seen_people: set[str], seen_emails: set[str]) -> dict:
        return {
            "emails": await self._delete_unseen(PersonEmail, PersonEmail.pco_email_id, organization_id, seen_emails),
            "people": await self._delete_unseen(Person, Person.pco_id, organization_id, seen_people),
        }

    async def delete_stale_lists(self, organization_id: str, seen_categories: set[str], seen_lists: set[str]) -> dict:
        return {
            "categories": await self._delete_unseen(
                PcoListCategory, PcoListCategory.pco_id, organization_id, seen_categories
            ) if seen_categories else 0,
            "list_members": await self._delete_unseen(
                PcoListMember, PcoListMember.pco_list_id, organization_id, seen_lists
            ),
            "lists": await self._delete_unseen(PcoList, PcoList.pco_list_id, organization_id, seen_lists),
        }

    # ------------------------------------------------------------------
    # Sync status
    # ------------------------------------------------------------------

    async def record_sync_status(
        self,
        organization_id: str,
        resource_type: str,
        synced_at,
        pages_fetched: int,
        truncated: bool,
    ) -> None:
        await self._upsert(
            SyncStatus,
            {
                "organization_id": organization_id,
                "resource_type": resource_type,
                "synced_at": synced_at,
                "pages_fetched": pages_fetched,
                "truncated": truncated,
            },
            conflict_columns=("organization_id", "resource_type"),
        )

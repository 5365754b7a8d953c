"""
Full sync of upstream collections into the mirror tables.

SECURITY: All queries MUST include organization_id filter.
Failure to do so will result in data leakage between tenants.

A run walks the upstream cursor (``links.next``) page by page and upserts
every record as it arrives. There is no transaction around the run: each
upsert is committed on its own, so an aborted run keeps what it wrote and a
rerun simply converges. The walk stops when upstream stops returning a next
link or when the page ceiling is hit, whichever comes first.
"""
import enum
from contextlib import aclosing
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, AsyncIterator, Awaitable, Callable

from sqlalchemy.ext.asyncio import AsyncSession

from peoplesync.clock import parse_timestamp, utcnow
from peoplesync.config import settings
from peoplesync.logging_config import get_logger
from peoplesync.routes.metrics import track_sync_page, track_sync_run
from peoplesync.services.mirror_service import MirrorService
from peoplesync.services.pco_client import PcoClient
from peoplesync.services.token_service import TokenService


PEOPLE_PATH = "/people/v2/people"
LIST_CATEGORIES_PATH = "/people/v2/list_categories"
LISTS_PATH = "/people/v2/lists"
LIST_RESULTS_PATH = "/people/v2/lists/{list_id}/list_results"


class ResourceType(str, enum.Enum):
    PEOPLE = "people"
    LISTS = "lists"


class ErrorPolicy:
    """
    Decides what happens when a single record cannot be transformed.

    The default skips malformed records and lets the run continue. Transport
    and persistence failures never reach the policy; they always abort.
    """

    skippable: tuple[type[BaseException], ...] = (KeyError, TypeError, ValueError, AttributeError)

    def should_skip(self, error: BaseException) -> bool:
        return isinstance(error, self.skippable)


class AbortOnErrorPolicy(ErrorPolicy):
    """Any malformed record aborts the run."""

    skippable = ()


@dataclass
class SyncResult:
    organization_id: str
    resource_type: str
    counts: dict[str, int] = field(default_factory=dict)
    removed: dict[str, int] = field(default_factory=dict)
    pages_fetched: int = 0
    skipped: int = 0
    truncated: bool = False
    synced_at: datetime | None = None

    def add(self, kind: str, n: int = 1) -> None:
        self.counts[kind] = self.counts.get(kind, 0) + n


# ----------------------------------------------------------------------
# Record transforms
# ----------------------------------------------------------------------

@dataclass
class PersonRecord:
    pco_id: str
    attributes: dict
    emails: list[tuple[str, str]]


@dataclass
class ListRecord:
    pco_list_id: str
    description: str | None
    refreshed_at: datetime | None
    total_people: int | None
    category_id: str | None


Included = dict[tuple[str, str], dict]


def _related_ids(resource: dict, name: str) -> list[str]:
    data = ((resource.get("relationships") or {}).get(name) or {}).get("data")
    if data is None:
        return []
    if isinstance(data, dict):
        data = [data]
    return [str(item["id"]) for item in data]


def to_person(resource: dict, included: Included) -> PersonRecord:
    emails = []
    for email_id in _related_ids(resource, "emails"):
        email = included.get(("Email", email_id))
        if email is None:
            continue
        attributes = email["attributes"]
        if attributes.get("primary") and not attributes.get("blocked"):
            emails.append((email_id, attributes["address"]))
    return PersonRecord(pco_id=str(resource["id"]), attributes=resource["attributes"], emails=emails)


def to_category(resource: dict, included: Included) -> tuple[str, str | None]:
    return str(resource["id"]), resource["attributes"].get("name")


def to_list(resource: dict, included: Included) -> ListRecord:
    attributes = resource["attributes"]
    category_ids = _related_ids(resource, "category")
    total = attributes.get("total_people")
    return ListRecord(
        pco_list_id=str(resource["id"]),
        description=attributes.get("name_or_description"),
        refreshed_at=parse_timestamp(attributes.get("refreshed_at")),
        total_people=int(total) if total is not None else None,
        category_id=category_ids[0] if category_ids else None,
    )


def to_list_member(resource: dict, included: Included) -> str:
    person_ids = _related_ids(resource, "person")
    if not person_ids:
        raise KeyError("list_result without person relationship")
    return person_ids[0]


# ----------------------------------------------------------------------
# Pagination
# ----------------------------------------------------------------------

class Paginator:
    """
    Walks one upstream cursor.

    ``pages()`` yields at most ``max_pages`` pages. After the walk,
    ``truncated`` is True only if upstream still had a next link when the
    ceiling stopped it.
    """

    def __init__(
        self,
        client: PcoClient,
        access_token: str,
        path: str,
        params: dict | None = None,
        max_pages: int | None = None,
        label: str = "",
        log=None,
    ):
        self.client = client
        self.access_token = access_token
        self.path = path
        self.params = params
        self.max_pages = settings.SYNC_MAX_PAGES if max_pages is None else max_pages
        self.label = label or path
        self.log = log or get_logger(component="sync")
        self.pages_fetched = 0
        self.truncated = False

    async def pages(self) -> AsyncIterator[dict]:
        url: str | None = self.path
        params = self.params
        while url and self.pages_fetched < self.max_pages:
            page = await self.client.get_json(url, self.access_token, params=params)
            self.pages_fetched += 1
            records = len(page.get("data") or [])
            self.log.debug("sync_page_fetched", cursor=self.label, page=self.pages_fetched, records=records)
            track_sync_page(self.label, records)
            yield page
            url = (page.get("links") or {}).get("next")
            # The next link already carries the query string
            params = None
        self.truncated = bool(url)

    async def records(
        self, transform: Callable[[dict, Included], Any]
    ) -> AsyncIterator[tuple[Any, BaseException | None]]:
        """
        Yield ``(record, None)`` for every transformed record, or
        ``(raw_resource, error)`` when the transform failed.
        """
        async for page in self.pages():
            included = {
                (item.get("type"), str(item.get("id"))): item
                for item in page.get("included") or []
                if isinstance(item, dict)
            }
            for resource in page.get("data") or []:
                try:
                    record = transform(resource, included)
                except Exception as exc:
                    yield resource, exc
                    continue
                yield record, None


class SyncService:
    """Runs a full sync of one resource type for one organization."""

    def __init__(
        self,
        db: AsyncSession,
        client: PcoClient,
        token_service: TokenService | None = None,
        max_pages: int | None = None,
        page_size: int | None = None,
        policy: ErrorPolicy | None = None,
    ):
        self.db = db
        self.client = client
        self.mirror = MirrorService(db)
        self.tokens = token_service or TokenService(db, client)
        self.max_pages = settings.SYNC_MAX_PAGES if max_pages is None else max_pages
        self.page_size = page_size or settings.SYNC_PAGE_SIZE
        self.policy = policy or ErrorPolicy()

    async def sync_resource(
        self,
        organization_id: str,
        resource_type: ResourceType | str,
        max_pages: int | None = None,
    ) -> SyncResult:
        """
        Mirror one upstream collection.

        Args:
            organization_id: Organization to sync
            resource_type: ``people`` or ``lists``
            max_pages: Per-run override of the page ceiling

        Returns:
            SyncResult with per-kind counts, pages fetched and truncation flag

        Raises:
            NotConnected / ReconnectRequired: no usable credential
            UpstreamTransportError: a page request failed; the run is aborted
            PersistenceError: a mirror write failed; the run is aborted
        """
        resource_type = ResourceType(resource_type)
        ceiling = self.max_pages if max_pages is None else max_pages
        log = get_logger(organization_id=organization_id, component="sync", resource_type=resource_type.value)
        result = SyncResult(organization_id=organization_id, resource_type=resource_type.value)

        log.info("sync_started", max_pages=ceiling)
        try:
            token = await self.tokens.ensure_valid_token(organization_id)
            if resource_type is ResourceType.PEOPLE:
                await self._sync_people(organization_id, token.access_token, ceiling, result, log)
            else:
                await self._sync_lists(organization_id, token.access_token, ceiling, result, log)
        except Exception as exc:
            log.error(
                "sync_aborted",
                error_code=getattr(exc, "code", type(exc).__name__),
                error=str(exc),
                pages_fetched=result.pages_fetched,
                counts=result.counts,
            )
            track_sync_run(resource_type.value, "aborted")
            raise

        result.synced_at = utcnow()
        await self.mirror.record_sync_status(
            organization_id,
            resource_type.value,
            synced_at=result.synced_at,
            pages_fetched=result.pages_fetched,
            truncated=result.truncated,
        )
        await self.mirror.commit()

        if result.truncated:
            log.warning("sync_truncated", pages_fetched=result.pages_fetched, max_pages=ceiling)
        log.info(
            "sync_completed",
            pages_fetched=result.pages_fetched,
            counts=result.counts,
            skipped=result.skipped,
            removed=result.removed,
        )
        track_sync_run(resource_type.value, "truncated" if result.truncated else "completed")
        return result

    async def _drain(
        self,
        paginator: Paginator,
        transform: Callable[[dict, Included], Any],
        apply: Callable[[Any], Awaitable[None]],
        result: SyncResult,
        log,
    ) -> None:
        """Apply every record of one cursor, committing each upsert."""
        try:
            async with aclosing(paginator.records(transform)) as stream:
                async for record, error in stream:
                    if error is not None:
                        if not self.policy.should_skip(error):
                            raise error
                        result.skipped += 1
                        log.warning(
                            "sync_record_skipped",
                            cursor=paginator.label,
                            resource_id=record.get("id") if isinstance(record, dict) else None,
                            error=repr(error),
                        )
                        continue
                    await apply(record)
                    await self.mirror.commit()
        finally:
            result.pages_fetched += paginator.pages_fetched
        result.truncated = result.truncated or paginator.truncated

    def _paginator(self, access_token: str, path: str, ceiling: int, label: str, log, **params) -> Paginator:
        return Paginator(
            self.client,
            access_token,
            path,
            params={"per_page": self.page_size, **params},
            max_pages=ceiling,
            label=label,
            log=log,
        )

    # ------------------------------------------------------------------
    # people
    # ------------------------------------------------------------------

    async def _sync_people(self, organization_id: str, access_token: str, ceiling: int, result: SyncResult, log) -> None:
        seen_people: set[str] = set()
        seen_emails: set[str] = set()

        async def apply(person: PersonRecord) -> None:
            await self.mirror.upsert_person(organization_id, person.pco_id, person.attributes)
            seen_people.add(person.pco_id)
            result.add("people")
            for email_id, address in person.emails:
                await self.mirror.upsert_email(organization_id, email_id, person.pco_id, address)
                await self.mirror.record_email_status(organization_id, address)
                seen_emails.add(email_id)
                result.add("emails")

        paginator = self._paginator(
            access_token,
            PEOPLE_PATH,
            ceiling,
            label="people",
            log=log,
            include="emails",
            **{"where[status]": "active"},
        )
        await self._drain(paginator, to_person, apply, result, log)

        # An empty walk never clears the mirror
        if not result.truncated and not result.skipped and seen_people:
            result.removed = await self.mirror.delete_stale_people(organization_id, seen_people, seen_emails)
            await self.mirror.commit()

    # ------------------------------------------------------------------
    # lists, categories and nested list members
    # ------------------------------------------------------------------

    async def _sync_lists(self, organization_id: str, access_token: str, ceiling: int, result: SyncResult, log) -> None:
        seen_categories: set[str] = set()
        # Insertion-ordered pco_list_id -> total_people reported by the list
        seen_lists: dict[str, int | None] = {}

        async def apply_category(category: tuple[str, str | None]) -> None:
            pco_id, name = category
            await self.mirror.upsert_category(organization_id, pco_id, name)
            seen_categories.add(pco_id)
            result.add("categories")

        async def apply_list(record: ListRecord) -> None:
            await self.mirror.upsert_list(
                organization_id,
                record.pco_list_id,
                description=record.description,
                refreshed_at=record.refreshed_at,
                total_people=record.total_people,
                category_id=record.category_id,
            )
            seen_lists[record.pco_list_id] = record.total_people
            result.add("lists")

        await self._drain(
            self._paginator(access_token, LIST_CATEGORIES_PATH, ceiling, label="list_categories", log=log),
            to_category,
            apply_category,
            result,
            log,
        )
        await self._drain(
            self._paginator(access_token, LISTS_PATH, ceiling, label="lists", log=log, include="category"),
            to_list,
            apply_list,
            result,
            log,
        )

        removed_members = 0
        for pco_list_id, total_people in seen_lists.items():
            members: set[str] = set()

            async def apply_member(pco_person_id: str) -> None:
                await self.mirror.add_list_member(organization_id, pco_list_id, pco_person_id)
                members.add(pco_person_id)
                result.add("list_members")

            skipped_before = result.skipped
            paginator = self._paginator(
                access_token,
                LIST_RESULTS_PATH.format(list_id=pco_list_id),
                ceiling,
                label="list_results",
                log=log,
            )
            await self._drain(paginator, to_list_member, apply_member, result, log)
            # A list only loses every member when upstream reports it empty
            complete = not paginator.truncated and result.skipped == skipped_before
            if complete and (members or total_people == 0):
                removed_members += await self.mirror.delete_stale_list_members(organization_id, pco_list_id, members)
                await self.mirror.commit()
            log.debug("sync_list_members_walked", pco_list_id=pco_list_id, members=len(members))

        if not result.truncated and not result.skipped and seen_lists:
            result.removed = await self.mirror.delete_stale_lists(organization_id, seen_categories, set(seen_lists))
            result.removed["list_members"] += removed_members
            await self.mirror.commit()
        else:
            result.removed = {"list_members": removed_members}

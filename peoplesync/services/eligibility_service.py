"""
Recipient eligibility for an email campaign.

SECURITY: All queries MUST include organization_id filter.
Failure to do so will result in data leakage between tenants.

Turns the membership of the campaign's list into a deduplicated set of
deliverable addresses. Stages run in order and each one can only narrow the
set. Nothing here writes: the quota is read, never decremented.
"""
import enum
import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Iterable, Iterator, Sequence

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from peoplesync.clock import as_utc, utcnow
from peoplesync.config import settings
from peoplesync.errors import InvalidOwnership, MissingPrecondition, QuotaExceeded
from peoplesync.logging_config import get_logger
from peoplesync.models.campaign import CampaignStatus, CategoryUnsubscribe, EmailCampaign, EmailCategory
from peoplesync.models.lists import PcoList, PcoListMember
from peoplesync.models.people import EmailStatus, EmailStatusValue, Person, PersonEmail
from peoplesync.routes.metrics import track_eligibility
from peoplesync.services.quota_service import QuotaService


NO_REPLY_PATTERN = re.compile(r"no[-_]?reply", re.IGNORECASE)

NO_RECIPIENTS = "no_recipients"


class Outcome(str, enum.Enum):
    READY = "ready"
    DEFERRED = "deferred"
    SKIPPED = "skipped"


@dataclass
class EligibilityResult:
    outcome: Outcome
    reason: str | None = None
    message: str | None = None
    # internal email record id -> {"email", "firstName", "lastName"}
    recipients: dict[str, dict] = field(default_factory=dict)
    stage_counts: dict[str, int] = field(default_factory=dict)

    @property
    def recipient_count(self) -> int:
        return len(self.recipients)

    def to_dict(self) -> dict:
        return {
            "outcome": self.outcome.value,
            "reason": self.reason,
            "message": self.message,
            "recipient_count": self.recipient_count,
            "recipients": self.recipients,
        }


@dataclass
class Candidate:
    record_id: str
    email: str
    first_name: str | None
    last_name: str | None

    def as_recipient(self) -> dict:
        return {"email": self.email, "firstName": self.first_name, "lastName": self.last_name}


def is_no_reply(address: str | None) -> bool:
    return bool(address) and NO_REPLY_PATTERN.search(address) is not None


def chunked(items: Sequence, size: int) -> Iterator[Sequence]:
    for start in range(0, len(items), size):
        yield items[start:start + size]


class EligibilityService:
    """Computes the recipients of one campaign."""

    def __init__(
        self,
        db: AsyncSession,
        batch_size: int | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.db = db
        self.batch_size = batch_size or settings.ELIGIBILITY_BATCH_SIZE
        self.clock = clock
        self.quota = QuotaService(db)

    async def get_campaign(self, organization_id: str, email_id: str) -> EmailCampaign | None:
        stmt = select(EmailCampaign).where(
            EmailCampaign.id == email_id,
            EmailCampaign.organization_id == organization_id,
        )
        result = await self.db.execute(stmt)
        return result.scalar_one_or_none()

    async def compute_eligible_recipients(self, campaign: EmailCampaign) -> EligibilityResult:
        """
        Run every stage for ``campaign``.

        Precondition, ownership and quota failures come back as a ``skipped``
        result carrying the error code as ``reason``; a campaign scheduled in
        the future comes back ``deferred``.
        """
        log = get_logger(organization_id=campaign.organization_id, component="eligibility", email_id=campaign.id)
        stage_counts: dict[str, int] = {}
        try:
            result = await self._run(campaign, stage_counts, log)
        except (MissingPrecondition, InvalidOwnership, QuotaExceeded) as exc:
            log.warning("eligibility_skipped", reason=exc.code, error=exc.message, stages=stage_counts)
            track_eligibility(Outcome.SKIPPED.value, exc.code)
            return EligibilityResult(
                outcome=Outcome.SKIPPED,
                reason=exc.code,
                message=exc.message,
                stage_counts=stage_counts,
            )

        result.stage_counts = stage_counts
        track_eligibility(result.outcome.value, result.reason, result.recipient_count)
        return result

    async def _run(self, campaign: EmailCampaign, stage_counts: dict[str, int], log) -> EligibilityResult:
        organization_id = campaign.organization_id

        pco_list = await self._check_preconditions(campaign)
        scheduled_for = as_utc(campaign.scheduled_for)
        if scheduled_for is not None and scheduled_for > self.clock():
            log.info("eligibility_deferred", scheduled_for=scheduled_for.isoformat())
            return EligibilityResult(
                outcome=Outcome.DEFERRED,
                message=f"Scheduled for {scheduled_for.isoformat()}",
            )

        person_ids = await self._list_members(organization_id, pco_list.pco_list_id)
        stage_counts["members"] = len(person_ids)

        candidates = await self._resolve_emails(organization_id, person_ids)
        stage_counts["emails"] = len(candidates)

        subscribed = await self._globally_subscribed(organization_id, [c.email for c in candidates])
        candidates = [c for c in candidates if c.email.lower() in subscribed]
        stage_counts["subscribed"] = len(candidates)

        unsubscribed = await self._category_unsubscribes(
            organization_id, campaign.category_id, [c.email for c in candidates]
        )
        candidates = [c for c in candidates if c.email.lower() not in unsubscribed]
        stage_counts["category"] = len(candidates)

        candidates = [c for c in candidates if not is_no_reply(c.email)]
        stage_counts["pattern"] = len(candidates)

        candidates = list(self._dedupe(candidates))
        stage_counts["deduped"] = len(candidates)

        if not candidates:
            log.warning("eligibility_skipped", reason=NO_RECIPIENTS, stages=stage_counts)
            return EligibilityResult(
                outcome=Outcome.SKIPPED,
                reason=NO_RECIPIENTS,
                message="No eligible recipients",
            )

        await self._check_quota(organization_id, len(candidates))

        log.info("eligibility_ready", recipients=len(candidates), stages=stage_counts)
        return EligibilityResult(
            outcome=Outcome.READY,
            recipients={c.record_id: c.as_recipient() for c in candidates},
        )

    # ------------------------------------------------------------------
    # Stage 1: preconditions and ownership
    # ------------------------------------------------------------------

    async def _check_preconditions(self, campaign: EmailCampaign) -> PcoList:
        organization_id = campaign.organization_id

        if campaign.status in (CampaignStatus.SENDING.value, CampaignStatus.SENT.value):
            raise MissingPrecondition(f"Email is already {campaign.status}", organization_id=organization_id)
        if not campaign.list_id:
            raise MissingPrecondition("No list selected", organization_id=organization_id)
        if not campaign.category_id:
            raise MissingPrecondition("No category selected", organization_id=organization_id)
        if not campaign.subject:
            raise MissingPrecondition("No subject", organization_id=organization_id)
        if not campaign.from_email or not campaign.from_name:
            raise MissingPrecondition("No from address", organization_id=organization_id)
        if is_no_reply(campaign.from_email):
            raise MissingPrecondition("From address cannot be a no-reply address", organization_id=organization_id)
        if is_no_reply(campaign.reply_to):
            raise MissingPrecondition("Reply-to address cannot be a no-reply address", organization_id=organization_id)

        pco_list = await self.db.get(PcoList, campaign.list_id)
        if pco_list is None:
            raise MissingPrecondition("List not found", organization_id=organization_id)
        if pco_list.organization_id != organization_id:
            raise InvalidOwnership("List belongs to another organization", organization_id=organization_id)

        category = await self.db.get(EmailCategory, campaign.category_id)
        if category is None:
            raise MissingPrecondition("Category not found", organization_id=organization_id)
        if category.organization_id != organization_id:
            raise InvalidOwnership("Category belongs to another organization", organization_id=organization_id)

        return pco_list

    # ------------------------------------------------------------------
    # Stages 2-5: lookups
    # ------------------------------------------------------------------

    async def _list_members(self, organization_id: str, pco_list_id: str) -> list[str]:
        stmt = (
            select(PcoListMember.pco_person_id)
            .where(
                PcoListMember.organization_id == organization_id,
                PcoListMember.pco_list_id == pco_list_id,
            )
            .order_by(PcoListMember.pco_person_id)
        )
        result = await self.db.execute(stmt)
        return list(result.scalars().all())

    async def _resolve_emails(self, organization_id: str, person_ids: list[str]) -> list[Candidate]:
        candidates: list[Candidate] = []
        for batch in chunked(person_ids, self.batch_size):
            stmt = (
                select(PersonEmail.id, PersonEmail.email, Person.first_name, Person.last_name)
                .outerjoin(
                    Person,
                    (Person.organization_id == PersonEmail.organization_id)
                    & (Person.pco_id == PersonEmail.pco_person_id),
                )
                .where(
                    PersonEmail.organization_id == organization_id,
                    PersonEmail.pco_person_id.in_(batch),
                )
                .order_by(PersonEmail.pco_person_id, PersonEmail.pco_email_id)
            )
            result = await self.db.execute(stmt)
            candidates.extend(
                Candidate(record_id=row.id, email=row.email, first_name=row.first_name, last_name=row.last_name)
                for row in result
            )
        return candidates

    async def _globally_subscribed(self, organization_id: str, addresses: Iterable[str]) -> set[str]:
        """Addresses whose every status row, compared case-insensitively, is subscribed."""
        lowered = sorted({a.lower() for a in addresses})
        subscribed: set[str] = set()
        blocked: set[str] = set()
        for batch in chunked(lowered, self.batch_size):
            stmt = select(EmailStatus.email_address, EmailStatus.status).where(
                EmailStatus.organization_id == organization_id,
                func.lower(EmailStatus.email_address).in_(batch),
            )
            result = await self.db.execute(stmt)
            for address, status in result:
                if (status or "").lower() == EmailStatusValue.SUBSCRIBED.value:
                    subscribed.add(address.lower())
                else:
                    blocked.add(address.lower())
        return subscribed - blocked

    async def _category_unsubscribes(
        self, organization_id: str, category_id: str, addresses: Iterable[str]
    ) -> set[str]:
        lowered = sorted({a.lower() for a in addresses})
        unsubscribed: set[str] = set()
        for batch in chunked(lowered, self.batch_size):
            stmt = select(CategoryUnsubscribe.email_address).where(
                CategoryUnsubscribe.organization_id == organization_id,
                CategoryUnsubscribe.category_id == category_id,
                func.lower(CategoryUnsubscribe.email_address).in_(batch),
            )
            result = await self.db.execute(stmt)
            unsubscribed.update(address.lower() for address in result.scalars().all())
        return unsubscribed

    # ------------------------------------------------------------------
    # Stages 7-8
    # ------------------------------------------------------------------

    @staticmethod
    def _dedupe(candidates: Iterable[Candidate]) -> Iterator[Candidate]:
        seen: set[str] = set()
        for candidate in candidates:
            key = candidate.email.lower()
            if key in seen:
                continue
            seen.add(key)
            yield candidate

    async def _check_quota(self, organization_id: str, required: int) -> None:
        usage = await self.quota.get_usage(organization_id)
        if usage is None:
            raise MissingPrecondition("No email usage record for organization", organization_id=organization_id)
        if required > usage.sends_remaining:
            raise QuotaExceeded(required, usage.sends_remaining, organization_id=organization_id)

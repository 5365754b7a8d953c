"""
Recipient eligibility: ordered narrowing stages and the quota check.
"""
from datetime import timedelta

import pytest
import pytest_asyncio
from sqlalchemy import select

from conftest import add_usage
from peoplesync.errors import QuotaExceeded
from peoplesync.models import (
    CampaignStatus,
    CategoryUnsubscribe,
    EmailCampaign,
    EmailCategory,
    EmailStatus,
    PcoList,
    PersonEmail,
)
from peoplesync.services.eligibility_service import (
    NO_RECIPIENTS,
    EligibilityService,
    Outcome,
    is_no_reply,
)
from peoplesync.services.mirror_service import MirrorService


STAGES = ["members", "emails", "subscribed", "category", "pattern", "deduped"]
PCO_LIST_ID = "77"


async def seed_list(db, organization_id, pco_list_id=PCO_LIST_ID) -> str:
    """Mirror one list and return its internal id."""
    mirror = MirrorService(db)
    await mirror.upsert_list(organization_id, pco_list_id, "Volunteers", None, None, None)
    await mirror.commit()
    return await db.scalar(
        select(PcoList.id).where(PcoList.organization_id == organization_id, PcoList.pco_list_id == pco_list_id)
    )


async def add_member(db, organization_id, index, address=None, status="subscribed", first_name=None):
    """Add person ``index`` to the list, with an optional primary email and global status."""
    mirror = MirrorService(db)
    person_id = f"{index:03d}"
    await mirror.upsert_person(
        organization_id, person_id, {"first_name": first_name or f"First{index}", "last_name": f"Last{index}"}
    )
    await mirror.add_list_member(organization_id, PCO_LIST_ID, person_id)
    if address is not None:
        await mirror.upsert_email(organization_id, f"e{person_id}", person_id, address)
        if status is not None:
            db.add(EmailStatus(organization_id=organization_id, email_address=address, status=status))
    await mirror.commit()


async def add_category_unsubscribe(db, organization_id, category_id, address):
    db.add(CategoryUnsubscribe(organization_id=organization_id, category_id=category_id, email_address=address))
    await db.commit()


async def make_campaign(db, organization_id, list_id, category_id, **overrides) -> EmailCampaign:
    values = {
        "organization_id": organization_id,
        "subject": "Serve Sunday",
        "from_email": "pastor@gracechurch.org",
        "from_name": "Grace Church",
        "reply_to": "office@gracechurch.org",
        "list_id": list_id,
        "category_id": category_id,
        "status": CampaignStatus.SCHEDULED.value,
    }
    values.update(overrides)
    campaign = EmailCampaign(**values)
    db.add(campaign)
    await db.commit()
    return campaign


@pytest_asyncio.fixture
async def category(db, org) -> EmailCategory:
    category = EmailCategory(organization_id=org.id, name="Announcements")
    db.add(category)
    await db.commit()
    return category


@pytest_asyncio.fixture
async def list_id(db, org) -> str:
    return await seed_list(db, org.id)


def eligibility(db, frozen_now, batch_size=3):
    return EligibilityService(db, batch_size=batch_size, clock=lambda: frozen_now)


async def seed_five_recipients(db, organization_id):
    for i in range(1, 6):
        await add_member(db, organization_id, i, f"member{i}@example.org")


# =============================================================================
# Narrowing
# =============================================================================

async def test_ten_members_narrow_to_five(db, org, category, list_id, frozen_now):
    await seed_five_recipients(db, org.id)
    await add_member(db, org.id, 6)
    await add_member(db, org.id, 7)
    await add_member(db, org.id, 8, "gone@example.org", status="unsubscribed")
    await add_member(db, org.id, 9, "quiet@example.org")
    await add_category_unsubscribe(db, org.id, category.id, "quiet@example.org")
    await add_member(db, org.id, 10, "noreply@example.org")
    await add_usage(db, org.id, sends_remaining=100)
    campaign = await make_campaign(db, org.id, list_id, category.id)

    result = await eligibility(db, frozen_now).compute_eligible_recipients(campaign)

    assert result.outcome is Outcome.READY
    assert result.recipient_count == 5
    assert sorted(r["email"] for r in result.recipients.values()) == [
        f"member{i}@example.org" for i in range(1, 6)
    ]
    assert result.stage_counts == {
        "members": 10,
        "emails": 8,
        "subscribed": 7,
        "category": 6,
        "pattern": 5,
        "deduped": 5,
    }


async def test_stage_counts_never_grow(db, org, category, list_id, frozen_now):
    await seed_five_recipients(db, org.id)
    await add_member(db, org.id, 6, "MEMBER1@example.org", status=None)
    await add_member(db, org.id, 7, "no_reply@example.org")
    await add_usage(db, org.id, sends_remaining=100)
    campaign = await make_campaign(db, org.id, list_id, category.id)

    result = await eligibility(db, frozen_now).compute_eligible_recipients(campaign)

    counts = [result.stage_counts[stage] for stage in STAGES]
    assert counts == sorted(counts, reverse=True)
    assert result.recipient_count == counts[-1] == 5


async def test_recipients_are_keyed_by_email_record(db, org, category, list_id, frozen_now):
    await add_member(db, org.id, 1, "sam@example.org", first_name="Sam")
    await add_usage(db, org.id, sends_remaining=1)
    campaign = await make_campaign(db, org.id, list_id, category.id)

    result = await eligibility(db, frozen_now).compute_eligible_recipients(campaign)

    record_id = await db.scalar(select(PersonEmail.id).where(PersonEmail.pco_email_id == "e001"))
    assert result.recipients == {
        record_id: {"email": "sam@example.org", "firstName": "Sam", "lastName": "Last1"}
    }


async def test_duplicate_addresses_keep_first_record(db, org, category, list_id, frozen_now):
    await add_member(db, org.id, 1, "Sam@Example.org", first_name="Sam")
    await add_member(db, org.id, 2, "sam@example.org", status=None, first_name="Samantha")
    await add_usage(db, org.id, sends_remaining=10)
    campaign = await make_campaign(db, org.id, list_id, category.id)

    result = await eligibility(db, frozen_now).compute_eligible_recipients(campaign)

    assert result.stage_counts["subscribed"] == 2
    assert result.stage_counts["deduped"] == 1
    [recipient] = result.recipients.values()
    assert recipient["email"] == "Sam@Example.org"
    assert recipient["firstName"] == "Sam"


async def test_status_match_is_case_insensitive(db, org, category, list_id, frozen_now):
    await add_member(db, org.id, 1, "pat@example.org", status="Unsubscribed")
    await add_member(db, org.id, 2, "lee@example.org", status="SUBSCRIBED")
    await add_usage(db, org.id, sends_remaining=10)
    campaign = await make_campaign(db, org.id, list_id, category.id)

    result = await eligibility(db, frozen_now).compute_eligible_recipients(campaign)

    assert [r["email"] for r in result.recipients.values()] == ["lee@example.org"]


@pytest.mark.parametrize("member_status, variant_status", [
    ("unsubscribed", "subscribed"),
    ("subscribed", "unsubscribed"),
])
async def test_any_unsubscribed_case_variant_excludes_address(
    db, org, category, list_id, frozen_now, member_status, variant_status
):
    await add_member(db, org.id, 1, "jane@example.org", status=member_status)
    db.add(EmailStatus(organization_id=org.id, email_address="Jane@Example.org", status=variant_status))
    await db.commit()
    await add_member(db, org.id, 2, "lee@example.org")
    await add_usage(db, org.id, sends_remaining=10)
    campaign = await make_campaign(db, org.id, list_id, category.id)

    result = await eligibility(db, frozen_now).compute_eligible_recipients(campaign)

    assert [r["email"] for r in result.recipients.values()] == ["lee@example.org"]
    assert result.stage_counts["subscribed"] == 1


async def test_category_unsubscribe_matches_every_case_variant(db, org, category, list_id, frozen_now):
    await add_member(db, org.id, 1, "quiet@example.org")
    await add_member(db, org.id, 2, "QUIET@example.org")
    await add_member(db, org.id, 3, "lee@example.org")
    await add_category_unsubscribe(db, org.id, category.id, "Quiet@Example.org")
    await add_category_unsubscribe(db, org.id, category.id, "quiet@EXAMPLE.org")
    await add_usage(db, org.id, sends_remaining=10)
    campaign = await make_campaign(db, org.id, list_id, category.id)

    result = await eligibility(db, frozen_now).compute_eligible_recipients(campaign)

    assert [r["email"] for r in result.recipients.values()] == ["lee@example.org"]
    assert result.stage_counts["subscribed"] == 3
    assert result.stage_counts["category"] == 1


async def test_address_without_status_is_not_subscribed(db, org, category, list_id, frozen_now):
    await add_member(db, org.id, 1, "unknown@example.org", status=None)
    await add_usage(db, org.id, sends_remaining=10)
    campaign = await make_campaign(db, org.id, list_id, category.id)

    result = await eligibility(db, frozen_now).compute_eligible_recipients(campaign)

    assert result.outcome is Outcome.SKIPPED
    assert result.reason == NO_RECIPIENTS


async def test_other_organizations_data_is_invisible(db, org, other_org, category, list_id, frozen_now):
    await seed_list(db, other_org.id)
    await add_member(db, other_org.id, 1, "outsider@example.org")
    await add_member(db, org.id, 2, "insider@example.org")
    await add_usage(db, org.id, sends_remaining=10)
    campaign = await make_campaign(db, org.id, list_id, category.id)

    result = await eligibility(db, frozen_now).compute_eligible_recipients(campaign)

    assert [r["email"] for r in result.recipients.values()] == ["insider@example.org"]


def test_no_reply_variants():
    assert is_no_reply("noreply@example.org")
    assert is_no_reply("No-Reply@example.org")
    assert is_no_reply("alerts.no_reply@example.org")
    assert not is_no_reply("nora.reply@example.org")
    assert not is_no_reply(None)


# =============================================================================
# Quota
# =============================================================================

async def test_quota_equal_to_count_is_ready(db, org, category, list_id, frozen_now):
    await seed_five_recipients(db, org.id)
    await add_usage(db, org.id, sends_remaining=5)
    campaign = await make_campaign(db, org.id, list_id, category.id)

    result = await eligibility(db, frozen_now).compute_eligible_recipients(campaign)

    assert result.outcome is Outcome.READY
    assert result.recipient_count == 5


async def test_quota_one_short_is_exceeded(db, org, category, list_id, frozen_now):
    await seed_five_recipients(db, org.id)
    await add_usage(db, org.id, sends_remaining=4)
    campaign = await make_campaign(db, org.id, list_id, category.id)

    result = await eligibility(db, frozen_now).compute_eligible_recipients(campaign)

    assert result.outcome is Outcome.SKIPPED
    assert result.reason == QuotaExceeded.code
    assert result.message == "Email limit exceeded. Required: 5, Remaining: 4"
    assert result.recipients == {}


async def test_missing_usage_record_skips(db, org, category, list_id, frozen_now):
    await seed_five_recipients(db, org.id)
    campaign = await make_campaign(db, org.id, list_id, category.id)

    result = await eligibility(db, frozen_now).compute_eligible_recipients(campaign)

    assert result.outcome is Outcome.SKIPPED
    assert result.reason == "missing_precondition"


# =============================================================================
# Preconditions
# =============================================================================

async def test_future_schedule_is_deferred(db, org, category, list_id, frozen_now):
    await seed_five_recipients(db, org.id)
    campaign = await make_campaign(
        db, org.id, list_id, category.id, scheduled_for=frozen_now + timedelta(hours=1)
    )

    result = await eligibility(db, frozen_now).compute_eligible_recipients(campaign)

    assert result.outcome is Outcome.DEFERRED
    assert result.recipients == {}
    assert result.stage_counts == {}


async def test_past_schedule_runs(db, org, category, list_id, frozen_now):
    await seed_five_recipients(db, org.id)
    await add_usage(db, org.id, sends_remaining=5)
    campaign = await make_campaign(
        db, org.id, list_id, category.id, scheduled_for=frozen_now - timedelta(minutes=1)
    )

    result = await eligibility(db, frozen_now).compute_eligible_recipients(campaign)

    assert result.outcome is Outcome.READY


async def test_list_from_another_organization_is_rejected(db, org, other_org, category, frozen_now):
    foreign_list_id = await seed_list(db, other_org.id, pco_list_id="88")
    await add_usage(db, org.id, sends_remaining=5)
    campaign = await make_campaign(db, org.id, foreign_list_id, category.id)

    result = await eligibility(db, frozen_now).compute_eligible_recipients(campaign)

    assert result.outcome is Outcome.SKIPPED
    assert result.reason == "invalid_ownership"


async def test_category_from_another_organization_is_rejected(db, org, other_org, list_id, frozen_now):
    foreign = EmailCategory(organization_id=other_org.id, name="Theirs")
    db.add(foreign)
    await db.commit()
    campaign = await make_campaign(db, org.id, list_id, foreign.id)

    result = await eligibility(db, frozen_now).compute_eligible_recipients(campaign)

    assert result.reason == "invalid_ownership"


async def test_no_reply_sender_is_rejected(db, org, category, list_id, frozen_now):
    campaign = await make_campaign(db, org.id, list_id, category.id, from_email="no-reply@gracechurch.org")

    result = await eligibility(db, frozen_now).compute_eligible_recipients(campaign)

    assert result.outcome is Outcome.SKIPPED
    assert result.reason == "missing_precondition"
    assert "no-reply" in result.message


async def test_no_reply_reply_to_is_rejected(db, org, category, list_id, frozen_now):
    campaign = await make_campaign(db, org.id, list_id, category.id, reply_to="noreply@gracechurch.org")

    result = await eligibility(db, frozen_now).compute_eligible_recipients(campaign)

    assert result.reason == "missing_precondition"


async def test_already_sent_campaign_is_skipped(db, org, category, list_id, frozen_now):
    await seed_five_recipients(db, org.id)
    await add_usage(db, org.id, sends_remaining=5)
    campaign = await make_campaign(db, org.id, list_id, category.id, status=CampaignStatus.SENT.value)

    result = await eligibility(db, frozen_now).compute_eligible_recipients(campaign)

    assert result.outcome is Outcome.SKIPPED
    assert result.reason == "missing_precondition"


async def test_missing_subject_is_skipped(db, org, category, list_id, frozen_now):
    campaign = await make_campaign(db, org.id, list_id, category.id, subject=None)

    result = await eligibility(db, frozen_now).compute_eligible_recipients(campaign)

    assert result.message == "No subject"


async def test_empty_audience_is_no_recipients(db, org, category, list_id, frozen_now):
    await add_usage(db, org.id, sends_remaining=5)
    campaign = await make_campaign(db, org.id, list_id, category.id)

    result = await eligibility(db, frozen_now).compute_eligible_recipients(campaign)

    assert result.outcome is Outcome.SKIPPED
    assert result.reason == NO_RECIPIENTS
    assert result.stage_counts["members"] == 0


async def test_get_campaign_is_scoped(db, org, other_org, category, list_id, frozen_now):
    campaign = await make_campaign(db, org.id, list_id, category.id)
    service = eligibility(db, frozen_now)

    assert (await service.get_campaign(org.id, campaign.id)).id == campaign.id
    assert await service.get_campaign(other_org.id, campaign.id) is None

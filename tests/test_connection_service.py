"""
Connect flow: permission check, subscription registration and rollback.
"""
from datetime import timedelta

import httpx
import pytest
from sqlalchemy import func, select

from conftest import add_connection, add_webhook_secret, body, me_response
from peoplesync.errors import AlreadyConnected, InsufficientPermission, UpstreamTransportError
from peoplesync.models import Organization, PcoConnection, PcoWebhook
from peoplesync.services.connection_service import ConnectionService
from peoplesync.services.pco_client import SUBSCRIPTIONS_PATH
from peoplesync.services.webhook_service import SUBSCRIBED_EVENTS


TOKEN_DATA = {"access_token": "new-access", "refresh_token": "new-refresh", "scope": "people"}


def organization_response(pco_organization_id="3003", name="New Life"):
    return httpx.Response(200, json={
        "data": {"type": "Organization", "id": pco_organization_id, "attributes": {"name": name}}
    })


class Subscriptions:
    """Upstream subscription endpoint that can fail on the nth create."""

    def __init__(self, fail_on: int | None = None):
        self.fail_on = fail_on
        self.created = 0

    def __call__(self, request: httpx.Request) -> httpx.Response:
        if self.fail_on is not None and self.created + 1 == self.fail_on:
            return httpx.Response(500, text="subscription store unavailable")
        self.created += 1
        return httpx.Response(201, json={
            "data": {
                "type": "Subscription",
                "id": f"sub-{self.created}",
                "attributes": {"authenticity_secret": f"secret-{self.created}"},
            }
        })


def script_upstream(upstream, permission="Manager", pco_organization_id="3003", fail_on=None):
    upstream.add("GET", "/people/v2/me", me_response(permission, person_id="501"))
    upstream.add("GET", "/people/v2/people/501/organization", organization_response(pco_organization_id))
    subscriptions = Subscriptions(fail_on)
    upstream.add("POST", SUBSCRIPTIONS_PATH, subscriptions)
    return subscriptions


async def count(db, model, **filters):
    stmt = select(func.count()).select_from(model)
    for column, value in filters.items():
        stmt = stmt.where(getattr(model, column) == value)
    return (await db.execute(stmt)).scalar_one()


async def test_connect_stores_credential_and_registers_every_event(db, pco_client, upstream):
    script_upstream(upstream)

    result = await ConnectionService(db, pco_client).connect(TOKEN_DATA, connected_by="user-1")

    organization_id = result.organization.id
    assert result.subscriptions == len(SUBSCRIBED_EVENTS) == 12
    assert result.organization.pco_organization_id == "3003"
    assert result.organization.name == "New Life"

    stored = (await db.execute(
        select(PcoConnection.access_token, PcoConnection.refresh_token, PcoConnection.connected_by)
        .where(PcoConnection.organization_id == organization_id)
    )).one()
    assert tuple(stored) == ("new-access", "new-refresh", "user-1")

    names = (await db.execute(
        select(PcoWebhook.name).where(PcoWebhook.organization_id == organization_id)
    )).scalars().all()
    assert sorted(names) == sorted(SUBSCRIBED_EVENTS)

    first = body(upstream.calls_to("POST", SUBSCRIPTIONS_PATH)[0])["data"]["attributes"]
    assert first["url"].endswith(f"/webhook/{organization_id}")
    assert first["active"] is True


async def test_connect_reuses_existing_organization(db, org, pco_client, upstream):
    script_upstream(upstream, pco_organization_id=org.pco_organization_id)

    result = await ConnectionService(db, pco_client).connect(TOKEN_DATA)

    assert result.organization.id == org.id
    assert await count(db, Organization) == 1


async def test_non_manager_cannot_connect(db, pco_client, upstream):
    script_upstream(upstream, permission="Editor")

    with pytest.raises(InsufficientPermission):
        await ConnectionService(db, pco_client).connect(TOKEN_DATA)

    assert await count(db, Organization) == 0
    assert upstream.calls_to("POST", SUBSCRIPTIONS_PATH) == []


async def test_second_connect_is_rejected(db, org, pco_client, upstream):
    await add_connection(db, org.id)
    script_upstream(upstream, pco_organization_id=org.pco_organization_id)

    with pytest.raises(AlreadyConnected):
        await ConnectionService(db, pco_client).connect(TOKEN_DATA)

    assert upstream.calls_to("POST", SUBSCRIPTIONS_PATH) == []


async def test_failed_subscription_rolls_everything_back(db, pco_client, upstream):
    script_upstream(upstream, fail_on=5)

    with pytest.raises(UpstreamTransportError) as exc_info:
        await ConnectionService(db, pco_client).connect(TOKEN_DATA)

    assert exc_info.value.status_code == 500
    deleted = [c.url.path for c in upstream.calls if c.method == "DELETE"]
    assert deleted == [f"{SUBSCRIPTIONS_PATH}/sub-{i}" for i in range(1, 5)]
    assert await count(db, Organization) == 0
    assert await count(db, PcoConnection) == 0
    assert await count(db, PcoWebhook) == 0


async def test_failed_connect_keeps_preexisting_organization(db, org, pco_client, upstream):
    # The rollback expires loaded instances
    organization_id = org.id
    script_upstream(upstream, pco_organization_id=org.pco_organization_id, fail_on=1)

    with pytest.raises(UpstreamTransportError):
        await ConnectionService(db, pco_client).connect(TOKEN_DATA)

    assert await count(db, Organization, id=organization_id) == 1
    assert await count(db, PcoConnection) == 0


async def test_disconnect_removes_subscriptions_and_credential(db, org, pco_client, upstream):
    await add_connection(db, org.id)
    await add_webhook_secret(db, org.id, "people.v2.events.email.created", "s1")
    await add_webhook_secret(db, org.id, "people.v2.events.list.created", "s2")
    upstream.add("DELETE", f"{SUBSCRIPTIONS_PATH}/sub-email", httpx.Response(204))
    upstream.add("DELETE", f"{SUBSCRIPTIONS_PATH}/sub-list", httpx.Response(204))

    removed = await ConnectionService(db, pco_client).disconnect(org.id)

    assert removed == 2
    assert len([c for c in upstream.calls if c.method == "DELETE"]) == 2
    assert upstream.calls[0].headers["Authorization"] == "Bearer access-1"
    assert await count(db, PcoConnection, organization_id=org.id) == 0
    assert await count(db, PcoWebhook, organization_id=org.id) == 0


async def test_disconnect_with_dead_credential_still_clears_local_rows(db, org, pco_client, upstream):
    await add_connection(db, org.id, refreshed_ago=timedelta(hours=3))
    await add_webhook_secret(db, org.id, "people.v2.events.email.created", "s1")
    upstream.add("POST", "/oauth/token", httpx.Response(401, json={"error": "invalid_grant"}))

    removed = await ConnectionService(db, pco_client).disconnect(org.id)

    assert removed == 1
    assert [c for c in upstream.calls if c.method == "DELETE"] == []
    assert await count(db, PcoWebhook, organization_id=org.id) == 0

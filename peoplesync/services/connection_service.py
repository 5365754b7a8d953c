"""
Connecting and disconnecting an organization's upstream account.

SECURITY: All queries MUST include organization_id filter.
Failure to do so will result in data leakage between tenants.
"""
from dataclasses import dataclass

from sqlalchemy import delete, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from peoplesync.clock import utcnow
from peoplesync.config import settings
from peoplesync.errors import (
    AlreadyConnected,
    InsufficientPermission,
    PersistenceError,
    ReconnectRequired,
    UpstreamTransportError,
)
from peoplesync.logging_config import get_logger
from peoplesync.models.connection import PcoConnection
from peoplesync.models.organization import Organization
from peoplesync.models.webhook import PcoWebhook
from peoplesync.services.organization_service import OrganizationService
from peoplesync.services.pco_client import PcoClient
from peoplesync.services.token_service import TokenService
from peoplesync.services.webhook_service import SUBSCRIBED_EVENTS


def webhook_callback_url(organization_id: str) -> str:
    return f"{settings.webhook_base_url}/webhook/{organization_id}"


@dataclass
class ConnectResult:
    organization: Organization
    connection: PcoConnection
    pco_user_id: str
    subscriptions: int


class ConnectionService:
    """Stores upstream credentials and manages webhook subscriptions."""

    def __init__(self, db: AsyncSession, client: PcoClient):
        self.db = db
        self.client = client
        self.organizations = OrganizationService(db)

    async def connect(self, token_data: dict, connected_by: str | None = None) -> ConnectResult:
        """
        Finish the OAuth connect flow with a freshly exchanged token pair.

        Args:
            token_data: Token endpoint response (access_token, refresh_token, scope)
            connected_by: Local user id that started the flow, if known

        Returns:
            ConnectResult with the organization and stored connection

        Raises:
            InsufficientPermission: upstream user is not a manager
            AlreadyConnected: organization already has a connection
            UpstreamTransportError: an upstream call failed; nothing is kept
            PersistenceError: local writes failed; nothing is kept
        """
        access_token = token_data["access_token"]
        me = await self.client.get_me(access_token)
        person = me["data"]
        permission = (person.get("attributes") or {}).get("people_permissions")
        if permission != settings.PCO_REQUIRED_PERMISSION:
            raise InsufficientPermission(
                f"People permission '{permission}' is not '{settings.PCO_REQUIRED_PERMISSION}'"
            )

        pco_org = (await self.client.get_organization(access_token, person["id"]))["data"]
        pco_organization_id = str(pco_org["id"])
        existing_org = await self.organizations.get_by_pco_organization_id(pco_organization_id)
        if existing_org is not None:
            existing = await self.db.execute(
                select(PcoConnection.id).where(PcoConnection.organization_id == existing_org.id)
            )
            if existing.scalar_one_or_none() is not None:
                raise AlreadyConnected(
                    "Organization is already connected", organization_id=existing_org.id
                )

        created_org = existing_org is None
        org = existing_org or await self.organizations.create(
            name=(pco_org.get("attributes") or {}).get("name") or pco_organization_id,
            pco_organization_id=pco_organization_id,
        )
        organization_id = org.id
        log = get_logger(organization_id=organization_id, component="connect", pco_user_id=str(person["id"]))

        connection = PcoConnection(
            organization_id=organization_id,
            access_token=access_token,
            refresh_token=token_data["refresh_token"],
            scope=token_data.get("scope"),
            last_refreshed_at=utcnow(),
            pco_user_id=str(person["id"]),
            pco_organization_id=pco_organization_id,
            connected_by=connected_by,
        )
        self.db.add(connection)

        registered: list[str] = []
        try:
            await self.db.flush()
            callback_url = webhook_callback_url(organization_id)
            for event_name in SUBSCRIBED_EVENTS:
                subscription = await self.client.create_subscription(access_token, event_name, callback_url)
                registered.append(str(subscription["id"]))
                self.db.add(
                    PcoWebhook(
                        organization_id=organization_id,
                        name=event_name,
                        webhook_id=str(subscription["id"]),
                        authenticity_secret=subscription["attributes"]["authenticity_secret"],
                    )
                )
            await self.db.commit()
        except (UpstreamTransportError, SQLAlchemyError, KeyError) as exc:
            log.error("connect_failed", error=repr(exc), registered=len(registered))
            await self.db.rollback()
            await self._remove_subscriptions(access_token, registered, log)
            if created_org:
                await self._delete_organization(organization_id)
            if isinstance(exc, UpstreamTransportError):
                exc.organization_id = organization_id
                raise
            raise PersistenceError(f"Failed to store connection: {exc!r}", organization_id=organization_id) from exc

        log.info("connect_completed", subscriptions=len(registered))
        return ConnectResult(
            organization=org,
            connection=connection,
            pco_user_id=str(person["id"]),
            subscriptions=len(registered),
        )

    async def disconnect(self, organization_id: str) -> int:
        """
        Remove the connection and every webhook subscription.

        Upstream subscription deletes are best effort; local rows are always
        removed. Returns the number of subscriptions removed locally.
        """
        log = get_logger(organization_id=organization_id, component="disconnect")

        try:
            token = await TokenService(self.db, self.client).ensure_valid_token(organization_id)
            access_token = token.access_token
        except ReconnectRequired:
            # Credential already gone; upstream subscriptions stay behind
            access_token = None
        except UpstreamTransportError as exc:
            log.warning("disconnect_token_unavailable", error=exc.message)
            access_token = None

        result = await self.db.execute(
            select(PcoWebhook.webhook_id).where(PcoWebhook.organization_id == organization_id)
        )
        subscription_ids = [sid for sid in result.scalars().all() if sid]
        if access_token:
            await self._remove_subscriptions(access_token, subscription_ids, log)

        try:
            removed = await self.db.execute(delete(PcoWebhook).where(PcoWebhook.organization_id == organization_id))
            await self.db.execute(delete(PcoConnection).where(PcoConnection.organization_id == organization_id))
            await self.db.commit()
        except SQLAlchemyError as exc:
            await self.db.rollback()
            raise PersistenceError(str(exc), organization_id=organization_id) from exc

        log.info("disconnect_completed", subscriptions=removed.rowcount or 0)
        return removed.rowcount or 0

    async def _remove_subscriptions(self, access_token: str, subscription_ids: list[str], log) -> None:
        for subscription_id in subscription_ids:
            try:
                await self.client.delete_subscription(access_token, subscription_id)
            except UpstreamTransportError as exc:
                log.warning("subscription_delete_failed", subscription_id=subscription_id, error=exc.message)

    async def _delete_organization(self, organization_id: str) -> None:
        try:
            await self.db.execute(delete(Organization).where(Organization.id == organization_id))
            await self.db.commit()
        except SQLAlchemyError as exc:
            await self.db.rollback()
            raise PersistenceError(str(exc), organization_id=organization_id) from exc

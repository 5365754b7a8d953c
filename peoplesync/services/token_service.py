"""
Token lifecycle for upstream OAuth credentials.

SECURITY: All queries MUST include organization_id filter.
Failure to do so will result in data leakage between tenants.

Upstream refresh tokens are single-use and rotate on every exchange. Two
callers refreshing concurrently would invalidate each other's tokens, so a
refresh is only attempted when the stored credential is older than the guard
window. Within one window every caller reuses the stored access token.

The guard is time-based, not a lock: two refreshes that both start before
the first persisted ``last_refreshed_at`` becomes visible can still race.
"""
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable

from sqlalchemy import delete, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from peoplesync.clock import as_utc, utcnow
from peoplesync.config import settings
from peoplesync.errors import NotConnected, PersistenceError, ReconnectRequired, UpstreamTransportError
from peoplesync.logging_config import get_logger
from peoplesync.models.connection import PcoConnection
from peoplesync.routes.metrics import track_token_refresh
from peoplesync.services.pco_client import PcoClient


RECENTLY_REFRESHED = "Token recently refreshed, skipping."
REFRESHED = "Token refreshed successfully."

# Token endpoint answers that mean the refresh token itself is dead
REJECTED_REFRESH_STATUSES = (400, 401)


@dataclass
class ValidToken:
    access_token: str
    last_refreshed_at: datetime
    refreshed: bool
    message: str


class TokenService:
    """Produces a valid upstream access token for an organization."""

    def __init__(
        self,
        db: AsyncSession,
        client: PcoClient,
        guard_window: timedelta | None = None,
        required_permission: str | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.db = db
        self.client = client
        self.guard_window = guard_window or timedelta(minutes=settings.TOKEN_REFRESH_GUARD_MINUTES)
        self.required_permission = required_permission or settings.PCO_REQUIRED_PERMISSION
        self.clock = clock

    async def get_connection(self, organization_id: str) -> PcoConnection | None:
        stmt = select(PcoConnection).where(PcoConnection.organization_id == organization_id)
        result = await self.db.execute(stmt)
        return result.scalar_one_or_none()

    async def delete_connection(self, organization_id: str) -> None:
        """Remove the credential; the organization must reconnect."""
        try:
            await self.db.execute(
                delete(PcoConnection).where(PcoConnection.organization_id == organization_id)
            )
            await self.db.commit()
        except SQLAlchemyError as exc:
            await self.db.rollback()
            raise PersistenceError(str(exc), organization_id=organization_id) from exc

    async def ensure_valid_token(self, organization_id: str) -> ValidToken:
        """
        Return an access token that upstream should accept.

        Raises:
            NotConnected: no credential on file
            ReconnectRequired: the credential was rejected and has been deleted
            UpstreamTransportError: the refresh failed for another reason (5xx, 429, network)
            PersistenceError: the rotated tokens could not be stored
        """
        log = get_logger(organization_id=organization_id, component="token")

        connection = await self.get_connection(organization_id)
        if connection is None:
            raise NotConnected("No upstream connection on file", organization_id=organization_id)

        now = self.clock()
        last_refreshed_at = as_utc(connection.last_refreshed_at)
        if last_refreshed_at is not None and now - last_refreshed_at < self.guard_window:
            log.info(
                "token_refresh_skipped",
                age_seconds=int((now - last_refreshed_at).total_seconds()),
            )
            track_token_refresh("skipped")
            return ValidToken(
                access_token=connection.access_token,
                last_refreshed_at=last_refreshed_at,
                refreshed=False,
                message=RECENTLY_REFRESHED,
            )

        try:
            token_data = await self.client.refresh_access_token(connection.refresh_token)
        except UpstreamTransportError as exc:
            if exc.status_code in REJECTED_REFRESH_STATUSES:
                # A rejected refresh token cannot be retried
                log.warning("token_refresh_rejected", status_code=exc.status_code)
                track_token_refresh("reconnect_required")
                await self.delete_connection(organization_id)
                raise ReconnectRequired(
                    "Failed to refresh token, connection removed.",
                    organization_id=organization_id,
                ) from exc
            log.error("token_refresh_transport_error", status_code=exc.status_code, error=exc.message)
            track_token_refresh("transport_error")
            exc.organization_id = organization_id
            raise

        access_token = token_data["access_token"]
        refresh_token = token_data.get("refresh_token") or connection.refresh_token
        try:
            await self.db.execute(
                update(PcoConnection)
                .where(PcoConnection.organization_id == organization_id)
                .values(
                    access_token=access_token,
                    refresh_token=refresh_token,
                    last_refreshed_at=now,
                )
            )
            await self.db.commit()
        except SQLAlchemyError as exc:
            await self.db.rollback()
            log.critical("token_persist_failed", error=str(exc))
            raise PersistenceError(
                "Failed to update database after token refresh.",
                organization_id=organization_id,
            ) from exc

        await self._verify_identity(organization_id, access_token, log)

        log.info("token_refreshed")
        track_token_refresh("refreshed")
        return ValidToken(
            access_token=access_token,
            last_refreshed_at=now,
            refreshed=True,
            message=REFRESHED,
        )

    async def _verify_identity(self, organization_id: str, access_token: str, log) -> None:
        """Confirm the new token still belongs to a user with the required permission."""
        try:
            me = await self.client.get_me(access_token)
        except UpstreamTransportError as exc:
            log.warning("token_identity_probe_failed", status_code=exc.status_code)
            track_token_refresh("reconnect_required")
            await self.delete_connection(organization_id)
            raise ReconnectRequired(
                "Failed to verify refreshed token, connection removed.",
                organization_id=organization_id,
            ) from exc

        permission = ((me.get("data") or {}).get("attributes") or {}).get("people_permissions")
        if permission != self.required_permission:
            log.warning(
                "token_permission_downgraded",
                permission=permission,
                required=self.required_permission,
            )
            track_token_refresh("reconnect_required")
            await self.delete_connection(organization_id)
            raise ReconnectRequired(
                "User permissions insufficient after refresh, connection removed.",
                organization_id=organization_id,
            )

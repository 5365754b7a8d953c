"""
Upstream connection API routes.

Token refresh, disconnect, sync triggers and sync status for the caller's
organization.
"""
from fastapi import APIRouter, Depends, HTTPException, Request, status
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from peoplesync.clock import as_utc
from peoplesync.database import get_db
from peoplesync.dependencies.auth import TokenPayload, get_current_user, require_admin
from peoplesync.errors import NotConnected, PersistenceError, ReconnectRequired, UpstreamTransportError
from peoplesync.models.sync_status import SyncStatus
from peoplesync.services.connection_service import ConnectionService
from peoplesync.services.pco_client import PcoClient, get_pco_client
from peoplesync.services.sync_service import ResourceType
from peoplesync.services.token_service import TokenService
from peoplesync.worker import enqueue_sync


router = APIRouter(prefix="/api/pco", tags=["pco"])


def reconnect_required(request: Request, exc: ReconnectRequired) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_400_BAD_REQUEST,
        detail={
            "error": exc.message,
            "requires_reconnect": True,
            "reconnect_url": str(request.url_for("pco_login")),
        }
    )


def not_connected(exc: NotConnected) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_404_NOT_FOUND,
        detail={"error": exc.message, "requires_reconnect": True}
    )


@router.post("/refresh", response_model=dict)
async def refresh_token(
    request: Request,
    token: TokenPayload = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    client: PcoClient = Depends(get_pco_client)
):
    """
    Make sure the organization holds a usable upstream access token.

    Refreshes only when the stored token is older than the guard window.
    """
    try:
        valid = await TokenService(db, client).ensure_valid_token(token.org_id)
    except NotConnected as exc:
        raise not_connected(exc)
    except ReconnectRequired as exc:
        raise reconnect_required(request, exc)
    except UpstreamTransportError as exc:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail={"error": exc.message})
    except PersistenceError as exc:
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail={"error": exc.message})

    return {
        "access_token_present": bool(valid.access_token),
        "last_refreshed_at": valid.last_refreshed_at.isoformat(),
        "refreshed": valid.refreshed,
        "message": valid.message,
    }


@router.post("/disconnect", response_model=dict)
async def disconnect(
    token: TokenPayload = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
    client: PcoClient = Depends(get_pco_client)
):
    """Delete the upstream subscriptions, their secrets and the connection."""
    try:
        removed = await ConnectionService(db, client).disconnect(token.org_id)
    except NotConnected as exc:
        raise not_connected(exc)
    except PersistenceError as exc:
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail={"error": exc.message})

    return {"message": "Disconnected", "subscriptions_removed": removed}


@router.post("/sync/{resource_type}", response_model=dict, status_code=status.HTTP_202_ACCEPTED)
async def trigger_sync(
    resource_type: ResourceType,
    token: TokenPayload = Depends(get_current_user)
):
    """Queue a full sync of one resource type."""
    if not await enqueue_sync(token.org_id, resource_type):
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Failed to queue sync"
        )
    return {"message": "Sync queued", "resource_type": resource_type.value}


@router.get("/sync", response_model=dict)
async def sync_status(
    token: TokenPayload = Depends(get_current_user),
    db: AsyncSession = Depends(get_db)
):
    """Last completed full sync per resource type."""
    stmt = select(SyncStatus).where(SyncStatus.organization_id == token.org_id)
    result = await db.execute(stmt)
    return {
        row.resource_type: {
            "synced_at": as_utc(row.synced_at).isoformat(),
            "pages_fetched": row.pages_fetched,
            "truncated": row.truncated,
        }
        for row in result.scalars().all()
    }

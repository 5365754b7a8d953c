"""
Upstream connect flow.

The OAuth callback stores the organization's credential, registers the
webhook subscriptions and queues the first full syncs. The caller ends up
with an API token for the organization in the ``auth-token`` cookie.
"""
from authlib.integrations.starlette_client import OAuthError
from fastapi import APIRouter, Depends, Request
from fastapi.responses import RedirectResponse
from sqlalchemy.ext.asyncio import AsyncSession

from peoplesync.config import settings
from peoplesync.database import get_db
from peoplesync.errors import AlreadyConnected, InsufficientPermission, PersistenceError, UpstreamTransportError
from peoplesync.logging_config import get_logger
from peoplesync.oauth import oauth
from peoplesync.services.connection_service import ConnectionService
from peoplesync.services.jwt_service import JWTService
from peoplesync.services.pco_client import PcoClient, get_pco_client
from peoplesync.services.sync_service import ResourceType
from peoplesync.worker import enqueue_sync

router = APIRouter(prefix="/auth", tags=["Authentication"])

log = get_logger(component="connect")


def _site_redirect(path: str = "", **params) -> RedirectResponse:
    query = "&".join(f"{key}={value}" for key, value in params.items())
    url = f"{settings.SITE_URL.rstrip('/')}{path}"
    return RedirectResponse(url=f"{url}?{query}" if query else url)


@router.get("/pco/login", name="pco_login")
async def pco_login(request: Request):
    """Redirect the user to the upstream authorization page."""
    redirect_uri = str(request.url_for("pco_callback"))
    return await oauth.pco.authorize_redirect(request, redirect_uri)


@router.get("/pco/callback", name="pco_callback")
async def pco_callback(
    request: Request,
    db: AsyncSession = Depends(get_db),
    client: PcoClient = Depends(get_pco_client)
):
    """Handle the upstream OAuth callback (server-side flow)."""
    error = request.query_params.get("error")
    if error:
        log.warning("connect_denied", error=error)
        return _site_redirect(error=error)

    try:
        token = await oauth.pco.authorize_access_token(request)
    except OAuthError as exc:
        log.error("connect_token_exchange_failed", error=exc.error)
        return _site_redirect(error="token_error")

    try:
        result = await ConnectionService(db, client).connect(token)
    except InsufficientPermission:
        return _site_redirect("/onboarding/permissions-error")
    except AlreadyConnected:
        return _site_redirect("/pco-existing-connection")
    except (UpstreamTransportError, PersistenceError) as exc:
        log.error("connect_failed", error_code=exc.code, error=exc.message)
        return _site_redirect("/onboarding", pco_connection_error=exc.code)

    organization_id = result.organization.id
    for resource_type in ResourceType:
        await enqueue_sync(organization_id, resource_type)

    access_token = JWTService().create_token(subject=result.pco_user_id, org_id=organization_id)
    response = _site_redirect("/emails", pco_connection_success="true")
    response.set_cookie(
        key="auth-token",
        value=access_token,
        httponly=True,
        secure=settings.ENVIRONMENT != "development",
        samesite="lax",
        max_age=60 * settings.JWT_EXPIRATION_MINUTES
    )
    return response

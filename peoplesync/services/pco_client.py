"""
Planning Center (upstream) API client.

A thin wrapper over an ``httpx.AsyncClient`` that is created per call and
passed into the token, sync and connection services. It knows the upstream
endpoints, applies bearer auth, honours 429 ``Retry-After`` and turns every
non-success response into ``UpstreamTransportError``.
"""
import asyncio
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Awaitable, Callable, Optional

import httpx
import structlog

from peoplesync.config import settings
from peoplesync.errors import UpstreamTransportError


logger = structlog.get_logger()

TOKEN_PATH = "/oauth/token"
ME_PATH = "/people/v2/me"
SUBSCRIPTIONS_PATH = "/webhooks/v2/subscriptions"


class PcoClient:
    """Upstream API calls for one unit of work (a request, a sync run, a job)."""

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        base_url: str | None = None,
        client_id: Optional[str] = None,
        client_secret: Optional[str] = None,
        rate_limit_retries: int | None = None,
        default_wait_seconds: int | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.http = http_client
        self.base_url = (base_url or settings.PCO_API_BASE_URL).rstrip("/")
        self.client_id = client_id if client_id is not None else settings.PCO_CLIENT_ID
        self.client_secret = client_secret if client_secret is not None else settings.PCO_CLIENT_SECRET
        self.rate_limit_retries = (
            settings.PCO_RATE_LIMIT_RETRIES if rate_limit_retries is None else rate_limit_retries
        )
        self.default_wait_seconds = (
            settings.PCO_RATE_LIMIT_DEFAULT_WAIT_SECONDS if default_wait_seconds is None else default_wait_seconds
        )
        self._sleep = sleep

    def url(self, path_or_url: str) -> str:
        if path_or_url.startswith("http://") or path_or_url.startswith("https://"):
            return path_or_url
        return f"{self.base_url}{path_or_url}"

    async def _send(self, method: str, url: str, **kwargs) -> httpx.Response:
        """Send one request, retrying on 429 up to ``rate_limit_retries`` times."""
        attempt = 0
        while True:
            try:
                response = await self.http.request(method, url, **kwargs)
            except httpx.HTTPError as exc:
                logger.error("pco_request_failed", method=method, url=url, error=str(exc))
                raise UpstreamTransportError(f"{method} {url} failed: {exc}") from exc

            if response.status_code != 429 or attempt >= self.rate_limit_retries:
                return response

            wait_seconds = self.default_wait_seconds
            retry_after = response.headers.get("Retry-After")
            if retry_after and retry_after.isdigit() and int(retry_after) > 0:
                wait_seconds = int(retry_after)
            attempt += 1
            logger.warning(
                "pco_rate_limited",
                url=url,
                wait_seconds=wait_seconds,
                attempt=attempt + 1,
                max_attempts=self.rate_limit_retries + 1,
            )
            await self._sleep(wait_seconds)

    @staticmethod
    def _raise_for_status(response: httpx.Response, what: str) -> None:
        if response.is_success:
            return
        raise UpstreamTransportError(
            f"{what}: HTTP {response.status_code} {response.text[:200]}",
            status_code=response.status_code,
        )

    @staticmethod
    def _auth(access_token: str) -> dict:
        return {"Authorization": f"Bearer {access_token}"}

    # ------------------------------------------------------------------
    # OAuth
    # ------------------------------------------------------------------

    async def refresh_access_token(self, refresh_token: str) -> dict:
        """
        Exchange a refresh token for a new access/refresh pair.

        Upstream refresh tokens are single-use: a successful call invalidates
        ``refresh_token``.
        """
        response = await self._send(
            "POST",
            self.url(TOKEN_PATH),
            data={
                "grant_type": "refresh_token",
                "client_id": self.client_id or "",
                "client_secret": self.client_secret or "",
                "refresh_token": refresh_token,
            },
            headers={"Content-Type": "application/x-www-form-urlencoded"},
        )
        self._raise_for_status(response, "Token refresh failed")
        payload = response.json()
        if not payload.get("access_token"):
            raise UpstreamTransportError("Token refresh returned no access_token", status_code=response.status_code)
        return payload

    async def get_me(self, access_token: str) -> dict:
        """Fetch the authenticated upstream user (identity probe)."""
        return await self.get_json(ME_PATH, access_token)

    async def get_organization(self, access_token: str, person_id: str) -> dict:
        return await self.get_json(f"/people/v2/people/{person_id}/organization", access_token)

    # ------------------------------------------------------------------
    # Resources
    # ------------------------------------------------------------------

    async def get_json(self, path_or_url: str, access_token: str, params: dict | None = None) -> dict:
        url = self.url(path_or_url)
        response = await self._send("GET", url, params=params, headers=self._auth(access_token))
        self._raise_for_status(response, f"GET {url}")
        return response.json()

    async def create_subscription(self, access_token: str, event_name: str, callback_url: str) -> dict:
        """Register a webhook subscription; returns the subscription resource."""
        response = await self._send(
            "POST",
            self.url(SUBSCRIPTIONS_PATH),
            json={
                "data": {
                    "type": "Subscription",
                    "attributes": {"name": event_name, "url": callback_url, "active": True},
                }
            },
            headers=self._auth(access_token),
        )
        self._raise_for_status(response, f"Creating subscription {event_name}")
        return response.json()["data"]

    async def delete_subscription(self, access_token: str, subscription_id: str) -> None:
        response = await self._send(
            "DELETE",
            self.url(f"{SUBSCRIPTIONS_PATH}/{subscription_id}"),
            headers=self._auth(access_token),
        )
        if response.status_code == 404:
            return
        self._raise_for_status(response, f"Deleting subscription {subscription_id}")


@asynccontextmanager
async def pco_client_session() -> AsyncIterator[PcoClient]:
    """Open a fresh HTTP client for one unit of work."""
    async with httpx.AsyncClient(timeout=settings.PCO_HTTP_TIMEOUT_SECONDS) as http_client:
        yield PcoClient(http_client)


async def get_pco_client() -> AsyncIterator[PcoClient]:
    """FastAPI dependency: a client scoped to the request."""
    async with pco_client_session() as client:
        yield client

"""
Pytest configuration and shared fixtures.

Provides:
- An in-memory SQLite mirror (aiosqlite) with every table created
- A scripted upstream served through ``httpx.MockTransport``
- A ``PcoClient`` wired to that upstream, with no real sleeping

Run with:
    pytest tests/
"""
import json
import re
from datetime import datetime, timedelta
from typing import AsyncGenerator, Callable
from urllib.parse import parse_qs

import httpx
import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from peoplesync.clock import utcnow
from peoplesync.database import get_db
from peoplesync.main import app
from peoplesync.models import Base, Organization, OrgEmailUsage, PcoConnection, PcoWebhook
from peoplesync.services.jwt_service import JWTService
from peoplesync.services.pco_client import PcoClient, get_pco_client


TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"
UPSTREAM_BASE_URL = "https://api.pco.test"


# =============================================================================
# Database
# =============================================================================

@pytest_asyncio.fixture
async def engine():
    engine = create_async_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def db(engine) -> AsyncGenerator[AsyncSession, None]:
    """A session per test; services commit through it."""
    session_factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    async with session_factory() as session:
        yield session


@pytest_asyncio.fixture
async def org(db: AsyncSession) -> Organization:
    organization = Organization(name="Grace Church", pco_organization_id="1001")
    db.add(organization)
    await db.commit()
    return organization


@pytest_asyncio.fixture
async def other_org(db: AsyncSession) -> Organization:
    organization = Organization(name="Hope Chapel", pco_organization_id="2002")
    db.add(organization)
    await db.commit()
    return organization


async def add_connection(
    db: AsyncSession,
    organization_id: str,
    refreshed_ago: timedelta = timedelta(minutes=5),
    access_token: str = "access-1",
    refresh_token: str = "refresh-1",
) -> PcoConnection:
    connection = PcoConnection(
        organization_id=organization_id,
        access_token=access_token,
        refresh_token=refresh_token,
        scope="people",
        last_refreshed_at=utcnow() - refreshed_ago,
        pco_user_id="501",
        pco_organization_id="1001",
    )
    db.add(connection)
    await db.commit()
    return connection


async def add_webhook_secret(db: AsyncSession, organization_id: str, name: str, secret: str) -> PcoWebhook:
    webhook = PcoWebhook(
        organization_id=organization_id,
        name=name,
        webhook_id=f"sub-{name.rsplit('.', 2)[-2]}",
        authenticity_secret=secret,
    )
    db.add(webhook)
    await db.commit()
    return webhook


async def add_usage(db: AsyncSession, organization_id: str, sends_remaining: int) -> OrgEmailUsage:
    usage = OrgEmailUsage(organization_id=organization_id, sends_remaining=sends_remaining, sends_used=0)
    db.add(usage)
    await db.commit()
    return usage


# =============================================================================
# Upstream
# =============================================================================

Handler = Callable[[httpx.Request], httpx.Response]


class Upstream:
    """
    Scripted upstream API.

    Routes are keyed by (method, path), with regex routes as a fallback. A
    route is either a single response, a list of responses consumed one per
    call, or a callable taking the request. Every request is recorded in
    ``calls``.
    """

    def __init__(self):
        self.routes: dict[tuple[str, str], object] = {}
        self.patterns: list[tuple[str, re.Pattern, object]] = []
        self.calls: list[httpx.Request] = []

    def add(self, method: str, path: str, response) -> None:
        self.routes[(method.upper(), path)] = response

    def add_pattern(self, method: str, pattern: str, response) -> None:
        self.patterns.append((method.upper(), re.compile(pattern), response))

    def _route(self, request: httpx.Request):
        route = self.routes.get((request.method, request.url.path))
        if route is not None:
            return route
        for method, pattern, response in self.patterns:
            if method == request.method and pattern.fullmatch(request.url.path):
                return response
        return None

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.calls.append(request)
        route = self._route(request)
        if route is None:
            return httpx.Response(404, json={"errors": [{"detail": "not found"}]})
        if isinstance(route, list):
            return route.pop(0)
        if callable(route):
            return route(request)
        return route

    def calls_to(self, method: str, path: str) -> list[httpx.Request]:
        return [c for c in self.calls if c.method == method.upper() and c.url.path == path]


def form(request: httpx.Request) -> dict[str, str]:
    return {k: v[0] for k, v in parse_qs(request.content.decode()).items()}


def body(request: httpx.Request) -> dict:
    return json.loads(request.content)


def paged(records: list[dict], page_size: int, path: str, included: list[dict] | None = None) -> Handler:
    """Serve ``records`` as offset pages with ``links.next`` until exhausted."""

    def handler(request: httpx.Request) -> httpx.Response:
        offset = int(request.url.params.get("offset", 0))
        chunk = records[offset:offset + page_size]
        next_offset = offset + page_size
        links = {"self": f"{UPSTREAM_BASE_URL}{path}?offset={offset}"}
        if next_offset < len(records):
            links["next"] = f"{UPSTREAM_BASE_URL}{path}?offset={next_offset}"
        return httpx.Response(200, json={"data": chunk, "included": included or [], "links": links, "meta": {}})

    return handler


def me_response(permission: str = "Manager", person_id: str = "501") -> httpx.Response:
    return httpx.Response(
        200,
        json={
            "data": {
                "type": "Person",
                "id": person_id,
                "attributes": {"first_name": "Pat", "last_name": "Admin", "people_permissions": permission},
            }
        },
    )


@pytest.fixture
def upstream() -> Upstream:
    return Upstream()


@pytest.fixture
def sleeps() -> list[float]:
    return []


@pytest_asyncio.fixture
async def pco_client(upstream: Upstream, sleeps: list[float]) -> AsyncGenerator[PcoClient, None]:
    async def fake_sleep(seconds: float) -> None:
        sleeps.append(seconds)

    async with httpx.AsyncClient(transport=httpx.MockTransport(upstream.handler)) as http_client:
        yield PcoClient(
            http_client,
            base_url=UPSTREAM_BASE_URL,
            client_id="client-id",
            client_secret="client-secret",
            rate_limit_retries=2,
            default_wait_seconds=20,
            sleep=fake_sleep,
        )


@pytest.fixture
def frozen_now() -> datetime:
    return utcnow().replace(microsecond=0)


# =============================================================================
# API
# =============================================================================

def auth_headers(organization_id: str, role: str = "admin", subject: str = "501") -> dict[str, str]:
    token = JWTService().create_token(subject=subject, org_id=organization_id, role=role)
    return {"Authorization": f"Bearer {token}"}


@pytest_asyncio.fixture
async def api_client(db: AsyncSession, pco_client: PcoClient) -> AsyncGenerator[httpx.AsyncClient, None]:
    """HTTP client against the app, sharing the test session and upstream."""

    async def override_get_db():
        yield db

    async def override_get_pco_client():
        yield pco_client

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_pco_client] = override_get_pco_client

    async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test") as client:
        yield client

    app.dependency_overrides.clear()

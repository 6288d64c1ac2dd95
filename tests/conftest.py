"""
Pytest Configuration and Centralized Fixtures.

Provides reusable fixtures for testing:
- In-memory SQLite database (aiosqlite) with the full schema
- Token and identity stores bound to a live session
- Recording fake for upstream HTTP services (httpx.MockTransport)
- Settings with test upstreams configured
"""

import json
import os
from collections.abc import AsyncGenerator, Callable
from datetime import UTC, datetime, timedelta
from typing import Any

import httpx
import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

# Set required environment variables BEFORE importing displex modules
os.environ.setdefault("DISPLEX_DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("DISPLEX_DISCORD_CLIENT_ID", "1100000000000000000")
os.environ.setdefault("DISPLEX_DISCORD_CLIENT_SECRET", "test-client-secret")
os.environ.setdefault("DISPLEX_ADMIN_API_KEY", "test-admin-key")
os.environ.setdefault("DISPLEX_TRACING_ENABLED", "false")

from displex.config import QuotaLimit, RequestTier, Settings
from displex.db.models import Base, DiscordToken, DiscordUser, PlexUser
from displex.db.session import create_engine
from displex.models.domain import TokenStatus
from displex.services.discord import DiscordClient
from displex.services.discord_oauth import DiscordOAuth2Client
from displex.services.identity import DiscordUserStore
from displex.services.tautulli import TautulliClient
from displex.services.token_store import DiscordTokenStore

NOW = datetime(2025, 7, 1, 12, 0, tzinfo=UTC)
TAUTULLI_URL = "http://tautulli.test"
OVERSEERR_URL = "http://overseerr.test"
DISCORD_API = "https://discord.test/api/v10"
DISCORD_OAUTH = "https://discord.test/api"


# ============================================================================
# Upstream HTTP fake
# ============================================================================


Handler = Callable[[httpx.Request], httpx.Response]


class FakeUpstream:
    """
    Route table for httpx.MockTransport that records every request.

    Routes are keyed by (method, path). A route may be a response (replayed
    for every matching request), a handler callable, or an exception instance
    to raise as a transport failure.
    """

    def __init__(self) -> None:
        self.routes: dict[tuple[str, str], Any] = {}
        self.requests: list[httpx.Request] = []

    def add(self, method: str, path: str, route: Any) -> None:
        self.routes[(method, path)] = route

    def json(self, method: str, path: str, body: Any, status_code: int = 200) -> None:
        self.add(method, path, httpx.Response(status_code, json=body))

    def calls(self, method: str, path: str) -> list[httpx.Request]:
        return [r for r in self.requests if r.method == method and r.url.path == path]

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        route = self.routes.get((request.method, request.url.path))
        if route is None:
            return httpx.Response(404, json={"message": "no route"})
        if isinstance(route, Exception):
            raise route
        if callable(route):
            return route(request)
        # Fresh copy per request; the client takes ownership of what it receives
        return httpx.Response(route.status_code, headers=route.headers, content=route.content)

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self))


def form_body(request: httpx.Request) -> dict[str, str]:
    """Decode an application/x-www-form-urlencoded request body."""
    return dict(httpx.QueryParams(request.content.decode()))


def json_body(request: httpx.Request) -> Any:
    return json.loads(request.content)


def token_payload(
    access_token: str = "new-access",
    refresh_token: str | None = "new-refresh",
    expires_in: int | None = 604800,
    scope: str | None = "identify role_connections.write",
) -> dict[str, Any]:
    body: dict[str, Any] = {"access_token": access_token, "token_type": "Bearer"}
    if refresh_token is not None:
        body["refresh_token"] = refresh_token
    if expires_in is not None:
        body["expires_in"] = expires_in
    if scope is not None:
        body["scope"] = scope
    return body


def watch_stats_payload(total_time: int, result: str = "success") -> dict[str, Any]:
    return {
        "response": {
            "result": result,
            "message": None,
            "data": [{"query_days": 0, "total_plays": 12, "total_time": total_time}],
        }
    }


@pytest.fixture
def upstream() -> FakeUpstream:
    return FakeUpstream()


@pytest_asyncio.fixture
async def http_client(upstream: FakeUpstream) -> AsyncGenerator[httpx.AsyncClient, None]:
    async with upstream.client() as client:
        yield client


@pytest.fixture
def oauth_client(http_client: httpx.AsyncClient) -> DiscordOAuth2Client:
    return DiscordOAuth2Client(
        client_id="1100000000000000000",
        client_secret="test-client-secret",
        http_client=http_client,
        oauth_base=DISCORD_OAUTH,
    )


@pytest.fixture
def discord_client(http_client: httpx.AsyncClient) -> DiscordClient:
    return DiscordClient(
        application_id="1100000000000000000",
        http_client=http_client,
        bot_token="test-bot-token",
        api_base=DISCORD_API,
    )


@pytest.fixture
def tautulli_client(http_client: httpx.AsyncClient) -> TautulliClient:
    return TautulliClient(TAUTULLI_URL, "tautulli-key", http_client)


# ============================================================================
# Settings
# ============================================================================


def make_tier(name: str, watch_hours: int, movie: int = 5, tv: int = 5) -> RequestTier:
    return RequestTier(
        name=name,
        watch_hours=watch_hours,
        movie=QuotaLimit(quota_limit=movie, quota_days=7),
        tv=QuotaLimit(quota_limit=tv, quota_days=7),
    )


@pytest.fixture
def test_settings() -> Settings:
    return Settings(
        tautulli_url=TAUTULLI_URL,
        tautulli_api_key="tautulli-key",
        overseerr_url=OVERSEERR_URL,
        overseerr_api_key="overseerr-key",
        discord_api_base=DISCORD_API,
        discord_oauth_base=DISCORD_OAUTH,
        request_tiers=[
            make_tier("Gold", 50, movie=20, tv=20),
            make_tier("Bronze", 10),
            make_tier("Silver", 25, movie=10, tv=10),
        ],
    )


# ============================================================================
# Database Fixtures
# ============================================================================


@pytest_asyncio.fixture
async def engine() -> AsyncGenerator[AsyncEngine, None]:
    engine = create_engine("sqlite+aiosqlite://")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def session(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session


@pytest.fixture
def token_store(session: AsyncSession) -> DiscordTokenStore:
    return DiscordTokenStore(session)


@pytest.fixture
def user_store(session: AsyncSession) -> DiscordUserStore:
    return DiscordUserStore(session)


@pytest.fixture
def add_identity(session: AsyncSession):
    """Factory: insert a discord identity, optionally with a linked plex account."""

    async def _add(
        discord_user_id: str = "discord-1",
        plex_user_id: str | None = "plex-1",
        is_active: bool = True,
        created_at: datetime | None = None,
    ) -> DiscordUser:
        user = DiscordUser(
            id=discord_user_id,
            username=f"user-{discord_user_id}",
            is_active=is_active,
            created_at=created_at or NOW,
        )
        session.add(user)
        if plex_user_id is not None:
            session.add(
                PlexUser(
                    id=plex_user_id,
                    username=f"plex-{plex_user_id}",
                    is_subscriber=True,
                    discord_user_id=discord_user_id,
                )
            )
        await session.commit()
        return user

    return _add


@pytest.fixture
def add_token(token_store: DiscordTokenStore):
    """Factory: insert an Active token expiring ``expires_in`` after NOW."""

    async def _add(
        access_token: str = "access-1",
        discord_user_id: str = "discord-1",
        expires_in: timedelta = timedelta(days=7),
        refresh_token: str = "refresh-1",
        scopes: str = "identify,role_connections.write",
        status: TokenStatus = TokenStatus.ACTIVE,
    ) -> DiscordToken:
        await token_store.create(
            access_token=access_token,
            refresh_token=refresh_token,
            scopes=scopes,
            expires_at=NOW + expires_in,
            discord_user_id=discord_user_id,
        )
        if status is not TokenStatus.ACTIVE:
            await token_store.set_status(access_token, status)
        token = await token_store.get(access_token)
        assert token is not None
        return token

    return _add

"""
Tests for TokenLifecycleManager.

Drives the refresh and maintenance paths against SQLite and a mocked Discord
token endpoint.
"""

import asyncio
from datetime import timedelta
from unittest.mock import patch

import httpx
import pytest
from sqlalchemy.exc import OperationalError

from conftest import NOW, form_body, token_payload
from displex.exceptions import InvalidGrantError, NetworkError, UpstreamAuthError
from displex.models.domain import TokenStatus
from displex.services.token_lifecycle import TokenLifecycleManager
from displex.services.token_store import DiscordTokenStore

TOKEN_PATH = "/api/oauth2/token"
REVOKE_PATH = "/api/oauth2/token/revoke"

INVALID_GRANT = httpx.Response(
    400, json={"error": "invalid_grant", "error_description": "Invalid refresh token"}
)


@pytest.fixture
def lifecycle(token_store, oauth_client, test_settings):
    return TokenLifecycleManager(token_store, oauth_client, test_settings)


class TestRefresh:
    """Tests for a single refresh."""

    @pytest.mark.asyncio
    async def test_success_inserts_successor_and_renews_original(
        self, lifecycle, token_store, upstream, add_identity, add_token
    ):
        await add_identity()
        token = await add_token(expires_in=timedelta(hours=1))
        upstream.json("POST", TOKEN_PATH, token_payload(access_token="access-2", expires_in=3600))

        successor = await lifecycle.refresh(token, NOW)

        assert successor.access_token == "access-2"
        assert successor.status is TokenStatus.ACTIVE
        assert successor.refresh_token == "new-refresh"
        assert successor.expires_at == NOW + timedelta(hours=1)
        assert successor.discord_user_id == "discord-1"

        rows = {t.access_token: t for t in await token_store.list(discord_user_id="discord-1")}
        assert set(rows) == {"access-1", "access-2"}
        assert rows["access-1"].status is TokenStatus.RENEWED
        assert rows["access-1"].refresh_token == "refresh-1"

        (request,) = upstream.calls("POST", TOKEN_PATH)
        assert form_body(request)["refresh_token"] == "refresh-1"

    @pytest.mark.asyncio
    async def test_response_scopes_override_stored_scopes(
        self, lifecycle, upstream, add_identity, add_token
    ):
        await add_identity()
        token = await add_token(scopes="identify")
        upstream.json("POST", TOKEN_PATH, token_payload(scope="identify role_connections.write"))

        successor = await lifecycle.refresh(token, NOW)

        assert successor.scopes == "identify,role_connections.write"

    @pytest.mark.asyncio
    async def test_missing_fields_fall_back(self, lifecycle, upstream, add_identity, add_token):
        """No refresh token, scope or lifetime in the response keeps the old values."""
        await add_identity()
        token = await add_token(scopes="identify")
        upstream.json(
            "POST",
            TOKEN_PATH,
            token_payload(refresh_token=None, scope=None, expires_in=None),
        )

        successor = await lifecycle.refresh(token, NOW)

        assert successor.refresh_token == "refresh-1"
        assert successor.scopes == "identify"
        assert successor.expires_at == NOW + timedelta(days=3)

    @pytest.mark.asyncio
    async def test_invalid_grant_revokes(
        self, lifecycle, token_store, upstream, add_identity, add_token
    ):
        await add_identity()
        token = await add_token()
        upstream.add("POST", TOKEN_PATH, INVALID_GRANT)
        upstream.add("POST", REVOKE_PATH, httpx.Response(200))

        with pytest.raises(InvalidGrantError):
            await lifecycle.refresh(token, NOW)

        rows = await token_store.list(discord_user_id="discord-1")
        assert [(t.access_token, t.status) for t in rows] == [("access-1", TokenStatus.REVOKED)]
        assert len(upstream.calls("POST", REVOKE_PATH)) == 1

    @pytest.mark.asyncio
    async def test_invalid_grant_revokes_even_when_upstream_revoke_fails(
        self, lifecycle, token_store, upstream, add_identity, add_token
    ):
        await add_identity()
        token = await add_token()
        upstream.add("POST", TOKEN_PATH, INVALID_GRANT)
        upstream.add("POST", REVOKE_PATH, httpx.Response(500))

        with pytest.raises(InvalidGrantError):
            await lifecycle.refresh(token, NOW)

        assert (await token_store.get("access-1")).status is TokenStatus.REVOKED

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        ("route", "error"),
        [
            (httpx.Response(503, text="unavailable"), UpstreamAuthError),
            (httpx.ConnectError("refused"), NetworkError),
        ],
    )
    async def test_transient_failure_leaves_row(
        self, lifecycle, token_store, upstream, add_identity, add_token, route, error
    ):
        await add_identity()
        token = await add_token()
        upstream.add("POST", TOKEN_PATH, route)

        with pytest.raises(error):
            await lifecycle.refresh(token, NOW)

        rows = await token_store.list(discord_user_id="discord-1")
        assert [(t.access_token, t.status) for t in rows] == [("access-1", TokenStatus.ACTIVE)]
        assert upstream.calls("POST", REVOKE_PATH) == []

    @pytest.mark.asyncio
    async def test_same_access_token_stays_active(
        self, lifecycle, token_store, upstream, add_identity, add_token
    ):
        await add_identity()
        token = await add_token()
        upstream.json("POST", TOKEN_PATH, token_payload(access_token="access-1"))

        result = await lifecycle.refresh(token, NOW)

        assert result.access_token == "access-1"
        assert (await token_store.get("access-1")).status is TokenStatus.ACTIVE

    @pytest.mark.asyncio
    async def test_latest_token_after_refresh(self, lifecycle, upstream, add_identity, add_token):
        await add_identity()
        token = await add_token()
        upstream.json("POST", TOKEN_PATH, token_payload(access_token="access-2"))

        await lifecycle.refresh(token, NOW)

        latest = await lifecycle.latest_token("discord-1")
        assert latest.access_token == "access-2"


class TestMaintenancePass:
    """Tests for run_maintenance."""

    @pytest.mark.asyncio
    async def test_pass_decides_per_token(
        self, lifecycle, token_store, upstream, add_identity, add_token
    ):
        await add_identity()
        await add_token("lapsed", expires_in=-timedelta(minutes=5))
        await add_token("due", expires_in=timedelta(days=1))
        await add_token("fresh", expires_in=timedelta(days=5))
        upstream.json("POST", TOKEN_PATH, token_payload(access_token="due-successor"))

        report = await lifecycle.run_maintenance(now=NOW)

        assert report.completed is True
        assert report.processed == 3
        assert report.expired == 1
        assert report.renewed == 1
        assert report.skipped == 1
        assert report.failed == 0

        statuses = {t.access_token: t.status for t in await token_store.list()}
        assert statuses == {
            "lapsed": TokenStatus.EXPIRED,
            "due": TokenStatus.RENEWED,
            "due-successor": TokenStatus.ACTIVE,
            "fresh": TokenStatus.ACTIVE,
        }
        # Only the token inside the window was sent to the provider
        (request,) = upstream.calls("POST", TOKEN_PATH)
        assert form_body(request)["refresh_token"] == "refresh-1"

    @pytest.mark.asyncio
    async def test_expired_token_never_refreshed(self, lifecycle, upstream, add_identity, add_token):
        await add_identity()
        await add_token(expires_in=-timedelta(days=1))

        report = await lifecycle.run_maintenance(now=NOW)

        assert report.expired == 1
        assert upstream.calls("POST", TOKEN_PATH) == []

    @pytest.mark.asyncio
    async def test_invalid_grant_counts_as_revoked(
        self, lifecycle, token_store, upstream, add_identity, add_token
    ):
        await add_identity()
        await add_token(expires_in=timedelta(hours=6))
        upstream.add("POST", TOKEN_PATH, INVALID_GRANT)
        upstream.add("POST", REVOKE_PATH, httpx.Response(200))

        report = await lifecycle.run_maintenance(now=NOW)

        assert report.completed is True
        assert report.revoked == 1
        assert report.failed == 0
        assert (await token_store.get("access-1")).status is TokenStatus.REVOKED

    @pytest.mark.asyncio
    async def test_one_failure_does_not_stop_the_pass(
        self, lifecycle, token_store, upstream, add_identity, add_token
    ):
        await add_identity("discord-1", "plex-1")
        await add_identity("discord-2", "plex-2")
        await add_token("bad", "discord-1", expires_in=timedelta(hours=1), refresh_token="bad-r")
        await add_token("good", "discord-2", expires_in=timedelta(hours=2), refresh_token="good-r")

        def handler(request: httpx.Request) -> httpx.Response:
            if form_body(request)["refresh_token"] == "bad-r":
                return httpx.Response(502, text="bad gateway")
            return httpx.Response(200, json=token_payload(access_token="good-successor"))

        upstream.add("POST", TOKEN_PATH, handler)

        report = await lifecycle.run_maintenance(now=NOW)

        assert report.completed is True
        assert report.failed == 1
        assert report.renewed == 1
        assert (await token_store.get("bad")).status is TokenStatus.ACTIVE
        assert (await token_store.get("good")).status is TokenStatus.RENEWED

    @pytest.mark.asyncio
    async def test_database_error_rolls_back_and_continues(
        self, lifecycle, token_store, add_identity, add_token
    ):
        await add_identity()
        await add_token("first", expires_in=-timedelta(hours=2))
        await add_token("second", expires_in=-timedelta(hours=1))

        original = token_store.apply_event
        calls = 0

        async def flaky_apply_event(token, event, commit=True):
            nonlocal calls
            calls += 1
            if calls == 1:
                raise OperationalError("UPDATE", {}, Exception("database is locked"))
            return await original(token, event, commit=commit)

        with patch.object(token_store, "apply_event", side_effect=flaky_apply_event):
            report = await lifecycle.run_maintenance(now=NOW)

        assert report.failed == 1
        assert report.expired == 1
        assert (await token_store.get("first")).status is TokenStatus.ACTIVE
        assert (await token_store.get("second")).status is TokenStatus.EXPIRED

    @pytest.mark.asyncio
    async def test_purges_old_terminal_rows(self, lifecycle, token_store, add_identity, add_token):
        await add_identity()
        await add_token("ancient", expires_in=-timedelta(days=45), status=TokenStatus.RENEWED)

        report = await lifecycle.run_maintenance(now=NOW)

        assert report.purged == 1
        assert await token_store.get("ancient") is None

    @pytest.mark.asyncio
    async def test_shutdown_interrupts_pass(self, lifecycle, token_store, add_identity, add_token):
        await add_identity()
        await add_token(expires_in=-timedelta(hours=1))
        await add_token("ancient", expires_in=-timedelta(days=45), status=TokenStatus.RENEWED)
        shutdown = asyncio.Event()
        shutdown.set()

        report = await lifecycle.run_maintenance(now=NOW, shutdown=shutdown)

        assert report.interrupted is True
        assert report.completed is False
        assert report.processed == 0
        assert report.purged == 0
        assert (await token_store.get("access-1")).status is TokenStatus.ACTIVE
        assert await token_store.get("ancient") is not None

    @pytest.mark.asyncio
    async def test_empty_store(self, lifecycle):
        report = await lifecycle.run_maintenance(now=NOW)

        assert report.completed is True
        assert report.processed == 0

    @pytest.mark.asyncio
    async def test_revoked_and_renewed_in_one_pass(
        self, lifecycle, token_store, upstream, add_identity, add_token
    ):
        await add_identity("discord-1", "plex-1")
        await add_identity("discord-2", "plex-2")
        await add_token("access-1", "discord-1", expires_in=timedelta(hours=1))
        await add_token("access-b", "discord-2", expires_in=timedelta(hours=2), refresh_token="b-r")

        def handler(request: httpx.Request) -> httpx.Response:
            if form_body(request)["refresh_token"] == "refresh-1":
                return httpx.Response(400, json={"error": "invalid_grant"})
            return httpx.Response(200, json=token_payload(access_token="access-b2"))

        upstream.add("POST", TOKEN_PATH, handler)
        upstream.add("POST", REVOKE_PATH, httpx.Response(200))

        report = await lifecycle.run_maintenance(now=NOW)

        assert report.completed is True
        assert report.revoked == 1
        assert report.renewed == 1
        statuses = {t.access_token: t.status for t in await token_store.list()}
        assert statuses == {
            "access-1": TokenStatus.REVOKED,
            "access-b": TokenStatus.RENEWED,
            "access-b2": TokenStatus.ACTIVE,
        }

    @pytest.mark.asyncio
    async def test_unexpected_error_stays_with_its_token(
        self, lifecycle, token_store, upstream, add_identity, add_token
    ):
        await add_identity("discord-1", "plex-1")
        await add_identity("discord-2", "plex-2")
        await add_token("bad", "discord-1", expires_in=timedelta(hours=1), refresh_token="bad-r")
        await add_token("good", "discord-2", expires_in=timedelta(hours=2), refresh_token="good-r")
        await add_token(
            "ancient", "discord-2", expires_in=-timedelta(days=45), status=TokenStatus.RENEWED
        )

        def handler(request: httpx.Request) -> httpx.Response:
            if form_body(request)["refresh_token"] == "bad-r":
                raise RuntimeError("unexpected payload")
            return httpx.Response(200, json=token_payload(access_token="good-successor"))

        upstream.add("POST", TOKEN_PATH, handler)

        report = await lifecycle.run_maintenance(now=NOW)

        assert report.completed is True
        assert report.failed == 1
        assert report.renewed == 1
        assert report.purged == 1
        assert (await token_store.get("bad")).status is TokenStatus.ACTIVE
        assert (await token_store.get("good")).status is TokenStatus.RENEWED

    @pytest.mark.asyncio
    async def test_same_token_not_counted_as_renewed(
        self, lifecycle, upstream, add_identity, add_token
    ):
        await add_identity()
        await add_token(expires_in=timedelta(hours=1))
        upstream.json("POST", TOKEN_PATH, token_payload(access_token="access-1"))

        report = await lifecycle.run_maintenance(now=NOW)

        assert report.succeeded == 1
        assert report.renewed == 0


class TestConcurrentWriters:
    """Another writer (a second pass or an inline refresh) changed the row first."""

    @pytest.fixture
    def renewed_elsewhere(self, session_factory):
        """Commit a successor and move access-1 to Renewed from a separate session."""

        async def _renew(
            status: TokenStatus = TokenStatus.RENEWED, successor: str | None = "access-2"
        ) -> None:
            async with session_factory() as other:
                store = DiscordTokenStore(other)
                if successor is not None:
                    await store.create(
                        access_token=successor,
                        refresh_token="rotated",
                        scopes="identify",
                        expires_at=NOW + timedelta(days=7),
                        discord_user_id="discord-1",
                    )
                await store.set_status("access-1", status)

        return _renew

    @pytest.mark.asyncio
    async def test_invalid_grant_after_renewal_does_not_revoke(
        self, lifecycle, session_factory, upstream, add_identity, add_token, renewed_elsewhere
    ):
        await add_identity()
        token = await add_token(expires_in=timedelta(hours=1))
        await renewed_elsewhere()
        upstream.add("POST", TOKEN_PATH, INVALID_GRANT)
        upstream.add("POST", REVOKE_PATH, httpx.Response(200))

        result = await lifecycle.refresh(token, NOW)

        assert result.access_token == "access-2"
        assert upstream.calls("POST", REVOKE_PATH) == []
        async with session_factory() as fresh:
            assert (await DiscordTokenStore(fresh).get("access-1")).status is TokenStatus.RENEWED

    @pytest.mark.asyncio
    async def test_success_after_revocation_discards_successor(
        self, lifecycle, session_factory, upstream, add_identity, add_token, renewed_elsewhere
    ):
        await add_identity()
        token = await add_token(expires_in=timedelta(hours=1))
        await renewed_elsewhere(TokenStatus.REVOKED, successor=None)
        upstream.json("POST", TOKEN_PATH, token_payload(access_token="access-3"))

        with pytest.raises(InvalidGrantError):
            await lifecycle.refresh(token, NOW)

        async with session_factory() as fresh:
            store = DiscordTokenStore(fresh)
            assert await store.get("access-3") is None
            assert (await store.get("access-1")).status is TokenStatus.REVOKED

    @pytest.mark.asyncio
    async def test_success_after_expiry_keeps_successor(
        self, lifecycle, session_factory, upstream, add_identity, add_token, renewed_elsewhere
    ):
        await add_identity()
        token = await add_token(expires_in=timedelta(hours=1))
        await renewed_elsewhere(TokenStatus.EXPIRED, successor=None)
        upstream.json("POST", TOKEN_PATH, token_payload(access_token="access-3"))

        result = await lifecycle.refresh(token, NOW)

        assert result.access_token == "access-3"
        async with session_factory() as fresh:
            store = DiscordTokenStore(fresh)
            assert (await store.get("access-3")).status is TokenStatus.ACTIVE
            assert (await store.get("access-1")).status is TokenStatus.EXPIRED

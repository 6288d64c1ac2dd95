"""
Tests for domain models.

Covers the token state machine, maintenance planning and the value objects
that flow between the upstream clients and the jobs.
"""

from datetime import UTC, datetime, timedelta

import pytest

from displex.exceptions import InvalidTokenTransitionError
from displex.models.domain import (
    ROLE_CONNECTION_METADATA,
    PassReport,
    QuotaSettings,
    RoleConnectionMetadata,
    TokenAction,
    TokenEvent,
    TokenResponse,
    TokenStatus,
    WatchStat,
    check_status_change,
    is_stale,
    plan_maintenance,
    token_fingerprint,
    transition,
)

NOW = datetime(2025, 7, 1, 12, 0, tzinfo=UTC)
WINDOW = timedelta(days=2)


class TestTokenStatus:
    """Tests for TokenStatus enum."""

    def test_integer_values(self):
        """Statuses persist as 0=Active, 1=Revoked, 2=Renewed, 3=Expired."""
        assert TokenStatus.ACTIVE == 0
        assert TokenStatus.REVOKED == 1
        assert TokenStatus.RENEWED == 2
        assert TokenStatus.EXPIRED == 3

    def test_only_active_is_non_terminal(self):
        assert not TokenStatus.ACTIVE.is_terminal
        assert TokenStatus.REVOKED.is_terminal
        assert TokenStatus.RENEWED.is_terminal
        assert TokenStatus.EXPIRED.is_terminal


class TestTransition:
    """Tests for the central transition table."""

    @pytest.mark.parametrize(
        ("event", "expected"),
        [
            (TokenEvent.REFRESHED, TokenStatus.RENEWED),
            (TokenEvent.GRANT_INVALID, TokenStatus.REVOKED),
            (TokenEvent.LAPSED, TokenStatus.EXPIRED),
        ],
    )
    def test_active_transitions(self, event, expected):
        """Every event moves an Active token to exactly one terminal status."""
        assert transition(TokenStatus.ACTIVE, event) is expected

    @pytest.mark.parametrize(
        "status", [TokenStatus.REVOKED, TokenStatus.RENEWED, TokenStatus.EXPIRED]
    )
    @pytest.mark.parametrize("event", list(TokenEvent))
    def test_terminal_statuses_reject_every_event(self, status, event):
        with pytest.raises(InvalidTokenTransitionError) as exc_info:
            transition(status, event)
        assert exc_info.value.current == status.name

    def test_check_status_change_allows_leaving_active(self):
        check_status_change(TokenStatus.ACTIVE, TokenStatus.REVOKED)

    def test_check_status_change_allows_reasserting_status(self):
        """Setting a terminal token to the status it already has is a no-op."""
        check_status_change(TokenStatus.RENEWED, TokenStatus.RENEWED)

    def test_check_status_change_rejects_reviving_terminal(self):
        with pytest.raises(InvalidTokenTransitionError):
            check_status_change(TokenStatus.EXPIRED, TokenStatus.ACTIVE)


class TestPlanMaintenance:
    """Tests for the maintenance decision."""

    def test_already_expired_is_expired(self):
        assert plan_maintenance(NOW - timedelta(seconds=1), NOW, WINDOW) is TokenAction.EXPIRE

    def test_expiring_exactly_now_is_expired(self):
        assert plan_maintenance(NOW, NOW, WINDOW) is TokenAction.EXPIRE

    def test_inside_window_is_refreshed(self):
        assert plan_maintenance(NOW + timedelta(days=1), NOW, WINDOW) is TokenAction.REFRESH

    def test_outside_window_is_left(self):
        assert plan_maintenance(NOW + timedelta(days=3), NOW, WINDOW) is TokenAction.LEAVE

    def test_window_boundary_is_left(self):
        """A token expiring exactly at now + window is not yet due."""
        assert plan_maintenance(NOW + WINDOW, NOW, WINDOW) is TokenAction.LEAVE


class TestIsStale:
    """Tests for the reactive staleness check used by the sync job."""

    def test_future_expiry_is_not_stale(self):
        assert not is_stale(NOW + timedelta(hours=1), NOW, timedelta(0))

    def test_past_expiry_is_stale_with_zero_threshold(self):
        assert is_stale(NOW - timedelta(seconds=1), NOW, timedelta(0))

    def test_threshold_delays_staleness(self):
        assert not is_stale(NOW - timedelta(hours=12), NOW, timedelta(days=1))
        assert is_stale(NOW - timedelta(days=2), NOW, timedelta(days=1))


class TestTokenResponse:
    """Tests for TokenResponse."""

    def test_expires_at_uses_declared_lifetime(self):
        response = TokenResponse("a", "r", expires_in=3600, scopes=None)
        assert response.expires_at(NOW, fallback_seconds=60) == NOW + timedelta(hours=1)

    def test_expires_at_falls_back_when_lifetime_missing(self):
        response = TokenResponse("a", "r", expires_in=None, scopes=None)
        assert response.expires_at(NOW, fallback_seconds=259200) == NOW + timedelta(days=3)

    def test_scope_string_is_comma_joined(self):
        response = TokenResponse("a", "r", 60, scopes=("identify", "role_connections.write"))
        assert response.scope_string == "identify,role_connections.write"

    def test_scope_string_none_without_scopes(self):
        assert TokenResponse("a", "r", 60, scopes=None).scope_string is None

    def test_empty_access_token_rejected(self):
        with pytest.raises(ValueError):
            TokenResponse("", "r", 60, scopes=None)

    def test_negative_lifetime_rejected(self):
        with pytest.raises(ValueError):
            TokenResponse("a", "r", -1, scopes=None)


class TestWatchStat:
    """Tests for watched-hours truncation."""

    @pytest.mark.parametrize(
        ("total_time", "hours"),
        [(0, 0), (3599, 0), (3600, 1), (7199, 1), (90000, 25)],
    )
    def test_watched_hours_truncates(self, total_time, hours):
        stat = WatchStat(query_days=0, total_plays=1, total_time=total_time)
        assert stat.watched_hours == hours


class TestRoleConnectionMetadata:
    """Tests for the metadata document."""

    def test_for_subscriber(self):
        stat = WatchStat(query_days=0, total_plays=3, total_time=36000)
        document = RoleConnectionMetadata.for_subscriber("Displex", stat, "plexfan")
        assert document.platform_name == "Displex"
        assert document.platform_username == "plexfan"
        assert document.watched_hours == 10
        assert document.is_subscribed is True

    def test_negative_hours_rejected(self):
        with pytest.raises(ValueError):
            RoleConnectionMetadata(platform_name="x", watched_hours=-1, is_subscribed=True)

    def test_registered_definitions(self):
        by_key = {d.key: d for d in ROLE_CONNECTION_METADATA}
        assert by_key["is_subscribed"].type == 7
        assert by_key["watched_hours"].type == 2


class TestMisc:
    def test_default_quota_clears_everything(self):
        assert QuotaSettings.default() == QuotaSettings(None, None, None, None)

    def test_fingerprint_is_short_and_stable(self):
        assert token_fingerprint("secret") == token_fingerprint("secret")
        assert len(token_fingerprint("secret")) == 12
        assert "secret" not in token_fingerprint("secret")

    def test_pass_report_defaults(self):
        report = PassReport(job="x")
        assert report.completed is False
        assert report.processed == 0

"""Tests for the token refresher."""

import threading
import time
from datetime import datetime, timedelta, timezone
from unittest.mock import Mock

import pytest
import responses

from tdsync.auth.oauth import OAuthClient, TokenGrant
from tdsync.auth.refresher import TokenRefresher
from tdsync.auth.token_store import Credential, MemoryTokenStore
from tdsync.errors import (
    AuthError,
    NotConnectedError,
    PersistenceError,
    RefreshError,
    TransientProviderError,
)
from tdsync.sync.retry import RetryConfig

T0 = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)
SIX_DAYS = timedelta(days=6)


class FakeClock:
    """Settable clock."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now


class TestTokenRefresher:
    """Tests for TokenRefresher."""

    def setup_method(self):
        """Set up test fixtures."""
        self.clock = FakeClock(T0)
        self.store = MemoryTokenStore(
            Credential(
                access_token="access-1",
                refresh_token="refresh-1",
                issued_at=T0,
                lifespan=SIX_DAYS,
            )
        )
        self.oauth = Mock(spec=OAuthClient)
        self.oauth.refresh.return_value = TokenGrant(
            access_token="access-2", refresh_token="refresh-2"
        )
        self.refresher = TokenRefresher(
            store=self.store,
            oauth=self.oauth,
            expiry_buffer_seconds=259200,
            lifespan_seconds=int(SIX_DAYS.total_seconds()),
            retry_config=RetryConfig(max_retries=3, base_delay=0),
            clock=self.clock,
        )

    def test_no_refresh_outside_buffer(self):
        """Test T0+71h returns the stored credential without a network call."""
        self.clock.now = T0 + timedelta(hours=71)

        cred = self.refresher.ensure_valid_credential()

        assert cred.access_token == "access-1"
        self.oauth.refresh.assert_not_called()

    def test_one_refresh_inside_buffer(self):
        """Test T0+73h triggers exactly one refresh and stores the result."""
        self.clock.now = T0 + timedelta(hours=73)

        cred = self.refresher.ensure_valid_credential()

        assert cred.access_token == "access-2"
        assert cred.refresh_token == "refresh-2"
        assert cred.issued_at == self.clock.now
        assert cred.expires_at == self.clock.now + SIX_DAYS
        self.oauth.refresh.assert_called_once_with("refresh-1")
        assert self.store.load() == cred

        # The fresh credential is outside the buffer again
        self.refresher.ensure_valid_credential()
        self.oauth.refresh.assert_called_once()

    def test_expires_in_sets_lifespan(self):
        """Test the provider's expires_in overrides the default lifespan."""
        self.clock.now = T0 + timedelta(hours=73)
        self.oauth.refresh.return_value = TokenGrant(access_token="access-2", expires_in=3600 * 100)

        cred = self.refresher.ensure_valid_credential()

        assert cred.lifespan == timedelta(hours=100)
        # The old refresh token is kept when the provider omits a new one
        assert cred.refresh_token == "refresh-1"

    @pytest.mark.parametrize("expires_in", [-1, 0, 60, 259200])
    def test_expires_in_within_buffer_ignored(self, expires_in):
        """Test an expires_in not past the refresh buffer falls back to the default lifespan."""
        self.clock.now = T0 + timedelta(hours=73)
        self.oauth.refresh.return_value = TokenGrant(access_token="access-2", expires_in=expires_in)

        cred = self.refresher.ensure_valid_credential()

        assert cred.lifespan == SIX_DAYS
        assert not cred.needs_refresh(self.clock.now, self.refresher.buffer)

    def test_unexpected_refresh_error_returns_valid_stale_credential(self):
        """Test an unexpected refresh exception still serves an unexpired credential."""
        self.clock.now = T0 + timedelta(hours=73)
        self.oauth.refresh.side_effect = ValueError("Expecting value: line 1 column 1")

        cred = self.refresher.ensure_valid_credential()

        assert cred.access_token == "access-1"
        assert self.oauth.refresh.call_count == 1

    def test_unexpected_refresh_error_on_expired_credential_raises(self):
        """Test an unexpected refresh exception surfaces as RefreshError."""
        self.clock.now = T0 + SIX_DAYS + timedelta(minutes=1)
        self.oauth.refresh.side_effect = ValueError("Expecting value: line 1 column 1")

        with pytest.raises(RefreshError) as exc_info:
            self.refresher.ensure_valid_credential()

        assert not exc_info.value.exhausted
        assert isinstance(exc_info.value.last_error, ValueError)

    @responses.activate
    def test_html_token_response_returns_valid_stale_credential(self):
        """Test an HTML token endpoint response keeps the current credential."""
        token_url = "https://td.example/oauth/v2/token"
        responses.add(
            responses.POST,
            token_url,
            body="<html>oops</html>",
            status=200,
            content_type="text/html",
        )
        oauth = OAuthClient(
            client_id="client",
            client_secret="secret",
            redirect_uri="https://app.example/callback",
            token_url=token_url,
        )
        refresher = TokenRefresher(
            store=self.store,
            oauth=oauth,
            expiry_buffer_seconds=259200,
            lifespan_seconds=int(SIX_DAYS.total_seconds()),
            retry_config=RetryConfig(max_retries=3, base_delay=0),
            clock=self.clock,
        )
        self.clock.now = T0 + timedelta(hours=73)

        cred = refresher.ensure_valid_credential()

        assert cred.access_token == "access-1"
        assert len(responses.calls) == 1
        oauth.close()

    def test_not_connected(self):
        """Test a missing credential raises NotConnectedError."""
        self.store.delete()

        with pytest.raises(NotConnectedError, match="not connected"):
            self.refresher.ensure_valid_credential()

    def test_transient_failures_retried(self):
        """Test transient refresh failures are retried within budget."""
        self.clock.now = T0 + timedelta(hours=73)
        self.oauth.refresh.side_effect = [
            TransientProviderError("timeout"),
            TransientProviderError("timeout"),
            TokenGrant(access_token="access-2", refresh_token="refresh-2"),
        ]

        cred = self.refresher.ensure_valid_credential()

        assert cred.access_token == "access-2"
        assert self.oauth.refresh.call_count == 3

    def test_exhausted_refresh_returns_valid_stale_credential(self):
        """Test a failed refresh keeps serving an unexpired credential."""
        self.clock.now = T0 + timedelta(hours=73)
        self.oauth.refresh.side_effect = TransientProviderError("down")

        cred = self.refresher.ensure_valid_credential()

        assert cred.access_token == "access-1"
        assert self.oauth.refresh.call_count == 4

    def test_exhausted_refresh_on_expired_credential_raises(self):
        """Test an expired credential is never returned."""
        self.clock.now = T0 + SIX_DAYS + timedelta(minutes=1)
        self.oauth.refresh.side_effect = TransientProviderError("down")

        with pytest.raises(RefreshError) as exc_info:
            self.refresher.ensure_valid_credential()

        assert exc_info.value.exhausted
        assert exc_info.value.attempts == 4

    def test_rejected_refresh_not_retried(self):
        """Test an invalid_grant is not retried."""
        self.clock.now = T0 + SIX_DAYS + timedelta(minutes=1)
        self.oauth.refresh.side_effect = AuthError("invalid_grant")

        with pytest.raises(RefreshError) as exc_info:
            self.refresher.ensure_valid_credential()

        assert not exc_info.value.exhausted
        assert self.oauth.refresh.call_count == 1

    def test_store_failure_is_refresh_error(self):
        """Test a keychain write failure surfaces as RefreshError."""
        self.clock.now = T0 + SIX_DAYS + timedelta(minutes=1)
        self.store.save = Mock(side_effect=PersistenceError("locked"))

        with pytest.raises(RefreshError, match="could not be stored"):
            self.refresher.ensure_valid_credential()

    def test_force_refresh(self):
        """Test force_refresh ignores local expiry bookkeeping."""
        cred = self.refresher.force_refresh("access-1")

        assert cred.access_token == "access-2"
        self.oauth.refresh.assert_called_once()

    def test_force_refresh_skipped_when_already_rotated(self):
        """Test a rejected token that was already replaced is not refreshed again."""
        cred = self.refresher.force_refresh("some-older-token")

        assert cred.access_token == "access-1"
        self.oauth.refresh.assert_not_called()

    def test_concurrent_callers_share_one_refresh(self):
        """Test concurrent callers inside the buffer cause one network call."""
        self.clock.now = T0 + timedelta(hours=73)
        started = threading.Event()
        release = threading.Event()

        def slow_refresh(refresh_token):
            started.set()
            release.wait(timeout=5)
            return TokenGrant(access_token="access-2", refresh_token="refresh-2")

        self.oauth.refresh.side_effect = slow_refresh
        results = []
        errors = []

        def worker():
            try:
                results.append(self.refresher.ensure_valid_credential())
            except Exception as e:
                errors.append(e)

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for t in threads:
            t.start()
        assert started.wait(timeout=5)
        time.sleep(0.1)
        release.set()
        for t in threads:
            t.join(timeout=5)

        assert errors == []
        assert len(results) == 8
        assert {c.access_token for c in results} == {"access-2"}
        assert self.oauth.refresh.call_count == 1

    def test_connect(self):
        """Test connect stores the first credential."""
        self.store.delete()
        self.oauth.exchange_code.return_value = TokenGrant(
            access_token="access-new", refresh_token="refresh-new", expires_in=518400
        )

        cred = self.refresher.connect("code")

        assert cred.access_token == "access-new"
        assert self.store.load() == cred

    def test_disconnect(self):
        """Test disconnect removes the credential."""
        self.refresher.disconnect()

        assert self.refresher.current() is None

"""Tests for the OAuth token endpoint client."""

import pytest
from urllib.parse import parse_qs, urlparse

import requests
import responses

from tdsync.auth.oauth import OAuthClient
from tdsync.errors import AuthError, PermanentProviderError, TransientProviderError

TOKEN_URL = "https://td.example/oauth/v2/token"
AUTH_URL = "https://td.example/oauth/v2/auth"


class TestOAuthClient:
    """Tests for OAuthClient."""

    def setup_method(self):
        """Set up test fixtures."""
        self.client = OAuthClient(
            client_id="client",
            client_secret="secret",
            redirect_uri="https://app.example/callback",
            auth_url=AUTH_URL,
            token_url=TOKEN_URL,
        )

    def teardown_method(self):
        """Clean up."""
        self.client.close()

    def test_authorize_url(self):
        """Test the consent URL carries client id and redirect uri."""
        url = urlparse(self.client.authorize_url())
        query = parse_qs(url.query)

        assert f"{url.scheme}://{url.netloc}{url.path}" == AUTH_URL
        assert query["response_type"] == ["code"]
        assert query["client_id"] == ["client"]
        assert query["redirect_uri"] == ["https://app.example/callback"]

    @responses.activate
    def test_exchange_code(self):
        """Test authorization code exchange."""
        responses.add(
            responses.POST,
            TOKEN_URL,
            json={"access_token": "a1", "refresh_token": "r1", "expires_in": 518400},
            status=200,
        )

        grant = self.client.exchange_code("the-code")

        assert grant.access_token == "a1"
        assert grant.refresh_token == "r1"
        assert grant.expires_in == 518400
        body = parse_qs(responses.calls[0].request.body)
        assert body["grant_type"] == ["authorization_code"]
        assert body["code"] == ["the-code"]
        assert body["client_secret"] == ["secret"]

    @responses.activate
    def test_refresh(self):
        """Test refresh token grant."""
        responses.add(
            responses.POST,
            TOKEN_URL,
            json={"access_token": "a2", "refresh_token": "r2"},
            status=200,
        )

        grant = self.client.refresh("r1")

        assert grant.access_token == "a2"
        assert grant.expires_in is None
        body = parse_qs(responses.calls[0].request.body)
        assert body["grant_type"] == ["refresh_token"]
        assert body["refresh_token"] == ["r1"]

    @responses.activate
    def test_rejected_grant_is_auth_error(self):
        """Test a 400 invalid_grant raises AuthError."""
        responses.add(
            responses.POST,
            TOKEN_URL,
            json={"error": "invalid_grant"},
            status=400,
        )

        with pytest.raises(AuthError, match="invalid_grant"):
            self.client.refresh("revoked")

    @responses.activate
    def test_server_error_is_transient(self):
        """Test 5xx raises TransientProviderError."""
        responses.add(responses.POST, TOKEN_URL, status=503)

        with pytest.raises(TransientProviderError):
            self.client.refresh("r1")

    @responses.activate
    def test_timeout_is_transient(self):
        """Test timeouts raise TransientProviderError."""
        responses.add(responses.POST, TOKEN_URL, body=requests.exceptions.Timeout())

        with pytest.raises(TransientProviderError):
            self.client.refresh("r1")

    @responses.activate
    def test_other_4xx_is_permanent(self):
        """Test other client errors raise PermanentProviderError."""
        responses.add(responses.POST, TOKEN_URL, status=403)

        with pytest.raises(PermanentProviderError) as exc_info:
            self.client.refresh("r1")

        assert exc_info.value.status_code == 403

    @responses.activate
    def test_missing_access_token(self):
        """Test a success response without access_token is rejected."""
        responses.add(responses.POST, TOKEN_URL, json={"token_type": "bearer"}, status=200)

        with pytest.raises(PermanentProviderError):
            self.client.refresh("r1")

    @responses.activate
    def test_non_json_success_is_permanent(self):
        """Test an HTML page served with 200 raises PermanentProviderError."""
        responses.add(
            responses.POST,
            TOKEN_URL,
            body="<html>oops</html>",
            status=200,
            content_type="text/html",
        )

        with pytest.raises(PermanentProviderError) as exc_info:
            self.client.refresh("r1")

        assert exc_info.value.status_code == 200

    @responses.activate
    def test_non_object_body_is_permanent(self):
        """Test a JSON list instead of an object is rejected."""
        responses.add(responses.POST, TOKEN_URL, json=["access_token"], status=200)

        with pytest.raises(PermanentProviderError):
            self.client.refresh("r1")

    @responses.activate
    def test_non_numeric_expires_in_is_permanent(self):
        """Test an unparseable expires_in is rejected."""
        responses.add(
            responses.POST,
            TOKEN_URL,
            json={"access_token": "a1", "expires_in": "soon"},
            status=200,
        )

        with pytest.raises(PermanentProviderError):
            self.client.refresh("r1")

"""OAuth grant calls against the TimeDoctor token endpoint."""

import logging
from dataclasses import dataclass
from typing import Optional
from urllib.parse import urlencode

import requests

from ..config import DEFAULT_AUTH_URL, DEFAULT_TOKEN_URL
from ..errors import AuthError, PermanentProviderError, TransientProviderError

__all__ = ["OAuthClient", "TokenGrant"]

logger = logging.getLogger(__name__)


@dataclass
class TokenGrant:
    """Token endpoint response."""

    access_token: str
    refresh_token: Optional[str] = None
    expires_in: Optional[int] = None  # seconds


class OAuthClient:
    """Exchanges authorization codes and refresh tokens for access tokens."""

    USER_AGENT = "TimeDoctor-Sync/1.0.0"

    def __init__(
        self,
        client_id: Optional[str],
        client_secret: Optional[str],
        redirect_uri: Optional[str] = None,
        auth_url: str = DEFAULT_AUTH_URL,
        token_url: str = DEFAULT_TOKEN_URL,
        timeout: int = 30,
        session: Optional[requests.Session] = None,
    ):
        """Initialize OAuth client.

        Args:
            client_id: OAuth client id
            client_secret: OAuth client secret
            redirect_uri: Callback URL registered with TimeDoctor
            auth_url: Authorization (consent) endpoint
            token_url: Token endpoint
            timeout: Request timeout in seconds
            session: Optional requests session (for dependency injection/testing)
        """
        self.client_id = client_id
        self.client_secret = client_secret
        self.redirect_uri = redirect_uri
        self.auth_url = auth_url
        self.token_url = token_url
        self.timeout = timeout
        self._session = session or requests.Session()
        self._owns_session = session is None

    def authorize_url(self) -> str:
        """URL the operator visits to grant access."""
        query = urlencode(
            {
                "response_type": "code",
                "client_id": self.client_id or "",
                "redirect_uri": self.redirect_uri or "",
            }
        )
        return f"{self.auth_url}?{query}"

    def exchange_code(self, code: str) -> TokenGrant:
        """Exchange an authorization code for the first token pair."""
        return self._grant(
            {
                "grant_type": "authorization_code",
                "code": code,
                "redirect_uri": self.redirect_uri,
            }
        )

    def refresh(self, refresh_token: str) -> TokenGrant:
        """Exchange a refresh token for a new token pair."""
        return self._grant(
            {
                "grant_type": "refresh_token",
                "refresh_token": refresh_token,
            }
        )

    def _grant(self, payload: dict) -> TokenGrant:
        """POST to the token endpoint and classify failures.

        Raises:
            TransientProviderError: Network failure, timeout, 5xx or 429
            AuthError: Grant rejected (bad code, revoked refresh token)
            PermanentProviderError: Any other 4xx, or a malformed token response
        """
        data = {
            "client_id": self.client_id,
            "client_secret": self.client_secret,
            **payload,
        }
        headers = {"Accept": "application/json", "User-Agent": self.USER_AGENT}
        grant_type = payload["grant_type"]

        try:
            response = self._session.post(
                self.token_url, data=data, headers=headers, timeout=self.timeout
            )
        except requests.exceptions.Timeout:
            raise TransientProviderError("Token request timed out")
        except requests.exceptions.ConnectionError:
            raise TransientProviderError("Cannot connect to TimeDoctor")

        if response.status_code == 429 or response.status_code >= 500:
            raise TransientProviderError(
                f"Token endpoint returned {response.status_code}"
            )

        if response.status_code in (400, 401):
            error = _error_code(response)
            logger.error(f"TimeDoctor rejected {grant_type} grant: {error}")
            raise AuthError(f"TimeDoctor rejected the {grant_type} grant ({error})")

        if not response.ok:
            raise PermanentProviderError(
                f"Token endpoint error ({response.status_code})",
                status_code=response.status_code,
            )

        try:
            body = response.json()
        except ValueError:
            logger.error(f"Token endpoint returned a non-JSON body for {grant_type} grant")
            raise PermanentProviderError(
                "Invalid JSON from token endpoint", status_code=response.status_code
            )
        if not isinstance(body, dict) or not body.get("access_token"):
            raise PermanentProviderError("Token response missing access_token")

        expires_in = body.get("expires_in")
        if expires_in is not None:
            try:
                expires_in = int(expires_in)
            except (TypeError, ValueError):
                raise PermanentProviderError(
                    f"Invalid expires_in in token response: {expires_in!r}"
                )
        return TokenGrant(
            access_token=body["access_token"],
            refresh_token=body.get("refresh_token"),
            expires_in=expires_in,
        )

    def close(self) -> None:
        """Close the session if we own it."""
        if self._owns_session and self._session is not None:
            self._session.close()
            self._session = None


def _error_code(response: requests.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return f"HTTP {response.status_code}"
    return body.get("error_description") or body.get("error") or f"HTTP {response.status_code}"

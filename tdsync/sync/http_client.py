"""Base HTTP client with auth injection, retry logic and error classification."""

import logging
from typing import Optional

import requests

from ..errors import AuthError, PermanentProviderError, TransientProviderError
from .protocols import CredentialProviderProtocol
from .retry import RetryConfig, RetryExhausted, retry_with_backoff

__all__ = ["BaseApiClient"]

logger = logging.getLogger(__name__)


class BaseApiClient:
    """Base HTTP client for the TimeDoctor API.

    Handles:
    - Session management
    - Bearer token injection from the credential provider
    - One forced refresh-and-retry when a token is rejected early
    - Retry of transient failures (timeouts, 5xx, 429)
    - Error classification

    Single Responsibility: HTTP communication only.
    """

    DEFAULT_RETRY_CONFIG = RetryConfig(
        max_retries=3,
        base_delay=5.0,
        max_delay=60.0,
    )

    USER_AGENT = "TimeDoctor-Sync/1.0.0"

    def __init__(
        self,
        api_url: str,
        credentials: CredentialProviderProtocol,
        timeout: int = 30,
        retry_config: Optional[RetryConfig] = None,
        session: Optional[requests.Session] = None,
    ):
        """Initialize base API client.

        Args:
            api_url: TimeDoctor API base URL
            credentials: Source of valid access tokens
            timeout: Request timeout in seconds
            retry_config: Retry budget for transient failures
            session: Optional requests session (for dependency injection/testing)
        """
        self.api_url = api_url.rstrip("/")
        self.credentials = credentials
        self.timeout = timeout
        self.retry_config = retry_config or self.DEFAULT_RETRY_CONFIG
        self._session = session or requests.Session()
        self._owns_session = session is None  # Track if we created the session

    def _get_headers(self, token: str) -> dict:
        """Get request headers with authentication."""
        return {
            "Accept": "application/json",
            "User-Agent": self.USER_AGENT,
            "Authorization": f"Bearer {token}",
        }

    def _request(
        self,
        method: str,
        endpoint: str,
        params: Optional[dict] = None,
        retry: bool = True,
    ) -> dict:
        """Make an authenticated request to the TimeDoctor API.

        Args:
            method: HTTP method
            endpoint: API endpoint (relative to api_url)
            params: Query parameters
            retry: Whether to retry on transient failures

        Returns:
            Response data as dict

        Raises:
            AuthError: Token rejected even after a forced refresh
            RefreshError: The forced refresh itself failed
            TransientProviderError: Transient failures outlasted the retry budget
            PermanentProviderError: Other 4xx responses (not retried)
        """
        credential = self.credentials.ensure_valid_credential()
        try:
            return self._send(method, endpoint, params, credential.access_token, retry)
        except AuthError:
            logger.info(
                f"TimeDoctor rejected the access token for {endpoint}, forcing a refresh"
            )
            credential = self.credentials.force_refresh(credential.access_token)
            return self._send(method, endpoint, params, credential.access_token, retry)

    def _send(
        self,
        method: str,
        endpoint: str,
        params: Optional[dict],
        token: str,
        retry: bool,
    ) -> dict:
        url = f"{self.api_url}/{endpoint.lstrip('/')}"
        headers = self._get_headers(token)

        def do_request() -> dict:
            logger.debug(f"{method} {url} params={params}")
            try:
                response = self._session.request(
                    method, url, params=params, headers=headers, timeout=self.timeout
                )
            except requests.exceptions.Timeout:
                raise TransientProviderError("Request timed out")
            except requests.exceptions.ConnectionError:
                raise TransientProviderError("Cannot connect to TimeDoctor API")

            if response.status_code == 401:
                raise AuthError("Invalid or expired access token")

            if response.status_code == 429:
                raise TransientProviderError(
                    "Rate limit exceeded", retry_after=_retry_after(response)
                )

            # Server errors (5xx) are retryable
            if response.status_code >= 500:
                raise TransientProviderError(f"Server error: {response.status_code}")

            if not response.ok:
                detail = _error_detail(response)
                logger.error(
                    f"TimeDoctor API error on {endpoint} ({response.status_code}): {detail}"
                )
                raise PermanentProviderError(
                    f"API error ({response.status_code}): {detail}",
                    status_code=response.status_code,
                )

            if not response.content:
                return {}
            try:
                body = response.json()
            except ValueError:
                logger.error(f"TimeDoctor returned a non-JSON body for {endpoint}")
                raise PermanentProviderError(
                    "Invalid JSON response from TimeDoctor",
                    status_code=response.status_code,
                )
            if not isinstance(body, (dict, list)):
                raise PermanentProviderError(
                    f"Unexpected response body type from TimeDoctor: {type(body).__name__}",
                    status_code=response.status_code,
                )
            return body

        if not retry:
            return do_request()

        try:
            return retry_with_backoff(
                do_request,
                config=self.retry_config,
                retryable_exceptions=(TransientProviderError,),
            )
        except RetryExhausted as e:
            if e.last_error:
                raise TransientProviderError(
                    f"{e.last_error} (after {e.attempts} attempts)"
                ) from e.last_error
            raise TransientProviderError("Request failed after retries") from e

    def close(self) -> None:
        """Close the session if we own it."""
        if self._owns_session and self._session is not None:
            self._session.close()
            self._session = None

    def __enter__(self) -> "BaseApiClient":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()


def _retry_after(response: requests.Response) -> Optional[float]:
    value = response.headers.get("Retry-After")
    if value is None:
        return None
    try:
        return float(value)
    except ValueError:
        return None


def _error_detail(response: requests.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text[:200]
    if isinstance(body, dict):
        return body.get("message") or body.get("error_description") or body.get("error") or ""
    return ""

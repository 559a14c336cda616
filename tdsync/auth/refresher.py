"""Token lifecycle: proactive refresh with bounded retries and a single-flight gate.

A credential is refreshed once ``now`` enters the buffer before its expiry,
so long batch runs never see a token expire mid-run. Only one refresh may
be in flight; concurrent callers wait for and share its outcome, since a
second refresh would invalidate the token issued by the first.
"""

import logging
import threading
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from ..errors import (
    AuthError,
    NotConnectedError,
    PermanentProviderError,
    PersistenceError,
    RefreshError,
    TransientProviderError,
)
from ..sync.retry import RetryConfig, RetryExhausted, retry_with_backoff
from .oauth import OAuthClient, TokenGrant
from .token_store import Credential, TokenStore

__all__ = ["TokenRefresher"]

logger = logging.getLogger(__name__)


class _RefreshCall:
    """Outcome of one in-flight refresh, shared by every waiter."""

    def __init__(self):
        self.done = threading.Event()
        self.result: Optional[Credential] = None
        self.error: Optional[Exception] = None


class TokenRefresher:
    """Hands out credentials that are valid for at least the next provider call."""

    def __init__(
        self,
        store: TokenStore,
        oauth: OAuthClient,
        expiry_buffer_seconds: int = 259200,
        lifespan_seconds: int = 6 * 24 * 3600,
        retry_config: Optional[RetryConfig] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        """Initialize the refresher.

        Args:
            store: Credential persistence
            oauth: Token endpoint client
            expiry_buffer_seconds: Refresh this long before expiry
            lifespan_seconds: Lifespan used when the provider omits expires_in
            retry_config: Retry budget for refresh calls
            clock: Returns the current UTC time (for testing)
        """
        self.store = store
        self.oauth = oauth
        self.buffer = timedelta(seconds=expiry_buffer_seconds)
        self.lifespan = timedelta(seconds=lifespan_seconds)
        self.retry_config = retry_config or RetryConfig(max_retries=3, base_delay=5.0)
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._lock = threading.Lock()
        self._inflight: Optional[_RefreshCall] = None

    def ensure_valid_credential(self) -> Credential:
        """Return a usable credential, refreshing first if inside the buffer.

        If the refresh fails but the current credential has not expired yet,
        the current one is returned and the next call tries again.

        Raises:
            NotConnectedError: No credential stored
            RefreshError: Refresh failed and the current credential is expired
        """
        credential = self.store.load()
        if credential is None:
            raise NotConnectedError()

        if not credential.needs_refresh(self._clock(), self.buffer):
            return credential

        logger.info(
            f"Token expires at {credential.expires_at.isoformat()}, refreshing proactively"
        )
        try:
            return self._refresh_shared(credential.access_token, force=False)
        except RefreshError as e:
            if not credential.is_expired(self._clock()):
                logger.warning(
                    f"Token refresh failed ({e}); current token stays valid until "
                    f"{credential.expires_at.isoformat()}"
                )
                return credential
            raise

    def force_refresh(self, rejected_token: Optional[str] = None) -> Credential:
        """Refresh regardless of local expiry bookkeeping.

        Used when the provider rejects a token early. If the stored token
        already differs from ``rejected_token``, another caller refreshed it
        and that credential is returned without a network call.
        """
        return self._refresh_shared(rejected_token, force=True)

    def connect(self, code: str) -> Credential:
        """Exchange an authorization code and store the first credential."""
        grant = self.oauth.exchange_code(code)
        credential = self._credential_from(grant, refresh_token=None)
        with self._lock:
            self.store.save(credential)
        logger.info(f"Connected to TimeDoctor (expires {credential.expires_at.isoformat()})")
        return credential

    def disconnect(self) -> None:
        """Drop the stored credential."""
        with self._lock:
            self.store.delete()
        logger.info("Disconnected from TimeDoctor")

    def current(self) -> Optional[Credential]:
        """Stored credential without any refresh."""
        return self.store.load()

    def _refresh_shared(self, trigger_token: Optional[str], force: bool) -> Credential:
        with self._lock:
            call = self._inflight
            leader = call is None
            if leader:
                call = self._inflight = _RefreshCall()

        if leader:
            try:
                call.result = self._refresh(trigger_token, force)
            except Exception as e:
                call.error = e
            finally:
                with self._lock:
                    self._inflight = None
                call.done.set()
        else:
            logger.debug("Waiting for in-flight token refresh")
            call.done.wait()

        if call.error is not None:
            raise call.error
        return call.result

    def _refresh(self, trigger_token: Optional[str], force: bool) -> Credential:
        current = self.store.load()
        if current is None:
            raise NotConnectedError()

        # Someone refreshed between our check and taking the gate
        if trigger_token is not None and current.access_token != trigger_token:
            if force or not current.needs_refresh(self._clock(), self.buffer):
                return current

        if not current.refresh_token:
            raise RefreshError("No refresh token stored; reconnect TimeDoctor")

        def on_retry(attempt: int, error: Exception, delay: float) -> None:
            logger.warning(
                f"Token refresh attempt {attempt + 1} failed: {error}. "
                f"Retrying in {delay:.1f}s..."
            )

        try:
            grant = retry_with_backoff(
                lambda: self.oauth.refresh(current.refresh_token),
                config=self.retry_config,
                on_retry=on_retry,
                retryable_exceptions=(TransientProviderError,),
            )
        except RetryExhausted as e:
            logger.error(f"Token refresh failed after {e.attempts} attempts: {e.last_error}")
            raise RefreshError(
                f"Token refresh failed after {e.attempts} attempts: {e.last_error}",
                exhausted=True,
                attempts=e.attempts,
                last_error=e.last_error,
            ) from e.last_error
        except (AuthError, PermanentProviderError) as e:
            raise RefreshError(
                f"Token refresh rejected: {e}", attempts=1, last_error=e
            ) from e
        except Exception as e:
            logger.exception(f"Unexpected error during token refresh: {e}")
            raise RefreshError(f"Token refresh failed: {e}", attempts=1, last_error=e) from e

        credential = self._credential_from(grant, refresh_token=current.refresh_token)
        try:
            self.store.save(credential)
        except PersistenceError as e:
            raise RefreshError(f"Refreshed token could not be stored: {e}", last_error=e) from e

        logger.info(f"TimeDoctor token refreshed, expires {credential.expires_at.isoformat()}")
        return credential

    def _credential_from(self, grant: TokenGrant, refresh_token: Optional[str]) -> Credential:
        lifespan = self.lifespan
        if grant.expires_in is not None:
            granted = timedelta(seconds=grant.expires_in)
            if granted > self.buffer:
                lifespan = granted
            else:
                logger.warning(
                    f"Ignoring expires_in={grant.expires_in}s (not past the refresh buffer); "
                    f"assuming {self.lifespan}"
                )
        return Credential.issue(
            access_token=grant.access_token,
            refresh_token=grant.refresh_token or refresh_token,
            lifespan=lifespan,
            now=self._clock(),
        )

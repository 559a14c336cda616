"""Durable storage for the provider Credential using the system keychain."""

import json
import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional, Protocol, runtime_checkable

import keyring
from keyring.errors import KeyringError, PasswordDeleteError

from ..errors import PersistenceError

__all__ = [
    "Credential",
    "TokenStore",
    "KeychainTokenStore",
    "MemoryTokenStore",
]

logger = logging.getLogger(__name__)

SERVICE_NAME = "TimeDoctor Sync"
ACCOUNT_NAME = "timedoctor_v1_token"


@dataclass(frozen=True)
class Credential:
    """Access token plus its validity window."""

    access_token: str
    refresh_token: Optional[str]
    issued_at: datetime
    lifespan: timedelta

    @property
    def expires_at(self) -> datetime:
        return self.issued_at + self.lifespan

    @classmethod
    def issue(
        cls,
        access_token: str,
        refresh_token: Optional[str],
        lifespan: timedelta,
        now: Optional[datetime] = None,
    ) -> "Credential":
        """Create a credential issued at ``now``."""
        return cls(
            access_token=access_token,
            refresh_token=refresh_token,
            issued_at=now or datetime.now(timezone.utc),
            lifespan=lifespan,
        )

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at

    def needs_refresh(self, now: datetime, buffer: timedelta) -> bool:
        """True once ``now`` is inside the refresh buffer before expiry."""
        return now >= self.expires_at - buffer

    def to_json(self) -> str:
        return json.dumps(
            {
                "access_token": self.access_token,
                "refresh_token": self.refresh_token,
                "issued_at": self.issued_at.isoformat(),
                "lifespan_seconds": int(self.lifespan.total_seconds()),
            }
        )

    @classmethod
    def from_json(cls, data: str) -> "Credential":
        parsed = json.loads(data)
        return cls(
            access_token=parsed["access_token"],
            refresh_token=parsed.get("refresh_token"),
            issued_at=datetime.fromisoformat(parsed["issued_at"]),
            lifespan=timedelta(seconds=parsed["lifespan_seconds"]),
        )

    def __repr__(self) -> str:
        return (
            f"Credential(issued_at={self.issued_at.isoformat()}, "
            f"expires_at={self.expires_at.isoformat()})"
        )


@runtime_checkable
class TokenStore(Protocol):
    """Interface for Credential persistence (one credential per connection)."""

    def load(self) -> Optional[Credential]: ...

    def save(self, credential: Credential) -> None: ...

    def delete(self) -> None: ...


class KeychainTokenStore:
    """Stores the Credential as JSON in the system keychain."""

    def __init__(self, service_name: str = SERVICE_NAME, account: str = ACCOUNT_NAME):
        """Initialize keychain token store.

        Args:
            service_name: Service name for keychain entries
            account: Account name (one entry per provider connection)
        """
        self.service_name = service_name
        self.account = account

    def save(self, credential: Credential) -> None:
        """Replace the stored credential.

        Raises:
            PersistenceError: If the keychain rejects the write
        """
        try:
            keyring.set_password(self.service_name, self.account, credential.to_json())
            logger.info(f"Credential stored (expires {credential.expires_at.isoformat()})")
        except KeyringError as e:
            logger.error(f"Failed to store credential: {e}")
            raise PersistenceError(f"Failed to store credential: {e}") from e

    def load(self) -> Optional[Credential]:
        """Load the credential from keychain.

        Returns:
            Credential if found and readable, None otherwise
        """
        try:
            data = keyring.get_password(self.service_name, self.account)
            if data:
                return Credential.from_json(data)
            return None
        except KeyringError as e:
            logger.error(f"Failed to load credential: {e}")
            return None
        except (json.JSONDecodeError, KeyError, ValueError) as e:
            logger.error(f"Invalid credential format: {e}")
            return None

    def delete(self) -> None:
        """Delete the stored credential (no-op if absent)."""
        try:
            keyring.delete_password(self.service_name, self.account)
            logger.info("Credential deleted")
        except PasswordDeleteError:
            # Nothing stored
            pass
        except KeyringError as e:
            logger.error(f"Failed to delete credential: {e}")
            raise PersistenceError(f"Failed to delete credential: {e}") from e


class MemoryTokenStore:
    """Process-local credential store."""

    def __init__(self, credential: Optional[Credential] = None):
        self._credential = credential
        self._lock = threading.Lock()

    def load(self) -> Optional[Credential]:
        with self._lock:
            return self._credential

    def save(self, credential: Credential) -> None:
        with self._lock:
            self._credential = credential

    def delete(self) -> None:
        with self._lock:
            self._credential = None

"""Auth module - provider OAuth grants, credential storage and refresh."""

from .oauth import OAuthClient, TokenGrant
from .refresher import TokenRefresher
from .token_store import Credential, KeychainTokenStore, MemoryTokenStore, TokenStore

__all__ = [
    "OAuthClient",
    "TokenGrant",
    "TokenRefresher",
    "Credential",
    "KeychainTokenStore",
    "MemoryTokenStore",
    "TokenStore",
]

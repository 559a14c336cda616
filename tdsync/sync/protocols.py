"""Protocol types for SyncOrchestrator dependencies.

Defines the interfaces the orchestrator and provider client require from
their collaborators, enabling easier testing and looser coupling.
"""

from datetime import datetime
from typing import TYPE_CHECKING, Optional, Protocol, runtime_checkable

from .models import EntityType, Page, PageCursor, SyncWindow

if TYPE_CHECKING:
    from ..auth.token_store import Credential
    from .ledger import RunHandle
    from .storage import UpsertResult


@runtime_checkable
class CredentialProviderProtocol(Protocol):
    """Interface for obtaining a usable provider credential."""

    def ensure_valid_credential(self) -> "Credential": ...

    def force_refresh(self, rejected_token: Optional[str] = None) -> "Credential": ...


@runtime_checkable
class ProviderClientProtocol(Protocol):
    """Interface for reading pages of records from TimeDoctor."""

    def fetch_page(
        self, entity_type: EntityType, window: SyncWindow, cursor: PageCursor
    ) -> Page: ...


@runtime_checkable
class PersistencePortProtocol(Protocol):
    """Interface for storing synced records locally."""

    def upsert(self, entity_type: EntityType, records: list) -> "UpsertResult": ...

    def read_last_synced_marker(self, entity_type: EntityType) -> Optional[datetime]: ...

    def mark_synced(self, entity_type: EntityType, when: datetime) -> None: ...

    def external_ids(self, entity_type: EntityType) -> list[str]: ...


@runtime_checkable
class LedgerProtocol(Protocol):
    """Interface for the append-only sync run ledger."""

    def record_start(
        self,
        entity_type: Optional[EntityType] = None,
        window: Optional[SyncWindow] = None,
        parent: Optional["RunHandle"] = None,
    ) -> "RunHandle": ...

    def record_end(
        self,
        handle: "RunHandle",
        status: str,
        records_processed: int = 0,
        errors: Optional[list[str]] = None,
    ) -> None: ...

    def is_window_synced(self, entity_type: EntityType, window: SyncWindow) -> bool: ...

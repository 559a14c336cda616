"""Sync module - reads TimeDoctor records and stores them locally."""

from .ledger import RunHandle, SyncRunLedger, SyncRunRecord
from .models import (
    EntityType,
    Page,
    PageCursor,
    RemoteProject,
    RemoteTask,
    RemoteUser,
    RemoteWorklog,
    SyncWindow,
)
from .orchestrator import RunState, SyncOrchestrator, SyncRunReport
from .protocols import (
    CredentialProviderProtocol,
    LedgerProtocol,
    PersistencePortProtocol,
    ProviderClientProtocol,
)
from .retry import RetryConfig, retry_with_backoff
from .storage import LocalStore, UpsertResult
from .td_client import TimeDoctorClient

__all__ = [
    "EntityType",
    "Page",
    "PageCursor",
    "RemoteProject",
    "RemoteTask",
    "RemoteUser",
    "RemoteWorklog",
    "SyncWindow",
    "RunHandle",
    "SyncRunLedger",
    "SyncRunRecord",
    "RunState",
    "SyncOrchestrator",
    "SyncRunReport",
    "CredentialProviderProtocol",
    "LedgerProtocol",
    "PersistencePortProtocol",
    "ProviderClientProtocol",
    "RetryConfig",
    "retry_with_backoff",
    "LocalStore",
    "UpsertResult",
    "TimeDoctorClient",
]

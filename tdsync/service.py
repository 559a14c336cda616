"""Internal API boundary used by the web layer: connect, status, sync, disconnect."""

import logging
import threading
from dataclasses import dataclass
from datetime import date, datetime
from typing import Optional

from .auth import Credential, TokenRefresher
from .errors import AuthError, RefreshError, TimeDoctorError
from .sync.ledger import STATUS_FAILED, RunHandle, SyncRunLedger
from .sync.models import EntityType
from .sync.orchestrator import RunState, SyncOrchestrator, SyncRunReport

__all__ = ["TimeDoctorService", "ConnectionStatus"]

logger = logging.getLogger(__name__)

NOT_CONNECTED_MESSAGE = "Time Doctor is not connected"


@dataclass
class ConnectionStatus:
    """Provider connection state shown in the admin UI."""

    connected: bool = False
    expires_at: Optional[datetime] = None
    message: Optional[str] = None

    @classmethod
    def from_credential(cls, credential: Credential, message: str) -> "ConnectionStatus":
        return cls(connected=True, expires_at=credential.expires_at, message=message)


class TimeDoctorService:
    """Facade over the token refresher and sync orchestrator."""

    def __init__(
        self,
        refresher: TokenRefresher,
        orchestrator: SyncOrchestrator,
        ledger: SyncRunLedger,
    ):
        self.refresher = refresher
        self.orchestrator = orchestrator
        self.ledger = ledger
        self._reports: dict[int, SyncRunReport] = {}
        self._last_report: Optional[SyncRunReport] = None
        self._reports_lock = threading.Lock()

    def authorize_url(self) -> str:
        """Provider consent URL for the admin "Connect" button."""
        return self.refresher.oauth.authorize_url()

    def connect(self, code: str) -> ConnectionStatus:
        """Finish the OAuth flow with the code from the provider callback."""
        try:
            credential = self.refresher.connect(code)
        except TimeDoctorError as e:
            logger.warning(f"TimeDoctor connect failed: {e}")
            return ConnectionStatus(connected=False, message=f"Authorization failed: {e}")
        return ConnectionStatus.from_credential(credential, "Connected to TimeDoctor")

    def get_connection_status(self) -> ConnectionStatus:
        """Current connection state, refreshing the token if it is due."""
        if self.refresher.current() is None:
            return ConnectionStatus(connected=False, message=NOT_CONNECTED_MESSAGE)

        try:
            credential = self.refresher.ensure_valid_credential()
        except (RefreshError, AuthError) as e:
            logger.warning(f"TimeDoctor token check failed: {e}")
            stale = self.refresher.current()
            return ConnectionStatus(
                connected=False,
                expires_at=stale.expires_at if stale else None,
                message="Token expired and refresh failed",
            )
        return ConnectionStatus.from_credential(credential, "Connected to TimeDoctor")

    def disconnect(self) -> None:
        """Forget the stored credential."""
        self.refresher.disconnect()

    def trigger_sync(
        self,
        entity_type: Optional[EntityType] = None,
        date_range: Optional[tuple[date, date]] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> RunHandle:
        """Run a sync now and return its ledger handle.

        Args:
            entity_type: Single entity type to sync (default: all)
            date_range: Inclusive worklog date range

        Raises:
            ValidationError: Malformed date range
        """
        if self.refresher.current() is None:
            report = self._not_connected_report(entity_type)
        else:
            report = self.orchestrator.run(
                entity_types=[entity_type] if entity_type else None,
                date_range=date_range,
                cancel_event=cancel_event,
            )

        with self._reports_lock:
            if report.handle.run_id is not None:
                self._reports[report.handle.run_id] = report
            self._last_report = report
        return report.handle

    def get_report(self, handle: RunHandle) -> Optional[SyncRunReport]:
        """In-process report for a run started by this service."""
        if handle.run_id is None:
            return None
        with self._reports_lock:
            return self._reports.get(handle.run_id)

    @property
    def last_report(self) -> Optional[SyncRunReport]:
        with self._reports_lock:
            return self._last_report

    def check_token(self) -> None:
        """Refresh the token if it is inside the expiry buffer."""
        try:
            self.refresher.ensure_valid_credential()
        except TimeDoctorError as e:
            logger.warning(f"Scheduled token check failed: {e}")

    def _not_connected_report(self, entity_type: Optional[EntityType]) -> SyncRunReport:
        logger.warning(f"Sync skipped: {NOT_CONNECTED_MESSAGE}")
        handle = self.ledger.record_start(entity_type)
        self.ledger.record_end(handle, STATUS_FAILED, 0, [NOT_CONNECTED_MESSAGE])
        return SyncRunReport(
            state=RunState.FAILED,
            handle=handle,
            message=NOT_CONNECTED_MESSAGE,
        )

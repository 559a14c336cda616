"""Sync orchestrator - drives TimeDoctor -> local store ingestion.

Entity types sync in a fixed order (users, projects, tasks, worklogs)
because later records reference ids from earlier ones. Each entity is
split into windows; each window is paged until the provider has no more
records, and every page is upserted in bounded batches. A failing window
is recorded and skipped over; only a complete users failure aborts the
run, since nothing downstream can be linked without users.
"""

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from enum import Enum
from typing import Callable, Iterable, Optional

from ..config import SyncSettings
from ..errors import PersistenceError, TimeDoctorError, ValidationError
from .ledger import (
    STATUS_FAILED,
    STATUS_PARTIAL,
    STATUS_SUCCESS,
    RunHandle,
)
from .models import EntityType, PageCursor, SyncWindow, split_date_range
from .protocols import LedgerProtocol, PersistencePortProtocol, ProviderClientProtocol
from .storage import UpsertResult

logger = logging.getLogger(__name__)


class RunState(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    PARTIALLY_FAILED = "partially_failed"
    FAILED = "failed"
    CANCELLED = "cancelled"


WINDOW_SUCCESS = "success"
WINDOW_FAILED = "failed"
WINDOW_SKIPPED = "skipped"
WINDOW_CANCELLED = "cancelled"


@dataclass
class WindowResult:
    """Outcome of syncing one window."""

    window: SyncWindow
    status: str = WINDOW_SUCCESS
    pages: int = 0
    upserted: UpsertResult = field(default_factory=UpsertResult)
    skipped_records: int = 0
    errors: list[str] = field(default_factory=list)

    @property
    def records_processed(self) -> int:
        return self.upserted.total

    @property
    def failed(self) -> bool:
        return self.status == WINDOW_FAILED


@dataclass
class EntityResult:
    """Outcome of one entity type within a run."""

    entity_type: EntityType
    windows: list[WindowResult] = field(default_factory=list)

    @property
    def attempted(self) -> list[WindowResult]:
        return [w for w in self.windows if w.status in (WINDOW_SUCCESS, WINDOW_FAILED)]

    @property
    def failed_entirely(self) -> bool:
        attempted = self.attempted
        return bool(attempted) and all(w.failed for w in attempted)

    @property
    def has_failures(self) -> bool:
        return any(w.failed for w in self.windows)

    @property
    def cancelled(self) -> bool:
        return any(w.status == WINDOW_CANCELLED for w in self.windows)

    @property
    def records_processed(self) -> int:
        return sum(w.records_processed for w in self.windows)

    @property
    def errors(self) -> list[str]:
        return [e for w in self.windows for e in w.errors]

    @property
    def ledger_status(self) -> str:
        if self.failed_entirely:
            return STATUS_FAILED
        if self.has_failures or self.cancelled:
            return STATUS_PARTIAL
        return STATUS_SUCCESS


@dataclass
class SyncRunReport:
    """Outcome of one orchestrator run."""

    state: RunState = RunState.PENDING
    entities: dict[EntityType, EntityResult] = field(default_factory=dict)
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    handle: Optional[RunHandle] = None
    message: Optional[str] = None

    @property
    def records_processed(self) -> int:
        return sum(e.records_processed for e in self.entities.values())

    @property
    def errors(self) -> list[str]:
        return [err for e in self.entities.values() for err in e.errors]

    @property
    def error_summary(self) -> Optional[str]:
        """Human-readable summary for the admin UI."""
        parts = []
        if self.message:
            parts.append(self.message)
        parts.extend(self.errors)
        return "; ".join(parts) if parts else None

    @property
    def duration_seconds(self) -> Optional[float]:
        if self.started_at is None or self.finished_at is None:
            return None
        return (self.finished_at - self.started_at).total_seconds()


_LEDGER_STATUS = {
    RunState.COMPLETED: STATUS_SUCCESS,
    RunState.PARTIALLY_FAILED: STATUS_PARTIAL,
    RunState.CANCELLED: STATUS_PARTIAL,
    RunState.FAILED: STATUS_FAILED,
}


class SyncOrchestrator:
    """Sequences entity syncs and converts provider failures into run status."""

    def __init__(
        self,
        client: ProviderClientProtocol,
        store: PersistencePortProtocol,
        ledger: LedgerProtocol,
        settings: Optional[SyncSettings] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.client = client
        self.store = store
        self.ledger = ledger
        self.settings = settings or SyncSettings()
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def plan_worklog_windows(
        self, date_range: Optional[tuple[date, date]] = None
    ) -> list[SyncWindow]:
        """Split a date range into worklog windows.

        Without a range, syncs from the last complete worklog sync (or the
        default lookback) through today.
        """
        today = self._clock().date()
        if date_range is None:
            try:
                marker = self.store.read_last_synced_marker(EntityType.WORKLOGS)
            except PersistenceError as e:
                logger.warning(f"Cannot read worklog sync marker, using default lookback: {e}")
                marker = None
            if marker is not None:
                start = min(marker.date(), today)
            else:
                start = today - timedelta(days=self.settings.default_lookback_days)
            date_range = (start, today)

        start, end = date_range
        return split_date_range(
            EntityType.WORKLOGS, start, end, self.settings.max_date_range_days
        )

    def run(
        self,
        entity_types: Optional[Iterable[EntityType]] = None,
        date_range: Optional[tuple[date, date]] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> SyncRunReport:
        """Run a sync.

        Args:
            entity_types: Entity types to sync (default: all, always in sync order)
            date_range: Inclusive worklog date range
            cancel_event: Set to stop the run at the next window boundary

        Returns:
            SyncRunReport with the final state

        Raises:
            ValidationError: Malformed date range (before any network call)
        """
        requested = set(entity_types) if entity_types else set(EntityType.ordered())
        ordered = [e for e in EntityType.ordered() if e in requested]
        report = SyncRunReport()

        worklog_windows: list[SyncWindow] = []
        if EntityType.WORKLOGS in requested:
            worklog_windows = self.plan_worklog_windows(date_range)

        report.state = RunState.RUNNING
        report.started_at = self._clock()
        run_entity = ordered[0] if len(ordered) == 1 else None
        report.handle = self.ledger.record_start(run_entity)
        logger.info(
            f"Sync run started: {', '.join(e.value for e in ordered)}"
            + (f" ({len(worklog_windows)} worklog windows)" if worklog_windows else "")
        )

        try:
            self._run_entities(ordered, worklog_windows, report, cancel_event)
        except Exception as e:
            logger.exception(f"Sync run aborted: {e}")
            report.state = RunState.FAILED
            report.message = f"Sync run aborted: {e}"
        finally:
            self._finish_run(report)
        return report

    def _run_entities(
        self,
        ordered: list[EntityType],
        worklog_windows: list[SyncWindow],
        report: SyncRunReport,
        cancel_event: Optional[threading.Event],
    ) -> None:
        for entity_type in ordered:
            if cancel_event is not None and cancel_event.is_set():
                report.state = RunState.CANCELLED
                break

            if entity_type == EntityType.WORKLOGS:
                windows = worklog_windows
            elif entity_type == EntityType.TASKS:
                try:
                    windows = self._task_windows()
                except PersistenceError as e:
                    logger.error(f"Cannot list synced users for task sync: {e}")
                    report.entities[entity_type] = self._failed_entity(
                        entity_type, report.handle, f"tasks: {e}"
                    )
                    continue
            else:
                windows = [SyncWindow(entity_type)]

            result = self._sync_entity(entity_type, windows, report.handle, cancel_event)
            report.entities[entity_type] = result

            if result.cancelled:
                report.state = RunState.CANCELLED
                break

            if entity_type == EntityType.USERS and result.failed_entirely:
                report.state = RunState.FAILED
                report.message = "User sync failed; later entities were not synced"
                logger.error(f"Aborting sync run: {'; '.join(result.errors)}")
                break

    def _finish_run(self, report: SyncRunReport) -> None:
        if report.state == RunState.RUNNING:
            if any(e.has_failures for e in report.entities.values()):
                report.state = RunState.PARTIALLY_FAILED
            else:
                report.state = RunState.COMPLETED
        elif report.state == RunState.CANCELLED:
            report.message = "Sync cancelled"

        report.finished_at = self._clock()
        self.ledger.record_end(
            report.handle,
            _LEDGER_STATUS[report.state],
            report.records_processed,
            [report.error_summary] if report.error_summary else None,
        )
        logger.info(
            f"Sync run {report.state.value}: {report.records_processed} records, "
            f"{len(report.errors)} errors"
        )

    def sync_window(
        self, window: SyncWindow, parent: Optional[RunHandle] = None
    ) -> WindowResult:
        """Validate and sync a single window.

        Raises:
            ValidationError: Oversize or malformed window (before any network call)
        """
        window.validate(self.settings.max_date_range_days)
        return self._sync_window(window, parent)

    def _task_windows(self) -> list[SyncWindow]:
        user_ids = self.store.external_ids(EntityType.USERS)
        if not user_ids:
            logger.warning("No synced users; skipping task sync")
        return [SyncWindow(EntityType.TASKS, user_id=uid) for uid in user_ids]

    def _failed_entity(
        self, entity_type: EntityType, parent: RunHandle, error: str
    ) -> EntityResult:
        """Record an entity that could not be planned as a single failed window."""
        handle = self.ledger.record_start(entity_type, parent=parent)
        result = EntityResult(
            entity_type,
            windows=[WindowResult(SyncWindow(entity_type), status=WINDOW_FAILED, errors=[error])],
        )
        self.ledger.record_end(handle, result.ledger_status, 0, result.errors)
        return result

    def _sync_entity(
        self,
        entity_type: EntityType,
        windows: list[SyncWindow],
        parent: RunHandle,
        cancel_event: Optional[threading.Event],
    ) -> EntityResult:
        handle = self.ledger.record_start(entity_type, parent=parent)
        result = EntityResult(entity_type)

        def run_one(window: SyncWindow) -> WindowResult:
            if cancel_event is not None and cancel_event.is_set():
                return WindowResult(window, status=WINDOW_CANCELLED)
            if self._already_synced(window):
                logger.info(f"Skipping {window}, already synced")
                return WindowResult(window, status=WINDOW_SKIPPED)
            try:
                return self.sync_window(window, parent=handle)
            except ValidationError as e:
                return WindowResult(window, status=WINDOW_FAILED, errors=[f"{window}: {e}"])

        if self.settings.max_workers > 1 and len(windows) > 1:
            with ThreadPoolExecutor(max_workers=self.settings.max_workers) as pool:
                result.windows = list(pool.map(run_one, windows))
        else:
            for window in windows:
                window_result = run_one(window)
                result.windows.append(window_result)
                if window_result.status == WINDOW_CANCELLED:
                    break

        if not result.has_failures and not result.cancelled:
            try:
                self.store.mark_synced(entity_type, self._clock())
            except PersistenceError as e:
                logger.warning(f"Failed to update {entity_type.value} sync marker: {e}")

        self.ledger.record_end(
            handle, result.ledger_status, result.records_processed, result.errors or None
        )
        logger.info(
            f"Synced {entity_type.value}: {result.records_processed} records in "
            f"{len(result.windows)} windows ({result.ledger_status})"
        )
        return result

    def _already_synced(self, window: SyncWindow) -> bool:
        if not self.settings.skip_synced_windows:
            return False
        if window.entity_type != EntityType.WORKLOGS or window.end_date is None:
            return False
        # Today's worklogs keep changing
        if window.end_date >= self._clock().date():
            return False
        return self.ledger.is_window_synced(window.entity_type, window)

    def _sync_window(self, window: SyncWindow, parent: Optional[RunHandle]) -> WindowResult:
        entity_type = window.entity_type
        handle = self.ledger.record_start(entity_type, window, parent=parent)
        result = WindowResult(window)
        cursor: Optional[PageCursor] = PageCursor(offset=1, limit=self.settings.pagination_limit)
        seen: set[str] = set()

        try:
            while cursor is not None:
                page = self.client.fetch_page(entity_type, window, cursor)
                result.pages += 1
                result.skipped_records += page.skipped

                fresh = [r for r in page.records if r.external_id not in seen]
                if page.records and not fresh:
                    logger.warning(
                        f"Provider repeated records at offset {cursor.offset} for {window}; "
                        "stopping pagination"
                    )
                    break
                seen.update(r.external_id for r in fresh)
                self._store_page(entity_type, fresh, result)

                next_cursor = page.next_cursor
                if next_cursor is not None and next_cursor.offset <= cursor.offset:
                    logger.warning(
                        f"Provider cursor did not advance past offset {cursor.offset} "
                        f"for {window}; stopping pagination"
                    )
                    break
                cursor = next_cursor
        except TimeDoctorError as e:
            logger.error(f"Sync of {window} failed: {e}")
            result.status = WINDOW_FAILED
            result.errors.append(f"{window}: {e}")
        except Exception as e:
            logger.exception(f"Unexpected error syncing {window}: {e}")
            result.status = WINDOW_FAILED
            result.errors.append(f"{window}: unexpected error: {e}")

        if result.errors:
            result.status = WINDOW_FAILED

        self.ledger.record_end(
            handle,
            STATUS_FAILED if result.failed else STATUS_SUCCESS,
            result.records_processed,
            result.errors or None,
        )
        return result

    def _store_page(self, entity_type: EntityType, records: list, result: WindowResult) -> None:
        """Upsert a page in batches; a failed batch does not stop the others."""
        batch_size = self.settings.batch_size
        for i in range(0, len(records), batch_size):
            batch = records[i:i + batch_size]
            try:
                result.upserted = result.upserted + self.store.upsert(entity_type, batch)
            except PersistenceError as e:
                logger.error(f"Failed to store {len(batch)} {entity_type.value} for {result.window}: {e}")
                result.errors.append(f"{result.window}: {e}")

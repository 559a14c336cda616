"""Append-only ledger of sync runs.

Every run, entity pass and window gets one row, opened by ``record_start``
and closed once by ``record_end``. Closed rows are never modified. The
ledger is best-effort: write failures are logged and never fail a sync.
"""

import logging
import sqlite3
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterator, Optional

from ..config import Config
from .models import EntityType, SyncWindow

logger = logging.getLogger(__name__)

STATUS_SUCCESS = "success"
STATUS_PARTIAL = "partial"
STATUS_FAILED = "failed"

ALL_ENTITIES = "all"


@dataclass(frozen=True)
class RunHandle:
    """Reference to an open ledger row. ``run_id`` is None if the write failed."""

    run_id: Optional[int]
    entity_type: str
    window_key: Optional[str]
    started_at: datetime
    parent_id: Optional[int] = None


@dataclass(frozen=True)
class SyncRunRecord:
    """A ledger row."""

    run_id: int
    parent_id: Optional[int]
    entity_type: str
    window_key: Optional[str]
    started_at: datetime
    finished_at: Optional[datetime]
    status: Optional[str]
    records_processed: int
    error_summary: Optional[str]

    @property
    def duration_seconds(self) -> Optional[float]:
        if self.finished_at is None:
            return None
        return (self.finished_at - self.started_at).total_seconds()

    @classmethod
    def from_row(cls, row) -> "SyncRunRecord":
        return cls(
            run_id=row["id"],
            parent_id=row["parent_id"],
            entity_type=row["entity_type"],
            window_key=row["window_key"],
            started_at=datetime.fromisoformat(row["started_at"]),
            finished_at=datetime.fromisoformat(row["finished_at"]) if row["finished_at"] else None,
            status=row["status"],
            records_processed=row["records_processed"],
            error_summary=row["error_summary"],
        )


class SyncRunLedger:
    """SQLite-based run ledger."""

    def __init__(self, db_path: Optional[Path] = None):
        """Initialize the ledger.

        Args:
            db_path: Path to SQLite database file
        """
        if db_path is None:
            db_path = Config.get_data_dir() / "sync_ledger.db"

        self.db_path = db_path
        self._local = threading.local()
        self._init_db()

    def _get_connection(self) -> sqlite3.Connection:
        """Get thread-local database connection."""
        if not hasattr(self._local, "connection"):
            self._local.connection = sqlite3.connect(str(self.db_path))
            self._local.connection.row_factory = sqlite3.Row
        return self._local.connection

    @contextmanager
    def _cursor(self) -> Iterator[sqlite3.Cursor]:
        """Context manager for database cursor."""
        conn = self._get_connection()
        cursor = conn.cursor()
        try:
            yield cursor
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            cursor.close()

    def _init_db(self) -> None:
        """Initialize the database schema."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        with self._cursor() as cursor:
            cursor.execute(
                """
                CREATE TABLE IF NOT EXISTS sync_runs (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    parent_id INTEGER,
                    entity_type TEXT NOT NULL,
                    window_key TEXT,
                    started_at TEXT NOT NULL,
                    finished_at TEXT,
                    status TEXT,
                    records_processed INTEGER DEFAULT 0,
                    error_summary TEXT
                )
                """
            )
            cursor.execute(
                """
                CREATE INDEX IF NOT EXISTS idx_sync_runs_window
                ON sync_runs(entity_type, window_key, status)
                """
            )

    def record_start(
        self,
        entity_type: Optional[EntityType] = None,
        window: Optional[SyncWindow] = None,
        parent: Optional[RunHandle] = None,
    ) -> RunHandle:
        """Open a ledger row.

        Args:
            entity_type: Entity being synced, None for a whole run
            window: Window being synced, if any
            parent: Enclosing run or entity pass
        """
        started_at = datetime.now(timezone.utc)
        entity = entity_type.value if entity_type else ALL_ENTITIES
        window_key = window.key if window else None
        parent_id = parent.run_id if parent else None

        try:
            with self._cursor() as cursor:
                cursor.execute(
                    """
                    INSERT INTO sync_runs (parent_id, entity_type, window_key, started_at)
                    VALUES (?, ?, ?, ?)
                    """,
                    (parent_id, entity, window_key, started_at.isoformat()),
                )
                run_id = cursor.lastrowid
        except sqlite3.Error as e:
            logger.warning(f"Failed to record sync start for {window_key or entity}: {e}")
            run_id = None

        return RunHandle(
            run_id=run_id,
            entity_type=entity,
            window_key=window_key,
            started_at=started_at,
            parent_id=parent_id,
        )

    def record_end(
        self,
        handle: RunHandle,
        status: str,
        records_processed: int = 0,
        errors: Optional[list[str]] = None,
    ) -> None:
        """Close a ledger row. Rows already closed are left untouched."""
        if handle.run_id is None:
            logger.debug(f"Ledger row for {handle.window_key or handle.entity_type} was never opened")
            return

        error_summary = "; ".join(errors) if errors else None
        try:
            with self._cursor() as cursor:
                cursor.execute(
                    """
                    UPDATE sync_runs
                    SET finished_at = ?, status = ?, records_processed = ?, error_summary = ?
                    WHERE id = ? AND finished_at IS NULL
                    """,
                    (
                        datetime.now(timezone.utc).isoformat(),
                        status,
                        records_processed,
                        error_summary,
                        handle.run_id,
                    ),
                )
                if cursor.rowcount == 0:
                    logger.warning(f"Ledger row {handle.run_id} already closed")
        except sqlite3.Error as e:
            logger.warning(f"Failed to record sync end for run {handle.run_id}: {e}")

    def is_window_synced(self, entity_type: EntityType, window: SyncWindow) -> bool:
        """True if a previous run finished this window successfully."""
        try:
            with self._cursor() as cursor:
                cursor.execute(
                    """
                    SELECT 1 FROM sync_runs
                    WHERE entity_type = ? AND window_key = ? AND status = ?
                    LIMIT 1
                    """,
                    (entity_type.value, window.key, STATUS_SUCCESS),
                )
                return cursor.fetchone() is not None
        except sqlite3.Error as e:
            logger.warning(f"Failed to read ledger: {e}")
            return False

    def get(self, run_id: int) -> Optional[SyncRunRecord]:
        with self._cursor() as cursor:
            cursor.execute("SELECT * FROM sync_runs WHERE id = ?", (run_id,))
            row = cursor.fetchone()
            return SyncRunRecord.from_row(row) if row else None

    def children(self, run_id: int) -> list[SyncRunRecord]:
        """Rows opened under a run or entity pass, oldest first."""
        with self._cursor() as cursor:
            cursor.execute(
                "SELECT * FROM sync_runs WHERE parent_id = ? ORDER BY id ASC",
                (run_id,),
            )
            return [SyncRunRecord.from_row(row) for row in cursor.fetchall()]

    def recent_runs(self, limit: int = 20) -> list[SyncRunRecord]:
        """Most recent top-level runs, newest first."""
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT * FROM sync_runs
                WHERE parent_id IS NULL
                ORDER BY id DESC
                LIMIT ?
                """,
                (limit,),
            )
            return [SyncRunRecord.from_row(row) for row in cursor.fetchall()]

    def close(self) -> None:
        """Close the database connection."""
        if hasattr(self._local, "connection"):
            self._local.connection.close()
            del self._local.connection

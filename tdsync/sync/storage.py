"""SQLite-backed local store for synced TimeDoctor records."""

import json
import logging
import sqlite3
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterator, Optional

from ..config import Config
from ..errors import PersistenceError
from .models import EntityType, RemoteEntity

logger = logging.getLogger(__name__)


@dataclass
class UpsertResult:
    """Outcome of one upsert batch."""

    inserted: int = 0
    updated: int = 0
    unchanged: int = 0

    @property
    def total(self) -> int:
        return self.inserted + self.updated + self.unchanged

    def __add__(self, other: "UpsertResult") -> "UpsertResult":
        return UpsertResult(
            inserted=self.inserted + other.inserted,
            updated=self.updated + other.updated,
            unchanged=self.unchanged + other.unchanged,
        )


class LocalStore:
    """Upserts remote records by external id.

    Writes are serialized; an incoming record older than the stored copy
    (by remote modified marker) leaves the stored copy in place.
    """

    def __init__(self, db_path: Optional[Path] = None):
        """Initialize the local store.

        Args:
            db_path: Path to SQLite database file
        """
        if db_path is None:
            db_path = Config.get_data_dir() / "timedoctor.db"

        self.db_path = db_path
        self._local = threading.local()
        self._write_lock = threading.Lock()
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

    @contextmanager
    def _reading(self, what: str) -> Iterator[sqlite3.Cursor]:
        """Cursor for a read; database errors surface as PersistenceError."""
        try:
            with self._cursor() as cursor:
                yield cursor
        except (sqlite3.Error, ValueError) as e:
            logger.error(f"Failed to read {what}: {e}")
            raise PersistenceError(f"Failed to read {what}: {e}") from e

    def _init_db(self) -> None:
        """Initialize the database schema."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        with self._cursor() as cursor:
            cursor.execute(
                """
                CREATE TABLE IF NOT EXISTS remote_records (
                    entity_type TEXT NOT NULL,
                    external_id TEXT NOT NULL,
                    modified_at TEXT,
                    payload TEXT NOT NULL,
                    synced_at TEXT NOT NULL,
                    PRIMARY KEY (entity_type, external_id)
                )
                """
            )
            cursor.execute(
                """
                CREATE TABLE IF NOT EXISTS sync_markers (
                    entity_type TEXT PRIMARY KEY,
                    last_synced_at TEXT NOT NULL
                )
                """
            )

    def upsert(self, entity_type: EntityType, records: list[RemoteEntity]) -> UpsertResult:
        """Insert or update records keyed by external id.

        Args:
            entity_type: Entity type of every record in the batch
            records: Records to store

        Returns:
            UpsertResult with inserted/updated/unchanged counts

        Raises:
            PersistenceError: If the batch could not be written (rolled back)
        """
        result = UpsertResult()
        if not records:
            return result

        now = datetime.now(timezone.utc).isoformat()
        try:
            with self._write_lock, self._cursor() as cursor:
                for record in records:
                    payload = json.dumps(record.to_record(), sort_keys=True)
                    modified_at = record.modified_at.isoformat() if record.modified_at else None
                    cursor.execute(
                        """
                        SELECT modified_at, payload FROM remote_records
                        WHERE entity_type = ? AND external_id = ?
                        """,
                        (entity_type.value, record.external_id),
                    )
                    row = cursor.fetchone()

                    if row is None:
                        cursor.execute(
                            """
                            INSERT INTO remote_records
                                (entity_type, external_id, modified_at, payload, synced_at)
                            VALUES (?, ?, ?, ?, ?)
                            """,
                            (entity_type.value, record.external_id, modified_at, payload, now),
                        )
                        result.inserted += 1
                        continue

                    if row["payload"] == payload or _is_older(modified_at, row["modified_at"]):
                        result.unchanged += 1
                        continue

                    cursor.execute(
                        """
                        UPDATE remote_records
                        SET modified_at = ?, payload = ?, synced_at = ?
                        WHERE entity_type = ? AND external_id = ?
                        """,
                        (modified_at, payload, now, entity_type.value, record.external_id),
                    )
                    result.updated += 1
        except sqlite3.Error as e:
            logger.error(f"Failed to upsert {len(records)} {entity_type.value}: {e}")
            raise PersistenceError(f"Failed to store {entity_type.value}: {e}") from e

        return result

    def read_last_synced_marker(self, entity_type: EntityType) -> Optional[datetime]:
        """Time of the last complete sync of an entity type, or None."""
        with self._reading(f"{entity_type.value} sync marker") as cursor:
            cursor.execute(
                "SELECT last_synced_at FROM sync_markers WHERE entity_type = ?",
                (entity_type.value,),
            )
            row = cursor.fetchone()
            if row:
                return datetime.fromisoformat(row[0])
            return None

    def mark_synced(self, entity_type: EntityType, when: datetime) -> None:
        """Record that an entity type was fully synced at ``when``."""
        try:
            with self._write_lock, self._cursor() as cursor:
                cursor.execute(
                    """
                    INSERT INTO sync_markers (entity_type, last_synced_at)
                    VALUES (?, ?)
                    ON CONFLICT(entity_type) DO UPDATE SET
                        last_synced_at = excluded.last_synced_at
                    """,
                    (entity_type.value, when.isoformat()),
                )
        except sqlite3.Error as e:
            raise PersistenceError(f"Failed to store sync marker: {e}") from e

    def get(self, entity_type: EntityType, external_id: str) -> Optional[dict]:
        """Stored copy of one record."""
        with self._reading(f"{entity_type.value} {external_id}") as cursor:
            cursor.execute(
                """
                SELECT payload FROM remote_records
                WHERE entity_type = ? AND external_id = ?
                """,
                (entity_type.value, external_id),
            )
            row = cursor.fetchone()
            return json.loads(row[0]) if row else None

    def all_records(self, entity_type: EntityType) -> dict[str, dict]:
        """All stored records of a type, keyed by external id."""
        with self._reading(f"stored {entity_type.value}") as cursor:
            cursor.execute(
                "SELECT external_id, payload FROM remote_records WHERE entity_type = ?",
                (entity_type.value,),
            )
            return {row["external_id"]: json.loads(row["payload"]) for row in cursor.fetchall()}

    def external_ids(self, entity_type: EntityType) -> list[str]:
        """External ids stored for an entity type."""
        with self._reading(f"{entity_type.value} ids") as cursor:
            cursor.execute(
                """
                SELECT external_id FROM remote_records
                WHERE entity_type = ? ORDER BY external_id
                """,
                (entity_type.value,),
            )
            return [row[0] for row in cursor.fetchall()]

    def count(self, entity_type: EntityType) -> int:
        with self._reading(f"{entity_type.value} count") as cursor:
            cursor.execute(
                "SELECT COUNT(*) FROM remote_records WHERE entity_type = ?",
                (entity_type.value,),
            )
            return cursor.fetchone()[0]

    def close(self) -> None:
        """Close the database connection."""
        if hasattr(self._local, "connection"):
            self._local.connection.close()
            del self._local.connection


def _is_older(incoming: Optional[str], stored: Optional[str]) -> bool:
    if incoming is None or stored is None:
        return False
    return datetime.fromisoformat(incoming) < datetime.fromisoformat(stored)

"""Tests for the local record store."""

import sqlite3
import tempfile
from datetime import datetime, timezone
from pathlib import Path
from unittest.mock import Mock, patch

import pytest

from tdsync.errors import PersistenceError
from tdsync.sync.models import EntityType, RemoteProject, RemoteUser
from tdsync.sync.storage import LocalStore, UpsertResult


def user(uid: str, name: str, modified: str = None) -> RemoteUser:
    return RemoteUser(
        external_id=uid,
        modified_at=datetime.fromisoformat(modified) if modified else None,
        full_name=name,
    )


class TestUpsertResult:
    """Tests for UpsertResult."""

    def test_add(self):
        """Test results add up field by field."""
        total = UpsertResult(1, 2, 3) + UpsertResult(4, 5, 6)

        assert (total.inserted, total.updated, total.unchanged) == (5, 7, 9)
        assert total.total == 21


class TestLocalStore:
    """Tests for LocalStore."""

    def setup_method(self):
        """Set up test fixtures."""
        self.temp_dir = tempfile.mkdtemp()
        self.db_path = Path(self.temp_dir) / "test_store.db"
        self.store = LocalStore(db_path=self.db_path)

    def teardown_method(self):
        """Clean up."""
        self.store.close()

    def test_insert(self):
        """Test new records are inserted."""
        result = self.store.upsert(EntityType.USERS, [user("1", "Ada"), user("2", "Lin")])

        assert result.inserted == 2
        assert self.store.count(EntityType.USERS) == 2
        assert self.store.get(EntityType.USERS, "1")["full_name"] == "Ada"

    def test_repeated_ingestion_is_idempotent(self):
        """Test re-upserting the same records changes nothing."""
        records = [user("1", "Ada"), user("2", "Lin")]
        self.store.upsert(EntityType.USERS, records)
        before = self.store.all_records(EntityType.USERS)

        result = self.store.upsert(EntityType.USERS, records)

        assert result.unchanged == 2
        assert result.inserted == 0
        assert self.store.all_records(EntityType.USERS) == before

    def test_update_changed_record(self):
        """Test a changed record replaces the stored copy."""
        self.store.upsert(EntityType.USERS, [user("1", "Ada", "2026-01-01T00:00:00+00:00")])

        result = self.store.upsert(
            EntityType.USERS, [user("1", "Ada L.", "2026-01-02T00:00:00+00:00")]
        )

        assert result.updated == 1
        assert self.store.get(EntityType.USERS, "1")["full_name"] == "Ada L."

    def test_older_record_does_not_overwrite(self):
        """Test last-writer-wins by remote modified marker."""
        self.store.upsert(EntityType.USERS, [user("1", "New", "2026-01-02T00:00:00+00:00")])

        result = self.store.upsert(
            EntityType.USERS, [user("1", "Old", "2026-01-01T00:00:00+00:00")]
        )

        assert result.unchanged == 1
        assert self.store.get(EntityType.USERS, "1")["full_name"] == "New"

    def test_entity_types_are_separate(self):
        """Test the same external id under different types does not collide."""
        self.store.upsert(EntityType.USERS, [user("1", "Ada")])
        self.store.upsert(EntityType.PROJECTS, [RemoteProject(external_id="1", name="Internal")])

        assert self.store.get(EntityType.USERS, "1")["full_name"] == "Ada"
        assert self.store.get(EntityType.PROJECTS, "1")["name"] == "Internal"

    def test_external_ids(self):
        """Test listing stored ids."""
        self.store.upsert(EntityType.USERS, [user("2", "Lin"), user("1", "Ada")])

        assert self.store.external_ids(EntityType.USERS) == ["1", "2"]

    def test_sync_marker(self):
        """Test reading and writing the last-synced marker."""
        when = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)

        assert self.store.read_last_synced_marker(EntityType.WORKLOGS) is None
        self.store.mark_synced(EntityType.WORKLOGS, when)
        assert self.store.read_last_synced_marker(EntityType.WORKLOGS) == when

    def test_upsert_failure_raises_persistence_error(self):
        """Test database errors surface as PersistenceError and roll back."""
        with patch("tdsync.sync.storage.json.dumps", side_effect=[
            '{"external_id": "1"}',
            sqlite3.OperationalError("disk I/O error"),
        ]):
            with pytest.raises(PersistenceError):
                self.store.upsert(EntityType.USERS, [user("1", "Ada"), user("2", "Lin")])

        assert self.store.count(EntityType.USERS) == 0

    def test_read_failures_raise_persistence_error(self):
        """Test database errors on reads surface as PersistenceError."""
        conn = Mock()
        conn.cursor.return_value.execute.side_effect = sqlite3.OperationalError(
            "database is locked"
        )
        reads = [
            lambda: self.store.read_last_synced_marker(EntityType.WORKLOGS),
            lambda: self.store.get(EntityType.USERS, "1"),
            lambda: self.store.all_records(EntityType.USERS),
            lambda: self.store.external_ids(EntityType.USERS),
            lambda: self.store.count(EntityType.USERS),
        ]

        with patch.object(self.store, "_get_connection", return_value=conn):
            for read in reads:
                with pytest.raises(PersistenceError, match="database is locked"):
                    read()

    def test_corrupt_marker_raises_persistence_error(self):
        """Test an unparseable stored marker surfaces as PersistenceError."""
        conn = sqlite3.connect(str(self.db_path))
        conn.execute(
            "INSERT INTO sync_markers (entity_type, last_synced_at) VALUES (?, ?)",
            (EntityType.WORKLOGS.value, "yesterday"),
        )
        conn.commit()
        conn.close()

        with pytest.raises(PersistenceError):
            self.store.read_last_synced_marker(EntityType.WORKLOGS)

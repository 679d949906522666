"""Tests for the SQLite record store."""

import tempfile
import threading
from datetime import datetime, timezone
from pathlib import Path

import pytest

from hyrox_sync.sync.protocols import RecordStoreProtocol
from hyrox_sync.sync.records import ChangeType, EntityKind, SyncStatus
from hyrox_sync.sync.store import RecordStore


class TestRecordStore:
    """Tests for RecordStore."""

    def setup_method(self):
        """Set up test fixtures."""
        self.temp_dir = tempfile.mkdtemp()
        self.db_path = Path(self.temp_dir) / "test_records.db"
        self.store = RecordStore(db_path=self.db_path, device_id="phone")

    def teardown_method(self):
        """Clean up."""
        self.store.close()

    def test_create_starts_pending_at_version_zero(self):
        record = self.store.create(EntityKind.WORKOUT, {"name": "Hyrox Sim"})

        stored = self.store.get(EntityKind.WORKOUT, record.id)
        assert stored is not None
        assert stored.sync_status == SyncStatus.PENDING
        assert stored.version == 0
        assert stored.last_synced_at is None
        assert stored.name == "Hyrox Sim"

    def test_upsert_updates_existing_fields(self):
        self.store.upsert(EntityKind.WORKOUT, "w1", {"name": "Old", "duration": 10})
        record = self.store.upsert(EntityKind.WORKOUT, "w1", {"name": "New"})

        assert record.fields == {"name": "New", "duration": 10}
        assert len(self.store.records(EntityKind.WORKOUT)) == 1

    def test_upsert_links_existing_parent(self):
        self.store.upsert(EntityKind.WORKOUT, "w1", {"name": "Run"})
        child = self.store.upsert(EntityKind.EXERCISE, "e1", {"name": "SkiErg", "workoutID": "w1"})

        assert child.parent_id == "w1"
        assert [c.id for c in self.store.children(EntityKind.WORKOUT, "w1")] == ["e1"]

    def test_upsert_leaves_missing_parent_unlinked(self):
        child = self.store.upsert(EntityKind.EXERCISE, "e1", {"name": "SkiErg", "workoutID": "w1"})

        assert child.parent_id is None
        assert self.store.unlinked_children(EntityKind.WORKOUT, "w1") == ["e1"]

    def test_link_after_parent_arrives(self):
        self.store.upsert(EntityKind.EXERCISE, "e1", {"name": "SkiErg", "workoutID": "w1"})
        assert self.store.link(EntityKind.EXERCISE, "e1", "w1") is False

        self.store.upsert(EntityKind.WORKOUT, "w1", {"name": "Run"})
        assert self.store.link(EntityKind.EXERCISE, "e1", "w1") is True
        assert self.store.get(EntityKind.EXERCISE, "e1").parent_id == "w1"

    def test_children_sorted_by_order(self):
        self.store.upsert(EntityKind.WORKOUT, "w1", {"name": "Run"})
        self.store.upsert(EntityKind.EXERCISE, "e2", {"order": 1, "workoutID": "w1"})
        self.store.upsert(EntityKind.EXERCISE, "e1", {"order": 0, "workoutID": "w1"})

        assert [c.id for c in self.store.children(EntityKind.WORKOUT, "w1")] == ["e1", "e2"]

    def test_delete_cascades_to_children(self):
        self.store.upsert(EntityKind.WORKOUT, "w1", {"name": "Run"})
        self.store.upsert(EntityKind.EXERCISE, "e1", {"workoutID": "w1"})
        self.store.upsert(EntityKind.EXERCISE, "e2", {"workoutID": "w1"})

        assert self.store.delete(EntityKind.WORKOUT, "w1") is True

        assert self.store.get(EntityKind.WORKOUT, "w1") is None
        assert self.store.get(EntityKind.EXERCISE, "e1") is None
        assert self.store.get(EntityKind.EXERCISE, "e2") is None

    def test_delete_absent_is_noop(self):
        checkpoint = self.store.fetch_since(0)[1]

        assert self.store.delete(EntityKind.WORKOUT, "missing") is False
        changes, position = self.store.fetch_since(checkpoint)
        assert changes == []
        assert position == checkpoint

    def test_fetch_since_in_commit_order(self):
        self.store.upsert(EntityKind.WORKOUT, "w1", {"name": "Run"})
        self.store.upsert(EntityKind.EXERCISE, "e1", {"workoutID": "w1"})
        self.store.upsert(EntityKind.WORKOUT, "w1", {"name": "Run 2"})

        changes, position = self.store.fetch_since(0)

        assert [(c.entity_kind, c.id, c.change_type) for c in changes] == [
            (EntityKind.WORKOUT, "w1", ChangeType.INSERT),
            (EntityKind.EXERCISE, "e1", ChangeType.INSERT),
            (EntityKind.WORKOUT, "w1", ChangeType.UPDATE),
        ]
        assert all(c.origin_device == "phone" for c in changes)
        assert changes[0].values["name"] == "Run 2"
        assert position > 0

    def test_fetch_since_skips_snapshots_of_deleted_records(self):
        self.store.upsert(EntityKind.WORKOUT, "w1", {"name": "Run"})
        self.store.delete(EntityKind.WORKOUT, "w1")

        changes, _ = self.store.fetch_since(0)

        assert [(c.id, c.change_type) for c in changes] == [("w1", ChangeType.DELETE)]
        assert changes[0].values == {}

    def test_fetch_since_respects_limit(self):
        for i in range(5):
            self.store.upsert(EntityKind.WORKOUT, f"w{i}", {"name": str(i)})

        first, position = self.store.fetch_since(0, limit=2)
        rest, _ = self.store.fetch_since(position)

        assert [c.id for c in first] == ["w0", "w1"]
        assert [c.id for c in rest] == ["w2", "w3", "w4"]

    def test_status_updates_are_not_captured(self):
        self.store.upsert(EntityKind.WORKOUT, "w1", {"name": "Run"})
        _, position = self.store.fetch_since(0)

        self.store.set_status([(EntityKind.WORKOUT, "w1")], SyncStatus.SYNCING)
        self.store.mark_synced([(EntityKind.WORKOUT, "w1")], datetime.now(timezone.utc))

        assert self.store.fetch_since(position)[0] == []

    def test_mark_synced_increments_version(self):
        self.store.upsert(EntityKind.WORKOUT, "w1", {"name": "Run"})
        self.store.set_status([(EntityKind.WORKOUT, "w1")], SyncStatus.SYNCING)
        now = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)

        self.store.mark_synced([(EntityKind.WORKOUT, "w1")], now)

        record = self.store.get(EntityKind.WORKOUT, "w1")
        assert record.version == 1
        assert record.sync_status == SyncStatus.SYNCED
        assert record.last_synced_at == now

    def test_mark_synced_keeps_edit_made_during_write_pending(self):
        self.store.upsert(EntityKind.WORKOUT, "w1", {"name": "Run"})
        self.store.set_status([(EntityKind.WORKOUT, "w1")], SyncStatus.SYNCING)
        self.store.upsert(EntityKind.WORKOUT, "w1", {"name": "Edited"})

        self.store.mark_synced([(EntityKind.WORKOUT, "w1")], datetime.now(timezone.utc))

        record = self.store.get(EntityKind.WORKOUT, "w1")
        assert record.sync_status == SyncStatus.PENDING
        assert record.version == 1

    def test_explicit_version_never_decreases(self):
        self.store.upsert(EntityKind.WORKOUT, "w1", {"name": "Run"}, version=4)
        record = self.store.upsert(EntityKind.WORKOUT, "w1", {"name": "Run"}, version=2)

        assert record.version == 4

    def test_list_filters_by_status_oldest_first(self):
        self.store.upsert(EntityKind.WORKOUT, "w1", {})
        self.store.upsert(EntityKind.WORKOUT, "w2", {})
        self.store.upsert(EntityKind.WORKOUT, "w3", {})
        self.store.set_status([(EntityKind.WORKOUT, "w2")], SyncStatus.SYNCED)

        pending = self.store.records(EntityKind.WORKOUT, [SyncStatus.PENDING])

        assert [r.id for r in pending] == ["w1", "w3"]

    def test_transaction_rolls_back_on_error(self):
        with pytest.raises(RuntimeError):
            with self.store.transaction():
                self.store.upsert(EntityKind.WORKOUT, "w1", {"name": "Run"})
                raise RuntimeError("boom")

        assert self.store.get(EntityKind.WORKOUT, "w1") is None
        assert self.store.fetch_since(0)[0] == []

    def test_concurrent_upserts_never_duplicate(self):
        barrier = threading.Barrier(4)

        def writer(n):
            barrier.wait()
            for i in range(20):
                self.store.upsert(EntityKind.WORKOUT, "shared", {f"k{n}": i})

        threads = [threading.Thread(target=writer, args=(n,)) for n in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        records = self.store.records(EntityKind.WORKOUT)
        assert len(records) == 1
        assert set(records[0].fields) == {"k0", "k1", "k2", "k3"}

    def test_checkpoint_never_moves_backwards(self):
        assert self.store.get_checkpoint("companion") == 0

        self.store.set_checkpoint("companion", 10)
        self.store.set_checkpoint("companion", 4)

        assert self.store.get_checkpoint("companion") == 10

    def test_goals_replace_whole_map(self):
        self.store.set_goal("SkiErg", 170)
        self.store.replace_goals({"RowErg": 200})

        assert self.store.get_goals() == {"RowErg": 200.0}

    def test_telemetry_kept_in_order(self):
        self.store.append_telemetry("w1", 120)
        self.store.append_telemetry("w1", 135)

        samples = self.store.telemetry("w1")

        assert [value for _, value in samples] == [120.0, 135.0]

    def test_clear_removes_kinds_without_capture(self):
        self.store.upsert(EntityKind.WORKOUT, "w1", {})
        self.store.upsert(EntityKind.WORKOUT_TEMPLATE, "t1", {})

        removed = self.store.clear([EntityKind.WORKOUT, EntityKind.EXERCISE])

        assert removed == 1
        assert self.store.get(EntityKind.WORKOUT_TEMPLATE, "t1") is not None
        assert [c.id for c in self.store.fetch_since(0)[0]] == ["t1"]

    def test_satisfies_store_protocol(self):
        assert isinstance(self.store, RecordStoreProtocol)

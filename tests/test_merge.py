"""Tests for the inbound merge engine."""

import itertools
import tempfile
from datetime import datetime, timezone

import pytest

from conftest import make_store

from hyrox_sync.sync.events import EventBus, RecordDeleted, RecordsMerged
from hyrox_sync.sync.merge import SOURCE_CLOUD, InboundMergeEngine, dedupe
from hyrox_sync.sync.records import ChangeRecord, ChangeType, EntityKind, SyncStatus

ID_PREFIX = {
    EntityKind.WORKOUT: "w",
    EntityKind.EXERCISE: "e",
    EntityKind.WORKOUT_TEMPLATE: "t",
    EntityKind.EXERCISE_TEMPLATE: "x",
}


def workout(record_id, change_type=ChangeType.INSERT, origin=None, **values):
    return ChangeRecord(EntityKind.WORKOUT, record_id, change_type, values, origin)


def exercise(record_id, workout_id, change_type=ChangeType.INSERT, **values):
    values["workoutID"] = workout_id
    return ChangeRecord(EntityKind.EXERCISE, record_id, change_type, values)


class TestDedupe:
    """Tests for in-batch deduplication."""

    def test_later_values_fold_into_first_position(self):
        result = dedupe(
            [
                workout("w1", name="Run"),
                workout("w2", name="Row"),
                workout("w1", ChangeType.UPDATE, duration=60),
            ]
        )

        assert [c.id for c in result] == ["w1", "w2"]
        assert result[0].change_type == ChangeType.INSERT
        assert result[0].values == {"name": "Run", "duration": 60}

    def test_later_delete_wins(self):
        result = dedupe([workout("w1", name="Run"), workout("w1", ChangeType.DELETE)])

        assert len(result) == 1
        assert result[0].change_type == ChangeType.DELETE
        assert result[0].values == {}

    def test_write_after_delete_recreates(self):
        result = dedupe([workout("w1", ChangeType.DELETE), workout("w1", name="Again")])

        assert result[0].change_type == ChangeType.INSERT
        assert result[0].values == {"name": "Again"}

    def test_input_is_not_mutated(self):
        first = workout("w1", name="Run")

        dedupe([first, workout("w1", ChangeType.UPDATE, duration=60)])

        assert first.values == {"name": "Run"}


class TestInboundMergeEngine:
    """Tests for InboundMergeEngine."""

    def setup_method(self):
        self.temp_dir = tempfile.mkdtemp()
        self.store = make_store(self.temp_dir)
        self.events = EventBus()
        self.engine = InboundMergeEngine(self.store, device_id="phone", events=self.events)

    def teardown_method(self):
        self.store.close()

    def test_applies_workout_with_exercises(self):
        result = self.engine.apply(
            [
                workout("w1", name="Hyrox Sim"),
                exercise("e1", "w1", name="SkiErg", order=0),
                exercise("e2", "w1", name="Sled Push", order=1),
            ]
        )

        assert result.applied == 3
        assert result.unresolved == []
        assert [c.id for c in self.store.children(EntityKind.WORKOUT, "w1")] == ["e1", "e2"]
        assert self.store.get(EntityKind.WORKOUT, "w1").sync_status == SyncStatus.PENDING

    @pytest.mark.parametrize(
        "order",
        list(itertools.permutations(range(3))),
    )
    def test_any_arrival_order_links_children(self, order):
        changes = [
            workout("w1", name="Hyrox Sim"),
            exercise("e1", "w1", order=0),
            exercise("e2", "w1", order=1),
        ]

        result = self.engine.apply([changes[i] for i in order])

        assert result.unresolved == []
        assert self.store.get(EntityKind.EXERCISE, "e1").parent_id == "w1"
        assert self.store.get(EntityKind.EXERCISE, "e2").parent_id == "w1"

    def _seed(self):
        self.engine.apply(
            [
                workout("w0", name="Seeded"),
                exercise("e0", "w0", name="SkiErg"),
                ChangeRecord(EntityKind.WORKOUT_TEMPLATE, "t0", ChangeType.INSERT, {"name": "Sim"}),
                ChangeRecord(EntityKind.EXERCISE_TEMPLATE, "x0", ChangeType.INSERT, {"templateID": "t0", "name": "Row"}),
            ]
        )

    def _snapshot(self):
        return {
            kind: [
                (r.id, r.fields, r.parent_id, r.version, r.sync_status)
                for r in sorted(self.store.records(kind), key=lambda r: r.id)
            ]
            for kind in EntityKind
        }

    @pytest.mark.parametrize("change_type", [ChangeType.INSERT, ChangeType.UPDATE, ChangeType.DELETE])
    @pytest.mark.parametrize("kind", list(EntityKind))
    def test_applying_twice_is_idempotent(self, kind, change_type):
        self._seed()
        record_id = ID_PREFIX[kind] + ("1" if change_type is ChangeType.INSERT else "0")
        values = {}
        if change_type is not ChangeType.DELETE:
            values = {"name": "Changed"}
            if kind.parent_field:
                values[kind.parent_field] = "w0" if kind is EntityKind.EXERCISE else "t0"
        batch = [ChangeRecord(kind, record_id, change_type, values)]

        self.engine.apply(batch)
        first = self._snapshot()
        self.engine.apply(batch)

        assert self._snapshot() == first

    def test_mixed_batch_with_delete_applied_twice_is_idempotent(self):
        self._seed()
        batch = [
            exercise("e1", "w1", name="Sled Push"),
            workout("w1", name="Run"),
            exercise("e0", "w0", ChangeType.DELETE),
            workout("w0", ChangeType.UPDATE, duration=3600),
            ChangeRecord(EntityKind.WORKOUT_TEMPLATE, "t0", ChangeType.UPDATE, {"name": "Sim 2"}),
            ChangeRecord(EntityKind.EXERCISE_TEMPLATE, "x1", ChangeType.INSERT, {"templateID": "t0", "name": "Wall Balls"}),
            ChangeRecord(EntityKind.EXERCISE_TEMPLATE, "x0", ChangeType.DELETE, {}),
        ]

        self.engine.apply(batch)
        first = self._snapshot()
        self.engine.apply(batch)

        assert self._snapshot() == first
        assert [r[0] for r in first[EntityKind.EXERCISE]] == ["e1"]
        assert first[EntityKind.EXERCISE][0][2] == "w1"
        assert [(r[0], r[2]) for r in first[EntityKind.EXERCISE_TEMPLATE]] == [("x1", "t0")]

    def test_delete_of_missing_record_is_harmless(self):
        result = self.engine.apply([workout("ghost", ChangeType.DELETE)])

        assert result.deleted == 0
        assert result.skipped == 0

    def test_delete_removes_children(self):
        self.engine.apply([workout("w1"), exercise("e1", "w1")])

        result = self.engine.apply([workout("w1", ChangeType.DELETE)])

        assert result.deleted == 1
        assert self.store.get(EntityKind.WORKOUT, "w1") is None
        assert self.store.get(EntityKind.EXERCISE, "e1") is None

    def test_malformed_entry_skipped_rest_applied(self):
        bad = ChangeRecord(EntityKind.EXERCISE, "e1", ChangeType.INSERT, {"workoutID": 42})

        result = self.engine.apply([workout("w1"), bad], malformed=2)

        assert result.applied == 1
        assert result.skipped == 3
        assert self.store.get(EntityKind.EXERCISE, "e1") is None

    def test_missing_parent_is_reported_unresolved(self):
        result = self.engine.apply([exercise("e1", "w-missing")])

        assert result.unresolved == [(EntityKind.EXERCISE, "e1")]
        assert self.store.get(EntityKind.EXERCISE, "e1").parent_id is None

    def test_orphan_adopted_when_parent_arrives_later(self):
        self.engine.apply([exercise("e1", "w1", name="SkiErg")])

        result = self.engine.apply([workout("w1", name="Run")])

        assert result.unresolved == []
        assert self.store.get(EntityKind.EXERCISE, "e1").parent_id == "w1"

    def test_sync_pass_defers_links_across_batches(self):
        with self.engine.sync_pass() as merge_pass:
            merge_pass.apply([exercise("e1", "w1")])
            merge_pass.apply([workout("w1")])

        assert merge_pass.result.unresolved == []
        assert self.store.get(EntityKind.EXERCISE, "e1").parent_id == "w1"

    def test_origin_tags(self):
        self.engine.apply(
            [
                workout("w1", origin="watch"),
                workout("w2", origin="phone"),
                workout("w3"),
            ]
        )

        changes, _ = self.store.fetch_since(0)

        assert {c.id: c.origin_device for c in changes} == {
            "w1": "watch",
            "w2": "companion",
            "w3": "companion",
        }

    def test_cloud_source_carries_sync_metadata(self):
        synced = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)

        self.engine.apply(
            [workout("w1", name="Run", version=4, lastSyncedAt=synced.timestamp())],
            source=SOURCE_CLOUD,
        )
        record = self.store.get(EntityKind.WORKOUT, "w1")

        assert record.version == 4
        assert record.sync_status == SyncStatus.SYNCED
        assert record.last_synced_at == synced
        assert record.fields == {"name": "Run"}
        assert self.store.fetch_since(0)[0][0].origin_device == "cloud"

    def test_records_merged_published_after_commit(self):
        observer = make_store(self.temp_dir)
        seen = []

        def on_merged(event):
            seen.append((event, observer.get(EntityKind.EXERCISE, "e1")))

        self.events.subscribe(RecordsMerged, on_merged)

        self.engine.apply([workout("w1"), exercise("e1", "w1")])
        observer.close()

        event, visible = seen[0]
        assert event.workout_ids == frozenset({"w1"})
        assert event.source == "companion"
        assert visible is not None

    def test_child_only_batch_reports_owning_workout(self):
        self.engine.apply([workout("w1"), exercise("e1", "w1")])
        seen = []
        self.events.subscribe(RecordsMerged, seen.append)

        self.engine.apply([exercise("e1", "w1", ChangeType.UPDATE, name="Row")])

        assert seen[0].workout_ids == frozenset({"w1"})

    def test_root_delete_published(self):
        self.engine.apply([workout("w1")])
        seen = []
        self.events.subscribe(RecordDeleted, seen.append)

        self.engine.apply([workout("w1", ChangeType.DELETE)])

        assert seen == [RecordDeleted("Workout", "w1")]

"""Tests for conflict resolution."""

from datetime import datetime, timedelta, timezone

from hyrox_sync.sync.conflict import ConflictResolver, Resolution
from hyrox_sync.sync.records import EntityKind, SyncableRecord

NOW = datetime(2026, 5, 4, 9, 30, tzinfo=timezone.utc)


def record(version, synced_at=NOW):
    return SyncableRecord(EntityKind.WORKOUT, "w1", {}, version=version, last_synced_at=synced_at)


class TestConflictResolver:
    """Tests for ConflictResolver."""

    def setup_method(self):
        self.resolver = ConflictResolver()

    def test_higher_remote_version_wins(self):
        assert self.resolver.resolve(record(2), record(3)) == Resolution.USE_REMOTE

    def test_higher_local_version_wins(self):
        assert self.resolver.resolve(record(5), record(3, NOW + timedelta(hours=1))) == Resolution.USE_LOCAL

    def test_tie_broken_by_later_remote_timestamp(self):
        assert self.resolver.resolve(record(2), record(2, NOW + timedelta(seconds=1))) == Resolution.USE_REMOTE

    def test_tie_with_equal_timestamps_keeps_local(self):
        assert self.resolver.resolve(record(2), record(2)) == Resolution.USE_LOCAL

    def test_tie_with_earlier_remote_keeps_local(self):
        assert self.resolver.resolve(record(2), record(2, NOW - timedelta(days=1))) == Resolution.USE_LOCAL

    def test_missing_timestamp_keeps_local(self):
        assert self.resolver.resolve(record(2, None), record(2)) == Resolution.USE_LOCAL
        assert self.resolver.resolve(record(2), record(2, None)) == Resolution.USE_LOCAL

    def test_no_local_record_uses_remote(self):
        assert self.resolver.resolve(None, record(0, None)) == Resolution.USE_REMOTE

    def test_deterministic(self):
        local, remote = record(4), record(4, NOW + timedelta(minutes=5))

        assert {self.resolver.resolve(local, remote) for _ in range(10)} == {Resolution.USE_REMOTE}

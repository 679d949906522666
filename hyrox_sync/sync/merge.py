"""Inbound merge engine.

Applies batches of change records to the local store: idempotent upsert by
id, idempotent delete, and parent links that are deferred until the end of
a sync pass when a child arrives before its parent.
"""

import logging
from collections import OrderedDict
from contextlib import contextmanager
from dataclasses import dataclass, field, replace
from typing import Iterable, Iterator, Optional

from .errors import MalformedMessage
from .events import EventBus, RecordDeleted, RecordsMerged
from .records import ORIGIN_CLOUD, ChangeRecord, ChangeType, EntityKind, SyncStatus, from_epoch
from .store import RecordStore

__all__ = ["MergeResult", "MergePass", "InboundMergeEngine", "SOURCE_COMPANION", "SOURCE_CLOUD"]

logger = logging.getLogger(__name__)

SOURCE_COMPANION = "companion"
SOURCE_CLOUD = "cloud"

# Sync metadata carried inside cloud documents, not domain fields
VERSION_FIELD = "version"
LAST_SYNCED_FIELD = "lastSyncedAt"


@dataclass
class MergeResult:
    """Outcome of merging one or more batches."""

    applied: int = 0
    skipped: int = 0
    deleted: int = 0
    unresolved: list[tuple[EntityKind, str]] = field(default_factory=list)
    workout_ids: set[str] = field(default_factory=set)
    template_ids: set[str] = field(default_factory=set)

    def add(self, other: "MergeResult") -> None:
        self.applied += other.applied
        self.skipped += other.skipped
        self.deleted += other.deleted
        self.unresolved.extend(other.unresolved)
        self.workout_ids |= other.workout_ids
        self.template_ids |= other.template_ids


def dedupe(changes: Iterable[ChangeRecord]) -> list[ChangeRecord]:
    """Collapse repeated (kind, id) entries within one batch.

    The first occurrence keeps its position. Later values are folded over
    it in source order; a later delete wins, and a write after a delete
    recreates the record with the later values.
    """
    merged: "OrderedDict[tuple[EntityKind, str], ChangeRecord]" = OrderedDict()
    for change in changes:
        current = merged.get(change.key)
        if current is None:
            merged[change.key] = replace(change, values=dict(change.values))
        elif change.change_type is ChangeType.DELETE:
            merged[change.key] = replace(current, change_type=ChangeType.DELETE, values={})
        elif current.change_type is ChangeType.DELETE:
            merged[change.key] = replace(current, change_type=change.change_type, values=dict(change.values))
        else:
            current.values.update(change.values)
            if change.origin_device:
                current.origin_device = change.origin_device
    return list(merged.values())


class MergePass:
    """One sync pass: batches applied in order, links retried at the end."""

    def __init__(self, engine: "InboundMergeEngine", source: str):
        self.engine = engine
        self.source = source
        self.result = MergeResult()
        self._deferred: dict[tuple[EntityKind, str], str] = {}
        self._roots: set[tuple[EntityKind, str]] = set()
        self._deleted_roots: list[tuple[EntityKind, str]] = []

    @property
    def store(self) -> RecordStore:
        return self.engine.store

    def _origin_for(self, change: ChangeRecord) -> str:
        if self.source == SOURCE_CLOUD:
            return ORIGIN_CLOUD
        origin = change.origin_device
        if origin and origin != self.engine.device_id and origin != ORIGIN_CLOUD:
            return origin
        return SOURCE_COMPANION

    def _validate(self, change: ChangeRecord) -> None:
        parent_field = change.entity_kind.parent_field
        if parent_field and change.change_type is not ChangeType.DELETE:
            parent = change.values.get(parent_field)
            if parent is not None and not isinstance(parent, str):
                raise MalformedMessage(f"{change.entity_kind.value} {change.id} has a non-string {parent_field}")

    def _track(self, kind: EntityKind, record_id: str, parent_id: Optional[str]) -> None:
        root_kind, root_id = (kind, record_id) if kind.is_root else (kind.parent_kind, parent_id)
        if root_id is None:
            return
        if root_kind is EntityKind.WORKOUT:
            self.result.workout_ids.add(root_id)
        else:
            self.result.template_ids.add(root_id)

    def _upsert(self, change: ChangeRecord) -> None:
        values = dict(change.values)
        kwargs: dict = {"origin_device": self._origin_for(change)}
        if self.source == SOURCE_CLOUD:
            version = values.pop(VERSION_FIELD, None)
            synced_at = values.pop(LAST_SYNCED_FIELD, None)
            kwargs["sync_status"] = SyncStatus.SYNCED
            kwargs["version"] = int(version) if version is not None else None
            kwargs["last_synced_at"] = from_epoch(synced_at)
        else:
            kwargs["sync_status"] = SyncStatus.PENDING

        record = self.store.upsert(change.entity_kind, change.id, values, **kwargs)

        wanted_parent = change.parent_id or record.fields.get(change.entity_kind.parent_field or "")
        if change.entity_kind.parent_kind is not None and wanted_parent and record.parent_id is None:
            self._deferred[change.key] = wanted_parent
        if change.entity_kind.is_root:
            self._roots.add(change.key)
        self._track(change.entity_kind, change.id, wanted_parent)

    def _delete(self, change: ChangeRecord) -> None:
        existing = self.store.get(change.entity_kind, change.id)
        if self.store.delete(change.entity_kind, change.id, origin_device=self._origin_for(change)):
            self.result.deleted += 1
            if change.entity_kind.is_root:
                self._deleted_roots.append(change.key)
            elif existing is not None:
                self._track(change.entity_kind, change.id, existing.parent_id)
        self._deferred.pop(change.key, None)

    def apply(self, changes: Iterable[ChangeRecord], malformed: int = 0) -> MergeResult:
        """Apply one batch atomically. Links stay deferred until ``finish``."""
        batch = MergeResult(skipped=malformed)
        with self.store.transaction():
            for change in dedupe(changes):
                try:
                    self._validate(change)
                    if change.change_type is ChangeType.DELETE:
                        self._delete(change)
                    else:
                        self._upsert(change)
                    batch.applied += 1
                except (MalformedMessage, ValueError, TypeError) as e:
                    batch.skipped += 1
                    logger.warning(f"Skipping {change.entity_kind.value} {change.id}: {e}")
        self.result.applied += batch.applied
        self.result.skipped += batch.skipped
        return batch

    def finish(self) -> MergeResult:
        """Resolve deferred links and adopt orphans of parents seen this pass."""
        with self.store.transaction():
            for (kind, record_id), parent_id in list(self._deferred.items()):
                if self.store.link(kind, record_id, parent_id):
                    del self._deferred[(kind, record_id)]

            for kind, root_id in self._roots:
                for orphan_id in self.store.unlinked_children(kind, root_id):
                    if self.store.link(kind.child_kind, orphan_id, root_id):
                        logger.info(f"Linked orphan {kind.child_kind.value} {orphan_id} to {root_id}")

        for (kind, record_id), parent_id in self._deferred.items():
            logger.warning(f"{kind.value} {record_id} left unlinked: parent {parent_id} not found")
            self.result.unresolved.append((kind, record_id))
        return self.result


class InboundMergeEngine:
    """Merges change batches from the companion or the cloud into the store."""

    def __init__(self, store: RecordStore, device_id: Optional[str] = None, events: Optional[EventBus] = None):
        self.store = store
        self.device_id = device_id or store.device_id
        self.events = events

    @contextmanager
    def sync_pass(self, source: str = SOURCE_COMPANION) -> Iterator[MergePass]:
        """Group several batches into one pass.

        Deferred links are retried and notifications published when the
        block exits normally.
        """
        merge_pass = MergePass(self, source)
        yield merge_pass
        merge_pass.finish()
        self._publish(merge_pass)

    def apply(
        self,
        changes: Iterable[ChangeRecord],
        source: str = SOURCE_COMPANION,
        malformed: int = 0,
    ) -> MergeResult:
        """Apply one batch as a complete pass."""
        with self.sync_pass(source) as merge_pass:
            merge_pass.apply(changes, malformed=malformed)
        result = merge_pass.result
        logger.info(
            f"Merged from {source}: {result.applied} applied, {result.deleted} deleted, "
            f"{result.skipped} skipped, {len(result.unresolved)} unresolved"
        )
        return result

    def _publish(self, merge_pass: MergePass) -> None:
        if self.events is None:
            return
        for kind, record_id in merge_pass._deleted_roots:
            self.events.publish(RecordDeleted(kind.value, record_id))
        result = merge_pass.result
        if result.workout_ids or result.template_ids:
            self.events.publish(
                RecordsMerged(
                    workout_ids=frozenset(result.workout_ids),
                    template_ids=frozenset(result.template_ids),
                    source=merge_pass.source,
                )
            )

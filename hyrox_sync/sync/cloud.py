"""Cloud sync coordinator.

Pushes pending records to the cloud document store, listens for remote
changes, and drains everything pending when connectivity comes back.

A root record and its children travel as one document::

    {"id": ..., <root fields>, "userId": ..., "version": 3,
     "lastSyncedAt": 1700000000.0, "exercises": [{"id": ..., <child fields>}]}
"""

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Iterable, Optional

from .conflict import ConflictResolver, Resolution
from .errors import CloudWriteFailure
from .events import CloudSyncFailed, ConnectivityChanged, EventBus
from .merge import LAST_SYNCED_FIELD, SOURCE_CLOUD, VERSION_FIELD, InboundMergeEngine, MergeResult
from .protocols import CloudStoreProtocol, RemoteDocument, Subscription
from .records import ChangeRecord, ChangeType, EntityKind, SyncableRecord, SyncStatus, from_epoch, to_epoch
from .store import RecordStore
from .stats import StatisticsUpdater

__all__ = ["CloudSyncCoordinator", "DrainStats", "CHILDREN_FIELD"]

logger = logging.getLogger(__name__)

CHILDREN_FIELD = "exercises"

_RETRYABLE = (SyncStatus.PENDING, SyncStatus.ERROR)


@dataclass
class DrainStats:
    """Statistics from one drain of the pending queue."""

    pushed: int = 0
    failed: int = 0
    errors: list[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return len(self.errors) == 0


class CloudSyncCoordinator:
    """Moves records between the local store and the cloud document store."""

    def __init__(
        self,
        store: RecordStore,
        cloud: CloudStoreProtocol,
        merge: InboundMergeEngine,
        resolver: Optional[ConflictResolver] = None,
        user_id: Optional[str] = None,
        workouts_collection: str = "workouts",
        templates_collection: str = "templates",
        events: Optional[EventBus] = None,
        connected: bool = False,
        statistics: Optional[StatisticsUpdater] = None,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self.store = store
        self.cloud = cloud
        self.merge = merge
        self.resolver = resolver or ConflictResolver()
        self.user_id = user_id
        self.events = events
        self._collections = {
            EntityKind.WORKOUT: workouts_collection,
            EntityKind.WORKOUT_TEMPLATE: templates_collection,
        }
        self._kinds_by_collection = {name: kind for kind, name in self._collections.items()}
        self._connected = connected
        self._connection_lock = threading.Lock()
        self._drain_lock = threading.Lock()
        self._subscriptions: list[Subscription] = []
        self.statistics = statistics
        self._clock = clock
        self._recovered = False

    @property
    def is_connected(self) -> bool:
        return self._connected

    def collection_for(self, kind: EntityKind) -> str:
        root = kind if kind.is_root else kind.parent_kind
        return self._collections[root]

    # Documents

    def build_document(
        self,
        record: SyncableRecord,
        children: list[SyncableRecord],
        version: int,
        synced_at: datetime,
    ) -> dict:
        """Serialize a root record and its children into one cloud document."""
        document = dict(record.fields)
        document["id"] = record.id
        if self.user_id:
            owner_field = "userId" if record.kind is EntityKind.WORKOUT else "creatorId"
            document.setdefault(owner_field, self.user_id)
        document[VERSION_FIELD] = version
        document[LAST_SYNCED_FIELD] = to_epoch(synced_at)
        document[CHILDREN_FIELD] = [dict(child.fields, id=child.id) for child in children]
        return document

    def changes_from_document(self, kind: EntityKind, document: RemoteDocument) -> list[ChangeRecord]:
        """Split a cloud document back into root and child change records."""
        data = dict(document.data)
        raw_children = data.pop(CHILDREN_FIELD, None) or []
        data.pop("id", None)

        changes = [ChangeRecord(kind, document.id, ChangeType.UPDATE, data)]
        child_kind = kind.child_kind
        for raw in raw_children:
            if not isinstance(raw, dict) or not isinstance(raw.get("id"), str):
                logger.warning(f"Ignoring malformed child in {document.collection}/{document.id}")
                continue
            values = {key: value for key, value in raw.items() if key != "id"}
            values[child_kind.parent_field] = document.id
            values[VERSION_FIELD] = data.get(VERSION_FIELD)
            values[LAST_SYNCED_FIELD] = data.get(LAST_SYNCED_FIELD)
            changes.append(ChangeRecord(child_kind, raw["id"], ChangeType.UPDATE, values))
        return changes

    def _root_key(self, kind: EntityKind, record_id: str) -> Optional[tuple[EntityKind, str]]:
        if kind.is_root:
            return kind, record_id
        record = self.store.get(kind, record_id)
        if record is None or not record.parent_id:
            return None
        return kind.parent_kind, record.parent_id

    def _subgraph(self, kind: EntityKind, record_id: str) -> Optional[tuple[SyncableRecord, list[SyncableRecord]]]:
        record = self.store.get(kind, record_id)
        if record is None:
            return None
        return record, self.store.children(kind, record_id)

    # Push

    def push(self, kind: EntityKind, record_id: str) -> bool:
        """Write one root record and its children to the cloud.

        Returns:
            True when the write was confirmed and the records are ``synced``
        """
        root = self._root_key(kind, record_id)
        if root is None:
            logger.warning(f"Cannot push {kind.value} {record_id}: no root record")
            return False
        kind, record_id = root

        if not self._connected:
            logger.info(f"Offline, {kind.value} {record_id} stays pending")
            return False

        subgraph = self._subgraph(kind, record_id)
        if subgraph is None:
            logger.warning(f"Cannot push {kind.value} {record_id}: not found")
            return False
        record, children = subgraph
        keys = [(kind, record_id)] + [(child.kind, child.id) for child in children]

        self.store.set_status(keys, SyncStatus.SYNCING)
        synced_at = self._clock()
        try:
            document = self.build_document(record, children, record.version + 1, synced_at)
            self.cloud.write(self.collection_for(kind), record_id, document, merge=True)
        except CloudWriteFailure as e:
            self.store.set_status(keys, SyncStatus.ERROR)
            logger.error(f"Cloud write of {kind.value} {record_id} failed: {e}")
            if self.events is not None:
                self.events.publish(CloudSyncFailed(record_id, str(e)))
            return False
        except Exception:
            self.store.set_status(keys, SyncStatus.ERROR)
            raise

        self.store.mark_synced(keys, synced_at)
        logger.info(f"Pushed {kind.value} {record_id} (version {record.version + 1})")
        if kind is EntityKind.WORKOUT:
            self._update_statistics(record, children)
        return True

    def _update_statistics(self, workout: SyncableRecord, exercises: list[SyncableRecord]) -> None:
        user_id = workout.fields.get("userId") or self.user_id
        if self.statistics is None or not user_id or not workout.fields.get("completed"):
            return
        try:
            self.statistics.update(workout, exercises, user_id)
        except (CloudWriteFailure, TypeError, ValueError) as e:
            logger.warning(f"Statistics update for workout {workout.id} failed: {e}")

    def push_batch(self, refs: Iterable[tuple[EntityKind, str]]) -> bool:
        """Write several roots in one atomic request; all succeed or all fail."""
        if not self._connected:
            logger.info("Offline, batch stays pending")
            return False

        writes: list[tuple[str, str, dict]] = []
        keys: list[tuple[EntityKind, str]] = []
        synced_at = self._clock()
        seen: set[tuple[EntityKind, str]] = set()
        for kind, record_id in refs:
            root = self._root_key(kind, record_id)
            if root is None or root in seen:
                continue
            seen.add(root)
            subgraph = self._subgraph(*root)
            if subgraph is None:
                continue
            record, children = subgraph
            writes.append(
                (
                    self.collection_for(record.kind),
                    record.id,
                    self.build_document(record, children, record.version + 1, synced_at),
                )
            )
            keys.append(root)
            keys.extend((child.kind, child.id) for child in children)

        if not writes:
            return True

        self.store.set_status(keys, SyncStatus.SYNCING)
        try:
            self.cloud.batch_write(writes)
        except CloudWriteFailure as e:
            self.store.set_status(keys, SyncStatus.ERROR)
            logger.error(f"Cloud batch write of {len(writes)} documents failed: {e}")
            if self.events is not None:
                self.events.publish(CloudSyncFailed(None, str(e)))
            return False
        except Exception:
            self.store.set_status(keys, SyncStatus.ERROR)
            raise

        self.store.mark_synced(keys, synced_at)
        logger.info(f"Pushed batch of {len(writes)} documents")
        return True

    def pending_roots(self, include_syncing: bool = False) -> list[tuple[EntityKind, str]]:
        """Roots needing upload (own or any child's status), oldest first.

        ``include_syncing`` also picks up records left ``syncing`` by a push
        that never finished, such as one cut short by a crash.
        """
        statuses = _RETRYABLE + (SyncStatus.SYNCING,) if include_syncing else _RETRYABLE
        refs: list[tuple[EntityKind, str]] = []
        for kind in self._collections:
            wanted = {record.id for record in self.store.records(kind, statuses)}
            wanted |= {
                child.parent_id
                for child in self.store.records(kind.child_kind, statuses)
                if child.parent_id
            }
            if not wanted:
                continue
            refs.extend((kind, record.id) for record in self.store.records(kind) if record.id in wanted)
        return refs

    def drain_pending(self) -> DrainStats:
        """Push every pending or failed root, oldest first."""
        stats = DrainStats()
        if not self._connected:
            return stats

        with self._drain_lock:
            refs = self.pending_roots(include_syncing=not self._recovered)
            self._recovered = True
            if refs:
                logger.info(f"Draining {len(refs)} pending records to cloud")
            for kind, record_id in refs:
                if not self._connected:
                    break
                if self.push(kind, record_id):
                    stats.pushed += 1
                else:
                    stats.failed += 1
                    stats.errors.append(f"{kind.value} {record_id}")
        return stats

    def delete(self, kind: EntityKind, record_id: str) -> None:
        """Remove a root's document from the cloud.

        Raises:
            CloudWriteFailure: network or backend error
        """
        self.cloud.delete(self.collection_for(kind), record_id)

    # Connectivity

    def set_connected(self, online: bool) -> None:
        """Record connectivity; coming online drains the pending queue."""
        with self._connection_lock:
            changed = online != self._connected
            self._connected = online
        if not changed:
            return

        logger.info(f"Cloud connectivity {'restored' if online else 'lost'}")
        if self.events is not None:
            self.events.publish(ConnectivityChanged(online))
        if online:
            self.drain_pending()

    # Listeners

    def start_listeners(
        self,
        user_id: Optional[str] = None,
        callback: Optional[Callable[[list[RemoteDocument]], object]] = None,
    ) -> None:
        """Listen to the user's workouts and to public templates.

        ``callback`` replaces ``handle_remote_documents`` as the listener,
        for callers that run store work on their own context.
        """
        callback = callback or self.handle_remote_documents
        self.stop_listeners()
        if user_id:
            self.user_id = user_id
        if self.user_id:
            self._subscriptions.append(
                self.cloud.listen(
                    self._collections[EntityKind.WORKOUT],
                    {"userId": self.user_id},
                    callback,
                )
            )
        else:
            logger.warning("No user id configured, not listening to workouts")
        self._subscriptions.append(
            self.cloud.listen(
                self._collections[EntityKind.WORKOUT_TEMPLATE],
                {"isPublic": True},
                callback,
            )
        )

    def stop_listeners(self) -> None:
        for subscription in self._subscriptions:
            subscription.unsubscribe()
        self._subscriptions.clear()

    def _remote_record(self, kind: EntityKind, document: RemoteDocument) -> SyncableRecord:
        version = document.data.get(VERSION_FIELD) or 0
        return SyncableRecord(
            kind=kind,
            id=document.id,
            fields=dict(document.data),
            version=int(version),
            sync_status=SyncStatus.SYNCED,
            last_synced_at=from_epoch(document.data.get(LAST_SYNCED_FIELD)),
        )

    def handle_remote_documents(self, documents: list[RemoteDocument]) -> MergeResult:
        """Resolve and merge documents delivered by a listener.

        Documents with pending local writes are this client's own echo and
        are skipped.
        """
        changes: list[ChangeRecord] = []
        for document in documents:
            if document.has_pending_writes:
                continue
            kind = self._kinds_by_collection.get(document.collection)
            if kind is None:
                logger.warning(f"Document from unknown collection {document.collection}")
                continue
            try:
                remote = self._remote_record(kind, document)
            except (TypeError, ValueError) as e:
                logger.warning(f"Ignoring malformed document {document.collection}/{document.id}: {e}")
                continue
            local = self.store.get(kind, document.id)
            if self.resolver.resolve(local, remote) is Resolution.USE_REMOTE:
                changes.extend(self.changes_from_document(kind, document))

        if not changes:
            return MergeResult()
        return self.merge.apply(changes, source=SOURCE_CLOUD)

"""Outbound sync agent: local changes to the companion device."""

import logging
import threading
import time
from concurrent.futures import Future
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Callable, Optional

from ..config import DEFAULT_RESEND_WINDOW
from .capture import ChangeCaptureLog
from .errors import CloudWriteFailure, MalformedMessage, SyncError, TransportUnavailable
from .events import AllDataCleared, EventBus, RecordDeleted
from .messages import ActionMessage, ActionName, ChangesMessage, TestMessage
from .records import ORIGIN_CLOUD, ChangeRecord, ChangeType, EntityKind, from_epoch
from .store import RecordStore
from .transport import DeliveryMode, SendOutcome, TransportChannel

if TYPE_CHECKING:
    from .cloud import CloudSyncCoordinator
    from .merge import InboundMergeEngine, MergeResult

__all__ = ["OutboundSyncAgent", "PushResult"]

logger = logging.getLogger(__name__)


@dataclass
class PushResult:
    """Statistics from one change-capture push."""

    captured: int = 0
    forwarded: int = 0
    accepted: bool = False
    mode: Optional[DeliveryMode] = None
    error: Optional[str] = None


class OutboundSyncAgent:
    """Serializes local records and hands them to the transport.

    Sends of the same entity id within ``resend_window`` seconds are
    suppressed. When neither delivery mode accepts a message, the entity's
    suppression entry is dropped and its id is remembered so
    ``resend_unsent`` can retry it later.
    """

    def __init__(
        self,
        store: RecordStore,
        capture: ChangeCaptureLog,
        transport: TransportChannel,
        device_id: str,
        resend_window: float = DEFAULT_RESEND_WINDOW,
        events: Optional[EventBus] = None,
        merge: Optional["InboundMergeEngine"] = None,
        cloud: Optional["CloudSyncCoordinator"] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.store = store
        self.capture = capture
        self.transport = transport
        self.device_id = device_id
        self.resend_window = resend_window
        self.events = events
        self.merge = merge
        self.cloud = cloud
        self._clock = clock
        self._lock = threading.Lock()
        self._recent: dict[str, float] = {}
        self._unsent: dict[str, EntityKind] = {}

    @property
    def unsent_ids(self) -> set[str]:
        with self._lock:
            return set(self._unsent)

    # Resend suppression

    def _claim(self, record_id: str) -> bool:
        """Record a send attempt. False if one happened inside the window."""
        now = self._clock()
        with self._lock:
            expired = [key for key, at in self._recent.items() if now - at >= self.resend_window]
            for key in expired:
                del self._recent[key]
            if record_id in self._recent:
                return False
            self._recent[record_id] = now
            return True

    def _on_sent(self, kind: EntityKind, record_id: str, outcome: SendOutcome) -> None:
        with self._lock:
            if outcome.accepted:
                self._unsent.pop(record_id, None)
                return
            self._recent.pop(record_id, None)
            self._unsent[record_id] = kind
        logger.warning(f"{kind.value} {record_id} not delivered, will resend later: {outcome.error}")

    # Serialization

    def _root_of(self, kind: EntityKind, record_id: str) -> Optional[tuple[EntityKind, str]]:
        if kind.is_root:
            return kind, record_id
        record = self.store.get(kind, record_id)
        if record is None or not record.parent_id:
            return None
        return kind.parent_kind, record.parent_id

    def build_entity_changes(self, kind: EntityKind, record_id: str) -> list[ChangeRecord]:
        """Snapshot a root and its children, root first, children by order."""
        record = self.store.get(kind, record_id)
        if record is None:
            return []
        changes = [record.to_change(ChangeType.INSERT, self.device_id)]
        for child in self.store.children(kind, record_id):
            changes.append(child.to_change(ChangeType.INSERT, self.device_id))
        return changes

    def send_entity(
        self, kind: EntityKind, record_id: str, force: bool = False
    ) -> Optional[Future]:
        """Send a root entity and its children as one changes message.

        A child kind sends its owning root instead.

        Returns:
            Future resolving to the SendOutcome, or None when the send was
            suppressed or there is nothing to send
        """
        root = self._root_of(kind, record_id)
        if root is None:
            logger.warning(f"Cannot send {kind.value} {record_id}: no root record")
            return None
        kind, record_id = root

        if not force and not self._claim(record_id):
            logger.debug(f"Suppressed resend of {kind.value} {record_id}")
            return None
        if force:
            with self._lock:
                self._recent[record_id] = self._clock()

        changes = self.build_entity_changes(kind, record_id)
        if not changes:
            with self._lock:
                self._recent.pop(record_id, None)
            logger.warning(f"Cannot send {kind.value} {record_id}: not found")
            return None

        logger.info(f"Sending {kind.value} {record_id} with {len(changes) - 1} children")
        return self.transport.send_async(
            ChangesMessage(changes=changes),
            DeliveryMode.AUTO,
            on_complete=lambda outcome: self._on_sent(kind, record_id, outcome),
        )

    def resend_unsent(self) -> list[Future]:
        """Retry every entity whose last send was refused by both modes."""
        with self._lock:
            pending = list(self._unsent.items())
        if pending:
            logger.info(f"Resending {len(pending)} unsent entities")
        futures = []
        for record_id, kind in pending:
            future = self.send_entity(kind, record_id, force=True)
            if future is not None:
                futures.append(future)
        return futures

    def resend_recent(self, hours: float = 24) -> list[Future]:
        """Force a resend of workouts dated within the last ``hours``."""
        cutoff = datetime.now(timezone.utc) - timedelta(hours=hours)
        futures = []
        for workout in self.store.records(EntityKind.WORKOUT):
            try:
                date = from_epoch(workout.fields.get("date"))
            except ValueError:
                date = None
            if date is None or date < cutoff:
                continue
            future = self.send_entity(EntityKind.WORKOUT, workout.id, force=True)
            if future is not None:
                futures.append(future)
        logger.info(f"Resending {len(futures)} workouts from the last {hours}h")
        return futures

    def send_all_templates(self) -> list[Future]:
        futures = []
        for template in self.store.records(EntityKind.WORKOUT_TEMPLATE):
            future = self.send_entity(EntityKind.WORKOUT_TEMPLATE, template.id, force=True)
            if future is not None:
                futures.append(future)
        return futures

    # Change capture

    def _is_forwardable(self, change: ChangeRecord) -> bool:
        return change.origin_device in (None, self.device_id, ORIGIN_CLOUD)

    def push_changes(self) -> PushResult:
        """Forward everything captured since the companion checkpoint.

        The checkpoint advances only once the transport accepted the message.
        """
        batch = self.capture.capture()
        result = PushResult(captured=len(batch))
        if batch.is_empty:
            return result

        changes = [change for change in batch.records if self._is_forwardable(change)]
        result.forwarded = len(changes)
        if not changes:
            self.capture.acknowledge(batch)
            result.accepted = True
            return result

        outcome = self.transport.send(ChangesMessage(changes=changes), DeliveryMode.AUTO)
        result.accepted = outcome.accepted
        result.mode = outcome.mode
        result.error = outcome.error
        if outcome.accepted:
            self.capture.acknowledge(batch)
            logger.info(f"Pushed {len(changes)} changes via {outcome.mode.value}")
        else:
            logger.warning(f"Push of {len(changes)} changes not accepted: {outcome.error}")
        return result

    # Request/reply and actions

    def _request_all(self, action: ActionName, reply_type: str) -> "MergeResult":
        if self.merge is None:
            raise SyncError("No merge engine configured for request/reply sync")
        reply = self.transport.request(ActionMessage(action=action))
        if not reply.ok or reply.type != reply_type:
            raise SyncError(f"{action.value} refused: {reply.payload or reply.status}")
        if not isinstance(reply.payload, list):
            raise MalformedMessage(f"{reply_type} reply has no change list")

        changes: list[ChangeRecord] = []
        malformed = 0
        for entry in reply.payload:
            try:
                changes.append(ChangeRecord.from_wire(entry))
            except MalformedMessage as e:
                malformed += 1
                logger.warning(f"Skipping malformed entry in {reply_type}: {e}")
        return self.merge.apply(changes, malformed=malformed)

    def request_all_workouts(self) -> "MergeResult":
        """Ask the companion for all its workouts and merge the reply."""
        return self._request_all(ActionName.REQUEST_ALL_WORKOUTS, "workouts_sync")

    def request_all_templates(self) -> "MergeResult":
        return self._request_all(ActionName.REQUEST_ALL_TEMPLATES, "templates_sync")

    def send_action(self, action: ActionName, params: Optional[dict] = None) -> SendOutcome:
        return self.transport.send(ActionMessage(action=action, params=params or {}), DeliveryMode.AUTO)

    def delete_workout_everywhere(self, workout_id: str) -> bool:
        """Delete a workout locally, in the cloud and on the companion."""
        deleted = self.store.delete(EntityKind.WORKOUT, workout_id)
        if self.cloud is not None:
            try:
                self.cloud.delete(EntityKind.WORKOUT, workout_id)
            except CloudWriteFailure as e:
                logger.error(f"Cloud delete of workout {workout_id} failed: {e}")
        self.send_action(ActionName.DELETE_WORKOUT, {"workoutId": workout_id})
        if deleted and self.events is not None:
            self.events.publish(RecordDeleted(EntityKind.WORKOUT.value, workout_id))
        return deleted

    def clear_all_data(self) -> int:
        """Wipe local records and tell the companion to do the same."""
        removed = self.store.clear(list(EntityKind))
        with self._lock:
            self._recent.clear()
            self._unsent.clear()
        self.send_action(ActionName.CLEAR_ALL_DATA)
        if self.events is not None:
            self.events.publish(AllDataCleared())
        return removed

    def ping(self) -> bool:
        """Liveness probe over request/reply."""
        try:
            reply = self.transport.request(TestMessage(device=self.device_id))
        except (TransportUnavailable, MalformedMessage) as e:
            logger.info(f"Companion ping failed: {e}")
            return False
        return reply.ok

"""Dispatch of inbound companion messages."""

import logging
from typing import Any, Optional

from .errors import MalformedMessage, SyncError
from .events import AllDataCleared, EventBus, RecordDeleted
from .goals import GoalsBroadcaster
from .merge import SOURCE_COMPANION, InboundMergeEngine
from .messages import ActionMessage, ActionName, ChangesMessage, GoalsMessage, Reply, TestMessage, decode
from .records import ChangeType, EntityKind
from .store import RecordStore

__all__ = ["InboundRouter"]

logger = logging.getLogger(__name__)


class InboundRouter:
    """Decodes a companion envelope and hands it to the right component.

    Every message gets a reply dict of the form
    ``{"status": ..., "type": ..., "payload": ...}``.
    """

    def __init__(
        self,
        store: RecordStore,
        merge: InboundMergeEngine,
        goals: GoalsBroadcaster,
        device_id: str,
        events: Optional[EventBus] = None,
    ):
        self.store = store
        self.merge = merge
        self.goals = goals
        self.device_id = device_id
        self.events = events

    def handle(self, payload: Any) -> dict:
        try:
            message = decode(payload)
        except MalformedMessage as e:
            logger.warning(f"Rejected malformed message: {e}")
            return Reply("error", "malformed", str(e)).to_wire()

        try:
            if isinstance(message, ChangesMessage):
                reply = self._handle_changes(message)
            elif isinstance(message, ActionMessage):
                reply = self._handle_action(message)
            elif isinstance(message, GoalsMessage):
                self.goals.receive(message.goals)
                reply = Reply("received", "goals_ack")
            else:
                reply = self._handle_test(message)
        except SyncError as e:
            logger.error(f"Failed to handle {message.kind.value} message: {e}")
            reply = Reply("error", message.kind.value, str(e))
        return reply.to_wire()

    def _handle_changes(self, message: ChangesMessage) -> Reply:
        result = self.merge.apply(message.changes, source=SOURCE_COMPANION, malformed=message.malformed)
        return Reply(
            "received",
            "changes_ack",
            {"applied": result.applied, "skipped": result.skipped, "deleted": result.deleted},
        )

    def _handle_test(self, message: TestMessage) -> Reply:
        logger.info(f"Test message from {message.device or 'unknown device'}")
        return Reply("received", "test_ack", {"device": self.device_id})

    def snapshot(self, kind: EntityKind) -> list[dict]:
        """Wire entries for every root of ``kind`` and its children."""
        entries = []
        for record in self.store.records(kind):
            entries.append(record.to_change(ChangeType.INSERT, self.device_id).to_wire())
            for child in self.store.children(kind, record.id):
                entries.append(child.to_change(ChangeType.INSERT, self.device_id).to_wire())
        return entries

    def _handle_action(self, message: ActionMessage) -> Reply:
        action = message.action
        if action is ActionName.REQUEST_ALL_WORKOUTS:
            entries = self.snapshot(EntityKind.WORKOUT)
            logger.info(f"Replying with {len(entries)} workout entries")
            return Reply("success", "workouts_sync", entries)

        if action is ActionName.REQUEST_ALL_TEMPLATES:
            entries = self.snapshot(EntityKind.WORKOUT_TEMPLATE)
            return Reply("success", "templates_sync", entries)

        if action is ActionName.DELETE_WORKOUT:
            workout_id = message.params.get("workoutId")
            if not isinstance(workout_id, str) or not workout_id:
                raise MalformedMessage("deleteWorkout requires workoutId")
            deleted = self.store.delete(EntityKind.WORKOUT, workout_id, origin_device=SOURCE_COMPANION)
            if deleted and self.events is not None:
                self.events.publish(RecordDeleted(EntityKind.WORKOUT.value, workout_id))
            return Reply("success", "delete_ack", {"deleted": deleted})

        if action is ActionName.DELETE_ALL_WORKOUTS:
            removed = self.store.clear([EntityKind.WORKOUT, EntityKind.EXERCISE])
        else:
            removed = self.store.clear(list(EntityKind))
        if self.events is not None:
            self.events.publish(AllDataCleared())
        return Reply("success", "clear_ack", {"removed": removed})

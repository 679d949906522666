"""Message envelope codec.

Every message exchanged with the companion device is a JSON object tagged
by ``kind``::

    {"kind": "changes", "changes": [{entity, id, changeType, values, origin}]}
    {"kind": "action", "action": "deleteWorkout", "params": {"workoutId": ...}}
    {"kind": "goals", "goals": {"SkiErg": 180.0}}
    {"kind": "test", "device": "...", "timestamp": 1700000000.0}

Untagged payloads from older peers are still understood: the kind is
inferred from the ``action``/``changes`` keys or a string ``type``.
"""

import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional, Union

from .errors import MalformedMessage
from .records import ChangeRecord

__all__ = [
    "MessageKind",
    "ActionName",
    "ChangesMessage",
    "ActionMessage",
    "GoalsMessage",
    "TestMessage",
    "Message",
    "Reply",
    "decode",
    "encode",
]

logger = logging.getLogger(__name__)


class MessageKind(str, Enum):
    CHANGES = "changes"
    ACTION = "action"
    GOALS = "goals"
    TEST = "test"


class ActionName(str, Enum):
    REQUEST_ALL_WORKOUTS = "requestAllWorkouts"
    REQUEST_ALL_TEMPLATES = "requestAllTemplates"
    DELETE_WORKOUT = "deleteWorkout"
    DELETE_ALL_WORKOUTS = "deleteAllWorkouts"
    CLEAR_ALL_DATA = "clearAllData"


@dataclass
class ChangesMessage:
    """A batch of change records. ``malformed`` counts entries dropped while decoding."""

    changes: list[ChangeRecord] = field(default_factory=list)
    malformed: int = 0

    kind = MessageKind.CHANGES

    def to_wire(self) -> dict:
        return {
            "kind": self.kind.value,
            "changes": [change.to_wire() for change in self.changes],
        }


@dataclass
class ActionMessage:
    action: ActionName
    params: dict = field(default_factory=dict)

    kind = MessageKind.ACTION

    def to_wire(self) -> dict:
        return {"kind": self.kind.value, "action": self.action.value, "params": dict(self.params)}


@dataclass
class GoalsMessage:
    goals: dict[str, float] = field(default_factory=dict)

    kind = MessageKind.GOALS

    def to_wire(self) -> dict:
        return {"kind": self.kind.value, "goals": dict(self.goals)}


@dataclass
class TestMessage:
    device: str = ""
    timestamp: float = field(default_factory=time.time)

    kind = MessageKind.TEST
    __test__ = False  # not a pytest class

    def to_wire(self) -> dict:
        return {"kind": self.kind.value, "device": self.device, "timestamp": self.timestamp}


Message = Union[ChangesMessage, ActionMessage, GoalsMessage, TestMessage]


@dataclass
class Reply:
    """Reply to a request/reply exchange."""

    status: str
    type: Optional[str] = None
    payload: Any = None

    @property
    def ok(self) -> bool:
        return self.status in ("success", "received")

    def to_wire(self) -> dict:
        data: dict = {"status": self.status}
        if self.type is not None:
            data["type"] = self.type
        if self.payload is not None:
            data["payload"] = self.payload
        return data

    @classmethod
    def from_wire(cls, data: Any) -> "Reply":
        if not isinstance(data, dict) or not isinstance(data.get("status"), str):
            raise MalformedMessage("Reply has no status")
        return cls(
            status=data["status"],
            type=data.get("type"),
            payload=data.get("payload", data.get("message")),
        )


def encode(message: Message) -> dict:
    """Encode a message into its wire dict."""
    return message.to_wire()


def _infer_kind(payload: dict) -> MessageKind:
    raw = payload.get("kind")
    if raw is None:
        if "action" in payload:
            raw = MessageKind.ACTION.value
        elif "changes" in payload:
            raw = MessageKind.CHANGES.value
        elif isinstance(payload.get("type"), str):
            raw = payload["type"]
    try:
        return MessageKind(raw)
    except ValueError:
        raise MalformedMessage(f"Unknown message kind: {raw!r}") from None


def _decode_changes(payload: dict) -> ChangesMessage:
    entries = payload.get("changes")
    if not isinstance(entries, list):
        raise MalformedMessage("changes message has no changes list")

    message = ChangesMessage()
    for entry in entries:
        try:
            message.changes.append(ChangeRecord.from_wire(entry))
        except MalformedMessage as e:
            message.malformed += 1
            logger.warning(f"Skipping malformed change entry: {e}")
    return message


def _decode_action(payload: dict) -> ActionMessage:
    raw = payload.get("action")
    try:
        action = ActionName(raw)
    except ValueError:
        raise MalformedMessage(f"Unknown action: {raw!r}") from None

    params = payload.get("params") or {}
    if not isinstance(params, dict):
        raise MalformedMessage("action params is not an object")
    # older peers put parameters at the top level
    for key in ("workoutId",):
        if key in payload and key not in params:
            params[key] = payload[key]
    return ActionMessage(action=action, params=dict(params))


def _decode_goals(payload: dict) -> GoalsMessage:
    raw = payload.get("goals")
    if not isinstance(raw, dict):
        raise MalformedMessage("goals message has no goals map")
    goals: dict[str, float] = {}
    for name, value in raw.items():
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise MalformedMessage(f"Goal {name!r} is not a number")
        goals[str(name)] = float(value)
    return GoalsMessage(goals=goals)


def _decode_test(payload: dict) -> TestMessage:
    timestamp = payload.get("timestamp")
    if isinstance(timestamp, bool) or not isinstance(timestamp, (int, float)):
        timestamp = time.time()
    return TestMessage(device=str(payload.get("device") or ""), timestamp=float(timestamp))


_DECODERS = {
    MessageKind.CHANGES: _decode_changes,
    MessageKind.ACTION: _decode_action,
    MessageKind.GOALS: _decode_goals,
    MessageKind.TEST: _decode_test,
}


def decode(payload: Any) -> Message:
    """Decode a wire dict into a typed message.

    Raises:
        MalformedMessage: payload is not an object, has an unknown kind, or
            is missing the fields its kind requires
    """
    if not isinstance(payload, dict):
        raise MalformedMessage(f"Message is not an object: {type(payload).__name__}")
    return _DECODERS[_infer_kind(payload)](payload)

"""Syncable record types and change records."""

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from .errors import MalformedMessage

__all__ = [
    "EntityKind",
    "ChangeType",
    "SyncStatus",
    "ChangeRecord",
    "SyncableRecord",
    "ORIGIN_CLOUD",
    "to_epoch",
    "from_epoch",
]

# Origin tag for changes that arrived through the cloud listener
ORIGIN_CLOUD = "cloud"


class EntityKind(str, Enum):
    """Record variants that take part in sync."""

    WORKOUT = "Workout"
    EXERCISE = "Exercise"
    WORKOUT_TEMPLATE = "WorkoutTemplate"
    EXERCISE_TEMPLATE = "ExerciseTemplate"

    @property
    def parent_kind(self) -> Optional["EntityKind"]:
        return _PARENTS.get(self)

    @property
    def parent_field(self) -> Optional[str]:
        """Wire name of the foreign id pointing at the owner."""
        return _PARENT_FIELDS.get(self)

    @property
    def child_kind(self) -> Optional["EntityKind"]:
        for child, parent in _PARENTS.items():
            if parent is self:
                return child
        return None

    @property
    def is_root(self) -> bool:
        return self not in _PARENTS


_PARENTS = {
    EntityKind.EXERCISE: EntityKind.WORKOUT,
    EntityKind.EXERCISE_TEMPLATE: EntityKind.WORKOUT_TEMPLATE,
}

_PARENT_FIELDS = {
    EntityKind.EXERCISE: "workoutID",
    EntityKind.EXERCISE_TEMPLATE: "templateID",
}


class ChangeType(str, Enum):
    """Kind of mutation recorded in the change log."""

    INSERT = "insert"
    UPDATE = "update"
    DELETE = "delete"

    @classmethod
    def parse(cls, raw: Any) -> "ChangeType":
        """Parse a wire value.

        Accepts the string names and the legacy integer codes
        (0 insert, 1 update, 2 delete).
        """
        if isinstance(raw, bool):
            raise MalformedMessage(f"Invalid change type: {raw!r}")
        if isinstance(raw, int):
            try:
                return _LEGACY_CHANGE_CODES[raw]
            except KeyError:
                raise MalformedMessage(f"Unknown change type code: {raw}") from None
        try:
            return cls(raw)
        except ValueError:
            raise MalformedMessage(f"Unknown change type: {raw!r}") from None


_LEGACY_CHANGE_CODES = {
    0: ChangeType.INSERT,
    1: ChangeType.UPDATE,
    2: ChangeType.DELETE,
}


class SyncStatus(str, Enum):
    """Cloud sync state of a record."""

    PENDING = "pending"
    SYNCING = "syncing"
    SYNCED = "synced"
    CONFLICT = "conflict"
    ERROR = "error"


def to_epoch(value: Optional[datetime]) -> Optional[float]:
    """Convert an aware datetime to float seconds since the epoch."""
    if value is None:
        return None
    return value.timestamp()


def from_epoch(value: Any) -> Optional[datetime]:
    """Convert epoch seconds (or an ISO string) to an aware UTC datetime."""
    if value is None:
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return datetime.fromtimestamp(value, tz=timezone.utc)
    if isinstance(value, str):
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    raise ValueError(f"Unsupported timestamp value: {value!r}")


@dataclass
class ChangeRecord:
    """One mutation of one entity, as captured from the change log."""

    entity_kind: EntityKind
    id: str
    change_type: ChangeType
    values: dict = field(default_factory=dict)
    origin_device: Optional[str] = None

    @property
    def key(self) -> tuple[EntityKind, str]:
        return (self.entity_kind, self.id)

    @property
    def parent_id(self) -> Optional[str]:
        """Foreign id of the owning record, if this kind has an owner."""
        parent_field = self.entity_kind.parent_field
        if parent_field is None:
            return None
        value = self.values.get(parent_field)
        return str(value) if value else None

    def to_wire(self) -> dict:
        data = {
            "entity": self.entity_kind.value,
            "id": self.id,
            "changeType": self.change_type.value,
        }
        if self.change_type is not ChangeType.DELETE:
            data["values"] = dict(self.values)
        if self.origin_device:
            data["origin"] = self.origin_device
        return data

    @classmethod
    def from_wire(cls, data: Any) -> "ChangeRecord":
        """Create a ChangeRecord from a wire dict.

        Raises:
            MalformedMessage: missing id, unknown entity kind, bad change type,
                or non-dict values
        """
        if not isinstance(data, dict):
            raise MalformedMessage(f"Change entry is not an object: {type(data).__name__}")

        record_id = data.get("id")
        if not isinstance(record_id, str) or not record_id:
            raise MalformedMessage("Change entry has no id")

        try:
            kind = EntityKind(data.get("entity"))
        except ValueError:
            raise MalformedMessage(f"Unknown entity kind: {data.get('entity')!r}") from None

        raw_type = data.get("changeType", data.get("type"))
        if raw_type is None:
            raise MalformedMessage(f"Change entry {record_id} has no change type")
        change_type = ChangeType.parse(raw_type)

        values = data.get("values") or {}
        if not isinstance(values, dict):
            raise MalformedMessage(f"Change entry {record_id} values is not an object")

        origin = data.get("origin")
        return cls(
            entity_kind=kind,
            id=record_id,
            change_type=change_type,
            values=dict(values),
            origin_device=origin if isinstance(origin, str) else None,
        )


@dataclass
class SyncableRecord:
    """A persisted entity together with its sync metadata."""

    kind: EntityKind
    id: str
    fields: dict = field(default_factory=dict)
    parent_id: Optional[str] = None
    version: int = 0
    sync_status: SyncStatus = SyncStatus.PENDING
    last_synced_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row) -> "SyncableRecord":
        """Create from a ``records`` table row."""
        return cls(
            kind=EntityKind(row["kind"]),
            id=row["id"],
            fields=json.loads(row["fields"]),
            parent_id=row["parent_id"],
            version=row["version"],
            sync_status=SyncStatus(row["sync_status"]),
            last_synced_at=(
                datetime.fromisoformat(row["last_synced_at"])
                if row["last_synced_at"]
                else None
            ),
        )

    @property
    def name(self) -> Optional[str]:
        return self.fields.get("name")

    @property
    def order(self) -> int:
        try:
            return int(self.fields.get("order") or 0)
        except (TypeError, ValueError):
            return 0

    def to_change(
        self,
        change_type: ChangeType = ChangeType.UPDATE,
        origin_device: Optional[str] = None,
    ) -> ChangeRecord:
        """Snapshot this record as a change record."""
        values = dict(self.fields)
        if self.parent_id and self.kind.parent_field:
            values[self.kind.parent_field] = self.parent_id
        return ChangeRecord(
            entity_kind=self.kind,
            id=self.id,
            change_type=change_type,
            values=values,
            origin_device=origin_device,
        )

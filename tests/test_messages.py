"""Tests for the message envelope codec and change records."""

import pytest

from hyrox_sync.sync.errors import MalformedMessage
from hyrox_sync.sync.messages import (
    ActionMessage,
    ActionName,
    ChangesMessage,
    GoalsMessage,
    Reply,
    TestMessage,
    decode,
    encode,
)
from hyrox_sync.sync.records import ChangeRecord, ChangeType, EntityKind


class TestChangeRecordWire:
    """Tests for ChangeRecord.from_wire."""

    def test_reads_string_change_type(self):
        record = ChangeRecord.from_wire(
            {"entity": "Exercise", "id": "e1", "changeType": "update", "values": {"workoutID": "w1"}}
        )

        assert record.entity_kind == EntityKind.EXERCISE
        assert record.change_type == ChangeType.UPDATE
        assert record.parent_id == "w1"

    @pytest.mark.parametrize("code,expected", [(0, ChangeType.INSERT), (1, ChangeType.UPDATE), (2, ChangeType.DELETE)])
    def test_reads_legacy_integer_type(self, code, expected):
        record = ChangeRecord.from_wire({"entity": "Workout", "id": "w1", "type": code, "values": {}})

        assert record.change_type == expected

    @pytest.mark.parametrize(
        "entry",
        [
            {"entity": "Workout", "changeType": "insert"},
            {"entity": "Workout", "id": "", "changeType": "insert"},
            {"entity": "Planet", "id": "p1", "changeType": "insert"},
            {"entity": "Workout", "id": "w1", "type": 7},
            {"entity": "Workout", "id": "w1", "changeType": "upsert"},
            {"entity": "Workout", "id": "w1"},
            {"entity": "Workout", "id": "w1", "changeType": "insert", "values": [1, 2]},
            "not an object",
        ],
    )
    def test_rejects_malformed_entries(self, entry):
        with pytest.raises(MalformedMessage):
            ChangeRecord.from_wire(entry)

    def test_delete_wire_has_no_values(self):
        record = ChangeRecord(EntityKind.WORKOUT, "w1", ChangeType.DELETE, {"name": "x"}, "phone")

        assert record.to_wire() == {"entity": "Workout", "id": "w1", "changeType": "delete", "origin": "phone"}


class TestDecode:
    """Tests for decode/encode."""

    def test_changes_message_counts_malformed_entries(self):
        message = decode(
            {
                "kind": "changes",
                "changes": [
                    {"entity": "Workout", "id": "w1", "changeType": "insert", "values": {"name": "Run"}},
                    {"entity": "Workout", "changeType": "insert"},
                ],
            }
        )

        assert isinstance(message, ChangesMessage)
        assert [c.id for c in message.changes] == ["w1"]
        assert message.malformed == 1

    def test_action_message(self):
        message = decode({"kind": "action", "action": "deleteWorkout", "params": {"workoutId": "w1"}})

        assert isinstance(message, ActionMessage)
        assert message.action == ActionName.DELETE_WORKOUT
        assert message.params == {"workoutId": "w1"}

    def test_untagged_legacy_action(self):
        message = decode({"action": "deleteWorkout", "workoutId": "w9"})

        assert message.action == ActionName.DELETE_WORKOUT
        assert message.params["workoutId"] == "w9"

    def test_untagged_legacy_goals(self):
        message = decode({"type": "goals", "goals": {"SkiErg": 175}})

        assert isinstance(message, GoalsMessage)
        assert message.goals == {"SkiErg": 175.0}

    def test_test_message(self):
        message = decode({"kind": "test", "device": "watch", "timestamp": 1700000000.0})

        assert isinstance(message, TestMessage)
        assert message.device == "watch"

    @pytest.mark.parametrize(
        "payload",
        [
            None,
            [],
            {},
            {"kind": "gossip"},
            {"kind": "changes"},
            {"kind": "action", "action": "formatDisk"},
            {"kind": "goals", "goals": {"SkiErg": "fast"}},
            {"kind": "goals"},
        ],
    )
    def test_rejects_malformed_payloads(self, payload):
        with pytest.raises(MalformedMessage):
            decode(payload)

    def test_encoded_message_decodes_to_same_content(self):
        original = ChangesMessage(
            changes=[ChangeRecord(EntityKind.EXERCISE, "e1", ChangeType.INSERT, {"workoutID": "w1", "order": 0})]
        )

        decoded = decode(encode(original))

        assert decoded.changes == original.changes


class TestReply:
    """Tests for Reply."""

    def test_from_wire_legacy_message_field(self):
        reply = Reply.from_wire({"status": "error", "message": "fetch_error"})

        assert not reply.ok
        assert reply.payload == "fetch_error"

    def test_to_wire_omits_empty_parts(self):
        assert Reply("received").to_wire() == {"status": "received"}

    def test_from_wire_requires_status(self):
        with pytest.raises(MalformedMessage):
            Reply.from_wire({"type": "x"})

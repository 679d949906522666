"""Tests for the live workout session."""

import tempfile
from unittest.mock import Mock

import pytest
from apscheduler.schedulers.background import BackgroundScheduler

from conftest import make_store

from hyrox_sync.session import WorkoutSession
from hyrox_sync.sync.errors import MergeTargetMissing
from hyrox_sync.sync.goals import GoalsBroadcaster
from hyrox_sync.sync.records import EntityKind


class TestWorkoutSession:
    """Tests for WorkoutSession."""

    def setup_method(self):
        self.store = make_store(tempfile.mkdtemp())
        self.scheduler = BackgroundScheduler()
        self.now = 100.0
        self.outbound = Mock()
        self.cloud = Mock()
        self.session = WorkoutSession(
            self.store,
            self.scheduler,
            GoalsBroadcaster(self.store, defaults={"SkiErg": 180.0}),
            outbound=self.outbound,
            cloud=self.cloud,
            sampler=lambda: 142.0,
            clock=lambda: self.now,
        )

    def teardown_method(self):
        self.store.close()

    def test_start_creates_workout_and_exercises(self):
        workout = self.session.start("Hyrox Sim", ["SkiErg", "Sled Push"], template_id="t1")

        exercises = self.store.children(EntityKind.WORKOUT, workout.id)
        assert [e.name for e in exercises] == ["SkiErg", "Sled Push"]
        assert exercises[0].fields["targetTime"] == 180.0
        assert exercises[1].fields["targetTime"] == 0.0
        assert workout.fields["templateId"] == "t1"
        assert workout.fields["completed"] is False
        self.outbound.send_entity.assert_called_once_with(EntityKind.WORKOUT, workout.id)

    def test_start_schedules_both_jobs(self):
        self.session.start("Hyrox Sim", ["SkiErg"])

        assert self.scheduler.get_job(WorkoutSession.TICK_JOB) is not None
        assert self.scheduler.get_job(WorkoutSession.SAMPLE_JOB) is not None
        assert self.session.active

    def test_second_start_rejected(self):
        self.session.start("Hyrox Sim", ["SkiErg"])

        with pytest.raises(RuntimeError):
            self.session.start("Again", [])

    def test_tick_and_sample(self):
        workout = self.session.start("Hyrox Sim", ["SkiErg"])

        self.now = 112.5
        self.session._tick()
        self.session._sample()

        assert self.session.elapsed == 12.5
        assert [value for _, value in self.store.telemetry(workout.id)] == [142.0]

    def test_sample_taken_while_ending_is_dropped(self):
        workout = self.session.start("Hyrox Sim", ["SkiErg"])

        def sample_while_ending():
            self.session.end(distance=0)
            return 150.0

        self.session.sampler = sample_while_ending
        self.session._sample()

        assert self.store.telemetry(workout.id) == []

    def test_record_exercise(self):
        self.session.start("Hyrox Sim", ["SkiErg"])
        exercise_id = self.session.exercise_ids[0]

        record = self.session.record_exercise(exercise_id, duration=175, distance=1000)

        assert record.fields["duration"] == 175.0
        assert record.fields["name"] == "SkiErg"

    def test_record_missing_exercise(self):
        with pytest.raises(MergeTargetMissing):
            self.session.record_exercise("ghost", duration=1)

    def test_end_stops_jobs_commits_then_pushes(self):
        workout = self.session.start("Hyrox Sim", ["SkiErg", "RowErg"])
        self.session.record_exercise(self.session.exercise_ids[0], distance=1000)
        self.session.record_exercise(self.session.exercise_ids[1], distance=1000)
        self.outbound.reset_mock()
        seen_at_send = []
        self.outbound.send_entity.side_effect = lambda kind, record_id, force=False: seen_at_send.append(
            self.store.get(kind, record_id).fields["completed"]
        )
        self.now = 4000.0

        ended = self.session.end()

        assert ended.fields["completed"] is True
        assert ended.fields["duration"] == 3900.0
        assert ended.fields["distance"] == 2000.0
        assert self.scheduler.get_job(WorkoutSession.TICK_JOB) is None
        assert self.scheduler.get_job(WorkoutSession.SAMPLE_JOB) is None
        assert seen_at_send == [True]
        self.outbound.send_entity.assert_called_once_with(EntityKind.WORKOUT, workout.id, force=True)
        self.cloud.push.assert_called_once_with(EntityKind.WORKOUT, workout.id)

    def test_no_tick_after_end(self):
        self.session.start("Hyrox Sim", ["SkiErg"])
        self.now = 110.0
        self.session.end(distance=0)

        self.now = 500.0
        self.session._tick()

        assert self.session.elapsed == 10.0

    def test_end_without_start(self):
        with pytest.raises(RuntimeError):
            self.session.end()

    def test_end_after_workout_deleted(self):
        workout = self.session.start("Hyrox Sim", ["SkiErg"])
        self.store.delete(EntityKind.WORKOUT, workout.id)

        with pytest.raises(MergeTargetMissing):
            self.session.end()
        self.cloud.push.assert_not_called()

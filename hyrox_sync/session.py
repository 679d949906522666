"""Live workout session: creates the records, runs the clocks, pushes at the end."""

import logging
import threading
import time
from datetime import datetime, timezone
from typing import Callable, Optional

from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.base import BaseScheduler
from apscheduler.triggers.interval import IntervalTrigger

from .sync.cloud import CloudSyncCoordinator
from .sync.errors import MergeTargetMissing
from .sync.goals import GoalsBroadcaster
from .sync.outbound import OutboundSyncAgent
from .sync.records import EntityKind, SyncableRecord, to_epoch
from .sync.store import RecordStore

__all__ = ["WorkoutSession"]

logger = logging.getLogger(__name__)


class WorkoutSession:
    """One workout in progress.

    Two interval jobs run while the session is active: a fast tick that
    updates the elapsed time and a slow sampler that appends a telemetry
    value to the store. ``end`` removes both jobs under one lock, commits
    the final values, and only then pushes the workout.
    """

    TICK_JOB = "session_tick_job"
    SAMPLE_JOB = "session_sample_job"

    def __init__(
        self,
        store: RecordStore,
        scheduler: BaseScheduler,
        goals: GoalsBroadcaster,
        outbound: Optional[OutboundSyncAgent] = None,
        cloud: Optional[CloudSyncCoordinator] = None,
        tick_interval: float = 0.1,
        sample_interval: float = 5.0,
        sampler: Optional[Callable[[], Optional[float]]] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.store = store
        self.scheduler = scheduler
        self.goals = goals
        self.outbound = outbound
        self.cloud = cloud
        self.tick_interval = tick_interval
        self.sample_interval = sample_interval
        self.sampler = sampler
        self._clock = clock
        self._lock = threading.Lock()
        self._active = False
        self._started_at = 0.0
        self._elapsed = 0.0
        self.workout_id: Optional[str] = None
        self.exercise_ids: list[str] = []

    @property
    def active(self) -> bool:
        return self._active

    @property
    def elapsed(self) -> float:
        with self._lock:
            return self._elapsed

    def start(self, name: str, exercise_names: list[str], template_id: Optional[str] = None) -> SyncableRecord:
        """Create the workout and its exercises, then start both schedules."""
        with self._lock:
            if self._active:
                raise RuntimeError("A workout session is already running")

        now = to_epoch(datetime.now(timezone.utc))
        with self.store.transaction():
            workout = self.store.create(
                EntityKind.WORKOUT,
                {
                    "name": name,
                    "date": now,
                    "duration": 0.0,
                    "distance": 0.0,
                    "completed": False,
                    "templateId": template_id,
                },
            )
            exercise_ids = []
            for order, exercise_name in enumerate(exercise_names):
                exercise = self.store.create(
                    EntityKind.EXERCISE,
                    {
                        "name": exercise_name,
                        "date": now,
                        "duration": 0.0,
                        "distance": 0.0,
                        "repetitions": 0,
                        "order": order,
                        "personalBest": False,
                        "targetTime": self.goals.goal_for(exercise_name) or 0.0,
                        "workoutID": workout.id,
                    },
                )
                exercise_ids.append(exercise.id)

        with self._lock:
            self.workout_id = workout.id
            self.exercise_ids = exercise_ids
            self._started_at = self._clock()
            self._elapsed = 0.0
            self._active = True
            self.scheduler.add_job(
                self._tick,
                trigger=IntervalTrigger(seconds=self.tick_interval),
                id=self.TICK_JOB,
                replace_existing=True,
                coalesce=True,
                max_instances=1,
            )
            self.scheduler.add_job(
                self._sample,
                trigger=IntervalTrigger(seconds=self.sample_interval),
                id=self.SAMPLE_JOB,
                replace_existing=True,
                coalesce=True,
                max_instances=1,
            )
        logger.info(f"Workout {workout.id} started with {len(exercise_ids)} exercises")

        if self.outbound is not None:
            self.outbound.send_entity(EntityKind.WORKOUT, workout.id)
        return workout

    def _tick(self) -> None:
        with self._lock:
            if self._active:
                self._elapsed = self._clock() - self._started_at

    def _sample(self) -> None:
        if self.sampler is None or not self._active:
            return
        value = self.sampler()
        if value is None:
            return
        # end() may have run while sampling
        with self._lock:
            if self._active and self.workout_id is not None:
                self.store.append_telemetry(self.workout_id, value)

    def record_exercise(
        self,
        exercise_id: str,
        duration: Optional[float] = None,
        distance: Optional[float] = None,
        repetitions: Optional[int] = None,
    ) -> SyncableRecord:
        """Store results for one exercise of the running workout."""
        if self.store.get(EntityKind.EXERCISE, exercise_id) is None:
            raise MergeTargetMissing(EntityKind.EXERCISE.value, exercise_id)
        fields: dict = {}
        if duration is not None:
            fields["duration"] = float(duration)
        if distance is not None:
            fields["distance"] = float(distance)
        if repetitions is not None:
            fields["repetitions"] = int(repetitions)
        return self.store.upsert(EntityKind.EXERCISE, exercise_id, fields)

    def _cancel_jobs(self) -> None:
        for job_id in (self.TICK_JOB, self.SAMPLE_JOB):
            try:
                self.scheduler.remove_job(job_id)
            except JobLookupError:
                pass

    def end(self, distance: Optional[float] = None) -> SyncableRecord:
        """Stop the schedules, commit the final values, then push.

        Raises:
            RuntimeError: no session is running
            MergeTargetMissing: the workout was deleted while running
        """
        with self._lock:
            if not self._active:
                raise RuntimeError("No workout session is running")
            self._active = False
            self._cancel_jobs()
            self._elapsed = self._clock() - self._started_at
            duration = self._elapsed
            workout_id = self.workout_id

        if self.store.get(EntityKind.WORKOUT, workout_id) is None:
            raise MergeTargetMissing(EntityKind.WORKOUT.value, workout_id)

        if distance is None:
            distance = sum(
                float(exercise.fields.get("distance") or 0.0)
                for exercise in self.store.children(EntityKind.WORKOUT, workout_id)
            )

        with self.store.transaction():
            workout = self.store.upsert(
                EntityKind.WORKOUT,
                workout_id,
                {
                    "duration": duration,
                    "distance": float(distance),
                    "completed": True,
                    "endDate": to_epoch(datetime.now(timezone.utc)),
                },
            )
        logger.info(f"Workout {workout_id} ended after {duration:.1f}s")

        if self.outbound is not None:
            self.outbound.send_entity(EntityKind.WORKOUT, workout_id, force=True)
        if self.cloud is not None:
            self.cloud.push(EntityKind.WORKOUT, workout_id)
        return workout

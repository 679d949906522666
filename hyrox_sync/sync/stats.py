"""Per-user workout statistics kept in the cloud document store.

After a completed workout reaches the cloud, three kinds of documents under
``users/{userId}/statistics`` are refreshed with merge writes:

- ``global``: totals over the user's completed workouts
- ``exercises/{exercise}``: per-station counters, bests and progression
- ``workouts/{templateId}``: the same for workouts built from a template

Progression lists are newest first and capped at ``MAX_PROGRESSION``.
"""

import logging
from datetime import datetime, timezone
from typing import Callable

from .protocols import CloudStoreProtocol
from .records import EntityKind, SyncableRecord, to_epoch
from .store import RecordStore

__all__ = ["StatisticsUpdater", "progression_value", "exercise_key", "MAX_PROGRESSION"]

logger = logging.getLogger(__name__)

MAX_PROGRESSION = 100


def _number(value, default: float = 0.0) -> float:
    if value is None or isinstance(value, bool):
        return default
    return float(value)


def exercise_key(name: str) -> str:
    """Document key for an exercise name ("Sled Push" -> "sled_push")."""
    return name.lower().replace(" ", "_")


def progression_value(fields: dict) -> float:
    """Score one exercise result on a 0-100 scale.

    The target time wins when both it and the duration are known; otherwise
    distance, then repetitions, then the personal-best flag.
    """
    target = _number(fields.get("targetTime"))
    duration = _number(fields.get("duration"))
    if target > 0 and duration > 0:
        return min(100.0, max(0.0, target / duration * 100))

    distance = _number(fields.get("distance"))
    if distance > 0:
        return min(100.0, distance * 10)

    repetitions = _number(fields.get("repetitions"))
    if repetitions > 0:
        return min(100.0, repetitions * 2)

    return 100.0 if fields.get("personalBest") else 50.0


def _push_progression(stats: dict, value: float, when: float) -> list[dict]:
    progression = stats.get("progression")
    if not isinstance(progression, list):
        progression = []
    return ([{"date": when, "value": value}] + progression)[:MAX_PROGRESSION]


class StatisticsUpdater:
    """Refreshes a user's statistics documents after a workout push."""

    def __init__(
        self,
        store: RecordStore,
        cloud: CloudStoreProtocol,
        users_collection: str = "users",
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self.store = store
        self.cloud = cloud
        self.users_collection = users_collection
        self._clock = clock

    def _collection(self, user_id: str, *path: str) -> str:
        return "/".join((self.users_collection, user_id, "statistics") + path)

    def update(self, workout: SyncableRecord, exercises: list[SyncableRecord], user_id: str) -> None:
        """Write global, per-exercise and per-template statistics.

        Raises:
            CloudWriteFailure: a statistics read or write failed
        """
        now = to_epoch(self._clock())
        self._update_global(workout, user_id, now)
        for exercise in exercises:
            self._update_exercise(exercise, user_id, now)
        template_id = workout.fields.get("templateId")
        if isinstance(template_id, str) and template_id:
            self._update_template(workout, template_id, user_id, now)
        logger.debug(f"Statistics updated for workout {workout.id}")

    def _update_global(self, workout: SyncableRecord, user_id: str, now: float) -> None:
        completed = [
            record
            for record in self.store.records(EntityKind.WORKOUT)
            if record.fields.get("completed") and record.fields.get("userId", user_id) == user_id
        ]
        self.cloud.write(
            self._collection(user_id),
            "global",
            {
                "totalWorkouts": len(completed),
                "totalDuration": sum(_number(r.fields.get("duration")) for r in completed),
                "totalDistance": sum(_number(r.fields.get("distance")) for r in completed),
                "lastWorkoutDate": workout.fields.get("date", now),
                "lastUpdated": now,
            },
            merge=True,
        )

    def _update_exercise(self, exercise: SyncableRecord, user_id: str, now: float) -> None:
        name = exercise.fields.get("name")
        if not isinstance(name, str) or not name:
            return
        key = exercise_key(name)
        collection = self._collection(user_id, "exercises", key)
        stats = self.cloud.read(collection, key) or {}

        duration = _number(exercise.fields.get("duration"))
        distance = _number(exercise.fields.get("distance"))
        repetitions = int(_number(exercise.fields.get("repetitions")))
        total = int(_number(stats.get("totalCompleted"))) + 1
        average = (_number(stats.get("averageTime")) * (total - 1) + duration) / total
        best_time = stats.get("bestTime")

        self.cloud.write(
            collection,
            key,
            {
                "totalCompleted": total,
                "averageTime": average,
                "bestTime": duration if best_time is None else min(_number(best_time), duration),
                "bestDistance": max(_number(stats.get("bestDistance")), distance),
                "bestRepetitions": max(int(_number(stats.get("bestRepetitions"))), repetitions),
                "progression": _push_progression(stats, progression_value(exercise.fields), now),
                "lastUpdated": now,
            },
            merge=True,
        )

    def _update_template(self, workout: SyncableRecord, template_id: str, user_id: str, now: float) -> None:
        collection = self._collection(user_id, "workouts", template_id)
        stats = self.cloud.read(collection, template_id) or {}

        duration = _number(workout.fields.get("duration"))
        total = int(_number(stats.get("totalCompleted"))) + 1
        average = (_number(stats.get("averageTime")) * (total - 1) + duration) / total
        best_time = stats.get("bestTime")

        self.cloud.write(
            collection,
            template_id,
            {
                "totalCompleted": total,
                "averageTime": average,
                "bestTime": duration if best_time is None else min(_number(best_time), duration),
                "progression": _push_progression(stats, 100.0 if duration > 0 else 0.0, now),
                "lastUpdated": now,
            },
            merge=True,
        )

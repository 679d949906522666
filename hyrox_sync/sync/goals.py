"""Per-exercise target times, shared with the companion as a full snapshot."""

import logging
from typing import Optional

from ..config import DEFAULT_GOALS
from .events import EventBus, GoalsUpdated
from .messages import GoalsMessage
from .store import RecordStore
from .transport import DeliveryMode, SendOutcome, TransportChannel

__all__ = ["GoalsBroadcaster"]

logger = logging.getLogger(__name__)


class GoalsBroadcaster:
    """Owns the goal map. Last full snapshot received wins; no versioning."""

    def __init__(
        self,
        store: RecordStore,
        transport: Optional[TransportChannel] = None,
        defaults: Optional[dict[str, float]] = None,
        events: Optional[EventBus] = None,
    ):
        self.store = store
        self.transport = transport
        self.defaults = dict(DEFAULT_GOALS if defaults is None else defaults)
        self.events = events

    def goals(self) -> dict[str, float]:
        """Current map: defaults overlaid with stored targets."""
        merged = dict(self.defaults)
        merged.update(self.store.get_goals())
        return merged

    def goal_for(self, name: str) -> Optional[float]:
        return self.goals().get(name)

    def set_goal(self, name: str, target_seconds: float) -> Optional[SendOutcome]:
        """Persist one target and broadcast the whole map."""
        if target_seconds < 0:
            raise ValueError(f"Goal for {name} must not be negative")
        self.store.set_goal(name, target_seconds)
        self._publish()
        return self.broadcast()

    def receive(self, goals: dict[str, float]) -> None:
        """Replace the entire local map with a received snapshot."""
        self.store.replace_goals(goals)
        logger.info(f"Received {len(goals)} goals from companion")
        self._publish()

    def broadcast(self) -> Optional[SendOutcome]:
        if self.transport is None:
            return None
        outcome = self.transport.send(GoalsMessage(goals=self.goals()), DeliveryMode.AUTO)
        if not outcome.accepted:
            logger.warning(f"Goals broadcast not delivered: {outcome.error}")
        return outcome

    def _publish(self) -> None:
        if self.events is not None:
            self.events.publish(GoalsUpdated(tuple(sorted(self.goals().items()))))

"""Deterministic local-vs-remote conflict resolution for the cloud path."""

import logging
from enum import Enum
from typing import Optional

from .records import SyncableRecord

__all__ = ["Resolution", "ConflictResolver"]

logger = logging.getLogger(__name__)


class Resolution(str, Enum):
    USE_LOCAL = "useLocal"
    USE_REMOTE = "useRemote"


class ConflictResolver:
    """Picks a winner between a local record and a remote copy.

    Higher version wins. On equal versions a strictly later
    ``last_synced_at`` wins; anything else, including a missing timestamp
    on either side, keeps the local record.
    """

    def resolve(self, local: Optional[SyncableRecord], remote: SyncableRecord) -> Resolution:
        if local is None:
            return Resolution.USE_REMOTE

        if remote.version != local.version:
            resolution = Resolution.USE_REMOTE if remote.version > local.version else Resolution.USE_LOCAL
        elif (
            local.last_synced_at is not None
            and remote.last_synced_at is not None
            and remote.last_synced_at > local.last_synced_at
        ):
            resolution = Resolution.USE_REMOTE
        else:
            resolution = Resolution.USE_LOCAL

        logger.debug(
            f"Resolved {remote.kind.value} {remote.id}: local v{local.version} "
            f"vs remote v{remote.version} -> {resolution.value}"
        )
        return resolution

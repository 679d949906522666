"""Error taxonomy for the sync engine.

None of these are fatal to the process: each one maps to a local recovery
(fallback delivery, skipped record, deferred link, retry on next pass).
"""

from typing import Optional

__all__ = [
    "SyncError",
    "TransportUnavailable",
    "MalformedMessage",
    "MergeTargetMissing",
    "CloudWriteFailure",
]


class SyncError(Exception):
    """Base class for sync engine errors."""

    pass


class TransportUnavailable(SyncError):
    """Companion device unreachable, timed out, or the link failed.

    Triggers the queued-delivery fallback.
    """

    pass


class MalformedMessage(SyncError):
    """Payload could not be decoded or is missing required fields."""

    pass


class MergeTargetMissing(SyncError):
    """A merge or local write referenced a record that does not exist locally."""

    def __init__(self, kind: str, record_id: str, message: Optional[str] = None):
        self.kind = kind
        self.record_id = record_id
        super().__init__(message or f"{kind} {record_id} not found")


class CloudWriteFailure(SyncError):
    """Network or backend error while writing to the cloud document store."""

    pass

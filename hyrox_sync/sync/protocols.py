"""Protocol types for the sync engine's collaborators.

Defines the interfaces that the engine requires from the local record
store, the companion-device link and the cloud document store, enabling
easier testing and looser coupling.
"""

from contextlib import AbstractContextManager
from dataclasses import dataclass
from typing import Any, Callable, Optional, Protocol, runtime_checkable

from .records import ChangeRecord, EntityKind, SyncableRecord, SyncStatus

__all__ = [
    "RemoteDocument",
    "Subscription",
    "PeerLinkProtocol",
    "QueuedLinkProtocol",
    "CloudStoreProtocol",
    "RecordStoreProtocol",
]


@dataclass
class RemoteDocument:
    """A document delivered by a cloud listener."""

    collection: str
    id: str
    data: dict
    has_pending_writes: bool = False


@runtime_checkable
class Subscription(Protocol):
    """Handle returned by a cloud listener registration."""

    def unsubscribe(self) -> None: ...


@runtime_checkable
class PeerLinkProtocol(Protocol):
    """Direct, request/reply delivery to the companion device."""

    def is_reachable(self) -> bool: ...

    def send_message(self, payload: dict) -> dict: ...


@runtime_checkable
class QueuedLinkProtocol(Protocol):
    """Store-and-forward delivery to the companion device."""

    def enqueue(self, payloads: list[dict]) -> int: ...

    def flush(self, peer: PeerLinkProtocol) -> Any: ...

    def is_empty(self) -> bool: ...


@runtime_checkable
class CloudStoreProtocol(Protocol):
    """Interface for the cloud document store."""

    def read(self, collection: str, doc_id: str) -> Optional[dict]: ...

    def write(self, collection: str, doc_id: str, document: dict, merge: bool = True) -> None: ...

    def batch_write(self, writes: list[tuple[str, str, dict]]) -> None: ...

    def listen(
        self,
        collection: str,
        where: dict,
        callback: Callable[[list[RemoteDocument]], None],
    ) -> Subscription: ...

    def delete(self, collection: str, doc_id: str) -> None: ...


@runtime_checkable
class RecordStoreProtocol(Protocol):
    """Interface the sync engine needs from the local persistent store."""

    def fetch_since(self, checkpoint: int, limit: Optional[int] = None) -> tuple[list[ChangeRecord], int]: ...

    def upsert(
        self,
        kind: EntityKind,
        record_id: str,
        fields: dict,
        origin_device: Optional[str] = None,
        sync_status: SyncStatus = SyncStatus.PENDING,
    ) -> SyncableRecord: ...

    def delete(self, kind: EntityKind, record_id: str, origin_device: Optional[str] = None) -> bool: ...

    def transaction(self) -> AbstractContextManager: ...

    def get(self, kind: EntityKind, record_id: str) -> Optional[SyncableRecord]: ...

    def get_checkpoint(self, name: str) -> int: ...

    def set_checkpoint(self, name: str, position: int) -> None: ...

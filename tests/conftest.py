"""Shared test doubles: an in-memory companion link and cloud store."""

import copy
import json
import threading
from pathlib import Path
from typing import Callable, Optional

import pytest

from hyrox_sync.sync.errors import CloudWriteFailure, TransportUnavailable
from hyrox_sync.sync.protocols import RemoteDocument
from hyrox_sync.sync.store import RecordStore


class LoopbackPeer:
    """Direct link that hands envelopes to a handler in-process.

    Payloads go through JSON so nothing is shared by reference.
    """

    def __init__(self, handler: Optional[Callable[[dict], dict]] = None, reachable: bool = True):
        self.handler = handler or (lambda payload: {"status": "received"})
        self.reachable = reachable
        self.fail_sends = False
        self.sent: list[dict] = []

    def is_reachable(self) -> bool:
        return self.reachable

    def send_message(self, payload: dict) -> dict:
        if not self.reachable or self.fail_sends:
            raise TransportUnavailable("loopback peer offline")
        wire = json.loads(json.dumps(payload))
        self.sent.append(wire)
        return json.loads(json.dumps(self.handler(wire)))


class _Subscription:
    def __init__(self, store: "InMemoryCloudStore", collection: str, where: dict, callback):
        self.store = store
        self.collection = collection
        self.where = where
        self.callback = callback

    def unsubscribe(self) -> None:
        if self in self.store.subscriptions:
            self.store.subscriptions.remove(self)


class InMemoryCloudStore:
    """Cloud document store double with merge writes and manual delivery."""

    def __init__(self):
        self.documents: dict[tuple[str, str], dict] = {}
        self.subscriptions: list[_Subscription] = []
        self.fail_writes = False
        self.writes: list[tuple[str, str, dict]] = []
        self.batches: list[list[tuple[str, str, dict]]] = []
        self._lock = threading.Lock()

    def write(self, collection: str, doc_id: str, document: dict, merge: bool = True) -> None:
        if self.fail_writes:
            raise CloudWriteFailure("cloud unavailable")
        with self._lock:
            self._apply(collection, doc_id, document, merge)
            self.writes.append((collection, doc_id, copy.deepcopy(document)))

    def batch_write(self, writes: list[tuple[str, str, dict]]) -> None:
        if self.fail_writes:
            raise CloudWriteFailure("cloud unavailable")
        with self._lock:
            for collection, doc_id, document in writes:
                self._apply(collection, doc_id, document, True)
            self.batches.append(copy.deepcopy(writes))

    def _apply(self, collection: str, doc_id: str, document: dict, merge: bool) -> None:
        key = (collection, doc_id)
        if merge and key in self.documents:
            self.documents[key].update(copy.deepcopy(document))
        else:
            self.documents[key] = copy.deepcopy(document)

    def read(self, collection: str, doc_id: str) -> Optional[dict]:
        if self.fail_writes:
            raise CloudWriteFailure("cloud unavailable")
        document = self.documents.get((collection, doc_id))
        return copy.deepcopy(document) if document is not None else None

    def delete(self, collection: str, doc_id: str) -> None:
        if self.fail_writes:
            raise CloudWriteFailure("cloud unavailable")
        self.documents.pop((collection, doc_id), None)

    def listen(self, collection: str, where: dict, callback) -> _Subscription:
        subscription = _Subscription(self, collection, where, callback)
        self.subscriptions.append(subscription)
        return subscription

    def emit(self, collection: str, doc_id: str, data: Optional[dict] = None, has_pending_writes: bool = False):
        """Deliver a document to every listener on its collection."""
        payload = copy.deepcopy(data if data is not None else self.documents[(collection, doc_id)])
        results = []
        for subscription in list(self.subscriptions):
            if subscription.collection == collection:
                results.append(
                    subscription.callback(
                        [RemoteDocument(collection, doc_id, payload, has_pending_writes=has_pending_writes)]
                    )
                )
        return results


def make_store(directory: Path, name: str = "records.db", device_id: str = "phone") -> RecordStore:
    return RecordStore(db_path=Path(directory) / name, device_id=device_id)


@pytest.fixture
def store(tmp_path):
    record_store = make_store(tmp_path)
    yield record_store
    record_store.close()


@pytest.fixture
def cloud_store():
    return InMemoryCloudStore()

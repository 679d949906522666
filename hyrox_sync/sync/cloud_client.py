"""REST client for the cloud document store."""

import logging
import threading
import uuid
from typing import Callable, Optional

import requests
from apscheduler.schedulers.base import BaseScheduler
from apscheduler.triggers.interval import IntervalTrigger

from .backoff import CLOUD_POLICY, BackoffPolicy
from .errors import CloudWriteFailure
from .http import JsonHttpClient
from .protocols import RemoteDocument

__all__ = ["CloudClient", "PollingSubscription"]

logger = logging.getLogger(__name__)


class PollingSubscription:
    """A collection listener backed by a scheduler polling job.

    Each poll asks for documents changed since the last cursor and hands
    any that arrived to the callback.
    """

    def __init__(
        self,
        client: "CloudClient",
        collection: str,
        where: dict,
        callback: Callable[[list[RemoteDocument]], None],
    ):
        self.client = client
        self.collection = collection
        self.where = dict(where)
        self.callback = callback
        self.job_id = f"cloud_listen_{collection}_{uuid.uuid4().hex[:8]}"
        self.cursor: Optional[str] = None
        self._lock = threading.Lock()
        self.active = True

    def poll(self) -> int:
        """Fetch changes once. Returns the number of documents delivered.

        The cursor only moves once the callback has taken the documents; a
        failing callback sees the same documents on the next poll.
        """
        if not self.active:
            return 0
        with self._lock:
            try:
                documents, cursor = self.client.query(self.collection, self.where, since=self.cursor)
            except CloudWriteFailure as e:
                logger.warning(f"Polling {self.collection} failed: {e}")
                return 0
            if documents:
                try:
                    self.callback(documents)
                except Exception:
                    logger.exception(f"Listener on {self.collection} failed, will redeliver")
                    return 0
            self.cursor = cursor or self.cursor
        return len(documents)

    def unsubscribe(self) -> None:
        self.active = False
        self.client._remove_subscription(self)


class CloudClient(JsonHttpClient):
    """Document store API client.

    Endpoints:
    - ``PUT /documents/{collection}/{id}?merge=true|false``
    - ``POST /batch`` with ``{"writes": [{collection, id, document, merge}]}``
    - ``DELETE /documents/{collection}/{id}``
    - ``GET /documents/{collection}?since=<cursor>&<field>=<value>``
    - ``GET /documents/{collection}/{id}`` returning ``{"id", "data"}``

    A document reported by a poll while this client is still writing it is
    flagged ``has_pending_writes`` so listeners can skip their own echo.
    """

    error_class = CloudWriteFailure
    DEFAULT_POLICY = CLOUD_POLICY

    def __init__(
        self,
        base_url: str,
        scheduler: Optional[BaseScheduler] = None,
        poll_interval: float = 15,
        token: Optional[str] = None,
        device_id: Optional[str] = None,
        timeout: float = 30.0,
        policy: Optional[BackoffPolicy] = None,
        session: Optional[requests.Session] = None,
    ):
        super().__init__(
            base_url,
            token=token,
            device_id=device_id,
            timeout=timeout,
            policy=policy,
            session=session,
        )
        self.scheduler = scheduler
        self.poll_interval = poll_interval
        self._in_flight: dict[tuple[str, str], int] = {}
        self._in_flight_lock = threading.Lock()
        self._subscriptions: list[PollingSubscription] = []

    def _begin_write(self, keys: list[tuple[str, str]]) -> None:
        with self._in_flight_lock:
            for key in keys:
                self._in_flight[key] = self._in_flight.get(key, 0) + 1

    def _end_write(self, keys: list[tuple[str, str]]) -> None:
        with self._in_flight_lock:
            for key in keys:
                remaining = self._in_flight.get(key, 0) - 1
                if remaining > 0:
                    self._in_flight[key] = remaining
                else:
                    self._in_flight.pop(key, None)

    def has_pending_writes(self, collection: str, doc_id: str) -> bool:
        with self._in_flight_lock:
            return (collection, doc_id) in self._in_flight

    def write(self, collection: str, doc_id: str, document: dict, merge: bool = True) -> None:
        """Write one document.

        Raises:
            CloudWriteFailure: network or backend error
        """
        keys = [(collection, doc_id)]
        self._begin_write(keys)
        try:
            self._request(
                "PUT",
                f"documents/{collection}/{doc_id}",
                data=document,
                params={"merge": "true" if merge else "false"},
            )
        finally:
            self._end_write(keys)

    def batch_write(self, writes: list[tuple[str, str, dict]]) -> None:
        """Write several documents atomically (all or none).

        Raises:
            CloudWriteFailure: network or backend error; nothing was written
        """
        if not writes:
            return
        keys = [(collection, doc_id) for collection, doc_id, _ in writes]
        self._begin_write(keys)
        try:
            self._request(
                "POST",
                "batch",
                data={
                    "writes": [
                        {"collection": collection, "id": doc_id, "document": document, "merge": True}
                        for collection, doc_id, document in writes
                    ]
                },
            )
        finally:
            self._end_write(keys)

    def read(self, collection: str, doc_id: str) -> Optional[dict]:
        """Fetch one document's data, or None when it does not exist.

        Raises:
            CloudWriteFailure: network or backend error
        """
        response = self._request("GET", f"documents/{collection}/{doc_id}", allow_missing=True)
        if response is None:
            return None
        data = response.get("data")
        return data if isinstance(data, dict) else None

    def delete(self, collection: str, doc_id: str) -> None:
        self._request("DELETE", f"documents/{collection}/{doc_id}")

    def query(
        self, collection: str, where: dict, since: Optional[str] = None
    ) -> tuple[list[RemoteDocument], Optional[str]]:
        """Fetch documents matching ``where`` changed after ``since``.

        Returns:
            (documents, next cursor)
        """
        params = {key: str(value).lower() if isinstance(value, bool) else value for key, value in where.items()}
        if since:
            params["since"] = since
        response = self._request("GET", f"documents/{collection}", params=params)

        documents = []
        for item in response.get("documents", []):
            doc_id = item.get("id") if isinstance(item, dict) else None
            data = item.get("data") if isinstance(item, dict) else None
            if not isinstance(doc_id, str) or not isinstance(data, dict):
                logger.warning(f"Ignoring malformed document in {collection}")
                continue
            documents.append(
                RemoteDocument(
                    collection=collection,
                    id=doc_id,
                    data=data,
                    has_pending_writes=self.has_pending_writes(collection, doc_id),
                )
            )
        return documents, response.get("cursor")

    def listen(
        self,
        collection: str,
        where: dict,
        callback: Callable[[list[RemoteDocument]], None],
    ) -> PollingSubscription:
        """Register a listener that polls the collection on the scheduler."""
        subscription = PollingSubscription(self, collection, where, callback)
        self._subscriptions.append(subscription)
        if self.scheduler is not None:
            self.scheduler.add_job(
                subscription.poll,
                trigger=IntervalTrigger(seconds=self.poll_interval),
                id=subscription.job_id,
                replace_existing=True,
            )
        logger.info(f"Listening to {collection} where {where}")
        return subscription

    def _remove_subscription(self, subscription: PollingSubscription) -> None:
        if subscription in self._subscriptions:
            self._subscriptions.remove(subscription)
        if self.scheduler is not None and self.scheduler.get_job(subscription.job_id):
            self.scheduler.remove_job(subscription.job_id)

    def poll_all(self) -> int:
        """Poll every active listener once."""
        return sum(subscription.poll() for subscription in list(self._subscriptions))

    def is_reachable(self) -> bool:
        try:
            self._request("GET", "health", retry=False)
            return True
        except CloudWriteFailure:
            return False

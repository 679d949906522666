"""Store-and-forward outbox for messages the companion could not take directly."""

import json
import logging
import sqlite3
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterator, Optional

from ..config import DEFAULT_OUTBOX_RETRIES, MAX_OUTBOX_SIZE, Config
from .errors import TransportUnavailable
from .protocols import PeerLinkProtocol

__all__ = ["Outbox", "QueuedMessage", "FlushResult"]

logger = logging.getLogger(__name__)


@dataclass
class QueuedMessage:
    """A message envelope waiting in the outbox."""

    id: int
    payload: dict
    created_at: datetime
    retry_count: int = 0

    @classmethod
    def from_row(cls, row: tuple) -> "QueuedMessage":
        """Create from database row."""
        return cls(
            id=row[0],
            payload=json.loads(row[1]),
            created_at=datetime.fromisoformat(row[2]),
            retry_count=row[3],
        )


@dataclass
class FlushResult:
    delivered: int = 0
    failed: int = 0
    dropped: int = 0
    replies: list[dict] = field(default_factory=list)


class Outbox:
    """SQLite-based queue of message envelopes for the companion.

    Messages are delivered oldest first when the peer is reachable again.
    A message that keeps failing is dropped after ``max_retries`` attempts.
    """

    def __init__(
        self,
        db_path: Optional[Path] = None,
        max_size: int = MAX_OUTBOX_SIZE,
        max_retries: int = DEFAULT_OUTBOX_RETRIES,
    ):
        """Initialize the outbox.

        Args:
            db_path: Path to SQLite database file
            max_size: Maximum number of messages to keep
            max_retries: Delivery attempts before a message is dropped
        """
        if db_path is None:
            db_path = Config.get_data_dir() / "outbox.db"

        self.db_path = db_path
        self.max_size = max_size
        self.max_retries = max_retries
        self._local = threading.local()
        self._connections: list[sqlite3.Connection] = []
        self._connections_lock = threading.Lock()
        self._flush_lock = threading.Lock()
        self._init_db()

    def _get_connection(self) -> sqlite3.Connection:
        """Get thread-local database connection."""
        if not hasattr(self._local, "connection"):
            conn = sqlite3.connect(str(self.db_path), timeout=30, check_same_thread=False)
            conn.row_factory = sqlite3.Row
            self._local.connection = conn
            with self._connections_lock:
                self._connections.append(conn)
        return self._local.connection

    @contextmanager
    def _cursor(self) -> Iterator[sqlite3.Cursor]:
        """Context manager for database cursor."""
        conn = self._get_connection()
        cursor = conn.cursor()
        try:
            yield cursor
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            cursor.close()

    def _init_db(self) -> None:
        """Initialize the database schema."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        with self._cursor() as cursor:
            cursor.execute(
                """
                CREATE TABLE IF NOT EXISTS outbox (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    payload TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    retry_count INTEGER DEFAULT 0
                )
                """
            )

    def enqueue(self, payloads: list[dict]) -> int:
        """Durably store message envelopes for later delivery.

        Returns:
            Number of messages stored

        Raises:
            TransportUnavailable: the outbox could not be written
        """
        if not payloads:
            return 0

        if len(payloads) > self.max_size:
            payloads = payloads[-self.max_size:]
            logger.warning(f"Batch larger than max_size, truncated to {len(payloads)} messages")

        try:
            current_size = self.size()
            if current_size + len(payloads) > self.max_size:
                to_remove = current_size + len(payloads) - self.max_size
                self._remove_oldest(to_remove)
                logger.warning(f"Outbox full, removed {to_remove} oldest messages")

            now = datetime.now(timezone.utc).isoformat()
            with self._cursor() as cursor:
                cursor.executemany(
                    "INSERT INTO outbox (payload, created_at) VALUES (?, ?)",
                    [(json.dumps(p), now) for p in payloads],
                )
                return cursor.rowcount
        except sqlite3.Error as e:
            raise TransportUnavailable(f"Outbox write failed: {e}") from e

    def dequeue(self, batch_size: int = 100) -> list[QueuedMessage]:
        """Get a batch of messages (oldest first) without removing them."""
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT id, payload, created_at, retry_count
                FROM outbox
                ORDER BY id ASC
                LIMIT ?
                """,
                (batch_size,),
            )
            return [QueuedMessage.from_row(tuple(row)) for row in cursor.fetchall()]

    def remove(self, message_ids: list[int]) -> int:
        if not message_ids:
            return 0

        with self._cursor() as cursor:
            placeholders = ",".join("?" * len(message_ids))
            cursor.execute(f"DELETE FROM outbox WHERE id IN ({placeholders})", message_ids)
            return cursor.rowcount

    def increment_retry(self, message_ids: list[int]) -> None:
        if not message_ids:
            return

        with self._cursor() as cursor:
            placeholders = ",".join("?" * len(message_ids))
            cursor.execute(
                f"UPDATE outbox SET retry_count = retry_count + 1 WHERE id IN ({placeholders})",
                message_ids,
            )

    def remove_failed(self) -> int:
        """Drop messages that have used up their delivery attempts."""
        with self._cursor() as cursor:
            cursor.execute("DELETE FROM outbox WHERE retry_count >= ?", (self.max_retries,))
            count = cursor.rowcount
            if count > 0:
                logger.warning(f"Dropped {count} outbox messages that exceeded max retries")
            return count

    def _remove_oldest(self, count: int) -> int:
        with self._cursor() as cursor:
            cursor.execute(
                """
                DELETE FROM outbox
                WHERE id IN (SELECT id FROM outbox ORDER BY id ASC LIMIT ?)
                """,
                (count,),
            )
            return cursor.rowcount

    def flush(self, peer: PeerLinkProtocol, batch_size: int = 100) -> FlushResult:
        """Deliver queued messages in order until the peer stops answering.

        Delivery stops at the first failure so later messages never overtake
        an earlier one.
        """
        result = FlushResult()
        with self._flush_lock:
            while True:
                batch = self.dequeue(batch_size)
                if not batch:
                    break
                delivered_ids: list[int] = []
                failed_id: Optional[int] = None
                for message in batch:
                    try:
                        result.replies.append(peer.send_message(message.payload))
                        delivered_ids.append(message.id)
                    except TransportUnavailable as e:
                        logger.info(f"Outbox flush paused: {e}")
                        failed_id = message.id
                        break
                self.remove(delivered_ids)
                result.delivered += len(delivered_ids)
                if failed_id is not None:
                    self.increment_retry([failed_id])
                    result.failed += 1
                    result.dropped += self.remove_failed()
                    break

        if result.delivered:
            logger.info(f"Delivered {result.delivered} queued messages to companion")
        return result

    def size(self) -> int:
        with self._cursor() as cursor:
            cursor.execute("SELECT COUNT(*) FROM outbox")
            return cursor.fetchone()[0]

    def is_empty(self) -> bool:
        return self.size() == 0

    def clear(self) -> int:
        with self._cursor() as cursor:
            cursor.execute("DELETE FROM outbox")
            return cursor.rowcount

    def close(self) -> None:
        """Close every database connection opened by this outbox."""
        with self._connections_lock:
            for conn in self._connections:
                try:
                    conn.close()
                except sqlite3.Error as e:
                    logger.debug(f"Error closing connection: {e}")
            self._connections.clear()
        if hasattr(self._local, "connection"):
            del self._local.connection

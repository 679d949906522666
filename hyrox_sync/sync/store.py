"""SQLite record store with change capture, upsert-by-id and transactions."""

import json
import logging
import sqlite3
import threading
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterable, Iterator, Optional

from ..config import Config
from .records import ChangeRecord, ChangeType, EntityKind, SyncableRecord, SyncStatus

__all__ = ["RecordStore"]

logger = logging.getLogger(__name__)

_RECORD_COLUMNS = "kind, id, fields, parent_id, version, sync_status, last_synced_at"


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class RecordStore:
    """SQLite-backed store for syncable records.

    Every domain mutation (upsert, delete) appends to a change log in the
    same transaction, so change capture sees commits in order. Sync metadata
    updates (status, version) are not logged.

    Writers are serialized by a store-wide lock held for the whole
    transaction, which makes ``upsert`` an atomic fetch-or-create even when
    two inbound batches touch the same id from different threads.
    """

    def __init__(self, db_path: Optional[Path] = None, device_id: Optional[str] = None):
        """Initialize the record store.

        Args:
            db_path: Path to SQLite database file
            device_id: Origin tag for locally authored changes
        """
        if db_path is None:
            db_path = Config.get_data_dir() / "records.db"

        self.db_path = db_path
        self.device_id = device_id
        self._local = threading.local()
        self._write_lock = threading.RLock()
        self._connections: list[sqlite3.Connection] = []
        self._connections_lock = threading.Lock()
        self._init_db()

    def _get_connection(self) -> sqlite3.Connection:
        """Get thread-local database connection."""
        if not hasattr(self._local, "connection"):
            conn = sqlite3.connect(str(self.db_path), timeout=30, check_same_thread=False)
            conn.row_factory = sqlite3.Row
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute("PRAGMA foreign_keys=ON")
            self._local.connection = conn
            with self._connections_lock:
                self._connections.append(conn)
        return self._local.connection

    def _in_transaction(self) -> bool:
        return getattr(self._local, "depth", 0) > 0

    @contextmanager
    def transaction(self) -> Iterator[None]:
        """Group writes into one atomic commit.

        Nested calls join the outermost transaction; only the outermost
        block commits or rolls back.
        """
        with self._write_lock:
            conn = self._get_connection()
            depth = getattr(self._local, "depth", 0)
            self._local.depth = depth + 1
            try:
                yield
                if depth == 0:
                    conn.commit()
            except Exception:
                if depth == 0:
                    conn.rollback()
                raise
            finally:
                self._local.depth = depth

    @contextmanager
    def _cursor(self) -> Iterator[sqlite3.Cursor]:
        """Context manager for database cursor."""
        conn = self._get_connection()
        cursor = conn.cursor()
        try:
            yield cursor
            if not self._in_transaction():
                conn.commit()
        except Exception:
            if not self._in_transaction():
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
                CREATE TABLE IF NOT EXISTS records (
                    kind TEXT NOT NULL,
                    id TEXT NOT NULL,
                    fields TEXT NOT NULL,
                    parent_id TEXT,
                    version INTEGER NOT NULL DEFAULT 0,
                    sync_status TEXT NOT NULL,
                    last_synced_at TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    PRIMARY KEY (kind, id)
                )
                """
            )
            cursor.execute(
                "CREATE INDEX IF NOT EXISTS idx_records_parent ON records(kind, parent_id)"
            )
            cursor.execute(
                "CREATE INDEX IF NOT EXISTS idx_records_status ON records(sync_status)"
            )
            cursor.execute(
                """
                CREATE TABLE IF NOT EXISTS change_log (
                    seq INTEGER PRIMARY KEY AUTOINCREMENT,
                    kind TEXT NOT NULL,
                    record_id TEXT NOT NULL,
                    change_type TEXT NOT NULL,
                    origin_device TEXT,
                    committed_at TEXT NOT NULL
                )
                """
            )
            cursor.execute(
                """
                CREATE TABLE IF NOT EXISTS checkpoints (
                    name TEXT PRIMARY KEY,
                    position INTEGER NOT NULL,
                    updated_at TEXT NOT NULL
                )
                """
            )
            cursor.execute(
                """
                CREATE TABLE IF NOT EXISTS goals (
                    name TEXT PRIMARY KEY,
                    target_seconds REAL NOT NULL,
                    updated_at TEXT NOT NULL
                )
                """
            )
            cursor.execute(
                """
                CREATE TABLE IF NOT EXISTS telemetry (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    workout_id TEXT NOT NULL,
                    recorded_at TEXT NOT NULL,
                    value REAL NOT NULL
                )
                """
            )

    # Records

    def get(self, kind: EntityKind, record_id: str) -> Optional[SyncableRecord]:
        """Fetch one record by id, or None."""
        with self._cursor() as cursor:
            cursor.execute(
                f"SELECT {_RECORD_COLUMNS} FROM records WHERE kind = ? AND id = ?",
                (kind.value, record_id),
            )
            row = cursor.fetchone()
            return SyncableRecord.from_row(row) if row else None

    def create(
        self,
        kind: EntityKind,
        fields: dict,
        record_id: Optional[str] = None,
    ) -> SyncableRecord:
        """Create a new locally authored record (status ``pending``)."""
        return self.upsert(kind, record_id or str(uuid.uuid4()), fields)

    def upsert(
        self,
        kind: EntityKind,
        record_id: str,
        fields: dict,
        origin_device: Optional[str] = None,
        sync_status: SyncStatus = SyncStatus.PENDING,
        version: Optional[int] = None,
        last_synced_at: Optional[datetime] = None,
    ) -> SyncableRecord:
        """Insert or update a record by id, logging the change.

        Existing fields not present in ``fields`` are kept. The parent link
        is set only when the referenced parent exists; otherwise it is left
        unresolved for the caller to retry.

        Args:
            kind: Entity kind
            record_id: Stable identifier
            fields: Domain attributes to write
            origin_device: Device that authored the change (defaults to this device)
            sync_status: Status to store (local edits re-enter ``pending``)
            version: Explicit version (cloud merges only)
            last_synced_at: Explicit sync timestamp (cloud merges only)

        Returns:
            The stored record
        """
        origin = origin_device or self.device_id
        now = _now()
        with self.transaction(), self._cursor() as cursor:
            cursor.execute(
                f"SELECT {_RECORD_COLUMNS} FROM records WHERE kind = ? AND id = ?",
                (kind.value, record_id),
            )
            row = cursor.fetchone()
            existing = SyncableRecord.from_row(row) if row else None

            merged = dict(existing.fields) if existing else {}
            merged.update(fields)

            parent_id = existing.parent_id if existing else None
            if kind.parent_field:
                wanted = merged.get(kind.parent_field)
                if not wanted:
                    parent_id = None
                elif wanted != parent_id:
                    cursor.execute(
                        "SELECT 1 FROM records WHERE kind = ? AND id = ?",
                        (kind.parent_kind.value, wanted),
                    )
                    parent_id = wanted if cursor.fetchone() else None

            new_version = version if version is not None else (existing.version if existing else 0)
            if existing and new_version < existing.version:
                new_version = existing.version
            synced_at = last_synced_at if last_synced_at is not None else (
                existing.last_synced_at if existing else None
            )

            if existing:
                cursor.execute(
                    """
                    UPDATE records
                    SET fields = ?, parent_id = ?, version = ?, sync_status = ?,
                        last_synced_at = ?, updated_at = ?
                    WHERE kind = ? AND id = ?
                    """,
                    (
                        json.dumps(merged),
                        parent_id,
                        new_version,
                        sync_status.value,
                        synced_at.isoformat() if synced_at else None,
                        now,
                        kind.value,
                        record_id,
                    ),
                )
                change_type = ChangeType.UPDATE
            else:
                cursor.execute(
                    """
                    INSERT INTO records (kind, id, fields, parent_id, version, sync_status,
                                         last_synced_at, created_at, updated_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        kind.value,
                        record_id,
                        json.dumps(merged),
                        parent_id,
                        new_version,
                        sync_status.value,
                        synced_at.isoformat() if synced_at else None,
                        now,
                        now,
                    ),
                )
                change_type = ChangeType.INSERT

            self._log_change(cursor, kind, record_id, change_type, origin)

        return SyncableRecord(
            kind=kind,
            id=record_id,
            fields=merged,
            parent_id=parent_id,
            version=new_version,
            sync_status=sync_status,
            last_synced_at=synced_at,
        )

    def delete(
        self, kind: EntityKind, record_id: str, origin_device: Optional[str] = None
    ) -> bool:
        """Delete a record and its owned children.

        Returns:
            False if the record was already absent (nothing logged)
        """
        origin = origin_device or self.device_id
        with self.transaction(), self._cursor() as cursor:
            cursor.execute(
                "SELECT 1 FROM records WHERE kind = ? AND id = ?",
                (kind.value, record_id),
            )
            if cursor.fetchone() is None:
                return False

            child_kind = kind.child_kind
            if child_kind is not None:
                cursor.execute(
                    "SELECT id FROM records WHERE kind = ? AND parent_id = ?",
                    (child_kind.value, record_id),
                )
                for row in cursor.fetchall():
                    cursor.execute(
                        "DELETE FROM records WHERE kind = ? AND id = ?",
                        (child_kind.value, row["id"]),
                    )
                    self._log_change(cursor, child_kind, row["id"], ChangeType.DELETE, origin)

            cursor.execute(
                "DELETE FROM records WHERE kind = ? AND id = ?",
                (kind.value, record_id),
            )
            self._log_change(cursor, kind, record_id, ChangeType.DELETE, origin)
            return True

    def link(self, kind: EntityKind, record_id: str, parent_id: str) -> bool:
        """Point a child at its parent if the parent exists.

        Returns:
            True if the link is now resolved
        """
        if kind.parent_kind is None:
            return False
        with self.transaction(), self._cursor() as cursor:
            cursor.execute(
                "SELECT 1 FROM records WHERE kind = ? AND id = ?",
                (kind.parent_kind.value, parent_id),
            )
            if cursor.fetchone() is None:
                return False
            cursor.execute(
                "UPDATE records SET parent_id = ? WHERE kind = ? AND id = ?",
                (parent_id, kind.value, record_id),
            )
            return cursor.rowcount > 0

    def unlinked_children(self, parent_kind: EntityKind, parent_id: str) -> list[str]:
        """Ids of children whose foreign id names this parent but are not linked."""
        child_kind = parent_kind.child_kind
        if child_kind is None:
            return []
        parent_field = child_kind.parent_field
        with self._cursor() as cursor:
            cursor.execute(
                f"""
                SELECT id FROM records
                WHERE kind = ? AND parent_id IS NULL
                  AND json_extract(fields, '$.{parent_field}') = ?
                """,
                (child_kind.value, parent_id),
            )
            return [row["id"] for row in cursor.fetchall()]

    def children(self, parent_kind: EntityKind, parent_id: str) -> list[SyncableRecord]:
        """Linked children of a record, sorted by their ``order`` field."""
        child_kind = parent_kind.child_kind
        if child_kind is None:
            return []
        with self._cursor() as cursor:
            cursor.execute(
                f"""
                SELECT {_RECORD_COLUMNS} FROM records
                WHERE kind = ? AND parent_id = ?
                ORDER BY rowid ASC
                """,
                (child_kind.value, parent_id),
            )
            records = [SyncableRecord.from_row(row) for row in cursor.fetchall()]
        return sorted(records, key=lambda r: r.order)

    def records(
        self,
        kind: EntityKind,
        statuses: Optional[Iterable[SyncStatus]] = None,
    ) -> list[SyncableRecord]:
        """List records of one kind, oldest first."""
        query = f"SELECT {_RECORD_COLUMNS} FROM records WHERE kind = ?"
        params: list = [kind.value]
        if statuses is not None:
            status_values = [s.value for s in statuses]
            if not status_values:
                return []
            placeholders = ",".join("?" * len(status_values))
            query += f" AND sync_status IN ({placeholders})"
            params.extend(status_values)
        query += " ORDER BY created_at ASC, rowid ASC"
        with self._cursor() as cursor:
            cursor.execute(query, params)
            return [SyncableRecord.from_row(row) for row in cursor.fetchall()]

    def set_status(
        self, keys: Iterable[tuple[EntityKind, str]], status: SyncStatus
    ) -> int:
        """Update sync status without logging a change."""
        count = 0
        with self.transaction(), self._cursor() as cursor:
            for kind, record_id in keys:
                cursor.execute(
                    "UPDATE records SET sync_status = ? WHERE kind = ? AND id = ?",
                    (status.value, kind.value, record_id),
                )
                count += cursor.rowcount
        return count

    def mark_synced(
        self, keys: Iterable[tuple[EntityKind, str]], synced_at: datetime
    ) -> int:
        """Record a confirmed cloud write: synced, timestamp set, version + 1.

        A record edited locally while the write was in flight stays
        ``pending`` so the edit is uploaded next time.
        """
        count = 0
        with self.transaction(), self._cursor() as cursor:
            for kind, record_id in keys:
                cursor.execute(
                    """
                    UPDATE records
                    SET sync_status = CASE WHEN sync_status = ? THEN ? ELSE sync_status END,
                        last_synced_at = ?, version = version + 1
                    WHERE kind = ? AND id = ?
                    """,
                    (
                        SyncStatus.SYNCING.value,
                        SyncStatus.SYNCED.value,
                        synced_at.isoformat(),
                        kind.value,
                        record_id,
                    ),
                )
                count += cursor.rowcount
        return count

    def clear(self, kinds: Iterable[EntityKind]) -> int:
        """Remove every record of the given kinds without logging changes."""
        removed = 0
        with self.transaction(), self._cursor() as cursor:
            for kind in kinds:
                cursor.execute("DELETE FROM records WHERE kind = ?", (kind.value,))
                removed += cursor.rowcount
                cursor.execute("DELETE FROM change_log WHERE kind = ?", (kind.value,))
        logger.info(f"Cleared {removed} records")
        return removed

    # Change capture

    def _log_change(
        self,
        cursor: sqlite3.Cursor,
        kind: EntityKind,
        record_id: str,
        change_type: ChangeType,
        origin: Optional[str],
    ) -> None:
        cursor.execute(
            """
            INSERT INTO change_log (kind, record_id, change_type, origin_device, committed_at)
            VALUES (?, ?, ?, ?, ?)
            """,
            (kind.value, record_id, change_type.value, origin, _now()),
        )

    def fetch_since(
        self, checkpoint: int, limit: Optional[int] = None
    ) -> tuple[list[ChangeRecord], int]:
        """Read the change log after a checkpoint, in commit order.

        Inserts and updates carry the record's current field snapshot. An
        insert/update whose record has since been deleted is skipped; the
        later delete entry covers it.

        Returns:
            (changes, checkpoint after the last entry read)
        """
        query = """
            SELECT seq, kind, record_id, change_type, origin_device
            FROM change_log WHERE seq > ? ORDER BY seq ASC
        """
        params: list = [checkpoint]
        if limit is not None:
            query += " LIMIT ?"
            params.append(limit)

        changes: list[ChangeRecord] = []
        position = checkpoint
        with self._cursor() as cursor:
            cursor.execute(query, params)
            rows = cursor.fetchall()
            for row in rows:
                position = row["seq"]
                kind = EntityKind(row["kind"])
                change_type = ChangeType(row["change_type"])
                values: dict = {}
                if change_type is not ChangeType.DELETE:
                    cursor.execute(
                        "SELECT fields FROM records WHERE kind = ? AND id = ?",
                        (kind.value, row["record_id"]),
                    )
                    current = cursor.fetchone()
                    if current is None:
                        continue
                    values = json.loads(current["fields"])
                changes.append(
                    ChangeRecord(
                        entity_kind=kind,
                        id=row["record_id"],
                        change_type=change_type,
                        values=values,
                        origin_device=row["origin_device"],
                    )
                )
        return changes, position

    def get_checkpoint(self, name: str) -> int:
        """Get a consumer's change-log position (0 if never set)."""
        with self._cursor() as cursor:
            cursor.execute("SELECT position FROM checkpoints WHERE name = ?", (name,))
            row = cursor.fetchone()
            return int(row["position"]) if row else 0

    def set_checkpoint(self, name: str, position: int) -> None:
        """Advance a consumer's checkpoint. Never moves backwards."""
        with self.transaction(), self._cursor() as cursor:
            cursor.execute(
                """
                INSERT INTO checkpoints (name, position, updated_at)
                VALUES (?, ?, ?)
                ON CONFLICT(name) DO UPDATE SET
                    position = MAX(checkpoints.position, excluded.position),
                    updated_at = excluded.updated_at
                """,
                (name, position, _now()),
            )

    # Goals

    def get_goals(self) -> dict[str, float]:
        with self._cursor() as cursor:
            cursor.execute("SELECT name, target_seconds FROM goals")
            return {row["name"]: float(row["target_seconds"]) for row in cursor.fetchall()}

    def set_goal(self, name: str, target_seconds: float) -> None:
        with self.transaction(), self._cursor() as cursor:
            cursor.execute(
                """
                INSERT INTO goals (name, target_seconds, updated_at)
                VALUES (?, ?, ?)
                ON CONFLICT(name) DO UPDATE SET
                    target_seconds = excluded.target_seconds,
                    updated_at = excluded.updated_at
                """,
                (name, float(target_seconds), _now()),
            )

    def replace_goals(self, goals: dict[str, float]) -> None:
        """Replace the entire goal map."""
        now = _now()
        with self.transaction(), self._cursor() as cursor:
            cursor.execute("DELETE FROM goals")
            cursor.executemany(
                "INSERT INTO goals (name, target_seconds, updated_at) VALUES (?, ?, ?)",
                [(name, float(value), now) for name, value in goals.items()],
            )

    # Telemetry

    def append_telemetry(
        self, workout_id: str, value: float, recorded_at: Optional[datetime] = None
    ) -> None:
        recorded = (recorded_at or datetime.now(timezone.utc)).isoformat()
        with self.transaction(), self._cursor() as cursor:
            cursor.execute(
                "INSERT INTO telemetry (workout_id, recorded_at, value) VALUES (?, ?, ?)",
                (workout_id, recorded, float(value)),
            )

    def telemetry(self, workout_id: str) -> list[tuple[datetime, float]]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT recorded_at, value FROM telemetry
                WHERE workout_id = ? ORDER BY id ASC
                """,
                (workout_id,),
            )
            return [
                (datetime.fromisoformat(row["recorded_at"]), float(row["value"]))
                for row in cursor.fetchall()
            ]

    def close(self) -> None:
        """Close every database connection opened by this store."""
        with self._connections_lock:
            for conn in self._connections:
                try:
                    conn.close()
                except sqlite3.Error as e:
                    logger.debug(f"Error closing connection: {e}")
            self._connections.clear()
        if hasattr(self._local, "connection"):
            del self._local.connection

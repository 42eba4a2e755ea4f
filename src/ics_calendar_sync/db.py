"""
SQLite state persistence: the synced-event ledger, run history and metadata.
"""

import logging
import sqlite3
from contextlib import contextmanager
from datetime import datetime
from datetime import timezone
from pathlib import Path

from ics_calendar_sync.models import RunStatus
from ics_calendar_sync.models import StateStoreError
from ics_calendar_sync.models import SyncedEventRecord
from ics_calendar_sync.models import SyncResult
from ics_calendar_sync.models import SyncRunRecord

logger = logging.getLogger(__name__)

_SCHEMA = """
    CREATE TABLE IF NOT EXISTS synced_events (
        source_uid TEXT PRIMARY KEY,
        store_item_id TEXT NOT NULL,
        store_local_id TEXT,
        content_hash TEXT NOT NULL,
        sequence INTEGER NOT NULL DEFAULT 0,
        last_modified TEXT,
        synced_at TEXT NOT NULL,
        raw_source_data TEXT NOT NULL DEFAULT ''
    );
    CREATE TABLE IF NOT EXISTS sync_history (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        started_at TEXT NOT NULL,
        completed_at TEXT,
        status TEXT NOT NULL,
        events_created INTEGER NOT NULL DEFAULT 0,
        events_updated INTEGER NOT NULL DEFAULT 0,
        events_deleted INTEGER NOT NULL DEFAULT 0,
        events_unchanged INTEGER NOT NULL DEFAULT 0,
        error_message TEXT
    );
    CREATE TABLE IF NOT EXISTS sync_metadata (
        key TEXT PRIMARY KEY,
        value TEXT NOT NULL,
        updated_at TEXT NOT NULL
    );
    CREATE INDEX IF NOT EXISTS idx_synced_events_item ON synced_events(store_item_id);
    CREATE INDEX IF NOT EXISTS idx_sync_history_started ON sync_history(started_at);
"""


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _format(value: datetime | None) -> str | None:
    if value is None:
        return None
    return value.astimezone(timezone.utc).isoformat()


def _parse(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        return datetime.fromisoformat(value)
    except ValueError:
        logger.debug(f"Unparseable timestamp in state database: {value!r}")
        return None


class StateDatabase:
    """Manages the SQLite state database for sync tracking.

    Every mutating method commits immediately; a crash mid-run leaves a
    partially updated ledger that the next run reconciles.
    """

    def __init__(self, db_path: Path):
        self.db_path = Path(db_path)
        self.conn: sqlite3.Connection | None = None

    def __enter__(self):
        self.connect()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    @contextmanager
    def _guard(self, action: str):
        if self.conn is None:
            raise StateStoreError("State database is not connected")
        try:
            yield self.conn
        except sqlite3.Error as e:
            raise StateStoreError(f"State database error while {action}: {e}") from e

    def connect(self):
        """Open (creating if needed) the database in WAL mode."""
        try:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            self.conn = sqlite3.connect(str(self.db_path), timeout=10)
            self.conn.row_factory = sqlite3.Row
            self.conn.execute("PRAGMA journal_mode=WAL")
            self.conn.executescript(_SCHEMA)
            self.conn.commit()
        except (sqlite3.Error, OSError) as e:
            self.close()
            raise StateStoreError(f"Cannot open state database {self.db_path}: {e}") from e
        logger.debug(f"Opened state database at {self.db_path}")

    def close(self):
        """Close the database connection."""
        if self.conn:
            self.conn.close()
            self.conn = None

    # ------------------------------------------------------------------ #
    # Ledger                                                              #
    # ------------------------------------------------------------------ #

    @staticmethod
    def _record(row: sqlite3.Row) -> SyncedEventRecord:
        return SyncedEventRecord(
            source_uid=row["source_uid"],
            store_item_id=row["store_item_id"],
            store_local_id=row["store_local_id"],
            content_hash=row["content_hash"],
            sequence=row["sequence"],
            last_modified=_parse(row["last_modified"]),
            synced_at=_parse(row["synced_at"]),
            raw_source_data=row["raw_source_data"],
        )

    def get_all_records(self) -> dict[str, SyncedEventRecord]:
        """All ledger rows keyed by source UID."""
        with self._guard("reading ledger") as conn:
            rows = conn.execute("SELECT * FROM synced_events").fetchall()
        return {row["source_uid"]: self._record(row) for row in rows}

    def get_record(self, source_uid: str) -> SyncedEventRecord | None:
        with self._guard("reading ledger") as conn:
            row = conn.execute(
                "SELECT * FROM synced_events WHERE source_uid = ?", (source_uid,)
            ).fetchone()
        return self._record(row) if row else None

    def upsert_record(self, record: SyncedEventRecord):
        """Insert a ledger row or replace the existing one for the same UID."""
        with self._guard("writing ledger") as conn:
            conn.execute(
                "INSERT INTO synced_events "
                "(source_uid, store_item_id, store_local_id, content_hash, sequence, "
                " last_modified, synced_at, raw_source_data) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?) "
                "ON CONFLICT(source_uid) DO UPDATE SET "
                "store_item_id = excluded.store_item_id, "
                "store_local_id = excluded.store_local_id, "
                "content_hash = excluded.content_hash, "
                "sequence = excluded.sequence, "
                "last_modified = excluded.last_modified, "
                "synced_at = excluded.synced_at, "
                "raw_source_data = excluded.raw_source_data",
                (
                    record.source_uid,
                    record.store_item_id,
                    record.store_local_id,
                    record.content_hash,
                    record.sequence,
                    _format(record.last_modified),
                    _format(record.synced_at) or _now(),
                    record.raw_source_data,
                ),
            )
            conn.commit()

    def update_hash(self, source_uid: str, content_hash: str, sequence: int):
        with self._guard("writing ledger") as conn:
            conn.execute(
                "UPDATE synced_events SET content_hash = ?, sequence = ?, synced_at = ? "
                "WHERE source_uid = ?",
                (content_hash, sequence, _now(), source_uid),
            )
            conn.commit()

    def update_identifiers(self, source_uid: str, store_item_id: str, store_local_id: str | None):
        """Re-stamp the store identifiers after a fallback resolution."""
        with self._guard("writing ledger") as conn:
            conn.execute(
                "UPDATE synced_events SET store_item_id = ?, store_local_id = ?, synced_at = ? "
                "WHERE source_uid = ?",
                (store_item_id, store_local_id, _now(), source_uid),
            )
            conn.commit()

    def delete(self, source_uid: str):
        with self._guard("writing ledger") as conn:
            conn.execute("DELETE FROM synced_events WHERE source_uid = ?", (source_uid,))
            conn.commit()

    def count(self) -> int:
        with self._guard("reading ledger") as conn:
            return conn.execute("SELECT COUNT(*) FROM synced_events").fetchone()[0]

    # ------------------------------------------------------------------ #
    # Run history                                                         #
    # ------------------------------------------------------------------ #

    @staticmethod
    def _run(row: sqlite3.Row) -> SyncRunRecord:
        return SyncRunRecord(
            id=row["id"],
            started_at=_parse(row["started_at"]),
            completed_at=_parse(row["completed_at"]),
            status=RunStatus(row["status"]),
            created=row["events_created"],
            updated=row["events_updated"],
            deleted=row["events_deleted"],
            unchanged=row["events_unchanged"],
            error_message=row["error_message"],
        )

    def start_run(self) -> int:
        """Open a history row. It stays 'failed' until completed."""
        with self._guard("writing history") as conn:
            cursor = conn.execute(
                "INSERT INTO sync_history (started_at, status) VALUES (?, ?)",
                (_now(), RunStatus.FAILED.value),
            )
            conn.commit()
            return cursor.lastrowid

    def complete_run(
        self,
        run_id: int,
        status: RunStatus,
        result: SyncResult | None = None,
        error_message: str | None = None,
    ):
        result = result or SyncResult()
        with self._guard("writing history") as conn:
            conn.execute(
                "UPDATE sync_history SET completed_at = ?, status = ?, "
                "events_created = ?, events_updated = ?, events_deleted = ?, "
                "events_unchanged = ?, error_message = ? WHERE id = ?",
                (
                    _now(),
                    status.value,
                    result.created,
                    result.updated,
                    result.deleted,
                    result.unchanged,
                    error_message,
                    run_id,
                ),
            )
            conn.commit()

    def recent_runs(self, limit: int = 10) -> list[SyncRunRecord]:
        """Newest first."""
        with self._guard("reading history") as conn:
            rows = conn.execute(
                "SELECT * FROM sync_history ORDER BY started_at DESC, id DESC LIMIT ?",
                (limit,),
            ).fetchall()
        return [self._run(row) for row in rows]

    def last_successful_run(self) -> SyncRunRecord | None:
        with self._guard("reading history") as conn:
            row = conn.execute(
                "SELECT * FROM sync_history WHERE status = ? "
                "ORDER BY started_at DESC, id DESC LIMIT 1",
                (RunStatus.SUCCESS.value,),
            ).fetchone()
        return self._run(row) if row else None

    # ------------------------------------------------------------------ #
    # Metadata & maintenance                                              #
    # ------------------------------------------------------------------ #

    def get_metadata(self, key: str) -> str | None:
        with self._guard("reading metadata") as conn:
            row = conn.execute("SELECT value FROM sync_metadata WHERE key = ?", (key,)).fetchone()
        return row["value"] if row else None

    def set_metadata(self, key: str, value: str):
        with self._guard("writing metadata") as conn:
            conn.execute(
                "INSERT INTO sync_metadata (key, value, updated_at) VALUES (?, ?, ?) "
                "ON CONFLICT(key) DO UPDATE SET value = excluded.value, "
                "updated_at = excluded.updated_at",
                (key, value, _now()),
            )
            conn.commit()

    def reset(self):
        """Truncate ledger, history and metadata, then reclaim space."""
        with self._guard("resetting") as conn:
            conn.execute("DELETE FROM synced_events")
            conn.execute("DELETE FROM sync_history")
            conn.execute("DELETE FROM sync_metadata")
            conn.commit()
            conn.execute("VACUUM")
        logger.info("State database reset")

    def check_integrity(self) -> bool:
        with self._guard("checking integrity") as conn:
            row = conn.execute("PRAGMA integrity_check").fetchone()
        return row is not None and row[0] == "ok"


def check_integrity_at(db_path: Path) -> bool:
    """Integrity check for a database file without creating it.

    Returns True when the file does not exist yet.
    """
    if not db_path.exists():
        return True
    try:
        conn = sqlite3.connect(db_path)
    except sqlite3.Error:
        return False
    try:
        row = conn.execute("PRAGMA integrity_check").fetchone()
        return row is not None and row[0] == "ok"
    except sqlite3.Error:
        return False
    finally:
        conn.close()

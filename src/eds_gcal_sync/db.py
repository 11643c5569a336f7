"""
SQLite persistence of the sync watermark.
"""

import logging
import sqlite3
import time
from datetime import datetime
from datetime import timezone
from pathlib import Path

from eds_gcal_sync.models import StateStoreError

logger = logging.getLogger(__name__)


def _to_utc(moment: datetime) -> datetime:
    if moment.tzinfo is None:
        raise ValueError(f"Watermark must be timezone-aware: {moment!r}")
    return moment.astimezone(timezone.utc)


class StateDatabase:
    """Stores the last successful sync timestamp per (source, target) calendar pair."""

    def __init__(self, db_path: Path, source_calendar_id: str, target_calendar_id: str):
        self.db_path = db_path
        self.source_calendar_id = source_calendar_id
        self.target_calendar_id = target_calendar_id
        self.conn: sqlite3.Connection | None = None

    def __enter__(self):
        self.connect()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    def connect(self):
        """Initialize and connect to the state database."""
        try:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            self.conn = sqlite3.connect(str(self.db_path))
            self.conn.row_factory = sqlite3.Row  # Enable column access by name
            self._init_schema()
        except (OSError, sqlite3.Error) as e:
            raise StateStoreError(f"Cannot open state database {self.db_path}: {e}") from e

    def _init_schema(self):
        self.conn.execute("""
            CREATE TABLE IF NOT EXISTS sync_state (
                source_calendar_id TEXT NOT NULL,
                target_calendar_id TEXT NOT NULL,
                last_sync_at TEXT NOT NULL,
                updated_at INTEGER NOT NULL,
                PRIMARY KEY (source_calendar_id, target_calendar_id)
            )
        """)
        self.conn.commit()

    def _require_conn(self) -> sqlite3.Connection:
        if self.conn is None:
            raise StateStoreError("State database is not connected")
        return self.conn

    def load(self) -> datetime | None:
        """Return the watermark for this calendar pair, or None before the first sync."""
        conn = self._require_conn()
        try:
            row = conn.execute(
                "SELECT last_sync_at FROM sync_state "
                "WHERE source_calendar_id = ? AND target_calendar_id = ?",
                (self.source_calendar_id, self.target_calendar_id),
            ).fetchone()
        except sqlite3.Error as e:
            raise StateStoreError(f"Cannot read sync state: {e}") from e
        if row is None:
            return None
        try:
            return datetime.fromisoformat(row["last_sync_at"])
        except ValueError as e:
            raise StateStoreError(f"Corrupt watermark in state database: {row[0]!r}") from e

    def commit(self, timestamp: datetime):
        """Advance the watermark to ``timestamp`` and commit.

        The watermark never moves backward; an older timestamp is ignored.
        Use reset() to start over.
        """
        conn = self._require_conn()
        new_value = _to_utc(timestamp)
        current = self.load()
        if current is not None and new_value <= current:
            logger.debug(
                f"Watermark not advanced: {new_value.isoformat()} <= {current.isoformat()}"
            )
            return
        try:
            with conn:
                conn.execute(
                    "INSERT INTO sync_state "
                    "(source_calendar_id, target_calendar_id, last_sync_at, updated_at) "
                    "VALUES (?, ?, ?, ?) "
                    "ON CONFLICT(source_calendar_id, target_calendar_id) DO UPDATE SET "
                    "last_sync_at = excluded.last_sync_at, updated_at = excluded.updated_at",
                    (
                        self.source_calendar_id,
                        self.target_calendar_id,
                        new_value.isoformat(),
                        int(time.time()),
                    ),
                )
        except sqlite3.Error as e:
            raise StateStoreError(f"Cannot commit sync state: {e}") from e
        logger.debug(f"Watermark advanced to {new_value.isoformat()}")

    def reset(self):
        """Forget the watermark for this calendar pair (full resync / clear)."""
        conn = self._require_conn()
        try:
            with conn:
                conn.execute(
                    "DELETE FROM sync_state "
                    "WHERE source_calendar_id = ? AND target_calendar_id = ?",
                    (self.source_calendar_id, self.target_calendar_id),
                )
        except sqlite3.Error as e:
            raise StateStoreError(f"Cannot reset sync state: {e}") from e

    def close(self):
        """Close the database connection."""
        if self.conn:
            self.conn.close()
            self.conn = None


def query_status_all_pairs(db_path: Path) -> list:
    """
    Return one row per calendar pair recorded in the database.

    Each row exposes: source_calendar_id, target_calendar_id, last_sync_at, updated_at.
    Returns an empty list when the DB file does not exist or has no sync_state table yet.
    """
    if not db_path.exists():
        return []
    conn = sqlite3.connect(db_path)
    conn.row_factory = sqlite3.Row
    try:
        tables = {
            row["name"]
            for row in conn.execute("SELECT name FROM sqlite_master WHERE type = 'table'")
        }
        if "sync_state" not in tables:
            return []
        cursor = conn.execute("""
            SELECT source_calendar_id, target_calendar_id, last_sync_at, updated_at
            FROM sync_state
            ORDER BY source_calendar_id, target_calendar_id
        """)
        return cursor.fetchall()
    finally:
        conn.close()

"""SQLite-backed primary store: the authoritative local tier."""

import json
import logging
import sqlite3
from pathlib import Path
from typing import Any

from ..exceptions import StoreError
from ..notes import Note, NoteFilter, matches
from .base import NoteStore

logger = logging.getLogger(__name__)

SCHEMA = """
CREATE TABLE IF NOT EXISTS notes (
    id TEXT PRIMARY KEY,
    owner_id TEXT,
    title TEXT NOT NULL DEFAULT '',
    body TEXT NOT NULL DEFAULT '',
    created_at INTEGER NOT NULL,
    updated_at INTEGER NOT NULL,
    date INTEGER,
    time TEXT,
    tags TEXT NOT NULL DEFAULT '[]',
    deleted INTEGER NOT NULL DEFAULT 0
);

CREATE INDEX IF NOT EXISTS idx_notes_owner ON notes(owner_id);
CREATE INDEX IF NOT EXISTS idx_notes_owner_updated ON notes(owner_id, updated_at);
CREATE INDEX IF NOT EXISTS idx_notes_updated ON notes(updated_at);
"""

UPSERT_SQL = """
INSERT INTO notes (
    id, owner_id, title, body, created_at, updated_at, date, time, tags, deleted
) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
ON CONFLICT(id) DO UPDATE SET
    owner_id = excluded.owner_id,
    title = excluded.title,
    body = excluded.body,
    created_at = excluded.created_at,
    updated_at = excluded.updated_at,
    date = excluded.date,
    time = excluded.time,
    tags = excluded.tags,
    deleted = excluded.deleted
"""

COLUMNS = "id, owner_id, title, body, created_at, updated_at, date, time, tags, deleted"


def _row_to_note(row: sqlite3.Row) -> Note:
    return Note(
        id=row["id"],
        owner_id=row["owner_id"],
        title=row["title"],
        body=row["body"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
        date=row["date"],
        time=row["time"],
        tags=tuple(json.loads(row["tags"]) if row["tags"] else ()),
        deleted=bool(row["deleted"]),
    )


class SqliteNoteStore(NoteStore):
    """Notes in a single SQLite table keyed by id.

    Owner, tombstone, timestamp, date and time predicates are evaluated in
    SQL; text and tag predicates are re-checked in Python so matching is
    identical to the other tiers (SQLite's LOWER() only folds ASCII).
    """

    name = "primary"

    def __init__(self, db_path: str | Path):
        """Initialize the store.

        Args:
            db_path: Path to the SQLite database file, or ":memory:".
        """
        self.db_path = Path(db_path).expanduser()
        self._conn: sqlite3.Connection | None = None

    def connect(self) -> None:
        """Initialize database connection and schema."""
        if self._conn is not None:
            return

        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        try:
            self._conn = sqlite3.connect(str(self.db_path), check_same_thread=False)
            self._conn.row_factory = sqlite3.Row
            self._conn.executescript(SCHEMA)
            self._conn.commit()
        except sqlite3.Error as e:
            raise StoreError(self.name, f"cannot open {self.db_path}: {e}") from e

        logger.info(f"SqliteNoteStore connected to {self.db_path}")

    def close(self) -> None:
        """Close database connection."""
        if self._conn:
            self._conn.close()
            self._conn = None

    def _ensure_connected(self) -> sqlite3.Connection:
        """Ensure database connection exists."""
        if self._conn is None:
            self.connect()
        return self._conn

    async def get(self, note_id: str) -> Note | None:
        conn = self._ensure_connected()
        try:
            row = conn.execute(
                f"SELECT {COLUMNS} FROM notes WHERE id = ?", (note_id,)
            ).fetchone()
        except sqlite3.Error as e:
            raise StoreError(self.name, f"get {note_id} failed: {e}") from e

        return _row_to_note(row) if row else None

    async def upsert(self, note: Note) -> None:
        conn = self._ensure_connected()
        params = (
            note.id,
            note.owner_id,
            note.title,
            note.body,
            note.created_at,
            note.updated_at,
            note.date,
            note.time,
            json.dumps(list(note.tags), ensure_ascii=False),
            1 if note.deleted else 0,
        )
        try:
            conn.execute(UPSERT_SQL, params)
            conn.commit()
        except sqlite3.Error as e:
            conn.rollback()
            raise StoreError(self.name, f"upsert {note.id} failed: {e}") from e

        logger.debug(f"Upserted note {note.id} (updatedAt={note.updated_at})")

    async def find(self, note_filter: NoteFilter) -> list[Note]:
        conn = self._ensure_connected()
        where: list[str] = []
        params: list[Any] = []

        if note_filter.owner_id is not None:
            where.append("owner_id = ?")
            params.append(note_filter.owner_id)
        if not note_filter.include_deleted:
            where.append("deleted = 0")
        if note_filter.updated_after is not None:
            where.append("updated_at > ?")
            params.append(note_filter.updated_after)
        if note_filter.date_from is not None:
            where.append("date IS NOT NULL AND date >= ?")
            params.append(note_filter.date_from)
        if note_filter.date_to is not None:
            where.append("date IS NOT NULL AND date <= ?")
            params.append(note_filter.date_to)
        if note_filter.time is not None:
            where.append("time = ?")
            params.append(note_filter.time)

        where_sql = f"WHERE {' AND '.join(where)}" if where else ""
        sql = f"SELECT {COLUMNS} FROM notes {where_sql} ORDER BY updated_at DESC"

        try:
            rows = conn.execute(sql, params).fetchall()
        except sqlite3.Error as e:
            raise StoreError(self.name, f"find failed: {e}") from e

        notes = [_row_to_note(row) for row in rows]
        return [n for n in notes if matches(n, note_filter)]

    def get_stats(self) -> dict[str, Any]:
        """Get store statistics.

        Returns:
            Dictionary with note counts and database size.
        """
        conn = self._ensure_connected()

        stats: dict[str, Any] = {}
        stats["notes_count"] = conn.execute("SELECT COUNT(*) FROM notes").fetchone()[0]
        stats["tombstones_count"] = conn.execute(
            "SELECT COUNT(*) FROM notes WHERE deleted = 1"
        ).fetchone()[0]
        stats["owners_count"] = conn.execute(
            "SELECT COUNT(DISTINCT owner_id) FROM notes"
        ).fetchone()[0]

        if self.db_path.exists():
            stats["db_size_mb"] = round(
                self.db_path.stat().st_size / (1024 * 1024), 2
            )

        return stats

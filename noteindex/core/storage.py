from __future__ import annotations

import logging
import os
import sqlite3
from dataclasses import dataclass
from typing import Any, Iterator

import sqlite_vec

from noteindex.core.embedding_providers import deserialize_f32, serialize_f32
from noteindex.core.settings import Settings

logger = logging.getLogger(__name__)


SCHEMA_SQL = """
PRAGMA journal_mode=WAL;

-- Indexing work items (one text item per note plus one per attachment)
CREATE TABLE IF NOT EXISTS processing_queue (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  note_id TEXT NOT NULL,
  kind TEXT NOT NULL,  -- text, image, document
  payload_text TEXT,  -- set once the item is extracted (or was text from the start)
  payload_blob BLOB,  -- raw attachment bytes until extraction succeeds
  mime_type TEXT,
  status TEXT NOT NULL,  -- pending_extraction, pending_embedding, failed, completed
  retry_count INTEGER NOT NULL DEFAULT 0,
  last_error TEXT,
  retry_after TEXT,  -- not eligible before this time (backoff)
  enqueued_at TEXT NOT NULL,
  updated_at TEXT DEFAULT (datetime('now'))
);

CREATE INDEX IF NOT EXISTS idx_queue_status_enqueued ON processing_queue(status, enqueued_at, id);
CREATE INDEX IF NOT EXISTS idx_queue_note_id ON processing_queue(note_id);

-- Durable chunk embeddings, one row per (note, chunk)
CREATE TABLE IF NOT EXISTS note_vectors (
  id TEXT PRIMARY KEY,  -- <note_id>_<chunk_index>
  note_id TEXT NOT NULL,
  chunk_index INTEGER NOT NULL,
  vector BLOB NOT NULL,
  dimensions INTEGER NOT NULL,
  text TEXT NOT NULL,
  created_at TEXT DEFAULT (datetime('now')),
  UNIQUE(note_id, chunk_index)
);

CREATE INDEX IF NOT EXISTS idx_note_vectors_note_id ON note_vectors(note_id);
"""


def _run_migrations(conn: sqlite3.Connection) -> None:
    """Run schema migrations for existing DBs."""
    cur = conn.execute("PRAGMA table_info(processing_queue)")
    queue_columns = {row[1] for row in cur.fetchall()}

    if "retry_after" not in queue_columns:
        conn.execute("ALTER TABLE processing_queue ADD COLUMN retry_after TEXT")
        conn.commit()

    if "mime_type" not in queue_columns:
        conn.execute("ALTER TABLE processing_queue ADD COLUMN mime_type TEXT")
        conn.commit()


def vector_id(note_id: str, chunk_index: int) -> str:
    """Composite key of a chunk vector."""
    return f"{note_id}_{chunk_index}"


@dataclass
class VectorRecord:
    """One durable chunk embedding."""

    note_id: str
    chunk_index: int
    vector: list[float]
    text: str

    @property
    def id(self) -> str:
        return vector_id(self.note_id, self.chunk_index)

    @property
    def dimensions(self) -> int:
        return len(self.vector)

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> VectorRecord:
        """Create VectorRecord from database row."""
        return cls(
            note_id=row["note_id"],
            chunk_index=row["chunk_index"],
            vector=deserialize_f32(row["vector"]),
            text=row["text"],
        )


def connect(db_path: str) -> sqlite3.Connection:
    """Open a connection configured the way every component expects."""
    if db_path != ":memory:":
        directory = os.path.dirname(db_path)
        if directory:
            os.makedirs(directory, exist_ok=True)

    conn = sqlite3.connect(db_path, check_same_thread=False)
    conn.row_factory = sqlite3.Row

    # sqlite-vec must be loaded into this connection
    conn.enable_load_extension(True)
    sqlite_vec.load(conn)
    conn.enable_load_extension(False)
    return conn


@dataclass
class DB:
    conn: sqlite3.Connection

    def init(self) -> None:
        self.conn.executescript(SCHEMA_SQL)
        self.conn.commit()
        # Run migrations for existing DBs
        _run_migrations(self.conn)

    def close(self) -> None:
        self.conn.close()

    # ==================== Vector Store Methods ====================

    def replace_note_vectors(self, note_id: str, records: list[VectorRecord]) -> int:
        """Replace every stored vector of a note with a new chunk set.

        Old rows are deleted in the same transaction before any new row is
        written, so a note never ends up with chunks from two runs.

        Args:
            note_id: The note whose vectors are replaced
            records: New chunk vectors, chunk indices contiguous from 0

        Returns:
            Number of records written
        """
        for record in records:
            if record.note_id != note_id:
                raise ValueError(f"Record {record.id} does not belong to note {note_id}")

        try:
            self.conn.execute("DELETE FROM note_vectors WHERE note_id = ?", (note_id,))
            self.conn.executemany(
                """
                INSERT INTO note_vectors (id, note_id, chunk_index, vector, dimensions, text)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                [
                    (
                        r.id,
                        r.note_id,
                        r.chunk_index,
                        serialize_f32(r.vector),
                        r.dimensions,
                        r.text,
                    )
                    for r in records
                ],
            )
        except Exception:
            self.conn.rollback()
            raise

        self.conn.commit()
        return len(records)

    def delete_note_vectors(self, note_id: str) -> int:
        """Delete all vectors of a note. Returns number of rows deleted."""
        cur = self.conn.execute("DELETE FROM note_vectors WHERE note_id = ?", (note_id,))
        self.conn.commit()
        return cur.rowcount

    def delete_vectors(self, ids: list[str]) -> int:
        """Delete vectors by key, in batches to avoid huge IN clauses."""
        deleted = 0
        for i in range(0, len(ids), 500):
            batch = ids[i : i + 500]
            placeholders = ",".join("?" * len(batch))
            cur = self.conn.execute(
                f"DELETE FROM note_vectors WHERE id IN ({placeholders})",
                batch,
            )
            deleted += cur.rowcount
        self.conn.commit()
        return deleted

    def iter_vectors(self, batch_size: int = 500) -> Iterator[VectorRecord]:
        """Scan the whole store, ordered by note and chunk."""
        cur = self.conn.execute(
            """
            SELECT note_id, chunk_index, vector, text
            FROM note_vectors
            ORDER BY note_id, chunk_index
            """
        )
        while True:
            rows = cur.fetchmany(batch_size)
            if not rows:
                break
            for row in rows:
                yield VectorRecord.from_row(row)

    def get_note_vectors(self, note_id: str) -> list[VectorRecord]:
        """Get all vectors of a note ordered by chunk index."""
        cur = self.conn.execute(
            """
            SELECT note_id, chunk_index, vector, text
            FROM note_vectors
            WHERE note_id = ?
            ORDER BY chunk_index
            """,
            (note_id,),
        )
        return [VectorRecord.from_row(row) for row in cur.fetchall()]

    def count_note_vectors(self, note_id: str) -> int:
        cur = self.conn.execute("SELECT COUNT(*) FROM note_vectors WHERE note_id = ?", (note_id,))
        return cur.fetchone()[0]

    def note_ids_with_vectors(self) -> set[str]:
        """Distinct note ids that have at least one stored vector."""
        cur = self.conn.execute("SELECT DISTINCT note_id FROM note_vectors")
        return {row[0] for row in cur.fetchall()}

    def count_embedded_notes(self) -> int:
        cur = self.conn.execute("SELECT COUNT(DISTINCT note_id) FROM note_vectors")
        return cur.fetchone()[0]

    def get_vector_stats(self) -> dict[str, Any]:
        """Get vector store statistics, including records per dimension."""
        cur = self.conn.execute(
            "SELECT COUNT(*), COUNT(DISTINCT note_id) FROM note_vectors"
        )
        records, notes = cur.fetchone()
        cur = self.conn.execute(
            "SELECT dimensions, COUNT(*) FROM note_vectors GROUP BY dimensions ORDER BY dimensions"
        )
        by_dimensions = {row[0]: row[1] for row in cur.fetchall()}
        return {
            "records": records,
            "notes": notes,
            "by_dimensions": by_dimensions,
        }


def init_db(settings: Settings | None = None) -> DB:
    from noteindex.core.index_queue import init_index_queue

    s = settings or Settings.from_env()
    conn = connect(s.db_path)

    db = DB(conn=conn)
    db.init()

    # Queue shares the same connection
    init_index_queue(conn, s)
    logger.info(f"Database ready at {s.db_path}")
    return db

"""In-memory vector index over sqlite-vec, rebuilt from the durable store.

The index lives in a private ``:memory:`` SQLite connection:

- ``entries``      one row per chunk, keyed ``<note_id>_<chunk_index>``
- ``entries_vec``  vec0 table holding the embedding under the same rowid
- ``entries_fts``  FTS5 table over the chunk text for hybrid queries

``entries.note_id`` is indexed, so purging a note is a direct lookup of its
chunk keys rather than a guess over a range of indices.
"""

from __future__ import annotations

import logging
import re
import sqlite3
from dataclasses import asdict, dataclass
from typing import TYPE_CHECKING, Any

import sqlite_vec

from noteindex.core.embedding_providers import serialize_f32
from noteindex.core.storage import vector_id

if TYPE_CHECKING:
    from noteindex.core.storage import DB

logger = logging.getLogger(__name__)

# sqlite-vec rejects larger k values
MAX_KNN = 4096


class DuplicateKeyError(Exception):
    """An entry with this key is already in the index."""

    def __init__(self, key: str):
        super().__init__(f"Duplicate index key: {key}")
        self.key = key


@dataclass(frozen=True)
class IndexEntry:
    note_id: str
    chunk_index: int
    vector: list[float]
    text: str

    @property
    def key(self) -> str:
        return vector_id(self.note_id, self.chunk_index)


@dataclass
class SearchHit:
    """One ranked search result."""

    note_id: str
    chunk_index: int
    text: str
    score: float

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class RebuildResult:
    loaded: int = 0
    purged: int = 0
    purged_notes: int = 0


def _fts_query(term: str) -> str | None:
    """Turn free text into a safe FTS5 OR-query of quoted tokens."""
    tokens = re.findall(r"\w+", term or "")
    if not tokens:
        return None
    return " OR ".join(f'"{t}"' for t in tokens)


def _similarity(distance: float) -> float:
    # L2 distance between unit vectors -> cosine similarity
    return 1.0 - (distance * distance) / 2.0


class VectorIndex:
    """Rebuildable similarity index for chunk vectors of one dimension."""

    def __init__(self, dimensions: int):
        if dimensions <= 0:
            raise ValueError(f"dimensions must be positive, got {dimensions}")

        self.dimensions = dimensions
        self._built = False

        conn = sqlite3.connect(":memory:", check_same_thread=False)
        conn.enable_load_extension(True)
        sqlite_vec.load(conn)
        conn.enable_load_extension(False)

        conn.executescript(
            f"""
            CREATE TABLE entries (
              id INTEGER PRIMARY KEY,
              key TEXT NOT NULL UNIQUE,
              note_id TEXT NOT NULL,
              chunk_index INTEGER NOT NULL,
              text TEXT NOT NULL
            );
            CREATE INDEX idx_entries_note_id ON entries(note_id);

            CREATE VIRTUAL TABLE entries_vec USING vec0(
              embedding float[{dimensions}]
            );

            CREATE VIRTUAL TABLE entries_fts USING fts5(text);
            """
        )
        self._conn = conn

    @property
    def built(self) -> bool:
        return self._built

    def __len__(self) -> int:
        return self._conn.execute("SELECT COUNT(*) FROM entries").fetchone()[0]

    def close(self) -> None:
        self._conn.close()

    # ==================== Point operations ====================

    def _rowid(self, key: str) -> int | None:
        row = self._conn.execute("SELECT rowid FROM entries WHERE key = ?", (key,)).fetchone()
        return row[0] if row else None

    def insert(self, entry: IndexEntry) -> None:
        """Add one entry.

        Raises:
            DuplicateKeyError: The key is already present
            ValueError: The vector has the wrong dimension
        """
        if len(entry.vector) != self.dimensions:
            raise ValueError(f"Vector for {entry.key} has {len(entry.vector)} dims, index expects {self.dimensions}")

        try:
            cur = self._conn.execute(
                "INSERT INTO entries (key, note_id, chunk_index, text) VALUES (?, ?, ?, ?)",
                (entry.key, entry.note_id, entry.chunk_index, entry.text),
            )
        except sqlite3.IntegrityError as e:
            raise DuplicateKeyError(entry.key) from e

        rowid = cur.lastrowid
        self._conn.execute(
            "INSERT INTO entries_vec (rowid, embedding) VALUES (?, ?)",
            (rowid, serialize_f32(entry.vector)),
        )
        self._conn.execute("INSERT INTO entries_fts (rowid, text) VALUES (?, ?)", (rowid, entry.text))
        self._conn.commit()

    def upsert(self, entry: IndexEntry) -> None:
        """Insert, replacing an existing entry with the same key."""
        try:
            self.insert(entry)
        except DuplicateKeyError:
            logger.debug(f"Index key {entry.key} already present, replacing")
            self.remove(entry.key)
            self.insert(entry)

    def _delete_rowids(self, rowids: list[int]) -> None:
        for rowid in rowids:
            self._conn.execute("DELETE FROM entries_vec WHERE rowid = ?", (rowid,))
            self._conn.execute("DELETE FROM entries_fts WHERE rowid = ?", (rowid,))
            self._conn.execute("DELETE FROM entries WHERE rowid = ?", (rowid,))
        self._conn.commit()

    def remove(self, key: str) -> bool:
        """Remove one entry. Returns False if the key was absent."""
        rowid = self._rowid(key)
        if rowid is None:
            return False
        self._delete_rowids([rowid])
        return True

    def chunk_indices(self, note_id: str) -> list[int]:
        cur = self._conn.execute(
            "SELECT chunk_index FROM entries WHERE note_id = ? ORDER BY chunk_index",
            (note_id,),
        )
        return [row[0] for row in cur.fetchall()]

    def remove_note(self, note_id: str) -> int:
        """Remove every entry of a note. Returns number of entries removed."""
        cur = self._conn.execute(
            "SELECT rowid, chunk_index FROM entries WHERE note_id = ? ORDER BY chunk_index",
            (note_id,),
        )
        rows = cur.fetchall()
        if not rows:
            return 0

        indices = [row[1] for row in rows]
        if indices != list(range(len(indices))):
            logger.warning(f"Note {note_id} had non-contiguous chunk indices {indices} in the index")

        self._delete_rowids([row[0] for row in rows])
        return len(rows)

    def note_ids(self) -> set[str]:
        cur = self._conn.execute("SELECT DISTINCT note_id FROM entries")
        return {row[0] for row in cur.fetchall()}

    def clear(self) -> None:
        self._conn.execute("DELETE FROM entries_vec")
        self._conn.execute("DELETE FROM entries_fts")
        self._conn.execute("DELETE FROM entries")
        self._conn.commit()

    # ==================== Build ====================

    def rebuild(self, db: DB) -> RebuildResult:
        """Load every durable record of the active dimension.

        Records of any other dimension come from a previous embedding model;
        they are deleted from the durable store instead of being served.
        """
        self.clear()
        result = RebuildResult()
        mismatched: list[str] = []
        mismatched_notes: set[str] = set()

        for record in db.iter_vectors():
            if record.dimensions != self.dimensions:
                mismatched.append(record.id)
                mismatched_notes.add(record.note_id)
                continue
            self.upsert(
                IndexEntry(
                    note_id=record.note_id,
                    chunk_index=record.chunk_index,
                    vector=record.vector,
                    text=record.text,
                )
            )
            result.loaded += 1

        if mismatched:
            result.purged = db.delete_vectors(mismatched)
            result.purged_notes = len(mismatched_notes)
            logger.warning(
                f"Purged {result.purged} stored vector(s) of {result.purged_notes} note(s) "
                f"not matching {self.dimensions} dimensions"
            )

        self._built = True
        logger.info(f"Vector index built: {result.loaded} entries ({self.dimensions} dims)")
        return result

    def ensure_built(self, db: DB) -> RebuildResult | None:
        """Build once, or again after ``invalidate()``."""
        if self._built:
            return None
        return self.rebuild(db)

    def invalidate(self) -> None:
        """Force the next ensure_built to reload from the durable store."""
        self._built = False

    # ==================== Queries ====================

    def _knn(self, vector: list[float], k: int) -> list[tuple[int, float]]:
        if len(vector) != self.dimensions:
            raise ValueError(f"Query vector has {len(vector)} dims, index expects {self.dimensions}")
        k = min(max(k, 1), MAX_KNN)
        cur = self._conn.execute(
            """
            SELECT rowid, distance
            FROM entries_vec
            WHERE embedding MATCH ? AND k = ?
            ORDER BY distance
            """,
            (serialize_f32(vector), k),
        )
        return [(row[0], _similarity(row[1])) for row in cur.fetchall()]

    def _entries(self, rowids: list[int]) -> dict[int, tuple[str, int, str]]:
        if not rowids:
            return {}
        placeholders = ",".join("?" * len(rowids))
        cur = self._conn.execute(
            f"SELECT rowid, note_id, chunk_index, text FROM entries WHERE rowid IN ({placeholders})",
            rowids,
        )
        return {row[0]: (row[1], row[2], row[3]) for row in cur.fetchall()}

    def search(self, vector: list[float], limit: int = 10, threshold: float = 0.0) -> list[SearchHit]:
        """Top ``limit`` entries with cosine similarity >= threshold, best first."""
        if limit <= 0:
            return []

        candidates = [(rowid, sim) for rowid, sim in self._knn(vector, limit) if sim >= threshold]
        entries = self._entries([rowid for rowid, _ in candidates])

        hits = []
        for rowid, sim in candidates:
            if rowid not in entries:
                continue
            note_id, chunk_index, text = entries[rowid]
            hits.append(SearchHit(note_id=note_id, chunk_index=chunk_index, text=text, score=sim))
        return hits

    def _lexical_scores(self, term: str, rowids: list[int]) -> dict[int, float]:
        """BM25 scores of the given rows normalised to [0, 1]."""
        query = _fts_query(term)
        if not query or not rowids:
            return {}

        placeholders = ",".join("?" * len(rowids))
        cur = self._conn.execute(
            f"""
            SELECT rowid, bm25(entries_fts)
            FROM entries_fts
            WHERE entries_fts MATCH ? AND rowid IN ({placeholders})
            """,
            [query, *rowids],
        )
        # bm25() is lower-is-better and negative for matches
        raw = {row[0]: -row[1] for row in cur.fetchall()}
        best = max(raw.values(), default=0.0)
        if best <= 0:
            return {rowid: 1.0 for rowid in raw}
        return {rowid: max(score, 0.0) / best for rowid, score in raw.items()}

    def hybrid_search(
        self,
        term: str,
        vector: list[float],
        limit: int = 10,
        threshold: float = 0.0,
        text_weight: float = 0.3,
    ) -> list[SearchHit]:
        """Vector candidates above threshold, re-ranked with lexical matches.

        score = (1 - text_weight) * similarity + text_weight * lexical

        ``threshold`` gates the cosine similarity only, so a returned hit can
        carry a blended score below it.
        """
        if limit <= 0:
            return []

        w = min(max(text_weight, 0.0), 1.0)
        candidates = [(rowid, sim) for rowid, sim in self._knn(vector, limit * 4) if sim >= threshold]
        rowids = [rowid for rowid, _ in candidates]
        entries = self._entries(rowids)
        lexical = self._lexical_scores(term, rowids)

        hits = []
        for rowid, sim in candidates:
            if rowid not in entries:
                continue
            note_id, chunk_index, text = entries[rowid]
            score = (1.0 - w) * sim + w * lexical.get(rowid, 0.0)
            hits.append(SearchHit(note_id=note_id, chunk_index=chunk_index, text=text, score=score))

        hits.sort(key=lambda h: h.score, reverse=True)
        return hits[:limit]

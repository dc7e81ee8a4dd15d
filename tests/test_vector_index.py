"""Tests for the in-memory sqlite-vec index."""

import sqlite3

import pytest
import sqlite_vec

from noteindex.core.embedding_providers import l2_normalize
from noteindex.core.storage import VectorRecord
from noteindex.core.vector_index import DuplicateKeyError, IndexEntry, VectorIndex


def entry(note_id, idx, vector, text="chunk"):
    return IndexEntry(note_id=note_id, chunk_index=idx, vector=l2_normalize(vector), text=text)


@pytest.fixture
def idx():
    index = VectorIndex(4)
    yield index
    index.close()


def test_sqlite_vec_loads():
    """Test that sqlite-vec extension loads correctly."""
    conn = sqlite3.connect(":memory:")
    conn.enable_load_extension(True)
    sqlite_vec.load(conn)

    version = conn.execute("SELECT vec_version()").fetchone()[0]
    assert version is not None
    conn.close()


def test_invalid_dimensions():
    """Test non-positive dimensions."""
    with pytest.raises(ValueError):
        VectorIndex(0)


class TestPointOperations:
    def test_insert_and_len(self, idx):
        """Test insert and count."""
        idx.insert(entry("A", 0, [1, 0, 0, 0]))
        idx.insert(entry("A", 1, [0, 1, 0, 0]))
        assert len(idx) == 2
        assert idx.chunk_indices("A") == [0, 1]

    def test_duplicate_key(self, idx):
        """Inserting an existing key raises DuplicateKeyError."""
        idx.insert(entry("A", 0, [1, 0, 0, 0]))
        with pytest.raises(DuplicateKeyError) as exc_info:
            idx.insert(entry("A", 0, [0, 1, 0, 0]))
        assert exc_info.value.key == "A_0"
        assert len(idx) == 1

    def test_upsert_replaces(self, idx):
        """Test upsert replaces vector and text."""
        idx.insert(entry("A", 0, [1, 0, 0, 0], text="old"))
        idx.upsert(entry("A", 0, [0, 1, 0, 0], text="new"))

        assert len(idx) == 1
        [hit] = idx.search(l2_normalize([0, 1, 0, 0]), limit=5)
        assert hit.text == "new"
        assert hit.score == pytest.approx(1.0, abs=1e-5)

    def test_wrong_dimension_rejected(self, idx):
        """Test vectors of the wrong size."""
        with pytest.raises(ValueError):
            idx.insert(IndexEntry("A", 0, [1.0, 0.0], "short"))

    def test_remove(self, idx):
        """Test removing by key."""
        idx.insert(entry("A", 0, [1, 0, 0, 0]))
        assert idx.remove("A_0") is True
        assert idx.remove("A_0") is False
        assert idx.search(l2_normalize([1, 0, 0, 0])) == []

    def test_remove_note_uses_note_lookup(self, idx):
        """Test removing all chunks of a note."""
        for i in range(3):
            idx.insert(entry("A", i, [1, i, 0, 0]))
        idx.insert(entry("B", 0, [0, 0, 1, 0]))

        assert idx.remove_note("A") == 3
        assert idx.note_ids() == {"B"}
        assert idx.remove_note("A") == 0

    def test_remove_note_with_gap_removes_everything(self, idx, caplog):
        """A gap in chunk indices is logged and still fully removed."""
        idx.insert(entry("A", 0, [1, 0, 0, 0]))
        idx.insert(entry("A", 2, [0, 1, 0, 0]))

        assert idx.remove_note("A") == 2
        assert len(idx) == 0
        assert "non-contiguous" in caplog.text


class TestSearch:
    def test_ranked_by_similarity(self, idx):
        """Test ordering by cosine similarity."""
        idx.insert(entry("doc1", 0, [1.0, 0.0, 0.0, 0.0], "exact"))
        idx.insert(entry("doc2", 0, [0.0, 1.0, 0.0, 0.0], "orthogonal"))
        idx.insert(entry("doc3", 0, [0.9, 0.1, 0.0, 0.0], "similar"))

        hits = idx.search(l2_normalize([1, 0, 0, 0]), limit=3, threshold=-1.0)

        assert [h.note_id for h in hits] == ["doc1", "doc3", "doc2"]
        assert hits[0].score == pytest.approx(1.0, abs=1e-5)
        assert hits[2].score == pytest.approx(0.0, abs=1e-5)

    def test_threshold_filters(self, idx):
        """Test threshold filtering."""
        idx.insert(entry("doc1", 0, [1, 0, 0, 0]))
        idx.insert(entry("doc2", 0, [0, 1, 0, 0]))

        hits = idx.search(l2_normalize([1, 0, 0, 0]), limit=10, threshold=0.5)
        assert [h.note_id for h in hits] == ["doc1"]

    def test_threshold_above_max_is_empty(self, idx):
        """A threshold above 1 returns nothing."""
        idx.insert(entry("doc1", 0, [1, 0, 0, 0]))
        assert idx.search(l2_normalize([1, 0, 0, 0]), threshold=1.01) == []

    def test_limit(self, idx):
        """Test result limit."""
        for i in range(5):
            idx.insert(entry(f"n{i}", 0, [1, i * 0.1, 0, 0]))
        assert len(idx.search(l2_normalize([1, 0, 0, 0]), limit=2)) == 2
        assert idx.search(l2_normalize([1, 0, 0, 0]), limit=0) == []

    def test_empty_index(self, idx):
        """Test search on an empty index."""
        assert idx.search(l2_normalize([1, 0, 0, 0])) == []

    def test_hybrid_lexical_match_wins_tie(self, idx):
        """Lexical matches break vector ties."""
        # Same vector, only the text differs
        idx.insert(entry("cats", 0, [1, 1, 0, 0], "notes about cats"))
        idx.insert(entry("fox", 0, [1, 1, 0, 0], "the quick brown fox"))

        hits = idx.hybrid_search("fox", l2_normalize([1, 1, 0, 0]), limit=2, threshold=0.0, text_weight=0.5)

        assert [h.note_id for h in hits] == ["fox", "cats"]
        assert hits[0].score == pytest.approx(1.0, abs=1e-5)
        assert hits[1].score == pytest.approx(0.5, abs=1e-5)

    def test_hybrid_threshold_applies_to_vector_similarity(self, idx):
        """Lexical matches cannot lift a hit over the threshold."""
        idx.insert(entry("fox", 0, [0, 0, 0, 1], "the quick brown fox"))
        hits = idx.hybrid_search("fox", l2_normalize([1, 0, 0, 0]), limit=5, threshold=0.3, text_weight=0.9)
        assert hits == []

    def test_hybrid_score_may_fall_below_threshold(self, idx):
        """The threshold gates similarity; the reported score is the blend."""
        idx.insert(entry("cats", 0, [1, 0, 0, 0], "notes about cats"))
        [hit] = idx.hybrid_search("fox", l2_normalize([1, 0, 0, 0]), limit=5, threshold=0.9, text_weight=0.5)
        assert hit.note_id == "cats"
        assert hit.score == pytest.approx(0.5, abs=1e-5)

    def test_hybrid_tolerates_fts_syntax(self, idx):
        """FTS operators in the query are treated as words."""
        idx.insert(entry("a", 0, [1, 0, 0, 0], "AND OR NOT"))
        hits = idx.hybrid_search('"unbalanced AND (', l2_normalize([1, 0, 0, 0]), limit=5)
        assert [h.note_id for h in hits] == ["a"]


class TestRebuild:
    def test_rebuild_loads_store(self, db, idx):
        """Test rebuild from the durable store."""
        db.replace_note_vectors("A", [VectorRecord("A", 0, l2_normalize([1, 0, 0, 0]), "alpha")])
        db.replace_note_vectors("B", [VectorRecord("B", 0, l2_normalize([0, 1, 0, 0]), "beta")])

        result = idx.rebuild(db)

        assert result.loaded == 2
        assert result.purged == 0
        assert idx.built is True
        assert idx.note_ids() == {"A", "B"}

    def test_rebuild_purges_other_dimensions(self, db):
        """Records of another dimension are deleted from the store."""
        index = VectorIndex(8)
        db.replace_note_vectors("old", [VectorRecord("old", 0, [0.5] * 4, "from the previous model")])
        db.replace_note_vectors("mixed", [VectorRecord("mixed", 0, [0.25] * 4, "stale")])
        db.replace_note_vectors("new", [VectorRecord("new", 0, l2_normalize([1.0] * 8), "current")])

        result = index.rebuild(db)

        assert result.loaded == 1
        assert result.purged == 2
        assert result.purged_notes == 2
        assert db.note_ids_with_vectors() == {"new"}
        assert db.count_embedded_notes() == 1
        index.close()

    def test_ensure_built_runs_once(self, db, idx):
        """Test ensure_built is a no-op after the first build."""
        db.replace_note_vectors("A", [VectorRecord("A", 0, l2_normalize([1, 0, 0, 0]), "alpha")])
        assert idx.ensure_built(db).loaded == 1

        db.replace_note_vectors("B", [VectorRecord("B", 0, l2_normalize([0, 1, 0, 0]), "beta")])
        assert idx.ensure_built(db) is None
        assert idx.note_ids() == {"A"}

    def test_rebuild_replaces_previous_contents(self, db, idx):
        """Test rebuild clears stale entries."""
        idx.insert(entry("ghost", 0, [1, 0, 0, 0]))
        idx.rebuild(db)
        assert len(idx) == 0

"""Unit tests for FAISSVectorStore: search semantics, writes, persistence, validation."""

from __future__ import annotations

import sqlite3
from pathlib import Path
from typing import Sequence

import numpy as np
import pytest

from docrag.errors import (
    DimensionMismatchError,
    IndexCorruptionError,
    ModelVersionMismatchError,
)
from docrag.rag.store_faiss import FAISSVectorStore, IndexEntry, normalize_vector


def _entry(
    chunk_id: str,
    vector: Sequence[float],
    document_id: str = "docs/a.md",
    model_version: str = "v1",
    **metadata,
) -> IndexEntry:
    return IndexEntry(
        chunk_id=chunk_id,
        document_id=document_id,
        vector=tuple(vector),
        text=f"text of {chunk_id}",
        metadata=metadata,
        model_version=model_version,
    )


@pytest.fixture
def populated(store: FAISSVectorStore) -> FAISSVectorStore:
    store.replace_document(
        "docs/a.md",
        [_entry("docs/a.md#0", [1, 0, 0]), _entry("docs/a.md#1", [0, 1, 0])],
    )
    store.replace_document(
        "docs/b.md",
        [_entry("docs/b.md#0", [1, 1, 0], document_id="docs/b.md", heading_path="# B")],
    )
    return store


class TestSearch:
    def test_descending_cosine_scores(self, populated: FAISSVectorStore) -> None:
        results = populated.search([1, 0, 0], k=3)

        assert [r.entry.chunk_id for r in results] == ["docs/a.md#0", "docs/b.md#0", "docs/a.md#1"]
        assert results[0].score == pytest.approx(1.0)
        assert results[1].score == pytest.approx(1 / np.sqrt(2))
        assert results[2].score == pytest.approx(0.0, abs=1e-6)

    def test_scale_does_not_change_scores(self, populated: FAISSVectorStore) -> None:
        small = populated.search([1, 0, 0], k=3)
        large = populated.search([50, 0, 0], k=3)

        assert [r.entry.chunk_id for r in small] == [r.entry.chunk_id for r in large]
        assert [r.score for r in small] == pytest.approx([r.score for r in large])

    def test_ties_break_by_insertion_order(self, store: FAISSVectorStore) -> None:
        for name in ("c", "a", "b"):
            store.upsert(_entry(name, [0, 0, 1], document_id=name))

        results = store.search([0, 0, 1], k=2)

        assert [r.entry.chunk_id for r in results] == ["c", "a"]

    def test_never_pads(self, populated: FAISSVectorStore) -> None:
        assert len(populated.search([1, 0, 0], k=5)) == 3

    def test_k_limits_results(self, populated: FAISSVectorStore) -> None:
        assert len(populated.search([1, 0, 0], k=1)) == 1

    def test_search_does_not_mutate(self, populated: FAISSVectorStore) -> None:
        before = populated.entries()
        populated.search([0, 1, 0], k=2)

        assert populated.entries() == before

    def test_empty_store_returns_nothing(self, store: FAISSVectorStore) -> None:
        assert store.search([1, 0, 0], k=5) == []

    @pytest.mark.parametrize("k", [0, -1])
    def test_non_positive_k_raises(self, populated: FAISSVectorStore, k: int) -> None:
        with pytest.raises(ValueError):
            populated.search([1, 0, 0], k=k)

    def test_query_dimension_mismatch(self, populated: FAISSVectorStore) -> None:
        with pytest.raises(DimensionMismatchError):
            populated.search([1, 0, 0, 0], k=1)


class TestWrites:
    def test_vectors_are_stored_normalized(self, populated: FAISSVectorStore) -> None:
        (entry,) = populated.entries_for_document("docs/b.md")

        assert np.linalg.norm(entry.vector) == pytest.approx(1.0)

    def test_normalize_leaves_unit_vectors_alone(self) -> None:
        unit = normalize_vector([0.6, 0.8])

        assert normalize_vector(unit).tolist() == unit.tolist()

    def test_upsert_replaces_same_chunk_id(self, populated: FAISSVectorStore) -> None:
        populated.upsert(_entry("docs/a.md#0", [0, 0, 1]))

        assert len(populated) == 3
        assert populated.search([0, 0, 1], k=1)[0].entry.chunk_id == "docs/a.md#0"

    def test_replace_document_swaps_all_entries(self, populated: FAISSVectorStore) -> None:
        removed = populated.replace_document("docs/a.md", [_entry("docs/a.md#0", [0, 0, 1])])

        assert removed == 2
        assert [e.chunk_id for e in populated.entries_for_document("docs/a.md")] == ["docs/a.md#0"]
        assert len(populated) == 2

    def test_replace_document_keeps_source_order(self, store: FAISSVectorStore) -> None:
        entries = [_entry(f"docs/a.md#{i}", [1, i, 0]) for i in range(4)]
        store.replace_document("docs/a.md", entries)

        assert [e.chunk_id for e in store.entries_for_document("docs/a.md")] == [
            e.chunk_id for e in entries
        ]

    def test_rejected_replacement_leaves_index_untouched(self, populated: FAISSVectorStore) -> None:
        before = populated.entries()

        with pytest.raises(DimensionMismatchError):
            populated.replace_document(
                "docs/a.md",
                [_entry("docs/a.md#0", [1, 0, 0]), _entry("docs/a.md#1", [1, 0])],
            )

        assert populated.entries() == before

    def test_duplicate_chunk_ids_rejected(self, store: FAISSVectorStore) -> None:
        with pytest.raises(ValueError):
            store.replace_document("docs/a.md", [_entry("docs/a.md#0", [1, 0]), _entry("docs/a.md#0", [0, 1])])

    def test_foreign_document_entry_rejected(self, store: FAISSVectorStore) -> None:
        with pytest.raises(ValueError):
            store.replace_document("docs/a.md", [_entry("docs/b.md#0", [1, 0], document_id="docs/b.md")])

    def test_delete_by_document(self, populated: FAISSVectorStore) -> None:
        assert populated.delete_by_document("docs/a.md") == 2
        assert populated.delete_by_document("docs/a.md") == 0
        assert populated.document_ids() == {"docs/b.md"}
        assert [r.entry.chunk_id for r in populated.search([1, 0, 0], k=5)] == ["docs/b.md#0"]

    def test_write_dimension_mismatch(self, populated: FAISSVectorStore) -> None:
        with pytest.raises(DimensionMismatchError):
            populated.upsert(_entry("docs/c.md#0", [1, 0], document_id="docs/c.md"))

    def test_write_model_version_mismatch(self, populated: FAISSVectorStore) -> None:
        with pytest.raises(ModelVersionMismatchError):
            populated.upsert(_entry("docs/c.md#0", [1, 0, 0], document_id="docs/c.md", model_version="v2"))

    def test_clear_resets_dimension_and_version(self, populated: FAISSVectorStore) -> None:
        populated.clear(model_version="v2")
        populated.upsert(_entry("x#0", [1, 0], document_id="x", model_version="v2"))

        assert populated.dimension == 2
        assert populated.model_version == "v2"
        assert len(populated) == 1


class TestPersistence:
    def test_round_trip_answers_identically(self, populated: FAISSVectorStore, index_dir: Path) -> None:
        populated.persist()

        reloaded = FAISSVectorStore(index_dir=index_dir)
        reloaded.load()

        for query in ([1, 0, 0], [0, 1, 0], [0.3, 0.3, 0.9]):
            assert reloaded.search(query, k=3) == populated.search(query, k=3)
        assert reloaded.entries() == populated.entries()
        assert reloaded.model_version == "v1"
        assert reloaded.dimension == 3

    def test_round_trip_preserves_tie_order_after_deletes(self, store: FAISSVectorStore, index_dir: Path) -> None:
        for name in ("a", "b", "c", "d"):
            store.upsert(_entry(name, [0, 1], document_id=name))
        store.delete_by_document("b")
        store.persist()

        reloaded = FAISSVectorStore(index_dir=index_dir)
        reloaded.load()
        reloaded.upsert(_entry("e", [0, 1], document_id="e"))

        assert [r.entry.chunk_id for r in reloaded.search([0, 1], k=5)] == ["a", "c", "d", "e"]

    def test_empty_store_round_trip(self, store: FAISSVectorStore, index_dir: Path) -> None:
        store.persist()

        reloaded = FAISSVectorStore(index_dir=index_dir)
        reloaded.load()

        assert len(reloaded) == 0
        assert reloaded.search([1, 0], k=3) == []

    def test_persist_leaves_no_temporaries(self, populated: FAISSVectorStore, index_dir: Path) -> None:
        populated.persist()

        assert sorted(p.name for p in index_dir.iterdir()) == ["index.sqlite", "vectors.index"]

    def test_init_or_load_without_files_starts_empty(self, store: FAISSVectorStore) -> None:
        store.init_or_load()

        assert len(store) == 0
        assert not store.exists_on_disk()

    def test_metadata_survives_round_trip(self, populated: FAISSVectorStore, index_dir: Path) -> None:
        populated.persist()
        reloaded = FAISSVectorStore(index_dir=index_dir)
        reloaded.load()

        assert reloaded.entries_for_document("docs/b.md")[0].metadata == {"heading_path": "# B"}


class TestLoadValidation:
    def test_missing_database(self, store: FAISSVectorStore) -> None:
        with pytest.raises(IndexCorruptionError):
            store.load()

    def test_missing_vectors_file(self, populated: FAISSVectorStore, index_dir: Path) -> None:
        populated.persist()
        (index_dir / "vectors.index").unlink()

        with pytest.raises(IndexCorruptionError):
            FAISSVectorStore(index_dir=index_dir).load()

    def test_garbage_vectors_file(self, populated: FAISSVectorStore, index_dir: Path) -> None:
        populated.persist()
        (index_dir / "vectors.index").write_bytes(b"definitely not a faiss index")

        with pytest.raises(IndexCorruptionError):
            FAISSVectorStore(index_dir=index_dir).load()

    def test_count_disagreement(self, populated: FAISSVectorStore, index_dir: Path) -> None:
        populated.persist()
        conn = sqlite3.connect(index_dir / "index.sqlite")
        conn.execute("DELETE FROM chunks WHERE chunk_id = 'docs/a.md#1'")
        conn.commit()
        conn.close()

        with pytest.raises(IndexCorruptionError):
            FAISSVectorStore(index_dir=index_dir).load()

    def test_id_set_disagreement(self, populated: FAISSVectorStore, index_dir: Path) -> None:
        populated.persist()
        conn = sqlite3.connect(index_dir / "index.sqlite")
        conn.execute("UPDATE chunks SET seq = seq + 100 WHERE chunk_id = 'docs/a.md#1'")
        conn.commit()
        conn.close()

        with pytest.raises(IndexCorruptionError):
            FAISSVectorStore(index_dir=index_dir).load()

    def test_unknown_metric(self, populated: FAISSVectorStore, index_dir: Path) -> None:
        populated.persist()
        conn = sqlite3.connect(index_dir / "index.sqlite")
        conn.execute("UPDATE index_info SET value = '\"l2\"' WHERE key = 'metric'")
        conn.commit()
        conn.close()

        with pytest.raises(IndexCorruptionError):
            FAISSVectorStore(index_dir=index_dir).load()

    def test_unreadable_database(self, index_dir: Path) -> None:
        index_dir.mkdir(parents=True)
        (index_dir / "index.sqlite").write_bytes(b"not sqlite at all, just bytes" * 10)

        with pytest.raises(IndexCorruptionError):
            FAISSVectorStore(index_dir=index_dir).load()


class TestRunsAndStats:
    def test_record_and_read_latest_run(self, populated: FAISSVectorStore) -> None:
        populated.persist()
        populated.record_run(
            model_version="v1",
            embedding_dimension=3,
            chunk_length=200,
            chunk_overlap=50,
            total_chunks=3,
            total_documents=2,
        )

        run = populated.latest_run()

        assert run["model_version"] == "v1"
        assert run["total_chunks"] == 3
        assert run["metadata"] == {}

    def test_latest_run_without_index(self, store: FAISSVectorStore) -> None:
        assert store.latest_run() is None

    def test_stats(self, populated: FAISSVectorStore) -> None:
        stats = populated.get_stats()

        assert stats["vector_count"] == 3
        assert stats["document_count"] == 2
        assert stats["dimension"] == 3
        assert stats["metric"] == "cosine"

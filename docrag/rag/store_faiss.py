"""FAISS vector store for semantic search.

Handles:
- Cosine similarity (inner product over L2-normalized vectors)
- Upsert, per-document replacement and deletion
- Deterministic top-K ordering (score, then insertion order)
- Persistence to a FAISS file plus a SQLite side table, validated on load

Every entry gets a monotonically increasing insertion sequence number which
doubles as its FAISS id, so ties in score resolve in insertion order and the
persisted index answers searches exactly like the in-memory one.
"""
import json
import math
import os
import sqlite3
import threading
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Dict, Iterable, List, NamedTuple, Optional, Sequence, Set, Tuple

import faiss
import numpy as np
import structlog

from docrag import config
from docrag.errors import (
    DimensionMismatchError,
    IndexCorruptionError,
    ModelVersionMismatchError,
)
from docrag.rag import index_db

logger = structlog.get_logger()

METRIC = "cosine"


@dataclass(frozen=True)
class IndexEntry:
    """The durable unit of the index: one embedded chunk."""

    chunk_id: str
    document_id: str
    vector: Tuple[float, ...]
    text: str
    metadata: Dict[str, Any] = field(default_factory=dict)
    model_version: str = ""


class ScoredEntry(NamedTuple):
    entry: IndexEntry
    score: float


def normalize_vector(vector: Sequence[float]) -> np.ndarray:
    """Return a float32 unit vector; vectors already of unit length pass through."""
    arr = np.asarray(vector, dtype=np.float32)
    norm = float(np.linalg.norm(arr.astype(np.float64)))
    if norm > 0 and not math.isclose(norm, 1.0, rel_tol=0, abs_tol=1e-6):
        arr = (arr / norm).astype(np.float32)
    return arr


def _jsonable(metadata: Dict[str, Any]) -> Dict[str, Any]:
    # Exactly what survives a round trip through the SQLite side table
    return json.loads(json.dumps(metadata, sort_keys=True, default=str))


class FAISSVectorStore:
    """FAISS-backed vector index with single-writer, committed-read semantics."""

    def __init__(
        self,
        index_dir: Path = None,
        model_version: Optional[str] = None,
    ):
        """Initialize the vector store.

        Args:
            index_dir: Directory holding vectors.index and index.sqlite
                (default: config.INDEX_DIR)
            model_version: Embedding model version this index is for; adopted
                from the first entry or the persisted index when not given
        """
        self.index_dir = Path(index_dir or config.INDEX_DIR)
        self.index_path = self.index_dir / "vectors.index"
        self.db_path = self.index_dir / "index.sqlite"

        self.model_version = model_version
        self.dimension: Optional[int] = None
        self.index: Optional[faiss.IndexIDMap2] = None

        # seq -> entry, kept in insertion order
        self._entries: Dict[int, IndexEntry] = {}
        self._seq_by_chunk: Dict[str, int] = {}
        self._seqs_by_document: Dict[str, List[int]] = {}
        self._next_seq = 0

        # Serializes writers; searches take it briefly to read a committed state
        self._lock = threading.RLock()

        logger.debug(
            "faiss_store_initialized",
            index_dir=str(self.index_dir),
            model_version=self.model_version,
        )

    def __len__(self) -> int:
        return len(self._entries)

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def _new_index(self, dimension: int) -> faiss.IndexIDMap2:
        return faiss.IndexIDMap2(faiss.IndexFlatIP(dimension))

    def _check_entry(self, entry: IndexEntry, dimension: Optional[int]) -> None:
        if self.model_version is not None and entry.model_version != self.model_version:
            raise ModelVersionMismatchError(
                f"Entry {entry.chunk_id} was embedded with {entry.model_version!r}, "
                f"index uses {self.model_version!r}; rebuild the index",
                expected=self.model_version,
                actual=entry.model_version,
            )

        if dimension is not None and len(entry.vector) != dimension:
            raise DimensionMismatchError(
                f"Entry {entry.chunk_id} has dimension {len(entry.vector)}, "
                f"index uses {dimension}",
                expected=dimension,
                actual=len(entry.vector),
            )

    def _remove_seqs(self, seqs: Iterable[int]) -> int:
        seqs = list(seqs)
        if not seqs:
            return 0

        self.index.remove_ids(np.asarray(seqs, dtype=np.int64))
        for seq in seqs:
            entry = self._entries.pop(seq)
            self._seq_by_chunk.pop(entry.chunk_id, None)
            doc_seqs = self._seqs_by_document.get(entry.document_id)
            if doc_seqs is not None:
                doc_seqs.remove(seq)
                if not doc_seqs:
                    del self._seqs_by_document[entry.document_id]
        return len(seqs)

    def _add(self, entries: List[IndexEntry]) -> None:
        if not entries:
            return

        if self.index is None:
            self.dimension = len(entries[0].vector)
            self.index = self._new_index(self.dimension)
        if self.model_version is None:
            self.model_version = entries[0].model_version

        vectors = np.empty((len(entries), self.dimension), dtype=np.float32)
        seqs = np.arange(self._next_seq, self._next_seq + len(entries), dtype=np.int64)

        for row, (seq, entry) in enumerate(zip(seqs.tolist(), entries)):
            unit = normalize_vector(entry.vector)
            vectors[row] = unit
            stored = replace(
                entry,
                vector=tuple(unit.tolist()),
                metadata=_jsonable(entry.metadata),
            )

            # Upsert semantics for a chunk id already present elsewhere
            previous = self._seq_by_chunk.get(entry.chunk_id)
            if previous is not None:
                self._remove_seqs([previous])

            self._entries[seq] = stored
            self._seq_by_chunk[entry.chunk_id] = seq
            self._seqs_by_document.setdefault(entry.document_id, []).append(seq)

        self.index.add_with_ids(vectors, seqs)
        self._next_seq += len(entries)

    def upsert(self, entry: IndexEntry) -> None:
        """Insert an entry, replacing any existing entry with the same chunk id."""
        with self._lock:
            self._check_entry(entry, self.dimension)
            self._add([entry])

    def replace_document(self, document_id: str, entries: Sequence[IndexEntry]) -> int:
        """Atomically swap all of a document's entries for ``entries``.

        Entries are stored in the given order. Every entry is validated before
        anything is removed, so a rejected batch leaves the index untouched.

        Returns:
            Number of entries removed
        """
        entries = list(entries)
        with self._lock:
            dimension = self.dimension
            if dimension is None and entries:
                dimension = len(entries[0].vector)
            if len({e.chunk_id for e in entries}) != len(entries):
                raise ValueError(f"Duplicate chunk ids in replacement for {document_id}")
            for entry in entries:
                if entry.document_id != document_id:
                    raise ValueError(
                        f"Entry {entry.chunk_id} belongs to {entry.document_id}, "
                        f"not {document_id}"
                    )
                self._check_entry(entry, dimension)

            removed = self._remove_seqs(list(self._seqs_by_document.get(document_id, [])))
            self._add(entries)

        logger.debug(
            "document_replaced",
            document_id=document_id,
            removed=removed,
            added=len(entries),
        )
        return removed

    def delete_by_document(self, document_id: str) -> int:
        """Remove every entry of a document.

        Returns:
            Number of entries removed
        """
        with self._lock:
            removed = self._remove_seqs(list(self._seqs_by_document.get(document_id, [])))

        if removed:
            logger.info("document_deleted", document_id=document_id, removed=removed)
        return removed

    def clear(self, model_version: Optional[str] = None) -> None:
        """Drop every entry; the next write fixes dimension and model version anew."""
        with self._lock:
            self.index = None
            self.dimension = None
            self.model_version = model_version
            self._entries = {}
            self._seq_by_chunk = {}
            self._seqs_by_document = {}
            self._next_seq = 0

        logger.warning("vector_store_cleared", index_dir=str(self.index_dir))

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def search(self, query_vector: Sequence[float], k: int) -> List[ScoredEntry]:
        """Return up to k entries by descending cosine similarity.

        Ties are broken by insertion order. Never pads: an index holding fewer
        than k entries returns all of them.

        Raises:
            ValueError: If k is not positive
            DimensionMismatchError: If the query dimension differs from the index
        """
        if k <= 0:
            raise ValueError(f"k must be positive, got {k}")

        with self._lock:
            if self.index is None or self.index.ntotal == 0:
                return []

            if len(query_vector) != self.dimension:
                raise DimensionMismatchError(
                    f"Query dimension {len(query_vector)} does not match "
                    f"index dimension {self.dimension}",
                    expected=self.dimension,
                    actual=len(query_vector),
                )

            query = normalize_vector(query_vector).reshape(1, -1)

            # Exhaustive scoring so ties at the k-th place resolve deterministically
            scores, ids = self.index.search(query, self.index.ntotal)
            scores, ids = scores[0], ids[0]
            valid = ids >= 0
            scores, ids = scores[valid], ids[valid]

            order = np.lexsort((ids, -scores))[:k]
            results = [
                ScoredEntry(self._entries[int(ids[i])], float(scores[i])) for i in order
            ]

        logger.debug("vector_search_completed", k=k, results_found=len(results))
        return results

    def entries_for_document(self, document_id: str) -> List[IndexEntry]:
        """A document's entries in insertion (source) order."""
        with self._lock:
            return [self._entries[s] for s in self._seqs_by_document.get(document_id, [])]

    def document_ids(self) -> Set[str]:
        with self._lock:
            return set(self._seqs_by_document)

    def entries(self) -> List[IndexEntry]:
        """All entries in insertion order."""
        with self._lock:
            return list(self._entries.values())

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def persist(self) -> None:
        """Write the index to disk.

        The FAISS file is written to a temporary name and swapped in after the
        SQLite transaction commits; a crash in between is caught by load-time
        validation rather than served.
        """
        with self._lock:
            index_bytes = (
                faiss.serialize_index(self.index).tobytes() if self.index is not None else None
            )
            info = {
                "model_version": self.model_version,
                "dimension": self.dimension,
                "metric": METRIC,
                "count": len(self._entries),
                "next_seq": self._next_seq,
            }
            rows = [
                {
                    "seq": seq,
                    "chunk_id": entry.chunk_id,
                    "document_id": entry.document_id,
                    "content": entry.text,
                    "metadata": entry.metadata,
                    "model_version": entry.model_version,
                }
                for seq, entry in self._entries.items()
            ]

            self.index_dir.mkdir(parents=True, exist_ok=True)
            tmp_path = self.index_path.with_name(self.index_path.name + ".tmp")

            try:
                if index_bytes is not None:
                    tmp_path.write_bytes(index_bytes)
                index_db.write_snapshot(self.db_path, info, rows)
                if index_bytes is not None:
                    os.replace(tmp_path, self.index_path)
                elif self.index_path.exists():
                    self.index_path.unlink()
            finally:
                if tmp_path.exists():
                    tmp_path.unlink()

        logger.info(
            "faiss_index_saved",
            index_path=str(self.index_path),
            vector_count=len(rows),
            model_version=self.model_version,
        )

    def exists_on_disk(self) -> bool:
        return self.db_path.exists()

    def load(self) -> None:
        """Load the persisted index, replacing in-memory state.

        Raises:
            IndexCorruptionError: If files are missing, unreadable or disagree
        """
        if not self.db_path.exists():
            raise IndexCorruptionError(f"Index database not found: {self.db_path}")

        try:
            info, rows = index_db.read_snapshot(self.db_path)
        except (sqlite3.Error, ValueError) as e:
            raise IndexCorruptionError(f"Failed to read index database: {e}") from e

        if info.get("metric") != METRIC:
            raise IndexCorruptionError(
                f"Unsupported or missing similarity metric: {info.get('metric')!r}"
            )
        if info.get("count") != len(rows):
            raise IndexCorruptionError(
                f"Index database lists {info.get('count')} entries but holds {len(rows)}"
            )

        dimension = info.get("dimension")
        vectors_by_seq: Dict[int, np.ndarray] = {}
        index = None

        if self.index_path.exists():
            try:
                index = faiss.read_index(str(self.index_path))
            except RuntimeError as e:
                raise IndexCorruptionError(f"Failed to load FAISS index: {e}") from e

            if index.d != dimension:
                raise IndexCorruptionError(
                    f"FAISS index dimension {index.d} does not match recorded {dimension}"
                )

            ids = faiss.vector_to_array(index.id_map).astype(np.int64)
            if index.ntotal:
                vectors = faiss.downcast_index(index.index).reconstruct_n(0, index.ntotal)
                vectors_by_seq = {int(seq): vectors[i] for i, seq in enumerate(ids)}
        elif rows:
            raise IndexCorruptionError(f"FAISS index not found: {self.index_path}")

        if set(vectors_by_seq) != {row["seq"] for row in rows}:
            raise IndexCorruptionError("FAISS ids and stored entries disagree")

        entries: Dict[int, IndexEntry] = {}
        seq_by_chunk: Dict[str, int] = {}
        seqs_by_document: Dict[str, List[int]] = {}
        for row in rows:
            seq = row["seq"]
            entries[seq] = IndexEntry(
                chunk_id=row["chunk_id"],
                document_id=row["document_id"],
                vector=tuple(vectors_by_seq[seq].tolist()),
                text=row["content"],
                metadata=row["metadata"],
                model_version=row["model_version"],
            )
            seq_by_chunk[row["chunk_id"]] = seq
            seqs_by_document.setdefault(row["document_id"], []).append(seq)

        with self._lock:
            self.index = index
            self.dimension = dimension
            self.model_version = info.get("model_version")
            self._entries = entries
            self._seq_by_chunk = seq_by_chunk
            self._seqs_by_document = seqs_by_document
            self._next_seq = info.get("next_seq", max(entries, default=-1) + 1)

        logger.info(
            "faiss_index_loaded",
            dimension=self.dimension,
            vector_count=len(entries),
            model_version=self.model_version,
        )

    def init_or_load(self) -> None:
        """Load the persisted index if there is one, otherwise start empty."""
        if self.exists_on_disk():
            logger.info("existing_index_detected", path=str(self.db_path))
            self.load()
        else:
            logger.info("no_index_found_starting_empty", index_dir=str(self.index_dir))

    def record_run(self, **run) -> int:
        """Append an ingestion run to the index's history."""
        self.index_dir.mkdir(parents=True, exist_ok=True)
        return index_db.insert_index_run(self.db_path, **run)

    def latest_run(self) -> Optional[Dict[str, Any]]:
        return index_db.get_latest_index_run(self.db_path)

    def get_stats(self) -> Dict[str, Any]:
        """Get statistics about the vector store."""
        with self._lock:
            return {
                "vector_count": len(self._entries),
                "document_count": len(self._seqs_by_document),
                "dimension": self.dimension,
                "model_version": self.model_version,
                "metric": METRIC,
                "index_exists_on_disk": self.exists_on_disk(),
            }

"""SQLite persistence for the vector index's entries and run history.

The FAISS file holds vectors keyed by insertion sequence; this database holds
everything else:
- index_info: model version, dimension, metric and entry count
- chunks: text, metadata and model version per entry, keyed by the same sequence
- index_runs: one row per completed ingestion run
"""
import json
import sqlite3
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import structlog

logger = structlog.get_logger()

SCHEMA_VERSION = 1


def get_connection(db_path: Path) -> sqlite3.Connection:
    """Get a connection to the index database.

    Returns:
        sqlite3.Connection with row_factory set to sqlite3.Row
    """
    conn = sqlite3.connect(db_path)
    conn.row_factory = sqlite3.Row
    return conn


def init_database(db_path: Path) -> None:
    """Create tables if they don't exist."""
    conn = get_connection(db_path)
    cursor = conn.cursor()

    try:
        cursor.execute("""
            CREATE TABLE IF NOT EXISTS index_info (
                key TEXT PRIMARY KEY,
                value TEXT
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS chunks (
                seq INTEGER PRIMARY KEY,
                chunk_id TEXT NOT NULL UNIQUE,
                document_id TEXT NOT NULL,
                content TEXT NOT NULL,
                metadata_json TEXT,
                model_version TEXT NOT NULL
            )
        """)

        cursor.execute("""
            CREATE INDEX IF NOT EXISTS idx_chunks_document_id
            ON chunks(document_id)
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS index_runs (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                indexed_at TEXT NOT NULL,
                model_version TEXT NOT NULL,
                embedding_dimension INTEGER,
                chunk_length INTEGER NOT NULL,
                chunk_overlap INTEGER NOT NULL,
                total_chunks INTEGER NOT NULL,
                total_documents INTEGER NOT NULL,
                metadata_json TEXT
            )
        """)

        conn.commit()
        logger.debug("index_database_initialized", db_path=str(db_path))

    except Exception as e:
        conn.rollback()
        logger.error("index_database_init_failed", error=str(e))
        raise
    finally:
        conn.close()


def write_snapshot(
    db_path: Path,
    info: Dict[str, Any],
    rows: List[Dict[str, Any]],
) -> None:
    """Replace the stored entries and index info in a single transaction.

    Args:
        db_path: Database file
        info: Index-level values (model_version, dimension, metric, ...)
        rows: One dict per entry with seq, chunk_id, document_id, content,
            metadata and model_version
    """
    init_database(db_path)
    conn = get_connection(db_path)
    cursor = conn.cursor()

    try:
        cursor.execute("DELETE FROM chunks")
        cursor.executemany(
            """
            INSERT INTO chunks (
                seq, chunk_id, document_id, content, metadata_json, model_version
            ) VALUES (?, ?, ?, ?, ?, ?)
            """,
            [
                (
                    row["seq"],
                    row["chunk_id"],
                    row["document_id"],
                    row["content"],
                    json.dumps(row["metadata"], sort_keys=True, default=str),
                    row["model_version"],
                )
                for row in rows
            ],
        )

        cursor.execute("DELETE FROM index_info")
        cursor.executemany(
            "INSERT INTO index_info (key, value) VALUES (?, ?)",
            [(key, json.dumps(value)) for key, value in info.items()]
            + [("schema_version", json.dumps(SCHEMA_VERSION))],
        )

        conn.commit()
        logger.debug("index_snapshot_written", db_path=str(db_path), rows=len(rows))

    except Exception as e:
        conn.rollback()
        logger.error("index_snapshot_write_failed", error=str(e))
        raise
    finally:
        conn.close()


def read_snapshot(db_path: Path) -> Tuple[Dict[str, Any], List[Dict[str, Any]]]:
    """Read index info and all entries, ordered by insertion sequence.

    Raises:
        sqlite3.Error: If the database is unreadable or lacks the schema
        ValueError: If stored JSON can't be decoded
    """
    conn = get_connection(db_path)
    cursor = conn.cursor()

    try:
        cursor.execute("SELECT key, value FROM index_info")
        info = {row["key"]: json.loads(row["value"]) for row in cursor.fetchall()}

        cursor.execute("""
            SELECT seq, chunk_id, document_id, content, metadata_json, model_version
            FROM chunks
            ORDER BY seq
        """)

        rows = []
        for row in cursor.fetchall():
            chunk = dict(row)
            chunk["metadata"] = json.loads(chunk.pop("metadata_json") or "{}")
            rows.append(chunk)

        return info, rows

    finally:
        conn.close()


def insert_index_run(
    db_path: Path,
    model_version: str,
    embedding_dimension: Optional[int],
    chunk_length: int,
    chunk_overlap: int,
    total_chunks: int,
    total_documents: int,
    metadata: Optional[Dict[str, Any]] = None,
) -> int:
    """Record a completed ingestion run.

    Returns:
        ID of the inserted row
    """
    init_database(db_path)
    conn = get_connection(db_path)
    cursor = conn.cursor()

    try:
        cursor.execute("""
            INSERT INTO index_runs (
                indexed_at, model_version, embedding_dimension,
                chunk_length, chunk_overlap, total_chunks, total_documents,
                metadata_json
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
        """, (
            datetime.now(timezone.utc).isoformat(),
            model_version,
            embedding_dimension,
            chunk_length,
            chunk_overlap,
            total_chunks,
            total_documents,
            json.dumps(metadata, default=str) if metadata else None,
        ))

        conn.commit()
        row_id = cursor.lastrowid
        logger.info("index_run_recorded", id=row_id, total_chunks=total_chunks)
        return row_id

    except Exception as e:
        conn.rollback()
        logger.error("index_run_insert_failed", error=str(e))
        raise
    finally:
        conn.close()


def get_latest_index_run(db_path: Path) -> Optional[Dict[str, Any]]:
    """Get the most recent ingestion run, or None if there is none."""
    if not db_path.exists():
        return None

    init_database(db_path)
    conn = get_connection(db_path)
    cursor = conn.cursor()

    try:
        cursor.execute("""
            SELECT * FROM index_runs
            ORDER BY id DESC
            LIMIT 1
        """)

        row = cursor.fetchone()
        if row:
            run = dict(row)
            run["metadata"] = json.loads(run.pop("metadata_json") or "{}")
            return run
        return None

    finally:
        conn.close()

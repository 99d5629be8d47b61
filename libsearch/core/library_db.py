"""
Relational library store: documents and vectors in SQLite, similarity served by FAISS.

Rows keep their insertion order (autoincrement id); vectors are stored as
float64 blobs and are NULL until computed. The FAISS index is derived data,
rebuilt from the rows and persisted next to the database.
"""

import hashlib
import sqlite3
import threading
from pathlib import Path
from typing import Dict, List, Optional, Sequence

import numpy as np

from .db import get_db, init_db
from .documents import ID_WIDTH, Document
from .errors import DimensionMismatchError, PersistenceError, ValidationError
from .schemas import LibraryStats
from ..util.logging import logger
from ..vector.faiss_store import FaissVectorStore
from ..vector.index import IVectorStore
from ..vector.types import QueryResult, VectorRecord, round_score


def _to_blob(vector: Sequence[float]) -> bytes:
    return np.asarray(vector, dtype=np.float64).tobytes()


def _from_blob(blob: bytes) -> List[float]:
    return np.frombuffer(blob, dtype=np.float64).tolist()


class LibraryDatabase(IVectorStore):
    """SQLite-backed implementation of IVectorStore with a FAISS similarity index."""

    def __init__(self, db_path, index_path=None, ivf_threshold: int = 4000, nlist: int = 100):
        self.db_path = Path(db_path)
        self.index_path = Path(index_path) if index_path else None
        self.ivf_threshold = ivf_threshold
        self.nlist = nlist
        self.fts_enabled = False
        self._index: Optional[FaissVectorStore] = None
        self._index_lock = threading.Lock()
        self._initialized = False

    def initialize(self) -> None:
        """Create tables and load a persisted FAISS index if it is still in step with the rows."""
        self.fts_enabled = init_db(self.db_path)
        self._initialized = True

        if self.index_path is not None:
            try:
                index = FaissVectorStore.load(self.index_path, ivf_threshold=self.ivf_threshold, nlist=self.nlist)
            except (OSError, RuntimeError, ValueError, ValidationError) as e:
                logger.warning(f"Ignoring unreadable FAISS index {self.index_path}: {e}")
                index = None
            if index is not None:
                signature = self._signature()
                if index.signature == signature:
                    self._index = index
                    logger.log_operation("database.load_index", "success", {"vectors": index.count()})
                else:
                    logger.log_cache_event("faiss_index", "stale", {
                        "path": str(self.index_path),
                        "indexed_model": (index.signature or {}).get("model"),
                        "stored_model": signature["model"],
                    })
                    self._remove_index_files()

        logger.log_operation("database.initialize", "success", {
            "path": str(self.db_path),
            "fts": self.fts_enabled,
        })

    def _ensure_initialized(self) -> None:
        if not self._initialized:
            self.initialize()

    def get_meta(self, key: str) -> Optional[str]:
        self._ensure_initialized()
        with get_db(self.db_path) as conn:
            row = conn.execute("SELECT value FROM library_meta WHERE key = ?", (key,)).fetchone()
        return row[0] if row else None

    def _set_meta(self, conn: sqlite3.Connection, key: str, value) -> None:
        conn.execute(
            "INSERT INTO library_meta (key, value) VALUES (?, ?) "
            "ON CONFLICT(key) DO UPDATE SET value = excluded.value",
            (key, None if value is None else str(value)),
        )

    def _stored_dimensions(self) -> Optional[int]:
        value = self.get_meta("dimensions")
        return int(value) if value else None

    def ensure_model(self, model_id: str, dimensions: Optional[int] = None) -> bool:
        """
        Record the model signature; a different model invalidates every stored vector.

        Returns:
            True when stored vectors were cleared
        """
        self._ensure_initialized()
        stored_model = self.get_meta("model")
        cleared = False

        with get_db(self.db_path) as conn:
            if stored_model is not None and stored_model != model_id:
                cursor = conn.execute(
                    "UPDATE text_library SET embedding = NULL, updated_at = CURRENT_TIMESTAMP "
                    "WHERE embedding IS NOT NULL"
                )
                logger.log_cache_event("model_changed", "stale", {
                    "cached": stored_model,
                    "target": model_id,
                    "cleared": cursor.rowcount,
                })
                self._set_meta(conn, "dimensions", dimensions)
                cleared = True
            elif dimensions is not None:
                self._set_meta(conn, "dimensions", dimensions)
            self._set_meta(conn, "model", model_id)
            conn.commit()

        if cleared:
            self._invalidate_index()
        return cleared

    def reset_embeddings(self) -> int:
        """Clear every stored vector so the next generation run recomputes all of them."""
        self._ensure_initialized()
        with get_db(self.db_path) as conn:
            cursor = conn.execute(
                "UPDATE text_library SET embedding = NULL, updated_at = CURRENT_TIMESTAMP "
                "WHERE embedding IS NOT NULL"
            )
            self._set_meta(conn, "dimensions", None)
            conn.commit()
            cleared = cursor.rowcount

        self._invalidate_index()
        logger.log_cache_event("replace_wholesale", "stale", {"cleared": cleared, "target": str(self.db_path)})
        return cleared

    def _check_dimensions(self, vectors: Sequence[Optional[Sequence[float]]]) -> Optional[int]:
        dimensions = self._stored_dimensions()
        for vector in vectors:
            if vector is None:
                continue
            if dimensions is None:
                dimensions = len(vector)
            elif len(vector) != dimensions:
                raise DimensionMismatchError(dimensions, len(vector), context=f"database {self.db_path.name}")
        return dimensions

    def insert_documents(self, documents: Sequence[Document],
                         embeddings: Optional[Sequence[Optional[Sequence[float]]]] = None) -> int:
        """
        Insert documents in order, with inlined vectors where given.

        Documents whose id is already stored are skipped with a warning.

        Returns:
            Number of rows inserted
        """
        self._ensure_initialized()
        if embeddings is not None and len(embeddings) != len(documents):
            raise ValidationError(
                f"Embedding list length {len(embeddings)} does not match document count {len(documents)}"
            )
        embeddings = list(embeddings) if embeddings is not None else [None] * len(documents)
        dimensions = self._check_dimensions(embeddings)

        inserted = 0
        with get_db(self.db_path) as conn:
            existing = {row[0] for row in conn.execute("SELECT original_id FROM text_library")}
            try:
                for doc, vector in zip(documents, embeddings):
                    if not doc.text or not doc.text.strip():
                        raise ValidationError(f"Document {doc.id!r} has empty text")
                    if doc.id in existing:
                        logger.warning(f"Skipping document {doc.id}: id already stored")
                        continue
                    conn.execute(
                        "INSERT INTO text_library (original_id, text, embedding) VALUES (?, ?, ?)",
                        (doc.id, doc.text, _to_blob(vector) if vector is not None else None),
                    )
                    existing.add(doc.id)
                    inserted += 1
                if dimensions is not None:
                    self._set_meta(conn, "dimensions", dimensions)
                conn.commit()
            except sqlite3.Error as e:
                conn.rollback()
                raise PersistenceError(f"Failed to insert documents: {e}") from e

        if inserted:
            self._invalidate_index()
        logger.log_operation("database.insert", "success", {"inserted": inserted, "skipped": len(documents) - inserted})
        return inserted

    def add_texts(self, texts: Sequence[str], coordinator=None) -> List[Document]:
        """
        Append texts with ids continuing the highest numeric id, zero-padded.

        Texts are stripped of surrounding whitespace, as DocumentStore.append does.

        When a coordinator is given, embeddings for the new rows are generated
        right away.
        """
        cleaned = []
        for i, text in enumerate(texts):
            if not isinstance(text, str) or not text.strip():
                raise ValidationError(f"Text at position {i} is empty")
            cleaned.append(text.strip())
        if not cleaned:
            return []

        self._ensure_initialized()
        with get_db(self.db_path) as conn:
            ids = [row[0] for row in conn.execute("SELECT original_id FROM text_library")]
        max_id = max((int(doc_id) for doc_id in ids if doc_id and doc_id.isdecimal()), default=0)

        documents = [
            Document(id=str(max_id + offset + 1).zfill(ID_WIDTH), text=text)
            for offset, text in enumerate(cleaned)
        ]
        self.insert_documents(documents)
        logger.log_migration("add_texts", "success", {"added": len(documents), "first_id": documents[0].id})

        if coordinator is not None:
            self.generate_missing_embeddings(coordinator)
        return documents

    def generate_missing_embeddings(self, coordinator) -> int:
        """
        Embed every row whose vector is NULL, committing each batch as it completes.

        A failure leaves earlier batches committed; re-running resumes from
        the first row still missing a vector.

        Returns:
            Number of rows embedded
        """
        self._ensure_initialized()
        self.ensure_model(coordinator.provider.model_id)

        with get_db(self.db_path) as conn:
            rows = conn.execute("SELECT id, text FROM text_library WHERE embedding IS NULL ORDER BY id").fetchall()

        if not rows:
            logger.info("All texts already have embeddings")
            return 0

        row_ids = [row[0] for row in rows]
        logger.log_operation("database.generate_embeddings", "started", {"missing": len(rows)})

        def checkpoint(batch_index: int, start: int, vectors: List[List[float]]) -> None:
            batch_ids = row_ids[start:start + len(vectors)]
            dimensions = self._check_dimensions(vectors)
            with get_db(self.db_path) as conn:
                try:
                    conn.executemany(
                        "UPDATE text_library SET embedding = ?, updated_at = CURRENT_TIMESTAMP WHERE id = ?",
                        [(_to_blob(vector), row_id) for vector, row_id in zip(vectors, batch_ids)],
                    )
                    self._set_meta(conn, "dimensions", dimensions)
                    conn.commit()
                except sqlite3.Error as e:
                    conn.rollback()
                    raise PersistenceError(f"Failed to store batch {batch_index}: {e}") from e

        try:
            coordinator.embed_all([row[1] for row in rows], on_batch=checkpoint)
        finally:
            # Committed batches are searchable even when the run aborts
            self._invalidate_index()

        logger.log_operation("database.generate_embeddings", "success", {"embedded": len(rows)})
        return len(rows)

    def _signature(self, rows=None) -> Dict[str, Optional[str]]:
        """Model id and digest of every stored vector row. A persisted index is reused only on an exact match."""
        digest = hashlib.sha256()
        with get_db(self.db_path) as conn:
            model = conn.execute("SELECT value FROM library_meta WHERE key = 'model'").fetchone()
            if rows is None:
                rows = conn.execute(
                    "SELECT id, original_id, text, embedding FROM text_library "
                    "WHERE embedding IS NOT NULL ORDER BY id"
                ).fetchall()
        for row_id, original_id, text, blob in rows:
            digest.update(f"{row_id}\x1f{original_id}\x1f{text}\x1f".encode("utf-8"))
            digest.update(blob)
        return {'model': model[0] if model else None, 'digest': digest.hexdigest()}

    def _remove_index_files(self) -> None:
        if self.index_path is None:
            return
        for path in (self.index_path, Path(str(self.index_path) + ".docs.json")):
            if path.exists():
                path.unlink()

    def _invalidate_index(self) -> None:
        """Drop the in-memory index and the persisted copy; both are rebuilt from the rows on demand."""
        with self._index_lock:
            self._index = None
        self._remove_index_files()

    def refresh_index(self) -> Optional[FaissVectorStore]:
        """Rebuild the FAISS index from stored vectors and persist it."""
        self._ensure_initialized()
        with get_db(self.db_path) as conn:
            rows = conn.execute(
                "SELECT id, original_id, text, embedding FROM text_library "
                "WHERE embedding IS NOT NULL ORDER BY id"
            ).fetchall()

        if not rows:
            with self._index_lock:
                self._index = None
            return None

        records = [
            VectorRecord(id=original_id or str(row_id), text=text, vector=_from_blob(blob))
            for row_id, original_id, text, blob in rows
        ]
        index = FaissVectorStore(dimension=len(records[0].vector), ivf_threshold=self.ivf_threshold, nlist=self.nlist)
        index.batch_add(records)
        index.build()

        if self.index_path is not None:
            try:
                index.save(self.index_path, signature=self._signature(rows))
            except PersistenceError as e:
                logger.log_persistence_failure(str(self.index_path), e)

        with self._index_lock:
            self._index = index
        logger.log_operation("database.refresh_index", "success", {"vectors": len(records)})
        return index

    def add(self, record: VectorRecord) -> None:
        """Add a single vector record to the database."""
        self.batch_add([record])

    def batch_add(self, records: List[VectorRecord]) -> None:
        """Insert records with their vectors; ids already stored are skipped."""
        self.insert_documents(
            [Document(id=record.id, text=record.text) for record in records],
            [record.vector for record in records],
        )

    def search(self, query_vector: Sequence[float], top_k: int = 25) -> List[QueryResult]:
        """Search for similar vectors and return ranked results."""
        with self._index_lock:
            index = self._index
        if index is None:
            index = self.refresh_index()
        if index is None:
            return []
        return index.search(query_vector, top_k)

    def full_text_search(self, query: str, limit: int = 25) -> List[Dict]:
        """Rank rows with the FTS5 index (bm25). Returns [] when FTS5 is unavailable."""
        self._ensure_initialized()
        if not self.fts_enabled or not query or not query.strip() or limit <= 0:
            return []

        # Quote each term so FTS5 query syntax in user text is taken literally
        terms = ['"' + term.replace('"', '""') + '"' for term in query.split()]
        with get_db(self.db_path) as conn:
            rows = conn.execute(
                "SELECT t.id, t.original_id, t.text, bm25(text_library_fts) AS rank "
                "FROM text_library_fts JOIN text_library t ON t.id = text_library_fts.rowid "
                "WHERE text_library_fts MATCH ? ORDER BY rank, t.id LIMIT ?",
                (" OR ".join(terms), limit),
            ).fetchall()

        return [
            {'id': original_id or str(row_id), 'text': text, 'score': round_score(-rank)}
            for row_id, original_id, text, rank in rows
        ]

    def get_stats(self) -> LibraryStats:
        """Document and vector counts plus the stored model signature."""
        self._ensure_initialized()
        with get_db(self.db_path) as conn:
            total, embedded = conn.execute(
                "SELECT COUNT(*), COUNT(embedding) FROM text_library"
            ).fetchone()
            meta = dict(conn.execute("SELECT key, value FROM library_meta").fetchall())

        return LibraryStats(
            docs=total,
            embeddings=embedded,
            missing=total - embedded,
            model=meta.get("model"),
            dimensions=int(meta["dimensions"]) if meta.get("dimensions") else None,
        )

    def clear(self) -> None:
        """Delete every row and the persisted index."""
        self._ensure_initialized()
        with get_db(self.db_path) as conn:
            conn.execute("DELETE FROM text_library")
            conn.execute("DELETE FROM library_meta")
            conn.commit()

        self._invalidate_index()

    def count(self) -> int:
        self._ensure_initialized()
        with get_db(self.db_path) as conn:
            return conn.execute("SELECT COUNT(*) FROM text_library").fetchone()[0]

    def close(self) -> None:
        """Drop the in-memory index. Connections are opened per operation."""
        self._invalidate_index()

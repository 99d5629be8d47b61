"""
Similarity index contract and the in-memory brute-force cosine backend.
"""

from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Sequence

import numpy as np

from ..core.errors import DimensionMismatchError, ValidationError
from .types import QueryResult, VectorRecord, round_score


class IVectorStore(ABC):
    """Abstract interface for similarity backends."""

    @abstractmethod
    def add(self, record: VectorRecord) -> None:
        """Add a single vector record to the store."""
        pass

    @abstractmethod
    def batch_add(self, records: List[VectorRecord]) -> None:
        """Add multiple vector records to the store."""
        pass

    @abstractmethod
    def search(self, query_vector: Sequence[float], top_k: int = 25) -> List[QueryResult]:
        """Return up to top_k hits ordered by descending cosine similarity."""
        pass

    @abstractmethod
    def clear(self) -> None:
        """Clear all records from the store."""
        pass

    @abstractmethod
    def count(self) -> int:
        """Number of records held."""
        pass


def cosine_similarity(vec_a: Sequence[float], vec_b: Sequence[float]) -> float:
    """dot(a, b) / (|a| |b|). Zero vectors score 0.0."""
    a = np.asarray(vec_a, dtype=np.float64)
    b = np.asarray(vec_b, dtype=np.float64)
    if a.shape != b.shape:
        raise DimensionMismatchError(len(a), len(b))

    norm = np.linalg.norm(a) * np.linalg.norm(b)
    if norm == 0:
        return 0.0
    return float(np.dot(a, b) / norm)


def _normalize(vector: np.ndarray) -> np.ndarray:
    norm = np.linalg.norm(vector)
    if norm == 0:
        return vector
    return vector / norm


class SimpleInMemoryVectorStore(IVectorStore):
    """
    In-memory brute-force cosine similarity over a numpy matrix.

    Ranking is a stable sort on descending score, so equal scores keep corpus
    order and repeated searches return identical output. Searches only read
    the matrix; writers replace it with a new array.
    """

    def __init__(self, dimension: Optional[int] = None):
        self.dimension = dimension
        self._records: List[VectorRecord] = []
        self._positions: Dict[str, int] = {}
        self._matrix = np.empty((0, dimension or 0), dtype=np.float64)

    def _check_vector(self, record: VectorRecord) -> np.ndarray:
        if record.vector is None or len(record.vector) == 0:
            raise ValidationError(f"Record {record.id!r} has no vector")
        vector = np.asarray(record.vector, dtype=np.float64)
        if self.dimension is None:
            self.dimension = len(vector)
        elif len(vector) != self.dimension:
            raise DimensionMismatchError(self.dimension, len(vector), context=f"record {record.id}")
        return vector

    def add(self, record: VectorRecord) -> None:
        """Add a single vector record to the store."""
        self.batch_add([record])

    def batch_add(self, records: List[VectorRecord]) -> None:
        """Add multiple vector records; an existing id is updated in place."""
        if not records:
            return

        vectors = [self._check_vector(record) for record in records]
        rows = list(self._matrix)
        for record, vector in zip(records, vectors):
            normalized = _normalize(vector)
            if record.id in self._positions:
                position = self._positions[record.id]
                self._records[position] = record
                rows[position] = normalized
            else:
                self._positions[record.id] = len(self._records)
                self._records.append(record)
                rows.append(normalized)

        self._matrix = np.vstack(rows)

    def search(self, query_vector: Sequence[float], top_k: int = 25) -> List[QueryResult]:
        """Search for similar vectors and return ranked results."""
        matrix = self._matrix
        records = self._records
        if top_k <= 0 or not records:
            return []

        query = np.asarray(query_vector, dtype=np.float64)
        if query.ndim != 1 or len(query) != matrix.shape[1]:
            raise DimensionMismatchError(matrix.shape[1], len(query), context="query vector")

        norm = np.linalg.norm(query)
        if norm == 0:
            # Return empty results if query vector is zero
            return []

        scores = matrix @ (query / norm)
        order = np.argsort(-scores, kind="stable")[:top_k]

        return [
            QueryResult(id=records[i].id, text=records[i].text, score=round_score(scores[i]))
            for i in order
        ]

    def clear(self) -> None:
        """Clear all records from the store."""
        self._records = []
        self._positions = {}
        self._matrix = np.empty((0, self.dimension or 0), dtype=np.float64)

    def count(self) -> int:
        return len(self._records)

    @classmethod
    def from_snapshot(cls, snapshot) -> 'SimpleInMemoryVectorStore':
        """Build a read-only generation from a complete CacheSnapshot."""
        missing = snapshot.missing_positions()
        if missing:
            raise ValidationError(f"Snapshot is incomplete: {len(missing)} documents lack embeddings")

        store = cls(dimension=snapshot.dimensions)
        store.batch_add([
            VectorRecord(id=doc.id, text=doc.text, vector=vector)
            for doc, vector in zip(snapshot.docs, snapshot.embeddings)
        ])
        return store

"""
FAISS-backed similarity index with on-disk persistence.

Vectors are L2-normalised so inner product equals cosine similarity. Small
corpora use an exact flat index; above a size threshold an IVF index is
trained for approximate search.
"""

import json
from pathlib import Path
from typing import Dict, List, Optional, Sequence

import numpy as np

from ..core.errors import DimensionMismatchError, PersistenceError, ValidationError
from ..util.logging import logger
from .index import IVectorStore
from .types import QueryResult, VectorRecord, round_score


class FaissVectorStore(IVectorStore):
    """FAISS-backed implementation of IVectorStore."""

    def __init__(self, dimension: int = 1536, ivf_threshold: int = 4000, nlist: int = 100, nprobe: int = 10):
        """
        Initialize FAISS vector store.

        Args:
            dimension: Dimension of the vectors
            ivf_threshold: Corpus size from which build() trains an IVF index
            nlist: Number of IVF cells
            nprobe: Cells visited per IVF query
        """
        try:
            import faiss
            self.faiss = faiss
        except ImportError:
            raise ImportError("FAISS not installed. Please install faiss-cpu package.")

        self.dimension = dimension
        self.ivf_threshold = ivf_threshold
        self.nlist = nlist
        self.nprobe = nprobe

        # Create a flat index (inner product metric for cosine similarity)
        self.index = faiss.IndexFlatIP(dimension)
        self._ids: List[str] = []
        self._texts: List[str] = []
        self._positions: Dict[str, int] = {}
        # Opaque description of the data the index was built from, kept in the sidecar
        self.signature: Optional[Dict] = None

    def _prepare(self, record: VectorRecord) -> np.ndarray:
        if record.vector is None or len(record.vector) == 0:
            raise ValidationError(f"Record {record.id!r} has no vector")
        if len(record.vector) != self.dimension:
            raise DimensionMismatchError(self.dimension, len(record.vector), context=f"record {record.id}")
        if record.id in self._positions:
            raise ValidationError(f"Record {record.id!r} already indexed; FAISS store is append-only")

        vector = np.asarray(record.vector, dtype=np.float32)
        norm = np.linalg.norm(vector)
        # Zero vectors stay zero so positions line up with records
        return vector / norm if norm > 0 else vector

    def add(self, record: VectorRecord) -> None:
        """Add a single vector record to the FAISS store."""
        self.batch_add([record])

    def batch_add(self, records: List[VectorRecord]) -> None:
        """Add multiple vector records to the FAISS store."""
        if not records:
            return

        vectors = [self._prepare(record) for record in records]
        batch_vectors = np.vstack(vectors).astype(np.float32)

        if not self.index.is_trained:
            raise ValidationError("IVF index is not trained; call build() first")
        self.index.add(batch_vectors)

        for record in records:
            self._positions[record.id] = len(self._ids)
            self._ids.append(record.id)
            self._texts.append(record.text)

    def build(self) -> None:
        """Rebuild the index, switching to a trained IVF index for large corpora."""
        total = self.index.ntotal
        # Only a flat index can hand its vectors back for retraining
        if total < self.ivf_threshold or not isinstance(self.index, self.faiss.IndexFlatIP):
            logger.log_operation("faiss.build", "success", {"type": type(self.index).__name__, "vectors": total})
            return

        matrix = self.index.reconstruct_n(0, total)
        nlist = min(self.nlist, total)
        quantizer = self.faiss.IndexFlatIP(self.dimension)
        index = self.faiss.IndexIVFFlat(quantizer, self.dimension, nlist, self.faiss.METRIC_INNER_PRODUCT)
        index.train(matrix)
        index.add(matrix)
        index.nprobe = min(self.nprobe, nlist)
        self.index = index
        logger.log_operation("faiss.build", "success", {"type": "ivf", "vectors": total, "nlist": nlist})

    def search(self, query_vector: Sequence[float], top_k: int = 25) -> List[QueryResult]:
        """Search for similar vectors and return ranked results."""
        if top_k <= 0 or not self.index.ntotal:
            return []

        query = np.asarray(query_vector, dtype=np.float32)
        if query.ndim != 1 or len(query) != self.dimension:
            raise DimensionMismatchError(self.dimension, len(query), context="query vector")

        norm = np.linalg.norm(query)
        if norm == 0:
            return []

        scores, indices = self.index.search((query / norm).reshape(1, -1), min(top_k, self.index.ntotal))

        hits = [(float(score), int(position)) for score, position in zip(scores[0], indices[0]) if position >= 0]
        # Equal scores keep corpus order
        hits.sort(key=lambda hit: (-hit[0], hit[1]))

        return [
            QueryResult(id=self._ids[position], text=self._texts[position], score=round_score(score))
            for score, position in hits
        ]

    def clear(self) -> None:
        """Clear all records from the FAISS store."""
        self.index = self.faiss.IndexFlatIP(self.dimension)
        self._ids = []
        self._texts = []
        self._positions = {}

    def count(self) -> int:
        return len(self._ids)

    def save(self, path, signature: Optional[Dict] = None) -> None:
        """Write the index and its id/text sidecar, tagged with an optional signature."""
        path = Path(path)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            self.faiss.write_index(self.index, str(path))
            if signature is not None:
                self.signature = dict(signature)
            sidecar = {'dimension': self.dimension, 'ids': self._ids, 'texts': self._texts,
                       'signature': self.signature}
            Path(str(path) + ".docs.json").write_text(json.dumps(sidecar), encoding="utf-8")
        except (OSError, RuntimeError) as e:
            raise PersistenceError(f"Failed to write FAISS index {path}: {e}") from e

    @classmethod
    def load(cls, path, ivf_threshold: int = 4000, nlist: int = 100) -> Optional['FaissVectorStore']:
        """Read an index written by save(). Returns None when absent."""
        path = Path(path)
        sidecar_path = Path(str(path) + ".docs.json")
        if not path.exists() or not sidecar_path.exists():
            return None

        sidecar = json.loads(sidecar_path.read_text(encoding="utf-8"))
        store = cls(dimension=sidecar['dimension'], ivf_threshold=ivf_threshold, nlist=nlist)
        store.index = store.faiss.read_index(str(path))
        store._ids = list(sidecar['ids'])
        store._texts = list(sidecar['texts'])
        store._positions = {doc_id: i for i, doc_id in enumerate(store._ids)}
        store.signature = sidecar.get('signature')
        if store.index.ntotal != len(store._ids):
            raise ValidationError(f"FAISS index holds {store.index.ntotal} vectors but sidecar lists {len(store._ids)}")
        return store

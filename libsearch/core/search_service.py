"""
Semantic search service: owns the current index generation and the query contract.

Queries read whichever generation is current when they start; a rebuild
swaps in a new generation without blocking them.
"""

import asyncio
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, List, Optional

from .cache import ConsistencyManager, CsvSnapshotStore, JsonSnapshotStore
from .documents import DocumentStore, read_library
from .errors import IndexNotReadyError, ValidationError
from .schemas import LibraryStats
from ..util.logging import logger
from ..vector.index import IVectorStore, SimpleInMemoryVectorStore
from ..vector.types import VectorRecord


@dataclass(frozen=True)
class IndexGeneration:
    """One immutable, queryable build of the index."""
    index: IVectorStore
    model: Optional[str]
    dimensions: Optional[int]
    built_at: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())


class SemanticSearchService:
    """
    Embeds queries with the provider and ranks them against the current generation.

    The provider must be the one that produced the index vectors. Generations
    built from a snapshot use `index_factory(dimensions)` for their backend
    (e.g. config.get_vector_store); without one they are in-memory stores.
    """

    def __init__(self, provider, index: Optional[IVectorStore] = None,
                 index_factory: Optional[Callable[[Optional[int]], IVectorStore]] = None):
        self.provider = provider
        self.index_factory = index_factory
        self._generation: Optional[IndexGeneration] = None
        self._swap_lock = threading.Lock()
        if index is not None:
            self.swap_index(index)

    @property
    def ready(self) -> bool:
        return self._generation is not None

    @property
    def generation(self) -> Optional[IndexGeneration]:
        return self._generation

    def swap_index(self, index: IVectorStore, model: Optional[str] = None,
                   dimensions: Optional[int] = None) -> IndexGeneration:
        """Atomically make `index` the generation served to new queries."""
        generation = IndexGeneration(index=index, model=model or self.provider.model_id, dimensions=dimensions)
        with self._swap_lock:
            self._generation = generation
        logger.log_operation("index.swap", "success", {
            "docs": index.count(),
            "model": generation.model,
            "dimensions": dimensions,
        })
        return generation

    def load(self, store: DocumentStore, manager: ConsistencyManager, coordinator) -> IndexGeneration:
        """Sync the cache with the store, then build and swap in a new generation."""
        snapshot = manager.sync(store, self.provider.model_id, coordinator)
        return self.swap_index(self._build_index(snapshot.copy()), snapshot.model, snapshot.dimensions)

    def _build_index(self, snapshot) -> IVectorStore:
        if self.index_factory is None:
            return SimpleInMemoryVectorStore.from_snapshot(snapshot)

        index = self.index_factory(snapshot.dimensions)
        index.batch_add([
            VectorRecord(id=doc.id, text=doc.text, vector=vector)
            for doc, vector in zip(snapshot.docs, snapshot.embeddings)
        ])
        build = getattr(index, 'build', None)
        if build is not None:
            build()
        return index

    def load_library(self, library_path, cache_path, coordinator) -> IndexGeneration:
        """
        Load a library file and bring its vectors up to date.

        A 3-field library keeps its vectors inline; a 2-field library uses the
        JSON cache file.
        """
        library = read_library(library_path)
        if library.has_embedding_column:
            snapshot_store = CsvSnapshotStore(library_path)
        else:
            snapshot_store = JsonSnapshotStore(cache_path)
        return self.load(library.store, ConsistencyManager(snapshot_store), coordinator)

    def search(self, query: str, limit: int = 25) -> List[dict]:
        """
        Rank library documents against a free-text query.

        Returns:
            Up to `limit` dicts {id, text, score}, score in [-1, 1] rounded to 4 decimals

        Raises:
            ValidationError: empty query
            IndexNotReadyError: no generation loaded yet
        """
        if not isinstance(query, str) or not query.strip():
            raise ValidationError("Query text is required")

        generation = self._generation
        if generation is None:
            raise IndexNotReadyError("Embedding index not ready yet")
        if limit <= 0:
            return []

        started = time.perf_counter()
        query_vector = self.provider.embed_text(query)
        results = [hit.to_dict() for hit in generation.index.search(query_vector, limit)]

        logger.log_search("semantic", query, len(results),
                          results[0]['score'] if results else None,
                          (time.perf_counter() - started) * 1000)
        return results

    async def asearch(self, query: str, limit: int = 25) -> List[dict]:
        """Asynchronous variant of search(); the blocking work runs in a worker thread."""
        return await asyncio.to_thread(self.search, query, limit)

    def stats(self) -> LibraryStats:
        generation = self._generation
        if generation is None:
            return LibraryStats(docs=0, embeddings=0, missing=0, model=self.provider.model_id)

        get_stats = getattr(generation.index, 'get_stats', None)
        if get_stats is not None:
            return get_stats()

        count = generation.index.count()
        return LibraryStats(docs=count, embeddings=count, missing=0,
                            model=generation.model, dimensions=generation.dimensions)

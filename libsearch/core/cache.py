"""
Embedding cache and consistency management.

Decides which document positions already hold a valid vector, which must be
(re)computed, and persists progress after every batch so a crash loses at
most the in-flight batch.
"""

import csv
import json
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import List, Optional, Sequence

from pydantic import ValidationError as SchemaValidationError

from .documents import Document, DocumentStore, atomic_write_text, read_library
from .errors import (
    CacheCorruptError,
    CountMismatchError,
    DimensionMismatchError,
    PersistenceError,
    ValidationError,
)
from .schemas import CacheFileModel, CacheMetaModel
from ..util.logging import logger


class GenerationState(Enum):
    EMPTY = "empty"
    COMPUTING = "computing"
    VALID = "valid"
    STALE = "stale"


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class CacheSnapshot:
    """Documents and their vectors for one model. A None vector is not yet computed."""
    docs: List[Document]
    embeddings: List[Optional[List[float]]]
    model: Optional[str]
    dimensions: Optional[int] = None
    timestamp: str = field(default_factory=_now_iso)

    def __post_init__(self):
        if len(self.docs) != len(self.embeddings):
            raise ValidationError(
                f"Snapshot has {len(self.docs)} docs but {len(self.embeddings)} embeddings"
            )

    @classmethod
    def empty(cls, store: DocumentStore, model: str) -> 'CacheSnapshot':
        docs = list(store.documents())
        return cls(docs=docs, embeddings=[None] * len(docs), model=model)

    def missing_positions(self) -> List[int]:
        return [i for i, vector in enumerate(self.embeddings) if vector is None]

    def is_complete(self) -> bool:
        return all(vector is not None for vector in self.embeddings)

    def matches_documents(self, store: DocumentStore) -> bool:
        """Every (id, text) pair equal, position by position."""
        return (len(self.docs) == store.count()
                and all(doc == other for doc, other in zip(self.docs, store.documents())))

    def is_prefix_of(self, store: DocumentStore) -> bool:
        """True when the store only appended documents after the ones cached here."""
        current = store.documents()
        return len(self.docs) < len(current) and all(doc == other for doc, other in zip(self.docs, current))

    def copy(self) -> 'CacheSnapshot':
        return CacheSnapshot(docs=list(self.docs), embeddings=list(self.embeddings),
                             model=self.model, dimensions=self.dimensions, timestamp=self.timestamp)

    def to_dict(self) -> dict:
        """Convert to the cache file layout."""
        return {
            'docs': [{'id': doc.id, 'text': doc.text} for doc in self.docs],
            'embeddings': self.embeddings,
            'model': self.model,
            'dimensions': self.dimensions,
            'timestamp': self.timestamp,
        }

    @classmethod
    def from_dict(cls, data: dict) -> 'CacheSnapshot':
        """Create from the cache file layout; structural problems raise CacheCorruptError."""
        try:
            parsed = CacheFileModel.model_validate(data)
        except SchemaValidationError as e:
            raise CacheCorruptError(f"Cache structure invalid: {e.error_count()} error(s)") from e

        lengths = {len(vector) for vector in parsed.embeddings if vector is not None}
        if len(lengths) > 1:
            raise CacheCorruptError(f"Cache holds vectors of mixed dimensions: {sorted(lengths)}")
        dimensions = parsed.dimensions
        if lengths:
            (actual,) = lengths
            if dimensions is not None and dimensions != actual:
                raise CacheCorruptError(f"Cache declares {dimensions} dimensions but vectors have {actual}")
            dimensions = actual

        return cls(
            docs=[Document(id=doc.id, text=doc.text) for doc in parsed.docs],
            embeddings=[list(vector) if vector is not None else None for vector in parsed.embeddings],
            model=parsed.model,
            dimensions=dimensions,
            timestamp=parsed.timestamp or _now_iso(),
        )


class ISnapshotStore(ABC):
    """Durable home of a CacheSnapshot."""

    @abstractmethod
    def load(self) -> Optional[CacheSnapshot]:
        """Return the persisted snapshot, None if absent. Raises CacheCorruptError."""
        pass

    @abstractmethod
    def save(self, snapshot: CacheSnapshot) -> None:
        """Persist the snapshot. Raises PersistenceError."""
        pass


class JsonSnapshotStore(ISnapshotStore):
    """Snapshot kept in a standalone JSON cache file."""

    def __init__(self, path):
        self.path = Path(path)

    def load(self) -> Optional[CacheSnapshot]:
        if not self.path.exists():
            return None
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise CacheCorruptError(f"Cache file {self.path} is not valid JSON: {e}") from e
        except OSError as e:
            raise CacheCorruptError(f"Cache file {self.path} could not be read: {e}") from e
        return CacheSnapshot.from_dict(data)

    def save(self, snapshot: CacheSnapshot) -> None:
        try:
            atomic_write_text(self.path, json.dumps(snapshot.to_dict()))
        except (OSError, TypeError, ValueError) as e:
            raise PersistenceError(f"Failed to write cache file {self.path}: {e}") from e


class CsvSnapshotStore(ISnapshotStore):
    """
    Snapshot inlined into a 3-field library file.

    The model signature lives in a `<library>.meta.json` sidecar. A library
    without a sidecar loads with model None ("unknown").
    """

    def __init__(self, path, meta_path=None):
        self.path = Path(path)
        self.meta_path = Path(meta_path) if meta_path else self.path.with_name(self.path.name + ".meta.json")

    def _load_meta(self) -> Optional[CacheMetaModel]:
        if not self.meta_path.exists():
            return None
        try:
            return CacheMetaModel.model_validate(json.loads(self.meta_path.read_text(encoding="utf-8")))
        except (json.JSONDecodeError, UnicodeDecodeError, SchemaValidationError) as e:
            raise CacheCorruptError(f"Metadata file {self.meta_path} is invalid: {e}") from e

    def load(self) -> Optional[CacheSnapshot]:
        if not self.path.exists():
            return None
        meta = self._load_meta()
        try:
            library = read_library(self.path)
        except (UnicodeDecodeError, ValueError, csv.Error) as e:
            raise CacheCorruptError(f"Library file {self.path} could not be parsed: {e}") from e

        lengths = {len(vector) for vector in library.embeddings if vector is not None}
        if len(lengths) > 1:
            raise CacheCorruptError(f"Library holds vectors of mixed dimensions: {sorted(lengths)}")

        return CacheSnapshot(
            docs=list(library.store.documents()),
            embeddings=library.embeddings,
            model=meta.model if meta else None,
            dimensions=next(iter(lengths)) if lengths else (meta.dimensions if meta else None),
            timestamp=(meta.timestamp if meta and meta.timestamp else _now_iso()),
        )

    def save(self, snapshot: CacheSnapshot) -> None:
        try:
            DocumentStore(snapshot.docs).to_csv(self.path, snapshot.embeddings)
            if snapshot.model is None:
                # Unknown model: no sidecar, so the next load adopts the target model
                if self.meta_path.exists():
                    self.meta_path.unlink()
                return
            meta = {'model': snapshot.model, 'dimensions': snapshot.dimensions, 'timestamp': snapshot.timestamp}
            atomic_write_text(self.meta_path, json.dumps(meta))
        except (OSError, ValidationError) as e:
            raise PersistenceError(f"Failed to write library file {self.path}: {e}") from e


class ConsistencyManager:
    """
    Owns the CacheSnapshot for one library and keeps it consistent with the DocumentStore.

    Validity is full equality: same count, every (id, text) pair identical,
    same model. Anything else discards the snapshot wholesale. The only
    incremental paths are None entries and documents appended after an
    otherwise identical prefix.
    """

    def __init__(self, snapshot_store: ISnapshotStore):
        self.snapshot_store = snapshot_store
        self.snapshot: Optional[CacheSnapshot] = None
        self.state = GenerationState.EMPTY
        self.persist_failures = 0
        self._lock = threading.Lock()
        self._loaded = False

    def load(self) -> Optional[CacheSnapshot]:
        """Read the persisted snapshot. A corrupt cache is treated as absent (full recompute)."""
        try:
            snapshot = self.snapshot_store.load()
        except CacheCorruptError as e:
            logger.log_cache_event("load", "corrupt", {"error": str(e)[:200]})
            snapshot = None
            self.state = GenerationState.STALE

        self.snapshot = snapshot
        self._loaded = True
        if snapshot is not None:
            logger.log_cache_event("load", "success", {
                "docs": len(snapshot.docs),
                "missing": len(snapshot.missing_positions()),
                "model": snapshot.model,
            })
        return snapshot

    def replace_wholesale(self, store: DocumentStore, model_id: str) -> CacheSnapshot:
        """Discard the snapshot; every position of the store needs compute."""
        with self._lock:
            self.snapshot = CacheSnapshot.empty(store, model_id)
            self.state = GenerationState.STALE
            self._loaded = True
        logger.log_cache_event("replace_wholesale", "stale", {"docs": store.count(), "model": model_id})
        return self.snapshot

    def diff(self, store: DocumentStore, model_id: str, dimensions: Optional[int] = None) -> List[int]:
        """
        Positions of the store that need a vector computed for model_id.

        Vectors of unknown origin (no recorded model) are adopted for model_id
        only when their dimension equals `dimensions`; otherwise they are
        discarded wholesale.

        Side effect: the snapshot is replaced or extended so that it lines up
        with the store position by position.
        """
        snapshot = self.snapshot
        if snapshot is None:
            self.replace_wholesale(store, model_id)
            return self.snapshot.missing_positions()

        if snapshot.model is None:
            if dimensions is not None and snapshot.dimensions is not None and snapshot.dimensions != dimensions:
                logger.log_cache_event("dimensions_changed", "stale", {
                    "cached": snapshot.dimensions,
                    "target": dimensions,
                })
                snapshot = self.replace_wholesale(store, model_id)
            else:
                logger.log_cache_event("model_unknown", "adopted", {"model": model_id})
                snapshot.model = model_id

        if snapshot.model != model_id:
            logger.log_cache_event("model_changed", "stale", {"cached": snapshot.model, "target": model_id})
            self.replace_wholesale(store, model_id)
        elif snapshot.matches_documents(store):
            pass
        elif snapshot.is_prefix_of(store):
            self.extend(list(store.documents())[len(snapshot.docs):])
        else:
            logger.log_cache_event("documents_changed", "stale", {
                "cached_docs": len(snapshot.docs),
                "current_docs": store.count(),
            })
            self.replace_wholesale(store, model_id)

        positions = self.snapshot.missing_positions()
        if not positions:
            self.state = GenerationState.VALID
        return positions

    def adoption_dimensions(self, provider) -> Optional[int]:
        """Provider dimension, asked for only when the snapshot holds vectors of unknown origin."""
        snapshot = self.snapshot
        if snapshot is None or snapshot.model is not None or snapshot.dimensions is None:
            return None
        return provider.get_dimension()

    def extend(self, documents: Sequence[Document]) -> None:
        """Append documents with uncomputed vectors (incremental path)."""
        if self.snapshot is None:
            raise ValidationError("No snapshot loaded to extend")
        with self._lock:
            self.snapshot.docs.extend(documents)
            self.snapshot.embeddings.extend([None] * len(documents))
            if self.state == GenerationState.VALID:
                self.state = GenerationState.COMPUTING
        logger.log_cache_event("extend", "success", {"appended": len(documents), "docs": len(self.snapshot.docs)})

    def commit(self, positions: Sequence[int], vectors: Sequence[Sequence[float]]) -> None:
        """Store computed vectors and checkpoint the snapshot to durable storage."""
        if self.snapshot is None:
            raise ValidationError("No snapshot loaded to commit into")
        if len(positions) != len(vectors):
            raise CountMismatchError(expected=len(positions), actual=len(vectors))

        with self._lock:
            snapshot = self.snapshot
            dimensions = snapshot.dimensions
            for position, vector in zip(positions, vectors):
                if dimensions is None:
                    dimensions = len(vector)
                elif len(vector) != dimensions:
                    raise DimensionMismatchError(dimensions, len(vector), context=f"position {position}")
            snapshot.dimensions = dimensions

            for position, vector in zip(positions, vectors):
                snapshot.embeddings[position] = list(vector)
            snapshot.timestamp = _now_iso()
            self._persist(snapshot)

    def checkpoint(self) -> None:
        """Persist the snapshot as it stands, e.g. right after new documents were appended."""
        if self.snapshot is None:
            raise ValidationError("No snapshot loaded to checkpoint")
        with self._lock:
            self._persist(self.snapshot)

    def _persist(self, snapshot: CacheSnapshot) -> None:
        try:
            self.snapshot_store.save(snapshot)
        except PersistenceError as e:
            # Losing the cache only costs a recompute; keep serving
            self.persist_failures += 1
            logger.log_persistence_failure(str(getattr(self.snapshot_store, 'path', 'snapshot')), e)

    def sync(self, store: DocumentStore, model_id: str, coordinator) -> CacheSnapshot:
        """
        Bring the snapshot up to date with the store: diff, embed what is missing, checkpoint each batch.

        Returns:
            The complete snapshot (every position holds a vector)
        """
        if not self._loaded:
            self.load()

        positions = self.diff(store, model_id, self.adoption_dimensions(coordinator.provider))
        if not positions:
            logger.log_cache_event("validate", "valid", {"docs": store.count(), "model": model_id})
            return self.snapshot

        self.state = GenerationState.COMPUTING
        logger.log_cache_event("compute", "started", {"missing": len(positions), "docs": store.count()})
        texts = [self.snapshot.docs[p].text for p in positions]

        def checkpoint(batch_index: int, start: int, vectors: List[List[float]]) -> None:
            self.commit(positions[start:start + len(vectors)], vectors)

        try:
            coordinator.embed_all(texts, on_batch=checkpoint)
        except Exception:
            self.state = GenerationState.STALE
            raise

        if not self.snapshot.is_complete():
            self.state = GenerationState.STALE
            raise ValidationError(f"Missing embeddings after sync: {len(self.snapshot.missing_positions())}")

        self.state = GenerationState.VALID
        logger.log_cache_event("compute", "valid", {"computed": len(positions), "docs": store.count()})
        return self.snapshot

"""
Library format migrations and incremental growth.

- 2-field library + JSON cache -> 3-field library with inlined vectors
- appending texts to a 3-field library, embedding only the new rows
- loading a 3-field library into the relational store
"""

from pathlib import Path
from typing import List, Optional, Sequence

from .cache import CacheSnapshot, ConsistencyManager, CsvSnapshotStore, JsonSnapshotStore
from .documents import Document, DocumentStore, read_library
from .errors import CacheCorruptError
from .schemas import LibraryStats
from ..util.logging import logger


def migrate_to_unified_format(old_csv, cache_json, new_csv) -> CacheSnapshot:
    """
    Merge a 2-field library and its JSON cache into one 3-field library.

    A cached vector is carried over only where the cache holds the same
    (id, text) at the same position; every other row gets an empty embedding
    and is recomputed on the next load.

    Returns:
        The snapshot written to new_csv
    """
    library = read_library(old_csv)
    docs = list(library.store.documents())

    cached = None
    if cache_json and Path(cache_json).exists():
        try:
            cached = JsonSnapshotStore(cache_json).load()
        except CacheCorruptError as e:
            logger.log_migration("unify", "cache_ignored", {"cache": str(cache_json), "error": str(e)[:200]})

    embeddings: List[Optional[List[float]]] = list(library.embeddings)
    carried = 0
    if cached is not None:
        for position, doc in enumerate(docs):
            if embeddings[position] is not None or position >= len(cached.docs):
                continue
            if cached.docs[position] == doc and cached.embeddings[position] is not None:
                embeddings[position] = cached.embeddings[position]
                carried += 1

    lengths = {len(vector) for vector in embeddings if vector is not None}
    if len(lengths) > 1:
        # Inlined and cached vectors disagree; keep neither
        logger.log_migration("unify", "dimensions_mixed", {"dimensions": sorted(lengths)})
        embeddings = [None] * len(docs)
        lengths = set()

    snapshot = CacheSnapshot(
        docs=docs,
        embeddings=embeddings,
        model=cached.model if cached is not None else None,
        dimensions=next(iter(lengths)) if lengths else None,
    )
    CsvSnapshotStore(new_csv).save(snapshot)

    logger.log_migration("unify", "success", {
        "docs": len(docs),
        "carried": carried,
        "missing": len(snapshot.missing_positions()),
        "target": str(new_csv),
    })
    return snapshot


def add_texts_to_library(csv_path, texts: Sequence[str], model_id: str, coordinator) -> List[Document]:
    """
    Append texts to a 3-field library and embed only the new rows.

    The appended rows are saved before embedding starts, so a failed run
    keeps the texts and resumes their vectors next time. Vectors of existing
    rows are left untouched.

    Returns:
        The newly created documents
    """
    path = Path(csv_path)
    if not path.exists():
        raise FileNotFoundError(f"Library file not found: {path}")

    manager = ConsistencyManager(CsvSnapshotStore(path))
    snapshot = manager.load()
    store = DocumentStore(snapshot.docs) if snapshot is not None else DocumentStore.from_csv(path)

    created = store.append(texts)
    if not created:
        return []

    positions = manager.diff(store, model_id, manager.adoption_dimensions(coordinator.provider))
    manager.checkpoint()
    logger.log_migration("add_texts", "appended", {
        "added": len(created),
        "first_id": created[0].id,
        "to_compute": len(positions),
    })

    manager.sync(store, model_id, coordinator)
    logger.log_migration("add_texts", "success", {"docs": store.count(), "added": len(created)})
    return created


def migrate_csv_to_database(csv_path, database, coordinator=None) -> LibraryStats:
    """
    Load a 3-field library into the relational store, then fill in missing vectors.

    Inlined vectors are kept when they were produced by the target model, or
    by an unknown model whose dimension matches the target provider (which is
    then adopted). Unknown-model vectors of another dimension are dropped and
    recomputed.
    """
    snapshot = CsvSnapshotStore(csv_path).load()
    if snapshot is None:
        raise FileNotFoundError(f"Library file not found: {csv_path}")

    database.initialize()
    target_model = coordinator.provider.model_id if coordinator is not None else None
    if snapshot.model is None and target_model is not None and snapshot.dimensions is not None:
        target_dimensions = coordinator.provider.get_dimension()
        if snapshot.dimensions != target_dimensions:
            logger.log_migration("to_db", "vectors_dropped", {
                "cached_dimensions": snapshot.dimensions,
                "target_dimensions": target_dimensions,
            })
            snapshot.embeddings = [None] * len(snapshot.docs)
            snapshot.dimensions = None
    source_model = snapshot.model or target_model
    if snapshot.model is None and target_model is not None:
        logger.log_migration("to_db", "model_adopted", {"model": target_model})
    if source_model is not None:
        database.ensure_model(source_model, snapshot.dimensions)

    inserted = database.insert_documents(snapshot.docs, snapshot.embeddings)
    logger.log_migration("to_db", "inserted", {"rows": inserted, "source": str(csv_path)})

    if coordinator is not None:
        database.generate_missing_embeddings(coordinator)
    database.refresh_index()

    stats = database.get_stats()
    logger.log_migration("to_db", "success", stats.model_dump())
    return stats

#!/usr/bin/env python3
"""
Index Rebuild Utility
Recomputes every library vector from scratch, persists the result and runs a
verification search. Use after a model change or when the cache is suspect.
"""

import argparse
import logging
import sys
from pathlib import Path

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from libsearch.core.cache import ConsistencyManager, CsvSnapshotStore, JsonSnapshotStore
from libsearch.core.config import (
    CACHE_PATH,
    DB_PATH,
    FAISS_INDEX_PATH,
    FAISS_IVF_LISTS,
    FAISS_IVF_THRESHOLD,
    LIBRARY_PATH,
    SEARCH_DEFAULT_LIMIT,
    SEARCH_MODE,
    VECTOR_PROVIDER,
    debug_enabled,
    get_batch_settings,
    get_embedding_provider,
    get_vector_store,
    validate_config,
)
from libsearch.core.coordinator import BatchEmbeddingCoordinator
from libsearch.core.documents import read_library
from libsearch.core.errors import LibrarySearchError
from libsearch.core.lexical import LexicalIndex
from libsearch.core.library_db import LibraryDatabase
from libsearch.core.search_service import SemanticSearchService
from libsearch.util.logging import logger


def rebuild_file_index(provider, coordinator, library_path, cache_path) -> SemanticSearchService:
    """Discard the cached vectors of a library file and embed every document again."""
    library = read_library(library_path)
    print(f"Found {library.store.count()} documents in {library_path}")

    if library.has_embedding_column:
        snapshot_store = CsvSnapshotStore(library_path)
    else:
        snapshot_store = JsonSnapshotStore(cache_path)

    manager = ConsistencyManager(snapshot_store)
    manager.replace_wholesale(library.store, provider.model_id)
    print("✓ Cleared existing vectors")

    # VECTOR_PROVIDER=memory|faiss picks the store the search generation is built into
    index_factory = get_vector_store if VECTOR_PROVIDER != "database" else None
    service = SemanticSearchService(provider, index_factory=index_factory)
    service.load(library.store, manager, coordinator)
    if manager.persist_failures:
        print(f"WARNING: {manager.persist_failures} checkpoint write(s) failed; vectors are not fully persisted")
    return service


def rebuild_database_index(provider, coordinator, db_path, index_path) -> SemanticSearchService:
    """Clear every stored vector in the database and embed all rows again."""
    database = LibraryDatabase(db_path, index_path=index_path,
                               ivf_threshold=FAISS_IVF_THRESHOLD, nlist=FAISS_IVF_LISTS)
    database.initialize()
    print(f"Found {database.count()} documents in {db_path}")

    database.ensure_model(provider.model_id)
    database.reset_embeddings()
    print("✓ Cleared existing vectors")

    database.generate_missing_embeddings(coordinator)
    database.refresh_index()
    return SemanticSearchService(provider, index=database)


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(
        description="Rebuild the library embedding index from scratch",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s                                   # Rebuild LIBRARY_PATH with the configured provider
  %(prog)s --library data/library.csv        # Rebuild a specific library file
  %(prog)s --backend database                # Rebuild vectors stored in DB_PATH
  %(prog)s --query "cleaning stone floors"   # Verify with a custom query

Environment variables:
- EMBED_PROVIDER=remote|local|hash (embedding provider)
- EMBED_BATCH_SIZE, EMBED_BATCH_DELAY_SEC, EMBED_MAX_RETRIES (batch pacing)
- SEARCH_MODE=semantic|lexical (lexical mode only rebuilds the term index)
- VECTOR_PROVIDER=memory|faiss|database (search backend; database selects --backend database)
        """
    )
    parser.add_argument("--library", default=LIBRARY_PATH, help="Library CSV file")
    parser.add_argument("--cache", default=CACHE_PATH, help="JSON cache for 2-field libraries")
    parser.add_argument("--backend", choices=["file", "database"],
                        default="database" if VECTOR_PROVIDER == "database" else "file",
                        help="Rebuild the library file cache or the database vectors (default from VECTOR_PROVIDER)")
    parser.add_argument("--db", default=DB_PATH, help="SQLite database (database backend)")
    parser.add_argument("--index", default=FAISS_INDEX_PATH, help="FAISS index file (database backend)")
    parser.add_argument("--mode", choices=["semantic", "lexical"], default=SEARCH_MODE, help="Search mode")
    parser.add_argument("--query", default="test", help="Verification query")
    parser.add_argument("--limit", type=int, default=min(3, SEARCH_DEFAULT_LIMIT), help="Verification result count")
    args = parser.parse_args(argv)

    if debug_enabled():
        logger.logger.setLevel(logging.DEBUG)

    print("Starting index rebuild...")

    if args.mode == "lexical":
        try:
            library = read_library(args.library)
        except (FileNotFoundError, LibrarySearchError) as e:
            print(f"ERROR: Index rebuild failed: {e}")
            return 1
        lexical = LexicalIndex(library.store)
        print(f"✓ Built lexical index with {lexical.term_count()} terms")
        results = lexical.search(args.query, args.limit)
        print(f"✓ Verification search returned {len(results)} results")
        print("Index rebuild complete!")
        return 0

    issues = validate_config()
    if issues:
        for issue in issues:
            print(f"ERROR: {issue}")
        return 1

    provider = get_embedding_provider()
    try:
        provider.initialize()
        coordinator = BatchEmbeddingCoordinator(provider, get_batch_settings())

        if args.backend == "database":
            service = rebuild_database_index(provider, coordinator, args.db, args.index)
        else:
            service = rebuild_file_index(provider, coordinator, args.library, args.cache)

        stats = service.stats()
        print(f"✓ Successfully rebuilt index with {stats.embeddings} vectors")

        try:
            results = service.search(args.query, args.limit)
            print(f"✓ Verification search returned {len(results)} results")
        except LibrarySearchError as e:
            print(f"WARNING: Verification search failed: {e}")

    except (FileNotFoundError, LibrarySearchError) as e:
        logger.error(f"Index rebuild failed: {e}")
        print(f"ERROR: Index rebuild failed: {e}")
        return 1
    finally:
        provider.shutdown()

    print("Index rebuild complete!")
    return 0


if __name__ == "__main__":
    sys.exit(main())

#!/usr/bin/env python3
"""
Library migration utility.

  unify  - merge a 2-field library and its JSON cache into a 3-field library
  to-db  - load a 3-field library into the SQLite store and embed missing rows
  add    - append texts to a 3-field library and embed only the new rows
"""

import argparse
import logging
import sys
from pathlib import Path

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from libsearch.core.config import (
    CACHE_PATH,
    DB_PATH,
    FAISS_INDEX_PATH,
    FAISS_IVF_LISTS,
    FAISS_IVF_THRESHOLD,
    LIBRARY_PATH,
    debug_enabled,
    get_batch_settings,
    get_embedding_provider,
)
from libsearch.core.coordinator import BatchEmbeddingCoordinator
from libsearch.core.errors import LibrarySearchError
from libsearch.core.library_db import LibraryDatabase
from libsearch.core.migration import add_texts_to_library, migrate_csv_to_database, migrate_to_unified_format
from libsearch.util.logging import logger


def _read_texts(args) -> list:
    texts = list(args.text or [])
    if args.from_file:
        with open(args.from_file, encoding="utf-8") as handle:
            texts.extend(line.strip() for line in handle if line.strip())
    return texts


def cmd_unify(args) -> int:
    snapshot = migrate_to_unified_format(args.source, args.cache, args.target)
    carried = len(snapshot.docs) - len(snapshot.missing_positions())
    print(f"✓ Migrated {len(snapshot.docs)} documents to {args.target}")
    print(f"  Vectors carried over: {carried}")
    print(f"  Vectors to compute: {len(snapshot.missing_positions())}")
    return 0


def cmd_to_db(args) -> int:
    database = LibraryDatabase(args.db, index_path=args.index,
                               ivf_threshold=FAISS_IVF_THRESHOLD, nlist=FAISS_IVF_LISTS)
    if args.skip_embeddings:
        stats = migrate_csv_to_database(args.library, database)
    else:
        provider = get_embedding_provider()
        provider.initialize()
        try:
            coordinator = BatchEmbeddingCoordinator(provider, get_batch_settings())
            stats = migrate_csv_to_database(args.library, database, coordinator)
        finally:
            provider.shutdown()

    print(f"✓ Database {args.db}: {stats.docs} documents, {stats.embeddings} with embeddings, "
          f"{stats.missing} missing")
    return 0


def cmd_add(args) -> int:
    texts = _read_texts(args)
    if not texts:
        print("ERROR: No texts given. Use --text or --from-file")
        return 1

    provider = get_embedding_provider()
    provider.initialize()
    try:
        coordinator = BatchEmbeddingCoordinator(provider, get_batch_settings())
        created = add_texts_to_library(args.library, texts, provider.model_id, coordinator)
    finally:
        provider.shutdown()

    print(f"✓ Added {len(created)} texts to {args.library}")
    for doc in created:
        print(f"  {doc.id}: {doc.text[:60]}")
    return 0


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(
        description="Library format migration and growth",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s unify data/library.csv data/library_unified.csv --cache data/embeddings_cache.json
  %(prog)s to-db --library data/library_unified.csv --db data/library.db
  %(prog)s add --library data/library_unified.csv --text "Wipe marble with a damp cloth"
        """
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    unify = subparsers.add_parser("unify", help="2-field library + JSON cache -> 3-field library")
    unify.add_argument("source", help="2-field library CSV")
    unify.add_argument("target", help="3-field library CSV to write")
    unify.add_argument("--cache", default=CACHE_PATH, help="JSON embedding cache")
    unify.set_defaults(func=cmd_unify)

    to_db = subparsers.add_parser("to-db", help="3-field library -> SQLite database")
    to_db.add_argument("--library", default=LIBRARY_PATH, help="3-field library CSV")
    to_db.add_argument("--db", default=DB_PATH, help="SQLite database")
    to_db.add_argument("--index", default=FAISS_INDEX_PATH, help="FAISS index file")
    to_db.add_argument("--skip-embeddings", action="store_true",
                       help="Only import rows; do not generate missing embeddings")
    to_db.set_defaults(func=cmd_to_db)

    add = subparsers.add_parser("add", help="Append texts and embed only the new rows")
    add.add_argument("--library", default=LIBRARY_PATH, help="3-field library CSV")
    add.add_argument("--text", action="append", help="Text to add (repeatable)")
    add.add_argument("--from-file", help="File with one text per line")
    add.set_defaults(func=cmd_add)

    args = parser.parse_args(argv)

    if debug_enabled():
        logger.logger.setLevel(logging.DEBUG)

    try:
        return args.func(args)
    except (FileNotFoundError, LibrarySearchError) as e:
        logger.error(f"Migration '{args.command}' failed: {e}")
        print(f"ERROR: Migration failed: {e}")
        return 1


if __name__ == "__main__":
    sys.exit(main())

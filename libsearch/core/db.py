"""
SQLite storage for the text library.
"""

import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Generator

from ..util.logging import logger


@contextmanager
def get_db(db_path) -> Generator[sqlite3.Connection, None, None]:
    """Get a SQLite database connection."""
    Path(db_path).parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(str(db_path))
    try:
        yield conn
    finally:
        conn.close()


def init_db(db_path) -> bool:
    """
    Initialize the database with required tables.

    Returns:
        True when the FTS5 full-text index is available
    """
    with get_db(db_path) as conn:
        cursor = conn.cursor()

        # Library rows; embedding is a float64 blob, NULL until computed
        cursor.execute('''
            CREATE TABLE IF NOT EXISTS text_library (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                original_id TEXT,
                text TEXT NOT NULL,
                embedding BLOB,
                created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            )
        ''')

        # Model signature of the stored vectors
        cursor.execute('''
            CREATE TABLE IF NOT EXISTS library_meta (
                key TEXT PRIMARY KEY,
                value TEXT
            )
        ''')

        cursor.execute('CREATE INDEX IF NOT EXISTS idx_text_library_original_id ON text_library(original_id)')

        fts_enabled = True
        try:
            cursor.execute('''
                CREATE VIRTUAL TABLE IF NOT EXISTS text_library_fts
                USING fts5(text, content='text_library', content_rowid='id')
            ''')
            cursor.execute('''
                CREATE TRIGGER IF NOT EXISTS text_library_ai AFTER INSERT ON text_library BEGIN
                    INSERT INTO text_library_fts(rowid, text) VALUES (new.id, new.text);
                END
            ''')
            cursor.execute('''
                CREATE TRIGGER IF NOT EXISTS text_library_ad AFTER DELETE ON text_library BEGIN
                    INSERT INTO text_library_fts(text_library_fts, rowid, text) VALUES ('delete', old.id, old.text);
                END
            ''')
        except sqlite3.OperationalError as e:
            # SQLite builds without FTS5 still serve vector search
            logger.warning(f"Full-text index unavailable: {e}")
            fts_enabled = False

        conn.commit()

    return fts_enabled

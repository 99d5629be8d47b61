"""
Document collection: CSV library parsing, lexical tokens and append-only growth.

Library files carry a header row and either two columns (id,text) or three
(id,text,embedding), where the embedding is a quoted JSON array or "".
"""

import csv
import json
import os
import re
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, List, Optional, Sequence, Tuple

from .errors import ValidationError
from ..util.logging import logger

STOPWORDS = frozenset([
    'the', 'a', 'an', 'and', 'or', 'of', 'to', 'for', 'with', 'on',
    'in', 'at', 'by', 'is', 'are', 'be', 'use', 'using',
])
TOKEN_RE = re.compile(r"[a-z0-9']+")

ID_WIDTH = 8
UNIFIED_HEADER = "id,text,embedding"


def tokenize(text: str) -> List[str]:
    """Lowercase, split into letter/digit/apostrophe runs, drop stopwords."""
    return [tok for tok in TOKEN_RE.findall(text.lower()) if tok not in STOPWORDS]


@dataclass(frozen=True)
class Document:
    id: str
    text: str


@dataclass
class LibraryFile:
    """Parsed library: documents plus any inlined vectors (None where absent)."""
    store: "DocumentStore"
    embeddings: List[Optional[List[float]]]
    has_embedding_column: bool


def parse_csv_row(line: str) -> List[str]:
    """Split one CSV line, honouring quotes and doubled-quote escapes."""
    rows = list(csv.reader([line]))
    return rows[0] if rows else []


def _quote(value: str) -> str:
    return '"' + value.replace('"', '""') + '"'


def format_csv_row(doc_id: str, text: str, embedding: Optional[Sequence[float]] = None) -> str:
    """Render one 3-field library row. Text is always quoted."""
    if any(ch in doc_id for ch in ',"\n'):
        doc_id = _quote(doc_id)

    embedding_field = '""'
    if embedding is not None and len(embedding) > 0:
        embedding_field = _quote(json.dumps([float(x) for x in embedding], separators=(",", ":")))

    return f"{doc_id},{_quote(text)},{embedding_field}"


def parse_embedding_field(field: str, row_number: int) -> Optional[List[float]]:
    """Decode an inlined embedding. Anything unusable means 'needs compute'."""
    field = field.strip()
    if not field:
        return None
    try:
        value = json.loads(field)
    except json.JSONDecodeError:
        logger.log_row_warning(row_number, "invalid embedding format, will regenerate")
        return None

    if not isinstance(value, list) or not value:
        return None
    if not all(isinstance(x, (int, float)) and not isinstance(x, bool) for x in value):
        logger.log_row_warning(row_number, "non-numeric embedding, will regenerate")
        return None
    return [float(x) for x in value]


def _split_row(row: List[str], has_embedding_column: bool) -> Tuple[str, str, str]:
    """Map a raw CSV row to (id, text, embedding field)."""
    doc_id = row[0] if row else ""

    if not has_embedding_column:
        # Unquoted commas belong to the text
        return doc_id, ",".join(row[1:]), ""

    if len(row) <= 3:
        padded = row + [""] * (3 - len(row))
        return padded[0], padded[1], padded[2]

    # Extra fields: find where an unquoted JSON array starts, else the last field is the embedding
    if row[-1].rstrip().endswith("]"):
        for k in range(2, len(row)):
            if row[k].lstrip().startswith("["):
                return doc_id, ",".join(row[1:k]), ",".join(row[k:])
    return doc_id, ",".join(row[1:-1]), row[-1]


def atomic_write_text(path, content: str) -> None:
    """Write a file through a temp file and rename so readers never see half a file."""
    target = Path(path)
    target.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(dir=str(target.parent), prefix=f".{target.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8", newline="") as handle:
            handle.write(content)
        os.replace(tmp_path, target)
    except BaseException:
        if os.path.exists(tmp_path):
            os.unlink(tmp_path)
        raise


class DocumentStore:
    """
    Ordered, append-only collection of documents and their lexical tokens.

    Positions are stable: the document at index i never moves, which is what
    lets vector caches be validated and extended position by position.
    """

    def __init__(self, documents: Iterable[Document] = ()):
        self._documents: List[Document] = []
        self._tokens: List[List[str]] = []
        self._ids = set()
        self.generation = 0
        for doc in documents:
            self._add(doc)

    def _add(self, doc: Document) -> None:
        if not doc.text or not doc.text.strip():
            raise ValidationError(f"Document {doc.id!r} has empty text")
        if doc.id in self._ids:
            raise ValidationError(f"Duplicate document id {doc.id!r}")
        self._documents.append(doc)
        self._tokens.append(tokenize(doc.text))
        self._ids.add(doc.id)

    def count(self) -> int:
        return len(self._documents)

    def __len__(self) -> int:
        return len(self._documents)

    def get(self, index: int) -> Document:
        return self._documents[index]

    def documents(self) -> Tuple[Document, ...]:
        return tuple(self._documents)

    def tokens(self, index: int) -> List[str]:
        return self._tokens[index]

    def contains(self, doc_id: str) -> bool:
        return doc_id in self._ids

    def max_numeric_id(self) -> int:
        """Highest purely numeric id, 0 when there is none."""
        numeric = [int(doc.id) for doc in self._documents if doc.id.isdecimal()]
        return max(numeric, default=0)

    def append(self, texts: Sequence[str]) -> List[Document]:
        """
        Append new texts with sequential zero-padded ids.

        Texts are stored stripped of surrounding whitespace, the same
        normalization the library reader applies, so an appended document
        reads back from the file with an identical (id, text) pair.
        All texts are validated before any is added, so a bad input leaves
        the store untouched.

        Returns:
            The newly created documents, in input order
        """
        cleaned = []
        for i, text in enumerate(texts):
            if not isinstance(text, str) or not text.strip():
                raise ValidationError(f"Text at position {i} is empty")
            cleaned.append(text.strip())

        if not cleaned:
            return []

        next_id = self.max_numeric_id() + 1
        created = []
        for offset, text in enumerate(cleaned):
            doc = Document(id=str(next_id + offset).zfill(ID_WIDTH), text=text)
            self._add(doc)
            created.append(doc)

        self.generation += 1
        return created

    def to_csv(self, path, embeddings: Optional[Sequence[Optional[Sequence[float]]]] = None) -> None:
        """Write the store as a 3-field library file."""
        if embeddings is not None and len(embeddings) != len(self._documents):
            raise ValidationError(
                f"Embedding list length {len(embeddings)} does not match document count {len(self._documents)}"
            )

        lines = [UNIFIED_HEADER]
        for i, doc in enumerate(self._documents):
            vector = embeddings[i] if embeddings is not None else None
            lines.append(format_csv_row(doc.id, doc.text, vector))
        atomic_write_text(path, "\n".join(lines) + "\n")

    @classmethod
    def from_csv(cls, path) -> "DocumentStore":
        return read_library(path).store


def read_library(path) -> LibraryFile:
    """
    Parse a 2-field or 3-field library file.

    Rows with empty text or a duplicate id are skipped with a warning.
    A missing id becomes str(count + 1).
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Library file not found: {path}")

    store = DocumentStore()
    embeddings: List[Optional[List[float]]] = []

    with open(path, newline="", encoding="utf-8") as handle:
        reader = csv.reader(handle)
        header = next(reader, None)
        if header is None:
            return LibraryFile(store=store, embeddings=embeddings, has_embedding_column=False)

        columns = [column.strip().lower() for column in header]
        has_embedding_column = "embedding" in columns

        for row in reader:
            row_number = reader.line_num
            if not row or not any(cell.strip() for cell in row):
                continue

            doc_id, text, embedding_field = _split_row(row, has_embedding_column)
            text = text.strip()
            if not text:
                logger.log_row_warning(row_number, "missing text")
                continue

            doc_id = doc_id.strip() or str(store.count() + 1)
            if store.contains(doc_id):
                logger.log_row_warning(row_number, f"duplicate id {doc_id}")
                continue

            store._add(Document(id=doc_id, text=text))
            embeddings.append(parse_embedding_field(embedding_field, row_number) if has_embedding_column else None)

    logger.info(f"Loaded {store.count()} documents from {path}")
    return LibraryFile(store=store, embeddings=embeddings, has_embedding_column=has_embedding_column)

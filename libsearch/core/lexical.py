"""
TF-IDF lexical ranking over the document store. Never calls an embedding provider.
"""

import math
import threading
import time
from collections import defaultdict
from typing import Dict, List

from .documents import DocumentStore, tokenize
from ..util.logging import logger
from ..vector.types import round_score


class LexicalIndex:
    """
    Inverted index term -> {document position -> term frequency}.

    Built once per DocumentStore generation and rebuilt lazily when the store
    has grown since.
    """

    def __init__(self, store: DocumentStore):
        self.store = store
        self._inverted: Dict[str, Dict[int, int]] = {}
        self._generation = None
        self._size = 0
        self._lock = threading.Lock()
        self.rebuild()

    def rebuild(self) -> None:
        """Rebuild the inverted index from the current store contents."""
        inverted: Dict[str, Dict[int, int]] = defaultdict(dict)
        size = self.store.count()
        for position in range(size):
            for token in self.store.tokens(position):
                postings = inverted[token]
                postings[position] = postings.get(position, 0) + 1

        with self._lock:
            self._inverted = dict(inverted)
            self._generation = self.store.generation
            self._size = size
        logger.debug(f"Lexical index built: {size} documents, {len(inverted)} terms")

    def _current(self):
        if self._generation != self.store.generation or self._size != self.store.count():
            self.rebuild()
        with self._lock:
            return self._inverted, self._size

    def term_count(self) -> int:
        return len(self._current()[0])

    def search(self, query: str, limit: int = 25) -> List[dict]:
        """
        Rank documents for a free-text query.

        Returns:
            Up to `limit` dicts {id, text, score}, highest score first, ties in corpus order
        """
        started = time.perf_counter()
        inverted, size = self._current()
        if limit <= 0 or size == 0:
            return []

        scores: Dict[int, float] = {}
        for token in tokenize(query or ""):
            postings = inverted.get(token)
            if not postings:
                continue
            idf = math.log(1 + size / (1 + len(postings)))
            for position, tf in postings.items():
                scores[position] = scores.get(position, 0.0) + (1 + math.log(1 + tf)) * idf

        ranked = sorted(
            ((position, score / math.sqrt(max(1, len(self.store.tokens(position)))))
             for position, score in scores.items()),
            key=lambda item: (-item[1], item[0]),
        )[:limit]

        results = []
        for position, score in ranked:
            doc = self.store.get(position)
            results.append({'id': doc.id, 'text': doc.text, 'score': round_score(score)})

        logger.log_search("lexical", query or "", len(results),
                          results[0]['score'] if results else None,
                          (time.perf_counter() - started) * 1000)
        return results

"""
Batch embedding coordinator: drives a provider under batching, pacing and retry policy.

Batches run strictly one after another. This is the throttling policy for a
rate-limited provider; do not parallelize it.
"""

import threading
import time
from dataclasses import dataclass
from typing import Callable, List, Optional, Sequence

from .errors import (
    BatchCancelledError,
    CountMismatchError,
    EmbeddingBatchError,
    LibrarySearchError,
    ProviderRateLimitError,
    RetriesExhaustedError,
)
from ..util.logging import logger

# on_batch(batch_index, start, vectors); raising aborts the run
BatchCallback = Callable[[int, int, List[List[float]]], None]


@dataclass
class BatchSettings:
    batch_size: int = 100
    inter_batch_delay: float = 1.0
    max_retries: int = 5
    initial_warmup_delay: float = 10.0
    backoff_base: float = 30.0

    def __post_init__(self):
        if self.batch_size < 1:
            raise ValueError(f"batch_size must be >= 1: {self.batch_size}")
        if self.max_retries < 1:
            raise ValueError(f"max_retries must be >= 1: {self.max_retries}")


class BatchEmbeddingCoordinator:
    """
    Obtains vectors for an ordered list of texts without tripping provider limits.

    Either every text gets a vector, in input order, or a typed error is
    raised; a partial result is never returned. Completed batches can be
    checkpointed by the caller through `on_batch` before the next one starts.
    """

    def __init__(self, provider, settings: Optional[BatchSettings] = None,
                 sleep: Callable[[float], None] = time.sleep,
                 cancel_event: Optional[threading.Event] = None):
        self.provider = provider
        self.settings = settings or BatchSettings()
        self._sleep = sleep
        self.cancel_event = cancel_event

    def cancel(self) -> None:
        """Request cooperative cancellation. The in-flight batch is abandoned."""
        if self.cancel_event is None:
            self.cancel_event = threading.Event()
        self.cancel_event.set()

    def _cancelled(self) -> bool:
        return self.cancel_event is not None and self.cancel_event.is_set()

    def _wait(self, seconds: float) -> bool:
        """Wait, waking early on cancellation. Returns True if cancelled."""
        if seconds <= 0:
            return self._cancelled()
        if self.cancel_event is not None:
            return self.cancel_event.wait(seconds)
        self._sleep(seconds)
        return False

    def embed_all(self, texts: Sequence[str], on_batch: Optional[BatchCallback] = None) -> List[List[float]]:
        """
        Embed texts batch by batch.

        Args:
            texts: Texts to embed, in the order vectors should be returned
            on_batch: Checkpoint hook called after each successful batch

        Returns:
            One vector per input text, same order

        Raises:
            RetriesExhaustedError: rate limiting outlasted max_retries for a batch
            BatchCancelledError: cancellation was requested
            EmbeddingBatchError: any other failure, with the cause chained
        """
        texts = list(texts)
        total = len(texts)
        if total == 0:
            return []

        settings = self.settings
        total_batches = (total + settings.batch_size - 1) // settings.batch_size

        if settings.initial_warmup_delay > 0:
            logger.info(f"Waiting {settings.initial_warmup_delay}s before embedding to let rate limits reset")
            if self._wait(settings.initial_warmup_delay):
                raise BatchCancelledError("Embedding run cancelled", "warmup", 0, 0, min(settings.batch_size, total))

        output: List[List[float]] = []
        for batch_index in range(total_batches):
            start = batch_index * settings.batch_size
            end = min(start + settings.batch_size, total)

            if self._cancelled():
                raise BatchCancelledError("Embedding run cancelled", "embed", batch_index, start, end)

            vectors = self._embed_batch_with_retry(texts[start:end], batch_index, start, end)

            if on_batch is not None:
                try:
                    on_batch(batch_index, start, vectors)
                except LibrarySearchError as e:
                    raise EmbeddingBatchError(f"Checkpoint failed: {e}", "checkpoint",
                                              batch_index, start, end, cause=e) from e

            output.extend(vectors)
            logger.log_embedding_batch(batch_index, total_batches, end, total)

            if end < total and settings.inter_batch_delay > 0:
                if self._wait(settings.inter_batch_delay):
                    next_end = min(end + settings.batch_size, total)
                    raise BatchCancelledError("Embedding run cancelled", "embed", batch_index + 1, end, next_end)

        return output

    def _embed_batch_with_retry(self, batch: List[str], batch_index: int, start: int, end: int) -> List[List[float]]:
        settings = self.settings
        attempt = 0
        while True:
            attempt += 1
            try:
                vectors = self.provider.embed_batch(batch)
            except ProviderRateLimitError as e:
                if attempt >= settings.max_retries:
                    raise RetriesExhaustedError(
                        f"Failed to generate embeddings after {settings.max_retries} attempts due to rate limiting",
                        "embed", batch_index, start, end, cause=e,
                    ) from e
                # A server-supplied Retry-After only ever lengthens the linear backoff
                wait_sec = max(attempt * settings.backoff_base, e.retry_after or 0)
                logger.log_rate_limit(batch_index, attempt, settings.max_retries, wait_sec)
                if self._wait(wait_sec):
                    raise BatchCancelledError("Embedding run cancelled", "embed", batch_index, start, end) from e
                continue
            except Exception as e:
                raise EmbeddingBatchError(f"Embedding batch failed: {e}", "embed",
                                          batch_index, start, end, cause=e) from e

            if vectors is None or len(vectors) != len(batch):
                count_error = CountMismatchError(expected=len(batch), actual=0 if vectors is None else len(vectors))
                raise EmbeddingBatchError(str(count_error), "embed", batch_index, start, end,
                                          cause=count_error) from count_error
            return [[float(x) for x in v] for v in vectors]

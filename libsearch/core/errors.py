"""
Error taxonomy for the library search index.
Provider failures are classified here so callers never match on message text.
"""

from typing import Optional


class LibrarySearchError(Exception):
    """Base exception for library search operations."""
    pass


class ValidationError(LibrarySearchError):
    """Invalid input: empty text, malformed rows, bad vectors."""
    pass


class DimensionMismatchError(ValidationError):
    """Vector length differs from the index dimension."""

    def __init__(self, expected: int, actual: int, context: str = ""):
        self.expected = expected
        self.actual = actual
        message = f"Vector dimension {actual} does not match expected dimension {expected}"
        if context:
            message += f" ({context})"
        super().__init__(message)


class ProviderError(LibrarySearchError):
    """Base class for embedding provider failures."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class ProviderAuthError(ProviderError):
    """Authentication against the provider failed. Never retried."""
    pass


class ProviderRateLimitError(ProviderError):
    """Provider signalled throttling (HTTP 429). Retried with backoff."""

    def __init__(self, message: str, status_code: Optional[int] = 429, retry_after: Optional[float] = None):
        super().__init__(message, status_code)
        self.retry_after = retry_after


class ProviderUnavailableError(ProviderError):
    """Any non rate-limit provider failure. Propagated immediately."""
    pass


class ProviderTimeoutError(ProviderUnavailableError):
    """Provider call exceeded its timeout."""
    pass


class CountMismatchError(LibrarySearchError):
    """Provider returned a different number of vectors than texts sent."""

    def __init__(self, expected: int, actual: int):
        self.expected = expected
        self.actual = actual
        super().__init__(f"Embedding count mismatch: got {actual}, expected {expected}")


class CacheCorruptError(LibrarySearchError):
    """Persisted cache could not be read. Forces a full recompute."""
    pass


class PersistenceError(LibrarySearchError):
    """Writing the cache or database failed. Logged, not fatal."""
    pass


class IndexNotReadyError(LibrarySearchError):
    """Search requested before an index generation was loaded."""
    pass


class EmbeddingBatchError(LibrarySearchError):
    """
    A batch run aborted. Carries enough context to resume later.

    Attributes:
        phase: Stage of the run that failed (warmup, embed, checkpoint)
        batch_index: Zero-based index of the failing batch
        start: First text position covered by the batch
        end: One past the last text position covered by the batch
        cause: Underlying exception, also chained as __cause__
    """

    def __init__(self, message: str, phase: str, batch_index: int, start: int, end: int,
                 cause: Optional[BaseException] = None):
        super().__init__(f"{message} [phase={phase}, batch={batch_index}, documents={start}..{end}]")
        self.phase = phase
        self.batch_index = batch_index
        self.start = start
        self.end = end
        self.cause = cause


class RetriesExhaustedError(EmbeddingBatchError):
    """Rate limiting persisted past the retry bound for one batch."""
    pass


class BatchCancelledError(EmbeddingBatchError):
    """Run was cancelled cooperatively. Checkpointed batches remain committed."""
    pass

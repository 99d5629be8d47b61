"""
Tests for the batch embedding coordinator: pacing, retry boundary, checkpoints, cancellation.
"""

import threading

import pytest
from unittest.mock import MagicMock

from libsearch.core.coordinator import BatchEmbeddingCoordinator, BatchSettings
from libsearch.core.errors import (
    BatchCancelledError,
    CountMismatchError,
    EmbeddingBatchError,
    PersistenceError,
    ProviderAuthError,
    ProviderRateLimitError,
    RetriesExhaustedError,
)
from libsearch.vector.embeddings import DeterministicHashEmbedding


class FlakyProvider:
    """Fails with rate limiting for the first `failures` calls, then embeds."""

    model_id = "flaky"

    def __init__(self, failures=0, retry_after=None):
        self.failures = failures
        self.retry_after = retry_after
        self.calls = []
        self.inner = DeterministicHashEmbedding(dimension=8)

    def embed_batch(self, texts):
        self.calls.append(list(texts))
        if len(self.calls) <= self.failures:
            raise ProviderRateLimitError("429 Too Many Requests", status_code=429, retry_after=self.retry_after)
        return self.inner.embed_batch(texts)


@pytest.fixture
def sleeps():
    return []


def make_coordinator(provider, sleeps, **overrides):
    settings = dict(batch_size=2, inter_batch_delay=1.0, max_retries=5,
                    initial_warmup_delay=10.0, backoff_base=30.0)
    settings.update(overrides)
    return BatchEmbeddingCoordinator(provider, BatchSettings(**settings), sleep=sleeps.append)


def test_default_settings():
    settings = BatchSettings()
    assert settings.batch_size == 100
    assert settings.inter_batch_delay == 1.0
    assert settings.max_retries == 5
    assert settings.initial_warmup_delay == 10.0
    assert settings.backoff_base == 30.0


def test_invalid_settings_rejected():
    with pytest.raises(ValueError):
        BatchSettings(batch_size=0)
    with pytest.raises(ValueError):
        BatchSettings(max_retries=0)


def test_empty_input_makes_no_calls(sleeps):
    provider = FlakyProvider()
    assert make_coordinator(provider, sleeps).embed_all([]) == []
    assert provider.calls == []
    assert sleeps == []


def test_vectors_returned_in_input_order(sleeps):
    provider = FlakyProvider()
    texts = ["a", "b", "c", "d", "e"]

    vectors = make_coordinator(provider, sleeps).embed_all(texts)

    assert vectors == [provider.inner.embed_text(t) for t in texts]
    assert provider.calls == [["a", "b"], ["c", "d"], ["e"]]


def test_warmup_and_inter_batch_pacing(sleeps):
    """Warm-up once, then a delay between batches but not after the last."""
    make_coordinator(FlakyProvider(), sleeps).embed_all(["a", "b", "c", "d", "e"])
    assert sleeps == [10.0, 1.0, 1.0]


def test_rate_limit_recovers_below_retry_bound(sleeps):
    provider = FlakyProvider(failures=4)

    vectors = make_coordinator(provider, sleeps, initial_warmup_delay=0).embed_all(["a"])

    assert len(vectors) == 1
    assert len(provider.calls) == 5
    # Linear backoff: attempt * backoff_base
    assert sleeps == [30.0, 60.0, 90.0, 120.0]


def test_rate_limit_exhausts_at_retry_bound(sleeps):
    provider = FlakyProvider(failures=5)

    with pytest.raises(RetriesExhaustedError) as exc_info:
        make_coordinator(provider, sleeps, initial_warmup_delay=0).embed_all(["a", "b", "c"])

    error = exc_info.value
    assert len(provider.calls) == 5
    assert error.batch_index == 0
    assert (error.start, error.end) == (0, 2)
    assert isinstance(error.cause, ProviderRateLimitError)
    # No wait after the final failed attempt
    assert sleeps == [30.0, 60.0, 90.0, 120.0]


def test_retry_after_lengthens_backoff(sleeps):
    provider = FlakyProvider(failures=2, retry_after=45.0)

    make_coordinator(provider, sleeps, initial_warmup_delay=0).embed_all(["a"])

    # max(attempt * backoff_base, Retry-After)
    assert sleeps == [45.0, 60.0]


def test_non_rate_limit_error_is_not_retried(sleeps):
    provider = MagicMock()
    provider.embed_batch.side_effect = ProviderAuthError("bad credentials", status_code=401)

    with pytest.raises(EmbeddingBatchError) as exc_info:
        make_coordinator(provider, sleeps, initial_warmup_delay=0).embed_all(["a"])

    assert provider.embed_batch.call_count == 1
    assert not isinstance(exc_info.value, RetriesExhaustedError)
    assert isinstance(exc_info.value.__cause__, ProviderAuthError)


def test_count_mismatch_aborts_run(sleeps):
    provider = MagicMock()
    provider.embed_batch.return_value = [[0.1, 0.2]]

    with pytest.raises(EmbeddingBatchError) as exc_info:
        make_coordinator(provider, sleeps).embed_all(["a", "b"])

    assert isinstance(exc_info.value.cause, CountMismatchError)


def test_failure_in_later_batch_returns_nothing_partial(sleeps):
    provider = MagicMock()
    provider.embed_batch.side_effect = [[[1.0], [2.0]], ProviderAuthError("revoked")]
    checkpoints = []

    with pytest.raises(EmbeddingBatchError) as exc_info:
        make_coordinator(provider, sleeps).embed_all(
            ["a", "b", "c"], on_batch=lambda i, start, vectors: checkpoints.append((i, start, vectors)))

    assert exc_info.value.batch_index == 1
    assert exc_info.value.start == 2
    # The completed batch was checkpointed before the failure
    assert checkpoints == [(0, 0, [[1.0], [2.0]])]


def test_checkpoint_failure_aborts(sleeps):
    def on_batch(batch_index, start, vectors):
        raise PersistenceError("disk full")

    with pytest.raises(EmbeddingBatchError) as exc_info:
        make_coordinator(FlakyProvider(), sleeps).embed_all(["a", "b", "c"], on_batch=on_batch)

    assert exc_info.value.phase == "checkpoint"


def test_cancel_before_first_batch():
    event = threading.Event()
    event.set()
    provider = FlakyProvider()
    coordinator = BatchEmbeddingCoordinator(
        provider, BatchSettings(batch_size=2, initial_warmup_delay=0, inter_batch_delay=0),
        cancel_event=event)

    with pytest.raises(BatchCancelledError):
        coordinator.embed_all(["a", "b"])

    assert provider.calls == []


def test_cancel_between_batches_keeps_checkpointed_work():
    provider = FlakyProvider()
    coordinator = BatchEmbeddingCoordinator(
        provider, BatchSettings(batch_size=1, initial_warmup_delay=0, inter_batch_delay=0),
        cancel_event=threading.Event())
    committed = []

    def on_batch(batch_index, start, vectors):
        committed.append(start)
        if batch_index == 1:
            coordinator.cancel()

    with pytest.raises(BatchCancelledError) as exc_info:
        coordinator.embed_all(["a", "b", "c", "d"], on_batch=on_batch)

    assert committed == [0, 1]
    assert exc_info.value.batch_index == 2
    assert len(provider.calls) == 2

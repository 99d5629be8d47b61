"""
Tests for embedding providers. HTTP is stubbed through a mocked requests session.
"""

import pytest
import requests
from unittest.mock import MagicMock, patch

from libsearch.core.errors import (
    CountMismatchError,
    DimensionMismatchError,
    ProviderAuthError,
    ProviderRateLimitError,
    ProviderTimeoutError,
    ProviderUnavailableError,
    ValidationError,
)
from libsearch.vector.embeddings import (
    DeterministicHashEmbedding,
    IEmbeddingProvider,
    RemoteEmbeddingProvider,
    SentenceTransformerEmbedding,
)


def make_response(status_code=200, payload=None, headers=None, text=""):
    response = MagicMock()
    response.status_code = status_code
    response.json.return_value = payload
    response.headers = headers or {}
    response.text = text
    return response


@pytest.fixture
def auth():
    auth = MagicMock()
    auth.get_token.return_value = "token-123"
    return auth


@pytest.fixture
def session():
    return MagicMock()


@pytest.fixture
def provider(auth, session):
    provider = RemoteEmbeddingProvider(
        base_url="https://inference.example.com/",
        deployment_id="dep1",
        auth=auth,
        resource_group="rg1",
        session=session,
    )
    provider.initialize()
    return provider


def test_embedding_interface():
    """Test that the embedding provider implements the interface correctly."""
    embedder = DeterministicHashEmbedding(dimension=384)

    assert isinstance(embedder, IEmbeddingProvider)
    assert embedder.get_dimension() == 384
    assert embedder.model_id == "hash-384"


def test_deterministic_embedding():
    """Test that the same input always produces the same output."""
    embedder = DeterministicHashEmbedding(dimension=384)

    vector1 = embedder.embed_text("Hello, world!")
    vector2 = DeterministicHashEmbedding(dimension=384).embed_text("Hello, world!")

    assert vector1 == vector2
    assert len(vector1) == 384
    assert all(-1.0 <= x <= 1.0 for x in vector1)


def test_different_inputs_produce_different_vectors():
    embedder = DeterministicHashEmbedding(dimension=64)
    assert embedder.embed_text("Hello, world!") != embedder.embed_text("Goodbye, world!")


def test_embed_batch_keeps_input_order():
    embedder = DeterministicHashEmbedding(dimension=16)
    texts = ["a", "b", "c"]
    assert embedder.embed_batch(texts) == [embedder.embed_text(t) for t in texts]


def test_embed_batch_rejects_bare_string_and_empty_list():
    embedder = DeterministicHashEmbedding(dimension=16)
    with pytest.raises(ValidationError):
        embedder.embed_batch("not a list")
    with pytest.raises(ValidationError):
        embedder.embed_batch([])


class TestSentenceTransformerEmbedding:
    """Local model provider with the model load mocked."""

    def test_use_before_initialize_fails(self):
        provider = SentenceTransformerEmbedding("all-mpnet-base-v2")
        with pytest.raises(ProviderUnavailableError):
            provider.embed_batch(["text"])

    def test_model_loaded_once_and_reused(self):
        model = MagicMock()
        model.get_sentence_embedding_dimension.return_value = 3
        encoded = MagicMock()
        encoded.tolist.return_value = [[0.1, 0.2, 0.3], [0.4, 0.5, 0.6]]
        model.encode.return_value = encoded

        with patch("sentence_transformers.SentenceTransformer", return_value=model) as loader:
            with SentenceTransformerEmbedding("all-mpnet-base-v2") as provider:
                provider.initialize()
                vectors = provider.embed_batch(["one", "two"])

                assert vectors == [[0.1, 0.2, 0.3], [0.4, 0.5, 0.6]]
                assert provider.get_dimension() == 3

        loader.assert_called_once_with("all-mpnet-base-v2")
        model.encode.assert_called_once_with(["one", "two"], convert_to_numpy=True)


class TestRemoteEmbeddingProvider:
    """HTTP provider behind a bearer token."""

    def test_endpoint_format(self, provider):
        assert provider.endpoint == (
            "https://inference.example.com/v2/inference/deployments/dep1/embeddings?api-version=2023-05-15"
        )

    def test_successful_batch_sends_input_and_headers(self, provider, session):
        session.post.return_value = make_response(payload={"data": [
            {"embedding": [1.0, 0.0]},
            {"embedding": [0.0, 1.0]},
        ]})

        vectors = provider.embed_batch(["first", "second"])

        assert vectors == [[1.0, 0.0], [0.0, 1.0]]
        _, kwargs = session.post.call_args
        assert kwargs["json"] == {"input": ["first", "second"]}
        assert kwargs["headers"]["Authorization"] == "Bearer token-123"
        assert kwargs["headers"]["AI-Resource-Group"] == "rg1"
        assert kwargs["timeout"] == 60.0

    def test_items_reordered_by_index(self, provider, session):
        session.post.return_value = make_response(payload={"data": [
            {"embedding": [1.0, 0.0], "index": 1},
            {"embedding": [0.0, 1.0], "index": 0},
        ]})

        assert provider.embed_batch(["a", "b"]) == [[0.0, 1.0], [1.0, 0.0]]

    def test_rate_limit_is_classified(self, provider, session):
        session.post.return_value = make_response(429, headers={"Retry-After": "7"}, text="slow down")

        with pytest.raises(ProviderRateLimitError) as exc_info:
            provider.embed_batch(["a"])

        assert exc_info.value.status_code == 429
        assert exc_info.value.retry_after == 7.0

    def test_unauthorized_invalidates_token(self, provider, session, auth):
        session.post.return_value = make_response(401, text="expired")

        with pytest.raises(ProviderAuthError):
            provider.embed_batch(["a"])

        auth.invalidate.assert_called_once()

    def test_server_error_is_unavailable_not_rate_limit(self, provider, session):
        session.post.return_value = make_response(503, text="busy")

        with pytest.raises(ProviderUnavailableError) as exc_info:
            provider.embed_batch(["a"])

        assert not isinstance(exc_info.value, ProviderRateLimitError)
        assert exc_info.value.status_code == 503

    def test_timeout(self, provider, session):
        session.post.side_effect = requests.Timeout("read timed out")

        with pytest.raises(ProviderTimeoutError):
            provider.embed_batch(["a"])

    def test_connection_error(self, provider, session):
        session.post.side_effect = requests.ConnectionError("refused")

        with pytest.raises(ProviderUnavailableError):
            provider.embed_batch(["a"])

    def test_malformed_body(self, provider, session):
        session.post.return_value = make_response(payload={"unexpected": True})

        with pytest.raises(ProviderUnavailableError):
            provider.embed_batch(["a"])

    def test_count_mismatch(self, provider, session):
        session.post.return_value = make_response(payload={"data": [{"embedding": [1.0, 0.0]}]})

        with pytest.raises(CountMismatchError) as exc_info:
            provider.embed_batch(["a", "b"])

        assert exc_info.value.expected == 2
        assert exc_info.value.actual == 1

    def test_dimension_mismatch_within_batch(self, provider, session):
        session.post.return_value = make_response(payload={"data": [
            {"embedding": [1.0, 0.0]},
            {"embedding": [1.0, 0.0, 0.0]},
        ]})

        with pytest.raises(DimensionMismatchError):
            provider.embed_batch(["a", "b"])

    def test_requires_initialize(self, auth):
        provider = RemoteEmbeddingProvider("https://x.example.com", "dep1", auth)
        with pytest.raises(ProviderUnavailableError):
            provider.embed_batch(["a"])

    def test_initialize_requires_endpoint_config(self, auth):
        provider = RemoteEmbeddingProvider("", "", auth)
        with pytest.raises(ProviderUnavailableError):
            provider.initialize()

    def test_shutdown_closes_session(self, provider, session):
        provider.shutdown()
        session.close.assert_called_once()
        assert provider.session is None

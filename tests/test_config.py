"""
Tests for configuration factories and validation.
"""

import pytest

from libsearch.core import config
from libsearch.core.coordinator import BatchSettings
from libsearch.vector import (
    DeterministicHashEmbedding,
    RemoteEmbeddingProvider,
    SentenceTransformerEmbedding,
    SimpleInMemoryVectorStore,
)


@pytest.fixture
def remote_config(monkeypatch):
    monkeypatch.setattr(config, "EMBED_PROVIDER", "remote")
    monkeypatch.setattr(config, "SEARCH_MODE", "semantic")
    monkeypatch.setattr(config, "AICORE_BASE_URL", "https://inference.example.com")
    monkeypatch.setattr(config, "AICORE_EMBEDDING_DEPLOYMENT_ID", "dep1")
    monkeypatch.setattr(config, "AICORE_CLIENT_ID", "client")
    monkeypatch.setattr(config, "AICORE_CLIENT_SECRET", "secret")
    monkeypatch.setattr(config, "AICORE_AUTH_URL", "https://auth.example.com/oauth/token")


def test_complete_remote_config_is_valid(remote_config):
    assert config.validate_config() == []


def test_missing_credentials_reported(remote_config, monkeypatch):
    monkeypatch.setattr(config, "AICORE_CLIENT_SECRET", None)

    issues = config.validate_config()

    assert issues == ["AICORE_CLIENT_SECRET is required when EMBED_PROVIDER=remote"]


def test_lexical_mode_needs_no_credentials(monkeypatch):
    monkeypatch.setattr(config, "EMBED_PROVIDER", "remote")
    monkeypatch.setattr(config, "SEARCH_MODE", "lexical")
    monkeypatch.setattr(config, "AICORE_CLIENT_SECRET", None)

    assert not any("AICORE" in issue for issue in config.validate_config())


def test_invalid_choices_reported(monkeypatch):
    monkeypatch.setattr(config, "EMBED_PROVIDER", "magic")
    monkeypatch.setattr(config, "VECTOR_PROVIDER", "cloud")
    monkeypatch.setattr(config, "EMBED_BATCH_SIZE", 0)

    issues = config.validate_config()

    assert "Invalid EMBED_PROVIDER: magic" in issues
    assert "Invalid VECTOR_PROVIDER: cloud" in issues
    assert "EMBED_BATCH_SIZE must be >= 1" in issues


def test_provider_factory(monkeypatch, remote_config):
    assert isinstance(config.get_embedding_provider(), RemoteEmbeddingProvider)

    monkeypatch.setattr(config, "EMBED_PROVIDER", "hash")
    monkeypatch.setattr(config, "EMBED_DIM", 12)
    provider = config.get_embedding_provider()
    assert isinstance(provider, DeterministicHashEmbedding)
    assert provider.get_dimension() == 12

    monkeypatch.setattr(config, "EMBED_PROVIDER", "local")
    assert isinstance(config.get_embedding_provider(), SentenceTransformerEmbedding)

    monkeypatch.setattr(config, "EMBED_PROVIDER", "unknown")
    with pytest.raises(ValueError):
        config.get_embedding_provider()


def test_vector_store_factory(monkeypatch):
    monkeypatch.setattr(config, "VECTOR_PROVIDER", "memory")
    assert isinstance(config.get_vector_store(), SimpleInMemoryVectorStore)
    assert config.get_vector_store(4).dimension == 4

    monkeypatch.setattr(config, "VECTOR_PROVIDER", "unknown")
    with pytest.raises(ValueError):
        config.get_vector_store()


def test_batch_settings_from_config(monkeypatch):
    monkeypatch.setattr(config, "EMBED_BATCH_SIZE", 20)
    monkeypatch.setattr(config, "EMBED_MAX_RETRIES", 3)

    settings = config.get_batch_settings()

    assert isinstance(settings, BatchSettings)
    assert settings.batch_size == 20
    assert settings.max_retries == 3


def test_debug_enabled(monkeypatch):
    monkeypatch.setenv("DEBUG", "true")
    assert config.debug_enabled() is True
    monkeypatch.setenv("DEBUG", "false")
    assert config.debug_enabled() is False


def test_faiss_vector_store_factory(monkeypatch):
    pytest.importorskip("faiss")
    from libsearch.vector.faiss_store import FaissVectorStore
    monkeypatch.setattr(config, "VECTOR_PROVIDER", "faiss")
    monkeypatch.setattr(config, "FAISS_IVF_THRESHOLD", 50)

    store = config.get_vector_store(4)

    assert isinstance(store, FaissVectorStore)
    assert store.dimension == 4
    assert store.ivf_threshold == 50

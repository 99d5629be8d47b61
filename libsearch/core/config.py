"""
Configuration for the library search index, read from environment variables.
"""

import os

# Library and persistence paths
LIBRARY_PATH = os.getenv("LIBRARY_PATH", "./data/library.csv")
CACHE_PATH = os.getenv("CACHE_PATH", "./data/embeddings_cache.json")
DB_PATH = os.getenv("DB_PATH", "./data/library.db")
FAISS_INDEX_PATH = os.getenv("FAISS_INDEX_PATH", "./data/library.faiss")

# Embedding provider selection
EMBED_PROVIDER = os.getenv("EMBED_PROVIDER", "remote")  # remote|local|hash
EMBED_MODEL_NAME = os.getenv("EMBED_MODEL_NAME", "text-embedding-3-small")
EMBED_DIM = int(os.getenv("EMBED_DIM", "1536"))
LOCAL_MODEL_NAME = os.getenv("LOCAL_MODEL_NAME", "all-mpnet-base-v2")

# Similarity backend and search mode
VECTOR_PROVIDER = os.getenv("VECTOR_PROVIDER", "memory")  # memory|faiss|database
SEARCH_MODE = os.getenv("SEARCH_MODE", "semantic")  # semantic|lexical
SEARCH_DEFAULT_LIMIT = int(os.getenv("SEARCH_DEFAULT_LIMIT", "25"))
FAISS_IVF_THRESHOLD = int(os.getenv("FAISS_IVF_THRESHOLD", "4000"))
FAISS_IVF_LISTS = int(os.getenv("FAISS_IVF_LISTS", "100"))

# Remote provider (client-credentials protected inference endpoint)
AICORE_BASE_URL = os.getenv("AICORE_BASE_URL", "").rstrip("/")
AICORE_EMBEDDING_DEPLOYMENT_ID = os.getenv("AICORE_EMBEDDING_DEPLOYMENT_ID", "")
AICORE_RESOURCE_GROUP = os.getenv("AICORE_RESOURCE_GROUP", "default")
AICORE_CLIENT_ID = os.getenv("AICORE_CLIENT_ID")
AICORE_CLIENT_SECRET = os.getenv("AICORE_CLIENT_SECRET")
AICORE_AUTH_URL = os.getenv("AICORE_AUTH_URL")
AICORE_API_VERSION = os.getenv("AICORE_API_VERSION", "2023-05-15")

# Batch pacing and retry policy
EMBED_BATCH_SIZE = int(os.getenv("EMBED_BATCH_SIZE", "100"))
EMBED_BATCH_DELAY_SEC = float(os.getenv("EMBED_BATCH_DELAY_SEC", "1.0"))
EMBED_MAX_RETRIES = int(os.getenv("EMBED_MAX_RETRIES", "5"))
EMBED_INITIAL_WAIT_SEC = float(os.getenv("EMBED_INITIAL_WAIT_SEC", "10.0"))
EMBED_BACKOFF_BASE_SEC = float(os.getenv("EMBED_BACKOFF_BASE_SEC", "30.0"))
EMBED_TIMEOUT_SEC = float(os.getenv("EMBED_TIMEOUT_SEC", "60.0"))
TOKEN_REFRESH_MARGIN_SEC = float(os.getenv("TOKEN_REFRESH_MARGIN_SEC", "300"))


def get_embedding_provider():
    """Construct the configured embedding provider. Callers own initialize()/shutdown()."""
    if EMBED_PROVIDER == "hash":
        from libsearch.vector.embeddings import DeterministicHashEmbedding
        return DeterministicHashEmbedding(dimension=EMBED_DIM)
    elif EMBED_PROVIDER == "local":
        from libsearch.vector.embeddings import SentenceTransformerEmbedding
        return SentenceTransformerEmbedding(LOCAL_MODEL_NAME)
    elif EMBED_PROVIDER == "remote":
        from libsearch.vector.auth import ClientCredentialsAuth
        from libsearch.vector.embeddings import RemoteEmbeddingProvider
        auth = ClientCredentialsAuth(
            token_url=AICORE_AUTH_URL,
            client_id=AICORE_CLIENT_ID,
            client_secret=AICORE_CLIENT_SECRET,
            refresh_margin=TOKEN_REFRESH_MARGIN_SEC,
            timeout=EMBED_TIMEOUT_SEC,
        )
        return RemoteEmbeddingProvider(
            base_url=AICORE_BASE_URL,
            deployment_id=AICORE_EMBEDDING_DEPLOYMENT_ID,
            auth=auth,
            model_id=EMBED_MODEL_NAME,
            resource_group=AICORE_RESOURCE_GROUP,
            api_version=AICORE_API_VERSION,
            timeout=EMBED_TIMEOUT_SEC,
        )
    else:
        raise ValueError(f"Unsupported embedding provider: {EMBED_PROVIDER}")


def get_vector_store(dimension: int = None):
    """
    Get configured similarity backend implementation.

    "memory" and "faiss" return an empty store for a search generation to be
    built into; "database" returns the persistent library store.
    """
    dimension = dimension or EMBED_DIM
    if VECTOR_PROVIDER == "memory":
        from libsearch.vector.index import SimpleInMemoryVectorStore
        return SimpleInMemoryVectorStore(dimension=dimension)
    elif VECTOR_PROVIDER == "faiss":
        from libsearch.vector.faiss_store import FaissVectorStore
        return FaissVectorStore(dimension=dimension, ivf_threshold=FAISS_IVF_THRESHOLD, nlist=FAISS_IVF_LISTS)
    elif VECTOR_PROVIDER == "database":
        from libsearch.core.library_db import LibraryDatabase
        return LibraryDatabase(DB_PATH, index_path=FAISS_INDEX_PATH,
                               ivf_threshold=FAISS_IVF_THRESHOLD, nlist=FAISS_IVF_LISTS)
    else:
        raise ValueError(f"Unsupported vector store backend: {VECTOR_PROVIDER}")


def get_batch_settings():
    """Batch pacing policy from the environment."""
    from libsearch.core.coordinator import BatchSettings
    return BatchSettings(
        batch_size=EMBED_BATCH_SIZE,
        inter_batch_delay=EMBED_BATCH_DELAY_SEC,
        max_retries=EMBED_MAX_RETRIES,
        initial_warmup_delay=EMBED_INITIAL_WAIT_SEC,
        backoff_base=EMBED_BACKOFF_BASE_SEC,
    )


def debug_enabled():
    """Check if debug mode is enabled."""
    return os.getenv("DEBUG", "false").lower() == "true"


def validate_config():
    """Validate configuration and return any issues."""
    issues = []

    if EMBED_PROVIDER not in ["remote", "local", "hash"]:
        issues.append(f"Invalid EMBED_PROVIDER: {EMBED_PROVIDER}")

    if VECTOR_PROVIDER not in ["memory", "faiss", "database"]:
        issues.append(f"Invalid VECTOR_PROVIDER: {VECTOR_PROVIDER}")

    if SEARCH_MODE not in ["semantic", "lexical"]:
        issues.append(f"Invalid SEARCH_MODE: {SEARCH_MODE}")

    if EMBED_PROVIDER == "remote" and SEARCH_MODE == "semantic":
        for name, value in [
            ("AICORE_BASE_URL", AICORE_BASE_URL),
            ("AICORE_EMBEDDING_DEPLOYMENT_ID", AICORE_EMBEDDING_DEPLOYMENT_ID),
            ("AICORE_CLIENT_ID", AICORE_CLIENT_ID),
            ("AICORE_CLIENT_SECRET", AICORE_CLIENT_SECRET),
            ("AICORE_AUTH_URL", AICORE_AUTH_URL),
        ]:
            if not value:
                issues.append(f"{name} is required when EMBED_PROVIDER=remote")

    if EMBED_BATCH_SIZE < 1:
        issues.append("EMBED_BATCH_SIZE must be >= 1")

    if EMBED_MAX_RETRIES < 1:
        issues.append("EMBED_MAX_RETRIES must be >= 1")

    if EMBED_TIMEOUT_SEC <= 0:
        issues.append("EMBED_TIMEOUT_SEC must be > 0")

    if SEARCH_DEFAULT_LIMIT < 1:
        issues.append("SEARCH_DEFAULT_LIMIT must be >= 1")

    return issues

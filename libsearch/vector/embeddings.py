"""
Embedding providers. Each turns text into fixed-dimension vectors for one model.

Providers are constructed explicitly and passed to the components that need
them; callers own the initialize()/shutdown() lifecycle.
"""

from abc import ABC, abstractmethod
import hashlib
from typing import List, Optional, Sequence

import requests
from pydantic import ValidationError as SchemaValidationError

from ..core.errors import (
    CountMismatchError,
    DimensionMismatchError,
    ProviderAuthError,
    ProviderRateLimitError,
    ProviderTimeoutError,
    ProviderUnavailableError,
    ValidationError,
)
from ..core.schemas import EmbeddingResponse
from ..util.logging import logger, sanitize_details
from .auth import ClientCredentialsAuth


def _validate_texts(texts: Sequence[str]) -> List[str]:
    if isinstance(texts, str):
        raise ValidationError("embed_batch expects a list of texts, not a single string")
    texts = list(texts)
    if not texts or any(not isinstance(t, str) for t in texts):
        raise ValidationError("Valid text input(s) required for embedding generation")
    return texts


class IEmbeddingProvider(ABC):
    """Abstract interface for embedding providers."""

    model_id: str = "unknown"

    def initialize(self) -> None:
        """Acquire resources (models, sessions). Called once before use."""
        pass

    def shutdown(self) -> None:
        """Release resources acquired by initialize()."""
        pass

    @abstractmethod
    def embed_text(self, text: str) -> List[float]:
        """Generate embedding vector for given text."""
        pass

    def embed_batch(self, texts: Sequence[str]) -> List[List[float]]:
        """Generate one vector per text, in input order."""
        return [self.embed_text(text) for text in _validate_texts(texts)]

    @abstractmethod
    def get_dimension(self) -> int:
        """Get the dimension of the embedding vectors."""
        pass

    def __enter__(self):
        self.initialize()
        return self

    def __exit__(self, exc_type, exc, tb):
        self.shutdown()
        return False


class DeterministicHashEmbedding(IEmbeddingProvider):
    """Deterministic hash-based embedding provider for testing purposes.

    Produces reproducible vectors without model downloads or network access.
    """

    def __init__(self, dimension: int = 384):
        self.dimension = dimension
        self.model_id = f"hash-{dimension}"

    def embed_text(self, text: str) -> List[float]:
        """Generate deterministic embedding vector using hash function."""
        vector = []
        counter = 0
        while len(vector) < self.dimension:
            hex_dig = hashlib.md5(f"{counter}:{text}".encode()).hexdigest()
            for i in range(0, len(hex_dig), 8):
                value = int(hex_dig[i:i + 8], 16)
                # Map to [-1, 1] for cosine similarity
                vector.append((value / (2 ** 32)) * 2 - 1)
            counter += 1

        return vector[:self.dimension]

    def get_dimension(self) -> int:
        return self.dimension


class SentenceTransformerEmbedding(IEmbeddingProvider):
    """Locally resident sentence-transformers model.

    The model is loaded once by initialize() and reused for every call; no
    network round trip per batch.
    """

    def __init__(self, model_name: str = "all-mpnet-base-v2"):
        self.model_name = model_name
        self.model_id = model_name
        self._model = None
        self._dimension = None

    def initialize(self) -> None:
        if self._model is not None:
            return
        from sentence_transformers import SentenceTransformer
        self._model = SentenceTransformer(self.model_name)
        self._dimension = self._model.get_sentence_embedding_dimension()
        logger.log_operation("provider.initialize", "success", {"model": self.model_name, "dimension": self._dimension})

    def shutdown(self) -> None:
        self._model = None

    @property
    def model(self):
        if self._model is None:
            raise ProviderUnavailableError(f"Model {self.model_name} is not initialized; call initialize() first")
        return self._model

    def embed_text(self, text: str) -> List[float]:
        """Generate embedding vector using sentence transformers."""
        return self.embed_batch([text])[0]

    def embed_batch(self, texts: Sequence[str]) -> List[List[float]]:
        texts = _validate_texts(texts)
        embeddings = self.model.encode(texts, convert_to_numpy=True)
        return embeddings.tolist()

    def get_dimension(self) -> int:
        if self._dimension is None:
            self._dimension = len(self.embed_text("test"))
        return self._dimension


class RemoteEmbeddingProvider(IEmbeddingProvider):
    """
    HTTP embedding provider behind a client-credentials token.

    Sends `{"input": [...]}` to the deployment's embeddings endpoint and reads
    `{"data": [{"embedding": [...]}, ...]}`. Failures are classified into the
    provider error types; HTTP 429 is the only retryable signal.
    """

    def __init__(self, base_url: str, deployment_id: str, auth: ClientCredentialsAuth,
                 model_id: str = "text-embedding-3-small", resource_group: str = "default",
                 api_version: str = "2023-05-15", timeout: float = 60.0,
                 session: Optional[requests.Session] = None):
        self.base_url = (base_url or "").rstrip("/")
        self.deployment_id = deployment_id
        self.auth = auth
        self.model_id = model_id
        self.resource_group = resource_group
        self.api_version = api_version
        self.timeout = timeout
        self.session = session
        self._dimension = None

    @property
    def endpoint(self) -> str:
        return (f"{self.base_url}/v2/inference/deployments/{self.deployment_id}"
                f"/embeddings?api-version={self.api_version}")

    def initialize(self) -> None:
        if not self.base_url or not self.deployment_id:
            raise ProviderUnavailableError("Embedding endpoint is not configured (base URL and deployment id required)")
        if self.session is None:
            self.session = requests.Session()
        logger.log_operation("provider.initialize", "success", sanitize_details({
            "endpoint": self.endpoint,
            "model": self.model_id,
            "resource_group": self.resource_group,
            "client_id": getattr(self.auth, 'client_id', None),
        }))

    def shutdown(self) -> None:
        if self.session is not None:
            self.session.close()
            self.session = None

    def embed_text(self, text: str) -> List[float]:
        return self.embed_batch([text])[0]

    def embed_batch(self, texts: Sequence[str]) -> List[List[float]]:
        texts = _validate_texts(texts)
        if self.session is None:
            raise ProviderUnavailableError("Provider is not initialized; call initialize() first")

        token = self.auth.get_token()
        headers = {
            'Authorization': f'Bearer {token}',
            'Accept': 'application/json',
            'Content-Type': 'application/json',
            'AI-Resource-Group': self.resource_group,
        }

        try:
            response = self.session.post(self.endpoint, json={'input': texts}, headers=headers, timeout=self.timeout)
        except requests.Timeout as e:
            raise ProviderTimeoutError(f"Embedding request timed out after {self.timeout}s") from e
        except requests.RequestException as e:
            raise ProviderUnavailableError(f"Embedding request failed: {e}") from e

        self._raise_for_status(response)

        try:
            vectors = EmbeddingResponse.model_validate(response.json()).vectors()
        except (ValueError, SchemaValidationError) as e:
            raise ProviderUnavailableError(f"Unexpected embedding response format: {e}") from e

        if len(vectors) != len(texts):
            raise CountMismatchError(expected=len(texts), actual=len(vectors))

        for vector in vectors:
            if self._dimension is None:
                self._dimension = len(vector)
            elif len(vector) != self._dimension:
                raise DimensionMismatchError(self._dimension, len(vector), context=f"model {self.model_id}")

        return vectors

    def _raise_for_status(self, response) -> None:
        status = response.status_code
        if 200 <= status < 300:
            return

        body = (response.text or "")[:200]
        if status == 429:
            raise ProviderRateLimitError(
                f"Embedding request rate limited: {body}",
                status_code=status,
                retry_after=_parse_retry_after(response.headers.get('Retry-After')),
            )
        if status in (401, 403):
            # Force a fresh token on the next attempt
            self.auth.invalidate()
            raise ProviderAuthError(f"Embedding request unauthorized ({status}): {body}", status_code=status)

        logger.error(f"Embedding provider error {status}: {body}")
        raise ProviderUnavailableError(f"Embedding request failed with status {status}: {body}", status_code=status)

    def get_dimension(self) -> int:
        if self._dimension is None:
            self._dimension = len(self.embed_text("test"))
        return self._dimension


def _parse_retry_after(value: Optional[str]) -> Optional[float]:
    if not value:
        return None
    try:
        return float(value)
    except ValueError:
        return None

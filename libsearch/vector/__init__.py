"""
Embedding providers and similarity backends.
"""

# Package initialization for vector module
from .index import IVectorStore, SimpleInMemoryVectorStore, cosine_similarity
from .faiss_store import FaissVectorStore
from .types import VectorRecord, QueryResult
from .embeddings import (
    IEmbeddingProvider,
    DeterministicHashEmbedding,
    SentenceTransformerEmbedding,
    RemoteEmbeddingProvider,
)
from .auth import ClientCredentialsAuth

__all__ = [
    'IVectorStore',
    'SimpleInMemoryVectorStore',
    'cosine_similarity',
    'FaissVectorStore',
    'VectorRecord',
    'QueryResult',
    'IEmbeddingProvider',
    'DeterministicHashEmbedding',
    'SentenceTransformerEmbedding',
    'RemoteEmbeddingProvider',
    'ClientCredentialsAuth',
]

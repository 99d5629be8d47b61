"""
Pydantic models for the wire formats: provider responses, the cache file and search hits.
"""

from typing import List, Optional

from pydantic import BaseModel, ConfigDict, field_validator, model_validator


class TokenResponse(BaseModel):
    """Client-credentials grant response."""
    model_config = ConfigDict(extra="ignore")

    access_token: str
    expires_in: float = 3600
    token_type: Optional[str] = None

    @field_validator('access_token')
    @classmethod
    def token_not_empty(cls, v):
        if not v:
            raise ValueError('access_token must not be empty')
        return v


class EmbeddingItem(BaseModel):
    model_config = ConfigDict(extra="ignore")

    embedding: List[float]
    index: Optional[int] = None


class EmbeddingResponse(BaseModel):
    """Provider embeddings response: one item per input text."""
    model_config = ConfigDict(extra="ignore")

    data: List[EmbeddingItem]

    def vectors(self) -> List[List[float]]:
        """Vectors in input order. Items are re-ordered by index when the provider sends one."""
        items = self.data
        if items and all(item.index is not None for item in items):
            items = sorted(items, key=lambda item: item.index)
        return [item.embedding for item in items]


class CachedDocument(BaseModel):
    id: str
    text: str


class CacheFileModel(BaseModel):
    """On-disk cache snapshot."""
    model_config = ConfigDict(extra="ignore")

    docs: List[CachedDocument]
    embeddings: List[Optional[List[float]]]
    model: str
    dimensions: Optional[int] = None
    timestamp: Optional[str] = None

    @model_validator(mode='after')
    def lengths_match(self):
        if len(self.docs) != len(self.embeddings):
            raise ValueError(
                f'docs ({len(self.docs)}) and embeddings ({len(self.embeddings)}) lengths differ'
            )
        return self


class CacheMetaModel(BaseModel):
    """Sidecar metadata for a library file with inlined vectors."""
    model_config = ConfigDict(extra="ignore")

    model: str
    dimensions: Optional[int] = None
    timestamp: Optional[str] = None


class LibraryStats(BaseModel):
    docs: int
    embeddings: int
    missing: int
    model: Optional[str] = None
    dimensions: Optional[int] = None

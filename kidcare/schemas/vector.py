"""
Vector store schemas for request/response validation.
"""
from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field

SourceType = Literal["child_profile", "record", "chat_history"]


class TextChunkCreate(BaseModel):
    """A chunk to embed and store."""
    content: str = Field(..., min_length=1)
    source_type: SourceType
    source_id: int
    child_id: int
    metadata: Dict[str, Any] = Field(default_factory=dict)


class TextChunkBatchCreate(BaseModel):
    chunks: List[TextChunkCreate]


class TextChunkUpdate(BaseModel):
    content: str = Field(..., min_length=1)
    metadata: Optional[Dict[str, Any]] = None


class TextChunkResponse(BaseModel):
    """Stored chunk without its embedding."""
    id: int
    content: str
    source_type: str
    source_id: int
    child_id: int
    metadata: Dict[str, Any] = Field(default_factory=dict)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class SearchFilters(BaseModel):
    """
    Optional narrowing of a similarity search.

    ``metadata`` maps a JSON key to a string, number or boolean (equality)
    or to a list (membership).
    """
    source_types: Optional[List[SourceType]] = None
    from_date: Optional[datetime] = None
    to_date: Optional[datetime] = None
    metadata: Optional[Dict[str, Any]] = None


class VectorSearchRequest(BaseModel):
    query: str = Field(..., min_length=1)
    child_id: int
    limit: int = Field(5, ge=1, le=100)
    threshold: float = Field(0.7, ge=-1.0, le=1.0)
    filters: Optional[SearchFilters] = None


class VectorSearchResult(BaseModel):
    id: int
    content: str
    source_type: str
    source_id: int
    child_id: int
    similarity: float
    metadata: Dict[str, Any] = Field(default_factory=dict)


class VectorSearchResponse(BaseModel):
    results: List[VectorSearchResult]
    total: int


class AddChunkResponse(BaseModel):
    id: int


class BatchAddResponse(BaseModel):
    added: int


class DeleteResponse(BaseModel):
    deleted: int


class UpdateResponse(BaseModel):
    updated: bool


class CountResponse(BaseModel):
    count: int

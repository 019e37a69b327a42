"""
Vector store API endpoints.

Every child-scoped call first verifies that the child belongs to the current
user; chunk-scoped calls verify the owning child of the chunk.
"""
import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, Query

from kidcare.core.deps import get_child_repository, get_current_user_id, get_vector_store
from kidcare.core.exceptions import NotFoundError
from kidcare.schemas.vector import (
    AddChunkResponse,
    BatchAddResponse,
    CountResponse,
    DeleteResponse,
    SourceType,
    TextChunkBatchCreate,
    TextChunkCreate,
    TextChunkResponse,
    TextChunkUpdate,
    UpdateResponse,
    VectorSearchRequest,
    VectorSearchResponse,
)
from kidcare.services.children import ChildRepository
from kidcare.services.vector_store import PgVectorStore

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/vector", tags=["vector"])


# =============================================================================
# Helper Functions
# =============================================================================

async def verify_chunk_access(
    store: PgVectorStore,
    children: ChildRepository,
    chunk_id: int,
    user_id: int,
) -> Optional[TextChunkResponse]:
    """Fetch a chunk and check its child belongs to the user. None if absent."""
    chunk = await store.get_by_id(chunk_id)
    if chunk is not None:
        await children.find_one(chunk.child_id, user_id)
    return chunk


# =============================================================================
# Write Endpoints
# =============================================================================

@router.post("/chunks", response_model=AddChunkResponse)
async def add_chunk(
    chunk: TextChunkCreate,
    user_id: int = Depends(get_current_user_id),
    store: PgVectorStore = Depends(get_vector_store),
    children: ChildRepository = Depends(get_child_repository),
):
    await children.find_one(chunk.child_id, user_id)
    chunk_id = await store.add(chunk)
    return AddChunkResponse(id=chunk_id)


@router.post("/chunks/batch", response_model=BatchAddResponse)
async def add_chunks(
    request: TextChunkBatchCreate,
    user_id: int = Depends(get_current_user_id),
    store: PgVectorStore = Depends(get_vector_store),
    children: ChildRepository = Depends(get_child_repository),
):
    """Add several chunks in one transaction. An empty list adds nothing."""
    for child_id in sorted({c.child_id for c in request.chunks}):
        await children.find_one(child_id, user_id)
    added = await store.add_batch(request.chunks)
    return BatchAddResponse(added=added)


@router.put("/chunks/{chunk_id}", response_model=UpdateResponse)
async def update_chunk(
    chunk_id: int,
    request: TextChunkUpdate,
    user_id: int = Depends(get_current_user_id),
    store: PgVectorStore = Depends(get_vector_store),
    children: ChildRepository = Depends(get_child_repository),
):
    """Re-embed a chunk's content. ``updated`` is False when the chunk is absent."""
    if await verify_chunk_access(store, children, chunk_id, user_id) is None:
        return UpdateResponse(updated=False)
    updated = await store.update(chunk_id, request.content, request.metadata)
    return UpdateResponse(updated=updated)


@router.delete("/chunks/{chunk_id}", response_model=DeleteResponse)
async def delete_chunk(
    chunk_id: int,
    user_id: int = Depends(get_current_user_id),
    store: PgVectorStore = Depends(get_vector_store),
    children: ChildRepository = Depends(get_child_repository),
):
    if await verify_chunk_access(store, children, chunk_id, user_id) is None:
        return DeleteResponse(deleted=0)
    deleted = await store.delete(chunk_id)
    return DeleteResponse(deleted=1 if deleted else 0)


@router.delete("/sources/{source_type}/{source_id}", response_model=DeleteResponse)
async def delete_by_source(
    source_type: SourceType,
    source_id: int,
    user_id: int = Depends(get_current_user_id),
    store: PgVectorStore = Depends(get_vector_store),
    children: ChildRepository = Depends(get_child_repository),
):
    chunks = await store.get_by_source(source_type, source_id)
    for child_id in sorted({c.child_id for c in chunks}):
        await children.find_one(child_id, user_id)
    deleted = await store.delete_by_source(source_type, source_id)
    return DeleteResponse(deleted=deleted)


@router.delete("/children/{child_id}", response_model=DeleteResponse)
async def delete_by_child(
    child_id: int,
    user_id: int = Depends(get_current_user_id),
    store: PgVectorStore = Depends(get_vector_store),
    children: ChildRepository = Depends(get_child_repository),
):
    await children.find_one(child_id, user_id)
    deleted = await store.delete_by_child_id(child_id)
    return DeleteResponse(deleted=deleted)


# =============================================================================
# Read Endpoints
# =============================================================================

@router.post("/search", response_model=VectorSearchResponse)
async def search(
    request: VectorSearchRequest,
    user_id: int = Depends(get_current_user_id),
    store: PgVectorStore = Depends(get_vector_store),
    children: ChildRepository = Depends(get_child_repository),
):
    """Similarity search over one child's chunks, most similar first."""
    await children.find_one(request.child_id, user_id)
    results = await store.search(
        request.query,
        request.child_id,
        limit=request.limit,
        threshold=request.threshold,
        filters=request.filters,
    )
    return VectorSearchResponse(results=results, total=len(results))


@router.get("/chunks/{chunk_id}", response_model=TextChunkResponse)
async def get_chunk(
    chunk_id: int,
    user_id: int = Depends(get_current_user_id),
    store: PgVectorStore = Depends(get_vector_store),
    children: ChildRepository = Depends(get_child_repository),
):
    chunk = await verify_chunk_access(store, children, chunk_id, user_id)
    if chunk is None:
        raise NotFoundError(f"Text chunk {chunk_id} not found")
    return chunk


@router.get("/sources/{source_type}/{source_id}", response_model=List[TextChunkResponse])
async def get_by_source(
    source_type: SourceType,
    source_id: int,
    user_id: int = Depends(get_current_user_id),
    store: PgVectorStore = Depends(get_vector_store),
    children: ChildRepository = Depends(get_child_repository),
):
    chunks = await store.get_by_source(source_type, source_id)
    for child_id in sorted({c.child_id for c in chunks}):
        await children.find_one(child_id, user_id)
    return chunks


@router.get("/children/{child_id}", response_model=List[TextChunkResponse])
async def get_by_child(
    child_id: int,
    limit: int = Query(100, ge=1, le=500),
    offset: int = Query(0, ge=0),
    user_id: int = Depends(get_current_user_id),
    store: PgVectorStore = Depends(get_vector_store),
    children: ChildRepository = Depends(get_child_repository),
):
    await children.find_one(child_id, user_id)
    return await store.get_by_child_id(child_id, limit, offset)


@router.get("/count", response_model=CountResponse)
async def count(
    child_id: int = Query(...),
    user_id: int = Depends(get_current_user_id),
    store: PgVectorStore = Depends(get_vector_store),
    children: ChildRepository = Depends(get_child_repository),
):
    await children.find_one(child_id, user_id)
    return CountResponse(count=await store.count(child_id))

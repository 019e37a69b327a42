"""
Vector Store - text chunks with embeddings in PostgreSQL/pgvector.

Similarity is ``1 - cosine_distance``. Every filter is built from SQLAlchemy
expressions so keys and values are sent as bound parameters.
"""
import json
import logging
from datetime import datetime
from typing import Any, List, Optional, Sequence

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from kidcare.core.exceptions import (
    InputValidationError,
    PersistenceError,
    RetrievalError,
)
from kidcare.models.text_chunk import TextChunk
from kidcare.schemas.vector import (
    SearchFilters,
    TextChunkCreate,
    TextChunkResponse,
    VectorSearchResult,
)
from kidcare.services.embedding import EmbeddingService

logger = logging.getLogger(__name__)

DEFAULT_SEARCH_LIMIT = 5
DEFAULT_SIMILARITY_THRESHOLD = 0.7


def _similarity_expr(query_vector: Sequence[float]):
    return 1 - TextChunk.embedding.cosine_distance(query_vector)


def _metadata_condition(key: str, value: Any):
    """Translate one metadata filter entry into a bound-parameter predicate."""
    field = TextChunk.chunk_metadata[key]

    # bool before int: bool is a subclass of int
    if isinstance(value, bool):
        return field.as_boolean() == value
    if isinstance(value, str):
        return field.astext == value
    if isinstance(value, (int, float)):
        return field.as_float() == float(value)
    if isinstance(value, (list, tuple)):
        if not value:
            raise InputValidationError(f"Metadata filter '{key}' has an empty list")
        # ->> yields the JSON text form of scalars
        options = [v if isinstance(v, str) else json.dumps(v) for v in value]
        return field.astext.in_(options)

    raise InputValidationError(
        f"Unsupported metadata filter value for '{key}': {type(value).__name__}"
    )


def build_filter_conditions(filters: Optional[SearchFilters]) -> list:
    """WHERE-clause fragments for the optional search filters."""
    if filters is None:
        return []

    conditions = []
    if filters.source_types:
        conditions.append(TextChunk.source_type.in_(list(filters.source_types)))
    if filters.from_date is not None:
        conditions.append(TextChunk.created_at >= filters.from_date)
    if filters.to_date is not None:
        conditions.append(TextChunk.created_at <= filters.to_date)
    for key, value in (filters.metadata or {}).items():
        conditions.append(_metadata_condition(key, value))
    return conditions


def _to_response(chunk: TextChunk) -> TextChunkResponse:
    return TextChunkResponse(
        id=chunk.id,
        content=chunk.content,
        source_type=chunk.source_type,
        source_id=chunk.source_id,
        child_id=chunk.child_id,
        metadata=chunk.chunk_metadata or {},
        created_at=chunk.created_at,
        updated_at=chunk.updated_at,
    )


def _new_row(chunk: TextChunkCreate, embedding: List[float]) -> TextChunk:
    return TextChunk(
        content=chunk.content,
        source_type=chunk.source_type,
        source_id=chunk.source_id,
        child_id=chunk.child_id,
        chunk_metadata=chunk.metadata or {},
        embedding=embedding,
    )


class PgVectorStore:
    """
    CRUD and similarity search over ``text_chunks``.

    Every call opens its own session from ``session_factory``. Multi-row writes
    (``add_batch``, ``replace_source``) run inside one transaction.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        embedding_service: EmbeddingService,
    ):
        self.session_factory = session_factory
        self.embedding_service = embedding_service

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def add(self, chunk: TextChunkCreate) -> int:
        """Embed and insert one chunk. Returns the new id."""
        embedding = await self.embedding_service.embed(chunk.content)
        row = _new_row(chunk, embedding)
        try:
            async with self.session_factory() as session:
                async with session.begin():
                    session.add(row)
                    await session.flush()
                    chunk_id = row.id
        except SQLAlchemyError as e:
            logger.error(f"Failed to add text chunk: {e}")
            raise PersistenceError("Failed to add text chunk") from e

        logger.debug(f"Added text chunk {chunk_id} ({chunk.source_type}:{chunk.source_id})")
        return chunk_id

    async def add_batch(self, chunks: List[TextChunkCreate]) -> int:
        """
        Embed every chunk, then insert all rows in one transaction.

        All-or-nothing: an embedding or insert failure stores nothing.
        """
        if not chunks:
            return 0

        embeddings = await self.embedding_service.embed_batch([c.content for c in chunks])
        rows = [_new_row(c, e) for c, e in zip(chunks, embeddings)]
        try:
            async with self.session_factory() as session:
                async with session.begin():
                    session.add_all(rows)
        except SQLAlchemyError as e:
            logger.error(f"Failed to add {len(chunks)} text chunks: {e}")
            raise PersistenceError("Failed to add text chunks") from e

        logger.debug(f"Added {len(rows)} text chunks in one transaction")
        return len(rows)

    async def replace_source(
        self, source_type: str, source_id: int, chunks: List[TextChunkCreate]
    ) -> int:
        """Delete the chunks of a source and insert ``chunks`` atomically."""
        return await self.replace_sources(source_type, [source_id], chunks)

    async def replace_sources(
        self, source_type: str, source_ids: List[int], chunks: List[TextChunkCreate]
    ) -> int:
        """
        Replace-not-merge for several sources of one type in one transaction.

        Embeddings are computed before the transaction opens, so a provider
        failure leaves the old chunks in place.
        """
        embeddings = (
            await self.embedding_service.embed_batch([c.content for c in chunks])
            if chunks
            else []
        )
        rows = [_new_row(c, e) for c, e in zip(chunks, embeddings)]
        try:
            async with self.session_factory() as session:
                async with session.begin():
                    if source_ids:
                        await session.execute(
                            delete(TextChunk).where(
                                TextChunk.source_type == source_type,
                                TextChunk.source_id.in_(list(source_ids)),
                            )
                        )
                    session.add_all(rows)
        except SQLAlchemyError as e:
            logger.error(f"Failed to replace {source_type} chunks for {list(source_ids)}: {e}")
            raise PersistenceError("Failed to replace text chunks") from e
        return len(rows)

    async def update(self, chunk_id: int, content: str, metadata: Optional[dict] = None) -> bool:
        """Replace content (re-embedding it) and optionally metadata. False if absent."""
        if await self.get_by_id(chunk_id) is None:
            return False

        embedding = await self.embedding_service.embed(content)
        values = {"content": content, "embedding": embedding, "updated_at": func.now()}
        if metadata is not None:
            values["chunk_metadata"] = metadata

        result = await self._execute_write(
            update(TextChunk).where(TextChunk.id == chunk_id).values(**values)
        )
        return result > 0

    async def delete(self, chunk_id: int) -> bool:
        return await self._execute_write(delete(TextChunk).where(TextChunk.id == chunk_id)) > 0

    async def delete_by_source(self, source_type: str, source_id: int) -> int:
        return await self._execute_write(
            delete(TextChunk).where(
                TextChunk.source_type == source_type,
                TextChunk.source_id == source_id,
            )
        )

    async def delete_by_child_id(self, child_id: int) -> int:
        return await self._execute_write(delete(TextChunk).where(TextChunk.child_id == child_id))

    async def delete_older_than(self, cutoff: datetime) -> int:
        """Retention: drop chunks created before ``cutoff``."""
        deleted = await self._execute_write(delete(TextChunk).where(TextChunk.created_at < cutoff))
        logger.info(f"Deleted {deleted} text chunks created before {cutoff.isoformat()}")
        return deleted

    async def _execute_write(self, stmt) -> int:
        try:
            async with self.session_factory() as session:
                async with session.begin():
                    result = await session.execute(stmt)
                    return result.rowcount or 0
        except SQLAlchemyError as e:
            logger.error(f"Vector store write failed: {e}")
            raise PersistenceError("Vector store write failed") from e

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def search(
        self,
        query_text: str,
        child_id: int,
        limit: int = DEFAULT_SEARCH_LIMIT,
        threshold: float = DEFAULT_SIMILARITY_THRESHOLD,
        filters: Optional[SearchFilters] = None,
    ) -> List[VectorSearchResult]:
        """
        Rank the child's chunks against ``query_text``.

        Only results with ``similarity >= threshold`` are returned, most
        similar first; equal scores fall back to insertion order (id asc).
        """
        conditions = build_filter_conditions(filters)
        query_vector = await self.embedding_service.embed(query_text)
        similarity = _similarity_expr(query_vector)

        stmt = (
            select(TextChunk, similarity.label("similarity"))
            .where(TextChunk.child_id == child_id)
            .where(similarity >= threshold)
            .where(*conditions)
            .order_by(similarity.desc(), TextChunk.id.asc())
            .limit(limit)
        )

        try:
            async with self.session_factory() as session:
                rows = (await session.execute(stmt)).all()
        except SQLAlchemyError as e:
            logger.error(f"Vector search failed for child {child_id}: {e}")
            raise RetrievalError("Vector search failed") from e

        results = [
            VectorSearchResult(
                id=chunk.id,
                content=chunk.content,
                source_type=chunk.source_type,
                source_id=chunk.source_id,
                child_id=chunk.child_id,
                similarity=float(score),
                metadata=chunk.chunk_metadata or {},
            )
            for chunk, score in rows
        ]
        logger.debug(
            f"Vector search for child {child_id} returned {len(results)} results "
            f"(limit={limit}, threshold={threshold})"
        )
        return results

    async def get_by_id(self, chunk_id: int) -> Optional[TextChunkResponse]:
        chunks = await self._fetch(select(TextChunk).where(TextChunk.id == chunk_id))
        return chunks[0] if chunks else None

    async def get_by_source(self, source_type: str, source_id: int) -> List[TextChunkResponse]:
        """All chunks of one source entity, newest first."""
        return await self._fetch(
            select(TextChunk)
            .where(TextChunk.source_type == source_type, TextChunk.source_id == source_id)
            .order_by(TextChunk.created_at.desc(), TextChunk.id.desc())
        )

    async def get_by_child_id(
        self, child_id: int, limit: int = 100, offset: int = 0
    ) -> List[TextChunkResponse]:
        return await self._fetch(
            select(TextChunk)
            .where(TextChunk.child_id == child_id)
            .order_by(TextChunk.created_at.desc(), TextChunk.id.desc())
            .limit(limit)
            .offset(offset)
        )

    async def count(self, child_id: Optional[int] = None) -> int:
        stmt = select(func.count(TextChunk.id))
        if child_id is not None:
            stmt = stmt.where(TextChunk.child_id == child_id)
        try:
            async with self.session_factory() as session:
                return (await session.execute(stmt)).scalar_one()
        except SQLAlchemyError as e:
            raise RetrievalError("Failed to count text chunks") from e

    async def _fetch(self, stmt) -> List[TextChunkResponse]:
        try:
            async with self.session_factory() as session:
                chunks = (await session.execute(stmt)).scalars().all()
        except SQLAlchemyError as e:
            logger.error(f"Vector store read failed: {e}")
            raise RetrievalError("Vector store read failed") from e
        return [_to_response(c) for c in chunks]

"""
Shared helpers for Celery tasks.

Each task runs its coroutine in a fresh event loop. Database connections and
HTTP clients are bound to the loop that created them, so every run builds its
own engine (without pooling) and embedding client and disposes of them before
the loop closes.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Awaitable, Callable, TypeVar

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from kidcare.core.config import settings
from kidcare.services.chat_history import ChatHistoryRepository
from kidcare.services.children import ChildRepository
from kidcare.services.embedding import EmbeddingService, create_embedding_provider
from kidcare.services.preprocessing import PreprocessingService
from kidcare.services.records import RecordRepository
from kidcare.services.vector_store import PgVectorStore

logger = logging.getLogger(__name__)

T = TypeVar("T")


@asynccontextmanager
async def preprocessing_service() -> AsyncIterator[PreprocessingService]:
    """PreprocessingService wired to a task-local engine and embedding client."""
    engine = create_async_engine(settings.DATABASE_URL, poolclass=NullPool)
    session_factory = async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )
    embedding_service = EmbeddingService(create_embedding_provider())

    try:
        yield PreprocessingService(
            children=ChildRepository(session_factory),
            records=RecordRepository(session_factory),
            chat_history=ChatHistoryRepository(session_factory),
            vector_store=PgVectorStore(session_factory, embedding_service),
        )
    finally:
        await embedding_service.aclose()
        await engine.dispose()


def run_with_preprocessing(job: Callable[[PreprocessingService], Awaitable[T]]) -> T:
    """Run ``job`` against a fresh PreprocessingService in a new event loop."""

    async def runner() -> T:
        async with preprocessing_service() as service:
            return await job(service)

    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    try:
        return loop.run_until_complete(runner())
    finally:
        loop.close()

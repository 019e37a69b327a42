"""
Celery tasks for vector indexing.

This module provides tasks for:
- Indexing a freshly saved chat exchange
- Rebuilding every vector of a child
- Purging chunks older than the retention window
"""

import logging

from celery import shared_task

from kidcare.celery_app.tasks.base import run_with_preprocessing
from kidcare.core.config import settings

logger = logging.getLogger(__name__)


@shared_task(
    name="kidcare.celery_app.tasks.indexing.index_chat_history",
    queue="indexing",
    max_retries=0,
    time_limit=120,
    soft_time_limit=100,
)
def index_chat_history_task(chat_id: int):
    """
    Chunk a persisted exchange into the vector store.

    Args:
        chat_id: ChatHistory id
    """
    logger.info(f"Indexing chat history: {chat_id}")
    success = run_with_preprocessing(lambda service: service.process_chat_history(chat_id))
    return {"status": "completed" if success else "failed", "chat_id": chat_id}


@shared_task(
    name="kidcare.celery_app.tasks.indexing.rebuild_child_vectors",
    queue="indexing",
)
def rebuild_child_vectors_task(child_id: int):
    """
    Drop and rebuild every text chunk of a child.

    Args:
        child_id: Child id
    """
    logger.info(f"Rebuilding vectors for child: {child_id}")
    result = run_with_preprocessing(lambda service: service.rebuild_child_vectors(child_id))
    return {
        "status": "completed" if result.success else "failed",
        "child_id": child_id,
        "profile_processed": result.profile_processed,
        "records_processed": result.records_processed,
        "chat_histories_processed": result.chat_histories_processed,
    }


@shared_task(
    name="kidcare.celery_app.tasks.indexing.purge_expired_chunks",
    queue="indexing",
)
def purge_expired_chunks_task():
    """Delete chunks older than TEXT_CHUNK_RETENTION_DAYS (no-op when 0)."""
    retention_days = settings.TEXT_CHUNK_RETENTION_DAYS
    if retention_days <= 0:
        logger.debug("Text chunk retention disabled, skipping purge")
        return {"status": "skipped", "deleted": 0}

    deleted = run_with_preprocessing(
        lambda service: service.purge_expired_chunks(retention_days)
    )
    logger.info(f"Purged {deleted} expired text chunks")
    return {"status": "completed", "deleted": deleted}


def enqueue_chat_indexing(chat) -> None:
    """
    Post-save hook for the chat orchestrator.

    Enqueues indexing for exchanges that are linked to a child.
    """
    if not settings.INDEX_CHATS_ON_SAVE or chat.child_id is None:
        return
    result = index_chat_history_task.delay(chat.id)
    logger.info(f"Enqueued chat indexing: {chat.id}, celery_task_id: {result.id}")


def enqueue_child_rebuild(child_id: int) -> str:
    """
    Enqueue a full vector rebuild for a child.

    Returns:
        Celery task ID
    """
    result = rebuild_child_vectors_task.delay(child_id)
    logger.info(f"Enqueued vector rebuild for child {child_id}, celery_task_id: {result.id}")
    return result.id

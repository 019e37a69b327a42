"""
Celery tasks package.

This package contains task definitions for background operations:
- indexing: chat indexing, per-child vector rebuilds and chunk retention
"""

from kidcare.celery_app.tasks.indexing import (
    index_chat_history_task,
    purge_expired_chunks_task,
    rebuild_child_vectors_task,
)

__all__ = [
    "index_chat_history_task",
    "rebuild_child_vectors_task",
    "purge_expired_chunks_task",
]

"""
Tests for the indexing Celery tasks and their enqueue helpers.
"""
from types import SimpleNamespace
from unittest.mock import MagicMock, patch

from kidcare.celery_app.tasks import indexing
from kidcare.core.config import settings


class TestEnqueueChatIndexing:
    """Tests for the post-save hook."""

    def test_enqueues_child_chat(self):
        with patch.object(settings, "INDEX_CHATS_ON_SAVE", True), patch.object(
            indexing.index_chat_history_task, "delay", return_value=MagicMock(id="t-1")
        ) as mock_delay:
            indexing.enqueue_chat_indexing(SimpleNamespace(id=42, child_id=3))
        mock_delay.assert_called_once_with(42)

    def test_skips_general_chat(self):
        with patch.object(settings, "INDEX_CHATS_ON_SAVE", True), patch.object(
            indexing.index_chat_history_task, "delay"
        ) as mock_delay:
            indexing.enqueue_chat_indexing(SimpleNamespace(id=42, child_id=None))
        mock_delay.assert_not_called()

    def test_disabled(self):
        with patch.object(settings, "INDEX_CHATS_ON_SAVE", False), patch.object(
            indexing.index_chat_history_task, "delay"
        ) as mock_delay:
            indexing.enqueue_chat_indexing(SimpleNamespace(id=42, child_id=3))
        mock_delay.assert_not_called()


class TestTasks:
    """Task bodies run with run_with_preprocessing replaced."""

    def test_enqueue_child_rebuild_returns_task_id(self):
        with patch.object(
            indexing.rebuild_child_vectors_task, "delay", return_value=MagicMock(id="t-9")
        ):
            assert indexing.enqueue_child_rebuild(3) == "t-9"

    def test_index_chat_history(self):
        with patch.object(indexing, "run_with_preprocessing", return_value=False):
            assert indexing.index_chat_history_task(42) == {"status": "failed", "chat_id": 42}

    def test_rebuild_summary(self):
        result = SimpleNamespace(
            success=True, profile_processed=True, records_processed=4, chat_histories_processed=1
        )
        with patch.object(indexing, "run_with_preprocessing", return_value=result):
            summary = indexing.rebuild_child_vectors_task(3)

        assert summary["status"] == "completed"
        assert summary["records_processed"] == 4

    def test_purge_skipped_when_retention_disabled(self):
        with patch.object(settings, "TEXT_CHUNK_RETENTION_DAYS", 0), patch.object(
            indexing, "run_with_preprocessing"
        ) as mock_run:
            assert indexing.purge_expired_chunks_task() == {"status": "skipped", "deleted": 0}
        mock_run.assert_not_called()

    def test_purge(self):
        with patch.object(settings, "TEXT_CHUNK_RETENTION_DAYS", 30), patch.object(
            indexing, "run_with_preprocessing", return_value=5
        ):
            assert indexing.purge_expired_chunks_task() == {"status": "completed", "deleted": 5}

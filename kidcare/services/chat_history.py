"""
Chat history persistence.
"""
import logging
from datetime import datetime, timezone
from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from kidcare.core.exceptions import ForbiddenError, NotFoundError, PersistenceError
from kidcare.models.chat_history import ChatHistory
from kidcare.models.child import Child

logger = logging.getLogger(__name__)


class ChatHistoryRepository:
    """Reader/writer for ``chat_history``. Rows are immutable except ``feedback``."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def create_chat_history(
        self,
        user_id: int,
        child_id: Optional[int],
        user_message: str,
        ai_response: str,
        raw_ai_response: str,
        context_summary: List[str],
        safety_flags: str,
        response_timestamp: Optional[datetime] = None,
    ) -> ChatHistory:
        logger.info(f"Creating chat history for user {user_id}")
        chat = ChatHistory(
            user_id=user_id,
            child_id=child_id,
            user_message=user_message,
            ai_response=ai_response,
            raw_ai_response=raw_ai_response,
            context_summary=context_summary,
            safety_flags=safety_flags,
            response_timestamp=response_timestamp or datetime.now(timezone.utc),
        )
        try:
            async with self.session_factory() as session:
                async with session.begin():
                    session.add(chat)
                await session.refresh(chat)
        except SQLAlchemyError as e:
            logger.error(f"Failed to save chat history: {e}")
            raise PersistenceError("Failed to save chat history") from e
        return chat

    async def get_chat_history(self, chat_id: int) -> Optional[ChatHistory]:
        async with self.session_factory() as session:
            return await session.get(ChatHistory, chat_id)

    async def get_user_chats(self, user_id: int, limit: int = 10, offset: int = 0) -> List[ChatHistory]:
        """A user's chats across all children, newest first."""
        async with self.session_factory() as session:
            result = await session.execute(
                select(ChatHistory)
                .where(ChatHistory.user_id == user_id)
                .order_by(ChatHistory.request_timestamp.desc(), ChatHistory.id.desc())
                .limit(limit)
                .offset(offset)
            )
            return list(result.scalars().all())

    async def get_child_chats(
        self, user_id: int, child_id: int, limit: int = 10, offset: int = 0
    ) -> List[ChatHistory]:
        async with self.session_factory() as session:
            child = await session.get(Child, child_id)
            if child is None or child.user_id != user_id:
                raise ForbiddenError("No permission to view this child's chat history")

            result = await session.execute(
                select(ChatHistory)
                .where(ChatHistory.user_id == user_id, ChatHistory.child_id == child_id)
                .order_by(ChatHistory.request_timestamp.desc(), ChatHistory.id.desc())
                .limit(limit)
                .offset(offset)
            )
            return list(result.scalars().all())

    async def list_for_child(self, child_id: int, limit: int) -> List[ChatHistory]:
        """Unscoped listing used by background re-indexing."""
        async with self.session_factory() as session:
            result = await session.execute(
                select(ChatHistory)
                .where(ChatHistory.child_id == child_id)
                .order_by(ChatHistory.request_timestamp.desc())
                .limit(limit)
            )
            return list(result.scalars().all())

    async def save_feedback(self, chat_id: int, user_id: int, feedback: int) -> ChatHistory:
        """
        Record the owner's feedback on an exchange.

        Raises:
            NotFoundError: no such chat
            ForbiddenError: the chat belongs to another user
        """
        logger.info(f"User {user_id} saving feedback {feedback} for chat {chat_id}")
        async with self.session_factory() as session:
            async with session.begin():
                chat = await session.get(ChatHistory, chat_id)
                if chat is None:
                    raise NotFoundError(f"Chat history {chat_id} not found")
                if chat.user_id != user_id:
                    raise ForbiddenError("No permission to update this chat history")
                chat.feedback = feedback
        return chat

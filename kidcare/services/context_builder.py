"""
Context builder for a chat turn.

Combines the child profile, vector retrieval over stored chunks and hydration
of the matched records/chats. When the retrieval path fails for any reason the
builder falls back to an unscored listing and marks
``vector_search_results`` as ``None``.
"""
import asyncio
import logging
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol

from kidcare.core.concurrency import gather_or_cancel
from kidcare.core.config import settings
from kidcare.core.exceptions import ForbiddenError, NotFoundError
from kidcare.models.text_chunk import SOURCE_CHAT_HISTORY, SOURCE_CHILD_PROFILE, SOURCE_RECORD
from kidcare.schemas.vector import VectorSearchResult

logger = logging.getLogger(__name__)


# =============================================================================
# Reader interfaces
# =============================================================================

class ChildReader(Protocol):
    async def find_one(self, child_id: int, user_id: int) -> Any: ...

    async def find_all(self, user_id: int) -> List[Any]: ...


class RecordReader(Protocol):
    async def find_one(self, record_id: int, user_id: int) -> Any: ...

    async def find_all_by_child(self, child_id: int, user_id: int) -> List[Any]: ...


class ChatHistoryReader(Protocol):
    async def get_chat_history(self, chat_id: int) -> Optional[Any]: ...

    async def get_user_chats(self, user_id: int, limit: int = 10, offset: int = 0) -> List[Any]: ...


class VectorSearcher(Protocol):
    async def search(
        self, query_text: str, child_id: int, limit: int = 5, threshold: float = 0.7, filters=None
    ) -> List[VectorSearchResult]: ...


# =============================================================================
# Context types
# =============================================================================

@dataclass
class ChildSummary:
    id: int
    name: str
    age_in_months: int
    gender: Optional[str]
    allergy_info: List[str] = field(default_factory=list)


@dataclass
class RecordItem:
    type: str
    details: Dict[str, Any]
    created_at: datetime
    similarity: Optional[float] = None


@dataclass
class ChatItem:
    user_message: str
    ai_response: str
    created_at: datetime
    similarity: Optional[float] = None
    child_id: Optional[int] = None


@dataclass
class ProfileInfo:
    content: str
    type: str
    similarity: float


@dataclass
class AvailableChild:
    id: int
    name: str
    age_in_months: int


@dataclass
class Context:
    """
    Per-request grounding data.

    ``vector_search_results`` is ``None`` when retrieval was not attempted or
    failed, and ``[]`` when it ran and matched nothing.
    """
    user_id: int
    child: Optional[ChildSummary] = None
    vector_search_results: Optional[List[VectorSearchResult]] = None
    relevant_records: List[RecordItem] = field(default_factory=list)
    relevant_chat_history: List[ChatItem] = field(default_factory=list)
    profile_info: List[ProfileInfo] = field(default_factory=list)
    available_children: Optional[List[AvailableChild]] = None
    recent_chats: Optional[List[ChatItem]] = None


def calculate_age_in_months(birth: date, today: Optional[date] = None) -> int:
    """Whole months between ``birth`` and ``today``, never negative."""
    today = today or date.today()
    months = (today.year - birth.year) * 12 + (today.month - birth.month)
    if today.day < birth.day:
        months -= 1
    return max(months, 0)


def _record_item(record, similarity: Optional[float] = None) -> RecordItem:
    return RecordItem(
        type=record.record_type,
        details=record.details or {},
        created_at=record.record_timestamp,
        similarity=similarity,
    )


def _chat_item(chat, similarity: Optional[float] = None) -> ChatItem:
    return ChatItem(
        user_message=chat.user_message,
        ai_response=chat.ai_response,
        created_at=chat.request_timestamp,
        similarity=similarity,
        child_id=chat.child_id,
    )


def _max_similarity_by_source(hits: List[VectorSearchResult]) -> Dict[int, float]:
    """Distinct source ids in first-seen order, each with its best score."""
    scores: Dict[int, float] = {}
    for hit in hits:
        if hit.source_id not in scores or hit.similarity > scores[hit.source_id]:
            scores[hit.source_id] = hit.similarity
    return scores


class ContextBuilder:
    def __init__(
        self,
        children: ChildReader,
        records: RecordReader,
        chat_history: ChatHistoryReader,
        vector_store: VectorSearcher,
        search_limit: Optional[int] = None,
        similarity_threshold: Optional[float] = None,
        hydration_concurrency: Optional[int] = None,
        fallback_chat_limit: Optional[int] = None,
        recent_chat_limit: Optional[int] = None,
    ):
        self.children = children
        self.records = records
        self.chat_history = chat_history
        self.vector_store = vector_store
        self.search_limit = search_limit or settings.RAG_SEARCH_LIMIT
        self.similarity_threshold = (
            settings.RAG_SIMILARITY_THRESHOLD if similarity_threshold is None else similarity_threshold
        )
        self.hydration_concurrency = hydration_concurrency or settings.HYDRATION_CONCURRENCY
        self.fallback_chat_limit = fallback_chat_limit or settings.FALLBACK_CHAT_LIMIT
        self.recent_chat_limit = recent_chat_limit or settings.RECENT_CHAT_LIMIT

    async def build_context(
        self,
        user_id: int,
        child_id: Optional[int],
        user_query: str,
        today: Optional[date] = None,
    ) -> Context:
        logger.info(
            f"Building context for user {user_id}"
            f"{f' and child {child_id}' if child_id else ''}, query: {user_query[:30]!r}"
        )
        context = Context(user_id=user_id)

        if child_id is None:
            await self._build_general_context(context, user_id, today)
            return context

        try:
            child = await self.children.find_one(child_id, user_id)
            context.child = ChildSummary(
                id=child.id,
                name=child.nickname,
                age_in_months=calculate_age_in_months(child.date_of_birth, today),
                gender=child.gender,
                allergy_info=list(child.allergy_info or []),
            )
            await self._retrieve(context, user_id, child_id, user_query)
        except Exception as e:
            logger.error(f"Vector retrieval failed, using fallback context: {e}")
            await self._fallback(context, user_id, child_id)

        return context

    async def _retrieve(self, context: Context, user_id: int, child_id: int, user_query: str) -> None:
        results = await self.vector_store.search(
            user_query,
            child_id,
            limit=self.search_limit,
            threshold=self.similarity_threshold,
        )

        record_hits = [r for r in results if r.source_type == SOURCE_RECORD]
        chat_hits = [r for r in results if r.source_type == SOURCE_CHAT_HISTORY]
        profile_hits = [r for r in results if r.source_type == SOURCE_CHILD_PROFILE]

        semaphore = asyncio.Semaphore(self.hydration_concurrency)
        records, chats = await gather_or_cancel(
            self._hydrate(
                _max_similarity_by_source(record_hits),
                lambda record_id: self.records.find_one(record_id, user_id),
                semaphore,
            ),
            self._hydrate(
                _max_similarity_by_source(chat_hits),
                self.chat_history.get_chat_history,
                semaphore,
            ),
        )

        context.vector_search_results = results
        context.relevant_records = sorted(
            (_record_item(record, score) for record, score in records),
            key=lambda item: item.similarity,
            reverse=True,
        )
        context.relevant_chat_history = sorted(
            (_chat_item(chat, score) for chat, score in chats),
            key=lambda item: item.similarity,
            reverse=True,
        )
        context.profile_info = [
            ProfileInfo(
                content=hit.content,
                type=(hit.metadata or {}).get("type", "general"),
                similarity=hit.similarity,
            )
            for hit in profile_hits
        ]
        logger.debug(
            f"Retrieved {len(results)} chunks, hydrated {len(records)} records "
            f"and {len(chats)} chats"
        )

    async def _hydrate(
        self,
        scores: Dict[int, float],
        fetch: Callable[[int], Awaitable[Any]],
        semaphore: asyncio.Semaphore,
    ) -> list:
        async def load(source_id: int):
            async with semaphore:
                try:
                    return await fetch(source_id)
                except (NotFoundError, ForbiddenError) as e:
                    logger.warning(f"Skipping unavailable source {source_id}: {e}")
                    return None

        source_ids = list(scores)
        entities = await gather_or_cancel(*(load(source_id) for source_id in source_ids))
        return [
            (entity, scores[source_id])
            for source_id, entity in zip(source_ids, entities)
            if entity is not None
        ]

    async def _fallback(self, context: Context, user_id: int, child_id: int) -> None:
        logger.info("Falling back to unscored context")
        context.vector_search_results = None
        context.profile_info = []
        context.relevant_records = []
        context.relevant_chat_history = []

        try:
            records = await self.records.find_all_by_child(child_id, user_id)
            context.relevant_records = [_record_item(record) for record in records]
        except Exception as e:
            logger.error(f"Failed to load records for fallback context: {e}")

        try:
            chats = await self.chat_history.get_user_chats(user_id, self.fallback_chat_limit, 0)
            context.relevant_chat_history = [
                _chat_item(chat) for chat in chats if chat.child_id == child_id
            ]
        except Exception as e:
            logger.error(f"Failed to load chat history for fallback context: {e}")

    async def _build_general_context(
        self, context: Context, user_id: int, today: Optional[date]
    ) -> None:
        context.available_children = []
        context.recent_chats = []

        try:
            children = await self.children.find_all(user_id)
            context.available_children = [
                AvailableChild(
                    id=child.id,
                    name=child.nickname,
                    age_in_months=calculate_age_in_months(child.date_of_birth, today),
                )
                for child in children
            ]
        except Exception as e:
            logger.error(f"Failed to load children for user {user_id}: {e}")

        try:
            chats = await self.chat_history.get_user_chats(user_id, self.recent_chat_limit, 0)
            context.recent_chats = [_chat_item(chat) for chat in chats]
        except Exception as e:
            logger.error(f"Failed to load recent chats for user {user_id}: {e}")


GENDER_LABELS = {"MALE": "male", "FEMALE": "female"}


def summarize_context(context: Context) -> List[str]:
    """Human-readable lines persisted alongside the exchange."""
    summary: List[str] = []

    if context.child:
        gender = GENDER_LABELS.get(context.child.gender, "unknown")
        summary.append(
            f"Child: {context.child.name}, {context.child.age_in_months} months, {gender}"
        )
        if context.child.allergy_info:
            summary.append(f"Allergies: {', '.join(context.child.allergy_info)}")

    if context.vector_search_results is not None:
        summary.append(f"Vector search results: {len(context.vector_search_results)}")
    if context.relevant_records:
        summary.append(f"Relevant records: {len(context.relevant_records)}")
    if context.relevant_chat_history:
        summary.append(f"Relevant chats: {len(context.relevant_chat_history)}")

    return summary

"""
Chat API endpoints.

Provides endpoints for:
- Synchronous and streaming (SSE) chat exchanges
- Chat history per user and per child
- Feedback on answers and question suggestions
"""
import json
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query
from fastapi.responses import StreamingResponse

from kidcare.core.deps import (
    get_chat_history_repository,
    get_chat_orchestrator,
    get_current_user_id,
)
from kidcare.schemas.chat import (
    ChatHistoryItem,
    ChatHistoryListResponse,
    ChatRequest,
    ChatResponse,
    FeedbackRequest,
    FeedbackResponse,
    SuggestionsResponse,
)
from kidcare.services.chat_history import ChatHistoryRepository
from kidcare.services.chat_orchestrator import ChatOrchestrator

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/chat", tags=["chat"])

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


def _event_stream_response(
    orchestrator: ChatOrchestrator,
    user_id: int,
    child_id: Optional[int],
    message: str,
) -> StreamingResponse:
    session = orchestrator.chat_stream(user_id, child_id, message)

    async def event_generator():
        # A client disconnect closes this generator, which closes the
        # session and with it the provider stream.
        try:
            async for event in session:
                yield f"data: {json.dumps(event.to_dict(), ensure_ascii=False)}\n\n"
        finally:
            await session.aclose()

    return StreamingResponse(
        event_generator(),
        media_type="text/event-stream",
        headers=SSE_HEADERS,
    )


# =============================================================================
# Exchange Endpoints
# =============================================================================

@router.post("/sync", response_model=ChatResponse)
async def chat_sync(
    request: ChatRequest,
    user_id: int = Depends(get_current_user_id),
    orchestrator: ChatOrchestrator = Depends(get_chat_orchestrator),
):
    """
    Run one exchange and return the filtered answer.

    Provider and persistence failures are mapped to error responses by the
    application exception handlers.
    """
    result = await orchestrator.chat(user_id, request.child_id, request.message)
    return ChatResponse(id=result.id, response=result.response, safety_flags=result.safety_flags)


@router.post("/stream")
async def chat_stream(
    request: ChatRequest,
    user_id: int = Depends(get_current_user_id),
    orchestrator: ChatOrchestrator = Depends(get_chat_orchestrator),
):
    """Stream an exchange as server-sent events."""
    return _event_stream_response(orchestrator, user_id, request.child_id, request.message)


@router.get("/stream")
async def chat_stream_get(
    message: str = Query(..., min_length=1, max_length=4000),
    child_id: Optional[int] = Query(None),
    user_id: int = Depends(get_current_user_id),
    orchestrator: ChatOrchestrator = Depends(get_chat_orchestrator),
):
    """Query-string variant of ``POST /chat/stream`` for EventSource clients."""
    return _event_stream_response(orchestrator, user_id, child_id, message)


# =============================================================================
# History Endpoints
# =============================================================================

@router.get("/history", response_model=ChatHistoryListResponse)
async def get_history(
    limit: int = Query(10, ge=1, le=100),
    offset: int = Query(0, ge=0),
    user_id: int = Depends(get_current_user_id),
    repository: ChatHistoryRepository = Depends(get_chat_history_repository),
):
    """Latest exchanges of the current user, newest first."""
    chats = await repository.get_user_chats(user_id, limit, offset)
    return ChatHistoryListResponse(
        items=[ChatHistoryItem.model_validate(chat) for chat in chats],
        limit=limit,
        offset=offset,
    )


@router.get("/children/{child_id}/history", response_model=ChatHistoryListResponse)
async def get_child_history(
    child_id: int,
    limit: int = Query(10, ge=1, le=100),
    offset: int = Query(0, ge=0),
    user_id: int = Depends(get_current_user_id),
    repository: ChatHistoryRepository = Depends(get_chat_history_repository),
):
    """Exchanges about one child. 403 when the child belongs to someone else."""
    chats = await repository.get_child_chats(user_id, child_id, limit, offset)
    return ChatHistoryListResponse(
        items=[ChatHistoryItem.model_validate(chat) for chat in chats],
        limit=limit,
        offset=offset,
    )


@router.post("/feedback", response_model=FeedbackResponse)
async def save_feedback(
    request: FeedbackRequest,
    user_id: int = Depends(get_current_user_id),
    repository: ChatHistoryRepository = Depends(get_chat_history_repository),
):
    chat = await repository.save_feedback(request.chat_history_id, user_id, request.feedback)
    return FeedbackResponse(id=chat.id, feedback=chat.feedback)


@router.get("/suggestions", response_model=SuggestionsResponse)
async def get_suggestions(
    child_id: Optional[int] = Query(None),
    user_id: int = Depends(get_current_user_id),
    orchestrator: ChatOrchestrator = Depends(get_chat_orchestrator),
):
    suggestions = await orchestrator.get_suggestions(user_id, child_id)
    return SuggestionsResponse(suggestions=suggestions)

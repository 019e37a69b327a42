"""
Preprocessing API endpoints.

Re-index source entities (child profiles, records, chats) into text chunks,
either inline or through the indexing queue.
"""
import logging

from fastapi import APIRouter, Depends

from kidcare.celery_app.tasks.indexing import enqueue_child_rebuild
from kidcare.core.deps import (
    get_chat_history_repository,
    get_child_repository,
    get_current_user_id,
    get_preprocessing_service,
    get_record_repository,
)
from kidcare.core.exceptions import ForbiddenError, NotFoundError
from kidcare.schemas.preprocessing import (
    ProcessResult,
    RebuildResponse,
    RecordsBatchRequest,
    RecordsBatchResponse,
    TaskQueuedResponse,
)
from kidcare.services.chat_history import ChatHistoryRepository
from kidcare.services.children import ChildRepository
from kidcare.services.preprocessing import PreprocessingService
from kidcare.services.records import RecordRepository

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/preprocessing", tags=["preprocessing"])


@router.post("/children/{child_id}/profile", response_model=ProcessResult)
async def process_child_profile(
    child_id: int,
    user_id: int = Depends(get_current_user_id),
    children: ChildRepository = Depends(get_child_repository),
    service: PreprocessingService = Depends(get_preprocessing_service),
):
    await children.find_one(child_id, user_id)
    return ProcessResult(success=await service.process_child_profile(child_id))


@router.post("/records/batch", response_model=RecordsBatchResponse)
async def process_records_batch(
    request: RecordsBatchRequest,
    user_id: int = Depends(get_current_user_id),
    children: ChildRepository = Depends(get_child_repository),
    service: PreprocessingService = Depends(get_preprocessing_service),
):
    await children.find_one(request.child_id, user_id)
    processed = await service.process_records_batch(
        request.child_id, request.limit, request.from_date
    )
    return RecordsBatchResponse(processed=processed)


@router.post("/records/{record_id}", response_model=ProcessResult)
async def process_record(
    record_id: int,
    user_id: int = Depends(get_current_user_id),
    records: RecordRepository = Depends(get_record_repository),
    service: PreprocessingService = Depends(get_preprocessing_service),
):
    await records.find_one(record_id, user_id)
    return ProcessResult(success=await service.process_record(record_id))


@router.post("/chats/{chat_id}", response_model=ProcessResult)
async def process_chat_history(
    chat_id: int,
    user_id: int = Depends(get_current_user_id),
    chat_history: ChatHistoryRepository = Depends(get_chat_history_repository),
    service: PreprocessingService = Depends(get_preprocessing_service),
):
    chat = await chat_history.get_chat_history(chat_id)
    if chat is None:
        raise NotFoundError(f"Chat history {chat_id} not found")
    if chat.user_id != user_id:
        raise ForbiddenError("No access to this chat history")
    return ProcessResult(success=await service.process_chat_history(chat_id))


@router.post("/children/{child_id}/rebuild", response_model=RebuildResponse)
async def rebuild_child_vectors(
    child_id: int,
    user_id: int = Depends(get_current_user_id),
    children: ChildRepository = Depends(get_child_repository),
    service: PreprocessingService = Depends(get_preprocessing_service),
):
    """Drop and rebuild every vector of a child inline."""
    await children.find_one(child_id, user_id)
    result = await service.rebuild_child_vectors(child_id)
    return RebuildResponse(
        success=result.success,
        profile_processed=result.profile_processed,
        records_processed=result.records_processed,
        chat_histories_processed=result.chat_histories_processed,
    )


@router.post("/children/{child_id}/rebuild/async", response_model=TaskQueuedResponse)
async def enqueue_rebuild_child_vectors(
    child_id: int,
    user_id: int = Depends(get_current_user_id),
    children: ChildRepository = Depends(get_child_repository),
):
    """Queue a rebuild on the indexing worker and return its task id."""
    await children.find_one(child_id, user_id)
    return TaskQueuedResponse(task_id=enqueue_child_rebuild(child_id))

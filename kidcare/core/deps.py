"""
Common dependencies for FastAPI endpoints.

Services are assembled here by constructor injection; routes only depend on
the ``get_*`` providers, which tests replace through
``app.dependency_overrides``.
"""
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from kidcare.celery_app.tasks.indexing import enqueue_chat_indexing
from kidcare.db.session import AsyncSessionLocal
from kidcare.services.allergy_checker import AllergyChecker
from kidcare.services.auth import decode_access_token
from kidcare.services.chat_history import ChatHistoryRepository
from kidcare.services.chat_orchestrator import ChatOrchestrator
from kidcare.services.children import ChildRepository
from kidcare.services.context_builder import ContextBuilder
from kidcare.services.embedding import get_embedding_service
from kidcare.services.llm_client import get_chat_model
from kidcare.services.medical_checker import MedicalChecker
from kidcare.services.preprocessing import PreprocessingService
from kidcare.services.records import RecordRepository
from kidcare.services.vector_store import PgVectorStore

# HTTP Bearer token security scheme
security = HTTPBearer()


async def get_current_user_id(
    credentials: HTTPAuthorizationCredentials = Depends(security),
) -> int:
    """
    Resolve the authenticated user id from the bearer token.

    Raises:
        HTTPException: If the token is invalid or carries no user id
    """
    token_data = decode_access_token(credentials.credentials)
    if token_data is None or token_data.user_id is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid authentication credentials",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return token_data.user_id


def get_child_repository() -> ChildRepository:
    return ChildRepository(AsyncSessionLocal)


def get_record_repository() -> RecordRepository:
    return RecordRepository(AsyncSessionLocal)


def get_chat_history_repository() -> ChatHistoryRepository:
    return ChatHistoryRepository(AsyncSessionLocal)


def get_vector_store() -> PgVectorStore:
    return PgVectorStore(AsyncSessionLocal, get_embedding_service())


def get_context_builder() -> ContextBuilder:
    return ContextBuilder(
        children=get_child_repository(),
        records=get_record_repository(),
        chat_history=get_chat_history_repository(),
        vector_store=get_vector_store(),
    )


def get_chat_orchestrator() -> ChatOrchestrator:
    return ChatOrchestrator(
        context_builder=get_context_builder(),
        chat_model=get_chat_model(),
        chat_history=get_chat_history_repository(),
        allergy_checker=AllergyChecker(),
        medical_checker=MedicalChecker(),
        on_chat_saved=enqueue_chat_indexing,
    )


def get_preprocessing_service() -> PreprocessingService:
    return PreprocessingService(
        children=get_child_repository(),
        records=get_record_repository(),
        chat_history=get_chat_history_repository(),
        vector_store=get_vector_store(),
    )

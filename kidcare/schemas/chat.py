"""
Chat schemas for request/response validation.
"""
from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, Field


class ChatRequest(BaseModel):
    """Request schema for sending a chat message."""
    message: str = Field(..., min_length=1, max_length=4000)
    child_id: Optional[int] = Field(
        None,
        description="Child the question is about. Omit for general questions."
    )


class ChatResponse(BaseModel):
    """Response schema for a completed (non-streaming) exchange."""
    id: int
    response: str
    safety_flags: List[str] = Field(default_factory=list)


class ChatHistoryItem(BaseModel):
    id: int
    child_id: Optional[int] = None
    user_message: str
    ai_response: str
    safety_flags: Optional[str] = None
    feedback: Optional[int] = None
    request_timestamp: datetime
    response_timestamp: Optional[datetime] = None

    class Config:
        from_attributes = True


class ChatHistoryListResponse(BaseModel):
    items: List[ChatHistoryItem]
    limit: int
    offset: int


class FeedbackRequest(BaseModel):
    chat_history_id: int
    feedback: int = Field(..., ge=-1, le=1, description="1 = useful, -1 = not useful")


class FeedbackResponse(BaseModel):
    id: int
    feedback: int


class SuggestionsResponse(BaseModel):
    suggestions: List[str]

"""
Preprocessing schemas (re-indexing source entities into text chunks).
"""
from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field


class ProcessResult(BaseModel):
    success: bool


class RecordsBatchRequest(BaseModel):
    child_id: int
    limit: int = Field(100, ge=1, le=500)
    from_date: Optional[datetime] = None


class RecordsBatchResponse(BaseModel):
    processed: int


class RebuildResponse(BaseModel):
    success: bool
    profile_processed: bool
    records_processed: int
    chat_histories_processed: int


class TaskQueuedResponse(BaseModel):
    task_id: str

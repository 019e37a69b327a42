"""
Preprocessing - turns child profiles, records and chats into text chunks.

Every source is re-indexed with replace-not-merge semantics: its old chunks
are deleted and the new ones inserted in the same transaction. Operations
return success flags or counts and log failures instead of raising, since
they run from background jobs.
"""
import json
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from kidcare.models.text_chunk import SOURCE_CHAT_HISTORY, SOURCE_CHILD_PROFILE, SOURCE_RECORD
from kidcare.schemas.vector import TextChunkCreate
from kidcare.services.chat_history import ChatHistoryRepository
from kidcare.services.children import ChildRepository
from kidcare.services.context_builder import calculate_age_in_months
from kidcare.services.records import RecordRepository
from kidcare.services.vector_store import PgVectorStore

logger = logging.getLogger(__name__)

REBUILD_RECORD_LIMIT = 500
REBUILD_RECORD_BATCH_SIZE = 100
REBUILD_CHAT_LIMIT = 100
REBUILD_CHAT_BATCH_SIZE = 50


@dataclass
class RebuildResult:
    success: bool
    profile_processed: bool
    records_processed: int
    chat_histories_processed: int


# =============================================================================
# Text builders
# =============================================================================

def build_child_basic_info_text(child, age_in_months: int) -> str:
    gender = f"Gender: {child.gender}" if child.gender else "Gender unknown"
    return (
        "Child basic info:\n"
        f"Nickname: {child.nickname}\n"
        f"{gender}\n"
        f"Date of birth: {child.date_of_birth.isoformat()}\n"
        f"Current age: {age_in_months} months\n"
        f"User ID: {child.user_id}"
    )


def build_child_allergy_info_text(child) -> str:
    if not child.allergy_info:
        return "Child allergy info: no known allergens."
    return (
        "Child allergy info:\n"
        f"Allergens: {', '.join(child.allergy_info)}\n"
        "Avoid recommending foods or products that contain these allergens."
    )


def build_child_more_info_text(child) -> str:
    if not child.more_info:
        return ""
    return f"Child additional info:\n{child.more_info}"


def _sleep_text(details: Dict[str, Any]) -> str:
    content = "Sleep record:\n"
    if details.get("duration"):
        content += f"Duration: {details['duration']} minutes\n"
    if details.get("startTime"):
        content += f"Start time: {details['startTime']}\n"
    if details.get("endTime"):
        content += f"End time: {details['endTime']}\n"
    if details.get("quality"):
        content += f"Sleep quality: {details['quality']}\n"
    if details.get("location"):
        content += f"Location: {details['location']}\n"
    if details.get("notes"):
        content += f"Notes: {details['notes']}\n"
    return content


def _feeding_text(details: Dict[str, Any]) -> str:
    content = "Feeding record:\n"
    if details.get("type"):
        content += f"Feeding type: {details['type']}\n"
    if details.get("amount"):
        content += f"Amount: {details['amount']} {details.get('unit') or 'ml'}\n"
    if details.get("foodType"):
        content += f"Food type: {details['foodType']}\n"
    if details.get("duration"):
        content += f"Duration: {details['duration']} minutes\n"
    if "leftBreast" in details and "rightBreast" in details:
        content += f"Left breast: {'yes' if details['leftBreast'] else 'no'}\n"
        content += f"Right breast: {'yes' if details['rightBreast'] else 'no'}\n"
    if details.get("notes"):
        content += f"Notes: {details['notes']}\n"
    return content


def _diaper_text(details: Dict[str, Any]) -> str:
    content = "Diaper record:\n"
    if details.get("type"):
        content += f"Content: {details['type']}\n"
    if details.get("consistency"):
        content += f"Consistency: {details['consistency']}\n"
    if details.get("color"):
        content += f"Color: {details['color']}\n"
    if details.get("notes"):
        content += f"Notes: {details['notes']}\n"
    return content


def _growth_text(details: Dict[str, Any]) -> str:
    content = "Growth record:\n"
    if details.get("weight"):
        content += f"Weight: {details['weight']} {details.get('weightUnit') or 'kg'}\n"
    if details.get("height"):
        content += f"Height: {details['height']} {details.get('heightUnit') or 'cm'}\n"
    if details.get("headCircumference"):
        content += (
            f"Head circumference: {details['headCircumference']} {details.get('headUnit') or 'cm'}\n"
        )
    if details.get("notes"):
        content += f"Notes: {details['notes']}\n"
    return content


def _note_text(details: Dict[str, Any]) -> str:
    content = "Note:\n"
    if details.get("title"):
        content += f"Title: {details['title']}\n"
    if details.get("content"):
        content += f"Content: {details['content']}\n"
    if isinstance(details.get("tags"), list):
        content += f"Tags: {', '.join(str(t) for t in details['tags'])}\n"
    return content


RECORD_TEXT_BUILDERS = {
    "sleep": _sleep_text,
    "feeding": _feeding_text,
    "diaper": _diaper_text,
    "growth": _growth_text,
    "note": _note_text,
}


def build_record_text(record) -> str:
    timestamp = record.record_timestamp.strftime("%Y-%m-%d %H:%M:%S")
    details = record.details or {}
    content = f"Record type: {record.record_type}\nRecord time: {timestamp}\n"

    builder = RECORD_TEXT_BUILDERS.get(record.record_type.lower())
    if builder is not None:
        if details:
            content += builder(details)
    elif details:
        content += f"Details: {json.dumps(details, ensure_ascii=False, default=str)}"
    return content


def build_chat_text(chat) -> str:
    return f"Question: {chat.user_message}\n\nAnswer: {chat.ai_response}"


def _record_chunk(record, child_id: int) -> TextChunkCreate:
    return TextChunkCreate(
        content=build_record_text(record),
        source_type=SOURCE_RECORD,
        source_id=record.id,
        child_id=child_id,
        metadata={
            "type": record.record_type,
            "timestamp": record.record_timestamp.isoformat(),
            "details": record.details or {},
        },
    )


def _chat_chunk(chat, child_id: int) -> TextChunkCreate:
    return TextChunkCreate(
        content=build_chat_text(chat),
        source_type=SOURCE_CHAT_HISTORY,
        source_id=chat.id,
        child_id=child_id,
        metadata={
            "timestamp": chat.request_timestamp.isoformat(),
            "feedback": chat.feedback,
        },
    )


class PreprocessingService:
    def __init__(
        self,
        children: ChildRepository,
        records: RecordRepository,
        chat_history: ChatHistoryRepository,
        vector_store: PgVectorStore,
    ):
        self.children = children
        self.records = records
        self.chat_history = chat_history
        self.vector_store = vector_store

    async def process_child_profile(self, child_id: int) -> bool:
        """Re-index the basic info, allergy info and free-text info of a child."""
        try:
            logger.debug(f"Processing child profile: {child_id}")
            child = await self.children.get(child_id)
            if child is None:
                logger.warning(f"Child not found: {child_id}")
                return False

            age_in_months = calculate_age_in_months(child.date_of_birth)
            chunks = [
                TextChunkCreate(
                    content=build_child_basic_info_text(child, age_in_months),
                    source_type=SOURCE_CHILD_PROFILE,
                    source_id=child_id,
                    child_id=child_id,
                    metadata={
                        "type": "basic_info",
                        "ageInMonths": age_in_months,
                        "gender": child.gender or "unknown",
                    },
                ),
                TextChunkCreate(
                    content=build_child_allergy_info_text(child),
                    source_type=SOURCE_CHILD_PROFILE,
                    source_id=child_id,
                    child_id=child_id,
                    metadata={
                        "type": "allergy_info",
                        "allergyCount": len(child.allergy_info or []),
                    },
                ),
            ]
            more_info = build_child_more_info_text(child)
            if more_info:
                chunks.append(
                    TextChunkCreate(
                        content=more_info,
                        source_type=SOURCE_CHILD_PROFILE,
                        source_id=child_id,
                        child_id=child_id,
                        metadata={"type": "more_info"},
                    )
                )

            await self.vector_store.replace_source(SOURCE_CHILD_PROFILE, child_id, chunks)
            logger.debug(f"Child profile {child_id} processed, {len(chunks)} chunks")
            return True
        except Exception as e:
            logger.error(f"Failed to process child profile {child_id}: {e}")
            return False

    async def process_record(self, record_id: int) -> bool:
        try:
            logger.debug(f"Processing record: {record_id}")
            record = await self.records.get(record_id)
            if record is None:
                logger.warning(f"Record not found: {record_id}")
                return False

            await self.vector_store.replace_source(
                SOURCE_RECORD, record.id, [_record_chunk(record, record.child_id)]
            )
            logger.debug(f"Record {record_id} processed")
            return True
        except Exception as e:
            logger.error(f"Failed to process record {record_id}: {e}")
            return False

    async def process_records_batch(
        self,
        child_id: int,
        limit: int = 100,
        from_date: Optional[datetime] = None,
    ) -> int:
        """Re-index the latest ``limit`` records of a child. Returns the chunk count."""
        try:
            logger.debug(f"Processing records batch: child={child_id}, limit={limit}")
            records = await self.records.list_for_child(child_id, limit, from_date)
            logger.debug(f"Found {len(records)} records to process")

            chunks = [_record_chunk(r, child_id) for r in records]
            if not chunks:
                return 0

            return await self.vector_store.replace_sources(
                SOURCE_RECORD, [c.source_id for c in chunks], chunks
            )
        except Exception as e:
            logger.error(f"Failed to process records batch for child {child_id}: {e}")
            return 0

    async def process_chat_history(self, chat_id: int) -> bool:
        """Index a completed exchange. Chats without a child are skipped."""
        try:
            logger.debug(f"Processing chat history: {chat_id}")
            chat = await self.chat_history.get_chat_history(chat_id)
            if chat is None or chat.child_id is None:
                logger.warning(f"Chat history not found or not linked to a child: {chat_id}")
                return False

            await self.vector_store.replace_source(
                SOURCE_CHAT_HISTORY, chat.id, [_chat_chunk(chat, chat.child_id)]
            )
            logger.debug(f"Chat history {chat_id} processed")
            return True
        except Exception as e:
            logger.error(f"Failed to process chat history {chat_id}: {e}")
            return False

    async def rebuild_child_vectors(self, child_id: int) -> RebuildResult:
        """Drop every chunk of a child and index profile, records and chats again."""
        try:
            logger.debug(f"Rebuilding vectors for child: {child_id}")
            await self.vector_store.delete_by_child_id(child_id)

            profile_processed = await self.process_child_profile(child_id)

            records = await self.records.list_for_child(child_id, REBUILD_RECORD_LIMIT)
            record_chunks = [_record_chunk(r, child_id) for r in records]
            records_processed = 0
            for start in range(0, len(record_chunks), REBUILD_RECORD_BATCH_SIZE):
                batch = record_chunks[start:start + REBUILD_RECORD_BATCH_SIZE]
                records_processed += await self.vector_store.add_batch(batch)

            chats = await self.chat_history.list_for_child(child_id, REBUILD_CHAT_LIMIT)
            chat_chunks = [_chat_chunk(chat, child_id) for chat in chats if chat.ai_response]
            chats_processed = 0
            for start in range(0, len(chat_chunks), REBUILD_CHAT_BATCH_SIZE):
                batch = chat_chunks[start:start + REBUILD_CHAT_BATCH_SIZE]
                chats_processed += await self.vector_store.add_batch(batch)

            logger.info(
                f"Rebuilt vectors for child {child_id}: profile={profile_processed}, "
                f"records={records_processed}, chats={chats_processed}"
            )
            return RebuildResult(
                success=True,
                profile_processed=profile_processed,
                records_processed=records_processed,
                chat_histories_processed=chats_processed,
            )
        except Exception as e:
            logger.error(f"Failed to rebuild vectors for child {child_id}: {e}")
            return RebuildResult(
                success=False,
                profile_processed=False,
                records_processed=0,
                chat_histories_processed=0,
            )

    async def purge_expired_chunks(self, retention_days: int) -> int:
        """Delete chunks older than ``retention_days``. 0 disables the purge."""
        if retention_days <= 0:
            return 0
        cutoff = datetime.now(timezone.utc) - timedelta(days=retention_days)
        return await self.vector_store.delete_older_than(cutoff)

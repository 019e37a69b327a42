from pgvector.sqlalchemy import Vector
from sqlalchemy import BigInteger, Column, DateTime, ForeignKey, Index, Integer, String, Text
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.sql import func

from kidcare.core.config import settings
from kidcare.db.base import Base


SOURCE_CHILD_PROFILE = "child_profile"
SOURCE_RECORD = "record"
SOURCE_CHAT_HISTORY = "chat_history"

SOURCE_TYPES = (SOURCE_CHILD_PROFILE, SOURCE_RECORD, SOURCE_CHAT_HISTORY)


class TextChunk(Base):
    __tablename__ = "text_chunks"

    id = Column(BigInteger, primary_key=True, autoincrement=True)
    content = Column(Text, nullable=False)
    source_type = Column(String(50), nullable=False)
    source_id = Column(BigInteger, nullable=False)
    child_id = Column(
        Integer,
        ForeignKey("children.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    # "metadata" is reserved on declarative classes
    chunk_metadata = Column("metadata", JSONB, nullable=False, server_default="{}")
    # Dimension configured via EMBEDDING_DIM environment variable
    embedding = Column(Vector(dim=settings.EMBEDDING_DIM), nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = Column(
        DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now()
    )

    __table_args__ = (
        Index("ix_text_chunks_source", "source_type", "source_id"),
    )

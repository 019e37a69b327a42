from sqlalchemy import BigInteger, Column, DateTime, ForeignKey, Integer, Text
from sqlalchemy.dialects.postgresql import ARRAY
from sqlalchemy.sql import func

from kidcare.db.base import Base


class ChatHistory(Base):
    """One persisted question/answer exchange. Only ``feedback`` changes after insert."""

    __tablename__ = "chat_history"

    id = Column(BigInteger, primary_key=True, autoincrement=True)
    user_id = Column(
        Integer,
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    child_id = Column(
        Integer,
        ForeignKey("children.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    user_message = Column(Text, nullable=False)
    ai_response = Column(Text, nullable=False)  # after safety filtering
    raw_ai_response = Column(Text, nullable=True)  # model output before filtering
    context_summary = Column(ARRAY(Text), nullable=False, server_default="{}")
    safety_flags = Column(Text, nullable=True)  # comma-joined tags
    feedback = Column(Integer, nullable=True)  # 1 useful, -1 not useful
    request_timestamp = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    response_timestamp = Column(DateTime(timezone=True), nullable=True)

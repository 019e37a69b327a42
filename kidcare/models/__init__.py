from kidcare.db.base import Base  # noqa: F401

from .user import User  # noqa: F401
from .child import Child  # noqa: F401
from .record import Record  # noqa: F401
from .chat_history import ChatHistory  # noqa: F401
from .text_chunk import TextChunk  # noqa: F401

from typing import Optional

from pydantic import BaseModel


class TokenData(BaseModel):
    """Claims read from a verified access token."""
    user_id: Optional[int] = None

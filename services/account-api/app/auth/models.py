from datetime import datetime

from pydantic import BaseModel


class SessionData(BaseModel):
    """Session data stored in the signed cookie issued at sign-in."""

    user_id: str  # Account id (identity uid)
    email: str
    name: str | None = None
    provider: str | None = None
    created_at: datetime
    expires_at: datetime

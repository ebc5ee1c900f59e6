"""Session schemas."""

from pydantic import BaseModel


class SessionInfo(BaseModel):
    session_id: str | None
    user_id: int | None
    is_authenticated: bool

"""Bot request/response schemas and connection state enums."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import StrEnum

from pydantic import BaseModel, Field, field_validator


class BotStatus(StrEnum):
    """Connection status of a managed bot."""

    CONNECTING = "connecting"
    ONLINE = "online"
    OFFLINE = "offline"


class HistoryType(StrEnum):
    SUCCESS = "success"
    ERROR = "error"
    DISCONNECT = "disconnect"


class ErrorKind(StrEnum):
    AUTHENTICATION = "authentication"
    RATE_LIMIT = "rate_limit"
    NETWORK = "network"
    PERMISSION = "permission"
    GATEWAY = "gateway"
    UNKNOWN = "unknown"


# ── Records ──────────────────────────────────────────────────────────


def _as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes; they are stored as UTC
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class HistoryEntry(BaseModel):
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    type: HistoryType
    message: str

    @field_validator("timestamp")
    @classmethod
    def normalize_timestamp(cls, v: datetime) -> datetime:
        return _as_utc(v)

    model_config = {"from_attributes": True, "frozen": True}


class ClassifiedError(BaseModel):
    """Actionable description of a connection failure."""

    kind: ErrorKind
    message: str
    suggestion: str


class BotView(BaseModel):
    """Read-only projection of a managed bot; never carries the token."""

    id: int
    token_preview: str
    status: BotStatus
    created_at: datetime
    last_error: str | None = None
    connection_history: list[HistoryEntry] = Field(default_factory=list)

    @field_validator("created_at")
    @classmethod
    def normalize_created_at(cls, v: datetime) -> datetime:
        return _as_utc(v)


class StatusCounts(BaseModel):
    online: int = 0
    offline: int = 0
    connecting: int = 0
    total: int = 0


# ── Requests ─────────────────────────────────────────────────────────


class BotCreate(BaseModel):
    token: str = ""


# ── Responses ────────────────────────────────────────────────────────


class AddResult(BaseModel):
    id: int
    status: BotStatus = BotStatus.CONNECTING


class BotCreated(BaseModel):
    success: bool = True
    id: int
    status: BotStatus
    message: str = "Bot added successfully"


class BotListResponse(BaseModel):
    success: bool = True
    bots: list[BotView]
    stats: StatusCounts


class BotDetailResponse(BaseModel):
    success: bool = True
    bot: BotView


class ToggleResult(BaseModel):
    success: bool = True
    status: BotStatus
    message: str


class ActionResult(BaseModel):
    success: bool
    message: str = ""


class HealthResponse(BaseModel):
    status: str = "alive"
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    bot_count: int
    stats: StatusCounts

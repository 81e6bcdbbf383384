#  Chorus - Pydantic Schemas
#
#  Request/response models for the REST API.
#
#  Depends on: models/enums.py
#  Used by:    routes/*

from pydantic import BaseModel, Field

from chorus.models.enums import EventType, SessionStatus, TaskType


# ---------------------------------------------------------------------------
# Sessions
# ---------------------------------------------------------------------------

class SessionCreate(BaseModel):
    type: TaskType
    config: dict = Field(default_factory=dict)
    thread_id: str | None = Field(default=None, max_length=200)


class SessionOut(BaseModel):
    id: str
    owner_id: str
    thread_id: str | None = None
    status: SessionStatus
    execution_count: int = 0
    error_count: int = 0
    final_response: str | None = None
    error: str | None = None
    tool_state: dict = Field(default_factory=dict)
    created_at: float
    started_at: float | None = None
    completed_at: float | None = None
    updated_at: float


class SessionStats(BaseModel):
    total: int
    by_status: dict[str, int] = Field(default_factory=dict)
    avg_duration_seconds: float | None = None
    total_events: int = 0


# ---------------------------------------------------------------------------
# Events
# ---------------------------------------------------------------------------

class EventOut(BaseModel):
    id: str
    seq: int
    session_id: str
    event_type: EventType
    event_data: dict = Field(default_factory=dict)
    metadata: dict | None = None
    created_at: float


class SessionDetailOut(SessionOut):
    events: list[EventOut] = Field(default_factory=list)
    projection: dict = Field(default_factory=dict)


# ---------------------------------------------------------------------------
# Stream tokens
# ---------------------------------------------------------------------------

class StreamTokenOut(BaseModel):
    token: str
    expires_in: int

#  Chorus - Enums
#
#  Status and type enumerations used across the system.
#
#  Depends on: (none)
#  Used by:    models/events.py, models/schemas.py, services/*, routes/*

from enum import Enum


class SessionStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_STATUSES = frozenset({SessionStatus.COMPLETED, SessionStatus.FAILED})

# from -> allowed targets. Same-status moves on a live session are progress records.
ALLOWED_TRANSITIONS: dict[SessionStatus, frozenset[SessionStatus]] = {
    SessionStatus.PENDING: frozenset({SessionStatus.RUNNING, SessionStatus.FAILED}),
    SessionStatus.RUNNING: frozenset({SessionStatus.COMPLETED, SessionStatus.FAILED}),
    SessionStatus.COMPLETED: frozenset(),
    SessionStatus.FAILED: frozenset(),
}


class EventType(str, Enum):
    STATUS_UPDATE = "status_update"
    TOOL_CALL = "tool_call"
    TOOL_RESULT = "tool_result"
    THINKING = "thinking"
    DISCUSSION_TURN = "discussion_turn"
    MESSAGE = "message"
    ERROR = "error"


class TaskType(str, Enum):
    SIMULATION = "simulation"
    PANEL = "panel"
    DISCUSSION = "discussion"
    ANALYSIS = "analysis"


class LLMProvider(str, Enum):
    ANTHROPIC = "anthropic"
    OPENAI = "openai"
    OLLAMA = "ollama"


class StreamMessage(str, Enum):
    """Message kinds on the session text stream."""
    STATUS = "status"
    RESULT = "result"
    ERROR = "error"


class TimelineOrder(str, Enum):
    OLDEST = "oldest"
    NEWEST = "newest"

#  Chorus - Event Payload Models
#
#  One pydantic model per event type. The emitter validates every payload
#  against these before it reaches the log; the projection re-reads stored
#  payloads through the same models but tolerates failures.
#
#  Depends on: models/enums.py, exceptions.py
#  Used by:    services/events.py, services/projection.py

from typing import Any

from pydantic import AliasChoices, BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

from chorus.exceptions import InvalidEventTypeError, InvalidPayloadError
from chorus.models.enums import EventType, SessionStatus


class _Payload(BaseModel):
    # Producers may attach extra keys; they are stored and replayed untouched.
    model_config = ConfigDict(extra="allow", populate_by_name=True)


class StatusUpdateData(_Payload):
    to: SessionStatus = Field(validation_alias=AliasChoices("to", "status"))
    from_: SessionStatus | None = Field(default=None, alias="from")
    message: str | None = None
    final_response: str | None = None
    error: str | None = None
    round: int | None = Field(default=None, ge=1)
    total_rounds: int | None = Field(default=None, ge=1)


class ToolCallData(_Payload):
    tool: str = Field(..., min_length=1)
    tool_call_id: str = Field(..., min_length=1, validation_alias=AliasChoices("tool_call_id", "id"))
    arguments: dict = Field(default_factory=dict, validation_alias=AliasChoices("arguments", "args"))


class ToolResultData(_Payload):
    tool_call_id: str = Field(..., min_length=1, validation_alias=AliasChoices("tool_call_id", "id"))
    tool: str | None = None
    success: bool = True
    result: Any = None
    error: str | None = None
    duration_ms: int | None = Field(default=None, ge=0)
    summary: str | None = None


class ThinkingData(_Payload):
    content: str = Field(validation_alias=AliasChoices("content", "thought"))
    agent_id: str | None = None
    agent_name: str | None = None
    step: int | None = None
    is_key_decision: bool = False
    thought_type: str = "general"


class DiscussionTurnData(_Payload):
    topic: str = "Discussion"
    style: str = "collaborative"
    agent_id: str | None = None
    agent_name: str | None = None
    message: str
    round: int = Field(default=1, ge=1)


class MessageData(_Payload):
    content: str
    role: str = "assistant"


class ErrorData(_Payload):
    error: str = Field(..., min_length=1)
    context: dict | None = None


PAYLOAD_MODELS: dict[EventType, type[_Payload]] = {
    EventType.STATUS_UPDATE: StatusUpdateData,
    EventType.TOOL_CALL: ToolCallData,
    EventType.TOOL_RESULT: ToolResultData,
    EventType.THINKING: ThinkingData,
    EventType.DISCUSSION_TURN: DiscussionTurnData,
    EventType.MESSAGE: MessageData,
    EventType.ERROR: ErrorData,
}


def coerce_event_type(event_type: str | EventType) -> EventType:
    """Map a raw type string onto the closed EventType set."""
    try:
        return EventType(event_type)
    except ValueError:
        raise InvalidEventTypeError(f"Unknown event type: {event_type!r}") from None


def parse_event_data(event_type: str | EventType, data: dict | None) -> _Payload:
    """Validate a payload against the model for its type.

    Raises InvalidEventTypeError or InvalidPayloadError.
    """
    etype = coerce_event_type(event_type)
    if not isinstance(data, dict):
        raise InvalidPayloadError(f"{etype.value} payload must be an object, got {type(data).__name__}")
    try:
        return PAYLOAD_MODELS[etype].model_validate(data)
    except PydanticValidationError as e:
        problems = "; ".join(
            f"{'.'.join(str(p) for p in err['loc']) or '<root>'}: {err['msg']}"
            for err in e.errors()
        )
        raise InvalidPayloadError(f"Invalid {etype.value} payload: {problems}") from e


def normalize_event_data(event_type: str | EventType, data: dict | None) -> dict:
    """Validate and return the canonical JSON-ready form that gets stored."""
    payload = parse_event_data(event_type, data)
    return payload.model_dump(mode="json", by_alias=True, exclude_none=True)

#  Chorus - Projection Engine
#
#  Folds a session's event sequence into view state: status, tool calls
#  paired with their results, agents with their thoughts, discussions
#  and the timeline. Pure and synchronous; apply() is O(1) per event so
#  live observers can update on every delivery without re-scanning.
#
#  Depends on: models/events.py, models/enums.py
#  Used by:    routes/sessions.py, monitor.py, tests

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Iterable

from pydantic import ValidationError as PydanticValidationError

from chorus.models.enums import EventType, SessionStatus, TimelineOrder
from chorus.models.events import (
    DiscussionTurnData,
    ErrorData,
    MessageData,
    StatusUpdateData,
    ThinkingData,
    ToolCallData,
    ToolResultData,
)

logger = logging.getLogger("chorus.projection")

CREATE_AGENT_TOOLS = frozenset({"createAgent", "create_agent"})


@dataclass
class ToolCall:
    tool_call_id: str
    tool: str | None = None
    arguments: dict = field(default_factory=dict)
    called_at: float | None = None
    result: dict | None = None          # the tool_result payload, last write wins
    result_at: float | None = None

    @property
    def state(self) -> str:
        if self.result is None:
            return "pending"
        return "succeeded" if self.result.get("success", True) else "failed"

    def to_dict(self) -> dict:
        return {
            "tool_call_id": self.tool_call_id,
            "tool": self.tool,
            "arguments": self.arguments,
            "state": self.state,
            "result": self.result,
            "called_at": self.called_at,
            "result_at": self.result_at,
        }


@dataclass
class Agent:
    agent_id: str
    name: str | None = None
    specification: Any = None
    thoughts: list[dict] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "agent_id": self.agent_id,
            "name": self.name,
            "specification": self.specification,
            "thoughts": list(self.thoughts),
        }


@dataclass
class Discussion:
    topic: str
    style: str
    turns: list[dict] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {"topic": self.topic, "style": self.style, "turns": list(self.turns)}


@dataclass
class Projection:
    """Derived view state for one session."""

    status: str = SessionStatus.PENDING.value
    final_response: str | None = None
    error: str | None = None
    last_error: str | None = None
    last_message: str | None = None
    tool_calls: dict[str, ToolCall] = field(default_factory=dict)
    orphan_results: dict[str, dict] = field(default_factory=dict)
    agents: dict[str, Agent] = field(default_factory=dict)
    discussions: dict[tuple[str, str], Discussion] = field(default_factory=dict)
    timeline: list[dict] = field(default_factory=list)
    duplicate_results: int = 0
    malformed_events: int = 0
    last_seq: int | None = None
    _seen: set[str] = field(default_factory=set, repr=False)

    # ------------------------------------------------------------------
    # Folding
    # ------------------------------------------------------------------

    def apply(self, event: dict) -> bool:
        """Fold one event in. Returns False if it was already applied."""
        event_id = event.get("id")
        if event_id is not None:
            if event_id in self._seen:
                return False
            self._seen.add(event_id)

        self.timeline.append(event)
        seq = event.get("seq")
        if seq is not None and (self.last_seq is None or seq > self.last_seq):
            self.last_seq = seq

        handler = _HANDLERS.get(event.get("event_type"))
        if handler is None:
            self.malformed_events += 1
            logger.debug("Unknown event type in timeline: %r", event.get("event_type"))
            return True

        model, fn = handler
        try:
            payload = model.model_validate(event.get("event_data") or {})
        except PydanticValidationError:
            self.malformed_events += 1
            logger.debug("Malformed %s payload on event %s", event.get("event_type"), event_id)
            return True
        fn(self, payload, event)
        return True

    def _on_status(self, data: StatusUpdateData, event: dict):
        self.status = data.to.value
        if data.to == SessionStatus.COMPLETED and data.final_response is not None:
            self.final_response = data.final_response
        elif data.to == SessionStatus.FAILED:
            self.error = data.error or self.error

    def _on_tool_call(self, data: ToolCallData, event: dict):
        call = self.tool_calls.get(data.tool_call_id)
        if call is None:
            call = ToolCall(tool_call_id=data.tool_call_id)
            self.tool_calls[data.tool_call_id] = call
        call.tool = data.tool
        call.arguments = data.arguments
        call.called_at = event.get("created_at")

        orphan = self.orphan_results.pop(data.tool_call_id, None)
        if orphan is not None:
            call.result_at = orphan.pop("_received_at", None)
            call.result = orphan
            self._maybe_create_agent(call, orphan)

    def _on_tool_result(self, data: ToolResultData, event: dict):
        result = data.model_dump(mode="json", by_alias=True, exclude_none=True)
        call = self.tool_calls.get(data.tool_call_id)
        if call is None:
            if data.tool_call_id in self.orphan_results:
                self.duplicate_results += 1
            result["_received_at"] = event.get("created_at")
            self.orphan_results[data.tool_call_id] = result
            logger.debug("tool_result %s has no matching tool_call yet", data.tool_call_id)
            if data.tool in CREATE_AGENT_TOOLS:
                self._maybe_create_agent(None, result)
            return

        if call.result is not None:
            self.duplicate_results += 1
            logger.warning(
                "Duplicate tool_result for call %s; keeping the latest", data.tool_call_id,
            )
        call.result = result
        call.result_at = event.get("created_at")
        self._maybe_create_agent(call, result)

    def _maybe_create_agent(self, call: ToolCall | None, result: dict):
        tool = (call.tool if call else None) or result.get("tool")
        if tool not in CREATE_AGENT_TOOLS or not result.get("success", True):
            return
        body = result.get("result")
        if isinstance(body, str):
            try:
                body = json.loads(body)
            except ValueError:
                body = {}
        if not isinstance(body, dict):
            body = {}
        args = call.arguments if call else {}
        agent_id = body.get("agent_id") or body.get("id") or result["tool_call_id"]
        agent = self._agent(str(agent_id))
        if agent.name is None:
            agent.name = body.get("name") or args.get("name")
        if agent.specification is None:
            agent.specification = body.get("specification") or args.get("specification")

    def _on_thinking(self, data: ThinkingData, event: dict):
        if data.agent_id is None:
            return
        self._agent(data.agent_id).thoughts.append({
            "thought": data.content,
            "is_key_decision": data.is_key_decision,
            "thought_type": data.thought_type,
            "step": data.step,
            "timestamp": event.get("created_at"),
        })

    def _on_discussion_turn(self, data: DiscussionTurnData, event: dict):
        key = (data.topic, data.style)
        discussion = self.discussions.get(key)
        if discussion is None:
            discussion = Discussion(topic=data.topic, style=data.style)
            self.discussions[key] = discussion
        if data.agent_id is not None:
            self._agent(data.agent_id)
        discussion.turns.append({
            "agent_id": data.agent_id,
            "agent_name": data.agent_name,
            "message": data.message,
            "round": data.round,
            "timestamp": event.get("created_at"),
        })

    def _on_message(self, data: MessageData, event: dict):
        self.last_message = data.content

    def _on_error(self, data: ErrorData, event: dict):
        self.last_error = data.error

    def _agent(self, agent_id: str) -> Agent:
        # Unknown ids get a nameless stub; a later create-agent result fills it in.
        agent = self.agents.get(agent_id)
        if agent is None:
            agent = Agent(agent_id=agent_id)
            self.agents[agent_id] = agent
        return agent

    # ------------------------------------------------------------------
    # Views
    # ------------------------------------------------------------------

    def timeline_view(self, order: TimelineOrder | str = TimelineOrder.OLDEST) -> list[dict]:
        if TimelineOrder(order) == TimelineOrder.NEWEST:
            return list(reversed(self.timeline))
        return list(self.timeline)

    @property
    def counts(self) -> dict:
        return {
            "events": len(self.timeline),
            "tool_calls": len(self.tool_calls),
            "tool_results": sum(1 for c in self.tool_calls.values() if c.result is not None)
                            + len(self.orphan_results),
            "agents": len(self.agents),
            "discussions": len(self.discussions),
            "duplicate_results": self.duplicate_results,
            "malformed_events": self.malformed_events,
        }

    def to_dict(self, order: TimelineOrder | str = TimelineOrder.OLDEST) -> dict:
        return {
            "status": self.status,
            "final_response": self.final_response,
            "error": self.error,
            "last_error": self.last_error,
            "last_message": self.last_message,
            "tool_calls": [c.to_dict() for c in self.tool_calls.values()],
            "orphan_results": [
                {k: v for k, v in r.items() if k != "_received_at"}
                for r in self.orphan_results.values()
            ],
            "agents": {aid: a.to_dict() for aid, a in self.agents.items()},
            "discussions": [d.to_dict() for d in self.discussions.values()],
            "timeline": self.timeline_view(order),
            "counts": self.counts,
            "last_seq": self.last_seq,
        }


_HANDLERS = {
    EventType.STATUS_UPDATE.value: (StatusUpdateData, Projection._on_status),
    EventType.TOOL_CALL.value: (ToolCallData, Projection._on_tool_call),
    EventType.TOOL_RESULT.value: (ToolResultData, Projection._on_tool_result),
    EventType.THINKING.value: (ThinkingData, Projection._on_thinking),
    EventType.DISCUSSION_TURN.value: (DiscussionTurnData, Projection._on_discussion_turn),
    EventType.MESSAGE.value: (MessageData, Projection._on_message),
    EventType.ERROR.value: (ErrorData, Projection._on_error),
}


def project(events: Iterable[dict], projection: Projection | None = None) -> Projection:
    """Fold events (in seq order) into a new or existing projection."""
    projection = projection if projection is not None else Projection()
    for event in events:
        projection.apply(event)
    return projection

#  Chorus - Orchestration Task Types
#
#  The work behind each task type. Every step is written to the event
#  log as it happens: LLM calls as llm_call tool call/result pairs,
#  agents as createAgent pairs, per-round progress as status_update
#  records, and the output as thinking / discussion_turn / message events.
#
#  Depends on: services/events.py, services/sessions.py, services/llm.py, config.py
#  Used by:    services/runner.py

import json
import logging
import re
import time
import uuid
from dataclasses import dataclass
from typing import Any

from pydantic import AliasChoices, BaseModel, Field
from pydantic import ValidationError as PydanticValidationError

from chorus.config import MAX_SIMULATION_ROUNDS, TASK_MAX_TOKENS
from chorus.exceptions import TaskExecutionError
from chorus.models.enums import EventType, LLMProvider, SessionStatus, TaskType

logger = logging.getLogger("chorus.orchestrations")


# ---------------------------------------------------------------------------
# Task configs
# ---------------------------------------------------------------------------

class SimulationConfig(BaseModel):
    topic: str = Field(..., min_length=1)
    agents: int = Field(default=3, ge=1, le=50)
    rounds: int = Field(default=3, ge=1, le=MAX_SIMULATION_ROUNDS)


class PanelConfig(BaseModel):
    topic: str = Field(..., min_length=1)
    panelists: list[str] = Field(..., min_length=1)
    duration: int = Field(default=30, ge=1)


class DiscussionConfig(BaseModel):
    topic: str = Field(..., min_length=1)
    participants: list[str] = Field(..., min_length=1)
    style: str = "collaborative"


class AnalysisConfig(BaseModel):
    data: Any
    analysis_type: str = Field(
        default="general", validation_alias=AliasChoices("analysis_type", "analysisType"),
    )
    provider: LLMProvider = LLMProvider.ANTHROPIC
    model: str | None = None


@dataclass
class OrchestrationContext:
    session_id: str
    emitter: Any
    registry: Any
    llm: Any


# ---------------------------------------------------------------------------
# Shared steps
# ---------------------------------------------------------------------------

def _new_call_id() -> str:
    return uuid.uuid4().hex[:12]


async def _llm_call(
    ctx: OrchestrationContext,
    prompt: str,
    *,
    purpose: str,
    max_tokens: int,
    provider: LLMProvider = LLMProvider.ANTHROPIC,
    model: str | None = None,
) -> str:
    call_id = _new_call_id()
    await ctx.emitter.append(ctx.session_id, EventType.TOOL_CALL, {
        "tool": "llm_call",
        "tool_call_id": call_id,
        "arguments": {"provider": provider.value, "purpose": purpose, "max_tokens": max_tokens},
    })
    start = time.monotonic()
    try:
        result = await ctx.llm.complete(
            prompt, provider=provider, model=model, max_tokens=max_tokens,
        )
    except Exception as e:
        await ctx.emitter.append(ctx.session_id, EventType.TOOL_RESULT, {
            "tool_call_id": call_id,
            "tool": "llm_call",
            "success": False,
            "error": f"{type(e).__name__}: {e}",
            "duration_ms": int((time.monotonic() - start) * 1000),
        })
        raise
    await ctx.emitter.append(ctx.session_id, EventType.TOOL_RESULT, {
        "tool_call_id": call_id,
        "tool": "llm_call",
        "success": True,
        "result": {
            "model": result.model,
            "prompt_tokens": result.prompt_tokens,
            "completion_tokens": result.completion_tokens,
        },
        "summary": result.text[:200],
        "duration_ms": int((time.monotonic() - start) * 1000),
    })
    return result.text


async def _create_agent(ctx: OrchestrationContext, name: str, specification: str) -> str:
    """Record an agent's creation as a createAgent call/result pair."""
    call_id = _new_call_id()
    agent_id = f"agent-{uuid.uuid4().hex[:8]}"
    arguments = {"name": name, "specification": specification}
    await ctx.emitter.append(ctx.session_id, EventType.TOOL_CALL, {
        "tool": "createAgent", "tool_call_id": call_id, "arguments": arguments,
    })
    await ctx.emitter.append(ctx.session_id, EventType.TOOL_RESULT, {
        "tool_call_id": call_id,
        "tool": "createAgent",
        "success": True,
        "result": {"agent_id": agent_id, **arguments},
    })
    return agent_id


def _parse_config(model: type[BaseModel], config: dict) -> BaseModel:
    try:
        return model.model_validate(config or {})
    except PydanticValidationError as e:
        raise TaskExecutionError(f"Invalid task config: {e.errors()[0]['msg']}") from e


# ---------------------------------------------------------------------------
# Task types
# ---------------------------------------------------------------------------

async def run_simulation(ctx: OrchestrationContext, config: dict) -> dict:
    cfg = _parse_config(SimulationConfig, config)
    narrator = await _create_agent(
        ctx, "Simulator", f"Runs a {cfg.rounds}-round {cfg.topic} scenario with {cfg.agents} agents",
    )
    results = []
    for round_num in range(1, cfg.rounds + 1):
        await ctx.registry.update_tool_state(
            ctx.session_id, {"current_round": round_num, "total_rounds": cfg.rounds},
        )
        await ctx.emitter.append(ctx.session_id, EventType.STATUS_UPDATE, {
            "to": SessionStatus.RUNNING.value,
            "message": f"Round {round_num} of {cfg.rounds}",
            "round": round_num,
            "total_rounds": cfg.rounds,
            "progress": round_num / cfg.rounds,
        })
        text = await _llm_call(
            ctx,
            f"Simulate round {round_num} of a {cfg.topic} scenario with {cfg.agents} agents.",
            purpose=f"simulation_round_{round_num}",
            max_tokens=TASK_MAX_TOKENS.get(TaskType.SIMULATION.value, 2000),
        )
        await ctx.emitter.append(ctx.session_id, EventType.THINKING, {
            "content": text,
            "agent_id": narrator,
            "agent_name": "Simulator",
            "step": round_num,
            "thought_type": "simulation_round",
        })
        results.append({"round": round_num, "content": text})
    return {"topic": cfg.topic, "agents": cfg.agents, "results": results, "total_rounds": cfg.rounds}


async def run_panel(ctx: OrchestrationContext, config: dict) -> dict:
    cfg = _parse_config(PanelConfig, config)
    for name in cfg.panelists:
        await _create_agent(ctx, name, f"Panelist on {cfg.topic}")
    text = await _llm_call(
        ctx,
        f'Create a panel discussion on "{cfg.topic}" with these panelists: '
        f"{', '.join(cfg.panelists)}. Duration: {cfg.duration} minutes.",
        purpose="panel",
        max_tokens=TASK_MAX_TOKENS.get(TaskType.PANEL.value, 4000),
    )
    await ctx.emitter.append(ctx.session_id, EventType.MESSAGE, {"content": text})
    return {"topic": cfg.topic, "panelists": cfg.panelists, "discussion": text, "duration": cfg.duration}


_SPEAKER_LINE = re.compile(r"^\s*[*_]*(?P<speaker>[^:*_\n]{1,80}?)[*_]*\s*:\s*(?P<message>.+)$")


def parse_transcript(text: str, participants: list[str]) -> list[tuple[str, str, int]]:
    """Split "Name: message" lines into (name, message, round) turns.

    Only lines whose speaker matches a participant count; a speaker's
    round is how many times they have spoken so far.
    """
    by_lower = {p.lower(): p for p in participants}
    spoken: dict[str, int] = {}
    turns = []
    for line in text.splitlines():
        m = _SPEAKER_LINE.match(line)
        if not m:
            continue
        name = by_lower.get(m.group("speaker").strip().lower())
        if name is None:
            continue
        spoken[name] = spoken.get(name, 0) + 1
        turns.append((name, m.group("message").strip(), spoken[name]))
    return turns


async def run_discussion(ctx: OrchestrationContext, config: dict) -> dict:
    cfg = _parse_config(DiscussionConfig, config)
    agent_ids = {}
    for name in cfg.participants:
        agent_ids[name] = await _create_agent(ctx, name, f"{cfg.style} discussant on {cfg.topic}")
    text = await _llm_call(
        ctx,
        f'Create a {cfg.style} discussion about "{cfg.topic}" between: '
        f"{', '.join(cfg.participants)}. Write each turn as 'Name: message' on its own line.",
        purpose="discussion",
        max_tokens=TASK_MAX_TOKENS.get(TaskType.DISCUSSION.value, 3000),
    )
    turns = parse_transcript(text, cfg.participants)
    for name, message, round_num in turns:
        await ctx.emitter.append(ctx.session_id, EventType.DISCUSSION_TURN, {
            "topic": cfg.topic,
            "style": cfg.style,
            "agent_id": agent_ids[name],
            "agent_name": name,
            "message": message,
            "round": round_num,
        })
    if not turns:
        logger.info("Discussion transcript for session %s had no speaker lines", ctx.session_id)
        await ctx.emitter.append(ctx.session_id, EventType.MESSAGE, {"content": text})
    return {
        "topic": cfg.topic,
        "participants": cfg.participants,
        "style": cfg.style,
        "content": text,
        "turns": len(turns),
    }


async def run_analysis(ctx: OrchestrationContext, config: dict) -> dict:
    cfg = _parse_config(AnalysisConfig, config)
    text = await _llm_call(
        ctx,
        f"Perform a {cfg.analysis_type} analysis on: {json.dumps(cfg.data, default=str)}",
        purpose="analysis",
        max_tokens=TASK_MAX_TOKENS.get(TaskType.ANALYSIS.value, 3000),
        provider=cfg.provider,
        model=cfg.model,
    )
    await ctx.emitter.append(ctx.session_id, EventType.MESSAGE, {"content": text})
    return {"analysis_type": cfg.analysis_type, "provider": cfg.provider.value, "result": text}


ORCHESTRATIONS = {
    TaskType.SIMULATION: run_simulation,
    TaskType.PANEL: run_panel,
    TaskType.DISCUSSION: run_discussion,
    TaskType.ANALYSIS: run_analysis,
}


async def run_orchestration(task_type: TaskType | str, ctx: OrchestrationContext, config: dict) -> dict:
    try:
        handler = ORCHESTRATIONS[TaskType(task_type)]
    except ValueError:
        raise TaskExecutionError(f"Unknown task type: {task_type!r}") from None
    return await handler(ctx, config)

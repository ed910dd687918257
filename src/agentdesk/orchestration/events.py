"""Ordered event protocol emitted toward the caller, serialized as SSE."""
from __future__ import annotations

import json
from typing import Any, Dict, Literal

from pydantic import BaseModel, Field

from .types import TokenUsage

EventType = Literal[
    "agent_suggestion",
    "skill_suggestion",
    "waiting_for_decision",
    "agent_used",
    "agent_created",
    "skill_created",
    "content",
    "done",
    "error",
]

TERMINAL_EVENTS = frozenset({"waiting_for_decision", "done", "error"})

AGENT_DECISION_PROMPT = "Please decide whether to create the suggested agent."
SKILL_DECISION_PROMPT = "Please decide whether to add the suggested skill."


class ChatEvent(BaseModel):
    type: EventType
    data: Dict[str, Any] = Field(default_factory=dict)

    @property
    def is_terminal(self) -> bool:
        return self.type in TERMINAL_EVENTS

    def to_sse(self) -> str:
        payload = {"type": self.type, **self.data}
        return f"data: {json.dumps(payload, default=str)}\n\n"


def content(text: str) -> ChatEvent:
    return ChatEvent(type="content", data={"text": text})


def done(usage: TokenUsage, cost: float, session_id: str) -> ChatEvent:
    return ChatEvent(
        type="done",
        data={
            "usage": {"tokens": usage.model_dump(), "cost": round(cost, 8)},
            "sessionId": session_id,
        },
    )


def error(message: str) -> ChatEvent:
    return ChatEvent(type="error", data={"error": message})


def waiting(message: str) -> ChatEvent:
    return ChatEvent(type="waiting_for_decision", data={"message": message})

"""Recognizes explicit "add a skill ... to <agent>" requests."""
from __future__ import annotations

import re
from typing import Optional, Sequence

from pydantic import BaseModel

from .registry import AgentView

DEFAULT_SKILL_NAME = "New Skill"

_WANTS_SKILL = re.compile(r"\b(?:add|create)\b", re.I)
_MENTIONS_SKILL = re.compile(r"\bskills?\b", re.I)

_TOPIC_PATTERNS = [
    re.compile(r"(?:add|create).*?skill.*?(?:about|on|for|called|named)\s+([^.!?,]+?)(?:\s+to\b|\s+for\b|$)", re.I),
    re.compile(r"(?:add|create).*?\b(?:a|an|the)\s+([^.!?,]+?)\s+skill", re.I),
    re.compile(r"skill.*?(?:about|on|for|called|named)\s+([^.!?,]+?)(?:\s+to\b|\s+for\b|$)", re.I),
]
_TOPIC_FALLBACK = re.compile(r"skill\s+(.+?)\s+to\b", re.I)


class ExplicitSkillRequest(BaseModel):
    agent: AgentView
    skill_name: str


def is_skill_request(message: str) -> bool:
    return bool(_WANTS_SKILL.search(message) and _MENTIONS_SKILL.search(message))


def extract_skill_topic(message: str) -> str:
    for pattern in _TOPIC_PATTERNS:
        m = pattern.search(message)
        if m and m.group(1).strip():
            return m.group(1).strip()
    m = _TOPIC_FALLBACK.search(message)
    return m.group(1).strip() if m else DEFAULT_SKILL_NAME


def find_named_agent(message: str, agents: Sequence[AgentView]) -> Optional[AgentView]:
    """First agent whose full name, or the part before a dash, appears in the message."""
    lowered = message.lower()
    for agent in agents:
        name = agent.name.lower().strip()
        short = agent.name.split("-")[0].strip().lower()
        if (name and name in lowered) or (short and short in lowered):
            return agent
    return None


def parse_explicit_skill_request(message: str, agents: Sequence[AgentView]) -> Optional[ExplicitSkillRequest]:
    if not is_skill_request(message):
        return None
    agent = find_named_agent(message, agents)
    if agent is None:
        return None
    return ExplicitSkillRequest(agent=agent, skill_name=extract_skill_topic(message))

"""Collaborator interfaces the orchestration core reads and writes through."""
from __future__ import annotations

import uuid
from datetime import datetime
from typing import TYPE_CHECKING, Dict, List, Optional, Protocol, Sequence

from pydantic import BaseModel, Field

from .types import HistoryMessage

if TYPE_CHECKING:
    from .registry import AgentView, SkillView


class AgentSpec(BaseModel):
    name: str
    description: str = ""
    expertise: List[str] = Field(default_factory=list)
    capabilities: List[str] = Field(default_factory=list)
    system_prompt: str = ""


class SkillSpec(BaseModel):
    name: str
    description: str = ""
    content: str = ""
    tags: List[str] = Field(default_factory=list)


class QuotaWindowState(BaseModel):
    user_id: str
    window_date: str
    tokens_used: int = 0
    requests_in_current_hour: int = 0
    cost_accumulated: float = 0.0
    last_request_at: Optional[datetime] = None

    model_config = {"from_attributes": True}


class QuotaDeltas(BaseModel):
    tokens: int = Field(0, ge=0)
    cost: float = Field(0.0, ge=0.0)
    requests: int = Field(1, ge=0)


class AgentStore(Protocol):
    async def list_agents(self, user_id: str) -> List["AgentView"]: ...
    async def count_agents(self, user_id: str) -> int: ...
    async def create_agent(self, user_id: str, spec: AgentSpec) -> "AgentView": ...
    async def increment_usage(self, agent_id: uuid.UUID) -> None: ...


class SkillStore(Protocol):
    async def list_skills(self, agent_id: uuid.UUID) -> List["SkillView"]: ...
    async def list_skills_for_agents(self, agent_ids: Sequence[uuid.UUID]) -> Dict[uuid.UUID, List["SkillView"]]: ...
    async def create_skill(self, agent_id: uuid.UUID, spec: SkillSpec) -> "SkillView": ...


class QuotaStore(Protocol):
    async def get_or_create_window(self, user_id: str, window_date: str) -> QuotaWindowState: ...
    async def atomic_increment(self, user_id: str, window_date: str, deltas: QuotaDeltas, now: datetime) -> None: ...


class ConversationStore(Protocol):
    async def append_message(
        self,
        session_id: str,
        user_id: str,
        role: str,
        content: str,
        agent_id: Optional[uuid.UUID] = None,
    ) -> None: ...
    async def recent_messages(self, session_id: str, limit: int) -> List[HistoryMessage]: ...

"""Per-request snapshot of a user's agents and their skills."""
from __future__ import annotations

import uuid
from datetime import datetime
from typing import Dict, List, Optional

from pydantic import BaseModel, Field

from .stores import AgentStore, SkillStore


class SkillView(BaseModel):
    id: uuid.UUID
    agent_id: uuid.UUID
    name: str
    description: str = ""
    content: str = ""
    tags: List[str] = Field(default_factory=list)

    model_config = {"from_attributes": True}


class AgentView(BaseModel):
    id: uuid.UUID
    name: str
    description: str = ""
    expertise: List[str] = Field(default_factory=list)
    capabilities: List[str] = Field(default_factory=list)
    system_prompt: str = ""
    questions_handled: int = 0
    last_used_at: Optional[datetime] = None

    model_config = {"from_attributes": True}

    def brief(self) -> Dict[str, str]:
        return {"id": str(self.id), "name": self.name, "description": self.description}


class RegistryView(BaseModel):
    agents: List[AgentView] = Field(default_factory=list)
    skills_by_agent: Dict[uuid.UUID, List[SkillView]] = Field(default_factory=dict)

    @property
    def is_empty(self) -> bool:
        return not self.agents

    def agent(self, agent_id: uuid.UUID | None) -> Optional[AgentView]:
        if agent_id is None:
            return None
        for a in self.agents:
            if a.id == agent_id:
                return a
        return None

    def skills_for(self, agent_id: uuid.UUID | None) -> List[SkillView]:
        if agent_id is None:
            return []
        return list(self.skills_by_agent.get(agent_id, []))


class CapabilityRegistry:
    """Assembles a fresh RegistryView on every call; nothing is cached."""

    def __init__(self, agents: AgentStore, skills: SkillStore) -> None:
        self.agents = agents
        self.skills = skills

    async def load(self, user_id: str) -> RegistryView:
        agents = await self.agents.list_agents(user_id)
        skills = await self.skills.list_skills_for_agents([a.id for a in agents])
        return RegistryView(
            agents=agents,
            skills_by_agent={a.id: list(skills.get(a.id, [])) for a in agents},
        )

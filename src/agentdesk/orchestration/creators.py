"""Collaborators that grow the registry: agent profiles and skill documents.

Both ask the quality-tier model for JSON and fall back to a template when the
call fails or the JSON is unusable, so an accepted suggestion always creates
something.
"""
from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable, Dict, List, Literal, Optional, Sequence

from pydantic import BaseModel, Field, ValidationError

from src.agentdesk.config import llm
from .errors import GatewayError
from .matcher import is_duplicate_skill
from .prompts import AGENT_PROFILE_PROMPT, SKILL_CONTENT_PROMPT, SKILL_SUGGESTIONS_PROMPT
from .registry import AgentView, SkillView
from .stores import AgentSpec, AgentStore, SkillSpec, SkillStore

logger = logging.getLogger(__name__)

JsonCall = Callable[..., Awaitable[Any]]

FALLBACK_CAPABILITIES = ["Answer questions", "Provide explanations", "Offer guidance"]
MAX_SKILL_SUGGESTIONS = 5
RECENT_QUESTIONS_IN_PROMPT = 10


class AgentProfile(BaseModel):
    name: str = Field(min_length=1)
    description: str = Field(min_length=1)
    expertise: List[str] = Field(min_length=1)
    capabilities: List[str] = Field(default_factory=list)
    systemPrompt: str = Field(min_length=1)


class SkillDocument(BaseModel):
    description: str = ""
    tags: List[str] = Field(default_factory=list)
    content: str = Field(min_length=1)


def fallback_agent(topic: str, context: str = "") -> AgentSpec:
    topic = topic.strip() or "General"
    title = topic[0].upper() + topic[1:]
    lowered = topic.lower()
    return AgentSpec(
        name=f"{title} Assistant",
        description=f"A specialized assistant focused on {lowered} related questions and tasks.",
        expertise=[lowered],
        capabilities=list(FALLBACK_CAPABILITIES),
        system_prompt=(
            f"You are a specialized {title} Assistant with expertise in {lowered}.\n\n"
            f"Your role is to provide helpful, accurate information and assistance related to {lowered}.\n\n"
            f"Context: {context}\n\n"
            "Guidelines:\n"
            f"- Stay within your area of expertise ({lowered})\n"
            "- Provide clear, accurate information\n"
            "- If a question is outside your domain, acknowledge it politely\n"
            "- Be helpful and professional in your responses"
        ),
    )


def fallback_skill(name: str, description: str) -> SkillSpec:
    content = (
        f"# {name}\n\n"
        f"## Overview\n{description}\n\n"
        "## Capabilities\n"
        f"- Core functionality related to {name}\n"
        "- Supporting features and tools\n\n"
        "## Usage Guidelines\n"
        f"Use this skill when working with {name.lower()} related tasks.\n\n"
        "## Best Practices\n"
        "- Answer directly and confidently within this skill's coverage\n"
        "- Verify assumptions\n"
    )
    return SkillSpec(name=name, description=description, content=content, tags=significant_tags(name))


def significant_tags(text: str) -> List[str]:
    return [w.lower() for w in text.split() if len(w) > 3]


async def generate_agent_profile(
    topic: str,
    context: str = "",
    api_key: Optional[str] = None,
    json_call: Optional[JsonCall] = None,
) -> AgentSpec:
    prompt = AGENT_PROFILE_PROMPT.replace("<topic>", topic).replace("<context>", context[:2000])
    try:
        raw = await (json_call or llm.llm_json)("generateAgentProfile", prompt, temperature=0.7, api_key=api_key)
        profile = AgentProfile.model_validate(raw)
    except (ValidationError, ValueError, GatewayError) as e:
        logger.warning("Agent profile generation failed for %r, using fallback: %s", topic, e)
        return fallback_agent(topic, context)
    return AgentSpec(
        name=profile.name.strip(),
        description=profile.description.strip(),
        expertise=[t.strip() for t in profile.expertise if t.strip()] or [topic.lower()],
        capabilities=[c.strip() for c in profile.capabilities if c.strip()],
        system_prompt=profile.systemPrompt,
    )


async def generate_skill(
    agent: AgentView,
    skill_name: str,
    question: str = "",
    api_key: Optional[str] = None,
    json_call: Optional[JsonCall] = None,
) -> SkillSpec:
    prompt = (
        SKILL_CONTENT_PROMPT.replace("<skill>", skill_name)
        .replace("<agent>", agent.name)
        .replace("<expertise>", ", ".join(agent.expertise))
        .replace("<question>", question[:1000])
    )
    description = f"{skill_name} knowledge for {agent.name}"
    try:
        raw = await (json_call or llm.llm_json)("generateSkillContent", prompt, temperature=0.5, api_key=api_key)
        doc = SkillDocument.model_validate(raw)
    except (ValidationError, ValueError, GatewayError) as e:
        logger.warning("Skill generation failed for %r, using fallback: %s", skill_name, e)
        return fallback_skill(skill_name, description)
    return SkillSpec(
        name=skill_name,
        description=doc.description.strip() or description,
        content=doc.content,
        tags=[t.strip().lower() for t in doc.tags if t.strip()] or significant_tags(skill_name),
    )


class AgentCreator:
    def __init__(self, store: AgentStore, json_call: Optional[JsonCall] = None) -> None:
        self.store = store
        self.json_call = json_call

    async def create(self, user_id: str, topic: str, context: str = "", api_key: Optional[str] = None) -> AgentView:
        spec = await generate_agent_profile(topic, context, api_key=api_key, json_call=self.json_call)
        return await self.store.create_agent(user_id, spec)


class SkillCreator:
    def __init__(self, store: SkillStore, json_call: Optional[JsonCall] = None) -> None:
        self.store = store
        self.json_call = json_call

    async def create(self, agent: AgentView, skill_name: str, question: str = "", api_key: Optional[str] = None) -> SkillView:
        spec = await generate_skill(agent, skill_name, question, api_key=api_key, json_call=self.json_call)
        return await self.store.create_skill(agent.id, spec)


# --- proactive skill suggestions ----------------------------------------------

class SkillIdea(BaseModel):
    name: str = Field(min_length=1)
    description: str = Field(min_length=1)
    category: str = Field(min_length=1)
    reasoning: str = ""
    priority: Literal["high", "medium", "low"] = "medium"
    estimatedUsefulness: float = Field(0.5, ge=0.0, le=1.0)


def _idea(name, description, category, reasoning, priority, usefulness) -> SkillIdea:
    return SkillIdea(
        name=name,
        description=description,
        category=category,
        reasoning=reasoning,
        priority=priority,
        estimatedUsefulness=usefulness,
    )


COMMON_SKILLS: Dict[str, List[SkillIdea]] = {
    "tableau": [
        _idea("Calculated Fields", "Create custom calculations and formulas", "Tableau",
              "Essential for data transformation and custom metrics", "high", 0.95),
        _idea("LOD Expressions", "Level of Detail calculations for complex aggregations", "Tableau",
              "Advanced technique for multi-level analysis", "high", 0.9),
        _idea("Dashboard Design", "Best practices for creating effective dashboards", "Tableau",
              "Critical for user experience and insights delivery", "medium", 0.85),
    ],
    "fishing": [
        _idea("Seasonal Patterns", "Fish behavior and location by season", "Fishing",
              "Timing is crucial for successful fishing", "high", 0.9),
        _idea("Bait Selection", "Choosing the right bait for different species and conditions", "Fishing",
              "Most common question from anglers", "high", 0.95),
        _idea("Tackle Setup", "Rod, reel, and line configurations for different techniques", "Fishing",
              "Proper equipment setup improves success rate", "medium", 0.8),
    ],
    "programming": [
        _idea("Error Handling", "Best practices for catching and handling errors", "Programming",
              "Robust code needs predictable failure paths", "high", 0.9),
        _idea("Code Optimization", "Techniques for improving performance and efficiency", "Programming",
              "Performance questions come up once code works", "medium", 0.85),
        _idea("Testing Strategies", "Unit, integration, and end-to-end testing approaches", "Programming",
              "Tests keep changes safe", "medium", 0.8),
    ],
}


def common_skills_for_domain(domain: str) -> List[SkillIdea]:
    """Canned suggestions for well-known domains, generic ones otherwise."""
    domain = domain.strip() or "General"
    lowered = domain.lower()
    for key, ideas in COMMON_SKILLS.items():
        if key in lowered or lowered in key:
            return [idea.model_copy() for idea in ideas]
    return [
        _idea(f"{domain} Fundamentals", f"Core concepts and basics of {lowered}", domain,
              "Covers the questions most users start with", "high", 0.8),
        _idea(f"Advanced {domain} Techniques", f"Expert-level methods in {lowered}", domain,
              "Helps with harder follow-up questions", "medium", 0.7),
        _idea(f"{domain} Best Practices", f"Recommended approaches and common pitfalls in {lowered}", domain,
              "Keeps answers consistent and practical", "medium", 0.75),
    ]


def parse_skill_ideas(raw: Any) -> List[SkillIdea]:
    items = raw.get("suggestions") if isinstance(raw, dict) else raw
    if not isinstance(items, list):
        raise ValueError("Skill suggestions are not a list.")
    ideas: List[SkillIdea] = []
    for item in items:
        try:
            ideas.append(SkillIdea.model_validate(item))
        except ValidationError as e:
            logger.debug("Dropping unusable skill suggestion %r: %s", item, e)
    return ideas


def _novel(ideas: Sequence[SkillIdea], existing: Sequence[SkillView]) -> List[SkillIdea]:
    taken = {s.name.strip().lower() for s in existing}
    kept: List[SkillIdea] = []
    for idea in ideas:
        name = idea.name.strip()
        if name.lower() in taken or is_duplicate_skill(name, existing):
            continue
        taken.add(name.lower())
        kept.append(idea)
    return kept[:MAX_SKILL_SUGGESTIONS]


async def suggest_skills(
    agent: AgentView,
    existing: Sequence[SkillView],
    recent_questions: Sequence[str] = (),
    api_key: Optional[str] = None,
    json_call: Optional[JsonCall] = None,
) -> List[SkillIdea]:
    """Skills worth adding to an agent, excluding ones it already has.

    Falls back to the canned domain list when the model call fails or
    yields nothing new.
    """
    questions = [q.strip() for q in recent_questions if q.strip()][:RECENT_QUESTIONS_IN_PROMPT]
    prompt = (
        SKILL_SUGGESTIONS_PROMPT.replace("<agent>", agent.name)
        .replace("<description>", agent.description or "None")
        .replace("<expertise>", ", ".join(agent.expertise) or "None")
        .replace("<existing>", ", ".join(s.name for s in existing) or "None")
        .replace("<questions>", "\n".join(f"{i}. {q}" for i, q in enumerate(questions, 1)) or "None")
    )
    try:
        raw = await (json_call or llm.llm_json)("suggestSkills", prompt, temperature=0.7, api_key=api_key)
        ideas = _novel(parse_skill_ideas(raw), existing)
    except (ValueError, GatewayError) as e:
        logger.warning("Skill suggestions failed for agent %s, using fallback: %s", agent.id, e)
        ideas = []
    if ideas:
        return ideas
    domain = agent.expertise[0] if agent.expertise else agent.name
    return _novel(common_skills_for_domain(domain), existing)

# -*- coding: utf-8 -*-
"""Prompt templates for classification, answering and capability creation.

The classifier instructions carry the whole decision policy: existing skills
first, then a new skill for a related agent, then a new agent. Regional and
category-scoped skills cover everything inside their scope.
"""
from __future__ import annotations

from typing import Iterable, List, Sequence

from .registry import AgentView, RegistryView, SkillView
from .types import AttachedFile, ToolSpec

MATCH_TOOL_NAME = "match_agent_with_recommendation"

CLASSIFIER_SYSTEM = (
    "You are an intelligent agent and skill matcher. Your job is to:\n"
    "1. Analyze the user's question\n"
    "2. Match it to the best agent based on expertise and available skills\n"
    "3. Determine if a new agent or skill should be created\n"
    "4. Provide confidence and reasoning\n"
    "\n"
    "Look for GENERAL expertise, not only exact keyword matches.\n"
    "\n"
    "MATCHING RULES (FOLLOW IN ORDER):\n"
    "\n"
    "STEP 1: Check existing skills first.\n"
    "- Scan ALL agents' existing skills before suggesting anything new.\n"
    "- If ANY skill covers the question, match that agent with confidence 80-95 and suggest nothing.\n"
    "- Example: a weather agent with a \"European Weather\" skill matches \"Madrid\", \"Burgos\" and \"Spain forecast\".\n"
    "\n"
    "STEP 2: Geographic and domain scope.\n"
    "- A skill scoped to a region covers every country and city inside it (Madrid -> Spain -> Europe, Tokyo -> Japan -> Asia).\n"
    "- European skills cover all European countries. Asian skills cover all Asian countries. North American skills cover USA, Canada and Mexico.\n"
    "- A skill scoped to a category covers its sub-categories.\n"
    "- Unit conversions (Fahrenheit/Celsius, miles/km) are part of the same domain: \"Madrid in Fahrenheit\" is still a weather question.\n"
    "\n"
    "STEP 3: Suggest a new skill only if an agent has related expertise AND no existing skill covers the question.\n"
    "- Set suggestNewSkill=true, matchedAgentIndex to that agent, and suggestion to a short skill name.\n"
    "\n"
    "STEP 4: Suggest a new agent only if the domain is completely different from ALL agents.\n"
    "- Set matchedAgentIndex=-1, suggestNewAgent=true, and suggestion to a short topic name.\n"
    "\n"
    "Never set both suggestNewAgent and suggestNewSkill.\n"
    "PRIORITY ORDER: Existing Skills > New Skill > New Agent\n"
    "\n"
    "If the question is too ambiguous to classify, do not call the tool; reply with a short clarifying question instead."
)

MATCH_TOOL = ToolSpec(
    name=MATCH_TOOL_NAME,
    description="Match user question to best agent and provide recommendations",
    parameters={
        "type": "object",
        "properties": {
            "matchedAgentIndex": {
                "type": "number",
                "description": "Index of the best matching agent, or -1 if no good match",
            },
            "confidence": {"type": "number", "description": "Confidence score from 0-100"},
            "reasoning": {"type": "string", "description": "Explanation of the match decision"},
            "suggestNewAgent": {"type": "boolean", "description": "Whether to suggest creating a new agent"},
            "suggestNewSkill": {
                "type": "boolean",
                "description": "Whether to suggest adding a new skill to the matched agent",
            },
            "suggestion": {"type": "string", "description": "Suggested agent topic or skill name if applicable"},
        },
        "required": ["matchedAgentIndex", "confidence", "reasoning", "suggestNewAgent", "suggestNewSkill"],
    },
)


def _skill_lines(skills: Sequence[SkillView]) -> str:
    if not skills:
        return "None"
    return "".join(f"\n     - {s.name}: {s.description}" for s in skills)


def build_classifier_prompt(message: str, registry: RegistryView) -> str:
    blocks = []
    for i, agent in enumerate(registry.agents):
        blocks.append(
            f"{i}. {agent.name}\n"
            f"   Description: {agent.description}\n"
            f"   Expertise: {', '.join(agent.expertise)}\n"
            f"   Capabilities: {', '.join(agent.capabilities)}\n"
            f"   Existing Skills: {_skill_lines(registry.skills_for(agent.id))}\n"
        )
    return (
        f'Question: "{message}"\n'
        "\n"
        "Available Agents and Skills:\n"
        + "\n".join(blocks)
        + "\nIMPORTANT: Before suggesting a new agent or skill, CHECK if any agent's EXISTING SKILLS already cover this question.\n"
        "\n"
        "Analyze and determine the best match."
    )


RESPONSE_LENGTH_INSTRUCTIONS = {
    "concise": "Maximum 3 sentences. Be extremely brief and direct.",
    "normal": "Keep responses clear and focused, typically 3-5 sentences.",
    "detailed": "Provide thorough explanations with examples when helpful.",
}

GENERIC_ASSISTANT_PROMPT = (
    "You are a helpful voice assistant. Answer questions clearly and conversationally."
)


def formatting_rules(response_length: str) -> str:
    length_rule = RESPONSE_LENGTH_INSTRUCTIONS.get(response_length, RESPONSE_LENGTH_INSTRUCTIONS["normal"])
    return (
        "FORMATTING RULES (MUST FOLLOW):\n"
        "- Your response will be READ ALOUD by voice synthesis\n"
        "- Use ONLY plain conversational text, NO markdown formatting\n"
        "- NO asterisks, hashtags, backticks or link brackets\n"
        "- NO horizontal rules, tables or code blocks\n"
        "- NO bullet points or numbered lists\n"
        f"- {length_rule}\n"
        "- You MAY include plain URLs (https://...) for resources you mention\n"
        "\n"
        "CONVERSATION CONTEXT:\n"
        "- You have access to the recent conversation history\n"
        "- If the user changes topics, treat the new question on its own merits\n"
        "\n"
    )


def relevant_skills(message: str, skills: Iterable[SkillView]) -> List[SkillView]:
    """Skills sharing at least one significant word (>3 chars) with the message."""
    words = [w for w in message.lower().split() if len(w) > 3]
    picked = []
    for skill in skills:
        haystack = " ".join([skill.name, skill.description, " ".join(skill.tags)]).lower()
        if any(w in haystack for w in words):
            picked.append(skill)
    return picked


def skills_section(skills: Sequence[SkillView]) -> str:
    if not skills:
        return ""
    body = "\n\n---\n\n".join(f"### {s.name}\n{s.description}\n\n{s.content}".strip() for s in skills)
    return (
        "\n\n---\n\n"
        "## Active Skills - USE THESE CONFIDENTLY\n\n"
        "You have been enhanced with the following specialized skills. When a question matches these skills, "
        "answer directly from them instead of asking for more details.\n\n"
        f"{body}\n\n"
        "Handle unit conversions within your domain and only ask for clarification when the question is genuinely ambiguous."
    )


def files_section(files: Sequence[AttachedFile]) -> str:
    if not files:
        return ""
    parts = [f"--- {f.name} ---\n{f.content}" for f in files]
    return (
        "\n\n=== UPLOADED FILES ===\n"
        + "\n\n".join(parts)
        + "\nThe user has uploaded the above file(s). Reference them in your response as needed.\n"
    )


def build_system_prompt(
    agent: AgentView | None,
    message: str,
    skills: Sequence[SkillView],
    files: Sequence[AttachedFile],
    response_length: str,
) -> str:
    base = agent.system_prompt if agent and agent.system_prompt else GENERIC_ASSISTANT_PROMPT
    active = relevant_skills(message, skills) if agent else []
    return formatting_rules(response_length) + base + skills_section(active) + files_section(files)


AGENT_PROFILE_PROMPT = (
    "Create a specialized AI agent profile for the topic below.\n"
    'Return JSON: {"name": "<short persona name>", "description": "<one sentence>", '
    '"expertise": ["<area>", ...], "capabilities": ["<capability>", ...], '
    '"systemPrompt": "<detailed instructions for the agent, plain text>"}\n'
    "Use 3-6 expertise areas and 3-5 capabilities.\n"
    'Topic: "<topic>"\n'
    'Context from the user: "<context>"'
)

SKILL_CONTENT_PROMPT = (
    "Write a SKILL.md document that gives an assistant a focused capability.\n"
    'Skill name: "<skill>"\n'
    'Agent: "<agent>" (expertise: <expertise>)\n'
    'Triggered by the question: "<question>"\n'
    'Return JSON: {"description": "<one sentence>", "tags": ["<keyword>", ...], '
    '"content": "<markdown body with Overview, Capabilities, Guidelines and Examples sections>"}'
)

SKILL_SUGGESTIONS_PROMPT = (
    "Suggest new skills that would help the agent below answer questions better.\n"
    'Agent: "<agent>"\n'
    "Description: <description>\n"
    "Expertise: <expertise>\n"
    "Existing skills: <existing>\n"
    "Recent questions:\n<questions>\n"
    "Each skill must fill a gap in the agent's domain, follow the recent questions "
    "where there are any, and must not duplicate an existing skill.\n"
    'Return JSON: {"suggestions": [{"name": "<2-4 words>", "description": "<one sentence>", '
    '"category": "<category>", "reasoning": "<why it helps>", "priority": "high|medium|low", '
    '"estimatedUsefulness": <0.0-1.0>}, ...]} with 3 to 5 entries.'
)

"""Agent/skill matcher.

The classifier oracle is untrusted: its reply is validated into one of three
verdicts (matched, needs clarification, malformed) before anything downstream
sees it. Oracle failures degrade to a deterministic keyword matcher.
"""
from __future__ import annotations

import logging
import re
import uuid
from typing import Awaitable, Callable, List, Literal, Optional, Sequence, Union

from pydantic import BaseModel, Field, ValidationError, model_validator

from src.agentdesk.config.settings import Settings
from .errors import ClassifierFailure
from .prompts import CLASSIFIER_SYSTEM, MATCH_TOOL, MATCH_TOOL_NAME, build_classifier_prompt
from .registry import AgentView, RegistryView, SkillView
from .types import OracleReply, TokenUsage

logger = logging.getLogger(__name__)

Oracle = Callable[..., Awaitable[OracleReply]]

FIRST_AGENT_SUGGESTION = "Create your first agent to get started!"
SKIP_REASONING = "User declined agent/skill suggestion"

STOPWORDS = frozenset(
    "the a an and or but in on at to for of with by from as is was are were been be "
    "have has had do does did will would should could can may might must "
    "what when where who why how which about doing today "
    "i me my you your it its this that please tell help".split()
)

CLARIFICATION_MARKERS = (
    "clarify",
    "rephrase",
    "unclear",
    "could you",
    "can you specify",
    "please specify",
    "what do you mean",
    "more details",
    "more context",
)


class MatchResult(BaseModel):
    matched_agent_id: Optional[uuid.UUID] = None
    confidence: float = Field(0.0, ge=0.0, le=1.0)
    reasoning: str = ""
    suggest_new_agent: bool = False
    suggest_new_skill: bool = False
    suggestion_text: Optional[str] = None
    needs_clarification: bool = False
    topic: Optional[str] = None
    source: Literal["oracle", "fallback", "skip", "empty", "clarification"] = "oracle"
    usage: TokenUsage = Field(default_factory=TokenUsage)

    @model_validator(mode="after")
    def _check_flags(self) -> "MatchResult":
        if self.suggest_new_agent and self.suggest_new_skill:
            raise ValueError("suggest_new_agent and suggest_new_skill are mutually exclusive")
        if self.suggest_new_skill and self.matched_agent_id is None:
            raise ValueError("suggest_new_skill requires a matched agent")
        return self

    @property
    def has_suggestion(self) -> bool:
        return self.suggest_new_agent or self.suggest_new_skill


# --- oracle verdicts ---------------------------------------------------------

class MatchToolArgs(BaseModel):
    matchedAgentIndex: Optional[int] = -1
    confidence: float = Field(ge=0, le=100)
    reasoning: str = ""
    suggestNewAgent: bool = False
    suggestNewSkill: bool = False
    suggestion: Optional[str] = None


class Matched(BaseModel):
    kind: Literal["matched"] = "matched"
    args: MatchToolArgs


class NeedsClarification(BaseModel):
    kind: Literal["clarification"] = "clarification"
    text: str


class Malformed(BaseModel):
    kind: Literal["malformed"] = "malformed"
    detail: str


OracleVerdict = Union[Matched, NeedsClarification, Malformed]


def reads_as_clarification(text: str) -> bool:
    lowered = text.lower()
    return any(marker in lowered for marker in CLARIFICATION_MARKERS)


def interpret_reply(reply: OracleReply, agent_count: int) -> OracleVerdict:
    if reply.tool_name == MATCH_TOOL_NAME and reply.arguments is not None:
        try:
            args = MatchToolArgs.model_validate(reply.arguments)
        except ValidationError as e:
            return Malformed(detail=f"invalid tool arguments: {e.error_count()} error(s)")
        index = args.matchedAgentIndex
        if index is not None and index >= agent_count:
            return Malformed(detail=f"agent index {index} out of range ({agent_count} agents)")
        return Matched(args=args)
    text = (reply.text or "").strip()
    if text and reads_as_clarification(text):
        return NeedsClarification(text=text)
    return Malformed(detail="no usable tool call")


# --- helpers -----------------------------------------------------------------

def significant_words(text: str) -> List[str]:
    return [w for w in text.lower().split() if len(w) > 3]


def _same_stem(a: str, b: str) -> bool:
    return a.startswith(b) or b.startswith(a)


def is_duplicate_skill(proposed: str, existing: Sequence[SkillView]) -> bool:
    """True when the proposal shares >= 2 significant words with an existing skill name.

    Words match when equal or when one is a prefix of the other ("europe" / "european").
    """
    proposed_words = significant_words(proposed)
    for skill in existing:
        skill_words = significant_words(skill.name)
        overlap = [w for w in proposed_words if any(_same_stem(w, sw) for sw in skill_words)]
        if len(overlap) >= 2:
            return True
    return False


def derive_topic(message: str, max_words: int = 3, default: str = "General Assistant") -> str:
    """Title-cased first few non-stopword tokens of the message."""
    tokens = re.findall(r"[a-z0-9][a-z0-9'\-]*", message.lower())
    kept = [t.strip("'-") for t in tokens if t not in STOPWORDS and len(t) > 1]
    kept = [t for t in kept if t]
    if not kept:
        return default
    return " ".join(t.capitalize() for t in kept[:max_words])


def _description_words(description: str) -> List[str]:
    words = (w.strip(".,;:!?()\"'") for w in description.lower().split())
    return [w for w in words if len(w) > 4]


def keyword_score(message: str, agent: AgentView) -> int:
    lowered = message.lower()
    score = 0
    for tag in agent.expertise:
        if tag and tag.lower() in lowered:
            score += 3
    if agent.name and agent.name.lower() in lowered:
        score += 2
    for word in _description_words(agent.description):
        if word in lowered:
            score += 1
    return score


# --- matcher -----------------------------------------------------------------

class Matcher:
    def __init__(self, oracle: Optional[Oracle], settings: Optional[Settings] = None) -> None:
        self.oracle = oracle
        self.settings = settings or Settings()

    async def match(
        self,
        message: str,
        registry: RegistryView,
        prior_skip: bool = False,
        api_key: Optional[str] = None,
    ) -> MatchResult:
        if prior_skip:
            return MatchResult(confidence=0.0, reasoning=SKIP_REASONING, source="skip")

        if registry.is_empty:
            return MatchResult(
                confidence=0.0,
                reasoning="No agents available.",
                suggest_new_agent=True,
                suggestion_text=FIRST_AGENT_SUGGESTION,
                topic=derive_topic(message),
                source="empty",
            )

        if self.oracle is None:
            return self.fallback(message, registry)

        try:
            reply = await self._classify(message, registry, api_key)
        except ClassifierFailure as e:
            logger.warning("Classifier call failed, using keyword fallback: %s", e)
            return self.fallback(message, registry)

        verdict = interpret_reply(reply, len(registry.agents))
        if isinstance(verdict, NeedsClarification):
            return MatchResult(
                confidence=0.0,
                reasoning="Classifier asked for clarification",
                needs_clarification=True,
                suggestion_text=verdict.text,
                source="clarification",
                usage=reply.usage,
            )
        if isinstance(verdict, Malformed):
            logger.warning("Classifier reply rejected (%s), using keyword fallback", verdict.detail)
            result = self.fallback(message, registry)
            return result.model_copy(update={"usage": reply.usage})
        return self._from_oracle(verdict.args, message, registry, reply.usage)

    async def _classify(self, message: str, registry: RegistryView, api_key: Optional[str]) -> OracleReply:
        try:
            return await self.oracle(
                system=CLASSIFIER_SYSTEM,
                prompt=build_classifier_prompt(message, registry),
                tools=[MATCH_TOOL],
                temperature=self.settings.classifier_temperature,
                max_tokens=self.settings.classifier_max_tokens,
                api_key=api_key,
            )
        except Exception as e:
            raise ClassifierFailure(str(e) or e.__class__.__name__) from e

    def _from_oracle(self, args: MatchToolArgs, message: str, registry: RegistryView, usage: TokenUsage) -> MatchResult:
        index = args.matchedAgentIndex
        agent = registry.agents[index] if index is not None and index >= 0 else None
        suggest_agent = args.suggestNewAgent
        suggest_skill = args.suggestNewSkill
        if suggest_agent and suggest_skill:
            # keep the one consistent with the match
            suggest_agent = agent is None
            suggest_skill = agent is not None
        if suggest_skill and agent is None:
            suggest_skill = False
        suggestion = (args.suggestion or "").strip() or None
        if (suggest_agent or suggest_skill) and suggestion is None:
            suggestion = derive_topic(message)
        result = MatchResult(
            matched_agent_id=agent.id if agent else None,
            confidence=round(args.confidence / 100, 4),
            reasoning=args.reasoning,
            suggest_new_agent=suggest_agent,
            suggest_new_skill=suggest_skill,
            suggestion_text=suggestion if (suggest_agent or suggest_skill) else None,
            topic=suggestion if suggest_agent else None,
            source="oracle",
            usage=usage,
        )
        return self._dedupe(result, registry)

    def _dedupe(self, result: MatchResult, registry: RegistryView) -> MatchResult:
        if not (result.suggest_new_skill and result.suggestion_text):
            return result
        if is_duplicate_skill(result.suggestion_text, registry.skills_for(result.matched_agent_id)):
            logger.info("Suppressing skill suggestion %r: similar skill exists", result.suggestion_text)
            return result.model_copy(update={"suggest_new_skill": False, "suggestion_text": None})
        return result

    def fallback(self, message: str, registry: RegistryView) -> MatchResult:
        """Deterministic keyword scoring; highest score wins, first agent on ties."""
        best: Optional[AgentView] = None
        best_score = 0
        for agent in registry.agents:
            score = keyword_score(message, agent)
            if score > best_score:
                best, best_score = agent, score
        s = self.settings
        confidence = min(best_score / 10, s.fallback_cap)
        topic = derive_topic(message)

        if best is not None and confidence >= s.fallback_weak:
            strength = "Keyword match" if confidence >= s.fallback_strong else "Weak keyword match"
            result = MatchResult(
                matched_agent_id=best.id,
                confidence=confidence,
                reasoning=f"{strength} on {best.name} (fallback method)",
                suggest_new_skill=True,
                suggestion_text=topic,
                source="fallback",
            )
            return self._dedupe(result, registry)

        return MatchResult(
            matched_agent_id=None,
            confidence=confidence,
            reasoning="No suitable agent found using keyword matching",
            suggest_new_agent=True,
            suggestion_text=topic,
            topic=topic,
            source="fallback",
        )

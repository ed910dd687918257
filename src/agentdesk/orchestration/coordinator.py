"""Per-turn state machine tying matcher, suggestions, streaming and accounting together.

A turn either answers, asks for clarification, or stops at a suggestion and
hands the caller a resume token. Decisions arrive on the next request with
that token; the original message is then replayed.
"""
from __future__ import annotations

import asyncio
import logging
import uuid
from datetime import datetime
from enum import Enum
from typing import AsyncIterator, Callable, List, Literal, Optional, Tuple

from pydantic import BaseModel, Field

from src.agentdesk.config.settings import QuotaLimits, ResponseLength, Settings, Tier, compute_cost
from . import events
from .creators import AgentCreator, SkillCreator
from .events import AGENT_DECISION_PROMPT, SKILL_DECISION_PROMPT, ChatEvent
from .intents import parse_explicit_skill_request
from .matcher import Matcher, MatchResult, derive_topic
from .prompts import build_system_prompt
from .quota import QuotaDecision, QuotaLedger, utcnow
from .rate_limiter import BurstLimiter
from .registry import AgentView, CapabilityRegistry, RegistryView
from .resume import ResumeToken, encode_token
from .sanitize import sanitize
from .stores import AgentStore, ConversationStore
from .streamer import ResponseStreamer, StreamOutcome
from .typo import correct_message
from .types import AttachedFile, GenerationOptions, HistoryMessage, TokenUsage

logger = logging.getLogger(__name__)

ANSWER_TIER: Tier = "fast"
CLASSIFIER_TIER: Tier = "fast"


class TurnState(str, Enum):
    MATCHING = "matching"
    RESOLVING = "resolving"
    ANSWERING = "answering"
    AWAITING_AGENT_DECISION = "awaiting_agent_decision"
    AWAITING_SKILL_DECISION = "awaiting_skill_decision"
    CLARIFYING = "clarifying"
    DONE = "done"
    FAILED = "failed"


class TurnRequest(BaseModel):
    user_id: str
    message: str = ""
    session_id: Optional[str] = None
    files: List[AttachedFile] = Field(default_factory=list)
    resume: Optional[ResumeToken] = None
    action: Optional[Literal["accept", "decline"]] = None
    skip_suggestion: bool = False
    custom_api_key: Optional[str] = None
    response_length: Optional[ResponseLength] = None
    temperature: Optional[float] = Field(None, ge=0.0, le=2.0)


class Turn:
    """Accounting and progress for one request."""

    def __init__(self, session_id: str, unlimited: bool) -> None:
        self.session_id = session_id
        self.unlimited = unlimited
        self.state = TurnState.MATCHING
        self.answered = False
        self.committed = False
        self.terminated = False
        self._parts: List[Tuple[object, Tier]] = []

    def track(self, source: object, tier: Tier) -> None:
        # sources expose a live `.usage`, read when totals are needed
        self._parts.append((source, tier))

    @property
    def usage(self) -> TokenUsage:
        total = TokenUsage()
        for source, _ in self._parts:
            total = total + source.usage
        return total

    @property
    def cost(self) -> float:
        return sum(compute_cost(s.usage.input, s.usage.output, s.usage.cached, tier) for s, tier in self._parts)


def new_session_id(user_id: str, now: datetime) -> str:
    return f"session_{int(now.timestamp() * 1000)}_{user_id}"


class ChatOrchestrator:
    def __init__(
        self,
        *,
        registry: CapabilityRegistry,
        matcher: Matcher,
        streamer: ResponseStreamer,
        ledger: QuotaLedger,
        agents: AgentStore,
        conversations: ConversationStore,
        agent_creator: AgentCreator,
        skill_creator: SkillCreator,
        settings: Settings,
        burst: Optional[BurstLimiter] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.registry = registry
        self.matcher = matcher
        self.streamer = streamer
        self.ledger = ledger
        self.agents = agents
        self.conversations = conversations
        self.agent_creator = agent_creator
        self.skill_creator = skill_creator
        self.settings = settings
        self.burst = burst
        self.clock = clock

    # --- admission ---------------------------------------------------------

    def limits(self) -> QuotaLimits:
        return self.settings.trial_limits()

    async def admit(self, user_id: str, custom_api_key: Optional[str] = None) -> QuotaDecision:
        """Burst limiter, then the quota gate. Raises RateLimitExceeded on denial."""
        if self.burst is not None:
            await self.burst.hit(user_id)
        decision = await self.ledger.check_and_reserve(user_id, self.limits(), custom_api_key)
        decision.raise_for_denial()
        return decision

    # --- turn entry point --------------------------------------------------

    async def run_turn(self, req: TurnRequest, admission: QuotaDecision) -> AsyncIterator[ChatEvent]:
        session_id = req.session_id or (req.resume.sessionId if req.resume else None) or new_session_id(req.user_id, self.clock())
        turn = Turn(session_id, unlimited=admission.unlimited)
        try:
            if req.resume is not None and req.action is not None:
                source = self._resolve(req, turn, req.resume)
            else:
                source = self._route(req, turn, req.message, req.files, prior_skip=req.skip_suggestion)
            async for event in source:
                if event.is_terminal:
                    turn.terminated = True
                yield event
        except Exception as e:
            logger.exception("Turn failed for user %s", req.user_id)
            turn.state = TurnState.FAILED
            if not turn.terminated:
                turn.terminated = True
                yield events.error(f"Something went wrong: {e}")
        finally:
            await self._settle(req.user_id, turn)
            logger.info("Turn %s for user %s ended in state %s", turn.session_id, req.user_id, turn.state.value)

    # --- routing -----------------------------------------------------------

    async def _route(
        self,
        req: TurnRequest,
        turn: Turn,
        message: str,
        files: List[AttachedFile],
        prior_skip: bool,
        pinned_agent_id: Optional[uuid.UUID] = None,
        announce: str = "agent_used",
    ) -> AsyncIterator[ChatEvent]:
        turn.state = TurnState.MATCHING
        corrected = correct_message(message)
        if corrected.changed:
            logger.info("Corrected message %r -> %r", message, corrected.corrected)
        text = corrected.corrected
        registry = await self.registry.load(req.user_id)

        if pinned_agent_id is not None:
            agent = registry.agent(pinned_agent_id)
            async for event in self._answer(req, turn, registry, agent, message, text, files, announce):
                yield event
            return

        if not prior_skip:
            explicit = parse_explicit_skill_request(text, registry.agents)
            if explicit is not None:
                async for event in self._suggest_skill(
                    turn, message, files, explicit.agent, explicit.skill_name,
                    "User explicitly requested to add this skill", explicit=True,
                ):
                    yield event
                return

        match = await self.matcher.match(text, registry, prior_skip=prior_skip, api_key=req.custom_api_key)
        turn.track(match, CLASSIFIER_TIER)

        if match.needs_clarification:
            turn.state = TurnState.CLARIFYING
            async for event in self._finish_without_answer(req, turn, message, match.suggestion_text or ""):
                yield event
            return

        if match.suggest_new_agent and len(registry.agents) < self.settings.max_agents_per_user:
            async for event in self._suggest_agent(turn, message, files, match):
                yield event
            return

        matched = registry.agent(match.matched_agent_id)
        if match.suggest_new_skill and matched is not None and match.suggestion_text:
            async for event in self._suggest_skill(turn, message, files, matched, match.suggestion_text, match.reasoning):
                yield event
            return

        agent = matched if match.confidence >= self.settings.answer_min_confidence else None
        async for event in self._answer(req, turn, registry, agent, message, text, files, announce):
            yield event

    # --- suggestions -------------------------------------------------------

    async def _suggest_agent(self, turn: Turn, message: str, files: List[AttachedFile], match: MatchResult) -> AsyncIterator[ChatEvent]:
        turn.state = TurnState.AWAITING_AGENT_DECISION
        topic = match.topic or derive_topic(message)
        token = ResumeToken(
            originalMessage=message,
            attachedFiles=files,
            suggestionKind="agent",
            suggestionPayload={"topic": topic, "reasoning": match.reasoning},
            sessionId=turn.session_id,
        )
        yield ChatEvent(
            type="agent_suggestion",
            data={
                "topic": topic,
                "reasoning": match.reasoning,
                "suggestion": match.suggestion_text,
                "resumeToken": encode_token(token),
            },
        )
        yield events.waiting(AGENT_DECISION_PROMPT)

    async def _suggest_skill(
        self,
        turn: Turn,
        message: str,
        files: List[AttachedFile],
        agent: AgentView,
        skill_name: str,
        reasoning: str,
        explicit: bool = False,
    ) -> AsyncIterator[ChatEvent]:
        turn.state = TurnState.AWAITING_SKILL_DECISION
        payload = {
            "agentId": str(agent.id),
            "agentName": agent.name,
            "skillName": skill_name,
            "reasoning": reasoning,
        }
        token = ResumeToken(
            originalMessage=message,
            attachedFiles=files,
            suggestionKind="skill",
            suggestionPayload=payload,
            explicitRequest=explicit,
            sessionId=turn.session_id,
        )
        yield ChatEvent(type="skill_suggestion", data={**payload, "resumeToken": encode_token(token)})
        yield events.waiting(SKILL_DECISION_PROMPT)

    # --- decisions ---------------------------------------------------------

    async def _resolve(self, req: TurnRequest, turn: Turn, token: ResumeToken) -> AsyncIterator[ChatEvent]:
        turn.state = TurnState.RESOLVING
        message, files = token.originalMessage, list(token.attachedFiles)
        accepted = req.action == "accept"

        if token.suggestionKind == "agent":
            if not accepted:
                async for event in self._route(req, turn, message, files, prior_skip=True):
                    yield event
                return
            if await self.agents.count_agents(req.user_id) >= self.settings.max_agents_per_user:
                turn.state = TurnState.FAILED
                yield events.error(f"Agent limit reached ({self.settings.max_agents_per_user}).")
                return
            topic = str(token.suggestionPayload.get("topic") or derive_topic(message))
            agent = await self.agent_creator.create(req.user_id, topic, context=message, api_key=req.custom_api_key)
            logger.info("Created agent %s (%s) for user %s", agent.id, agent.name, req.user_id)
            async for event in self._route(
                req, turn, message, files, prior_skip=True, pinned_agent_id=agent.id, announce="agent_created",
            ):
                yield event
            return

        registry = await self.registry.load(req.user_id)
        agent = registry.agent(token.agent_id)
        if agent is None:
            turn.state = TurnState.FAILED
            yield events.error("The agent for this skill no longer exists.")
            return

        if not accepted:
            pinned = None if token.explicitRequest else agent.id
            async for event in self._route(req, turn, message, files, prior_skip=True, pinned_agent_id=pinned):
                yield event
            return

        skill_name = str(token.suggestionPayload["skillName"]).strip()
        skill = await self.skill_creator.create(agent, skill_name, question=message, api_key=req.custom_api_key)
        logger.info("Added skill %s (%s) to agent %s", skill.id, skill.name, agent.id)
        yield ChatEvent(
            type="skill_created",
            data={"agentId": str(agent.id), "skill": {"id": str(skill.id), "name": skill.name}},
        )
        if token.explicitRequest:
            # the request was the skill itself; replaying it would suggest it again
            async for event in self._finish_without_answer(
                req, turn, message, f"Done. I've added the {skill.name} skill to {agent.name}.",
            ):
                yield event
            return
        async for event in self._route(req, turn, message, files, prior_skip=True, pinned_agent_id=agent.id):
            yield event

    # --- answering ---------------------------------------------------------

    async def _answer(
        self,
        req: TurnRequest,
        turn: Turn,
        registry: RegistryView,
        agent: Optional[AgentView],
        original: str,
        text: str,
        files: List[AttachedFile],
        announce: str,
    ) -> AsyncIterator[ChatEvent]:
        turn.state = TurnState.ANSWERING
        if agent is not None:
            yield ChatEvent(type=announce, data={"agent": agent.brief()})

        response_length = req.response_length or self.settings.response_length
        system_prompt = build_system_prompt(
            agent,
            text,
            registry.skills_for(agent.id) if agent else [],
            files,
            response_length,
        )
        temperature = req.temperature if req.temperature is not None else self.settings.answer_temperature
        if response_length == "concise":
            temperature = min(temperature, 0.2)
        opts = GenerationOptions(temperature=temperature, api_key=req.custom_api_key, tier=ANSWER_TIER)
        history = await self._history(turn.session_id)

        outcome = StreamOutcome()
        turn.track(outcome, ANSWER_TIER)
        async for event in self.streamer.stream(text, system_prompt, history, opts, outcome):
            yield event
        if not outcome.completed:
            turn.state = TurnState.FAILED
            return

        turn.answered = True
        turn.state = TurnState.DONE
        await self._settle(req.user_id, turn)
        if agent is not None:
            await self._record_agent_usage(agent.id)
        await self._remember(turn.session_id, req.user_id, original, outcome.text, agent.id if agent else None)
        yield events.done(turn.usage, turn.cost, turn.session_id)

    async def _finish_without_answer(self, req: TurnRequest, turn: Turn, original: str, reply: str) -> AsyncIterator[ChatEvent]:
        cleaned = sanitize(reply)
        if cleaned:
            yield events.content(cleaned)
        if turn.state != TurnState.CLARIFYING:
            turn.state = TurnState.DONE
        await self._settle(req.user_id, turn)
        await self._remember(turn.session_id, req.user_id, original, cleaned, None)
        yield events.done(turn.usage, turn.cost, turn.session_id)

    # --- bookkeeping -------------------------------------------------------

    async def _settle(self, user_id: str, turn: Turn) -> None:
        """Commits the turn's usage at most once."""
        if turn.committed or turn.unlimited:
            return
        usage = turn.usage
        if not turn.answered and usage.is_zero():
            return
        turn.committed = True
        commit = asyncio.ensure_future(self.ledger.commit(user_id, usage.total(), turn.cost))
        try:
            await asyncio.shield(commit)
        except asyncio.CancelledError:
            logger.warning("Turn %s cancelled while committing usage; commit continues", turn.session_id)
            raise

    async def _record_agent_usage(self, agent_id: uuid.UUID) -> None:
        try:
            await self.agents.increment_usage(agent_id)
        except Exception:
            logger.exception("Could not record usage for agent %s", agent_id)

    async def _history(self, session_id: str) -> List[HistoryMessage]:
        try:
            return await self.conversations.recent_messages(session_id, self.settings.history_limit)
        except Exception:
            logger.exception("Could not load history for session %s", session_id)
            return []

    async def _remember(self, session_id: str, user_id: str, question: str, answer: str, agent_id: Optional[uuid.UUID]) -> None:
        try:
            await self.conversations.append_message(session_id, user_id, "user", question, agent_id)
            if answer:
                await self.conversations.append_message(session_id, user_id, "assistant", answer, agent_id)
        except Exception:
            logger.exception("Could not store conversation for session %s", session_id)

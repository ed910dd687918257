"""Wires the orchestration core to the database and the LLM gateway."""
from __future__ import annotations

from typing import AsyncIterator, List, Optional

from src.agentdesk.config import llm
from src.agentdesk.config.settings import Settings, get_settings
from src.agentdesk.orchestration.coordinator import ChatOrchestrator
from src.agentdesk.orchestration.creators import AgentCreator, SkillCreator
from src.agentdesk.orchestration.matcher import Matcher
from src.agentdesk.orchestration.quota import QuotaLedger
from src.agentdesk.orchestration.rate_limiter import BurstLimiter
from src.agentdesk.orchestration.registry import CapabilityRegistry
from src.agentdesk.orchestration.streamer import ResponseStreamer
from src.agentdesk.orchestration.types import GenerationOptions, HistoryMessage, ModelChunk
from src.database import database
from .stores import SessionFactory, SqlAgentStore, SqlConversationStore, SqlQuotaStore, SqlSkillStore

_burst_limiter: Optional[BurstLimiter] = None


def get_burst_limiter(settings: Settings) -> BurstLimiter:
    # one limiter per process so the window survives across requests
    global _burst_limiter
    if _burst_limiter is None:
        _burst_limiter = BurstLimiter(settings.burst_max_requests, settings.burst_window_seconds)
    return _burst_limiter


async def gateway_generator(
    message: str,
    system_prompt: str,
    history: List[HistoryMessage],
    opts: GenerationOptions,
) -> AsyncIterator[ModelChunk]:
    messages = [{"role": "system", "content": system_prompt}]
    messages.extend(m.model_dump() for m in history)
    messages.append({"role": "user", "content": message})
    async for chunk in llm.stream_chat("chatAnswer", messages, opts):
        yield chunk


def build_orchestrator(
    session_factory: Optional[SessionFactory] = None,
    settings: Optional[Settings] = None,
    oracle=llm.classify,
    generator=gateway_generator,
    json_call=llm.llm_json,
    burst: Optional[BurstLimiter] = None,
) -> ChatOrchestrator:
    session_factory = session_factory or database.get_session_factory()
    settings = settings or get_settings()
    agents = SqlAgentStore(session_factory)
    skills = SqlSkillStore(session_factory)
    return ChatOrchestrator(
        registry=CapabilityRegistry(agents, skills),
        matcher=Matcher(oracle, settings),
        streamer=ResponseStreamer(generator),
        ledger=QuotaLedger(SqlQuotaStore(session_factory)),
        agents=agents,
        conversations=SqlConversationStore(session_factory),
        agent_creator=AgentCreator(agents, json_call=json_call),
        skill_creator=SkillCreator(skills, json_call=json_call),
        settings=settings,
        burst=burst or get_burst_limiter(settings),
    )

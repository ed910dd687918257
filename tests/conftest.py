import os
import uuid
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional

# Keep the app's default engine away from any real database file
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite://")

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from src.agentdesk.config.settings import Settings
from src.agentdesk.orchestration.coordinator import ChatOrchestrator, TurnRequest
from src.agentdesk.orchestration.creators import AgentCreator, SkillCreator
from src.agentdesk.orchestration.matcher import Matcher
from src.agentdesk.orchestration.quota import QuotaLedger, as_utc
from src.agentdesk.orchestration.rate_limiter import BurstLimiter
from src.agentdesk.orchestration.registry import AgentView, CapabilityRegistry, SkillView
from src.agentdesk.orchestration.stores import AgentSpec, QuotaDeltas, QuotaWindowState, SkillSpec
from src.agentdesk.orchestration.streamer import ResponseStreamer
from src.agentdesk.orchestration.types import HistoryMessage, ModelChunk, OracleReply, TokenUsage
from src.database import models


# --- in-memory stores --------------------------------------------------------

class FakeAgentStore:
    def __init__(self):
        self.by_user: Dict[str, List[AgentView]] = {}
        self.usage_calls: List[uuid.UUID] = []
        self.created: List[AgentView] = []

    def add(self, user_id, name, description="", expertise=(), capabilities=(), system_prompt=""):
        agent = AgentView(
            id=uuid.uuid4(),
            name=name,
            description=description,
            expertise=list(expertise),
            capabilities=list(capabilities),
            system_prompt=system_prompt or f"You are {name}.",
        )
        self.by_user.setdefault(user_id, []).append(agent)
        return agent

    async def list_agents(self, user_id):
        return list(self.by_user.get(user_id, []))

    async def count_agents(self, user_id):
        return len(self.by_user.get(user_id, []))

    async def create_agent(self, user_id, spec: AgentSpec):
        agent = self.add(user_id, spec.name, spec.description, spec.expertise, spec.capabilities, spec.system_prompt)
        self.created.append(agent)
        return agent

    async def increment_usage(self, agent_id):
        self.usage_calls.append(agent_id)


class FakeSkillStore:
    def __init__(self):
        self.by_agent: Dict[uuid.UUID, List[SkillView]] = {}
        self.created: List[SkillView] = []

    def add(self, agent_id, name, description="", content="", tags=()):
        skill = SkillView(id=uuid.uuid4(), agent_id=agent_id, name=name, description=description, content=content, tags=list(tags))
        self.by_agent.setdefault(agent_id, []).append(skill)
        return skill

    async def list_skills(self, agent_id):
        return list(self.by_agent.get(agent_id, []))

    async def list_skills_for_agents(self, agent_ids):
        return {a: list(self.by_agent.get(a, [])) for a in agent_ids}

    async def create_skill(self, agent_id, spec: SkillSpec):
        skill = self.add(agent_id, spec.name, spec.description, spec.content, spec.tags)
        self.created.append(skill)
        return skill


class FakeQuotaStore:
    """Mirrors the SQL store: lazy hourly reset applied inside the increment."""

    def __init__(self):
        self.windows: Dict[tuple, QuotaWindowState] = {}
        self.increments: List[QuotaDeltas] = []
        self.fail_commits = False

    async def get_or_create_window(self, user_id, window_date):
        key = (user_id, window_date)
        if key not in self.windows:
            self.windows[key] = QuotaWindowState(user_id=user_id, window_date=window_date)
        return self.windows[key].model_copy()

    async def atomic_increment(self, user_id, window_date, deltas, now):
        if self.fail_commits:
            raise RuntimeError("database is locked")
        self.increments.append(deltas)
        await self.get_or_create_window(user_id, window_date)
        w = self.windows[(user_id, window_date)]
        last = as_utc(w.last_request_at)
        if last is None or now - last >= timedelta(hours=1):
            requests = deltas.requests
        else:
            requests = w.requests_in_current_hour + deltas.requests
        self.windows[(user_id, window_date)] = w.model_copy(update={
            "tokens_used": w.tokens_used + deltas.tokens,
            "cost_accumulated": w.cost_accumulated + deltas.cost,
            "requests_in_current_hour": requests,
            "last_request_at": now,
        })

    def seed(self, user_id, window_date, **fields):
        self.windows[(user_id, window_date)] = QuotaWindowState(user_id=user_id, window_date=window_date, **fields)


class FakeConversationStore:
    def __init__(self):
        self.messages: Dict[str, List[tuple]] = {}

    async def append_message(self, session_id, user_id, role, content, agent_id=None):
        self.messages.setdefault(session_id, []).append((role, content, agent_id))

    async def recent_messages(self, session_id, limit):
        rows = self.messages.get(session_id, [])[-limit:]
        return [HistoryMessage(role=r, content=c) for r, c, _ in rows]


# --- scripted collaborators --------------------------------------------------

def tool_reply(index, confidence, reasoning="", suggest_agent=False, suggest_skill=False, suggestion=None, usage=None):
    args = {
        "matchedAgentIndex": index,
        "confidence": confidence,
        "reasoning": reasoning,
        "suggestNewAgent": suggest_agent,
        "suggestNewSkill": suggest_skill,
    }
    if suggestion is not None:
        args["suggestion"] = suggestion
    return OracleReply(
        tool_name="match_agent_with_recommendation",
        arguments=args,
        usage=usage or TokenUsage(input=300, output=40),
    )


class ScriptedOracle:
    def __init__(self, reply: Optional[OracleReply] = None, exc: Optional[Exception] = None):
        self.reply = reply
        self.exc = exc
        self.calls: List[dict] = []

    async def __call__(self, **kwargs):
        self.calls.append(kwargs)
        if self.exc is not None:
            raise self.exc
        return self.reply


class ScriptedGenerator:
    def __init__(self, deltas=("Hello", " there."), usage=TokenUsage(input=120, output=30), fail_after=None):
        self.deltas = list(deltas)
        self.usage = usage
        self.fail_after = fail_after
        self.calls: List[dict] = []

    async def __call__(self, message, system_prompt, history, opts):
        self.calls.append({"message": message, "system_prompt": system_prompt, "history": history, "opts": opts})
        for i, delta in enumerate(self.deltas):
            if self.fail_after is not None and i >= self.fail_after:
                raise RuntimeError("upstream connection reset")
            yield ModelChunk(text=delta)
        if self.usage is not None:
            yield ModelChunk(usage=self.usage)


async def fake_json_call(task_name, prompt, temperature=None, api_key=None):
    if task_name == "generateAgentProfile":
        return {
            "name": "Chef Remy",
            "description": "Cooking companion",
            "expertise": ["cooking", "recipes"],
            "capabilities": ["Suggest recipes"],
            "systemPrompt": "You are Chef Remy, a friendly cook.",
        }
    return {"description": "Regional cooking", "tags": ["cooking"], "content": "# Skill\nCook well."}


class Harness:
    def __init__(self, oracle=None, generator=None, settings=None, burst=None):
        self.settings = settings or Settings()
        self.agents = FakeAgentStore()
        self.skills = FakeSkillStore()
        self.quota = FakeQuotaStore()
        self.conversations = FakeConversationStore()
        self.oracle = oracle if oracle is not None else ScriptedOracle(exc=RuntimeError("gateway offline"))
        self.generator = generator or ScriptedGenerator()
        self.ledger = QuotaLedger(self.quota)
        self.orchestrator = ChatOrchestrator(
            registry=CapabilityRegistry(self.agents, self.skills),
            matcher=Matcher(self.oracle, self.settings),
            streamer=ResponseStreamer(self.generator),
            ledger=self.ledger,
            agents=self.agents,
            conversations=self.conversations,
            agent_creator=AgentCreator(self.agents, json_call=fake_json_call),
            skill_creator=SkillCreator(self.skills, json_call=fake_json_call),
            settings=self.settings,
            burst=burst,
        )

    async def run(self, user_id="u1", message="", **fields):
        admission = await self.orchestrator.admit(user_id, fields.get("custom_api_key"))
        req = TurnRequest(user_id=user_id, message=message, **fields)
        return [event async for event in self.orchestrator.run_turn(req, admission)]


@pytest.fixture
def harness():
    return Harness()


def event_types(events):
    return [e.type for e in events]


def today_key():
    return datetime.now(timezone.utc).strftime("%Y-%m-%d")


# --- database ----------------------------------------------------------------

@pytest_asyncio.fixture
async def session_factory():
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(models.Base.metadata.create_all)
    factory = async_sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    yield factory
    await engine.dispose()

import asyncio
import uuid
from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from src.agentdesk.config.settings import QuotaLimits
from src.agentdesk.orchestration.quota import QuotaLedger
from src.agentdesk.orchestration.registry import CapabilityRegistry
from src.agentdesk.orchestration.stores import AgentSpec, QuotaDeltas, SkillSpec
from src.database import crud, models, schemas
from src.services.stores import SqlAgentStore, SqlConversationStore, SqlQuotaStore, SqlSkillStore

NOW = datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc)
DAY = "2026-03-10"


@pytest.mark.asyncio
async def test_agent_and_skill_crud(session_factory):
    async with session_factory() as db:
        # 1. Arrange
        agent = await crud.create_agent(db, "u1", schemas.AgentCreate(name="Weather Bot", expertise=["weather"]))
        await crud.create_agent(db, "u2", schemas.AgentCreate(name="Other"))
        await crud.create_skill(db, agent.id, schemas.SkillCreate(name="European Weather", tags=["europe"]))
        await db.commit()

        # 2. Act
        mine = await crud.list_agents(db, "u1")
        skills = await crud.list_skills_for_agents(db, [agent.id])
        await crud.increment_agent_usage(db, agent.id, NOW)
        await db.commit()
        refreshed = await crud.get_agent(db, agent.id, user_id="u1")

        # 3. Assert
        assert [a.name for a in mine] == ["Weather Bot"]
        assert await crud.count_agents(db, "u1") == 1
        assert [s.name for s in skills[agent.id]] == ["European Weather"]
        assert await crud.get_agent(db, agent.id, user_id="u2") is None
        assert refreshed.questions_handled == 1
        assert refreshed.last_used_at is not None


@pytest.mark.asyncio
async def test_quota_window_is_created_once_and_incremented_in_place(session_factory):
    async with session_factory() as db:
        first = await crud.get_or_create_quota_window(db, "u1", DAY)
        again = await crud.get_or_create_quota_window(db, "u1", DAY)
        assert first.tokens_used == 0 and again.window_date == DAY

        assert await crud.increment_quota_window(db, "u1", DAY, 120, 0.001, NOW) == 1
        assert await crud.increment_quota_window(db, "u1", DAY, 30, 0.002, NOW + timedelta(minutes=5)) == 1
        # an hour of silence restarts the hourly counter
        assert await crud.increment_quota_window(db, "u1", DAY, 10, 0.0, NOW + timedelta(hours=2)) == 1
        await db.commit()

        window = await crud.get_quota_window(db, "u1", DAY)
        assert window.tokens_used == 160
        assert window.cost_accumulated == pytest.approx(0.003)
        assert window.requests_in_current_hour == 1

        assert await crud.increment_quota_window(db, "nobody", DAY, 1, 0.0, NOW) == 0


@pytest.mark.asyncio
async def test_recent_messages_are_oldest_first_and_limited(session_factory):
    async with session_factory() as db:
        for i in range(5):
            await crud.append_message(db, "s1", "u1", "user" if i % 2 == 0 else "assistant", f"m{i}")
        await crud.append_message(db, "s2", "u1", "user", "elsewhere")
        await db.commit()

        recent = await crud.get_recent_messages(db, "s1", limit=3)
        assert [m.content for m in recent] == ["m2", "m3", "m4"]


@pytest.mark.asyncio
async def test_sessions_are_listed_read_and_deleted_per_user(session_factory):
    async with session_factory() as db:
        # 1. Arrange: two sessions for u1, one for u2
        agent_id = uuid.uuid4()
        await crud.append_message(db, "s1", "u1", "user", "weather in Madrid", agent_id)
        await crud.append_message(db, "s1", "u1", "assistant", "Sunny.", agent_id)
        await crud.append_message(db, "s2", "u1", "user", "roast chicken")
        await crud.append_message(db, "s3", "u2", "user", "not yours")
        await db.commit()

        # 2. Act
        sessions = await crud.list_sessions(db, "u1")
        grouped = await crud.get_messages_for_sessions(db, ["s1", "s3"], "u1")
        questions = await crud.get_agent_questions(db, agent_id)

        # 3. Assert
        assert [(s.session_id, s.message_count) for s in sessions] == [("s2", 1), ("s1", 2)]
        assert [m.content for m in await crud.get_session_messages(db, "s1", "u1")] == ["weather in Madrid", "Sunny."]
        assert await crud.get_session_messages(db, "s3", "u1") == []
        assert [m.role for m in grouped["s1"]] == ["user", "assistant"]
        assert grouped["s3"] == []
        assert questions == ["weather in Madrid"]

        assert await crud.delete_session(db, "s3", "u1") == 0
        assert await crud.delete_session(db, "s1", "u1") == 2
        await db.commit()
        assert [s.session_id for s in await crud.list_sessions(db, "u1")] == ["s2"]


@pytest.mark.asyncio
async def test_sql_stores_feed_the_registry(session_factory):
    agents = SqlAgentStore(session_factory, clock=lambda: NOW)
    skills = SqlSkillStore(session_factory)

    agent = await agents.create_agent("u1", AgentSpec(name="Weather Bot", expertise=["weather"], system_prompt="You forecast."))
    await skills.create_skill(agent.id, SkillSpec(name="European Weather", content="# European Weather"))
    await agents.increment_usage(agent.id)

    view = await CapabilityRegistry(agents, skills).load("u1")

    assert [a.name for a in view.agents] == ["Weather Bot"]
    assert view.agents[0].questions_handled == 1
    assert [s.name for s in view.skills_for(agent.id)] == ["European Weather"]
    assert (await CapabilityRegistry(agents, skills).load("u2")).is_empty


@pytest.mark.asyncio
async def test_sql_conversation_store_round_trip(session_factory):
    store = SqlConversationStore(session_factory)
    await store.append_message("s1", "u1", "user", "hello")
    await store.append_message("s1", "u1", "assistant", "hi there")

    history = await store.recent_messages("s1", limit=20)

    assert [(m.role, m.content) for m in history] == [("user", "hello"), ("assistant", "hi there")]


@pytest.mark.asyncio
async def test_ledger_over_sql_store_overshoots_once(session_factory):
    store = SqlQuotaStore(session_factory)
    ledger = QuotaLedger(store, clock=lambda: NOW)
    limits = QuotaLimits()

    await store.atomic_increment("u1", DAY, QuotaDeltas(tokens=9_999, cost=0.0), NOW - timedelta(hours=3))

    assert (await ledger.check_and_reserve("u1", limits)).allowed
    assert await ledger.commit("u1", 50, 0.0001)

    window = await store.get_or_create_window("u1", DAY)
    assert window.tokens_used == 10_049
    assert window.last_request_at == NOW
    denied = await ledger.check_and_reserve("u1", limits)
    assert not denied.allowed and denied.limit_name == "tokens"


@pytest_asyncio.fixture
async def file_session_factory(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'quota.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(models.Base.metadata.create_all)
    yield async_sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    await engine.dispose()


@pytest.mark.asyncio
async def test_concurrent_commits_are_not_lost(file_session_factory):
    store = SqlQuotaStore(file_session_factory)
    ledger = QuotaLedger(store, clock=lambda: NOW)
    await store.get_or_create_window("u1", DAY)

    results = await asyncio.gather(*(ledger.commit("u1", 100, 0.01) for _ in range(10)))

    assert all(results)
    window = await store.get_or_create_window("u1", DAY)
    assert window.tokens_used == 1_000
    assert window.cost_accumulated == pytest.approx(0.1)
    assert window.requests_in_current_hour == 10

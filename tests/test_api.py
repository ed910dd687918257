import json
import uuid
from unittest.mock import AsyncMock, patch

import pytest
import pytest_asyncio
from asgi_lifespan import LifespanManager
from httpx import ASGITransport, AsyncClient

from conftest import Harness, ScriptedOracle, today_key, tool_reply
from server import app
from src.agentdesk.config.settings import Settings
from src.api.deps import get_app_settings, get_orchestrator
from src.database import crud
from src.database.database import get_db

HEADERS = {"X-User-Id": "u1"}


def parse_sse(body: str):
    events = []
    for block in body.split("\n\n"):
        block = block.strip()
        if block.startswith("data: "):
            events.append(json.loads(block[len("data: "):]))
    return events


@pytest_asyncio.fixture
async def api(session_factory):
    harness = Harness()
    settings = Settings()

    async def override_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_orchestrator] = lambda: harness.orchestrator
    app.dependency_overrides[get_db] = override_db
    app.dependency_overrides[get_app_settings] = lambda: settings
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client, harness, settings
    app.dependency_overrides.clear()


@pytest.mark.asyncio
async def test_health_runs_with_lifespan(monkeypatch):
    monkeypatch.delenv("AGENTDESK_GATEWAY_TOKEN", raising=False)
    async with LifespanManager(app) as manager:
        async with AsyncClient(transport=ASGITransport(app=manager.app), base_url="http://test") as client:
            resp = await client.get("/api/health")
    assert resp.status_code == 200
    assert resp.json() == {"status": "ok", "llmConfigured": False}


@pytest.mark.asyncio
async def test_chat_streams_suggestion_then_resumes_with_decision(api):
    client, harness, _ = api

    # 1. First turn stops at the agent suggestion
    resp = await client.post("/api/chat", json={"message": "help me"}, headers=HEADERS)
    assert resp.status_code == 200
    assert resp.headers["content-type"].startswith("text/event-stream")
    events = parse_sse(resp.text)
    assert [e["type"] for e in events] == ["agent_suggestion", "waiting_for_decision"]
    token = events[0]["resumeToken"]

    # 2. The decision replays the original message
    resp = await client.post(
        "/api/chat",
        json={"decision": {"resumeToken": token, "action": "accept"}},
        headers=HEADERS,
    )
    events = parse_sse(resp.text)
    assert [e["type"] for e in events] == ["agent_created", "content", "content", "done"]
    assert "".join(e["text"] for e in events if e["type"] == "content") == "Hello there."
    assert events[-1]["usage"]["tokens"]["output"] == 30
    assert harness.agents.created[0].name == "Chef Remy"


@pytest.mark.asyncio
async def test_chat_rejects_bad_requests(api):
    client, _, settings = api

    resp = await client.post("/api/chat", json={"message": "   "}, headers=HEADERS)
    assert resp.status_code == 422

    resp = await client.post("/api/chat", json={"decision": {"resumeToken": "garbage", "action": "accept"}}, headers=HEADERS)
    assert resp.status_code == 400

    resp = await client.post("/api/chat", json={"message": "hi"})
    assert resp.status_code == 401

    settings.trial_require_auth = False
    resp = await client.post("/api/chat", json={"message": "hi"})
    assert resp.status_code == 200


@pytest.mark.asyncio
async def test_chat_returns_429_when_trial_is_used_up(api):
    client, harness, _ = api
    harness.quota.seed("u1", today_key(), tokens_used=10_000)

    resp = await client.post("/api/chat", json={"message": "help me"}, headers=HEADERS)

    assert resp.status_code == 429
    body = resp.json()
    assert body["trialLimitReached"] is True
    assert body["limitType"] == "trial"
    assert body["limitName"] == "tokens"
    assert "resetTime" in body

    # a custom key bypasses the trial
    resp = await client.post("/api/chat", json={"message": "help me", "customApiKey": "sk-user"}, headers=HEADERS)
    assert resp.status_code == 200


@pytest.mark.asyncio
async def test_usage_summary(api):
    client, harness, _ = api
    harness.quota.seed("u1", today_key(), tokens_used=2_500, cost_accumulated=0.1)

    resp = await client.get("/api/usage", headers=HEADERS)
    assert resp.status_code == 200
    body = resp.json()
    assert body["tokens"]["used"] == 2_500
    assert body["tokens"]["limit"] == 10_000
    assert body["unlimited"] is False

    resp = await client.get("/api/usage", headers={**HEADERS, "X-Custom-Api-Key": "sk-user"})
    assert resp.json()["unlimited"] is True

    assert (await client.get("/api/usage")).status_code == 401


@pytest.mark.asyncio
async def test_agents_and_skills_endpoints(api):
    client, _, settings = api

    resp = await client.post("/api/agents/", json={"name": "Weather Bot", "expertise": ["weather"]}, headers=HEADERS)
    assert resp.status_code == 201, resp.text
    agent = resp.json()
    assert agent["user_id"] == "u1"

    resp = await client.post(f"/api/agents/{agent['id']}/skills", json={"name": "European Weather"}, headers=HEADERS)
    assert resp.status_code == 201

    listed = (await client.get("/api/agents/", headers=HEADERS)).json()
    assert [a["name"] for a in listed] == ["Weather Bot"]
    skills = (await client.get(f"/api/agents/{agent['id']}/skills", headers=HEADERS)).json()
    assert [s["name"] for s in skills] == ["European Weather"]

    # other users cannot see it
    resp = await client.get(f"/api/agents/{agent['id']}", headers={"X-User-Id": "u2"})
    assert resp.status_code == 404
    resp = await client.get(f"/api/agents/{uuid.uuid4()}", headers=HEADERS)
    assert resp.status_code == 404

    settings.max_agents_per_user = 1
    resp = await client.post("/api/agents/", json={"name": "Second"}, headers=HEADERS)
    assert resp.status_code == 403


@pytest.mark.asyncio
async def test_llm_usage_metrics(api):
    client, _, _ = api
    resp = await client.get("/api/metrics/llm-usage")
    assert resp.status_code == 200
    assert {"calls", "failures", "providers"} <= set(resp.json())


@pytest.mark.asyncio
async def test_conversation_history_endpoints(api, session_factory):
    client, _, _ = api
    async with session_factory() as db:
        await crud.append_message(db, "s1", "u1", "user", "What is the weather like in Madrid this weekend, and should I pack an umbrella?")
        await crud.append_message(db, "s1", "u1", "assistant", "Sunny and 25 degrees.")
        await crud.append_message(db, "s2", "u2", "user", "someone else")
        await db.commit()

    # 1. Listing shows only the caller's sessions
    resp = await client.get("/api/conversations", headers=HEADERS)
    assert resp.status_code == 200
    listed = resp.json()
    assert [c["id"] for c in listed] == ["s1"]
    assert listed[0]["title"] == "What is the weather like in Madrid this weekend, a..."
    assert listed[0]["preview"] == "Sunny and 25 degrees."
    assert listed[0]["message_count"] == 2

    # 2. Reading a session returns its messages in order
    resp = await client.get("/api/conversations/s1", headers=HEADERS)
    assert resp.status_code == 200
    assert [m["role"] for m in resp.json()["messages"]] == ["user", "assistant"]
    assert (await client.get("/api/conversations/s2", headers=HEADERS)).status_code == 404

    # 3. Deleting is scoped to the owner
    assert (await client.delete("/api/conversations/s2", headers=HEADERS)).status_code == 404
    assert (await client.delete("/api/conversations/s1", headers=HEADERS)).status_code == 204
    assert (await client.get("/api/conversations", headers=HEADERS)).json() == []
    assert (await client.get("/api/conversations")).status_code == 401


@pytest.mark.asyncio
@patch("src.agentdesk.config.llm.llm_json", new_callable=AsyncMock)
async def test_skill_suggestions_endpoint(mock_llm_json, api, session_factory):
    client, _, _ = api
    mock_llm_json.return_value = {"suggestions": [
        {"name": "Asian Weather", "description": "Forecasts for Asia", "category": "Weather"},
    ]}
    agent = (await client.post("/api/agents/", json={"name": "Weather Bot", "expertise": ["weather"]}, headers=HEADERS)).json()
    async with session_factory() as db:
        await crud.append_message(db, "s1", "u1", "user", "weather in Tokyo", uuid.UUID(agent["id"]))
        await db.commit()

    resp = await client.post(f"/api/agents/{agent['id']}/skills/suggest", headers={**HEADERS, "X-Custom-Api-Key": "sk-user"})

    assert resp.status_code == 200, resp.text
    body = resp.json()
    assert body["existing_skill_count"] == 0
    assert [s["name"] for s in body["suggestions"]] == ["Asian Weather"]
    assert mock_llm_json.await_args.args[0] == "suggestSkills"
    assert "weather in Tokyo" in mock_llm_json.await_args.args[1]
    assert mock_llm_json.await_args.kwargs["api_key"] == "sk-user"

    resp = await client.post(f"/api/agents/{agent['id']}/skills/suggest", headers={"X-User-Id": "u2"})
    assert resp.status_code == 404

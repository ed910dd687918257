import uuid
from unittest.mock import AsyncMock, patch

import pytest

from conftest import FakeAgentStore, FakeSkillStore, ScriptedGenerator, fake_json_call
from src.agentdesk.orchestration.creators import (
    AgentCreator,
    SkillCreator,
    common_skills_for_domain,
    fallback_agent,
    generate_agent_profile,
    generate_skill,
    suggest_skills,
)
from src.agentdesk.orchestration.errors import GatewayError
from src.agentdesk.orchestration.registry import AgentView, SkillView
from src.agentdesk.orchestration.streamer import ResponseStreamer, StreamOutcome
from src.agentdesk.orchestration.types import GenerationOptions, ModelChunk, TokenUsage


async def collect(streamer, outcome):
    return [e async for e in streamer.stream("hi", "system", [], GenerationOptions(), outcome)]


# --- streaming ---

@pytest.mark.asyncio
async def test_stream_sanitizes_each_delta_and_tracks_usage():
    generator = ScriptedGenerator(deltas=["**Sunny** ", "`25C`", "***"], usage=TokenUsage(input=100, output=12))
    outcome = StreamOutcome()

    events = await collect(ResponseStreamer(generator), outcome)

    # the marker-only delta produces no event
    assert [e.data["text"] for e in events] == ["Sunny ", "25C"]
    assert outcome.completed and not outcome.failed
    assert outcome.text == "Sunny 25C"
    assert outcome.usage == TokenUsage(input=100, output=12)


@pytest.mark.asyncio
async def test_stream_keeps_highest_usage_snapshot():
    async def generator(message, system_prompt, history, opts):
        yield ModelChunk(text="a", usage=TokenUsage(input=50, output=1))
        yield ModelChunk(text="b", usage=TokenUsage(input=50, output=2))
        yield ModelChunk(usage=TokenUsage(input=50, output=2))

    outcome = StreamOutcome()
    await collect(ResponseStreamer(generator), outcome)
    assert outcome.usage == TokenUsage(input=50, output=2)


@pytest.mark.asyncio
async def test_stream_failure_ends_with_error_and_no_completion():
    generator = ScriptedGenerator(deltas=["Partial", " answer"], fail_after=1)
    outcome = StreamOutcome()

    events = await collect(ResponseStreamer(generator), outcome)

    assert [e.type for e in events] == ["content", "error"]
    assert "upstream connection reset" in events[-1].data["error"]
    assert outcome.failed and not outcome.completed
    assert outcome.text == "Partial"


# --- creation ---

AGENT = AgentView(id=uuid.uuid4(), name="Weather Bot", expertise=["weather"])


@pytest.mark.asyncio
async def test_agent_profile_from_model_json():
    spec = await generate_agent_profile("Cooking", "how long to roast a chicken", json_call=fake_json_call)
    assert spec.name == "Chef Remy"
    assert spec.expertise == ["cooking", "recipes"]
    assert spec.system_prompt.startswith("You are Chef Remy")


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "failure",
    [ValueError("LLM did not return valid JSON."), GatewayError("LLM gateway not configured", None, "not_configured")],
)
async def test_agent_profile_falls_back_on_failure(failure):
    async def broken(*args, **kwargs):
        raise failure

    spec = await generate_agent_profile("marine biology", "what eats krill", json_call=broken)
    assert spec == fallback_agent("marine biology", "what eats krill")
    assert spec.name == "Marine biology Assistant"
    assert spec.expertise == ["marine biology"]


@pytest.mark.asyncio
async def test_agent_profile_falls_back_on_incomplete_json():
    async def partial(*args, **kwargs):
        return {"name": "Nameless"}

    spec = await generate_agent_profile("Gardening", json_call=partial)
    assert spec.name == "Gardening Assistant"


@pytest.mark.asyncio
async def test_skill_document_and_fallback():
    spec = await generate_skill(AGENT, "Asian Weather", "weather in Tokyo", json_call=fake_json_call)
    assert spec.name == "Asian Weather"
    assert spec.content.startswith("# Skill")

    async def broken(*args, **kwargs):
        raise ValueError("bad json")

    fallback = await generate_skill(AGENT, "Asian Weather", json_call=broken)
    assert fallback.content.startswith("# Asian Weather")
    assert fallback.tags == ["asian", "weather"]
    assert fallback.description == "Asian Weather knowledge for Weather Bot"


@pytest.mark.asyncio
async def test_creators_persist_through_stores():
    agents, skills = FakeAgentStore(), FakeSkillStore()

    created = await AgentCreator(agents, json_call=fake_json_call).create("u1", "Cooking", "roast chicken")
    skill = await SkillCreator(skills, json_call=fake_json_call).create(created, "Baking")

    assert await agents.count_agents("u1") == 1
    assert (await skills.list_skills(created.id))[0].id == skill.id


@pytest.mark.asyncio
@patch("src.agentdesk.config.llm.llm_json", new_callable=AsyncMock)
async def test_generation_defaults_to_the_gateway_json_call(mock_llm_json):
    mock_llm_json.return_value = {"description": "Tides", "tags": ["tides"], "content": "# Tides"}

    spec = await generate_skill(AGENT, "Tide Tables", "when is high tide")

    mock_llm_json.assert_awaited_once()
    assert mock_llm_json.await_args.args[0] == "generateSkillContent"
    assert spec.content == "# Tides"


# --- skill suggestions ---

def existing_skill(name):
    return SkillView(id=uuid.uuid4(), agent_id=AGENT.id, name=name)


@pytest.mark.asyncio
async def test_skill_suggestions_skip_known_and_unusable_entries():
    # 1. Arrange: one duplicate, one incomplete entry, two new ideas
    seen = {}

    async def json_call(task_name, prompt, temperature=None, api_key=None):
        seen.update(task=task_name, prompt=prompt, api_key=api_key)
        return {"suggestions": [
            {"name": "European Weather", "description": "Again", "category": "Weather"},
            {"name": "Storm Alerts"},
            {"name": "Asian Weather", "description": "Forecasts for Asia", "category": "Weather", "priority": "high"},
            {"name": "Tide Tables", "description": "High and low tides", "category": "Marine", "estimatedUsefulness": 0.6},
        ]}

    # 2. Act
    ideas = await suggest_skills(
        AGENT, [existing_skill("European Weather")], ["weather in Tokyo", "  "], api_key="sk-user", json_call=json_call,
    )

    # 3. Assert
    assert [i.name for i in ideas] == ["Asian Weather", "Tide Tables"]
    assert ideas[0].priority == "high"
    assert seen["task"] == "suggestSkills"
    assert seen["api_key"] == "sk-user"
    assert "1. weather in Tokyo" in seen["prompt"]
    assert "European Weather" in seen["prompt"]


@pytest.mark.asyncio
async def test_skill_suggestions_fall_back_to_domain_list():
    async def broken(*args, **kwargs):
        raise GatewayError("LLM gateway not configured", None, "not_configured")

    fishing = AgentView(id=uuid.uuid4(), name="Angler", expertise=["fly fishing"])
    ideas = await suggest_skills(fishing, [], json_call=broken)
    assert [i.name for i in ideas] == ["Seasonal Patterns", "Bait Selection", "Tackle Setup"]

    # nothing new from the model also falls back, minus what the agent already has
    async def only_duplicates(*args, **kwargs):
        return {"suggestions": [{"name": "Bait Selection", "description": "Bait", "category": "Fishing"}]}

    ideas = await suggest_skills(
        fishing, [SkillView(id=uuid.uuid4(), agent_id=fishing.id, name="Bait Selection")], json_call=only_duplicates,
    )
    assert [i.name for i in ideas] == ["Seasonal Patterns", "Tackle Setup"]


def test_common_skills_for_unknown_domain_are_generic():
    ideas = common_skills_for_domain("Astronomy")
    assert [i.name for i in ideas] == [
        "Astronomy Fundamentals",
        "Advanced Astronomy Techniques",
        "Astronomy Best Practices",
    ]
    assert all(i.category == "Astronomy" for i in ideas)
    assert common_skills_for_domain("Python programming")[0].name == "Error Handling"

import uuid
from typing import List, Optional
from fastapi import APIRouter, Depends, Header, HTTPException, status
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from src.agentdesk.config.settings import Settings
from src.agentdesk.orchestration.creators import RECENT_QUESTIONS_IN_PROMPT, SkillIdea, suggest_skills
from src.agentdesk.orchestration.registry import AgentView, SkillView
from src.database import crud, schemas
from src.database.database import get_db
from .deps import get_app_settings, require_user

router = APIRouter(
    prefix="/api/agents",
    tags=["agents"],
)

@router.get("/", response_model=List[schemas.Agent])
async def list_agents_endpoint(user_id: str = Depends(require_user), db: AsyncSession = Depends(get_db)):
    agents = await crud.list_agents(db, user_id)
    return [schemas.Agent.model_validate(a) for a in agents]

@router.post("/", response_model=schemas.Agent, status_code=status.HTTP_201_CREATED)
async def create_agent_endpoint(
    agent: schemas.AgentCreate,
    user_id: str = Depends(require_user),
    db: AsyncSession = Depends(get_db),
    settings: Settings = Depends(get_app_settings),
):
    """
    Create an agent manually. Users are capped at max_agents_per_user agents.
    """
    if await crud.count_agents(db, user_id) >= settings.max_agents_per_user:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail=f"Agent limit reached ({settings.max_agents_per_user})",
        )
    db_agent = await crud.create_agent(db, user_id, agent)
    result = schemas.Agent.model_validate(db_agent)
    await db.commit()
    return result

@router.get("/{agent_id}", response_model=schemas.Agent)
async def read_agent_endpoint(agent_id: uuid.UUID, user_id: str = Depends(require_user), db: AsyncSession = Depends(get_db)):
    db_agent = await crud.get_agent(db, agent_id, user_id=user_id)
    if db_agent is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Agent not found")
    return schemas.Agent.model_validate(db_agent)

# --- Skills ---

@router.get("/{agent_id}/skills", response_model=List[schemas.Skill])
async def list_skills_endpoint(agent_id: uuid.UUID, user_id: str = Depends(require_user), db: AsyncSession = Depends(get_db)):
    if await crud.get_agent(db, agent_id, user_id=user_id) is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Agent not found")
    skills = await crud.list_skills(db, agent_id)
    return [schemas.Skill.model_validate(s) for s in skills]

@router.post("/{agent_id}/skills", response_model=schemas.Skill, status_code=status.HTTP_201_CREATED)
async def create_skill_endpoint(
    agent_id: uuid.UUID,
    skill: schemas.SkillCreate,
    user_id: str = Depends(require_user),
    db: AsyncSession = Depends(get_db),
):
    if await crud.get_agent(db, agent_id, user_id=user_id) is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Agent not found")
    db_skill = await crud.create_skill(db, agent_id, skill)
    result = schemas.Skill.model_validate(db_skill)
    await db.commit()
    return result

class SkillSuggestions(BaseModel):
    agent_id: uuid.UUID
    existing_skill_count: int
    suggestions: List[SkillIdea]

@router.post("/{agent_id}/skills/suggest", response_model=SkillSuggestions)
async def suggest_skills_endpoint(
    agent_id: uuid.UUID,
    user_id: str = Depends(require_user),
    x_custom_api_key: Optional[str] = Header(None),
    db: AsyncSession = Depends(get_db),
):
    """
    Propose skills the agent does not have yet, informed by the questions it
    has recently answered. Nothing is created; accepted ideas go through
    POST /{agent_id}/skills.
    """
    db_agent = await crud.get_agent(db, agent_id, user_id=user_id)
    if db_agent is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Agent not found")
    existing = [SkillView.model_validate(s) for s in await crud.list_skills(db, agent_id)]
    questions = await crud.get_agent_questions(db, agent_id, limit=RECENT_QUESTIONS_IN_PROMPT)
    ideas = await suggest_skills(
        AgentView.model_validate(db_agent), existing, questions, api_key=x_custom_api_key,
    )
    return SkillSuggestions(agent_id=agent_id, existing_skill_count=len(existing), suggestions=ideas)

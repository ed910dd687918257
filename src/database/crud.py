import uuid
import datetime
from typing import Dict, List, Sequence
from sqlalchemy import update, case, delete, func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select
from . import models, schemas

# --- Agent CRUD operations ---

async def list_agents(db: AsyncSession, user_id: str) -> List[models.Agent]:
    query = (
        select(models.Agent)
        .filter(models.Agent.user_id == user_id)
        .order_by(models.Agent.created_at, models.Agent.name)
    )
    result = await db.execute(query)
    return list(result.scalars().all())

async def get_agent(db: AsyncSession, agent_id: uuid.UUID, user_id: str | None = None) -> models.Agent | None:
    query = select(models.Agent).filter(models.Agent.id == agent_id)
    if user_id is not None:
        query = query.filter(models.Agent.user_id == user_id)
    result = await db.execute(query)
    return result.scalars().first()

async def count_agents(db: AsyncSession, user_id: str) -> int:
    result = await db.execute(select(func.count(models.Agent.id)).filter(models.Agent.user_id == user_id))
    return int(result.scalar_one())

async def create_agent(db: AsyncSession, user_id: str, agent: schemas.AgentCreate) -> models.Agent:
    """Creates a new agent in the session. Does not commit."""
    db_agent = models.Agent(
        user_id=user_id,
        name=agent.name,
        description=agent.description,
        expertise=list(agent.expertise),
        capabilities=list(agent.capabilities),
        system_prompt=agent.system_prompt,
        questions_handled=0,
    )
    db.add(db_agent)
    await db.flush()
    await db.refresh(db_agent)
    return db_agent

async def increment_agent_usage(db: AsyncSession, agent_id: uuid.UUID, now: datetime.datetime) -> None:
    """Bumps questions_handled in a single UPDATE. Does not commit."""
    stmt = (
        update(models.Agent)
        .where(models.Agent.id == agent_id)
        .values(questions_handled=models.Agent.questions_handled + 1, last_used_at=now)
    )
    await db.execute(stmt)

# --- Skill CRUD operations ---

async def list_skills(db: AsyncSession, agent_id: uuid.UUID) -> List[models.Skill]:
    query = (
        select(models.Skill)
        .filter(models.Skill.agent_id == agent_id)
        .order_by(models.Skill.created_at, models.Skill.name)
    )
    result = await db.execute(query)
    return list(result.scalars().all())

async def list_skills_for_agents(db: AsyncSession, agent_ids: Sequence[uuid.UUID]) -> Dict[uuid.UUID, List[models.Skill]]:
    """Groups the skills of several agents by agent id in one query."""
    grouped: Dict[uuid.UUID, List[models.Skill]] = {agent_id: [] for agent_id in agent_ids}
    if not agent_ids:
        return grouped
    query = (
        select(models.Skill)
        .filter(models.Skill.agent_id.in_(list(agent_ids)))
        .order_by(models.Skill.created_at, models.Skill.name)
    )
    result = await db.execute(query)
    for skill in result.scalars().all():
        grouped.setdefault(skill.agent_id, []).append(skill)
    return grouped

async def create_skill(db: AsyncSession, agent_id: uuid.UUID, skill: schemas.SkillCreate) -> models.Skill:
    """Creates a skill for an agent. Does not commit."""
    db_skill = models.Skill(
        agent_id=agent_id,
        name=skill.name,
        description=skill.description,
        content=skill.content,
        tags=list(skill.tags),
    )
    db.add(db_skill)
    await db.flush()
    await db.refresh(db_skill)
    return db_skill

# --- Quota window operations ---

def _insert_ignore(db: AsyncSession):
    dialect = db.get_bind().dialect.name
    if dialect == "postgresql":
        from sqlalchemy.dialects.postgresql import insert
    elif dialect == "sqlite":
        from sqlalchemy.dialects.sqlite import insert
    else:
        return None
    return insert(models.QuotaWindow).on_conflict_do_nothing(
        index_elements=[models.QuotaWindow.user_id, models.QuotaWindow.window_date]
    )

async def get_quota_window(db: AsyncSession, user_id: str, window_date: str) -> models.QuotaWindow | None:
    query = select(models.QuotaWindow).filter(
        models.QuotaWindow.user_id == user_id,
        models.QuotaWindow.window_date == window_date,
    )
    result = await db.execute(query.execution_options(populate_existing=True))
    return result.scalars().first()

async def get_or_create_quota_window(db: AsyncSession, user_id: str, window_date: str) -> models.QuotaWindow:
    """Loads the window for (user, day), inserting a zeroed row if none exists.

    Safe under concurrent first requests: the insert is conflict-tolerant and the
    row is always re-read afterwards. Does not commit.
    """
    existing = await get_quota_window(db, user_id, window_date)
    if existing is not None:
        return existing
    values = dict(
        user_id=user_id,
        window_date=window_date,
        tokens_used=0,
        requests_in_current_hour=0,
        cost_accumulated=0.0,
        last_request_at=None,
    )
    stmt = _insert_ignore(db)
    if stmt is not None:
        await db.execute(stmt.values(**values))
    else:
        try:
            async with db.begin_nested():
                db.add(models.QuotaWindow(**values))
        except IntegrityError:
            pass  # another request created it first
    window = await get_quota_window(db, user_id, window_date)
    assert window is not None
    return window

async def increment_quota_window(
    db: AsyncSession,
    user_id: str,
    window_date: str,
    tokens: int,
    cost: float,
    now: datetime.datetime,
    requests: int = 1,
) -> int:
    """Adds deltas to a window with one UPDATE statement.

    The hourly request counter restarts from `requests` when the previous
    request is at least an hour old. Returns the number of rows touched.
    Does not commit.
    """
    hour_ago = now - datetime.timedelta(hours=1)
    window = models.QuotaWindow
    stmt = (
        update(window)
        .where(window.user_id == user_id, window.window_date == window_date)
        .values(
            tokens_used=window.tokens_used + int(tokens),
            cost_accumulated=window.cost_accumulated + float(cost),
            requests_in_current_hour=case(
                (window.last_request_at.is_(None), int(requests)),
                (window.last_request_at <= hour_ago, int(requests)),
                else_=window.requests_in_current_hour + int(requests),
            ),
            last_request_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    result = await db.execute(stmt)
    return result.rowcount or 0

# --- Conversation operations ---

async def append_message(
    db: AsyncSession,
    session_id: str,
    user_id: str,
    role: str,
    content: str,
    agent_id: uuid.UUID | None = None,
) -> models.ConversationMessage:
    """Adds a message to a session. Does not commit."""
    db_message = models.ConversationMessage(
        session_id=session_id,
        user_id=user_id,
        role=role,
        content=content,
        agent_id=agent_id,
    )
    db.add(db_message)
    await db.flush()
    return db_message

async def get_recent_messages(db: AsyncSession, session_id: str, limit: int = 20) -> List[models.ConversationMessage]:
    """Returns the last `limit` messages of a session, oldest first."""
    query = (
        select(models.ConversationMessage)
        .filter(models.ConversationMessage.session_id == session_id)
        .order_by(models.ConversationMessage.id.desc())
        .limit(limit)
    )
    result = await db.execute(query)
    return list(reversed(result.scalars().all()))

async def get_session_messages(db: AsyncSession, session_id: str, user_id: str) -> List[models.ConversationMessage]:
    """All messages of one of the user's sessions, oldest first."""
    query = (
        select(models.ConversationMessage)
        .filter(
            models.ConversationMessage.session_id == session_id,
            models.ConversationMessage.user_id == user_id,
        )
        .order_by(models.ConversationMessage.id)
    )
    result = await db.execute(query)
    return list(result.scalars().all())

async def list_sessions(db: AsyncSession, user_id: str, limit: int = 50):
    """One row per session (session_id, message_count, created_at, updated_at), most recent first."""
    message = models.ConversationMessage
    query = (
        select(
            message.session_id,
            func.count(message.id).label("message_count"),
            func.min(message.created_at).label("created_at"),
            func.max(message.created_at).label("updated_at"),
        )
        .filter(message.user_id == user_id)
        .group_by(message.session_id)
        .order_by(func.max(message.id).desc())
        .limit(limit)
    )
    result = await db.execute(query)
    return list(result.all())

async def get_messages_for_sessions(db: AsyncSession, session_ids: Sequence[str], user_id: str) -> Dict[str, List[models.ConversationMessage]]:
    grouped: Dict[str, List[models.ConversationMessage]] = {session_id: [] for session_id in session_ids}
    if not session_ids:
        return grouped
    query = (
        select(models.ConversationMessage)
        .filter(
            models.ConversationMessage.session_id.in_(list(session_ids)),
            models.ConversationMessage.user_id == user_id,
        )
        .order_by(models.ConversationMessage.id)
    )
    result = await db.execute(query)
    for message in result.scalars().all():
        grouped.setdefault(message.session_id, []).append(message)
    return grouped

async def delete_session(db: AsyncSession, session_id: str, user_id: str) -> int:
    """Removes a user's session. Returns the number of messages deleted. Does not commit."""
    stmt = delete(models.ConversationMessage).where(
        models.ConversationMessage.session_id == session_id,
        models.ConversationMessage.user_id == user_id,
    )
    result = await db.execute(stmt)
    return result.rowcount or 0

async def get_agent_questions(db: AsyncSession, agent_id: uuid.UUID, limit: int = 10) -> List[str]:
    """Most recent user questions answered by an agent, newest first."""
    query = (
        select(models.ConversationMessage.content)
        .filter(
            models.ConversationMessage.agent_id == agent_id,
            models.ConversationMessage.role == "user",
        )
        .order_by(models.ConversationMessage.id.desc())
        .limit(limit)
    )
    result = await db.execute(query)
    return list(result.scalars().all())

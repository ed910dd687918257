"""SQLAlchemy-backed implementations of the orchestration store interfaces.

Every call opens its own short session, so a store can outlive the request
that created it (SSE generators keep running after the handler returns).
"""
from __future__ import annotations

import uuid
from datetime import datetime
from typing import Callable, Dict, List, Optional, Sequence

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from src.database import crud, schemas
from src.agentdesk.orchestration.errors import PersistenceFailure
from src.agentdesk.orchestration.quota import as_utc, utcnow
from src.agentdesk.orchestration.registry import AgentView, SkillView
from src.agentdesk.orchestration.stores import AgentSpec, QuotaDeltas, QuotaWindowState, SkillSpec
from src.agentdesk.orchestration.types import HistoryMessage

SessionFactory = Callable[[], AsyncSession]


class SqlAgentStore:
    def __init__(self, session_factory: SessionFactory, clock: Callable[[], datetime] = utcnow) -> None:
        self.session_factory = session_factory
        self.clock = clock

    async def list_agents(self, user_id: str) -> List[AgentView]:
        async with self.session_factory() as db:
            rows = await crud.list_agents(db, user_id)
            return [AgentView.model_validate(r) for r in rows]

    async def count_agents(self, user_id: str) -> int:
        async with self.session_factory() as db:
            return await crud.count_agents(db, user_id)

    async def create_agent(self, user_id: str, spec: AgentSpec) -> AgentView:
        async with self.session_factory() as db:
            row = await crud.create_agent(db, user_id, schemas.AgentCreate(**spec.model_dump()))
            view = AgentView.model_validate(row)
            await db.commit()
            return view

    async def increment_usage(self, agent_id: uuid.UUID) -> None:
        async with self.session_factory() as db:
            await crud.increment_agent_usage(db, agent_id, self.clock())
            await db.commit()


class SqlSkillStore:
    def __init__(self, session_factory: SessionFactory) -> None:
        self.session_factory = session_factory

    async def list_skills(self, agent_id: uuid.UUID) -> List[SkillView]:
        async with self.session_factory() as db:
            rows = await crud.list_skills(db, agent_id)
            return [SkillView.model_validate(r) for r in rows]

    async def list_skills_for_agents(self, agent_ids: Sequence[uuid.UUID]) -> Dict[uuid.UUID, List[SkillView]]:
        async with self.session_factory() as db:
            grouped = await crud.list_skills_for_agents(db, agent_ids)
            return {agent_id: [SkillView.model_validate(s) for s in skills] for agent_id, skills in grouped.items()}

    async def create_skill(self, agent_id: uuid.UUID, spec: SkillSpec) -> SkillView:
        async with self.session_factory() as db:
            row = await crud.create_skill(db, agent_id, schemas.SkillCreate(**spec.model_dump()))
            view = SkillView.model_validate(row)
            await db.commit()
            return view


class SqlQuotaStore:
    def __init__(self, session_factory: SessionFactory) -> None:
        self.session_factory = session_factory

    async def get_or_create_window(self, user_id: str, window_date: str) -> QuotaWindowState:
        async with self.session_factory() as db:
            row = await crud.get_or_create_quota_window(db, user_id, window_date)
            state = QuotaWindowState.model_validate(row)
            await db.commit()
            return state.model_copy(update={"last_request_at": as_utc(state.last_request_at)})

    async def atomic_increment(self, user_id: str, window_date: str, deltas: QuotaDeltas, now: datetime) -> None:
        try:
            async with self.session_factory() as db:
                touched = await crud.increment_quota_window(
                    db, user_id, window_date, deltas.tokens, deltas.cost, now, requests=deltas.requests,
                )
                if touched == 0:
                    # first commit of a new day can race the window creation
                    await crud.get_or_create_quota_window(db, user_id, window_date)
                    await crud.increment_quota_window(
                        db, user_id, window_date, deltas.tokens, deltas.cost, now, requests=deltas.requests,
                    )
                await db.commit()
        except SQLAlchemyError as e:
            raise PersistenceFailure(f"quota update failed for {user_id}: {e}") from e


class SqlConversationStore:
    def __init__(self, session_factory: SessionFactory) -> None:
        self.session_factory = session_factory

    async def append_message(
        self,
        session_id: str,
        user_id: str,
        role: str,
        content: str,
        agent_id: Optional[uuid.UUID] = None,
    ) -> None:
        async with self.session_factory() as db:
            await crud.append_message(db, session_id, user_id, role, content, agent_id)
            await db.commit()

    async def recent_messages(self, session_id: str, limit: int) -> List[HistoryMessage]:
        async with self.session_factory() as db:
            rows = await crud.get_recent_messages(db, session_id, limit)
            return [HistoryMessage(role=r.role, content=r.content) for r in rows if r.role in ("user", "assistant")]

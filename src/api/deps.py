from typing import Optional
from fastapi import Header, HTTPException, status

from src.agentdesk.config.settings import Settings, get_settings
from src.agentdesk.orchestration.coordinator import ChatOrchestrator
from src.services.chat_service import build_orchestrator

ANONYMOUS_USER = "anonymous"


def get_app_settings() -> Settings:
    return get_settings()


def get_orchestrator() -> ChatOrchestrator:
    return build_orchestrator()


def resolve_user(header_user: Optional[str], body_user: Optional[str], settings: Settings) -> str:
    user_id = (header_user or body_user or "").strip()
    if user_id:
        return user_id
    if settings.trial_require_auth:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")
    return ANONYMOUS_USER


async def require_user(x_user_id: Optional[str] = Header(None)) -> str:
    if not x_user_id or not x_user_id.strip():
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")
    return x_user_id.strip()

from typing import Optional
from fastapi import APIRouter, Depends, Header

from src.agentdesk.config.settings import Settings
from src.agentdesk.orchestration.coordinator import ChatOrchestrator
from src.agentdesk.orchestration.quota import UsageSummary
from .deps import get_app_settings, get_orchestrator, require_user

router = APIRouter(prefix="/api/usage", tags=["usage"])


@router.get("", response_model=UsageSummary)
async def usage_summary(
    user_id: str = Depends(require_user),
    x_custom_api_key: Optional[str] = Header(None),
    orchestrator: ChatOrchestrator = Depends(get_orchestrator),
    settings: Settings = Depends(get_app_settings),
):
    """Today's trial usage for the caller; custom-key holders are unlimited."""
    return await orchestrator.ledger.summarize(user_id, settings.trial_limits(), unlimited=bool(x_custom_api_key))

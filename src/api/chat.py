from typing import List, Optional
from fastapi import APIRouter, Depends, Header, HTTPException, status
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, Field, model_validator

from src.agentdesk.config.settings import ResponseLength, Settings
from src.agentdesk.orchestration.coordinator import ChatOrchestrator, TurnRequest
from src.agentdesk.orchestration.errors import InvalidResumeToken, RateLimitExceeded
from src.agentdesk.orchestration.resume import Decision, decode_token
from src.agentdesk.orchestration.types import AttachedFile
from .deps import get_app_settings, get_orchestrator, resolve_user

router = APIRouter(prefix="/api", tags=["chat"])


class ChatRequest(BaseModel):
    message: str = ""
    userId: Optional[str] = None
    sessionId: Optional[str] = None
    files: List[AttachedFile] = []
    decision: Optional[Decision] = None
    skipSuggestion: bool = False
    customApiKey: Optional[str] = None
    responseLength: Optional[ResponseLength] = None
    temperature: Optional[float] = Field(None, ge=0.0, le=2.0)

    @model_validator(mode="after")
    def _needs_message_or_decision(self) -> "ChatRequest":
        if not self.message.strip() and self.decision is None:
            raise ValueError("message is required")
        return self


@router.post("/chat")
async def chat(
    req: ChatRequest,
    x_user_id: Optional[str] = Header(None),
    orchestrator: ChatOrchestrator = Depends(get_orchestrator),
    settings: Settings = Depends(get_app_settings),
):
    """
    Runs one conversational turn and streams it as SSE.

    Each event is a JSON line under 'data:' with a "type" field:
      agent_suggestion | skill_suggestion | waiting_for_decision |
      agent_used | agent_created | skill_created | content | done | error

    Quota and burst denials are returned as plain 429 JSON before any event.
    """
    user_id = resolve_user(x_user_id, req.userId, settings)

    resume = None
    if req.decision is not None:
        try:
            resume = decode_token(req.decision.resumeToken)
        except InvalidResumeToken as e:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    try:
        admission = await orchestrator.admit(user_id, req.customApiKey)
    except RateLimitExceeded as e:
        return JSONResponse(status_code=status.HTTP_429_TOO_MANY_REQUESTS, content=e.to_payload())

    turn = TurnRequest(
        user_id=user_id,
        message=req.message,
        session_id=req.sessionId,
        files=req.files,
        resume=resume,
        action=req.decision.action if req.decision else None,
        skip_suggestion=req.skipSuggestion,
        custom_api_key=req.customApiKey,
        response_length=req.responseLength,
        temperature=req.temperature,
    )

    async def event_stream():
        async for event in orchestrator.run_turn(turn, admission):
            yield event.to_sse()

    return StreamingResponse(
        event_stream(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "Connection": "keep-alive"},
    )

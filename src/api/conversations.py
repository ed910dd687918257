from typing import List
from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from src.database import crud, schemas
from src.database.database import get_db
from .deps import require_user

router = APIRouter(
    prefix="/api/conversations",
    tags=["conversations"],
)

TITLE_CHARS = 50
PREVIEW_CHARS = 100


def _clip(text: str, limit: int) -> str:
    return text[:limit] + "..." if len(text) > limit else text


@router.get("", response_model=List[schemas.ConversationSummary])
async def list_conversations_endpoint(
    limit: int = Query(50, ge=1, le=200),
    user_id: str = Depends(require_user),
    db: AsyncSession = Depends(get_db),
):
    """The caller's sessions, most recently active first."""
    rows = await crud.list_sessions(db, user_id, limit)
    messages = await crud.get_messages_for_sessions(db, [r.session_id for r in rows], user_id)
    summaries = []
    for row in rows:
        history = messages.get(row.session_id, [])
        first_question = next((m.content for m in history if m.role == "user"), None)
        summaries.append(schemas.ConversationSummary(
            id=row.session_id,
            title=_clip(first_question, TITLE_CHARS) if first_question else "New Conversation",
            preview=_clip(history[-1].content, PREVIEW_CHARS) if history else "",
            message_count=row.message_count,
            created_at=row.created_at,
            updated_at=row.updated_at,
        ))
    return summaries

@router.get("/{session_id}", response_model=schemas.Conversation)
async def read_conversation_endpoint(session_id: str, user_id: str = Depends(require_user), db: AsyncSession = Depends(get_db)):
    messages = await crud.get_session_messages(db, session_id, user_id)
    if not messages:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Conversation not found")
    return schemas.Conversation(
        session_id=session_id,
        messages=[schemas.ConversationMessage.model_validate(m) for m in messages],
    )

@router.delete("/{session_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_conversation_endpoint(session_id: str, user_id: str = Depends(require_user), db: AsyncSession = Depends(get_db)):
    deleted = await crud.delete_session(db, session_id, user_id)
    if deleted == 0:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Conversation not found")
    await db.commit()

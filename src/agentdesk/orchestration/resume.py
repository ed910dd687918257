"""Caller-held continuation for a pending suggestion.

Nothing about a pending decision is kept on the server. The suggestion event
carries an opaque token; the next request hands it back with the decision.
"""
from __future__ import annotations

import base64
import binascii
import json
import uuid
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field, ValidationError, model_validator

from .errors import InvalidResumeToken
from .types import AttachedFile


class ResumeToken(BaseModel):
    originalMessage: str
    attachedFiles: List[AttachedFile] = Field(default_factory=list)
    suggestionKind: Literal["agent", "skill"]
    suggestionPayload: Dict[str, Any] = Field(default_factory=dict)
    explicitRequest: bool = False
    sessionId: Optional[str] = None

    @model_validator(mode="after")
    def _check_payload(self) -> "ResumeToken":
        if self.suggestionKind == "skill":
            uuid.UUID(str(self.suggestionPayload.get("agentId", "")))
            if not str(self.suggestionPayload.get("skillName", "")).strip():
                raise ValueError("skill suggestion needs a skillName")
        return self

    @property
    def agent_id(self) -> Optional[uuid.UUID]:
        value = self.suggestionPayload.get("agentId")
        return uuid.UUID(str(value)) if value else None


class Decision(BaseModel):
    resumeToken: str
    action: Literal["accept", "decline"]


def encode_token(token: ResumeToken) -> str:
    raw = token.model_dump_json().encode("utf-8")
    return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")


def decode_token(value: str) -> ResumeToken:
    try:
        padded = value + "=" * (-len(value) % 4)
        raw = base64.urlsafe_b64decode(padded.encode("ascii"))
        return ResumeToken.model_validate(json.loads(raw))
    except (binascii.Error, UnicodeError, ValueError, ValidationError) as e:
        raise InvalidResumeToken("Resume token is not valid") from e

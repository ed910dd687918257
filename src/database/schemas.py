import uuid
import datetime
from typing import List
from pydantic import BaseModel, Field

# --- Agent Schemas ---
class AgentCreate(BaseModel):
    name: str = Field(min_length=1)
    description: str = ""
    expertise: List[str] = []
    capabilities: List[str] = []
    system_prompt: str = ""

class Agent(BaseModel):
    id: uuid.UUID
    user_id: str
    name: str
    description: str = ""
    expertise: List[str] = []
    capabilities: List[str] = []
    system_prompt: str = ""
    questions_handled: int = 0
    last_used_at: datetime.datetime | None = None
    created_at: datetime.datetime | None = None

    model_config = {"from_attributes": True}

# --- Skill Schemas ---
class SkillCreate(BaseModel):
    name: str = Field(min_length=1)
    description: str = ""
    content: str = ""
    tags: List[str] = []

class Skill(BaseModel):
    id: uuid.UUID
    agent_id: uuid.UUID
    name: str
    description: str = ""
    content: str = ""
    tags: List[str] = []
    created_at: datetime.datetime | None = None

    model_config = {"from_attributes": True}

# --- Quota Schemas ---
class QuotaWindow(BaseModel):
    user_id: str
    window_date: str
    tokens_used: int = 0
    requests_in_current_hour: int = 0
    cost_accumulated: float = 0.0
    last_request_at: datetime.datetime | None = None

    model_config = {"from_attributes": True}

# --- Conversation Schemas ---
class ConversationMessage(BaseModel):
    session_id: str
    role: str
    content: str
    agent_id: uuid.UUID | None = None
    created_at: datetime.datetime | None = None

    model_config = {"from_attributes": True}

class Conversation(BaseModel):
    session_id: str
    messages: List[ConversationMessage] = []

class ConversationSummary(BaseModel):
    id: str
    title: str
    preview: str = ""
    message_count: int = 0
    created_at: datetime.datetime | None = None
    updated_at: datetime.datetime | None = None

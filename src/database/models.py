import uuid
from sqlalchemy import Column, String, Text, DateTime, Integer, Float, func, ForeignKey, JSON, Index
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship
from .database import Base

class Agent(Base):
    __tablename__ = "agents"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id = Column(String, nullable=False, index=True)
    name = Column(String, nullable=False)
    description = Column(Text, nullable=False, default="")
    expertise = Column(JSON, nullable=False, default=list)
    capabilities = Column(JSON, nullable=False, default=list)
    system_prompt = Column(Text, nullable=False, default="")
    questions_handled = Column(Integer, nullable=False, default=0)
    last_used_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    skills = relationship("Skill", back_populates="agent", cascade="all, delete-orphan")

    def __repr__(self):
        return f"<Agent(id={self.id}, name='{self.name}')>"

class Skill(Base):
    __tablename__ = "skills"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    agent_id = Column(UUID(as_uuid=True), ForeignKey("agents.id"), nullable=False, index=True)
    name = Column(String, nullable=False)
    description = Column(Text, nullable=False, default="")
    content = Column(Text, nullable=False, default="")
    tags = Column(JSON, nullable=False, default=list)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    agent = relationship("Agent", back_populates="skills")

    def __repr__(self):
        return f"<Skill(id={self.id}, agent_id='{self.agent_id}', name='{self.name}')>"

class QuotaWindow(Base):
    """One accounting row per user per UTC calendar day."""
    __tablename__ = "quota_windows"

    user_id = Column(String, primary_key=True)
    window_date = Column(String(10), primary_key=True)
    tokens_used = Column(Integer, nullable=False, default=0)
    requests_in_current_hour = Column(Integer, nullable=False, default=0)
    cost_accumulated = Column(Float, nullable=False, default=0.0)
    last_request_at = Column(DateTime(timezone=True), nullable=True)

    def __repr__(self):
        return f"<QuotaWindow(user_id='{self.user_id}', window_date='{self.window_date}')>"

class ConversationMessage(Base):
    __tablename__ = "conversation_messages"
    __table_args__ = (Index("ix_conversation_session_created", "session_id", "created_at"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    session_id = Column(String, nullable=False)
    user_id = Column(String, nullable=False)
    agent_id = Column(UUID(as_uuid=True), nullable=True)
    role = Column(String(16), nullable=False)
    content = Column(Text, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    def __repr__(self):
        return f"<ConversationMessage(session_id='{self.session_id}', role='{self.role}')>"

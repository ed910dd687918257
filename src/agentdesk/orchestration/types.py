"""Value types shared between the orchestration core and its collaborators."""
from __future__ import annotations

from typing import Any, Dict, Literal, Optional

from pydantic import BaseModel, Field

Role = Literal["user", "assistant"]


class TokenUsage(BaseModel):
    input: int = 0
    output: int = 0
    cached: int = 0

    def total(self) -> int:
        return self.input + self.output

    def is_zero(self) -> bool:
        return self.input == 0 and self.output == 0 and self.cached == 0

    def merge_snapshot(self, other: "TokenUsage") -> "TokenUsage":
        """Streaming usage reports are cumulative; keep the highest seen per field."""
        return TokenUsage(
            input=max(self.input, other.input),
            output=max(self.output, other.output),
            cached=max(self.cached, other.cached),
        )

    def __add__(self, other: "TokenUsage") -> "TokenUsage":
        return TokenUsage(
            input=self.input + other.input,
            output=self.output + other.output,
            cached=self.cached + other.cached,
        )


class HistoryMessage(BaseModel):
    role: Role
    content: str


class AttachedFile(BaseModel):
    name: str
    content: str = ""


class ModelChunk(BaseModel):
    """One item of a generator stream: a text delta, a usage snapshot, or both."""
    text: Optional[str] = None
    usage: Optional[TokenUsage] = None


class OracleReply(BaseModel):
    """Raw classifier output before validation.

    ``arguments`` is whatever the model put in its tool call, untouched.
    """
    tool_name: Optional[str] = None
    arguments: Optional[Dict[str, Any]] = None
    text: str = ""
    usage: TokenUsage = Field(default_factory=TokenUsage)


class ToolSpec(BaseModel):
    name: str
    description: str
    parameters: Dict[str, Any]


class GenerationOptions(BaseModel):
    temperature: float = 0.7
    max_tokens: Optional[int] = None
    api_key: Optional[str] = None
    tier: Literal["fast", "quality"] = "fast"
    extra: Dict[str, Any] = Field(default_factory=dict)


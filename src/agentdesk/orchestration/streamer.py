"""Drives the answer model and turns its output into content events."""
from __future__ import annotations

import logging
from typing import AsyncIterator, Callable, List, Optional

from . import events
from .errors import GenerationFailure
from .events import ChatEvent
from .sanitize import sanitize
from .types import GenerationOptions, HistoryMessage, ModelChunk, TokenUsage

logger = logging.getLogger(__name__)

Generator = Callable[[str, str, List[HistoryMessage], GenerationOptions], AsyncIterator[ModelChunk]]


class StreamOutcome:
    """Running totals for one answer; read by the coordinator after the stream ends."""

    def __init__(self) -> None:
        self.usage = TokenUsage()
        self.text_parts: List[str] = []
        self.completed = False
        self.failed = False
        self.error: Optional[GenerationFailure] = None

    @property
    def text(self) -> str:
        return "".join(self.text_parts)


class ResponseStreamer:
    def __init__(self, generator: Generator) -> None:
        self.generator = generator

    async def stream(
        self,
        message: str,
        system_prompt: str,
        history: List[HistoryMessage],
        opts: GenerationOptions,
        outcome: StreamOutcome,
    ) -> AsyncIterator[ChatEvent]:
        """Yields one sanitized content event per model delta.

        On failure an error event is yielded and the stream ends; the caller
        never sees done for a failed answer.
        """
        try:
            async for chunk in self.generator(message, system_prompt, history, opts):
                if chunk.usage is not None:
                    outcome.usage = outcome.usage.merge_snapshot(chunk.usage)
                if chunk.text:
                    cleaned = sanitize(chunk.text)
                    if cleaned:
                        outcome.text_parts.append(cleaned)
                        yield events.content(cleaned)
        except Exception as e:
            logger.exception("Answer generation failed")
            outcome.failed = True
            outcome.error = GenerationFailure(str(e) or e.__class__.__name__)
            yield events.error(f"Failed to generate a response: {outcome.error}")
            return
        outcome.completed = True

"""LLM provider interface."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any

from imobot.models import LLMResponse


class LLMProvider(ABC):
    """Abstract completion service used by the turn orchestrator."""

    @abstractmethod
    async def generate(
        self,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]] | None = None,
        tool_choice: str | dict[str, Any] | None = None,
        max_tokens: int | None = None,
        temperature: float | None = None,
    ) -> LLMResponse:
        """Generate a model response: plain text or tool invocations."""

    @abstractmethod
    async def transcribe(self, audio: bytes, mime_type: str = "audio/ogg") -> str:
        """Return the transcript of a voice message."""

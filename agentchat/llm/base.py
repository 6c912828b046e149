"""LLM provider interface."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, AsyncIterator

from agentchat.models import LLMResponse, LLMStreamChunk


class LLMProvider(ABC):
    """Abstract model provider used by the turn pipeline."""

    @abstractmethod
    async def generate(
        self,
        messages: list[dict[str, str]],
        tools: list[dict[str, Any]] | None = None,
        response_format: dict[str, Any] | None = None,
        web_search: bool = False,
        max_tokens: int | None = None,
        temperature: float | None = None,
    ) -> LLMResponse:
        """Generate a model response."""

    @abstractmethod
    def stream(
        self,
        messages: list[dict[str, str]],
        web_search: bool = False,
        max_tokens: int | None = None,
        temperature: float | None = None,
    ) -> AsyncIterator[LLMStreamChunk]:
        """Stream a model response as text deltas."""

    @abstractmethod
    async def embed(self, text: str) -> list[float]:
        """Embed text for similarity search."""

"""Single-shot and streamed reply generation with usage accounting."""

from __future__ import annotations

import asyncio
import logging
import time
from contextlib import aclosing
from dataclasses import dataclass
from typing import AsyncIterator, Union

from agentchat.errors import GenerationError
from agentchat.llm.base import LLMProvider
from agentchat.models import TokenUsage

LOGGER = logging.getLogger(__name__)

FALLBACK_REPLY = "I'm sorry, I couldn't generate a response."


@dataclass(slots=True, frozen=True)
class GenerationResult:
    text: str
    usage: TokenUsage | None
    latency_ms: int


@dataclass(slots=True, frozen=True)
class StreamChunk:
    text: str


@dataclass(slots=True, frozen=True)
class StreamDone:
    result: GenerationResult


@dataclass(slots=True, frozen=True)
class StreamFailed:
    error: GenerationError
    latency_ms: int


StreamEvent = Union[StreamChunk, StreamDone, StreamFailed]


def build_messages(system_prompt: str, history: list[dict[str, str]], message: str) -> list[dict[str, str]]:
    messages = [{"role": "system", "content": system_prompt}]
    messages.extend({"role": turn["role"], "content": turn["content"]} for turn in history)
    messages.append({"role": "user", "content": message})
    return messages


class ResponseStreamer:
    def __init__(
        self,
        llm: LLMProvider,
        max_tokens: int | None = None,
        temperature: float | None = None,
        request_timeout_seconds: float = 30.0,
    ) -> None:
        self._llm = llm
        self._max_tokens = max_tokens
        self._temperature = temperature
        self._request_timeout_seconds = request_timeout_seconds

    async def generate(self, messages: list[dict[str, str]], web_search: bool = False) -> GenerationResult:
        """Raises GenerationError with a classified code on provider failure."""

        started = time.monotonic()
        try:
            response = await asyncio.wait_for(
                self._llm.generate(
                    messages,
                    web_search=web_search,
                    max_tokens=self._max_tokens,
                    temperature=self._temperature,
                ),
                timeout=self._request_timeout_seconds,
            )
        except Exception as exc:
            raise GenerationError.from_exception(exc) from exc
        latency_ms = int((time.monotonic() - started) * 1000)
        return GenerationResult((response.content or "").strip() or FALLBACK_REPLY, response.usage, latency_ms)

    async def stream(self, messages: list[dict[str, str]], web_search: bool = False) -> AsyncIterator[StreamEvent]:
        """Yield chunks, then exactly one StreamDone or StreamFailed.

        Closing the generator early closes the provider stream with it.
        """
        started = time.monotonic()
        parts: list[str] = []
        usage: TokenUsage | None = None
        chunks = self._llm.stream(
            messages,
            web_search=web_search,
            max_tokens=self._max_tokens,
            temperature=self._temperature,
        )
        try:
            async with aclosing(chunks):
                async for chunk in chunks:
                    if chunk.usage is not None:
                        usage = chunk.usage
                    if chunk.text:
                        parts.append(chunk.text)
                        yield StreamChunk(chunk.text)
        except Exception as exc:  # noqa: BLE001
            LOGGER.error("Stream generation failed", exc_info=True)
            yield StreamFailed(GenerationError.from_exception(exc), int((time.monotonic() - started) * 1000))
            return

        text = "".join(parts).strip() or FALLBACK_REPLY
        yield StreamDone(GenerationResult(text, usage, int((time.monotonic() - started) * 1000)))

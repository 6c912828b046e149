"""OpenRouter implementation of LLMProvider."""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, AsyncIterator

import httpx

from agentchat.config import Settings
from agentchat.llm.base import LLMProvider
from agentchat.models import LLMResponse, LLMStreamChunk, LLMToolCall, TokenUsage

_LOGGER = logging.getLogger(__name__)

_MAX_RETRIES = 3
_RETRY_BACKOFF_SECONDS = [5, 15, 45]


class OpenRouterProvider(LLMProvider):
    """LLM provider using OpenRouter's OpenAI-compatible endpoints."""

    def __init__(self, settings: Settings) -> None:
        self._settings = settings

    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self._settings.openrouter_api_key}",
            "Content-Type": "application/json",
        }

    def _payload(
        self,
        messages: list[dict[str, str]],
        web_search: bool,
        max_tokens: int | None,
        temperature: float | None,
    ) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "model": self._settings.openrouter_model,
            "messages": messages,
        }
        if max_tokens is not None:
            payload["max_tokens"] = max_tokens
        if temperature is not None:
            payload["temperature"] = temperature
        if web_search:
            payload["plugins"] = [{"id": "web"}]
        return payload

    async def generate(
        self,
        messages: list[dict[str, str]],
        tools: list[dict[str, Any]] | None = None,
        response_format: dict[str, Any] | None = None,
        web_search: bool = False,
        max_tokens: int | None = None,
        temperature: float | None = None,
    ) -> LLMResponse:
        payload = self._payload(messages, web_search, max_tokens, temperature)
        if tools:
            payload["tools"] = tools
        if response_format:
            payload["response_format"] = response_format

        timeout = httpx.Timeout(self._settings.request_timeout_seconds)
        async with httpx.AsyncClient(base_url=self._settings.openrouter_base_url, timeout=timeout) as client:
            for attempt in range(_MAX_RETRIES + 1):
                response = await client.post("/chat/completions", headers=self._headers(), json=payload)
                if response.status_code == 429 and attempt < _MAX_RETRIES:
                    wait = _RETRY_BACKOFF_SECONDS[attempt]
                    _LOGGER.warning(
                        "OpenRouter rate limited (429), retrying in %ds (attempt %d/%d)",
                        wait,
                        attempt + 1,
                        _MAX_RETRIES,
                    )
                    await asyncio.sleep(wait)
                    continue
                response.raise_for_status()
                break
            data = response.json()

        choice = data["choices"][0]["message"]
        finish_reason = data["choices"][0].get("finish_reason")
        content = choice.get("content") or ""
        _LOGGER.info(
            "LLM response: finish_reason=%r content=%r tool_calls=%r",
            finish_reason,
            content[:200] if content else "",
            choice.get("tool_calls"),
        )

        parsed_tool_calls: list[LLMToolCall] = []
        for tool_call in choice.get("tool_calls") or []:
            function_data = tool_call.get("function", {})
            parsed_tool_calls.append(
                LLMToolCall(
                    name=function_data.get("name", ""),
                    arguments=_safe_json_loads(function_data.get("arguments", "{}")),
                    call_id=tool_call.get("id"),
                )
            )

        return LLMResponse(
            content=content,
            tool_calls=parsed_tool_calls,
            usage=_parse_usage(data.get("usage")),
            raw=data,
        )

    async def stream(
        self,
        messages: list[dict[str, str]],
        web_search: bool = False,
        max_tokens: int | None = None,
        temperature: float | None = None,
    ) -> AsyncIterator[LLMStreamChunk]:
        payload = self._payload(messages, web_search, max_tokens, temperature)
        payload["stream"] = True
        payload["stream_options"] = {"include_usage": True}

        timeout = httpx.Timeout(self._settings.request_timeout_seconds)
        async with httpx.AsyncClient(base_url=self._settings.openrouter_base_url, timeout=timeout) as client:
            async with client.stream("POST", "/chat/completions", headers=self._headers(), json=payload) as response:
                response.raise_for_status()
                async for line in response.aiter_lines():
                    if not line.startswith("data:"):
                        # SSE comments such as ": OPENROUTER PROCESSING" keep the connection alive.
                        continue
                    data = line[len("data:"):].strip()
                    if data == "[DONE]":
                        break
                    try:
                        event = json.loads(data)
                    except json.JSONDecodeError:
                        _LOGGER.debug("Skipping malformed stream line: %r", data[:200])
                        continue
                    if event.get("error"):
                        error = event["error"]
                        message = error.get("message") if isinstance(error, dict) else str(error)
                        raise RuntimeError(f"OpenRouter stream error: {message}")
                    text = "".join(
                        (choice.get("delta") or {}).get("content") or "" for choice in event.get("choices") or []
                    )
                    usage = _parse_usage(event.get("usage"))
                    if text or usage:
                        yield LLMStreamChunk(text=text, usage=usage)

    async def embed(self, text: str) -> list[float]:
        timeout = httpx.Timeout(self._settings.request_timeout_seconds)
        async with httpx.AsyncClient(base_url=self._settings.openrouter_base_url, timeout=timeout) as client:
            response = await client.post(
                "/embeddings",
                headers=self._headers(),
                json={"model": self._settings.embedding_model, "input": text},
            )
            response.raise_for_status()
            data = response.json()
        return list(data["data"][0]["embedding"])


def _parse_usage(raw: dict[str, Any] | None) -> TokenUsage | None:
    if not raw:
        return None
    return TokenUsage(
        input_tokens=raw.get("prompt_tokens"),
        output_tokens=raw.get("completion_tokens"),
        total_tokens=raw.get("total_tokens"),
    )


def _safe_json_loads(raw: str) -> dict[str, Any]:
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError:
        return {}
    return parsed if isinstance(parsed, dict) else {}

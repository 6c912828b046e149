"""Error taxonomy for a chat turn.

Configuration, validation, authorization and not-found errors abort the turn.
Tool and external API errors are recovered where they happen. Generation
errors are recorded on the assistant turn with a classified code.
"""

from __future__ import annotations

import asyncio
import re

import httpx

GENERIC_GENERATION_ERROR = "Failed to generate response"

_MAX_ERROR_MESSAGE_CHARS = 500


class AgentChatError(Exception):
    """Base class for errors raised by the turn pipeline."""


class ConfigurationError(AgentChatError):
    """A required service is not configured."""


class ValidationError(AgentChatError):
    """The inbound request is malformed."""


class AuthorizationError(AgentChatError):
    """The caller may not talk to this agent."""


class NotFoundError(AgentChatError):
    """The requested agent does not exist."""


class ToolInvocationError(AgentChatError):
    """A tool server call failed at the transport or protocol level."""


class ExternalAPIError(AgentChatError):
    """A configured third-party API could not be reached."""


class GenerationError(AgentChatError):
    """The LLM service failed; carries a classified code and a sanitized message."""

    def __init__(self, code: str, message: str) -> None:
        super().__init__(message)
        self.code = code
        self.message = message

    @classmethod
    def from_exception(cls, exc: BaseException) -> GenerationError:
        if isinstance(exc, GenerationError):
            return exc
        return cls(infer_error_code(exc), sanitize_error_message(exc))


def infer_error_code(exc: BaseException) -> str:
    """Classify a provider failure into a short stable code."""

    if isinstance(exc, (asyncio.TimeoutError, httpx.TimeoutException)):
        return "timeout"
    if isinstance(exc, httpx.HTTPStatusError):
        status = exc.response.status_code
        if status == 429:
            return "rate_limited"
        if status in (401, 403):
            return "auth"
        if status == 400:
            return "bad_request"
        if status >= 500:
            return "provider_unavailable"
    if isinstance(exc, httpx.TransportError):
        return "provider_unavailable"
    text = str(exc).lower()
    if "safety" in text or "blocked" in text:
        return "safety_blocked"
    if "quota" in text or "rate limit" in text:
        return "rate_limited"
    return "unknown"


_SECRET_PATTERNS = (
    (re.compile(r"(?i)bearer\s+[A-Za-z0-9._\-]+"), "Bearer [redacted]"),
    (re.compile(r"(?i)(api[_-]?key|key|token|access_token)=([^&\s]+)"), r"\1=[redacted]"),
    (re.compile(r"sk-[A-Za-z0-9\-_]{8,}"), "[redacted]"),
    (re.compile(r"(https?://[^\s?]+)\?\S*"), r"\1"),
)


def sanitize_error_message(exc: BaseException) -> str:
    """Strip credentials and query strings from an error and truncate it."""

    message = str(exc) or type(exc).__name__
    for pattern, replacement in _SECRET_PATTERNS:
        message = pattern.sub(replacement, message)
    return message[:_MAX_ERROR_MESSAGE_CHARS]

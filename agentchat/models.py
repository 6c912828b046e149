"""Core domain models used across layers."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, time
from enum import Enum
from typing import Any


class FeatureFlag(str, Enum):
    """Tri-state agent toggle; UNSET defers to the feature's documented default."""

    ENABLED = "enabled"
    DISABLED = "disabled"
    UNSET = "unset"

    @classmethod
    def from_value(cls, value: bool | None) -> FeatureFlag:
        if value is None:
            return cls.UNSET
        return cls.ENABLED if value else cls.DISABLED


class Feature(str, Enum):
    KNOWLEDGE_BASE = "knowledge_base"
    TOOL_SERVERS = "tool_servers"
    API_TOOLS = "api_tools"
    SCHEDULING = "scheduling"
    EVENTS = "events"
    WEB_SEARCH = "web_search"


# Opt-out features default on, opt-in features default off.
FEATURE_DEFAULTS: dict[Feature, bool] = {
    Feature.KNOWLEDGE_BASE: True,
    Feature.TOOL_SERVERS: True,
    Feature.API_TOOLS: True,
    Feature.WEB_SEARCH: True,
    Feature.SCHEDULING: False,
    Feature.EVENTS: False,
}


def resolve_flag(flag: FeatureFlag, default: bool) -> bool:
    """Resolve a tri-state flag against its default.

    This is the only place an UNSET flag is interpreted, so every call site
    agrees on what "not configured" means.
    """
    if flag is FeatureFlag.ENABLED:
        return True
    if flag is FeatureFlag.DISABLED:
        return False
    return default


@dataclass(slots=True, frozen=True)
class ToolServer:
    """Remote tool server configured for an agent (or platform-wide)."""

    id: str
    name: str
    url: str
    description: str = ""
    instructions: str = ""
    headers: dict[str, str] = field(default_factory=dict)
    api_key: str = ""


@dataclass(slots=True, frozen=True)
class ApiTool:
    """Third-party HTTP API configured for an agent (or platform-wide)."""

    id: str
    name: str
    url: str
    method: str = "POST"
    api_type: str | None = None
    description: str = ""
    instructions: str = ""
    schema: str = ""
    headers: dict[str, str] = field(default_factory=dict)
    api_key: str = ""


@dataclass(slots=True, frozen=True)
class Agent:
    """Per-turn, read-only agent configuration."""

    id: str
    owner_address: str
    name: str
    system_instructions: str = ""
    visibility: str = "private"
    avatar_emoji: str | None = None
    features: dict[Feature, FeatureFlag] = field(default_factory=dict)
    tool_servers: tuple[ToolServer, ...] = ()
    api_tools: tuple[ApiTool, ...] = ()

    def enabled(self, feature: Feature) -> bool:
        return resolve_flag(self.features.get(feature, FeatureFlag.UNSET), FEATURE_DEFAULTS[feature])


@dataclass(slots=True, frozen=True)
class TurnRequest:
    """Inbound message normalized by the HTTP layer."""

    user_address: str
    message: str
    stream: bool = False


@dataclass(slots=True, frozen=True)
class TokenUsage:
    input_tokens: int | None = None
    output_tokens: int | None = None
    total_tokens: int | None = None


@dataclass(slots=True, frozen=True)
class UsageRecord:
    """Telemetry attached 1:1 to an assistant turn."""

    input_tokens: int | None = None
    output_tokens: int | None = None
    total_tokens: int | None = None
    latency_ms: int | None = None
    estimated_cost_usd: float | None = None
    error_code: str | None = None
    error_message: str | None = None


@dataclass(slots=True, frozen=True)
class ToolCallRecord:
    server: str
    tool_name: str
    args: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True, frozen=True)
class ToolErrorRecord:
    server: str
    tool_name: str
    error: str


@dataclass(slots=True, frozen=True)
class ConversationTurn:
    """One persisted chat record. Never mutated after creation."""

    agent_id: str
    user_address: str
    role: str
    content: str
    source: str = "direct"
    model: str | None = None
    tool_calls: tuple[ToolCallRecord, ...] = ()
    tool_errors: tuple[ToolErrorRecord, ...] = ()
    usage: UsageRecord | None = None
    created_at: datetime | None = None


@dataclass(slots=True, frozen=True)
class KnowledgeChunk:
    content: str
    similarity: float
    source_title: str | None = None

    def render(self) -> str:
        return f"[Source: {self.source_title or 'Unknown'} | Relevance: {self.similarity * 100:.0f}%]\n{self.content}"


@dataclass(slots=True, frozen=True)
class KnowledgeItem:
    id: int
    agent_id: str
    url: str
    title: str
    status: str = "pending"


@dataclass(slots=True, frozen=True)
class ToolDescriptor:
    """Callable tool advertised by a tool server."""

    name: str
    description: str = ""
    input_schema: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ToolDescriptor:
        return cls(
            name=str(data.get("name", "")),
            description=str(data.get("description") or ""),
            input_schema=data.get("inputSchema") or {},
        )


@dataclass(slots=True, frozen=True)
class ToolInvocationResult:
    """Tagged outcome of a single tool call."""

    ok: bool
    text: str = ""
    error: str = ""

    @classmethod
    def success(cls, text: str) -> ToolInvocationResult:
        return cls(ok=True, text=text)

    @classmethod
    def failure(cls, error: str) -> ToolInvocationResult:
        return cls(ok=False, error=error)


@dataclass(slots=True, frozen=True)
class AvailabilityWindow:
    """Recurring weekly window. day_of_week uses 0=Sunday .. 6=Saturday."""

    day_of_week: int
    start_time: time
    end_time: time
    timezone: str = "UTC"


@dataclass(slots=True, frozen=True, order=True)
class CandidateSlot:
    start: datetime
    end: datetime

    def overlaps(self, start: datetime, end: datetime) -> bool:
        """Half-open interval intersection."""
        return self.start < end and start < self.end


@dataclass(slots=True, frozen=True)
class SlotSet:
    """Two projections of the same candidates.

    ai_slots come from availability windows only; ui_slots may additionally be
    filtered by calendar busy periods and must never reach a prompt.
    """

    ai_slots: tuple[CandidateSlot, ...]
    ui_slots: tuple[CandidateSlot, ...]


@dataclass(slots=True, frozen=True)
class SchedulingSettings:
    enabled: bool = False
    free_enabled: bool = True
    paid_enabled: bool = False
    free_duration_minutes: int | None = None
    paid_duration_minutes: int | None = None
    price_cents: int = 0


@dataclass(slots=True, frozen=True)
class CalendarConnection:
    owner_address: str
    access_token: str
    refresh_token: str | None = None
    token_expires_at: datetime | None = None
    calendar_id: str = "primary"
    provider: str = "google"


@dataclass(slots=True, frozen=True)
class ExtractedEvent:
    name: str
    event_date: str
    description: str | None = None
    event_type: str | None = None
    start_time: str | None = None
    end_time: str | None = None
    venue: str | None = None
    organizer: str | None = None
    event_url: str | None = None
    source: str = "community"

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ExtractedEvent | None:
        name = data.get("name")
        event_date = data.get("event_date")
        if not name or not event_date:
            return None
        return cls(
            name=str(name),
            event_date=str(event_date),
            description=data.get("description") or None,
            event_type=data.get("event_type") or None,
            start_time=data.get("start_time") or None,
            end_time=data.get("end_time") or None,
            venue=data.get("venue") or None,
            organizer=data.get("organizer") or None,
            event_url=data.get("event_url") or None,
            source=data.get("source") or "community",
        )


@dataclass(slots=True)
class LLMToolCall:
    """Tool invocation returned by an LLM provider."""

    name: str
    arguments: dict[str, Any]
    call_id: str | None = None


@dataclass(slots=True)
class LLMResponse:
    """Result from an LLM generation request."""

    content: str
    tool_calls: list[LLMToolCall] = field(default_factory=list)
    usage: TokenUsage | None = None
    raw: dict[str, Any] | None = None


@dataclass(slots=True)
class LLMStreamChunk:
    """One streamed delta; usage is present only on chunks that report it."""

    text: str = ""
    usage: TokenUsage | None = None

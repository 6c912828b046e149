"""Keyword heuristics deciding which sources a turn consults.

Each decision is a pure function of configuration and text so it can be
tested without any network code. The keyword lists are intentionally
coarse; they favour calling a source over missing one.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Iterable

from agentchat.models import ApiTool, ToolServer
from agentchat.tools.api_kinds import GraphQLKind, classify_api_tool

TOOL_SERVER_QUERY_PATTERNS = (
    "docs",
    "documentation",
    "how to",
    "what is",
    "tell me",
    "search",
    "find",
    "help",
    "show",
    "get",
    "explain",
)

API_DOC_PATTERNS = ("docs", "documentation", "how to", "what is", "tell me about", "looking at", "using")
API_DATA_PATTERNS = ("get", "fetch", "show", "list", "find", "last", "recent", "latest", "first", "top", "all")
API_EXPLICIT_PATTERNS = ("api", "tool", "use your")

SCHEDULING_KEYWORDS = (
    "schedule",
    "book a",
    "book time",
    "booking",
    "meeting",
    "appointment",
    "availability",
    "available",
    "time slot",
    "when can",
    "set up a",
    "calendar",
    "free time",
    "slot",
    "set up time",
    "find time",
)
SCHEDULING_HISTORY_MARKERS = ("booking card", "available times", "scheduling information")
SCHEDULING_FOLLOW_UPS = (
    "min",
    "hour",
    "today",
    "tomorrow",
    "morning",
    "afternoon",
    "evening",
    "yes",
    "sure",
    "sounds good",
    "that works",
    "perfect",
    "ok",
    "project",
    "working together",
)

EVENTS_KEYWORDS = (
    "event",
    "conference",
    "hackathon",
    "meetup",
    "summit",
    "workshop",
    "happening",
    "schedule",
    "register",
    "rsvp",
)


@dataclass(slots=True, frozen=True)
class RelevanceDecision:
    """Outcome of a relevance check plus the signals that produced it."""

    relevant: bool
    signals: dict[str, bool] = field(default_factory=dict)

    def __bool__(self) -> bool:
        return self.relevant

    def describe(self) -> str:
        parts = ", ".join(f"{name}={value}" for name, value in self.signals.items())
        return f"{parts}, result={self.relevant}"


def _contains_any(text: str, patterns: Iterable[str]) -> bool:
    return any(pattern in text for pattern in patterns)


def _always_call(instructions: str, phrases: Iterable[str]) -> bool:
    return _contains_any(instructions.lower(), phrases)


def decide_tool_server(server: ToolServer, message: str) -> RelevanceDecision:
    text = message.lower()
    signals = {
        "always_call": _always_call(server.instructions, ("always", "every question")),
        "name_mentioned": bool(server.name) and server.name.lower() in text,
        "query_pattern": _contains_any(text, TOOL_SERVER_QUERY_PATTERNS),
    }
    return RelevanceDecision(any(signals.values()), signals)


def decide_api_tool(tool: ApiTool, message: str) -> RelevanceDecision:
    text = message.lower()
    tool_text = " ".join([tool.name, tool.description, tool.instructions]).lower()
    keywords = [word for word in tool_text.split() if len(word) > 3]
    tool_is_doc_related = _contains_any(tool_text, ("doc", "search", "library"))
    is_graphql = isinstance(classify_api_tool(tool), GraphQLKind)

    signals = {
        "always_call": _always_call(tool.instructions, ("always", "every question", "all questions")),
        "name_mentioned": bool(tool.name) and tool.name.lower() in text,
        "keyword_match": any(word in text for word in keywords),
        "doc_query": tool_is_doc_related and _contains_any(text, API_DOC_PATTERNS),
        "graphql_data_query": is_graphql and _contains_any(text, API_DATA_PATTERNS),
        "explicit_request": _contains_any(text, API_EXPLICIT_PATTERNS),
    }
    return RelevanceDecision(any(signals.values()), signals)


def decide_scheduling(message: str, recent_messages: Iterable[str] = ()) -> RelevanceDecision:
    """Scheduling intent in this message, or a follow-up to a scheduling conversation."""

    text = message.lower()
    direct = _contains_any(text, SCHEDULING_KEYWORDS)
    history_is_scheduling = any(
        _contains_any(previous.lower(), SCHEDULING_KEYWORDS + SCHEDULING_HISTORY_MARKERS)
        for previous in recent_messages
    )
    follow_up = history_is_scheduling and (
        _contains_any(text, SCHEDULING_FOLLOW_UPS) or re.fullmatch(r"\d+", text.strip()) is not None
    )
    return RelevanceDecision(direct or follow_up, {"direct": direct, "follow_up": follow_up})


def decide_events(message: str) -> RelevanceDecision:
    matched = _contains_any(message.lower(), EVENTS_KEYWORDS)
    return RelevanceDecision(matched, {"keyword": matched})

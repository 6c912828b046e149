"""LLM-guided tool selection loop for one tool server."""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any

from agentchat.llm.base import LLMProvider
from agentchat.models import ToolCallRecord, ToolDescriptor, ToolErrorRecord, ToolServer
from agentchat.tools.discovery import ToolDiscoveryCache
from agentchat.tools.server_client import ToolServerClient, build_headers

LOGGER = logging.getLogger(__name__)

MAX_ITERATIONS = 3
INTERMEDIATE_CHAR_LIMIT = 5000
FINAL_CHAR_LIMIT = 10000
ERROR_CHAR_LIMIT = 500
SERVER_CONTEXT_MIN_CHARS = 50

_INTERMEDIATE_NAME_MARKERS = ("resolve", "search", "list")
_INTERMEDIATE_TEXT_MARKERS = ("library ID", "libraryId", "Context7-compatible")
_JSON_OBJECT = re.compile(r"\{[\s\S]*\}")


def is_intermediate_result(tool_name: str, text: str) -> bool:
    """Guess whether a tool result only feeds another tool call.

    This is a substring heuristic on tool names and result text and will
    misclassify tools whose names happen to contain the markers.
    """
    return any(marker in tool_name for marker in _INTERMEDIATE_NAME_MARKERS) or any(
        marker in text for marker in _INTERMEDIATE_TEXT_MARKERS
    )


@dataclass(slots=True, frozen=True)
class ToolSelection:
    tool_name: str
    args: dict[str, Any]


@dataclass(slots=True)
class PlannerOutcome:
    """What one server contributed to the turn."""

    server: str
    sections: list[str] = field(default_factory=list)
    calls: list[ToolCallRecord] = field(default_factory=list)
    errors: list[ToolErrorRecord] = field(default_factory=list)
    iterations: int = 0
    terminal: str = "no_tool"


def describe_tools(tools: list[ToolDescriptor]) -> str:
    blocks = []
    for tool in tools:
        lines = [f"Tool: {tool.name}"]
        if tool.description:
            lines.append(f"Description: {tool.description}")
        properties = tool.input_schema.get("properties") or {}
        if properties:
            required = set(tool.input_schema.get("required") or [])
            lines.append("Parameters:")
            for name, schema in properties.items():
                schema = schema if isinstance(schema, dict) else {}
                flag = "required" if name in required else "optional"
                line = f"  - {name} ({flag}): {schema.get('type', 'any')}"
                if schema.get("description"):
                    line += f" - {schema['description']}"
                lines.append(line)
        blocks.append("\n".join(lines))
    return "\n\n".join(blocks)


def build_selection_prompt(message: str, tools: list[ToolDescriptor], server_name: str, previous: str) -> str:
    parts = [
        "You are helping determine which tool to call based on a user's question.",
        f'Available tools from "{server_name}":\n{describe_tools(tools)}',
        f'User\'s question: "{message}"',
    ]
    if previous:
        parts.append(
            f"Previous tool results:\n{previous}\n\nBased on these results, determine if another tool should be called."
        )
    parts.append(
        "Respond with ONLY a JSON object (no markdown, no explanation) in this exact format:\n"
        '{"toolName": "tool-name-here", "args": {"param1": "value1"}}\n\n'
        'If no tool is appropriate or needed, respond with: {"toolName": null, "args": {}}\n\n'
        "Choose the most relevant tool and fill in appropriate parameter values based on the user's question."
    )
    return "\n\n".join(parts)


def parse_selection(text: str) -> ToolSelection | None:
    match = _JSON_OBJECT.search(text or "")
    if not match:
        return None
    try:
        parsed = json.loads(match.group(0))
    except json.JSONDecodeError:
        return None
    if not isinstance(parsed, dict):
        return None
    name = parsed.get("toolName")
    if not name or name == "null":
        return None
    args = parsed.get("args")
    return ToolSelection(str(name), args if isinstance(args, dict) else {})


class ToolCallPlanner:
    """Select, invoke, classify; at most ``max_iterations`` times per server."""

    def __init__(
        self,
        llm: LLMProvider,
        client: ToolServerClient,
        cache: ToolDiscoveryCache,
        max_iterations: int = MAX_ITERATIONS,
    ) -> None:
        self._llm = llm
        self._client = client
        self._cache = cache
        self._max_iterations = max_iterations

    async def select_tool(
        self,
        message: str,
        tools: list[ToolDescriptor],
        server_name: str,
        previous: str = "",
    ) -> ToolSelection | None:
        if not tools:
            return None
        prompt = build_selection_prompt(message, tools, server_name, previous)
        try:
            response = await self._llm.generate([{"role": "user", "content": prompt}], max_tokens=512)
        except Exception:  # noqa: BLE001
            LOGGER.warning("Tool selection failed for %s", server_name, exc_info=True)
            return None
        LOGGER.debug("Tool selection response: %s", response.content[:300])
        return parse_selection(response.content)

    async def describe_server(self, server: ToolServer) -> str | None:
        """Web-searched description of a server whose tools could not be listed."""

        prompt = (
            f"What is the {server.name} tool server? How do I use its tools? What parameters do its main "
            "tools expect? Keep the response brief and technical."
        )
        try:
            response = await self._llm.generate(
                [{"role": "user", "content": prompt}],
                web_search=True,
                max_tokens=1024,
            )
        except Exception:  # noqa: BLE001
            LOGGER.warning("Context lookup failed for %s", server.name, exc_info=True)
            return None
        context = (response.content or "").strip()
        return context if len(context) > SERVER_CONTEXT_MIN_CHARS else None

    async def run(self, server: ToolServer, message: str) -> PlannerOutcome:
        outcome = PlannerOutcome(server=server.name)
        tools = await self._cache.discover(server.url, build_headers(server))
        if not tools:
            context = await self.describe_server(server)
            if context:
                outcome.sections.append(f"\n\nContext about {server.name}:\n{context}")
            outcome.terminal = "no_tools"
            return outcome

        previous = ""
        for iteration in range(self._max_iterations):
            selection = await self.select_tool(message, tools, server.name, previous)
            if selection is None:
                LOGGER.info("No more tools needed for %s after %d iterations", server.name, iteration)
                outcome.terminal = "no_tool"
                return outcome

            outcome.iterations = iteration + 1
            LOGGER.info("Iteration %d: selected tool %r on %s", iteration + 1, selection.tool_name, server.name)
            outcome.calls.append(ToolCallRecord(server.name, selection.tool_name, selection.args))

            result = await self._client.call_tool(server, selection.tool_name, selection.args)
            if not result.ok:
                outcome.errors.append(
                    ToolErrorRecord(server.name, selection.tool_name, result.error[:ERROR_CHAR_LIMIT])
                )
                outcome.terminal = "error"
                return outcome
            if not result.text:
                outcome.terminal = "empty"
                return outcome

            if is_intermediate_result(selection.tool_name, result.text):
                LOGGER.info("Tool %s result is intermediate", selection.tool_name)
                previous += f"\n\nResult from {selection.tool_name}:\n{result.text[:INTERMEDIATE_CHAR_LIMIT]}"
                continue

            text = result.text
            if len(text) > FINAL_CHAR_LIMIT:
                text = text[:FINAL_CHAR_LIMIT] + "..."
            outcome.sections.append(f"\n--- Results from {server.name} ({selection.tool_name}) ---\n{text}")
            outcome.terminal = "result"
            return outcome

        LOGGER.info("Tool loop for %s hit %d iterations without a final result", server.name, self._max_iterations)
        outcome.terminal = "exhausted"
        return outcome

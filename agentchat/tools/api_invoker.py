"""Calls configured third-party HTTP APIs and renders what came back."""

from __future__ import annotations

import json
import logging
import re
from typing import Any

import httpx

from agentchat.errors import ExternalAPIError
from agentchat.llm.base import LLMProvider
from agentchat.models import ApiTool
from agentchat.tools.api_kinds import ApiToolKind, GraphQLKind, OpenAPIKind, classify_api_tool

LOGGER = logging.getLogger(__name__)

USER_AGENT = "AgentChat/1.0"
RESULT_CHAR_LIMIT = 8000
ERROR_BODY_CHAR_LIMIT = 1000

_CODE_FENCE = re.compile(r"```[a-zA-Z]*\n?")

GRAPHQL_QUERY_PROMPT = """Generate a GraphQL query to answer this question: "{message}"

{schema_block}
RULES:
1. Return ONLY the GraphQL query, no explanation
2. Do NOT wrap in markdown code blocks
3. Make it a valid GraphQL query
4. Use the schema information above to create an accurate query
5. Include relevant fields that would answer the user's question
6. For questions asking "what are available" or "list all" or "show me", use plural query names with appropriate pagination (first: 100 or similar)
7. If the question asks for a list/collection, use the plural query form from the schema

Example formats:
- List query: {{ graphNetworks(first: 100) {{ id name }} }}
- Single item: {{ graphNetwork(id: "0x123") {{ id name }} }}
- With filters: {{ subgraphs(first: 50, where: {{ active: true }}) {{ id displayName }} }}"""

OPENAPI_BODY_PROMPT = """Generate a JSON request body for this API to answer: "{message}"

{schema_block}
RULES:
1. Return ONLY valid JSON, no explanation
2. Do NOT wrap in markdown code blocks
3. Include only necessary fields"""


def strip_code_fences(text: str) -> str:
    return _CODE_FENCE.sub("", text).strip()


def build_api_headers(tool: ApiTool) -> dict[str, str]:
    headers = {"User-Agent": USER_AGENT, "Content-Type": "application/json"}
    for name, value in tool.headers.items():
        clean = name.strip()
        if not clean or ":" in clean or " " in clean:
            LOGGER.warning("Skipping invalid header name %r for API tool %s", name, tool.name)
            continue
        headers[clean] = str(value)
    if tool.api_key and not any(name.lower() == "authorization" for name in headers):
        headers["Authorization"] = f"Bearer {tool.api_key}"
    return headers


def render_api_catalog(tools: list[ApiTool]) -> str:
    """List the agent's API tools so the model knows what exists."""

    lines = ["\n\n## Available API Tools:"]
    for tool in tools:
        entry = f"- **{tool.name}** [{tool.method}] {tool.url}"
        if tool.description:
            entry += f": {tool.description}"
        if tool.instructions:
            entry += f"\n  Instructions: {tool.instructions}"
        if tool.schema:
            if isinstance(classify_api_tool(tool), GraphQLKind):
                entry += f"\n  GraphQL Schema:\n{tool.schema}"
                entry += (
                    "\n  IMPORTANT: You can use this GraphQL API to query for lists of items. Look for plural "
                    "query names in the schema to list collections."
                )
            else:
                entry += f"\n  API Schema:\n{tool.schema}"
        lines.append(entry)
    return "\n".join(lines) + "\n"


def _truncate(text: str, limit: int) -> str:
    return text[:limit] + "..." if len(text) > limit else text


def _graphql_error_text(errors: Any) -> str:
    if not isinstance(errors, list):
        return str(errors)
    return "; ".join(str(error.get("message") if isinstance(error, dict) else error) for error in errors)


class ExternalAPIInvoker:
    """Builds one request per relevant API tool and returns a prompt section.

    Every outcome is rendered as text: results, GraphQL error-only replies,
    HTTP errors and transport failures all become sections the model can
    read, so a failing API is explained rather than invented.
    """

    def __init__(self, llm: LLMProvider, timeout_seconds: float = 15.0) -> None:
        self._llm = llm
        self._timeout_seconds = timeout_seconds

    async def _synthesize(self, template: str, kind: GraphQLKind | OpenAPIKind, message: str) -> str:
        schema_block = f"API Schema:\n{kind.schema}\n" if kind.schema else ""
        prompt = template.format(message=message, schema_block=schema_block)
        response = await self._llm.generate([{"role": "user", "content": prompt}], max_tokens=500)
        return strip_code_fences(response.content or "")

    async def build_body(self, kind: ApiToolKind, message: str) -> str:
        if isinstance(kind, GraphQLKind):
            query = await self._synthesize(GRAPHQL_QUERY_PROMPT, kind, message)
            LOGGER.info("Generated GraphQL query: %s", query)
            return json.dumps({"query": query})
        if isinstance(kind, OpenAPIKind):
            body = await self._synthesize(OPENAPI_BODY_PROMPT, kind, message)
            LOGGER.info("Generated request body: %s", body)
            return body or "{}"
        return json.dumps({"query": message, "message": message, "text": message})

    async def _send(self, tool: ApiTool, body: str | None) -> httpx.Response:
        try:
            async with httpx.AsyncClient(timeout=self._timeout_seconds) as client:
                return await client.request(
                    tool.method.upper(),
                    tool.url,
                    headers=build_api_headers(tool),
                    content=body,
                )
        except httpx.HTTPError as exc:
            raise ExternalAPIError(str(exc) or type(exc).__name__) from exc

    async def invoke(self, tool: ApiTool, message: str) -> str:
        kind = classify_api_tool(tool)
        LOGGER.info("Calling API tool %s (%s) at %s", tool.name, type(kind).__name__, tool.url)
        try:
            body = await self.build_body(kind, message) if tool.method.upper() == "POST" else None
            response = await self._send(tool, body)
        except ExternalAPIError as exc:
            LOGGER.warning("API tool %s unreachable: %s", tool.name, exc)
            return f"\n--- Error calling {tool.name} ---\nFailed to reach the API: {exc}"
        except Exception as exc:  # noqa: BLE001
            LOGGER.warning("Could not build a request for API tool %s", tool.name, exc_info=True)
            return f"\n--- Error calling {tool.name} ---\nFailed to build the request: {type(exc).__name__}"

        return self.render_response(tool, kind, response)

    def render_response(self, tool: ApiTool, kind: ApiToolKind, response: httpx.Response) -> str:
        text = response.text
        LOGGER.info("API tool %s response: status=%d, length=%d", tool.name, response.status_code, len(text))
        try:
            data = json.loads(text)
        except json.JSONDecodeError:
            data = None

        if isinstance(kind, GraphQLKind) and isinstance(data, dict):
            if data.get("data"):
                return f"\n--- Result from {tool.name} ---\n{_truncate(text, RESULT_CHAR_LIMIT)}"
            if data.get("errors"):
                messages = _graphql_error_text(data["errors"])
                LOGGER.warning("API tool %s GraphQL errors: %s", tool.name, messages)
                return (
                    f"\n--- Error from {tool.name} ---\nGraphQL errors: {messages}\n\n"
                    "Note: This API may require authorization. Check if an API key or authorization header is needed."
                )

        if response.is_success:
            return f"\n--- Result from {tool.name} ---\n{_truncate(text, RESULT_CHAR_LIMIT)}"

        LOGGER.warning("API tool %s error: %d - %s", tool.name, response.status_code, text[:500])
        if not text:
            return ""
        if isinstance(data, dict) and data.get("errors"):
            info = _graphql_error_text(data["errors"])
        else:
            info = text[:ERROR_BODY_CHAR_LIMIT]
        return f"\n--- Error from {tool.name} ({response.status_code}) ---\n{info}"

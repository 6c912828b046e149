"""JSON-RPC client for remote tool servers."""

from __future__ import annotations

import itertools
import json
import logging
from typing import Any

import httpx

from agentchat.errors import ToolInvocationError
from agentchat.models import ToolDescriptor, ToolInvocationResult, ToolServer

LOGGER = logging.getLogger(__name__)

_REQUEST_IDS = itertools.count(1)


def build_headers(server: ToolServer) -> dict[str, str]:
    headers = {
        "Content-Type": "application/json",
        "Accept": "application/json, text/event-stream",
    }
    headers.update(server.headers)
    if server.api_key and not any(name.lower() == "authorization" for name in headers):
        headers["Authorization"] = f"Bearer {server.api_key}"
    return headers


def decode_rpc_body(response: httpx.Response) -> dict[str, Any]:
    """Parse a JSON-RPC reply that may be framed as server-sent events."""

    content_type = response.headers.get("content-type", "")
    if "text/event-stream" not in content_type:
        body = response.json()
        if not isinstance(body, dict):
            raise ValueError("JSON-RPC reply is not an object")
        return body

    last: dict[str, Any] | None = None
    for line in response.text.splitlines():
        if not line.startswith("data:"):
            continue
        data = line[len("data:"):].strip()
        if not data:
            continue
        try:
            parsed = json.loads(data)
        except json.JSONDecodeError:
            continue
        if isinstance(parsed, dict):
            last = parsed
    if last is None:
        raise ValueError("No JSON-RPC message in event stream")
    return last


def result_text(result: Any) -> str:
    """Text of the first content block, or the whole result as JSON."""

    if isinstance(result, dict):
        content = result.get("content")
        if isinstance(content, list) and content:
            first = content[0]
            if isinstance(first, dict) and isinstance(first.get("text"), str):
                return first["text"]
    return json.dumps(result)


class ToolServerClient:
    """Speaks tools/list and tools/call over HTTP POST."""

    def __init__(self, timeout_seconds: float = 15.0) -> None:
        self._timeout_seconds = timeout_seconds

    async def _post(self, url: str, headers: dict[str, str], method: str, params: dict[str, Any]) -> httpx.Response:
        payload = {"jsonrpc": "2.0", "id": next(_REQUEST_IDS), "method": method, "params": params}
        async with httpx.AsyncClient(timeout=self._timeout_seconds) as client:
            return await client.post(url, headers=headers, json=payload)

    async def list_tools(self, url: str, headers: dict[str, str]) -> list[ToolDescriptor]:
        """Raises ToolInvocationError when the server cannot be listed."""

        try:
            response = await self._post(url, headers, "tools/list", {})
        except httpx.HTTPError as exc:
            raise ToolInvocationError(f"tools/list failed for {url}: {exc}") from exc
        if response.status_code >= 400:
            raise ToolInvocationError(f"tools/list failed for {url}: HTTP {response.status_code}")

        try:
            body = decode_rpc_body(response)
        except ValueError as exc:
            raise ToolInvocationError(f"tools/list returned an unreadable body from {url}") from exc
        if body.get("error"):
            raise ToolInvocationError(f"tools/list error from {url}: {body['error']}")

        result = body.get("result")
        tools = result.get("tools") if isinstance(result, dict) else None
        if not isinstance(tools, list):
            raise ToolInvocationError(f"tools/list returned no tool list from {url}")
        return [ToolDescriptor.from_dict(tool) for tool in tools if isinstance(tool, dict) and tool.get("name")]

    async def call_tool(self, server: ToolServer, name: str, arguments: dict[str, Any]) -> ToolInvocationResult:
        try:
            response = await self._post(
                server.url,
                build_headers(server),
                "tools/call",
                {"name": name, "arguments": arguments},
            )
        except httpx.HTTPError as exc:
            LOGGER.warning("Tool call %s on %s failed: %s", name, server.name, exc)
            return ToolInvocationResult.failure(str(exc) or type(exc).__name__)

        if response.status_code >= 400:
            return ToolInvocationResult.failure(f"{response.status_code}: {response.text[:200]}")

        try:
            body = decode_rpc_body(response)
        except ValueError:
            return ToolInvocationResult.failure("Unreadable response from tool server")

        error = body.get("error")
        if error:
            message = error.get("message") if isinstance(error, dict) else str(error)
            return ToolInvocationResult.failure(message or "Tool call failed")
        return ToolInvocationResult.success(result_text(body.get("result")))

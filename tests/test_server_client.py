import json
from unittest.mock import AsyncMock, patch

import httpx
import pytest

from agentchat.errors import ToolInvocationError
from agentchat.models import ToolServer
from agentchat.tools.discovery import ToolDiscoveryCache
from agentchat.tools.server_client import ToolServerClient, build_headers, decode_rpc_body, result_text

_URL = "https://mcp.example/rpc"


def _mock_response(body=None, status_code=200, sse=False, text=None):
    request = httpx.Request("POST", _URL)
    if text is None and sse:
        text = f"event: message\ndata: {json.dumps(body)}\n\n"
    if text is not None:
        content_type = "text/event-stream" if sse else "text/plain"
        return httpx.Response(status_code, text=text, headers={"content-type": content_type}, request=request)
    return httpx.Response(status_code, json=body, request=request)


def _mock_client(response=None, error=None):
    mock_client = AsyncMock()
    mock_client.__aenter__ = AsyncMock(return_value=mock_client)
    mock_client.__aexit__ = AsyncMock(return_value=False)
    if error is not None:
        mock_client.post = AsyncMock(side_effect=error)
    else:
        mock_client.post = AsyncMock(return_value=response)
    return mock_client


def test_build_headers_adds_bearer_unless_authorization_present():
    server = ToolServer(id="s", name="S", url=_URL, api_key="k1")
    headers = build_headers(server)
    assert headers["Authorization"] == "Bearer k1"
    assert headers["Accept"] == "application/json, text/event-stream"

    explicit = ToolServer(id="s", name="S", url=_URL, api_key="k1", headers={"authorization": "Token t"})
    headers = build_headers(explicit)
    assert headers["authorization"] == "Token t"
    assert "Authorization" not in headers


def test_decode_rpc_body_reads_last_event_stream_message():
    text = 'data: {"jsonrpc": "2.0", "method": "notice"}\ndata: not-json\ndata: {"jsonrpc": "2.0", "result": {}}\n'
    response = _mock_response(sse=True, text=text)
    assert decode_rpc_body(response) == {"jsonrpc": "2.0", "result": {}}

    with pytest.raises(ValueError):
        decode_rpc_body(_mock_response(sse=True, text="event: ping\n\n"))


def test_result_text_prefers_first_text_block():
    assert result_text({"content": [{"type": "text", "text": "hi"}, {"type": "text", "text": "ignored"}]}) == "hi"
    assert result_text({"value": 1}) == '{"value": 1}'


@pytest.mark.asyncio
async def test_list_tools_parses_descriptors():
    body = {
        "jsonrpc": "2.0",
        "id": 1,
        "result": {
            "tools": [
                {"name": "search-docs", "description": "Search", "inputSchema": {"type": "object"}},
                {"description": "missing name"},
            ]
        },
    }
    mock_client = _mock_client(_mock_response(body, sse=True))

    with patch("agentchat.tools.server_client.httpx.AsyncClient", return_value=mock_client):
        tools = await ToolServerClient().list_tools(_URL, {"Accept": "application/json"})

    assert [tool.name for tool in tools] == ["search-docs"]
    assert tools[0].input_schema == {"type": "object"}
    payload = mock_client.post.call_args.kwargs["json"]
    assert payload["method"] == "tools/list"
    assert payload["jsonrpc"] == "2.0"


@pytest.mark.asyncio
async def test_list_tools_raises_on_failures():
    with patch(
        "agentchat.tools.server_client.httpx.AsyncClient",
        return_value=_mock_client(_mock_response({"error": "nope"}, status_code=502)),
    ):
        with pytest.raises(ToolInvocationError):
            await ToolServerClient().list_tools(_URL, {})

    with patch(
        "agentchat.tools.server_client.httpx.AsyncClient",
        return_value=_mock_client(_mock_response({"jsonrpc": "2.0", "error": {"code": -32601}})),
    ):
        with pytest.raises(ToolInvocationError):
            await ToolServerClient().list_tools(_URL, {})


@pytest.mark.asyncio
async def test_call_tool_success_and_error_shapes():
    server = ToolServer(id="s", name="Docs", url=_URL)
    ok = _mock_response({"jsonrpc": "2.0", "result": {"content": [{"type": "text", "text": "answer"}]}})

    with patch("agentchat.tools.server_client.httpx.AsyncClient", return_value=_mock_client(ok)):
        result = await ToolServerClient().call_tool(server, "get-docs", {"topic": "hooks"})
    assert result.ok
    assert result.text == "answer"

    failing = _mock_response(status_code=500, text="x" * 300)
    with patch("agentchat.tools.server_client.httpx.AsyncClient", return_value=_mock_client(failing)):
        result = await ToolServerClient().call_tool(server, "get-docs", {})
    assert not result.ok
    assert result.error == "500: " + "x" * 200

    rpc_error = _mock_response({"jsonrpc": "2.0", "error": {"code": -32602, "message": "bad args"}})
    with patch("agentchat.tools.server_client.httpx.AsyncClient", return_value=_mock_client(rpc_error)):
        result = await ToolServerClient().call_tool(server, "get-docs", {})
    assert result.error == "bad args"

    with patch(
        "agentchat.tools.server_client.httpx.AsyncClient",
        return_value=_mock_client(error=httpx.ConnectTimeout("timed out")),
    ):
        result = await ToolServerClient().call_tool(server, "get-docs", {})
    assert not result.ok
    assert result.error == "timed out"


@pytest.mark.asyncio
async def test_call_tool_reports_non_object_replies():
    server = ToolServer(id="s", name="Docs", url=_URL)

    with patch("agentchat.tools.server_client.httpx.AsyncClient", return_value=_mock_client(_mock_response([1, 2]))):
        result = await ToolServerClient().call_tool(server, "get-docs", {})

    assert not result.ok
    assert result.error == "Unreadable response from tool server"


@pytest.mark.asyncio
@pytest.mark.parametrize("body", [[1, 2], {"result": ["x"]}, {"result": {"tools": "search"}}])
async def test_discovery_of_malformed_tool_list_returns_empty(body):
    client = ToolServerClient()
    cache = ToolDiscoveryCache(client.list_tools)
    mock_client = _mock_client(_mock_response(body))

    with patch("agentchat.tools.server_client.httpx.AsyncClient", return_value=mock_client):
        assert await cache.discover(_URL) == []
        assert await cache.discover(_URL) == []

    assert mock_client.post.await_count == 2

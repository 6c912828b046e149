import json
from unittest.mock import AsyncMock, patch

import httpx
import pytest

from agentchat.models import ApiTool, LLMResponse
from agentchat.tools.api_invoker import (
    ExternalAPIInvoker,
    build_api_headers,
    render_api_catalog,
    strip_code_fences,
)
from agentchat.tools.api_kinds import GenericKind, GraphQLKind


class _FakeLLM:
    def __init__(self, reply=""):
        self.reply = reply
        self.prompts = []

    async def generate(self, messages, tools=None, response_format=None, web_search=False, max_tokens=None,
                       temperature=None):
        self.prompts.append(messages[0]["content"])
        return LLMResponse(content=self.reply)


def _mock_response(status_code=200, body=None, text=None):
    request = httpx.Request("POST", "https://api.example")
    if body is not None:
        return httpx.Response(status_code, json=body, request=request)
    return httpx.Response(status_code, text=text or "", request=request)


def _mock_client(response=None, error=None):
    mock_client = AsyncMock()
    mock_client.__aenter__ = AsyncMock(return_value=mock_client)
    mock_client.__aexit__ = AsyncMock(return_value=False)
    if error is not None:
        mock_client.request = AsyncMock(side_effect=error)
    else:
        mock_client.request = AsyncMock(return_value=response)
    return mock_client


GRAPH_TOOL = ApiTool(id="g", name="Graph", url="https://api.example/graphql", api_type="graphql", schema="type Query")


def test_strip_code_fences():
    assert strip_code_fences("```graphql\n{ items { id } }\n```") == "{ items { id } }"


def test_build_api_headers_skips_invalid_names():
    tool = ApiTool(
        id="a",
        name="A",
        url="https://a",
        headers={"X-Ok": "1", "Bad Header": "2", "Also:Bad": "3", " ": "4"},
        api_key="secret",
    )

    headers = build_api_headers(tool)

    assert headers["X-Ok"] == "1"
    assert "Bad Header" not in headers
    assert "Also:Bad" not in headers
    assert headers["Authorization"] == "Bearer secret"
    assert headers["User-Agent"] == "AgentChat/1.0"


def test_render_api_catalog_mentions_graphql_schema():
    catalog = render_api_catalog([GRAPH_TOOL, ApiTool(id="w", name="Weather", url="https://w", description="Forecasts")])

    assert catalog.startswith("\n\n## Available API Tools:\n- **Graph** [POST] https://api.example/graphql")
    assert "GraphQL Schema:\ntype Query" in catalog
    assert "- **Weather** [POST] https://w: Forecasts" in catalog


@pytest.mark.asyncio
async def test_graphql_body_is_synthesized_from_schema():
    llm = _FakeLLM("```graphql\n{ items(first: 100) { id } }\n```")
    invoker = ExternalAPIInvoker(llm)

    body = await invoker.build_body(GraphQLKind("type Query { items: [Item] }"), "list all items")

    assert json.loads(body) == {"query": "{ items(first: 100) { id } }"}
    assert "type Query { items: [Item] }" in llm.prompts[0]
    assert '"list all items"' in llm.prompts[0]


@pytest.mark.asyncio
async def test_generic_body_carries_message_without_llm():
    llm = _FakeLLM()
    body = await ExternalAPIInvoker(llm).build_body(GenericKind(), "hi")

    assert json.loads(body) == {"query": "hi", "message": "hi", "text": "hi"}
    assert llm.prompts == []


@pytest.mark.asyncio
async def test_graphql_errors_only_reply_becomes_diagnostic():
    response = _mock_response(200, {"errors": [{"message": "Unauthorized"}, {"message": "Missing key"}]})
    invoker = ExternalAPIInvoker(_FakeLLM("{ items { id } }"))

    with patch("agentchat.tools.api_invoker.httpx.AsyncClient", return_value=_mock_client(response)):
        section = await invoker.invoke(GRAPH_TOOL, "list items")

    assert section.startswith("\n--- Error from Graph ---\nGraphQL errors: Unauthorized; Missing key")
    assert "may require authorization" in section


@pytest.mark.asyncio
async def test_graphql_partial_data_is_a_result():
    response = _mock_response(200, {"data": {"items": [{"id": 1}]}, "errors": [{"message": "partial"}]})
    invoker = ExternalAPIInvoker(_FakeLLM("{ items { id } }"))

    with patch("agentchat.tools.api_invoker.httpx.AsyncClient", return_value=_mock_client(response)):
        section = await invoker.invoke(GRAPH_TOOL, "list items")

    assert section.startswith("\n--- Result from Graph ---\n")
    assert '"items"' in section


@pytest.mark.asyncio
async def test_http_error_and_transport_failure_are_rendered():
    tool = ApiTool(id="r", name="Rest", url="https://api.example/rest", method="GET")
    invoker = ExternalAPIInvoker(_FakeLLM())

    mock_client = _mock_client(_mock_response(404, text="not here"))
    with patch("agentchat.tools.api_invoker.httpx.AsyncClient", return_value=mock_client):
        section = await invoker.invoke(tool, "anything")
    assert section == "\n--- Error from Rest (404) ---\nnot here"
    assert mock_client.request.call_args.kwargs["content"] is None
    assert mock_client.request.call_args.args[0] == "GET"

    with patch(
        "agentchat.tools.api_invoker.httpx.AsyncClient",
        return_value=_mock_client(error=httpx.ConnectError("connection refused")),
    ):
        section = await invoker.invoke(tool, "anything")
    assert section == "\n--- Error calling Rest ---\nFailed to reach the API: connection refused"


@pytest.mark.asyncio
async def test_large_results_are_truncated():
    tool = ApiTool(id="r", name="Rest", url="https://api.example/rest", method="GET")
    invoker = ExternalAPIInvoker(_FakeLLM())

    with patch(
        "agentchat.tools.api_invoker.httpx.AsyncClient",
        return_value=_mock_client(_mock_response(200, text="z" * 9000)),
    ):
        section = await invoker.invoke(tool, "anything")

    assert section == "\n--- Result from Rest ---\n" + "z" * 8000 + "..."

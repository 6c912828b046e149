"""Request construction variants for configured API tools."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Union

from agentchat.models import ApiTool


@dataclass(slots=True, frozen=True)
class GraphQLKind:
    schema: str


@dataclass(slots=True, frozen=True)
class OpenAPIKind:
    schema: str


@dataclass(slots=True, frozen=True)
class GenericKind:
    pass


ApiToolKind = Union[GraphQLKind, OpenAPIKind, GenericKind]


def classify_api_tool(tool: ApiTool) -> ApiToolKind:
    """Decide once how requests to this tool are built and parsed."""

    schema = tool.schema or tool.instructions or tool.description or ""
    api_type = (tool.api_type or "").lower()
    if api_type == "graphql":
        return GraphQLKind(schema)
    if api_type == "openapi":
        return OpenAPIKind(schema)

    text = " ".join([tool.description, tool.instructions]).lower()
    if (
        "graph" in tool.url.lower()
        or "graph" in tool.name.lower()
        or "graphql" in text
        or "subgraph" in text
    ):
        return GraphQLKind(schema)
    return GenericKind()

"""HTTP surface for agent chat."""

from __future__ import annotations

import json
import logging
from typing import Any, AsyncIterator

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, ConfigDict, Field

from agentchat.errors import (
    GENERIC_GENERATION_ERROR,
    AgentChatError,
    AuthorizationError,
    ConfigurationError,
    GenerationError,
    NotFoundError,
    ValidationError,
)
from agentchat.events import EventExtractor
from agentchat.models import TurnRequest
from agentchat.orchestrator import ConversationOrchestrator

LOGGER = logging.getLogger(__name__)

_STATUS_CODES: dict[type[AgentChatError], int] = {
    ValidationError: 400,
    AuthorizationError: 403,
    NotFoundError: 404,
    ConfigurationError: 500,
}


class ChatRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    user_address: str = Field(default="", alias="userAddress")
    message: str = ""
    stream: bool = False


class ExtractEventsRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    user_address: str = Field(default="", alias="userAddress")
    knowledge_id: int | None = Field(default=None, alias="knowledgeId")
    year: int | None = None


async def _ndjson(events: AsyncIterator[dict[str, Any]]) -> AsyncIterator[bytes]:
    async for event in events:
        yield (json.dumps(event) + "\n").encode("utf-8")


def create_app(orchestrator: ConversationOrchestrator, extractor: EventExtractor) -> FastAPI:
    app = FastAPI(title="agentchat")

    @app.exception_handler(AgentChatError)
    async def agentchat_error_handler(request: Request, exc: AgentChatError) -> JSONResponse:
        status = _STATUS_CODES.get(type(exc), 500)
        if isinstance(exc, GenerationError):
            return JSONResponse(status_code=500, content={"error": GENERIC_GENERATION_ERROR, "code": exc.code})
        if status >= 500:
            LOGGER.error("Request to %s failed: %s", request.url.path, exc)
        return JSONResponse(status_code=status, content={"error": str(exc)})

    @app.post("/agents/{agent_id}/chat")
    async def chat(agent_id: str, body: ChatRequest):
        request = TurnRequest(user_address=body.user_address, message=body.message, stream=body.stream)
        prepared = await orchestrator.prepare(agent_id, request)
        if request.stream:
            return StreamingResponse(
                _ndjson(orchestrator.stream(prepared)),
                media_type="application/x-ndjson",
                headers={"Cache-Control": "no-store"},
            )
        reply = await orchestrator.respond(prepared)
        return reply.to_dict()

    @app.get("/agents/{agent_id}/chat")
    async def chat_history(agent_id: str, userAddress: str = "", limit: int = 50):
        return {"chats": orchestrator.history(agent_id, userAddress, limit)}

    @app.delete("/agents/{agent_id}/chat")
    async def clear_chat_history(agent_id: str, userAddress: str = ""):
        orchestrator.clear_history(agent_id, userAddress)
        return {"success": True}

    @app.post("/agents/{agent_id}/events/extract")
    async def extract_events(agent_id: str, body: ExtractEventsRequest):
        extractor.authorize(agent_id, body.user_address)
        report = await extractor.extract(agent_id, body.knowledge_id, body.year)
        if report is None:
            raise NotFoundError("No knowledge chunks found")
        return report.to_dict()

    return app

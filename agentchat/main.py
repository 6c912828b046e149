"""Application entrypoint."""

from __future__ import annotations

import logging

import uvicorn
from fastapi import FastAPI

from agentchat.api import create_app
from agentchat.config import Settings, load_settings
from agentchat.db import Database
from agentchat.events import EventExtractor
from agentchat.llm.openrouter import OpenRouterProvider
from agentchat.orchestrator import ConversationOrchestrator
from agentchat.platform import platform_api_tools, platform_tool_servers
from agentchat.retrieval import RetrievalService
from agentchat.scheduling.availability import AvailabilityComputer
from agentchat.scheduling.calendar import GoogleCalendarClient
from agentchat.streamer import ResponseStreamer
from agentchat.tools.api_invoker import ExternalAPIInvoker
from agentchat.tools.discovery import ToolDiscoveryCache
from agentchat.tools.planner import ToolCallPlanner
from agentchat.tools.server_client import ToolServerClient

LOGGER = logging.getLogger(__name__)


def build_app(settings: Settings) -> FastAPI:
    """Initialize app layers and return the HTTP application."""

    db = Database(settings.database_path)
    db.initialize()

    provider = OpenRouterProvider(settings)
    client = ToolServerClient(timeout_seconds=settings.tool_timeout_seconds)
    cache = ToolDiscoveryCache(client.list_tools, ttl_seconds=settings.tool_cache_ttl_seconds)
    calendar = None
    if settings.google_client_id and settings.google_client_secret:
        calendar = GoogleCalendarClient(
            db,
            settings.google_client_id,
            settings.google_client_secret,
            timeout_seconds=settings.calendar_timeout_seconds,
        )
    else:
        LOGGER.info("Google OAuth client not configured; booking slots will not be calendar-filtered")

    orchestrator = ConversationOrchestrator(
        db=db,
        retrieval=RetrievalService(db, provider, fetch_timeout_seconds=settings.knowledge_fetch_timeout_seconds),
        planner=ToolCallPlanner(provider, client, cache, max_iterations=settings.tool_max_iterations),
        api_invoker=ExternalAPIInvoker(provider, timeout_seconds=settings.api_tool_timeout_seconds),
        availability=AvailabilityComputer(db, calendar),
        streamer=ResponseStreamer(
            provider,
            max_tokens=settings.llm_max_output_tokens,
            temperature=settings.llm_temperature,
            request_timeout_seconds=settings.request_timeout_seconds,
        ),
        history_window_messages=settings.history_window_messages,
        llm_configured=bool(settings.openrouter_api_key),
        model_name=settings.openrouter_model,
        platform_servers=platform_tool_servers(settings),
        platform_api_tools=platform_api_tools(settings),
    )
    if not settings.openrouter_api_key:
        LOGGER.warning("OPENROUTER_API_KEY is not set; chat turns will fail until it is configured")
    return create_app(orchestrator, EventExtractor(db, provider))


def main() -> None:
    settings = load_settings()
    logging.basicConfig(level=settings.log_level.upper())
    uvicorn.run(build_app(settings), host=settings.host, port=settings.port, log_level=settings.log_level.lower())


if __name__ == "__main__":
    main()

"""Turn orchestration: gather context, build the prompt, generate, persist."""

from __future__ import annotations

import asyncio
import logging
import time
from contextlib import aclosing
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Callable

from agentchat.db import Database
from agentchat.errors import (
    GENERIC_GENERATION_ERROR,
    AuthorizationError,
    ConfigurationError,
    GenerationError,
    NotFoundError,
    ValidationError,
)
from agentchat.events import EVENTS_CAPABILITY, upcoming_events_context
from agentchat.models import (
    Agent,
    ApiTool,
    ConversationTurn,
    Feature,
    ToolCallRecord,
    ToolErrorRecord,
    ToolServer,
    TurnRequest,
)
from agentchat.prompt import PromptContext, build_system_prompt
from agentchat.relevance import decide_api_tool, decide_events, decide_scheduling, decide_tool_server
from agentchat.retrieval import RetrievalService
from agentchat.scheduling.availability import SCHEDULING_DISABLED_NOTE, AvailabilityComputer
from agentchat.streamer import (
    GenerationResult,
    ResponseStreamer,
    StreamChunk,
    StreamDone,
    StreamFailed,
    build_messages,
)
from agentchat.tools.api_invoker import ExternalAPIInvoker, render_api_catalog
from agentchat.tools.planner import PlannerOutcome, ToolCallPlanner
from agentchat.usage import build_usage_record

LOGGER = logging.getLogger(__name__)

ERROR_REPLY = f"[Error: {GENERIC_GENERATION_ERROR}]"
CANCELLED_REPLY = "[Cancelled]"


@dataclass(slots=True)
class PreparedTurn:
    """A validated turn whose context is gathered and user message persisted."""

    agent: Agent
    user_address: str
    message: str
    messages: list[dict[str, str]]
    web_search: bool
    scheduling: dict[str, Any] | None = None
    tool_calls: list[ToolCallRecord] = field(default_factory=list)
    tool_errors: list[ToolErrorRecord] = field(default_factory=list)


@dataclass(slots=True, frozen=True)
class TurnReply:
    message: str
    agent_name: str
    agent_emoji: str | None = None
    scheduling: dict[str, Any] | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "message": self.message,
            "agentName": self.agent_name,
            "agentEmoji": self.agent_emoji,
            "scheduling": self.scheduling,
        }


def check_access(db: Database, agent: Agent, user_address: str) -> None:
    """Raise AuthorizationError unless ``user_address`` may talk to ``agent``."""

    if agent.owner_address.lower() == user_address:
        return
    if agent.visibility == "private":
        raise AuthorizationError("Access denied")
    if agent.visibility == "friends" and not db.are_friends(agent.owner_address.lower(), user_address):
        raise AuthorizationError("Access denied")


class ConversationOrchestrator:
    """Sequences retrieval, tools, APIs and availability around one generation."""

    def __init__(
        self,
        db: Database,
        retrieval: RetrievalService,
        planner: ToolCallPlanner,
        api_invoker: ExternalAPIInvoker,
        availability: AvailabilityComputer,
        streamer: ResponseStreamer,
        history_window_messages: int = 10,
        llm_configured: bool = True,
        model_name: str | None = None,
        platform_servers: list[ToolServer] | None = None,
        platform_api_tools: list[ApiTool] | None = None,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ) -> None:
        self._db = db
        self._retrieval = retrieval
        self._planner = planner
        self._api_invoker = api_invoker
        self._availability = availability
        self._streamer = streamer
        self._history_window_messages = history_window_messages
        self._llm_configured = llm_configured
        self._model_name = model_name
        self._platform_servers = list(platform_servers or [])
        self._platform_api_tools = list(platform_api_tools or [])
        self._clock = clock

    # Preparation

    def _load_agent(self, agent_id: str, user_address: str) -> Agent:
        agent = self._db.get_agent(agent_id)
        if agent is None:
            raise NotFoundError("Agent not found")
        check_access(self._db, agent, user_address)
        return agent

    async def prepare(self, agent_id: str, request: TurnRequest) -> PreparedTurn:
        """Validate, gather context and persist the user turn.

        Raises ValidationError, ConfigurationError, NotFoundError or
        AuthorizationError before anything is written.
        """
        if not request.user_address or not request.message or not request.message.strip():
            raise ValidationError("User address and message are required")
        if not self._llm_configured:
            raise ConfigurationError("LLM provider is not configured")

        user_address = request.user_address.lower()
        agent = self._load_agent(agent_id, user_address)
        history = self._db.get_recent_turns(agent_id, user_address, self._history_window_messages)
        message = request.message

        context = PromptContext()
        prepared = PreparedTurn(
            agent=agent,
            user_address=user_address,
            message=message,
            messages=[],
            web_search=agent.enabled(Feature.WEB_SEARCH),
        )
        knowledge, outcomes, api_sections, scheduling = await asyncio.gather(
            self._knowledge(agent, message),
            self._tool_servers(agent, message),
            self._api_tools(agent, message),
            self._scheduling(agent, message, history),
        )
        context.knowledge = knowledge
        for outcome in outcomes:
            context.tool_sections.extend(outcome.sections)
            prepared.tool_calls.extend(outcome.calls)
            prepared.tool_errors.extend(outcome.errors)
        context.api_sections = api_sections
        context.scheduling, prepared.scheduling = scheduling
        context.events = self._events(agent, message)
        api_tools = self._effective_api_tools(agent)
        if api_tools:
            context.api_catalog = render_api_catalog(api_tools)

        system_prompt = build_system_prompt(agent, context, self._clock().date())
        prepared.messages = build_messages(system_prompt, history, message)

        self._db.add_chat_turn(
            ConversationTurn(agent_id=agent.id, user_address=user_address, role="user", content=message)
        )
        return prepared

    async def _knowledge(self, agent: Agent, message: str) -> str:
        if not agent.enabled(Feature.KNOWLEDGE_BASE):
            return ""
        try:
            return await self._retrieval.build_context(agent.id, message)
        except Exception:  # noqa: BLE001
            LOGGER.exception("Knowledge context failed for agent %s", agent.id)
            return ""

    def _effective_servers(self, agent: Agent) -> list[ToolServer]:
        servers = list(self._platform_servers)
        if agent.enabled(Feature.TOOL_SERVERS):
            servers.extend(agent.tool_servers)
        return servers

    def _effective_api_tools(self, agent: Agent) -> list[ApiTool]:
        tools = list(self._platform_api_tools)
        if agent.enabled(Feature.API_TOOLS):
            tools.extend(agent.api_tools)
        return tools

    async def _run_server(self, server: ToolServer, message: str) -> PlannerOutcome:
        try:
            return await self._planner.run(server, message)
        except Exception:  # noqa: BLE001
            LOGGER.exception("Error processing tool server %s", server.name)
            return PlannerOutcome(server=server.name, terminal="error")

    async def _tool_servers(self, agent: Agent, message: str) -> list[PlannerOutcome]:
        relevant = []
        for server in self._effective_servers(agent):
            decision = decide_tool_server(server, message)
            LOGGER.info("Tool server %s relevance: %s", server.name, decision.describe())
            if decision:
                relevant.append(server)
        return list(await asyncio.gather(*(self._run_server(server, message) for server in relevant)))

    async def _api_tools(self, agent: Agent, message: str) -> list[str]:
        relevant = []
        for tool in self._effective_api_tools(agent):
            decision = decide_api_tool(tool, message)
            LOGGER.info("API tool %s relevance: %s", tool.name, decision.describe())
            if decision:
                relevant.append(tool)
        results = await asyncio.gather(*(self._api_invoker.invoke(tool, message) for tool in relevant))
        return [result for result in results if result]

    async def _scheduling(
        self, agent: Agent, message: str, history: list[dict[str, str]]
    ) -> tuple[str | None, dict[str, Any] | None]:
        """Prompt text and booking payload; the prompt text never sees calendar data."""

        if not agent.enabled(Feature.SCHEDULING):
            return None, None
        decision = decide_scheduling(message, [turn["content"] for turn in history])
        LOGGER.info("Scheduling intent: %s", decision.describe())
        if not decision:
            return None, None
        try:
            result = await self._availability.compute(agent.owner_address.lower())
        except Exception:  # noqa: BLE001
            LOGGER.exception("Error fetching scheduling info for %s", agent.owner_address)
            return None, None
        if result is None:
            return SCHEDULING_DISABLED_NOTE, None
        return result.prompt_section(), result.payload()

    def _events(self, agent: Agent, message: str) -> str | None:
        if not agent.enabled(Feature.EVENTS):
            return None
        decision = decide_events(message)
        LOGGER.info("Events intent: %s", decision.describe())
        if not decision:
            return EVENTS_CAPABILITY
        try:
            return upcoming_events_context(self._db, self._clock().date()) + EVENTS_CAPABILITY
        except Exception:  # noqa: BLE001
            LOGGER.exception("Error fetching events")
            return EVENTS_CAPABILITY

    # Generation

    def _record_assistant(
        self,
        prepared: PreparedTurn,
        content: str,
        result: GenerationResult | None = None,
        latency_ms: int | None = None,
        error: GenerationError | None = None,
    ) -> None:
        usage = build_usage_record(
            result.usage if result else None,
            latency_ms=result.latency_ms if result else latency_ms,
            error_code=error.code if error else None,
            error_message=error.message if error else None,
        )
        self._db.add_chat_turn(
            ConversationTurn(
                agent_id=prepared.agent.id,
                user_address=prepared.user_address,
                role="assistant",
                content=content,
                model=self._model_name,
                tool_calls=tuple(prepared.tool_calls),
                tool_errors=tuple(prepared.tool_errors),
                usage=usage,
            )
        )

    async def respond(self, prepared: PreparedTurn) -> TurnReply:
        """Generate a whole reply. Re-raises GenerationError after recording it."""

        started = time.monotonic()
        try:
            result = await self._streamer.generate(prepared.messages, web_search=prepared.web_search)
        except asyncio.CancelledError:
            LOGGER.info("Reply for agent %s cancelled by client", prepared.agent.id)
            self._record_assistant(
                prepared,
                CANCELLED_REPLY,
                latency_ms=int((time.monotonic() - started) * 1000),
                error=GenerationError("cancelled", "Client disconnected"),
            )
            raise
        except GenerationError as exc:
            LOGGER.error("Generation failed for agent %s: %s", prepared.agent.id, exc.code)
            self._record_assistant(prepared, ERROR_REPLY, error=exc)
            self._db.increment_agent_messages(prepared.agent.id)
            raise

        self._record_assistant(prepared, result.text, result=result)
        self._db.increment_agent_messages(prepared.agent.id)
        return TurnReply(
            message=result.text,
            agent_name=prepared.agent.name,
            agent_emoji=prepared.agent.avatar_emoji,
            scheduling=prepared.scheduling,
        )

    async def stream(self, prepared: PreparedTurn) -> AsyncIterator[dict[str, Any]]:
        """Yield chunk events, then one done or error event.

        If the consumer goes away first, the provider stream is closed and a
        cancelled assistant row is written; the message counter is left alone.
        """
        started = time.monotonic()
        finished = False
        events = self._streamer.stream(prepared.messages, web_search=prepared.web_search)
        try:
            async with aclosing(events):
                async for event in events:
                    if isinstance(event, StreamChunk):
                        yield {"type": "chunk", "text": event.text}
                    elif isinstance(event, StreamDone):
                        finished = True
                        self._record_assistant(prepared, event.result.text, result=event.result)
                        self._db.increment_agent_messages(prepared.agent.id)
                        yield {"type": "done", "message": event.result.text, "scheduling": prepared.scheduling}
                    elif isinstance(event, StreamFailed):
                        finished = True
                        self._record_assistant(prepared, ERROR_REPLY, latency_ms=event.latency_ms, error=event.error)
                        self._db.increment_agent_messages(prepared.agent.id)
                        yield {"type": "error", "error": GENERIC_GENERATION_ERROR}
        except (asyncio.CancelledError, GeneratorExit):
            if not finished:
                LOGGER.info("Stream for agent %s cancelled by client", prepared.agent.id)
                self._record_assistant(
                    prepared,
                    CANCELLED_REPLY,
                    latency_ms=int((time.monotonic() - started) * 1000),
                    error=GenerationError("cancelled", "Client disconnected"),
                )
            raise

    async def handle(self, agent_id: str, request: TurnRequest) -> TurnReply:
        prepared = await self.prepare(agent_id, request)
        return await self.respond(prepared)

    # History

    def history(self, agent_id: str, user_address: str, limit: int = 50) -> list[dict[str, Any]]:
        if not user_address:
            raise ValidationError("User address required")
        address = user_address.lower()
        self._load_agent(agent_id, address)
        return [
            {"id": row["id"], "role": row["role"], "content": row["content"], "created_at": row["created_at"]}
            for row in self._db.get_chat_history(agent_id, address, limit)
        ]

    def clear_history(self, agent_id: str, user_address: str) -> None:
        if not user_address:
            raise ValidationError("User address required")
        self._db.clear_chat_history(agent_id, user_address.lower())

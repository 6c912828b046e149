"""Time-bounded cache of tool schemas per server address."""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Awaitable, Callable

from agentchat.errors import ToolInvocationError
from agentchat.models import ToolDescriptor

LOGGER = logging.getLogger(__name__)

DEFAULT_TTL_SECONDS = 3600.0

ListTools = Callable[[str, dict[str, str]], Awaitable[list[ToolDescriptor]]]


@dataclass(slots=True, frozen=True)
class _CacheEntry:
    tools: tuple[ToolDescriptor, ...]
    fetched_at: float


class ToolDiscoveryCache:
    """Discovers tools for a server address and keeps them for ``ttl_seconds``.

    Entries are replaced whole, never mutated, so a reader sees either the
    previous entry or the new one. Concurrent misses for the same address
    share one discovery call through a per-address lock. Failures are not
    cached; the next turn tries again.
    """

    def __init__(
        self,
        list_tools: ListTools,
        ttl_seconds: float = DEFAULT_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._list_tools = list_tools
        self._ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: dict[str, _CacheEntry] = {}
        self._locks: dict[str, asyncio.Lock] = {}

    def _fresh(self, server_url: str) -> _CacheEntry | None:
        entry = self._entries.get(server_url)
        if entry is not None and self._clock() - entry.fetched_at < self._ttl_seconds:
            return entry
        return None

    async def discover(self, server_url: str, headers: dict[str, str] | None = None) -> list[ToolDescriptor]:
        entry = self._fresh(server_url)
        if entry is not None:
            LOGGER.debug("Using cached tools for %s", server_url)
            return list(entry.tools)

        lock = self._locks.setdefault(server_url, asyncio.Lock())
        async with lock:
            entry = self._fresh(server_url)
            if entry is not None:
                return list(entry.tools)

            try:
                tools = await self._list_tools(server_url, headers or {})
            except ToolInvocationError as exc:
                LOGGER.warning("Tool discovery failed for %s: %s", server_url, exc)
                return []

            self._entries[server_url] = _CacheEntry(tuple(tools), self._clock())
            LOGGER.info("Discovered %d tools from %s", len(tools), server_url)
            return list(tools)

    def invalidate(self, server_url: str | None = None) -> None:
        if server_url is None:
            self._entries.clear()
        else:
            self._entries.pop(server_url, None)

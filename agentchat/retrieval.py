"""Knowledge-base retrieval for prompt grounding."""

from __future__ import annotations

import asyncio
import logging
import re
import sqlite3
from dataclasses import replace

import httpx
import trafilatura

from agentchat.db import Database
from agentchat.llm.base import LLMProvider
from agentchat.models import KnowledgeChunk, KnowledgeItem

LOGGER = logging.getLogger(__name__)

MATCH_THRESHOLD = 0.25
MIN_MATCH_COUNT = 8
DEFAULT_CHUNK_COUNT = 5
PENDING_ITEM_LIMIT = 3
FETCH_CHAR_LIMIT = 2000
ALLOWED_CONTENT_TYPES = ("text/html", "text/plain")
USER_AGENT = "Mozilla/5.0 (compatible; AgentChatBot/1.0)"

_DATA_URI_IMAGE = re.compile(r"data:image/[^;]+;base64,[A-Za-z0-9+/=]{100,}")
_MARKDOWN_DATA_IMAGE = re.compile(r"!\[[^\]]*\]\(data:image/[^)]+\)")
_LONG_BASE64 = re.compile(r"[A-Za-z0-9+/=]{200,}")
_SCRAPER_PLACEHOLDER = re.compile(r"<Base64-Image-Removed>")


def scrub_base64(content: str) -> str:
    """Remove embedded binary payloads so they never reach a prompt."""

    cleaned = _MARKDOWN_DATA_IMAGE.sub("[base64 image removed]", content)
    cleaned = _DATA_URI_IMAGE.sub("[image removed]", cleaned)
    cleaned = _LONG_BASE64.sub("[encoded data removed]", cleaned)
    return _SCRAPER_PLACEHOLDER.sub("", cleaned)


def html_to_text(html: str) -> str | None:
    """Main readable text of a page, or None when nothing could be extracted."""

    text = trafilatura.extract(html, include_comments=False, include_tables=True)
    if not text:
        text = trafilatura.extract(html, include_comments=False, include_tables=True, favor_recall=True)
    return text.strip() if text else None


class RetrievalService:
    """Embeds a query and pulls the closest knowledge chunks for an agent.

    Retrieval is best-effort: any failure yields an empty result and the turn
    continues without knowledge context.
    """

    def __init__(self, db: Database, llm: LLMProvider, fetch_timeout_seconds: float = 5.0) -> None:
        self._db = db
        self._llm = llm
        self._fetch_timeout_seconds = fetch_timeout_seconds

    async def retrieve(self, agent_id: str, query: str, max_chunks: int = DEFAULT_CHUNK_COUNT) -> list[KnowledgeChunk]:
        try:
            embedding = await self._llm.embed(query)
        except Exception:  # noqa: BLE001
            LOGGER.warning("Query embedding failed, continuing without RAG", exc_info=True)
            return []
        if not embedding:
            return []

        try:
            chunks = self._db.match_knowledge_chunks(
                agent_id,
                embedding,
                match_count=max(max_chunks, MIN_MATCH_COUNT),
                threshold=MATCH_THRESHOLD,
            )
        except sqlite3.Error:
            LOGGER.exception("Knowledge chunk search failed for agent %s", agent_id)
            return []

        LOGGER.info("Found %d relevant chunks for agent %s", len(chunks), agent_id)
        return [replace(chunk, content=scrub_base64(chunk.content)) for chunk in chunks]

    async def fetch_pending(self, agent_id: str, limit: int = PENDING_ITEM_LIMIT) -> list[str]:
        """Fetch not-yet-indexed items directly, concurrently."""

        items = self._db.list_pending_knowledge(agent_id, limit=limit)
        if not items:
            return []
        LOGGER.info("Falling back to URL fetching for %d items", len(items))
        contents = await asyncio.gather(*(self._fetch_url_text(item.url) for item in items))
        return [
            _render_item(item, content)
            for item, content in zip(items, contents)
            if content
        ]

    async def build_context(self, agent_id: str, query: str) -> str:
        """Knowledge section body for the prompt, or an empty string."""

        chunks = await self.retrieve(agent_id, query)
        if chunks:
            return "\n\n## Relevant Knowledge (from indexed sources):\n" + "\n\n---\n\n".join(
                chunk.render() for chunk in chunks
            )
        fetched = await self.fetch_pending(agent_id)
        if fetched:
            return "\n\n## Knowledge Base Context:\n" + "\n".join(fetched)
        return ""

    async def _fetch_url_text(self, url: str) -> str | None:
        try:
            async with httpx.AsyncClient(follow_redirects=True) as client:
                response = await client.get(
                    url,
                    headers={"User-Agent": USER_AGENT},
                    timeout=self._fetch_timeout_seconds,
                )
        except httpx.HTTPError as exc:
            LOGGER.info("Knowledge fetch failed for %s: %s", url, exc)
            return None

        if response.status_code != 200:
            return None
        content_type = response.headers.get("content-type", "")
        if not any(allowed in content_type for allowed in ALLOWED_CONTENT_TYPES):
            return None
        if "text/plain" in content_type:
            text = response.text.strip()
        else:
            text = await asyncio.to_thread(html_to_text, response.text)
        if not text:
            LOGGER.info("No readable text extracted from %s", url)
            return None
        return text[:FETCH_CHAR_LIMIT]


def _render_item(item: KnowledgeItem, content: str) -> str:
    return f"\n--- {item.title} ({item.url}) ---\n{scrub_base64(content)}"

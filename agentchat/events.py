"""Events database guidance and extraction of events from knowledge chunks."""

from __future__ import annotations

import asyncio
import json
import logging
import re
from dataclasses import asdict, dataclass, field
from datetime import date, datetime, timezone
from typing import Any, Callable, Iterable

from agentchat.db import Database
from agentchat.errors import AuthorizationError, NotFoundError, ValidationError
from agentchat.llm.base import LLMProvider
from agentchat.models import ExtractedEvent

LOGGER = logging.getLogger(__name__)

UPCOMING_EVENT_LIMIT = 40
EXTRACTION_CHUNK_LIMIT = 50
EXTRACTION_BATCH_SIZE = 10
BATCH_DELAY_SECONDS = 0.5

EVENTS_CAPABILITY = """

## Events Capability
You can help users discover and register for events (conferences, hackathons, meetups, etc.).
When users ask about events, query the database and present relevant options.
"""

EXTRACTION_PROMPT = """Extract structured event information from this content. The events are happening in {year}.

IMPORTANT:
- Only extract ACTUAL EVENTS with specific dates, times, and names
- Skip navigation elements, UI text, or generic descriptions
- Use YYYY-MM-DD format for dates (year is {year})
- Use HH:MM format for times (24-hour)
- Determine if event is "official" (main conference), "community" (side event), or "sponsor" (company-hosted)

Return a JSON array of events. Each event should have:
{{
  "name": "Event Name",
  "description": "Brief description (optional)",
  "event_type": "party|summit|meetup|conference|hackathon|workshop|networking|other",
  "event_date": "YYYY-MM-DD",
  "start_time": "HH:MM (optional)",
  "end_time": "HH:MM (optional)",
  "venue": "Location name (optional)",
  "organizer": "Organizer name (optional)",
  "event_url": "URL to event page (optional)",
  "source": "official|community|sponsor"
}}

If no valid events found, return an empty array [].

Content to analyze:
{content}

Return ONLY valid JSON array, no markdown or explanation:"""

_LEADING_THE = re.compile(r"^\s*the\s+", re.IGNORECASE)
_TRAILING_YEAR = re.compile(r"\s*\d{4}\s*$")
_FENCE_START = re.compile(r"^```(?:json)?\n?")
_FENCE_END = re.compile(r"\n?```$")


def normalize_event_name(name: str) -> str:
    text = _LEADING_THE.sub("", (name or "").lower())
    text = re.sub(r"\s+", " ", text)
    return _TRAILING_YEAR.sub("", text).strip()


def dedupe_listed_events(events: Iterable[dict[str, Any]]) -> list[dict[str, Any]]:
    """Collapse listing variants of the same event (name, date, location)."""

    seen: set[str] = set()
    unique = []
    for event in events:
        location = ", ".join(part for part in (event.get("city"), event.get("country")) if part).lower() or "tba"
        key = f"{normalize_event_name(event.get('name') or '')}|{event.get('event_date')}|{location}"
        if key in seen:
            continue
        seen.add(key)
        unique.append(event)
    return unique


def _render_event(event: dict[str, Any]) -> str:
    where = "Virtual" if event.get("is_virtual") else " ".join(
        part for part in (event.get("venue"), event.get("city"), event.get("country")) if part
    )
    lines = [f"- **{event['name']}** ({event.get('event_type') or 'event'})"]
    when = event["event_date"]
    if event.get("start_time"):
        when += f" @ {event['start_time']}"
    lines.append(f"  Date: {when}")
    lines.append(f"  Location: {where or 'TBA'}")
    if event.get("organizer"):
        lines.append(f"  Organizer: {event['organizer']}")
    if event.get("event_url"):
        lines.append(f"  Event: {event['event_url']}")
    if event.get("rsvp_url"):
        lines.append(f"  Register: {event['rsvp_url']}")
    if event.get("registration_enabled"):
        lines.append("  Direct registration available")
    if event.get("is_featured"):
        lines.append("  Featured event")
    return "\n".join(lines)


def render_events_section(events: list[dict[str, Any]]) -> str:
    if not events:
        return (
            "\n\n## Events Database\n\n"
            "You have access to a global events database, but there are currently no upcoming events listed.\n"
        )
    listing = "\n\n".join(_render_event(event) for event in events)
    return (
        f"\n\n## Global Events Database ({len(events)} upcoming events):\n\n"
        "You have access to a curated events database. Here are upcoming events.\n"
        "List each event only once. When the same event appears in different forms, present it once with the "
        "clearest name and location.\n\n"
        f"{listing}\n\n"
        "When users ask to register for an event:\n"
        "1. If the event has direct registration available, tell them you can register them directly\n"
        "2. If there's an RSVP URL, provide the link and offer to help\n"
    )


def upcoming_events_context(db: Database, today: date) -> str:
    events = dedupe_listed_events(db.list_upcoming_events(today, limit=UPCOMING_EVENT_LIMIT))
    LOGGER.info("Adding events context with %d events", len(events))
    return render_events_section(events)


def parse_event_array(text: str) -> list[dict[str, Any]]:
    cleaned = (text or "").strip() or "[]"
    if cleaned.startswith("```"):
        cleaned = _FENCE_END.sub("", _FENCE_START.sub("", cleaned))
    try:
        parsed = json.loads(cleaned)
    except json.JSONDecodeError:
        LOGGER.warning("Event extraction returned invalid JSON")
        return []
    return [item for item in parsed if isinstance(item, dict)] if isinstance(parsed, list) else []


def dedupe_extracted(events: Iterable[ExtractedEvent]) -> list[ExtractedEvent]:
    unique: dict[str, ExtractedEvent] = {}
    for event in events:
        unique.setdefault(f"{event.name.lower()}-{event.event_date}", event)
    return list(unique.values())


@dataclass(slots=True)
class ExtractionReport:
    extracted: int = 0
    inserted: int = 0
    skipped: int = 0
    events: list[ExtractedEvent] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": True,
            "extracted": self.extracted,
            "inserted": self.inserted,
            "skipped": self.skipped,
            "events": [asdict(event) for event in self.events],
        }


class EventExtractor:
    """Pulls dated events out of an agent's indexed knowledge."""

    def __init__(
        self,
        db: Database,
        llm: LLMProvider,
        batch_delay_seconds: float = BATCH_DELAY_SECONDS,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ) -> None:
        self._db = db
        self._llm = llm
        self._batch_delay_seconds = batch_delay_seconds
        self._clock = clock

    def authorize(self, agent_id: str, user_address: str) -> None:
        """Only the agent's owner may run extraction."""

        if not user_address:
            raise ValidationError("User address required")
        agent = self._db.get_agent(agent_id)
        if agent is None:
            raise NotFoundError("Agent not found")
        if agent.owner_address.lower() != user_address.lower():
            raise AuthorizationError("Owner access required")

    async def _extract_batch(self, batch: list[dict[str, Any]], year: int) -> list[ExtractedEvent]:
        content = "\n\n---\n\n".join(
            f"[Source: {chunk.get('source_title') or 'Unknown'}]\n{chunk['content']}" for chunk in batch
        )
        prompt = EXTRACTION_PROMPT.format(year=year, content=content)
        try:
            response = await self._llm.generate(
                [{"role": "user", "content": prompt}],
                temperature=0.1,
                max_tokens=4096,
            )
        except Exception:  # noqa: BLE001
            LOGGER.warning("Event extraction batch failed", exc_info=True)
            return []
        events = (ExtractedEvent.from_dict(item) for item in parse_event_array(response.content))
        return [event for event in events if event is not None]

    async def extract(
        self,
        agent_id: str,
        knowledge_id: int | None = None,
        year: int | None = None,
    ) -> ExtractionReport | None:
        """None when the agent has no chunks to read. Dates default to the current year."""

        year = year or self._clock().year
        chunks = self._db.list_knowledge_chunks(agent_id, knowledge_id, limit=EXTRACTION_CHUNK_LIMIT)
        if not chunks:
            return None
        LOGGER.info("Extracting events from %d chunks for agent %s", len(chunks), agent_id)

        found: list[ExtractedEvent] = []
        for start in range(0, len(chunks), EXTRACTION_BATCH_SIZE):
            found.extend(await self._extract_batch(chunks[start:start + EXTRACTION_BATCH_SIZE], year))
            if start + EXTRACTION_BATCH_SIZE < len(chunks) and self._batch_delay_seconds:
                await asyncio.sleep(self._batch_delay_seconds)

        unique = dedupe_extracted(found)
        report = ExtractionReport(extracted=len(unique), events=unique)
        for event in unique:
            if self._db.insert_agent_event(agent_id, event, knowledge_id):
                report.inserted += 1
            else:
                report.skipped += 1
        LOGGER.info(
            "Event extraction for %s: %d unique, %d inserted, %d skipped",
            agent_id,
            report.extracted,
            report.inserted,
            report.skipped,
        )
        return report

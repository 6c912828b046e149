import json
from datetime import date, datetime, timezone

import pytest

from agentchat.db import Database
from agentchat.errors import AuthorizationError, NotFoundError, ValidationError
from agentchat.events import (
    EventExtractor,
    dedupe_extracted,
    dedupe_listed_events,
    normalize_event_name,
    parse_event_array,
    upcoming_events_context,
)
from agentchat.models import Agent, ExtractedEvent, LLMResponse


class _FakeLLM:
    def __init__(self, replies):
        self.replies = list(replies)
        self.calls = []

    async def generate(self, messages, tools=None, response_format=None, web_search=False, max_tokens=None,
                       temperature=None):
        self.calls.append({"prompt": messages[0]["content"], "temperature": temperature, "max_tokens": max_tokens})
        reply = self.replies.pop(0)
        if isinstance(reply, Exception):
            raise reply
        return LLMResponse(content=reply)


def _db(tmp_path):
    db = Database(tmp_path / "agentchat.db")
    db.initialize()
    db.upsert_agent(Agent(id="agent-1", owner_address="0xOwner", name="Events Bot"))
    return db


def _add_chunks(db, count):
    item_id = db.add_knowledge_item("agent-1", "https://conf.example", "Conference Site", status="indexed")
    for index in range(count):
        db.add_knowledge_chunk("agent-1", item_id, f"chunk {index}", [1.0])
    return item_id


def test_normalize_event_name():
    assert normalize_event_name("The  ETH Summit 2026") == "eth summit"


def test_dedupe_listed_events_by_name_date_location():
    events = [
        {"name": "ETH Summit 2026", "event_date": "2026-03-01", "city": "Denver", "country": "USA"},
        {"name": "The ETH Summit", "event_date": "2026-03-01", "city": "Denver", "country": "USA"},
        {"name": "ETH Summit", "event_date": "2026-03-01"},
    ]
    assert [event["name"] for event in dedupe_listed_events(events)] == ["ETH Summit 2026", "ETH Summit"]


def test_upcoming_events_context(tmp_path):
    db = _db(tmp_path)
    assert "no upcoming events listed" in upcoming_events_context(db, date(2026, 1, 1))

    db.add_event({"name": "Builders Meetup", "event_date": "2026-02-10", "city": "Austin", "rsvp_url": "https://r"})
    context = upcoming_events_context(db, date(2026, 1, 1))
    assert "## Global Events Database (1 upcoming events):" in context
    assert "- **Builders Meetup** (event)" in context
    assert "  Register: https://r" in context


def test_parse_event_array_handles_fences_and_garbage():
    assert parse_event_array('```json\n[{"name": "A", "event_date": "2026-01-01"}]\n```') == [
        {"name": "A", "event_date": "2026-01-01"}
    ]
    assert parse_event_array("not json") == []
    assert parse_event_array('{"name": "A"}') == []


def test_dedupe_extracted_is_case_insensitive():
    events = [ExtractedEvent("Hack Night", "2026-04-01"), ExtractedEvent("hack night", "2026-04-01")]
    assert dedupe_extracted(events) == [events[0]]


def test_authorize_requires_owner(tmp_path):
    extractor = EventExtractor(_db(tmp_path), _FakeLLM([]))

    extractor.authorize("agent-1", "0xOWNER")
    with pytest.raises(ValidationError):
        extractor.authorize("agent-1", "")
    with pytest.raises(NotFoundError):
        extractor.authorize("missing", "0xowner")
    with pytest.raises(AuthorizationError):
        extractor.authorize("agent-1", "0xsomeone")


@pytest.mark.asyncio
async def test_extract_counts_duplicates_as_skipped(tmp_path):
    db = _db(tmp_path)
    _add_chunks(db, 12)
    db.insert_agent_event("agent-1", ExtractedEvent("Hack Night", "2026-04-01"))
    first_batch = json.dumps([
        {"name": "Hack Night", "event_date": "2026-04-01"},
        {"name": "Demo Day", "event_date": "2026-04-02", "source": "official"},
        {"name": "No Date"},
    ])
    llm = _FakeLLM([first_batch, RuntimeError("provider down")])
    extractor = EventExtractor(db, llm, batch_delay_seconds=0)

    report = await extractor.extract("agent-1", year=2026)

    assert len(llm.calls) == 2
    assert llm.calls[0]["temperature"] == 0.1
    assert "[Source: Conference Site]\nchunk 0" in llm.calls[0]["prompt"]
    assert "events are happening in 2026" in llm.calls[0]["prompt"]
    assert report.extracted == 2
    assert report.inserted == 1
    assert report.skipped == 1
    body = report.to_dict()
    assert body["success"] is True
    assert [event["name"] for event in body["events"]] == ["Hack Night", "Demo Day"]
    assert len(db.list_agent_events("agent-1")) == 2


@pytest.mark.asyncio
async def test_extract_without_chunks_returns_none(tmp_path):
    extractor = EventExtractor(_db(tmp_path), _FakeLLM([]), batch_delay_seconds=0)
    assert await extractor.extract("agent-1") is None


@pytest.mark.asyncio
async def test_extract_defaults_year_from_clock_and_skips_recased_names(tmp_path):
    db = _db(tmp_path)
    _add_chunks(db, 1)
    db.insert_agent_event("agent-1", ExtractedEvent("Hack Night", "2027-04-01"))
    llm = _FakeLLM([json.dumps([{"name": "HACK NIGHT", "event_date": "2027-04-01"}])])
    extractor = EventExtractor(
        db,
        llm,
        batch_delay_seconds=0,
        clock=lambda: datetime(2027, 1, 5, tzinfo=timezone.utc),
    )

    report = await extractor.extract("agent-1")

    assert "events are happening in 2027" in llm.calls[0]["prompt"]
    assert report.inserted == 0
    assert report.skipped == 1
    assert len(db.list_agent_events("agent-1")) == 1

import json

from fastapi import FastAPI
from fastapi.testclient import TestClient

from agentchat.api import create_app
from agentchat.config import Settings
from agentchat.events import EventExtractor
from agentchat.main import build_app
from agentchat.models import LLMStreamChunk

from test_orchestrator import USER, FakeProvider, _db, _orchestrator


def _client(tmp_path, provider=None, **agent_kwargs):
    db = _db(tmp_path, **agent_kwargs)
    provider = provider or FakeProvider(reply="Hi there")
    app = create_app(_orchestrator(db, provider), EventExtractor(db, provider, batch_delay_seconds=0))
    return TestClient(app), db


def test_post_chat_returns_reply(tmp_path):
    client, db = _client(tmp_path)

    response = client.post("/agents/agent-1/chat", json={"userAddress": USER, "message": "hello"})

    assert response.status_code == 200
    assert response.json() == {"message": "Hi there", "agentName": "Ada", "agentEmoji": "🤖", "scheduling": None}
    assert db.get_agent_message_count("agent-1") == 1


def test_post_chat_streams_ndjson(tmp_path):
    provider = FakeProvider(chunks=[LLMStreamChunk(text="Hi "), LLMStreamChunk(text="there")])
    client, _ = _client(tmp_path, provider)

    response = client.post("/agents/agent-1/chat", json={"userAddress": USER, "message": "hello", "stream": True})

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("application/x-ndjson")
    events = [json.loads(line) for line in response.text.splitlines() if line]
    assert events == [
        {"type": "chunk", "text": "Hi "},
        {"type": "chunk", "text": "there"},
        {"type": "done", "message": "Hi there", "scheduling": None},
    ]


def test_error_status_codes(tmp_path):
    client, _ = _client(tmp_path, visibility="private")

    assert client.post("/agents/agent-1/chat", json={"userAddress": USER, "message": ""}).status_code == 400
    assert client.post("/agents/missing/chat", json={"userAddress": USER, "message": "hi"}).status_code == 404
    denied = client.post("/agents/agent-1/chat", json={"userAddress": USER, "message": "hi"})
    assert denied.status_code == 403
    assert denied.json() == {"error": "Access denied"}


def test_generation_failure_is_a_generic_500(tmp_path):
    client, _ = _client(tmp_path, FakeProvider(error=RuntimeError("key=secret123 rejected")))

    response = client.post("/agents/agent-1/chat", json={"userAddress": USER, "message": "hi"})

    assert response.status_code == 500
    assert response.json() == {"error": "Failed to generate response", "code": "unknown"}
    assert "secret123" not in response.text


def test_history_endpoints(tmp_path):
    client, _ = _client(tmp_path)
    client.post("/agents/agent-1/chat", json={"userAddress": USER, "message": "hello"})

    chats = client.get("/agents/agent-1/chat", params={"userAddress": USER}).json()["chats"]
    assert [chat["content"] for chat in chats] == ["hello", "Hi there"]

    assert client.delete("/agents/agent-1/chat", params={"userAddress": USER}).json() == {"success": True}
    assert client.get("/agents/agent-1/chat", params={"userAddress": USER}).json() == {"chats": []}
    assert client.get("/agents/agent-1/chat").status_code == 400


def test_extract_events_endpoint(tmp_path):
    provider = FakeProvider(selections=['[{"name": "Demo Day", "event_date": "2026-04-02"}]'])
    client, db = _client(tmp_path, provider)

    missing = client.post("/agents/agent-1/events/extract", json={"userAddress": "0xowner"})
    assert missing.status_code == 404
    assert missing.json() == {"error": "No knowledge chunks found"}

    item_id = db.add_knowledge_item("agent-1", "https://conf.example", "Conf", status="indexed")
    db.add_knowledge_chunk("agent-1", item_id, "Demo Day on April 2", [1.0])
    assert client.post("/agents/agent-1/events/extract", json={"userAddress": USER}).status_code == 403

    response = client.post("/agents/agent-1/events/extract", json={"userAddress": "0xowner", "knowledgeId": item_id})
    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    assert body["inserted"] == 1
    assert body["events"][0]["name"] == "Demo Day"


def test_build_app_wires_dependencies(tmp_path):
    app = build_app(Settings(DATABASE_PATH=str(tmp_path / "agentchat.db"), OPENROUTER_API_KEY="sk-test"))

    assert isinstance(app, FastAPI)
    assert (tmp_path / "agentchat.db").exists()

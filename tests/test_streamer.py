import asyncio

import pytest

from agentchat.errors import GenerationError
from agentchat.models import LLMResponse, LLMStreamChunk, TokenUsage
from agentchat.streamer import (
    FALLBACK_REPLY,
    ResponseStreamer,
    StreamChunk,
    StreamDone,
    StreamFailed,
    build_messages,
)


class _FakeProvider:
    def __init__(self, content="", chunks=(), error=None, stream_error_after=None, delay=0.0):
        self.content = content
        self.chunks = list(chunks)
        self.error = error
        self.stream_error_after = stream_error_after
        self.delay = delay
        self.generate_kwargs = None
        self.stream_closed = False

    async def generate(self, messages, tools=None, response_format=None, web_search=False, max_tokens=None,
                       temperature=None):
        self.generate_kwargs = {"web_search": web_search, "max_tokens": max_tokens, "temperature": temperature}
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error:
            raise self.error
        return LLMResponse(content=self.content, usage=TokenUsage(12, 3, 15))

    async def stream(self, messages, web_search=False, max_tokens=None, temperature=None):
        try:
            for index, chunk in enumerate(self.chunks):
                if self.stream_error_after is not None and index == self.stream_error_after:
                    raise RuntimeError("stream dropped")
                yield chunk
        finally:
            self.stream_closed = True


async def _collect(events):
    return [event async for event in events]


def test_build_messages_orders_system_history_user():
    messages = build_messages("sys", [{"role": "user", "content": "a"}, {"role": "assistant", "content": "b"}], "c")
    assert [m["role"] for m in messages] == ["system", "user", "assistant", "user"]
    assert messages[-1]["content"] == "c"


@pytest.mark.asyncio
async def test_generate_passes_settings_and_strips():
    provider = _FakeProvider(content="  Hello there  ")
    streamer = ResponseStreamer(provider, max_tokens=256, temperature=0.7)

    result = await streamer.generate([{"role": "user", "content": "hi"}], web_search=True)

    assert result.text == "Hello there"
    assert result.usage == TokenUsage(12, 3, 15)
    assert result.latency_ms >= 0
    assert provider.generate_kwargs == {"web_search": True, "max_tokens": 256, "temperature": 0.7}


@pytest.mark.asyncio
async def test_generate_empty_reply_uses_fallback():
    result = await ResponseStreamer(_FakeProvider(content="   ")).generate([])
    assert result.text == FALLBACK_REPLY


@pytest.mark.asyncio
async def test_generate_failures_become_generation_errors():
    with pytest.raises(GenerationError) as exc_info:
        await ResponseStreamer(_FakeProvider(error=RuntimeError("quota exceeded"))).generate([])
    assert exc_info.value.code == "rate_limited"

    with pytest.raises(GenerationError) as exc_info:
        await ResponseStreamer(_FakeProvider(delay=1.0), request_timeout_seconds=0.01).generate([])
    assert exc_info.value.code == "timeout"


@pytest.mark.asyncio
async def test_stream_yields_chunks_then_done_with_usage():
    provider = _FakeProvider(chunks=[
        LLMStreamChunk(text="Hel"),
        LLMStreamChunk(text="lo "),
        LLMStreamChunk(usage=TokenUsage(5, 2, 7)),
    ])

    events = await _collect(ResponseStreamer(provider).stream([]))

    assert events[:2] == [StreamChunk("Hel"), StreamChunk("lo ")]
    assert len(events) == 3
    done = events[-1]
    assert isinstance(done, StreamDone)
    assert done.result.text == "Hello"
    assert done.result.usage == TokenUsage(5, 2, 7)
    assert provider.stream_closed


@pytest.mark.asyncio
async def test_stream_failure_ends_with_failed_event():
    provider = _FakeProvider(chunks=[LLMStreamChunk(text="partial"), LLMStreamChunk(text="never")], stream_error_after=1)

    events = await _collect(ResponseStreamer(provider).stream([]))

    assert events[0] == StreamChunk("partial")
    assert isinstance(events[-1], StreamFailed)
    assert events[-1].error.code == "unknown"
    assert len(events) == 2


@pytest.mark.asyncio
async def test_closing_stream_early_closes_provider():
    provider = _FakeProvider(chunks=[LLMStreamChunk(text="a"), LLMStreamChunk(text="b")])
    events = ResponseStreamer(provider).stream([])

    first = await events.__anext__()
    await events.aclose()

    assert first == StreamChunk("a")
    assert provider.stream_closed


@pytest.mark.asyncio
async def test_empty_stream_falls_back():
    events = await _collect(ResponseStreamer(_FakeProvider(chunks=[])).stream([]))
    assert events == [StreamDone(events[0].result)]
    assert events[0].result.text == FALLBACK_REPLY

"""Tests for the Bridge: one frontend bound to one backend."""
import asyncio
from contextlib import aclosing

import pytest

from llmbridge.infrastructure.llm.adapters import AnthropicFrontend, OpenAIFrontend, ProviderType
from llmbridge.infrastructure.llm.balancer import HealthTable
from llmbridge.infrastructure.llm.bridge import Bridge, ChatFacade, ChunkSequencer
from llmbridge.infrastructure.llm.exceptions import (
    ProviderError, ProviderErrorKind, StreamError, TranslationError, ValidationError,
)
from llmbridge.infrastructure.llm.transport import EchoTransport, TransportConnectionError
from llmbridge.infrastructure.llm.types import ChunkKind, FinishReason, IRChatChunk

from fakes import (
    Pause, ScriptedTransport, anthropic_reply, anthropic_stream_lines, http_error, ir_request,
    make_backend, openai_reply, openai_stream_lines,
)

CHAT = {"messages": [{"role": "user", "content": "the quick brown fox"}]}


def _chunk(sequence, kind=ChunkKind.CONTENT, delta="x"):
    return IRChatChunk(sequence, kind, delta=delta if kind == ChunkKind.CONTENT else "",
                       finish_reason=FinishReason.STOP if kind == ChunkKind.DONE else None)


async def _events(bridge, raw):
    events = []
    async with aclosing(bridge.chat_stream(raw)) as stream:
        async for event in stream:
            events.append(event)
    return events


class TestChat:
    @pytest.mark.asyncio
    async def test_stream_text_matches_unary_content(self):
        bridge = Bridge(OpenAIFrontend(), make_backend("echo", transport=EchoTransport()))
        body = await bridge.chat(CHAT)
        events = await _events(bridge, dict(CHAT, stream=True))

        streamed = "".join(e["choices"][0]["delta"].get("content", "") for e in events)
        assert body["choices"][0]["message"]["content"] == "the quick brown fox"
        assert streamed == body["choices"][0]["message"]["content"]
        assert events[-1]["choices"][0]["finish_reason"] == "stop"

    @pytest.mark.asyncio
    async def test_openai_caller_anthropic_backend(self):
        transport = ScriptedTransport([anthropic_reply("bonjour")])
        backend = make_backend("claude", provider=ProviderType.ANTHROPIC, transport=transport)
        bridge = Bridge(OpenAIFrontend(), backend)
        body = await bridge.chat({"messages": [{"role": "user", "content": "hello"}],
                                  "max_tokens": 20, "seed": 3})

        assert body["choices"][0]["message"]["content"] == "bonjour"
        assert body["usage"]["prompt_tokens"] == 5
        assert [d["field"] for d in body["drift"]] == ["seed"]
        assert transport.calls[0]["payload"]["max_tokens"] == 20

    @pytest.mark.asyncio
    async def test_anthropic_caller_openai_backend_stream(self):
        transport = ScriptedTransport(streams=[openai_stream_lines(["Hel", "lo"])])
        bridge = Bridge(AnthropicFrontend(), make_backend(transport=transport, model=None))
        raw = {"model": "gpt-4o", "max_tokens": 16, "stream": True,
               "messages": [{"role": "user", "content": "hi"}]}
        events = await _events(bridge, raw)

        assert events[0]["type"] == "message_start"
        assert events[-1]["type"] == "message_stop"
        text = "".join(e["delta"]["text"] for e in events if e["type"] == "content_block_delta")
        assert text == "Hello"
        assert transport.calls[0]["payload"]["model"] == "gpt-4o"

    @pytest.mark.asyncio
    async def test_validation_error_does_not_touch_backend(self):
        transport = ScriptedTransport([openai_reply()])
        bridge = Bridge(OpenAIFrontend(), make_backend(transport=transport))
        with pytest.raises(ValidationError):
            await bridge.chat({"messages": "nope"})
        assert transport.calls == []
        assert bridge.health.snapshot("primary").total_requests == 0

    @pytest.mark.asyncio
    async def test_translation_error_on_the_way_out(self):
        call = {"id": "call_1", "type": "function", "function": {"name": "lookup", "arguments": "not json"}}
        transport = ScriptedTransport([openai_reply("", finish="tool_calls", tool_calls=[call])])
        bridge = Bridge(AnthropicFrontend(), make_backend(transport=transport))
        raw = {"model": "m", "max_tokens": 10, "messages": [{"role": "user", "content": "hi"}]}
        with pytest.raises(TranslationError) as exc:
            await bridge.chat(raw)
        assert exc.value.drift.field == "tool_calls.arguments"

    def test_render_error_uses_frontend(self):
        bridge = Bridge(AnthropicFrontend(), make_backend())
        status, body = bridge.render_error(ProviderError("no", ProviderErrorKind.AUTH))
        assert status == 401
        assert body["error"]["type"] == "authentication_error"


class TestChatFacade:
    def test_is_abstract(self):
        with pytest.raises(TypeError):
            ChatFacade()

    def test_subclass_must_implement_execution(self):
        class TextOnly(ChatFacade):
            async def execute(self, request, timeout=None, **options):
                return None

        with pytest.raises(TypeError):
            TextOnly()


class TestHealthReporting:
    @pytest.mark.asyncio
    async def test_success_updates_health(self):
        bridge = Bridge(OpenAIFrontend(), make_backend())
        response = await bridge.execute(ir_request())
        health = bridge.health.snapshot("primary")
        assert health.successful_requests == 1
        assert health.latency_ms is not None
        assert "latency_ms" in response.metadata

    @pytest.mark.asyncio
    async def test_failure_is_reported_and_never_retried(self):
        transport = ScriptedTransport([http_error(500), openai_reply()])
        bridge = Bridge(OpenAIFrontend(), make_backend(transport=transport))
        with pytest.raises(ProviderError) as exc:
            await bridge.execute(ir_request())
        assert exc.value.kind == ProviderErrorKind.SERVER_FAULT
        assert len(transport.calls) == 1
        assert bridge.health.snapshot("primary").failed_requests == 1

    @pytest.mark.asyncio
    async def test_open_circuit_refuses(self):
        transport = ScriptedTransport([openai_reply()])
        bridge = Bridge(OpenAIFrontend(), make_backend(transport=transport))
        bridge.health.open_circuit("primary")
        with pytest.raises(ProviderError) as exc:
            await bridge.execute(ir_request())
        assert exc.value.provider_code == "circuit_open"
        assert exc.value.retryable
        assert transport.calls == []

    @pytest.mark.asyncio
    async def test_forced_call_bypasses_circuit(self):
        transport = ScriptedTransport([openai_reply()])
        bridge = Bridge(OpenAIFrontend(), make_backend(transport=transport))
        bridge.health.open_circuit("primary")
        await bridge.execute(ir_request(), force=True)
        assert len(transport.calls) == 1

    @pytest.mark.asyncio
    async def test_shared_health_table(self):
        health = HealthTable()
        first = Bridge(OpenAIFrontend(), make_backend("a"), health=health)
        second = first.with_frontend(AnthropicFrontend())
        await second.execute(ir_request())
        assert health.snapshot("a").successful_requests == 1
        assert second.backend is first.backend


class TestStreams:
    @pytest.mark.asyncio
    async def test_stream_success_reports_once(self):
        transport = ScriptedTransport(streams=[openai_stream_lines(["a", "b"])])
        bridge = Bridge(OpenAIFrontend(), make_backend(transport=transport))
        async with aclosing(bridge.execute_stream(ir_request())) as stream:
            chunks = [c async for c in stream]
        assert chunks[-1].is_terminal
        assert bridge.health.snapshot("primary").successful_requests == 1

    @pytest.mark.asyncio
    async def test_mid_stream_failure(self):
        lines = openai_stream_lines(["a", "b", "c"])[:2] + [TransportConnectionError("reset")]
        bridge = Bridge(OpenAIFrontend(), make_backend(transport=ScriptedTransport(streams=[lines])))
        received = []
        with pytest.raises(StreamError) as exc:
            async with aclosing(bridge.execute_stream(ir_request())) as stream:
                async for chunk in stream:
                    received.append(chunk)
        assert len(received) == 2
        assert exc.value.delivered == 2
        assert exc.value.partial_content == "ab"
        assert bridge.health.snapshot("primary").failed_requests == 1

    @pytest.mark.asyncio
    async def test_consumer_stop_closes_upstream_without_penalty(self):
        transport = ScriptedTransport(streams=[openai_stream_lines(["1", "2", "3", "4", "5"])])
        bridge = Bridge(OpenAIFrontend(), make_backend(transport=transport))
        received = []
        async with aclosing(bridge.execute_stream(ir_request())) as stream:
            async for chunk in stream:
                received.append(chunk)
                if len(received) == 2:
                    break

        assert transport.closed_streams == 1
        assert transport.lines_sent == 2
        health = bridge.health.snapshot("primary")
        assert health.total_requests == 0
        assert health.state == "closed"

    @pytest.mark.asyncio
    async def test_task_cancellation_closes_upstream(self):
        lines = openai_stream_lines(["1", "2", "3"])
        lines.insert(2, Pause(30))
        transport = ScriptedTransport(streams=[lines])
        bridge = Bridge(OpenAIFrontend(), make_backend(transport=transport))
        received = []

        async def consume():
            async for chunk in bridge.execute_stream(ir_request()):
                received.append(chunk)

        task = asyncio.create_task(consume())
        for _ in range(100):
            if len(received) == 2:
                break
            await asyncio.sleep(0.01)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert len(received) == 2
        assert transport.closed_streams == 1
        assert bridge.health.snapshot("primary").total_requests == 0

    @pytest.mark.asyncio
    async def test_cancelled_probe_is_released(self, clock):
        health = HealthTable(clock=clock)
        transport = ScriptedTransport(streams=[openai_stream_lines(["1", "2", "3"])])
        bridge = Bridge(OpenAIFrontend(), make_backend(transport=transport), health=health)
        health.open_circuit("primary")
        clock.advance(health.config.circuit_timeout)

        async with aclosing(bridge.execute_stream(ir_request())) as stream:
            async for _ in stream:
                break

        snapshot = health.snapshot("primary")
        assert snapshot.state == "half_open"
        assert not snapshot.probe_in_flight


class TestChunkSequencer:
    def test_in_order(self):
        sequencer = ChunkSequencer(window=4)
        assert sequencer.push(_chunk(0)) == [_chunk(0)]
        assert sequencer.push(_chunk(1, ChunkKind.DONE)) == [_chunk(1, ChunkKind.DONE)]
        sequencer.finish()

    def test_reorders_within_window(self):
        sequencer = ChunkSequencer(window=4)
        assert sequencer.push(_chunk(1, delta="b")) == []
        assert sequencer.push(_chunk(2, delta="c")) == []
        released = sequencer.push(_chunk(0, delta="a"))
        assert [c.sequence for c in released] == [0, 1, 2]
        assert sequencer.partial_content == "abc"

    def test_duplicate_rejected(self):
        sequencer = ChunkSequencer()
        sequencer.push(_chunk(0))
        with pytest.raises(StreamError, match="Duplicate"):
            sequencer.push(_chunk(0))

    def test_gap_beyond_window(self):
        sequencer = ChunkSequencer(window=2)
        sequencer.push(_chunk(1))
        sequencer.push(_chunk(2))
        with pytest.raises(StreamError, match="Missing chunk 0"):
            sequencer.push(_chunk(3))

    def test_nothing_after_terminal(self):
        sequencer = ChunkSequencer()
        sequencer.push(_chunk(0, ChunkKind.DONE))
        with pytest.raises(StreamError):
            sequencer.push(_chunk(1))

    def test_finish_with_gap(self):
        sequencer = ChunkSequencer()
        sequencer.push(_chunk(0))
        sequencer.push(_chunk(2))
        with pytest.raises(StreamError, match="gap"):
            sequencer.finish()

    def test_finish_without_terminal(self):
        sequencer = ChunkSequencer()
        sequencer.push(_chunk(0))
        with pytest.raises(StreamError, match="terminal"):
            sequencer.finish()

    def test_error_reports_delivery(self):
        sequencer = ChunkSequencer(backend="a")
        for chunk in sequencer.push(_chunk(0, delta="hi")):
            sequencer.mark_delivered()
        with pytest.raises(StreamError) as exc:
            sequencer.finish()
        assert exc.value.delivered == 1
        assert exc.value.partial_content == "hi"
        assert exc.value.backend == "a"

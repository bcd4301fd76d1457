"""Tests for the middleware onion and the built-in middlewares."""
import asyncio
import logging
from contextlib import aclosing

import pytest

from llmbridge.infrastructure.llm.adapters import OpenAIFrontend
from llmbridge.infrastructure.llm.bridge import Bridge
from llmbridge.infrastructure.llm.exceptions import ProviderError, ValidationError
from llmbridge.infrastructure.llm.middleware import (
    CachingMiddleware, LoggingMiddleware, Middleware, MiddlewareChain, MiddlewareContext,
    RateLimitMiddleware, ResponseCache, TelemetryMiddleware, TelemetrySink,
    create_default_middleware_chain, request_fingerprint,
)
from llmbridge.infrastructure.llm.transport import EchoTransport
from llmbridge.infrastructure.llm.types import FinishReason, IRChatMessage, IRChatResponse, Role

from fakes import ScriptedTransport, http_error, ir_request, make_backend

CHAT = {"messages": [{"role": "user", "content": "ping"}]}


class Recorder(Middleware):
    def __init__(self, name, trail):
        self.name = name
        self.trail = trail

    async def __call__(self, ctx, call_next):
        self.trail.append(f"{self.name}:in")
        response = await call_next(ctx)
        self.trail.append(f"{self.name}:out")
        return response

    async def stream(self, ctx, call_next):
        self.trail.append(f"{self.name}:in")
        async with aclosing(call_next(ctx)) as chunks:
            async for chunk in chunks:
                yield chunk
        self.trail.append(f"{self.name}:out")


def _echo_bridge():
    transport = EchoTransport()
    return Bridge(OpenAIFrontend(), make_backend("echo", transport=transport)), transport


def _canned(ctx):
    return IRChatResponse(IRChatMessage(Role.ASSISTANT, "canned"), FinishReason.STOP,
                          backend="a", request_id=ctx.request.request_id)


class TestChain:
    @pytest.mark.asyncio
    async def test_onion_order(self):
        trail = []
        bridge, _ = _echo_bridge()
        for name in "ABC":
            bridge.use(Recorder(name, trail))
        await bridge.chat(CHAT)
        assert trail == ["A:in", "B:in", "C:in", "C:out", "B:out", "A:out"]

    @pytest.mark.asyncio
    async def test_onion_order_for_streams(self):
        trail = []
        bridge, _ = _echo_bridge()
        for name in "AB":
            bridge.use(Recorder(name, trail))
        async with aclosing(bridge.chat_stream(dict(CHAT, stream=True))) as events:
            async for _ in events:
                pass
        assert trail == ["A:in", "B:in", "B:out", "A:out"]

    @pytest.mark.asyncio
    async def test_plain_callables_wrap_unary_calls_only(self):
        seen = []

        async def tag(ctx, call_next):
            seen.append(ctx.streaming)
            return await call_next(ctx)

        bridge, _ = _echo_bridge()
        bridge.use(tag)
        await bridge.chat(CHAT)
        async with aclosing(bridge.chat_stream(dict(CHAT, stream=True))) as events:
            async for _ in events:
                pass
        assert seen == [False]

    @pytest.mark.asyncio
    async def test_short_circuit_skips_backend(self):
        class Canned(Middleware):
            async def __call__(self, ctx, call_next):
                return _canned(ctx)

        bridge, transport = _echo_bridge()
        bridge.use(Canned())
        body = await bridge.chat(CHAT)
        assert body["choices"][0]["message"]["content"] == "canned"
        assert transport.calls == 0

    @pytest.mark.asyncio
    async def test_error_remap(self):
        class Remap(Middleware):
            async def __call__(self, ctx, call_next):
                try:
                    return await call_next(ctx)
                except ProviderError as e:
                    raise ValidationError(f"upstream rejected: {e.message}", field="messages") from e

        bridge = Bridge(OpenAIFrontend(), make_backend(transport=ScriptedTransport([http_error(400)])))
        bridge.use(Remap())
        with pytest.raises(ValidationError) as exc:
            await bridge.chat(CHAT)
        assert exc.value.field == "messages"
        assert isinstance(exc.value.__cause__, ProviderError)

    @pytest.mark.asyncio
    async def test_middleware_can_rewrite_request(self):
        class System(Middleware):
            async def __call__(self, ctx, call_next):
                messages = [IRChatMessage(Role.SYSTEM, "be nice")] + list(ctx.request.messages)
                ctx.request = ctx.request.with_messages(messages)
                return await call_next(ctx)

        transport = ScriptedTransport([{"choices": [{"message": {"content": "ok"}, "finish_reason": "stop"}]}])
        bridge = Bridge(OpenAIFrontend(), make_backend(transport=transport))
        bridge.use(System())
        await bridge.chat(CHAT)
        assert transport.calls[0]["payload"]["messages"][0] == {"role": "system", "content": "be nice"}

    def test_default_chain(self):
        chain = create_default_middleware_chain()
        assert [type(m) for m in chain.middlewares] == [LoggingMiddleware, TelemetryMiddleware]


class TestCaching:
    @pytest.mark.asyncio
    async def test_deterministic_requests_are_cached(self):
        calls = []

        async def handler(ctx):
            calls.append(ctx.request.request_id)
            return _canned(ctx)

        run = MiddlewareChain([CachingMiddleware()]).apply(handler)
        first = await run(MiddlewareContext(request=ir_request(temperature=0)))
        second_ctx = MiddlewareContext(request=ir_request(temperature=0))
        second = await run(second_ctx)

        assert len(calls) == 1
        assert second.content == first.content
        assert second.metadata["cached"] is True
        assert second.request_id == second_ctx.request.request_id
        assert second_ctx.metadata["cached"] is True

    @pytest.mark.asyncio
    async def test_sampled_requests_are_not_cached(self):
        calls = []

        async def handler(ctx):
            calls.append(1)
            return _canned(ctx)

        caching = CachingMiddleware()
        run = MiddlewareChain([caching]).apply(handler)
        await run(MiddlewareContext(request=ir_request(temperature=0.7)))
        await run(MiddlewareContext(request=ir_request(temperature=0.7)))
        assert len(calls) == 2
        assert caching.hits == 0

    @pytest.mark.asyncio
    async def test_seed_makes_request_cacheable(self):
        caching = CachingMiddleware()
        run = MiddlewareChain([caching]).apply(lambda ctx: asyncio.sleep(0, result=_canned(ctx)))
        await run(MiddlewareContext(request=ir_request(seed=1)))
        await run(MiddlewareContext(request=ir_request(seed=1)))
        assert (caching.hits, caching.misses) == (1, 1)

    @pytest.mark.asyncio
    async def test_cache_through_bridge(self):
        bridge, transport = _echo_bridge()
        bridge.use(CachingMiddleware())
        raw = dict(CHAT, temperature=0)
        await bridge.chat(raw)
        body = await bridge.chat(raw)
        assert transport.calls == 1
        assert body["choices"][0]["message"]["content"] == "ping"

    @pytest.mark.asyncio
    async def test_ttl_and_lru(self, clock):
        cache = ResponseCache(ttl_sec=10, max_size=2, clock=clock)
        response = _canned(MiddlewareContext(request=ir_request()))
        await cache.set("a", response)
        await cache.set("b", response)
        assert await cache.get("a") is response
        await cache.set("c", response)
        assert await cache.get("b") is None
        assert len(cache) == 2

        clock.advance(11)
        assert await cache.get("a") is None

    def test_fingerprint_ignores_request_id(self):
        assert request_fingerprint(ir_request(temperature=0)) == request_fingerprint(ir_request(temperature=0))
        assert request_fingerprint(ir_request(temperature=0)) != request_fingerprint(ir_request(temperature=0.1))
        assert request_fingerprint(ir_request(), "a") != request_fingerprint(ir_request(), "b")


class TestTelemetry:
    @pytest.mark.asyncio
    async def test_counts_successes_and_errors(self):
        sink = TelemetrySink()
        bridge, _ = _echo_bridge()
        bridge.use(TelemetryMiddleware(sink))
        await bridge.chat(CHAT)

        failing = Bridge(OpenAIFrontend(), make_backend(transport=ScriptedTransport([http_error(500)])))
        failing.use(TelemetryMiddleware(sink))
        with pytest.raises(ProviderError):
            await failing.chat(CHAT)

        summary = sink.summary()
        assert summary["requests"] == 2
        assert summary["by_backend"] == {"echo": 1}
        assert summary["errors"] == {"provider_error": 1}
        assert summary["avg_latency_ms"] is not None

    @pytest.mark.asyncio
    async def test_counts_stream_chunks(self):
        sink = TelemetrySink()
        bridge, _ = _echo_bridge()
        bridge.use(TelemetryMiddleware(sink))
        async with aclosing(bridge.chat_stream({"messages": [{"role": "user", "content": "a b c"}],
                                                "stream": True})) as events:
            async for _ in events:
                pass
        summary = sink.summary()
        assert summary["streams"] == 1
        assert summary["chunks"] == 4
        assert summary["by_backend"] == {"echo": 1}
        assert len(sink.first_chunk_ms) == 1

    def test_reset(self):
        sink = TelemetrySink()
        sink.record_success("echo", 12.0, tokens=5)
        sink.record_error(ValueError("x"))
        sink.reset()
        summary = sink.summary()
        assert (summary["requests"], summary["tokens"], summary["errors"]) == (0, 0, {})
        assert summary["avg_latency_ms"] is None


class TestRateLimit:
    @pytest.mark.asyncio
    async def test_budget_per_key(self):
        limiter = RateLimitMiddleware(requests_per_minute=2)

        async def handler(ctx):
            return _canned(ctx)

        run = MiddlewareChain([limiter]).apply(handler)
        await run(MiddlewareContext(request=ir_request(session_key="alice")))
        await run(MiddlewareContext(request=ir_request(session_key="alice")))
        with pytest.raises(asyncio.TimeoutError):
            await asyncio.wait_for(run(MiddlewareContext(request=ir_request(session_key="alice"))), 0.1)

        await asyncio.wait_for(run(MiddlewareContext(request=ir_request(session_key="bob"))), 0.1)


    def test_limiters_bounded_by_key_count(self):
        limiter = RateLimitMiddleware(requests_per_minute=5, max_keys=2)
        first = limiter.get_limiter("alice")
        limiter.get_limiter("bob")
        assert limiter.get_limiter("alice") is first
        limiter.get_limiter("carol")
        assert list(limiter._limiters) == ["alice", "carol"]
        assert limiter.get_limiter("bob") is not None
        assert len(limiter._limiters) == 2


class TestLogging:
    @pytest.mark.asyncio
    async def test_session_key_is_masked(self, caplog):
        bridge, _ = _echo_bridge()
        bridge.use(LoggingMiddleware())
        with caplog.at_level(logging.INFO, logger="llmbridge.infrastructure.llm.middleware"):
            await bridge.chat(dict(CHAT, user="session-secret-1234"))
        text = caplog.text
        assert "LLM request started" in text
        assert "LLM request completed" in text
        assert "sess...1234" in text
        assert "session-secret-1234" not in text

    @pytest.mark.asyncio
    async def test_failures_are_logged(self, caplog):
        bridge = Bridge(OpenAIFrontend(), make_backend(transport=ScriptedTransport([http_error(500)])))
        bridge.use(LoggingMiddleware())
        with caplog.at_level(logging.INFO, logger="llmbridge.infrastructure.llm.middleware"):
            with pytest.raises(ProviderError):
                await bridge.chat(CHAT)
        assert any(r.levelno == logging.ERROR and "failed" in r.getMessage() for r in caplog.records)

#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Bridge - Binds one frontend adapter to one backend capability.

A call flows normalize -> middleware onion -> backend -> denormalize. The
bridge measures latency, feeds the shared health table, classifies
failures and checks stream ordering. It never retries: retry and fallback
belong to the router.
"""

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from contextlib import aclosing, asynccontextmanager
from dataclasses import replace
from typing import Any, AsyncIterator, Dict, List, Optional, Tuple

from .adapters.base import BackendAdapter, FrontendAdapter
from .balancer import Admission, HealthTable
from .drift import DriftLog
from .exceptions import BridgeError, ProviderError, ProviderErrorKind, StreamError
from .middleware import MiddlewareChain, MiddlewareContext
from .types import ChunkKind, IRChatChunk, IRChatRequest, IRChatResponse

logger = logging.getLogger(__name__)


@asynccontextmanager
async def closing_within(stream, grace: Optional[float]):
    """Like `contextlib.aclosing`, but gives up on a slow close after `grace` seconds."""
    try:
        yield stream
    finally:
        try:
            async with asyncio.timeout(grace):
                await stream.aclose()
        except TimeoutError:
            logger.warning(f"Upstream stream did not close within {grace}s; abandoning it")


class ChunkSequencer:
    """
    Releases chunks in sequence order.

    Out-of-order chunks wait in a buffer of at most `window` entries; a gap
    that outgrows the buffer, a duplicate, or anything after the terminal
    chunk is a `StreamError`.
    """

    def __init__(self, backend: Optional[str] = None, window: int = 8):
        self.backend = backend
        self.window = window
        self.expected = 0
        self.finished = False
        self.delivered = 0
        self._pending: Dict[int, IRChatChunk] = {}
        self._text: List[str] = []

    @property
    def partial_content(self) -> str:
        return "".join(self._text)

    def _error(self, message: str) -> StreamError:
        return StreamError(message, delivered=self.delivered, partial_content=self.partial_content,
                           backend=self.backend)

    def push(self, chunk: IRChatChunk) -> List[IRChatChunk]:
        if self.finished:
            raise self._error(f"Chunk {chunk.sequence} arrived after the terminal chunk")
        if chunk.sequence < self.expected or chunk.sequence in self._pending:
            raise self._error(f"Duplicate chunk sequence {chunk.sequence}")
        self._pending[chunk.sequence] = chunk

        ready = []
        while self.expected in self._pending:
            current = self._pending.pop(self.expected)
            self.expected += 1
            ready.append(current)
            if current.kind == ChunkKind.CONTENT:
                self._text.append(current.delta)
            if current.is_terminal:
                self.finished = True
                if self._pending:
                    raise self._error(f"Chunks {sorted(self._pending)} follow the terminal chunk")
                break
        if len(self._pending) > self.window:
            raise self._error(f"Missing chunk {self.expected} (reorder window {self.window} exceeded)")
        return ready

    def mark_delivered(self) -> None:
        self.delivered += 1

    def finish(self) -> None:
        if self._pending:
            raise self._error(f"Stream ended with a gap at sequence {self.expected}")
        if not self.finished:
            raise self._error("Stream ended without a terminal chunk")


class ChatFacade(ABC):
    """
    Raw-format call path shared by `Bridge` and `Router`.

    Subclasses supply the IR-level `execute` and `execute_stream`.
    """

    frontend: FrontendAdapter
    middleware: MiddlewareChain

    def use(self, middleware) -> "ChatFacade":
        self.middleware.add(middleware)
        return self

    @abstractmethod
    async def execute(self, request: IRChatRequest, timeout: Optional[float] = None,
                      **options) -> IRChatResponse:
        """Run one IR request to completion."""

    @abstractmethod
    def execute_stream(self, request: IRChatRequest, timeout: Optional[float] = None,
                       **options) -> AsyncIterator[IRChatChunk]:
        """Run one IR request as an ordered chunk stream."""

    def _context(self, raw: Dict[str, Any], streaming: bool, options: Dict[str, Any]) -> MiddlewareContext:
        drift = DriftLog()
        request = self.frontend.normalize(raw, drift)
        return MiddlewareContext(request=request, drift=drift, streaming=streaming, options=options)

    async def _dispatch(self, ctx: MiddlewareContext) -> IRChatResponse:
        response = await self.execute(ctx.request, **ctx.options)
        ctx.backend = response.backend
        ctx.attempts = response.metadata.get("attempts", 1)
        return response

    async def _dispatch_stream(self, ctx: MiddlewareContext) -> AsyncIterator[IRChatChunk]:
        async with aclosing(self.execute_stream(ctx.request, **ctx.options)) as chunks:
            async for chunk in chunks:
                ctx.backend = chunk.backend
                yield chunk

    async def chat(self, raw: Dict[str, Any], **options) -> Dict[str, Any]:
        """
        Run one non-streaming call end to end in the frontend's format.

        Args:
            raw: Request body in the frontend's wire format
            **options: Call options (timeout, backend, strategy)

        Returns:
            Response body in the frontend's wire format

        Raises:
            BridgeError: Classified failure from any stage
        """
        ctx = self._context(raw, False, options)
        ctx.response = await self.middleware.apply(self._dispatch)(ctx)
        return self.frontend.denormalize(ctx.response, ctx.drift)

    async def chat_stream(self, raw: Dict[str, Any], **options) -> AsyncIterator[Dict[str, Any]]:
        """Streaming counterpart of `chat`, yielding raw stream events in order."""
        ctx = self._context(raw, True, options)
        state: Dict[str, Any] = {}
        handler = self.middleware.apply_stream(self._dispatch_stream)
        async with aclosing(handler(ctx)) as chunks:
            async for chunk in chunks:
                for event in self.frontend.denormalize_chunk(chunk, state, ctx.drift):
                    yield event

    def render_error(self, error: BridgeError) -> Tuple[int, Dict[str, Any]]:
        return self.frontend.render_error(error)


class Bridge(ChatFacade):
    """One frontend bound to one backend."""

    def __init__(self, frontend: FrontendAdapter, backend: BackendAdapter,
                 middleware: Optional[MiddlewareChain] = None, health: Optional[HealthTable] = None,
                 cancel_grace: float = 2.0, reorder_window: int = 8):
        self.frontend = frontend
        self.backend = backend
        self.middleware = middleware if middleware is not None else MiddlewareChain()
        self.health = health or HealthTable([backend.name])
        self.health.register(backend.name)
        self.cancel_grace = cancel_grace
        self.reorder_window = reorder_window

    @property
    def name(self) -> str:
        return self.backend.name

    def with_frontend(self, frontend: FrontendAdapter) -> "Bridge":
        """A sibling bridge for another frontend, sharing backend, health and middleware."""
        return Bridge(frontend, self.backend, self.middleware, self.health,
                      self.cancel_grace, self.reorder_window)

    def _admit(self, force: bool) -> str:
        if force:
            return Admission.ADMITTED
        admission = self.health.acquire(self.name)
        if admission == Admission.REFUSED:
            raise ProviderError(
                f"Circuit open for backend '{self.name}'",
                ProviderErrorKind.SERVER_FAULT, provider_code="circuit_open", backend=self.name,
            )
        return admission

    def _settle(self, admission: str, outcome: Optional[bool], start: float) -> None:
        # outcome: True success, False backend failure, None neither (caller error or cancellation)
        if outcome is True:
            self.health.report_success(self.name, (time.perf_counter() - start) * 1000)
        elif outcome is False:
            self.health.report_failure(self.name)
        elif admission == Admission.PROBE:
            self.health.release(self.name)

    async def execute(self, request: IRChatRequest, timeout: Optional[float] = None,
                      force: bool = False, **options) -> IRChatResponse:
        admission = self._admit(force)
        start = time.perf_counter()
        outcome = None
        try:
            response = await self.backend.execute(request, timeout)
            outcome = True
        except (ProviderError, StreamError) as e:
            outcome = False
            logger.warning(f"Backend {self.name} failed: {e}")
            raise
        finally:
            self._settle(admission, outcome, start)
        latency_ms = int((time.perf_counter() - start) * 1000)
        return replace(response, metadata={**response.metadata, "latency_ms": latency_ms})

    async def execute_stream(self, request: IRChatRequest, timeout: Optional[float] = None,
                             force: bool = False, deadline: Optional[float] = None,
                             **options) -> AsyncIterator[IRChatChunk]:
        admission = self._admit(force)
        start = time.perf_counter()
        outcome = None
        sequencer = ChunkSequencer(self.name, self.reorder_window)
        try:
            async with closing_within(self.backend.execute_stream(request, timeout, deadline),
                                      self.cancel_grace) as upstream:
                async for chunk in upstream:
                    for ready in sequencer.push(chunk):
                        yield ready
                        sequencer.mark_delivered()
                    if sequencer.finished:
                        break
            sequencer.finish()
            outcome = True
        except ProviderError as e:
            outcome = False
            if sequencer.delivered:
                raise StreamError(
                    f"Stream from '{self.name}' failed after {sequencer.delivered} chunks: {e.message}",
                    delivered=sequencer.delivered, partial_content=sequencer.partial_content,
                    cause=e, backend=self.name,
                ) from e
            raise
        except StreamError as e:
            outcome = False
            logger.warning(f"Stream from backend {self.name} broke: {e}")
            raise
        finally:
            self._settle(admission, outcome, start)

    async def aclose(self) -> None:
        await self.backend.aclose()

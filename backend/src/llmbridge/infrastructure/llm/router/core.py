#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
LLM Router Core - Backend selection, fallback chains and circuit breaking.

The router exposes the same capability set as a single backend, so it can
sit anywhere a backend can. Each candidate backend is wrapped in its own
`Bridge`; all of them share one `HealthTable`.
"""

import asyncio
import logging
import random
import threading
from contextlib import aclosing
from dataclasses import dataclass, field, replace
from typing import Any, AsyncIterator, Dict, List, Optional, Tuple

from ..adapters.base import BackendAdapter, FrontendAdapter
from ..balancer import BalancerConfig, HealthTable
from ..bridge import Bridge, ChatFacade
from ..exceptions import BridgeError, RouterExhaustedError, ValidationError
from ..middleware import MiddlewareChain
from ..types import IRChatChunk, IRChatRequest, IRChatResponse
from .strategies import STRATEGIES, Candidate, StrategyContext

logger = logging.getLogger(__name__)


class RouterConfig:
    def __init__(self, strategy: str = "fallback", max_attempts: int = 3,
                 attempt_timeout: Optional[float] = None, chain_timeout: Optional[float] = None,
                 cancel_grace: float = 2.0, reorder_window: int = 8):
        if strategy not in STRATEGIES:
            raise ValueError(f"Unknown routing strategy '{strategy}'. Available: {list(STRATEGIES)}")
        self.strategy = strategy
        self.max_attempts = max(1, max_attempts)
        self.attempt_timeout = attempt_timeout
        self.chain_timeout = chain_timeout
        self.cancel_grace = cancel_grace
        self.reorder_window = reorder_window


PARALLEL_MODES = ("first", "all")


@dataclass
class ParallelResult:
    """Outcome of a parallel dispatch."""
    response: IRChatResponse
    responses: Dict[str, IRChatResponse] = field(default_factory=dict)
    failed: List[Tuple[str, BridgeError]] = field(default_factory=list)
    elapsed_ms: int = 0

    @property
    def succeeded(self) -> List[str]:
        return list(self.responses)


class Router(ChatFacade):
    """
    Central LLM router.

    Features:
    - Pluggable selection strategies (fallback, round_robin, weighted, cost,
      latency, sticky, manual)
    - Fallback across backends on retryable errors, up to `max_attempts`
    - Per-backend circuit breaker with single-probe half-open recovery
    - Streams fall back only before their first chunk
    - Parallel dispatch to several backends, first success or all
    """

    def __init__(self, frontend: FrontendAdapter, backends: Optional[List[BackendAdapter]] = None,
                 config: Optional[RouterConfig] = None, health: Optional[HealthTable] = None,
                 middleware: Optional[MiddlewareChain] = None, rng: Optional[random.Random] = None):
        self.frontend = frontend
        self.config = config or RouterConfig()
        self.health = health or HealthTable(config=BalancerConfig())
        self.middleware = middleware if middleware is not None else MiddlewareChain()
        self._bridges: Dict[str, Bridge] = {}
        self._rng = rng or random.Random()
        self._counter = 0
        self._lock = threading.Lock()
        for backend in backends or []:
            self.register_backend(backend)

    def register_backend(self, backend: BackendAdapter) -> Bridge:
        """
        Register a backend as a routing candidate.

        Args:
            backend: Backend adapter; its descriptor name must be unique

        Returns:
            The bridge wrapping the backend
        """
        if backend.name in self._bridges:
            raise ValueError(f"Backend '{backend.name}' is already registered")
        bridge = Bridge(self.frontend, backend, health=self.health,
                        cancel_grace=self.config.cancel_grace, reorder_window=self.config.reorder_window)
        self._bridges[backend.name] = bridge
        logger.info(f"Registered backend: {backend.name} ({backend.descriptor.provider.value})")
        return bridge

    def unregister_backend(self, name: str) -> None:
        self._bridges.pop(name, None)

    @property
    def backends(self) -> List[str]:
        return list(self._bridges)

    def get_bridge(self, name: str) -> Bridge:
        if name not in self._bridges:
            raise ValidationError(f"Unknown backend '{name}'. Available: {self.backends}", field="backend", value=name)
        return self._bridges[name]

    def with_frontend(self, frontend: FrontendAdapter) -> "Router":
        """A sibling router for another frontend, sharing backends, health and middleware."""
        sibling = Router(frontend, config=self.config, health=self.health,
                         middleware=self.middleware, rng=self._rng)
        sibling._bridges = self._bridges
        return sibling

    def _next_counter(self) -> int:
        with self._lock:
            value = self._counter
            self._counter += 1
            return value

    def plan(self, request: IRChatRequest, strategy: Optional[str] = None,
             backend: Optional[str] = None) -> Tuple[List[str], bool]:
        """
        Ordered fallback chain for `request`, and whether circuits are bypassed.

        An explicit backend means manual selection: that backend alone,
        circuit state ignored. Otherwise the strategy orders every
        registered candidate and open circuits are then removed, so a
        rotation or session hash does not shift while a backend is out.
        Under the fallback strategy, if every circuit is open the full
        chain is tried anyway.
        """
        name = strategy or self.config.strategy
        if name not in STRATEGIES:
            raise ValidationError(f"Unknown routing strategy '{name}'", field="strategy", value=name)
        if backend or name == "manual":
            if not backend:
                raise ValidationError("Manual routing requires a backend", field="backend")
            self.get_bridge(backend)
            return [backend], True

        candidates = [
            Candidate(n, b.backend.descriptor, self.health.snapshot(n))
            for n, b in self._bridges.items()
        ]
        if request.tools:
            capable = [c for c in candidates if c.descriptor.supports_tools]
            candidates = capable or candidates
        ctx = StrategyContext(counter=self._next_counter(), rng=self._rng)
        ordered = STRATEGIES[name](candidates, request, ctx)
        available = [c.name for c in ordered if self.health.is_available(c.name)]
        if not available and name == "fallback" and ordered:
            logger.warning("All circuits open; forcing the fallback chain")
            return [c.name for c in ordered], True
        return available, False

    def select(self, request: IRChatRequest, strategy: Optional[str] = None,
               backend: Optional[str] = None) -> Optional[str]:
        """Primary backend for `request`, or None when nothing is selectable."""
        chain, _ = self.plan(request, strategy, backend)
        return chain[0] if chain else None

    def _attempt_timeout(self, timeout: Optional[float], deadline: Optional[float]) -> Optional[float]:
        if deadline is None:
            return timeout
        remaining = deadline - asyncio.get_running_loop().time()
        return remaining if timeout is None else min(timeout, remaining)

    def _deadline(self) -> Optional[float]:
        if self.config.chain_timeout is None:
            return None
        return asyncio.get_running_loop().time() + self.config.chain_timeout

    @staticmethod
    def _exhausted(attempts: List[Tuple[str, BridgeError]]) -> RouterExhaustedError:
        if not attempts:
            return RouterExhaustedError("No backend available for this request")
        names = ", ".join(n for n, _ in attempts)
        return RouterExhaustedError(
            f"All {len(attempts)} attempted backends failed ({names})",
            last_error=attempts[-1][1], attempts=attempts,
        )

    def _record(self, attempts: List[Tuple[str, BridgeError]], name: str, number: int, error: BridgeError) -> None:
        error.attempt = number
        attempts.append((name, error))
        logger.warning(f"Backend {name} failed (attempt {number}/{self.config.max_attempts}): {error}")

    async def execute(self, request: IRChatRequest, timeout: Optional[float] = None,
                      backend: Optional[str] = None, strategy: Optional[str] = None,
                      **options) -> IRChatResponse:
        chain, force = self.plan(request, strategy, backend)
        deadline = self._deadline()
        per_attempt = timeout or self.config.attempt_timeout
        attempts: List[Tuple[str, BridgeError]] = []

        for number, name in enumerate(chain[:self.config.max_attempts], 1):
            attempt_timeout = self._attempt_timeout(per_attempt, deadline)
            if attempt_timeout is not None and attempt_timeout <= 0:
                break
            try:
                response = await self._bridges[name].execute(request, attempt_timeout, force=force)
            except BridgeError as e:
                if not e.retryable:
                    e.attempt = number
                    raise
                self._record(attempts, name, number, e)
                continue
            return replace(response, metadata={
                **response.metadata,
                "attempts": number,
                "failed_backends": [n for n, _ in attempts],
            })
        raise self._exhausted(attempts)

    async def execute_stream(self, request: IRChatRequest, timeout: Optional[float] = None,
                             backend: Optional[str] = None, strategy: Optional[str] = None,
                             **options) -> AsyncIterator[IRChatChunk]:
        chain, force = self.plan(request, strategy, backend)
        deadline = self._deadline()
        per_attempt = timeout or self.config.attempt_timeout
        attempts: List[Tuple[str, BridgeError]] = []

        for number, name in enumerate(chain[:self.config.max_attempts], 1):
            attempt_timeout = self._attempt_timeout(per_attempt, deadline)
            if attempt_timeout is not None and attempt_timeout <= 0:
                break
            # the chain deadline also bounds the stream after its first chunk
            stream = self._bridges[name].execute_stream(request, attempt_timeout, force=force,
                                                        deadline=deadline)
            try:
                first = await anext(stream)
            except BridgeError as e:
                if not e.retryable:
                    e.attempt = number
                    raise
                self._record(attempts, name, number, e)
                continue
            # first chunk delivered: this backend owns the stream now
            async with aclosing(stream):
                yield first
                async for chunk in stream:
                    yield chunk
            return
        raise self._exhausted(attempts)

    async def execute_parallel(self, request: IRChatRequest, backends: Optional[List[str]] = None,
                               mode: str = "first", timeout: Optional[float] = None) -> ParallelResult:
        """
        Send one request to several backends at once.

        Args:
            request: IR request
            backends: Backend names to use; defaults to every available backend
            mode: "first" returns the first success and cancels the rest,
                "all" waits for every backend
            timeout: Per-backend timeout in seconds

        Returns:
            ParallelResult; `response` is the first success, or under "all"
            the success that comes first in candidate order

        Raises:
            ValidationError: Unknown backend or mode
            RouterExhaustedError: No backend available, or every backend failed
        """
        if mode not in PARALLEL_MODES:
            raise ValidationError(f"Unknown parallel mode '{mode}'", field="mode", value=mode)
        for name in backends or []:
            self.get_bridge(name)
        names = [n for n in (backends or list(self._bridges)) if self.health.is_available(n)]
        if not names:
            raise self._exhausted([])

        per_attempt = timeout or self.config.attempt_timeout
        loop = asyncio.get_running_loop()
        start = loop.time()
        tasks = {asyncio.create_task(self._bridges[n].execute(request, per_attempt)): n for n in names}
        responses: Dict[str, IRChatResponse] = {}
        failed: List[Tuple[str, BridgeError]] = []
        pending = set(tasks)
        try:
            while pending:
                done, pending = await asyncio.wait(pending, return_when=asyncio.FIRST_COMPLETED)
                for task in sorted(done, key=lambda t: names.index(tasks[t])):
                    name = tasks[task]
                    try:
                        responses[name] = task.result()
                    except BridgeError as e:
                        failed.append((name, e))
                        logger.warning(f"Parallel call to backend {name} failed: {e}")
                if responses and mode == "first":
                    break
        finally:
            # 取消尚未完成的调用；被取消的探测会被归还
            for task in pending:
                task.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)

        if not responses:
            raise self._exhausted(failed)
        ordered = {n: responses[n] for n in names if n in responses}
        winner = next(iter(ordered.values()))
        return ParallelResult(
            response=replace(winner, metadata={**winner.metadata, "parallel": mode,
                                               "failed_backends": [n for n, _ in failed]}),
            responses=ordered,
            failed=failed,
            elapsed_ms=int((loop.time() - start) * 1000),
        )

    def backend_info(self) -> List[Dict[str, Any]]:
        info = []
        for name, bridge in self._bridges.items():
            d = bridge.backend.descriptor
            info.append({
                "name": name,
                "provider": d.provider.value,
                "model": d.model,
                "weight": d.weight,
                "cost": d.cost,
                "capabilities": {
                    "streaming": d.supports_streaming,
                    "tools": d.supports_tools,
                    "vision": d.supports_vision,
                },
                "health": self.health.snapshot(name).to_dict(),
            })
        return info

    def stats(self) -> Dict[str, Any]:
        return {
            "strategy": self.config.strategy,
            "max_attempts": self.config.max_attempts,
            "backends": self.backend_info(),
        }

    def reset_stats(self, name: Optional[str] = None) -> None:
        """Clear health statistics and close circuits, for one backend or all of them."""
        if name is not None:
            self.get_bridge(name)
        self.health.reset(name)
        logger.info(f"Health statistics reset: {name or 'all backends'}")

    def open_circuit(self, name: str) -> None:
        self.get_bridge(name)
        self.health.open_circuit(name)

    def close_circuit(self, name: str) -> None:
        self.get_bridge(name)
        self.health.close_circuit(name)

    async def aclose(self) -> None:
        for bridge in self._bridges.values():
            await bridge.aclose()

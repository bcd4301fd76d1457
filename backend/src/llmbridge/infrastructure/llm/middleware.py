#!/usr/bin/env python3
# -*- coding: utf-8 -*-

import asyncio
import hashlib
import json
import logging
import time
from collections import OrderedDict
from contextlib import aclosing
from dataclasses import asdict, dataclass, field, replace
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional, Tuple

from aiolimiter import AsyncLimiter

from .drift import DriftLog
from .exceptions import BridgeError
from .types import IRChatChunk, IRChatRequest, IRChatResponse

logger = logging.getLogger(__name__)


@dataclass
class MiddlewareContext:
	"""Mutable per-call state shared by every middleware layer."""
	request: IRChatRequest
	drift: DriftLog = field(default_factory=DriftLog)
	streaming: bool = False
	options: Dict[str, Any] = field(default_factory=dict)
	metadata: Dict[str, Any] = field(default_factory=dict)
	response: Optional[IRChatResponse] = None
	backend: Optional[str] = None
	attempts: int = 0


Handler = Callable[[MiddlewareContext], Awaitable[IRChatResponse]]
StreamHandler = Callable[[MiddlewareContext], AsyncIterator[IRChatChunk]]


class Middleware:
	"""
	Base middleware. Override `__call__` for unary calls and `stream` for
	streaming ones; both default to passing straight through.
	"""

	async def __call__(self, ctx: MiddlewareContext, call_next: Handler) -> IRChatResponse:
		return await call_next(ctx)

	async def stream(self, ctx: MiddlewareContext, call_next: StreamHandler) -> AsyncIterator[IRChatChunk]:
		async with aclosing(call_next(ctx)) as chunks:
			async for chunk in chunks:
				yield chunk


class MiddlewareChain:
	"""
	Onion composition: the first middleware added is the outermost layer,
	so it sees the request first and the response last.
	"""

	def __init__(self, middlewares: Optional[List] = None):
		self.middlewares = list(middlewares or [])

	def add(self, middleware) -> 'MiddlewareChain':
		self.middlewares.append(middleware)
		return self

	def __len__(self) -> int:
		return len(self.middlewares)

	def apply(self, handler: Handler) -> Handler:
		result = handler
		for middleware in reversed(self.middlewares):
			result = _bind(middleware, result)
		return result

	def apply_stream(self, handler: StreamHandler) -> StreamHandler:
		result = handler
		for middleware in reversed(self.middlewares):
			result = _bind_stream(middleware, result)
		return result


def _bind(middleware, call_next: Handler) -> Handler:
	async def handler(ctx: MiddlewareContext) -> IRChatResponse:
		return await middleware(ctx, call_next)
	return handler


def _bind_stream(middleware, call_next: StreamHandler) -> StreamHandler:
	stream = getattr(middleware, "stream", None)
	if stream is None:
		# plain callables only wrap unary calls
		return call_next

	def handler(ctx: MiddlewareContext) -> AsyncIterator[IRChatChunk]:
		return stream(ctx, call_next)
	return handler


def _mask_key(key: Optional[str]) -> Optional[str]:
	if key is None:
		return None
	return "****" if len(key) <= 8 else f"{key[:4]}...{key[-4:]}"


class LoggingMiddleware(Middleware):
	def __init__(self, log_level: int = logging.INFO, log_request: bool = True, log_response: bool = True,
				 log_errors: bool = True, mask_sensitive: bool = True):
		self.log_level = log_level
		self.log_request = log_request
		self.log_response = log_response
		self.log_errors = log_errors
		self.mask_sensitive = mask_sensitive

	def _session(self, ctx: MiddlewareContext) -> Optional[str]:
		key = ctx.request.session_key
		return _mask_key(key) if self.mask_sensitive else key

	def _started(self, ctx: MiddlewareContext) -> None:
		if self.log_request and logger.isEnabledFor(self.log_level):
			logger.log(
				self.log_level,
				f"LLM request started: id={ctx.request.request_id}, model={ctx.request.model}, "
				f"messages={len(ctx.request.messages)}, stream={ctx.streaming}, session={self._session(ctx)}"
			)

	def _failed(self, ctx: MiddlewareContext, start: float, error: Exception) -> None:
		if self.log_errors:
			duration = int((time.time() - start) * 1000)
			logger.error(f"LLM request {ctx.request.request_id} failed in {duration}ms: {error}")

	async def __call__(self, ctx: MiddlewareContext, call_next: Handler) -> IRChatResponse:
		start = time.time()
		self._started(ctx)
		try:
			response = await call_next(ctx)
		except Exception as e:
			self._failed(ctx, start, e)
			raise
		if self.log_response and logger.isEnabledFor(self.log_level):
			duration = int((time.time() - start) * 1000)
			tokens = response.usage.total_tokens if response.usage else None
			logger.log(
				self.log_level,
				f"LLM request completed in {duration}ms: backend={response.backend}, "
				f"finish={response.finish_reason.value}, tokens={tokens}, drift={len(response.drift)}"
			)
		return response

	async def stream(self, ctx: MiddlewareContext, call_next: StreamHandler) -> AsyncIterator[IRChatChunk]:
		start = time.time()
		self._started(ctx)
		count = 0
		try:
			async with aclosing(call_next(ctx)) as chunks:
				async for chunk in chunks:
					count += 1
					yield chunk
		except Exception as e:
			self._failed(ctx, start, e)
			raise
		if self.log_response and logger.isEnabledFor(self.log_level):
			duration = int((time.time() - start) * 1000)
			logger.log(self.log_level, f"LLM stream completed in {duration}ms: backend={ctx.backend}, chunks={count}")


class ResponseCache:
	"""asyncio-safe TTL cache with least-recently-used eviction."""

	def __init__(self, ttl_sec: float = 300, max_size: int = 256, clock: Callable[[], float] = time.monotonic):
		self._ttl = ttl_sec
		self._max_size = max_size
		self._clock = clock
		self._store: "OrderedDict[str, Tuple[float, IRChatResponse]]" = OrderedDict()
		self._lock = asyncio.Lock()

	async def get(self, key: str) -> Optional[IRChatResponse]:
		async with self._lock:
			entry = self._store.get(key)
			if not entry:
				return None
			ts, value = entry
			if self._clock() - ts > self._ttl:
				del self._store[key]
				return None
			self._store.move_to_end(key)
			return value

	async def set(self, key: str, value: IRChatResponse) -> None:
		async with self._lock:
			self._store[key] = (self._clock(), value)
			self._store.move_to_end(key)
			while len(self._store) > self._max_size:
				self._store.popitem(last=False)

	async def clear(self) -> None:
		async with self._lock:
			self._store.clear()

	def __len__(self) -> int:
		return len(self._store)


def request_fingerprint(request: IRChatRequest, backend: Optional[str] = None) -> str:
	"""Stable hash of everything that affects a response; ids and metadata are excluded."""
	body = {
		"model": request.model,
		"messages": [asdict(m) for m in request.messages],
		"params": asdict(request.params),
		"tools": [asdict(t) for t in request.tools],
		"backend": backend,
	}
	encoded = json.dumps(body, sort_keys=True, default=str)
	return hashlib.sha256(encoded.encode()).hexdigest()


class CachingMiddleware(Middleware):
	"""
	Short-circuits repeated deterministic requests (temperature 0 or a fixed
	seed). Cached responses carry `metadata["cached"] = True`. Streams pass
	through uncached.
	"""

	def __init__(self, cache: Optional[ResponseCache] = None, ttl_sec: float = 300, max_size: int = 256,
				 deterministic_only: bool = True):
		self.cache = cache or ResponseCache(ttl_sec, max_size)
		self.deterministic_only = deterministic_only
		self.hits = 0
		self.misses = 0

	def _cacheable(self, request: IRChatRequest) -> bool:
		if not self.deterministic_only:
			return True
		params = request.params
		return params.temperature == 0 or params.seed is not None

	async def __call__(self, ctx: MiddlewareContext, call_next: Handler) -> IRChatResponse:
		if not self._cacheable(ctx.request):
			return await call_next(ctx)
		key = request_fingerprint(ctx.request, ctx.options.get("backend"))
		cached = await self.cache.get(key)
		if cached is not None:
			self.hits += 1
			logger.debug(f"Cache hit for request {ctx.request.request_id}")
			ctx.metadata["cached"] = True
			ctx.backend = cached.backend
			return replace(cached, request_id=ctx.request.request_id,
						   metadata={**cached.metadata, "cached": True})
		self.misses += 1
		response = await call_next(ctx)
		await self.cache.set(key, response)
		return response


class TelemetrySink:
	"""In-memory counters and latencies, keyed by backend."""

	def __init__(self):
		self.requests = 0
		self.errors: Dict[str, int] = {}
		self.latencies_ms: List[float] = []
		self.by_backend: Dict[str, int] = {}
		self.tokens = 0
		self.streams = 0
		self.chunks = 0
		self.first_chunk_ms: List[float] = []

	def reset(self) -> None:
		self.__init__()

	def record_success(self, backend: Optional[str], latency_ms: float, tokens: int = 0) -> None:
		self.requests += 1
		self.latencies_ms.append(latency_ms)
		self.tokens += tokens
		if backend:
			self.by_backend[backend] = self.by_backend.get(backend, 0) + 1

	def record_error(self, error: Exception) -> None:
		self.requests += 1
		code = error.code if isinstance(error, BridgeError) else type(error).__name__
		self.errors[code] = self.errors.get(code, 0) + 1

	def summary(self) -> Dict[str, Any]:
		avg = sum(self.latencies_ms) / len(self.latencies_ms) if self.latencies_ms else None
		return {
			"requests": self.requests,
			"errors": dict(self.errors),
			"avg_latency_ms": avg,
			"by_backend": dict(self.by_backend),
			"tokens": self.tokens,
			"streams": self.streams,
			"chunks": self.chunks,
		}


class TelemetryMiddleware(Middleware):
	def __init__(self, sink: Optional[TelemetrySink] = None):
		self.sink = sink or TelemetrySink()

	async def __call__(self, ctx: MiddlewareContext, call_next: Handler) -> IRChatResponse:
		start = time.perf_counter()
		try:
			response = await call_next(ctx)
		except Exception as e:
			self.sink.record_error(e)
			raise
		tokens = response.usage.total_tokens if response.usage else 0
		self.sink.record_success(response.backend, (time.perf_counter() - start) * 1000, tokens)
		return response

	async def stream(self, ctx: MiddlewareContext, call_next: StreamHandler) -> AsyncIterator[IRChatChunk]:
		start = time.perf_counter()
		self.sink.streams += 1
		first = True
		try:
			async with aclosing(call_next(ctx)) as chunks:
				async for chunk in chunks:
					if first:
						self.sink.first_chunk_ms.append((time.perf_counter() - start) * 1000)
						first = False
					self.sink.chunks += 1
					if chunk.is_terminal:
						tokens = chunk.usage.total_tokens if chunk.usage else 0
						self.sink.record_success(chunk.backend, (time.perf_counter() - start) * 1000, tokens)
					yield chunk
		except Exception as e:
			self.sink.record_error(e)
			raise


class RateLimitMiddleware(Middleware):
	"""Per-key request budget; callers wait for capacity instead of failing."""

	def __init__(self, requests_per_minute: int = 60, key_fn: Optional[Callable[[MiddlewareContext], str]] = None,
				 max_keys: int = 1024):
		self.rate = max(1, requests_per_minute)
		self.key_fn = key_fn or (lambda ctx: ctx.request.session_key or "global")
		self.max_keys = max(1, max_keys)
		self._limiters: "OrderedDict[str, AsyncLimiter]" = OrderedDict()

	def get_limiter(self, key: str) -> AsyncLimiter:
		limiter = self._limiters.get(key)
		if limiter is None:
			limiter = self._limiters[key] = AsyncLimiter(self.rate, time_period=60)
			# 最久未使用的 key 被淘汰
			while len(self._limiters) > self.max_keys:
				self._limiters.popitem(last=False)
		else:
			self._limiters.move_to_end(key)
		return limiter

	async def __call__(self, ctx: MiddlewareContext, call_next: Handler) -> IRChatResponse:
		async with self.get_limiter(self.key_fn(ctx)):
			return await call_next(ctx)

	async def stream(self, ctx: MiddlewareContext, call_next: StreamHandler) -> AsyncIterator[IRChatChunk]:
		await self.get_limiter(self.key_fn(ctx)).acquire()
		async with aclosing(call_next(ctx)) as chunks:
			async for chunk in chunks:
				yield chunk


def create_default_middleware_chain(log_level: int = logging.INFO) -> MiddlewareChain:
	return MiddlewareChain([
		LoggingMiddleware(log_level=log_level),
		TelemetryMiddleware(),
	])

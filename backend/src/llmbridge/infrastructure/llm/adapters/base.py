#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Adapter contracts - Frontend adapters and the provider-tagged backend adapter.

Frontends convert between a caller-facing wire format and IR. Backends all
share one class, `BackendAdapter`; a provider is a `ProviderType` tag plus a
`ProviderCodec` of translation functions registered with `register_codec`.
Adding a provider adds a codec, never a branch in the dispatch below.
"""

import asyncio
import logging
import threading
from abc import ABC, abstractmethod
from contextlib import aclosing
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import (
    Any, AsyncIterator, Callable, Dict, FrozenSet, List, Optional, Protocol, Tuple,
)

from ..drift import DriftLog, approximated, dropped
from ..exceptions import (
    BridgeError, ProviderError, ProviderErrorKind, RouterExhaustedError, StreamError,
    TranslationError, ValidationError,
)
from ..transport import (
    HttpxTransport, Transport, TransportConnectionError, TransportError,
    TransportHTTPError, TransportTimeout,
)
from ..types import (
    ChunkKind, DriftStage, FinishReason, GenerationParams, ImagePart, IRChatChunk,
    IRChatMessage, IRChatRequest, IRChatResponse, ToolCallDelta, Usage,
)

logger = logging.getLogger(__name__)


class ProviderType(Enum):
    """Supported provider variants."""
    OPENAI = "openai"
    SILICONFLOW = "siliconflow"
    DEEPSEEK = "deepseek"
    ANTHROPIC = "anthropic"


@dataclass
class BackendDescriptor:
    """Static capability, cost and routing metadata for one backend."""
    name: str
    provider: ProviderType
    model: Optional[str] = None
    model_map: Dict[str, str] = field(default_factory=dict)
    weight: float = 1.0
    cost: float = 0.0  # per 1k tokens
    supports_streaming: bool = True
    supports_tools: bool = True
    supports_vision: bool = True
    unsupported_params: FrozenSet[str] = frozenset()
    timeout: Optional[float] = None


@dataclass(frozen=True)
class StreamDelta:
    """One parsed provider stream event, before sequence numbers are assigned."""
    kind: ChunkKind
    text: str = ""
    tool_call: Optional[ToolCallDelta] = None
    finish_reason: Optional[FinishReason] = None
    usage: Optional[Usage] = None
    model: Optional[str] = None


class StreamParser(Protocol):
    def feed(self, line: str) -> List[StreamDelta]: ...


@dataclass(frozen=True)
class ProviderCodec:
    """Translation functions for one provider wire format."""
    provider: ProviderType
    path: str
    default_base_url: str
    supported_params: FrozenSet[str]
    build_payload: Callable[..., Dict[str, Any]]
    parse_response: Callable[[Dict[str, Any]], IRChatResponse]
    new_stream_parser: Callable[[], StreamParser]
    classify_error: Callable[[TransportHTTPError], ProviderError]
    auth_headers: Callable[[Optional[str]], Dict[str, str]]


_CODECS: Dict[ProviderType, ProviderCodec] = {}


def register_codec(codec: ProviderCodec) -> None:
    _CODECS[codec.provider] = codec
    logger.debug(f"Registered provider codec: {codec.provider.value}")


def get_codec(provider: ProviderType) -> ProviderCodec:
    if provider not in _CODECS:
        available = [p.value for p in _CODECS]
        raise ValueError(f"Unsupported provider '{provider.value}'. Available: {available}")
    return _CODECS[provider]


def kind_for_status(status_code: int) -> ProviderErrorKind:
    """Default HTTP status classification shared by the provider codecs."""
    if status_code in (401, 403):
        return ProviderErrorKind.AUTH
    if status_code == 404:
        return ProviderErrorKind.MODEL_NOT_FOUND
    if status_code == 429:
        return ProviderErrorKind.RATE_LIMIT
    if status_code in (408, 504):
        return ProviderErrorKind.TIMEOUT
    if 400 <= status_code < 500:
        return ProviderErrorKind.INVALID_REQUEST
    return ProviderErrorKind.SERVER_FAULT


def retry_after_seconds(error: TransportHTTPError) -> Optional[float]:
    value = error.headers.get("retry-after")
    if value is None:
        return None
    try:
        return float(value)
    except ValueError:
        return None


def _classify_transport_error(error: TransportError, codec: ProviderCodec, backend: str) -> ProviderError:
    if isinstance(error, TransportHTTPError):
        classified = codec.classify_error(error)
        classified.backend = backend
        return classified
    if isinstance(error, TransportTimeout):
        return ProviderError(str(error), ProviderErrorKind.TIMEOUT, backend=backend, original_error=error)
    if isinstance(error, TransportConnectionError):
        return ProviderError(f"Connection error: {error}", ProviderErrorKind.SERVER_FAULT,
                             backend=backend, original_error=error)
    return ProviderError(f"Transport error: {error}", ProviderErrorKind.SERVER_FAULT,
                         backend=backend, original_error=error)


class BackendAdapter:
    """
    Executes IR requests against one provider.

    The capability set is fixed: `execute` and `execute_stream`. Provider
    differences live entirely in the registered `ProviderCodec`.
    """

    def __init__(self, descriptor: BackendDescriptor, transport: Optional[Transport] = None,
                 api_keys: Optional[List[str]] = None, base_url: Optional[str] = None):
        self.descriptor = descriptor
        self.codec = get_codec(descriptor.provider)
        self.transport = transport or HttpxTransport(base_url or self.codec.default_base_url)
        self._api_keys = list(api_keys or [])
        self._key_counter = 0
        self._counter_lock = threading.Lock()

    @property
    def name(self) -> str:
        return self.descriptor.name

    def __repr__(self) -> str:
        return f"BackendAdapter(name={self.name!r}, provider={self.descriptor.provider.value!r})"

    def _next_api_key(self) -> Optional[str]:
        if not self._api_keys:
            return None
        with self._counter_lock:
            key = self._api_keys[self._key_counter % len(self._api_keys)]
            self._key_counter += 1
        return key

    def _resolve_model(self, hint: Optional[str], drift: DriftLog) -> str:
        d = self.descriptor
        if hint and hint in d.model_map:
            return d.model_map[hint]
        if d.model:
            if hint and hint != d.model:
                drift.add(approximated(
                    "model", DriftStage.EXECUTE,
                    f"backend '{self.name}' serves model '{d.model}'",
                    hint, d.model, self.name,
                ))
            return d.model
        if hint:
            return hint
        raise ValidationError(
            f"No model requested and backend '{self.name}' has no default model",
            field="model", backend=self.name,
        )

    def _filter_params(self, params: GenerationParams, drift: DriftLog) -> GenerationParams:
        supported = self.codec.supported_params - self.descriptor.unsupported_params
        kept: Dict[str, Any] = {}
        for name, value in params.present().items():
            if name in supported:
                kept[name] = value
                continue
            drift.add(dropped(
                name, DriftStage.EXECUTE,
                f"parameter '{name}' is not supported by backend '{self.name}'",
                value, self.name,
            ))
        extra = {k: v for k, v in kept.items() if k not in GenerationParams.FIELDS}
        known = {k: v for k, v in kept.items() if k in GenerationParams.FIELDS}
        return GenerationParams(extra=extra, **known)

    def _strip_images(self, message: IRChatMessage, drift: DriftLog) -> IRChatMessage:
        if not message.is_multipart:
            return message
        parts = tuple(p for p in message.content if not isinstance(p, ImagePart))
        if len(parts) == len(message.content):
            return message
        drift.add(dropped(
            "content.image", DriftStage.EXECUTE,
            f"backend '{self.name}' does not accept image input",
            len(message.content) - len(parts), self.name,
        ))
        return replace(message, content=parts)

    def prepare(self, request: IRChatRequest, drift: DriftLog, stream: bool) -> Dict[str, Any]:
        """Build the provider payload for `request` without mutating it."""
        d = self.descriptor
        view = request
        if request.tools and not d.supports_tools:
            drift.add(dropped(
                "tools", DriftStage.EXECUTE,
                f"backend '{self.name}' does not support tool calling",
                [t.name for t in request.tools], self.name,
            ))
            view = replace(view, tools=())
        if not d.supports_vision:
            view = view.with_messages([self._strip_images(m, drift) for m in view.messages])
        view = replace(view, params=self._filter_params(view.params, drift))
        model = self._resolve_model(request.model, drift)
        return self.codec.build_payload(view, model, drift, backend=self.name, stream=stream)

    def _headers(self) -> Dict[str, str]:
        return self.codec.auth_headers(self._next_api_key())

    async def execute(self, request: IRChatRequest, timeout: Optional[float] = None) -> IRChatResponse:
        drift = DriftLog()
        payload = self.prepare(request, drift, stream=False)
        timeout = timeout or self.descriptor.timeout
        try:
            async with asyncio.timeout(timeout):
                body = await self.transport.send(self.codec.path, payload, self._headers(), timeout)
        except TimeoutError as e:
            raise ProviderError(
                f"Backend '{self.name}' timed out after {timeout}s",
                ProviderErrorKind.TIMEOUT, backend=self.name, original_error=e,
            )
        except TransportError as e:
            raise _classify_transport_error(e, self.codec, self.name) from e

        try:
            response = self.codec.parse_response(body)
        except (KeyError, IndexError, TypeError, ValueError) as e:
            raise ProviderError(
                f"Invalid response format from '{self.name}': {e}",
                ProviderErrorKind.SERVER_FAULT, backend=self.name, original_error=e,
            ) from e
        return replace(
            response,
            backend=self.name,
            request_id=request.request_id,
            drift=drift.notices + response.drift,
        )

    async def execute_stream(self, request: IRChatRequest, timeout: Optional[float] = None,
                             deadline: Optional[float] = None) -> AsyncIterator[IRChatChunk]:
        """
        Stream `request` as IR chunks.

        `timeout` bounds the wait for each upstream line; `deadline`, an
        absolute event-loop time, bounds the whole stream.
        """
        if not self.descriptor.supports_streaming:
            if deadline is not None:
                remaining = deadline - asyncio.get_running_loop().time()
                timeout = remaining if timeout is None else min(timeout, remaining)
            async for chunk in self._emulated_stream(request, timeout):
                yield chunk
            return

        drift = DriftLog()
        payload = self.prepare(request, drift, stream=True)
        timeout = timeout or self.descriptor.timeout
        parser = self.codec.new_stream_parser()
        sequence = 0
        text: List[str] = []

        def failure(error: ProviderError) -> BridgeError:
            if sequence == 0:
                return error
            return StreamError(
                f"Stream from '{self.name}' failed after {sequence} chunks: {error.message}",
                delivered=sequence, partial_content="".join(text), cause=error, backend=self.name,
            )

        loop = asyncio.get_running_loop()
        lines = self.transport.stream(self.codec.path, payload, self._headers(), timeout)
        async with aclosing(lines):
            while True:
                idle_at = loop.time() + timeout if timeout else None
                wait_until = idle_at if deadline is None else min(idle_at or deadline, deadline)
                try:
                    async with asyncio.timeout_at(wait_until):
                        line = await lines.__anext__()
                except StopAsyncIteration:
                    break
                except TimeoutError as e:
                    overall = deadline is not None and wait_until == deadline
                    raise failure(ProviderError(
                        f"Backend '{self.name}' stream exceeded its deadline" if overall
                        else f"Backend '{self.name}' stream idle for {timeout}s",
                        ProviderErrorKind.TIMEOUT, backend=self.name, original_error=e,
                    ))
                except TransportError as e:
                    raise failure(_classify_transport_error(e, self.codec, self.name)) from e

                try:
                    events = parser.feed(line)
                except ProviderError as e:
                    e.backend = self.name
                    raise failure(e)
                except (KeyError, IndexError, TypeError, ValueError) as e:
                    raise failure(ProviderError(
                        f"Malformed stream event from '{self.name}': {e}",
                        ProviderErrorKind.SERVER_FAULT, backend=self.name, original_error=e,
                    ))

                for event in events:
                    chunk = IRChatChunk(
                        sequence=sequence,
                        kind=event.kind,
                        delta=event.text,
                        tool_call=event.tool_call,
                        finish_reason=event.finish_reason,
                        usage=event.usage,
                        model=event.model,
                        backend=self.name,
                        request_id=request.request_id,
                        drift=drift.notices if event.kind == ChunkKind.DONE else (),
                    )
                    yield chunk
                    sequence += 1
                    if event.kind == ChunkKind.DONE:
                        return
                    if event.kind == ChunkKind.CONTENT:
                        text.append(event.text)

        raise StreamError(
            f"Stream from '{self.name}' ended without a terminal event",
            delivered=sequence, partial_content="".join(text), backend=self.name,
        )

    async def _emulated_stream(self, request: IRChatRequest,
                               timeout: Optional[float]) -> AsyncIterator[IRChatChunk]:
        response = await self.execute(request, timeout)
        notice = approximated(
            "stream", DriftStage.EXECUTE,
            f"backend '{self.name}' cannot stream; response delivered as one chunk",
            True, False, self.name,
        )
        sequence = 0
        if response.message.text:
            yield IRChatChunk(sequence, ChunkKind.CONTENT, delta=response.message.text,
                              backend=self.name, request_id=request.request_id)
            sequence += 1
        for index, call in enumerate(response.message.tool_calls):
            yield IRChatChunk(sequence, ChunkKind.TOOL_CALL,
                              tool_call=ToolCallDelta(index, call.id, call.name, call.arguments),
                              backend=self.name, request_id=request.request_id)
            sequence += 1
        yield IRChatChunk(sequence, ChunkKind.DONE, finish_reason=response.finish_reason,
                          usage=response.usage, model=response.model, backend=self.name,
                          request_id=request.request_id, drift=response.drift + (notice,))

    async def aclose(self) -> None:
        await self.transport.aclose()


def status_for_error(error: BridgeError) -> int:
    """HTTP status code a frontend should answer with for `error`."""
    if isinstance(error, ValidationError):
        return 400
    if isinstance(error, TranslationError):
        return 422
    if isinstance(error, ProviderError):
        return {
            ProviderErrorKind.RATE_LIMIT: 429,
            ProviderErrorKind.AUTH: 401,
            ProviderErrorKind.TIMEOUT: 504,
            ProviderErrorKind.MODEL_NOT_FOUND: 404,
            ProviderErrorKind.INVALID_REQUEST: 400,
        }.get(error.kind, 502)
    if isinstance(error, RouterExhaustedError):
        return 503
    return 502


class FrontendAdapter(ABC):
    """
    Converts one caller-facing wire format to and from IR.

    Normalization is total over the declared schema: malformed input raises
    `ValidationError` naming the field. Anything IR carries that the format
    cannot express becomes a drift notice during denormalization.
    """

    name = "base"

    def __init__(self, expose_drift: bool = True):
        self.expose_drift = expose_drift

    @abstractmethod
    def normalize(self, raw: Dict[str, Any], drift: Optional[DriftLog] = None) -> IRChatRequest:
        """Validate `raw` and convert it to an IR request."""

    @abstractmethod
    def denormalize(self, response: IRChatResponse, drift: Optional[DriftLog] = None) -> Dict[str, Any]:
        """Render an IR response in this format."""

    @abstractmethod
    def denormalize_chunk(self, chunk: IRChatChunk, state: Dict[str, Any],
                          drift: Optional[DriftLog] = None) -> List[Dict[str, Any]]:
        """Render one IR chunk as zero or more raw stream events. `state` is per stream."""

    @abstractmethod
    def denormalize_request(self, request: IRChatRequest) -> Dict[str, Any]:
        """Render an IR request in this format (reverse bridging)."""

    @abstractmethod
    def render_error(self, error: BridgeError) -> Tuple[int, Dict[str, Any]]:
        """Status code and error body in this format."""

    def is_stream_request(self, raw: Dict[str, Any]) -> bool:
        return bool(raw.get("stream"))

    def _drift_payload(self, notices) -> Optional[List[Dict[str, Any]]]:
        if not self.expose_drift or not notices:
            return None
        return [n.to_dict() for n in notices]

    def _response_text(self, message: IRChatMessage, drift: DriftLog) -> str:
        """Text of a response message; image parts cannot be returned and are dropped."""
        if message.is_multipart:
            images = [p for p in message.content if isinstance(p, ImagePart)]
            for image in images:
                drift.add(dropped(
                    "content.image", DriftStage.DENORMALIZE,
                    f"{self.name} responses cannot carry images",
                    image.url or image.media_type,
                ))
        return message.text


def require(raw: Dict[str, Any], key: str, kind, path: str = "") -> Any:
    """Fetch a required field of a given type, raising `ValidationError` naming it."""
    where = f"{path}{key}"
    if not isinstance(raw, dict) or key not in raw or raw[key] is None:
        raise ValidationError(f"Missing required field: {where}", field=where)
    value = raw[key]
    kinds = kind if isinstance(kind, tuple) else (kind,)
    if not isinstance(value, kinds) or (isinstance(value, bool) and bool not in kinds):
        raise ValidationError(f"Field '{where}' has invalid type {type(value).__name__}", field=where, value=value)
    return value


def optional(raw: Dict[str, Any], key: str, kind, path: str = "") -> Any:
    if raw.get(key) is None:
        return None
    return require(raw, key, kind, path)


def number_in_range(raw: Dict[str, Any], key: str, low: float, high: float, path: str = "") -> Optional[float]:
    value = optional(raw, key, (int, float), path)
    if value is not None and not (low <= value <= high):
        raise ValidationError(f"Field '{path}{key}' must be between {low} and {high}", field=f"{path}{key}", value=value)
    return value


def positive_int(raw: Dict[str, Any], key: str, path: str = "") -> Optional[int]:
    value = optional(raw, key, int, path)
    if value is not None and value <= 0:
        raise ValidationError(f"Field '{path}{key}' must be a positive integer", field=f"{path}{key}", value=value)
    return value


def string_list(raw: Dict[str, Any], key: str, path: str = "", allow_str: bool = True) -> Optional[Tuple[str, ...]]:
    value = raw.get(key)
    if value is None:
        return None
    if allow_str and isinstance(value, str):
        return (value,)
    if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
        raise ValidationError(f"Field '{path}{key}' must be a list of strings", field=f"{path}{key}", value=value)
    return tuple(value)


def usage_from(prompt: Optional[int], completion: Optional[int]) -> Optional[Usage]:
    if prompt is None and completion is None:
        return None
    return Usage.of(prompt or 0, completion or 0)



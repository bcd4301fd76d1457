#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Transport - The thin capability backends use to reach a provider.

A transport moves JSON payloads and SSE lines; it knows nothing about
provider vocabularies. Backend codecs classify the transport errors below
into the shared taxonomy.
"""

import json
import logging
import time
import uuid
from typing import Any, AsyncIterator, Dict, Optional, Protocol

import httpx

logger = logging.getLogger(__name__)


class TransportError(Exception):
    """Base transport failure (malformed reply, unexpected condition)."""


class TransportHTTPError(TransportError):
    def __init__(self, status_code: int, body: Any, headers: Optional[Dict[str, str]] = None):
        super().__init__(f"HTTP {status_code}")
        self.status_code = status_code
        self.body = body
        self.headers = {k.lower(): v for k, v in (headers or {}).items()}


class TransportTimeout(TransportError):
    pass


class TransportConnectionError(TransportError):
    pass


class Transport(Protocol):
    async def send(self, path: str, payload: Dict[str, Any], headers: Dict[str, str],
                   timeout: Optional[float] = None) -> Dict[str, Any]: ...

    def stream(self, path: str, payload: Dict[str, Any], headers: Dict[str, str],
               timeout: Optional[float] = None) -> AsyncIterator[str]: ...

    async def aclose(self) -> None: ...


def _response_body(response: httpx.Response) -> Any:
    try:
        return response.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        return response.text


class HttpxTransport:
    """
    Transport over a shared `httpx.AsyncClient`.

    The client is created lazily and reused for connection pooling; call
    `aclose()` at shutdown.
    """

    def __init__(self, base_url: str, client: Optional[httpx.AsyncClient] = None,
                 timeout: Optional[httpx.Timeout] = None, user_agent: str = "llmbridge/0.1"):
        self.base_url = base_url.rstrip("/")
        self._client = client
        self._owns_client = client is None
        # 保守的默认超时
        self._timeout = timeout or httpx.Timeout(connect=30.0, read=120.0, write=30.0, pool=30.0)
        self._user_agent = user_agent

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self._timeout)
        return self._client

    def _url(self, path: str) -> str:
        return f"{self.base_url}/{path.lstrip('/')}"

    def _headers(self, headers: Dict[str, str]) -> Dict[str, str]:
        merged = {"Content-Type": "application/json", "User-Agent": self._user_agent}
        merged.update(headers)
        return merged

    def _request_timeout(self, timeout: Optional[float]):
        return httpx.Timeout(timeout) if timeout else self._timeout

    async def send(self, path: str, payload: Dict[str, Any], headers: Dict[str, str],
                   timeout: Optional[float] = None) -> Dict[str, Any]:
        try:
            response = await self.client.post(
                self._url(path), json=payload, headers=self._headers(headers),
                timeout=self._request_timeout(timeout),
            )
        except httpx.TimeoutException as e:
            raise TransportTimeout(f"request timeout: {e}") from e
        except (httpx.NetworkError, httpx.RemoteProtocolError) as e:
            logger.warning(f"Connection failure to {self.base_url}: {e}")
            raise TransportConnectionError(str(e)) from e

        if response.status_code >= 400:
            raise TransportHTTPError(response.status_code, _response_body(response), dict(response.headers))
        try:
            return response.json()
        except json.JSONDecodeError as e:
            raise TransportError(f"Invalid JSON response: {e}") from e

    async def stream(self, path: str, payload: Dict[str, Any], headers: Dict[str, str],
                     timeout: Optional[float] = None) -> AsyncIterator[str]:
        try:
            async with self.client.stream(
                "POST", self._url(path), json=payload, headers=self._headers(headers),
                timeout=self._request_timeout(timeout),
            ) as response:
                if response.status_code >= 400:
                    await response.aread()
                    raise TransportHTTPError(response.status_code, _response_body(response), dict(response.headers))
                async for line in response.aiter_lines():
                    yield line
        except httpx.TimeoutException as e:
            raise TransportTimeout(f"stream timeout: {e}") from e
        except (httpx.NetworkError, httpx.RemoteProtocolError) as e:
            raise TransportConnectionError(str(e)) from e

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None


class EchoTransport:
    """
    In-process transport speaking the OpenAI Chat Completions wire format.

    Replies with the text of the last user message. Useful for wiring a
    gateway without provider credentials.
    """

    def __init__(self, prefix: str = ""):
        self.prefix = prefix
        self.calls = 0

    def _reply(self, payload: Dict[str, Any]) -> str:
        for message in reversed(payload.get("messages", [])):
            if message.get("role") == "user":
                content = message.get("content")
                if isinstance(content, list):
                    content = "".join(p.get("text", "") for p in content if p.get("type") == "text")
                return f"{self.prefix}{content or ''}"
        return self.prefix

    @staticmethod
    def _usage(payload: Dict[str, Any], reply: str) -> Dict[str, int]:
        prompt = sum(len(str(m.get("content", "")).split()) for m in payload.get("messages", []))
        completion = len(reply.split())
        return {"prompt_tokens": prompt, "completion_tokens": completion, "total_tokens": prompt + completion}

    async def send(self, path: str, payload: Dict[str, Any], headers: Dict[str, str],
                   timeout: Optional[float] = None) -> Dict[str, Any]:
        self.calls += 1
        reply = self._reply(payload)
        return {
            "id": f"chatcmpl-{uuid.uuid4().hex[:12]}",
            "object": "chat.completion",
            "created": int(time.time()),
            "model": payload.get("model") or "echo",
            "choices": [{
                "index": 0,
                "message": {"role": "assistant", "content": reply},
                "finish_reason": "stop",
            }],
            "usage": self._usage(payload, reply),
        }

    async def stream(self, path: str, payload: Dict[str, Any], headers: Dict[str, str],
                     timeout: Optional[float] = None) -> AsyncIterator[str]:
        self.calls += 1
        reply = self._reply(payload)
        base = {"id": f"chatcmpl-{uuid.uuid4().hex[:12]}", "object": "chat.completion.chunk",
                "model": payload.get("model") or "echo"}
        words = reply.split(" ")
        for i, word in enumerate(words):
            piece = word if i == len(words) - 1 else word + " "
            chunk = dict(base, choices=[{"index": 0, "delta": {"content": piece}, "finish_reason": None}])
            yield f"data: {json.dumps(chunk)}"
        final = dict(base, choices=[{"index": 0, "delta": {}, "finish_reason": "stop"}],
                     usage=self._usage(payload, reply))
        yield f"data: {json.dumps(final)}"
        yield "data: [DONE]"

    async def aclose(self) -> None:
        return None

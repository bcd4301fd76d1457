#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
OpenAI Adapter - OpenAI Chat Completions wire format.

Provides the OpenAI frontend plus the backend codecs for OpenAI and the
OpenAI-compatible providers (DeepSeek, SiliconFlow), which differ only in
base URL and supported parameters.
"""

import json
import logging
import time
from typing import Any, Dict, List, Optional, Tuple

from ..drift import DriftLog, approximated, clamp, dropped
from ..exceptions import BridgeError, ProviderError, ProviderErrorKind, TranslationError, ValidationError
from ..transport import TransportHTTPError
from ..types import (
    ChunkKind, DriftStage, FinishReason, GenerationParams, ImagePart, IRChatChunk,
    IRChatMessage, IRChatRequest, IRChatResponse, Role, TextPart, ToolCall,
    ToolCallDelta, ToolSpec, Usage,
)
from .base import (
    FrontendAdapter, ProviderCodec, ProviderType, StreamDelta, kind_for_status,
    number_in_range, optional, positive_int, register_codec, require,
    retry_after_seconds, status_for_error, string_list, usage_from,
)

logger = logging.getLogger(__name__)

FROM_OPENAI_FINISH = {
    "stop": FinishReason.STOP,
    "length": FinishReason.LENGTH,
    "tool_calls": FinishReason.TOOL_CALL,
    "function_call": FinishReason.TOOL_CALL,
    "content_filter": FinishReason.CONTENT_FILTER,
}

TO_OPENAI_FINISH = {
    FinishReason.STOP: "stop",
    FinishReason.LENGTH: "length",
    FinishReason.TOOL_CALL: "tool_calls",
    FinishReason.CONTENT_FILTER: "content_filter",
}

_ROLES = {
    "system": Role.SYSTEM,
    "developer": Role.SYSTEM,
    "user": Role.USER,
    "assistant": Role.ASSISTANT,
    "tool": Role.TOOL,
}

# Request keys with a dedicated IR field; everything else lands in params.extra
_KNOWN_KEYS = {
    "model", "messages", "stream", "stream_options", "tools", "user", "metadata",
    "temperature", "max_tokens", "max_completion_tokens", "top_p", "top_k", "stop",
    "frequency_penalty", "presence_penalty", "seed",
}


# ---------------------------------------------------------------------------
# Wire <-> IR helpers
# ---------------------------------------------------------------------------

def _parse_data_url(url: str) -> ImagePart:
    if url.startswith("data:") and ";base64," in url:
        header, data = url[5:].split(";base64,", 1)
        return ImagePart(data=data, media_type=header or None)
    return ImagePart(url=url)


def _content_from_openai(content: Any, path: str):
    if content is None or isinstance(content, str):
        return content or ""
    if not isinstance(content, list):
        raise ValidationError(f"Field '{path}' must be a string or a list of parts", field=path, value=content)
    parts = []
    for i, part in enumerate(content):
        where = f"{path}[{i}]."
        kind = require(part, "type", str, where)
        if kind == "text":
            parts.append(TextPart(require(part, "text", str, where)))
        elif kind == "image_url":
            image = require(part, "image_url", (dict, str), where)
            url = image if isinstance(image, str) else require(image, "url", str, f"{where}image_url.")
            parts.append(_parse_data_url(url))
        else:
            raise ValidationError(f"Unsupported content part type '{kind}'", field=f"{where}type", value=kind)
    return tuple(parts)


def _tool_calls_from_openai(raw: Any, path: str) -> Tuple[ToolCall, ...]:
    if raw is None:
        return ()
    if not isinstance(raw, list):
        raise ValidationError(f"Field '{path}' must be a list", field=path, value=raw)
    calls = []
    for i, call in enumerate(raw):
        where = f"{path}[{i}]."
        function = require(call, "function", dict, where)
        arguments = optional(function, "arguments", str, f"{where}function.") or "{}"
        calls.append(ToolCall(
            id=require(call, "id", str, where),
            name=require(function, "name", str, f"{where}function."),
            arguments=arguments,
        ))
    return tuple(calls)


def messages_from_openai(raw_messages: Any) -> Tuple[IRChatMessage, ...]:
    if not isinstance(raw_messages, list) or not raw_messages:
        raise ValidationError("Field 'messages' must be a non-empty list", field="messages", value=raw_messages)
    messages = []
    for i, raw in enumerate(raw_messages):
        where = f"messages[{i}]."
        role_name = require(raw, "role", str, where)
        if role_name not in _ROLES:
            raise ValidationError(f"Unknown role '{role_name}'", field=f"{where}role", value=role_name)
        role = _ROLES[role_name]
        tool_calls = _tool_calls_from_openai(raw.get("tool_calls"), f"{where}tool_calls")
        if raw.get("content") is None and not tool_calls and role != Role.ASSISTANT:
            raise ValidationError(f"Missing required field: {where}content", field=f"{where}content")
        tool_call_id = None
        if role == Role.TOOL:
            tool_call_id = require(raw, "tool_call_id", str, where)
        messages.append(IRChatMessage(
            role=role,
            content=_content_from_openai(raw.get("content"), f"{where}content"),
            tool_calls=tool_calls,
            tool_call_id=tool_call_id,
            name=optional(raw, "name", str, where),
        ))
    return tuple(messages)


def tools_from_openai(raw_tools: Any) -> Tuple[ToolSpec, ...]:
    if raw_tools is None:
        return ()
    if not isinstance(raw_tools, list):
        raise ValidationError("Field 'tools' must be a list", field="tools", value=raw_tools)
    tools = []
    for i, tool in enumerate(raw_tools):
        where = f"tools[{i}]."
        function = require(tool, "function", dict, where)
        tools.append(ToolSpec(
            name=require(function, "name", str, f"{where}function."),
            description=optional(function, "description", str, f"{where}function.") or "",
            parameters=optional(function, "parameters", dict, f"{where}function.") or {},
        ))
    return tuple(tools)


def _content_to_openai(message: IRChatMessage):
    if not message.is_multipart:
        return message.content
    parts = []
    for part in message.content:
        if isinstance(part, TextPart):
            parts.append({"type": "text", "text": part.text})
        else:
            parts.append({"type": "image_url", "image_url": {"url": part.as_data_url()}})
    return parts


def messages_to_openai(messages) -> List[Dict[str, Any]]:
    formatted = []
    for msg in messages:
        item: Dict[str, Any] = {"role": msg.role.value, "content": _content_to_openai(msg)}
        if msg.tool_calls:
            item["tool_calls"] = [
                {"id": c.id, "type": "function", "function": {"name": c.name, "arguments": c.arguments}}
                for c in msg.tool_calls
            ]
            if not msg.text:
                item["content"] = None
        if msg.tool_call_id:
            item["tool_call_id"] = msg.tool_call_id
        if msg.name:
            item["name"] = msg.name
        formatted.append(item)
    return formatted


def tools_to_openai(tools) -> List[Dict[str, Any]]:
    return [
        {"type": "function",
         "function": {"name": t.name, "description": t.description, "parameters": dict(t.parameters)}}
        for t in tools
    ]


def _usage_to_openai(usage: Optional[Usage]) -> Optional[Dict[str, int]]:
    if usage is None:
        return None
    return {
        "prompt_tokens": usage.prompt_tokens,
        "completion_tokens": usage.completion_tokens,
        "total_tokens": usage.total_tokens,
    }


def _usage_from_openai(raw: Optional[Dict[str, Any]]) -> Optional[Usage]:
    if not raw:
        return None
    return usage_from(raw.get("prompt_tokens"), raw.get("completion_tokens"))


# ---------------------------------------------------------------------------
# Backend codec
# ---------------------------------------------------------------------------

def build_openai_payload(request: IRChatRequest, model: str, drift: DriftLog,
                         backend: Optional[str] = None, stream: bool = False) -> Dict[str, Any]:
    """Build an OpenAI Chat Completions payload. Unsupported params are already filtered."""
    params = request.params
    payload: Dict[str, Any] = {
        "model": model,
        "messages": messages_to_openai(request.messages),
    }
    temperature = clamp("temperature", params.temperature, 0.0, 2.0, drift, backend=backend)
    optional_fields = {
        "temperature": temperature,
        "max_tokens": params.max_tokens,
        "top_p": params.top_p,
        "top_k": params.top_k,
        "stop": list(params.stop) if params.stop else None,
        "frequency_penalty": params.frequency_penalty,
        "presence_penalty": params.presence_penalty,
        "seed": params.seed,
    }
    payload.update({k: v for k, v in optional_fields.items() if v is not None})
    if request.tools:
        payload["tools"] = tools_to_openai(request.tools)
    if request.session_key:
        payload["user"] = request.session_key
    if stream:
        payload["stream"] = True
        payload["stream_options"] = {"include_usage": True}
    return payload


def parse_openai_response(body: Dict[str, Any]) -> IRChatResponse:
    choice = body["choices"][0]
    message = choice["message"]
    tool_calls = tuple(
        ToolCall(id=c["id"], name=c["function"]["name"], arguments=c["function"].get("arguments") or "{}")
        for c in message.get("tool_calls") or []
    )
    return IRChatResponse(
        message=IRChatMessage(Role.ASSISTANT, message.get("content") or "", tool_calls),
        finish_reason=FROM_OPENAI_FINISH.get(choice.get("finish_reason"), FinishReason.STOP),
        usage=_usage_from_openai(body.get("usage")),
        model=body.get("model"),
    )


def _error_fields(body: Any) -> Tuple[str, Optional[str]]:
    if isinstance(body, dict):
        error = body.get("error")
        if isinstance(error, dict):
            return str(error.get("message") or error), error.get("code") or error.get("type")
        if error:
            return str(error), None
    return str(body), None


def classify_openai_error(error: TransportHTTPError) -> ProviderError:
    message, code = _error_fields(error.body)
    kind = kind_for_status(error.status_code)
    if code == "model_not_found":
        kind = ProviderErrorKind.MODEL_NOT_FOUND
    return ProviderError(
        f"HTTP {error.status_code}: {message}",
        kind,
        status_code=error.status_code,
        provider_code=code,
        retry_after=retry_after_seconds(error),
        original_error=error,
    )


class OpenAIStreamParser:
    """Parses `data:` lines of an OpenAI SSE stream. The terminal marker is `[DONE]`."""

    def __init__(self):
        self.finish_reason: Optional[FinishReason] = None
        self.usage: Optional[Usage] = None
        self.model: Optional[str] = None

    def feed(self, line: str) -> List[StreamDelta]:
        line = line.strip()
        if not line.startswith("data:"):
            return []
        data = line[5:].strip()
        if data == "[DONE]":
            return [StreamDelta(ChunkKind.DONE, finish_reason=self.finish_reason or FinishReason.STOP,
                                usage=self.usage, model=self.model)]
        event = json.loads(data)
        if event.get("error"):
            message, code = _error_fields(event)
            kind = ProviderErrorKind.RATE_LIMIT if code == "rate_limit_exceeded" else ProviderErrorKind.SERVER_FAULT
            raise ProviderError(f"Stream error: {message}", kind, provider_code=code)

        self.model = event.get("model") or self.model
        if event.get("usage"):
            self.usage = _usage_from_openai(event["usage"])
        deltas = []
        for choice in event.get("choices") or []:
            delta = choice.get("delta") or {}
            if delta.get("content"):
                deltas.append(StreamDelta(ChunkKind.CONTENT, text=delta["content"]))
            for call in delta.get("tool_calls") or []:
                function = call.get("function") or {}
                deltas.append(StreamDelta(ChunkKind.TOOL_CALL, tool_call=ToolCallDelta(
                    index=call.get("index", 0),
                    id=call.get("id"),
                    name=function.get("name"),
                    arguments=function.get("arguments") or "",
                )))
            if choice.get("finish_reason"):
                self.finish_reason = FROM_OPENAI_FINISH.get(choice["finish_reason"], FinishReason.STOP)
        return deltas


def bearer_headers(api_key: Optional[str]) -> Dict[str, str]:
    return {"Authorization": f"Bearer {api_key}"} if api_key else {}


_OPENAI_PARAMS = frozenset({
    "temperature", "max_tokens", "top_p", "stop", "frequency_penalty", "presence_penalty", "seed",
})


def _openai_compatible(provider: ProviderType, base_url: str, params=_OPENAI_PARAMS) -> ProviderCodec:
    return ProviderCodec(
        provider=provider,
        path="/chat/completions",
        default_base_url=base_url,
        supported_params=params,
        build_payload=build_openai_payload,
        parse_response=parse_openai_response,
        new_stream_parser=OpenAIStreamParser,
        classify_error=classify_openai_error,
        auth_headers=bearer_headers,
    )


register_codec(_openai_compatible(ProviderType.OPENAI, "https://api.openai.com/v1"))
register_codec(_openai_compatible(ProviderType.DEEPSEEK, "https://api.deepseek.com/v1",
                                  _OPENAI_PARAMS - {"seed"}))
register_codec(_openai_compatible(ProviderType.SILICONFLOW, "https://api.siliconflow.cn/v1",
                                  _OPENAI_PARAMS | {"top_k"}))


# ---------------------------------------------------------------------------
# Frontend
# ---------------------------------------------------------------------------

class OpenAIFrontend(FrontendAdapter):
    """Accepts and answers in the OpenAI Chat Completions format."""

    name = "openai"

    def normalize(self, raw: Dict[str, Any], drift: Optional[DriftLog] = None) -> IRChatRequest:
        if not isinstance(raw, dict):
            raise ValidationError("Request body must be a JSON object", field="body", value=raw)
        drift = drift if drift is not None else DriftLog()
        max_tokens = positive_int(raw, "max_tokens")
        if max_tokens is None:
            max_tokens = positive_int(raw, "max_completion_tokens")
            if max_tokens is not None:
                drift.add(approximated(
                    "max_completion_tokens", DriftStage.NORMALIZE,
                    "completion token limit is carried as max_tokens",
                    max_tokens, max_tokens,
                ))
        if raw.get("stream_options") is not None:
            drift.add(dropped(
                "stream_options", DriftStage.NORMALIZE,
                "stream options are not carried; usage is reported when the backend sends it",
                raw["stream_options"],
            ))
        params = GenerationParams(
            temperature=number_in_range(raw, "temperature", 0.0, 2.0),
            max_tokens=max_tokens,
            top_p=number_in_range(raw, "top_p", 0.0, 1.0),
            top_k=positive_int(raw, "top_k"),
            stop=string_list(raw, "stop"),
            frequency_penalty=number_in_range(raw, "frequency_penalty", -2.0, 2.0),
            presence_penalty=number_in_range(raw, "presence_penalty", -2.0, 2.0),
            seed=optional(raw, "seed", int),
            extra={k: v for k, v in raw.items() if k not in _KNOWN_KEYS},
        )
        return IRChatRequest(
            messages=messages_from_openai(raw.get("messages")),
            model=optional(raw, "model", str),
            params=params,
            tools=tools_from_openai(raw.get("tools")),
            stream=bool(optional(raw, "stream", bool)),
            session_key=optional(raw, "user", str),
            metadata=optional(raw, "metadata", dict) or {},
        )

    def denormalize_request(self, request: IRChatRequest) -> Dict[str, Any]:
        raw: Dict[str, Any] = {"messages": messages_to_openai(request.messages)}
        if request.model:
            raw["model"] = request.model
        for name, value in request.params.present().items():
            raw[name] = list(value) if name == "stop" else value
        if request.tools:
            raw["tools"] = tools_to_openai(request.tools)
        if request.stream:
            raw["stream"] = True
        if request.session_key:
            raw["user"] = request.session_key
        if request.metadata:
            raw["metadata"] = dict(request.metadata)
        return raw

    def _finish_reason(self, reason: FinishReason, drift: DriftLog) -> str:
        if reason in TO_OPENAI_FINISH:
            return TO_OPENAI_FINISH[reason]
        drift.add(approximated(
            "finish_reason", DriftStage.DENORMALIZE,
            f"finish reason '{reason.value}' has no OpenAI equivalent",
            reason.value, "stop",
        ))
        return "stop"

    def denormalize(self, response: IRChatResponse, drift: Optional[DriftLog] = None) -> Dict[str, Any]:
        drift = drift if drift is not None else DriftLog()
        drift.extend(response.drift)
        message: Dict[str, Any] = messages_to_openai([response.message])[0]
        if response.message.is_multipart:
            message["content"] = self._response_text(response.message, drift)
        finish = self._finish_reason(response.finish_reason, drift)
        body: Dict[str, Any] = {
            "id": f"chatcmpl-{response.request_id or ''}",
            "object": "chat.completion",
            "created": int(time.time()),
            "model": response.model,
            "choices": [{"index": 0, "message": message, "finish_reason": finish}],
        }
        usage = _usage_to_openai(response.usage)
        if usage:
            body["usage"] = usage
        notices = self._drift_payload(drift.notices)
        if notices:
            body["drift"] = notices
        return body

    def denormalize_chunk(self, chunk: IRChatChunk, state: Dict[str, Any],
                          drift: Optional[DriftLog] = None) -> List[Dict[str, Any]]:
        if "id" not in state:
            state["id"] = f"chatcmpl-{chunk.request_id or ''}"
            state["created"] = int(time.time())
        base = {"id": state["id"], "object": "chat.completion.chunk",
                "created": state["created"], "model": chunk.model or state.get("model")}
        if chunk.model:
            state["model"] = chunk.model

        delta: Dict[str, Any] = {}
        if not state.get("role_sent"):
            delta["role"] = "assistant"
            state["role_sent"] = True

        if chunk.kind == ChunkKind.CONTENT:
            delta["content"] = chunk.delta
            return [dict(base, choices=[{"index": 0, "delta": delta, "finish_reason": None}])]

        if chunk.kind == ChunkKind.TOOL_CALL:
            call = chunk.tool_call
            item: Dict[str, Any] = {"index": call.index}
            if call.id:
                item["id"] = call.id
                item["type"] = "function"
            function = {}
            if call.name:
                function["name"] = call.name
            function["arguments"] = call.arguments
            item["function"] = function
            delta["tool_calls"] = [item]
            return [dict(base, choices=[{"index": 0, "delta": delta, "finish_reason": None}])]

        drift = drift if drift is not None else DriftLog()
        drift.extend(chunk.drift)
        event = dict(base, choices=[{
            "index": 0, "delta": delta,
            "finish_reason": self._finish_reason(chunk.finish_reason or FinishReason.STOP, drift),
        }])
        usage = _usage_to_openai(chunk.usage)
        if usage:
            event["usage"] = usage
        notices = self._drift_payload(drift.notices)
        if notices:
            event["drift"] = notices
        return [event]

    def render_error(self, error: BridgeError) -> Tuple[int, Dict[str, Any]]:
        body: Dict[str, Any] = {
            "message": error.message,
            "type": error.code,
            "code": getattr(getattr(error, "kind", None), "value", None),
            "param": getattr(error, "field", None),
        }
        if isinstance(error, TranslationError) and self.expose_drift:
            body["drift"] = error.drift.to_dict()
        return status_for_error(error), {"error": body}

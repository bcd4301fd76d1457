#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Anthropic Adapter - Anthropic Messages wire format.

The Messages API keeps the system prompt outside the message list, carries
tool results inside user turns, requires `max_tokens` and limits
temperature to [0, 1]. Those differences are translated here in both
directions: the Anthropic frontend and the Anthropic backend codec.
"""

import json
import logging
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

ANTHROPIC_VERSION = "2023-06-01"
DEFAULT_MAX_TOKENS = 4096

FROM_ANTHROPIC_STOP = {
    "end_turn": FinishReason.STOP,
    "stop_sequence": FinishReason.STOP,
    "pause_turn": FinishReason.STOP,
    "max_tokens": FinishReason.LENGTH,
    "tool_use": FinishReason.TOOL_CALL,
    "refusal": FinishReason.CONTENT_FILTER,
}

TO_ANTHROPIC_STOP = {
    FinishReason.STOP: "end_turn",
    FinishReason.LENGTH: "max_tokens",
    FinishReason.TOOL_CALL: "tool_use",
}

ERROR_KINDS = {
    "authentication_error": ProviderErrorKind.AUTH,
    "permission_error": ProviderErrorKind.AUTH,
    "not_found_error": ProviderErrorKind.MODEL_NOT_FOUND,
    "rate_limit_error": ProviderErrorKind.RATE_LIMIT,
    "overloaded_error": ProviderErrorKind.SERVER_FAULT,
    "api_error": ProviderErrorKind.SERVER_FAULT,
    "timeout_error": ProviderErrorKind.TIMEOUT,
    "invalid_request_error": ProviderErrorKind.INVALID_REQUEST,
    "request_too_large": ProviderErrorKind.INVALID_REQUEST,
}

_KNOWN_KEYS = {
    "model", "messages", "system", "max_tokens", "temperature", "top_p", "top_k",
    "stop_sequences", "stream", "tools", "metadata",
}


# ---------------------------------------------------------------------------
# Wire -> IR
# ---------------------------------------------------------------------------

def _image_from_anthropic(block: Dict[str, Any], where: str) -> ImagePart:
    source = require(block, "source", dict, where)
    kind = require(source, "type", str, f"{where}source.")
    if kind == "url":
        return ImagePart(url=require(source, "url", str, f"{where}source."))
    if kind == "base64":
        return ImagePart(
            data=require(source, "data", str, f"{where}source."),
            media_type=require(source, "media_type", str, f"{where}source."),
        )
    raise ValidationError(f"Unsupported image source type '{kind}'", field=f"{where}source.type", value=kind)


def _tool_result_text(content: Any, where: str) -> str:
    if content is None or isinstance(content, str):
        return content or ""
    if not isinstance(content, list):
        raise ValidationError(f"Field '{where}content' must be a string or list", field=f"{where}content")
    return "".join(b.get("text", "") for b in content if isinstance(b, dict) and b.get("type") == "text")


def _system_from_anthropic(system: Any) -> Tuple[IRChatMessage, ...]:
    if system is None:
        return ()
    if isinstance(system, str):
        return (IRChatMessage(Role.SYSTEM, system),) if system else ()
    if isinstance(system, list):
        text = "".join(require(b, "text", str, f"system[{i}].") for i, b in enumerate(system))
        return (IRChatMessage(Role.SYSTEM, text),)
    raise ValidationError("Field 'system' must be a string or list of text blocks", field="system", value=system)


def _flush_turn(messages: List[IRChatMessage], role: Role, parts: List[Any], tool_calls: List[ToolCall]) -> None:
    """Append the pending blocks of a turn as one IR message and reset them."""
    if not parts and not tool_calls:
        return
    if role == Role.ASSISTANT and all(isinstance(p, TextPart) for p in parts):
        content: Any = "".join(p.text for p in parts)
    else:
        content = tuple(parts)
    messages.append(IRChatMessage(role, content, tuple(tool_calls)))
    parts.clear()
    tool_calls.clear()


def messages_from_anthropic(raw_messages: Any, drift: DriftLog) -> List[IRChatMessage]:
    if not isinstance(raw_messages, list) or not raw_messages:
        raise ValidationError("Field 'messages' must be a non-empty list", field="messages", value=raw_messages)
    messages: List[IRChatMessage] = []
    for i, raw in enumerate(raw_messages):
        where = f"messages[{i}]."
        role_name = require(raw, "role", str, where)
        if role_name not in ("user", "assistant"):
            raise ValidationError(f"Unknown role '{role_name}'", field=f"{where}role", value=role_name)
        role = Role(role_name)
        content = require(raw, "content", (str, list), where)
        if isinstance(content, str):
            messages.append(IRChatMessage(role, content))
            continue

        parts: List[Any] = []
        tool_calls: List[ToolCall] = []
        for j, block in enumerate(content):
            bwhere = f"{where}content[{j}]."
            kind = require(block, "type", str, bwhere)
            if kind == "text":
                parts.append(TextPart(require(block, "text", str, bwhere)))
            elif kind == "image":
                parts.append(_image_from_anthropic(block, bwhere))
            elif kind == "tool_use" and role == Role.ASSISTANT:
                tool_calls.append(ToolCall(
                    id=require(block, "id", str, bwhere),
                    name=require(block, "name", str, bwhere),
                    arguments=json.dumps(block.get("input") or {}),
                ))
            elif kind == "tool_result" and role == Role.USER:
                # text before a tool result stays ahead of it
                _flush_turn(messages, role, parts, tool_calls)
                if block.get("is_error"):
                    drift.add(dropped(
                        f"{bwhere}is_error", DriftStage.NORMALIZE,
                        "tool result error flag has no IR field", True,
                    ))
                messages.append(IRChatMessage(
                    Role.TOOL,
                    _tool_result_text(block.get("content"), bwhere),
                    tool_call_id=require(block, "tool_use_id", str, bwhere),
                ))
            else:
                raise ValidationError(f"Unsupported content block '{kind}' for role {role_name}",
                                      field=f"{bwhere}type", value=kind)
        _flush_turn(messages, role, parts, tool_calls)
    return messages


def tools_from_anthropic(raw_tools: Any) -> Tuple[ToolSpec, ...]:
    if raw_tools is None:
        return ()
    if not isinstance(raw_tools, list):
        raise ValidationError("Field 'tools' must be a list", field="tools", value=raw_tools)
    return tuple(
        ToolSpec(
            name=require(t, "name", str, f"tools[{i}]."),
            description=optional(t, "description", str, f"tools[{i}].") or "",
            parameters=optional(t, "input_schema", dict, f"tools[{i}].") or {},
        )
        for i, t in enumerate(raw_tools)
    )


# ---------------------------------------------------------------------------
# IR -> wire
# ---------------------------------------------------------------------------

def _tool_input(call: ToolCall, stage: DriftStage, backend: Optional[str] = None) -> Dict[str, Any]:
    try:
        value = call.parsed_arguments()
    except ValueError:
        value = None
    if not isinstance(value, dict):
        notice = dropped(
            "tool_calls.arguments", stage,
            f"arguments of tool call '{call.id}' are not a JSON object", call.arguments, backend,
        )
        raise TranslationError(f"Tool call '{call.id}' cannot be expressed as Anthropic tool_use",
                               drift=notice, backend=backend)
    return value


def _image_to_anthropic(part: ImagePart) -> Dict[str, Any]:
    if part.url and not part.data:
        return {"type": "image", "source": {"type": "url", "url": part.url}}
    return {"type": "image",
            "source": {"type": "base64", "media_type": part.media_type or "image/png", "data": part.data}}


def _blocks(message: IRChatMessage) -> List[Dict[str, Any]]:
    if not message.is_multipart:
        return [{"type": "text", "text": message.content}] if message.content else []
    return [
        {"type": "text", "text": p.text} if isinstance(p, TextPart) else _image_to_anthropic(p)
        for p in message.content
    ]


def messages_to_anthropic(messages, stage: DriftStage = DriftStage.EXECUTE,
                          backend: Optional[str] = None) -> Tuple[Optional[str], List[Dict[str, Any]]]:
    """Split IR messages into the Anthropic `system` string and message list."""
    system_texts = [m.text for m in messages if m.role == Role.SYSTEM]
    system = "\n\n".join(system_texts) if system_texts else None
    formatted: List[Dict[str, Any]] = []
    for msg in messages:
        if msg.role == Role.SYSTEM:
            continue
        if msg.role == Role.TOOL:
            block = {"type": "tool_result", "tool_use_id": msg.tool_call_id, "content": msg.text}
            previous = formatted[-1] if formatted else None
            # tool results join the open user turn, keeping block order
            if previous and previous.get("_open"):
                previous["content"].append(block)
                previous["_tool_results"] = True
            else:
                formatted.append({"role": "user", "content": [block], "_open": True, "_tool_results": True})
            continue
        if msg.tool_calls:
            blocks = _blocks(msg) + [
                {"type": "tool_use", "id": c.id, "name": c.name, "input": _tool_input(c, stage, backend)}
                for c in msg.tool_calls
            ]
            formatted.append({"role": msg.role.value, "content": blocks})
        elif msg.is_multipart:
            previous = formatted[-1] if formatted else None
            if msg.role == Role.USER and previous and previous.get("_tool_results"):
                previous["content"].extend(_blocks(msg))
            else:
                formatted.append({"role": msg.role.value, "content": _blocks(msg), "_open": msg.role == Role.USER})
        else:
            formatted.append({"role": msg.role.value, "content": msg.content})
    for item in formatted:
        item.pop("_open", None)
        item.pop("_tool_results", None)
    return system, formatted


def tools_to_anthropic(tools) -> List[Dict[str, Any]]:
    return [
        {"name": t.name, "description": t.description, "input_schema": dict(t.parameters) or {"type": "object"}}
        for t in tools
    ]


def _usage_from_anthropic(raw: Optional[Dict[str, Any]]) -> Optional[Usage]:
    if not raw:
        return None
    return usage_from(raw.get("input_tokens"), raw.get("output_tokens"))


# ---------------------------------------------------------------------------
# Backend codec
# ---------------------------------------------------------------------------

def build_anthropic_payload(request: IRChatRequest, model: str, drift: DriftLog,
                            backend: Optional[str] = None, stream: bool = False) -> Dict[str, Any]:
    params = request.params
    system, messages = messages_to_anthropic(request.messages, DriftStage.EXECUTE, backend)
    max_tokens = params.max_tokens
    if max_tokens is None:
        max_tokens = DEFAULT_MAX_TOKENS
        drift.add(approximated(
            "max_tokens", DriftStage.EXECUTE,
            "Anthropic requires max_tokens; default applied", None, DEFAULT_MAX_TOKENS, backend,
        ))
    payload: Dict[str, Any] = {"model": model, "messages": messages, "max_tokens": max_tokens}
    if system:
        payload["system"] = system
    optional_fields = {
        "temperature": clamp("temperature", params.temperature, 0.0, 1.0, drift, backend=backend),
        "top_p": params.top_p,
        "top_k": params.top_k,
        "stop_sequences": list(params.stop) if params.stop else None,
    }
    payload.update({k: v for k, v in optional_fields.items() if v is not None})
    if request.tools:
        payload["tools"] = tools_to_anthropic(request.tools)
    if request.session_key:
        payload["metadata"] = {"user_id": request.session_key}
    if stream:
        payload["stream"] = True
    return payload


def parse_anthropic_response(body: Dict[str, Any]) -> IRChatResponse:
    text = []
    tool_calls = []
    for block in body["content"]:
        if block.get("type") == "text":
            text.append(block["text"])
        elif block.get("type") == "tool_use":
            tool_calls.append(ToolCall(block["id"], block["name"], json.dumps(block.get("input") or {})))
    return IRChatResponse(
        message=IRChatMessage(Role.ASSISTANT, "".join(text), tuple(tool_calls)),
        finish_reason=FROM_ANTHROPIC_STOP.get(body.get("stop_reason"), FinishReason.STOP),
        usage=_usage_from_anthropic(body.get("usage")),
        model=body.get("model"),
    )


def _error_fields(body: Any) -> Tuple[str, Optional[str]]:
    if isinstance(body, dict) and isinstance(body.get("error"), dict):
        error = body["error"]
        return str(error.get("message") or error), error.get("type")
    return str(body), None


def classify_anthropic_error(error: TransportHTTPError) -> ProviderError:
    message, error_type = _error_fields(error.body)
    kind = ERROR_KINDS.get(error_type) or kind_for_status(error.status_code)
    return ProviderError(
        f"HTTP {error.status_code}: {message}",
        kind,
        status_code=error.status_code,
        provider_code=error_type,
        retry_after=retry_after_seconds(error),
        original_error=error,
    )


class AnthropicStreamParser:
    """Parses Anthropic SSE events. The terminal event is `message_stop`."""

    def __init__(self):
        self.model: Optional[str] = None
        self.input_tokens: Optional[int] = None
        self.output_tokens: Optional[int] = None
        self.finish_reason: Optional[FinishReason] = None
        self._tool_index: Dict[int, int] = {}

    def feed(self, line: str) -> List[StreamDelta]:
        line = line.strip()
        if not line.startswith("data:"):
            return []
        event = json.loads(line[5:].strip())
        kind = event.get("type")

        if kind == "message_start":
            message = event.get("message") or {}
            self.model = message.get("model")
            usage = message.get("usage") or {}
            self.input_tokens = usage.get("input_tokens")
            return []
        if kind == "content_block_start":
            block = event.get("content_block") or {}
            if block.get("type") == "tool_use":
                index = self._tool_index.setdefault(event.get("index", 0), len(self._tool_index))
                return [StreamDelta(ChunkKind.TOOL_CALL, tool_call=ToolCallDelta(index, block.get("id"), block.get("name")))]
            if block.get("type") == "text" and block.get("text"):
                return [StreamDelta(ChunkKind.CONTENT, text=block["text"])]
            return []
        if kind == "content_block_delta":
            delta = event.get("delta") or {}
            if delta.get("type") == "text_delta":
                return [StreamDelta(ChunkKind.CONTENT, text=delta.get("text", ""))] if delta.get("text") else []
            if delta.get("type") == "input_json_delta":
                index = self._tool_index.get(event.get("index", 0), 0)
                return [StreamDelta(ChunkKind.TOOL_CALL,
                                    tool_call=ToolCallDelta(index, arguments=delta.get("partial_json", "")))]
            return []
        if kind == "message_delta":
            delta = event.get("delta") or {}
            if delta.get("stop_reason"):
                self.finish_reason = FROM_ANTHROPIC_STOP.get(delta["stop_reason"], FinishReason.STOP)
            usage = event.get("usage") or {}
            if usage.get("output_tokens") is not None:
                self.output_tokens = usage["output_tokens"]
            return []
        if kind == "message_stop":
            return [StreamDelta(ChunkKind.DONE, finish_reason=self.finish_reason or FinishReason.STOP,
                                usage=usage_from(self.input_tokens, self.output_tokens), model=self.model)]
        if kind == "error":
            message, error_type = _error_fields(event)
            raise ProviderError(f"Stream error: {message}",
                                ERROR_KINDS.get(error_type, ProviderErrorKind.SERVER_FAULT),
                                provider_code=error_type)
        return []


def anthropic_headers(api_key: Optional[str]) -> Dict[str, str]:
    headers = {"anthropic-version": ANTHROPIC_VERSION}
    if api_key:
        headers["x-api-key"] = api_key
    return headers


register_codec(ProviderCodec(
    provider=ProviderType.ANTHROPIC,
    path="/messages",
    default_base_url="https://api.anthropic.com/v1",
    supported_params=frozenset({"temperature", "max_tokens", "top_p", "top_k", "stop"}),
    build_payload=build_anthropic_payload,
    parse_response=parse_anthropic_response,
    new_stream_parser=AnthropicStreamParser,
    classify_error=classify_anthropic_error,
    auth_headers=anthropic_headers,
))


# ---------------------------------------------------------------------------
# Frontend
# ---------------------------------------------------------------------------

class AnthropicFrontend(FrontendAdapter):
    """Accepts and answers in the Anthropic Messages format."""

    name = "anthropic"

    def normalize(self, raw: Dict[str, Any], drift: Optional[DriftLog] = None) -> IRChatRequest:
        if not isinstance(raw, dict):
            raise ValidationError("Request body must be a JSON object", field="body", value=raw)
        drift = drift if drift is not None else DriftLog()
        model = require(raw, "model", str)
        max_tokens = positive_int(raw, "max_tokens")
        if max_tokens is None:
            raise ValidationError("Missing required field: max_tokens", field="max_tokens")
        params = GenerationParams(
            temperature=number_in_range(raw, "temperature", 0.0, 1.0),
            max_tokens=max_tokens,
            top_p=number_in_range(raw, "top_p", 0.0, 1.0),
            top_k=positive_int(raw, "top_k"),
            stop=string_list(raw, "stop_sequences", allow_str=False),
            extra={k: v for k, v in raw.items() if k not in _KNOWN_KEYS},
        )
        metadata = dict(optional(raw, "metadata", dict) or {})
        session_key = metadata.pop("user_id", None)
        messages = list(_system_from_anthropic(raw.get("system")))
        messages.extend(messages_from_anthropic(raw.get("messages"), drift))
        return IRChatRequest(
            messages=tuple(messages),
            model=model,
            params=params,
            tools=tools_from_anthropic(raw.get("tools")),
            stream=bool(optional(raw, "stream", bool)),
            session_key=session_key,
            metadata=metadata,
        )

    def denormalize_request(self, request: IRChatRequest) -> Dict[str, Any]:
        system, messages = messages_to_anthropic(request.messages, DriftStage.DENORMALIZE)
        params = request.params
        raw: Dict[str, Any] = {
            "model": request.model,
            "messages": messages,
            "max_tokens": params.max_tokens or DEFAULT_MAX_TOKENS,
        }
        if system is not None:
            raw["system"] = system
        for name, value in params.present().items():
            if name == "max_tokens":
                continue
            if name == "stop":
                raw["stop_sequences"] = list(value)
            else:
                raw[name] = value
        if request.tools:
            raw["tools"] = tools_to_anthropic(request.tools)
        if request.stream:
            raw["stream"] = True
        metadata = dict(request.metadata)
        if request.session_key:
            metadata["user_id"] = request.session_key
        if metadata:
            raw["metadata"] = metadata
        return raw

    def _stop_reason(self, reason: FinishReason, drift: DriftLog) -> str:
        if reason in TO_ANTHROPIC_STOP:
            return TO_ANTHROPIC_STOP[reason]
        drift.add(approximated(
            "finish_reason", DriftStage.DENORMALIZE,
            f"finish reason '{reason.value}' has no Anthropic stop_reason",
            reason.value, "end_turn",
        ))
        return "end_turn"

    def _content_blocks(self, message: IRChatMessage, drift: DriftLog) -> List[Dict[str, Any]]:
        text = self._response_text(message, drift)
        blocks = [{"type": "text", "text": text}] if text else []
        blocks.extend(
            {"type": "tool_use", "id": c.id, "name": c.name, "input": _tool_input(c, DriftStage.DENORMALIZE)}
            for c in message.tool_calls
        )
        return blocks

    def denormalize(self, response: IRChatResponse, drift: Optional[DriftLog] = None) -> Dict[str, Any]:
        drift = drift if drift is not None else DriftLog()
        drift.extend(response.drift)
        usage = response.usage or Usage()
        body: Dict[str, Any] = {
            "id": f"msg_{response.request_id or ''}",
            "type": "message",
            "role": "assistant",
            "model": response.model,
            "content": self._content_blocks(response.message, drift),
            "stop_reason": self._stop_reason(response.finish_reason, drift),
            "stop_sequence": None,
            "usage": {"input_tokens": usage.prompt_tokens, "output_tokens": usage.completion_tokens},
        }
        notices = self._drift_payload(drift.notices)
        if notices:
            body["drift"] = notices
        return body

    def _close_block(self, state: Dict[str, Any], events: List[Dict[str, Any]]) -> None:
        if state.get("open") is not None:
            events.append({"type": "content_block_stop", "index": state["block"]})
            state["open"] = None

    def _open_block(self, state: Dict[str, Any], key, block: Dict[str, Any],
                    events: List[Dict[str, Any]]) -> None:
        self._close_block(state, events)
        state["block"] = state.get("block", -1) + 1
        state["open"] = key
        events.append({"type": "content_block_start", "index": state["block"], "content_block": block})

    def denormalize_chunk(self, chunk: IRChatChunk, state: Dict[str, Any],
                          drift: Optional[DriftLog] = None) -> List[Dict[str, Any]]:
        events: List[Dict[str, Any]] = []
        if not state.get("started"):
            state["started"] = True
            state["open"] = None
            events.append({"type": "message_start", "message": {
                "id": f"msg_{chunk.request_id or ''}", "type": "message", "role": "assistant",
                "model": chunk.model, "content": [], "stop_reason": None, "stop_sequence": None,
                "usage": {"input_tokens": 0, "output_tokens": 0},
            }})

        if chunk.kind == ChunkKind.CONTENT:
            if state.get("open") != "text":
                self._open_block(state, "text", {"type": "text", "text": ""}, events)
            events.append({"type": "content_block_delta", "index": state["block"],
                           "delta": {"type": "text_delta", "text": chunk.delta}})
            return events

        if chunk.kind == ChunkKind.TOOL_CALL:
            call = chunk.tool_call
            key = ("tool", call.index)
            if state.get("open") != key:
                self._open_block(state, key, {"type": "tool_use", "id": call.id or f"toolu_{call.index}",
                                              "name": call.name or "", "input": {}}, events)
            if call.arguments:
                events.append({"type": "content_block_delta", "index": state["block"],
                               "delta": {"type": "input_json_delta", "partial_json": call.arguments}})
            return events

        drift = drift if drift is not None else DriftLog()
        drift.extend(chunk.drift)
        self._close_block(state, events)
        usage = chunk.usage or Usage()
        message_delta: Dict[str, Any] = {
            "type": "message_delta",
            "delta": {"stop_reason": self._stop_reason(chunk.finish_reason or FinishReason.STOP, drift),
                      "stop_sequence": None},
            "usage": {"output_tokens": usage.completion_tokens},
        }
        notices = self._drift_payload(drift.notices)
        if notices:
            message_delta["drift"] = notices
        events.append(message_delta)
        events.append({"type": "message_stop"})
        return events

    def render_error(self, error: BridgeError) -> Tuple[int, Dict[str, Any]]:
        status = status_for_error(error)
        error_type = {
            400: "invalid_request_error",
            401: "authentication_error",
            404: "not_found_error",
            422: "invalid_request_error",
            429: "rate_limit_error",
            504: "timeout_error",
        }.get(status, "api_error")
        body: Dict[str, Any] = {"type": error_type, "message": error.message}
        if isinstance(error, TranslationError) and self.expose_drift:
            body["drift"] = error.drift.to_dict()
        return status, {"type": "error", "error": body}

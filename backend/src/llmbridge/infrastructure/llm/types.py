#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
IR Types - Provider-neutral data model for chat requests, responses and streams.

Every frontend adapter produces these objects and every backend adapter
consumes them. Nothing in this module knows about a specific provider.
"""

import json
import uuid
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Tuple, Union


class Role(str, Enum):
    """Conversation roles."""
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"
    TOOL = "tool"


class FinishReason(str, Enum):
    """Why generation stopped."""
    STOP = "stop"
    LENGTH = "length"
    TOOL_CALL = "tool_call"
    CONTENT_FILTER = "content_filter"
    ERROR = "error"


class ChunkKind(str, Enum):
    """Kind of streamed increment."""
    CONTENT = "content"
    TOOL_CALL = "tool_call"
    DONE = "done"


class DriftStage(str, Enum):
    NORMALIZE = "normalize"
    EXECUTE = "execute"
    DENORMALIZE = "denormalize"


class DriftFidelity(str, Enum):
    APPROXIMATE = "approximate"  # value changed (clamped, substituted)
    DROPPED = "dropped"          # value could not be carried at all


@dataclass(frozen=True)
class TextPart:
    text: str
    type: str = "text"


@dataclass(frozen=True)
class ImagePart:
    """Image reference, either by URL or inline base64 data."""
    url: Optional[str] = None
    data: Optional[str] = None
    media_type: Optional[str] = None
    type: str = "image"

    def as_data_url(self) -> Optional[str]:
        if self.url:
            return self.url
        if self.data:
            return f"data:{self.media_type or 'image/png'};base64,{self.data}"
        return None


ContentPart = Union[TextPart, ImagePart]
MessageContent = Union[str, Tuple[ContentPart, ...]]


@dataclass(frozen=True)
class ToolSpec:
    """A function the model may call."""
    name: str
    description: str = ""
    parameters: Mapping[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ToolCall:
    """A tool invocation emitted by the model. `arguments` is a JSON string."""
    id: str
    name: str
    arguments: str = "{}"

    def parsed_arguments(self) -> Dict[str, Any]:
        return json.loads(self.arguments or "{}")


@dataclass(frozen=True)
class IRChatMessage:
    """Represents a single message in a conversation."""
    role: Role
    content: MessageContent = ""
    tool_calls: Tuple[ToolCall, ...] = ()
    tool_call_id: Optional[str] = None
    name: Optional[str] = None

    @property
    def text(self) -> str:
        """Concatenated text of the message, ignoring non-text parts."""
        if isinstance(self.content, str):
            return self.content
        return "".join(p.text for p in self.content if isinstance(p, TextPart))

    @property
    def is_multipart(self) -> bool:
        return not isinstance(self.content, str)


@dataclass(frozen=True)
class GenerationParams:
    """
    Sparse sampling parameters.

    `None` means "not requested": the provider's own default applies. The IR
    never fills in values the caller did not send. Parameters that have no
    IR field are kept verbatim in `extra`.
    """
    temperature: Optional[float] = None
    max_tokens: Optional[int] = None
    top_p: Optional[float] = None
    top_k: Optional[int] = None
    stop: Optional[Tuple[str, ...]] = None
    frequency_penalty: Optional[float] = None
    presence_penalty: Optional[float] = None
    seed: Optional[int] = None
    extra: Mapping[str, Any] = field(default_factory=dict)

    FIELDS = (
        "temperature", "max_tokens", "top_p", "top_k", "stop",
        "frequency_penalty", "presence_penalty", "seed",
    )

    def present(self) -> Dict[str, Any]:
        """Requested parameters only, `extra` included."""
        values = {name: getattr(self, name) for name in self.FIELDS if getattr(self, name) is not None}
        values.update(self.extra)
        return values


def _new_request_id() -> str:
    return f"req_{uuid.uuid4().hex}"


@dataclass(frozen=True)
class IRChatRequest:
    """Request object for chat calls."""
    messages: Tuple[IRChatMessage, ...]
    model: Optional[str] = None
    params: GenerationParams = field(default_factory=GenerationParams)
    tools: Tuple[ToolSpec, ...] = ()
    stream: bool = False
    session_key: Optional[str] = None
    request_id: str = field(default_factory=_new_request_id)
    metadata: Mapping[str, Any] = field(default_factory=dict)

    def with_messages(self, messages: List[IRChatMessage]) -> "IRChatRequest":
        return replace(self, messages=tuple(messages))

    @property
    def system_messages(self) -> Tuple[IRChatMessage, ...]:
        return tuple(m for m in self.messages if m.role == Role.SYSTEM)


@dataclass(frozen=True)
class Usage:
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0

    @classmethod
    def of(cls, prompt_tokens: int, completion_tokens: int) -> "Usage":
        return cls(prompt_tokens, completion_tokens, prompt_tokens + completion_tokens)


@dataclass(frozen=True)
class DriftNotice:
    """A recorded loss or approximation introduced by translation."""
    field: str
    stage: DriftStage
    fidelity: DriftFidelity
    reason: str
    original: Any = None
    translated: Any = None
    backend: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "field": self.field,
            "stage": self.stage.value,
            "fidelity": self.fidelity.value,
            "reason": self.reason,
            "original": self.original,
            "translated": self.translated,
            "backend": self.backend,
        }


@dataclass(frozen=True)
class IRChatResponse:
    """Response object from chat calls."""
    message: IRChatMessage
    finish_reason: FinishReason
    usage: Optional[Usage] = None
    model: Optional[str] = None
    backend: Optional[str] = None
    request_id: Optional[str] = None
    drift: Tuple[DriftNotice, ...] = ()
    metadata: Mapping[str, Any] = field(default_factory=dict)

    @property
    def content(self) -> str:
        return self.message.text

    def with_drift(self, notices) -> "IRChatResponse":
        """Copy with `notices` appended after any drift already carried."""
        extra = tuple(n for n in notices if n not in self.drift)
        if not extra:
            return self
        return replace(self, drift=self.drift + extra)


@dataclass(frozen=True)
class ToolCallDelta:
    """Fragment of a streamed tool call; `index` identifies the call."""
    index: int
    id: Optional[str] = None
    name: Optional[str] = None
    arguments: str = ""


@dataclass(frozen=True)
class IRChatChunk:
    """One increment of a streamed response."""
    sequence: int
    kind: ChunkKind
    delta: str = ""
    tool_call: Optional[ToolCallDelta] = None
    finish_reason: Optional[FinishReason] = None
    usage: Optional[Usage] = None
    model: Optional[str] = None
    backend: Optional[str] = None
    request_id: Optional[str] = None
    drift: Tuple[DriftNotice, ...] = ()

    @property
    def is_terminal(self) -> bool:
        return self.kind == ChunkKind.DONE


def collect_stream_text(chunks) -> str:
    """Concatenate the content deltas of a chunk sequence."""
    return "".join(c.delta for c in chunks if c.kind == ChunkKind.CONTENT)

#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Bridge Exceptions - Shared error taxonomy.

Backend adapters classify raw provider failures into these types before
they leave the adapter; nothing provider-specific crosses into the bridge.
"""

from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from .types import DriftNotice


class BridgeError(Exception):
    """Base exception for bridge operations."""

    code = "bridge_error"
    retryable = False

    def __init__(self, message: str, backend: Optional[str] = None,
                 attempt: Optional[int] = None, details: Optional[Dict[str, Any]] = None,
                 original_error: Optional[BaseException] = None):
        super().__init__(message)
        self.message = message
        self.backend = backend
        self.attempt = attempt
        self.details = details or {}
        self.original_error = original_error

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "type": self.code,
            "message": self.message,
            "retryable": self.retryable,
        }
        if self.backend:
            data["backend"] = self.backend
        if self.attempt is not None:
            data["attempt"] = self.attempt
        if self.details:
            data["details"] = self.details
        return data


class ValidationError(BridgeError):
    """Malformed inbound request. Fatal to the call, never retried."""

    code = "validation_error"

    def __init__(self, message: str, field: str, value: Any = None, **kwargs):
        super().__init__(message, **kwargs)
        self.field = field
        self.value = value

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["field"] = self.field
        return data


class TranslationError(BridgeError):
    """IR could not be rendered in the target format. Always carries its drift notice."""

    code = "translation_error"

    def __init__(self, message: str, drift: DriftNotice, **kwargs):
        super().__init__(message, **kwargs)
        self.drift = drift

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["drift"] = self.drift.to_dict()
        return data


class ProviderErrorKind(str, Enum):
    RATE_LIMIT = "rate_limit"
    AUTH = "auth"
    TIMEOUT = "timeout"
    MODEL_NOT_FOUND = "model_not_found"
    SERVER_FAULT = "server_fault"
    INVALID_REQUEST = "invalid_request"


FATAL_PROVIDER_KINDS = frozenset({
    ProviderErrorKind.AUTH,
    ProviderErrorKind.MODEL_NOT_FOUND,
    ProviderErrorKind.INVALID_REQUEST,
})


class ProviderError(BridgeError):
    """Provider-side failure, classified by kind."""

    code = "provider_error"

    def __init__(self, message: str, kind: ProviderErrorKind,
                 status_code: Optional[int] = None, provider_code: Optional[str] = None,
                 retry_after: Optional[float] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.kind = kind
        self.status_code = status_code
        self.provider_code = provider_code
        self.retry_after = retry_after

    @property
    def retryable(self) -> bool:  # type: ignore[override]
        return self.kind not in FATAL_PROVIDER_KINDS

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["kind"] = self.kind.value
        if self.status_code is not None:
            data["status_code"] = self.status_code
        if self.provider_code:
            data["provider_code"] = self.provider_code
        if self.retry_after is not None:
            data["retry_after"] = self.retry_after
        return data


class StreamError(BridgeError):
    """
    Mid-stream failure.

    Chunks yielded before the failure stay delivered; `delivered` and
    `partial_content` tell the caller how far the stream got.
    """

    code = "stream_error"

    def __init__(self, message: str, delivered: int = 0, partial_content: str = "",
                 cause: Optional[BridgeError] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.delivered = delivered
        self.partial_content = partial_content
        self.cause = cause

    @property
    def retryable(self) -> bool:  # type: ignore[override]
        # Nothing delivered yet means a fresh attempt elsewhere is still clean.
        return self.delivered == 0 and (self.cause is None or self.cause.retryable)

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["delivered"] = self.delivered
        data["incomplete"] = True
        if self.cause is not None:
            data["cause"] = self.cause.to_dict()
        return data


class RouterExhaustedError(BridgeError):
    """Every candidate in the fallback chain failed."""

    code = "router_exhausted"

    def __init__(self, message: str, last_error: Optional[BridgeError] = None,
                 attempts: Optional[List[Tuple[str, BridgeError]]] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.last_error = last_error
        self.attempts = attempts or []

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["attempts"] = [
            {"backend": name, "error": err.to_dict()} for name, err in self.attempts
        ]
        if self.last_error is not None:
            data["last_error"] = self.last_error.to_dict()
        return data

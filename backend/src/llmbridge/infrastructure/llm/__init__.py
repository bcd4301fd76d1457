# -*- coding: utf-8 -*-

from .adapters import (
	AnthropicFrontend,
	BackendAdapter,
	BackendDescriptor,
	FrontendAdapter,
	OpenAIFrontend,
	ProviderType,
)
from .balancer import BalancerConfig, CircuitState, HealthTable
from .bridge import Bridge
from .drift import DriftLog
from .exceptions import (
	BridgeError,
	ProviderError,
	ProviderErrorKind,
	RouterExhaustedError,
	StreamError,
	TranslationError,
	ValidationError,
)
from .middleware import (
	CachingMiddleware,
	LoggingMiddleware,
	Middleware,
	MiddlewareChain,
	MiddlewareContext,
	RateLimitMiddleware,
	TelemetryMiddleware,
)
from .router import Router, RouterConfig
from .transport import EchoTransport, HttpxTransport, Transport

__all__ = [
	"AnthropicFrontend",
	"BackendAdapter",
	"BackendDescriptor",
	"FrontendAdapter",
	"OpenAIFrontend",
	"ProviderType",
	"BalancerConfig",
	"CircuitState",
	"HealthTable",
	"Bridge",
	"DriftLog",
	"BridgeError",
	"ProviderError",
	"ProviderErrorKind",
	"RouterExhaustedError",
	"StreamError",
	"TranslationError",
	"ValidationError",
	"CachingMiddleware",
	"LoggingMiddleware",
	"Middleware",
	"MiddlewareChain",
	"MiddlewareContext",
	"RateLimitMiddleware",
	"TelemetryMiddleware",
	"Router",
	"RouterConfig",
	"EchoTransport",
	"HttpxTransport",
	"Transport",
]

#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Gateway Service - Builds the router, backends and middleware from settings.

One router instance owns the backends and their health table; every
frontend format gets a sibling router sharing both.
"""

import logging
import os
from typing import Any, Dict, List, Optional, Tuple

from ..core.settings import AppSettings, BackendSettings, get_settings
from ..infrastructure.llm.adapters import FRONTENDS, BackendAdapter, BackendDescriptor, ProviderType
from ..infrastructure.llm.balancer import BalancerConfig, HealthTable
from ..infrastructure.llm.middleware import (
    CachingMiddleware, LoggingMiddleware, MiddlewareChain, RateLimitMiddleware,
    TelemetryMiddleware, TelemetrySink,
)
from ..infrastructure.llm.router import Router, RouterConfig
from ..infrastructure.llm.transport import EchoTransport, Transport

logger = logging.getLogger(__name__)

DEFAULT_ECHO_BACKEND = "echo"


class Gateway:
    """Shared routing state plus one router per frontend format."""

    def __init__(self, routers: Dict[str, Router], telemetry: Optional[TelemetrySink] = None):
        self.routers = routers
        self.telemetry = telemetry

    def router(self, frontend: str) -> Router:
        if frontend not in self.routers:
            raise ValueError(f"Unsupported frontend '{frontend}'. Available: {list(self.routers)}")
        return self.routers[frontend]

    @property
    def primary(self) -> Router:
        return next(iter(self.routers.values()))

    def health(self) -> Dict[str, Any]:
        snapshots = self.primary.health.snapshots()
        states = {name: s.state for name, s in snapshots.items()}
        status = "ok" if any(state != "open" for state in states.values()) else "degraded"
        return {"status": status, "backends": states}

    def stats(self) -> Dict[str, Any]:
        data = self.primary.stats()
        if self.telemetry is not None:
            data["telemetry"] = self.telemetry.summary()
        return data

    def reset_stats(self, backend: Optional[str] = None) -> None:
        self.primary.reset_stats(backend)
        if backend is None and self.telemetry is not None:
            self.telemetry.reset()

    async def aclose(self) -> None:
        await self.primary.aclose()


def _env_api_keys(provider: str) -> List[str]:
    # 兼容常见的环境变量命名，如 OPENAI_API_KEY
    key = os.getenv(f"{provider.upper()}_API_KEY")
    return [key] if key else []


def build_backend(name: str, cfg: BackendSettings, transport: Optional[Transport] = None) -> BackendAdapter:
    """
    Build one backend adapter from its settings.

    Args:
        name: Backend name, unique within the router
        cfg: Backend settings
        transport: Transport override (tests inject fakes here)

    Returns:
        Configured backend adapter
    """
    provider = ProviderType(cfg.provider)
    if transport is None and cfg.transport == "echo":
        if provider == ProviderType.ANTHROPIC:
            raise ValueError(f"Backend '{name}': the echo transport speaks the OpenAI wire format")
        transport = EchoTransport()
    descriptor = BackendDescriptor(
        name=name,
        provider=provider,
        model=cfg.model,
        model_map=dict(cfg.model_map),
        weight=cfg.weight,
        cost=cfg.cost_per_1k_tokens,
        supports_streaming=cfg.streaming,
        supports_tools=cfg.tools,
        supports_vision=cfg.vision,
        unsupported_params=frozenset(cfg.unsupported_params),
        timeout=cfg.timeout,
    )
    api_keys = list(cfg.api_keys) or _env_api_keys(cfg.provider)
    if not api_keys and cfg.transport == "http":
        logger.warning(f"No API key configured for backend {name} ({cfg.provider})")
    return BackendAdapter(descriptor, transport=transport, api_keys=api_keys, base_url=cfg.base_url)


def build_middleware(settings: AppSettings) -> Tuple[MiddlewareChain, Optional[TelemetrySink]]:
    mw = settings.middleware
    chain = MiddlewareChain()
    telemetry = None
    if mw.logging:
        chain.add(LoggingMiddleware(log_level=logging.getLevelName(mw.log_level.upper()),
                                    mask_sensitive=mw.mask_sensitive))
    if mw.telemetry:
        telemetry = TelemetrySink()
        chain.add(TelemetryMiddleware(telemetry))
    if mw.requests_per_minute > 0:
        chain.add(RateLimitMiddleware(mw.requests_per_minute))
    if mw.cache_enabled:
        chain.add(CachingMiddleware(ttl_sec=mw.cache_ttl, max_size=mw.cache_max_size))
    return chain, telemetry


def _backend_settings(settings: AppSettings) -> Dict[str, BackendSettings]:
    enabled = {name: b for name, b in (settings.backends or {}).items() if b.enabled}
    if not enabled:
        logger.warning("No backends configured; using the local echo backend")
        enabled = {DEFAULT_ECHO_BACKEND: BackendSettings(provider="openai", model="echo-1", transport="echo")}
    return enabled


def build_gateway(settings: Optional[AppSettings] = None,
                  transports: Optional[Dict[str, Transport]] = None) -> Gateway:
    """Build the gateway: backends, health table, middleware and one router per frontend."""
    s = settings or get_settings()
    transports = transports or {}
    b = s.balancer
    health = HealthTable(config=BalancerConfig(
        failure_threshold=b.failure_threshold,
        error_rate_threshold=b.error_rate_threshold,
        error_window=b.error_window,
        min_samples=b.min_samples,
        circuit_timeout=b.circuit_timeout,
        latency_alpha=b.latency_alpha,
    ))
    r = s.router
    config = RouterConfig(
        strategy=r.strategy_name,
        max_attempts=r.max_attempts,
        attempt_timeout=r.attempt_timeout,
        chain_timeout=r.chain_timeout,
        cancel_grace=r.cancel_grace,
        reorder_window=r.reorder_window,
    )
    chain, telemetry = build_middleware(s)

    frontends = [cls(expose_drift=s.expose_drift) for cls in FRONTENDS.values()]
    primary = Router(frontends[0], config=config, health=health, middleware=chain)
    for name, cfg in _backend_settings(s).items():
        primary.register_backend(build_backend(name, cfg, transports.get(name)))

    routers = {frontends[0].name: primary}
    for frontend in frontends[1:]:
        routers[frontend.name] = primary.with_frontend(frontend)
    logger.info(f"Gateway ready: strategy={config.strategy}, backends={primary.backends}")
    return Gateway(routers, telemetry)


_gateway: Optional[Gateway] = None


def get_gateway() -> Gateway:
    global _gateway
    if _gateway is None:
        _gateway = build_gateway()
    return _gateway


def set_gateway(gateway: Optional[Gateway]) -> None:
    global _gateway
    _gateway = gateway


async def close_gateway() -> None:
    global _gateway
    if _gateway is not None:
        await _gateway.aclose()
        _gateway = None

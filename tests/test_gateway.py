"""Gateway wiring from settings."""
import pytest

from llmbridge.core.settings import AppSettings, BackendSettings, MiddlewareSettings, RouterSettings
from llmbridge.infrastructure.llm.middleware import (
    CachingMiddleware, LoggingMiddleware, RateLimitMiddleware, TelemetryMiddleware,
)
from llmbridge.infrastructure.llm.transport import EchoTransport, HttpxTransport
from llmbridge.services.gateway_service import (
    build_backend, build_gateway, build_middleware, close_gateway, get_gateway, set_gateway,
)

from fakes import ScriptedTransport, ir_request, openai_reply


class TestBuildGateway:
    def test_defaults_to_echo_backend(self):
        gateway = build_gateway(AppSettings())
        assert gateway.primary.backends == ["echo"]
        backend = gateway.primary.get_bridge("echo").backend
        assert isinstance(backend.transport, EchoTransport)
        assert backend.descriptor.model == "echo-1"

    def test_routers_share_backends_and_health(self):
        gateway = build_gateway(AppSettings())
        openai, anthropic = gateway.router("openai"), gateway.router("anthropic")
        assert gateway.primary is openai
        assert anthropic.health is openai.health
        assert anthropic.middleware is openai.middleware
        assert anthropic.get_bridge("echo").backend is openai.get_bridge("echo").backend

    def test_unknown_frontend(self):
        with pytest.raises(ValueError):
            build_gateway(AppSettings()).router("gemini")

    def test_router_settings_applied(self):
        settings = AppSettings(
            router=RouterSettings(strategy_name="round_robin", max_attempts=4, chain_timeout=9.0),
            backends={"a": BackendSettings(transport="echo", model="m"),
                      "b": BackendSettings(transport="echo", model="m")},
        )
        config = build_gateway(settings).primary.config
        assert (config.strategy, config.max_attempts, config.chain_timeout) == ("round_robin", 4, 9.0)

    def test_disabled_backends_skipped(self):
        settings = AppSettings(backends={
            "on": BackendSettings(transport="echo", model="m"),
            "off": BackendSettings(transport="echo", model="m", enabled=False),
        })
        assert build_gateway(settings).primary.backends == ["on"]

    def test_transport_override(self):
        transport = ScriptedTransport([openai_reply()])
        settings = AppSettings(backends={"main": BackendSettings(model="m")})
        gateway = build_gateway(settings, transports={"main": transport})
        assert gateway.primary.get_bridge("main").backend.transport is transport

    @pytest.mark.asyncio
    async def test_execute_through_gateway(self):
        transport = ScriptedTransport([openai_reply("routed")])
        gateway = build_gateway(AppSettings(backends={"main": BackendSettings(model="m")}),
                                transports={"main": transport})
        response = await gateway.router("anthropic").execute(ir_request())
        assert response.content == "routed"
        assert response.backend == "main"
        await gateway.aclose()
        assert transport.closed


    @pytest.mark.asyncio
    async def test_reset_stats_clears_health_and_telemetry(self):
        gateway = build_gateway(AppSettings())
        await gateway.router("anthropic").execute(ir_request())
        await gateway.primary.chat({"messages": [{"role": "user", "content": "hi"}]})
        assert gateway.primary.health.snapshot("echo").total_requests == 2
        assert gateway.telemetry.summary()["requests"] == 1
        gateway.reset_stats()
        assert gateway.primary.health.snapshot("echo").total_requests == 0
        assert gateway.telemetry.summary()["requests"] == 0


class TestBuildBackend:
    def test_echo_requires_openai_wire_format(self):
        with pytest.raises(ValueError):
            build_backend("x", BackendSettings(provider="anthropic", transport="echo"))

    def test_http_transport_uses_provider_url(self):
        backend = build_backend("x", BackendSettings(provider="deepseek", model="deepseek-chat"))
        assert isinstance(backend.transport, HttpxTransport)
        assert backend.transport.base_url == "https://api.deepseek.com/v1"

    def test_descriptor_from_settings(self):
        backend = build_backend("x", BackendSettings(
            model="m", weight=2.5, cost_per_1k_tokens=0.3, tools=False, unsupported_params=["seed"],
        ))
        d = backend.descriptor
        assert (d.weight, d.cost, d.supports_tools) == (2.5, 0.3, False)
        assert "seed" in d.unsupported_params

    def test_api_key_from_environment(self, monkeypatch):
        monkeypatch.setenv("DEEPSEEK_API_KEY", "sk-env")
        backend = build_backend("x", BackendSettings(provider="deepseek", model="deepseek-chat"))
        assert backend._headers() == {"Authorization": "Bearer sk-env"}

    def test_configured_keys_win(self, monkeypatch):
        monkeypatch.setenv("OPENAI_API_KEY", "sk-env")
        backend = build_backend("x", BackendSettings(model="m", api_keys=["sk-1", "sk-2"]))
        assert backend._headers()["Authorization"] == "Bearer sk-1"
        assert backend._headers()["Authorization"] == "Bearer sk-2"


class TestBuildMiddleware:
    def test_all_enabled(self):
        chain, telemetry = build_middleware(AppSettings(middleware=MiddlewareSettings(
            cache_enabled=True, requests_per_minute=30,
        )))
        assert [type(m) for m in chain.middlewares] == [
            LoggingMiddleware, TelemetryMiddleware, RateLimitMiddleware, CachingMiddleware,
        ]
        assert telemetry is not None

    def test_all_disabled(self):
        chain, telemetry = build_middleware(AppSettings(middleware=MiddlewareSettings(
            logging=False, telemetry=False,
        )))
        assert len(chain) == 0
        assert telemetry is None


class TestGlobalGateway:
    @pytest.mark.asyncio
    async def test_set_get_close(self):
        gateway = build_gateway(AppSettings())
        set_gateway(gateway)
        assert get_gateway() is gateway
        await close_gateway()
        set_gateway(None)
        assert get_gateway() is not gateway

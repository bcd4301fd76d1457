from __future__ import annotations

import logging
import os
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, List, Literal, Optional

import yaml
from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)

ProviderName = Literal["openai", "deepseek", "siliconflow", "anthropic"]
StrategyName = Literal["fallback", "round_robin", "weighted", "cost", "latency", "sticky", "manual"]


class BackendSettings(BaseModel):
    provider: ProviderName = "openai"
    base_url: Optional[str] = None
    model: Optional[str] = None
    model_map: Dict[str, str] = Field(default_factory=dict)
    api_keys: List[str] = Field(default_factory=list)
    weight: float = 1.0
    cost_per_1k_tokens: float = 0.0
    timeout: Optional[float] = None
    streaming: bool = True
    tools: bool = True
    vision: bool = True
    unsupported_params: List[str] = Field(default_factory=list)
    # "echo" 为本地回显传输，无需 API Key
    transport: Literal["http", "echo"] = "http"
    enabled: bool = True


class RouterSettings(BaseModel):
    strategy_name: StrategyName = "fallback"
    max_attempts: int = 3
    attempt_timeout: Optional[float] = None
    chain_timeout: Optional[float] = None
    cancel_grace: float = 2.0
    reorder_window: int = 8


class BalancerSettings(BaseModel):
    failure_threshold: int = 5
    error_rate_threshold: float = 0.5
    error_window: int = 20
    min_samples: int = 10
    circuit_timeout: float = 60.0
    latency_alpha: float = 0.3


class MiddlewareSettings(BaseModel):
    logging: bool = True
    log_level: str = "INFO"
    mask_sensitive: bool = True
    telemetry: bool = True
    cache_enabled: bool = False
    cache_ttl: float = 300.0
    cache_max_size: int = 256
    # 0 表示不限流
    requests_per_minute: int = 0


class AppSettings(BaseSettings):
    # 基础
    app_name: str = "llmbridge"
    env: str = "dev"
    debug: bool = False
    log_level: str = "INFO"
    log_json: bool = False

    # YAML 配置文件（可选），ENV 优先
    config_file: Optional[str] = None

    # 响应中附带 drift 信息
    expose_drift: bool = True

    # 后端 / 路由 / 熔断 / 中间件
    backends: Dict[str, BackendSettings] = Field(default_factory=dict)
    router: RouterSettings = Field(default_factory=RouterSettings)
    balancer: BalancerSettings = Field(default_factory=BalancerSettings)
    middleware: MiddlewareSettings = Field(default_factory=MiddlewareSettings)

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="LLMBRIDGE_",
        env_nested_delimiter="__",
        extra="ignore",
    )


def _load_yaml_config(path: Optional[str]) -> Dict[str, Any]:
    """读取 YAML 配置文件；未配置或文件不存在时返回空。"""
    if not path:
        return {}
    file_path = Path(path)
    if not file_path.exists():
        logger.warning(f"Config file not found: {file_path}")
        return {}
    with file_path.open("r", encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ValueError(f"Config file {file_path} must contain a mapping at the top level")
    return data


def _deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    merged = dict(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def load_settings(config_file: Optional[str] = None) -> AppSettings:
    """YAML 文件 + ENV（ENV 优先），生成统一 Settings。"""
    # 1) 读取 ENV（LLMBRIDGE_* 前缀）
    env_settings = AppSettings()

    # 2) YAML 文件
    path = config_file or env_settings.config_file or os.getenv("LLMBRIDGE_CONFIG_FILE")
    file_cfg = _load_yaml_config(path)

    # 3) 合并（ENV 优先）：只用 ENV 中显式设置的值覆盖文件配置
    merged = _deep_merge(file_cfg, env_settings.model_dump(exclude_unset=True))
    merged["config_file"] = path
    return AppSettings.model_validate(merged)


@lru_cache(maxsize=1)
def get_settings() -> AppSettings:
    return load_settings()


def settings_diagnostics(settings: Optional[AppSettings] = None) -> Dict[str, Any]:
    """生成运行配置简要诊断信息（不含密钥）。"""
    s = settings or get_settings()
    backends = {name: {
        "provider": b.provider,
        "model": b.model,
        "api_keys_count": len(b.api_keys or []),
        "base_url": b.base_url,
        "transport": b.transport,
        "enabled": b.enabled,
    } for name, b in (s.backends or {}).items()}
    return {
        "env": s.env,
        "config_file": s.config_file,
        "strategy": s.router.strategy_name,
        "max_attempts": s.router.max_attempts,
        "backends": backends,
        "middleware": s.middleware.model_dump(),
    }

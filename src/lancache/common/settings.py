"""Application configuration models for the lancache service."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Optional

from pydantic import Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


DEFAULT_USER_AGENT = "lancache/0.0.1 (+https://trnet.cc/lancache)"


def env_field(default, env_name: str):
    return Field(default, validation_alias=env_name)


def bypass_cache() -> bool:
    """Runtime kill switch, read on every request so it can be flipped without a restart."""

    return os.environ.get("BYPASS_CACHE", "").strip().lower() == "true"


class LancacheSettings(BaseSettings):
    """Runtime settings for the caching proxy and its metrics listener."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", populate_by_name=True)

    config_path: Path = env_field(Path("lancache.toml"), "LANCACHE_CONFIG_PATH")
    storage_path: Path = env_field(Path("cache"), "LANCACHE_CACHE_DIR")
    bind_host: str = env_field("0.0.0.0", "LANCACHE_BIND_HOST")
    port: int = env_field(80, "LANCACHE_PORT")
    metrics_host: str = env_field("0.0.0.0", "LANCACHE_METRICS_HOST")
    metrics_port: int = env_field(9090, "LANCACHE_METRICS_PORT")
    metrics_token: Optional[SecretStr] = env_field(None, "LANCACHE_METRICS_TOKEN")
    shutdown_timeout_seconds: float = env_field(5.0, "LANCACHE_SHUTDOWN_TIMEOUT")
    upstream_timeout_seconds: float = env_field(60.0, "LANCACHE_UPSTREAM_TIMEOUT")
    upstream_connect_timeout_seconds: float = env_field(10.0, "LANCACHE_UPSTREAM_CONNECT_TIMEOUT")
    user_agent: str = env_field(DEFAULT_USER_AGENT, "LANCACHE_USER_AGENT")
    app_env: str = env_field("development", "APP_ENV")
    log_level: str = env_field("INFO", "LANCACHE_LOG_LEVEL")
    otel_exporter_endpoint: Optional[str] = env_field(None, "LANCACHE_OTEL_EXPORTER_ENDPOINT")
    otel_exporter_headers: Optional[str] = env_field(None, "LANCACHE_OTEL_EXPORTER_HEADERS")
    otel_sampler_ratio: float = env_field(0.1, "LANCACHE_OTEL_SAMPLER_RATIO")

    @field_validator("shutdown_timeout_seconds", "upstream_timeout_seconds", "upstream_connect_timeout_seconds")
    @classmethod
    def _non_negative(cls, value: float) -> float:
        if value < 0:
            raise ValueError("timeouts must be non-negative")
        return value

    @field_validator("port", "metrics_port")
    @classmethod
    def _valid_port(cls, value: int) -> int:
        if not 0 <= value <= 65535:
            raise ValueError("port must be between 0 and 65535")
        return value

    @property
    def production(self) -> bool:
        return self.app_env.strip().lower() == "production"

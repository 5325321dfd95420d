from __future__ import annotations

import os
from typing import Dict, Literal, Optional

import yaml
from pydantic import BaseModel, Field

from .constants import (
    DEFAULT_COMPLETION_MODEL,
    DEFAULT_MAX_TOKENS,
    DEFAULT_TEMPERATURE,
)


class RedisConfig(BaseModel):
    """Configuration for Redis transport."""

    host: str = "localhost"
    port: int = 6379
    db: int = 0
    password: Optional[str] = None


class TransportConfig(BaseModel):
    """Event transport configuration settings."""

    backend: Literal["inmemory", "redis"] = "inmemory"
    redis: RedisConfig = RedisConfig()


class CompletionConfig(BaseModel):
    """Defaults applied to completion calls made by dynamic agents."""

    model: str = DEFAULT_COMPLETION_MODEL
    temperature: float = DEFAULT_TEMPERATURE
    max_tokens: int = DEFAULT_MAX_TOKENS
    reasoning_effort: Optional[str] = None


class RetryConfig(BaseModel):
    """Backoff between per-node retry attempts."""

    base_delay_ms: float = 500.0
    multiplier: float = 2.0
    max_delay_ms: float = 10_000.0
    jitter_ms: float = 0.0


class FlowguardConfig(BaseModel):
    """Top-level configuration model."""

    transport: TransportConfig = TransportConfig()
    completion: CompletionConfig = CompletionConfig()
    retry: RetryConfig = RetryConfig()
    database_url: Optional[str] = None
    agents: Dict[str, str] = Field(
        default_factory=dict,
        description="Static agent types as 'type' -> 'package.module:ClassName'",
    )


def load_config(path: Optional[str] = None) -> FlowguardConfig:
    """Load configuration from YAML file.

    Args:
        path: Optional path to config file. Falls back to FLOWGUARD_CONFIG env
            variable or 'config.yaml' in the current directory.
    """

    config_path = path or os.getenv("FLOWGUARD_CONFIG", "config.yaml")
    if os.path.exists(config_path):
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
        config = FlowguardConfig(**data)
    else:
        config = FlowguardConfig()

    env_db_url = os.getenv("FLOWGUARD_DATABASE_URL") or os.getenv("DATABASE_URL")
    if env_db_url:
        config.database_url = env_db_url
    env_transport = os.getenv("FLOWGUARD_TRANSPORT")
    if env_transport:
        config.transport = TransportConfig(
            backend=env_transport, redis=config.transport.redis
        )
    return config

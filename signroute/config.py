from __future__ import annotations

import os
from typing import Dict, List, Literal, Optional

import yaml
from pydantic import BaseModel, Field

from .constants import DEFAULT_CONFIG_PATH


class RedisConfig(BaseModel):
    """Configuration for Redis transport."""

    host: str = "localhost"
    port: int = 6379
    db: int = 0
    password: Optional[str] = None


class TransportConfig(BaseModel):
    """Transport used for workflow event notifications."""

    backend: Literal["inmemory", "redis"] = "inmemory"
    redis: RedisConfig = RedisConfig()


class ValidationConfig(BaseModel):
    """Graph validation settings.

    ``strict`` requires exactly one start step; ``relaxed`` accepts any
    number of start steps as long as there is at least one start and one end.
    """

    strictness: Literal["strict", "relaxed"] = "strict"


class EngineConfig(BaseModel):
    """Approval engine policy settings."""

    rejection_policy: Literal["terminal", "follow_rejected_edges"] = "terminal"
    enforce_roles: bool = False


class SignrouteConfig(BaseModel):
    """Top-level configuration model."""

    transport: TransportConfig = TransportConfig()
    validation: ValidationConfig = ValidationConfig()
    engine: EngineConfig = EngineConfig()
    database_url: Optional[str] = None
    roles: Dict[str, List[str]] = Field(default_factory=dict)


def load_config(path: Optional[str] = None) -> SignrouteConfig:
    """Load configuration from YAML file.

    Args:
        path: Optional path to config file. Falls back to SIGNROUTE_CONFIG env
            variable or 'config.yaml' in the current directory.
    """

    config_path = path or os.getenv("SIGNROUTE_CONFIG", DEFAULT_CONFIG_PATH)
    if os.path.exists(config_path):
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
        config = SignrouteConfig(**data)
    else:
        config = SignrouteConfig()

    env_db_url = os.getenv("SIGNROUTE_DATABASE_URL") or os.getenv("DATABASE_URL")
    if env_db_url:
        config.database_url = env_db_url
    return config

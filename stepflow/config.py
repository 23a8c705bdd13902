from __future__ import annotations

import os
from typing import Literal, Optional

import yaml
from pydantic import BaseModel, Field

from .constants import DEFAULT_CONFIG_FILE, DEFAULT_WATCH_BACKLOG_WARNING


class EngineConfig(BaseModel):
    """Scheduler behaviour settings."""

    join_accepts_skipped: bool = False
    max_concurrency: Optional[int] = None
    watch_backlog_warning: int = DEFAULT_WATCH_BACKLOG_WARNING


class RepositoryConfig(BaseModel):
    """Run repository settings."""

    backend: Literal["inmemory"] = "inmemory"


class StepflowConfig(BaseModel):
    """Top-level configuration model."""

    engine: EngineConfig = Field(default_factory=EngineConfig)
    repository: RepositoryConfig = Field(default_factory=RepositoryConfig)


def _env_flag(value: str) -> bool:
    return value.strip().lower() in {"1", "true", "yes", "on"}


def load_config(path: Optional[str] = None) -> StepflowConfig:
    """Load configuration from YAML file.

    Args:
        path: Optional path to config file. Falls back to STEPFLOW_CONFIG env
            variable or 'stepflow.yaml' in the current directory.
    """

    config_path = path or os.getenv("STEPFLOW_CONFIG", DEFAULT_CONFIG_FILE)
    if os.path.exists(config_path):
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
        config = StepflowConfig(**data)
    else:
        config = StepflowConfig()

    env_concurrency = os.getenv("STEPFLOW_MAX_CONCURRENCY")
    if env_concurrency:
        config.engine.max_concurrency = int(env_concurrency)
    env_join = os.getenv("STEPFLOW_JOIN_ACCEPTS_SKIPPED")
    if env_join:
        config.engine.join_accepts_skipped = _env_flag(env_join)
    return config

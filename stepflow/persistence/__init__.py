"""Persistence layer for stepflow runs."""

from __future__ import annotations

from typing import Optional

from ..config import StepflowConfig, load_config
from .inmemory import InMemoryRunRepository
from .models import RunRecord, StepRecord
from .repository import RunRepository

_repository_instance: RunRepository | None = None


def get_repository(config: Optional[StepflowConfig] = None) -> RunRepository:
    """Factory function to obtain a run repository.

    The backend is selected from ``config.repository.backend``; when no
    configuration is passed the loaded configuration is used and the
    instance is shared across calls.
    """

    global _repository_instance
    if _repository_instance is not None and config is None:
        return _repository_instance

    config = config or load_config()
    backend = config.repository.backend
    if backend == "inmemory":
        _repository_instance = InMemoryRunRepository()
    else:
        raise ValueError(f"Unsupported repository backend: {backend}")
    return _repository_instance


__all__ = [
    "InMemoryRunRepository",
    "RunRecord",
    "RunRepository",
    "StepRecord",
    "get_repository",
]

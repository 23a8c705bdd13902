"""Data models for persisted run state."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, Field


class StepRecord(BaseModel):
    """Record of an individual step attempt."""

    id: Optional[int] = None
    run_id: str
    step_id: str
    attempt: int = 1
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    status: Optional[str] = None
    output: Any = None


class RunRecord(BaseModel):
    """Persisted run of a workflow."""

    run_id: str
    workflow_id: str
    trigger_data: dict[str, Any] = Field(default_factory=dict)
    status: str = "running"
    created_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    steps: list[StepRecord] = Field(default_factory=list)

    def latest(self, step_id: str) -> Optional[StepRecord]:
        """Most recent attempt of ``step_id``."""
        attempts = [s for s in self.steps if s.step_id == step_id]
        return attempts[-1] if attempts else None

"""Repository abstraction for run state persistence."""

from __future__ import annotations

from typing import Any, Protocol

from .models import RunRecord


class RunRepository(Protocol):
    """Protocol for run state persistence backends."""

    async def create_run(
        self, run_id: str, workflow_id: str, trigger_data: dict | None = None
    ) -> None:
        """Persist initial run state."""

    async def mark_step_started(self, run_id: str, step_id: str) -> None:
        """Record that a step entered ``running``."""

    async def mark_step_completed(
        self,
        run_id: str,
        step_id: str,
        status: str,
        output: Any = None,
    ) -> None:
        """Record that a step left ``running`` (completed, failed, skipped or suspended)."""

    async def mark_run_completed(self, run_id: str, status: str = "completed") -> None:
        """Mark the run as finished."""

    async def get_run(self, run_id: str) -> RunRecord | None:
        """Retrieve the run by id."""

    async def list_runs(self, workflow_id: str | None = None) -> list[RunRecord]:
        """Return persisted runs, optionally for one workflow."""

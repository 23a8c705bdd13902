"""In-memory implementation of the run repository."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict

from ..contracts import detached
from .models import RunRecord, StepRecord
from .repository import RunRepository


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class InMemoryRunRepository(RunRepository):
    """Store run state in local memory.

    Used by default and in tests. Data is not persisted across process
    restarts.
    """

    def __init__(self) -> None:
        self._runs: Dict[str, RunRecord] = {}
        self._record_id = 0

    # ------------------------------------------------------------------
    async def create_run(
        self, run_id: str, workflow_id: str, trigger_data: dict | None = None
    ) -> None:
        self._runs[run_id] = RunRecord(
            run_id=run_id,
            workflow_id=workflow_id,
            trigger_data=detached(dict(trigger_data or {})),
            created_at=_utcnow(),
        )

    async def mark_step_started(self, run_id: str, step_id: str) -> None:
        run = self._runs.get(run_id)
        if not run:
            return
        previous = run.latest(step_id)
        # a loop iteration keeps the open attempt
        if previous is not None and previous.completed_at is None:
            return
        self._record_id += 1
        run.steps.append(
            StepRecord(
                id=self._record_id,
                run_id=run_id,
                step_id=step_id,
                attempt=previous.attempt + 1 if previous else 1,
                started_at=_utcnow(),
                status="running",
            )
        )

    async def mark_step_completed(
        self,
        run_id: str,
        step_id: str,
        status: str,
        output: Any = None,
    ) -> None:
        run = self._runs.get(run_id)
        if not run:
            return
        record = run.latest(step_id)
        if record is None or record.completed_at is not None:
            # skipped, or failed before it ever started
            self._record_id += 1
            record = StepRecord(
                id=self._record_id,
                run_id=run_id,
                step_id=step_id,
                attempt=record.attempt + 1 if record else 1,
            )
            run.steps.append(record)
        record.completed_at = _utcnow()
        record.status = status
        record.output = detached(output)

    async def mark_run_completed(self, run_id: str, status: str = "completed") -> None:
        run = self._runs.get(run_id)
        if run:
            run.status = status
            run.completed_at = _utcnow()

    async def get_run(self, run_id: str) -> RunRecord | None:
        return self._runs.get(run_id)

    async def list_runs(self, workflow_id: str | None = None) -> list[RunRecord]:
        return [
            run
            for run in self._runs.values()
            if workflow_id is None or run.workflow_id == workflow_id
        ]

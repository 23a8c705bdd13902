"""Per-run state: the mutable store owned by the scheduler and its read-only views."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional, Set

from .contracts import ActivePath, StepResult, StepStatus, TransitionRecord, detached
from .definition import WorkflowDefinition
from .errors import InvalidTransitionError, StepflowError

logger = logging.getLogger(__name__)


ALLOWED_TRANSITIONS: Dict[StepStatus, Set[StepStatus]] = {
    StepStatus.PENDING: {StepStatus.RUNNING, StepStatus.SKIPPED, StepStatus.FAILED},
    StepStatus.RUNNING: {
        StepStatus.RUNNING,
        StepStatus.COMPLETED,
        StepStatus.FAILED,
        StepStatus.SUSPENDED,
    },
    StepStatus.SUSPENDED: {StepStatus.RUNNING, StepStatus.FAILED},
    StepStatus.COMPLETED: set(),
    StepStatus.FAILED: set(),
    StepStatus.SKIPPED: set(),
}


def _now() -> datetime:
    return datetime.now(timezone.utc)


class ContextSnapshot:
    """Read-only copy of a run's step results.

    Passed to condition predicates and step executors; never shared with
    the scheduler's live state.
    """

    def __init__(
        self,
        run_id: str,
        workflow_id: str,
        trigger_data: Mapping[str, Any],
        steps: Mapping[str, StepResult],
    ) -> None:
        self.run_id = run_id
        self.workflow_id = workflow_id
        self.trigger_data = detached(dict(trigger_data))
        self._steps = dict(steps)

    @property
    def steps(self) -> Dict[str, StepResult]:
        return dict(self._steps)

    def has_step(self, step_id: str) -> bool:
        return step_id in self._steps

    def status_of(self, step_id: str) -> Optional[StepStatus]:
        result = self._steps.get(step_id)
        return result.status if result else None

    def get_step_result(self, step_id: str) -> Any:
        """Output of ``step_id`` or ``None`` when it has produced nothing."""
        result = self._steps.get(step_id)
        return result.output if result else None

    def to_wire(self) -> Dict[str, Any]:
        return {
            "steps": {step_id: result.to_wire() for step_id, result in self._steps.items()},
            "triggerData": self.trigger_data,
        }


class StepContext:
    """Handed to a step executor for one attempt."""

    def __init__(
        self,
        run_id: str,
        step_id: str,
        input: Dict[str, Any],
        snapshot: ContextSnapshot,
        abort_signal: asyncio.Event,
        iteration: int = 1,
        resume_data: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.run_id = run_id
        self.step_id = step_id
        self.input = input
        self.context = snapshot
        self.abort_signal = abort_signal
        self.iteration = iteration
        self.resume_data = resume_data
        self._suspended = False
        self._suspend_payload: Any = None

    @property
    def trigger_data(self) -> Dict[str, Any]:
        return self.context.trigger_data

    def get_step_result(self, step_id: str) -> Any:
        return self.context.get_step_result(step_id)

    def suspend(self, payload: Any = None) -> None:
        """Ask the engine to park this step once the executor returns."""
        self._suspended = True
        self._suspend_payload = payload

    @property
    def suspended(self) -> bool:
        return self._suspended

    @property
    def suspend_payload(self) -> Any:
        return self._suspend_payload


class RunContext:
    """Step results, active paths and inputs of a single run.

    Only the run's scheduler mutates this object. Everything else reads
    :meth:`snapshot` or :meth:`to_record`.
    """

    def __init__(
        self,
        run_id: str,
        definition: WorkflowDefinition,
        trigger_data: Optional[Mapping[str, Any]] = None,
    ) -> None:
        self.run_id = run_id
        self.definition = definition
        self.trigger_data: Dict[str, Any] = detached(dict(trigger_data or {}))
        self.results: Dict[str, StepResult] = {
            step_id: StepResult() for step_id in definition.steps
        }
        self.active_paths: Dict[str, ActivePath] = {}
        self._step_paths: Dict[str, List[str]] = {}
        self._resume_data: Dict[str, Dict[str, Any]] = {}

    # ------------------------------------------------------------------
    # Queries
    def status_of(self, step_id: str) -> StepStatus:
        return self.results[step_id].status

    def steps_with(self, *statuses: StepStatus) -> List[str]:
        return [step_id for step_id, r in self.results.items() if r.status in statuses]

    @property
    def suspended_steps(self) -> Dict[str, Any]:
        return {
            step_id: r.suspend_payload
            for step_id, r in self.results.items()
            if r.status == StepStatus.SUSPENDED
        }

    def is_terminal(self) -> bool:
        return all(r.status.is_terminal for r in self.results.values())

    def input_for(self, step_id: str) -> Dict[str, Any]:
        """Trigger data merged with any resume data for ``step_id``."""
        data = dict(self.trigger_data)
        data.update(self._resume_data.get(step_id, {}))
        return detached(data)

    def resume_data_for(self, step_id: str) -> Optional[Dict[str, Any]]:
        data = self._resume_data.get(step_id)
        return detached(data) if data is not None else None

    # ------------------------------------------------------------------
    # Mutations
    def _transition(self, step_id: str, status: StepStatus) -> StepResult:
        result = self.results[step_id]
        if status not in ALLOWED_TRANSITIONS[result.status]:
            raise InvalidTransitionError(
                f"Step '{step_id}' cannot move from {result.status.value} to {status.value}",
                step_id=step_id,
                run_id=self.run_id,
            )
        logger.debug(f"Run {self.run_id}: {step_id} {result.status.value} -> {status.value}")
        result.status = status
        if step_id in self.active_paths:
            self.active_paths[step_id] = self.active_paths[step_id].model_copy(
                update={"status": status}
            )
        return result

    def open_path(self, step_id: str, trigger: Optional[str] = None) -> None:
        """Give ``step_id`` an active path and retire its predecessors' paths."""
        if step_id in self._step_paths:
            return
        base = list(self._step_paths.get(trigger, [])) if trigger else []
        path = base + [step_id]
        self._step_paths[step_id] = path
        for predecessor in self.definition.predecessors(step_id):
            self.active_paths.pop(predecessor, None)
        self.active_paths[step_id] = ActivePath(
            step_id=step_id, step_path=path, status=self.status_of(step_id)
        )

    def start(self, step_id: str) -> StepResult:
        result = self._transition(step_id, StepStatus.RUNNING)
        if result.started_at is None:
            result.started_at = _now()
        return result

    def record_iteration(self, step_id: str, output: Any) -> StepResult:
        """Store the output of a loop iteration without leaving ``running``."""
        result = self.results[step_id]
        if result.status != StepStatus.RUNNING:
            raise InvalidTransitionError(
                f"Step '{step_id}' is {result.status.value}, not running",
                step_id=step_id,
                run_id=self.run_id,
            )
        result.output = output
        return result

    def complete(self, step_id: str, output: Any) -> StepResult:
        result = self._transition(step_id, StepStatus.COMPLETED)
        result.output = output
        result.completed_at = _now()
        return result

    def suspend(self, step_id: str, payload: Any) -> StepResult:
        result = self._transition(step_id, StepStatus.SUSPENDED)
        result.suspend_payload = payload
        return result

    def fail(self, step_id: str, error: StepflowError) -> StepResult:
        result = self._transition(step_id, StepStatus.FAILED)
        result.error = error.message
        result.error_kind = error.kind
        result.completed_at = _now()
        return result

    def skip(self, step_id: str) -> StepResult:
        result = self._transition(step_id, StepStatus.SKIPPED)
        result.completed_at = _now()
        return result

    def merge_resume_data(self, step_id: str, data: Optional[Mapping[str, Any]]) -> None:
        merged = self._resume_data.setdefault(step_id, {})
        merged.update(detached(dict(data or {})))

    # ------------------------------------------------------------------
    # Views
    def snapshot(self) -> ContextSnapshot:
        return ContextSnapshot(
            run_id=self.run_id,
            workflow_id=self.definition.id,
            trigger_data=self.trigger_data,
            steps={
                step_id: result.model_copy(
                    update={
                        "output": detached(result.output),
                        "suspend_payload": detached(result.suspend_payload),
                    }
                )
                for step_id, result in self.results.items()
            },
        )

    def to_record(self) -> TransitionRecord:
        snapshot = self.snapshot()
        return TransitionRecord(
            run_id=self.run_id,
            active_paths=list(self.active_paths.values()),
            context=snapshot.to_wire(),
            suspended_steps=self.suspended_steps,
        )

"""Core data contracts shared by the scheduler, the emitter and callers."""

from __future__ import annotations

import copy
import time
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


def detached(value: Any) -> Any:
    """Copy of ``value`` that shares no mutable containers with it.

    Mappings, lists and tuples are rebuilt item by item. Any other object is
    deep-copied, or passed through by reference when it cannot be copied
    (locks, clients, generators).
    """
    if type(value) is dict:
        return {key: detached(item) for key, item in value.items()}
    if type(value) is list:
        return [detached(item) for item in value]
    if type(value) is tuple:
        return tuple(detached(item) for item in value)
    try:
        return copy.deepcopy(value)
    except Exception:
        return value


class StepStatus(str, Enum):
    """Status of a single step within a run."""

    PENDING = "pending"
    RUNNING = "running"
    SUSPENDED = "suspended"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset(
    {StepStatus.COMPLETED, StepStatus.FAILED, StepStatus.SKIPPED}
)


class RunStatus(str, Enum):
    """Status of a run as reported to callers."""

    RUNNING = "running"
    SUSPENDED = "suspended"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class _WireModel(BaseModel):
    """Frozen model serialised with camelCase aliases."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    def to_json(self) -> str:
        """Serialize to the JSON wire shape."""
        return self.model_dump_json(by_alias=True)

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


class StepResult(BaseModel):
    """Mutable per-step record held by the run context."""

    status: StepStatus = StepStatus.PENDING
    output: Any = None
    suspend_payload: Any = None
    error: Optional[str] = None
    error_kind: Optional[str] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    iterations: int = 0

    def to_wire(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"status": self.status.value, "output": self.output}
        if self.suspend_payload is not None:
            data["suspendPayload"] = self.suspend_payload
        if self.error is not None:
            data["error"] = {"kind": self.error_kind, "message": self.error}
        return data


class ActivePath(_WireModel):
    """Live trace of a step and the ancestors that led to it."""

    step_id: str = Field(alias="stepId")
    step_path: List[str] = Field(default_factory=list, alias="stepPath")
    status: StepStatus


class TransitionRecord(_WireModel):
    """Immutable snapshot emitted after every committed mutation."""

    run_id: str = Field(alias="runId")
    active_paths: List[ActivePath] = Field(default_factory=list, alias="activePaths")
    context: Dict[str, Any] = Field(default_factory=dict)
    timestamp: int = Field(default_factory=lambda: int(time.time() * 1000))
    suspended_steps: Dict[str, Any] = Field(
        default_factory=dict, alias="suspendedSteps"
    )

    @classmethod
    def from_json(cls, data: str) -> "TransitionRecord":
        return cls.model_validate_json(data)

    def step_status(self, step_id: str) -> Optional[StepStatus]:
        """Status of ``step_id`` in this snapshot, if recorded."""
        step = self.context.get("steps", {}).get(step_id)
        return StepStatus(step["status"]) if step else None


class RunError(_WireModel):
    """First unrecovered error of a run."""

    kind: str
    message: str
    step_id: Optional[str] = Field(default=None, alias="stepId")


class RunResult(_WireModel):
    """Outcome of ``execute`` and ``resume``."""

    run_id: str = Field(alias="runId")
    workflow_id: str = Field(alias="workflowId")
    status: RunStatus
    results: Dict[str, Any] = Field(default_factory=dict)
    suspended_steps: Dict[str, Any] = Field(
        default_factory=dict, alias="suspendedSteps"
    )
    error: Optional[RunError] = None

    def output_of(self, step_id: str) -> Any:
        return self.results.get(step_id, {}).get("output")

    def status_of(self, step_id: str) -> Optional[StepStatus]:
        step = self.results.get(step_id)
        return StepStatus(step["status"]) if step else None


class RunStarted(_WireModel):
    """Returned by ``start_run``."""

    run_id: str = Field(alias="runId")


class WorkflowSummary(_WireModel):
    """Entry of ``list_workflows``."""

    id: str
    name: str
    description: Optional[str] = None
    step_count: int = Field(alias="stepCount")

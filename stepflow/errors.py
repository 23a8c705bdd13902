"""Error taxonomy for stepflow workflows."""

from __future__ import annotations

from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from .contracts import RunResult


class StepflowError(Exception):
    """Base class for every error raised by the engine."""

    def __init__(
        self,
        message: str,
        *,
        step_id: Optional[str] = None,
        run_id: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.step_id = step_id
        self.run_id = run_id
        self.result: Optional["RunResult"] = None

    @property
    def kind(self) -> str:
        """Name used for the error on the wire."""
        return type(self).__name__


class DefinitionError(StepflowError):
    """The workflow graph is malformed."""


class ConditionEvaluationError(StepflowError):
    """A condition referenced a step or path that does not exist."""


class StepExecutionError(StepflowError):
    """A step executor raised."""

    def __init__(
        self,
        message: str,
        *,
        step_id: Optional[str] = None,
        run_id: Optional[str] = None,
        cause: Optional[BaseException] = None,
    ) -> None:
        super().__init__(message, step_id=step_id, run_id=run_id)
        self.cause = cause


class RunNotFoundError(StepflowError):
    """No run with the given id exists for this workflow."""


class StepNotSuspendedError(StepflowError):
    """``resume`` targeted a step that is not suspended."""


class WorkflowNotFoundError(StepflowError):
    """No workflow is registered under the given id."""


class RunCancelledError(StepflowError):
    """The run was aborted before it could finish."""


class InvalidTransitionError(StepflowError):
    """A step status change violates the state machine."""


__all__ = [
    "StepflowError",
    "DefinitionError",
    "ConditionEvaluationError",
    "StepExecutionError",
    "RunNotFoundError",
    "StepNotSuspendedError",
    "WorkflowNotFoundError",
    "RunCancelledError",
    "InvalidTransitionError",
]

"""stepflow: in-process workflow orchestration for step graphs."""

from .conditions import ABSENT, FunctionCondition, PathCondition, QueryCondition
from .config import StepflowConfig, load_config
from .context import ContextSnapshot, StepContext
from .contracts import (
    RunResult,
    RunStarted,
    RunStatus,
    StepStatus,
    TransitionRecord,
    WorkflowSummary,
)
from .definition import Step, Workflow, WorkflowDefinition
from .engine import WorkflowEngine, WorkflowHandle, get_engine
from .errors import (
    ConditionEvaluationError,
    DefinitionError,
    RunCancelledError,
    RunNotFoundError,
    StepExecutionError,
    StepflowError,
    StepNotSuspendedError,
    WorkflowNotFoundError,
)
from .persistence import get_repository

__version__ = "0.1.0"
__all__ = [
    "ABSENT",
    "ConditionEvaluationError",
    "ContextSnapshot",
    "DefinitionError",
    "FunctionCondition",
    "PathCondition",
    "QueryCondition",
    "RunCancelledError",
    "RunNotFoundError",
    "RunResult",
    "RunStarted",
    "RunStatus",
    "Step",
    "StepContext",
    "StepExecutionError",
    "StepNotSuspendedError",
    "StepStatus",
    "StepflowConfig",
    "StepflowError",
    "TransitionRecord",
    "Workflow",
    "WorkflowDefinition",
    "WorkflowEngine",
    "WorkflowHandle",
    "WorkflowNotFoundError",
    "WorkflowSummary",
    "get_engine",
    "get_repository",
    "load_config",
]

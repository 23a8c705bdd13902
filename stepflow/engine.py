"""Workflow registry and the per-workflow handle used to start and drive runs."""

from __future__ import annotations

import asyncio
import logging
import uuid
from typing import Any, Dict, List, Mapping, Optional

from .config import StepflowConfig, load_config
from .contracts import RunResult, RunStarted, TransitionRecord, WorkflowSummary
from .definition import Workflow, WorkflowDefinition
from .emitter import Subscription, TransitionEmitter
from .errors import DefinitionError, RunNotFoundError, WorkflowNotFoundError
from .persistence import RunRepository, get_repository
from .scheduler import RunScheduler

logger = logging.getLogger(__name__)


class WorkflowHandle:
    """Entry point for running one registered workflow."""

    def __init__(self, engine: "WorkflowEngine", definition: WorkflowDefinition) -> None:
        self._engine = engine
        self.definition = definition
        self._runs: Dict[str, RunScheduler] = {}

    @property
    def id(self) -> str:
        return self.definition.id

    def details(self) -> Dict[str, Any]:
        """Static metadata of the workflow graph."""
        return self.definition.to_dict()

    # ------------------------------------------------------------------
    async def start_run(self, input: Optional[Mapping[str, Any]] = None) -> RunStarted:
        """Start a run in the background and return its id immediately."""
        scheduler = self._create_run(input)
        scheduler.start()
        return RunStarted(run_id=scheduler.run_id)

    async def execute(self, input: Optional[Mapping[str, Any]] = None) -> RunResult:
        """Run to completion or to the first suspension.

        Raises the first unrecovered error of the run, with the partial
        :class:`RunResult` attached as ``error.result``.
        """
        scheduler = self._create_run(input)
        scheduler.start()
        return self._settle(scheduler, await scheduler.wait_settled())

    async def resume(
        self,
        run_id: str,
        step_id: str,
        context_data: Optional[Mapping[str, Any]] = None,
    ) -> RunResult:
        """Continue a suspended step with ``context_data`` merged into its input."""
        scheduler = self._get(run_id)
        return self._settle(scheduler, await scheduler.resume(step_id, context_data))

    async def wait(self, run_id: str) -> RunResult:
        """Result of ``run_id`` at its next settle point; never raises for run errors."""
        return await self._get(run_id).wait_settled()

    def watch(self, run_id: str) -> Subscription:
        """Stream of transition records, ending when the run is terminal."""
        return self._get(run_id).emitter.subscribe()

    async def cancel(self, run_id: str, reason: str = "Run cancelled") -> RunResult:
        return await self._get(run_id).cancel(reason)

    def get_run(self, run_id: str) -> Optional[TransitionRecord]:
        """Latest transition record of ``run_id``."""
        scheduler = self._get(run_id)
        return scheduler.emitter.last_record or scheduler.context.to_record()

    def runs(self) -> List[str]:
        return list(self._runs)

    # ------------------------------------------------------------------
    def _create_run(self, input: Optional[Mapping[str, Any]]) -> RunScheduler:
        run_id = str(uuid.uuid4())
        config = self._engine.config.engine
        scheduler = RunScheduler(
            run_id,
            self.definition,
            input,
            emitter=TransitionEmitter(run_id, backlog_warning=config.watch_backlog_warning),
            repository=self._engine.repository,
            config=config,
            limiter=self._engine.limiter,
        )
        self._runs[run_id] = scheduler
        return scheduler

    def _get(self, run_id: str) -> RunScheduler:
        scheduler = self._runs.get(run_id)
        if scheduler is None:
            logger.warning(f"Unknown run {run_id} for workflow {self.id}")
            raise RunNotFoundError(
                f"Run '{run_id}' not found for workflow '{self.id}'", run_id=run_id
            )
        return scheduler

    @staticmethod
    def _settle(scheduler: RunScheduler, result: RunResult) -> RunResult:
        error = scheduler.cancelled or scheduler.first_error
        if error is not None:
            error.result = result
            raise error
        return result


class WorkflowEngine:
    """Registry of committed workflows."""

    def __init__(
        self,
        config: Optional[StepflowConfig] = None,
        repository: Optional[RunRepository] = None,
    ) -> None:
        self.config = config or load_config()
        self.repository = repository or get_repository(self.config)
        max_concurrency = self.config.engine.max_concurrency
        self.limiter = asyncio.Semaphore(max_concurrency) if max_concurrency else None
        self._workflows: Dict[str, WorkflowHandle] = {}

    def register(self, workflow: WorkflowDefinition | Workflow) -> WorkflowHandle:
        definition = workflow.commit() if isinstance(workflow, Workflow) else workflow
        if definition.id in self._workflows:
            raise DefinitionError(f"Workflow '{definition.id}' is already registered")
        handle = WorkflowHandle(self, definition)
        self._workflows[definition.id] = handle
        logger.info(f"Registered workflow {definition.id} ({len(definition.steps)} steps)")
        return handle

    def list_workflows(self) -> List[WorkflowSummary]:
        return [
            WorkflowSummary(
                id=handle.definition.id,
                name=handle.definition.name,
                description=handle.definition.description,
                step_count=len(handle.definition.steps),
            )
            for handle in self._workflows.values()
        ]

    def get_workflow(self, workflow_id: str) -> WorkflowHandle:
        handle = self._workflows.get(workflow_id)
        if handle is None:
            raise WorkflowNotFoundError(f"Workflow '{workflow_id}' is not registered")
        return handle


_engine_instance: WorkflowEngine | None = None


def get_engine(config: Optional[StepflowConfig] = None) -> WorkflowEngine:
    """Return the process-wide engine, creating it on first use."""
    global _engine_instance
    if _engine_instance is None or config is not None:
        _engine_instance = WorkflowEngine(config=config)
    return _engine_instance

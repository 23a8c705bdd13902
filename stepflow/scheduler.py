"""Run scheduler: the coordinating task that drives one run to completion.

Executors, ``when`` guards and loop conditions each run in their own asyncio
task. The coordinating task waits on all of them (plus a command inbox used by
``resume`` and ``cancel``) and applies their outcomes one at a time, so the
:class:`~stepflow.context.RunContext` only ever has a single writer.
"""

from __future__ import annotations

import asyncio
import contextlib
import inspect
import itertools
import logging
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Set, Tuple

from .conditions import Condition, evaluate
from .config import EngineConfig
from .context import RunContext, StepContext
from .contracts import RunError, RunResult, RunStatus, StepStatus
from .definition import LoopMode, WorkflowDefinition
from .emitter import TransitionEmitter
from .errors import (
    ConditionEvaluationError,
    RunCancelledError,
    StepExecutionError,
    StepflowError,
    StepNotSuspendedError,
)
from .persistence import RunRepository

logger = logging.getLogger(__name__)

_WAIT = "wait"
_READY = "ready"
_SKIP = "skip"

_PHASE_WHEN = "when"
_PHASE_LOOP = "loop"
_PHASE_EXECUTE = "execute"


@dataclass
class _Outcome:
    """Result of one unit of work, applied by the coordinating task."""

    step_id: str
    phase: str
    value: Any = None
    suspended: bool = False
    suspend_payload: Any = None
    error: Optional[StepflowError] = None


@dataclass
class _Command:
    kind: str
    future: asyncio.Future
    step_id: Optional[str] = None
    data: Dict[str, Any] = field(default_factory=dict)
    reason: Optional[str] = None


def _topological_order(definition: WorkflowDefinition) -> List[str]:
    indegree = {s: len(definition.predecessors(s)) for s in definition.steps}
    queue = deque(s for s, degree in indegree.items() if degree == 0)
    order: List[str] = []
    while queue:
        current = queue.popleft()
        order.append(current)
        for successor in definition.successors(current):
            indegree[successor] -= 1
            if indegree[successor] == 0:
                queue.append(successor)
    return order


def _consume_failure(task: asyncio.Task) -> None:
    # Failures reach callers through wait_settled(); mark them retrieved.
    if not task.cancelled():
        task.exception()


async def _invoke(fn: Callable[..., Any], ctx: StepContext) -> Any:
    """Await coroutine executors; run plain callables in a worker thread."""
    if inspect.iscoroutinefunction(fn) or inspect.iscoroutinefunction(
        getattr(fn, "__call__", None)
    ):
        return await fn(ctx)
    result = await asyncio.to_thread(fn, ctx)
    if inspect.isawaitable(result):
        result = await result
    return result


class RunScheduler:
    """State machine and coordinating task for a single run."""

    def __init__(
        self,
        run_id: str,
        definition: WorkflowDefinition,
        trigger_data: Optional[Mapping[str, Any]] = None,
        *,
        emitter: Optional[TransitionEmitter] = None,
        repository: Optional[RunRepository] = None,
        config: Optional[EngineConfig] = None,
        limiter: Optional[asyncio.Semaphore] = None,
    ) -> None:
        self.run_id = run_id
        self.definition = definition
        self.config = config or EngineConfig()
        self.context = RunContext(run_id, definition, trigger_data)
        self.emitter = emitter or TransitionEmitter(
            run_id, backlog_warning=self.config.watch_backlog_warning
        )
        self._repository = repository
        self._limiter = limiter
        self._order = _topological_order(definition)

        self._tasks: Dict[asyncio.Task, Tuple[str, str]] = {}
        self._busy: Set[str] = set()
        self._inbox: asyncio.Queue = asyncio.Queue()
        self._waiters: List[asyncio.Future] = []
        self._abort = asyncio.Event()
        self._finish_seq = itertools.count()
        self._finished_at: Dict[str, int] = {}

        self.first_error: Optional[StepflowError] = None
        self.cancelled: Optional[RunCancelledError] = None
        self._task: Optional[asyncio.Task] = None
        self._done = False
        self._idle = False

    # ------------------------------------------------------------------
    # Public surface used by the engine
    def start(self) -> asyncio.Task:
        if self._task is None:
            self._task = asyncio.create_task(
                self._run(), name=f"stepflow-run-{self.run_id}"
            )
            self._task.add_done_callback(_consume_failure)
        return self._task

    @property
    def done(self) -> bool:
        return self._done

    async def wait_settled(self) -> RunResult:
        """Wait until no work is in flight (terminal or only suspended steps)."""
        if self._done or self._idle:
            return self.result()
        future = asyncio.get_running_loop().create_future()
        self._waiters.append(future)
        return await future

    async def resume(self, step_id: str, data: Optional[Mapping[str, Any]] = None) -> RunResult:
        self._ensure_suspended(step_id)
        return await self._post(_Command("resume", self._new_future(), step_id, dict(data or {})))

    async def cancel(self, reason: str = "Run cancelled") -> RunResult:
        if self._done:
            return self.result()
        return await self._post(_Command("cancel", self._new_future(), reason=reason))

    def result(self) -> RunResult:
        if self.cancelled is not None:
            status = RunStatus.CANCELLED
        elif self.first_error is not None:
            status = RunStatus.FAILED
        elif self.context.suspended_steps:
            status = RunStatus.SUSPENDED
        elif self.context.is_terminal():
            status = RunStatus.COMPLETED
        else:
            status = RunStatus.RUNNING
        error = self.cancelled or self.first_error
        return RunResult(
            run_id=self.run_id,
            workflow_id=self.definition.id,
            status=status,
            results=self.context.snapshot().to_wire()["steps"],
            suspended_steps=self.context.suspended_steps,
            error=(
                RunError(kind=error.kind, message=error.message, step_id=error.step_id)
                if error is not None
                else None
            ),
        )

    # ------------------------------------------------------------------
    # Coordinating task
    async def _run(self) -> None:
        inbox_get: Optional[asyncio.Task] = None
        logger.info(f"Run {self.run_id} of workflow {self.definition.id} started")
        try:
            if self._repository is not None:
                await self._repository.create_run(
                    self.run_id, self.definition.id, self.context.trigger_data
                )
            while True:
                await self._advance()
                if not self._tasks:
                    if self.context.is_terminal():
                        break
                    if not self.context.suspended_steps:
                        raise RuntimeError(
                            f"Run {self.run_id} stalled with steps "
                            f"{self.context.steps_with(StepStatus.PENDING)} pending"
                        )
                    self._idle = True
                    self._notify_settled()
                if inbox_get is None:
                    inbox_get = asyncio.create_task(self._inbox.get())
                done, _ = await asyncio.wait(
                    set(self._tasks) | {inbox_get},
                    return_when=asyncio.FIRST_COMPLETED,
                )
                self._idle = False
                for task in done:
                    if task is inbox_get:
                        inbox_get = None
                        await self._handle_command(task.result())
                    elif task in self._tasks:
                        step_id, _ = self._tasks.pop(task)
                        self._busy.discard(step_id)
                        try:
                            await self._apply(task.result())
                        except Exception as exc:
                            await self._contain(step_id, exc)
                        await self._advance()
        except BaseException as exc:
            await self._abort_tasks()
            if isinstance(exc, Exception):
                logger.exception(f"Run {self.run_id} aborted by an internal error")
                failure: Exception = exc
            else:
                failure = RunCancelledError("Coordinating task was cancelled", run_id=self.run_id)
            for waiter in self._drain_waiters():
                waiter.set_exception(failure)
            self._done = True
            self.emitter.close()
            raise
        finally:
            if inbox_get is not None:
                inbox_get.cancel()

        self._done = True
        result = self.result()
        if self._repository is not None:
            await self._repository.mark_run_completed(self.run_id, result.status.value)
        self.emitter.close()
        self._notify_settled()
        logger.info(f"Run {self.run_id} finished with status {result.status.value}")

    def _notify_settled(self) -> None:
        result = self.result()
        for waiter in self._drain_waiters():
            waiter.set_result(result)

    def _drain_waiters(self) -> List[asyncio.Future]:
        waiters = [w for w in self._waiters if not w.done()]
        self._waiters = []
        return waiters

    # ------------------------------------------------------------------
    # Eligibility
    def _readiness(self, step_id: str) -> str:
        predecessors = self.definition.predecessors(step_id)
        if not predecessors:
            return _READY
        statuses = [self.context.status_of(p) for p in predecessors]
        all_terminal = all(s.is_terminal for s in statuses)
        any_completed = StepStatus.COMPLETED in statuses

        if self.definition.is_join(step_id):
            if StepStatus.FAILED in statuses:
                return _SKIP
            if StepStatus.SKIPPED in statuses and not self.config.join_accepts_skipped:
                return _SKIP
            if not all_terminal:
                return _WAIT
            return _READY if any_completed else _SKIP

        if not all_terminal:
            return _WAIT
        return _READY if any_completed else _SKIP

    def _trigger_for(self, step_id: str) -> Optional[str]:
        predecessors = [p for p in self.definition.predecessors(step_id) if p in self._finished_at]
        if not predecessors:
            return None
        return max(predecessors, key=lambda p: self._finished_at[p])

    async def _advance(self) -> None:
        progressed = True
        while progressed and self.cancelled is None:
            progressed = False
            for step_id in self._order:
                if step_id in self._busy:
                    continue
                if self.context.status_of(step_id) != StepStatus.PENDING:
                    continue
                decision = self._readiness(step_id)
                if decision == _WAIT:
                    continue
                progressed = True
                try:
                    await self._enter(step_id, decision)
                except Exception as exc:
                    await self._contain(step_id, exc)

    async def _enter(self, step_id: str, decision: str) -> None:
        self.context.open_path(step_id, self._trigger_for(step_id))
        if decision == _SKIP:
            self.context.skip(step_id)
            await self._committed(step_id)
            return
        when = self.definition.steps[step_id].when
        if when is not None:
            self._spawn(step_id, _PHASE_WHEN, self._check(step_id, _PHASE_WHEN, when))
        else:
            await self._begin(step_id)

    async def _begin(self, step_id: str) -> None:
        self.context.start(step_id)
        await self._committed(step_id)
        loop = self.definition.loop_for(step_id)
        if loop is not None and loop.mode == LoopMode.WHILE:
            self._spawn(step_id, _PHASE_LOOP, self._check(step_id, _PHASE_LOOP, loop.condition))
        else:
            self._spawn_executor(step_id)

    # ------------------------------------------------------------------
    # Units of work
    def _spawn(self, step_id: str, phase: str, coro: Awaitable[_Outcome]) -> None:
        task = asyncio.create_task(coro, name=f"stepflow-{self.run_id}-{step_id}-{phase}")
        self._tasks[task] = (step_id, phase)
        self._busy.add(step_id)

    def _spawn_executor(self, step_id: str) -> None:
        result = self.context.results[step_id]
        result.iterations += 1
        ctx = StepContext(
            run_id=self.run_id,
            step_id=step_id,
            input=self.context.input_for(step_id),
            snapshot=self.context.snapshot(),
            abort_signal=self._abort,
            iteration=result.iterations,
            resume_data=self.context.resume_data_for(step_id),
        )
        self._spawn(step_id, _PHASE_EXECUTE, self._execute(step_id, ctx))

    async def _check(self, step_id: str, phase: str, condition: Condition) -> _Outcome:
        try:
            value = await evaluate(condition, self.context.snapshot())
        except ConditionEvaluationError as exc:
            exc.step_id = exc.step_id or step_id
            return _Outcome(step_id, phase, error=exc)
        return _Outcome(step_id, phase, value=value)

    async def _execute(self, step_id: str, ctx: StepContext) -> _Outcome:
        execute = self.definition.steps[step_id].step.execute
        limiter = self._limiter if self._limiter is not None else contextlib.nullcontext()
        try:
            async with limiter:
                output = await _invoke(execute, ctx)
        except StepflowError as exc:
            exc.step_id = exc.step_id or step_id
            exc.run_id = exc.run_id or self.run_id
            return _Outcome(step_id, _PHASE_EXECUTE, error=exc)
        except Exception as exc:
            logger.exception(f"Step {step_id} raised in run {self.run_id}")
            return _Outcome(
                step_id,
                _PHASE_EXECUTE,
                error=StepExecutionError(
                    f"{type(exc).__name__}: {exc}",
                    step_id=step_id,
                    run_id=self.run_id,
                    cause=exc,
                ),
            )
        if ctx.suspended:
            return _Outcome(
                step_id, _PHASE_EXECUTE, suspended=True, suspend_payload=ctx.suspend_payload
            )
        return _Outcome(step_id, _PHASE_EXECUTE, value=output)

    # ------------------------------------------------------------------
    # Applying outcomes
    async def _apply(self, outcome: _Outcome) -> None:
        step_id = outcome.step_id
        if outcome.error is not None:
            await self._fail(step_id, outcome.error)
            return

        if outcome.phase == _PHASE_WHEN:
            if outcome.value:
                await self._begin(step_id)
            else:
                logger.debug(f"Run {self.run_id}: when condition of {step_id} is false")
                self.context.skip(step_id)
                await self._committed(step_id)
            return

        loop = self.definition.loop_for(step_id)
        if outcome.phase == _PHASE_LOOP:
            again = not outcome.value if loop.mode == LoopMode.UNTIL else bool(outcome.value)
            if again:
                self._spawn_executor(step_id)
            else:
                self.context.complete(step_id, self.context.results[step_id].output)
                await self._committed(step_id)
            return

        if outcome.suspended:
            self.context.suspend(step_id, outcome.suspend_payload)
            await self._committed(step_id)
            logger.info(f"Run {self.run_id}: step {step_id} suspended")
            return

        if loop is None:
            self.context.complete(step_id, outcome.value)
        else:
            self.context.record_iteration(step_id, outcome.value)
            self._spawn(step_id, _PHASE_LOOP, self._check(step_id, _PHASE_LOOP, loop.condition))
        await self._committed(step_id)

    async def _fail(self, step_id: str, error: StepflowError) -> None:
        self.context.fail(step_id, error)
        if self.first_error is None:
            self.first_error = error
        logger.info(f"Run {self.run_id}: step {step_id} failed with {error.kind}: {error.message}")
        await self._committed(step_id)

    async def _contain(self, step_id: str, exc: Exception) -> None:
        """Fail ``step_id`` after an error raised while the engine handled it."""
        logger.exception(f"Run {self.run_id}: could not apply the outcome of step {step_id}")
        if isinstance(exc, StepflowError):
            error = exc
            error.step_id = error.step_id or step_id
            error.run_id = error.run_id or self.run_id
        else:
            error = StepExecutionError(
                f"{type(exc).__name__}: {exc}",
                step_id=step_id,
                run_id=self.run_id,
                cause=exc,
            )
        self._discard_tasks(step_id)
        if self.context.status_of(step_id).is_terminal:
            # The step already settled; only the run reports the failure.
            if self.first_error is None:
                self.first_error = error
            return
        self.context.fail(step_id, error)
        if self.first_error is None:
            self.first_error = error
        try:
            await self._committed(step_id)
        except Exception:
            logger.exception(f"Run {self.run_id}: could not record the failure of step {step_id}")

    async def _committed(self, step_id: str) -> None:
        """Persist and publish the mutation just applied to ``step_id``."""
        result = self.context.results[step_id]
        if result.status.is_terminal and step_id not in self._finished_at:
            self._finished_at[step_id] = next(self._finish_seq)
        self.emitter.publish(self.context.to_record())
        if self._repository is not None:
            if result.status == StepStatus.RUNNING:
                await self._repository.mark_step_started(self.run_id, step_id)
            elif result.status != StepStatus.PENDING:
                await self._repository.mark_step_completed(
                    self.run_id,
                    step_id,
                    status=result.status.value,
                    output=result.output,
                )

    # ------------------------------------------------------------------
    # Commands
    def _new_future(self) -> asyncio.Future:
        return asyncio.get_running_loop().create_future()

    def _ensure_suspended(self, step_id: str) -> None:
        status = self.context.results.get(step_id)
        if status is None or status.status != StepStatus.SUSPENDED:
            current = status.status.value if status else "unknown"
            raise StepNotSuspendedError(
                f"Step '{step_id}' is {current}, not suspended",
                step_id=step_id,
                run_id=self.run_id,
            )

    async def _post(self, command: _Command) -> RunResult:
        if self._done:
            return self.result()
        self._inbox.put_nowait(command)
        return await command.future

    async def _handle_command(self, command: _Command) -> None:
        if command.kind == "resume":
            try:
                self._ensure_suspended(command.step_id)
            except StepNotSuspendedError as exc:
                command.future.set_exception(exc)
                return
            logger.info(f"Run {self.run_id}: resuming step {command.step_id}")
            self._waiters.append(command.future)
            try:
                self.context.merge_resume_data(command.step_id, command.data)
                self.context.start(command.step_id)
                await self._committed(command.step_id)
                self._spawn_executor(command.step_id)
            except Exception as exc:
                await self._contain(command.step_id, exc)
        elif command.kind == "cancel":
            self._waiters.append(command.future)
            await self._cancel(command.reason or "Run cancelled")

    async def _cancel(self, reason: str) -> None:
        self.cancelled = RunCancelledError(reason, run_id=self.run_id)
        logger.info(f"Run {self.run_id}: cancelling ({reason})")
        await self._abort_tasks()
        for step_id in self._order:
            status = self.context.status_of(step_id)
            if status in (StepStatus.RUNNING, StepStatus.SUSPENDED):
                error = RunCancelledError(reason, step_id=step_id, run_id=self.run_id)
                self.context.fail(step_id, error)
                await self._committed(step_id)
            elif status == StepStatus.PENDING:
                self.context.open_path(step_id, self._trigger_for(step_id))
                self.context.skip(step_id)
                await self._committed(step_id)

    def _discard_tasks(self, step_id: str) -> None:
        for task, (owner, _) in list(self._tasks.items()):
            if owner == step_id:
                task.cancel()
                del self._tasks[task]
        self._busy.discard(step_id)

    async def _abort_tasks(self) -> None:
        self._abort.set()
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()
        self._busy.clear()

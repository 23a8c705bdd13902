"""Workflow registry and run lifecycle tests."""

import threading

import pytest

from stepflow import Step, Workflow
from stepflow.config import StepflowConfig
from stepflow.contracts import RunStatus, StepStatus
from stepflow.engine import WorkflowEngine
from stepflow.errors import (
    DefinitionError,
    RunNotFoundError,
    StepExecutionError,
    WorkflowNotFoundError,
)
from stepflow.persistence import InMemoryRunRepository


def _greet(ctx):
    return {"greeting": f"hello {ctx.input['name']}"}


async def _shout(ctx):
    return ctx.get_step_result("greet")["greeting"].upper()


def _hello_workflow(workflow_id="hello"):
    return (
        Workflow(workflow_id, name="Hello", description="Greets someone")
        .step(Step(id="greet", execute=_greet))
        .then(Step(id="shout", execute=_shout))
        .commit()
    )


def test_register_and_list(engine):
    engine.register(_hello_workflow())
    engine.register(Workflow("builder").step(Step(id="only", execute=_greet)))

    summaries = engine.list_workflows()
    assert [s.id for s in summaries] == ["hello", "builder"]
    assert summaries[0].step_count == 2
    assert summaries[0].to_wire() == {
        "id": "hello",
        "name": "Hello",
        "description": "Greets someone",
        "stepCount": 2,
    }


def test_duplicate_registration(engine):
    engine.register(_hello_workflow())
    with pytest.raises(DefinitionError, match="already registered"):
        engine.register(_hello_workflow())


def test_unknown_workflow(engine):
    with pytest.raises(WorkflowNotFoundError):
        engine.get_workflow("missing")


def test_details_is_metadata_only(engine):
    handle = engine.register(_hello_workflow())
    details = engine.get_workflow("hello").details()
    assert details is not handle.definition
    assert [s["id"] for s in details["steps"]] == ["greet", "shout"]


@pytest.mark.asyncio
async def test_execute_sequential_chain(engine):
    handle = engine.register(_hello_workflow())

    result = await handle.execute({"name": "ada"})

    assert result.status == RunStatus.COMPLETED
    assert result.output_of("greet") == {"greeting": "hello ada"}
    assert result.output_of("shout") == "HELLO ADA"
    assert result.error is None
    assert result.suspended_steps == {}


@pytest.mark.asyncio
async def test_executor_error_fails_run(engine):
    def explode(ctx):
        raise RuntimeError("disk on fire")

    handle = engine.register(
        Workflow("boom")
        .step(Step(id="explode", execute=explode))
        .then(Step(id="after", execute=_greet))
        .commit()
    )

    with pytest.raises(StepExecutionError) as exc_info:
        await handle.execute({"name": "x"})

    error = exc_info.value
    assert error.step_id == "explode"
    assert isinstance(error.cause, RuntimeError)
    assert "disk on fire" in error.message
    assert error.result.status == RunStatus.FAILED
    assert error.result.error.kind == "StepExecutionError"
    assert error.result.error.step_id == "explode"
    assert error.result.status_of("after") == StepStatus.SKIPPED


@pytest.mark.asyncio
async def test_conditional_branches(engine):
    def classify(ctx):
        return {"level": "high" if ctx.input["score"] > 5 else "low"}

    classify_step = Step(id="classify", execute=classify)
    handle = engine.register(
        Workflow("branches")
        .step(classify_step)
        .then(Step(id="escalate", execute=lambda ctx: "paged"), when={"classify.output.level": "high"})
        .step(classify_step)
        .then(Step(id="archive", execute=lambda ctx: "stored"), when={"classify.output.level": "low"})
        .commit()
    )

    result = await handle.execute({"score": 9})

    assert result.output_of("escalate") == "paged"
    assert result.status_of("archive") == StepStatus.SKIPPED


@pytest.mark.asyncio
async def test_unknown_run(engine):
    handle = engine.register(_hello_workflow())
    with pytest.raises(RunNotFoundError):
        handle.watch("nope")
    with pytest.raises(RunNotFoundError):
        await handle.resume("nope", "greet", {})


@pytest.mark.asyncio
async def test_runs_are_scoped_to_their_workflow(engine):
    hello = engine.register(_hello_workflow())
    other = engine.register(_hello_workflow("other"))

    result = await hello.execute({"name": "ada"})

    with pytest.raises(RunNotFoundError):
        other.watch(result.run_id)


@pytest.mark.asyncio
async def test_runs_are_persisted(engine, repository):
    handle = engine.register(_hello_workflow())

    result = await handle.execute({"name": "ada"})

    run = await repository.get_run(result.run_id)
    assert run.workflow_id == "hello"
    assert run.status == "completed"
    assert run.trigger_data == {"name": "ada"}
    assert [(s.step_id, s.status) for s in run.steps] == [
        ("greet", "completed"),
        ("shout", "completed"),
    ]


def test_get_engine_is_shared(monkeypatch):
    import stepflow.engine as engine_module

    monkeypatch.setattr(engine_module, "_engine_instance", None)
    first = engine_module.get_engine()
    assert engine_module.get_engine() is first


@pytest.mark.asyncio
async def test_uncopyable_output_is_kept_by_reference(engine):
    lock = threading.Lock()
    handle = engine.register(
        Workflow("locks")
        .step(Step(id="acquire", execute=lambda ctx: {"lock": lock, "owner": "a"}))
        .then(Step(id="use", execute=lambda ctx: ctx.get_step_result("acquire")["owner"]))
        .commit()
    )

    result = await handle.execute()

    assert result.status == RunStatus.COMPLETED
    assert result.output_of("acquire")["lock"] is lock
    assert result.output_of("use") == "a"
    records = [record async for record in handle.watch(result.run_id)]
    assert records[-1].context["steps"]["use"]["status"] == "completed"


class _FlakyRepository(InMemoryRunRepository):
    async def mark_step_started(self, run_id, step_id):
        if step_id == "shout":
            raise ConnectionError("repository unavailable")
        await super().mark_step_started(run_id, step_id)


@pytest.mark.asyncio
async def test_bookkeeping_error_fails_the_step():
    engine = WorkflowEngine(config=StepflowConfig(), repository=_FlakyRepository())
    handle = engine.register(_hello_workflow())

    with pytest.raises(StepExecutionError) as exc_info:
        await handle.execute({"name": "ada"})

    error = exc_info.value
    assert error.step_id == "shout"
    assert isinstance(error.cause, ConnectionError)
    assert error.result.status == RunStatus.FAILED
    assert error.result.status_of("greet") == StepStatus.COMPLETED
    assert error.result.status_of("shout") == StepStatus.FAILED
    records = [record async for record in handle.watch(error.result.run_id)]
    assert records[-1].context["steps"]["shout"]["status"] == "failed"


@pytest.mark.asyncio
async def test_executor_cannot_mutate_trigger_data(engine):
    def tamper(ctx):
        ctx.input["nested"]["x"] = 99
        ctx.trigger_data["nested"]["x"] = 99
        return "tampered"

    def read(ctx):
        return ctx.input["nested"]["x"]

    trigger = {"nested": {"x": 1}}
    handle = engine.register(
        Workflow("frozen-input")
        .step(Step(id="tamper", execute=tamper))
        .then(Step(id="read", execute=read))
        .commit()
    )

    result = await handle.execute(trigger)

    assert result.output_of("read") == 1
    assert trigger == {"nested": {"x": 1}}
    record = handle.get_run(result.run_id)
    assert record.context["triggerData"] == {"nested": {"x": 1}}

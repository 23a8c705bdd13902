"""Transition stream tests."""

import pytest

from stepflow import Step, Workflow
from stepflow.contracts import StepStatus, TransitionRecord


def _workflow():
    a = Step(id="a", execute=lambda ctx: {"v": 1})
    b = Step(id="b", execute=lambda ctx: {"v": 2})
    return (
        Workflow("watched")
        .step(a)
        .then([b, Step(id="c", execute=lambda ctx: {"v": 3})])
        .then(Step(id="d", execute=lambda ctx: "end"))
        .commit()
    )


@pytest.mark.asyncio
async def test_watch_after_terminal_yields_one_record(engine):
    handle = engine.register(_workflow())
    result = await handle.execute()

    records = [record async for record in handle.watch(result.run_id)]

    assert len(records) == 1
    assert all(
        records[0].step_status(step_id) == StepStatus.COMPLETED
        for step_id in ("a", "b", "c", "d")
    )


@pytest.mark.asyncio
async def test_every_mutation_is_emitted(engine):
    handle = engine.register(_workflow())
    started = await handle.start_run({"source": "test"})

    records = [record async for record in handle.watch(started.run_id)]

    # running + completed for each of the four steps
    assert len(records) == 8
    assert all(r.run_id == started.run_id for r in records)
    assert records[0].context["triggerData"] == {"source": "test"}


@pytest.mark.asyncio
async def test_records_are_monotonic(engine):
    handle = engine.register(_workflow())
    started = await handle.start_run()

    records = [record async for record in handle.watch(started.run_id)]

    for previous, current in zip(records, records[1:]):
        assert current.timestamp >= previous.timestamp
        for step_id, step in previous.context["steps"].items():
            status = StepStatus(step["status"])
            if status.is_terminal:
                assert current.context["steps"][step_id] == step


@pytest.mark.asyncio
async def test_independent_watchers(engine):
    handle = engine.register(_workflow())
    started = await handle.start_run()
    first = handle.watch(started.run_id)
    second = handle.watch(started.run_id)

    first_records = [r async for r in first]
    second_records = [r async for r in second]

    assert [r.to_json() for r in first_records] == [r.to_json() for r in second_records]


@pytest.mark.asyncio
async def test_record_wire_shape(engine):
    handle = engine.register(_workflow())
    result = await handle.execute()
    record = handle.get_run(result.run_id)

    wire = record.to_wire()
    assert set(wire) == {"runId", "activePaths", "context", "timestamp", "suspendedSteps"}
    assert wire["context"]["steps"]["d"] == {"status": "completed", "output": "end"}
    assert TransitionRecord.from_json(record.to_json()) == record

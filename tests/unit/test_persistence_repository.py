import uuid

import pytest

import stepflow.persistence as persistence
from stepflow.config import RepositoryConfig, StepflowConfig
from stepflow.persistence import InMemoryRunRepository, get_repository


@pytest.mark.asyncio
async def test_inmemory_repository_crud():
    repo = InMemoryRunRepository()
    run_id = str(uuid.uuid4())

    await repo.create_run(run_id, "wf", {"foo": "bar"})
    await repo.mark_step_started(run_id, "step1")
    await repo.mark_step_completed(run_id, "step1", status="completed", output={"x": 1})
    await repo.mark_run_completed(run_id)

    run = await repo.get_run(run_id)
    assert run is not None
    assert run.workflow_id == "wf"
    assert run.trigger_data == {"foo": "bar"}
    assert run.status == "completed"
    assert len(run.steps) == 1
    step = run.steps[0]
    assert step.step_id == "step1"
    assert step.status == "completed"
    assert step.output == {"x": 1}

    assert [r.run_id for r in await repo.list_runs("wf")] == [run_id]
    assert await repo.list_runs("other") == []


@pytest.mark.asyncio
async def test_repeated_starts_keep_one_attempt():
    repo = InMemoryRunRepository()
    await repo.create_run("r1", "wf")

    await repo.mark_step_started("r1", "loop")
    await repo.mark_step_started("r1", "loop")
    await repo.mark_step_completed("r1", "loop", status="suspended")
    await repo.mark_step_started("r1", "loop")
    await repo.mark_step_completed("r1", "loop", status="completed", output=3)

    run = await repo.get_run("r1")
    assert [(s.attempt, s.status) for s in run.steps] == [(1, "suspended"), (2, "completed")]


@pytest.mark.asyncio
async def test_skip_without_start_is_recorded():
    repo = InMemoryRunRepository()
    await repo.create_run("r1", "wf")
    await repo.mark_step_completed("r1", "b", status="skipped")

    run = await repo.get_run("r1")
    assert run.latest("b").status == "skipped"
    assert run.latest("b").started_at is None


@pytest.mark.asyncio
async def test_unknown_run_is_ignored():
    repo = InMemoryRunRepository()
    await repo.mark_step_started("missing", "a")
    assert await repo.get_run("missing") is None


def test_get_repository_factory(monkeypatch):
    monkeypatch.setattr(persistence, "_repository_instance", None)
    repo = get_repository(StepflowConfig())
    assert isinstance(repo, InMemoryRunRepository)
    assert get_repository() is repo


def test_repository_backend_is_validated():
    with pytest.raises(ValueError):
        StepflowConfig(repository=RepositoryConfig(backend="redis"))

import pytest

from stepflow.config import EngineConfig, StepflowConfig
from stepflow.engine import WorkflowEngine
from stepflow.persistence import InMemoryRunRepository


@pytest.fixture
def repository():
    return InMemoryRunRepository()


@pytest.fixture
def engine(repository):
    return WorkflowEngine(config=StepflowConfig(), repository=repository)


@pytest.fixture
def make_engine(repository):
    def _make(**engine_settings):
        config = StepflowConfig(engine=EngineConfig(**engine_settings))
        return WorkflowEngine(config=config, repository=repository)

    return _make

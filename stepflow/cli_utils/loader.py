"""Load workflow definitions declared in a Python file."""

from __future__ import annotations

import importlib.util
import sys
from pathlib import Path
from typing import Dict

from stepflow.definition import Workflow, WorkflowDefinition


def _load_module(path: Path):
    module_name = f"stepflow_user_{path.stem}"
    spec = importlib.util.spec_from_file_location(module_name, path)
    if spec is None or spec.loader is None:
        raise ImportError(f"Cannot import workflows from {path}")
    module = importlib.util.module_from_spec(spec)
    sys.modules[module_name] = module
    try:
        spec.loader.exec_module(module)
    except BaseException:
        sys.modules.pop(module_name, None)
        raise
    return module


def load_workflows(path: Path) -> Dict[str, WorkflowDefinition]:
    """Return every workflow defined at module level of ``path``, keyed by id.

    Uncommitted :class:`Workflow` builders are committed on the way.
    """
    module = _load_module(path)
    found: Dict[str, WorkflowDefinition] = {}
    for value in vars(module).values():
        if isinstance(value, Workflow):
            value = value.commit()
        if isinstance(value, WorkflowDefinition) and value.id not in found:
            found[value.id] = value
    return found


def _format_path(path: Path) -> str:
    try:
        return f"./{path.resolve().relative_to(Path.cwd())}"
    except ValueError:
        return str(path)

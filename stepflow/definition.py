"""Workflow graph definition and the builder that produces it."""

from __future__ import annotations

import logging
from collections import deque
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Set, Tuple, Union

from pydantic import BaseModel, ConfigDict

from .conditions import Condition, referenced_steps, to_condition
from .constants import TRIGGER_STEP_ID
from .errors import DefinitionError

logger = logging.getLogger(__name__)


class Step(BaseModel):
    """A named unit of work.

    ``execute`` receives a :class:`~stepflow.context.StepContext` and may be a
    plain function or a coroutine function. Its return value becomes the
    step output.
    """

    id: str
    execute: Callable[..., Any]
    description: Optional[str] = None

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    def same_executor(self, other: "Step") -> bool:
        return self.execute == other.execute


class EdgeKind(str, Enum):
    SEQUENTIAL = "sequential"
    PARALLEL = "parallel"
    JOIN = "join"
    LOOP = "loop"


class LoopMode(str, Enum):
    UNTIL = "until"
    WHILE = "while"


class Edge(BaseModel):
    source: str
    target: str
    kind: EdgeKind
    condition: Optional[Condition] = None
    mode: Optional[LoopMode] = None

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)


class StepNode(BaseModel):
    id: str
    step: Step
    when: Optional[Condition] = None
    join: bool = False

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)


class WorkflowDefinition(BaseModel):
    """Immutable directed graph of steps."""

    id: str
    name: str
    description: Optional[str] = None
    steps: Dict[str, StepNode]
    edges: Tuple[Edge, ...] = ()

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    def predecessors(self, step_id: str) -> List[str]:
        return _unique(
            e.source for e in self.edges if e.target == step_id and e.kind != EdgeKind.LOOP
        )

    def successors(self, step_id: str) -> List[str]:
        return _unique(
            e.target for e in self.edges if e.source == step_id and e.kind != EdgeKind.LOOP
        )

    def loop_for(self, step_id: str) -> Optional[Edge]:
        return next(
            (e for e in self.edges if e.kind == EdgeKind.LOOP and e.source == step_id),
            None,
        )

    def roots(self) -> List[str]:
        return [step_id for step_id in self.steps if not self.predecessors(step_id)]

    def is_join(self, step_id: str) -> bool:
        return self.steps[step_id].join

    def descendants(self, step_id: str) -> Set[str]:
        """Steps reachable from ``step_id`` through non-loop edges."""
        seen: Set[str] = set()
        queue = deque(self.successors(step_id))
        while queue:
            current = queue.popleft()
            if current in seen:
                continue
            seen.add(current)
            queue.extend(self.successors(current))
        return seen

    def ancestors(self, step_id: str) -> Set[str]:
        """Steps that reach ``step_id`` through non-loop edges."""
        seen: Set[str] = set()
        queue = deque(self.predecessors(step_id))
        while queue:
            current = queue.popleft()
            if current in seen:
                continue
            seen.add(current)
            queue.extend(self.predecessors(current))
        return seen

    def to_dict(self) -> Dict[str, Any]:
        """Metadata view without executors."""
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "steps": [
                {
                    "id": node.id,
                    "description": node.step.description,
                    "join": node.join,
                    "when": node.when.kind if node.when else None,
                }
                for node in self.steps.values()
            ],
            "edges": [
                {
                    "source": e.source,
                    "target": e.target,
                    "kind": e.kind.value,
                    "mode": e.mode.value if e.mode else None,
                    "condition": e.condition.kind if e.condition else None,
                }
                for e in self.edges
            ],
        }


def _unique(values: Iterable[str]) -> List[str]:
    seen: Set[str] = set()
    ordered: List[str] = []
    for value in values:
        if value in seen:
            continue
        seen.add(value)
        ordered.append(value)
    return ordered


StepRef = Union[Step, str]


class Workflow:
    """Fluent builder for :class:`WorkflowDefinition`.

    Example::

        wf = (
            Workflow("report")
            .step(fetch)
            .then([parse_a, parse_b])
            .then(merge)
            .commit()
        )
    """

    def __init__(
        self, id: str, name: Optional[str] = None, description: Optional[str] = None
    ) -> None:
        self.id = id
        self.name = name or id
        self.description = description
        self._nodes: Dict[str, StepNode] = {}
        self._edges: List[Edge] = []
        self._cursor: List[str] = []
        self._pending_after: Optional[List[str]] = None

    # ------------------------------------------------------------------
    def step(self, step: Step, when: Any = None) -> "Workflow":
        """Add ``step`` as a new branch, or as the join declared by ``after``."""
        if self._pending_after is not None:
            sources = self._pending_after
            self._pending_after = None
            self._attach(step, sources, EdgeKind.JOIN, when, join=True)
        else:
            self._add_node(step, when)
        self._cursor = [step.id]
        return self

    def then(self, steps: Union[Step, Sequence[Step]], when: Any = None) -> "Workflow":
        """Chain after the most recently added step(s).

        A list fans out in parallel; chaining after a fan-out joins the group.
        """
        if self._pending_after is not None:
            if not isinstance(steps, Step):
                raise DefinitionError("after() must be followed by a single step")
            return self.step(steps, when=when)
        if not self._cursor:
            raise DefinitionError("then() needs a preceding step")

        if isinstance(steps, Step):
            if len(self._cursor) > 1:
                self._attach(steps, self._cursor, EdgeKind.JOIN, when, join=True)
            else:
                self._attach(steps, self._cursor, EdgeKind.SEQUENTIAL, when)
            self._cursor = [steps.id]
            return self

        group = list(steps)
        if not group:
            raise DefinitionError("then() received an empty step list")
        join = len(self._cursor) > 1
        kind = EdgeKind.JOIN if join else EdgeKind.PARALLEL
        for member in group:
            self._attach(member, self._cursor, kind, when, join=join)
        self._cursor = [member.id for member in group]
        return self

    def after(self, steps: Union[StepRef, Sequence[StepRef]]) -> "Workflow":
        """Make the next added step a join over ``steps``."""
        if self._pending_after is not None:
            raise DefinitionError("after() must be followed by a step")
        refs = [steps] if isinstance(steps, (Step, str)) else list(steps)
        if not refs:
            raise DefinitionError("after() needs at least one step")
        ids = [ref.id if isinstance(ref, Step) else ref for ref in refs]
        unknown = [step_id for step_id in ids if step_id not in self._nodes]
        if unknown:
            raise DefinitionError(f"after() references unknown steps: {unknown}")
        self._pending_after = _unique(ids)
        return self

    def until(self, condition: Any, step: Step) -> "Workflow":
        """Re-run ``step`` until ``condition`` holds after an execution."""
        return self._loop(LoopMode.UNTIL, condition, step)

    def while_(self, condition: Any, step: Step) -> "Workflow":
        """Run ``step`` for as long as ``condition`` holds before an execution."""
        return self._loop(LoopMode.WHILE, condition, step)

    def commit(self) -> WorkflowDefinition:
        """Validate and freeze the graph."""
        if self._pending_after is not None:
            raise DefinitionError(
                f"after({self._pending_after}) is not followed by a step"
            )
        if not self._nodes:
            raise DefinitionError(f"Workflow '{self.id}' has no steps")
        definition = WorkflowDefinition(
            id=self.id,
            name=self.name,
            description=self.description,
            steps=dict(self._nodes),
            edges=tuple(self._edges),
        )
        validate_definition(definition)
        logger.debug(
            f"Committed workflow {self.id} with {len(definition.steps)} steps "
            f"and {len(definition.edges)} edges"
        )
        return definition

    # ------------------------------------------------------------------
    def _add_node(self, step: Step, when: Any, join: bool = False) -> None:
        condition = to_condition(when) if when is not None else None
        existing = self._nodes.get(step.id)
        if existing is None:
            if step.id == TRIGGER_STEP_ID:
                raise DefinitionError(f"Step id '{TRIGGER_STEP_ID}' is reserved")
            self._nodes[step.id] = StepNode(
                id=step.id, step=step, when=condition, join=join
            )
            return
        if not existing.step.same_executor(step):
            raise DefinitionError(
                f"Step id '{step.id}' is already used by a different executor"
            )
        if condition is not None and existing.when is not None:
            raise DefinitionError(f"Step '{step.id}' already has a when condition")
        if condition is not None or (join and not existing.join):
            self._nodes[step.id] = existing.model_copy(
                update={"when": condition or existing.when, "join": existing.join or join}
            )

    def _attach(
        self,
        step: Step,
        sources: Sequence[str],
        kind: EdgeKind,
        when: Any,
        join: bool = False,
    ) -> None:
        self._add_node(step, when, join=join)
        for source in sources:
            edge = Edge(source=source, target=step.id, kind=kind)
            if edge not in self._edges:
                self._edges.append(edge)

    def _loop(self, mode: LoopMode, condition: Any, step: Step) -> "Workflow":
        parsed = to_condition(condition)
        if step.id not in self._nodes:
            if self._cursor or self._pending_after is not None:
                self.then(step)
            else:
                self.step(step)
        else:
            self._add_node(step, None)
        if any(e.kind == EdgeKind.LOOP and e.source == step.id for e in self._edges):
            raise DefinitionError(f"Step '{step.id}' already has a loop")
        self._edges.append(
            Edge(
                source=step.id,
                target=step.id,
                kind=EdgeKind.LOOP,
                condition=parsed,
                mode=mode,
            )
        )
        self._cursor = [step.id]
        return self


def validate_definition(definition: WorkflowDefinition) -> None:
    """Raise :class:`DefinitionError` when the graph is malformed."""
    for key, node in definition.steps.items():
        if key != node.id:
            raise DefinitionError(f"Step registered as '{key}' has id '{node.id}'")

    loops: Set[str] = set()
    for edge in definition.edges:
        for endpoint in (edge.source, edge.target):
            if endpoint not in definition.steps:
                raise DefinitionError(f"Edge references unknown step '{endpoint}'")
        if edge.kind == EdgeKind.LOOP:
            if edge.source != edge.target:
                raise DefinitionError(
                    f"Loop edge {edge.source} -> {edge.target} must target its own step"
                )
            if edge.source in loops:
                raise DefinitionError(f"Step '{edge.source}' already has a loop")
            if edge.condition is None or edge.mode is None:
                raise DefinitionError(f"Loop on '{edge.source}' needs a condition and mode")
            loops.add(edge.source)
        elif edge.source == edge.target:
            raise DefinitionError(f"Step '{edge.source}' cannot precede itself")

    _check_acyclic(definition)

    for step_id in loops:
        loop = definition.loop_for(step_id)
        refs = referenced_steps(loop.condition)
        if not refs:
            continue
        # Ancestors settle before the loop starts and descendants wait for it.
        static = (
            definition.descendants(step_id)
            | definition.ancestors(step_id)
            | {TRIGGER_STEP_ID}
        )
        if refs <= static:
            raise DefinitionError(
                f"Loop on '{step_id}' can never exit: its condition only reads "
                f"{sorted(refs)}, which cannot change while the loop runs"
            )


def _check_acyclic(definition: WorkflowDefinition) -> None:
    indegree = {step_id: len(definition.predecessors(step_id)) for step_id in definition.steps}
    queue = deque(step_id for step_id, degree in indegree.items() if degree == 0)
    visited = 0
    while queue:
        current = queue.popleft()
        visited += 1
        for successor in definition.successors(current):
            indegree[successor] -= 1
            if indegree[successor] == 0:
                queue.append(successor)
    if visited != len(indegree):
        cyclic = sorted(step_id for step_id, degree in indegree.items() if degree > 0)
        raise DefinitionError(f"Cycle detected among steps: {cyclic}")


__all__ = [
    "Edge",
    "EdgeKind",
    "LoopMode",
    "Step",
    "StepNode",
    "Workflow",
    "WorkflowDefinition",
    "validate_definition",
]

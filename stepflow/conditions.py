"""Condition forms used by ``when`` guards and loop edges.

Three shapes are supported and dispatched on their ``kind`` tag:

* ``FunctionCondition`` - a predicate receiving the run snapshot, sync or async.
* ``QueryCondition`` - ``{"ref": {"step": ..., "path": ...}, "query": {"$op": literal}}``.
* ``PathCondition`` - ``{"step.dotted.path": literal, ...}``, implicitly AND-ed.
"""

from __future__ import annotations

import inspect
import logging
import operator
from typing import TYPE_CHECKING, Any, Callable, Dict, Literal, Mapping, Set, Union

from pydantic import BaseModel, ConfigDict

from .constants import TRIGGER_STEP_ID
from .errors import ConditionEvaluationError, DefinitionError

if TYPE_CHECKING:
    from .context import ContextSnapshot

logger = logging.getLogger(__name__)

Operator = Literal["$eq", "$ne", "$gt", "$gte", "$lt", "$lte"]

_ORDERING: Dict[str, Callable[[Any, Any], bool]] = {
    "$gt": operator.gt,
    "$gte": operator.ge,
    "$lt": operator.lt,
    "$lte": operator.le,
}


class _Absent:
    """Value of a path that does not resolve."""

    _instance = None

    def __new__(cls) -> "_Absent":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __eq__(self, other: object) -> bool:
        return False

    def __ne__(self, other: object) -> bool:
        return True

    def __hash__(self) -> int:
        return 0

    def __repr__(self) -> str:
        return "ABSENT"


ABSENT = _Absent()


class FunctionCondition(BaseModel):
    kind: Literal["function"] = "function"
    fn: Callable[..., Any]

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)


class QueryCondition(BaseModel):
    kind: Literal["query"] = "query"
    step: str
    path: str = ""
    operator: Operator
    value: Any = None

    model_config = ConfigDict(frozen=True)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "QueryCondition":
        ref = data.get("ref")
        query = data.get("query")
        if not isinstance(ref, Mapping) or "step" not in ref:
            raise DefinitionError(f"Query condition needs ref.step: {dict(data)}")
        if not isinstance(query, Mapping) or len(query) != 1:
            raise DefinitionError(
                f"Query condition needs exactly one operator: {dict(data)}"
            )
        (op, value), = query.items()
        if op not in {"$eq", "$ne", *_ORDERING}:
            raise DefinitionError(f"Unsupported query operator: {op}")
        return cls(step=ref["step"], path=ref.get("path", ""), operator=op, value=value)


class PathCondition(BaseModel):
    kind: Literal["paths"] = "paths"
    paths: Dict[str, Any]

    model_config = ConfigDict(frozen=True)


Condition = Union[FunctionCondition, QueryCondition, PathCondition]


def to_condition(obj: Any) -> Condition:
    """Coerce a callable, a dict or a condition model into a ``Condition``."""
    if isinstance(obj, (FunctionCondition, QueryCondition, PathCondition)):
        return obj
    if callable(obj):
        return FunctionCondition(fn=obj)
    if isinstance(obj, Mapping):
        if "ref" in obj or "query" in obj:
            return QueryCondition.from_dict(obj)
        if not obj:
            raise DefinitionError("Path condition must list at least one path")
        for key in obj:
            if not isinstance(key, str) or not key:
                raise DefinitionError(f"Invalid condition path: {key!r}")
        return PathCondition(paths=dict(obj))
    raise DefinitionError(f"Unsupported condition: {obj!r}")


def referenced_steps(condition: Condition) -> Set[str]:
    """Step ids a declarative condition reads; empty for predicates."""
    if condition.kind == "query":
        return {condition.step}
    if condition.kind == "paths":
        return {key.split(".", 1)[0] for key in condition.paths}
    return set()


def resolve_path(value: Any, path: str) -> Any:
    """Walk ``path`` (dotted) through mappings, sequences and attributes."""
    if not path:
        return value
    current = value
    for part in path.split("."):
        if isinstance(current, Mapping):
            if part not in current:
                return ABSENT
            current = current[part]
        elif isinstance(current, (list, tuple)):
            try:
                current = current[int(part)]
            except (ValueError, IndexError):
                return ABSENT
        elif current is not None and hasattr(current, part):
            current = getattr(current, part)
        else:
            return ABSENT
    return current


def compare(op: str, actual: Any, expected: Any) -> bool:
    """Apply a query operator; absent values only satisfy ``$ne``."""
    if actual is ABSENT:
        return op == "$ne"
    if op == "$eq":
        return actual == expected
    if op == "$ne":
        return actual != expected
    try:
        return bool(_ORDERING[op](actual, expected))
    except TypeError:
        return False


def _require_step(snapshot: "ContextSnapshot", step_id: str) -> None:
    if step_id != TRIGGER_STEP_ID and not snapshot.has_step(step_id):
        raise ConditionEvaluationError(
            f"Condition references unknown step '{step_id}'",
            run_id=snapshot.run_id,
        )


async def _evaluate_function(
    condition: FunctionCondition, snapshot: "ContextSnapshot"
) -> bool:
    try:
        result = condition.fn(snapshot)
        if inspect.isawaitable(result):
            result = await result
    except ConditionEvaluationError:
        raise
    except Exception as exc:
        raise ConditionEvaluationError(
            f"Predicate raised {type(exc).__name__}: {exc}", run_id=snapshot.run_id
        ) from exc
    return bool(result)


async def _evaluate_query(
    condition: QueryCondition, snapshot: "ContextSnapshot"
) -> bool:
    _require_step(snapshot, condition.step)
    if condition.step == TRIGGER_STEP_ID:
        source = snapshot.trigger_data
    else:
        source = snapshot.get_step_result(condition.step)
    actual = resolve_path(source, condition.path)
    return compare(condition.operator, actual, condition.value)


async def _evaluate_paths(condition: PathCondition, snapshot: "ContextSnapshot") -> bool:
    for key, expected in condition.paths.items():
        step_id, _, rest = key.partition(".")
        _require_step(snapshot, step_id)
        if step_id == TRIGGER_STEP_ID:
            view: Any = snapshot.trigger_data
        else:
            result = snapshot.steps[step_id]
            view = {
                "status": result.status.value,
                "output": result.output,
                "suspend_payload": result.suspend_payload,
            }
        actual = resolve_path(view, rest)
        if actual is ABSENT or actual != expected:
            return False
    return True


_EVALUATORS = {
    "function": _evaluate_function,
    "query": _evaluate_query,
    "paths": _evaluate_paths,
}


async def evaluate(condition: Condition, snapshot: "ContextSnapshot") -> bool:
    """Evaluate ``condition`` against a read-only run snapshot."""
    outcome = await _EVALUATORS[condition.kind](condition, snapshot)
    logger.debug(f"Condition {condition.kind} evaluated to {outcome} for run {snapshot.run_id}")
    return outcome


__all__ = [
    "ABSENT",
    "Condition",
    "FunctionCondition",
    "PathCondition",
    "QueryCondition",
    "compare",
    "evaluate",
    "referenced_steps",
    "resolve_path",
    "to_condition",
]

"""Graph builder and definition validation tests."""

import pytest

from stepflow.definition import EdgeKind, LoopMode, Step, Workflow
from stepflow.errors import DefinitionError


def _noop(ctx):
    return None


def _other(ctx):
    return 1


def _step(step_id, fn=_noop):
    return Step(id=step_id, execute=fn)


def _edges(definition):
    return {(e.source, e.target, e.kind) for e in definition.edges}


def test_sequential_chain():
    definition = Workflow("seq").step(_step("a")).then(_step("b")).then(_step("c")).commit()

    assert list(definition.steps) == ["a", "b", "c"]
    assert _edges(definition) == {
        ("a", "b", EdgeKind.SEQUENTIAL),
        ("b", "c", EdgeKind.SEQUENTIAL),
    }
    assert definition.roots() == ["a"]


def test_fan_out_then_joins_the_group():
    definition = (
        Workflow("fan")
        .step(_step("a"))
        .then([_step("b"), _step("c")])
        .then(_step("d"))
        .commit()
    )

    assert ("a", "b", EdgeKind.PARALLEL) in _edges(definition)
    assert ("a", "c", EdgeKind.PARALLEL) in _edges(definition)
    assert definition.predecessors("d") == ["b", "c"]
    assert definition.is_join("d")
    assert not definition.is_join("b")


def test_after_declares_join():
    a, b = _step("a"), _step("b")
    definition = Workflow("join").step(a).step(b).after([a, "b"]).step(_step("j")).commit()

    assert definition.roots() == ["a", "b"]
    assert definition.is_join("j")
    assert _edges(definition) == {("a", "j", EdgeKind.JOIN), ("b", "j", EdgeKind.JOIN)}


def test_after_unknown_step_is_rejected():
    with pytest.raises(DefinitionError, match="unknown"):
        Workflow("bad").step(_step("a")).after(["missing"])


def test_dangling_after_is_rejected_at_commit():
    builder = Workflow("bad").step(_step("a")).after("a")
    with pytest.raises(DefinitionError, match="not followed"):
        builder.commit()


def test_duplicate_id_with_different_executor():
    with pytest.raises(DefinitionError, match="different executor"):
        Workflow("dup").step(_step("a")).then(_step("a", _other))


def test_same_step_can_be_referenced_twice():
    a = _step("a")
    definition = (
        Workflow("reuse").step(a).then(_step("b")).step(_step("c")).then(a).commit()
    )
    # the second reference adds an edge instead of a new node
    assert len(definition.steps) == 3
    assert definition.predecessors("a") == ["c"]


def test_cycle_is_rejected():
    a, b = _step("a"), _step("b")
    with pytest.raises(DefinitionError, match="Cycle"):
        Workflow("cycle").step(a).then(b).then(a).commit()


def test_empty_workflow_is_rejected():
    with pytest.raises(DefinitionError, match="no steps"):
        Workflow("empty").commit()


def test_then_without_preceding_step():
    with pytest.raises(DefinitionError):
        Workflow("bad").then(_step("a"))


def test_reserved_trigger_id():
    with pytest.raises(DefinitionError, match="reserved"):
        Workflow("bad").step(_step("trigger"))


def test_loop_edge_is_recorded():
    counter = _step("counter")
    definition = (
        Workflow("loop")
        .step(counter)
        .until({"ref": {"step": "counter", "path": "n"}, "query": {"$gte": 3}}, counter)
        .commit()
    )

    loop = definition.loop_for("counter")
    assert loop is not None
    assert loop.kind == EdgeKind.LOOP
    assert loop.mode == LoopMode.UNTIL
    assert loop.condition.kind == "query"
    # loop edges are not predecessors
    assert definition.predecessors("counter") == []


def test_two_loops_on_one_step():
    s = _step("s")
    builder = Workflow("loops").step(s).until(lambda snap: True, s)
    with pytest.raises(DefinitionError, match="already has a loop"):
        builder.while_(lambda snap: False, s)


def test_unexitable_loop_on_trigger_data():
    s = _step("s")
    builder = Workflow("stuck").step(s).while_(
        {"ref": {"step": "trigger", "path": "go"}, "query": {"$eq": True}}, s
    )
    with pytest.raises(DefinitionError, match="never exit"):
        builder.commit()


def test_unexitable_loop_on_descendant():
    s, t = _step("s"), _step("t")
    builder = Workflow("stuck").step(s).then(t).until({"t.status": "completed"}, s)
    with pytest.raises(DefinitionError, match="never exit"):
        builder.commit()


def test_unexitable_loop_on_ancestor():
    a, s = _step("a"), _step("s")
    builder = Workflow("anc").step(a).then(s).until({"a.output.ok": True}, s)
    with pytest.raises(DefinitionError, match="never exit"):
        builder.commit()


def test_loop_may_read_a_concurrent_branch():
    a, s, side = _step("a"), _step("s"), _step("side")
    definition = (
        Workflow("branches")
        .step(a)
        .then(s)
        .until({"side.output.ok": True}, s)
        .step(a)
        .then(side)
        .commit()
    )
    assert definition.loop_for("s") is not None


def test_malformed_query_condition():
    with pytest.raises(DefinitionError, match="exactly one operator"):
        Workflow("bad").step(_step("a"), when={"ref": {"step": "a"}, "query": {}})


def test_unsupported_operator():
    with pytest.raises(DefinitionError, match="Unsupported query operator"):
        Workflow("bad").step(
            _step("a"), when={"ref": {"step": "trigger"}, "query": {"$in": [1]}}
        )


def test_to_dict_has_no_callables():
    definition = (
        Workflow("meta", name="Meta", description="desc")
        .step(_step("a"))
        .then(_step("b"), when={"a.status": "completed"})
        .commit()
    )
    data = definition.to_dict()

    assert data["name"] == "Meta"
    assert data["steps"][1] == {"id": "b", "description": None, "join": False, "when": "paths"}
    assert data["edges"] == [
        {"source": "a", "target": "b", "kind": "sequential", "mode": None, "condition": None}
    ]

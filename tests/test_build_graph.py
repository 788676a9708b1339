import pytest

from process_scheduler.core.errors import (
    CyclicDependencyError,
    TemplateValidationError,
    UnknownDependencyError,
)
from process_scheduler.core.graph.build_graph import build_plan, find_cycle
from process_scheduler.core.model import (
    GOAL_NODE,
    DependencyAnchor,
    GoalAnchor,
    PreviousStepAnchor,
    StepDefinition,
)


def _goal(sid, seq, offset=-1):
    return StepDefinition(id=sid, sequence=seq, anchor=GoalAnchor(), offset_days=offset)


def _prev(sid, seq, offset=1):
    return StepDefinition(id=sid, sequence=seq, anchor=PreviousStepAnchor(), offset_days=offset)


def _deps(sid, seq, *ids, offset=1):
    return StepDefinition(id=sid, sequence=seq, anchor=DependencyAnchor(step_ids=tuple(ids)), offset_days=offset)


def test_previous_anchor_resolves_to_sequence_minus_one():
    plan = build_plan([_goal("A", 1), _prev("B", 2), _prev("C", 3)])
    assert plan.dependencies == {"A": (GOAL_NODE,), "B": ("A",), "C": ("B",)}
    assert plan.order == ("A", "B", "C")
    assert plan.warnings == ()


def test_order_does_not_depend_on_input_order():
    steps = [_prev("C", 3), _goal("A", 1), _prev("B", 2)]
    assert build_plan(steps).order == ("A", "B", "C")


def test_explicit_dependencies_are_deduplicated():
    plan = build_plan([_goal("A", 1), _goal("B", 2), _deps("C", 3, "B", "A", "B")])
    assert plan.dependencies["C"] == ("B", "A")


def test_empty_dependency_list_falls_back_to_previous_step():
    plan = build_plan([_goal("A", 1), _deps("B", 2)])
    assert plan.dependencies["B"] == ("A",)


def test_dependency_can_point_to_later_sequence():
    plan = build_plan([_deps("A", 1, "B"), _goal("B", 2)])
    assert plan.order == ("B", "A")


def test_missing_previous_step_falls_back_to_goal_with_warning(caplog):
    caplog.set_level("WARNING", logger="process_scheduler")
    plan = build_plan([_prev("A", 1), _goal("B", 3), _prev("C", 5)])
    assert plan.dependencies["A"] == (GOAL_NODE,)
    assert plan.dependencies["C"] == (GOAL_NODE,)
    assert [w.step_id for w in plan.warnings] == ["A", "C"]
    assert all(w.code == "W_NO_PREVIOUS_STEP" for w in plan.warnings)
    assert "W_NO_PREVIOUS_STEP" in caplog.text


def test_unknown_dependency_raises():
    with pytest.raises(UnknownDependencyError) as ei:
        build_plan([_goal("A", 1), _deps("B", 2, "NOPE")])
    assert ei.value.code == "E_UNKNOWN_DEPENDENCY"
    assert ei.value.step_id == "B"
    assert ei.value.missing_dependency_id == "NOPE"


def test_duplicate_id_raises():
    with pytest.raises(TemplateValidationError) as ei:
        build_plan([_goal("A", 1), _goal("A", 2)])
    assert ei.value.code == "E_DUPLICATE_ID"


def test_cycle_raises_with_involved_steps():
    with pytest.raises(CyclicDependencyError) as ei:
        build_plan([_deps("A", 1, "B"), _deps("B", 2, "A")])
    assert ei.value.code == "E_CYCLIC_DEPENDENCY"
    assert set(ei.value.involved_step_ids) == {"A", "B"}


def test_cycle_reports_only_the_loop_not_downstream_steps():
    steps = [_goal("G", 1), _deps("A", 2, "B"), _deps("B", 3, "A"), _deps("C", 4, "B")]
    with pytest.raises(CyclicDependencyError) as ei:
        build_plan(steps)
    assert set(ei.value.involved_step_ids) == {"A", "B"}


def test_self_dependency_is_a_cycle():
    with pytest.raises(CyclicDependencyError) as ei:
        build_plan([_deps("A", 1, "A")])
    assert ei.value.involved_step_ids == ("A",)


def test_find_cycle_returns_closed_path():
    cycle = find_cycle({"A", "B", "C"}, {"A": ["B"], "B": ["C"], "C": ["A"]})
    assert cycle[0] == cycle[-1]
    assert set(cycle) == {"A", "B", "C"}

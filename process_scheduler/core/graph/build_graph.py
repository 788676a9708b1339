from __future__ import annotations

import heapq
import logging
from collections import defaultdict
from typing import Iterable, Mapping, Sequence

from process_scheduler.core.errors import (
    TemplateValidationError,
    cyclic_dependency,
    unknown_dependency,
)
from process_scheduler.core.model import (
    GOAL_NODE,
    DependencyAnchor,
    GoalAnchor,
    PreviousStepAnchor,
    SchedulePlan,
    ScheduleWarning,
    StepDefinition,
)


logger = logging.getLogger(__name__)


def build_plan(steps: Sequence[StepDefinition]) -> SchedulePlan:
    """Resolve each step's dependencies and return a topological evaluation order.

    Raises TemplateValidationError on duplicate ids, UnknownDependencyError on a
    dependency id not in steps, and CyclicDependencyError when the graph has a
    cycle. Ties in the order are broken by (sequence, id) so output is stable.
    """

    steps_by_id: dict[str, StepDefinition] = {}
    for s in steps:
        if s.id in steps_by_id:
            raise TemplateValidationError(
                code="E_DUPLICATE_ID",
                message=f"duplicate step id: {s.id}",
                path="steps",
            )
        steps_by_id[s.id] = s

    by_sequence: dict[int, StepDefinition] = {}
    for s in sorted(steps, key=lambda s: (s.sequence, s.id)):
        by_sequence.setdefault(s.sequence, s)

    dependencies: dict[str, tuple[str, ...]] = {}
    warnings: list[ScheduleWarning] = []

    for s in sorted(steps, key=lambda s: (s.sequence, s.id)):
        anchor = s.anchor
        if isinstance(anchor, GoalAnchor):
            dependencies[s.id] = (GOAL_NODE,)
        elif isinstance(anchor, DependencyAnchor):
            deps: list[str] = []
            for dep in anchor.step_ids:
                if dep not in steps_by_id:
                    raise unknown_dependency(s.id, dep)
                if dep not in deps:
                    deps.append(dep)
            dependencies[s.id] = tuple(deps) if deps else _previous_or_goal(s, by_sequence, warnings)
        elif isinstance(anchor, PreviousStepAnchor):
            dependencies[s.id] = _previous_or_goal(s, by_sequence, warnings)
        else:  # pragma: no cover
            raise TypeError(f"unsupported anchor: {anchor!r}")

    order = _topological_order(steps_by_id, dependencies)

    for w in warnings:
        logger.warning("%s", w)

    return SchedulePlan(
        order=tuple(order),
        dependencies=dependencies,
        steps_by_id=steps_by_id,
        warnings=tuple(warnings),
    )


def _previous_or_goal(
    step: StepDefinition,
    by_sequence: Mapping[int, StepDefinition],
    warnings: list[ScheduleWarning],
) -> tuple[str, ...]:
    prev = by_sequence.get(step.sequence - 1)
    if prev is not None and prev.id != step.id:
        return (prev.id,)
    warnings.append(
        ScheduleWarning(
            code="W_NO_PREVIOUS_STEP",
            message=f"anchored to previous step but no step has sequence {step.sequence - 1}; using the goal date",
            step_id=step.id,
        )
    )
    return (GOAL_NODE,)


def _topological_order(
    steps_by_id: Mapping[str, StepDefinition],
    dependencies: Mapping[str, tuple[str, ...]],
) -> list[str]:
    # Kahn's algorithm; edges run dependency -> dependent.
    dependents: dict[str, list[str]] = defaultdict(list)
    in_degree: dict[str, int] = {sid: 0 for sid in steps_by_id}
    for sid, deps in dependencies.items():
        for dep in deps:
            if dep == GOAL_NODE:
                continue
            dependents[dep].append(sid)
            in_degree[sid] += 1

    def key(sid: str) -> tuple[int, str]:
        return (steps_by_id[sid].sequence, sid)

    ready = [key(sid) for sid, deg in in_degree.items() if deg == 0]
    heapq.heapify(ready)

    order: list[str] = []
    while ready:
        _, cur = heapq.heappop(ready)
        order.append(cur)
        for nxt in dependents.get(cur, []):
            in_degree[nxt] -= 1
            if in_degree[nxt] == 0:
                heapq.heappush(ready, key(nxt))

    if len(order) != len(steps_by_id):
        remaining = {sid for sid, deg in in_degree.items() if deg > 0}
        raise cyclic_dependency(find_cycle(remaining, dependencies))

    return order


def find_cycle(candidates: Iterable[str], dependencies: Mapping[str, Iterable[str]]) -> list[str]:
    """Return one cycle among candidates as a closed path (first id repeated at the end)."""
    WHITE, GRAY, BLACK = 0, 1, 2
    pool = set(candidates)
    state: dict[str, int] = {sid: WHITE for sid in pool}
    stack: list[str] = []

    def dfs(u: str) -> list[str] | None:
        state[u] = GRAY
        stack.append(u)
        for v in dependencies.get(u, ()):
            if v not in pool:
                continue
            if state[v] == GRAY:
                return stack[stack.index(v):] + [v]
            if state[v] == WHITE:
                found = dfs(v)
                if found:
                    return found
        stack.pop()
        state[u] = BLACK
        return None

    for sid in sorted(pool):
        if state[sid] == WHITE:
            found = dfs(sid)
            if found:
                return found
    return sorted(pool)

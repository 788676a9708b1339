from __future__ import annotations

import logging
from datetime import date
from typing import Mapping, Optional, Sequence

from process_scheduler.core.calendar.business_calendar import BusinessCalendar, require_date
from process_scheduler.core.calendar.date_math import (
    add_business_days,
    business_days_between,
    subtract_business_days,
)
from process_scheduler.core.graph.build_graph import build_plan
from process_scheduler.core.model import (
    GOAL_NODE,
    ComputedStep,
    Direction,
    ScheduleResult,
    ScheduleWarning,
    StepDefinition,
)


logger = logging.getLogger(__name__)


def compute_schedule(
    goal_date: date,
    steps: Sequence[StepDefinition],
    calendar: BusinessCalendar,
    *,
    overrides: Optional[Mapping[str, date]] = None,
    zero_offset_direction: Direction = Direction.FORWARD,
) -> ScheduleResult:
    """Assign a due date to every step.

    Steps are evaluated in topological order, so each dependency's due date is
    known before it is read. A step anchored to the goal uses goal_date; any
    other step uses the latest due date among its dependencies. The offset is
    then applied in business days.

    overrides pins the due date of the given step ids; successors are computed
    from the pinned value. Output keeps the input order of steps. Pure: no
    state is read besides the arguments.
    """

    require_date(goal_date, "goal_date")
    plan = build_plan(steps)
    pinned = dict(overrides or {})

    due: dict[str, date] = {}
    computed: dict[str, ComputedStep] = {}

    for sid in plan.order:
        step = plan.steps_by_id[sid]
        deps = plan.dependencies[sid]

        if deps == (GOAL_NODE,):
            anchor_date = goal_date
        else:
            anchor_date = max(due[d] for d in deps)

        if sid in pinned:
            due_date = require_date(pinned[sid], f"override[{sid}]")
        else:
            due_date = add_business_days(
                calendar,
                anchor_date,
                step.offset_days,
                zero_offset_direction=zero_offset_direction,
            )

        due[sid] = due_date
        computed[sid] = ComputedStep(
            step_id=sid,
            due_date=due_date,
            anchor_date_used=anchor_date,
            resolved_dependencies=deps,
            start_date=_start_date(calendar, step, deps, anchor_date, due_date),
            pinned=sid in pinned,
        )
        logger.debug(
            "step %s: anchor=%s offset=%+d due=%s%s",
            sid,
            anchor_date.isoformat(),
            step.offset_days,
            due_date.isoformat(),
            " (pinned)" if sid in pinned else "",
        )

    return ScheduleResult(
        goal_date=goal_date,
        steps=tuple(computed[s.id] for s in steps),
        order=plan.order,
        warnings=plan.warnings,
    )


def _start_date(
    calendar: BusinessCalendar,
    step: StepDefinition,
    deps: tuple[str, ...],
    anchor_date: date,
    due_date: date,
) -> date:
    if deps != (GOAL_NODE,):
        # Work starts once the latest prerequisite is done.
        return min(add_business_days(calendar, anchor_date, 1), due_date)
    duration = max(abs(step.offset_days), 1)
    return subtract_business_days(calendar, due_date, duration - 1)


def check_schedule(result: ScheduleResult) -> list[ScheduleWarning]:
    """Advisory checks on a computed schedule (nothing here blocks scheduling)."""
    warnings: list[ScheduleWarning] = []
    by_id = result.by_step_id()
    for sid in result.order:
        step = by_id[sid]
        if step.due_date > result.goal_date:
            warnings.append(
                ScheduleWarning(
                    code="W_DUE_AFTER_GOAL",
                    message=f"due {step.due_date.isoformat()} is after goal {result.goal_date.isoformat()}",
                    step_id=sid,
                )
            )
        for dep in step.resolved_dependencies:
            if dep == GOAL_NODE:
                continue
            if by_id[dep].due_date > step.due_date:
                warnings.append(
                    ScheduleWarning(
                        code="W_DEPENDENCY_AFTER_STEP",
                        message=f"dependency {dep} is due {by_id[dep].due_date.isoformat()}, after this step ({step.due_date.isoformat()})",
                        step_id=sid,
                    )
                )
    return warnings


def find_critical_path(result: ScheduleResult, calendar: BusinessCalendar) -> list[str]:
    """Step ids with no slack, in evaluation order.

    Slack of a goal-anchored step is the number of business days between its
    due date and the goal. A dependent step inherits the smallest slack among
    its dependencies.
    """
    by_id = result.by_step_id()
    slack: dict[str, int] = {}
    for sid in result.order:
        deps = by_id[sid].resolved_dependencies
        if deps == (GOAL_NODE,):
            slack[sid] = business_days_between(calendar, by_id[sid].due_date, result.goal_date)
        else:
            slack[sid] = min(slack[d] for d in deps)
    return [sid for sid in result.order if slack[sid] <= 0]

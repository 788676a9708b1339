from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from datetime import date
from enum import Enum
from typing import Optional

from process_scheduler.core.calendar.business_calendar import BusinessCalendar, require_date
from process_scheduler.core.config import SchedulerConfig
from process_scheduler.core.errors import ReplanStateError, case_not_found
from process_scheduler.core.model import (
    CaseRecord,
    ComputedStep,
    DueDateUpdate,
    ReplanBatch,
    ReplanDiffEntry,
    ScheduleResult,
    StepInstance,
)
from process_scheduler.core.replan.ports import CaseRepository, NotificationSink
from process_scheduler.core.schedule.calculate_schedule import compute_schedule


logger = logging.getLogger(__name__)


class ReplanState(str, Enum):
    REQUESTED = "requested"
    PREVIEWED = "previewed"
    APPLIED = "applied"
    DISCARDED = "discarded"


@dataclass(frozen=True)
class ReplanComputation:
    case: CaseRecord
    instances: list[StepInstance]
    schedule: ScheduleResult
    diff: list[ReplanDiffEntry]

    def batch(self, goal_date: date) -> ReplanBatch:
        return ReplanBatch(
            case_id=self.case.id,
            goal_date=goal_date,
            expected_version=self.case.version,
            updates=tuple(
                DueDateUpdate(
                    step_id=e.step_id,
                    due_date=e.proposed_due_date,
                    start_date=e.proposed_start_date,
                )
                for e in self.diff
                if e.changed and e.proposed_due_date is not None
            ),
        )


class ReplanEngine:
    """Computes initial schedules and replans cases while honoring step locks.

    Stateless apart from its collaborators; every computation runs on a
    snapshot of the calendar, so concurrent callers never observe a holiday
    set that changes mid-computation.
    """

    def __init__(
        self,
        repository: CaseRepository,
        notifications: NotificationSink,
        calendar: BusinessCalendar,
        config: Optional[SchedulerConfig] = None,
    ) -> None:
        self._repository = repository
        self._notifications = notifications
        self._calendar = calendar
        self._config = config or SchedulerConfig()

    @property
    def calendar(self) -> BusinessCalendar:
        return self._calendar

    def compute_initial_schedule(self, template_id: str, goal_date: date) -> list[ComputedStep]:
        require_date(goal_date, "goal_date")
        steps = self._repository.load_step_definitions(template_id)
        result = compute_schedule(
            goal_date,
            steps,
            self._calendar.snapshot(),
            zero_offset_direction=self._config.zero_offset_direction,
        )
        logger.info(
            "initial schedule for template %s: %d steps, goal %s",
            template_id,
            len(result.steps),
            goal_date.isoformat(),
        )
        return list(result.steps)

    def compute_replan(self, case_id: str, new_goal_date: date) -> ReplanComputation:
        require_date(new_goal_date, "new_goal_date")
        case = self._repository.load_case(case_id)
        if case is None:
            raise case_not_found(case_id)

        steps = self._repository.load_step_definitions(case.template_id)
        instances = self._repository.load_step_instances(case_id)

        overrides: dict[str, date] = {}
        if self._config.lock_propagation == "locked":
            overrides = {
                inst.template_step_id: inst.due_date
                for inst in instances
                if inst.locked and inst.due_date is not None
            }

        schedule = compute_schedule(
            new_goal_date,
            steps,
            self._calendar.snapshot(),
            overrides=overrides,
            zero_offset_direction=self._config.zero_offset_direction,
        )
        computed = schedule.by_step_id()

        diff: list[ReplanDiffEntry] = []
        for inst in instances:
            step = computed.get(inst.template_step_id)
            if step is None:
                logger.warning(
                    "case %s: step %s references template step %s which no longer exists",
                    case_id,
                    inst.id,
                    inst.template_step_id,
                )
                continue
            if inst.locked:
                diff.append(
                    ReplanDiffEntry(
                        step_id=inst.id,
                        template_step_id=inst.template_step_id,
                        previous_due_date=inst.due_date,
                        proposed_due_date=inst.due_date,
                        changed=False,
                        locked=True,
                        previous_start_date=inst.start_date,
                        proposed_start_date=inst.start_date,
                    )
                )
                continue
            diff.append(
                ReplanDiffEntry(
                    step_id=inst.id,
                    template_step_id=inst.template_step_id,
                    previous_due_date=inst.due_date,
                    proposed_due_date=step.due_date,
                    changed=step.due_date != inst.due_date or step.start_date != inst.start_date,
                    locked=False,
                    previous_start_date=inst.start_date,
                    proposed_start_date=step.start_date,
                )
            )

        return ReplanComputation(case=case, instances=instances, schedule=schedule, diff=diff)

    def preview_replan(self, case_id: str, new_goal_date: date) -> list[ReplanDiffEntry]:
        diff = self.compute_replan(case_id, new_goal_date).diff
        logger.info(
            "preview replan case %s -> %s: %d of %d steps change",
            case_id,
            new_goal_date.isoformat(),
            sum(1 for e in diff if e.changed),
            len(diff),
        )
        return diff

    def apply_replan(self, case_id: str, new_goal_date: date) -> list[StepInstance]:
        # Always recompute here; a preview held by the caller may be stale.
        computation = self.compute_replan(case_id, new_goal_date)
        batch = computation.batch(new_goal_date)

        # One version-checked write; a lock or manual edit since the read fails it.
        self._repository.save_replan_batch(batch)

        previous = {e.step_id: e.previous_due_date for e in computation.diff}
        for update in batch.updates:
            if previous.get(update.step_id) == update.due_date:
                continue
            self._notifications.notify_step_rescheduled(
                case_id, update.step_id, previous.get(update.step_id), update.due_date
            )
        self._notifications.notify_case_replanned(case_id)

        logger.info(
            "applied replan case %s -> %s: %d steps updated",
            case_id,
            new_goal_date.isoformat(),
            len(batch.updates),
        )

        by_id = {u.step_id: u for u in batch.updates}
        return [
            replace(inst, due_date=by_id[inst.id].due_date, start_date=by_id[inst.id].start_date)
            if inst.id in by_id
            else inst
            for inst in computation.instances
        ]

    def request_replan(self, case_id: str, new_goal_date: date) -> ReplanAttempt:
        return ReplanAttempt(self, case_id, require_date(new_goal_date, "new_goal_date"))


class ReplanAttempt:
    """One replan attempt: REQUESTED -> PREVIEWED -> APPLIED | DISCARDED.

    Not persisted. apply() recomputes instead of trusting the preview.
    """

    def __init__(self, engine: ReplanEngine, case_id: str, new_goal_date: date) -> None:
        self.engine = engine
        self.case_id = case_id
        self.new_goal_date = new_goal_date
        self.state = ReplanState.REQUESTED
        self.preview_entries: Optional[list[ReplanDiffEntry]] = None
        self.result: Optional[list[StepInstance]] = None

    def preview(self) -> list[ReplanDiffEntry]:
        self._require(ReplanState.REQUESTED, ReplanState.PREVIEWED, action="preview")
        self.preview_entries = self.engine.preview_replan(self.case_id, self.new_goal_date)
        self.state = ReplanState.PREVIEWED
        return self.preview_entries

    def apply(self) -> list[StepInstance]:
        self._require(ReplanState.PREVIEWED, action="apply")
        self.result = self.engine.apply_replan(self.case_id, self.new_goal_date)
        self.state = ReplanState.APPLIED
        return self.result

    def discard(self) -> None:
        self._require(ReplanState.REQUESTED, ReplanState.PREVIEWED, action="discard")
        self.state = ReplanState.DISCARDED

    def _require(self, *allowed: ReplanState, action: str) -> None:
        if self.state not in allowed:
            raise ReplanStateError(
                code="E_REPLAN_STATE",
                message=f"cannot {action} a replan in state {self.state.value}",
                path="state",
            )

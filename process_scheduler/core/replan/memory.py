"""In-process collaborators: a versioned case repository and notification sinks."""
from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, replace
from datetime import date
from typing import Iterable, Optional, Sequence

from process_scheduler.core.errors import (
    case_not_found,
    concurrent_modification,
    step_instance_not_found,
)
from process_scheduler.core.model import (
    CaseRecord,
    DueDateUpdate,
    ProcessTemplate,
    ReplanBatch,
    StepDefinition,
    StepInstance,
)


logger = logging.getLogger(__name__)


class InMemoryCaseRepository:
    def __init__(self, templates: Iterable[ProcessTemplate] = ()) -> None:
        self._lock = threading.Lock()
        self._templates: dict[str, list[StepDefinition]] = {
            t.template_id: list(t.steps) for t in templates
        }
        self._cases: dict[str, CaseRecord] = {}
        self._instances: dict[str, list[StepInstance]] = {}

    def add_template(self, template: ProcessTemplate) -> None:
        with self._lock:
            self._templates[template.template_id] = list(template.steps)

    def add_case(self, case: CaseRecord, instances: Iterable[StepInstance]) -> None:
        with self._lock:
            self._cases[case.id] = case
            self._instances[case.id] = list(instances)

    def delete_case(self, case_id: str) -> None:
        with self._lock:
            self._cases.pop(case_id, None)
            self._instances.pop(case_id, None)

    def set_locked(self, case_id: str, step_id: str, locked: bool) -> StepInstance:
        with self._lock:
            return self._edit(case_id, step_id, locked=locked)

    def set_due_date(self, case_id: str, step_id: str, due_date: date) -> StepInstance:
        """Manual edit; bumps the version so an in-flight replan cannot overwrite it."""
        with self._lock:
            return self._edit(case_id, step_id, due_date=due_date)

    def load_case(self, case_id: str) -> Optional[CaseRecord]:
        with self._lock:
            return self._cases.get(case_id)

    def load_step_definitions(self, template_id: str) -> list[StepDefinition]:
        with self._lock:
            if template_id not in self._templates:
                raise KeyError(f"template not found: {template_id}")
            return list(self._templates[template_id])

    def load_step_instances(self, case_id: str) -> list[StepInstance]:
        with self._lock:
            return list(self._instances.get(case_id, []))

    def save_step_instance_due_dates(
        self, case_id: str, updates: Sequence[DueDateUpdate], *, expected_version: int
    ) -> None:
        with self._lock:
            self._commit(case_id, updates, expected_version=expected_version)

    def save_case_goal_date(self, case_id: str, goal_date: date) -> None:
        with self._lock:
            case = self._require_case(case_id)
            self._cases[case_id] = replace(case, goal_date=goal_date, version=case.version + 1)

    def save_replan_batch(self, batch: ReplanBatch) -> None:
        with self._lock:
            self._commit(
                batch.case_id,
                batch.updates,
                expected_version=batch.expected_version,
                goal_date=batch.goal_date,
            )

    def _commit(
        self,
        case_id: str,
        updates: Sequence[DueDateUpdate],
        *,
        expected_version: int,
        goal_date: Optional[date] = None,
    ) -> None:
        case = self._require_case(case_id)
        if case.version != expected_version:
            raise concurrent_modification(case_id, expected_version, case.version)

        by_id = {u.step_id: u for u in updates}
        instances = self._instances.get(case_id, [])
        missing = sorted(set(by_id) - {inst.id for inst in instances})
        if missing:
            raise step_instance_not_found(case_id, missing)

        self._instances[case_id] = [
            _apply_update(inst, by_id[inst.id]) if inst.id in by_id else inst
            for inst in instances
        ]
        self._cases[case_id] = replace(
            case,
            goal_date=goal_date if goal_date is not None else case.goal_date,
            version=case.version + 1,
        )

    def _edit(self, case_id: str, step_id: str, **changes: object) -> StepInstance:
        case = self._require_case(case_id)
        instances = self._instances.get(case_id, [])
        for i, inst in enumerate(instances):
            if inst.id == step_id:
                instances[i] = replace(inst, **changes)
                self._cases[case_id] = replace(case, version=case.version + 1)
                return instances[i]
        raise step_instance_not_found(case_id, [step_id])

    def _require_case(self, case_id: str) -> CaseRecord:
        case = self._cases.get(case_id)
        if case is None:
            raise case_not_found(case_id)
        return case


def _apply_update(inst: StepInstance, update: DueDateUpdate) -> StepInstance:
    if update.start_date is None:
        return replace(inst, due_date=update.due_date)
    return replace(inst, due_date=update.due_date, start_date=update.start_date)


@dataclass(frozen=True)
class Notification:
    kind: str
    case_id: str
    step_id: Optional[str] = None
    old_date: Optional[date] = None
    new_date: Optional[date] = None


class RecordingNotificationSink:
    def __init__(self) -> None:
        self.events: list[Notification] = []

    def notify_step_rescheduled(
        self, case_id: str, step_id: str, old_date: Optional[date], new_date: date
    ) -> None:
        self.events.append(
            Notification(
                kind="step_rescheduled",
                case_id=case_id,
                step_id=step_id,
                old_date=old_date,
                new_date=new_date,
            )
        )

    def notify_case_replanned(self, case_id: str) -> None:
        self.events.append(Notification(kind="case_replanned", case_id=case_id))


class LoggingNotificationSink:
    def notify_step_rescheduled(
        self, case_id: str, step_id: str, old_date: Optional[date], new_date: date
    ) -> None:
        logger.info(
            "case %s: step %s rescheduled %s -> %s",
            case_id,
            step_id,
            old_date.isoformat() if old_date else "-",
            new_date.isoformat(),
        )

    def notify_case_replanned(self, case_id: str) -> None:
        logger.info("case %s replanned", case_id)

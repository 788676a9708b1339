from __future__ import annotations

from datetime import date
from typing import Optional, Protocol, Sequence

from process_scheduler.core.model import (
    CaseRecord,
    DueDateUpdate,
    ReplanBatch,
    StepDefinition,
    StepInstance,
)


class CaseRepository(Protocol):
    """Template/case persistence consumed by the replan engine.

    Every write bumps the case version, including lock changes and manual
    date edits. Writes that take expected_version raise
    ConcurrentModificationError when the stored version differs, and
    StepInstanceNotFoundError for ids the case does not have; either way
    nothing is written.

    save_replan_batch commits the due dates, start dates and goal date of
    one apply together.
    """

    def load_case(self, case_id: str) -> Optional[CaseRecord]: ...

    def load_step_definitions(self, template_id: str) -> list[StepDefinition]: ...

    def load_step_instances(self, case_id: str) -> list[StepInstance]: ...

    def save_step_instance_due_dates(
        self, case_id: str, updates: Sequence[DueDateUpdate], *, expected_version: int
    ) -> None: ...

    def save_case_goal_date(self, case_id: str, goal_date: date) -> None: ...

    def save_replan_batch(self, batch: ReplanBatch) -> None: ...


class NotificationSink(Protocol):
    def notify_step_rescheduled(
        self, case_id: str, step_id: str, old_date: Optional[date], new_date: date
    ) -> None: ...

    def notify_case_replanned(self, case_id: str) -> None: ...

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
from enum import Enum
from typing import Literal, Optional, Union


GOAL_NODE = "__goal__"

StepStatus = Literal["todo", "in_progress", "done", "blocked", "cancelled"]
ALLOWED_STEP_STATUSES: set[str] = {"todo", "in_progress", "done", "blocked", "cancelled"}


class Direction(str, Enum):
    FORWARD = "forward"
    BACKWARD = "backward"


@dataclass(frozen=True)
class GoalAnchor:
    """Measured from the case goal date."""


@dataclass(frozen=True)
class PreviousStepAnchor:
    """Measured from the step whose sequence is one less than this step's."""


@dataclass(frozen=True)
class DependencyAnchor:
    """Measured from the latest due date among the listed steps."""

    step_ids: tuple[str, ...]


Anchor = Union[GoalAnchor, PreviousStepAnchor, DependencyAnchor]


@dataclass(frozen=True)
class StepDefinition:
    id: str
    sequence: int
    anchor: Anchor
    offset_days: int
    name: Optional[str] = None

    @property
    def basis(self) -> str:
        return "goal" if isinstance(self.anchor, GoalAnchor) else "prev"

    @property
    def explicit_dependencies(self) -> tuple[str, ...]:
        if isinstance(self.anchor, DependencyAnchor):
            return self.anchor.step_ids
        return ()


@dataclass(frozen=True)
class ProcessTemplate:
    template_id: str
    schema_version: str
    steps: list[StepDefinition]
    name: Optional[str] = None


@dataclass(frozen=True)
class ScheduleWarning:
    code: str
    message: str
    step_id: Optional[str] = None

    def __str__(self) -> str:
        loc = self.step_id or "<schedule>"
        return f"{loc}: {self.code}: {self.message}"


@dataclass(frozen=True)
class SchedulePlan:
    """Validated evaluation plan for a list of step definitions.

    Every step has a non-empty dependency tuple; goal-anchored steps depend on
    GOAL_NODE.
    """

    order: tuple[str, ...]
    dependencies: dict[str, tuple[str, ...]]
    steps_by_id: dict[str, StepDefinition]
    warnings: tuple[ScheduleWarning, ...] = ()


@dataclass(frozen=True)
class ComputedStep:
    step_id: str
    due_date: date
    anchor_date_used: date
    resolved_dependencies: tuple[str, ...]
    start_date: Optional[date] = None
    pinned: bool = False


@dataclass(frozen=True)
class ScheduleResult:
    goal_date: date
    steps: tuple[ComputedStep, ...]
    order: tuple[str, ...]
    warnings: tuple[ScheduleWarning, ...] = ()

    def by_step_id(self) -> dict[str, ComputedStep]:
        return {s.step_id: s for s in self.steps}


@dataclass(frozen=True)
class CaseRecord:
    id: str
    template_id: str
    goal_date: date
    version: int = 1
    title: Optional[str] = None


@dataclass(frozen=True)
class StepInstance:
    id: str
    template_step_id: str
    due_date: Optional[date]
    locked: bool = False
    status: StepStatus = "todo"
    start_date: Optional[date] = None


@dataclass(frozen=True)
class ReplanDiffEntry:
    step_id: str
    template_step_id: str
    previous_due_date: Optional[date]
    proposed_due_date: Optional[date]
    changed: bool
    locked: bool
    previous_start_date: Optional[date] = None
    proposed_start_date: Optional[date] = None


@dataclass(frozen=True)
class DueDateUpdate:
    step_id: str
    due_date: date
    start_date: Optional[date] = None


@dataclass(frozen=True)
class ReplanBatch:
    """All writes of one apply; the repository commits it atomically or not at all."""

    case_id: str
    goal_date: date
    expected_version: int
    updates: tuple[DueDateUpdate, ...] = field(default_factory=tuple)

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional


@dataclass(frozen=True)
class ScheduleError(Exception):
    """Base error envelope. Validators return these; the engine raises them."""

    code: str
    message: str
    file: Optional[str] = None
    path: Optional[str] = None

    def __str__(self) -> str:
        parts: list[str] = []
        if self.file:
            parts.append(self.file)
        if self.path:
            parts.append(self.path)
        loc = ":".join(parts) if parts else "<schedule>"
        return f"{loc}: {self.code}: {self.message}"


class TemplateLoadError(ScheduleError):
    pass


class TemplateValidationError(ScheduleError):
    pass


class ReplanStateError(ScheduleError):
    pass


@dataclass(frozen=True)
class CyclicDependencyError(ScheduleError):
    involved_step_ids: tuple[str, ...] = ()


@dataclass(frozen=True)
class UnknownDependencyError(ScheduleError):
    step_id: Optional[str] = None
    missing_dependency_id: Optional[str] = None


@dataclass(frozen=True)
class CaseNotFoundError(ScheduleError):
    case_id: Optional[str] = None


@dataclass(frozen=True)
class ConcurrentModificationError(ScheduleError):
    """Retry the whole preview+apply sequence against fresh data, not just the write."""

    case_id: Optional[str] = None


def cyclic_dependency(step_ids: list[str] | tuple[str, ...]) -> CyclicDependencyError:
    return CyclicDependencyError(
        code="E_CYCLIC_DEPENDENCY",
        message="dependency cycle detected: " + " -> ".join(step_ids),
        path="steps",
        involved_step_ids=tuple(dict.fromkeys(step_ids)),
    )


def unknown_dependency(step_id: str, missing: str) -> UnknownDependencyError:
    return UnknownDependencyError(
        code="E_UNKNOWN_DEPENDENCY",
        message=f"step {step_id} depends on unknown step id: {missing}",
        path=f"steps[{step_id}].depends_on",
        step_id=step_id,
        missing_dependency_id=missing,
    )


def case_not_found(case_id: str) -> CaseNotFoundError:
    return CaseNotFoundError(
        code="E_CASE_NOT_FOUND",
        message=f"case not found: {case_id}",
        path="case_id",
        case_id=case_id,
    )


def concurrent_modification(case_id: str, expected: int, actual: int) -> ConcurrentModificationError:
    return ConcurrentModificationError(
        code="E_CONCURRENT_MODIFICATION",
        message=f"case {case_id} changed while replanning (expected version {expected}, found {actual})",
        path="version",
        case_id=case_id,
    )


@dataclass(frozen=True)
class StepInstanceNotFoundError(ScheduleError):
    case_id: Optional[str] = None
    step_ids: tuple[str, ...] = ()


def step_instance_not_found(case_id: str, step_ids: list[str] | tuple[str, ...]) -> StepInstanceNotFoundError:
    return StepInstanceNotFoundError(
        code="E_UNKNOWN_STEP",
        message=f"case {case_id} has no step instance: {', '.join(step_ids)}",
        path="steps",
        case_id=case_id,
        step_ids=tuple(step_ids),
    )

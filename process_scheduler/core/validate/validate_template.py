from __future__ import annotations

from collections import Counter
from typing import Any, Iterable, Optional, cast

from process_scheduler.core.errors import (
    CyclicDependencyError,
    TemplateValidationError,
    UnknownDependencyError,
)
from process_scheduler.core.graph.build_graph import build_plan
from process_scheduler.core.model import (
    Anchor,
    DependencyAnchor,
    GoalAnchor,
    PreviousStepAnchor,
    ProcessTemplate,
    StepDefinition,
)


ALLOWED_BASES: set[str] = {"goal", "prev"}


def _is_list_of_str(v: Any) -> bool:
    return isinstance(v, list) and all(isinstance(x, str) for x in v)


def _is_int(v: Any) -> bool:
    return isinstance(v, int) and not isinstance(v, bool)


def validate_template(
    doc: dict[str, Any],
) -> tuple[Optional[ProcessTemplate], list[TemplateValidationError]]:
    """Validate a process template document.

    Returns (template, errors). Template is None when errors exist. Runs the
    same dependency graph construction the scheduler uses, so a template that
    validates can always be scheduled.
    """

    file = cast(Optional[str], doc.get("__file__"))
    errors: list[TemplateValidationError] = []

    schema_version = doc.get("schema_version")
    if not isinstance(schema_version, str) or not schema_version.strip():
        errors.append(
            TemplateValidationError(
                code="E_REQUIRED_FIELD",
                message="schema_version is required and must be a non-empty string",
                file=file,
                path="schema_version",
            )
        )

    template_id = doc.get("template_id")
    if not isinstance(template_id, str) or not template_id.strip():
        errors.append(
            TemplateValidationError(
                code="E_REQUIRED_FIELD",
                message="template_id is required and must be a non-empty string",
                file=file,
                path="template_id",
            )
        )

    name = doc.get("name")
    if name is not None and not isinstance(name, str):
        errors.append(
            TemplateValidationError(
                code="E_INVALID_TYPE",
                message="name must be a string",
                file=file,
                path="name",
            )
        )

    steps_raw = doc.get("steps")
    if not isinstance(steps_raw, list) or not steps_raw:
        errors.append(
            TemplateValidationError(
                code="E_REQUIRED_FIELD",
                message="steps is required and must be a non-empty array",
                file=file,
                path="steps",
            )
        )
        return None, _sorted(errors)

    steps: list[StepDefinition] = []
    index_by_id: dict[str, int] = {}
    seen_sequences: dict[int, str] = {}

    for i, raw in enumerate(steps_raw):
        step_path = f"steps[{i}]"
        step = _parse_step(raw, step_path, file, errors)
        if step is None:
            continue

        if step.id in index_by_id:
            errors.append(
                TemplateValidationError(
                    code="E_DUPLICATE_ID",
                    message=f"duplicate step id: {step.id}",
                    file=file,
                    path=f"{step_path}.id",
                )
            )
            continue

        if step.sequence in seen_sequences:
            errors.append(
                TemplateValidationError(
                    code="E_DUPLICATE_SEQUENCE",
                    message=f"sequence {step.sequence} already used by step {seen_sequences[step.sequence]}",
                    file=file,
                    path=f"{step_path}.sequence",
                )
            )
            continue

        index_by_id[step.id] = i
        seen_sequences[step.sequence] = step.id
        steps.append(step)

    # Referential integrity checks.
    for step in steps:
        for di, dep in enumerate(step.explicit_dependencies):
            if dep not in index_by_id:
                errors.append(
                    TemplateValidationError(
                        code="E_UNKNOWN_DEPENDENCY",
                        message=f"depends_on references unknown id: {dep}",
                        file=file,
                        path=f"steps[{index_by_id[step.id]}].depends_on[{di}]",
                    )
                )

    if errors:
        return None, _sorted(errors)

    try:
        build_plan(steps)
    except CyclicDependencyError as e:
        first = e.involved_step_ids[0] if e.involved_step_ids else None
        errors.append(
            TemplateValidationError(
                code=e.code,
                message=e.message,
                file=file,
                path=f"steps[{index_by_id[first]}].depends_on" if first in index_by_id else "steps",
            )
        )
    except UnknownDependencyError as e:  # pragma: no cover
        errors.append(TemplateValidationError(code=e.code, message=e.message, file=file, path=e.path))

    if errors:
        return None, _sorted(errors)

    template = ProcessTemplate(
        template_id=cast(str, template_id),
        schema_version=cast(str, schema_version),
        steps=steps,
        name=cast(Optional[str], name),
    )
    return template, []


def parse_template(doc: dict[str, Any]) -> ProcessTemplate:
    """Validate and return the template, raising the first error."""
    template, errors = validate_template(doc)
    if errors or template is None:
        raise errors[0]
    return template


def summarize_template(template: ProcessTemplate) -> str:
    counts = Counter([s.basis for s in template.steps])
    title = f" ({template.name})" if template.name else ""
    return (
        f"OK: {template.template_id}{title}: {len(template.steps)} steps "
        f"(goal={counts.get('goal', 0)}, prev={counts.get('prev', 0)})"
    )


def _parse_step(
    raw: Any, step_path: str, file: Optional[str], errors: list[TemplateValidationError]
) -> Optional[StepDefinition]:
    if not isinstance(raw, dict):
        errors.append(
            TemplateValidationError(
                code="E_INVALID_TYPE",
                message="step must be an object",
                file=file,
                path=step_path,
            )
        )
        return None

    sid = raw.get("id")
    if isinstance(sid, int) and not isinstance(sid, bool):
        sid = str(sid)
    if not isinstance(sid, str) or not sid.strip():
        errors.append(
            TemplateValidationError(
                code="E_REQUIRED_FIELD",
                message="id is required and must be a non-empty string",
                file=file,
                path=f"{step_path}.id",
            )
        )
        return None

    sequence = raw.get("sequence")
    if not _is_int(sequence) or sequence < 1:
        errors.append(
            TemplateValidationError(
                code="E_INVALID_TYPE",
                message="sequence is required and must be a positive integer",
                file=file,
                path=f"{step_path}.sequence",
            )
        )
        return None

    basis = raw.get("basis")
    if not isinstance(basis, str) or basis not in ALLOWED_BASES:
        errors.append(
            TemplateValidationError(
                code="E_INVALID_ENUM",
                message=f"basis must be one of {sorted(ALLOWED_BASES)}",
                file=file,
                path=f"{step_path}.basis",
            )
        )
        return None

    offset = raw.get("offset_days")
    if not _is_int(offset):
        errors.append(
            TemplateValidationError(
                code="E_INVALID_TYPE",
                message="offset_days is required and must be an integer",
                file=file,
                path=f"{step_path}.offset_days",
            )
        )
        return None

    deps = raw.get("depends_on", [])
    if deps is None:
        deps = []
    if not (deps == [] or _is_list_of_str(deps)):
        errors.append(
            TemplateValidationError(
                code="E_INVALID_TYPE",
                message="depends_on must be an array of strings",
                file=file,
                path=f"{step_path}.depends_on",
            )
        )
        return None

    if basis == "goal" and deps:
        errors.append(
            TemplateValidationError(
                code="E_GOAL_STEP_HAS_DEPENDENCIES",
                message="a goal-based step cannot declare depends_on",
                file=file,
                path=f"{step_path}.depends_on",
            )
        )
        return None

    name = raw.get("name")
    if name is not None and not isinstance(name, str):
        errors.append(
            TemplateValidationError(
                code="E_INVALID_TYPE",
                message="name must be a string",
                file=file,
                path=f"{step_path}.name",
            )
        )
        return None

    anchor: Anchor
    if basis == "goal":
        anchor = GoalAnchor()
    elif deps:
        anchor = DependencyAnchor(step_ids=tuple(deps))
    else:
        anchor = PreviousStepAnchor()

    return StepDefinition(
        id=sid.strip(),
        sequence=sequence,
        anchor=anchor,
        offset_days=offset,
        name=name,
    )


def _sorted(errors: Iterable[TemplateValidationError]) -> list[TemplateValidationError]:
    return sorted(
        list(errors),
        key=lambda e: (
            e.file or "",
            e.path or "",
            e.code,
        ),
    )

from __future__ import annotations

from collections import defaultdict
from typing import Any, Optional

from process_scheduler.core.errors import TemplateValidationError
from process_scheduler.core.graph.build_graph import find_cycle


# Template lint rules (advisory, run in addition to validation):
# - L_DUPLICATE_SEQUENCE: two steps share a sequence number
# - L_NO_PREVIOUS_STEP: prev-based step without depends_on and no step at sequence-1
# - L_GOAL_STEP_AFTER_GOAL: goal-based step with a positive offset lands after the goal
# - L_NEGATIVE_PREVIOUS_OFFSET: prev-based step scheduled before the step it follows
# - L_CYCLE_DETECTED: dependency cycle exists


def lint_template(doc: dict[str, Any]) -> list[TemplateValidationError]:
    """Lint a template document.

    Works best effort on partially-invalid input; the CLI prints lint and
    validation findings together.
    """

    file = _cast_optional_str(doc.get("__file__"))

    steps = doc.get("steps")
    if not isinstance(steps, list):
        # Let validator handle shape.
        return []

    id_to_index: dict[str, int] = {}
    id_to_raw: dict[str, dict[str, Any]] = {}
    seq_to_ids: dict[int, list[str]] = defaultdict(list)

    for i, raw in enumerate(steps):
        if not isinstance(raw, dict):
            continue
        sid = raw.get("id")
        if not isinstance(sid, str):
            continue
        id_to_index.setdefault(sid, i)
        id_to_raw.setdefault(sid, raw)
        seq = raw.get("sequence")
        if isinstance(seq, int) and not isinstance(seq, bool):
            seq_to_ids[seq].append(sid)

    errors: list[TemplateValidationError] = []

    # Rule: duplicate sequence numbers
    for seq, ids in sorted(seq_to_ids.items()):
        for sid in ids[1:]:
            errors.append(
                TemplateValidationError(
                    code="L_DUPLICATE_SEQUENCE",
                    message=f"sequence {seq} shared with step {ids[0]}",
                    file=file,
                    path=f"steps[{id_to_index[sid]}].sequence",
                )
            )

    id_to_deps: dict[str, list[str]] = {}
    for sid, raw in id_to_raw.items():
        basis = raw.get("basis")
        offset = raw.get("offset_days")
        deps_raw = raw.get("depends_on")
        deps = [d for d in deps_raw if isinstance(d, str)] if isinstance(deps_raw, list) else []
        path = f"steps[{id_to_index[sid]}]"

        if basis == "goal" and isinstance(offset, int) and offset > 0:
            errors.append(
                TemplateValidationError(
                    code="L_GOAL_STEP_AFTER_GOAL",
                    message=f"goal-based step has offset_days={offset}; it will be due after the goal date",
                    file=file,
                    path=f"{path}.offset_days",
                )
            )

        if basis != "prev":
            id_to_deps[sid] = []
            continue

        if isinstance(offset, int) and offset < 0:
            errors.append(
                TemplateValidationError(
                    code="L_NEGATIVE_PREVIOUS_OFFSET",
                    message=f"prev-based step has offset_days={offset}; it will be due before its predecessor",
                    file=file,
                    path=f"{path}.offset_days",
                )
            )

        if deps:
            id_to_deps[sid] = deps
            continue

        seq = raw.get("sequence")
        prev_ids = seq_to_ids.get(seq - 1, []) if isinstance(seq, int) else []
        if prev_ids:
            id_to_deps[sid] = [prev_ids[0]]
        else:
            id_to_deps[sid] = []
            errors.append(
                TemplateValidationError(
                    code="L_NO_PREVIOUS_STEP",
                    message="prev-based step has no step at the previous sequence; the goal date will be used",
                    file=file,
                    path=f"{path}.basis",
                )
            )

    # Rule: cycle detection
    cycle_nodes = set(id_to_deps.keys())
    seen_cycles: set[frozenset[str]] = set()
    while cycle_nodes:
        cycle = find_cycle(cycle_nodes, id_to_deps)
        if len(cycle) < 2 or cycle[0] != cycle[-1]:
            break
        key = frozenset(cycle)
        if key not in seen_cycles:
            seen_cycles.add(key)
            errors.append(
                TemplateValidationError(
                    code="L_CYCLE_DETECTED",
                    message="dependency cycle detected: " + " -> ".join(cycle),
                    file=file,
                    path=f"steps[{id_to_index.get(cycle[0], 0)}].depends_on",
                )
            )
        cycle_nodes -= key

    return _sorted(errors)


def _sorted(errors: list[TemplateValidationError]) -> list[TemplateValidationError]:
    return sorted(errors, key=lambda e: (e.file or "", e.path or "", e.code))


def _cast_optional_str(v: Any) -> Optional[str]:
    return v if isinstance(v, str) else None

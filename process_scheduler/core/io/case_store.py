from __future__ import annotations

import os
import tempfile
from datetime import date
from pathlib import Path
from typing import Any, Optional, Sequence

import yaml

from process_scheduler.core.errors import (
    TemplateLoadError,
    TemplateValidationError,
    case_not_found,
    concurrent_modification,
    step_instance_not_found,
)
from process_scheduler.core.io.dates import coerce_date
from process_scheduler.core.io.load_template import load_template, read_document
from process_scheduler.core.model import (
    ALLOWED_STEP_STATUSES,
    CaseRecord,
    ComputedStep,
    DueDateUpdate,
    ReplanBatch,
    StepDefinition,
    StepInstance,
)
from process_scheduler.core.validate.validate_template import parse_template


CASE_SCHEMA_VERSION = "0.1.0"


class YamlCaseStore:
    """A single case persisted as a YAML file.

    The case's template is referenced by path, relative to the case file's
    directory unless absolute. Every write rewrites the whole file.
    """

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)

    # -- creation ---------------------------------------------------------

    def create(
        self,
        *,
        case_id: str,
        template_path: str | Path,
        goal_date: date,
        schedule: Sequence[ComputedStep],
        title: Optional[str] = None,
    ) -> CaseRecord:
        if self.path.exists():
            raise FileExistsError(f"case file already exists: {self.path}")
        template_ref = os.path.relpath(Path(template_path).resolve(), self.path.parent.resolve())
        doc: dict[str, Any] = {
            "schema_version": CASE_SCHEMA_VERSION,
            "case_id": case_id,
            "title": title,
            "template": Path(template_ref).as_posix(),
            "goal_date": goal_date,
            "version": 1,
            "steps": [
                {
                    "id": f"{case_id}-{s.step_id}",
                    "template_step_id": s.step_id,
                    "start_date": s.start_date,
                    "due_date": s.due_date,
                    "locked": False,
                    "status": "todo",
                }
                for s in schedule
            ],
        }
        if title is None:
            del doc["title"]
        self._write(doc)
        return self._case_from(doc)

    def read_case(self) -> CaseRecord:
        return self._case_from(self._read())

    # -- CaseRepository ---------------------------------------------------

    def load_case(self, case_id: str) -> Optional[CaseRecord]:
        if not self.path.exists():
            return None
        doc = self._read()
        if doc.get("case_id") != case_id:
            return None
        return self._case_from(doc)

    def load_step_definitions(self, template_id: str) -> list[StepDefinition]:
        return list(parse_template(load_template(self._resolve_template(template_id))).steps)

    def load_step_instances(self, case_id: str) -> list[StepInstance]:
        doc = self._read_case(case_id)
        return [self._instance_from(raw, i) for i, raw in enumerate(doc.get("steps") or [])]

    def save_step_instance_due_dates(
        self, case_id: str, updates: Sequence[DueDateUpdate], *, expected_version: int
    ) -> None:
        doc = self._read_case(case_id)
        self._commit(doc, case_id, updates, expected_version=expected_version)
        self._write(doc)

    def save_case_goal_date(self, case_id: str, goal_date: date) -> None:
        doc = self._read_case(case_id)
        doc["goal_date"] = goal_date
        doc["version"] = doc.get("version", 1) + 1
        self._write(doc)

    def save_replan_batch(self, batch: ReplanBatch) -> None:
        doc = self._read_case(batch.case_id)
        self._commit(doc, batch.case_id, batch.updates, expected_version=batch.expected_version)
        doc["goal_date"] = batch.goal_date
        self._write(doc)

    # -- manual edits -----------------------------------------------------

    def set_locked(self, case_id: str, step_id: str, locked: bool) -> StepInstance:
        doc = self._read_case(case_id)
        for i, raw in enumerate(doc.get("steps") or []):
            if isinstance(raw, dict) and raw.get("id") == step_id:
                raw["locked"] = locked
                # Any edit invalidates replans computed before it.
                doc["version"] = doc.get("version", 1) + 1
                self._write(doc)
                return self._instance_from(raw, i)
        raise step_instance_not_found(case_id, [step_id])

    # -- helpers ----------------------------------------------------------

    def _resolve_template(self, template_ref: str) -> Path:
        p = Path(template_ref)
        if p.is_absolute():
            return p
        return self.path.parent / p

    def _read(self) -> dict[str, Any]:
        return read_document(self.path)

    def _read_case(self, case_id: str) -> dict[str, Any]:
        if not self.path.exists():
            raise case_not_found(case_id)
        doc = self._read()
        if doc.get("case_id") != case_id:
            raise case_not_found(case_id)
        return doc

    def _commit(
        self,
        doc: dict[str, Any],
        case_id: str,
        updates: Sequence[DueDateUpdate],
        *,
        expected_version: int,
    ) -> None:
        version = doc.get("version", 1)
        if version != expected_version:
            raise concurrent_modification(case_id, expected_version, version)

        by_id = {u.step_id: u for u in updates}
        steps = doc.get("steps") or []
        known = {raw.get("id") for raw in steps if isinstance(raw, dict)}
        missing = sorted(set(by_id) - known)
        if missing:
            raise step_instance_not_found(case_id, missing)
        for raw in steps:
            if isinstance(raw, dict) and raw.get("id") in by_id:
                update = by_id[raw["id"]]
                raw["due_date"] = update.due_date
                if update.start_date is not None:
                    raw["start_date"] = update.start_date
        doc["version"] = version + 1

    def _write(self, doc: dict[str, Any]) -> None:
        # Write a sibling temp file and rename it over the case file, so a
        # reader sees either the old case or the new one.
        parent = self.path.parent
        if str(parent) not in (".", ""):
            parent.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(prefix=f".{self.path.name}.", suffix=".tmp", dir=parent)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                yaml.safe_dump(doc, f, sort_keys=False, default_flow_style=False, allow_unicode=True)
            os.replace(tmp, self.path)
        except BaseException:
            if os.path.exists(tmp):
                os.unlink(tmp)
            raise

    def _case_from(self, doc: dict[str, Any]) -> CaseRecord:
        file = str(self.path)
        case_id = doc.get("case_id")
        template = doc.get("template")
        version = doc.get("version", 1)
        if not isinstance(case_id, str) or not case_id:
            raise TemplateLoadError(code="E_REQUIRED_FIELD", message="case_id is required", file=file, path="case_id")
        if not isinstance(template, str) or not template:
            raise TemplateLoadError(code="E_REQUIRED_FIELD", message="template is required", file=file, path="template")
        if not isinstance(version, int) or isinstance(version, bool):
            raise TemplateLoadError(code="E_INVALID_TYPE", message="version must be an integer", file=file, path="version")
        try:
            goal_date = coerce_date(doc.get("goal_date"))
        except ValueError as e:
            raise TemplateLoadError(code="E_INVALID_TYPE", message=str(e), file=file, path="goal_date") from e
        title = doc.get("title")
        return CaseRecord(
            id=case_id,
            template_id=template,
            goal_date=goal_date,
            version=version,
            title=title if isinstance(title, str) else None,
        )

    def _instance_from(self, raw: Any, i: int) -> StepInstance:
        file = str(self.path)
        path = f"steps[{i}]"
        if not isinstance(raw, dict):
            raise TemplateValidationError(code="E_INVALID_TYPE", message="step must be an object", file=file, path=path)
        sid, tsid = raw.get("id"), raw.get("template_step_id")
        if not isinstance(sid, str) or not isinstance(tsid, str):
            raise TemplateValidationError(
                code="E_REQUIRED_FIELD",
                message="id and template_step_id are required strings",
                file=file,
                path=path,
            )
        due = self._optional_date(raw, "due_date", path)
        start = self._optional_date(raw, "start_date", path)
        status = raw.get("status", "todo")
        if status not in ALLOWED_STEP_STATUSES:
            raise TemplateValidationError(
                code="E_INVALID_ENUM",
                message=f"status must be one of {sorted(ALLOWED_STEP_STATUSES)}",
                file=file,
                path=f"{path}.status",
            )
        return StepInstance(
            id=sid,
            template_step_id=tsid,
            due_date=due,
            locked=bool(raw.get("locked", False)),
            status=status,
            start_date=start,
        )

    def _optional_date(self, raw: dict[str, Any], key: str, path: str) -> Optional[date]:
        value = raw.get(key)
        if value is None:
            return None
        try:
            return coerce_date(value)
        except ValueError as e:
            raise TemplateValidationError(
                code="E_INVALID_TYPE", message=str(e), file=str(self.path), path=f"{path}.{key}"
            ) from e

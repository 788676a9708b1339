from __future__ import annotations

import json
import os
from datetime import date
from typing import Any, Optional

import typer

from process_scheduler.core.calendar.business_calendar import BusinessCalendar, build_calendar
from process_scheduler.core.calendar.holidays import Holiday, HolidayFileError, YamlHolidaySource
from process_scheduler.core.config import (
    ConfigError,
    SchedulerConfig,
    load_config,
    with_overrides,
)
from process_scheduler.core.errors import (
    ScheduleError,
    StepInstanceNotFoundError,
    TemplateLoadError,
    TemplateValidationError,
)
from process_scheduler.core.io.case_store import YamlCaseStore
from process_scheduler.core.io.dates import coerce_date
from process_scheduler.core.io.load_template import load_template
from process_scheduler.core.lint.lint_template import lint_template
from process_scheduler.core.logging_config import LOG_LEVEL_ENV_VAR, setup_logging
from process_scheduler.core.model import ProcessTemplate, ReplanDiffEntry
from process_scheduler.core.replan.engine import ReplanEngine
from process_scheduler.core.replan.memory import InMemoryCaseRepository, LoggingNotificationSink
from process_scheduler.core.schedule.calculate_schedule import (
    check_schedule,
    compute_schedule,
    find_critical_path,
)
from process_scheduler.core.validate.validate_template import summarize_template, validate_template

app = typer.Typer(add_completion=False, no_args_is_help=True)

CONFIG_HELP = "Scheduler config YAML (defaults to $SCHEDULER_CONFIG)"
HOLIDAYS_HELP = "Holiday YAML file (overrides holidays_file from config)"


@app.callback()
def _callback(
    log_level: str = typer.Option(
        os.getenv(LOG_LEVEL_ENV_VAR, "WARNING"), "--log-level", help="Logging level"
    ),
    log_json: bool = typer.Option(False, "--log-json", help="Emit logs as JSON lines"),
) -> None:
    """Process schedule CLI."""
    setup_logging(log_level, json_format=log_json)
    return


@app.command("validate")
def validate(
    path: str = typer.Argument(..., help="Path to a template file (.yaml/.yml/.json)"),
    format: str = typer.Option("text", "--format", help="Output format: text|json"),
) -> None:
    """Validate a process template (shape, dependencies, cycles)."""
    _check_format(format, "E_VALIDATE_UNKNOWN_FORMAT")
    doc = _load_or_exit(path, format=format, command="validate")

    template, errors = validate_template(doc)
    if errors or template is None:
        if format == "json":
            _emit_json("validate", False, errors=errors, exit_code=2)
        _print_errors(errors)
        raise typer.Exit(code=2)

    if format == "text":
        typer.echo(summarize_template(template))
        return

    _emit_json(
        "validate",
        True,
        errors=[],
        exit_code=0,
        summary={
            "template_id": template.template_id,
            "step_count": len(template.steps),
            "steps": [s.id for s in template.steps],
        },
    )


@app.command("lint")
def lint(
    path: str = typer.Argument(..., help="Path to a template file (.yaml/.yml/.json)"),
    format: str = typer.Option("text", "--format", help="Output format: text|json"),
) -> None:
    """Lint a process template (advisory rules beyond validation)."""
    _check_format(format, "E_LINT_UNKNOWN_FORMAT")
    doc = _load_or_exit(path, format=format, command="lint")

    _, validation_errors = validate_template(doc)
    errors: list[ScheduleError] = [*lint_template(doc), *validation_errors]

    if format == "json":
        _emit_json("lint", not errors, errors=errors, exit_code=2 if errors else 0)
    if errors:
        _print_errors(errors)
        raise typer.Exit(code=2)
    typer.echo("OK: lint passed")


@app.command("schedule")
def schedule(
    path: str = typer.Argument(..., help="Path to a template file"),
    goal_date: str = typer.Option(..., "--goal-date", help="Goal date (YYYY-MM-DD)"),
    config: Optional[str] = typer.Option(None, "--config", help=CONFIG_HELP),
    holidays: Optional[str] = typer.Option(None, "--holidays", help=HOLIDAYS_HELP),
    format: str = typer.Option("text", "--format", help="Output format: text|json"),
) -> None:
    """Compute the due date of every step for a goal date."""
    _check_format(format, "E_SCHEDULE_UNKNOWN_FORMAT")
    goal = _parse_date_or_exit(goal_date, "goal_date")
    cfg, calendar = _runtime(config, holidays)
    template = _template_or_exit(path, format=format, command="schedule")

    result = compute_schedule(
        goal, template.steps, calendar, zero_offset_direction=cfg.zero_offset_direction
    )
    computed = result.steps
    warnings = [*result.warnings, *check_schedule(result)]
    critical = find_critical_path(result, calendar)
    names = {s.id: s.name for s in template.steps}

    if format == "json":
        payload = {
            "tool": "scheduler",
            "command": "schedule",
            "ok": True,
            "template_id": template.template_id,
            "goal_date": goal.isoformat(),
            "steps": [
                {
                    "step_id": c.step_id,
                    "name": names.get(c.step_id),
                    "due_date": c.due_date.isoformat(),
                    "start_date": c.start_date.isoformat() if c.start_date else None,
                    "anchor_date": c.anchor_date_used.isoformat(),
                    "depends_on": list(c.resolved_dependencies),
                }
                for c in computed
            ],
            "critical_path": critical,
            "warnings": [{"code": w.code, "message": w.message, "step_id": w.step_id} for w in warnings],
        }
        typer.echo(json.dumps(payload, indent=2, sort_keys=True))
        return

    typer.echo(f"Goal: {goal.isoformat()}")
    for c in computed:
        label = f" {names[c.step_id]}" if names.get(c.step_id) else ""
        mark = " *" if c.step_id in critical else ""
        typer.echo(f"- {c.step_id}{label}: {c.due_date.isoformat()}{mark}")
    for w in warnings:
        typer.echo(f"WARN: {w}", err=True)


@app.command("case-new")
def case_new(
    path: str = typer.Argument(..., help="Path to a template file"),
    goal_date: str = typer.Option(..., "--goal-date", help="Goal date (YYYY-MM-DD)"),
    case_id: str = typer.Option(..., "--case-id", help="Identifier for the new case"),
    out: str = typer.Option(..., "--out", help="Path to write the case YAML"),
    title: Optional[str] = typer.Option(None, "--title"),
    config: Optional[str] = typer.Option(None, "--config", help=CONFIG_HELP),
    holidays: Optional[str] = typer.Option(None, "--holidays", help=HOLIDAYS_HELP),
) -> None:
    """Instantiate a case from a template with its initial schedule."""
    goal = _parse_date_or_exit(goal_date, "goal_date")
    cfg, calendar = _runtime(config, holidays)
    template = _template_or_exit(path, format="text", command="case-new")

    engine = ReplanEngine(InMemoryCaseRepository([template]), LoggingNotificationSink(), calendar, cfg)
    computed = engine.compute_initial_schedule(template.template_id, goal)

    store = YamlCaseStore(out)
    try:
        store.create(case_id=case_id, template_path=path, goal_date=goal, schedule=computed, title=title)
    except FileExistsError as e:
        _print_errors([TemplateLoadError(code="E_CASE_EXISTS", message=str(e), file=out, path="out")])
        raise typer.Exit(code=1)

    typer.echo(f"OK: wrote {out} ({len(computed)} steps, goal {goal.isoformat()})")


@app.command("replan")
def replan(
    case_path: str = typer.Argument(..., help="Path to a case YAML file"),
    goal_date: str = typer.Option(..., "--goal-date", help="New goal date (YYYY-MM-DD)"),
    apply: bool = typer.Option(False, "--apply", help="Write the new schedule (default: preview only)"),
    config: Optional[str] = typer.Option(None, "--config", help=CONFIG_HELP),
    holidays: Optional[str] = typer.Option(None, "--holidays", help=HOLIDAYS_HELP),
    format: str = typer.Option("text", "--format", help="Output format: text|json"),
) -> None:
    """Preview (or apply) a replan of a case for a new goal date. Locked steps keep their dates."""
    _check_format(format, "E_REPLAN_UNKNOWN_FORMAT")
    goal = _parse_date_or_exit(goal_date, "goal_date")
    cfg, calendar = _runtime(config, holidays)

    store = YamlCaseStore(case_path)
    try:
        case = store.read_case()
        engine = ReplanEngine(store, LoggingNotificationSink(), calendar, cfg)
        attempt = engine.request_replan(case.id, goal)
        entries = attempt.preview()
        if apply:
            attempt.apply()
    except TemplateLoadError as e:
        _print_errors([e])
        raise typer.Exit(code=1)
    except ScheduleError as e:
        _print_errors([e])
        raise typer.Exit(code=2)

    changed = sum(1 for e in entries if e.changed)
    if format == "json":
        payload = {
            "tool": "scheduler",
            "command": "replan",
            "ok": True,
            "case_id": case.id,
            "previous_goal_date": case.goal_date.isoformat(),
            "goal_date": goal.isoformat(),
            "applied": apply,
            "changed_count": changed,
            "diff": [_diff_item(e) for e in entries],
        }
        typer.echo(json.dumps(payload, indent=2, sort_keys=True))
        return

    typer.echo(f"Case {case.id}: goal {case.goal_date.isoformat()} -> {goal.isoformat()}")
    for e in entries:
        typer.echo(_diff_line(e))
    verb = "applied" if apply else "preview"
    typer.echo(f"{verb}: {changed} of {len(entries)} steps change")


@app.command("lock")
def lock(
    case_path: str = typer.Argument(..., help="Path to a case YAML file"),
    step_id: str = typer.Argument(..., help="Step instance id"),
) -> None:
    """Lock a step so replans never overwrite its due date."""
    _set_locked(case_path, step_id, True)


@app.command("unlock")
def unlock(
    case_path: str = typer.Argument(..., help="Path to a case YAML file"),
    step_id: str = typer.Argument(..., help="Step instance id"),
) -> None:
    """Unlock a step."""
    _set_locked(case_path, step_id, False)


@app.command("holidays")
def holidays_list(
    config: Optional[str] = typer.Option(None, "--config", help=CONFIG_HELP),
    holidays: Optional[str] = typer.Option(None, "--holidays", help=HOLIDAYS_HELP),
) -> None:
    """List holidays in effect."""
    _, calendar = _runtime(config, holidays)
    typer.echo("Holidays:")
    for d in sorted(calendar.holidays):
        typer.echo(f"- {d.isoformat()}")


@app.command("holiday-add")
def holiday_add(
    day: str = typer.Argument(..., help="Holiday date (YYYY-MM-DD)"),
    name: Optional[str] = typer.Option(None, "--name"),
    country: Optional[str] = typer.Option(None, "--country"),
    config: Optional[str] = typer.Option(None, "--config", help=CONFIG_HELP),
    holidays: Optional[str] = typer.Option(None, "--holidays", help=HOLIDAYS_HELP),
) -> None:
    """Add a holiday to the holiday file."""
    d = _parse_date_or_exit(day, "date")
    source = _holiday_file_or_exit(config, holidays)
    entries = [h for h in _load_holidays_or_exit(source) if not (h.date == d and h.country_code == country)]
    entries.append(Holiday(date=d, name=name, country_code=country))
    source.save(entries)
    typer.echo(f"OK: added {d.isoformat()} to {source.path}")


@app.command("holiday-remove")
def holiday_remove(
    day: str = typer.Argument(..., help="Holiday date (YYYY-MM-DD)"),
    config: Optional[str] = typer.Option(None, "--config", help=CONFIG_HELP),
    holidays: Optional[str] = typer.Option(None, "--holidays", help=HOLIDAYS_HELP),
) -> None:
    """Remove a holiday (all countries) from the holiday file."""
    d = _parse_date_or_exit(day, "date")
    source = _holiday_file_or_exit(config, holidays)
    entries = _load_holidays_or_exit(source)
    kept = [h for h in entries if h.date != d]
    if len(kept) == len(entries):
        _print_errors(
            [
                TemplateValidationError(
                    code="E_HOLIDAY_NOT_FOUND",
                    message=f"no holiday on {d.isoformat()}",
                    file=str(source.path),
                    path="holidays",
                )
            ]
        )
        raise typer.Exit(code=2)
    source.save(kept)
    typer.echo(f"OK: removed {d.isoformat()} from {source.path}")


def _set_locked(case_path: str, step_id: str, locked: bool) -> None:
    store = YamlCaseStore(case_path)
    try:
        case = store.read_case()
        inst = store.set_locked(case.id, step_id, locked)
    except StepInstanceNotFoundError as e:
        _print_errors([e])
        raise typer.Exit(code=2)
    except ScheduleError as e:
        _print_errors([e])
        raise typer.Exit(code=1)
    state = "locked" if inst.locked else "unlocked"
    typer.echo(f"OK: {inst.id} {state}")


def _runtime(config_path: Optional[str], holidays: Optional[str]) -> tuple[SchedulerConfig, BusinessCalendar]:
    try:
        cfg = with_overrides(load_config(config_path), holidays_file=holidays)
    except FileNotFoundError:
        _print_errors(
            [
                TemplateLoadError(
                    code="E_CONFIG_FILE_NOT_FOUND",
                    message=f"config file not found: {config_path or os.getenv('SCHEDULER_CONFIG')}",
                    path="config",
                )
            ]
        )
        raise typer.Exit(code=1)
    except ConfigError as e:
        _print_errors([TemplateValidationError(code="E_CONFIG_INVALID", message=str(e), path="config")])
        raise typer.Exit(code=2)

    source = None
    if cfg.holidays_file:
        source = YamlHolidaySource(cfg.holidays_file, country_code=cfg.country_code)
    try:
        calendar = build_calendar(source, weekend_days=cfg.weekend_days)
    except HolidayFileError as e:
        _print_errors([TemplateValidationError(code="E_HOLIDAY_FILE_INVALID", message=str(e), path="holidays")])
        raise typer.Exit(code=2)
    return cfg, calendar


def _holiday_file_or_exit(config_path: Optional[str], holidays: Optional[str]) -> YamlHolidaySource:
    cfg, _ = _runtime(config_path, holidays)
    if not cfg.holidays_file:
        _print_errors(
            [
                TemplateValidationError(
                    code="E_NO_HOLIDAY_FILE",
                    message="no holiday file: pass --holidays or set holidays_file in the config",
                    path="holidays",
                )
            ]
        )
        raise typer.Exit(code=2)
    return YamlHolidaySource(cfg.holidays_file)


def _load_holidays_or_exit(source: YamlHolidaySource) -> list[Holiday]:
    try:
        return source.load()
    except HolidayFileError as e:
        _print_errors([TemplateValidationError(code="E_HOLIDAY_FILE_INVALID", message=str(e), path="holidays")])
        raise typer.Exit(code=2)


def _template_or_exit(path: str, *, format: str, command: str) -> ProcessTemplate:
    doc = _load_or_exit(path, format=format, command=command)
    template, errors = validate_template(doc)
    if errors or template is None:
        if format == "json":
            _emit_json(command, False, errors=errors, exit_code=2)
        _print_errors(errors)
        raise typer.Exit(code=2)
    return template


def _load_or_exit(path: str, *, format: str, command: str) -> dict[str, Any]:
    try:
        return load_template(path)
    except TemplateLoadError as e:
        if format == "json":
            _emit_json(command, False, errors=[e], exit_code=1)
        _print_errors([e])
        raise typer.Exit(code=1)


def _parse_date_or_exit(value: str, field: str) -> date:
    try:
        return coerce_date(value)
    except ValueError as e:
        _print_errors([TemplateValidationError(code="E_INVALID_DATE", message=str(e), path=field)])
        raise typer.Exit(code=2)


def _check_format(format: str, code: str) -> None:
    if format not in ("text", "json"):
        err = TemplateValidationError(
            code=code,
            message=f"unknown format: {format} (choose one of: text, json)",
            file=None,
            path="format",
        )
        _print_errors([err])
        raise typer.Exit(code=2)


def _emit_json(
    command: str,
    ok: bool,
    *,
    errors: list[ScheduleError],
    exit_code: int,
    summary: dict | None = None,
) -> None:
    def _to_item(e: ScheduleError) -> dict:
        if isinstance(e, TemplateLoadError):
            source = "load"
        elif e.code.startswith("L_"):
            source = "lint"
        else:
            source = "validate"
        return {
            "code": e.code,
            "message": e.message,
            "file": e.file,
            "path": e.path,
            "severity": "error",
            "source": source,
        }

    payload = {
        "tool": "scheduler",
        "command": command,
        "ok": ok,
        "error_count": len(errors),
        "errors": [_to_item(e) for e in errors],
        "summary": summary,
    }
    typer.echo(json.dumps(payload, indent=2, sort_keys=True))
    raise typer.Exit(code=exit_code)


def _diff_item(e: ReplanDiffEntry) -> dict[str, Any]:
    return {
        "step_id": e.step_id,
        "template_step_id": e.template_step_id,
        "previous_due_date": e.previous_due_date.isoformat() if e.previous_due_date else None,
        "proposed_due_date": e.proposed_due_date.isoformat() if e.proposed_due_date else None,
        "previous_start_date": e.previous_start_date.isoformat() if e.previous_start_date else None,
        "proposed_start_date": e.proposed_start_date.isoformat() if e.proposed_start_date else None,
        "changed": e.changed,
        "locked": e.locked,
    }


def _diff_line(e: ReplanDiffEntry) -> str:
    prev = e.previous_due_date.isoformat() if e.previous_due_date else "-"
    new = e.proposed_due_date.isoformat() if e.proposed_due_date else "-"
    if e.locked:
        return f"  {e.step_id}: {prev} (locked)"
    if not e.changed:
        return f"  {e.step_id}: {prev} (unchanged)"
    if e.previous_due_date == e.proposed_due_date:
        start = e.proposed_start_date.isoformat() if e.proposed_start_date else "-"
        return f"  {e.step_id}: {prev} (start -> {start})"
    return f"  {e.step_id}: {prev} -> {new}"


def _print_errors(errors: list[ScheduleError]) -> None:
    errors_sorted = sorted(errors, key=lambda e: (e.file or "", e.path or "", e.code))
    for e in errors_sorted:
        typer.echo(str(e), err=True)


def main() -> None:
    app(prog_name="scheduler")


cli = typer.main.get_command(app)

if __name__ == "__main__":
    main()

import logging
from datetime import date, timedelta

import pytest

from process_scheduler.core.calendar.business_calendar import BusinessCalendar
from process_scheduler.core.config import SchedulerConfig
from process_scheduler.core.errors import (
    CaseNotFoundError,
    ConcurrentModificationError,
    ReplanStateError,
    StepInstanceNotFoundError,
)
from process_scheduler.core.io.load_template import load_template
from process_scheduler.core.model import CaseRecord, DueDateUpdate, ReplanBatch, StepInstance
from process_scheduler.core.replan.engine import ReplanEngine, ReplanState
from process_scheduler.core.replan.memory import InMemoryCaseRepository, RecordingNotificationSink
from process_scheduler.core.schedule.calculate_schedule import compute_schedule
from process_scheduler.core.validate.validate_template import parse_template


OLD_GOAL = date(2025, 12, 31)
NEW_GOAL = date(2026, 1, 15)


def _setup(repo_cls=InMemoryCaseRepository, config=None, calendar=None):
    template = parse_template(load_template("examples/process-basic.yaml"))
    repo = repo_cls([template])
    sink = RecordingNotificationSink()
    engine = ReplanEngine(repo, sink, calendar or BusinessCalendar(), config)
    initial = engine.compute_initial_schedule("basic", OLD_GOAL)
    repo.add_case(
        CaseRecord(id="C1", template_id="basic", goal_date=OLD_GOAL),
        [
            StepInstance(
                id=f"C1-{s.step_id}",
                template_step_id=s.step_id,
                due_date=s.due_date,
                start_date=s.start_date,
            )
            for s in initial
        ],
    )
    return engine, repo, sink


def _by_template_step(entries):
    return {e.template_step_id: e for e in entries}


def test_compute_initial_schedule():
    engine, _, _ = _setup()
    steps = engine.compute_initial_schedule("basic", OLD_GOAL)
    assert [(s.step_id, s.due_date) for s in steps] == [
        ("S1", date(2025, 12, 17)),
        ("S2", date(2025, 12, 22)),
        ("S3", date(2025, 12, 24)),
    ]


def test_compute_initial_schedule_unknown_template():
    engine, _, _ = _setup()
    with pytest.raises(KeyError):
        engine.compute_initial_schedule("nope", OLD_GOAL)


def test_preview_without_locks_moves_every_step():
    engine, repo, sink = _setup()
    diff = _by_template_step(engine.preview_replan("C1", NEW_GOAL))
    assert diff["S1"].previous_due_date == date(2025, 12, 17)
    assert diff["S1"].proposed_due_date == date(2026, 1, 1)
    assert diff["S2"].proposed_due_date == date(2026, 1, 6)
    assert diff["S3"].proposed_due_date == date(2026, 1, 8)
    assert all(e.changed and not e.locked for e in diff.values())
    # Preview writes nothing.
    assert repo.load_case("C1").version == 1
    assert repo.load_step_instances("C1")[0].due_date == date(2025, 12, 17)
    assert sink.events == []


def test_preview_reports_start_dates():
    engine, _, _ = _setup()
    diff = _by_template_step(engine.preview_replan("C1", NEW_GOAL))
    assert (diff["S1"].previous_start_date, diff["S1"].proposed_start_date) == (
        date(2025, 12, 4),
        date(2025, 12, 19),
    )
    assert (diff["S2"].previous_start_date, diff["S2"].proposed_start_date) == (
        date(2025, 12, 18),
        date(2026, 1, 2),
    )
    assert diff["S3"].proposed_start_date == date(2026, 1, 7)


def test_preview_is_idempotent():
    engine, _, _ = _setup()
    assert engine.preview_replan("C1", NEW_GOAL) == engine.preview_replan("C1", NEW_GOAL)


def test_same_goal_changes_nothing():
    engine, _, _ = _setup()
    assert not any(e.changed for e in engine.preview_replan("C1", OLD_GOAL))


def test_locked_step_keeps_date_and_successors_use_recomputed_date():
    engine, repo, _ = _setup()
    repo.set_due_date("C1", "C1-S2", date(2025, 12, 26))
    repo.set_locked("C1", "C1-S2", True)

    diff = _by_template_step(engine.preview_replan("C1", NEW_GOAL))
    assert diff["S2"].locked is True
    assert diff["S2"].changed is False
    assert diff["S2"].proposed_due_date == date(2025, 12, 26)
    assert diff["S2"].proposed_start_date == date(2025, 12, 18)
    assert diff["S3"].proposed_due_date == date(2026, 1, 8)
    assert diff["S1"].changed and diff["S3"].changed


def test_locked_step_date_feeds_successors_when_configured():
    engine, repo, _ = _setup(config=SchedulerConfig(lock_propagation="locked"))
    repo.set_due_date("C1", "C1-S2", date(2025, 12, 26))
    repo.set_locked("C1", "C1-S2", True)

    diff = _by_template_step(engine.preview_replan("C1", NEW_GOAL))
    assert diff["S2"].proposed_due_date == date(2025, 12, 26)
    assert diff["S3"].proposed_due_date == date(2025, 12, 30)


def test_apply_writes_changes_and_notifies():
    engine, repo, sink = _setup()
    repo.set_locked("C1", "C1-S2", True)
    assert repo.load_case("C1").version == 2

    updated = engine.apply_replan("C1", NEW_GOAL)
    assert [(i.id, i.due_date, i.start_date) for i in updated] == [
        ("C1-S1", date(2026, 1, 1), date(2025, 12, 19)),
        ("C1-S2", date(2025, 12, 22), date(2025, 12, 18)),
        ("C1-S3", date(2026, 1, 8), date(2026, 1, 7)),
    ]
    case = repo.load_case("C1")
    assert case.goal_date == NEW_GOAL
    assert case.version == 3
    assert repo.load_step_instances("C1") == updated

    assert [(e.kind, e.step_id) for e in sink.events] == [
        ("step_rescheduled", "C1-S1"),
        ("step_rescheduled", "C1-S3"),
        ("case_replanned", None),
    ]
    assert sink.events[0].old_date == date(2025, 12, 17)
    assert sink.events[0].new_date == date(2026, 1, 1)


def test_apply_twice_is_idempotent():
    engine, repo, sink = _setup()
    first = engine.apply_replan("C1", NEW_GOAL)

    assert not any(e.changed for e in engine.preview_replan("C1", NEW_GOAL))
    events_before = len(sink.events)
    second = engine.apply_replan("C1", NEW_GOAL)

    assert second == first
    assert [e.kind for e in sink.events[events_before:]] == ["case_replanned"]


def test_apply_with_nothing_to_change_still_bumps_goal():
    engine, repo, sink = _setup()
    engine.apply_replan("C1", OLD_GOAL)
    assert [e.kind for e in sink.events] == ["case_replanned"]
    assert repo.load_case("C1").version == 2


def test_unknown_case():
    engine, _, _ = _setup()
    with pytest.raises(CaseNotFoundError) as ei:
        engine.preview_replan("missing", NEW_GOAL)
    assert ei.value.code == "E_CASE_NOT_FOUND"
    with pytest.raises(CaseNotFoundError):
        engine.apply_replan("missing", NEW_GOAL)


class RacingRepository(InMemoryCaseRepository):
    """Simulates another writer committing between the read and the write."""

    def load_step_instances(self, case_id):
        out = super().load_step_instances(case_id)
        case = self.load_case(case_id)
        self.save_step_instance_due_dates(case_id, [], expected_version=case.version)
        return out


def test_concurrent_modification_is_rejected_without_partial_writes():
    engine, repo, sink = _setup(repo_cls=RacingRepository)
    before = InMemoryCaseRepository.load_step_instances(repo, "C1")
    with pytest.raises(ConcurrentModificationError) as ei:
        engine.apply_replan("C1", NEW_GOAL)
    assert ei.value.code == "E_CONCURRENT_MODIFICATION"
    assert InMemoryCaseRepository.load_step_instances(repo, "C1") == before
    assert repo.load_case("C1").goal_date == OLD_GOAL
    assert sink.events == []


class LockDuringApplyRepository(InMemoryCaseRepository):
    """A user pins and locks C1-S2 after the engine has read the instances."""

    raced = False

    def load_step_instances(self, case_id):
        out = super().load_step_instances(case_id)
        if not self.raced:
            self.raced = True
            self.set_due_date(case_id, "C1-S2", date(2025, 12, 26))
            self.set_locked(case_id, "C1-S2", True)
        return out


def test_lock_placed_during_apply_is_never_overwritten():
    engine, repo, sink = _setup(repo_cls=LockDuringApplyRepository)
    with pytest.raises(ConcurrentModificationError):
        engine.apply_replan("C1", NEW_GOAL)

    s2 = InMemoryCaseRepository.load_step_instances(repo, "C1")[1]
    assert (s2.due_date, s2.locked) == (date(2025, 12, 26), True)
    assert sink.events == []

    # Retrying against fresh data honors the lock.
    updated = engine.apply_replan("C1", NEW_GOAL)
    assert updated[1].due_date == date(2025, 12, 26)


def test_manual_edits_bump_version():
    _, repo, _ = _setup()
    repo.set_due_date("C1", "C1-S1", date(2025, 12, 10))
    repo.set_locked("C1", "C1-S1", True)
    assert repo.load_case("C1").version == 3
    with pytest.raises(StepInstanceNotFoundError):
        repo.set_locked("C1", "C1-NOPE", True)


def test_replan_batch_commits_goal_and_dates_together():
    _, repo, _ = _setup()
    batch = ReplanBatch(
        case_id="C1",
        goal_date=NEW_GOAL,
        expected_version=1,
        updates=(DueDateUpdate("C1-S1", date(2026, 1, 1), start_date=date(2025, 12, 19)),),
    )
    repo.save_replan_batch(batch)
    case = repo.load_case("C1")
    assert (case.goal_date, case.version) == (NEW_GOAL, 2)
    s1 = repo.load_step_instances("C1")[0]
    assert (s1.due_date, s1.start_date) == (date(2026, 1, 1), date(2025, 12, 19))

    with pytest.raises(ConcurrentModificationError):
        repo.save_replan_batch(batch)


def test_replan_batch_with_unknown_step_writes_nothing():
    _, repo, _ = _setup()
    batch = ReplanBatch(
        case_id="C1",
        goal_date=NEW_GOAL,
        expected_version=1,
        updates=(DueDateUpdate("C1-S1", date(2026, 1, 1)), DueDateUpdate("C1-GONE", date(2026, 1, 2))),
    )
    with pytest.raises(StepInstanceNotFoundError) as ei:
        repo.save_replan_batch(batch)
    assert ei.value.code == "E_UNKNOWN_STEP"
    assert ei.value.step_ids == ("C1-GONE",)
    case = repo.load_case("C1")
    assert (case.goal_date, case.version) == (OLD_GOAL, 1)
    assert repo.load_step_instances("C1")[0].due_date == date(2025, 12, 17)


def test_instance_with_missing_template_step_is_skipped(caplog):
    caplog.set_level(logging.WARNING, logger="process_scheduler")
    engine, repo, _ = _setup()
    case = repo.load_case("C1")
    repo.add_case(case, [*repo.load_step_instances("C1"), StepInstance(id="C1-X", template_step_id="GONE", due_date=None)])
    diff = engine.preview_replan("C1", NEW_GOAL)
    assert [e.step_id for e in diff] == ["C1-S1", "C1-S2", "C1-S3"]
    assert "GONE" in caplog.text


def test_holiday_changes_between_calls_are_picked_up():
    calendar = BusinessCalendar()
    engine, _, _ = _setup(calendar=calendar)
    calendar.add_holiday(date(2026, 1, 1))
    diff = _by_template_step(engine.preview_replan("C1", NEW_GOAL))
    assert diff["S1"].proposed_due_date == date(2025, 12, 31)


def test_due_dates_always_land_on_business_days():
    start = date(2025, 10, 1)
    days = [start + timedelta(days=i) for i in range(150)]
    # Every third day a holiday, on top of weekends.
    calendar = BusinessCalendar([d for i, d in enumerate(days) if i % 3 == 0])
    steps = parse_template(load_template("examples/process-sales.yaml")).steps

    for goal in days[60:120]:
        result = compute_schedule(goal, steps, calendar)
        for s in result.steps:
            assert calendar.is_business_day(s.due_date), (goal, s)


def test_attempt_lifecycle():
    engine, repo, _ = _setup()
    attempt = engine.request_replan("C1", NEW_GOAL)
    assert attempt.state is ReplanState.REQUESTED

    with pytest.raises(ReplanStateError):
        attempt.apply()

    entries = attempt.preview()
    assert attempt.state is ReplanState.PREVIEWED
    assert len(entries) == 3
    attempt.preview()

    attempt.apply()
    assert attempt.state is ReplanState.APPLIED
    assert repo.load_case("C1").goal_date == NEW_GOAL

    with pytest.raises(ReplanStateError) as ei:
        attempt.discard()
    assert ei.value.code == "E_REPLAN_STATE"


def test_discarded_attempt_cannot_be_applied():
    engine, repo, _ = _setup()
    attempt = engine.request_replan("C1", NEW_GOAL)
    attempt.preview()
    attempt.discard()
    assert attempt.state is ReplanState.DISCARDED
    with pytest.raises(ReplanStateError):
        attempt.apply()
    assert repo.load_case("C1").version == 1


def test_goal_date_type_is_checked():
    engine, _, _ = _setup()
    with pytest.raises(TypeError):
        engine.request_replan("C1", "2026-01-15")

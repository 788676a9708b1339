from process_scheduler.core.io.load_template import load_template
from process_scheduler.core.lint.lint_template import lint_template


def test_lint_clean_template():
    assert lint_template(load_template("examples/process-sales.yaml")) == []


def test_lint_warnings_fixture():
    errors = lint_template(load_template("examples/lint-warnings.yaml"))
    assert {(e.code, e.path) for e in errors} == {
        ("L_NO_PREVIOUS_STEP", "steps[0].basis"),
        ("L_GOAL_STEP_AFTER_GOAL", "steps[1].offset_days"),
        ("L_NEGATIVE_PREVIOUS_OFFSET", "steps[2].offset_days"),
    }


def test_lint_duplicate_sequence():
    doc = {
        "steps": [
            {"id": "A", "sequence": 1, "basis": "goal", "offset_days": -2},
            {"id": "B", "sequence": 1, "basis": "goal", "offset_days": -1},
        ]
    }
    errors = lint_template(doc)
    assert [(e.code, e.path) for e in errors] == [("L_DUPLICATE_SEQUENCE", "steps[1].sequence")]


def test_lint_detects_each_cycle_once():
    doc = {
        "steps": [
            {"id": "A", "sequence": 1, "basis": "prev", "offset_days": 1, "depends_on": ["B"]},
            {"id": "B", "sequence": 2, "basis": "prev", "offset_days": 1, "depends_on": ["A"]},
            {"id": "C", "sequence": 3, "basis": "prev", "offset_days": 1, "depends_on": ["D"]},
            {"id": "D", "sequence": 4, "basis": "prev", "offset_days": 1, "depends_on": ["C"]},
        ]
    }
    cycles = [e for e in lint_template(doc) if e.code == "L_CYCLE_DETECTED"]
    assert len(cycles) == 2


def test_lint_ignores_bad_shape():
    assert lint_template({"steps": "nope"}) == []

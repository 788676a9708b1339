from pathlib import Path

import pytest

from process_scheduler.core.config import (
    CONFIG_ENV_VAR,
    ConfigError,
    SchedulerConfig,
    load_config,
    load_config_file,
    with_overrides,
)
from process_scheduler.core.model import Direction


def test_defaults():
    cfg = load_config()
    assert cfg == SchedulerConfig()
    assert cfg.weekend_days == frozenset({5, 6})
    assert cfg.zero_offset_direction is Direction.FORWARD
    assert cfg.lock_propagation == "recomputed"


def test_load_example_config():
    cfg = load_config_file("examples/scheduler-config.yaml")
    assert Path(cfg.holidays_file) == Path("examples") / "holidays.yaml"
    assert cfg.country_code == "JP"
    assert cfg.weekend_days == frozenset({5, 6})


def test_env_var_is_used(monkeypatch):
    monkeypatch.setenv(CONFIG_ENV_VAR, "examples/scheduler-config.yaml")
    assert load_config().country_code == "JP"


def test_explicit_path_wins_over_env(monkeypatch, tmp_path):
    p = tmp_path / "c.yaml"
    p.write_text("country_code: US\n", encoding="utf-8")
    monkeypatch.setenv(CONFIG_ENV_VAR, "examples/scheduler-config.yaml")
    assert load_config(str(p)).country_code == "US"


def test_weekend_days_by_name_or_number(tmp_path):
    p = tmp_path / "c.yaml"
    p.write_text("weekend_days: [Friday, 5]\nzero_offset_direction: backward\nlock_propagation: locked\n", encoding="utf-8")
    cfg = load_config_file(p)
    assert cfg.weekend_days == frozenset({4, 5})
    assert cfg.zero_offset_direction is Direction.BACKWARD
    assert cfg.lock_propagation == "locked"


def test_empty_file_gives_defaults(tmp_path):
    p = tmp_path / "c.yaml"
    p.write_text("", encoding="utf-8")
    assert load_config_file(p) == SchedulerConfig()


@pytest.mark.parametrize(
    "body",
    [
        "unknown_key: 1\n",
        "zero_offset_direction: sideways\n",
        "lock_propagation: sometimes\n",
        "weekend_days: [funday]\n",
        "weekend_days: [mon, tue, wed, thu, fri, sat, sun]\n",
        "- not a mapping\n",
        "weekend_days: [sat, sun\n",
    ],
)
def test_invalid_config(tmp_path, body):
    p = tmp_path / "c.yaml"
    p.write_text(body, encoding="utf-8")
    with pytest.raises(ConfigError):
        load_config_file(p)


def test_missing_file_raises():
    with pytest.raises(FileNotFoundError):
        load_config("examples/no-such-config.yaml")


def test_with_overrides_ignores_none():
    cfg = with_overrides(SchedulerConfig(country_code="JP"), holidays_file="h.yaml", country_code=None)
    assert cfg.holidays_file == "h.yaml"
    assert cfg.country_code == "JP"

from __future__ import annotations

import os
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any, Literal, Optional

import yaml

from process_scheduler.core.calendar.business_calendar import DEFAULT_WEEKEND_DAYS
from process_scheduler.core.model import Direction


CONFIG_ENV_VAR = "SCHEDULER_CONFIG"

LockPropagation = Literal["recomputed", "locked"]
ALLOWED_LOCK_PROPAGATION: set[str] = {"recomputed", "locked"}

WEEKDAY_NAMES: dict[str, int] = {
    "mon": 0,
    "tue": 1,
    "wed": 2,
    "thu": 3,
    "fri": 4,
    "sat": 5,
    "sun": 6,
}


class ConfigError(ValueError):
    pass


@dataclass(frozen=True)
class SchedulerConfig:
    holidays_file: Optional[str] = None
    country_code: Optional[str] = None
    weekend_days: frozenset[int] = DEFAULT_WEEKEND_DAYS
    # Rounding applied when a zero offset lands on a non-business day.
    zero_offset_direction: Direction = Direction.FORWARD
    # "recomputed": successors of a locked step see its recomputed date.
    # "locked": successors see the locked step's stored date.
    lock_propagation: LockPropagation = "recomputed"


def load_config_file(path: str | Path) -> SchedulerConfig:
    """Load a YAML config file.

    Format (all keys optional):
      holidays_file: holidays.yaml
      country_code: JP
      weekend_days: [sat, sun]
      zero_offset_direction: forward|backward
      lock_propagation: recomputed|locked

    A relative holidays_file is resolved against the config file's directory.
    """
    p = Path(path)
    try:
        raw = yaml.safe_load(p.read_text(encoding="utf-8"))
    except yaml.YAMLError as e:
        raise ConfigError(f"{p}: invalid YAML: {e}") from e
    if raw is None:
        return SchedulerConfig()
    if not isinstance(raw, dict):
        raise ConfigError("config file must be a mapping")
    return _parse(raw, base_dir=p.parent)


def load_config(path: str | None = None) -> SchedulerConfig:
    """Explicit path first, then $SCHEDULER_CONFIG, then defaults."""
    chosen = path or os.getenv(CONFIG_ENV_VAR)
    if not chosen:
        return SchedulerConfig()
    return load_config_file(chosen)


def with_overrides(config: SchedulerConfig, **overrides: Any) -> SchedulerConfig:
    return replace(config, **{k: v for k, v in overrides.items() if v is not None})


def _parse(raw: dict[str, Any], *, base_dir: Path) -> SchedulerConfig:
    known = {
        "holidays_file",
        "country_code",
        "weekend_days",
        "zero_offset_direction",
        "lock_propagation",
    }
    unknown = sorted(set(map(str, raw.keys())) - known)
    if unknown:
        raise ConfigError(f"unknown config keys: {', '.join(unknown)}")

    holidays_file = raw.get("holidays_file")
    if holidays_file is not None:
        if not isinstance(holidays_file, str) or not holidays_file.strip():
            raise ConfigError("holidays_file must be a non-empty string")
        hp = Path(holidays_file)
        holidays_file = str(hp if hp.is_absolute() else base_dir / hp)

    country_code = raw.get("country_code")
    if country_code is not None and (not isinstance(country_code, str) or not country_code.strip()):
        raise ConfigError("country_code must be a non-empty string")

    weekend_days = DEFAULT_WEEKEND_DAYS
    if "weekend_days" in raw:
        weekend_days = _parse_weekend_days(raw["weekend_days"])

    direction_raw = raw.get("zero_offset_direction", Direction.FORWARD.value)
    try:
        direction = Direction(direction_raw)
    except ValueError:
        raise ConfigError(
            f"zero_offset_direction must be one of {[d.value for d in Direction]}"
        ) from None

    lock_propagation = raw.get("lock_propagation", "recomputed")
    if lock_propagation not in ALLOWED_LOCK_PROPAGATION:
        raise ConfigError(f"lock_propagation must be one of {sorted(ALLOWED_LOCK_PROPAGATION)}")

    return SchedulerConfig(
        holidays_file=holidays_file,
        country_code=country_code.strip() if isinstance(country_code, str) else None,
        weekend_days=weekend_days,
        zero_offset_direction=direction,
        lock_propagation=lock_propagation,
    )


def _parse_weekend_days(value: Any) -> frozenset[int]:
    if not isinstance(value, list):
        raise ConfigError("weekend_days must be a list of weekday names or numbers")
    out: set[int] = set()
    for item in value:
        if isinstance(item, str) and item.strip().lower()[:3] in WEEKDAY_NAMES:
            out.add(WEEKDAY_NAMES[item.strip().lower()[:3]])
        elif isinstance(item, int) and not isinstance(item, bool) and 0 <= item <= 6:
            out.add(item)
        else:
            raise ConfigError(f"invalid weekend day: {item!r}")
    if len(out) == 7:
        raise ConfigError("weekend_days cannot cover the whole week")
    return frozenset(out)

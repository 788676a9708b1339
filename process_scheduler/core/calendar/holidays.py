from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from pathlib import Path
from typing import Iterable, Optional

import yaml

from process_scheduler.core.io.dates import coerce_date


class HolidayFileError(ValueError):
    pass


@dataclass(frozen=True)
class Holiday:
    date: date
    name: Optional[str] = None
    country_code: Optional[str] = None


class StaticHolidaySource:
    def __init__(self, dates: Iterable[date] = ()) -> None:
        self._dates = sorted(set(dates))

    def list_holidays(self) -> list[date]:
        return list(self._dates)


class YamlHolidaySource:
    """Holidays kept in a YAML file.

    Format:
      holidays:
        - date: 2026-01-01
          name: New Year's Day
          country: JP

    A missing file means no holidays. With country_code set, entries tagged
    with a different country are skipped; untagged entries always apply.
    """

    def __init__(self, path: str | Path, country_code: Optional[str] = None) -> None:
        self.path = Path(path)
        self.country_code = country_code

    def load(self) -> list[Holiday]:
        if not self.path.exists():
            return []
        try:
            raw = yaml.safe_load(self.path.read_text(encoding="utf-8"))
        except yaml.YAMLError as e:
            raise HolidayFileError(f"{self.path}: invalid YAML: {e}") from e
        if raw is None:
            return []
        if not isinstance(raw, dict) or not isinstance(raw.get("holidays", []), list):
            raise HolidayFileError(f"{self.path}: expected a mapping with a 'holidays' list")

        out: list[Holiday] = []
        for i, item in enumerate(raw.get("holidays") or []):
            if isinstance(item, dict):
                value, name, country = item.get("date"), item.get("name"), item.get("country")
            else:
                value, name, country = item, None, None
            try:
                d = coerce_date(value)
            except ValueError as e:
                raise HolidayFileError(f"{self.path}: holidays[{i}]: {e}") from e
            if name is not None and not isinstance(name, str):
                raise HolidayFileError(f"{self.path}: holidays[{i}].name must be a string")
            if country is not None and not isinstance(country, str):
                raise HolidayFileError(f"{self.path}: holidays[{i}].country must be a string")
            out.append(Holiday(date=d, name=name, country_code=country))
        return out

    def list_holidays(self) -> list[date]:
        return sorted(
            {
                h.date
                for h in self.load()
                if self.country_code is None
                or h.country_code is None
                or h.country_code == self.country_code
            }
        )

    def save(self, holidays: Iterable[Holiday]) -> None:
        entries = []
        for h in sorted(holidays, key=lambda h: (h.date, h.country_code or "")):
            entry: dict[str, object] = {"date": h.date}
            if h.name:
                entry["name"] = h.name
            if h.country_code:
                entry["country"] = h.country_code
            entries.append(entry)
        if str(self.path.parent) not in (".", ""):
            self.path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.path, "w", encoding="utf-8") as f:
            yaml.safe_dump(
                {"holidays": entries}, f, sort_keys=False, default_flow_style=False, allow_unicode=True
            )

from __future__ import annotations

from datetime import date, datetime
from typing import Any


def coerce_date(value: Any) -> date:
    """Accept a YAML date or an ISO string (YYYY-MM-DD). Raises ValueError otherwise."""
    if isinstance(value, datetime):
        raise ValueError(f"expected a date without time, got {value.isoformat()}")
    if isinstance(value, date):
        return value
    if isinstance(value, str):
        try:
            return date.fromisoformat(value.strip())
        except ValueError:
            raise ValueError(f"invalid date (expected YYYY-MM-DD): {value!r}") from None
    raise ValueError(f"expected a date (YYYY-MM-DD), got {type(value).__name__}")

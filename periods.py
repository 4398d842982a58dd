import math
import re
from dataclasses import dataclass
from datetime import date, datetime, timezone
from typing import Any, Optional

_ISO_DATE_PREFIX = re.compile(r"^(\d{4}-\d{2}-\d{2})")


@dataclass(frozen=True)
class CycleWindow:
    start: date
    end: date

    def contains(self, target: date) -> bool:
        return self.start <= target <= self.end

    def key(self, tag: str) -> str:
        return f"{tag}|{self.start.isoformat()}"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def parse_iso_date(value: Any) -> Optional[date]:
    """Read a calendar date from a date, datetime or leading ``YYYY-MM-DD``.

    Anything else (including impossible dates such as ``2025-02-30``) yields
    ``None``.
    """
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str):
        match = _ISO_DATE_PREFIX.match(value.strip())
        if not match:
            return None
        try:
            return date.fromisoformat(match.group(1))
        except ValueError:
            return None
    return None


def parse_iso_datetime(value: Any) -> Optional[datetime]:
    if value is None:
        return None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, date):
        parsed = datetime(value.year, value.month, value.day)
    elif isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            day = parse_iso_date(text)
            if day is None:
                return None
            parsed = datetime(day.year, day.month, day.day)
    else:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def parse_amount(value: Any, fallback: float = 0.0) -> float:
    if isinstance(value, bool):
        return fallback
    try:
        numeric = float(value)
    except (TypeError, ValueError):
        return fallback
    if not math.isfinite(numeric):
        return fallback
    return numeric


def within(
    target: Optional[date], start: Optional[date], end: Optional[date]
) -> bool:
    if target is None:
        return False
    if start is not None and target < start:
        return False
    # end is inclusive: the last day of a cycle still belongs to it
    if end is not None and target > end:
        return False
    return True

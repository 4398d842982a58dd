from datetime import date, datetime, timedelta
from typing import Optional, Union
from zoneinfo import ZoneInfo

from config import get_settings
from models import FIXED_PERIOD_DAYS, MONTH_STEPS, RecurrenceCode
from periods import CycleWindow
from schemas import LedgerTransaction

CodeLike = Union[RecurrenceCode, str, None]

SCAN_LIMIT_DAYS = 365


def local_today() -> date:
    settings = get_settings()
    tz = ZoneInfo(settings.timezone)
    return datetime.now(tz).date()


def _code(value: CodeLike) -> Optional[RecurrenceCode]:
    if isinstance(value, RecurrenceCode):
        return value
    if not value:
        return None
    try:
        return RecurrenceCode(str(value).strip().upper())
    except ValueError:
        return None


def add_days(base: date, days: int) -> date:
    return base + timedelta(days=days)


def add_months(base: date, months: int) -> date:
    # Day-of-month overflow rolls into the following month (Jan 31 + 1 -> Mar 3).
    total_months = base.month - 1 + months
    year = base.year + total_months // 12
    month = total_months % 12 + 1
    return date(year, month, 1) + timedelta(days=base.day - 1)


def add_years(base: date, years: int) -> date:
    return date(base.year + years, base.month, 1) + timedelta(days=base.day - 1)


def _step(base: date, code: CodeLike, direction: int) -> date:
    rec = _code(code)
    if rec is None:
        return base
    if rec in FIXED_PERIOD_DAYS:
        return add_days(base, direction * FIXED_PERIOD_DAYS[rec])
    if rec in MONTH_STEPS:
        return add_months(base, direction * MONTH_STEPS[rec])
    return add_years(base, direction)


def next_from(occurrence: date, code: CodeLike) -> date:
    return _step(occurrence, code, 1)


def prev_from(occurrence: date, code: CodeLike) -> date:
    return _step(occurrence, code, -1)


def _same_day_of_month(base: date, target: date, month_interval: int) -> bool:
    if base.day != target.day:
        return False
    months_diff = (target.year - base.year) * 12 + (target.month - base.month)
    return months_diff % month_interval == 0


def occurs_on(master: LedgerTransaction, target: Optional[date]) -> bool:
    """Whether a recurring master produces an occurrence on ``target``."""
    if master is None or target is None:
        return False
    if target in master.exceptions:
        return False
    if master.recurrence_end is not None and target >= master.recurrence_end:
        return False
    rec = master.recurrence
    if rec is None or master.op_date is None:
        return False
    if target < master.op_date:
        return False

    diff_days = (target - master.op_date).days
    if rec in FIXED_PERIOD_DAYS:
        return diff_days % FIXED_PERIOD_DAYS[rec] == 0
    if rec in MONTH_STEPS:
        return _same_day_of_month(master.op_date, target, MONTH_STEPS[rec])
    if rec == RecurrenceCode.yearly:
        return (
            master.op_date.month == target.month and master.op_date.day == target.day
        )
    return False


def find_cycle_start_for(
    master: LedgerTransaction, target: Optional[date]
) -> Optional[date]:
    """Return the first day of the cycle of ``master`` that contains ``target``.

    Daily, weekly and bi-weekly masters are resolved arithmetically and never
    start before the master's own date. Every other code scans back at most
    ``SCAN_LIMIT_DAYS`` for the latest occurrence and gives ``None`` when the
    scan finds nothing.
    """
    if master is None or target is None or master.op_date is None:
        return None
    rec = master.recurrence
    if rec is None:
        return None
    base = master.op_date

    if rec in FIXED_PERIOD_DAYS:
        period = FIXED_PERIOD_DAYS[rec]
        remainder = (target - base).days % period
        start = target - timedelta(days=remainder)
        return base if start < base else start

    for offset in range(SCAN_LIMIT_DAYS + 1):
        candidate = target - timedelta(days=offset)
        if occurs_on(master, candidate):
            return candidate
    return None


def cycle_window_for(
    master: LedgerTransaction, target: Optional[date]
) -> Optional[CycleWindow]:
    start = find_cycle_start_for(master, target)
    if start is None:
        return None
    return CycleWindow(start, next_from(start, master.recurrence))

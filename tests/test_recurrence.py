from datetime import date

from models import RecurrenceCode
from periods import CycleWindow
from recurrence import (
    add_months,
    add_years,
    cycle_window_for,
    find_cycle_start_for,
    next_from,
    occurs_on,
    prev_from,
)
from schemas import LedgerTransaction


def _master(recurrence: str, op_date: str, **extra) -> LedgerTransaction:
    return LedgerTransaction.model_validate(
        {
            "id": "m1",
            "val": -500,
            "opDate": op_date,
            "recurrence": recurrence,
            "budgetTag": "#food",
            **extra,
        }
    )


def test_next_from_steps_each_code():
    base = date(2025, 1, 5)
    assert next_from(base, "D") == date(2025, 1, 6)
    assert next_from(base, "W") == date(2025, 1, 12)
    assert next_from(base, "BW") == date(2025, 1, 19)
    assert next_from(base, "M") == date(2025, 2, 5)
    assert next_from(base, "Q") == date(2025, 4, 5)
    assert next_from(base, "S") == date(2025, 7, 5)
    assert next_from(base, RecurrenceCode.yearly) == date(2026, 1, 5)


def test_unknown_code_keeps_date():
    base = date(2025, 1, 5)
    assert next_from(base, "X") == base
    assert prev_from(base, None) == base


def test_month_overflow_rolls_forward():
    assert add_months(date(2025, 1, 31), 1) == date(2025, 3, 3)
    assert add_years(date(2024, 2, 29), 1) == date(2025, 3, 1)
    assert add_months(date(2025, 1, 15), -1) == date(2024, 12, 15)


def test_weekly_cycle_start():
    master = _master("W", "2025-01-01")
    assert find_cycle_start_for(master, date(2025, 1, 20)) == date(2025, 1, 15)


def test_fixed_period_never_starts_before_master():
    master = _master("W", "2025-01-01")
    assert find_cycle_start_for(master, date(2024, 12, 30)) == date(2025, 1, 1)


def test_monthly_cycle_start_scans_back():
    master = _master("M", "2025-01-05")
    assert find_cycle_start_for(master, date(2025, 3, 10)) == date(2025, 3, 5)
    assert find_cycle_start_for(master, date(2025, 1, 4)) is None


def test_cycle_start_respects_exceptions_and_end():
    skipped = _master("M", "2025-01-05", exceptions=["2025-02-05"])
    assert find_cycle_start_for(skipped, date(2025, 2, 10)) == date(2025, 1, 5)

    ended = _master("M", "2025-01-05", recurrenceEnd="2025-03-01")
    assert find_cycle_start_for(ended, date(2025, 3, 10)) == date(2025, 2, 5)


def test_occurs_on_quarterly_and_yearly():
    quarterly = _master("Q", "2025-01-15")
    assert occurs_on(quarterly, date(2025, 4, 15))
    assert not occurs_on(quarterly, date(2025, 3, 15))
    assert not occurs_on(quarterly, date(2024, 10, 15))

    yearly = _master("Y", "2020-06-01")
    assert occurs_on(yearly, date(2024, 6, 1))
    assert find_cycle_start_for(yearly, date(2025, 1, 1)) == date(2024, 6, 1)


def test_cycle_window_is_inclusive_of_next_occurrence():
    master = _master("M", "2025-01-05")
    window = cycle_window_for(master, date(2025, 2, 20))
    assert window == CycleWindow(date(2025, 2, 5), date(2025, 3, 5))
    assert window.contains(date(2025, 3, 5))
    assert window.key("#food") == "#food|2025-02-05"

from datetime import date

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from database import Base
from models import BudgetStatus, BudgetType
from reservations import ReservationCalculator
from schemas import BudgetRecord, LedgerTransaction
from services import CycleLifecycleManager, UpsertContext, seed_initial_value
from storage import BudgetStore, LocalCache


def make_session():
    engine = create_engine(
        "sqlite+pysqlite:///:memory:", connect_args={"check_same_thread": False}
    )
    Base.metadata.create_all(engine)
    SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    return SessionLocal()


class Clock:
    def __init__(self, today: date) -> None:
        self.today = today

    def __call__(self) -> date:
        return self.today


def make_manager(today: date):
    clock = Clock(today)
    store = BudgetStore(LocalCache(make_session(), "test"), today_fn=clock)
    return CycleLifecycleManager(store), store, clock


MASTER = LedgerTransaction.model_validate(
    {
        "id": "m1",
        "val": -500,
        "opDate": "2025-01-05",
        "recurrence": "M",
        "budgetTag": "#food",
    }
)


def test_ensure_recurring_opens_current_cycle():
    manager, store, _ = make_manager(date(2025, 2, 5))
    assert manager.ensure_recurring_budgets([MASTER], date(2025, 2, 5)) == 1

    (budget,) = store.list_active_budgets()
    assert budget.budget_type == BudgetType.recurring
    assert budget.start_date == date(2025, 2, 5)
    assert budget.end_date == date(2025, 3, 5)
    assert budget.initial_value == 500
    assert budget.reserved_value == 500
    assert budget.trigger_tx_id == "m1"

    assert manager.ensure_recurring_budgets([MASTER], date(2025, 2, 5)) == 0
    assert len(store.load_budgets()) == 1


def test_ensure_recurring_rolls_to_next_cycle():
    manager, store, clock = make_manager(date(2025, 2, 5))
    manager.ensure_recurring_budgets([MASTER], date(2025, 2, 5))

    clock.today = date(2025, 3, 6)
    assert manager.ensure_recurring_budgets([MASTER], date(2025, 3, 6)) == 1

    budgets = store.load_budgets()
    active = [b for b in budgets if b.is_active]
    closed = [b for b in budgets if b.status == BudgetStatus.closed]
    assert [(b.start_date, b.end_date) for b in active] == [
        (date(2025, 3, 5), date(2025, 4, 5))
    ]
    assert [b.start_date for b in closed] == [date(2025, 2, 5)]


def test_ensure_skips_ended_recurrence():
    ended = MASTER.model_copy(update={"recurrence_end": date(2025, 1, 20)})
    manager, store, _ = make_manager(date(2025, 2, 10))
    assert manager.ensure_recurring_budgets([ended], date(2025, 2, 10)) == 0
    assert store.load_budgets() == []


def test_close_expired_keeps_end_day():
    manager, store, clock = make_manager(date(2025, 2, 5))
    manager.ensure_recurring_budgets([MASTER], date(2025, 2, 5))

    assert manager.close_expired_budgets([MASTER], date(2025, 3, 5)) == 0
    clock.today = date(2025, 3, 6)
    assert manager.close_expired_budgets([MASTER], date(2025, 3, 6)) == 1
    assert store.list_active_budgets() == []
    assert manager.close_expired_budgets([MASTER], date(2025, 3, 6)) == 0


def test_upsert_recurring_closes_previous_cycle():
    manager, store, _ = make_manager(date(2025, 2, 5))
    first = manager.upsert_budget_from_transaction(
        MASTER, UpsertContext(transactions=[MASTER], occurrence_date=date(2025, 2, 5))
    )
    assert first.changed
    assert first.budget.end_date == date(2025, 3, 5)
    assert first.budget.trigger_tx_iso == date(2025, 2, 5)

    second = manager.upsert_budget_from_transaction(
        MASTER,
        UpsertContext(
            transactions=[MASTER],
            occurrence_date=date(2025, 3, 5),
            next_occurrence_date=date(2025, 3, 5),
            today=date(2025, 3, 5),
        ),
    )
    assert second.budget.start_date == date(2025, 3, 5)
    assert second.budget.end_date == date(2025, 4, 5)

    statuses = {b.id: b.status for b in store.load_budgets()}
    assert statuses[first.budget.id] == BudgetStatus.closed
    assert statuses[second.budget.id] == BudgetStatus.active


def test_upsert_recurring_same_window_updates_in_place():
    manager, store, _ = make_manager(date(2025, 2, 5))
    context = UpsertContext(transactions=[MASTER], occurrence_date=date(2025, 2, 5))
    first = manager.upsert_budget_from_transaction(MASTER, context)
    second = manager.upsert_budget_from_transaction(MASTER, context)
    assert first.budget.id == second.budget.id
    assert len(store.load_budgets()) == 1


def test_upsert_ad_hoc_for_future_transaction():
    manager, store, _ = make_manager(date(2025, 2, 5))
    trip = {"id": "t1", "val": -200, "opDate": "2025-03-01", "budgetTag": "#trip"}
    outcome = manager.upsert_budget_from_transaction(
        trip, UpsertContext(transactions=[trip])
    )
    assert outcome.changed
    budget = outcome.budget
    assert budget.budget_type == BudgetType.ad_hoc
    assert (budget.start_date, budget.end_date) == (date(2025, 2, 5), date(2025, 3, 1))
    assert budget.initial_value == 200
    assert budget.reserved_value == 200

    extra = {"id": "t2", "val": -300, "opDate": "2025-03-10", "budgetTag": "#trip"}
    updated = manager.upsert_budget_from_transaction(
        extra, UpsertContext(transactions=[trip, extra])
    )
    assert updated.budget.id == budget.id
    assert updated.budget.end_date == date(2025, 3, 10)
    assert updated.budget.initial_value == 500
    assert len(store.list_active_budgets()) == 1


def test_upsert_ignores_past_and_untagged_transactions():
    manager, store, _ = make_manager(date(2025, 2, 5))
    past = {"id": "t1", "val": -20, "opDate": "2025-02-01", "budgetTag": "#trip"}
    untagged = {"id": "t2", "val": -20, "opDate": "2025-03-01"}

    assert not manager.upsert_budget_from_transaction(past).changed
    outcome = manager.upsert_budget_from_transaction(untagged)
    assert not outcome.changed
    assert outcome.budget is None
    assert store.load_budgets() == []


def test_seed_initial_value_counts_pending_entries():
    txs = [
        LedgerTransaction.model_validate(item)
        for item in (
            {"id": "a", "val": -10, "opDate": "2025-02-06", "budgetTag": "#food", "planned": True},
            {"id": "b", "val": -20, "opDate": "2025-02-10", "budgetTag": "#food"},
            {"id": "c", "val": -30, "opDate": "2025-03-05", "budgetTag": "#food"},
            {"id": "d", "val": -40, "opDate": "2025-03-01", "budgetTag": "#food"},
        )
    ]
    total = seed_initial_value(
        txs, "#food", date(2025, 2, 5), date(2025, 3, 5), today=date(2025, 2, 20)
    )
    # planned a, end-day c and future d; b already happened
    assert total == 10 + 30 + 40


def test_list_active_budgets_reads_store():
    manager, store, _ = make_manager(date(2025, 2, 5))
    store.save_budgets(
        [
            BudgetRecord(id="x", tag="#a", start_date=date(2025, 2, 1), end_date=date(2025, 2, 28)),
            BudgetRecord(id="y", tag="#b", status="closed"),
        ]
    )
    assert [b.id for b in manager.list_active_budgets()] == ["x"]


def test_spend_inside_cycle_reduces_reservation():
    manager, store, _ = make_manager(date(2025, 2, 5))
    manager.ensure_recurring_budgets([MASTER], date(2025, 2, 5))
    spend = LedgerTransaction.model_validate(
        {"id": "t1", "val": -120, "opDate": "2025-02-10", "budgetTag": "#food"}
    )

    (budget,) = ReservationCalculator(store).refresh_budget_cache([MASTER, spend])
    assert budget.spent_value == 120
    assert budget.reserved_value == 380


def test_posted_occurrence_on_cycle_start_is_not_spend():
    manager, store, _ = make_manager(date(2025, 2, 5))
    manager.ensure_recurring_budgets([MASTER], date(2025, 2, 5))
    occurrence = LedgerTransaction.model_validate(
        {"id": "m1_2025-02-05", "parentId": "m1", "val": -500, "opDate": "2025-02-05", "budgetTag": "#food"}
    )
    spend = LedgerTransaction.model_validate(
        {"id": "t1", "val": -120, "opDate": "2025-02-10", "budgetTag": "#food"}
    )

    (budget,) = ReservationCalculator(store).refresh_budget_cache([MASTER, occurrence, spend])
    assert budget.spent_value == 120
    assert budget.reserved_value == 380

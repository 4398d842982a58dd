from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence
from datetime import date
from enum import Enum
from typing import Any, Optional

from periods import within
from recurrence import find_cycle_start_for, next_from, prev_from
from schemas import BudgetRecord, LedgerTransaction, coerce_transactions
from storage import BudgetStore

logger = logging.getLogger(__name__)

CycleKey = tuple[str, Optional[date]]


def spent_no_periodo(
    transactions: Iterable[LedgerTransaction],
    tag: Optional[str],
    start: Optional[date],
    end: Optional[date],
    *,
    exclude_tx_id: Optional[str] = None,
    exclude_date: Optional[date] = None,
) -> float:
    """Sum what was actually spent against ``tag`` inside ``[start, end]``.

    Planned entries and materialization entries are not spending. The
    trigger transaction is skipped by id, and anything on ``exclude_date``
    is skipped too, which covers posted occurrences of a recurring trigger.
    """
    if not tag:
        return 0.0
    total = 0.0
    for tx in transactions:
        if tx.budget_tag != tag or tx.is_budget_materialization:
            continue
        if exclude_tx_id and tx.id == exclude_tx_id:
            continue
        tx_date = tx.effective_date
        if not within(tx_date, start, end):
            continue
        if exclude_date is not None and tx_date == exclude_date:
            continue
        if tx.planned:
            continue
        total += abs(tx.val)
    return total


def compute_initial_for_range(
    transactions: Iterable[LedgerTransaction],
    tag: Optional[str],
    start: Optional[date],
    end: Optional[date],
) -> float:
    if not tag:
        return 0.0
    return sum(
        abs(tx.val)
        for tx in transactions
        if tx.budget_tag == tag
        and not tx.is_budget_materialization
        and within(tx.effective_date, start, end)
    )


def recompute_budget(
    budget: Optional[BudgetRecord], transactions: Iterable[Any]
) -> Optional[BudgetRecord]:
    if budget is None:
        return None
    spent = spent_no_periodo(
        coerce_transactions(transactions),
        budget.tag,
        budget.start_date,
        budget.end_date,
        exclude_tx_id=budget.trigger_tx_id,
        exclude_date=budget.trigger_tx_iso,
    )
    reserved = max(budget.initial_value - spent, 0.0)
    return budget.model_copy(update={"spent_value": spent, "reserved_value": reserved})


def materialized_cycle_keys(transactions: Iterable[LedgerTransaction]) -> set[CycleKey]:
    keys: set[CycleKey] = set()
    for tx in transactions:
        if not tx.is_budget_materialization or not tx.budget_reserve_for:
            continue
        start = tx.effective_date
        if tx.budget_tag and start is not None:
            keys.add((tx.budget_tag, start))
    return keys


class ReservationStrategy(str, Enum):
    synthetic = "synthetic"
    materialized = "materialized"


class ReservationProvider:
    """Resolves how much one budget cycle holds back as of a target date.

    A cycle whose reserve entry already exists in the ledger uses the
    ``materialized`` strategy and contributes nothing here, since the ledger
    carries its effect. Every other cycle uses the ``synthetic`` strategy.
    Each cycle is counted at most once per provider.
    """

    def __init__(
        self,
        transactions: Sequence[LedgerTransaction],
        target: date,
        freeze_at: Optional[date] = None,
    ) -> None:
        self.transactions = transactions
        self.target = target
        self.freeze_at = freeze_at
        self.materialized = materialized_cycle_keys(transactions)
        self._counted: set[CycleKey] = set()

    @property
    def frozen(self) -> bool:
        return self.freeze_at is not None and self.target > self.freeze_at

    @property
    def as_of(self) -> date:
        return self.freeze_at if self.frozen else self.target

    def strategy_for(self, tag: str, start: Optional[date]) -> ReservationStrategy:
        if (tag, start) in self.materialized:
            return ReservationStrategy.materialized
        return ReservationStrategy.synthetic

    def is_counted(self, tag: str, start: Optional[date]) -> bool:
        return (tag, start) in self._counted

    def reserved_as_of(
        self,
        tag: str,
        start: Optional[date],
        end: Optional[date],
        initial_value: float,
        *,
        exclude_tx_id: Optional[str] = None,
        exclude_date: Optional[date] = None,
    ) -> float:
        # future projections stop counting spend at the freeze date
        cutoff = self.as_of if end is None or self.as_of < end else end
        spent = spent_no_periodo(
            self.transactions,
            tag,
            start,
            cutoff,
            exclude_tx_id=exclude_tx_id,
            exclude_date=exclude_date,
        )
        return max((initial_value or 0.0) - spent, 0.0)

    def claim(
        self,
        tag: str,
        start: Optional[date],
        end: Optional[date],
        initial_value: float,
        *,
        exclude_tx_id: Optional[str] = None,
        exclude_date: Optional[date] = None,
    ) -> float:
        key = (tag, start)
        if key in self._counted:
            return 0.0
        self._counted.add(key)
        if self.strategy_for(tag, start) == ReservationStrategy.materialized:
            return 0.0
        return self.reserved_as_of(
            tag,
            start,
            end,
            initial_value,
            exclude_tx_id=exclude_tx_id,
            exclude_date=exclude_date,
        )


def _covers(provider: ReservationProvider, budget: BudgetRecord) -> bool:
    start, end = budget.start_date, budget.end_date
    if provider.frozen:
        # started by the target and still running at the freeze date
        if start is None or start > provider.target:
            return False
        return end is None or end > provider.freeze_at
    return within(provider.target, start, end)


def get_reserved_total_for_date(
    target: Optional[date],
    transactions: Iterable[Any],
    budgets: Iterable[BudgetRecord],
    freeze_at: Optional[date] = None,
) -> float:
    """Total virtual reservation to subtract from the balance on ``target``.

    Persisted active budgets covering the target count first. Recurring
    masters with a budget tag then add synthetic cycles, walking back from
    the cycle containing the target while the cycle start is strictly after
    the latest of the evaluation date, the tag's earliest persisted start and
    the tag's earliest master date.
    """
    if target is None:
        return 0.0
    txs = coerce_transactions(transactions)
    budget_list = [b for b in budgets if b is not None]
    provider = ReservationProvider(txs, target, freeze_at)

    total = 0.0
    for budget in budget_list:
        if not budget.is_active or not _covers(provider, budget):
            continue
        total += provider.claim(
            budget.tag,
            budget.start_date,
            budget.end_date,
            budget.initial_value,
            exclude_tx_id=budget.trigger_tx_id,
            exclude_date=budget.trigger_tx_iso,
        )

    earliest_budget_start: dict[str, date] = {}
    for budget in budget_list:
        if not budget.is_active or budget.start_date is None:
            continue
        prev = earliest_budget_start.get(budget.tag)
        if prev is None or budget.start_date < prev:
            earliest_budget_start[budget.tag] = budget.start_date

    masters = [tx for tx in txs if tx.is_recurring_master and tx.budget_tag]
    earliest_master_start: dict[str, date] = {}
    for master in masters:
        if master.op_date is None:
            continue
        prev = earliest_master_start.get(master.budget_tag)
        if prev is None or master.op_date < prev:
            earliest_master_start[master.budget_tag] = master.op_date

    for master in masters:
        tag = master.budget_tag
        cursor = find_cycle_start_for(master, target)
        if cursor is None:
            continue
        bounds = [provider.as_of, earliest_budget_start.get(tag), earliest_master_start.get(tag)]
        lower_bound = max(d for d in bounds if d is not None)
        while cursor > lower_bound:
            if not provider.is_counted(tag, cursor):
                end = next_from(cursor, master.recurrence)
                initial = compute_initial_for_range(txs, tag, cursor, end) or abs(master.val)
                total += provider.claim(tag, cursor, end, initial)
            prev = prev_from(cursor, master.recurrence)
            if prev >= cursor:
                break
            cursor = prev

    logger.debug(f"reserve_total: date={target} freeze_at={freeze_at} total={total}")
    return total


class ReservationCalculator:
    def __init__(self, store: BudgetStore) -> None:
        self.store = store

    def recompute_budget(
        self, budget: Optional[BudgetRecord], transactions: Iterable[Any]
    ) -> Optional[BudgetRecord]:
        return recompute_budget(budget, transactions)

    def get_reserved_total_for_date(
        self,
        target: Optional[date],
        transactions: Iterable[Any],
        freeze_at: Optional[date] = None,
    ) -> float:
        return get_reserved_total_for_date(
            target, transactions, self.store.load_budgets(), freeze_at
        )

    def refresh_budget_cache(self, transactions: Iterable[Any]) -> list[BudgetRecord]:
        txs = coerce_transactions(transactions)
        updated = [
            recompute_budget(budget, txs) if budget.is_active else budget
            for budget in self.store.load_budgets()
        ]
        return self.store.save_budgets(updated)

    def budgets_by_tag(self, transactions: Iterable[Any]) -> dict[str, BudgetRecord]:
        txs = coerce_transactions(transactions)
        return {
            budget.tag: recompute_budget(budget, txs)
            for budget in self.store.list_active_budgets()
        }

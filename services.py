from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass
from datetime import date
from typing import Any, Optional

from models import BudgetStatus, BudgetType
from periods import parse_iso_date, utc_now, within
from recurrence import cycle_window_for, next_from
from reservations import ReservationCalculator, recompute_budget
from schemas import BudgetRecord, LedgerTransaction, coerce_transactions
from storage import BudgetStore, generate_budget_id

logger = logging.getLogger(__name__)

LEDGER_STORAGE_KEY = "tx"
RESERVE_ID_PREFIX = "budget-reserve-"
RETURN_ID_PREFIX = "budget-return-"
CASH_METHOD = "Dinheiro"


@dataclass
class UpsertContext:
    transactions: Sequence[Any] = ()
    occurrence_date: Optional[date] = None
    next_occurrence_date: Optional[date] = None
    recurrence_id: Optional[str] = None
    creation_date: Optional[date] = None
    today: Optional[date] = None


@dataclass(frozen=True)
class UpsertOutcome:
    changed: bool
    budget: Optional[BudgetRecord]


@dataclass
class EditOutcome:
    changed: bool
    budget: Optional[BudgetRecord] = None
    transactions: Optional[list[LedgerTransaction]] = None


@dataclass(frozen=True)
class MaintenanceReport:
    today: date
    refreshed: int
    created: int
    materialized: int
    closed: int


def seed_initial_value(
    transactions: Iterable[LedgerTransaction],
    tag: str,
    start: date,
    end: date,
    today: date,
) -> float:
    """Amount a new cycle reserves: the tagged entries still to come.

    Only planned entries, future-dated entries and entries on the closing day
    of the window count.
    """
    total = 0.0
    for tx in transactions:
        if tx.budget_tag != tag or tx.is_budget_materialization:
            continue
        tx_date = tx.effective_date
        if not within(tx_date, start, end):
            continue
        if not tx.planned and tx_date <= today and tx_date != end:
            continue
        total += abs(tx.val)
    return total


def _as_transaction(value: Any) -> Optional[LedgerTransaction]:
    if isinstance(value, LedgerTransaction):
        return value
    coerced = coerce_transactions([value]) if isinstance(value, Mapping) else []
    return coerced[0] if coerced else None


def _find_by_id(budgets: Iterable[BudgetRecord], budget_id: str) -> Optional[BudgetRecord]:
    return next((b for b in budgets if b.id == budget_id), None)


def _close(budget: BudgetRecord, transactions: Sequence[LedgerTransaction]) -> BudgetRecord:
    return recompute_budget(budget, transactions).model_copy(
        update={"status": BudgetStatus.closed, "last_updated": utc_now()}
    )


class CycleLifecycleManager:
    def __init__(self, store: BudgetStore) -> None:
        self.store = store

    def list_active_budgets(self) -> list[BudgetRecord]:
        return self.store.list_active_budgets()

    def upsert_budget_from_transaction(
        self, transaction: Any, context: Optional[UpsertContext] = None
    ) -> UpsertOutcome:
        context = context or UpsertContext()
        tx = _as_transaction(transaction)
        if tx is None or not tx.budget_tag:
            return UpsertOutcome(changed=False, budget=None)

        txs = coerce_transactions(context.transactions)
        today = context.today or self.store.today_fn()
        budgets = self.store.load_budgets()
        active = next(
            (b for b in budgets if b.tag == tx.budget_tag and b.is_active), None
        )
        if tx.is_recurring_master:
            return self._upsert_recurring(tx, context, txs, today, budgets, active)
        return self._upsert_ad_hoc(tx, context, txs, today, budgets, active)

    def _upsert_recurring(
        self,
        tx: LedgerTransaction,
        context: UpsertContext,
        txs: list[LedgerTransaction],
        today: date,
        budgets: list[BudgetRecord],
        active: Optional[BudgetRecord],
    ) -> UpsertOutcome:
        tag = tx.budget_tag
        occurrence = context.occurrence_date or tx.op_date or today
        next_occurrence = context.next_occurrence_date
        if next_occurrence is None or next_occurrence == occurrence:
            next_occurrence = next_from(occurrence, tx.recurrence)
        recurrence_id = (
            context.recurrence_id
            or tx.recurrence_id
            or tx.parent_id
            or tx.id
            or generate_budget_id()
        )

        updated = list(budgets)
        budget_id = generate_budget_id()
        if active is not None and active.budget_type == BudgetType.recurring:
            if (active.start_date, active.end_date) == (occurrence, next_occurrence):
                budget_id = active.id
                updated = [b for b in updated if b.id != active.id]
            else:
                closed = _close(active, txs)
                updated = [closed if b.id == active.id else b for b in updated]
                logger.info(
                    f"budget_cycle_closed: tag={tag} id={active.id} end={active.end_date}"
                )

        initial = seed_initial_value(txs, tag, occurrence, next_occurrence, today)
        record = BudgetRecord(
            id=budget_id,
            tag=tag,
            budget_type=BudgetType.recurring,
            status=BudgetStatus.active,
            recurrence_id=recurrence_id,
            start_date=occurrence,
            end_date=next_occurrence,
            initial_value=initial or abs(tx.val),
            last_updated=utc_now(),
            trigger_tx_id=tx.id,
            trigger_tx_iso=occurrence,
        )
        record = recompute_budget(record, txs)
        saved = self.store.save_budgets([*updated, record])
        logger.info(
            f"budget_upsert: tag={tag} type=recurring start={occurrence} end={next_occurrence}"
        )
        return UpsertOutcome(changed=True, budget=_find_by_id(saved, record.id) or record)

    def _upsert_ad_hoc(
        self,
        tx: LedgerTransaction,
        context: UpsertContext,
        txs: list[LedgerTransaction],
        today: date,
        budgets: list[BudgetRecord],
        active: Optional[BudgetRecord],
    ) -> UpsertOutcome:
        if tx.op_date is None or tx.op_date <= today:
            return UpsertOutcome(changed=False, budget=active)

        tag = tx.budget_tag
        start = context.creation_date or today
        end = tx.op_date
        base = active if active is not None and active.budget_type == BudgetType.ad_hoc else None
        initial = seed_initial_value(txs, tag, start, end, today)
        fields = {
            "start_date": start,
            "end_date": end,
            "initial_value": initial or abs(tx.val),
            "last_updated": utc_now(),
            "trigger_tx_id": tx.id or (base.trigger_tx_id if base else None),
            "trigger_tx_iso": start,
        }
        if base is not None:
            record = base.model_copy(update=fields)
        else:
            record = BudgetRecord(
                id=generate_budget_id(),
                tag=tag,
                budget_type=BudgetType.ad_hoc,
                status=BudgetStatus.active,
                recurrence_id=None,
                **fields,
            )
        record = recompute_budget(record, txs)
        updated = [b for b in budgets if b.id != record.id]
        saved = self.store.save_budgets([*updated, record])
        logger.info(f"budget_upsert: tag={tag} type=ad-hoc start={start} end={end}")
        return UpsertOutcome(changed=True, budget=_find_by_id(saved, record.id) or record)

    def ensure_recurring_budgets(
        self, transactions: Iterable[Any], today: Optional[date] = None
    ) -> int:
        """Open today's cycle for every tag that has a recurring master."""
        txs = coerce_transactions(transactions)
        today = today or self.store.today_fn()
        masters_by_tag: dict[str, LedgerTransaction] = {}
        for tx in txs:
            if tx.is_recurring_master and tx.budget_tag:
                masters_by_tag.setdefault(tx.budget_tag, tx)
        if not masters_by_tag:
            return 0

        updated = self.store.load_budgets()
        created = 0
        for tag, master in masters_by_tag.items():
            window = cycle_window_for(master, today)
            if window is None or not window.contains(today):
                continue
            exists = any(
                b.is_active
                and b.budget_type == BudgetType.recurring
                and b.tag == tag
                and b.window == window
                for b in updated
            )
            if exists:
                continue
            updated = [
                _close(b, txs)
                if b.is_active and b.budget_type == BudgetType.recurring and b.tag == tag
                else b
                for b in updated
            ]
            initial = seed_initial_value(txs, tag, window.start, window.end, today)
            initial = initial or abs(master.val)
            record = BudgetRecord(
                id=generate_budget_id(),
                tag=tag,
                budget_type=BudgetType.recurring,
                status=BudgetStatus.active,
                recurrence_id=master.id or master.parent_id or generate_budget_id(),
                start_date=window.start,
                end_date=window.end,
                initial_value=initial,
                reserved_value=initial,
                spent_value=0.0,
                last_updated=utc_now(),
                trigger_tx_id=master.id,
                trigger_tx_iso=window.start,
            )
            updated.append(recompute_budget(record, txs))
            created += 1
            logger.info(
                f"budget_cycle_opened: tag={tag} start={window.start} end={window.end}"
            )
        if created:
            self.store.save_budgets(updated)
        return created

    def close_expired_budgets(
        self, transactions: Iterable[Any], today: Optional[date] = None
    ) -> int:
        budgets = self.store.load_budgets()
        if not budgets:
            return 0
        txs = coerce_transactions(transactions)
        today = today or self.store.today_fn()
        closed = 0
        updated: list[BudgetRecord] = []
        for budget in budgets:
            # the end day itself still belongs to the cycle
            if budget.is_active and budget.end_date is not None and budget.end_date < today:
                updated.append(_close(budget, txs))
                closed += 1
            else:
                updated.append(budget)
        if closed:
            self.store.save_budgets(updated)
            logger.info(f"budgets_closed: count={closed} today={today}")
        return closed


def _is_materialization(item: Any) -> bool:
    if isinstance(item, LedgerTransaction):
        return item.is_budget_materialization
    if isinstance(item, Mapping):
        return bool(item.get("isBudgetMaterialization"))
    return False


def filter_out_materialization_transactions(transactions: Iterable[Any]) -> list[Any]:
    return [tx for tx in transactions or [] if not _is_materialization(tx)]


def extract_materialization_transactions(transactions: Iterable[Any]) -> list[Any]:
    return [tx for tx in transactions or [] if _is_materialization(tx)]


def _reserve_entry(budget: BudgetRecord, cycle_start: date) -> LedgerTransaction:
    return LedgerTransaction(
        id=f"{RESERVE_ID_PREFIX}{budget.id}",
        desc=f"[Budget reserve] {budget.tag}",
        val=-budget.initial_value,
        op_date=cycle_start,
        post_date=cycle_start,
        method=CASH_METHOD,
        planned=False,
        budget_tag=budget.tag,
        is_budget_materialization=True,
        budget_reserve_for=budget.id,
        origin_budget_id=budget.id,
    )


def _return_entry(budget: BudgetRecord, cycle_end: date) -> Optional[LedgerTransaction]:
    unused = max(budget.initial_value - budget.spent_value, 0.0)
    if unused <= 0:
        return None
    return LedgerTransaction(
        id=f"{RETURN_ID_PREFIX}{budget.id}",
        desc=f"[Budget return] {budget.tag}",
        val=unused,
        op_date=cycle_end,
        post_date=cycle_end,
        method=CASH_METHOD,
        planned=False,
        budget_tag=budget.tag,
        is_budget_materialization=True,
        budget_return_for=budget.id,
        origin_budget_id=budget.id,
    )


class MaterializationService:
    """Turns budget cycles into ledger entries.

    An active cycle gets one reserve entry (the full initial value, negative,
    dated at the cycle start) once it has started, and one return entry (the
    unused remainder, positive, dated at the cycle end) once it has ended. A
    closed cycle whose reserve was emitted still gets its return. Emitted
    keys are remembered per instance; call ``rebuild_materialization_cache``
    after loading a ledger that already holds such entries.
    """

    def __init__(self, store: BudgetStore) -> None:
        self.store = store
        self._materialized: set[str] = set()

    @staticmethod
    def _reserve_key(budget_id: str, cycle_start: date) -> str:
        return f"{budget_id}|{cycle_start.isoformat()}"

    @staticmethod
    def _return_key(budget_id: str, cycle_end: date) -> str:
        return f"return|{budget_id}|{cycle_end.isoformat()}"

    def is_cached(self, key: str) -> bool:
        return key in self._materialized

    def generate_budget_materialization_transactions(
        self, transactions: Iterable[Any], today: Optional[date] = None
    ) -> list[LedgerTransaction]:
        txs = coerce_transactions(transactions)
        today = today or self.store.today_fn()
        existing_ids = {tx.id for tx in txs if tx.id}
        created: list[LedgerTransaction] = []

        for budget in self.store.load_budgets():
            start, end = budget.start_date, budget.end_date
            if start is None:
                continue

            reserve_key = self._reserve_key(budget.id, start)
            if not budget.is_active:
                # a cycle closed early still hands back what its reserve held
                reserved = reserve_key in self._materialized
                if not reserved and f"{RESERVE_ID_PREFIX}{budget.id}" not in existing_ids:
                    continue
            elif today >= start and reserve_key not in self._materialized:
                self._materialized.add(reserve_key)
                entry = _reserve_entry(budget, start)
                if budget.initial_value > 0 and entry.id not in existing_ids:
                    created.append(entry)

            if end is not None and today > end:
                return_key = self._return_key(budget.id, end)
                if return_key not in self._materialized:
                    self._materialized.add(return_key)
                    entry = _return_entry(budget, end)
                    if entry is not None and entry.id not in existing_ids:
                        created.append(entry)

        if created:
            logger.info(f"budget_materialization: today={today} created={len(created)}")
        return created

    def inject_budget_materialization_transactions(
        self, transactions: Iterable[Any], today: Optional[date] = None
    ) -> list[LedgerTransaction]:
        txs = coerce_transactions(transactions)
        return [*txs, *self.generate_budget_materialization_transactions(txs, today)]

    def rebuild_materialization_cache(self, transactions: Iterable[Any]) -> None:
        self._materialized.clear()
        for tx in coerce_transactions(transactions):
            if not tx.is_budget_materialization or tx.op_date is None:
                continue
            if tx.budget_reserve_for:
                self._materialized.add(self._reserve_key(tx.budget_reserve_for, tx.op_date))
            if tx.budget_return_for:
                self._materialized.add(self._return_key(tx.budget_return_for, tx.op_date))

    def reset_materialization_cache(self) -> None:
        self._materialized.clear()


def _same_semantic_key(a: BudgetRecord, b: BudgetRecord) -> bool:
    return (a.tag, a.budget_type, a.start_date, a.end_date) == (
        b.tag,
        b.budget_type,
        b.start_date,
        b.end_date,
    )


class BudgetEditService:
    def __init__(self, store: BudgetStore) -> None:
        self.store = store

    def get(self, budget_id: str) -> Optional[BudgetRecord]:
        return _find_by_id(self.store.load_budgets(), budget_id)

    def remove_budget(self, budget: BudgetRecord) -> bool:
        budgets = self.store.load_budgets()
        remaining = [
            b for b in budgets if b.id != budget.id and not _same_semantic_key(b, budget)
        ]
        self.store.save_budgets(remaining)
        return len(remaining) != len(budgets)

    def remove_ad_hoc_budget(
        self,
        budget: BudgetRecord,
        transactions: Optional[Iterable[Any]] = None,
        *,
        unlink_ops: bool = False,
    ) -> EditOutcome:
        removed = self.remove_budget(budget)
        if not unlink_ops or transactions is None:
            return EditOutcome(changed=removed, budget=budget)

        updated: list[LedgerTransaction] = []
        for tx in coerce_transactions(transactions):
            if budget.trigger_tx_id and tx.id == budget.trigger_tx_id:
                continue
            # without a trigger id, fall back to tag + trigger date
            if (
                not budget.trigger_tx_id
                and budget.trigger_tx_iso is not None
                and tx.budget_tag == budget.tag
                and tx.effective_date == budget.trigger_tx_iso
            ):
                continue
            if tx.budget_tag == budget.tag and within(
                tx.effective_date, budget.start_date, budget.end_date
            ):
                tx = tx.model_copy(update={"budget_tag": None})
            updated.append(tx)
        return EditOutcome(changed=removed, budget=budget, transactions=updated)

    def close_recurring_budget(self, budget: BudgetRecord) -> bool:
        if budget.budget_type != BudgetType.recurring:
            return False
        budgets = self.store.load_budgets()
        if _find_by_id(budgets, budget.id) is None:
            return False
        self.store.save_budgets(
            [
                b.model_copy(update={"status": BudgetStatus.closed, "last_updated": utc_now()})
                if b.id == budget.id
                else b
                for b in budgets
            ]
        )
        return True

    def end_recurrence(
        self,
        budget: BudgetRecord,
        transactions: Iterable[Any],
        today: Optional[date] = None,
    ) -> EditOutcome:
        today = today or self.store.today_fn()
        changed = False
        updated: list[LedgerTransaction] = []
        for tx in coerce_transactions(transactions):
            if tx.is_recurring_master:
                matches_id = tx.id is not None and tx.id in (
                    budget.recurrence_id,
                    budget.trigger_tx_id,
                )
                if matches_id or tx.budget_tag == budget.tag:
                    tx = tx.model_copy(update={"recurrence_end": today})
                    changed = True
            updated.append(tx)
        return EditOutcome(changed=changed, budget=budget, transactions=updated)

    def update_recurring_cycle_value(self, budget: BudgetRecord, initial_value: float) -> bool:
        if budget.budget_type != BudgetType.recurring or initial_value < 0:
            return False
        budgets = self.store.load_budgets()
        if _find_by_id(budgets, budget.id) is None:
            return False
        self.store.save_budgets(
            [
                b.model_copy(update={"initial_value": initial_value, "last_updated": utc_now()})
                if b.id == budget.id
                else b
                for b in budgets
            ]
        )
        return True

    def update_ad_hoc_budget(
        self,
        budget: BudgetRecord,
        *,
        tag: Optional[str] = None,
        start_date: Optional[date] = None,
        end_date: Optional[date] = None,
        initial_value: Optional[float] = None,
        transactions: Optional[Iterable[Any]] = None,
        migrate_ops: bool = False,
    ) -> EditOutcome:
        if budget.budget_type != BudgetType.ad_hoc:
            return EditOutcome(changed=False)
        budgets = self.store.load_budgets()
        current = _find_by_id(budgets, budget.id)
        if current is None:
            return EditOutcome(changed=False)

        old_tag = current.tag
        new_tag = tag.strip() if tag and tag.strip() else old_tag
        new_start = parse_iso_date(start_date) if start_date is not None else current.start_date
        new_end = parse_iso_date(end_date) if end_date is not None else current.end_date
        if new_start and new_end and new_start > new_end:
            new_start, new_end = new_end, new_start
        new_initial = current.initial_value if initial_value is None else max(0.0, initial_value)

        edited = current.model_copy(
            update={
                "tag": new_tag,
                "start_date": new_start,
                "end_date": new_end,
                "initial_value": new_initial,
                "last_updated": utc_now(),
            }
        )
        saved = self.store.save_budgets([edited if b.id == edited.id else b for b in budgets])
        edited = _find_by_id(saved, edited.id) or edited

        if not migrate_ops or transactions is None:
            return EditOutcome(changed=True, budget=edited)
        migrated = [
            tx.model_copy(update={"budget_tag": new_tag})
            if tx.budget_tag == old_tag and within(tx.effective_date, new_start, new_end)
            else tx
            for tx in coerce_transactions(transactions)
        ]
        return EditOutcome(changed=True, budget=edited, transactions=migrated)

    def remove_recurring_budget(
        self, budget: BudgetRecord, transactions: Optional[Iterable[Any]] = None
    ) -> EditOutcome:
        if budget.budget_type != BudgetType.recurring:
            return EditOutcome(changed=False)
        removed = self.remove_budget(budget)
        if transactions is None:
            return EditOutcome(changed=removed, budget=budget)

        kept: list[LedgerTransaction] = []
        for tx in coerce_transactions(transactions):
            if budget.trigger_tx_id and tx.id == budget.trigger_tx_id:
                continue
            if (
                tx.is_recurring_master
                and tx.budget_tag == budget.tag
                and budget.trigger_tx_iso is not None
                and tx.effective_date == budget.trigger_tx_iso
            ):
                continue
            kept.append(tx)
        return EditOutcome(changed=removed, budget=budget, transactions=kept)


class BudgetMaintenanceService:
    """Day-level upkeep over the ledger kept in the local cache."""

    def __init__(
        self,
        store: BudgetStore,
        materializer: Optional[MaterializationService] = None,
    ) -> None:
        self.store = store
        self.calculator = ReservationCalculator(store)
        self.lifecycle = CycleLifecycleManager(store)
        self.materializer = materializer or MaterializationService(store)

    def load_ledger(self) -> list[LedgerTransaction]:
        stored = self.store.cache.get(LEDGER_STORAGE_KEY, [])
        return coerce_transactions(stored if isinstance(stored, list) else [])

    def save_ledger(self, transactions: Iterable[LedgerTransaction]) -> None:
        self.store.cache.set(
            LEDGER_STORAGE_KEY, [tx.to_storage() for tx in transactions]
        )

    def record_transaction(
        self, transaction: LedgerTransaction, context: Optional[UpsertContext] = None
    ) -> UpsertOutcome:
        ledger = [tx for tx in self.load_ledger() if not (tx.id and tx.id == transaction.id)]
        ledger.append(transaction)
        self.save_ledger(ledger)
        context = context or UpsertContext()
        context.transactions = ledger
        outcome = self.lifecycle.upsert_budget_from_transaction(transaction, context)
        if outcome.changed or transaction.budget_tag:
            self.calculator.refresh_budget_cache(ledger)
        return outcome

    def run_daily(self, today: Optional[date] = None) -> MaintenanceReport:
        today = today or self.store.today_fn()
        ledger = self.load_ledger()
        self.materializer.rebuild_materialization_cache(ledger)

        refreshed = sum(1 for b in self.calculator.refresh_budget_cache(ledger) if b.is_active)
        created = self.lifecycle.ensure_recurring_budgets(ledger, today)
        if created:
            self.calculator.refresh_budget_cache(ledger)

        entries = self.materializer.generate_budget_materialization_transactions(ledger, today)
        if entries:
            ledger = [*ledger, *entries]
            self.save_ledger(ledger)

        closed = self.lifecycle.close_expired_budgets(ledger, today)
        report = MaintenanceReport(
            today=today,
            refreshed=refreshed,
            created=created,
            materialized=len(entries),
            closed=closed,
        )
        logger.info(
            f"budget_maintenance: today={today} refreshed={refreshed} created={created} "
            f"materialized={len(entries)} closed={closed}"
        )
        return report

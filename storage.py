from __future__ import annotations

import asyncio
import json
import logging
import secrets
from collections.abc import Iterable, Mapping, Sequence
import threading
from concurrent.futures import Future, ThreadPoolExecutor, wait
from datetime import date
from typing import Any, Callable, Optional

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from config import get_settings
from models import BudgetStatus, BudgetType, CacheEntry
from periods import parse_amount, parse_iso_date, parse_iso_datetime, utc_now, within
from recurrence import local_today
from remote import RemoteStore, RemoteStoreError
from schemas import BudgetRecord

logger = logging.getLogger(__name__)

BUDGET_STORAGE_KEY = "budgets"

_sync_lock = threading.Lock()
_sync_executor: Optional[ThreadPoolExecutor] = None


def _sync_worker() -> ThreadPoolExecutor:
    global _sync_executor
    with _sync_lock:
        if _sync_executor is None:
            _sync_executor = ThreadPoolExecutor(
                max_workers=1, thread_name_prefix="budget-sync"
            )
        return _sync_executor


def shutdown_sync_worker(wait_for_pushes: bool = True) -> None:
    """Stop the shared remote push worker; a later push starts a new one."""
    global _sync_executor
    with _sync_lock:
        executor, _sync_executor = _sync_executor, None
    if executor is not None:
        executor.shutdown(wait=wait_for_pushes)


class InvalidBudgetRecord(ValueError):
    pass


def generate_budget_id() -> str:
    stamp = utc_now().strftime("%Y%m%d%H%M%S")
    return f"budget_{stamp}_{secrets.token_hex(3)}"


class LocalCache:
    """Profile-scoped JSON key/value store kept in the local database."""

    def __init__(self, session: Session, profile: Optional[str] = None) -> None:
        self.session = session
        self.profile = profile or get_settings().profile

    def scoped_key(self, key: str) -> str:
        return f"{self.profile}:{key}"

    def _entry(self, key: str) -> Optional[CacheEntry]:
        stmt = select(CacheEntry).where(
            CacheEntry.profile == self.profile, CacheEntry.key == key
        )
        return self.session.scalar(stmt)

    def get(self, key: str, default: Any = None) -> Any:
        entry = self._entry(key)
        if entry is None:
            return default
        try:
            return json.loads(entry.value_json)
        except json.JSONDecodeError:
            logger.warning(f"cache_read_failed: key={self.scoped_key(key)}")
            return default

    def set(self, key: str, value: Any) -> None:
        payload = json.dumps(value)
        entry = self._entry(key)
        if entry is None:
            entry = CacheEntry(profile=self.profile, key=key, value_json=payload)
            self.session.add(entry)
        else:
            entry.value_json = payload
        self.session.commit()


def _field(data: Mapping[str, Any], *names: str) -> Any:
    for name in names:
        if name in data:
            return data[name]
    return None


def _clean_text(value: Any) -> str:
    if isinstance(value, bool):
        return ""
    if isinstance(value, int):
        return str(value)
    if isinstance(value, str):
        return value.strip()
    return ""


def parse_budget(raw: Any) -> BudgetRecord:
    """Coerce a stored payload into a ``BudgetRecord``.

    Unknown statuses and types fall back to ``active``/``ad-hoc``, unreadable
    dates become ``None``, numbers default to 0 and an inverted window is
    swapped. Raises ``InvalidBudgetRecord`` when there is no usable id or tag.
    """
    if isinstance(raw, BudgetRecord):
        raw = raw.to_storage()
    if not isinstance(raw, Mapping):
        raise InvalidBudgetRecord("Budget payload must be a mapping")

    budget_id = _clean_text(_field(raw, "id"))
    tag = _clean_text(_field(raw, "tag"))
    if not budget_id or not tag:
        raise InvalidBudgetRecord("Budget requires an id and a tag")

    status_raw = _field(raw, "status")
    status = (
        BudgetStatus(status_raw)
        if isinstance(status_raw, str) and status_raw in {s.value for s in BudgetStatus}
        else BudgetStatus.active
    )
    type_raw = _field(raw, "budgetType", "budget_type")
    budget_type = (
        BudgetType(type_raw)
        if isinstance(type_raw, str) and type_raw in {t.value for t in BudgetType}
        else BudgetType.ad_hoc
    )

    start = parse_iso_date(_field(raw, "startDate", "start_date"))
    end = parse_iso_date(_field(raw, "endDate", "end_date"))
    if start and end and start > end:
        start, end = end, start

    return BudgetRecord(
        id=budget_id,
        tag=tag,
        budget_type=budget_type,
        status=status,
        start_date=start,
        end_date=end,
        initial_value=max(0.0, parse_amount(_field(raw, "initialValue", "initial_value"))),
        reserved_value=parse_amount(_field(raw, "reservedValue", "reserved_value")),
        spent_value=parse_amount(_field(raw, "spentValue", "spent_value")),
        recurrence_id=_clean_text(_field(raw, "recurrenceId", "recurrence_id")) or None,
        last_updated=parse_iso_datetime(_field(raw, "lastUpdated", "last_updated"))
        or utc_now(),
        trigger_tx_id=_clean_text(_field(raw, "triggerTxId", "trigger_tx_id")) or None,
        trigger_tx_iso=parse_iso_date(_field(raw, "triggerTxIso", "trigger_tx_iso")),
    )


def normalize_budget(raw: Any) -> Optional[BudgetRecord]:
    try:
        return parse_budget(raw)
    except InvalidBudgetRecord as exc:
        logger.debug(f"budget_dropped: reason={exc}")
        return None


def _normalize_all(items: Optional[Iterable[Any]]) -> list[BudgetRecord]:
    normalized = (normalize_budget(item) for item in items or [])
    return [budget for budget in normalized if budget is not None]


def _start_key(budget: BudgetRecord) -> str:
    return budget.start_date.isoformat() if budget.start_date else ""


def enforce_single_active_per_tag(
    budgets: Sequence[BudgetRecord], today: date
) -> list[BudgetRecord]:
    active_positions: dict[str, list[int]] = {}
    for pos, budget in enumerate(budgets):
        if budget.is_active:
            active_positions.setdefault(budget.tag, []).append(pos)

    updated = list(budgets)
    for tag, positions in active_positions.items():
        if len(positions) <= 1:
            continue
        containing = [
            pos
            for pos in positions
            if within(today, budgets[pos].start_date, budgets[pos].end_date)
        ]
        candidates = containing or positions
        winner = candidates[0]
        for pos in candidates[1:]:
            if _start_key(budgets[pos]) > _start_key(budgets[winner]):
                winner = pos
        for pos in positions:
            if pos == winner:
                continue
            updated[pos] = budgets[pos].model_copy(
                update={"status": BudgetStatus.closed, "last_updated": utc_now()}
            )
        logger.info(
            f"budget_dedupe: tag={tag} kept={budgets[winner].id} closed={len(positions) - 1}"
        )
    return updated


def merge_budgets(
    local: Iterable[Any], remote: Iterable[Any], today: date
) -> list[BudgetRecord]:
    """Collapse local and remote copies per (tag, start, end, type).

    The most recent ``lastUpdated`` wins; on a tie the later item wins, and
    remote items come after local ones.
    """
    by_key: dict[tuple, BudgetRecord] = {}
    for budget in _normalize_all([*local, *remote]):
        key = (budget.tag, budget.start_date, budget.end_date, budget.budget_type)
        prev = by_key.get(key)
        if prev is None or budget.last_updated >= prev.last_updated:
            by_key[key] = budget
    return enforce_single_active_per_tag(list(by_key.values()), today)


class BudgetStore:
    def __init__(
        self,
        cache: LocalCache,
        remote: Optional[RemoteStore] = None,
        *,
        today_fn: Callable[[], date] = local_today,
    ) -> None:
        self.cache = cache
        self.remote = remote
        self.today_fn = today_fn
        self._budgets: Optional[list[BudgetRecord]] = None
        self._pending: list[Future] = []

    @property
    def storage_key(self) -> str:
        return self.cache.scoped_key(BUDGET_STORAGE_KEY)

    def load_budgets(self) -> list[BudgetRecord]:
        if self._budgets is not None:
            return list(self._budgets)
        stored = self.cache.get(BUDGET_STORAGE_KEY, [])
        if not isinstance(stored, list):
            stored = []
        self._budgets = _normalize_all(stored)
        return list(self._budgets)

    def save_budgets(self, budgets: Optional[Iterable[Any]]) -> list[BudgetRecord]:
        deduped = enforce_single_active_per_tag(
            _normalize_all(budgets), self.today_fn()
        )
        self._budgets = deduped
        payload = [budget.to_storage() for budget in deduped]
        self._persist_local(payload)
        self._schedule_push(payload)
        return list(deduped)

    def find_active_by_tag(self, tag: Optional[str]) -> Optional[BudgetRecord]:
        target = _clean_text(tag)
        if not target:
            return None
        for budget in self.load_budgets():
            if budget.tag == target and budget.is_active:
                return budget
        return None

    def list_active_budgets(self) -> list[BudgetRecord]:
        return [budget for budget in self.load_budgets() if budget.is_active]

    def reset_cache(self) -> None:
        self._budgets = None

    async def reconcile_with_remote(self) -> list[BudgetRecord]:
        remote_items: list[Any] = []
        if self.remote is not None:
            try:
                raw = await self.remote.load(BUDGET_STORAGE_KEY, [])
            except RemoteStoreError as exc:
                logger.warning(f"budget_reconcile_load_failed: error={exc}")
                raw = []
            if isinstance(raw, Mapping):
                raw = list(raw.values())
            remote_items = raw if isinstance(raw, list) else []

        merged = merge_budgets(self.load_budgets(), remote_items, self.today_fn())
        self._budgets = merged
        payload = [budget.to_storage() for budget in merged]
        self._persist_local(payload)
        if self.remote is not None:
            try:
                await self.remote.save(BUDGET_STORAGE_KEY, payload)
            except RemoteStoreError as exc:
                logger.warning(f"budget_reconcile_save_failed: error={exc}")
        logger.info(
            f"budget_reconcile: remote={len(remote_items)} merged={len(merged)}"
        )
        return list(merged)

    def wait_for_sync(self, timeout: Optional[float] = None) -> None:
        pending = list(self._pending)
        if pending:
            wait(pending, timeout=timeout)
        self._pending = [f for f in self._pending if not f.done()]

    def close(self) -> None:
        # queued pushes keep running on the shared worker
        self._pending = []

    def _persist_local(self, payload: list[dict[str, Any]]) -> None:
        try:
            self.cache.set(BUDGET_STORAGE_KEY, payload)
        except SQLAlchemyError:
            self.cache.session.rollback()
            logger.exception(f"budget_persist_failed: key={self.storage_key}")

    def _schedule_push(self, payload: list[dict[str, Any]]) -> None:
        if self.remote is None:
            return
        self._pending = [f for f in self._pending if not f.done()]
        self._pending.append(_sync_worker().submit(self._push_blocking, payload))

    def _push_blocking(self, payload: list[dict[str, Any]]) -> None:
        asyncio.run(self._push(payload))

    async def _push(self, payload: list[dict[str, Any]]) -> None:
        try:
            await self.remote.save(BUDGET_STORAGE_KEY, payload)
        except Exception as exc:
            logger.warning(f"budget_push_failed: key={self.storage_key} error={exc}")


def build_budget_store(session: Session, profile: Optional[str] = None) -> BudgetStore:
    return BudgetStore(LocalCache(session, profile), RemoteStore.from_settings(profile))

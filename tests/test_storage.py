import asyncio
import time
from datetime import date, datetime, timezone

import httpx
import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from database import Base
from models import BudgetStatus, BudgetType
from remote import RemoteStore, RemoteStoreError
from storage import (
    BudgetStore,
    InvalidBudgetRecord,
    LocalCache,
    merge_budgets,
    normalize_budget,
    parse_budget,
    shutdown_sync_worker,
)


def make_session():
    engine = create_engine(
        "sqlite+pysqlite:///:memory:", connect_args={"check_same_thread": False}
    )
    Base.metadata.create_all(engine)
    SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    return SessionLocal()


def make_store(today=date(2025, 1, 20), remote=None, session=None) -> BudgetStore:
    cache = LocalCache(session or make_session(), "test")
    return BudgetStore(cache, remote, today_fn=lambda: today)


def _raw(budget_id, start, end, **extra):
    return {
        "id": budget_id,
        "tag": "#food",
        "budgetType": "ad-hoc",
        "status": "active",
        "startDate": start,
        "endDate": end,
        "initialValue": 100,
        **extra,
    }


class FakeRemote:
    def __init__(self, stored=None, fail=False, delay=0):
        self.stored = stored
        self.fail = fail
        self.delay = delay
        self.saved = []

    async def load(self, key, default=None):
        if self.fail:
            raise RemoteStoreError("offline")
        return default if self.stored is None else self.stored

    async def save(self, key, value):
        if self.fail:
            raise RemoteStoreError("offline")
        if self.delay:
            await asyncio.sleep(self.delay)
        self.saved.append((key, value))


def test_parse_budget_requires_id_and_tag():
    with pytest.raises(InvalidBudgetRecord):
        parse_budget({"id": "b1"})
    with pytest.raises(InvalidBudgetRecord):
        parse_budget(["not", "a", "mapping"])
    assert normalize_budget({"tag": "#food"}) is None


def test_normalize_budget_coerces_fields():
    budget = normalize_budget(
        {
            "id": 42,
            "tag": " #food ",
            "status": "archived",
            "budgetType": "weekly",
            "startDate": "2025-02-10T12:00:00Z",
            "endDate": "2025-01-10",
            "initialValue": "abc",
            "spentValue": "12.5",
            "triggerTxIso": "not-a-date",
        }
    )
    assert budget.id == "42"
    assert budget.tag == "#food"
    assert budget.status == BudgetStatus.active
    assert budget.budget_type == BudgetType.ad_hoc
    assert budget.start_date == date(2025, 1, 10)
    assert budget.end_date == date(2025, 2, 10)
    assert budget.initial_value == 0.0
    assert budget.spent_value == 12.5
    assert budget.trigger_tx_iso is None


def test_storage_shape_uses_camel_case_keys():
    stored = parse_budget(_raw("b1", "2025-01-01", "2025-01-31")).to_storage()
    assert stored["budgetType"] == "ad-hoc"
    assert stored["startDate"] == "2025-01-01"
    assert set(stored) >= {"initialValue", "reservedValue", "spentValue", "triggerTxIso"}


def test_single_active_budget_per_tag():
    store = make_store(today=date(2025, 1, 20))
    saved = store.save_budgets(
        [
            _raw("a", "2025-01-01", "2025-01-31"),
            _raw("b", "2025-01-15", "2025-02-14"),
        ]
    )
    by_id = {b.id: b for b in saved}
    assert by_id["b"].status == BudgetStatus.active
    assert by_id["a"].status == BudgetStatus.closed
    assert store.find_active_by_tag("#food").id == "b"


def test_dedupe_without_window_match_keeps_latest_start():
    store = make_store(today=date(2025, 6, 1))
    saved = store.save_budgets(
        [
            _raw("a", "2025-01-01", "2025-01-31"),
            _raw("b", "2025-03-01", "2025-03-31"),
        ]
    )
    active = [b.id for b in saved if b.is_active]
    assert active == ["b"]


def test_save_drops_invalid_and_persists_locally():
    session = make_session()
    store = make_store(session=session)
    store.save_budgets([_raw("a", "2025-01-01", "2025-01-31"), {"id": "x"}])

    reloaded = make_store(session=session)
    budgets = reloaded.load_budgets()
    assert [b.id for b in budgets] == ["a"]
    assert reloaded.list_active_budgets()[0].initial_value == 100


def test_reset_cache_reads_from_local_cache():
    session = make_session()
    store = make_store(session=session)
    store.save_budgets([_raw("a", "2025-01-01", "2025-01-31")])
    LocalCache(session, "test").set("budgets", [])
    assert len(store.load_budgets()) == 1
    store.reset_cache()
    assert store.load_budgets() == []


def test_save_pushes_to_remote_in_background():
    remote = FakeRemote()
    store = make_store(remote=remote)
    store.save_budgets([_raw("a", "2025-01-01", "2025-01-31")])
    store.wait_for_sync(timeout=5)
    store.close()
    assert len(remote.saved) == 1
    key, payload = remote.saved[0]
    assert key == "budgets"
    assert payload[0]["id"] == "a"



def test_close_leaves_slow_push_running():
    remote = FakeRemote(delay=1)
    store = make_store(remote=remote)
    store.save_budgets([_raw("a", "2025-01-01", "2025-01-31")])

    started = time.monotonic()
    store.close()
    assert time.monotonic() - started < 0.5
    assert remote.saved == []

    shutdown_sync_worker(wait_for_pushes=True)
    assert [payload[0]["id"] for _, payload in remote.saved] == ["a"]


def test_remote_push_failure_is_swallowed():
    store = make_store(remote=FakeRemote(fail=True))
    saved = store.save_budgets([_raw("a", "2025-01-01", "2025-01-31")])
    store.wait_for_sync(timeout=5)
    store.close()
    assert [b.id for b in saved] == ["a"]
    assert store.load_budgets()[0].id == "a"


def test_merge_prefers_latest_update():
    older = _raw("a", "2025-01-01", "2025-01-31", initialValue=100, lastUpdated="2025-01-02T00:00:00Z")
    newer = _raw("b", "2025-01-01", "2025-01-31", initialValue=250, lastUpdated="2025-01-05T00:00:00Z")
    merged = merge_budgets([newer], [older], date(2025, 1, 20))
    assert len(merged) == 1
    assert merged[0].initial_value == 250
    assert merged[0].last_updated == datetime(2025, 1, 5, tzinfo=timezone.utc)


@pytest.mark.asyncio
async def test_reconcile_merges_remote_and_pushes_back():
    remote_item = _raw(
        "r", "2025-01-15", "2025-02-14", lastUpdated="2025-01-10T00:00:00Z"
    )
    remote = FakeRemote(stored={"-Nabc": remote_item})
    store = make_store(remote=remote)
    store.save_budgets([_raw("a", "2025-01-01", "2025-01-31")])
    store.wait_for_sync(timeout=5)
    remote.saved.clear()

    merged = await store.reconcile_with_remote()
    store.close()

    ids = {b.id: b.status for b in merged}
    assert ids == {"a": BudgetStatus.closed, "r": BudgetStatus.active}
    assert remote.saved and {item["id"] for item in remote.saved[-1][1]} == {"a", "r"}


@pytest.mark.asyncio
async def test_reconcile_keeps_local_when_remote_fails():
    store = make_store(remote=FakeRemote(fail=True))
    store.save_budgets([_raw("a", "2025-01-01", "2025-01-31")])
    store.wait_for_sync(timeout=5)

    merged = await store.reconcile_with_remote()
    store.close()
    assert [b.id for b in merged] == ["a"]


@pytest.mark.asyncio
async def test_remote_store_uses_profile_scoped_urls():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        if request.method == "GET":
            return httpx.Response(200, json=None)
        return httpx.Response(200, json={"ok": True})

    remote = RemoteStore(
        "https://example.test/",
        "alice",
        auth_token="secret",
        transport=httpx.MockTransport(handler),
    )
    assert await remote.load("budgets", []) == []
    await remote.save("budgets", [{"id": "a"}])

    assert seen[0].url.path == "/users/alice/budgets.json"
    assert seen[0].url.params["auth"] == "secret"
    assert seen[1].method == "PUT"


@pytest.mark.asyncio
async def test_remote_store_wraps_http_errors():
    remote = RemoteStore(
        "https://example.test",
        "alice",
        transport=httpx.MockTransport(lambda request: httpx.Response(503)),
    )
    with pytest.raises(RemoteStoreError):
        await remote.load("budgets")

import logging
from datetime import date
from typing import Optional

from fastapi import Depends, FastAPI, HTTPException
from sqlalchemy.orm import Session

from database import SessionLocal, init_db
from models import BudgetType
from reservations import ReservationCalculator
from scheduler import SchedulerManager
from schemas import BudgetRecord, BudgetValueIn, MaintenanceOut, TransactionUpsertIn
from services import (
    BudgetEditService,
    BudgetMaintenanceService,
    UpsertContext,
    extract_materialization_transactions,
)
from storage import BudgetStore, build_budget_store, shutdown_sync_worker

logger = logging.getLogger(__name__)


def _load_app_version() -> str:
    import tomllib

    try:
        with open("pyproject.toml", "rb") as f:
            data = tomllib.load(f)
    except (OSError, tomllib.TOMLDecodeError):
        return "unknown"
    return str(data.get("project", {}).get("version", "unknown"))


APP_VERSION = _load_app_version()

app = FastAPI(title="Budget Engine", version=APP_VERSION)


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_store(db: Session = Depends(get_db)):
    store = build_budget_store(db)
    try:
        yield store
    finally:
        store.close()


scheduler_manager = SchedulerManager()


@app.on_event("startup")
def startup_event():
    init_db()
    scheduler_manager.start()


@app.on_event("shutdown")
def shutdown_event():
    scheduler_manager.stop()
    shutdown_sync_worker()


def _dump(budgets: list[BudgetRecord]) -> list[dict]:
    return [budget.to_storage() for budget in budgets]


def _budget_or_404(store: BudgetStore, budget_id: str) -> BudgetRecord:
    budget = BudgetEditService(store).get(budget_id)
    if budget is None:
        raise HTTPException(status_code=404, detail="Budget not found")
    return budget


@app.get("/health")
def health():
    return {"status": "ok", "version": APP_VERSION}


@app.get("/budgets")
def list_budgets(store: BudgetStore = Depends(get_store)):
    return _dump(store.load_budgets())


@app.get("/budgets/active")
def list_active_budgets(store: BudgetStore = Depends(get_store)):
    return _dump(store.list_active_budgets())


@app.get("/budgets/by-tag")
def budgets_by_tag(tag: Optional[str] = None, store: BudgetStore = Depends(get_store)):
    if tag is not None:
        budget = store.find_active_by_tag(tag)
        if budget is None:
            raise HTTPException(status_code=404, detail="No active budget for tag")
        return budget.to_storage()
    ledger = BudgetMaintenanceService(store).load_ledger()
    by_tag = ReservationCalculator(store).budgets_by_tag(ledger)
    return {key: budget.to_storage() for key, budget in by_tag.items()}


@app.post("/transactions")
def record_transaction(payload: TransactionUpsertIn, store: BudgetStore = Depends(get_store)):
    context = UpsertContext(
        occurrence_date=payload.occurrence_date,
        next_occurrence_date=payload.next_occurrence_date,
        recurrence_id=payload.recurrence_id,
        creation_date=payload.creation_date,
    )
    outcome = BudgetMaintenanceService(store).record_transaction(payload.transaction, context)
    return {
        "changed": outcome.changed,
        "budget": outcome.budget.to_storage() if outcome.budget else None,
    }


@app.get("/reservations")
def reserved_total(
    on: Optional[date] = None,
    freeze_at: Optional[date] = None,
    store: BudgetStore = Depends(get_store),
):
    target = on or store.today_fn()
    ledger = BudgetMaintenanceService(store).load_ledger()
    total = ReservationCalculator(store).get_reserved_total_for_date(target, ledger, freeze_at)
    return {"date": target.isoformat(), "freezeAt": freeze_at, "reservedTotal": total}


@app.post("/maintenance/run", response_model=MaintenanceOut)
def run_maintenance(today: Optional[date] = None, store: BudgetStore = Depends(get_store)):
    report = BudgetMaintenanceService(store).run_daily(today)
    return MaintenanceOut(
        today=report.today,
        refreshed=report.refreshed,
        created=report.created,
        materialized=report.materialized,
        closed=report.closed,
    )


@app.post("/budgets/reconcile")
async def reconcile_budgets(store: BudgetStore = Depends(get_store)):
    merged = await store.reconcile_with_remote()
    return _dump(merged)


@app.get("/materializations")
def list_materializations(store: BudgetStore = Depends(get_store)):
    ledger = BudgetMaintenanceService(store).load_ledger()
    return [tx.to_storage() for tx in extract_materialization_transactions(ledger)]


@app.post("/budgets/{budget_id}/close")
def close_budget(budget_id: str, store: BudgetStore = Depends(get_store)):
    budget = _budget_or_404(store, budget_id)
    if budget.budget_type != BudgetType.recurring:
        raise HTTPException(status_code=400, detail="Only recurring budgets can be closed")
    BudgetEditService(store).close_recurring_budget(budget)
    return _budget_or_404(store, budget_id).to_storage()


@app.put("/budgets/{budget_id}/value")
def update_cycle_value(
    budget_id: str, payload: BudgetValueIn, store: BudgetStore = Depends(get_store)
):
    budget = _budget_or_404(store, budget_id)
    if not BudgetEditService(store).update_recurring_cycle_value(budget, payload.initial_value):
        raise HTTPException(status_code=400, detail="Only recurring budgets have a cycle value")
    return _budget_or_404(store, budget_id).to_storage()


@app.delete("/budgets/{budget_id}")
def delete_budget(
    budget_id: str,
    unlink_ops: bool = False,
    drop_master: bool = False,
    store: BudgetStore = Depends(get_store),
):
    budget = _budget_or_404(store, budget_id)
    editor = BudgetEditService(store)
    maintenance = BudgetMaintenanceService(store)
    if budget.budget_type == BudgetType.recurring:
        ledger = maintenance.load_ledger() if drop_master else None
        outcome = editor.remove_recurring_budget(budget, ledger)
    else:
        ledger = maintenance.load_ledger() if unlink_ops else None
        outcome = editor.remove_ad_hoc_budget(budget, ledger, unlink_ops=unlink_ops)
    if outcome.transactions is not None:
        maintenance.save_ledger(outcome.transactions)
    logger.info(f"budget_deleted: id={budget_id} type={budget.budget_type.value}")
    return {"removed": outcome.changed}


def main():
    import uvicorn

    uvicorn.run("main:app", host="0.0.0.0", port=8000, reload=False)


if __name__ == "__main__":
    main()

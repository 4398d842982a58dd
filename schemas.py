import logging
from collections.abc import Iterable, Mapping
from datetime import date, datetime
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator
from pydantic.alias_generators import to_camel

from models import BudgetStatus, BudgetType, RecurrenceCode
from periods import CycleWindow, parse_amount, parse_iso_date, utc_now

logger = logging.getLogger(__name__)

_RECURRENCE_CODES = {code.value for code in RecurrenceCode}


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class BudgetRecord(CamelModel):
    """A time-bounded reservation against one tag."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(..., min_length=1)
    tag: str = Field(..., min_length=1)
    budget_type: BudgetType = BudgetType.ad_hoc
    status: BudgetStatus = BudgetStatus.active
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    initial_value: float = 0.0
    reserved_value: float = 0.0
    spent_value: float = 0.0
    recurrence_id: Optional[str] = None
    last_updated: datetime = Field(default_factory=utc_now)
    trigger_tx_id: Optional[str] = None
    trigger_tx_iso: Optional[date] = None

    @property
    def is_active(self) -> bool:
        return self.status == BudgetStatus.active

    @property
    def window(self) -> Optional[CycleWindow]:
        if self.start_date is None or self.end_date is None:
            return None
        return CycleWindow(self.start_date, self.end_date)

    def to_storage(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


class LedgerTransaction(CamelModel):
    """The subset of a ledger entry the budget engine reads."""

    model_config = ConfigDict(extra="ignore")

    id: Optional[str] = None
    desc: Optional[str] = None
    val: float = 0.0
    op_date: Optional[date] = None
    post_date: Optional[date] = None
    method: Optional[str] = None
    recurrence: Optional[RecurrenceCode] = None
    recurrence_end: Optional[date] = None
    exceptions: list[date] = Field(default_factory=list)
    budget_tag: Optional[str] = None
    planned: bool = False
    is_budget_materialization: bool = False
    budget_reserve_for: Optional[str] = None
    budget_return_for: Optional[str] = None
    origin_budget_id: Optional[str] = None
    parent_id: Optional[str] = None
    recurrence_id: Optional[str] = None

    @field_validator(
        "id",
        "parent_id",
        "recurrence_id",
        "budget_reserve_for",
        "budget_return_for",
        "origin_budget_id",
        mode="before",
    )
    @classmethod
    def _coerce_identifier(cls, value: Any) -> Optional[str]:
        if value is None or isinstance(value, bool):
            return None
        if isinstance(value, (int, str)):
            text = str(value).strip()
            return text or None
        return None

    @field_validator("budget_tag", "method", "desc", mode="before")
    @classmethod
    def _strip_text(cls, value: Any) -> Optional[str]:
        if not isinstance(value, str):
            return None
        return value.strip() or None

    @field_validator("op_date", "post_date", "recurrence_end", mode="before")
    @classmethod
    def _coerce_date(cls, value: Any) -> Optional[date]:
        return parse_iso_date(value)

    @field_validator("exceptions", mode="before")
    @classmethod
    def _coerce_exceptions(cls, value: Any) -> list[date]:
        if not isinstance(value, (list, tuple, set)):
            return []
        parsed = (parse_iso_date(item) for item in value)
        return [d for d in parsed if d is not None]

    @field_validator("recurrence", mode="before")
    @classmethod
    def _coerce_recurrence(cls, value: Any) -> Optional[str]:
        if isinstance(value, RecurrenceCode):
            return value.value
        if not isinstance(value, str):
            return None
        code = value.strip().upper()
        return code if code in _RECURRENCE_CODES else None

    @field_validator("val", mode="before")
    @classmethod
    def _coerce_val(cls, value: Any) -> float:
        return parse_amount(value)

    @field_validator("planned", "is_budget_materialization", mode="before")
    @classmethod
    def _coerce_flag(cls, value: Any) -> bool:
        return bool(value)

    @property
    def effective_date(self) -> Optional[date]:
        return self.op_date or self.post_date

    @property
    def is_recurring_master(self) -> bool:
        return self.recurrence is not None

    def to_storage(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


def coerce_transactions(items: Optional[Iterable[Any]]) -> list[LedgerTransaction]:
    transactions: list[LedgerTransaction] = []
    for item in items or []:
        if isinstance(item, LedgerTransaction):
            transactions.append(item)
            continue
        if not isinstance(item, Mapping):
            continue
        try:
            transactions.append(LedgerTransaction.model_validate(item))
        except ValidationError as exc:
            logger.warning(f"ledger_entry_dropped: id={item.get('id')} errors={exc.error_count()}")
    return transactions


class TransactionUpsertIn(CamelModel):
    transaction: LedgerTransaction
    occurrence_date: Optional[date] = None
    next_occurrence_date: Optional[date] = None
    recurrence_id: Optional[str] = None
    creation_date: Optional[date] = None


class BudgetValueIn(CamelModel):
    initial_value: float = Field(..., ge=0)


class MaintenanceOut(BaseModel):
    today: date
    refreshed: int
    created: int
    materialized: int
    closed: int

from datetime import datetime
from enum import Enum

from sqlalchemy import DateTime, Index, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from database import Base


class BudgetType(str, Enum):
    ad_hoc = "ad-hoc"
    recurring = "recurring"


class BudgetStatus(str, Enum):
    active = "active"
    closed = "closed"


class RecurrenceCode(str, Enum):
    daily = "D"
    weekly = "W"
    biweekly = "BW"
    monthly = "M"
    quarterly = "Q"
    semiannual = "S"
    yearly = "Y"


FIXED_PERIOD_DAYS = {
    RecurrenceCode.daily: 1,
    RecurrenceCode.weekly: 7,
    RecurrenceCode.biweekly: 14,
}

MONTH_STEPS = {
    RecurrenceCode.monthly: 1,
    RecurrenceCode.quarterly: 3,
    RecurrenceCode.semiannual: 6,
}


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )


class CacheEntry(Base, TimestampMixin):
    """One JSON value stored under a profile-scoped key."""

    __tablename__ = "cache_entries"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    profile: Mapped[str] = mapped_column(String(80), nullable=False, default="default")
    key: Mapped[str] = mapped_column(String(120), nullable=False)
    value_json: Mapped[str] = mapped_column(Text, nullable=False, default="null")

    __table_args__ = (
        UniqueConstraint("profile", "key", name="uq_cache_entry_profile_key"),
        Index("ix_cache_entries_profile", "profile"),
    )

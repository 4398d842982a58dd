import logging
from datetime import date
from typing import Callable, Optional

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger

from config import get_settings
from database import session_scope
from recurrence import local_today
from services import BudgetMaintenanceService
from storage import build_budget_store


logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

DAY_WATCH_JOB_ID = "budget_day_watch"


class DayChangeWatcher:
    """Calls ``on_change`` once each time the local calendar day rolls over."""

    def __init__(
        self,
        on_change: Callable[[date], None],
        today_fn: Callable[[], date] = local_today,
    ) -> None:
        self.on_change = on_change
        self.today_fn = today_fn
        self.last_seen = today_fn()

    def tick(self) -> bool:
        today = self.today_fn()
        if today == self.last_seen:
            return False
        previous, self.last_seen = self.last_seen, today
        logger.info(f"day_changed: from={previous} to={today}")
        try:
            self.on_change(today)
        except Exception:
            logger.exception(f"day_change_callback_failed: today={today}")
        return True


def init_day_change_watcher(
    on_change: Callable[[date], None],
    interval_seconds: Optional[int] = None,
    today_fn: Callable[[], date] = local_today,
    scheduler: Optional[BackgroundScheduler] = None,
) -> Callable[[], None]:
    """Poll for day rollovers on an interval job and return a teardown."""
    settings = get_settings()
    interval = interval_seconds or settings.day_watch_interval_secs
    owns_scheduler = scheduler is None
    if scheduler is None:
        scheduler = BackgroundScheduler(timezone=settings.timezone)

    watcher = DayChangeWatcher(on_change, today_fn)
    scheduler.add_job(
        watcher.tick,
        IntervalTrigger(seconds=interval),
        id=DAY_WATCH_JOB_ID,
        replace_existing=True,
        max_instances=1,
        coalesce=True,
    )
    if owns_scheduler:
        scheduler.start()

    def teardown() -> None:
        if owns_scheduler:
            if scheduler.running:
                scheduler.shutdown(wait=False)
            return
        if scheduler.get_job(DAY_WATCH_JOB_ID) is not None:
            scheduler.remove_job(DAY_WATCH_JOB_ID)

    return teardown


class SchedulerManager:
    def __init__(self) -> None:
        settings = get_settings()
        self.scheduler = BackgroundScheduler(timezone=settings.timezone)
        self._stop_watcher: Optional[Callable[[], None]] = None

    def _run_job(self, source: str = "manual", today: Optional[date] = None) -> None:
        logger.info(f"scheduler_run: source={source}")
        with session_scope() as session:
            store = build_budget_store(session)
            try:
                report = BudgetMaintenanceService(store).run_daily(today)
            finally:
                store.close()
            logger.info(
                f"scheduler_run: source={source} created={report.created} "
                f"materialized={report.materialized} closed={report.closed}"
            )

    def _on_day_change(self, today: date) -> None:
        self._run_job("day_change", today)

    def start(self) -> None:
        self._run_job("startup")

        self._stop_watcher = init_day_change_watcher(
            self._on_day_change, scheduler=self.scheduler
        )

        trigger = IntervalTrigger(hours=1)
        self.scheduler.add_job(
            self._run_job,
            trigger,
            args=["hourly_safety_net"],
            id="budget_maintenance_hourly",
            replace_existing=True,
            misfire_grace_time=300,
        )

        self.scheduler.start()
        logger.info("Scheduler started with day-change watch and hourly safety net")

    def stop(self) -> None:
        if self._stop_watcher is not None:
            self._stop_watcher()
            self._stop_watcher = None
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Scheduler stopped")

import logging
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from config import get_settings
from database import session_scope
from recurrence import RecurringEngine
from services import refresh_stale_budgets


logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


class SchedulerManager:
    def __init__(self) -> None:
        settings = get_settings()
        self.scheduler = BackgroundScheduler(timezone=settings.timezone)
        self.refresh_minutes = settings.budget_refresh_minutes

    def _run_job(self, source: str = "manual") -> None:
        logger.info(f"scheduler_run: source={source}")
        with session_scope() as session:
            count = RecurringEngine(session).materialize_due()
            logger.info(f"scheduler_run: source={source} occurrences_posted={count}")

    def _refresh_budgets(self) -> None:
        with session_scope() as session:
            count = refresh_stale_budgets(session)
        if count:
            logger.info(f"budget_refresh: refreshed={count}")

    def start(self) -> None:
        self._run_job("startup")

        trigger = CronTrigger(hour=3, minute=15)
        self.scheduler.add_job(
            self._run_job,
            trigger,
            args=["daily_03:15"],
            id="recurring_daily",
            replace_existing=True,
            misfire_grace_time=3600,
        )

        trigger = IntervalTrigger(minutes=self.refresh_minutes)
        self.scheduler.add_job(
            self._refresh_budgets,
            trigger,
            id="budget_refresh",
            replace_existing=True,
            misfire_grace_time=300,
        )

        self.scheduler.start()
        logger.info(
            f"Scheduler started with daily 03:15 materialization and "
            f"budget refresh every {self.refresh_minutes} minutes"
        )

    def stop(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Scheduler stopped")

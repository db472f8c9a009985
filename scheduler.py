import logging
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger

from config import get_settings
from database import session_scope
from services import RecurringExpenseService


logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


class SchedulerManager:
    def __init__(self) -> None:
        settings = get_settings()
        self.scheduler = BackgroundScheduler(timezone=settings.timezone)

    def _run_job(self, source: str = "manual") -> None:
        logger.info(f"scheduler_run: source={source}")
        with session_scope() as session:
            result = RecurringExpenseService(session).generate()
            logger.info(
                f"scheduler_run: source={source} month={result.month} year={result.year} "
                f"generated={result.generated} skipped={result.skipped} failed={result.failed}"
            )

    def start(self) -> None:
        self._run_job("startup")

        trigger = CronTrigger(day=1, hour=0, minute=30)
        self.scheduler.add_job(
            self._run_job,
            trigger,
            args=["monthly_00:30"],
            id="recurring_monthly",
            replace_existing=True,
            misfire_grace_time=6 * 3600,
        )

        trigger = CronTrigger(hour=3, minute=15)
        self.scheduler.add_job(
            self._run_job,
            trigger,
            args=["daily_safety_net"],
            id="recurring_daily_safety",
            replace_existing=True,
            misfire_grace_time=3600,
        )

        self.scheduler.start()
        logger.info("Scheduler started with monthly 1st 00:30 run and daily 03:15 safety net")

    def stop(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Scheduler stopped")

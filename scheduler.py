import logging

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger

from config import get_settings
from database import session_scope
from periods import local_today, trailing_months
from services import rebuild_reports_for_all_users


logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


class SchedulerManager:
    def __init__(self) -> None:
        settings = get_settings()
        self.scheduler = BackgroundScheduler(timezone=settings.timezone)

    def _run_job(self, source: str = "manual") -> None:
        # Previous month is refreshed too so late entries still land in its report.
        months = trailing_months(local_today(), 2)
        logger.info(f"report_run: source={source}")
        with session_scope() as session:
            count = rebuild_reports_for_all_users(session, months)
            logger.info(f"report_run: source={source} reports_written={count}")

    def start(self) -> None:
        self._run_job("startup")

        trigger = CronTrigger(hour=2, minute=30)
        self.scheduler.add_job(
            self._run_job,
            trigger,
            args=["daily_02:30"],
            id="monthly_reports_daily",
            replace_existing=True,
            misfire_grace_time=3600,
        )

        self.scheduler.start()
        logger.info("Scheduler started with daily 02:30 report refresh")

    def stop(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Scheduler stopped")

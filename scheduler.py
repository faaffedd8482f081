import logging

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from config import get_settings
from database import session_scope
from periods import local_today
from services import close_past_plan_months


logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


class SchedulerManager:
    """Closes plan months once they are over.

    The month-start run does the real work; the daily and hourly runs only
    catch up after downtime, and are no-ops when nothing is left open.
    """

    def __init__(self) -> None:
        settings = get_settings()
        self.timezone = settings.timezone
        self.scheduler = BackgroundScheduler(timezone=self.timezone)

    def _jobs(self):
        return [
            ("plan_close_month_start", CronTrigger(day=1, hour=0, minute=5), 3600),
            ("plan_close_daily", CronTrigger(hour=3, minute=15), 3600),
            ("plan_close_hourly_safety", IntervalTrigger(hours=1), 300),
        ]

    def run_now(self, source: str = "manual") -> int:
        with session_scope() as session:
            count = close_past_plan_months(session, local_today())
        if count:
            logger.info(f"plan_months_closed: source={source} plan_items={count}")
        else:
            logger.debug(f"plan_months_closed: source={source} plan_items=0")
        return count

    def start(self) -> None:
        self.run_now("startup")

        for job_id, trigger, grace in self._jobs():
            self.scheduler.add_job(
                self.run_now,
                trigger,
                args=[job_id],
                id=job_id,
                replace_existing=True,
                misfire_grace_time=grace,
            )

        self.scheduler.start()
        logger.info(f"Scheduler started: timezone={self.timezone} jobs={len(self._jobs())}")

    def stop(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Scheduler stopped")

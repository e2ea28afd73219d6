import logging
import threading

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from config import get_settings
from database import session_scope
from services import MaintenanceService, get_current_user_id, user_ids_with_data


logging.basicConfig(level=get_settings().log_level)
logger = logging.getLogger(__name__)


class SchedulerManager:
    def __init__(self) -> None:
        settings = get_settings()
        self.scheduler = BackgroundScheduler(timezone=settings.timezone)
        self._lock = threading.Lock()

    def _run_job(self, source: str = "manual") -> None:
        if not self._lock.acquire(blocking=False):
            logger.info(f"scheduler_run: source={source} skipped=already_running")
            return
        try:
            logger.info(f"scheduler_run: source={source}")
            with session_scope() as session:
                user_ids = user_ids_with_data(session) or [get_current_user_id()]
            for user_id in user_ids:
                with session_scope() as session:
                    summary = MaintenanceService(session, user_id).run()
                logger.info(
                    f"scheduler_run: source={source} user_id={user_id} "
                    f"occurrences_posted={summary['posted']} "
                    f"failed={summary['failed']} migrated={summary['migrated']}"
                )
        except Exception:
            logger.exception(f"scheduler_run_failed: source={source}")
        finally:
            self._lock.release()

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
            max_instances=1,
            coalesce=True,
        )

        trigger = IntervalTrigger(hours=1)
        self.scheduler.add_job(
            self._run_job,
            trigger,
            args=["hourly_safety_net"],
            id="recurring_hourly_safety",
            replace_existing=True,
            misfire_grace_time=300,
            max_instances=1,
            coalesce=True,
        )

        self.scheduler.start()
        logger.info("Scheduler started with daily 03:15 and hourly safety net")

    def stop(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Scheduler stopped")

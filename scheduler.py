import logging
from typing import Optional

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger

from config import get_settings
from database import session_scope
from services import ReconciliationService


logger = logging.getLogger(__name__)


class SchedulerManager:
    def __init__(self, interval_minutes: Optional[int] = None) -> None:
        settings = get_settings()
        if interval_minutes is None:
            interval_minutes = settings.reconcile_interval_minutes
        self.interval_minutes = interval_minutes
        self.scheduler = BackgroundScheduler(timezone=settings.timezone)

    def _run_job(self, source: str = "manual") -> int:
        logger.info(f"reconciliation_run: source={source}")
        with session_scope() as session:
            drifts = ReconciliationService(session).audit()
        logger.info(f"reconciliation_run: source={source} drifted={len(drifts)}")
        return len(drifts)

    def start(self) -> None:
        if self.interval_minutes <= 0:
            logger.info("Balance reconciliation disabled")
            return

        self._run_job("startup")

        trigger = IntervalTrigger(minutes=self.interval_minutes)
        self.scheduler.add_job(
            self._run_job,
            trigger,
            args=["interval"],
            id="balance_reconciliation",
            replace_existing=True,
            misfire_grace_time=300,
        )

        self.scheduler.start()
        logger.info(
            f"Scheduler started with reconciliation every {self.interval_minutes} minutes"
        )

    def stop(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Scheduler stopped")

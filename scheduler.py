import logging
from typing import Optional

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from config import get_settings
from database import session_scope
from errors import BudgetCoreError
from services import SweepReport, SweepService


logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


class SchedulerManager:
    def __init__(self) -> None:
        settings = get_settings()
        self.settings = settings
        self.scheduler = BackgroundScheduler(timezone=settings.timezone)

    def _run_job(self, source: str = "manual") -> Optional[SweepReport]:
        logger.info(f"scheduler_run: source={source}")
        try:
            with session_scope() as session:
                report = SweepService(session).run()
        except BudgetCoreError as exc:
            logger.error(
                f"scheduler_run: source={source} aborted reason={exc.message} "
                f"retryable={exc.retryable}"
            )
            return None
        logger.info(
            f"scheduler_run: source={source} budgets={report.budgets} "
            f"alerts={report.alerts} failures={report.failures}"
        )
        return report

    def start(self) -> None:
        settings = self.settings
        self._run_job("startup")

        label = f"daily_{settings.sweep_hour:02d}:{settings.sweep_minute:02d}"
        trigger = CronTrigger(hour=settings.sweep_hour, minute=settings.sweep_minute)
        self.scheduler.add_job(
            self._run_job,
            trigger,
            args=[label],
            id="budget_sweep_daily",
            replace_existing=True,
            misfire_grace_time=3600,
            max_instances=1,
            coalesce=True,
        )

        trigger = IntervalTrigger(hours=settings.sweep_safety_hours)
        self.scheduler.add_job(
            self._run_job,
            trigger,
            args=["safety_net"],
            id="budget_sweep_safety",
            replace_existing=True,
            misfire_grace_time=300,
            max_instances=1,
            coalesce=True,
        )

        self.scheduler.start()
        logger.info(
            f"Scheduler started with {label} sweep and "
            f"{settings.sweep_safety_hours}h safety net"
        )

    def stop(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Scheduler stopped")

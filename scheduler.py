import logging
from dataclasses import dataclass
from datetime import date, datetime
from typing import Optional

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from config import get_settings
from database import session_scope
from recurrence import RecurringEngine, local_today


logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RecurringRun:
    source: str
    run_for: date
    finished_at: datetime
    transactions_posted: int


def parse_run_at(value: str) -> tuple[int, int]:
    """``"HH:MM"`` to ``(hour, minute)``."""
    try:
        hour_text, minute_text = value.strip().split(":")
        hour, minute = int(hour_text), int(minute_text)
    except ValueError as exc:
        raise ValueError(f"Invalid run time {value!r}, expected HH:MM") from exc
    if not (0 <= hour <= 23 and 0 <= minute <= 59):
        raise ValueError(f"Invalid run time {value!r}, expected HH:MM")
    return hour, minute


class SchedulerManager:
    def __init__(self) -> None:
        settings = get_settings()
        self.timezone = settings.timezone
        self.run_at = parse_run_at(settings.recurring_run_at)
        self.scheduler = BackgroundScheduler(timezone=self.timezone)
        self.last_run: Optional[RecurringRun] = None

    def run_due_series(self, source: str = "manual") -> int:
        today = local_today()
        logger.info(f"recurring_run: source={source} today={today}")
        with session_scope() as session:
            posted = RecurringEngine(session).execute_due(today)
        self.last_run = RecurringRun(
            source=source,
            run_for=today,
            finished_at=datetime.now(),
            transactions_posted=posted,
        )
        logger.info(f"recurring_run: source={source} transactions_posted={posted}")
        return posted

    def status(self) -> dict:
        jobs = self.scheduler.get_jobs() if self.scheduler.running else []
        return {
            "running": self.scheduler.running,
            "timezone": self.timezone,
            "daily_run_at": f"{self.run_at[0]:02d}:{self.run_at[1]:02d}",
            "next_runs": {
                job.id: job.next_run_time.isoformat() if job.next_run_time else None
                for job in jobs
            },
            "last_run": self.last_run,
        }

    def start(self) -> None:
        self.run_due_series("startup")

        hour, minute = self.run_at
        self.scheduler.add_job(
            self.run_due_series,
            CronTrigger(hour=hour, minute=minute),
            args=[f"daily_{hour:02d}:{minute:02d}"],
            id="recurring_daily",
            replace_existing=True,
            misfire_grace_time=3600,
        )
        # Catches up after sleep or a missed daily run.
        self.scheduler.add_job(
            self.run_due_series,
            IntervalTrigger(hours=1),
            args=["hourly_safety_net"],
            id="recurring_hourly_safety",
            replace_existing=True,
            misfire_grace_time=300,
        )

        self.scheduler.start()
        logger.info(
            f"scheduler_started: daily_at={hour:02d}:{minute:02d} tz={self.timezone}"
        )

    def stop(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("scheduler_stopped")

import logging
from datetime import datetime
from typing import Optional

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger
from sqlalchemy.orm import sessionmaker

from alerts import BudgetAlertEvaluator
from config import Settings
from database import run_unit
from gemini import GeminiClient
from instants import to_instant, utc_now
from notifications import Notifier
from recurrence import RecurringEngine, empty_counts
from reports import MonthlyReportService
from retry import RetryPolicy

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


class SchedulerManager:
    def __init__(
        self,
        session_factory: sessionmaker,
        settings: Settings,
        notifier: Notifier,
        client: Optional[GeminiClient] = None,
    ) -> None:
        self.session_factory = session_factory
        self.settings = settings
        self.notifier = notifier
        self.client = client
        self.retry_policy = RetryPolicy.from_settings(settings)
        self.scheduler = BackgroundScheduler(timezone=settings.timezone)

    def _engine(self, session) -> RecurringEngine:
        return RecurringEngine(
            session,
            throttle_limit=self.settings.recurring_throttle_limit,
            throttle_period_secs=self.settings.recurring_throttle_period_secs,
        )

    def run_recurring(
        self, source: str = "manual", now: Optional[datetime] = None
    ) -> dict[str, int]:
        now = to_instant(now or utc_now())
        logger.info(f"scheduler_run: job=recurring source={source}")
        events = run_unit(
            self.session_factory,
            lambda session: self._engine(session).find_due(now),
            self.retry_policy,
        )
        counts = empty_counts()
        # Each event gets its own session so a retry never replays a sibling.
        for event in events:
            try:
                result = run_unit(
                    self.session_factory,
                    lambda session, event=event: self._engine(session).process(
                        event, now
                    ),
                    self.retry_policy,
                )
            except Exception:
                counts["failed"] += 1
                logger.exception(
                    f"recurring_failed: user={event.owner_id} "
                    f"template={event.transaction_id}"
                )
                continue
            counts[result.outcome.value] += 1
        logger.info(
            f"scheduler_run: job=recurring source={source} due={len(events)} "
            f"processed={counts['processed']} throttled={counts['throttled']} "
            f"failed={counts['failed']}"
        )
        return counts

    def run_budget_alerts(self, now: Optional[datetime] = None) -> int:
        logger.info("scheduler_run: job=budget_alerts")
        decisions = run_unit(
            self.session_factory,
            lambda session: BudgetAlertEvaluator(
                session,
                self.notifier,
                threshold=self.settings.budget_alert_threshold_pct,
                timezone=self.settings.timezone,
            ).evaluate_all(now),
            self.retry_policy,
        )
        fired = sum(1 for decision in decisions if decision.fired)
        logger.info(
            f"scheduler_run: job=budget_alerts checked={len(decisions)} fired={fired}"
        )
        return fired

    def run_monthly_reports(self, now: Optional[datetime] = None) -> int:
        logger.info("scheduler_run: job=monthly_reports")
        processed = run_unit(
            self.session_factory,
            lambda session: MonthlyReportService(
                session, self.notifier, self.client, timezone=self.settings.timezone
            ).generate_all(now),
            self.retry_policy,
        )
        logger.info(f"scheduler_run: job=monthly_reports processed={processed}")
        return processed

    def start(self) -> None:
        self.scheduler.add_job(
            self.run_recurring,
            CronTrigger(hour=0, minute=0),
            args=["daily_00:00"],
            id="recurring_daily",
            replace_existing=True,
            misfire_grace_time=3600,
        )
        self.scheduler.add_job(
            self.run_recurring,
            IntervalTrigger(hours=1),
            args=["hourly_safety_net"],
            id="recurring_hourly_safety",
            replace_existing=True,
            misfire_grace_time=300,
        )
        self.scheduler.add_job(
            self.run_budget_alerts,
            CronTrigger(hour="*/6", minute=0),
            id="budget_alerts",
            replace_existing=True,
            misfire_grace_time=3600,
        )
        self.scheduler.add_job(
            self.run_monthly_reports,
            CronTrigger(day=1, hour=0, minute=0),
            id="monthly_reports",
            replace_existing=True,
            misfire_grace_time=6 * 3600,
        )
        self.scheduler.start()
        logger.info(
            "Scheduler started: recurring daily + hourly, budget alerts every 6h, "
            "monthly reports on the 1st"
        )

    def stop(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Scheduler stopped")

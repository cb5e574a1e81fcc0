import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from instants import to_instant, utc_now
from metrics import MetricsService
from models import Account, Budget, User
from notifications import Notifier, deliver, render_email
from periods import local_month

logger = logging.getLogger(__name__)

DEFAULT_THRESHOLD_PCT = 80.0


def percentage_used(expenses_cents: int, budget_cents: int) -> Optional[float]:
    if budget_cents <= 0:
        return None
    return expenses_cents / budget_cents * 100


def is_new_month(
    last_alert: Optional[datetime], now: datetime, timezone: str = "UTC"
) -> bool:
    if last_alert is None:
        return True
    return local_month(last_alert, timezone) != local_month(now, timezone)


def should_alert(
    pct: Optional[float],
    last_alert: Optional[datetime],
    now: datetime,
    *,
    threshold: float = DEFAULT_THRESHOLD_PCT,
    timezone: str = "UTC",
) -> bool:
    if pct is None or pct < threshold:
        return False
    return is_new_month(last_alert, now, timezone)


@dataclass(frozen=True)
class AlertDecision:
    user_id: str
    fired: bool
    percentage_used: Optional[float] = None
    reason: str = ""


class BudgetAlertEvaluator:
    def __init__(
        self,
        session: Session,
        notifier: Notifier,
        *,
        threshold: float = DEFAULT_THRESHOLD_PCT,
        timezone: str = "UTC",
    ) -> None:
        self.session = session
        self.notifier = notifier
        self.threshold = threshold
        self.timezone = timezone

    def evaluate_all(self, now: Optional[datetime] = None) -> list[AlertDecision]:
        now = to_instant(now or utc_now())
        budget_ids = self.session.scalars(select(Budget.id).order_by(Budget.id)).all()
        decisions = []
        for budget_id in budget_ids:
            try:
                decisions.append(self.evaluate(budget_id, now))
            except Exception:
                self.session.rollback()
                logger.exception(f"budget_alert_failed: budget={budget_id}")
        return decisions

    def evaluate(self, budget_id: int, now: Optional[datetime] = None) -> AlertDecision:
        now = to_instant(now or utc_now())
        budget = self.session.get(Budget, budget_id)
        if budget is None:
            return AlertDecision("", False, reason="missing_budget")
        user_id = budget.user_id
        account = self.session.scalar(
            select(Account).where(
                Account.user_id == user_id, Account.is_default.is_(True)
            )
        )
        if account is None:
            return AlertDecision(user_id, False, reason="no_default_account")

        expenses = MetricsService(
            self.session, user_id, timezone=self.timezone
        ).current_month_expenses(account.id, now)
        pct = percentage_used(expenses, budget.amount_cents)
        if not should_alert(
            pct,
            budget.last_alert_sent,
            now,
            threshold=self.threshold,
            timezone=self.timezone,
        ):
            return AlertDecision(user_id, False, pct, reason="below_threshold_or_sent")

        # The month stays unclaimed until the owner has somewhere to receive it.
        user = self.session.get(User, user_id)
        if user is None or not user.email:
            logger.warning(
                f"budget_alert_skipped: user={user_id} reason=no_recipient"
            )
            return AlertDecision(user_id, False, pct, reason="no_recipient")

        observed = budget.last_alert_sent
        guard = (
            Budget.last_alert_sent.is_(None)
            if observed is None
            else Budget.last_alert_sent == observed
        )
        claimed = self.session.execute(
            update(Budget)
            .where(Budget.id == budget.id, guard)
            .values(last_alert_sent=now)
        )
        if claimed.rowcount != 1:
            self.session.rollback()
            return AlertDecision(user_id, False, pct, reason="claimed_elsewhere")
        self.session.commit()

        body = render_email(
            "budget_alert",
            user_name=user.name or "there",
            percentage_used=pct,
            budget_amount=budget.amount_cents,
            total_expenses=expenses,
            account_name=account.name,
        )
        deliver(
            self.notifier,
            user.email,
            f"Budget Alert for {account.name}",
            body,
        )
        logger.info(f"budget_alert_sent: user={user_id} pct={pct:.1f}")
        return AlertDecision(user_id, True, pct, reason="sent")

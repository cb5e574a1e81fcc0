import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Optional

from sqlalchemy import func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from errors import NotFound
from instants import to_instant, utc_now
from ledger import apply_balance_delta, transaction_delta
from models import (
    Account,
    RecurrenceOccurrence,
    RecurringInterval,
    Transaction,
)
from schemas import RecurringEvent

logger = logging.getLogger(__name__)

RECURRING_SUFFIX = " (Recurring)"


def days_in_month(year: int, month: int) -> int:
    if month == 12:
        next_month = datetime(year + 1, 1, 1)
    else:
        next_month = datetime(year, month + 1, 1)
    return (next_month - datetime(year, month, 1)).days


def _add_months(base: datetime, months: int) -> datetime:
    total_months = base.month - 1 + months
    year = base.year + total_months // 12
    month = total_months % 12 + 1
    day = min(base.day, days_in_month(year, month))
    return base.replace(year=year, month=month, day=day)


def calculate_next_date(anchor: datetime, interval: RecurringInterval) -> datetime:
    """Next occurrence after ``anchor``; month ends clip to the shorter month."""
    if interval == RecurringInterval.daily:
        return anchor + timedelta(days=1)
    if interval == RecurringInterval.weekly:
        return anchor + timedelta(days=7)
    if interval == RecurringInterval.monthly:
        return _add_months(anchor, 1)
    if interval == RecurringInterval.yearly:
        return _add_months(anchor, 12)
    raise ValueError(f"Unsupported recurring interval: {interval}")


def advance_schedule(
    scheduled: datetime, interval: RecurringInterval, now: datetime
) -> datetime:
    """First date on the cadence, from ``scheduled`` on, strictly after ``now``."""
    next_date = scheduled
    while next_date <= now:
        next_date = calculate_next_date(next_date, interval)
    return next_date


def is_due(txn: Transaction, now: Optional[datetime] = None) -> bool:
    if not txn.is_recurring:
        return False
    if txn.last_processed is None:
        return True
    if txn.next_recurring_date is None:
        return False
    return to_instant(txn.next_recurring_date) <= to_instant(now or utc_now())


def scheduled_occurrence(txn: Transaction) -> datetime:
    return to_instant(txn.next_recurring_date or txn.date)


def period_key(txn: Transaction, now: datetime) -> str:
    # A first run ahead of the schedule posts the anchor period itself.
    scheduled = scheduled_occurrence(txn)
    if txn.last_processed is None and scheduled > to_instant(now):
        return to_instant(txn.date).date().isoformat()
    return scheduled.date().isoformat()


class ProcessOutcome(str, Enum):
    processed = "processed"
    not_due = "not_due"
    duplicate = "duplicate"
    throttled = "throttled"


@dataclass(frozen=True)
class ProcessResult:
    outcome: ProcessOutcome
    template_id: int
    transaction_id: Optional[int] = None


class OccurrenceThrottle:
    """Caps generated transactions per owner within a sliding window."""

    def __init__(self, session: Session, limit: int = 10, period_secs: int = 60) -> None:
        self.session = session
        self.limit = limit
        self.period = timedelta(seconds=period_secs)

    def recent_count(self, user_id: str, now: datetime) -> int:
        stmt = select(func.count(RecurrenceOccurrence.id)).where(
            RecurrenceOccurrence.user_id == user_id,
            RecurrenceOccurrence.created_at > now - self.period,
        )
        return int(self.session.execute(stmt).scalar_one() or 0)

    def allows(self, user_id: str, now: datetime) -> bool:
        if self.limit <= 0:
            return True
        return self.recent_count(user_id, now) < self.limit


class RecurringEngine:
    def __init__(
        self,
        session: Session,
        *,
        throttle_limit: int = 10,
        throttle_period_secs: int = 60,
    ) -> None:
        self.session = session
        self.throttle = OccurrenceThrottle(session, throttle_limit, throttle_period_secs)

    def find_due(self, now: Optional[datetime] = None) -> list[RecurringEvent]:
        now = to_instant(now or utc_now())
        stmt = (
            select(Transaction.id, Transaction.user_id, Transaction.account_id)
            .where(
                Transaction.is_recurring.is_(True),
                or_(
                    Transaction.last_processed.is_(None),
                    Transaction.next_recurring_date <= now,
                ),
            )
            .order_by(Transaction.next_recurring_date, Transaction.id)
        )
        return [
            RecurringEvent(owner_id=user_id, transaction_id=txn_id, account_id=account_id)
            for txn_id, user_id, account_id in self.session.execute(stmt).all()
        ]

    def locate(self, event: RecurringEvent) -> tuple[Transaction, Account]:
        if event.account_id is not None:
            found = self._template_in_account(event, event.account_id)
            if found:
                return found
        accounts = self.session.scalars(
            select(Account)
            .where(Account.user_id == event.owner_id)
            .order_by(Account.id)
        ).all()
        for account in accounts:
            found = self._template_in_account(event, account.id)
            if found:
                return found
        raise NotFound(
            f"Recurring transaction {event.transaction_id} not found "
            f"for owner {event.owner_id}"
        )

    def _template_in_account(
        self, event: RecurringEvent, account_id: int
    ) -> Optional[tuple[Transaction, Account]]:
        account = self.session.get(Account, account_id)
        if not account or account.user_id != event.owner_id:
            return None
        txn = self.session.scalar(
            select(Transaction).where(
                Transaction.id == event.transaction_id,
                Transaction.account_id == account.id,
            )
        )
        if not txn:
            return None
        return txn, account

    def materialize(
        self,
        template: Transaction,
        account: Account,
        now: Optional[datetime] = None,
    ) -> ProcessResult:
        now = to_instant(now or utc_now())
        if not is_due(template, now):
            return ProcessResult(ProcessOutcome.not_due, template.id)
        if not self.throttle.allows(template.user_id, now):
            logger.info(
                f"recurring_throttled: user={template.user_id} template={template.id}"
            )
            return ProcessResult(ProcessOutcome.throttled, template.id)

        template_id = template.id
        observed_last = template.last_processed
        next_date = advance_schedule(
            scheduled_occurrence(template), template.recurring_interval, now
        )

        occurrence = RecurrenceOccurrence(
            user_id=template.user_id,
            template_id=template_id,
            period_key=period_key(template, now),
            created_at=now,
        )
        self.session.add(occurrence)
        try:
            self.session.flush()
        except IntegrityError:
            self.session.rollback()
            logger.info(f"recurring_duplicate: template={template_id}")
            return ProcessResult(ProcessOutcome.duplicate, template_id)

        last_guard = (
            Transaction.last_processed.is_(None)
            if observed_last is None
            else Transaction.last_processed == observed_last
        )
        swapped = self.session.execute(
            update(Transaction)
            .where(Transaction.id == template_id, last_guard)
            .values(last_processed=now, next_recurring_date=next_date)
        )
        if swapped.rowcount != 1:
            self.session.rollback()
            logger.info(f"recurring_cas_lost: template={template_id}")
            return ProcessResult(ProcessOutcome.duplicate, template_id)

        copy = Transaction(
            user_id=template.user_id,
            account_id=account.id,
            type=template.type,
            amount_cents=template.amount_cents,
            description=f"{template.description or ''}{RECURRING_SUFFIX}".strip(),
            category=template.category,
            date=now,
            is_recurring=False,
            origin_transaction_id=template_id,
        )
        self.session.add(copy)
        self.session.flush()
        occurrence.transaction_id = copy.id
        apply_balance_delta(self.session, account.id, transaction_delta(copy))
        self.session.commit()
        return ProcessResult(ProcessOutcome.processed, template_id, copy.id)

    def process(
        self, event: RecurringEvent, now: Optional[datetime] = None
    ) -> ProcessResult:
        template, account = self.locate(event)
        return self.materialize(template, account, now)

    def post_due(self, now: Optional[datetime] = None) -> dict[str, int]:
        """Process every due template; each one commits or rolls back alone."""
        now = to_instant(now or utc_now())
        counts = empty_counts()
        for event in self.find_due(now):
            try:
                result = self.process(event, now)
            except Exception:
                self.session.rollback()
                counts["failed"] += 1
                logger.exception(
                    f"recurring_failed: user={event.owner_id} "
                    f"template={event.transaction_id}"
                )
                continue
            counts[result.outcome.value] += 1
        return counts


def empty_counts() -> dict[str, int]:
    counts = {outcome.value: 0 for outcome in ProcessOutcome}
    counts["failed"] = 0
    return counts

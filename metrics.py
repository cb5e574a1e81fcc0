from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from instants import to_instant, utc_now
from models import Transaction, TransactionType
from periods import Period, current_month, month_period


@dataclass
class MonthlyStats:
    total_income: int = 0
    total_expenses: int = 0
    by_category: dict[str, int] = field(default_factory=dict)
    transaction_count: int = 0

    @property
    def net(self) -> int:
        return self.total_income - self.total_expenses


def summarize(transactions: Iterable[Transaction], period: Period) -> MonthlyStats:
    """Fold transactions falling inside the closed ``period`` into totals.

    Amounts are in cents; ``by_category`` only carries expenses.
    """
    stats = MonthlyStats()
    for txn in transactions:
        if not period.contains(to_instant(txn.date)):
            continue
        stats.transaction_count += 1
        if txn.type == TransactionType.expense:
            stats.total_expenses += txn.amount_cents
            stats.by_category[txn.category] = (
                stats.by_category.get(txn.category, 0) + txn.amount_cents
            )
        else:
            stats.total_income += txn.amount_cents
    return stats


class MetricsService:
    def __init__(self, session: Session, user_id: str, *, timezone: str = "UTC") -> None:
        self.session = session
        self.user_id = user_id
        self.timezone = timezone

    def _transactions(
        self, period: Period, account_id: Optional[int]
    ) -> list[Transaction]:
        stmt = select(Transaction).where(
            Transaction.user_id == self.user_id,
            Transaction.date >= period.start,
            Transaction.date <= period.end,
        )
        if account_id is not None:
            stmt = stmt.where(Transaction.account_id == account_id)
        return self.session.scalars(stmt.order_by(Transaction.date)).all()

    def aggregate(self, period: Period, account_id: Optional[int] = None) -> MonthlyStats:
        return summarize(self._transactions(period, account_id), period)

    def monthly_stats(
        self, year: int, month: int, account_id: Optional[int] = None
    ) -> MonthlyStats:
        return self.aggregate(month_period(year, month, self.timezone), account_id)

    def current_month_expenses(
        self, account_id: int, now: Optional[datetime] = None
    ) -> int:
        period = current_month(now or utc_now(), self.timezone)
        return self.aggregate(period, account_id).total_expenses

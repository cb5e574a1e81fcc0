from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, Optional

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from errors import NotFound, Unauthorized
from instants import to_instant, utc_now
from ledger import (
    apply_balance_delta,
    atomic,
    set_default_account,
    signed_amount,
    transaction_delta,
)
from metrics import MetricsService
from models import Account, Budget, Transaction, User
from recurrence import calculate_next_date
from schemas import AccountIn, BudgetIn, TransactionIn

logger = logging.getLogger(__name__)


def require_owner(user_id: Optional[str]) -> str:
    if not user_id:
        raise Unauthorized("Unauthorized")
    return user_id


class UserService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def get_or_create(
        self, user_id: str, *, email: Optional[str] = None, name: Optional[str] = None
    ) -> User:
        user = self.session.get(User, require_owner(user_id))
        if user:
            if email and user.email != email:
                user.email = email
            if name and not user.name:
                user.name = name
            return user
        user = User(id=user_id, email=email, name=name or "New User")
        self.session.add(user)
        self.session.flush()
        return user

    def list_with_accounts(self) -> list[User]:
        stmt = (
            select(User)
            .where(select(Account.id).where(Account.user_id == User.id).exists())
            .order_by(User.id)
        )
        return self.session.scalars(stmt).all()


class AccountService:
    def __init__(self, session: Session, user_id: Optional[str]) -> None:
        self.session = session
        self.user_id = require_owner(user_id)

    def create(self, data: AccountIn, *, email: Optional[str] = None) -> Account:
        with atomic(self.session):
            UserService(self.session).get_or_create(self.user_id, email=email)
            has_accounts = self.session.scalar(
                select(func.count(Account.id)).where(Account.user_id == self.user_id)
            )
            account = Account(
                user_id=self.user_id,
                name=data.name,
                type=data.type,
                currency=data.currency,
                opening_balance_cents=data.balance_cents,
                balance_cents=data.balance_cents,
                is_default=False,
            )
            self.session.add(account)
            self.session.flush()
            # The first account an owner creates is the default.
            if data.is_default or not has_accounts:
                set_default_account(self.session, self.user_id, account.id)
        self.session.refresh(account)
        return account

    def get(self, account_id: int) -> Account:
        account = self.session.get(Account, account_id)
        if not account or account.user_id != self.user_id:
            raise NotFound("Account not found")
        return account

    def list(self) -> list[tuple[Account, int]]:
        counts = (
            select(Transaction.account_id, func.count(Transaction.id).label("n"))
            .group_by(Transaction.account_id)
            .subquery()
        )
        stmt = (
            select(Account, func.coalesce(counts.c.n, 0))
            .outerjoin(counts, counts.c.account_id == Account.id)
            .where(Account.user_id == self.user_id)
            .order_by(Account.created_at.desc(), Account.id.desc())
        )
        return [(account, int(n)) for account, n in self.session.execute(stmt).all()]

    def get_with_transactions(self, account_id: int) -> tuple[Account, list[Transaction]]:
        account = self.get(account_id)
        txns = self.session.scalars(
            select(Transaction)
            .where(Transaction.account_id == account.id)
            .order_by(Transaction.date.desc(), Transaction.id.desc())
        ).all()
        return account, txns

    def get_default(self) -> Optional[Account]:
        return self.session.scalar(
            select(Account).where(
                Account.user_id == self.user_id, Account.is_default.is_(True)
            )
        )

    def set_default(self, account_id: int) -> Account:
        with atomic(self.session):
            set_default_account(self.session, self.user_id, account_id)
        return self.get(account_id)


class TransactionService:
    def __init__(self, session: Session, user_id: Optional[str]) -> None:
        self.session = session
        self.user_id = require_owner(user_id)

    def _owned_account(self, account_id: int) -> Account:
        return AccountService(self.session, self.user_id).get(account_id)

    def create(self, data: TransactionIn) -> Transaction:
        account = self._owned_account(data.account_id)
        txn = Transaction(
            user_id=self.user_id,
            account_id=account.id,
            type=data.type,
            amount_cents=data.amount_cents,
            description=data.description,
            category=data.category,
            date=data.date,
            is_recurring=data.is_recurring,
            recurring_interval=data.recurring_interval,
            next_recurring_date=(
                calculate_next_date(data.date, data.recurring_interval)
                if data.is_recurring
                else None
            ),
        )
        with atomic(self.session):
            self.session.add(txn)
            self.session.flush()
            apply_balance_delta(self.session, account.id, transaction_delta(txn))
        self.session.refresh(txn)
        return txn

    def get(self, transaction_id: int) -> Transaction:
        txn = self.session.scalar(
            select(Transaction).where(
                Transaction.id == transaction_id, Transaction.user_id == self.user_id
            )
        )
        if not txn:
            raise NotFound("Transaction not found")
        return txn

    def update(self, transaction_id: int, data: TransactionIn) -> Transaction:
        txn = self.get(transaction_id)
        new_account = self._owned_account(data.account_id)

        old_account_id = txn.account_id
        old_delta = transaction_delta(txn)
        new_delta = signed_amount(data.type, data.amount_cents)

        with atomic(self.session):
            txn.type = data.type
            txn.amount_cents = data.amount_cents
            txn.description = data.description
            txn.category = data.category
            txn.date = data.date
            txn.account_id = new_account.id
            txn.is_recurring = data.is_recurring
            if data.is_recurring:
                txn.recurring_interval = data.recurring_interval
                txn.next_recurring_date = calculate_next_date(
                    data.date, data.recurring_interval
                )
            else:
                txn.recurring_interval = None
                txn.next_recurring_date = None
            self.session.flush()

            if old_account_id != new_account.id:
                apply_balance_delta(self.session, old_account_id, -old_delta)
                apply_balance_delta(self.session, new_account.id, new_delta)
            else:
                apply_balance_delta(
                    self.session, new_account.id, new_delta - old_delta
                )
        self.session.refresh(txn)
        return txn

    def bulk_delete(self, transaction_ids: Iterable[int]) -> int:
        ids = sorted(set(transaction_ids))
        if not ids:
            return 0
        txns = self.session.scalars(
            select(Transaction).where(
                Transaction.user_id == self.user_id, Transaction.id.in_(ids)
            )
        ).all()

        reversals: dict[int, int] = defaultdict(int)
        with atomic(self.session):
            for txn in txns:
                reversals[txn.account_id] -= transaction_delta(txn)
                self.session.delete(txn)
            self.session.flush()
            for account_id, delta in sorted(reversals.items()):
                apply_balance_delta(self.session, account_id, delta)
        logger.info(f"transactions_deleted: user={self.user_id} count={len(txns)}")
        return len(txns)

    def list(self, account_id: Optional[int] = None) -> list[Transaction]:
        stmt = select(Transaction).where(Transaction.user_id == self.user_id)
        if account_id is not None:
            stmt = stmt.where(Transaction.account_id == self._owned_account(account_id).id)
        stmt = stmt.order_by(Transaction.date.desc(), Transaction.id.desc())
        return self.session.scalars(stmt).all()

    def recent(self, limit: int = 5) -> list[Transaction]:
        return self.session.scalars(
            select(Transaction)
            .where(Transaction.user_id == self.user_id)
            .order_by(Transaction.date.desc(), Transaction.id.desc())
            .limit(limit)
        ).all()


@dataclass(frozen=True)
class BudgetStatus:
    budget: Optional[Budget]
    account: Optional[Account]
    current_expenses_cents: int


class BudgetService:
    def __init__(
        self, session: Session, user_id: Optional[str], *, timezone: str = "UTC"
    ) -> None:
        self.session = session
        self.user_id = require_owner(user_id)
        self.timezone = timezone

    def get(self) -> Optional[Budget]:
        return self.session.scalar(select(Budget).where(Budget.user_id == self.user_id))

    def upsert(self, data: BudgetIn, *, email: Optional[str] = None) -> Budget:
        with atomic(self.session):
            UserService(self.session).get_or_create(self.user_id, email=email)
            budget = self.get()
            if budget:
                budget.amount_cents = data.amount_cents
            else:
                budget = Budget(user_id=self.user_id, amount_cents=data.amount_cents)
                self.session.add(budget)
        self.session.refresh(budget)
        return budget

    def get_current(
        self, account_id: Optional[int] = None, *, now: Optional[datetime] = None
    ) -> BudgetStatus:
        accounts = AccountService(self.session, self.user_id)
        account = accounts.get(account_id) if account_id is not None else accounts.get_default()
        expenses = 0
        if account is not None:
            expenses = MetricsService(
                self.session, self.user_id, timezone=self.timezone
            ).current_month_expenses(account.id, to_instant(now or utc_now()))
        return BudgetStatus(
            budget=self.get(), account=account, current_expenses_cents=expenses
        )

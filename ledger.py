"""Balance mutation primitives.

Every change to ``Account.balance_cents`` goes through ``apply_balance_delta``,
which issues a single ``balance = balance + delta`` UPDATE inside the caller's
session. The caller commits the balance change together with the transaction
row that caused it, usually inside ``atomic``.
"""

from contextlib import contextmanager
from typing import Iterator

from sqlalchemy import case, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from errors import ConsistencyConflict, NotFound
from models import Account, Transaction, TransactionType


@contextmanager
def atomic(session: Session) -> Iterator[Session]:
    """Commit the block as one unit; any failure rolls the whole unit back."""
    try:
        yield session
        session.commit()
    except (IntegrityError, StaleDataError) as exc:
        session.rollback()
        raise ConsistencyConflict(
            "The record was changed by another request, please retry"
        ) from exc
    except Exception:
        session.rollback()
        raise


def signed_amount(txn_type: TransactionType, amount_cents: int) -> int:
    if txn_type == TransactionType.expense:
        return -amount_cents
    return amount_cents


def transaction_delta(txn: Transaction) -> int:
    return signed_amount(txn.type, txn.amount_cents)


def apply_balance_delta(session: Session, account_id: int, delta_cents: int) -> None:
    result = session.execute(
        update(Account)
        .where(Account.id == account_id)
        .values(balance_cents=Account.balance_cents + delta_cents)
    )
    if result.rowcount != 1:
        raise NotFound("Account not found")


def set_default_account(session: Session, user_id: str, account_id: int) -> None:
    owned = session.scalar(
        select(Account.id).where(Account.id == account_id, Account.user_id == user_id)
    )
    if owned is None:
        raise NotFound("Account not found")
    # One statement, so readers never observe zero or two defaults.
    session.execute(
        update(Account)
        .where(Account.user_id == user_id)
        .values(is_default=case((Account.id == account_id, True), else_=False))
        .execution_options(synchronize_session="fetch")
    )


def computed_balance(session: Session, account: Account) -> int:
    """Opening balance plus every signed transaction amount on the account."""
    signed = case(
        (Transaction.type == TransactionType.expense, -Transaction.amount_cents),
        else_=Transaction.amount_cents,
    )
    total = session.execute(
        select(func.coalesce(func.sum(signed), 0)).where(
            Transaction.account_id == account.id
        )
    ).scalar_one()
    return account.opening_balance_cents + int(total or 0)


def balance_drift(session: Session, account: Account) -> int:
    session.refresh(account, ["balance_cents"])
    return account.balance_cents - computed_balance(session, account)

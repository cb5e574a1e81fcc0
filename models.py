from datetime import datetime
from enum import Enum
from typing import Optional

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Enum as SAEnum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from database import Base
from instants import UTCDateTime, utc_now


class AccountType(str, Enum):
    current = "CURRENT"
    savings = "SAVINGS"


class TransactionType(str, Enum):
    income = "INCOME"
    expense = "EXPENSE"


class RecurringInterval(str, Enum):
    daily = "DAILY"
    weekly = "WEEKLY"
    monthly = "MONTHLY"
    yearly = "YEARLY"


def _values_enum(enum_cls: type[Enum], name: str) -> SAEnum:
    return SAEnum(
        enum_cls,
        name=name,
        values_callable=lambda cls: [member.value for member in cls],
    )


EXPENSE_CATEGORIES = (
    "housing",
    "transportation",
    "groceries",
    "utilities",
    "entertainment",
    "food",
    "shopping",
    "healthcare",
    "education",
    "personal",
    "travel",
    "insurance",
    "gifts",
    "bills",
    "other-expense",
)
INCOME_CATEGORIES = (
    "salary",
    "freelance",
    "investments",
    "business",
    "rental",
    "other-income",
)
DEFAULT_EXPENSE_CATEGORY = "other-expense"


def categories_for(txn_type: TransactionType) -> tuple[str, ...]:
    if txn_type == TransactionType.income:
        return INCOME_CATEGORIES
    return EXPENSE_CATEGORIES


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime, default=utc_now, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, default=utc_now, onupdate=utc_now, nullable=False
    )


class User(Base, TimestampMixin):
    __tablename__ = "users"

    id: Mapped[str] = mapped_column(String(128), primary_key=True)
    email: Mapped[Optional[str]] = mapped_column(String(320))
    name: Mapped[Optional[str]] = mapped_column(String(200))

    accounts: Mapped[list["Account"]] = relationship(
        "Account", back_populates="user", cascade="all, delete-orphan"
    )
    budget: Mapped[Optional["Budget"]] = relationship(
        "Budget", back_populates="user", uselist=False, cascade="all, delete-orphan"
    )


class Account(Base, TimestampMixin):
    __tablename__ = "accounts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[str] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    type: Mapped[AccountType] = mapped_column(
        _values_enum(AccountType, "accounttype"), nullable=False
    )
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="USD")
    opening_balance_cents: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0
    )
    balance_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    is_default: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    user: Mapped["User"] = relationship("User", back_populates="accounts")
    transactions: Mapped[list["Transaction"]] = relationship(
        "Transaction",
        back_populates="account",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    __table_args__ = (
        Index("ix_accounts_user_default", "user_id", "is_default"),
        Index("ix_accounts_user_created", "user_id", "created_at"),
    )


class Transaction(Base, TimestampMixin):
    __tablename__ = "transactions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[str] = mapped_column(String(128), nullable=False)
    account_id: Mapped[int] = mapped_column(
        ForeignKey("accounts.id", ondelete="CASCADE"), nullable=False
    )
    type: Mapped[TransactionType] = mapped_column(
        _values_enum(TransactionType, "transactiontype"), nullable=False
    )
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text)
    category: Mapped[str] = mapped_column(String(40), nullable=False)
    date: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    is_recurring: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    recurring_interval: Mapped[Optional[RecurringInterval]] = mapped_column(
        _values_enum(RecurringInterval, "recurringinterval")
    )
    next_recurring_date: Mapped[Optional[datetime]] = mapped_column(UTCDateTime)
    last_processed: Mapped[Optional[datetime]] = mapped_column(UTCDateTime)
    origin_transaction_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("transactions.id", ondelete="SET NULL")
    )

    account: Mapped["Account"] = relationship("Account", back_populates="transactions")

    __table_args__ = (
        CheckConstraint("amount_cents >= 0", name="ck_transactions_amount_positive"),
        CheckConstraint(
            "(is_recurring AND recurring_interval IS NOT NULL"
            " AND next_recurring_date IS NOT NULL)"
            " OR (NOT is_recurring AND recurring_interval IS NULL"
            " AND next_recurring_date IS NULL)",
            name="ck_transactions_recurrence_fields",
        ),
        Index("ix_transactions_user_date", "user_id", "date"),
        Index("ix_transactions_account_date", "account_id", "date"),
        Index(
            "ix_transactions_recurring_due", "is_recurring", "next_recurring_date"
        ),
    )


class Budget(Base, TimestampMixin):
    __tablename__ = "budgets"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[str] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    last_alert_sent: Mapped[Optional[datetime]] = mapped_column(UTCDateTime)

    user: Mapped["User"] = relationship("User", back_populates="budget")

    __table_args__ = (
        UniqueConstraint("user_id", name="uq_budget_user"),
        CheckConstraint("amount_cents >= 0", name="ck_budget_amount_positive"),
    )


class RecurrenceOccurrence(Base):
    __tablename__ = "recurrence_occurrences"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[str] = mapped_column(String(128), nullable=False)
    template_id: Mapped[int] = mapped_column(
        ForeignKey("transactions.id", ondelete="CASCADE"), nullable=False
    )
    period_key: Mapped[str] = mapped_column(String(32), nullable=False)
    transaction_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("transactions.id", ondelete="SET NULL")
    )
    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime, default=utc_now, nullable=False
    )

    __table_args__ = (
        UniqueConstraint(
            "user_id", "template_id", "period_key", name="uq_occurrence_period"
        ),
        Index("ix_occurrence_user_created", "user_id", "created_at"),
    )

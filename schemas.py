from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from instants import to_instant
from models import (
    Account,
    AccountType,
    RecurringInterval,
    Transaction,
    TransactionType,
    categories_for,
)

CENT = Decimal("0.01")


def to_cents(amount: Decimal) -> int:
    return int((amount / CENT).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def from_cents(cents: int) -> Decimal:
    return (Decimal(cents) * CENT).quantize(CENT)


class AccountIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    type: AccountType = AccountType.current
    balance: Decimal = Decimal("0")
    currency: str = Field(default="USD", min_length=3, max_length=3)
    is_default: bool = False

    @field_validator("currency")
    @classmethod
    def _upper_currency(cls, value: str) -> str:
        return value.upper()

    @property
    def balance_cents(self) -> int:
        return to_cents(self.balance)


class TransactionIn(BaseModel):
    type: TransactionType
    amount: Decimal = Field(..., ge=0)
    description: Optional[str] = Field(default=None, max_length=500)
    category: str
    date: datetime
    account_id: int
    is_recurring: bool = False
    recurring_interval: Optional[RecurringInterval] = None

    @field_validator("date", mode="before")
    @classmethod
    def _normalize_date(cls, value: Any) -> datetime:
        return to_instant(value)

    @model_validator(mode="after")
    def _check_consistency(self) -> "TransactionIn":
        if self.category not in categories_for(self.type):
            raise ValueError(
                f"Unknown {self.type.value.lower()} category: {self.category}"
            )
        if self.is_recurring and self.recurring_interval is None:
            raise ValueError("Recurring transactions require an interval")
        if not self.is_recurring:
            self.recurring_interval = None
        return self

    @property
    def amount_cents(self) -> int:
        return to_cents(self.amount)


class BulkDeleteIn(BaseModel):
    transaction_ids: list[int] = Field(default_factory=list)


class BudgetIn(BaseModel):
    amount: Decimal = Field(..., ge=0)

    @property
    def amount_cents(self) -> int:
        return to_cents(self.amount)


class RecurringEvent(BaseModel):
    model_config = ConfigDict(frozen=True)

    owner_id: str
    transaction_id: int
    account_id: Optional[int] = None


class ReceiptData(BaseModel):
    amount: Decimal
    date: datetime
    description: str
    merchant_name: str
    category: str


class AccountOut(BaseModel):
    id: int
    name: str
    type: AccountType
    currency: str
    balance: Decimal
    is_default: bool
    created_at: datetime
    transaction_count: Optional[int] = None

    @classmethod
    def from_model(
        cls, account: Account, *, transaction_count: Optional[int] = None
    ) -> "AccountOut":
        return cls(
            id=account.id,
            name=account.name,
            type=account.type,
            currency=account.currency,
            balance=from_cents(account.balance_cents),
            is_default=account.is_default,
            created_at=account.created_at,
            transaction_count=transaction_count,
        )


class TransactionOut(BaseModel):
    id: int
    account_id: int
    type: TransactionType
    amount: Decimal
    description: Optional[str]
    category: str
    date: datetime
    is_recurring: bool
    recurring_interval: Optional[RecurringInterval]
    next_recurring_date: Optional[datetime]
    last_processed: Optional[datetime]

    @classmethod
    def from_model(cls, txn: Transaction) -> "TransactionOut":
        return cls(
            id=txn.id,
            account_id=txn.account_id,
            type=txn.type,
            amount=from_cents(txn.amount_cents),
            description=txn.description,
            category=txn.category,
            date=txn.date,
            is_recurring=txn.is_recurring,
            recurring_interval=txn.recurring_interval,
            next_recurring_date=txn.next_recurring_date,
            last_processed=txn.last_processed,
        )


class ActionResult(BaseModel):
    success: bool
    data: Any = None
    error: Optional[str] = None

from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest
from sqlalchemy import create_engine, func, select
from sqlalchemy.orm import Session

from database import Base, create_db_engine, create_session_factory
from errors import NotFound
from models import (
    Account,
    RecurrenceOccurrence,
    RecurringInterval,
    Transaction,
    TransactionType,
)
from recurrence import (
    ProcessOutcome,
    RecurringEngine,
    advance_schedule,
    calculate_next_date,
    is_due,
)
from schemas import AccountIn, RecurringEvent, TransactionIn
from services import AccountService, TransactionService

OWNER = "owner-1"
UTC = timezone.utc


def _d(year: int, month: int, day: int, hour: int = 0) -> datetime:
    return datetime(year, month, day, hour, tzinfo=UTC)


def _seed_template(
    session: Session,
    *,
    owner: str = OWNER,
    anchor: datetime = _d(2025, 1, 15),
    interval: RecurringInterval = RecurringInterval.monthly,
    amount: str = "50",
    account: Account = None,
):
    if account is None:
        account = AccountService(session, owner).create(
            AccountIn(name="Main", balance=Decimal("1000"))
        )
    template = TransactionService(session, owner).create(
        TransactionIn(
            type=TransactionType.expense,
            amount=Decimal(amount),
            description="Gym",
            category="personal",
            date=anchor,
            account_id=account.id,
            is_recurring=True,
            recurring_interval=interval,
        )
    )
    return account, template


def _copies(session: Session, template_id: int) -> list[Transaction]:
    return session.scalars(
        select(Transaction).where(Transaction.origin_transaction_id == template_id)
    ).all()


def test_calculate_next_date_clips_month_end_in_leap_year():
    feb = calculate_next_date(_d(2024, 1, 31), RecurringInterval.monthly)
    assert feb == _d(2024, 2, 29)
    assert calculate_next_date(feb, RecurringInterval.monthly) == _d(2024, 3, 29)


def test_calculate_next_date_month_end_drifts_after_short_month():
    feb = calculate_next_date(_d(2025, 1, 31), RecurringInterval.monthly)
    assert feb == _d(2025, 2, 28)
    assert calculate_next_date(feb, RecurringInterval.monthly) == _d(2025, 3, 28)


def test_calculate_next_date_other_intervals():
    start = datetime(2024, 12, 31, 9, 30, tzinfo=UTC)
    assert calculate_next_date(start, RecurringInterval.daily) == datetime(
        2025, 1, 1, 9, 30, tzinfo=UTC
    )
    assert calculate_next_date(start, RecurringInterval.weekly) == datetime(
        2025, 1, 7, 9, 30, tzinfo=UTC
    )
    assert calculate_next_date(start, RecurringInterval.monthly) == datetime(
        2025, 1, 31, 9, 30, tzinfo=UTC
    )
    assert calculate_next_date(_d(2024, 2, 29), RecurringInterval.yearly) == _d(
        2025, 2, 28
    )


def test_advance_schedule_stays_on_cadence_and_is_strictly_after_now():
    assert advance_schedule(
        _d(2025, 2, 15), RecurringInterval.monthly, _d(2025, 2, 20)
    ) == _d(2025, 3, 15)
    assert advance_schedule(
        _d(2025, 1, 15), RecurringInterval.monthly, _d(2025, 4, 1)
    ) == _d(2025, 4, 15)
    assert advance_schedule(
        _d(2025, 2, 15), RecurringInterval.monthly, _d(2025, 3, 15)
    ) == _d(2025, 4, 15)
    assert advance_schedule(
        _d(2025, 2, 15), RecurringInterval.monthly, _d(2025, 1, 15, 1)
    ) == _d(2025, 2, 15)


def test_is_due_rules():
    template = Transaction(
        type=TransactionType.expense,
        amount_cents=100,
        category="bills",
        date=_d(2025, 1, 1),
        is_recurring=True,
        recurring_interval=RecurringInterval.monthly,
        next_recurring_date=_d(2025, 2, 1),
    )
    assert is_due(template, _d(2025, 1, 2)) is True  # never processed

    template.last_processed = _d(2025, 1, 2)
    assert is_due(template, _d(2025, 1, 31)) is False
    assert is_due(template, _d(2025, 2, 1)) is True

    template.is_recurring = False
    assert is_due(template, _d(2025, 3, 1)) is False


def test_trigger_after_missed_date_posts_once_and_keeps_cadence():
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    now = _d(2025, 2, 20)
    with Session(engine) as session:
        account, template = _seed_template(session)
        recurring = RecurringEngine(session)

        events = recurring.find_due(now)
        assert events == [
            RecurringEvent(
                owner_id=OWNER, transaction_id=template.id, account_id=account.id
            )
        ]
        result = recurring.process(events[0], now)

        assert result.outcome == ProcessOutcome.processed
        session.refresh(template)
        assert template.last_processed == now
        assert template.next_recurring_date == _d(2025, 3, 15)

        (copy,) = _copies(session, template.id)
        assert copy.date == now
        assert copy.description == "Gym (Recurring)"
        assert copy.is_recurring is False
        assert copy.amount_cents == 5_000
        session.refresh(account)
        assert account.balance_cents == 100_000 - 5_000 - 5_000


def test_repeated_trigger_in_same_period_is_a_no_op():
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    now = _d(2025, 2, 20)
    with Session(engine) as session:
        account, template = _seed_template(session)
        recurring = RecurringEngine(session)
        event = RecurringEvent(owner_id=OWNER, transaction_id=template.id)

        first = recurring.process(event, now)
        second = recurring.process(event, now + timedelta(minutes=5))

        assert first.outcome == ProcessOutcome.processed
        assert second.outcome == ProcessOutcome.not_due
        assert recurring.find_due(now + timedelta(minutes=5)) == []
        assert len(_copies(session, template.id)) == 1


def test_existing_dedupe_record_blocks_materialization():
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    now = _d(2025, 2, 20)
    with Session(engine) as session:
        account, template = _seed_template(session)
        session.add(
            RecurrenceOccurrence(
                user_id=OWNER,
                template_id=template.id,
                period_key="2025-02-15",
                created_at=now - timedelta(days=1),
            )
        )
        session.commit()

        result = RecurringEngine(session).process(
            RecurringEvent(owner_id=OWNER, transaction_id=template.id), now
        )

        assert result.outcome == ProcessOutcome.duplicate
        assert _copies(session, template.id) == []
        session.refresh(template)
        assert template.last_processed is None
        session.refresh(account)
        assert account.balance_cents == 95_000


def test_concurrent_triggers_materialize_exactly_once(tmp_path):
    engine = create_db_engine(f"sqlite:///{tmp_path / 'ledger.db'}")
    Base.metadata.create_all(engine)
    factory = create_session_factory(engine)
    now = _d(2025, 2, 20)

    with factory() as session:
        account, template = _seed_template(session)
    event = RecurringEvent(
        owner_id=OWNER, transaction_id=template.id, account_id=account.id
    )

    with factory() as first, factory() as second:
        engine_a = RecurringEngine(first)
        engine_b = RecurringEngine(second)
        template_a, account_a = engine_a.locate(event)
        template_b, account_b = engine_b.locate(event)

        result_a = engine_a.materialize(template_a, account_a, now)
        result_b = engine_b.materialize(template_b, account_b, now)

    assert {result_a.outcome, result_b.outcome} == {
        ProcessOutcome.processed,
        ProcessOutcome.duplicate,
    }
    with factory() as session:
        assert len(_copies(session, template.id)) == 1
        assert session.scalar(select(func.count(RecurrenceOccurrence.id))) == 1
        balance = session.scalar(
            select(Account.balance_cents).where(Account.id == account.id)
        )
        assert balance == 100_000 - 5_000 - 5_000


def test_throttle_defers_extra_templates_to_next_trigger():
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    now = _d(2025, 2, 20)
    with Session(engine) as session:
        account, first = _seed_template(session)
        _seed_template(session, account=account)
        _seed_template(session, account=account)

        counts = RecurringEngine(session, throttle_limit=2).post_due(now)
        assert counts["processed"] == 2
        assert counts["throttled"] == 1
        assert counts["failed"] == 0
        assert len(RecurringEngine(session).find_due(now)) == 1

        later = now + timedelta(minutes=2)
        counts = RecurringEngine(session, throttle_limit=2).post_due(later)
        assert counts["processed"] == 1
        assert RecurringEngine(session).find_due(later) == []


def test_locate_falls_back_to_scanning_owner_accounts():
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    with Session(engine) as session:
        account, template = _seed_template(session)
        other = AccountService(session, OWNER).create(
            AccountIn(name="Savings", balance=Decimal("0"))
        )
        recurring = RecurringEngine(session)

        for hint in (None, other.id):
            found, owning = recurring.locate(
                RecurringEvent(
                    owner_id=OWNER, transaction_id=template.id, account_id=hint
                )
            )
            assert found.id == template.id
            assert owning.id == account.id


def test_locate_missing_template_or_wrong_owner_is_not_found():
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    with Session(engine) as session:
        _account, template = _seed_template(session)
        recurring = RecurringEngine(session)

        with pytest.raises(NotFound):
            recurring.locate(RecurringEvent(owner_id=OWNER, transaction_id=9_999))
        with pytest.raises(NotFound):
            recurring.locate(
                RecurringEvent(owner_id="owner-2", transaction_id=template.id)
            )


def test_first_run_before_schedule_keeps_the_next_period():
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    with Session(engine) as session:
        account, template = _seed_template(session, anchor=_d(2025, 1, 15))
        recurring = RecurringEngine(session)

        counts = recurring.post_due(_d(2025, 1, 15, 1))
        assert counts["processed"] == 1
        session.refresh(template)
        assert template.next_recurring_date == _d(2025, 2, 15)
        assert recurring.post_due(_d(2025, 1, 20))["processed"] == 0

        counts = recurring.post_due(_d(2025, 2, 15, 1))
        assert counts["processed"] == 1
        assert counts["duplicate"] == 0
        session.refresh(template)
        assert template.next_recurring_date == _d(2025, 3, 15)

        keys = session.scalars(
            select(RecurrenceOccurrence.period_key).order_by(
                RecurrenceOccurrence.id
            )
        ).all()
        assert keys == ["2025-01-15", "2025-02-15"]
        assert len(_copies(session, template.id)) == 2
        session.refresh(account)
        assert account.balance_cents == 100_000 - 5_000 - 2 * 5_000

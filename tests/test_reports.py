from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

import reports
from database import Base
from metrics import MonthlyStats
from models import TransactionType, User
from notifications import Notifier, format_money
from reports import FALLBACK_INSIGHTS, MonthlyReportService, generate_insights
from schemas import AccountIn, TransactionIn
from services import AccountService, TransactionService

UTC = timezone.utc
REPORT_DAY = datetime(2025, 4, 1, 0, 0, tzinfo=UTC)


class RecordingNotifier(Notifier):
    def __init__(self) -> None:
        self.sent = []

    def send(self, recipient: str, subject: str, body: str) -> None:
        self.sent.append((recipient, subject, body))


class FakeClient:
    def __init__(self, reply=None, error=None) -> None:
        self.reply = reply
        self.error = error
        self.prompts = []

    def generate(self, prompt, **kwargs):
        self.prompts.append(prompt)
        if self.error is not None:
            raise self.error
        return self.reply


def make_session():
    engine = create_engine(
        "sqlite+pysqlite:///:memory:", connect_args={"check_same_thread": False}
    )
    Base.metadata.create_all(engine)
    SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    return SessionLocal()


def _user_with_march_activity(session, owner: str, name: str):
    account = AccountService(session, owner).create(
        AccountIn(name="Main", balance=Decimal("0")), email=f"{owner}@example.com"
    )
    session.get(User, owner).name = name
    session.commit()
    txns = TransactionService(session, owner)
    for txn_type, amount, category, day in (
        (TransactionType.income, "2000", "salary", 1),
        (TransactionType.expense, "150", "groceries", 5),
        (TransactionType.expense, "1200", "housing", 2),
    ):
        txns.create(
            TransactionIn(
                type=txn_type,
                amount=Decimal(amount),
                category=category,
                date=datetime(2025, 3, day, 9, tzinfo=UTC),
                account_id=account.id,
            )
        )
    # April activity must not leak into the March report.
    txns.create(
        TransactionIn(
            type=TransactionType.expense,
            amount=Decimal("999"),
            category="travel",
            date=REPORT_DAY,
            account_id=account.id,
        )
    )
    return account


def test_monthly_report_summarizes_previous_month_with_fallback_insights():
    session = make_session()
    _user_with_march_activity(session, "owner-1", "Ada")
    notifier = RecordingNotifier()

    processed = MonthlyReportService(session, notifier).generate_all(REPORT_DAY)

    assert processed == 1
    (recipient, subject, body) = notifier.sent[0]
    assert recipient == "owner-1@example.com"
    assert subject == "Your Monthly Financial Report - March 2025"
    assert "Hi Ada" in body
    assert "Total income:   $2,000.00" in body
    assert "Total expenses: $1,350.00" in body
    assert "Net:            $650.00" in body
    assert body.index("housing: $1,200.00") < body.index("groceries: $150.00")
    assert "travel" not in body
    for insight in FALLBACK_INSIGHTS:
        assert insight in body


def test_monthly_report_uses_ai_insights_when_available():
    session = make_session()
    _user_with_march_activity(session, "owner-1", "Ada")
    notifier = RecordingNotifier()
    client = FakeClient('```json\n["Cook at home", "Review rent", "Automate savings"]\n```')

    MonthlyReportService(session, notifier, client).generate_all(REPORT_DAY)

    body = notifier.sent[0][2]
    assert "Cook at home" in body
    assert "Financial Data for March 2025" in client.prompts[0]
    assert "groceries: $150.00" in client.prompts[0]


def test_one_failing_user_does_not_stop_the_batch(monkeypatch):
    session = make_session()
    _user_with_march_activity(session, "owner-1", "Broken")
    _user_with_march_activity(session, "owner-2", "Grace")
    notifier = RecordingNotifier()
    real_render = reports.render_email

    def flaky_render(template, **context):
        if context.get("user_name") == "Broken":
            raise RuntimeError("template exploded")
        return real_render(template, **context)

    monkeypatch.setattr(reports, "render_email", flaky_render)

    processed = MonthlyReportService(session, notifier).generate_all(REPORT_DAY)

    assert processed == 1
    assert [recipient for recipient, _, _ in notifier.sent] == ["owner-2@example.com"]


def test_generate_insights_falls_back_on_errors_and_bad_shapes():
    stats = MonthlyStats(total_income=100, total_expenses=50, by_category={"food": 50})
    assert generate_insights(None, stats, "March 2025") == FALLBACK_INSIGHTS
    assert (
        generate_insights(FakeClient(error=TimeoutError()), stats, "March 2025")
        == FALLBACK_INSIGHTS
    )
    assert generate_insights(FakeClient("no json"), stats, "March 2025") == (
        FALLBACK_INSIGHTS
    )
    assert generate_insights(FakeClient("[1, 2, 3]"), stats, "March 2025") == (
        FALLBACK_INSIGHTS
    )


def test_format_money_groups_thousands():
    assert format_money(123_456_78) == "$123,456.78"
    assert format_money(5) == "$0.05"

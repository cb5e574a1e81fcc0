import logging
from datetime import datetime
from typing import Optional

from sqlalchemy.orm import Session

from gemini import GeminiClient, extract_json_array
from instants import to_instant, utc_now
from metrics import MetricsService, MonthlyStats
from notifications import Notifier, deliver, format_money, render_email
from periods import previous_month
from services import UserService

logger = logging.getLogger(__name__)

FALLBACK_INSIGHTS = [
    "Your highest expense category this month might need attention.",
    "Consider setting up a budget for better financial management.",
    "Track your recurring expenses to identify potential savings.",
]


def insights_prompt(stats: MonthlyStats, month: str) -> str:
    categories = ", ".join(
        f"{category}: {format_money(amount)}"
        for category, amount in sorted(stats.by_category.items())
    )
    return (
        "You are a financial advisor assistant. Analyze this financial data and "
        "provide 3 concise, actionable insights. Focus on spending patterns and "
        "practical advice. Keep it friendly and conversational.\n\n"
        f"Financial Data for {month}:\n"
        f"- Total Income: {format_money(stats.total_income)}\n"
        f"- Total Expenses: {format_money(stats.total_expenses)}\n"
        f"- Net Income: {format_money(stats.net)}\n"
        f"- Expense Categories: {categories or 'none'}\n\n"
        'Format the response as a JSON array of strings, like this: '
        '["insight 1", "insight 2", "insight 3"]'
    )


def generate_insights(
    client: Optional[GeminiClient], stats: MonthlyStats, month: str
) -> list[str]:
    if client is None:
        return list(FALLBACK_INSIGHTS)
    try:
        text = client.generate(insights_prompt(stats, month))
    except Exception:
        logger.exception("insights_failed")
        return list(FALLBACK_INSIGHTS)
    insights = extract_json_array(text)
    if not insights or not all(isinstance(item, str) for item in insights):
        logger.warning(f"insights_unparseable: text={text[:100]!r}")
        return list(FALLBACK_INSIGHTS)
    return insights


class MonthlyReportService:
    def __init__(
        self,
        session: Session,
        notifier: Notifier,
        client: Optional[GeminiClient] = None,
        *,
        timezone: str = "UTC",
    ) -> None:
        self.session = session
        self.notifier = notifier
        self.client = client
        self.timezone = timezone

    def generate_all(self, now: Optional[datetime] = None) -> int:
        now = to_instant(now or utc_now())
        period = previous_month(now, self.timezone)
        month_name = _month_name(period.slug)
        processed = 0
        for user in UserService(self.session).list_with_accounts():
            try:
                stats = MetricsService(
                    self.session, user.id, timezone=self.timezone
                ).aggregate(period)
                insights = generate_insights(self.client, stats, month_name)
                body = render_email(
                    "monthly_report",
                    user_name=user.name or "there",
                    month=month_name,
                    stats=stats,
                    insights=insights,
                )
                deliver(
                    self.notifier,
                    user.email,
                    f"Your Monthly Financial Report - {month_name}",
                    body,
                )
                processed += 1
            except Exception:
                logger.exception(f"monthly_report_failed: user={user.id}")
        return processed


def _month_name(slug: str) -> str:
    return datetime.strptime(slug, "%Y-%m").strftime("%B %Y")

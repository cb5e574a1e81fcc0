"""initial ledger schema

Revision ID: 202510180900
Revises:
Create Date: 2025-10-18 09:00:00.000000

"""

from alembic import op
import sqlalchemy as sa


revision = "202510180900"
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    op.create_table(
        "users",
        sa.Column("id", sa.String(length=128), primary_key=True),
        sa.Column("email", sa.String(length=320)),
        sa.Column("name", sa.String(length=200)),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    )

    op.create_table(
        "accounts",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "user_id",
            sa.String(length=128),
            sa.ForeignKey("users.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("name", sa.String(length=100), nullable=False),
        sa.Column(
            "type", sa.Enum("CURRENT", "SAVINGS", name="accounttype"), nullable=False
        ),
        sa.Column("currency", sa.String(length=3), nullable=False),
        sa.Column(
            "opening_balance_cents", sa.Integer(), nullable=False, server_default="0"
        ),
        sa.Column("balance_cents", sa.Integer(), nullable=False, server_default="0"),
        sa.Column(
            "is_default", sa.Boolean(), nullable=False, server_default=sa.false()
        ),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    )
    op.create_index("ix_accounts_user_default", "accounts", ["user_id", "is_default"])
    op.create_index("ix_accounts_user_created", "accounts", ["user_id", "created_at"])

    op.create_table(
        "transactions",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.String(length=128), nullable=False),
        sa.Column(
            "account_id",
            sa.Integer(),
            sa.ForeignKey("accounts.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "type", sa.Enum("INCOME", "EXPENSE", name="transactiontype"), nullable=False
        ),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("description", sa.Text()),
        sa.Column("category", sa.String(length=40), nullable=False),
        sa.Column("date", sa.DateTime(), nullable=False),
        sa.Column(
            "is_recurring", sa.Boolean(), nullable=False, server_default=sa.false()
        ),
        sa.Column(
            "recurring_interval",
            sa.Enum("DAILY", "WEEKLY", "MONTHLY", "YEARLY", name="recurringinterval"),
        ),
        sa.Column("next_recurring_date", sa.DateTime()),
        sa.Column("last_processed", sa.DateTime()),
        sa.Column(
            "origin_transaction_id",
            sa.Integer(),
            sa.ForeignKey("transactions.id", ondelete="SET NULL"),
        ),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.CheckConstraint(
            "amount_cents >= 0", name="ck_transactions_amount_positive"
        ),
        sa.CheckConstraint(
            "(is_recurring AND recurring_interval IS NOT NULL"
            " AND next_recurring_date IS NOT NULL)"
            " OR (NOT is_recurring AND recurring_interval IS NULL"
            " AND next_recurring_date IS NULL)",
            name="ck_transactions_recurrence_fields",
        ),
    )
    op.create_index("ix_transactions_user_date", "transactions", ["user_id", "date"])
    op.create_index(
        "ix_transactions_account_date", "transactions", ["account_id", "date"]
    )
    op.create_index(
        "ix_transactions_recurring_due",
        "transactions",
        ["is_recurring", "next_recurring_date"],
    )

    op.create_table(
        "budgets",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "user_id",
            sa.String(length=128),
            sa.ForeignKey("users.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("last_alert_sent", sa.DateTime()),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.UniqueConstraint("user_id", name="uq_budget_user"),
        sa.CheckConstraint("amount_cents >= 0", name="ck_budget_amount_positive"),
    )

    op.create_table(
        "recurrence_occurrences",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.String(length=128), nullable=False),
        sa.Column(
            "template_id",
            sa.Integer(),
            sa.ForeignKey("transactions.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("period_key", sa.String(length=32), nullable=False),
        sa.Column(
            "transaction_id",
            sa.Integer(),
            sa.ForeignKey("transactions.id", ondelete="SET NULL"),
        ),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.UniqueConstraint(
            "user_id", "template_id", "period_key", name="uq_occurrence_period"
        ),
    )
    op.create_index(
        "ix_occurrence_user_created",
        "recurrence_occurrences",
        ["user_id", "created_at"],
    )


def downgrade():
    op.drop_index("ix_occurrence_user_created", table_name="recurrence_occurrences")
    op.drop_table("recurrence_occurrences")
    op.drop_table("budgets")
    op.drop_index("ix_transactions_recurring_due", table_name="transactions")
    op.drop_index("ix_transactions_account_date", table_name="transactions")
    op.drop_index("ix_transactions_user_date", table_name="transactions")
    op.drop_table("transactions")
    op.drop_index("ix_accounts_user_created", table_name="accounts")
    op.drop_index("ix_accounts_user_default", table_name="accounts")
    op.drop_table("accounts")
    op.drop_table("users")

"""initial ledger, recurring rules and budgets

Revision ID: 202610010900
Revises:
Create Date: 2026-10-01 09:00:00.000000

"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa


revision = "202610010900"
down_revision = None
branch_labels = None
depends_on = None


TRANSACTION_KIND = sa.Enum(
    "income", "expense", "transfer", "investment", name="transactionkind"
)
TRANSACTION_STATUS = sa.Enum("pending", "completed", "failed", name="transactionstatus")
FREQUENCY = sa.Enum("daily", "weekly", "monthly", "yearly", name="frequency")
ALERT_LEVEL = sa.Enum("warning", "exceeded", name="alertlevel")


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    ]


def upgrade() -> None:
    op.create_table(
        "accounts",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("name", sa.String(length=100), nullable=False),
        sa.Column("balance_cents", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        *_timestamps(),
    )
    op.create_index("ix_accounts_user", "accounts", ["user_id"])

    op.create_table(
        "categories",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("name", sa.String(length=100), nullable=False),
        sa.Column(
            "parent_id", sa.Integer(), sa.ForeignKey("categories.id"), nullable=True
        ),
        *_timestamps(),
        sa.UniqueConstraint(
            "user_id", "parent_id", "name", name="uq_category_user_name"
        ),
    )

    op.create_table(
        "recurring_rules",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("name", sa.String(length=120), nullable=True),
        sa.Column("kind", TRANSACTION_KIND, nullable=False),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("frequency", FREQUENCY, nullable=False),
        sa.Column("start_date", sa.Date(), nullable=False),
        sa.Column("end_date", sa.Date(), nullable=True),
        sa.Column(
            "account_id", sa.Integer(), sa.ForeignKey("accounts.id"), nullable=False
        ),
        sa.Column(
            "to_account_id", sa.Integer(), sa.ForeignKey("accounts.id"), nullable=True
        ),
        sa.Column(
            "category_id", sa.Integer(), sa.ForeignKey("categories.id"), nullable=True
        ),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("materialized_through", sa.Date(), nullable=True),
        *_timestamps(),
        sa.CheckConstraint("amount_cents > 0", name="ck_rule_amount_positive"),
        sa.CheckConstraint(
            "end_date IS NULL OR end_date >= start_date", name="ck_rule_date_range"
        ),
    )

    op.create_table(
        "budgets",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("year", sa.Integer(), nullable=False),
        sa.Column("month", sa.Integer(), nullable=False),
        sa.Column(
            "category_id", sa.Integer(), sa.ForeignKey("categories.id"), nullable=True
        ),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("alert_threshold", sa.Integer(), nullable=False, server_default="80"),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("note", sa.Text(), nullable=True),
        sa.Column("used_cents", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("remaining_cents", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("percentage", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("usage_stale", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("recomputed_at", sa.DateTime(), nullable=True),
        sa.Column("alert_level", ALERT_LEVEL, nullable=True),
        *_timestamps(),
        sa.CheckConstraint("amount_cents >= 0", name="ck_budget_amount_positive"),
        sa.CheckConstraint("month BETWEEN 1 AND 12", name="ck_budget_month_range"),
        sa.CheckConstraint(
            "alert_threshold BETWEEN 0 AND 100", name="ck_budget_threshold_range"
        ),
    )
    op.create_index("ix_budget_user_month", "budgets", ["user_id", "year", "month"])
    op.create_index("ix_budget_stale", "budgets", ["usage_stale"])

    op.create_table(
        "budget_alerts",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "budget_id",
            sa.Integer(),
            sa.ForeignKey("budgets.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("year", sa.Integer(), nullable=False),
        sa.Column("month", sa.Integer(), nullable=False),
        sa.Column("alert_level", ALERT_LEVEL, nullable=False),
        sa.Column("percentage", sa.Integer(), nullable=False),
        sa.Column("sent_at", sa.DateTime(), nullable=False),
    )
    op.create_index(
        "ix_budget_alerts_budget", "budget_alerts", ["budget_id", "sent_at"]
    )

    op.create_table(
        "transactions",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False, server_default="1"),
        sa.Column(
            "account_id", sa.Integer(), sa.ForeignKey("accounts.id"), nullable=False
        ),
        sa.Column(
            "to_account_id", sa.Integer(), sa.ForeignKey("accounts.id"), nullable=True
        ),
        sa.Column("date", sa.Date(), nullable=False),
        sa.Column("kind", TRANSACTION_KIND, nullable=False),
        sa.Column("status", TRANSACTION_STATUS, nullable=False),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column(
            "category_id", sa.Integer(), sa.ForeignKey("categories.id"), nullable=True
        ),
        sa.Column(
            "budget_id",
            sa.Integer(),
            sa.ForeignKey("budgets.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("note", sa.Text(), nullable=True),
        sa.Column(
            "recurring_rule_id",
            sa.Integer(),
            sa.ForeignKey("recurring_rules.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("occurrence_date", sa.Date(), nullable=True),
        sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
        *_timestamps(),
        sa.UniqueConstraint(
            "user_id",
            "recurring_rule_id",
            "occurrence_date",
            name="uq_txn_rule_occurrence",
        ),
        sa.CheckConstraint("amount_cents > 0", name="ck_transactions_amount_positive"),
    )
    op.create_index("ix_transactions_user_date", "transactions", ["user_id", "date"])
    op.create_index("ix_transactions_account", "transactions", ["account_id"])
    op.create_index(
        "ix_transactions_user_category_date",
        "transactions",
        ["user_id", "category_id", "date"],
    )
    op.create_index("ix_transactions_budget", "transactions", ["budget_id"])


def downgrade() -> None:
    op.drop_index("ix_transactions_budget", table_name="transactions")
    op.drop_index("ix_transactions_user_category_date", table_name="transactions")
    op.drop_index("ix_transactions_account", table_name="transactions")
    op.drop_index("ix_transactions_user_date", table_name="transactions")
    op.drop_table("transactions")
    op.drop_index("ix_budget_alerts_budget", table_name="budget_alerts")
    op.drop_table("budget_alerts")
    op.drop_index("ix_budget_stale", table_name="budgets")
    op.drop_index("ix_budget_user_month", table_name="budgets")
    op.drop_table("budgets")
    op.drop_table("recurring_rules")
    op.drop_table("categories")
    op.drop_index("ix_accounts_user", table_name="accounts")
    op.drop_table("accounts")

    bind = op.get_bind()
    for enum in (ALERT_LEVEL, FREQUENCY, TRANSACTION_STATUS, TRANSACTION_KIND):
        enum.drop(bind, checkfirst=True)

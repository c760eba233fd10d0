"""ledger, budgets and alerts

Revision ID: 202610190900
Revises:
Create Date: 2026-10-19 09:00:00.000000

"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa


revision = "202610190900"
down_revision = None
branch_labels = None
depends_on = None

CATEGORIES = (
    "Food & Dining",
    "Transportation",
    "Shopping",
    "Entertainment",
    "Bills & Utilities",
    "Healthcare",
    "Education",
    "Travel",
    "Investments",
    "Salary",
    "Freelance",
    "Business",
    "Rent",
    "EMI",
    "Insurance",
    "Gifts",
    "Other",
)


def upgrade() -> None:
    op.create_table(
        "transactions",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.String(length=64), nullable=False),
        sa.Column(
            "type", sa.Enum("income", "expense", name="transactiontype"), nullable=False
        ),
        sa.Column("category", sa.Enum(*CATEGORIES, name="category"), nullable=False),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("occurred_at", sa.DateTime(), nullable=False),
        sa.Column(
            "payment_method",
            sa.Enum(
                "cash",
                "card",
                "upi",
                "net-banking",
                "wallet",
                "other",
                name="paymentmethod",
            ),
            nullable=False,
            server_default="upi",
        ),
        sa.Column("description", sa.String(length=200), nullable=False),
        sa.Column("tags", sa.JSON(), nullable=False),
        sa.Column("notes", sa.Text()),
        sa.Column(
            "is_recurring", sa.Boolean(), nullable=False, server_default=sa.false()
        ),
        sa.Column(
            "recurring_period",
            sa.Enum("daily", "weekly", "monthly", "yearly", name="recurringperiod"),
        ),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.CheckConstraint("amount_cents > 0", name="ck_transactions_amount_positive"),
    )
    op.create_index(
        "ix_transactions_user_occurred", "transactions", ["user_id", "occurred_at"]
    )
    op.create_index(
        "ix_transactions_user_category_occurred",
        "transactions",
        ["user_id", "category", "occurred_at"],
    )
    op.create_index(
        "ix_transactions_user_type_occurred",
        "transactions",
        ["user_id", "type", "occurred_at"],
    )

    op.create_table(
        "budgets",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.String(length=64), nullable=False),
        sa.Column("category", sa.Enum(*CATEGORIES, name="category"), nullable=False),
        sa.Column("year", sa.Integer(), nullable=False),
        sa.Column("month", sa.Integer(), nullable=False),
        sa.Column("limit_cents", sa.Integer(), nullable=False),
        sa.Column("spent_cents", sa.Integer(), nullable=False, server_default="0"),
        sa.Column(
            "alert_threshold", sa.Integer(), nullable=False, server_default="80"
        ),
        sa.Column(
            "alert_state",
            sa.Enum("normal", "warning_sent", "exceeded_sent", name="alertstate"),
            nullable=False,
            server_default="normal",
        ),
        sa.Column("notes", sa.String(length=200)),
        sa.Column("last_computed_at", sa.DateTime()),
        sa.Column("version_id", sa.Integer(), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.UniqueConstraint(
            "user_id", "category", "year", "month", name="uq_budget_user_bucket"
        ),
        sa.CheckConstraint("limit_cents > 0", name="ck_budget_limit_positive"),
        sa.CheckConstraint("spent_cents >= 0", name="ck_budget_spent_non_negative"),
        sa.CheckConstraint("month BETWEEN 1 AND 12", name="ck_budget_month_range"),
        sa.CheckConstraint(
            "alert_threshold BETWEEN 1 AND 100", name="ck_budget_threshold_range"
        ),
    )
    op.create_index("ix_budget_user_month", "budgets", ["user_id", "year", "month"])
    op.create_index("ix_budget_month", "budgets", ["year", "month"])

    op.create_table(
        "alerts",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.String(length=64), nullable=False),
        sa.Column(
            "budget_id",
            sa.Integer(),
            sa.ForeignKey("budgets.id", ondelete="SET NULL"),
        ),
        sa.Column(
            "type",
            sa.Enum(
                "budget_exceeded",
                "budget_warning",
                "unusual_spending",
                "savings_goal_achieved",
                "savings_goal_missed",
                "purchase_affordable",
                "low_balance",
                "monthly_report",
                name="alerttype",
            ),
            nullable=False,
        ),
        sa.Column("title", sa.String(length=100), nullable=False),
        sa.Column("message", sa.String(length=500), nullable=False),
        sa.Column(
            "severity",
            sa.Enum("info", "warning", "critical", "success", name="alertseverity"),
            nullable=False,
            server_default="info",
        ),
        sa.Column("is_read", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("read_at", sa.DateTime()),
        sa.Column("metadata", sa.JSON(), nullable=False),
        sa.Column("action_url", sa.String(length=200)),
        sa.Column("created_at", sa.DateTime(), nullable=False),
    )
    op.create_index(
        "ix_alerts_user_read_created", "alerts", ["user_id", "is_read", "created_at"]
    )
    op.create_index("ix_alerts_user_type", "alerts", ["user_id", "type"])


def downgrade() -> None:
    op.drop_index("ix_alerts_user_type", table_name="alerts")
    op.drop_index("ix_alerts_user_read_created", table_name="alerts")
    op.drop_table("alerts")
    op.drop_index("ix_budget_month", table_name="budgets")
    op.drop_index("ix_budget_user_month", table_name="budgets")
    op.drop_table("budgets")
    op.drop_index("ix_transactions_user_type_occurred", table_name="transactions")
    op.drop_index("ix_transactions_user_category_occurred", table_name="transactions")
    op.drop_index("ix_transactions_user_occurred", table_name="transactions")
    op.drop_table("transactions")

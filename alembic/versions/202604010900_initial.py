"""budgets, expenses, alert markers and account members

Revision ID: 202604010900
Revises:
Create Date: 2026-04-01 09:00:00.000000

"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa


revision = "202604010900"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "account_members",
        sa.Column("account_id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), primary_key=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    )

    op.create_table(
        "budgets",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("account_id", sa.Integer(), nullable=False),
        sa.Column("category", sa.String(length=100)),
        sa.Column("categories", sa.JSON()),
        sa.Column("amount", sa.Numeric(12, 2), nullable=False),
        sa.Column(
            "budget_type",
            sa.Enum("monthly", "recurring", name="budgettype"),
            nullable=False,
        ),
        sa.Column("month", sa.Integer()),
        sa.Column("year", sa.Integer()),
        sa.Column("start_date", sa.Date()),
        sa.Column("end_date", sa.Date()),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.CheckConstraint("amount >= 0", name="ck_budget_amount_positive"),
        sa.CheckConstraint(
            "month IS NULL OR (month >= 1 AND month <= 12)",
            name="ck_budget_month_range",
        ),
        sa.CheckConstraint(
            "end_date IS NULL OR start_date IS NULL OR end_date >= start_date",
            name="ck_budget_end_after_start",
        ),
    )
    op.create_index("ix_budget_account_type", "budgets", ["account_id", "budget_type"])

    op.create_table(
        "expenses",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("account_id", sa.Integer(), nullable=False),
        sa.Column("description", sa.String(length=200), nullable=False),
        sa.Column("category", sa.String(length=100)),
        sa.Column("amount", sa.Numeric(12, 2), nullable=False),
        sa.Column("date", sa.Date(), nullable=False),
        sa.Column(
            "status",
            sa.Enum("pending", "approved", "rejected", "paid", name="expensestatus"),
            nullable=False,
        ),
        sa.Column("paid_by_id", sa.Integer(), nullable=False),
        sa.Column("created_by_id", sa.Integer()),
        sa.Column("approved_by", sa.Integer()),
        sa.Column("approved_at", sa.DateTime()),
        sa.Column(
            "split_equally", sa.Boolean(), nullable=False, server_default=sa.true()
        ),
        sa.Column(
            "is_recurring", sa.Boolean(), nullable=False, server_default=sa.false()
        ),
        sa.Column("frequency", sa.Enum("monthly", name="recurringfrequency")),
        sa.Column(
            "has_end_date", sa.Boolean(), nullable=False, server_default=sa.false()
        ),
        sa.Column("end_date", sa.Date()),
        sa.Column(
            "recurring_parent_id", sa.Integer(), sa.ForeignKey("expenses.id")
        ),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.UniqueConstraint(
            "recurring_parent_id", "date", name="uq_expense_parent_period"
        ),
        sa.CheckConstraint("amount >= 0", name="ck_expenses_amount_positive"),
    )
    op.create_index("ix_expenses_account_date", "expenses", ["account_id", "date"])
    op.create_index(
        "ix_expenses_account_category_date",
        "expenses",
        ["account_id", "category", "date"],
    )
    op.create_index(
        "ix_expenses_parent_date", "expenses", ["recurring_parent_id", "date"]
    )

    op.create_table(
        "alert_markers",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("account_id", sa.Integer(), nullable=False),
        sa.Column("category_group", sa.String(length=500), nullable=False),
        sa.Column(
            "kind",
            sa.Enum("warning_90", "exceeded", name="alertkind"),
            nullable=False,
        ),
        sa.Column("year", sa.Integer(), nullable=False),
        sa.Column("month", sa.Integer(), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.UniqueConstraint(
            "account_id",
            "category_group",
            "kind",
            "year",
            "month",
            name="uq_alert_marker_key",
        ),
    )


def downgrade() -> None:
    op.drop_table("alert_markers")
    op.drop_index("ix_expenses_parent_date", table_name="expenses")
    op.drop_index("ix_expenses_account_category_date", table_name="expenses")
    op.drop_index("ix_expenses_account_date", table_name="expenses")
    op.drop_table("expenses")
    op.drop_index("ix_budget_account_type", table_name="budgets")
    op.drop_table("budgets")
    op.drop_table("account_members")

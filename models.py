import datetime as dt
from decimal import Decimal
from enum import Enum
from typing import Optional

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    Enum as SAEnum,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from database import Base


def utcnow() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc).replace(tzinfo=None)


class BudgetType(str, Enum):
    monthly = "monthly"
    recurring = "recurring"


class ExpenseStatus(str, Enum):
    pending = "pending"
    approved = "approved"
    rejected = "rejected"
    paid = "paid"


COUNTED_STATUSES = (ExpenseStatus.approved, ExpenseStatus.paid)


class RecurringFrequency(str, Enum):
    monthly = "monthly"


class BudgetStatus(str, Enum):
    ok = "ok"
    warning_90 = "warning_90"
    exceeded = "exceeded"


class AlertKind(str, Enum):
    warning_90 = "warning_90"
    exceeded = "exceeded"


AMOUNT = Numeric(12, 2, asdecimal=True)


class TimestampMixin:
    created_at: Mapped[dt.datetime] = mapped_column(
        DateTime, default=utcnow, nullable=False
    )
    updated_at: Mapped[dt.datetime] = mapped_column(
        DateTime, default=utcnow, onupdate=utcnow, nullable=False
    )


class AccountMember(Base, TimestampMixin):
    __tablename__ = "account_members"

    account_id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, primary_key=True)


class Budget(Base, TimestampMixin):
    __tablename__ = "budgets"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    account_id: Mapped[int] = mapped_column(Integer, nullable=False)
    category: Mapped[Optional[str]] = mapped_column(String(100))
    categories: Mapped[Optional[list[str]]] = mapped_column(JSON)
    amount: Mapped[Decimal] = mapped_column(AMOUNT, nullable=False)
    budget_type: Mapped[BudgetType] = mapped_column(SAEnum(BudgetType), nullable=False)
    month: Mapped[Optional[int]] = mapped_column(Integer)
    year: Mapped[Optional[int]] = mapped_column(Integer)
    start_date: Mapped[Optional[dt.date]] = mapped_column(Date)
    end_date: Mapped[Optional[dt.date]] = mapped_column(Date)

    __table_args__ = (
        CheckConstraint("amount >= 0", name="ck_budget_amount_positive"),
        CheckConstraint(
            "month IS NULL OR (month >= 1 AND month <= 12)",
            name="ck_budget_month_range",
        ),
        CheckConstraint(
            "end_date IS NULL OR start_date IS NULL OR end_date >= start_date",
            name="ck_budget_end_after_start",
        ),
        Index("ix_budget_account_type", "account_id", "budget_type"),
    )


class Expense(Base, TimestampMixin):
    __tablename__ = "expenses"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    account_id: Mapped[int] = mapped_column(Integer, nullable=False)
    description: Mapped[str] = mapped_column(String(200), nullable=False, default="")
    category: Mapped[Optional[str]] = mapped_column(String(100))
    amount: Mapped[Decimal] = mapped_column(AMOUNT, nullable=False)
    date: Mapped[dt.date] = mapped_column(Date, nullable=False)
    status: Mapped[ExpenseStatus] = mapped_column(
        SAEnum(ExpenseStatus), nullable=False, default=ExpenseStatus.pending
    )
    paid_by_id: Mapped[int] = mapped_column(Integer, nullable=False)
    created_by_id: Mapped[Optional[int]] = mapped_column(Integer)
    approved_by: Mapped[Optional[int]] = mapped_column(Integer)
    approved_at: Mapped[Optional[dt.datetime]] = mapped_column(DateTime)
    split_equally: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    is_recurring: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    frequency: Mapped[Optional[RecurringFrequency]] = mapped_column(
        SAEnum(RecurringFrequency)
    )
    has_end_date: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    end_date: Mapped[Optional[dt.date]] = mapped_column(Date)
    recurring_parent_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("expenses.id")
    )

    recurring_parent: Mapped[Optional["Expense"]] = relationship(
        "Expense", remote_side="Expense.id", back_populates="instances"
    )
    instances: Mapped[list["Expense"]] = relationship(
        "Expense", back_populates="recurring_parent"
    )

    __table_args__ = (
        # One generated instance per template and period; instances are dated
        # on the first day of their period.
        UniqueConstraint(
            "recurring_parent_id", "date", name="uq_expense_parent_period"
        ),
        Index("ix_expenses_account_date", "account_id", "date"),
        Index("ix_expenses_account_category_date", "account_id", "category", "date"),
        Index("ix_expenses_parent_date", "recurring_parent_id", "date"),
        CheckConstraint("amount >= 0", name="ck_expenses_amount_positive"),
    )


class AlertMarker(Base):
    __tablename__ = "alert_markers"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    account_id: Mapped[int] = mapped_column(Integer, nullable=False)
    category_group: Mapped[str] = mapped_column(String(500), nullable=False)
    kind: Mapped[AlertKind] = mapped_column(SAEnum(AlertKind), nullable=False)
    year: Mapped[int] = mapped_column(Integer, nullable=False)
    month: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[dt.datetime] = mapped_column(
        DateTime, default=utcnow, nullable=False
    )

    __table_args__ = (
        UniqueConstraint(
            "account_id",
            "category_group",
            "kind",
            "year",
            "month",
            name="uq_alert_marker_key",
        ),
    )

import datetime as dt
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from models import BudgetStatus, BudgetType, ExpenseStatus, RecurringFrequency


class BudgetIn(BaseModel):
    id: Optional[int] = None
    budget_type: BudgetType
    category: Optional[str] = Field(default=None, max_length=100)
    categories: Optional[list[str]] = None
    amount: Decimal = Field(..., ge=0, max_digits=12, decimal_places=2)
    month: Optional[int] = Field(default=None, ge=1, le=12)
    year: Optional[int] = Field(default=None, ge=1970, le=3000)
    start_date: Optional[dt.date] = None
    end_date: Optional[dt.date] = None

    @model_validator(mode="after")
    def check_shape(self) -> "BudgetIn":
        names = [c.strip() for c in (self.categories or []) if c and c.strip()]
        if names:
            self.categories = names
            self.category = None
        elif self.category and self.category.strip():
            self.category = self.category.strip()
            self.categories = None
        else:
            raise ValueError("Budget needs a category or a list of categories")

        if self.budget_type == BudgetType.monthly:
            if self.month is None or self.year is None:
                raise ValueError("Monthly budget requires month and year")
            self.start_date = None
            self.end_date = None
        else:
            if self.start_date is None:
                raise ValueError("Recurring budget requires a start date")
            if self.end_date is not None and self.end_date < self.start_date:
                raise ValueError("End date must not be before start date")
            self.month = None
            self.year = None
        return self


class BudgetOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    account_id: int
    budget_type: BudgetType
    category: Optional[str]
    categories: Optional[list[str]]
    amount: Decimal
    month: Optional[int]
    year: Optional[int]
    start_date: Optional[dt.date]
    end_date: Optional[dt.date]


class ExpenseIn(BaseModel):
    description: str = Field(default="", max_length=200)
    category: Optional[str] = Field(default=None, max_length=100)
    amount: Decimal = Field(..., ge=0, max_digits=12, decimal_places=2)
    date: dt.date
    paid_by_id: int
    created_by_id: int
    split_equally: bool = True
    status: ExpenseStatus = ExpenseStatus.pending


class RecurringTemplateIn(BaseModel):
    description: str = Field(..., min_length=1, max_length=200)
    category: Optional[str] = Field(default=None, max_length=100)
    amount: Decimal = Field(..., ge=0, max_digits=12, decimal_places=2)
    date: dt.date
    paid_by_id: int
    created_by_id: int
    split_equally: bool = True
    frequency: RecurringFrequency = RecurringFrequency.monthly
    has_end_date: bool = False
    end_date: Optional[dt.date] = None

    @model_validator(mode="after")
    def check_end_date(self) -> "RecurringTemplateIn":
        if self.has_end_date and self.end_date is None:
            raise ValueError("has_end_date requires an end date")
        if not self.has_end_date:
            self.end_date = None
        return self


class ExpenseOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    account_id: int
    description: str
    category: Optional[str]
    amount: Decimal
    date: dt.date
    status: ExpenseStatus
    paid_by_id: int
    created_by_id: Optional[int]
    is_recurring: bool
    recurring_parent_id: Optional[int]


class ExpenseDecisionIn(BaseModel):
    user_id: int


class MemberIn(BaseModel):
    user_id: int


class BudgetCheckIn(BaseModel):
    model_config = ConfigDict(extra="forbid")

    account_id: int
    category: str = Field(..., min_length=1, max_length=100)
    amount: Decimal = Field(..., ge=0)
    expense_date: Optional[dt.date] = None


class BudgetCheckOut(BaseModel):
    status: BudgetStatus
    budget: Decimal
    spent: Decimal
    new_spent: Decimal


class BudgetGroupOut(BaseModel):
    label: str
    categories: list[str]
    allotted: Decimal
    spent: Decimal
    status: BudgetStatus


class GenerateRecurringIn(BaseModel):
    month: Optional[int] = Field(default=None, ge=1, le=12)
    year: Optional[int] = Field(default=None, ge=1970, le=3000)
    account_id: Optional[int] = None

    @model_validator(mode="after")
    def check_pair(self) -> "GenerateRecurringIn":
        if (self.month is None) != (self.year is None):
            raise ValueError("month and year must be given together")
        return self


class GenerateRecurringOut(BaseModel):
    month: int
    year: int
    generated: int
    skipped: int
    failed: int

"""Budget matching, category-group aggregation and status classification.

Everything here is pure: callers load budgets and expenses from storage and
pass them in. Budgets are matched to a period by shape (fixed month or open
date range), grouped by the exact set of categories they cover, and each group
is classified against the fixed warning/exceeded thresholds.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Iterable, Optional, Union

from models import COUNTED_STATUSES, Budget, BudgetStatus, BudgetType, Expense
from periods import Period


logger = logging.getLogger(__name__)

WARNING_RATIO = Decimal("0.9")

Amount = Union[Decimal, int, float, str]


class BudgetConfigurationError(ValueError):
    pass


def to_decimal(value: Optional[Amount]) -> Decimal:
    if value is None:
        return Decimal("0")
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


@dataclass(frozen=True)
class CategorySignature:
    """Sorted, de-duplicated set of category names covered by a budget group."""

    categories: tuple[str, ...]

    @classmethod
    def of(cls, names: Iterable[Optional[str]]) -> CategorySignature:
        cleaned = sorted({name.strip() for name in names if name and name.strip()})
        if not cleaned:
            raise BudgetConfigurationError("Budget covers no category")
        return cls(tuple(cleaned))

    @property
    def key(self) -> str:
        # Persisted in alert markers; JSON keeps names containing separators apart.
        return json.dumps(list(self.categories), ensure_ascii=False)

    @property
    def label(self) -> str:
        return ", ".join(self.categories)

    def __contains__(self, category: object) -> bool:
        return category in self.categories


@dataclass(frozen=True)
class CategoryGroupSpend:
    signature: CategorySignature
    allotted: Decimal
    spent: Decimal

    @property
    def label(self) -> str:
        return self.signature.label

    def status(self, additional: Optional[Amount] = None) -> BudgetStatus:
        return classify(self.spent, self.allotted, additional)


def signature_for(budget: Budget) -> CategorySignature:
    if budget.categories:
        return CategorySignature.of(budget.categories)
    if budget.category:
        return CategorySignature.of([budget.category])
    raise BudgetConfigurationError(f"Budget {budget.id} has no category")


def validate_budget_shape(budget: Budget) -> None:
    if budget.budget_type == BudgetType.monthly:
        if budget.month is None or budget.year is None:
            raise BudgetConfigurationError(
                f"Monthly budget {budget.id} is missing month or year"
            )
        if not 1 <= budget.month <= 12:
            raise BudgetConfigurationError(
                f"Monthly budget {budget.id} has invalid month {budget.month}"
            )
    elif budget.budget_type == BudgetType.recurring:
        if budget.start_date is None:
            raise BudgetConfigurationError(
                f"Recurring budget {budget.id} is missing a start date"
            )
        if budget.end_date is not None and budget.end_date < budget.start_date:
            raise BudgetConfigurationError(
                f"Recurring budget {budget.id} ends before it starts"
            )
    else:
        raise BudgetConfigurationError(
            f"Budget {budget.id} has unknown type {budget.budget_type!r}"
        )


def is_budget_active(budget: Budget, period: Period) -> bool:
    validate_budget_shape(budget)
    if budget.budget_type == BudgetType.monthly:
        return budget.month == period.month and budget.year == period.year
    # A range that merely touches the month applies to the whole month.
    return period.overlaps(budget.start_date, budget.end_date)


def active_budgets(budgets: Iterable[Budget], period: Period) -> list[Budget]:
    active: list[Budget] = []
    for budget in budgets:
        try:
            if is_budget_active(budget, period):
                active.append(budget)
        except BudgetConfigurationError as exc:
            logger.warning(
                f"budget_skipped: budget_id={budget.id} account_id={budget.account_id} reason={exc}"
            )
    return active


def expense_counts(expense: Expense, period: Period) -> bool:
    return expense.status in COUNTED_STATUSES and period.contains(expense.date)


def group_allotments(budgets: Iterable[Budget]) -> dict[CategorySignature, Decimal]:
    allotments: dict[CategorySignature, Decimal] = {}
    for budget in budgets:
        try:
            signature = signature_for(budget)
        except BudgetConfigurationError as exc:
            logger.warning(
                f"budget_skipped: budget_id={budget.id} account_id={budget.account_id} reason={exc}"
            )
            continue
        allotments[signature] = allotments.get(signature, Decimal("0")) + to_decimal(
            budget.amount
        )
    return allotments


def aggregate_categories(
    budgets: Iterable[Budget],
    expenses: Iterable[Expense],
    period: Period,
) -> list[CategoryGroupSpend]:
    """Sum allotments per category group and the qualifying spend against each.

    Groups are evaluated independently: an expense whose category appears in
    two different groups counts toward both.
    """
    allotments = group_allotments(budgets)
    spent_by_category: dict[str, Decimal] = {}
    for expense in expenses:
        if not expense.category or not expense_counts(expense, period):
            continue
        spent_by_category[expense.category] = spent_by_category.get(
            expense.category, Decimal("0")
        ) + to_decimal(expense.amount)

    groups: list[CategoryGroupSpend] = []
    for signature, allotted in allotments.items():
        spent = sum(
            (spent_by_category.get(name, Decimal("0")) for name in signature.categories),
            Decimal("0"),
        )
        groups.append(CategoryGroupSpend(signature, allotted, spent))
    return groups


def classify(
    spent: Amount, allotted: Amount, additional: Optional[Amount] = None
) -> BudgetStatus:
    allotted_value = to_decimal(allotted)
    if allotted_value <= 0:
        return BudgetStatus.ok
    effective = to_decimal(spent) + to_decimal(additional)
    if effective > allotted_value:
        return BudgetStatus.exceeded
    if effective >= allotted_value * WARNING_RATIO:
        return BudgetStatus.warning_90
    return BudgetStatus.ok

from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Iterable, Optional

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from alerts import AlertDispatcher, AlertOutcome, SqlMarkerStore, SqlMembershipProvider
from budgeting import (
    Amount,
    CategoryGroupSpend,
    active_budgets,
    aggregate_categories,
    classify,
    group_allotments,
    to_decimal,
)
from database import insert_or_ignore
from models import (
    COUNTED_STATUSES,
    AccountMember,
    Budget,
    BudgetStatus,
    Expense,
    ExpenseStatus,
    utcnow,
)
from notifications import NotificationSender
from periods import Period, current_period, local_today, period_for, period_for_date
from recurrence import GenerationResult, RecurringMaterializer
from schemas import BudgetIn, ExpenseIn, RecurringTemplateIn


logger = logging.getLogger(__name__)


def _dispatcher(
    session: Session, sender: Optional[NotificationSender] = None
) -> AlertDispatcher:
    return AlertDispatcher(
        SqlMarkerStore(session), SqlMembershipProvider(session), sender
    )


@dataclass(frozen=True)
class BudgetCheck:
    status: BudgetStatus
    budget: Decimal
    spent: Decimal
    new_spent: Decimal


class MembershipService:
    def __init__(self, session: Session, account_id: int) -> None:
        self.session = session
        self.account_id = account_id

    def add(self, user_id: int) -> bool:
        if self.session.get(AccountMember, (self.account_id, user_id)) is not None:
            return False
        added = insert_or_ignore(
            self.session, AccountMember(account_id=self.account_id, user_id=user_id)
        )
        self.session.commit()
        return added

    def list(self) -> list[int]:
        return SqlMembershipProvider(self.session).list_members(self.account_id)


class BudgetService:
    def __init__(
        self,
        session: Session,
        account_id: int,
        *,
        sender: Optional[NotificationSender] = None,
    ) -> None:
        self.session = session
        self.account_id = account_id
        self.sender = sender

    def get(self, budget_id: int) -> Budget:
        budget = self.session.get(Budget, budget_id)
        if not budget or budget.account_id != self.account_id:
            raise ValueError("Budget not found")
        return budget

    def list_budgets(self) -> list[Budget]:
        stmt = (
            select(Budget)
            .where(Budget.account_id == self.account_id)
            .order_by(Budget.budget_type, Budget.id)
        )
        return self.session.scalars(stmt).all()

    def budgets_for_month(self, month: int, year: int) -> list[Budget]:
        return active_budgets(self.list_budgets(), period_for(month, year))

    def upsert(self, data: BudgetIn) -> Budget:
        if data.id is not None:
            budget = self.get(data.id)
        else:
            budget = Budget(account_id=self.account_id)
            self.session.add(budget)
        budget.budget_type = data.budget_type
        budget.category = data.category
        budget.categories = data.categories
        budget.amount = data.amount
        budget.month = data.month
        budget.year = data.year
        budget.start_date = data.start_date
        budget.end_date = data.end_date
        self.session.commit()
        self.session.refresh(budget)
        return budget

    def delete(self, budget_id: int) -> None:
        budget = self.get(budget_id)
        self.session.delete(budget)
        self.session.commit()

    def counted_expenses(self, period: Period) -> list[Expense]:
        stmt = (
            select(Expense)
            .where(
                Expense.account_id == self.account_id,
                Expense.is_recurring.is_(False),
                Expense.status.in_(COUNTED_STATUSES),
                Expense.date.between(period.start, period.end),
            )
            .order_by(Expense.date, Expense.id)
        )
        return self.session.scalars(stmt).all()

    def spent_for_category(self, category: str, period: Period) -> Decimal:
        stmt = select(func.coalesce(func.sum(Expense.amount), 0)).where(
            Expense.account_id == self.account_id,
            Expense.is_recurring.is_(False),
            Expense.category == category,
            Expense.status.in_(COUNTED_STATUSES),
            Expense.date.between(period.start, period.end),
        )
        return to_decimal(self.session.execute(stmt).scalar_one())

    def overview(self, month: int, year: int) -> list[CategoryGroupSpend]:
        period = period_for(month, year)
        budgets = active_budgets(self.list_budgets(), period)
        return aggregate_categories(budgets, self.counted_expenses(period), period)

    def check_budget(
        self,
        category: str,
        amount: Amount,
        expense_date: Optional[date] = None,
    ) -> BudgetCheck:
        """Classify the category's month as if ``amount`` were added to it.

        Every active budget whose categories include ``category`` contributes
        to the allotment. Nothing is written and no alert is sent.
        """
        additional = to_decimal(amount)
        if additional < 0:
            raise ValueError("Amount must not be negative")
        period = period_for_date(expense_date or local_today())
        allotments = group_allotments(active_budgets(self.list_budgets(), period))
        allotted = sum(
            (total for signature, total in allotments.items() if category in signature),
            Decimal("0"),
        )
        if allotted <= 0:
            return BudgetCheck(BudgetStatus.ok, Decimal("0"), Decimal("0"), additional)

        spent = self.spent_for_category(category, period)
        return BudgetCheck(
            status=classify(spent, allotted, additional),
            budget=allotted,
            spent=spent,
            new_spent=spent + additional,
        )

    def evaluate_alerts(self, period: Period) -> list[AlertOutcome]:
        groups = self.overview(period.month, period.year)
        outcomes = _dispatcher(self.session, self.sender).process(
            self.account_id, groups, period
        )
        self.session.commit()
        return outcomes


class ExpenseService:
    def __init__(
        self,
        session: Session,
        account_id: int,
        *,
        sender: Optional[NotificationSender] = None,
    ) -> None:
        self.session = session
        self.account_id = account_id
        self.sender = sender

    def get(self, expense_id: int) -> Expense:
        expense = self.session.get(Expense, expense_id)
        if not expense or expense.account_id != self.account_id:
            raise ValueError("Expense not found")
        return expense

    def list(
        self,
        *,
        period: Optional[Period] = None,
        statuses: Optional[Iterable[ExpenseStatus]] = None,
        category: Optional[str] = None,
    ) -> list[Expense]:
        stmt = (
            select(Expense)
            .where(
                Expense.account_id == self.account_id,
                Expense.is_recurring.is_(False),
            )
            .order_by(Expense.date.desc(), Expense.id.desc())
        )
        if period is not None:
            stmt = stmt.where(Expense.date.between(period.start, period.end))
        if statuses is not None:
            stmt = stmt.where(Expense.status.in_(list(statuses)))
        if category is not None:
            stmt = stmt.where(Expense.category == category)
        return self.session.scalars(stmt).all()

    def create(self, data: ExpenseIn) -> Expense:
        expense = Expense(
            account_id=self.account_id,
            description=data.description,
            category=data.category,
            amount=data.amount,
            date=data.date,
            status=data.status,
            paid_by_id=data.paid_by_id,
            created_by_id=data.created_by_id,
            split_equally=data.split_equally,
            is_recurring=False,
        )
        if data.status in COUNTED_STATUSES:
            expense.approved_by = data.created_by_id
            expense.approved_at = utcnow()
        self.session.add(expense)
        self.session.commit()
        self.session.refresh(expense)
        if expense.status in COUNTED_STATUSES:
            self._evaluate(expense)
        return expense

    def approve(self, expense_id: int, user_id: int) -> Expense:
        expense = self._transition(
            expense_id, ExpenseStatus.pending, ExpenseStatus.approved
        )
        expense.approved_by = user_id
        expense.approved_at = utcnow()
        self.session.commit()
        self._evaluate(expense)
        return expense

    def reject(self, expense_id: int, user_id: int) -> Expense:
        expense = self._transition(
            expense_id, ExpenseStatus.pending, ExpenseStatus.rejected
        )
        expense.approved_by = user_id
        expense.approved_at = utcnow()
        self.session.commit()
        return expense

    def mark_paid(self, expense_id: int, user_id: int) -> Expense:
        expense = self._transition(
            expense_id, ExpenseStatus.approved, ExpenseStatus.paid
        )
        self.session.commit()
        logger.info(
            f"expense_paid: expense_id={expense.id} account_id={self.account_id} user_id={user_id}"
        )
        self._evaluate(expense)
        return expense

    def _transition(
        self, expense_id: int, expected: ExpenseStatus, target: ExpenseStatus
    ) -> Expense:
        expense = self.get(expense_id)
        if expense.is_recurring:
            raise ValueError("Recurring templates have no approval workflow")
        if expense.status != expected:
            raise ValueError(
                f"Cannot move a {expense.status.value} expense to {target.value}"
            )
        expense.status = target
        return expense

    def _evaluate(self, expense: Expense) -> None:
        try:
            BudgetService(
                self.session, self.account_id, sender=self.sender
            ).evaluate_alerts(period_for_date(expense.date))
        except Exception:
            self.session.rollback()
            logger.exception(
                f"alert_evaluation_failed: account_id={self.account_id} expense_id={expense.id}"
            )


class RecurringExpenseService:
    def __init__(
        self,
        session: Session,
        account_id: Optional[int] = None,
        *,
        today: Optional[date] = None,
        sender: Optional[NotificationSender] = None,
    ) -> None:
        self.session = session
        self.account_id = account_id
        self.today = today
        self.sender = sender

    def _require_account(self) -> int:
        if self.account_id is None:
            raise ValueError("An account is required")
        return self.account_id

    def list_templates(self) -> list[Expense]:
        return RecurringMaterializer(self.session).templates(self.account_id)

    def create_template(self, data: RecurringTemplateIn) -> Expense:
        template = Expense(
            account_id=self._require_account(),
            description=data.description,
            category=data.category,
            amount=data.amount,
            date=data.date,
            status=ExpenseStatus.pending,
            paid_by_id=data.paid_by_id,
            created_by_id=data.created_by_id,
            split_equally=data.split_equally,
            is_recurring=True,
            frequency=data.frequency,
            has_end_date=data.has_end_date,
            end_date=data.end_date,
        )
        self.session.add(template)
        self.session.commit()
        self.session.refresh(template)
        return template

    def delete_template(self, template_id: int) -> None:
        template = self.session.get(Expense, template_id)
        if (
            not template
            or not template.is_recurring
            or template.account_id != self._require_account()
        ):
            raise ValueError("Template not found")
        for instance in template.instances:
            instance.recurring_parent_id = None
        self.session.delete(template)
        self.session.commit()

    def generate(
        self,
        month: Optional[int] = None,
        year: Optional[int] = None,
        *,
        catch_up: bool = False,
    ) -> GenerationResult:
        if month is None or year is None:
            period = current_period(self.today)
        else:
            period = period_for(month, year)
        result = RecurringMaterializer(self.session, today=self.today).run(
            period, self.account_id, catch_up=catch_up
        )
        self.session.commit()
        self._evaluate_generated(result, period)
        return result

    def backfill(self, periods: Iterable[tuple[int, int]]) -> list[GenerationResult]:
        return [self.generate(month, year, catch_up=True) for month, year in periods]

    def _evaluate_generated(self, result: GenerationResult, period: Period) -> None:
        by_account: dict[int, int] = defaultdict(int)
        for instance in result.instances:
            if instance.status in COUNTED_STATUSES:
                by_account[instance.account_id] += 1
        for account_id in sorted(by_account):
            try:
                BudgetService(
                    self.session, account_id, sender=self.sender
                ).evaluate_alerts(period)
            except Exception:
                self.session.rollback()
                logger.exception(
                    f"alert_evaluation_failed: account_id={account_id} period={period.slug}"
                )


def check_budget(
    session: Session,
    account_id: int,
    category: str,
    amount: Amount,
    expense_date: Optional[date] = None,
) -> BudgetCheck:
    return BudgetService(session, account_id).check_budget(
        category, amount, expense_date
    )


def generate_recurring_expenses(
    session: Session,
    month: Optional[int] = None,
    year: Optional[int] = None,
    *,
    account_id: Optional[int] = None,
    today: Optional[date] = None,
    sender: Optional[NotificationSender] = None,
) -> GenerationResult:
    service = RecurringExpenseService(
        session, account_id, today=today, sender=sender
    )
    return service.generate(month, year)

import logging
from dataclasses import dataclass, field
from datetime import date
from typing import Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from models import Expense, ExpenseStatus, RecurringFrequency, utcnow
from periods import Period, local_today


logger = logging.getLogger(__name__)

INSTANCE_SUFFIX = " (monthly)"


@dataclass
class GenerationResult:
    month: int
    year: int
    generated: int = 0
    skipped: int = 0
    failed: int = 0
    instances: list[Expense] = field(default_factory=list, repr=False)


def is_template_active(
    template: Expense, period: Period, today: Optional[date] = None
) -> bool:
    """Whether ``template`` yields an instance for ``period``.

    With ``today`` set, a template whose end date has passed produces nothing.
    Without it (catch-up runs) only the period start is compared with the end
    date.
    """
    if not template.is_recurring or template.frequency != RecurringFrequency.monthly:
        return False
    if not template.has_end_date:
        return True
    if template.end_date is None:
        logger.warning(
            f"recurring_template_inconsistent: template_id={template.id} reason=has_end_date without end_date"
        )
        return False
    if today is not None and template.end_date < today:
        return False
    return template.end_date >= period.start


def instance_status(template: Expense) -> ExpenseStatus:
    # The payer approving their own recurring charge needs no second look.
    if template.created_by_id is not None and template.paid_by_id == template.created_by_id:
        return ExpenseStatus.approved
    return ExpenseStatus.pending


def build_instance(template: Expense, period: Period) -> Expense:
    status = instance_status(template)
    approved = status == ExpenseStatus.approved
    return Expense(
        account_id=template.account_id,
        description=f"{template.description}{INSTANCE_SUFFIX}",
        category=template.category,
        amount=template.amount,
        date=period.start,
        status=status,
        paid_by_id=template.paid_by_id,
        created_by_id=template.created_by_id,
        approved_by=template.created_by_id if approved else None,
        approved_at=utcnow() if approved else None,
        split_equally=template.split_equally,
        is_recurring=False,
        frequency=None,
        has_end_date=False,
        end_date=None,
        recurring_parent_id=template.id,
    )


class RecurringMaterializer:
    def __init__(self, session: Session, *, today: Optional[date] = None) -> None:
        self.session = session
        self.today = today

    def templates(self, account_id: Optional[int] = None) -> list[Expense]:
        stmt = (
            select(Expense)
            .where(
                Expense.is_recurring.is_(True),
                Expense.frequency == RecurringFrequency.monthly,
            )
            .order_by(Expense.account_id, Expense.id)
        )
        if account_id is not None:
            stmt = stmt.where(Expense.account_id == account_id)
        return self.session.scalars(stmt).all()

    def instance_exists(self, template: Expense, period: Period) -> bool:
        stmt = (
            select(Expense.id)
            .where(
                Expense.recurring_parent_id == template.id,
                Expense.date.between(period.start, period.end),
            )
            .limit(1)
        )
        return self.session.execute(stmt).scalar_one_or_none() is not None

    def materialize(self, template: Expense, period: Period) -> Optional[Expense]:
        """Create the period's instance of ``template`` unless one exists.

        The check and the insert share one SAVEPOINT; a concurrent run that
        wins the race surfaces as a unique-constraint conflict and is reported
        the same way as an instance found by the check. Any other constraint
        failure propagates.
        """
        try:
            with self.session.begin_nested():
                if self.instance_exists(template, period):
                    return None
                instance = build_instance(template, period)
                self.session.add(instance)
        except IntegrityError:
            if not self.instance_exists(template, period):
                raise
            logger.info(
                f"recurring_instance_conflict: template_id={template.id} period={period.slug}"
            )
            return None
        return instance

    def run(
        self,
        period: Period,
        account_id: Optional[int] = None,
        *,
        catch_up: bool = False,
    ) -> GenerationResult:
        today = None if catch_up else self.today or local_today()
        result = GenerationResult(month=period.month, year=period.year)
        for template in self.templates(account_id):
            if not is_template_active(template, period, today):
                continue
            try:
                instance = self.materialize(template, period)
            except Exception:
                logger.exception(
                    f"recurring_instance_failed: template_id={template.id} period={period.slug}"
                )
                result.failed += 1
                continue
            if instance is None:
                result.skipped += 1
            else:
                result.generated += 1
                result.instances.append(instance)
        logger.info(
            f"recurring_run: period={period.slug} account_id={account_id} catch_up={catch_up} "
            f"generated={result.generated} skipped={result.skipped} failed={result.failed}"
        )
        return result

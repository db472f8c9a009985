from datetime import date
from decimal import Decimal

from sqlalchemy import create_engine, select
from sqlalchemy.orm import Session

from database import Base
from models import (
    AccountMember,
    AlertMarker,
    Budget,
    BudgetType,
    Expense,
    ExpenseStatus,
    RecurringFrequency,
)
from periods import period_for
import recurrence
from recurrence import RecurringMaterializer, is_template_active
from schemas import RecurringTemplateIn
from services import RecurringExpenseService, generate_recurring_expenses


def make_session() -> Session:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    return Session(engine)


def add_template(
    session: Session,
    *,
    description: str = "Netflix",
    paid_by: int = 10,
    created_by: int = 10,
    account_id: int = 1,
    end_date=None,
    amount: str = "49.90",
    category: str = "Subscriptions",
) -> Expense:
    template = Expense(
        account_id=account_id,
        description=description,
        category=category,
        amount=Decimal(amount),
        date=date(2024, 1, 15),
        status=ExpenseStatus.approved,
        paid_by_id=paid_by,
        created_by_id=created_by,
        split_equally=False,
        is_recurring=True,
        frequency=RecurringFrequency.monthly,
        has_end_date=end_date is not None,
        end_date=end_date,
    )
    session.add(template)
    session.commit()
    return template


def instances_of(session: Session, template: Expense) -> list[Expense]:
    return session.scalars(
        select(Expense).where(Expense.recurring_parent_id == template.id)
    ).all()


def test_second_run_in_same_period_skips_everything():
    session = make_session()
    for name in ("Netflix", "Rent", "Gym"):
        add_template(session, description=name)

    first = generate_recurring_expenses(session, 3, 2024, today=date(2024, 3, 1))
    second = generate_recurring_expenses(session, 3, 2024, today=date(2024, 3, 1))

    assert (first.generated, first.skipped, first.failed) == (3, 0, 0)
    assert (second.generated, second.skipped, second.failed) == (0, 3, 0)
    assert len(session.scalars(select(Expense).where(Expense.is_recurring.is_(False))).all()) == 3


def test_instance_copies_template_and_is_dated_on_first_of_month():
    session = make_session()
    template = add_template(session)

    generate_recurring_expenses(session, 3, 2024, today=date(2024, 3, 10))

    (instance,) = instances_of(session, template)
    assert instance.date == date(2024, 3, 1)
    assert instance.amount == Decimal("49.90")
    assert instance.category == "Subscriptions"
    assert instance.paid_by_id == 10
    assert instance.split_equally is False
    assert instance.is_recurring is False
    assert instance.frequency is None
    assert instance.description == "Netflix (monthly)"


def test_self_paid_template_is_auto_approved():
    session = make_session()
    own = add_template(session, description="Own", paid_by=10, created_by=10)
    other = add_template(session, description="Other", paid_by=11, created_by=10)

    generate_recurring_expenses(session, 3, 2024, today=date(2024, 3, 1))

    (own_instance,) = instances_of(session, own)
    (other_instance,) = instances_of(session, other)
    assert own_instance.status == ExpenseStatus.approved
    assert own_instance.approved_by == 10
    assert own_instance.approved_at is not None
    assert other_instance.status == ExpenseStatus.pending
    assert other_instance.approved_by is None


def test_ended_templates_are_not_generated():
    session = make_session()
    add_template(session, description="Ended", end_date=date(2024, 2, 29))
    add_template(session, description="Ending", end_date=date(2024, 3, 31))

    result = generate_recurring_expenses(session, 3, 2024, today=date(2024, 3, 1))

    assert result.generated == 1
    descriptions = session.scalars(
        select(Expense.description).where(Expense.recurring_parent_id.is_not(None))
    ).all()
    assert descriptions == ["Ending (monthly)"]


def test_template_activity_rules():
    period = period_for(3, 2024)
    template = Expense(
        is_recurring=True,
        frequency=RecurringFrequency.monthly,
        has_end_date=True,
        end_date=None,
    )
    assert not is_template_active(template, period, date(2024, 3, 1))
    template.end_date = date(2024, 3, 10)
    assert is_template_active(template, period, date(2024, 3, 1))
    assert not is_template_active(template, period, date(2024, 3, 11))
    template.has_end_date = False
    assert is_template_active(template, period, date(2030, 1, 1))


def test_one_failing_template_does_not_abort_the_run(monkeypatch):
    session = make_session()
    add_template(session, description="Good")
    bad = add_template(session, description="Bad")
    add_template(session, description="Also good")

    original = RecurringMaterializer.instance_exists

    def flaky_exists(self, template, period):
        if template.id == bad.id:
            raise RuntimeError("storage write failed")
        return original(self, template, period)

    monkeypatch.setattr(RecurringMaterializer, "instance_exists", flaky_exists)

    result = generate_recurring_expenses(session, 3, 2024, today=date(2024, 3, 1))

    assert (result.generated, result.skipped, result.failed) == (2, 0, 1)
    assert instances_of(session, bad) == []


def test_instance_inserted_by_concurrent_run_is_treated_as_skipped(monkeypatch):
    session = make_session()
    template = add_template(session)
    session.add(
        Expense(
            account_id=1,
            description="Netflix (monthly)",
            category="Subscriptions",
            amount=Decimal("49.90"),
            date=date(2024, 3, 1),
            status=ExpenseStatus.approved,
            paid_by_id=10,
            recurring_parent_id=template.id,
        )
    )
    session.commit()
    monkeypatch.setattr(
        RecurringMaterializer, "instance_exists", lambda self, template, period: False
    )

    result = generate_recurring_expenses(session, 3, 2024, today=date(2024, 3, 1))

    assert (result.generated, result.skipped, result.failed) == (0, 1, 0)
    assert len(instances_of(session, template)) == 1


def test_generation_can_be_limited_to_one_account():
    session = make_session()
    add_template(session, account_id=1)
    add_template(session, account_id=2)

    result = RecurringExpenseService(session, 2, today=date(2024, 3, 1)).generate(3, 2024)

    assert result.generated == 1
    (instance,) = session.scalars(
        select(Expense).where(Expense.recurring_parent_id.is_not(None))
    ).all()
    assert instance.account_id == 2


def test_generation_defaults_to_current_period_and_backfills():
    session = make_session()
    add_template(session)
    service = RecurringExpenseService(session, 1, today=date(2024, 5, 17))

    current = service.generate()
    results = service.backfill([(3, 2024), (4, 2024), (5, 2024)])

    assert (current.month, current.year, current.generated) == (5, 2024, 1)
    assert [r.generated for r in results] == [1, 1, 0]
    assert [r.skipped for r in results] == [0, 0, 1]


def test_approved_instances_feed_budget_alerts():
    session = make_session()
    add_template(session, amount="120", category="Subscriptions")
    session.add(AccountMember(account_id=1, user_id=10))
    session.add(
        Budget(
            account_id=1,
            budget_type=BudgetType.recurring,
            category="Subscriptions",
            amount=Decimal("100"),
            start_date=date(2024, 1, 1),
        )
    )
    session.commit()

    class Sender:
        def __init__(self):
            self.sent = []

        def send(self, notification):
            self.sent.append(notification)

    sender = Sender()
    generate_recurring_expenses(session, 3, 2024, today=date(2024, 3, 1), sender=sender)

    assert [n.kind for n in sender.sent] == ["budget_exceeded"]
    assert len(session.scalars(select(AlertMarker)).all()) == 1


def test_create_template_from_payload():
    session = make_session()
    template = RecurringExpenseService(session, 1).create_template(
        RecurringTemplateIn(
            description="Rent",
            category="Housing",
            amount=Decimal("4500"),
            date=date(2024, 1, 1),
            paid_by_id=10,
            created_by_id=10,
            has_end_date=True,
            end_date=date(2024, 12, 31),
        )
    )
    assert template.is_recurring
    assert template.frequency == RecurringFrequency.monthly
    assert RecurringExpenseService(session, 1).list_templates() == [template]


def test_backfill_covers_months_before_a_template_ended():
    session = make_session()
    template = add_template(session, end_date=date(2024, 4, 30))
    service = RecurringExpenseService(session, 1, today=date(2024, 6, 10))

    assert service.generate(6, 2024).generated == 0
    results = service.backfill([(3, 2024), (4, 2024), (5, 2024)])

    assert [r.generated for r in results] == [1, 1, 0]
    assert sorted(i.date for i in instances_of(session, template)) == [
        date(2024, 3, 1),
        date(2024, 4, 1),
    ]


def test_ended_template_is_active_for_past_periods_without_today():
    template = Expense(
        is_recurring=True,
        frequency=RecurringFrequency.monthly,
        has_end_date=True,
        end_date=date(2024, 4, 30),
    )
    assert is_template_active(template, period_for(4, 2024))
    assert not is_template_active(template, period_for(4, 2024), date(2024, 6, 10))
    assert not is_template_active(template, period_for(5, 2024))


def test_constraint_failure_other_than_duplicate_counts_as_failed(monkeypatch):
    session = make_session()
    bad = add_template(session, description="Bad")
    add_template(session, description="Good")
    original = recurrence.build_instance

    def negative_instance(template, period):
        instance = original(template, period)
        if template.id == bad.id:
            instance.amount = Decimal("-1")
        return instance

    monkeypatch.setattr(recurrence, "build_instance", negative_instance)

    result = generate_recurring_expenses(session, 3, 2024, today=date(2024, 3, 1))

    assert (result.generated, result.skipped, result.failed) == (1, 0, 1)
    assert instances_of(session, bad) == []

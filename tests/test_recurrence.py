from datetime import date

from sqlalchemy import create_engine, select
from sqlalchemy.orm import Session

from database import Base
from models import (
    AccountType,
    RecurrenceFrequency,
    RecurringSeries,
    Transaction,
    TransactionType,
)
from recurrence import (
    RecurringEngine,
    calculate_next_execution_date,
    days_until_due,
    is_series_due,
    occurs_on,
    pending_occurrences,
)
from schemas import AccountIn, CategoryIn, GroupIn, RecurringSeriesIn, UserIn
from services import (
    AccountService,
    CategoryService,
    GroupService,
    RecurringSeriesService,
    UserService,
)


def _series(
    frequency: RecurrenceFrequency,
    due_day: int = 1,
    start: date = date(2024, 1, 1),
    **extra,
) -> RecurringSeries:
    return RecurringSeries(
        id=1,
        user_id=1,
        account_id=1,
        type=TransactionType.expense,
        amount_cents=1000,
        category="rent",
        description="Rent",
        frequency=frequency,
        due_day=due_day,
        start_date=start,
        end_date=extra.get("end_date"),
        is_active=extra.get("is_active", True),
        last_executed_on=extra.get("last_executed_on"),
    )


def test_next_weekly_date_is_strictly_after_today():
    # 2024-03-13 is a Wednesday (isoweekday 3).
    today = date(2024, 3, 13)
    assert calculate_next_execution_date(_series(RecurrenceFrequency.weekly, 5), today) == date(2024, 3, 15)
    assert calculate_next_execution_date(_series(RecurrenceFrequency.weekly, 3), today) == date(2024, 3, 20)
    assert calculate_next_execution_date(_series(RecurrenceFrequency.biweekly, 1), today) == date(2024, 3, 25)


def test_next_monthly_date_clamps_to_month_end():
    series = _series(RecurrenceFrequency.monthly, 31)
    assert calculate_next_execution_date(series, date(2024, 1, 31)) == date(2024, 2, 29)
    assert calculate_next_execution_date(series, date(2024, 4, 10)) == date(2024, 4, 30)
    assert calculate_next_execution_date(
        _series(RecurrenceFrequency.monthly, 15), date(2024, 12, 15)
    ) == date(2025, 1, 15)


def test_next_yearly_and_once_dates():
    yearly = _series(RecurrenceFrequency.yearly, 10, start=date(2020, 6, 1))
    assert calculate_next_execution_date(yearly, date(2024, 3, 1)) == date(2024, 6, 10)
    assert calculate_next_execution_date(yearly, date(2024, 6, 10)) == date(2025, 6, 10)

    once = _series(RecurrenceFrequency.once, start=date(2024, 5, 1))
    assert calculate_next_execution_date(once, date(2024, 3, 1)) == date(2024, 5, 1)
    assert calculate_next_execution_date(once, date(2024, 6, 1)) == date(2024, 6, 1)
    assert days_until_due(once, date(2024, 4, 29)) == 2


def test_biweekly_occurrences_anchor_on_first_matching_weekday():
    # Start on a Wednesday, due on Fridays.
    series = _series(RecurrenceFrequency.biweekly, 5, start=date(2024, 3, 13))
    assert occurs_on(series, date(2024, 3, 15))
    assert not occurs_on(series, date(2024, 3, 22))
    assert occurs_on(series, date(2024, 3, 29))
    assert not occurs_on(series, date(2024, 3, 8))


def test_pending_occurrences_resume_after_last_execution():
    series = _series(
        RecurrenceFrequency.monthly,
        31,
        start=date(2024, 1, 1),
        last_executed_on=date(2024, 1, 31),
    )
    assert list(pending_occurrences(series, date(2024, 4, 30))) == [
        date(2024, 2, 29),
        date(2024, 3, 31),
        date(2024, 4, 30),
    ]
    ended = _series(RecurrenceFrequency.monthly, 1, end_date=date(2024, 2, 15))
    assert list(pending_occurrences(ended, date(2024, 4, 1))) == [
        date(2024, 1, 1),
        date(2024, 2, 1),
    ]


def test_inactive_or_finished_series_is_not_due():
    assert not is_series_due(
        _series(RecurrenceFrequency.monthly, is_active=False), date(2024, 3, 1)
    )
    once = _series(RecurrenceFrequency.once, last_executed_on=date(2024, 1, 1))
    assert not is_series_due(once, date(2024, 3, 1))
    assert is_series_due(_series(RecurrenceFrequency.once), date(2024, 1, 1))


def _setup(session: Session):
    group = GroupService(session).create(GroupIn(name="Home"))
    user = UserService(session).create(UserIn(group_id=group.id, name="Ada"))
    account = AccountService(session, group.id).create(
        AccountIn(
            name="Main", type=AccountType.payroll, user_ids=[user.id], balance_cents=100_000
        )
    )
    CategoryService(session, group.id).create(CategoryIn(key="rent", label="Rent"))
    return user, account


def test_recurring_engine_idempotent_posts():
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    with Session(engine) as session:
        user, account = _setup(session)
        service = RecurringSeriesService(session, user.id)
        series = service.create(
            RecurringSeriesIn(
                account_id=account.id,
                type=TransactionType.expense,
                amount_cents=10_000,
                category="Rent",
                description="Flat",
                frequency=RecurrenceFrequency.monthly,
                due_day=1,
                start_date=date(2024, 1, 1),
            )
        )
        assert series.category == "rent"

        assert RecurringEngine(session).execute_due(date(2024, 3, 15)) == 3
        assert RecurringEngine(session).execute_due(date(2024, 3, 15)) == 0

        posted = session.scalars(
            select(Transaction).where(Transaction.recurring_series_id == series.id)
        ).all()
        assert sorted(t.date for t in posted) == [
            date(2024, 1, 1),
            date(2024, 2, 1),
            date(2024, 3, 1),
        ]
        session.refresh(account)
        session.refresh(series)
        assert account.balance_cents == 70_000
        assert series.last_executed_on == date(2024, 3, 1)


def test_once_series_deactivates_after_posting():
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    with Session(engine) as session:
        user, account = _setup(session)
        service = RecurringSeriesService(session, user.id)
        series = service.create(
            RecurringSeriesIn(
                account_id=account.id,
                type=TransactionType.income,
                amount_cents=5_000,
                category="rent",
                description="Deposit back",
                frequency=RecurrenceFrequency.once,
                start_date=date(2024, 3, 10),
            )
        )

        assert service.execute_due(date(2024, 3, 9)) == 0
        assert service.execute_due(date(2024, 3, 12)) == 1
        session.refresh(series)
        assert series.is_active is False
        assert service.execute_due(date(2024, 3, 20)) == 0
        session.refresh(account)
        assert account.balance_cents == 105_000


def test_failing_series_is_skipped_and_others_still_post():
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    with Session(engine) as session:
        user, account = _setup(session)
        broken = RecurringSeries(
            group_id=user.group_id,
            user_id=user.id,
            account_id=account.id,
            type=TransactionType.expense,
            amount_cents=100,
            category="no-such-category",
            description="Broken",
            frequency=RecurrenceFrequency.monthly,
            due_day=1,
            start_date=date(2024, 3, 1),
        )
        session.add(broken)
        session.commit()
        RecurringSeriesService(session, user.id).create(
            RecurringSeriesIn(
                account_id=account.id,
                type=TransactionType.expense,
                amount_cents=2_000,
                category="rent",
                description="Parking",
                frequency=RecurrenceFrequency.monthly,
                due_day=5,
                start_date=date(2024, 3, 1),
            )
        )

        assert RecurringEngine(session).execute_due(date(2024, 3, 10)) == 1
        session.refresh(broken)
        assert broken.last_executed_on is None
        session.refresh(account)
        assert account.balance_cents == 98_000


def test_statistics_summarise_active_series():
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    with Session(engine) as session:
        user, account = _setup(session)
        service = RecurringSeriesService(session, user.id)
        for amount, frequency, day in [
            (10_000, RecurrenceFrequency.weekly, 5),
            (120_000, RecurrenceFrequency.yearly, 1),
        ]:
            service.create(
                RecurringSeriesIn(
                    account_id=account.id,
                    type=TransactionType.expense,
                    amount_cents=amount,
                    category="rent",
                    description=frequency.value,
                    frequency=frequency,
                    due_day=day,
                    start_date=date(2024, 1, 1),
                )
            )
        paused = service.list_all()[1]
        service.toggle(paused.id, False)

        stats = service.statistics(today=date(2024, 3, 13))
        assert stats["monthly_expenses_cents"] == 43_300
        assert stats["active_count"] == 1
        assert stats["total_count"] == 2
        assert stats["upcoming"][0]["next_execution_date"] == date(2024, 3, 15)
        assert stats["upcoming"][0]["days_until_due"] == 2

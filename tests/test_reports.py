from datetime import date

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session

from database import Base
from models import AccountType, TransactionType
from periods import resolve_period
from schemas import AccountIn, CategoryIn, GroupIn, TransactionIn, UserIn
from services import (
    AccountService,
    BudgetPeriodService,
    CategoryService,
    GroupService,
    MetricsService,
    ReportPeriodService,
    TransactionService,
    UserService,
)


def _session() -> Session:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    return Session(engine)


def _ledger(session: Session):
    group = GroupService(session).create(GroupIn(name="Home"))
    ada = UserService(session).create(UserIn(group_id=group.id, name="Ada"))
    accounts = AccountService(session, group.id)
    payroll = accounts.create(
        AccountIn(name="Main", type=AccountType.payroll, user_ids=[ada.id])
    )
    savings = accounts.create(
        AccountIn(name="Rainy day", type=AccountType.savings, user_ids=[ada.id])
    )
    categories = CategoryService(session, group.id)
    for key in ("salary", "food", "saving"):
        categories.create(CategoryIn(key=key, label=key.title()))

    txns = TransactionService(session, ada.id)

    def post(type_, amount, category, day, to_account_id=None):
        txns.create(
            TransactionIn(
                account_id=payroll.id,
                to_account_id=to_account_id,
                type=type_,
                amount_cents=amount,
                category=category,
                description=category,
                date=day,
            )
        )

    post(TransactionType.income, 200_000, "salary", date(2024, 1, 5))
    post(TransactionType.expense, 50_000, "food", date(2024, 1, 20))
    post(TransactionType.expense, 30_000, "food", date(2024, 2, 10))
    post(TransactionType.transfer, 20_000, "saving", date(2024, 3, 2), savings.id)

    periods = BudgetPeriodService(session, ada.id)
    first = periods.create(date(2024, 1, 1))
    periods.close(first.id, date(2024, 1, 31))
    second = periods.active_period()
    periods.close(second.id, date(2024, 2, 29))
    return group, ada, payroll, savings


def test_enriched_periods_chain_balances():
    with _session() as session:
        group, ada, payroll, _savings = _ledger(session)
        enriched = ReportPeriodService(session, group.id).enriched_periods(
            today=date(2024, 3, 15)
        )

        assert [p.start_date for p in enriched] == [
            date(2024, 1, 1),
            date(2024, 2, 1),
            date(2024, 3, 1),
        ]
        assert [p.start_balance_cents for p in enriched] == [0, 150_000, 120_000]
        assert [p.end_balance_cents for p in enriched] == [150_000, 120_000, 100_000]
        for earlier, later in zip(enriched, enriched[1:]):
            assert later.start_balance_cents == earlier.end_balance_cents
        session.refresh(payroll)
        assert enriched[-1].end_balance_cents == payroll.balance_cents
        assert enriched[-1].total_transfers_cents == 20_000
        assert enriched[-1].is_active is True
        assert enriched[0].user_name == ada.name


def test_period_summaries_newest_first_with_type_metrics():
    with _session() as session:
        group, _ada, _payroll, _savings = _ledger(session)
        summaries = ReportPeriodService(session, group.id).period_summaries(
            today=date(2024, 3, 15)
        )

        assert [s.start_date for s in summaries] == [
            date(2024, 3, 1),
            date(2024, 2, 1),
            date(2024, 1, 1),
        ]
        march = summaries[0]
        assert march.name == "01/03/2024 - Present"
        assert march.metrics_by_account_type["payroll"].spent_cents == 20_000
        assert march.metrics_by_account_type["savings"].earned_cents == 20_000
        assert march.metrics_by_account_type["savings"].start_balance_cents == 0
        january = summaries[-1]
        assert january.name == "01/01/2024 - 31/01/2024"
        assert january.total_earned_cents == 200_000
        assert january.metrics_by_account_type["payroll"].start_balance_cents == 0
        assert january.metrics_by_account_type["payroll"].end_balance_cents == 150_000


def test_account_type_summary_for_group():
    with _session() as session:
        group, _ada, _payroll, _savings = _ledger(session)
        summary = {
            item.type: item
            for item in ReportPeriodService(session, group.id).account_type_summary()
        }
        assert summary["payroll"].total_earned_cents == 200_000
        assert summary["payroll"].total_spent_cents == 100_000
        assert summary["payroll"].total_balance_cents == 100_000
        assert summary["savings"].total_earned_cents == 20_000
        assert summary["savings"].total_balance_cents == 20_000


def test_overview_treats_own_transfers_as_internal():
    with _session() as session:
        _group, ada, _payroll, _savings = _ledger(session)
        metrics = MetricsService(session, ada.id)

        overview = metrics.overview()
        assert overview.total_earned_cents == 200_000
        assert overview.total_spent_cents == 80_000
        assert overview.total_transferred_cents == 20_000
        assert overview.total_balance_cents == 120_000
        assert metrics.total_balance() == 120_000

        march = metrics.overview(
            resolve_period("custom", "2024-03-01", "2024-03-31")
        )
        assert march.total_spent_cents == 0
        assert march.total_transferred_cents == 20_000


def test_category_views_for_user():
    with _session() as session:
        _group, ada, _payroll, _savings = _ledger(session)
        metrics = MetricsService(session, ada.id)

        breakdown = metrics.category_breakdown()
        assert [item.category for item in breakdown] == ["salary", "food"]
        assert breakdown[1].percentage == pytest.approx(100.0)

        annual = metrics.annual_category_spending(2024)
        assert {item.category: item.spent_cents for item in annual}["food"] == 80_000
        assert metrics.annual_category_spending(2023) == []

        years = metrics.annual_breakdown()
        assert [item.year for item in years] == [2024]
        assert years[0].metrics.total_earned_cents == 200_000


def test_category_stats_for_user_and_period():
    with _session() as session:
        _group, ada, _payroll, _savings = _ledger(session)
        metrics = MetricsService(session, ada.id)

        stats = metrics.category_stats()
        assert [(s.name, s.total_cents) for s in stats.income] == [("Salary", 200_000)]
        assert [(s.name, s.total_cents) for s in stats.expense] == [("Food", 80_000)]
        assert stats.expense[0].color == "#6B7280"

        february = metrics.category_stats(
            resolve_period("custom", "2024-02-01", "2024-02-29")
        )
        assert february.income == []
        assert [s.total_cents for s in february.expense] == [30_000]

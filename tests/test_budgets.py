from datetime import date

import pytest
from pydantic import ValidationError
from sqlalchemy import create_engine
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session

from database import Base
from models import AccountType, BudgetType, TransactionType
from schemas import AccountIn, BudgetIn, CategoryIn, GroupIn, TransactionIn, UserIn
from services import (
    AccountService,
    BudgetPeriodService,
    BudgetService,
    CategoryService,
    GroupService,
    NotFoundError,
    TransactionService,
    UserService,
)


def _session() -> Session:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    return Session(engine)


def _member(session: Session, group_id: int, name: str):
    user = UserService(session).create(UserIn(group_id=group_id, name=name))
    account = AccountService(session, group_id).create(
        AccountIn(name=f"{name} main", type=AccountType.payroll, user_ids=[user.id])
    )
    return user, account


def _post(session, user_id, account_id, type_, amount, category, day):
    TransactionService(session, user_id).create(
        TransactionIn(
            account_id=account_id,
            type=type_,
            amount_cents=amount,
            category=category,
            description=category,
            date=day,
        )
    )


def _groceries(amount: int = 50_000) -> BudgetIn:
    return BudgetIn(
        description="Groceries",
        amount_cents=amount,
        type=BudgetType.monthly,
        categories=["food", "food ", "drinks"],
    )


def _setup(session: Session):
    group = GroupService(session).create(GroupIn(name="Home"))
    categories = CategoryService(session, group.id)
    for key in ("food", "drinks", "salary"):
        categories.create(CategoryIn(key=key, label=key.title()))
    ada, account = _member(session, group.id, "Ada")
    return group, ada, account


def test_budget_categories_are_deduplicated():
    assert _groceries().categories == ["food", "drinks"]
    with pytest.raises(ValidationError):
        BudgetIn(description="x", amount_cents=100, type=BudgetType.monthly, categories=["a"])
    with pytest.raises(ValidationError):
        BudgetIn(description="Food", amount_cents=0, type=BudgetType.monthly, categories=["a"])


def test_user_summary_nets_refunds_inside_active_period():
    with _session() as session:
        _group, ada, account = _setup(session)
        budgets = BudgetService(session, ada.id)
        budgets.create(_groceries())
        BudgetPeriodService(session, ada.id).create(date(2024, 3, 1))

        _post(session, ada.id, account.id, TransactionType.expense, 12_000, "food", date(2024, 3, 3))
        _post(session, ada.id, account.id, TransactionType.income, 2_000, "food", date(2024, 3, 4))
        _post(session, ada.id, account.id, TransactionType.expense, 7_000, "food", date(2024, 2, 20))
        _post(session, ada.id, account.id, TransactionType.income, 90_000, "salary", date(2024, 3, 1))

        summary = budgets.user_summary(today=date(2024, 3, 15))
        assert summary.period_start == date(2024, 3, 1)
        assert summary.period_end is None
        assert summary.total_budget_cents == 50_000
        assert summary.total_spent_cents == 10_000
        assert summary.total_remaining_cents == 40_000
        assert summary.overall_percentage == pytest.approx(20.0)
        assert summary.budgets[0].transaction_count == 2

        aggregated = budgets.user_summary_aggregated(today=date(2024, 3, 15))
        assert aggregated.total_spent_cents == summary.total_spent_cents
        assert aggregated.budgets[0].remaining_cents == 40_000


def test_user_summary_without_active_period_spends_nothing():
    with _session() as session:
        _group, ada, account = _setup(session)
        budgets = BudgetService(session, ada.id)
        budgets.create(_groceries())
        _post(session, ada.id, account.id, TransactionType.expense, 5_000, "food", date(2024, 3, 3))

        summary = budgets.user_summary(today=date(2024, 3, 15))
        assert summary.active_period_id is None
        assert summary.total_spent_cents == 0
        assert summary.budgets[0].remaining_cents == 50_000
        assert budgets.user_summary_aggregated(today=date(2024, 3, 15)).total_spent_cents == 0


def test_budget_crud_is_owner_scoped():
    with _session() as session:
        group, ada, _account = _setup(session)
        bob, _ = _member(session, group.id, "Bob")
        budget = BudgetService(session, ada.id).create(_groceries())

        updated = BudgetService(session, ada.id).update(budget.id, _groceries(60_000))
        assert updated.amount_cents == 60_000
        with pytest.raises(NotFoundError):
            BudgetService(session, bob.id).get(budget.id)
        with pytest.raises(NotFoundError):
            BudgetService(session, bob.id).delete(budget.id)

        BudgetService(session, ada.id).delete(budget.id)
        assert BudgetService(session, ada.id).list_all() == []


def test_budgets_by_user_covers_every_member():
    with _session() as session:
        group, ada, ada_account = _setup(session)
        bob, bob_account = _member(session, group.id, "Bob")
        BudgetService(session, ada.id).create(_groceries())
        BudgetService(session, bob.id).create(_groceries(20_000))
        BudgetPeriodService(session, ada.id).create(date(2024, 3, 1))

        _post(session, ada.id, ada_account.id, TransactionType.expense, 3_000, "drinks", date(2024, 3, 2))
        _post(session, bob.id, bob_account.id, TransactionType.expense, 4_000, "food", date(2024, 3, 2))

        result = BudgetService.budgets_by_user(session, group.id, today=date(2024, 3, 10))
        assert set(result) == {ada.id, bob.id}
        assert result[ada.id].total_spent_cents == 3_000
        assert result[bob.id].total_spent_cents == 0
        assert result[bob.id].total_budget_cents == 20_000


def test_budgets_by_user_degrades_per_member(monkeypatch):
    with _session() as session:
        group, ada, ada_account = _setup(session)
        bob, _ = _member(session, group.id, "Bob")
        BudgetService(session, ada.id).create(_groceries())
        BudgetService(session, bob.id).create(_groceries(20_000))
        BudgetPeriodService(session, ada.id).create(date(2024, 3, 1))
        _post(session, ada.id, ada_account.id, TransactionType.expense, 3_000, "food", date(2024, 3, 2))

        original = TransactionService.in_window

        def _flaky(self, window):
            if self.user_id == bob.id:
                raise OperationalError("SELECT", {}, Exception("disk I/O error"))
            return original(self, window)

        monkeypatch.setattr(TransactionService, "in_window", _flaky)
        result = BudgetService.budgets_by_user(session, group.id, today=date(2024, 3, 10))

        assert result[ada.id].total_spent_cents == 3_000
        assert result[bob.id].budgets == []
        assert result[bob.id].total_spent_cents == 0


def test_budgets_by_user_for_unknown_group():
    with _session() as session:
        with pytest.raises(NotFoundError):
            BudgetService.budgets_by_user(session, 99)

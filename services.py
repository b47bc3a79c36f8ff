from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, timedelta
from typing import Optional

from rapidfuzz.distance import Levenshtein
from sqlalchemy import case, func, or_, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, selectinload

import finance_logic
from market_data import MarketDataService, normalize_symbol
from models import (
    Account,
    Budget,
    BudgetPeriod,
    Category,
    Group,
    Investment,
    RecurringSeries,
    Transaction,
    TransactionType,
    User,
    account_users,
)
from periods import Period, budget_window
from recurrence import (
    RecurringEngine,
    calculate_next_execution_date,
    days_until_due,
    local_today,
)
from schemas import (
    AccountIn,
    BudgetIn,
    CategoryIn,
    GroupIn,
    InvestmentIn,
    RecurringSeriesIn,
    TransactionIn,
    UserIn,
)


logger = logging.getLogger(__name__)


class NotFoundError(ValueError):
    pass


class InvalidInputError(ValueError):
    pass


class CategoryAmbiguous(ValueError):
    pass


def _require_user(session: Session, user_id: int) -> User:
    user = session.get(User, user_id)
    if not user:
        raise NotFoundError("User not found")
    return user


def _group_account(session: Session, group_id: int, account_id: int) -> Account:
    account = session.get(Account, account_id)
    if not account or account.group_id != group_id:
        raise NotFoundError("Account not found")
    return account


class GroupService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def create(self, data: GroupIn) -> Group:
        group = Group(name=data.name.strip())
        self.session.add(group)
        self.session.commit()
        self.session.refresh(group)
        return group

    def get(self, group_id: int) -> Group:
        group = self.session.get(Group, group_id)
        if not group:
            raise NotFoundError("Group not found")
        return group

    def users(self, group_id: int) -> list[User]:
        self.get(group_id)
        stmt = select(User).where(User.group_id == group_id).order_by(User.name, User.id)
        return self.session.scalars(stmt).all()


class UserService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def create(self, data: UserIn) -> User:
        GroupService(self.session).get(data.group_id)
        user = User(
            group_id=data.group_id,
            name=data.name.strip(),
            email=(data.email or "").strip() or None,
        )
        self.session.add(user)
        self.session.commit()
        self.session.refresh(user)
        return user

    def get(self, user_id: int) -> User:
        return _require_user(self.session, user_id)

    def set_default_account(self, user_id: int, account_id: int) -> User:
        user = self.get(user_id)
        account = _group_account(self.session, user.group_id, account_id)
        user.default_account_id = account.id
        self.session.commit()
        self.session.refresh(user)
        return user


class AccountService:
    def __init__(self, session: Session, group_id: int) -> None:
        self.session = session
        self.group_id = group_id

    def list_all(self) -> list[Account]:
        stmt = (
            select(Account)
            .options(selectinload(Account.users))
            .where(Account.group_id == self.group_id)
            .order_by(Account.name, Account.id)
        )
        return self.session.scalars(stmt).all()

    def list_for_user(self, user_id: int) -> list[Account]:
        stmt = (
            select(Account)
            .join(account_users, account_users.c.account_id == Account.id)
            .options(selectinload(Account.users))
            .where(
                Account.group_id == self.group_id,
                account_users.c.user_id == user_id,
            )
            .order_by(Account.name, Account.id)
        )
        return self.session.scalars(stmt).all()

    def get(self, account_id: int) -> Account:
        return _group_account(self.session, self.group_id, account_id)

    def _members(self, user_ids: list[int]) -> list[User]:
        wanted = set(user_ids)
        users = self.session.scalars(
            select(User).where(User.id.in_(wanted), User.group_id == self.group_id)
        ).all()
        if len(users) != len(wanted):
            raise NotFoundError("User not found")
        return list(users)

    def create(self, data: AccountIn) -> Account:
        name = data.name.strip()
        if not name:
            raise InvalidInputError("Account name is required")
        account = Account(
            group_id=self.group_id,
            name=name,
            type=data.type,
            balance_cents=data.balance_cents,
            opening_balance_cents=data.balance_cents,
        )
        account.users = self._members(data.user_ids)
        self.session.add(account)
        self.session.commit()
        self.session.refresh(account)
        return account

    def update(self, account_id: int, data: AccountIn) -> Account:
        account = self.get(account_id)
        name = data.name.strip()
        if not name:
            raise InvalidInputError("Account name is required")
        account.name = name
        account.type = data.type
        account.users = self._members(data.user_ids)
        self.session.commit()
        self.session.refresh(account)
        return account

    def delete(self, account_id: int) -> None:
        account = self.get(account_id)
        in_use = self.session.scalar(
            select(func.count(Transaction.id)).where(
                or_(
                    Transaction.account_id == account.id,
                    Transaction.to_account_id == account.id,
                )
            )
        )
        if in_use:
            raise InvalidInputError("Account has transactions and cannot be deleted")
        self.session.execute(
            update(User)
            .where(User.default_account_id == account.id)
            .values(default_account_id=None)
        )
        self.session.delete(account)
        self.session.commit()

    def recompute_balance(self, account_id: int) -> Account:
        account = self.get(account_id)
        transactions = self.session.scalars(
            select(Transaction).where(
                or_(
                    Transaction.account_id == account.id,
                    Transaction.to_account_id == account.id,
                )
            )
        ).all()
        account.balance_cents = account.opening_balance_cents + (
            finance_logic.calculate_account_balance(account.id, transactions)
        )
        self.session.commit()
        self.session.refresh(account)
        return account


class CategoryService:
    def __init__(self, session: Session, group_id: int) -> None:
        self.session = session
        self.group_id = group_id

    def list_all(self) -> list[Category]:
        stmt = (
            select(Category)
            .where(Category.group_id == self.group_id)
            .order_by(Category.label, Category.id)
        )
        return self.session.scalars(stmt).all()

    def get(self, category_id: int) -> Category:
        category = self.session.get(Category, category_id)
        if not category or category.group_id != self.group_id:
            raise NotFoundError("Category not found")
        return category

    def _in_use(self, key: str) -> bool:
        """Whether transactions, recurring series or budgets refer to ``key``."""
        for column, group_column in (
            (Transaction.category, Transaction.group_id),
            (RecurringSeries.category, RecurringSeries.group_id),
        ):
            count = self.session.scalar(
                select(func.count()).where(group_column == self.group_id, column == key)
            )
            if count:
                return True
        # Budget categories are a JSON list, so membership is checked here.
        budget_categories = self.session.scalars(
            select(Budget.categories).where(Budget.group_id == self.group_id)
        )
        return any(key in (categories or []) for categories in budget_categories)

    def _check(self, data: CategoryIn, *, exclude_id: Optional[int] = None) -> str:
        key = data.key.strip()
        if not key or not data.label.strip():
            raise InvalidInputError("Category key and label are required")
        if not finance_logic.is_valid_color(data.color):
            raise InvalidInputError("Color must be a hex code like #RRGGBB")
        stmt = select(Category).where(
            Category.group_id == self.group_id, Category.key == key
        )
        if exclude_id is not None:
            stmt = stmt.where(Category.id != exclude_id)
        if self.session.scalar(stmt):
            raise InvalidInputError("Category with this key already exists")
        return key

    def create(self, data: CategoryIn) -> Category:
        key = self._check(data)
        category = Category(
            group_id=self.group_id,
            key=key,
            label=data.label.strip(),
            color=data.color,
            icon=data.icon,
        )
        self.session.add(category)
        self.session.commit()
        self.session.refresh(category)
        return category

    def update(self, category_id: int, data: CategoryIn) -> Category:
        category = self.get(category_id)
        key = self._check(data, exclude_id=category.id)
        if key != category.key and self._in_use(category.key):
            raise InvalidInputError("Category key is in use and cannot change")
        category.key = key
        category.label = data.label.strip()
        category.color = data.color
        category.icon = data.icon
        self.session.commit()
        self.session.refresh(category)
        return category

    def delete(self, category_id: int) -> None:
        category = self.get(category_id)
        if self._in_use(category.key):
            raise InvalidInputError("Category is in use and cannot be deleted")
        self.session.delete(category)
        self.session.commit()

    def resolve(self, identifier: str) -> Category:
        raw = (identifier or "").strip()
        if not raw:
            raise InvalidInputError("Category is required")
        categories = self.list_all()
        exact = finance_logic.find_category(categories, raw)
        if exact:
            return exact

        wanted = raw.lower()
        best_distance: Optional[int] = None
        best: list[Category] = []
        for category in categories:
            dist = min(
                int(Levenshtein.distance(wanted, category.key.lower())),
                int(Levenshtein.distance(wanted, category.label.strip().lower())),
            )
            if best_distance is None or dist < best_distance:
                best_distance = dist
                best = [category]
            elif dist == best_distance:
                best.append(category)

        if best_distance is None or best_distance > 1:
            raise NotFoundError(f"Category '{raw}' not found")
        if len(best) > 1:
            options = ", ".join(sorted(c.key for c in best))
            raise CategoryAmbiguous(f"Category '{raw}' is ambiguous; matches: {options}")
        return best[0]


@dataclass
class TransactionFilters:
    start: Optional[date] = None
    end: Optional[date] = None
    type: Optional[TransactionType] = None
    category: Optional[str] = None
    account_id: Optional[int] = None


@dataclass(frozen=True)
class TransactionPage:
    items: list[Transaction]
    has_more: bool


class TransactionService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user = _require_user(session, user_id)
        self.user_id = self.user.id

    def _validate(self, data: TransactionIn) -> str:
        account = _group_account(self.session, self.user.group_id, data.account_id)
        if self.user_id not in account.user_ids:
            raise NotFoundError("Account not found")
        if data.to_account_id is not None:
            _group_account(self.session, self.user.group_id, data.to_account_id)
        return CategoryService(self.session, self.user.group_id).resolve(data.category).key

    def _apply_balance(self, txn: Transaction, sign: int) -> None:
        amount = sign * txn.amount_cents
        account = self.session.get(Account, txn.account_id)
        if txn.type == TransactionType.income:
            account.balance_cents += amount
        elif txn.type == TransactionType.expense:
            account.balance_cents -= amount
        else:
            account.balance_cents -= amount
            target = self.session.get(Account, txn.to_account_id)
            target.balance_cents += amount

    def create(
        self,
        data: TransactionIn,
        *,
        recurring_series_id: Optional[int] = None,
        commit: bool = True,
    ) -> Transaction:
        category_key = self._validate(data)
        txn = Transaction(
            group_id=self.user.group_id,
            user_id=self.user_id,
            account_id=data.account_id,
            to_account_id=data.to_account_id,
            type=data.type,
            amount_cents=data.amount_cents,
            category=category_key,
            description=data.description,
            date=data.date,
            recurring_series_id=recurring_series_id,
        )
        self.session.add(txn)
        self._apply_balance(txn, 1)
        self.session.flush()
        if commit:
            self.session.commit()
            self.session.refresh(txn)
        return txn

    def get(self, transaction_id: int) -> Transaction:
        txn = self.session.scalar(
            select(Transaction).where(
                Transaction.user_id == self.user_id, Transaction.id == transaction_id
            )
        )
        if not txn:
            raise NotFoundError("Transaction not found")
        return txn

    def list(
        self,
        filters: Optional[TransactionFilters] = None,
        *,
        limit: int = 50,
        offset: int = 0,
    ) -> TransactionPage:
        filters = filters or TransactionFilters()
        stmt = select(Transaction).where(Transaction.user_id == self.user_id)
        if filters.start:
            stmt = stmt.where(Transaction.date >= filters.start)
        if filters.end:
            stmt = stmt.where(Transaction.date <= filters.end)
        if filters.type:
            stmt = stmt.where(Transaction.type == filters.type)
        if filters.category:
            stmt = stmt.where(Transaction.category == filters.category)
        if filters.account_id:
            stmt = stmt.where(
                or_(
                    Transaction.account_id == filters.account_id,
                    Transaction.to_account_id == filters.account_id,
                )
            )
        stmt = (
            stmt.order_by(Transaction.date.desc(), Transaction.id.desc())
            .offset(max(offset, 0))
            .limit(max(limit, 1) + 1)
        )
        rows = self.session.scalars(stmt).all()
        return TransactionPage(items=list(rows[:limit]), has_more=len(rows) > limit)

    def in_window(self, window: Optional[Period]) -> list[Transaction]:
        if window is None:
            return []
        return self.session.scalars(
            select(Transaction)
            .where(
                Transaction.user_id == self.user_id,
                Transaction.date.between(window.start, window.end),
            )
            .order_by(Transaction.date, Transaction.id)
        ).all()

    def update(self, transaction_id: int, data: TransactionIn) -> Transaction:
        txn = self.get(transaction_id)
        category_key = self._validate(data)
        self._apply_balance(txn, -1)
        txn.account_id = data.account_id
        txn.to_account_id = data.to_account_id
        txn.type = data.type
        txn.amount_cents = data.amount_cents
        txn.category = category_key
        txn.description = data.description
        txn.date = data.date
        self._apply_balance(txn, 1)
        self.session.commit()
        self.session.refresh(txn)
        return txn

    def delete(self, transaction_id: int) -> None:
        txn = self.get(transaction_id)
        self._apply_balance(txn, -1)
        self.session.delete(txn)
        self.session.commit()


class BudgetPeriodService:
    """Open/closed budget periods of one user.

    At most one period is open (``is_active`` with no end date). Closing a
    period opens its successor on the following day in the same transaction.
    """

    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user = _require_user(session, user_id)
        self.user_id = self.user.id

    def list_for_user(self) -> list[BudgetPeriod]:
        stmt = (
            select(BudgetPeriod)
            .where(BudgetPeriod.user_id == self.user_id)
            .order_by(BudgetPeriod.start_date.desc(), BudgetPeriod.id.desc())
        )
        return self.session.scalars(stmt).all()

    def get(self, period_id: int) -> BudgetPeriod:
        period = self.session.get(BudgetPeriod, period_id)
        if not period or period.user_id != self.user_id:
            raise NotFoundError("Budget period not found")
        return period

    def active_period(self) -> Optional[BudgetPeriod]:
        return self.session.scalar(
            select(BudgetPeriod).where(
                BudgetPeriod.user_id == self.user_id,
                BudgetPeriod.is_active.is_(True),
            )
        )

    @staticmethod
    def active_periods_for_users(
        session: Session, user_ids: list[int]
    ) -> dict[int, BudgetPeriod]:
        if not user_ids:
            return {}
        periods = session.scalars(
            select(BudgetPeriod).where(
                BudgetPeriod.user_id.in_(user_ids),
                BudgetPeriod.is_active.is_(True),
            )
        ).all()
        return {period.user_id: period for period in periods}

    def _open(self, start_date: date) -> BudgetPeriod:
        active = self.session.scalars(
            select(BudgetPeriod).where(
                BudgetPeriod.user_id == self.user_id,
                BudgetPeriod.is_active.is_(True),
            )
        ).all()
        for period in active:
            if period.end_date is None and start_date <= period.start_date:
                raise InvalidInputError(
                    "New period must start after the open period's start date"
                )
        last_end = self.session.scalar(
            select(func.max(BudgetPeriod.end_date)).where(
                BudgetPeriod.user_id == self.user_id,
                BudgetPeriod.is_active.is_(False),
            )
        )
        if last_end is not None and start_date <= last_end:
            raise InvalidInputError(
                f"New period must start after the last closed period ended on {last_end}"
            )
        for period in active:
            if period.end_date is None:
                period.end_date = start_date - timedelta(days=1)
            period.is_active = False
        # The partial unique index sees the old row as inactive before the insert.
        self.session.flush()

        period = BudgetPeriod(
            user_id=self.user_id, start_date=start_date, end_date=None, is_active=True
        )
        self.session.add(period)
        self.session.flush()
        return period

    def create(self, start_date: date) -> BudgetPeriod:
        if not isinstance(start_date, date):
            raise InvalidInputError("Start date is required")
        try:
            period = self._open(start_date)
            self.session.commit()
        except IntegrityError as exc:
            self.session.rollback()
            raise InvalidInputError("Another budget period is already open") from exc
        except InvalidInputError:
            self.session.rollback()
            raise
        self.session.refresh(period)
        logger.info(
            f"budget_period_created: user_id={self.user_id} start={start_date}"
        )
        return period

    def close(self, period_id: int, end_date: date) -> tuple[BudgetPeriod, BudgetPeriod]:
        """Close a period and open its successor; returns ``(closed, successor)``.

        Either both writes land or neither does.
        """
        period = self.get(period_id)
        if not isinstance(end_date, date):
            raise InvalidInputError("End date is required")
        if end_date < period.start_date:
            raise InvalidInputError("End date must be on or after the start date")
        if not period.is_active:
            raise InvalidInputError("Budget period is already closed")

        try:
            period.end_date = end_date
            period.is_active = False
            self.session.flush()
            successor = self._open(end_date + timedelta(days=1))
            self.session.commit()
        except (SQLAlchemyError, ValueError):
            self.session.rollback()
            logger.exception(
                f"budget_period_close_failed: user_id={self.user_id} "
                f"period_id={period_id} end={end_date}"
            )
            raise
        self.session.refresh(period)
        self.session.refresh(successor)
        logger.info(
            f"budget_period_closed: user_id={self.user_id} period_id={period_id} "
            f"end={end_date} successor_id={successor.id}"
        )
        return period, successor

    def delete(self, period_id: int) -> None:
        period = self.get(period_id)
        self.session.delete(period)
        self.session.commit()

    def period_totals(
        self, period_id: int, *, today: Optional[date] = None
    ) -> finance_logic.PeriodTotals:
        today = today or local_today()
        period = self.get(period_id)
        window = budget_window(period.start_date, period.end_date, today=today)
        transactions = TransactionService(self.session, self.user_id).in_window(window)
        budgets = BudgetService(self.session, self.user_id).list_all()
        return finance_logic.calculate_period_totals(
            transactions, period, budgets, today=today
        )


class BudgetService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user = _require_user(session, user_id)
        self.user_id = self.user.id

    def list_all(self) -> list[Budget]:
        stmt = (
            select(Budget)
            .where(Budget.user_id == self.user_id)
            .order_by(Budget.description, Budget.id)
        )
        return self.session.scalars(stmt).all()

    def get(self, budget_id: int) -> Budget:
        budget = self.session.get(Budget, budget_id)
        if not budget or budget.user_id != self.user_id:
            raise NotFoundError("Budget not found")
        return budget

    def create(self, data: BudgetIn) -> Budget:
        budget = Budget(
            group_id=self.user.group_id,
            user_id=self.user_id,
            description=data.description.strip(),
            amount_cents=data.amount_cents,
            type=data.type,
            categories=list(data.categories),
        )
        self.session.add(budget)
        self.session.commit()
        self.session.refresh(budget)
        return budget

    def update(self, budget_id: int, data: BudgetIn) -> Budget:
        budget = self.get(budget_id)
        budget.description = data.description.strip()
        budget.amount_cents = data.amount_cents
        budget.type = data.type
        budget.categories = list(data.categories)
        self.session.commit()
        self.session.refresh(budget)
        return budget

    def delete(self, budget_id: int) -> None:
        budget = self.get(budget_id)
        self.session.delete(budget)
        self.session.commit()

    def period_window(self, today: Optional[date] = None) -> Optional[Period]:
        active = BudgetPeriodService(self.session, self.user_id).active_period()
        if active is None:
            return None
        return budget_window(
            active.start_date, active.end_date, today=today or local_today()
        )

    def user_summary(
        self, today: Optional[date] = None
    ) -> finance_logic.UserBudgetSummary:
        today = today or local_today()
        active = BudgetPeriodService(self.session, self.user_id).active_period()
        window = self.period_window(today)
        transactions = TransactionService(self.session, self.user_id).in_window(window)
        return finance_logic.calculate_user_budget_summary(
            self.user, self.list_all(), transactions, active, today=today
        )

    def user_summary_aggregated(
        self, today: Optional[date] = None
    ) -> finance_logic.UserBudgetSummary:
        active = BudgetPeriodService(self.session, self.user_id).active_period()
        window = self.period_window(today)
        rows: list[dict] = []
        if window is not None:
            spent = func.sum(
                case(
                    (
                        Transaction.type.in_(
                            [TransactionType.expense, TransactionType.transfer]
                        ),
                        Transaction.amount_cents,
                    ),
                    else_=0,
                )
            )
            income = func.sum(
                case(
                    (Transaction.type == TransactionType.income, Transaction.amount_cents),
                    else_=0,
                )
            )
            stmt = (
                select(
                    Transaction.category,
                    spent.label("spent"),
                    income.label("income"),
                )
                .where(
                    Transaction.user_id == self.user_id,
                    Transaction.date.between(window.start, window.end),
                )
                .group_by(Transaction.category)
            )
            rows = [dict(row._mapping) for row in self.session.execute(stmt)]
        return finance_logic.calculate_user_budget_summary_from_aggregation(
            self.user, self.list_all(), rows, active
        )

    @classmethod
    def budgets_by_user(
        cls, session: Session, group_id: int, *, today: Optional[date] = None
    ) -> dict[int, finance_logic.UserBudgetSummary]:
        """Budget summaries for every member of a group. A member whose data
        cannot be loaded gets an empty summary instead of failing the group."""
        today = today or local_today()
        users = GroupService(session).users(group_id)
        active = BudgetPeriodService.active_periods_for_users(
            session, [user.id for user in users]
        )
        budgets: list[Budget] = []
        transactions: list[Transaction] = []
        periods: dict[int, BudgetPeriod] = {}
        for user in users:
            try:
                service = cls(session, user.id)
                period = active.get(user.id)
                window = (
                    budget_window(period.start_date, period.end_date, today=today)
                    if period
                    else None
                )
                user_budgets = service.list_all()
                user_transactions = TransactionService(session, user.id).in_window(
                    window
                )
            except (SQLAlchemyError, ValueError):
                logger.exception(
                    f"budgets_by_user_degraded: group_id={group_id} user_id={user.id}"
                )
                continue
            budgets.extend(user_budgets)
            transactions.extend(user_transactions)
            if period is not None:
                periods[user.id] = period
        return finance_logic.build_budgets_by_user(
            users, budgets, transactions, periods, today=today
        )


class ReportPeriodService:
    def __init__(self, session: Session, group_id: int) -> None:
        self.session = session
        self.group_id = group_id

    def _load(self):
        users = GroupService(self.session).users(self.group_id)
        user_ids = [user.id for user in users]
        periods = (
            self.session.scalars(
                select(BudgetPeriod).where(BudgetPeriod.user_id.in_(user_ids))
            ).all()
            if user_ids
            else []
        )
        transactions = self.session.scalars(
            select(Transaction)
            .where(Transaction.group_id == self.group_id)
            .order_by(Transaction.date.desc(), Transaction.id.desc())
        ).all()
        accounts = AccountService(self.session, self.group_id).list_all()
        return users, periods, transactions, accounts

    def enriched_periods(
        self, today: Optional[date] = None
    ) -> list[finance_logic.EnrichedBudgetPeriod]:
        users, periods, transactions, accounts = self._load()
        return finance_logic.enrich_budget_periods(
            periods, users, transactions, accounts, today=today or local_today()
        )

    def period_summaries(
        self, today: Optional[date] = None
    ) -> list[finance_logic.PeriodSummary]:
        _users, periods, transactions, accounts = self._load()
        return finance_logic.calculate_period_summaries(
            periods, transactions, accounts, today=today or local_today()
        )

    def account_type_summary(self) -> list[finance_logic.AccountTypeSummary]:
        _users, _periods, transactions, accounts = self._load()
        return finance_logic.calculate_account_type_summary(transactions, accounts)


class RecurringSeriesService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user = _require_user(session, user_id)
        self.user_id = self.user.id

    def list_all(self) -> list[RecurringSeries]:
        stmt = (
            select(RecurringSeries)
            .where(RecurringSeries.user_id == self.user_id)
            .order_by(RecurringSeries.start_date, RecurringSeries.id)
        )
        return self.session.scalars(stmt).all()

    def get(self, series_id: int) -> RecurringSeries:
        series = self.session.get(RecurringSeries, series_id)
        if not series or series.user_id != self.user_id:
            raise NotFoundError("Recurring series not found")
        return series

    def _category_key(self, data: RecurringSeriesIn) -> str:
        account = _group_account(self.session, self.user.group_id, data.account_id)
        if self.user_id not in account.user_ids:
            raise NotFoundError("Account not found")
        if data.to_account_id is not None:
            _group_account(self.session, self.user.group_id, data.to_account_id)
        return CategoryService(self.session, self.user.group_id).resolve(data.category).key

    def create(self, data: RecurringSeriesIn) -> RecurringSeries:
        series = RecurringSeries(
            group_id=self.user.group_id,
            user_id=self.user_id,
            category=self._category_key(data),
            **data.model_dump(exclude={"category"}),
        )
        self.session.add(series)
        self.session.commit()
        self.session.refresh(series)
        return series

    def update(self, series_id: int, data: RecurringSeriesIn) -> RecurringSeries:
        series = self.get(series_id)
        category_key = self._category_key(data)
        for field, value in data.model_dump(exclude={"category"}).items():
            setattr(series, field, value)
        series.category = category_key
        self.session.commit()
        self.session.refresh(series)
        return series

    def toggle(self, series_id: int, is_active: bool) -> RecurringSeries:
        series = self.get(series_id)
        series.is_active = is_active
        self.session.commit()
        return series

    def delete(self, series_id: int) -> None:
        series = self.get(series_id)
        # Posted transactions stay in the ledger.
        self.session.execute(
            update(Transaction)
            .where(Transaction.recurring_series_id == series.id)
            .values(recurring_series_id=None)
        )
        self.session.delete(series)
        self.session.commit()

    def statistics(self, today: Optional[date] = None) -> dict[str, object]:
        today = today or local_today()
        series = self.list_all()
        totals = finance_logic.calculate_recurring_totals(series)
        upcoming = [
            {
                "series_id": item.id,
                "description": item.description,
                "next_execution_date": calculate_next_execution_date(item, today),
                "days_until_due": days_until_due(item, today),
            }
            for item in series
            if item.is_active
        ]
        upcoming.sort(key=lambda row: row["next_execution_date"])
        return {
            "monthly_income_cents": totals.monthly_income_cents,
            "monthly_expenses_cents": totals.monthly_expenses_cents,
            "monthly_net_cents": totals.monthly_net_cents,
            "active_count": len(upcoming),
            "total_count": len(series),
            "upcoming": upcoming,
        }

    def execute_due(self, today: Optional[date] = None) -> int:
        return RecurringEngine(self.session).execute_due(today, user_id=self.user_id)


class InvestmentService:
    def __init__(
        self,
        session: Session,
        user_id: int,
        market_data: Optional[MarketDataService] = None,
    ) -> None:
        self.session = session
        self.user = _require_user(session, user_id)
        self.user_id = self.user.id
        self.market_data = market_data or MarketDataService()

    def list_all(self) -> list[Investment]:
        stmt = (
            select(Investment)
            .where(Investment.user_id == self.user_id)
            .order_by(Investment.purchased_on.desc(), Investment.id.desc())
        )
        return self.session.scalars(stmt).all()

    def add(self, data: InvestmentIn) -> Investment:
        try:
            symbol = normalize_symbol(data.symbol)
        except ValueError as exc:
            raise InvalidInputError(str(exc)) from exc
        investment = Investment(
            group_id=self.user.group_id,
            user_id=self.user_id,
            symbol=symbol,
            amount_cents=data.amount_cents,
            shares_acquired=data.shares_acquired,
            purchased_on=data.purchased_on,
        )
        self.session.add(investment)
        self.session.commit()
        self.session.refresh(investment)
        return investment

    def delete(self, investment_id: int) -> None:
        investment = self.session.get(Investment, investment_id)
        if not investment or investment.user_id != self.user_id:
            raise NotFoundError("Investment not found")
        self.session.delete(investment)
        self.session.commit()

    def portfolio(self) -> finance_logic.Portfolio:
        investments = self.list_all()
        prices = self.market_data.latest_closes(inv.symbol for inv in investments)
        return finance_logic.calculate_portfolio(investments, prices)

    def history(
        self, today: Optional[date] = None
    ) -> list[finance_logic.PortfolioValuePoint]:
        investments = self.list_all()
        if not investments:
            return []
        today = today or local_today()
        first = min(inv.purchased_on for inv in investments)
        days = (today - first).days + 1
        if days <= 0:
            return []
        closes = self.market_data.close_histories(
            (inv.symbol for inv in investments), days
        )
        return finance_logic.calculate_historical_portfolio(investments, closes, today)

    @staticmethod
    def forecast(
        amount_cents: int,
        years: int = 10,
        rate: float = 0.07,
        start_year: Optional[int] = None,
    ) -> list[finance_logic.ForecastPoint]:
        if amount_cents <= 0:
            raise InvalidInputError("Amount must be positive")
        if years < 0 or years > 100:
            raise InvalidInputError("Years must be between 0 and 100")
        if start_year is None:
            start_year = local_today().year
        return finance_logic.calculate_forecast(amount_cents, years, rate, start_year)


class MetricsService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user = _require_user(session, user_id)
        self.user_id = self.user.id

    def _account_ids(self) -> list[int]:
        accounts = AccountService(self.session, self.user.group_id).list_for_user(
            self.user_id
        )
        return [account.id for account in accounts]

    def _touching_accounts(
        self, account_ids: list[int], period: Optional[Period]
    ) -> list[Transaction]:
        if not account_ids:
            return []
        stmt = select(Transaction).where(
            or_(
                Transaction.account_id.in_(account_ids),
                Transaction.to_account_id.in_(account_ids),
            )
        )
        if period is not None:
            stmt = stmt.where(Transaction.date.between(period.start, period.end))
        return self.session.scalars(stmt).all()

    def _own(self, period: Optional[Period]) -> list[Transaction]:
        stmt = select(Transaction).where(Transaction.user_id == self.user_id)
        if period is not None:
            stmt = stmt.where(Transaction.date.between(period.start, period.end))
        return self.session.scalars(stmt).all()

    def overview(self, period: Optional[Period] = None) -> finance_logic.OverviewMetrics:
        account_ids = self._account_ids()
        return finance_logic.calculate_overview_metrics(
            self._touching_accounts(account_ids, period), account_ids
        )

    def category_breakdown(
        self, period: Optional[Period] = None
    ) -> list[finance_logic.CategoryBreakdownItem]:
        return finance_logic.calculate_category_breakdown(self._own(period))

    def annual_category_spending(
        self, year: object = None
    ) -> list[finance_logic.CategoryBreakdownItem]:
        if year is None:
            year = local_today().year
        return finance_logic.calculate_annual_category_spending(self._own(None), year)

    def category_stats(
        self, period: Optional[Period] = None
    ) -> finance_logic.CategoryStats:
        categories = CategoryService(self.session, self.user.group_id).list_all()
        return finance_logic.calculate_category_stats(self._own(period), categories)

    def annual_breakdown(self) -> list[finance_logic.AnnualBreakdownItem]:
        account_ids = self._account_ids()
        return finance_logic.calculate_annual_breakdown(
            self._touching_accounts(account_ids, None), account_ids
        )

    def total_balance(self) -> int:
        accounts = AccountService(self.session, self.user.group_id).list_for_user(
            self.user_id
        )
        return finance_logic.calculate_aggregated_balance(accounts)

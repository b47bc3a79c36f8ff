"""Pure aggregation over ledger rows.

Nothing here touches a session. Every function accepts plain objects exposing
the ORM attribute names (``type``, ``amount_cents``, ``category``, ``date``,
``user_id``, ``account_id``, ``to_account_id``), so callers can pass mapped
instances, detached rows or test doubles alike.
"""

from __future__ import annotations

import re
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import date, timedelta
from decimal import Decimal
from typing import Any, Iterable, Mapping, Optional, Sequence, Union

from models import RecurrenceFrequency, TransactionType


_HEX_COLOR = re.compile(r"^#(?:[0-9a-fA-F]{3}|[0-9a-fA-F]{6})$")
FALLBACK_CATEGORY_COLOR = "#cbd5e1"

MONTHLY_FACTORS: dict[RecurrenceFrequency, float] = {
    RecurrenceFrequency.weekly: 4.33,
    RecurrenceFrequency.biweekly: 2.17,
    RecurrenceFrequency.monthly: 1.0,
    RecurrenceFrequency.yearly: 1 / 12,
    RecurrenceFrequency.once: 1.0,
}


@dataclass(frozen=True)
class BudgetProgress:
    budget_id: Optional[int]
    description: str
    amount_cents: int
    spent_cents: int
    remaining_cents: int
    percentage: float
    categories: list[str]
    transaction_count: int


@dataclass(frozen=True)
class UserBudgetSummary:
    user_id: int
    user_name: str
    budgets: list[BudgetProgress]
    active_period_id: Optional[int]
    period_start: Optional[date]
    period_end: Optional[date]
    total_budget_cents: int
    total_spent_cents: int
    total_remaining_cents: int
    overall_percentage: float


@dataclass(frozen=True)
class CategoryBreakdownItem:
    category: str
    spent_cents: int
    received_cents: int
    net_cents: int
    percentage: float
    count: int


@dataclass
class CategoryStat:
    id: str
    name: str
    type: str
    total_cents: int
    color: str


@dataclass(frozen=True)
class CategoryStats:
    income: list[CategoryStat]
    expense: list[CategoryStat]


@dataclass(frozen=True)
class OverviewMetrics:
    total_earned_cents: int
    total_spent_cents: int
    total_transferred_cents: int
    total_balance_cents: int


@dataclass(frozen=True)
class AnnualBreakdownItem:
    year: int
    metrics: OverviewMetrics


@dataclass
class AccountTypeSummary:
    type: str
    total_earned_cents: int = 0
    total_spent_cents: int = 0
    total_balance_cents: int = 0


@dataclass
class AccountTypeMetrics:
    earned_cents: int = 0
    spent_cents: int = 0
    start_balance_cents: int = 0
    end_balance_cents: int = 0


@dataclass(frozen=True)
class PeriodSummary:
    period_id: Optional[int]
    user_id: int
    name: str
    start_date: date
    end_date: date
    start_balance_cents: int
    end_balance_cents: int
    total_earned_cents: int
    total_spent_cents: int
    metrics_by_account_type: dict[str, AccountTypeMetrics]


@dataclass
class EnrichedBudgetPeriod:
    period_id: Optional[int]
    user_id: int
    user_name: str
    start_date: date
    end_date: Optional[date]
    is_active: bool
    transactions: list[Any]
    total_spent_cents: int
    total_income_cents: int
    total_transfers_cents: int
    start_balance_cents: Optional[int] = None
    end_balance_cents: Optional[int] = None


@dataclass(frozen=True)
class PeriodTotals:
    total_budget_cents: int
    total_spent_cents: int
    total_saved_cents: int
    category_spending: dict[str, int] = field(default_factory=dict)


@dataclass(frozen=True)
class RecurringTotals:
    monthly_income_cents: int
    monthly_expenses_cents: int
    monthly_net_cents: int


@dataclass(frozen=True)
class ForecastPoint:
    year: int
    amount_cents: int


@dataclass(frozen=True)
class PortfolioPosition:
    investment_id: Optional[int]
    symbol: str
    shares: Decimal
    invested_cents: int
    current_price: Decimal
    current_value_cents: int


@dataclass(frozen=True)
class Portfolio:
    positions: list[PortfolioPosition]
    total_invested_cents: int
    total_current_value_cents: int
    total_return_cents: int
    total_return_percent: float


@dataclass(frozen=True)
class PortfolioValuePoint:
    date: date
    value_cents: int


def _percentage(part: int, whole: int) -> float:
    return (part / whole) * 100 if whole > 0 else 0.0


def _type_key(value: Any) -> str:
    return getattr(value, "value", value)


# --- filtering ---


def filter_transactions_by_period(
    transactions: Iterable[Any],
    start: Optional[date],
    end: Optional[date] = None,
    *,
    today: Optional[date] = None,
) -> list[Any]:
    if start is None:
        return []
    last = end or today or date.today()
    return [t for t in transactions if start <= t.date <= last]


def filter_by_categories(
    transactions: Iterable[Any], categories: Iterable[str]
) -> list[Any]:
    wanted = set(categories)
    return [t for t in transactions if t.category in wanted]


def filter_transactions_for_budget(
    transactions: Iterable[Any],
    budget: Any,
    period_start: Optional[date],
    period_end: Optional[date],
    *,
    today: Optional[date] = None,
) -> list[Any]:
    if period_start is None:
        return []
    in_period = filter_transactions_by_period(
        transactions, period_start, period_end, today=today
    )
    return filter_by_categories(in_period, budget.categories or [])


# --- budgets ---


def _net_spent(transactions: Iterable[Any]) -> int:
    total = 0
    for t in transactions:
        if t.type == TransactionType.income:
            total -= t.amount_cents
        else:
            total += t.amount_cents
    return max(0, total)


def _progress(budget: Any, spent: int, count: int) -> BudgetProgress:
    return BudgetProgress(
        budget_id=budget.id,
        description=budget.description,
        amount_cents=budget.amount_cents,
        spent_cents=spent,
        remaining_cents=budget.amount_cents - spent,
        percentage=_percentage(spent, budget.amount_cents),
        categories=list(budget.categories or []),
        transaction_count=count,
    )


def calculate_budget_progress(budget: Any, transactions: Sequence[Any]) -> BudgetProgress:
    """Income refills a budget, expenses and transfers consume it."""
    return _progress(budget, _net_spent(transactions), len(transactions))


def calculate_budgets_with_progress(
    budgets: Iterable[Any],
    transactions: Sequence[Any],
    period_start: Optional[date],
    period_end: Optional[date],
    *,
    today: Optional[date] = None,
) -> list[BudgetProgress]:
    progress = []
    for budget in budgets:
        if budget.amount_cents <= 0:
            continue
        matching = filter_transactions_for_budget(
            transactions, budget, period_start, period_end, today=today
        )
        progress.append(calculate_budget_progress(budget, matching))
    return progress


def _period_bounds(active_period: Any) -> tuple[Optional[date], Optional[date]]:
    if active_period is None:
        return None, None
    return active_period.start_date, active_period.end_date


def _summary(
    user: Any, progress: list[BudgetProgress], active_period: Any
) -> UserBudgetSummary:
    start, end = _period_bounds(active_period)
    total_budget = sum(p.amount_cents for p in progress)
    total_spent = sum(p.spent_cents for p in progress)
    return UserBudgetSummary(
        user_id=user.id,
        user_name=user.name,
        budgets=progress,
        active_period_id=getattr(active_period, "id", None),
        period_start=start,
        period_end=end,
        total_budget_cents=total_budget,
        total_spent_cents=total_spent,
        total_remaining_cents=total_budget - total_spent,
        overall_percentage=_percentage(total_spent, total_budget),
    )


def calculate_user_budget_summary(
    user: Any,
    budgets: Iterable[Any],
    transactions: Sequence[Any],
    active_period: Any,
    *,
    today: Optional[date] = None,
) -> UserBudgetSummary:
    start, end = _period_bounds(active_period)
    progress = calculate_budgets_with_progress(
        budgets, transactions, start, end, today=today
    )
    return _summary(user, progress, active_period)


def calculate_user_budget_summary_from_aggregation(
    user: Any,
    budgets: Iterable[Any],
    spending_rows: Iterable[Mapping[str, Any]],
    active_period: Any,
) -> UserBudgetSummary:
    """Same result as the row-level variant, from per-category
    ``{category, spent, income}`` sums where ``spent`` already holds
    expenses plus transfers. Transaction counts are not available here."""
    by_category = {
        row["category"]: int(row["spent"] or 0) - int(row["income"] or 0)
        for row in spending_rows
    }
    progress = []
    for budget in budgets:
        if budget.amount_cents <= 0:
            continue
        net = sum(by_category.get(cat, 0) for cat in budget.categories or [])
        progress.append(_progress(budget, max(0, net), 0))
    return _summary(user, progress, active_period)


def build_budgets_by_user(
    users: Iterable[Any],
    budgets: Iterable[Any],
    transactions: Iterable[Any],
    active_periods: Mapping[int, Any],
    *,
    today: Optional[date] = None,
) -> dict[int, UserBudgetSummary]:
    budgets_by_user: dict[int, list[Any]] = defaultdict(list)
    for budget in budgets:
        budgets_by_user[budget.user_id].append(budget)
    txns_by_user: dict[int, list[Any]] = defaultdict(list)
    for t in transactions:
        if t.user_id is not None:
            txns_by_user[t.user_id].append(t)

    return {
        user.id: calculate_user_budget_summary(
            user,
            budgets_by_user.get(user.id, []),
            txns_by_user.get(user.id, []),
            active_periods.get(user.id),
            today=today,
        )
        for user in users
    }


def calculate_period_totals(
    transactions: Iterable[Any],
    period: Any,
    budgets: Iterable[Any],
    *,
    today: Optional[date] = None,
) -> PeriodTotals:
    in_period = [
        t
        for t in filter_transactions_by_period(
            transactions, period.start_date, period.end_date, today=today
        )
        if t.user_id == period.user_id
    ]
    total_budget = 0
    total_spent = 0
    category_spending: dict[str, int] = defaultdict(int)
    counted: set[int] = set()
    for budget in budgets:
        if budget.user_id != period.user_id or budget.amount_cents <= 0:
            continue
        total_budget += budget.amount_cents
        matching = filter_by_categories(in_period, budget.categories or [])
        total_spent += _net_spent(matching)
        for t in matching:
            # A category shared by two budgets is still spent once.
            if id(t) in counted or t.type == TransactionType.income:
                continue
            counted.add(id(t))
            category_spending[t.category] += t.amount_cents

    return PeriodTotals(
        total_budget_cents=total_budget,
        total_spent_cents=total_spent,
        total_saved_cents=max(0, total_budget - total_spent),
        category_spending=dict(category_spending),
    )


# --- categories ---


def calculate_category_breakdown(
    transactions: Iterable[Any],
) -> list[CategoryBreakdownItem]:
    spent: dict[str, int] = defaultdict(int)
    received: dict[str, int] = defaultdict(int)
    counts: dict[str, int] = defaultdict(int)
    for t in transactions:
        if t.type == TransactionType.expense:
            spent[t.category] += t.amount_cents
        elif t.type == TransactionType.income:
            received[t.category] += t.amount_cents
        else:
            continue
        counts[t.category] += 1

    nets = {cat: spent[cat] - received[cat] for cat in counts}
    # Refunds and income never dilute the denominator.
    total_positive = sum(net for net in nets.values() if net > 0)
    items = [
        CategoryBreakdownItem(
            category=cat,
            spent_cents=spent[cat],
            received_cents=received[cat],
            net_cents=net,
            percentage=_percentage(net, total_positive) if net > 0 else 0.0,
            count=counts[cat],
        )
        for cat, net in nets.items()
    ]
    items.sort(key=lambda item: abs(item.net_cents), reverse=True)
    return items


def calculate_annual_category_spending(
    transactions: Iterable[Any], year: Union[int, str, None] = None
) -> list[CategoryBreakdownItem]:
    if year == "all":
        return calculate_category_breakdown(transactions)
    target = int(year) if year is not None else date.today().year
    return calculate_category_breakdown(t for t in transactions if t.date.year == target)


def calculate_category_stats(
    transactions: Iterable[Any], categories: Iterable[Any]
) -> CategoryStats:
    """Income and expense totals per category, largest first.

    A transaction's category is matched by id or case-insensitive key; an
    unknown category is reported under its raw value with the fallback color.
    """
    by_id = {str(c.id): c for c in categories}
    by_key = {c.key.lower(): c for c in by_id.values()}
    stats: dict[tuple[str, str], CategoryStat] = {}
    for t in transactions:
        kind = _type_key(t.type)
        if kind not in ("income", "expense"):
            continue
        raw = str(t.category)
        category = by_id.get(raw) or by_key.get(raw.lower())
        stat_id = str(category.id) if category is not None else raw
        stat = stats.get((stat_id, kind))
        if stat is None:
            stat = stats[(stat_id, kind)] = CategoryStat(
                id=stat_id,
                name=category.label if category is not None else raw,
                type=kind,
                total_cents=0,
                color=(category.color if category is not None else None)
                or FALLBACK_CATEGORY_COLOR,
            )
        stat.total_cents += t.amount_cents

    def _ranked(kind: str) -> list[CategoryStat]:
        return sorted(
            (s for s in stats.values() if s.type == kind),
            key=lambda s: s.total_cents,
            reverse=True,
        )

    return CategoryStats(income=_ranked("income"), expense=_ranked("expense"))


def find_category(categories: Iterable[Any], identifier: Any) -> Optional[Any]:
    needle = str(identifier).strip()
    lowered = needle.lower()
    for category in categories:
        if str(category.id) == needle or category.key == needle:
            return category
        if (category.label or "").lower() == lowered:
            return category
    return None


def is_valid_color(color: Optional[str]) -> bool:
    return bool(color) and bool(_HEX_COLOR.match(color))


# --- overview ---


def calculate_overview_metrics(
    transactions: Iterable[Any],
    user_account_ids: Iterable[int],
    user_id: Optional[int] = None,
) -> OverviewMetrics:
    tracked = set(user_account_ids)
    earned = spent = transferred = 0
    for t in transactions:
        if user_id is not None and t.user_id != user_id:
            continue
        if t.type == TransactionType.transfer:
            from_tracked = t.account_id in tracked
            to_tracked = t.to_account_id is not None and t.to_account_id in tracked
            if from_tracked:
                transferred += t.amount_cents
            if from_tracked and to_tracked:
                continue
            if from_tracked:
                spent += t.amount_cents
            elif to_tracked:
                earned += t.amount_cents
        elif t.account_id in tracked:
            if t.type == TransactionType.income:
                earned += t.amount_cents
            elif t.type == TransactionType.expense:
                spent += t.amount_cents

    return OverviewMetrics(
        total_earned_cents=earned,
        total_spent_cents=spent,
        total_transferred_cents=transferred,
        total_balance_cents=earned - spent,
    )


def calculate_annual_breakdown(
    transactions: Iterable[Any], account_ids: Iterable[int]
) -> list[AnnualBreakdownItem]:
    tracked = list(account_ids)
    by_year: dict[int, list[Any]] = defaultdict(list)
    for t in transactions:
        by_year[t.date.year].append(t)
    return [
        AnnualBreakdownItem(year=year, metrics=calculate_overview_metrics(txns, tracked))
        for year, txns in sorted(by_year.items())
    ]


# --- balances ---


def calculate_account_balance(account_id: int, transactions: Iterable[Any]) -> int:
    balance = 0
    for t in transactions:
        if t.to_account_id is not None:
            if t.account_id == account_id:
                balance -= t.amount_cents
            elif t.to_account_id == account_id:
                balance += t.amount_cents
        elif t.account_id == account_id:
            if t.type == TransactionType.income:
                balance += t.amount_cents
            elif t.type == TransactionType.expense:
                balance -= t.amount_cents
    return balance


def calculate_aggregated_balance(accounts: Iterable[Any]) -> int:
    return sum(account.balance_cents or 0 for account in accounts)


def calculate_historical_balance(
    transactions: Iterable[Any],
    account_ids: Iterable[int],
    current_balance: int,
    target_date: date,
) -> int:
    """Balance of the tracked accounts at the start of ``target_date``.

    Every transaction dated on or after the target is undone. Transfers with
    both legs inside the tracked set leave the total unchanged.
    """
    tracked = set(account_ids)
    balance = current_balance
    for t in transactions:
        if t.date < target_date:
            continue
        is_source = t.account_id in tracked
        is_dest = t.to_account_id is not None and t.to_account_id in tracked
        if t.type == TransactionType.transfer:
            if is_source and is_dest:
                continue
            if is_source:
                balance += t.amount_cents
            elif is_dest:
                balance -= t.amount_cents
        elif is_source:
            if t.type == TransactionType.expense:
                balance += t.amount_cents
            elif t.type == TransactionType.income:
                balance -= t.amount_cents
    return balance


def calculate_period_total_spent(
    transactions: Iterable[Any], account_ids: Iterable[int]
) -> int:
    tracked = set(account_ids)
    total = 0
    for t in transactions:
        if t.account_id not in tracked:
            continue
        if t.type == TransactionType.expense:
            total += t.amount_cents
        elif t.type == TransactionType.transfer and t.to_account_id not in tracked:
            total += t.amount_cents
    return total


def calculate_period_total_income(
    transactions: Iterable[Any], account_ids: Iterable[int]
) -> int:
    tracked = set(account_ids)
    total = 0
    for t in transactions:
        if t.type == TransactionType.income and t.account_id in tracked:
            total += t.amount_cents
        elif (
            t.type == TransactionType.transfer
            and t.to_account_id in tracked
            and t.account_id not in tracked
        ):
            total += t.amount_cents
    return total


def calculate_period_total_transfers(
    transactions: Iterable[Any], account_ids: Iterable[int]
) -> int:
    tracked = set(account_ids)
    return sum(
        t.amount_cents
        for t in transactions
        if t.type == TransactionType.transfer
        and (t.account_id in tracked or t.to_account_id in tracked)
    )


# --- reporting periods ---


def normalize_account_type(value: Any) -> str:
    if not value:
        return "other"
    lowered = str(_type_key(value)).lower()
    if lowered in ("investment", "investments"):
        return "investments"
    return lowered


def calculate_account_type_summary(
    transactions: Iterable[Any], accounts: Iterable[Any]
) -> list[AccountTypeSummary]:
    accounts = list(accounts)
    by_id = {account.id: account for account in accounts}
    summaries: dict[str, AccountTypeSummary] = {}

    def _get(kind: str) -> AccountTypeSummary:
        if kind not in summaries:
            summaries[kind] = AccountTypeSummary(type=kind)
        return summaries[kind]

    for account in accounts:
        _get(normalize_account_type(account.type)).total_balance_cents += (
            account.balance_cents or 0
        )

    for t in transactions:
        account = by_id.get(t.account_id)
        if account is None:
            continue
        kind = normalize_account_type(account.type)
        summary = _get(kind)
        if t.type == TransactionType.income:
            summary.total_earned_cents += t.amount_cents
        elif t.type == TransactionType.expense:
            summary.total_spent_cents += t.amount_cents
        elif t.to_account_id is not None:
            target = by_id.get(t.to_account_id)
            to_kind = normalize_account_type(target.type) if target else None
            if to_kind == kind:
                continue
            summary.total_spent_cents += t.amount_cents
            if to_kind:
                _get(to_kind).total_earned_cents += t.amount_cents
    return list(summaries.values())


def _payroll_accounts_by_user(accounts: Iterable[Any]) -> dict[int, set[int]]:
    by_user: dict[int, set[int]] = defaultdict(set)
    for account in accounts:
        if normalize_account_type(account.type) != "payroll":
            continue
        for user_id in account.user_ids:
            by_user[user_id].add(account.id)
    return by_user


def enrich_budget_periods(
    periods: Iterable[Any],
    users: Iterable[Any],
    transactions: Sequence[Any],
    accounts: Sequence[Any],
    *,
    today: Optional[date] = None,
) -> list[EnrichedBudgetPeriod]:
    names = {user.id: user.name for user in users}
    payroll = _payroll_accounts_by_user(accounts)

    by_user: dict[int, list[EnrichedBudgetPeriod]] = defaultdict(list)
    for period in periods:
        in_window = [
            t
            for t in filter_transactions_by_period(
                transactions, period.start_date, period.end_date, today=today
            )
            if t.user_id == period.user_id
        ]
        tracked = payroll.get(period.user_id, set())
        by_user[period.user_id].append(
            EnrichedBudgetPeriod(
                period_id=period.id,
                user_id=period.user_id,
                user_name=names.get(period.user_id, "Unknown User"),
                start_date=period.start_date,
                end_date=period.end_date,
                is_active=period.is_active,
                transactions=sorted(
                    in_window, key=lambda t: t.amount_cents, reverse=True
                ),
                total_spent_cents=calculate_period_total_spent(in_window, tracked),
                total_income_cents=calculate_period_total_income(in_window, tracked),
                total_transfers_cents=calculate_period_total_transfers(
                    in_window, tracked
                ),
            )
        )

    enriched: list[EnrichedBudgetPeriod] = []
    for user_id, user_periods in by_user.items():
        user_periods.sort(key=lambda p: p.start_date)
        tracked = payroll.get(user_id, set())
        if tracked:
            current = calculate_aggregated_balance(
                a for a in accounts if a.id in tracked
            )
            running = calculate_historical_balance(
                transactions, tracked, current, user_periods[0].start_date
            )
            for p in user_periods:
                p.start_balance_cents = running
                running += p.total_income_cents - p.total_spent_cents
                p.end_balance_cents = running
        enriched.extend(user_periods)
    return enriched


def calculate_period_summaries(
    periods: Iterable[Any],
    transactions: Sequence[Any],
    accounts: Sequence[Any],
    *,
    today: Optional[date] = None,
) -> list[PeriodSummary]:
    """Newest-first summaries, rolling each account type's balance back from
    today's stored balances one period at a time."""
    today = today or date.today()
    by_id = {account.id: account for account in accounts}
    running: dict[int, dict[str, int]] = defaultdict(lambda: defaultdict(int))
    for account in accounts:
        kind = normalize_account_type(account.type)
        for user_id in account.user_ids:
            running[user_id][kind] += account.balance_cents or 0

    summaries = []
    for period in sorted(periods, key=lambda p: p.start_date, reverse=True):
        end = period.end_date or today
        in_window = [
            t
            for t in transactions
            if t.user_id == period.user_id and period.start_date <= t.date <= end
        ]
        metrics: dict[str, AccountTypeMetrics] = defaultdict(AccountTypeMetrics)
        for t in in_window:
            account = by_id.get(t.account_id)
            if account is None:
                continue
            kind = normalize_account_type(account.type)
            if t.type == TransactionType.income:
                metrics[kind].earned_cents += t.amount_cents
            elif t.type == TransactionType.expense:
                metrics[kind].spent_cents += t.amount_cents
            elif t.to_account_id is not None:
                target = by_id.get(t.to_account_id)
                to_kind = normalize_account_type(target.type) if target else None
                if to_kind == kind:
                    continue
                metrics[kind].spent_cents += t.amount_cents
                if to_kind:
                    metrics[to_kind].earned_cents += t.amount_cents

        balances = running[period.user_id]
        for kind in set(metrics) | set(balances):
            m = metrics[kind]
            m.end_balance_cents = balances[kind]
            m.start_balance_cents = balances[kind] - (m.earned_cents - m.spent_cents)
            balances[kind] = m.start_balance_cents

        end_label = period.end_date.strftime("%d/%m/%Y") if period.end_date else "Present"
        summaries.append(
            PeriodSummary(
                period_id=period.id,
                user_id=period.user_id,
                name=f"{period.start_date:%d/%m/%Y} - {end_label}",
                start_date=period.start_date,
                end_date=end,
                start_balance_cents=sum(m.start_balance_cents for m in metrics.values()),
                end_balance_cents=sum(m.end_balance_cents for m in metrics.values()),
                total_earned_cents=sum(
                    t.amount_cents for t in in_window if t.type == TransactionType.income
                ),
                total_spent_cents=sum(
                    t.amount_cents for t in in_window if t.type == TransactionType.expense
                ),
                metrics_by_account_type=dict(metrics),
            )
        )
    return summaries


# --- recurring series ---


def monthly_amount(amount_cents: int, frequency: Any) -> float:
    return amount_cents * MONTHLY_FACTORS.get(RecurrenceFrequency(_type_key(frequency)), 1.0)


def calculate_recurring_totals(series: Iterable[Any]) -> RecurringTotals:
    income = 0.0
    expenses = 0.0
    for item in series:
        if not item.is_active:
            continue
        amount = monthly_amount(item.amount_cents, item.frequency)
        if item.type == TransactionType.income:
            income += amount
        elif item.type == TransactionType.expense:
            expenses += amount
    return RecurringTotals(
        monthly_income_cents=round(income),
        monthly_expenses_cents=round(expenses),
        monthly_net_cents=round(income - expenses),
    )


# --- investments ---


def calculate_forecast(
    amount_cents: int,
    years: int = 10,
    rate: float = 0.07,
    start_year: Optional[int] = None,
) -> list[ForecastPoint]:
    if years < 0:
        raise ValueError("Years must not be negative")
    first = start_year if start_year is not None else date.today().year
    points = []
    current = float(amount_cents)
    for offset in range(years + 1):
        points.append(ForecastPoint(year=first + offset, amount_cents=round(current)))
        current *= 1 + rate
    return points


def calculate_portfolio(
    investments: Iterable[Any], prices: Mapping[str, Decimal]
) -> Portfolio:
    positions = []
    for inv in investments:
        price = prices.get(inv.symbol) or Decimal("0")
        shares = Decimal(inv.shares_acquired)
        # Prices are per share in currency units; values are kept in cents.
        value = int((price * shares * 100).quantize(Decimal("1")))
        positions.append(
            PortfolioPosition(
                investment_id=inv.id,
                symbol=inv.symbol,
                shares=shares,
                invested_cents=inv.amount_cents,
                current_price=price,
                current_value_cents=value,
            )
        )
    invested = sum(p.invested_cents for p in positions)
    current = sum(p.current_value_cents for p in positions)
    return Portfolio(
        positions=positions,
        total_invested_cents=invested,
        total_current_value_cents=current,
        total_return_cents=current - invested,
        total_return_percent=((current - invested) / invested) * 100 if invested > 0 else 0.0,
    )


def _close_near(
    closes: Mapping[date, Decimal], day: date, max_gap_days: int
) -> Optional[Decimal]:
    for back in range(max_gap_days + 1):
        price = closes.get(day - timedelta(days=back))
        if price:
            return price
    return None


def calculate_historical_portfolio(
    investments: Iterable[Any],
    history: Mapping[str, Mapping[date, Decimal]],
    today: date,
    *,
    max_gap_days: int = 3,
) -> list[PortfolioValuePoint]:
    """Daily portfolio value from the first purchase up to ``today``.

    Weekends and holidays reuse the last close at most ``max_gap_days`` back;
    days on which nothing can be valued are left out.
    """
    investments = list(investments)
    if not investments:
        return []
    points: list[PortfolioValuePoint] = []
    day = min(inv.purchased_on for inv in investments)
    while day <= today:
        total = Decimal("0")
        for inv in investments:
            if inv.purchased_on > day:
                continue
            price = _close_near(history.get(inv.symbol, {}), day, max_gap_days)
            if price is not None:
                total += price * Decimal(inv.shares_acquired)
        value = int((total * 100).quantize(Decimal("1")))
        if value > 0:
            points.append(PortfolioValuePoint(date=day, value_cents=value))
        day += timedelta(days=1)
    return points

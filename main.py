import logging
from dataclasses import fields
from datetime import date
from typing import Optional

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from config import get_settings
from database import get_db
from finance_logic import EnrichedBudgetPeriod
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
)
from periods import Period, resolve_period
from scheduler import SchedulerManager
from schemas import (
    AccountIn,
    BudgetIn,
    BudgetPeriodCloseIn,
    BudgetPeriodStartIn,
    CategoryIn,
    DefaultAccountIn,
    GroupIn,
    InvestmentIn,
    RecurringSeriesIn,
    TransactionIn,
    UserIn,
)
from services import (
    AccountService,
    BudgetPeriodService,
    BudgetService,
    CategoryService,
    GroupService,
    InvestmentService,
    MetricsService,
    NotFoundError,
    RecurringSeriesService,
    ReportPeriodService,
    TransactionFilters,
    TransactionService,
    UserService,
)


logger = logging.getLogger(__name__)

app = FastAPI(title="Household Ledger")
scheduler_manager = SchedulerManager()


@app.on_event("startup")
def startup_event():
    if get_settings().scheduler_enabled:
        scheduler_manager.start()


@app.on_event("shutdown")
def shutdown_event():
    scheduler_manager.stop()


@app.exception_handler(NotFoundError)
def not_found_handler(_request: Request, exc: NotFoundError):
    return JSONResponse(status_code=404, content={"detail": str(exc)})


@app.exception_handler(ValueError)
def invalid_input_handler(_request: Request, exc: ValueError):
    return JSONResponse(status_code=400, content={"detail": str(exc)})


def period_from_request(request: Request) -> Period:
    period_slug = request.query_params.get("period")
    start = request.query_params.get("start")
    end = request.query_params.get("end")
    try:
        return resolve_period(period_slug, start, end)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


def filters_from_request(request: Request) -> TransactionFilters:
    params = request.query_params
    try:
        return TransactionFilters(
            start=date.fromisoformat(params["start"]) if params.get("start") else None,
            end=date.fromisoformat(params["end"]) if params.get("end") else None,
            type=TransactionType(params["type"]) if params.get("type") else None,
            category=params.get("category") or None,
            account_id=int(params["account_id"]) if params.get("account_id") else None,
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


def _group_out(group: Group) -> dict:
    return {"id": group.id, "name": group.name}


def _user_out(user: User) -> dict:
    return {
        "id": user.id,
        "group_id": user.group_id,
        "name": user.name,
        "email": user.email,
        "default_account_id": user.default_account_id,
    }


def _account_out(account: Account) -> dict:
    return {
        "id": account.id,
        "group_id": account.group_id,
        "name": account.name,
        "type": account.type.value,
        "balance_cents": account.balance_cents,
        "user_ids": account.user_ids,
    }


def _category_out(category: Category) -> dict:
    return {
        "id": category.id,
        "key": category.key,
        "label": category.label,
        "color": category.color,
        "icon": category.icon,
    }


def _txn_out(txn: Transaction) -> dict:
    return {
        "id": txn.id,
        "user_id": txn.user_id,
        "account_id": txn.account_id,
        "to_account_id": txn.to_account_id,
        "type": txn.type.value,
        "amount_cents": txn.amount_cents,
        "category": txn.category,
        "description": txn.description,
        "date": txn.date.isoformat(),
        "recurring_series_id": txn.recurring_series_id,
    }


def _budget_out(budget: Budget) -> dict:
    return {
        "id": budget.id,
        "user_id": budget.user_id,
        "description": budget.description,
        "amount_cents": budget.amount_cents,
        "type": budget.type.value,
        "categories": list(budget.categories or []),
    }


def _period_out(period: BudgetPeriod) -> dict:
    return {
        "id": period.id,
        "user_id": period.user_id,
        "start_date": period.start_date.isoformat(),
        "end_date": period.end_date.isoformat() if period.end_date else None,
        "is_active": period.is_active,
    }


def _series_out(series: RecurringSeries) -> dict:
    return {
        "id": series.id,
        "user_id": series.user_id,
        "account_id": series.account_id,
        "to_account_id": series.to_account_id,
        "type": series.type.value,
        "amount_cents": series.amount_cents,
        "category": series.category,
        "description": series.description,
        "frequency": series.frequency.value,
        "due_day": series.due_day,
        "start_date": series.start_date.isoformat(),
        "end_date": series.end_date.isoformat() if series.end_date else None,
        "is_active": series.is_active,
        "last_executed_on": (
            series.last_executed_on.isoformat() if series.last_executed_on else None
        ),
    }


def _investment_out(investment: Investment) -> dict:
    return {
        "id": investment.id,
        "symbol": investment.symbol,
        "amount_cents": investment.amount_cents,
        "shares_acquired": str(investment.shares_acquired),
        "purchased_on": investment.purchased_on.isoformat(),
    }


def _enriched_out(period: EnrichedBudgetPeriod) -> dict:
    data = {
        f.name: getattr(period, f.name) for f in fields(period) if f.name != "transactions"
    }
    data["transactions"] = [_txn_out(txn) for txn in period.transactions]
    return data


# --- groups and users ---


@app.post("/api/groups", status_code=201)
def api_create_group(data: GroupIn, db: Session = Depends(get_db)):
    return _group_out(GroupService(db).create(data))


@app.get("/api/groups/{group_id}")
def api_group(group_id: int, db: Session = Depends(get_db)):
    return _group_out(GroupService(db).get(group_id))


@app.get("/api/groups/{group_id}/users")
def api_group_users(group_id: int, db: Session = Depends(get_db)):
    return [_user_out(user) for user in GroupService(db).users(group_id)]


@app.post("/api/users", status_code=201)
def api_create_user(data: UserIn, db: Session = Depends(get_db)):
    return _user_out(UserService(db).create(data))


@app.get("/api/users/{user_id}")
def api_user(user_id: int, db: Session = Depends(get_db)):
    return _user_out(UserService(db).get(user_id))


@app.put("/api/users/{user_id}/default-account")
def api_set_default_account(
    user_id: int, data: DefaultAccountIn, db: Session = Depends(get_db)
):
    return _user_out(UserService(db).set_default_account(user_id, data.account_id))


# --- accounts ---


@app.get("/api/groups/{group_id}/accounts")
def api_accounts(group_id: int, db: Session = Depends(get_db)):
    GroupService(db).get(group_id)
    return [_account_out(a) for a in AccountService(db, group_id).list_all()]


@app.post("/api/groups/{group_id}/accounts", status_code=201)
def api_create_account(group_id: int, data: AccountIn, db: Session = Depends(get_db)):
    GroupService(db).get(group_id)
    return _account_out(AccountService(db, group_id).create(data))


@app.put("/api/groups/{group_id}/accounts/{account_id}")
def api_update_account(
    group_id: int, account_id: int, data: AccountIn, db: Session = Depends(get_db)
):
    return _account_out(AccountService(db, group_id).update(account_id, data))


@app.delete("/api/groups/{group_id}/accounts/{account_id}", status_code=204)
def api_delete_account(group_id: int, account_id: int, db: Session = Depends(get_db)):
    AccountService(db, group_id).delete(account_id)


@app.post("/api/groups/{group_id}/accounts/{account_id}/recompute")
def api_recompute_account(
    group_id: int, account_id: int, db: Session = Depends(get_db)
):
    return _account_out(AccountService(db, group_id).recompute_balance(account_id))


@app.get("/api/users/{user_id}/accounts")
def api_user_accounts(user_id: int, db: Session = Depends(get_db)):
    user = UserService(db).get(user_id)
    accounts = AccountService(db, user.group_id).list_for_user(user.id)
    return [_account_out(a) for a in accounts]


# --- categories ---


@app.get("/api/groups/{group_id}/categories")
def api_categories(group_id: int, db: Session = Depends(get_db)):
    GroupService(db).get(group_id)
    return [_category_out(c) for c in CategoryService(db, group_id).list_all()]


@app.post("/api/groups/{group_id}/categories", status_code=201)
def api_create_category(
    group_id: int, data: CategoryIn, db: Session = Depends(get_db)
):
    GroupService(db).get(group_id)
    return _category_out(CategoryService(db, group_id).create(data))


@app.get("/api/groups/{group_id}/categories/resolve")
def api_resolve_category(group_id: int, q: str, db: Session = Depends(get_db)):
    return _category_out(CategoryService(db, group_id).resolve(q))


@app.put("/api/groups/{group_id}/categories/{category_id}")
def api_update_category(
    group_id: int, category_id: int, data: CategoryIn, db: Session = Depends(get_db)
):
    return _category_out(CategoryService(db, group_id).update(category_id, data))


@app.delete("/api/groups/{group_id}/categories/{category_id}", status_code=204)
def api_delete_category(
    group_id: int, category_id: int, db: Session = Depends(get_db)
):
    CategoryService(db, group_id).delete(category_id)


# --- transactions ---


@app.get("/api/users/{user_id}/transactions")
def api_transactions(user_id: int, request: Request, db: Session = Depends(get_db)):
    filters = filters_from_request(request)
    page = max(int(request.query_params.get("page", "1")), 1)
    limit = min(max(int(request.query_params.get("limit", "50")), 1), 100)
    result = TransactionService(db, user_id).list(
        filters, limit=limit, offset=(page - 1) * limit
    )
    return {
        "items": [_txn_out(txn) for txn in result.items],
        "page": page,
        "limit": limit,
        "has_more": result.has_more,
    }


@app.post("/api/users/{user_id}/transactions", status_code=201)
def api_create_transaction(
    user_id: int, data: TransactionIn, db: Session = Depends(get_db)
):
    return _txn_out(TransactionService(db, user_id).create(data))


@app.get("/api/users/{user_id}/transactions/{transaction_id}")
def api_transaction(user_id: int, transaction_id: int, db: Session = Depends(get_db)):
    return _txn_out(TransactionService(db, user_id).get(transaction_id))


@app.put("/api/users/{user_id}/transactions/{transaction_id}")
def api_update_transaction(
    user_id: int,
    transaction_id: int,
    data: TransactionIn,
    db: Session = Depends(get_db),
):
    return _txn_out(TransactionService(db, user_id).update(transaction_id, data))


@app.delete("/api/users/{user_id}/transactions/{transaction_id}", status_code=204)
def api_delete_transaction(
    user_id: int, transaction_id: int, db: Session = Depends(get_db)
):
    TransactionService(db, user_id).delete(transaction_id)


# --- budgets ---


@app.get("/api/users/{user_id}/budgets")
def api_budgets(user_id: int, db: Session = Depends(get_db)):
    return [_budget_out(b) for b in BudgetService(db, user_id).list_all()]


@app.post("/api/users/{user_id}/budgets", status_code=201)
def api_create_budget(user_id: int, data: BudgetIn, db: Session = Depends(get_db)):
    return _budget_out(BudgetService(db, user_id).create(data))


@app.put("/api/users/{user_id}/budgets/{budget_id}")
def api_update_budget(
    user_id: int, budget_id: int, data: BudgetIn, db: Session = Depends(get_db)
):
    return _budget_out(BudgetService(db, user_id).update(budget_id, data))


@app.delete("/api/users/{user_id}/budgets/{budget_id}", status_code=204)
def api_delete_budget(user_id: int, budget_id: int, db: Session = Depends(get_db)):
    BudgetService(db, user_id).delete(budget_id)


@app.get("/api/users/{user_id}/budget-summary")
def api_budget_summary(
    user_id: int, aggregated: bool = False, db: Session = Depends(get_db)
):
    service = BudgetService(db, user_id)
    if aggregated:
        return service.user_summary_aggregated()
    return service.user_summary()


@app.get("/api/groups/{group_id}/budgets-by-user")
def api_budgets_by_user(group_id: int, db: Session = Depends(get_db)):
    return BudgetService.budgets_by_user(db, group_id)


# --- budget periods ---


@app.get("/api/users/{user_id}/budget-periods")
def api_budget_periods(user_id: int, db: Session = Depends(get_db)):
    return [_period_out(p) for p in BudgetPeriodService(db, user_id).list_for_user()]


@app.get("/api/users/{user_id}/budget-periods/active")
def api_active_budget_period(user_id: int, db: Session = Depends(get_db)):
    period = BudgetPeriodService(db, user_id).active_period()
    return _period_out(period) if period else None


@app.post("/api/users/{user_id}/budget-periods", status_code=201)
def api_start_budget_period(
    user_id: int, data: BudgetPeriodStartIn, db: Session = Depends(get_db)
):
    return _period_out(BudgetPeriodService(db, user_id).create(data.start_date))


@app.post("/api/users/{user_id}/budget-periods/{period_id}/close")
def api_close_budget_period(
    user_id: int,
    period_id: int,
    data: BudgetPeriodCloseIn,
    db: Session = Depends(get_db),
):
    closed, successor = BudgetPeriodService(db, user_id).close(
        period_id, data.end_date
    )
    return {"closed": _period_out(closed), "successor": _period_out(successor)}


@app.delete("/api/users/{user_id}/budget-periods/{period_id}", status_code=204)
def api_delete_budget_period(
    user_id: int, period_id: int, db: Session = Depends(get_db)
):
    BudgetPeriodService(db, user_id).delete(period_id)


@app.get("/api/users/{user_id}/budget-periods/{period_id}/totals")
def api_budget_period_totals(
    user_id: int, period_id: int, db: Session = Depends(get_db)
):
    return BudgetPeriodService(db, user_id).period_totals(period_id)


# --- reports ---


@app.get("/api/groups/{group_id}/reports/enriched-periods")
def api_enriched_periods(group_id: int, db: Session = Depends(get_db)):
    periods = ReportPeriodService(db, group_id).enriched_periods()
    return [_enriched_out(p) for p in periods]


@app.get("/api/groups/{group_id}/reports/period-summaries")
def api_period_summaries(group_id: int, db: Session = Depends(get_db)):
    return ReportPeriodService(db, group_id).period_summaries()


@app.get("/api/groups/{group_id}/reports/account-types")
def api_account_types(group_id: int, db: Session = Depends(get_db)):
    return ReportPeriodService(db, group_id).account_type_summary()


@app.get("/api/users/{user_id}/overview")
def api_overview(user_id: int, request: Request, db: Session = Depends(get_db)):
    period = period_from_request(request)
    service = MetricsService(db, user_id)
    return {
        "period": {"slug": period.slug, "start": period.start, "end": period.end},
        "metrics": service.overview(period),
        "total_balance_cents": service.total_balance(),
    }


@app.get("/api/users/{user_id}/category-breakdown")
def api_category_breakdown(
    user_id: int, request: Request, db: Session = Depends(get_db)
):
    period = period_from_request(request)
    return MetricsService(db, user_id).category_breakdown(period)


@app.get("/api/users/{user_id}/annual-category-spending")
def api_annual_category_spending(
    user_id: int, year: Optional[str] = None, db: Session = Depends(get_db)
):
    return MetricsService(db, user_id).annual_category_spending(year)


@app.get("/api/users/{user_id}/category-stats")
def api_category_stats(user_id: int, request: Request, db: Session = Depends(get_db)):
    period = period_from_request(request)
    return MetricsService(db, user_id).category_stats(period)


@app.get("/api/users/{user_id}/annual-breakdown")
def api_annual_breakdown(user_id: int, db: Session = Depends(get_db)):
    return MetricsService(db, user_id).annual_breakdown()


# --- recurring series ---


@app.get("/api/users/{user_id}/recurring")
def api_recurring(user_id: int, db: Session = Depends(get_db)):
    return [_series_out(s) for s in RecurringSeriesService(db, user_id).list_all()]


@app.post("/api/users/{user_id}/recurring", status_code=201)
def api_create_recurring(
    user_id: int, data: RecurringSeriesIn, db: Session = Depends(get_db)
):
    return _series_out(RecurringSeriesService(db, user_id).create(data))


@app.get("/api/users/{user_id}/recurring/statistics")
def api_recurring_statistics(user_id: int, db: Session = Depends(get_db)):
    return RecurringSeriesService(db, user_id).statistics()


@app.post("/api/users/{user_id}/recurring/execute")
def api_execute_recurring(user_id: int, db: Session = Depends(get_db)):
    posted = RecurringSeriesService(db, user_id).execute_due()
    return {"transactions_posted": posted}


@app.put("/api/users/{user_id}/recurring/{series_id}")
def api_update_recurring(
    user_id: int,
    series_id: int,
    data: RecurringSeriesIn,
    db: Session = Depends(get_db),
):
    return _series_out(RecurringSeriesService(db, user_id).update(series_id, data))


@app.post("/api/users/{user_id}/recurring/{series_id}/toggle")
def api_toggle_recurring(
    user_id: int, series_id: int, active: bool, db: Session = Depends(get_db)
):
    return _series_out(RecurringSeriesService(db, user_id).toggle(series_id, active))


@app.delete("/api/users/{user_id}/recurring/{series_id}", status_code=204)
def api_delete_recurring(user_id: int, series_id: int, db: Session = Depends(get_db)):
    RecurringSeriesService(db, user_id).delete(series_id)


# --- investments ---


@app.get("/api/users/{user_id}/investments")
def api_investments(user_id: int, db: Session = Depends(get_db)):
    return [_investment_out(i) for i in InvestmentService(db, user_id).list_all()]


@app.post("/api/users/{user_id}/investments", status_code=201)
def api_add_investment(
    user_id: int, data: InvestmentIn, db: Session = Depends(get_db)
):
    return _investment_out(InvestmentService(db, user_id).add(data))


@app.delete("/api/users/{user_id}/investments/{investment_id}", status_code=204)
def api_delete_investment(
    user_id: int, investment_id: int, db: Session = Depends(get_db)
):
    InvestmentService(db, user_id).delete(investment_id)


@app.get("/api/users/{user_id}/investments/portfolio")
def api_portfolio(user_id: int, db: Session = Depends(get_db)):
    return InvestmentService(db, user_id).portfolio()


@app.get("/api/users/{user_id}/investments/history")
def api_portfolio_history(user_id: int, db: Session = Depends(get_db)):
    return InvestmentService(db, user_id).history()


@app.get("/api/investments/forecast")
def api_forecast(
    amount_cents: int,
    years: int = 10,
    rate: float = 0.07,
    start_year: Optional[int] = None,
):
    return InvestmentService.forecast(amount_cents, years, rate, start_year)


@app.get("/api/scheduler")
def api_scheduler_status():
    return scheduler_manager.status()


def main():
    import uvicorn

    logging.basicConfig(level=logging.INFO)
    uvicorn.run("main:app", host="0.0.0.0", port=8000, reload=False)


if __name__ == "__main__":
    main()

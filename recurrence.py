import logging
from datetime import date, datetime, timedelta
from typing import Iterator, Optional
from zoneinfo import ZoneInfo

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from config import get_settings
from models import RecurrenceFrequency, RecurringSeries, Transaction


logger = logging.getLogger(__name__)

MAX_CATCH_UP_DAYS = 366


def local_today() -> date:
    settings = get_settings()
    tz = ZoneInfo(settings.timezone)
    return datetime.now(tz).date()


def days_in_month(year: int, month: int) -> int:
    if month == 12:
        next_month = date(year + 1, 1, 1)
    else:
        next_month = date(year, month + 1, 1)
    return (next_month - date(year, month, 1)).days


def _on_day(year: int, month: int, day: int) -> date:
    return date(year, month, min(day, days_in_month(year, month)))


def calculate_next_execution_date(series: RecurringSeries, today: date) -> date:
    """Next due date as shown to the user; weekly and monthly dates always
    land strictly after today."""
    frequency = series.frequency
    if frequency in (RecurrenceFrequency.weekly, RecurrenceFrequency.biweekly):
        step = 7 if frequency == RecurrenceFrequency.weekly else 14
        days_until = series.due_day - today.isoweekday()
        if days_until <= 0:
            days_until += step
        return today + timedelta(days=days_until)

    if frequency == RecurrenceFrequency.monthly:
        if today.day < series.due_day:
            return _on_day(today.year, today.month, series.due_day)
        if today.month == 12:
            return _on_day(today.year + 1, 1, series.due_day)
        return _on_day(today.year, today.month + 1, series.due_day)

    if frequency == RecurrenceFrequency.yearly:
        this_year = _on_day(today.year, series.start_date.month, series.due_day)
        if this_year > today:
            return this_year
        return _on_day(today.year + 1, series.start_date.month, series.due_day)

    return series.start_date if series.start_date > today else today


def days_until_due(series: RecurringSeries, today: date) -> int:
    return (calculate_next_execution_date(series, today) - today).days


def occurs_on(series: RecurringSeries, day: date) -> bool:
    if day < series.start_date:
        return False
    if series.end_date is not None and day > series.end_date:
        return False

    frequency = series.frequency
    if frequency == RecurrenceFrequency.once:
        return day == series.start_date
    if frequency == RecurrenceFrequency.weekly:
        return day.isoweekday() == series.due_day
    if frequency == RecurrenceFrequency.biweekly:
        if day.isoweekday() != series.due_day:
            return False
        offset = (series.due_day - series.start_date.isoweekday()) % 7
        first = series.start_date + timedelta(days=offset)
        return (day - first).days % 14 == 0
    if frequency == RecurrenceFrequency.monthly:
        return day == _on_day(day.year, day.month, series.due_day)
    return day == _on_day(day.year, series.start_date.month, series.due_day)


def pending_occurrences(series: RecurringSeries, today: date) -> Iterator[date]:
    """Occurrences after the last posted one, up to and including today."""
    if series.frequency == RecurrenceFrequency.once:
        if series.last_executed_on is None and series.start_date <= today:
            if series.end_date is None or series.start_date <= series.end_date:
                yield series.start_date
        return

    first = series.start_date
    if series.last_executed_on is not None:
        first = max(first, series.last_executed_on + timedelta(days=1))
    first = max(first, today - timedelta(days=MAX_CATCH_UP_DAYS))
    day = first
    while day <= today:
        if occurs_on(series, day):
            yield day
        day += timedelta(days=1)


def is_series_due(series: RecurringSeries, today: date) -> bool:
    if not series.is_active:
        return False
    return next(pending_occurrences(series, today), None) is not None


class RecurringEngine:
    def __init__(self, session: Session) -> None:
        self.session = session

    def execute_due(
        self, today: Optional[date] = None, *, user_id: Optional[int] = None
    ) -> int:
        today = today or local_today()
        stmt = (
            select(RecurringSeries)
            .where(
                RecurringSeries.is_active.is_(True),
                RecurringSeries.start_date <= today,
            )
            .order_by(RecurringSeries.id)
        )
        if user_id is not None:
            stmt = stmt.where(RecurringSeries.user_id == user_id)
        posted = 0
        for series in self.session.scalars(stmt).all():
            series_id = series.id
            try:
                posted += self.execute_series(series, today)
            except (ValueError, SQLAlchemyError):
                self.session.rollback()
                logger.exception(
                    f"recurring_execute_failed: series_id={series_id} today={today}"
                )
        return posted

    def execute_series(self, series: RecurringSeries, today: date) -> int:
        posted = 0
        for occurrence in list(pending_occurrences(series, today)):
            if self._post_occurrence(series, occurrence):
                posted += 1
            series.last_executed_on = occurrence
        if series.frequency == RecurrenceFrequency.once and series.last_executed_on:
            series.is_active = False
        self.session.commit()
        return posted

    def _post_occurrence(self, series: RecurringSeries, occurrence: date) -> bool:
        from schemas import TransactionIn
        from services import TransactionService

        exists_stmt = (
            select(Transaction.id)
            .where(
                Transaction.recurring_series_id == series.id,
                Transaction.date == occurrence,
            )
            .limit(1)
        )
        if self.session.execute(exists_stmt).scalar_one_or_none():
            return False

        data = TransactionIn(
            account_id=series.account_id,
            to_account_id=series.to_account_id,
            type=series.type,
            amount_cents=series.amount_cents,
            category=series.category,
            description=series.description,
            date=occurrence,
        )
        TransactionService(self.session, series.user_id).create(
            data, recurring_series_id=series.id, commit=False
        )
        logger.info(
            f"recurring_posted: series_id={series.id} date={occurrence} "
            f"amount_cents={series.amount_cents}"
        )
        return True

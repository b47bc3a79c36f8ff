import io
import json
from datetime import date
from decimal import Decimal
from urllib.error import URLError

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session

import market_data
from database import Base
from market_data import MarketDataService, normalize_symbol
from schemas import GroupIn, InvestmentIn, UserIn
from services import (
    GroupService,
    InvalidInputError,
    InvestmentService,
    NotFoundError,
    UserService,
)


class FakeMarketData:
    def __init__(self, prices):
        self.prices = prices
        self.requested = []

    def latest_closes(self, symbols):
        wanted = sorted(set(symbols))
        self.requested.append(wanted)
        return {s: self.prices[s] for s in wanted if s in self.prices}


def _user(session: Session) -> int:
    group = GroupService(session).create(GroupIn(name="Home"))
    return UserService(session).create(UserIn(group_id=group.id, name="Ada")).id


def _session() -> Session:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    return Session(engine)


def test_portfolio_values_positions_with_latest_close():
    with _session() as session:
        user_id = _user(session)
        fake = FakeMarketData({"VWCE": Decimal("110.00")})
        service = InvestmentService(session, user_id, market_data=fake)
        service.add(
            InvestmentIn(
                symbol=" vwce ",
                amount_cents=100_000,
                shares_acquired=Decimal("10"),
                purchased_on=date(2024, 1, 10),
            )
        )
        service.add(
            InvestmentIn(
                symbol="delisted",
                amount_cents=50_000,
                shares_acquired=Decimal("5"),
                purchased_on=date(2024, 2, 10),
            )
        )

        portfolio = service.portfolio()
        assert fake.requested == [["DELISTED", "VWCE"]]
        values = {p.symbol: p.current_value_cents for p in portfolio.positions}
        assert values == {"VWCE": 110_000, "DELISTED": 0}
        assert portfolio.total_invested_cents == 150_000
        assert portfolio.total_current_value_cents == 110_000
        assert portfolio.total_return_percent == pytest.approx(-40_000 / 150_000 * 100)


def test_blank_symbol_is_rejected():
    with pytest.raises(ValueError):
        normalize_symbol("   ")
    with _session() as session:
        service = InvestmentService(session, _user(session), market_data=FakeMarketData({}))
        with pytest.raises(InvalidInputError):
            service.add(
                InvestmentIn(
                    symbol=" ",
                    amount_cents=100,
                    shares_acquired=Decimal("1"),
                    purchased_on=date(2024, 1, 1),
                )
            )


def test_delete_is_owner_scoped():
    with _session() as session:
        user_id = _user(session)
        service = InvestmentService(session, user_id, market_data=FakeMarketData({}))
        inv = service.add(
            InvestmentIn(
                symbol="AAPL",
                amount_cents=100,
                shares_acquired=Decimal("1"),
                purchased_on=date(2024, 1, 1),
            )
        )
        with pytest.raises(NotFoundError):
            service.delete(inv.id + 1)
        service.delete(inv.id)
        assert service.list_all() == []


def test_forecast_bounds():
    points = InvestmentService.forecast(100_000, years=1, start_year=2024)
    assert [(p.year, p.amount_cents) for p in points] == [(2024, 100_000), (2025, 107_000)]
    with pytest.raises(InvalidInputError):
        InvestmentService.forecast(0)
    with pytest.raises(InvalidInputError):
        InvestmentService.forecast(100, years=101)


def _response(payload):
    class _Resp(io.BytesIO):
        def __enter__(self):
            return self

        def __exit__(self, *exc):
            return False

    return _Resp(json.dumps(payload).encode("utf-8"))


def test_twelvedata_close_is_parsed(monkeypatch):
    market_data._fetch_twelvedata_close.cache_clear()
    calls = []

    def fake_urlopen(req, timeout):
        calls.append(req.full_url)
        return _response(
            {"values": [{"datetime": "2024-03-14", "close": "101.25"}], "status": "ok"}
        )

    monkeypatch.setattr(market_data, "urlopen", fake_urlopen)
    quote = MarketDataService().latest_quote("vwce", on_date=date(2024, 3, 15))
    assert quote.symbol == "VWCE"
    assert quote.close == Decimal("101.25")
    assert quote.quote_date == date(2024, 3, 14)
    assert "symbol=VWCE" in calls[0]

    MarketDataService().latest_quote("VWCE", on_date=date(2024, 3, 15))
    assert len(calls) == 1


def test_provider_failures_leave_symbol_unpriced(monkeypatch):
    market_data._fetch_twelvedata_close.cache_clear()

    def fake_urlopen(req, timeout):
        if "symbol=BAD" in req.full_url:
            return _response({"status": "error", "message": "symbol not found"})
        raise URLError("offline")

    monkeypatch.setattr(market_data, "urlopen", fake_urlopen)
    assert MarketDataService().latest_closes(["BAD", "OFFLINE", ""]) == {}
    market_data._fetch_twelvedata_close.cache_clear()


def test_connection_dropped_mid_read_leaves_symbol_unpriced(monkeypatch):
    market_data._fetch_twelvedata_close.cache_clear()

    class _Dropped(io.BytesIO):
        def __enter__(self):
            return self

        def __exit__(self, *exc):
            return False

        def read(self, *args):
            raise ConnectionResetError("peer reset")

    monkeypatch.setattr(market_data, "urlopen", lambda req, timeout: _Dropped())
    assert MarketDataService().latest_closes(["VWCE"]) == {}
    assert MarketDataService().close_histories(["VWCE"], 30) == {}
    market_data._fetch_twelvedata_close.cache_clear()
    market_data._fetch_twelvedata_history.cache_clear()


def test_twelvedata_history_requests_outputsize(monkeypatch):
    market_data._fetch_twelvedata_history.cache_clear()
    calls = []

    def fake_urlopen(req, timeout):
        calls.append(req.full_url)
        return _response(
            {
                "values": [
                    {"datetime": "2024-03-15 00:00:00", "close": "102.00"},
                    {"datetime": "2024-03-14", "close": "101.25"},
                ],
                "status": "ok",
            }
        )

    monkeypatch.setattr(market_data, "urlopen", fake_urlopen)
    closes = MarketDataService().close_history("vwce", 10, on_date=date(2024, 3, 15))
    assert closes == {
        date(2024, 3, 15): Decimal("102.00"),
        date(2024, 3, 14): Decimal("101.25"),
    }
    assert "outputsize=10" in calls[0]

    MarketDataService().close_history("VWCE", 99_999, on_date=date(2024, 3, 15))
    assert f"outputsize={market_data.MAX_OUTPUTSIZE}" in calls[1]
    market_data._fetch_twelvedata_history.cache_clear()


class FakeHistory(FakeMarketData):
    def __init__(self, histories):
        super().__init__({})
        self.histories = histories
        self.days = []

    def close_histories(self, symbols, days):
        self.days.append(days)
        return {s: self.histories[s] for s in set(symbols) if s in self.histories}


def test_portfolio_history_spans_first_purchase_to_today():
    with _session() as session:
        user_id = _user(session)
        fake = FakeHistory(
            {"VWCE": {date(2024, 3, 1): Decimal("50"), date(2024, 3, 4): Decimal("55")}}
        )
        service = InvestmentService(session, user_id, market_data=fake)
        assert service.history(today=date(2024, 3, 5)) == []

        service.add(
            InvestmentIn(
                symbol="VWCE",
                amount_cents=10_000,
                shares_acquired=Decimal("2"),
                purchased_on=date(2024, 3, 1),
            )
        )
        points = service.history(today=date(2024, 3, 5))
        assert fake.days == [5]
        assert [(p.date, p.value_cents) for p in points] == [
            (date(2024, 3, 1), 10_000),
            (date(2024, 3, 2), 10_000),
            (date(2024, 3, 3), 10_000),
            (date(2024, 3, 4), 11_000),
            (date(2024, 3, 5), 11_000),
        ]

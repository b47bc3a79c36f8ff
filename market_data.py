from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import date, datetime, timezone
from decimal import Decimal, InvalidOperation
from functools import lru_cache
from http.client import HTTPException
from typing import Iterable, Optional
from urllib.parse import urlencode
from urllib.request import Request, urlopen

from config import get_settings


logger = logging.getLogger(__name__)

TWELVE_DATA_URL = "https://api.twelvedata.com/time_series"
# Largest series the time_series endpoint returns in one call.
MAX_OUTPUTSIZE = 5000


@dataclass(frozen=True)
class CloseQuote:
    provider: str
    symbol: str
    close: Decimal
    quote_date: date
    fetched_at: datetime


def normalize_symbol(symbol: str) -> str:
    cleaned = (symbol or "").strip().upper()
    if not cleaned:
        raise ValueError("Symbol is required")
    return cleaned


class MarketDataService:
    def __init__(self) -> None:
        self.settings = get_settings()

    def _check_provider(self) -> None:
        provider = (self.settings.market_data_provider or "twelvedata").lower()
        if provider != "twelvedata":
            raise ValueError(f"Unsupported market data provider: {provider}")

    def latest_quote(self, symbol: str, *, on_date: Optional[date] = None) -> CloseQuote:
        self._check_provider()
        # The fetch is memoised per calendar day so prices refresh daily.
        return _fetch_twelvedata_close(
            normalize_symbol(symbol),
            on_date or date.today(),
            api_key=self.settings.market_data_api_key,
            timeout=self.settings.market_data_timeout_secs,
        )

    def latest_close(self, symbol: str) -> Decimal:
        return self.latest_quote(symbol).close

    def latest_closes(self, symbols: Iterable[str]) -> dict[str, Decimal]:
        prices: dict[str, Decimal] = {}
        for symbol in sorted({s for s in symbols if s}):
            try:
                prices[symbol] = self.latest_close(symbol)
            except (RuntimeError, ValueError):
                logger.warning(f"market_data_unavailable: symbol={symbol}", exc_info=True)
        return prices

    def close_history(
        self, symbol: str, days: int, *, on_date: Optional[date] = None
    ) -> dict[date, Decimal]:
        """Daily closes for the last ``days`` trading days, keyed by date."""
        self._check_provider()
        quotes = _fetch_twelvedata_history(
            normalize_symbol(symbol),
            on_date or date.today(),
            max(1, min(days, MAX_OUTPUTSIZE)),
            api_key=self.settings.market_data_api_key,
            timeout=self.settings.market_data_timeout_secs,
        )
        return {quote.quote_date: quote.close for quote in quotes}

    def close_histories(
        self, symbols: Iterable[str], days: int
    ) -> dict[str, dict[date, Decimal]]:
        histories: dict[str, dict[date, Decimal]] = {}
        for symbol in sorted({s for s in symbols if s}):
            try:
                histories[symbol] = self.close_history(symbol, days)
            except (RuntimeError, ValueError):
                logger.warning(
                    f"market_data_history_unavailable: symbol={symbol} days={days}",
                    exc_info=True,
                )
        return histories


def _request_time_series(
    symbol: str, outputsize: int, *, api_key: str, timeout: float
) -> list[CloseQuote]:
    query = urlencode(
        {
            "symbol": symbol,
            "interval": "1day",
            "outputsize": outputsize,
            "apikey": api_key,
        }
    )
    req = Request(f"{TWELVE_DATA_URL}?{query}", headers={"Accept": "application/json"})
    fetched_at = datetime.now(timezone.utc)
    try:
        with urlopen(req, timeout=timeout) as resp:
            payload = json.loads(resp.read().decode("utf-8"))
    except (OSError, HTTPException, json.JSONDecodeError) as exc:
        raise RuntimeError(f"Failed to fetch close price for {symbol}") from exc

    if payload.get("status") == "error":
        raise RuntimeError(
            f"Market data provider rejected {symbol}: {payload.get('message')}"
        )
    try:
        quotes = [
            CloseQuote(
                provider="twelvedata",
                symbol=symbol,
                close=Decimal(str(value["close"])),
                # Intraday stamps look like "2024-03-14 15:30:00".
                quote_date=date.fromisoformat(str(value["datetime"])[:10]),
                fetched_at=fetched_at,
            )
            for value in payload["values"]
        ]
    except (KeyError, TypeError, ValueError, InvalidOperation) as exc:
        raise RuntimeError("Unexpected market data provider response") from exc
    return quotes


@lru_cache(maxsize=512)
def _fetch_twelvedata_close(
    symbol: str, on_date: date, *, api_key: str, timeout: float
) -> CloseQuote:
    quotes = _request_time_series(symbol, 1, api_key=api_key, timeout=timeout)
    if not quotes:
        raise RuntimeError("Unexpected market data provider response")
    return quotes[0]


@lru_cache(maxsize=128)
def _fetch_twelvedata_history(
    symbol: str, on_date: date, outputsize: int, *, api_key: str, timeout: float
) -> tuple[CloseQuote, ...]:
    return tuple(
        _request_time_series(symbol, outputsize, api_key=api_key, timeout=timeout)
    )

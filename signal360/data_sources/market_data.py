"""Price series: the bar model, frame conversion and the yfinance collaborator.

The technical engine works on an OHLCV DataFrame with ``Open, High, Low,
Close, Volume`` columns ordered oldest -> newest.  Callers can hand it a
list of ``PriceBar`` or a DataFrame; ``MarketDataClient`` resolves a
ticker/timeframe handle into such a frame.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Iterable, Optional, Sequence, Union

import pandas as pd
import yfinance as yf

from signal360.config import TIMEFRAMES
from signal360.errors import InsufficientDataError, InvalidInputError
from signal360.utils.cache import DataCache
from signal360.utils.logger import setup_logger

logger = setup_logger("market_data")

OHLCV_COLUMNS = ["Open", "High", "Low", "Close", "Volume"]

# Timeframe -> (calendar days of history, bar interval)
_TIMEFRAME_WINDOWS = {
    "1D": (5, "5m"),
    "1W": (30, "1d"),
    "1M": (90, "1d"),
    "3M": (180, "1d"),
    "6M": (365, "1d"),
    "1Y": (730, "1d"),
}
_INVESTMENT_HISTORY_MULTIPLIER = 1.5
_MAX_BARS = 500


@dataclass(frozen=True)
class PriceBar:
    """One OHLCV sample. Ordering is the caller's job (oldest first)."""

    timestamp: Union[datetime, date, str]
    open: float
    high: float
    low: float
    close: float
    volume: float

    def to_dict(self) -> dict:
        ts = self.timestamp
        return {
            "timestamp": ts.isoformat() if hasattr(ts, "isoformat") else str(ts),
            "open": self.open,
            "high": self.high,
            "low": self.low,
            "close": self.close,
            "volume": self.volume,
        }


PriceSeries = Union[Sequence[PriceBar], pd.DataFrame]


def bars_to_frame(bars: Iterable[PriceBar]) -> pd.DataFrame:
    """Convert a bar sequence into an OHLCV DataFrame indexed by timestamp."""
    rows = list(bars)
    for bar in rows:
        if not isinstance(bar, PriceBar):
            raise InvalidInputError(f"Expected PriceBar, got {type(bar).__name__}")
    df = pd.DataFrame(
        {
            "Open": [b.open for b in rows],
            "High": [b.high for b in rows],
            "Low": [b.low for b in rows],
            "Close": [b.close for b in rows],
            "Volume": [b.volume for b in rows],
        },
        index=pd.Index([b.timestamp for b in rows], name="timestamp"),
        dtype=float,
    )
    return df


def normalize_frame(df: pd.DataFrame) -> pd.DataFrame:
    """Validate an OHLCV frame and return a float-typed copy.

    Accepts yfinance-style capitalized or lower-case column names.  Missing
    columns are an input error; malformed values are left for the
    data-quality assessment to flag.
    """
    if not isinstance(df, pd.DataFrame):
        raise InvalidInputError(f"Expected a DataFrame, got {type(df).__name__}")
    renamed = df.rename(columns={c.lower(): c for c in OHLCV_COLUMNS})
    missing = [c for c in OHLCV_COLUMNS if c not in renamed.columns]
    if missing:
        raise InvalidInputError(f"Price frame missing columns: {missing}")
    out = renamed[OHLCV_COLUMNS].apply(pd.to_numeric, errors="coerce").astype(float)
    out["Volume"] = out["Volume"].fillna(0.0)
    return out


def to_frame(series: PriceSeries) -> pd.DataFrame:
    if isinstance(series, pd.DataFrame):
        return normalize_frame(series)
    return bars_to_frame(series)


def frame_to_bars(df: pd.DataFrame) -> list[PriceBar]:
    df = normalize_frame(df)
    return [
        PriceBar(
            timestamp=idx,
            open=row.Open,
            high=row.High,
            low=row.Low,
            close=row.Close,
            volume=row.Volume,
        )
        for idx, row in zip(df.index, df.itertuples(index=False))
    ]


def history_window(timeframe: str, context: str) -> tuple[int, str]:
    """Days of history and bar interval needed for a timeframe/context."""
    if timeframe not in _TIMEFRAME_WINDOWS:
        raise InvalidInputError(
            f"timeframe must be one of: {', '.join(TIMEFRAMES)}"
        )
    days, interval = _TIMEFRAME_WINDOWS[timeframe]
    if context == "investment":
        days = int(days * _INVESTMENT_HISTORY_MULTIPLIER)
    return days, interval


class MarketDataClient:
    """Resolve (ticker, timeframe, context) into an OHLCV frame.

    Primary source is yfinance.  Frames are cached in an injected
    ``DataCache``; pass ``cache=None`` to disable caching.
    """

    def __init__(self, cache: Optional[DataCache] = None, today: Optional[date] = None):
        self.cache = cache
        self._today = today

    def _start_date(self, days: int) -> date:
        today = self._today or date.today()
        return today - timedelta(days=days)

    def get_price_history(self, ticker: str, timeframe: str, context: str) -> pd.DataFrame:
        """Get OHLCV history sized for the analysis horizon.

        Raises InsufficientDataError when the source returns nothing.
        """
        days, interval = history_window(timeframe, context)
        start = self._start_date(days)
        cache_key = f"{ticker}_{timeframe}_{context}_{start.isoformat()}"

        if self.cache is not None:
            cached = self.cache.get_df(cache_key)
            if cached is not None:
                logger.info("Cache hit: %s", cache_key)
                return cached

        logger.info("Fetching price history: %s (timeframe=%s, interval=%s)", ticker, timeframe, interval)
        stock = yf.Ticker(ticker)
        df = stock.history(start=start.isoformat(), interval=interval)
        if df is None or df.empty:
            raise InsufficientDataError(f"No price data returned for {ticker}")

        df = normalize_frame(df).tail(_MAX_BARS)
        if self.cache is not None:
            self.cache.set_df(cache_key, df)
        return df

    def get_bars(self, ticker: str, timeframe: str, context: str) -> list[PriceBar]:
        return frame_to_bars(self.get_price_history(ticker, timeframe, context))

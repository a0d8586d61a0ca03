"""Context parameter resolver: indicator periods and thresholds per context/timeframe."""

from __future__ import annotations

from dataclasses import asdict, dataclass

from signal360.config import CONTEXTS, TIMEFRAMES
from signal360.errors import InvalidInputError

PARAMETER_TABLE_VERSION = "2024.1"


@dataclass(frozen=True)
class ContextParameters:
    context: str
    timeframe: str
    sma_short: int
    sma_medium: int
    sma_long: int
    ema_fast: int
    ema_slow: int
    rsi_period: int
    stochastic_period: int
    bollinger_period: int
    atr_period: int
    rsi_oversold: float
    rsi_overbought: float
    sr_lookback: int
    sr_volume_fraction: float
    optimal_bars: int
    version: str = PARAMETER_TABLE_VERSION

    @property
    def is_trading(self) -> bool:
        return self.context == "trading"

    def to_dict(self) -> dict:
        return asdict(self)


# context/timeframe-group -> parameter row
_TABLE = {
    "investment": dict(
        sma_short=20, sma_medium=50, sma_long=200,
        ema_fast=12, ema_slow=26,
        rsi_period=21, stochastic_period=21,
        bollinger_period=20, atr_period=20,
        rsi_oversold=30.0, rsi_overbought=70.0,
        sr_lookback=50, sr_volume_fraction=0.3,
        optimal_bars=200,
    ),
    "trading_intraday": dict(
        sma_short=5, sma_medium=10, sma_long=20,
        ema_fast=5, ema_slow=13,
        rsi_period=9, stochastic_period=5,
        bollinger_period=10, atr_period=10,
        rsi_oversold=25.0, rsi_overbought=75.0,
        sr_lookback=20, sr_volume_fraction=0.5,
        optimal_bars=78,
    ),
    "trading": dict(
        sma_short=10, sma_medium=20, sma_long=50,
        ema_fast=8, ema_slow=21,
        rsi_period=14, stochastic_period=14,
        bollinger_period=20, atr_period=10,
        rsi_oversold=25.0, rsi_overbought=75.0,
        sr_lookback=20, sr_volume_fraction=0.5,
        optimal_bars=100,
    ),
}


def resolve_parameters(context: str, timeframe: str) -> ContextParameters:
    """Look up the parameter row for *context* and *timeframe*.

    Trading on ``1D`` uses the intraday row; every other trading timeframe
    shares one row.  Investment parameters do not vary by timeframe.
    """
    if context not in CONTEXTS:
        raise InvalidInputError(f"context must be one of: {', '.join(CONTEXTS)}")
    if timeframe not in TIMEFRAMES:
        raise InvalidInputError(f"timeframe must be one of: {', '.join(TIMEFRAMES)}")

    if context == "investment":
        row = _TABLE["investment"]
    elif timeframe == "1D":
        row = _TABLE["trading_intraday"]
    else:
        row = _TABLE["trading"]
    return ContextParameters(context=context, timeframe=timeframe, **row)

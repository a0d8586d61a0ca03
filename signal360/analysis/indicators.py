"""Indicator library: pure numeric functions over price/volume arrays.

Every function returns a plain float (or a small dict/list of floats) for
the *latest* bar.  When the series is shorter than the requested period the
documented neutral default is returned instead of NaN or an exception:

    SMA / EMA / ATR / OBV / VPT / A-D / CCI / momentum   -> 0.0
    RSI                                                   -> 50.0
    Stochastic %K / %D                                    -> 50.0
    Williams %R                                           -> -50.0

Callers must treat these defaults as "unavailable", not as a real reading.
TA-Lib supplies SMA, EMA and Bollinger Bands (its algorithms match the
definitions used here); the remaining indicators follow definitions TA-Lib
does not implement the same way (simple-average RSI, un-seeded OBV, SMA ATR)
and are written with numpy.
"""

from __future__ import annotations

import math
from typing import Dict, List, Optional

import numpy as np
import talib

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------
NEUTRAL_RSI = 50.0
NEUTRAL_STOCHASTIC = 50.0
NEUTRAL_WILLIAMS_R = -50.0
MACD_SIGNAL_FRACTION = 0.9     # simplified signal line: 0.9 * MACD
MACD_SIGNAL_PERIOD = 9         # textbook signal line when smoothing is on
STOCH_D_PERIOD = 3
CCI_CONSTANT = 0.015
FIBONACCI_RATIOS = (0.236, 0.382, 0.5, 0.618, 0.786)
_FIBONACCI_MIN_BARS = 50


def _arr(values) -> np.ndarray:
    return np.ascontiguousarray(np.asarray(values, dtype=np.float64))


def _finite(value: float, default: float) -> float:
    value = float(value)
    return value if math.isfinite(value) else default


# ---------------------------------------------------------------------------
# Trend
# ---------------------------------------------------------------------------
def sma(values, period: int) -> float:
    """Mean of the last *period* values; 0.0 if too short."""
    x = _arr(values)
    if period < 1 or len(x) < period:
        return 0.0
    if period == 1:
        return _finite(x[-1], 0.0)
    return _finite(talib.SMA(x, timeperiod=period)[-1], 0.0)


def ema_series(values, period: int) -> np.ndarray:
    """EMA seeded with SMA(period) of the first values; NaN before the seed."""
    x = _arr(values)
    if period < 2 or len(x) < period:
        return np.full(len(x), np.nan)
    return talib.EMA(x, timeperiod=period)


def ema(values, period: int) -> float:
    """Latest EMA value; 0.0 if too short.

    Seed = SMA(period) over the first *period* values, then
    ``EMA_t = x_t * k + EMA_{t-1} * (1 - k)`` with ``k = 2 / (period + 1)``.
    """
    x = _arr(values)
    if period < 1 or len(x) < period:
        return 0.0
    if period == 1:
        return _finite(x[-1], 0.0)
    return _finite(ema_series(x, period)[-1], 0.0)


def macd(values, fast: int = 12, slow: int = 26, smoothed: bool = False) -> Dict[str, float]:
    """MACD line, signal and histogram.

    With ``smoothed=False`` the signal line is ``0.9 * MACD`` (the
    fixed-fraction approximation used for score parity).  With
    ``smoothed=True`` it is the 9-period EMA of the MACD line.
    """
    fast_ema = ema(values, fast)
    slow_ema = ema(values, slow)
    line = fast_ema - slow_ema

    if not smoothed:
        signal = line * MACD_SIGNAL_FRACTION
    else:
        fast_s = ema_series(values, fast)
        slow_s = ema_series(values, slow)
        macd_line = (fast_s - slow_s)
        macd_line = macd_line[~np.isnan(macd_line)]
        if len(macd_line) >= MACD_SIGNAL_PERIOD:
            signal = ema(macd_line, MACD_SIGNAL_PERIOD)
        else:
            signal = line

    return {"macd": line, "signal": signal, "histogram": line - signal}


def bollinger_bands(values, period: int = 20, num_std: float = 2.0) -> Dict[str, float]:
    """Middle = SMA(period); bands at ``num_std`` population standard deviations."""
    x = _arr(values)
    middle = sma(x, period)
    if period < 2 or len(x) < period:
        return {"upper": middle, "middle": middle, "lower": middle}
    upper, mid, lower = talib.BBANDS(
        x, timeperiod=period, nbdevup=num_std, nbdevdn=num_std, matype=0,
    )
    return {
        "upper": _finite(upper[-1], middle),
        "middle": _finite(mid[-1], middle),
        "lower": _finite(lower[-1], middle),
    }


def trend_strength(closes, period: int) -> float:
    """Percentage of the last *period* closes above SMA(period)."""
    x = _arr(closes)
    if period < 1 or len(x) < period:
        return 0.0
    avg = sma(x, period)
    above = int(np.sum(x[-period:] > avg))
    return above / period * 100.0


def long_term_trend(closes) -> float:
    """Percent change of the last-50 mean over the preceding-50 mean."""
    x = _arr(closes)
    if len(x) < 100:
        return 0.0
    recent = float(np.mean(x[-50:]))
    older = float(np.mean(x[-100:-50]))
    if older == 0:
        return 0.0
    return _finite((recent - older) / older * 100.0, 0.0)


def trend_consistency(closes, period: int) -> float:
    """100 minus mean absolute deviation from SMA as a percent of SMA."""
    x = _arr(closes)
    if period < 1 or len(x) < period:
        return 0.0
    avg = sma(x, period)
    if avg == 0:
        return 0.0
    avg_dev = float(np.mean(np.abs(x[-period:] - avg)))
    return max(0.0, _finite(100.0 - avg_dev / avg * 100.0, 0.0))


# ---------------------------------------------------------------------------
# Momentum
# ---------------------------------------------------------------------------
def rsi(values, period: int = 14) -> float:
    """RSI over the last *period* deltas using simple averages.

    ``RS = avg_gain / avg_loss``; ``RSI = 100 - 100 / (1 + RS)``; 100 when
    there are no losses; 50 when fewer than ``period + 1`` values.
    """
    x = _arr(values)
    if period < 1 or len(x) < period + 1:
        return NEUTRAL_RSI
    deltas = np.diff(x[-(period + 1):])
    if np.isnan(deltas).any():
        return NEUTRAL_RSI
    avg_gain = float(np.sum(deltas[deltas > 0])) / period
    avg_loss = float(-np.sum(deltas[deltas < 0])) / period
    if avg_loss == 0:
        return 100.0
    rs = avg_gain / avg_loss
    return 100.0 - 100.0 / (1.0 + rs)


def stochastic(highs, lows, closes, period: int = 14, smoothed: bool = False) -> Dict[str, float]:
    """Stochastic oscillator.

    ``%K = (close - lowest low) / (highest high - lowest low) * 100``.
    ``%D`` equals ``%K`` unless ``smoothed`` is set, in which case it is the
    3-bar SMA of %K.
    """
    h, lo, c = _arr(highs), _arr(lows), _arr(closes)
    if period < 1 or len(h) < period:
        return {"k": NEUTRAL_STOCHASTIC, "d": NEUTRAL_STOCHASTIC}

    def _k(end: int) -> float:
        hh = float(np.max(h[end - period:end]))
        ll = float(np.min(lo[end - period:end]))
        if hh == ll:
            return NEUTRAL_STOCHASTIC
        return _finite((c[end - 1] - ll) / (hh - ll) * 100.0, NEUTRAL_STOCHASTIC)

    n = len(h)
    k = _k(n)
    if smoothed and n >= period + STOCH_D_PERIOD - 1:
        d = float(np.mean([_k(n - i) for i in range(STOCH_D_PERIOD)]))
    else:
        d = k
    return {"k": k, "d": d}


def williams_r(highs, lows, closes, period: int = 14) -> float:
    """Williams %R in [-100, 0]; -50 if too short or flat."""
    h, lo, c = _arr(highs), _arr(lows), _arr(closes)
    if period < 1 or len(h) < period:
        return NEUTRAL_WILLIAMS_R
    hh = float(np.max(h[-period:]))
    ll = float(np.min(lo[-period:]))
    if hh == ll:
        return NEUTRAL_WILLIAMS_R
    return _finite((hh - c[-1]) / (hh - ll) * -100.0, NEUTRAL_WILLIAMS_R)


def momentum(closes, period: int = 10) -> float:
    """Percent change of the latest close versus *period* bars earlier."""
    x = _arr(closes)
    if period < 1 or len(x) <= period:
        return 0.0
    past = x[-1 - period]
    if past == 0:
        return 0.0
    return _finite((x[-1] - past) / past * 100.0, 0.0)


def rate_of_change(closes, period: int = 12) -> float:
    return momentum(closes, period)


def commodity_channel_index(highs, lows, closes, period: int = 20) -> float:
    """CCI on typical price; 0.0 if too short or mean deviation is zero."""
    h, lo, c = _arr(highs), _arr(lows), _arr(closes)
    if period < 1 or len(h) < period:
        return 0.0
    tp = (h + lo + c) / 3.0
    sma_tp = sma(tp, period)
    mean_dev = float(np.mean(np.abs(tp[-period:] - sma_tp)))
    if mean_dev == 0:
        return 0.0
    return _finite((tp[-1] - sma_tp) / (CCI_CONSTANT * mean_dev), 0.0)


def momentum_divergence(closes, rsi_period: int = 14) -> int:
    """1 when 10-bar price direction and RSI bias disagree, else 0."""
    x = _arr(closes)
    if len(x) < 20:
        return 0
    price_direction = x[-1] - x[-10]
    rsi_direction = rsi(x, rsi_period) - 50.0
    if (price_direction > 0 and rsi_direction < 0) or (price_direction < 0 and rsi_direction > 0):
        return 1
    return 0


# ---------------------------------------------------------------------------
# Volatility
# ---------------------------------------------------------------------------
def true_range(highs, lows, closes) -> np.ndarray:
    """True range for bars 1..n-1: max(H-L, |H-prevC|, |L-prevC|)."""
    h, lo, c = _arr(highs), _arr(lows), _arr(closes)
    if len(h) < 2:
        return np.array([], dtype=np.float64)
    prev_close = c[:-1]
    return np.maximum.reduce([
        h[1:] - lo[1:],
        np.abs(h[1:] - prev_close),
        np.abs(lo[1:] - prev_close),
    ])


def atr(highs, lows, closes, period: int = 14) -> float:
    """SMA(period) of the true range; 0.0 if fewer than period + 1 bars."""
    if period < 1 or len(_arr(highs)) < period + 1:
        return 0.0
    return sma(true_range(highs, lows, closes), period)


# ---------------------------------------------------------------------------
# Volume
# ---------------------------------------------------------------------------
def on_balance_volume(closes, volumes) -> float:
    """Running sum of +volume on up closes and -volume on down closes."""
    c, v = _arr(closes), _arr(volumes)
    if len(c) < 2:
        return 0.0
    direction = np.sign(np.diff(c))
    return _finite(np.nansum(direction * v[1:]), 0.0)


def volume_price_trend(closes, volumes) -> float:
    """Running sum of percentage price change times volume."""
    c, v = _arr(closes), _arr(volumes)
    if len(c) < 2:
        return 0.0
    prev = c[:-1]
    with np.errstate(divide="ignore", invalid="ignore"):
        change = np.where(prev != 0, (c[1:] - prev) / prev, 0.0)
    return _finite(np.nansum(change * v[1:]), 0.0)


def accumulation_distribution(highs, lows, closes, volumes) -> float:
    """Sum of close-location value times volume; flat bars contribute nothing."""
    h, lo, c, v = _arr(highs), _arr(lows), _arr(closes), _arr(volumes)
    if len(h) == 0:
        return 0.0
    rng = h - lo
    with np.errstate(divide="ignore", invalid="ignore"):
        clv = np.where(rng != 0, ((c - lo) - (h - c)) / rng, 0.0)
    return _finite(np.nansum(clv * v), 0.0)


def volume_ratio(volumes, period: int = 20) -> float:
    """Latest volume over SMA(period) of volume; 1.0 when unavailable."""
    v = _arr(volumes)
    avg = sma(v, period)
    if len(v) == 0 or avg <= 0:
        return 1.0
    return _finite(v[-1] / avg, 1.0)


# ---------------------------------------------------------------------------
# Price levels
# ---------------------------------------------------------------------------
def local_extrema(values, mode: str = "trough", volumes=None, min_volume: float = 0.0) -> List[float]:
    """Values strictly below (trough) or above (peak) both neighbours.

    When *volumes* is given, only bars with volume above *min_volume* count.
    """
    x = _arr(values)
    vol = _arr(volumes) if volumes is not None else None
    levels: List[float] = []
    for i in range(1, len(x) - 1):
        if mode == "trough":
            is_ext = x[i] < x[i - 1] and x[i] < x[i + 1]
        else:
            is_ext = x[i] > x[i - 1] and x[i] > x[i + 1]
        if not is_ext:
            continue
        if vol is not None and not vol[i] > min_volume:
            continue
        levels.append(float(x[i]))
    return levels


def fibonacci_levels(closes) -> Dict[str, List[float]]:
    """Retracements of the close range split into support/resistance by price."""
    x = _arr(closes)
    if len(x) < _FIBONACCI_MIN_BARS:
        return {"support": [], "resistance": []}
    high, low = float(np.nanmax(x)), float(np.nanmin(x))
    current = float(x[-1])
    support: List[float] = []
    resistance: List[float] = []
    for ratio in FIBONACCI_RATIOS:
        level = high - (high - low) * ratio
        (support if level < current else resistance).append(level)
    return {"support": support, "resistance": resistance}


def support_resistance(
    highs,
    lows,
    closes,
    volumes,
    lookback: int = 50,
    volume_fraction: Optional[float] = 0.3,
    top_n: int = 3,
    include_fibonacci: bool = False,
    max_levels: int = 5,
) -> Dict[str, object]:
    """Pivot levels plus clustered support/resistance from the lookback window.

    pivot = (H + L + C) / 3 of the latest bar; R1/S1 and R2/S2 reflect
    around it.  Additional levels are local extrema in the window (volume
    filtered against ``volume_fraction`` of the window's max volume when
    given), capped to ``top_n`` (supports highest first, resistances lowest
    first).  Fibonacci retracements over the full series can be appended.
    """
    h_all, lo_all, c_all, v_all = _arr(highs), _arr(lows), _arr(closes), _arr(volumes)
    h, lo, c, v = h_all[-lookback:], lo_all[-lookback:], c_all[-lookback:], v_all[-lookback:]
    if len(h) == 0:
        return {
            "support_levels": [], "resistance_levels": [], "pivot_point": 0.0,
            "support_1": 0.0, "support_2": 0.0, "resistance_1": 0.0, "resistance_2": 0.0,
        }

    high, low, close = float(h[-1]), float(lo[-1]), float(c[-1])
    pivot = (high + low + close) / 3.0

    if volume_fraction is None:
        supports = local_extrema(lo, "trough")
        resistances = local_extrema(h, "peak")
    else:
        min_volume = float(np.nanmax(v)) * volume_fraction if len(v) else 0.0
        supports = local_extrema(lo, "trough", v, min_volume)
        resistances = local_extrema(h, "peak", v, min_volume)
    supports = sorted(supports, reverse=True)[:top_n]
    resistances = sorted(resistances)[:top_n]

    if include_fibonacci:
        fib = fibonacci_levels(c_all)
        supports.extend(fib["support"])
        resistances.extend(fib["resistance"])

    return {
        "support_levels": supports[:max_levels],
        "resistance_levels": resistances[:max_levels],
        "pivot_point": pivot,
        "support_1": 2 * pivot - high,
        "support_2": pivot - (high - low),
        "resistance_1": 2 * pivot - low,
        "resistance_2": pivot + (high - low),
    }

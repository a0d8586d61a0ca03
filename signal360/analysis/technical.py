"""Context-aware technical analysis engine.

Turns an OHLCV bar sequence into an ``AnalysisOutput``:

    bars -> IndicatorSet -> factor rules -> weighted score + confidence

Indicator periods and thresholds come from ``resolve_parameters`` (context
and timeframe); rule weights and confidences come from ``TechnicalConfig``.
The analyzer keeps no state between calls beyond its configuration.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Dict, List, Mapping, Optional, Tuple

import numpy as np
import pandas as pd

from signal360.analysis import indicators as ind
from signal360.analysis.base import AnalysisFactor, AnalysisOutput, BaseAnalyzer, round_score
from signal360.analysis.parameters import ContextParameters, resolve_parameters
from signal360.config import TechnicalConfig, default_timeframe
from signal360.data_sources.market_data import MarketDataClient, PriceSeries, to_frame
from signal360.errors import InsufficientDataError
from signal360.utils.logger import setup_logger

logger = setup_logger("technical")

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------
POSITIVE_FACTOR_SCORE = 85.0
NEGATIVE_FACTOR_SCORE = 15.0
NEUTRAL_SCORE = 50

_FAST_RSI_PERIOD = 5
_SLOW_RSI_PERIOD = 30
_MOMENTUM_PERIOD = 10
_ROC_PERIOD = 12
_CCI_PERIOD = 20
_VOLUME_SMA_PERIOD = 20

# Emphasis groups for the score weighting
_TRADING_MOMENTUM_RULES = frozenset({
    "macd_bullish", "rsi_oversold", "rsi_overbought", "fast_rsi_momentum", "rate_of_change",
})
_LONG_HORIZON_RULES = frozenset({"long_term_uptrend", "trend_consistency"})
_SHORT_HORIZON_RULES = frozenset({"intraday_trend"})

_TRADING_TIMEFRAME_MULT = {"1D": 1.3, "1W": 1.1}
_TRADING_MOMENTUM_MULT = 1.2
_LONG_HORIZON_MULT = 1.3
_SHORT_HORIZON_MULT = 0.7

# Confidence multipliers
_TRADING_TIMEFRAME_CONFIDENCE = {"1D": 0.75, "1W": 0.85, "1M": 0.95}
_TRADING_TIMEFRAME_CONFIDENCE_DEFAULT = 0.9
_INVESTMENT_TIMEFRAME_CONFIDENCE = {"1D": 0.6, "1W": 0.7, "1M": 0.9, "3M": 1.0, "6M": 1.0, "1Y": 1.0}
_INVESTMENT_TIMEFRAME_CONFIDENCE_DEFAULT = 0.85
_MIN_CONFIDENCE = 0.1
_MAX_CONFIDENCE = 1.0


# ---------------------------------------------------------------------------
# Data classes
# ---------------------------------------------------------------------------
@dataclass(frozen=True)
class DataQualityReport:
    """Non-fatal data problems found in a bar sequence.

    Flags only lower confidence; they never abort the analysis.
    """

    bar_count: int
    zero_volume_bars: int = 0
    invalid_bars: int = 0           # high < low, close <= 0 or missing close
    inconsistent_bars: int = 0      # open/close outside the high-low range
    volume_consistency: float = 0.0
    average_volatility: float = 0.0
    flags: Tuple[str, ...] = ()

    @property
    def has_zero_volume(self) -> bool:
        return self.zero_volume_bars > 0

    @property
    def has_invalid_prices(self) -> bool:
        return self.invalid_bars > 0

    @property
    def has_inconsistent_bars(self) -> bool:
        return self.inconsistent_bars > 0

    def to_dict(self) -> dict:
        return {
            "bar_count": self.bar_count,
            "zero_volume_bars": self.zero_volume_bars,
            "invalid_bars": self.invalid_bars,
            "inconsistent_bars": self.inconsistent_bars,
            "volume_consistency": round(self.volume_consistency, 4),
            "average_volatility": round(self.average_volatility, 6),
            "flags": list(self.flags),
        }


@dataclass(frozen=True)
class IndicatorSet:
    """Read-only indicator snapshot for one bar sequence."""

    trend: Mapping[str, float]
    momentum: Mapping[str, float]
    volume: Mapping[str, float]
    support_resistance: Mapping[str, object]

    def __post_init__(self) -> None:
        for name in ("trend", "momentum", "volume"):
            object.__setattr__(self, name, MappingProxyType(dict(getattr(self, name))))
        sr = dict(self.support_resistance)
        sr["support_levels"] = tuple(sr.get("support_levels", ()))
        sr["resistance_levels"] = tuple(sr.get("resistance_levels", ()))
        object.__setattr__(self, "support_resistance", MappingProxyType(sr))

    def __getitem__(self, name: str) -> float:
        for group in (self.trend, self.momentum, self.volume):
            if name in group:
                return group[name]
        raise KeyError(name)

    def get(self, name: str, default: float = 0.0) -> float:
        try:
            return self[name]
        except KeyError:
            return default

    def to_dict(self) -> dict:
        sr = dict(self.support_resistance)
        sr["support_levels"] = list(sr["support_levels"])
        sr["resistance_levels"] = list(sr["resistance_levels"])
        return {
            "trend_indicators": dict(self.trend),
            "momentum_indicators": dict(self.momentum),
            "volume_indicators": dict(self.volume),
            "support_resistance": sr,
        }


@dataclass(frozen=True)
class FactorSignal:
    """A fired rule: its tag plus the factor it produced."""

    rule: str
    factor: AnalysisFactor


# =====================================================================
# Data quality
# =====================================================================
def assess_data_quality(df: pd.DataFrame) -> DataQualityReport:
    """Scan bars for zero volume, malformed prices and volume/price stability."""
    n = len(df)
    if n == 0:
        return DataQualityReport(bar_count=0, flags=("empty",))

    o = df["Open"].to_numpy(dtype=float)
    h = df["High"].to_numpy(dtype=float)
    lo = df["Low"].to_numpy(dtype=float)
    c = df["Close"].to_numpy(dtype=float)
    v = df["Volume"].to_numpy(dtype=float)

    zero_volume = int(np.sum(v == 0))
    with np.errstate(invalid="ignore"):
        invalid = int(np.sum((h < lo) | (c <= 0) | ~np.isfinite(c)))
        inconsistent = int(np.sum((h < np.maximum(o, c)) | (lo > np.minimum(o, c))))

    avg_volume = float(np.nanmean(v)) if n else 0.0
    volume_consistency = float(np.sum(v > avg_volume * 0.1)) / n

    prev, cur = c[:-1], c[1:]
    valid = np.isfinite(prev) & np.isfinite(cur) & (prev > 0)
    if valid.any():
        average_volatility = float(np.mean(np.abs(cur[valid] - prev[valid]) / prev[valid]))
    else:
        average_volatility = 0.0

    flags: List[str] = []
    if zero_volume:
        flags.append("zero_volume")
    if invalid:
        flags.append("invalid_prices")
    if inconsistent:
        flags.append("ohlc_inconsistent")

    return DataQualityReport(
        bar_count=n,
        zero_volume_bars=zero_volume,
        invalid_bars=invalid,
        inconsistent_bars=inconsistent,
        volume_consistency=volume_consistency,
        average_volatility=average_volatility,
        flags=tuple(flags),
    )


# =====================================================================
# Core Technical Analyzer
# =====================================================================
class TechnicalAnalyzer:
    """Compute indicators, fire factor rules, and score a bar sequence."""

    def __init__(self, config: Optional[TechnicalConfig] = None) -> None:
        self.config = config or TechnicalConfig()

    # ------------------------------------------------------------------
    # 1. Indicators
    # ------------------------------------------------------------------
    def compute_indicators(self, df: pd.DataFrame, params: ContextParameters) -> IndicatorSet:
        """Compute the context's indicator set from an OHLCV frame."""
        close = df["Close"].to_numpy(dtype=float)
        high = df["High"].to_numpy(dtype=float)
        low = df["Low"].to_numpy(dtype=float)
        volume = df["Volume"].to_numpy(dtype=float)
        smoothed = self.config.smoothed_signals

        macd = ind.macd(close, params.ema_fast, params.ema_slow, smoothed=smoothed)
        bands = ind.bollinger_bands(close, params.bollinger_period)
        trend: Dict[str, float] = {
            "sma_short": ind.sma(close, params.sma_short),
            "sma_medium": ind.sma(close, params.sma_medium),
            "sma_long": ind.sma(close, params.sma_long),
            "ema_fast": ind.ema(close, params.ema_fast),
            "ema_slow": ind.ema(close, params.ema_slow),
            "macd": macd["macd"],
            "macd_signal": macd["signal"],
            "macd_histogram": macd["histogram"],
            "bollinger_upper": bands["upper"],
            "bollinger_middle": bands["middle"],
            "bollinger_lower": bands["lower"],
        }
        if params.is_trading:
            trend["sma_5"] = ind.sma(close, 5)
            trend["sma_10"] = ind.sma(close, 10)
            trend["ema_5"] = ind.ema(close, 5)
            trend["trend_strength"] = ind.trend_strength(close, params.sma_short)
        else:
            trend["sma_100"] = ind.sma(close, 100)
            trend["long_term_trend"] = ind.long_term_trend(close)
            trend["trend_consistency"] = ind.trend_consistency(close, params.sma_long)

        stoch = ind.stochastic(high, low, close, params.stochastic_period, smoothed=smoothed)
        momentum: Dict[str, float] = {
            "rsi": ind.rsi(close, params.rsi_period),
            "stochastic_k": stoch["k"],
            "stochastic_d": stoch["d"],
            "williams_r": ind.williams_r(high, low, close, params.stochastic_period),
            "atr": ind.atr(high, low, close, params.atr_period),
        }
        if params.is_trading:
            momentum["rsi_fast"] = ind.rsi(close, _FAST_RSI_PERIOD)
            momentum["momentum"] = ind.momentum(close, _MOMENTUM_PERIOD)
            momentum["rate_of_change"] = ind.rate_of_change(close, _ROC_PERIOD)
        else:
            momentum["rsi_slow"] = ind.rsi(close, _SLOW_RSI_PERIOD)
            momentum["commodity_channel_index"] = ind.commodity_channel_index(
                high, low, close, _CCI_PERIOD,
            )
            momentum["momentum_divergence"] = float(ind.momentum_divergence(close))

        volume_ind = {
            "volume_sma_20": ind.sma(volume, _VOLUME_SMA_PERIOD),
            "volume_ratio": ind.volume_ratio(volume, _VOLUME_SMA_PERIOD),
            "on_balance_volume": ind.on_balance_volume(close, volume),
            "volume_price_trend": ind.volume_price_trend(close, volume),
            "accumulation_distribution": ind.accumulation_distribution(high, low, close, volume),
        }

        sr = ind.support_resistance(
            high, low, close, volume,
            lookback=params.sr_lookback,
            volume_fraction=params.sr_volume_fraction,
            include_fibonacci=not params.is_trading,
        )
        return IndicatorSet(trend=trend, momentum=momentum, volume=volume_ind, support_resistance=sr)

    # ------------------------------------------------------------------
    # 2. Factor rules
    # ------------------------------------------------------------------
    def _fire(
        self,
        out: List[FactorSignal],
        rule: str,
        factor_type: str,
        description: str,
        context: str,
    ) -> None:
        cfg = self.config.rules[rule]
        out.append(FactorSignal(
            rule=rule,
            factor=AnalysisFactor(
                category="technical",
                type=factor_type,
                description=description,
                weight=cfg.weight_for(context),
                confidence=cfg.confidence,
            ),
        ))

    def generate_factors(
        self,
        indicators: IndicatorSet,
        current_price: float,
        params: ContextParameters,
    ) -> List[FactorSignal]:
        """Run every factor rule independently; each fires at most once.

        An indicator still at its "unavailable" neutral value (e.g. an SMA
        of 0 because the series is shorter than its period) never fires.
        """
        cfg = self.config
        ctx = params.context
        price = current_price
        t, m, v = indicators.trend, indicators.momentum, indicators.volume
        out: List[FactorSignal] = []

        if not (price > 0 and math.isfinite(price)):
            return out

        # --- Context-specific trend ------------------------------------
        if params.is_trading:
            sma_5 = t.get("sma_5", 0.0)
            if params.timeframe == "1D" and sma_5 and price > sma_5:
                self._fire(out, "intraday_trend", "positive",
                           f"Intraday bullish trend - price above 5-period SMA ({sma_5:.2f})", ctx)
            strength = t.get("trend_strength", 0.0)
            if strength > cfg.trend_strength_threshold:
                self._fire(out, "trend_strength", "positive",
                           f"Strong short-term trend strength ({strength:.1f}%)", ctx)
        else:
            sma_long = t["sma_long"]
            long_trend = t.get("long_term_trend", 0.0)
            if sma_long and price > sma_long and long_trend > cfg.long_term_trend_threshold:
                self._fire(out, "long_term_uptrend", "positive",
                           f"Strong long-term uptrend - price above {params.sma_long}-period SMA "
                           f"with {long_trend:.1f}% trend", ctx)
            consistency = t.get("trend_consistency", 0.0)
            if consistency > cfg.trend_consistency_threshold:
                self._fire(out, "trend_consistency", "positive",
                           f"High trend consistency ({consistency:.1f}%) indicates stable direction", ctx)

        # --- Moving average alignment -----------------------------------
        sma_short, sma_medium = t["sma_short"], t["sma_medium"]
        if sma_short and sma_medium:
            if price > sma_short > sma_medium:
                self._fire(out, "bullish_alignment", "positive",
                           "Price above short-term moving averages with bullish alignment", ctx)
            if price < sma_short < sma_medium:
                self._fire(out, "bearish_alignment", "negative",
                           "Price below short-term moving averages with bearish alignment", ctx)

        # --- MACD ---------------------------------------------------------
        if t["ema_slow"] and t["macd"] > t["macd_signal"] and t["macd_histogram"] > 0:
            self._fire(out, "macd_bullish", "positive",
                       "MACD showing bullish momentum with positive histogram", ctx)

        # --- RSI extremes ---------------------------------------------------
        rsi = m["rsi"]
        if rsi < params.rsi_oversold:
            self._fire(out, "rsi_oversold", "positive",
                       f"RSI oversold at {rsi:.1f}, potential reversal opportunity", ctx)
        elif rsi > params.rsi_overbought:
            self._fire(out, "rsi_overbought", "negative",
                       f"RSI overbought at {rsi:.1f}, potential pullback risk", ctx)

        # --- Context-specific momentum ------------------------------------
        if params.is_trading:
            rsi_fast = m.get("rsi_fast", ind.NEUTRAL_RSI)
            if rsi_fast > cfg.fast_rsi_threshold:
                self._fire(out, "fast_rsi_momentum", "positive",
                           f"Strong short-term momentum (Fast RSI: {rsi_fast:.1f})", ctx)
            roc = m.get("rate_of_change", 0.0)
            if abs(roc) > cfg.rate_of_change_threshold:
                self._fire(out, "rate_of_change", "positive" if roc > 0 else "negative",
                           f"Significant price momentum: {roc:.1f}% rate of change", ctx)
        else:
            divergence = m.get("momentum_divergence")
            if divergence == 0:
                self._fire(out, "momentum_aligned", "positive",
                           "Price and momentum indicators aligned, confirming trend direction", ctx)
            elif divergence == 1:
                self._fire(out, "momentum_divergence", "negative",
                           "Momentum divergence detected, potential trend reversal warning", ctx)

        # --- Bollinger Bands ----------------------------------------------
        if t["bollinger_middle"]:
            if price < t["bollinger_lower"]:
                self._fire(out, "bollinger_lower", "positive",
                           "Price below lower Bollinger Band, potential bounce", ctx)
            elif price > t["bollinger_upper"]:
                self._fire(out, "bollinger_upper", "negative",
                           "Price above upper Bollinger Band, potential pullback", ctx)

        # --- Volume ---------------------------------------------------------
        ratio = v["volume_ratio"]
        if ratio > cfg.volume_ratio_threshold:
            self._fire(out, "volume_confirmation", "positive",
                       f"High volume confirmation at {ratio * 100:.0f}% of average", ctx)

        # --- Support / resistance proximity -------------------------------
        sr = indicators.support_resistance
        near = cfg.proximity_pct
        if any(abs(price - level) / price < near for level in sr["support_levels"]):
            self._fire(out, "near_support", "positive",
                       "Price near key support level, potential bounce", ctx)
        if any(abs(price - level) / price < near for level in sr["resistance_levels"]):
            self._fire(out, "near_resistance", "negative",
                       "Price near key resistance level, potential rejection", ctx)

        return out

    # ------------------------------------------------------------------
    # 3. Scoring
    # ------------------------------------------------------------------
    @staticmethod
    def _weight_multiplier(rule: str, context: str, timeframe: str) -> float:
        mult = 1.0
        if context == "trading":
            mult *= _TRADING_TIMEFRAME_MULT.get(timeframe, 1.0)
            if rule in _TRADING_MOMENTUM_RULES:
                mult *= _TRADING_MOMENTUM_MULT
        else:
            if rule in _LONG_HORIZON_RULES:
                mult *= _LONG_HORIZON_MULT
            if rule in _SHORT_HORIZON_RULES:
                mult *= _SHORT_HORIZON_MULT
        return mult

    def compute_score(self, signals: List[FactorSignal], context: str, timeframe: str) -> int:
        """Weighted average of factor scores (85 positive / 15 negative).

        Investment scores are compressed toward the middle
        (``0.95 * raw + 2.5``).  No factors -> 50.
        """
        if not signals:
            return NEUTRAL_SCORE

        total_score = 0.0
        total_weight = 0.0
        for sig in signals:
            f = sig.factor
            factor_score = POSITIVE_FACTOR_SCORE if f.is_positive else NEGATIVE_FACTOR_SCORE
            adjusted = f.weight * f.confidence * self._weight_multiplier(sig.rule, context, timeframe)
            total_score += factor_score * adjusted
            total_weight += adjusted

        raw = total_score / total_weight if total_weight > 0 else float(NEUTRAL_SCORE)
        final = raw if context == "trading" else raw * 0.95 + 2.5
        return round_score(final)

    def compute_confidence(
        self,
        quality: DataQualityReport,
        params: ContextParameters,
    ) -> float:
        """Chain data-sufficiency, timeframe and data-quality multipliers.

        Result is clamped to [0.1, 1.0].
        """
        confidence = 1.0
        n = quality.bar_count
        optimal = params.optimal_bars

        if n < optimal * 0.5:
            confidence *= 0.7
        if n < optimal * 0.25:
            confidence *= 0.6
        if n >= optimal:
            confidence *= 1.1

        if params.is_trading:
            confidence *= _TRADING_TIMEFRAME_CONFIDENCE.get(
                params.timeframe, _TRADING_TIMEFRAME_CONFIDENCE_DEFAULT,
            )
        else:
            confidence *= _INVESTMENT_TIMEFRAME_CONFIDENCE.get(
                params.timeframe, _INVESTMENT_TIMEFRAME_CONFIDENCE_DEFAULT,
            )

        if quality.has_zero_volume:
            confidence *= 0.8
        if quality.has_invalid_prices:
            confidence *= 0.6
        if quality.has_inconsistent_bars:
            confidence *= 0.9

        if quality.volume_consistency > 0.8:
            confidence *= 1.05
        if quality.volume_consistency < 0.5:
            confidence *= 0.9

        vol = quality.average_volatility
        if params.is_trading:
            if 0.01 < vol < 0.05:
                confidence *= 1.1
            if vol > 0.1:
                confidence *= 0.8
        else:
            if vol < 0.03:
                confidence *= 1.1
            if vol > 0.08:
                confidence *= 0.8

        return max(_MIN_CONFIDENCE, min(_MAX_CONFIDENCE, confidence))

    # ------------------------------------------------------------------
    # 4. Full analysis
    # ------------------------------------------------------------------
    def analyze(
        self,
        ticker: str,
        bars: PriceSeries,
        context: str,
        timeframe: Optional[str] = None,
    ) -> AnalysisOutput:
        """Run the technical analysis for one ticker.

        Raises:
            InvalidInputError: unknown context/timeframe or malformed bars.
            InsufficientDataError: fewer than ``config.min_bars`` bars.
        """
        timeframe = timeframe or default_timeframe(context)
        params = resolve_parameters(context, timeframe)
        df = to_frame(bars)

        if len(df) < self.config.min_bars:
            raise InsufficientDataError(
                f"Insufficient price data for {ticker}: {len(df)} bars",
                details=f"At least {self.config.min_bars} bars are required",
            )

        logger.info("Technical analysis started: %s (context=%s, timeframe=%s, bars=%d)",
                    ticker, context, timeframe, len(df))

        quality = assess_data_quality(df)
        if quality.flags:
            logger.warning("Data quality issues for %s: %s", ticker, ", ".join(quality.flags))

        indicators = self.compute_indicators(df, params)
        current_price = float(df["Close"].iloc[-1])
        if not math.isfinite(current_price):
            current_price = 0.0

        signals = self.generate_factors(indicators, current_price, params)
        score = self.compute_score(signals, context, timeframe)
        confidence = self.compute_confidence(quality, params)

        logger.info("Technical analysis completed for %s: score=%d confidence=%.2f factors=%d",
                    ticker, score, confidence, len(signals))

        details = indicators.to_dict()
        details.update({
            "data_quality": quality.to_dict(),
            "timeframe_used": timeframe,
            "current_price": current_price,
            "bar_count": len(df),
            "parameters_version": params.version,
        })
        return AnalysisOutput(
            score=score,
            factors=tuple(s.factor for s in signals),
            details=details,
            confidence=confidence,
        )


# =====================================================================
# Plugin adapter for the synthesis pipeline
# =====================================================================
class TechnicalAnalyzerPlugin(BaseAnalyzer):
    """Pipeline-compatible wrapper: fetches bars, then runs TechnicalAnalyzer."""

    name = "technical"

    def __init__(
        self,
        market_data: Optional[MarketDataClient] = None,
        analyzer: Optional[TechnicalAnalyzer] = None,
    ) -> None:
        self._market_data = market_data or MarketDataClient()
        self._analyzer = analyzer or TechnicalAnalyzer()

    def analyze(self, ticker: str, context: str, timeframe: Optional[str] = None) -> AnalysisOutput:
        timeframe = timeframe or default_timeframe(context)
        df = self._market_data.get_price_history(ticker, timeframe, context)
        return self._analyzer.analyze(ticker, df, context, timeframe)

    def analyze_bars(
        self,
        ticker: str,
        bars: PriceSeries,
        context: str,
        timeframe: Optional[str] = None,
    ) -> AnalysisOutput:
        return self._analyzer.analyze(ticker, bars, context, timeframe)

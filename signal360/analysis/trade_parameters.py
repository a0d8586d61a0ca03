"""Trade parameters derived from a synthesis score and the technical details.

Entry, stop loss and take-profit levels are placed from ATR-based volatility
and the support/resistance levels found by the technical engine.  Position
size is a quarter-Kelly fraction of the portfolio.
"""

from __future__ import annotations

import math
import numbers
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

from signal360.analysis.base import AnalysisOutput, check_range
from signal360.errors import InvalidInputError
from signal360.utils.logger import setup_logger

logger = setup_logger("trade_parameters")

_MIN_VOLATILITY = 0.005
_MAX_VOLATILITY = 0.15
_FALLBACK_ATR_PCT = 0.02
_MAX_ENTRY_DEVIATION = 0.10
_KELLY_SCALE = 0.25
_MIN_POSITION = 0.01
_MAX_POSITION = 0.15
_RISK_FREE_RATE = 0.03


@dataclass(frozen=True)
class TradeParameters:
    entry_price: float
    stop_loss: float
    take_profit_levels: Tuple[float, ...]
    risk_reward_ratio: float
    position_size_recommendation: float   # fraction of portfolio
    confidence: float
    methodology: str
    volatility_used: float
    support_levels: Tuple[float, ...] = ()
    resistance_levels: Tuple[float, ...] = ()
    risk_metrics: Mapping[str, float] = field(default_factory=dict)

    @property
    def is_long(self) -> bool:
        return self.stop_loss < self.entry_price

    def to_dict(self) -> dict:
        return {
            "entry_price": self.entry_price,
            "stop_loss": self.stop_loss,
            "take_profit_levels": list(self.take_profit_levels),
            "risk_reward_ratio": round(self.risk_reward_ratio, 4),
            "position_size_recommendation": round(self.position_size_recommendation, 4),
            "confidence": round(self.confidence, 4),
            "methodology": self.methodology,
            "metadata": {
                "volatility_used": round(self.volatility_used, 6),
                "support_resistance_levels": {
                    "support": list(self.support_levels),
                    "resistance": list(self.resistance_levels),
                },
                "risk_metrics": {k: round(v, 6) for k, v in self.risk_metrics.items()},
            },
        }


def _cents(value: float) -> float:
    return round(value * 100) / 100


def _levels(details: Mapping[str, Any]) -> Tuple[List[float], List[float]]:
    sr = details.get("support_resistance") or {}
    support = [float(x) for x in sr.get("support_levels", ()) or ()]
    resistance = [float(x) for x in sr.get("resistance_levels", ()) or ()]
    return support, resistance


def estimate_volatility(details: Mapping[str, Any], current_price: float) -> float:
    """ATR as a fraction of price, bounded to [0.5 %, 15 %]."""
    momentum = details.get("momentum_indicators") or {}
    trend = details.get("trend_indicators") or {}
    atr = trend.get("atr") or momentum.get("atr") or current_price * _FALLBACK_ATR_PCT
    return max(_MIN_VOLATILITY, min(_MAX_VOLATILITY, float(atr) / current_price))


def nearest_level(price: float, levels: Sequence[float], direction: str) -> Optional[float]:
    """Closest level strictly above or below *price*, or None."""
    if direction == "above":
        candidates = [lv for lv in levels if lv > price]
    else:
        candidates = [lv for lv in levels if lv < price]
    if not candidates:
        return None
    return min(candidates, key=lambda lv: abs(price - lv))


def win_probability(score: float) -> float:
    return 0.5 + (score / 100.0) * 0.45


def entry_price(
    current_price: float,
    score: float,
    support: Sequence[float],
    resistance: Sequence[float],
    volatility: float,
    context: str,
) -> float:
    v = volatility
    if score > 50:
        if context == "trading":
            if score > 75:
                entry = current_price * (1 + v * 0.1)
            elif score > 60:
                entry = current_price * (1 - v * 0.2)
            else:
                entry = current_price * (1 - v * 0.5)
        else:
            if score > 80:
                entry = current_price
            elif score > 65:
                entry = current_price * (1 - v * 0.3)
            else:
                entry = current_price * (1 - v * 0.6)
        support_level = nearest_level(current_price, support, "below")
        if support_level and support_level > entry * 0.95:
            entry = max(entry, support_level * 1.005)
    else:
        if context == "trading":
            if score < 25:
                entry = current_price * (1 - v * 0.1)
            elif score < 40:
                entry = current_price * (1 + v * 0.2)
            else:
                entry = current_price * (1 + v * 0.5)
        else:
            # exit at market for long positions
            entry = current_price
        resistance_level = nearest_level(current_price, resistance, "above")
        if resistance_level and resistance_level < entry * 1.05:
            entry = min(entry, resistance_level * 0.995)

    max_dev = current_price * _MAX_ENTRY_DEVIATION
    entry = max(current_price - max_dev, min(current_price + max_dev, entry))
    return _cents(entry)


def stop_loss(
    entry: float,
    score: float,
    support: Sequence[float],
    resistance: Sequence[float],
    volatility: float,
    context: str,
) -> float:
    if score > 50:
        distance = volatility * (2.0 if context == "trading" else 3.0)
        stop = entry * (1 - distance)
        support_level = nearest_level(entry, support, "below")
        if support_level and support_level > stop:
            stop = support_level * 0.995
        min_distance = 0.01 if context == "trading" else 0.02
        stop = min(stop, entry * (1 - min_distance))
    else:
        if context == "trading":
            stop = entry * (1 + volatility * 2.0)
        else:
            stop = entry * 1.05
        resistance_level = nearest_level(entry, resistance, "above")
        if resistance_level and resistance_level < stop:
            stop = resistance_level * 1.005
    return _cents(stop)


def take_profit_levels(
    entry: float,
    score: float,
    support: Sequence[float],
    resistance: Sequence[float],
    volatility: float,
    context: str,
) -> List[float]:
    """Up to three targets; ascending for longs, descending for shorts."""
    is_long = score > 50
    if is_long:
        multiples = (2, 4, 6) if context == "trading" else (5, 10, 15)
        targets = [entry * (1 + volatility * m) for m in multiples]
        for i, level in enumerate(resistance):
            if level > entry and i < len(targets):
                targets[i] = min(targets[i], level * 0.995)
    else:
        if context == "trading":
            targets = [entry * (1 - volatility * m) for m in (2, 4, 6)]
        else:
            targets = [entry * 0.95]
        for i, level in enumerate(support):
            if level < entry and i < len(targets):
                targets[i] = max(targets[i], level * 1.005)

    rounded = sorted((_cents(t) for t in targets if t > 0), reverse=not is_long)
    return rounded[:3]


def risk_reward_ratio(entry: float, stop: float, targets: Sequence[float]) -> float:
    if not targets:
        return 0.0
    risk = abs(entry - stop)
    reward = abs(targets[0] - entry)
    return reward / risk if risk > 0 else 0.0


def position_size(entry: float, stop: float, score: float, volatility: float) -> float:
    """Quarter-Kelly position size as a fraction of portfolio, in [1 %, 15 %]."""
    risk = abs(entry - stop) / entry
    p = win_probability(score)
    b = 1 + volatility * 10
    kelly = (b * p - (1 - p)) / b
    size = max(0.0, kelly * _KELLY_SCALE)
    if risk > 0.05:
        size *= 0.5
    if risk > 0.1:
        size *= 0.5
    return max(_MIN_POSITION, min(_MAX_POSITION, size))


def trade_confidence(
    technical_confidence: float,
    score: float,
    support: Sequence[float],
    resistance: Sequence[float],
    volatility: float,
) -> float:
    confidence = technical_confidence
    if score > 80 or score < 20:
        confidence += 0.1
    elif score > 60 or score < 40:
        confidence += 0.05
    else:
        confidence -= 0.1

    total_levels = len(support) + len(resistance)
    if total_levels >= 5:
        confidence += 0.05
    elif total_levels < 2:
        confidence -= 0.1

    if 0.01 < volatility < 0.05:
        confidence += 0.05
    elif volatility > 0.1:
        confidence -= 0.15
    return max(0.1, min(0.95, confidence))


def risk_metrics(
    entry: float,
    stop: float,
    targets: Sequence[float],
    volatility: float,
    score: float,
) -> Dict[str, float]:
    risk = abs(entry - stop) / entry
    avg_target = sum(targets) / len(targets) if targets else entry
    potential = abs(avg_target - entry) / entry
    p = win_probability(score)
    expected = potential * p - risk * (1 - p)
    sharpe = (expected - _RISK_FREE_RATE) / volatility if volatility > 0 else 0.0
    return {
        "max_drawdown_risk": risk * 1.5,
        "expected_return": expected,
        "sharpe_estimate": sharpe,
    }


def _methodology(
    context: str,
    timeframe: Optional[str],
    volatility: float,
    support: Sequence[float],
    resistance: Sequence[float],
) -> str:
    parts = [f"Trade parameters calculated using {context}-optimized rules."]
    if context == "trading" and timeframe:
        parts.append(f"Timeframe-specific adjustments applied for {timeframe} trading.")
    parts.append("Entry price set from synthesis score strength and nearby price levels.")
    stop = f"Stop loss placed from ATR-based volatility ({volatility * 100:.1f}%)"
    if support or resistance:
        stop += f" and {len(support)} support + {len(resistance)} resistance levels"
    parts.append(stop + ".")
    parts.append("Take profit levels capped at the next resistance (or floored at support for shorts).")
    parts.append("Position size is a quarter-Kelly fraction capped between 1% and 15% of the portfolio.")
    return " ".join(parts)


def compute_trade_parameters(
    ticker: str,
    context: str,
    timeframe: Optional[str],
    technical: AnalysisOutput,
    synthesis_score: float,
    current_price: Optional[float] = None,
) -> TradeParameters:
    """Derive entry/exit levels and sizing for one ticker.

    *current_price* defaults to ``technical.details["current_price"]``.

    Raises:
        InvalidInputError: score outside [0, 100] or no positive price.
    """
    score = check_range("synthesis_score", synthesis_score, 0.0, 100.0)
    details = technical.details
    if current_price is None:
        current_price = details.get("current_price")
    if (
        isinstance(current_price, bool)
        or not isinstance(current_price, numbers.Real)
        or not math.isfinite(current_price)
        or current_price <= 0
    ):
        raise InvalidInputError(f"A positive current price is required for {ticker}")
    current_price = float(current_price)

    support, resistance = _levels(details)
    volatility = estimate_volatility(details, current_price)

    entry = entry_price(current_price, score, support, resistance, volatility, context)
    stop = stop_loss(entry, score, support, resistance, volatility, context)
    targets = take_profit_levels(entry, score, support, resistance, volatility, context)

    params = TradeParameters(
        entry_price=entry,
        stop_loss=stop,
        take_profit_levels=tuple(targets),
        risk_reward_ratio=risk_reward_ratio(entry, stop, targets),
        position_size_recommendation=position_size(entry, stop, score, volatility),
        confidence=trade_confidence(technical.confidence, score, support, resistance, volatility),
        methodology=_methodology(context, timeframe, volatility, support, resistance),
        volatility_used=volatility,
        support_levels=tuple(support),
        resistance_levels=tuple(resistance),
        risk_metrics=risk_metrics(entry, stop, targets, volatility, score),
    )
    logger.info("Trade parameters for %s: entry=%.2f stop=%.2f r/r=%.2f",
                ticker, entry, stop, params.risk_reward_ratio)
    return params

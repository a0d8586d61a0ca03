"""Central configuration loader for Signal360.

Settings come from ``configs/settings.yaml`` with environment overrides
(``.env`` is loaded on import).  Engines never read module state directly:
they receive one of the config objects below at construction time, built
either from their documented defaults or via ``from_settings``.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

import yaml
from dotenv import load_dotenv

from signal360.errors import ConfigurationError

# Project root is the parent of the signal360/ directory
PROJECT_ROOT = Path(__file__).resolve().parent.parent

load_dotenv(PROJECT_ROOT / ".env")

CONTEXTS = ("investment", "trading")
TIMEFRAMES = ("1D", "1W", "1M", "3M", "6M", "1Y")
SOURCES = ("fundamental", "technical", "esg")


def load_settings(path: Optional[Path] = None) -> dict:
    """Load settings from configs/settings.yaml (empty dict if absent)."""
    settings_path = path or PROJECT_ROOT / "configs" / "settings.yaml"
    if not settings_path.exists():
        return {}
    with open(settings_path) as f:
        return yaml.safe_load(f) or {}


SETTINGS = load_settings()


# --- Paths ---
class Paths:
    ROOT = PROJECT_ROOT
    DATA_CACHE = PROJECT_ROOT / "data" / "cache"


def default_timeframe(context: str) -> str:
    """Timeframe used when a request does not name one."""
    return "1D" if context == "trading" else "1Y"


# ---------------------------------------------------------------------------
# Synthesis weighting
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class SourceWeights:
    """Per-source weights for one analysis context. Must sum to 1.0."""

    fundamental: float
    technical: float
    esg: float

    def __post_init__(self) -> None:
        for name in SOURCES:
            if getattr(self, name) < 0:
                raise ConfigurationError(f"{name} weight must be non-negative")
        total = self.fundamental + self.technical + self.esg
        if abs(total - 1.0) > 0.01:
            raise ConfigurationError(
                f"Source weights must sum to 1.0, got {total:.4f}"
            )

    def as_dict(self) -> Dict[str, float]:
        return {
            "fundamental": self.fundamental,
            "technical": self.technical,
            "esg": self.esg,
        }


_DEFAULT_WEIGHTS = {
    "investment": {"fundamental": 0.5, "technical": 0.2, "esg": 0.3},
    "trading": {"fundamental": 0.25, "technical": 0.6, "esg": 0.15},
}

# Multipliers applied to trading weights before renormalization.
_DEFAULT_TIMEFRAME_ADJUSTMENTS = {
    "1D": {"technical": 1.3, "fundamental": 0.7, "esg": 0.5},
    "1W": {"technical": 1.2, "fundamental": 0.8, "esg": 0.6},
    "1M": {"technical": 1.1, "fundamental": 0.9, "esg": 0.8},
    "3M": {"technical": 1.0, "fundamental": 1.0, "esg": 0.9},
    "6M": {"technical": 0.9, "fundamental": 1.1, "esg": 1.0},
    "1Y": {"technical": 0.8, "fundamental": 1.2, "esg": 1.1},
}

_ENV_WEIGHT_KEYS = {
    ("investment", "fundamental"): "INVESTMENT_FUNDAMENTAL_WEIGHT",
    ("investment", "technical"): "INVESTMENT_TECHNICAL_WEIGHT",
    ("investment", "esg"): "INVESTMENT_ESG_WEIGHT",
    ("trading", "fundamental"): "TRADING_FUNDAMENTAL_WEIGHT",
    ("trading", "technical"): "TRADING_TECHNICAL_WEIGHT",
    ("trading", "esg"): "TRADING_ESG_WEIGHT",
}


def _default_weight_table() -> Dict[str, SourceWeights]:
    return {ctx: SourceWeights(**w) for ctx, w in _DEFAULT_WEIGHTS.items()}


def _default_timeframe_adjustments() -> Dict[str, Dict[str, float]]:
    return {tf: dict(adj) for tf, adj in _DEFAULT_TIMEFRAME_ADJUSTMENTS.items()}


@dataclass(frozen=True)
class SynthesisConfig:
    """Weighting policy and thresholds for the synthesis engine.

    Defaults
    --------
    weights:               investment 0.5/0.2/0.3, trading 0.25/0.6/0.15
                           (fundamental/technical/esg)
    convergence_band:      30 points max spread for an all-source agreement
    bullish_threshold:     every score >= 60 counts as bullish agreement
    bearish_threshold:     every score <= 40 counts as bearish agreement
    divergence_threshold:  25 points pairwise gap
    confidence_conflict:   0.3 spread between source confidences
    recommendation_bands:  <20 strong_sell, <40 sell, <60 hold, <80 buy
    """

    weights: Dict[str, SourceWeights] = field(default_factory=_default_weight_table)
    timeframe_adjustments: Dict[str, Dict[str, float]] = field(
        default_factory=_default_timeframe_adjustments,
    )
    convergence_band: float = 30.0
    bullish_threshold: float = 60.0
    bearish_threshold: float = 40.0
    divergence_threshold: float = 25.0
    confidence_conflict: float = 0.3
    min_consistency_factor: float = 0.5
    recommendation_bands: tuple = (
        (20.0, "strong_sell"),
        (40.0, "sell"),
        (60.0, "hold"),
        (80.0, "buy"),
    )
    include_trade_parameters: bool = True

    def __post_init__(self) -> None:
        missing = [ctx for ctx in CONTEXTS if ctx not in self.weights]
        if missing:
            raise ConfigurationError(f"Missing weights for context(s): {missing}")
        bounds = [upper for upper, _ in self.recommendation_bands]
        if bounds != sorted(bounds) or len(set(bounds)) != len(bounds):
            raise ConfigurationError("Recommendation bands must be strictly increasing")
        if self.bearish_threshold >= self.bullish_threshold:
            raise ConfigurationError("bearish_threshold must be below bullish_threshold")

    def weights_for(self, context: str) -> SourceWeights:
        return self.weights[context]

    @classmethod
    def from_settings(
        cls,
        settings: Optional[Mapping[str, Any]] = None,
        environ: Optional[Mapping[str, str]] = None,
    ) -> "SynthesisConfig":
        """Build from the ``synthesis`` section of settings plus env overrides."""
        settings = SETTINGS if settings is None else settings
        environ = os.environ if environ is None else environ
        section = dict(settings.get("synthesis", {}) or {})

        raw_weights = {ctx: dict(w) for ctx, w in _DEFAULT_WEIGHTS.items()}
        for ctx, values in (section.pop("weights", {}) or {}).items():
            raw_weights.setdefault(ctx, {}).update(values or {})
        for (ctx, source), env_key in _ENV_WEIGHT_KEYS.items():
            if env_key in environ:
                try:
                    raw_weights[ctx][source] = float(environ[env_key])
                except ValueError as exc:
                    raise ConfigurationError(f"{env_key} is not a number") from exc

        adjustments = _default_timeframe_adjustments()
        for tf, values in (section.pop("timeframe_adjustments", {}) or {}).items():
            adjustments.setdefault(tf, {}).update(values or {})

        bands = section.pop("recommendation_bands", None)
        kwargs: Dict[str, Any] = {
            k: v for k, v in section.items() if k in cls.__dataclass_fields__
        }
        if bands:
            kwargs["recommendation_bands"] = tuple(
                (float(b["below"]), str(b["label"])) for b in bands
            )
        return cls(
            weights={ctx: SourceWeights(**w) for ctx, w in raw_weights.items()},
            timeframe_adjustments=adjustments,
            **kwargs,
        )


# ---------------------------------------------------------------------------
# Technical engine
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class FactorRuleConfig:
    """Weight/confidence constants of one factor rule."""

    weight: float
    confidence: float
    trading_weight: Optional[float] = None

    def weight_for(self, context: str) -> float:
        if context == "trading" and self.trading_weight is not None:
            return self.trading_weight
        return self.weight


def _default_rules() -> Dict[str, FactorRuleConfig]:
    return {
        "intraday_trend": FactorRuleConfig(0.9, 0.9),
        "trend_strength": FactorRuleConfig(0.8, 0.8),
        "long_term_uptrend": FactorRuleConfig(0.9, 0.9),
        "trend_consistency": FactorRuleConfig(0.7, 0.8),
        "bullish_alignment": FactorRuleConfig(0.7, 0.8, trading_weight=0.9),
        "bearish_alignment": FactorRuleConfig(0.6, 0.8, trading_weight=0.9),
        "macd_bullish": FactorRuleConfig(0.7, 0.8, trading_weight=0.9),
        "rsi_oversold": FactorRuleConfig(0.7, 0.8, trading_weight=0.8),
        "rsi_overbought": FactorRuleConfig(0.7, 0.8, trading_weight=0.8),
        "fast_rsi_momentum": FactorRuleConfig(0.7, 0.7),
        "rate_of_change": FactorRuleConfig(0.6, 0.8),
        "momentum_aligned": FactorRuleConfig(0.6, 0.7),
        "momentum_divergence": FactorRuleConfig(0.8, 0.8),
        "bollinger_lower": FactorRuleConfig(0.6, 0.7),
        "bollinger_upper": FactorRuleConfig(0.6, 0.7),
        "volume_confirmation": FactorRuleConfig(0.6, 0.8),
        "near_support": FactorRuleConfig(0.7, 0.8),
        "near_resistance": FactorRuleConfig(0.7, 0.8),
    }


@dataclass(frozen=True)
class TechnicalConfig:
    """Configuration for the technical analysis engine.

    ``smoothed_signals`` switches MACD signal / Stochastic %D from the
    fixed-fraction approximations to textbook smoothing.  It is off by
    default so emitted scores stay comparable with historical runs.
    """

    min_bars: int = 20
    rules: Dict[str, FactorRuleConfig] = field(default_factory=_default_rules)
    smoothed_signals: bool = False
    volume_ratio_threshold: float = 1.5
    proximity_pct: float = 0.02
    trend_strength_threshold: float = 70.0
    long_term_trend_threshold: float = 5.0
    trend_consistency_threshold: float = 80.0
    fast_rsi_threshold: float = 60.0
    rate_of_change_threshold: float = 5.0

    @classmethod
    def from_settings(cls, settings: Optional[Mapping[str, Any]] = None) -> "TechnicalConfig":
        settings = SETTINGS if settings is None else settings
        section = dict(settings.get("technical", {}) or {})
        rules = _default_rules()
        for name, values in (section.pop("rules", {}) or {}).items():
            base = rules.get(name)
            if base is None:
                raise ConfigurationError(f"Unknown factor rule: {name}")
            merged = {
                "weight": base.weight,
                "confidence": base.confidence,
                "trading_weight": base.trading_weight,
            }
            merged.update(values or {})
            rules[name] = FactorRuleConfig(**merged)
        kwargs = {k: v for k, v in section.items() if k in cls.__dataclass_fields__}
        return cls(rules=rules, **kwargs)


# ---------------------------------------------------------------------------
# Orchestration
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class PipelineConfig:
    """Concurrency, timeout and retry policy for the synthesis pipeline."""

    max_workers: int = 3
    source_timeout_seconds: float = 30.0
    retry_attempts: int = 3
    backoff_min_seconds: float = 1.0
    backoff_max_seconds: float = 10.0
    cache_ttl_hours: float = 1.0
    cache_max_entries: int = 256

    @classmethod
    def from_settings(cls, settings: Optional[Mapping[str, Any]] = None) -> "PipelineConfig":
        settings = SETTINGS if settings is None else settings
        section = settings.get("pipeline", {}) or {}
        return cls(**{k: v for k, v in section.items() if k in cls.__dataclass_fields__})

"""Synthesis engine: combine fundamental, technical and ESG analyses.

Single-pass and stateless: ``SynthesisEngine.synthesize`` turns a
``SynthesisInput`` into a ``SynthesisOutput`` with

  * a context-weighted 0-100 score,
  * convergence factors (score-band, thematic and context agreement),
  * divergence factors (pairwise score gaps and other conflicts),
  * a blended confidence capped by source disagreement,
  * a recommendation and narrative report.

No clock reads and no randomness, so identical inputs give identical output.
"""

from __future__ import annotations

import itertools
import numbers
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

from signal360.analysis.base import (
    AnalysisFactor,
    AnalysisOutput,
    ensure_output,
    freeze,
    round_score,
    thaw,
)
from signal360.analysis.trade_parameters import TradeParameters, compute_trade_parameters
from signal360.config import CONTEXTS, SOURCES, TIMEFRAMES, SynthesisConfig
from signal360.errors import InvalidInputError, Signal360Error
from signal360.utils.logger import setup_logger

logger = setup_logger("synthesis")

ENGINE_VERSION = "1.0.0"
DATA_SOURCES = ("fundamental-analysis", "technical-analysis", "esg-analysis")

_HIGH_CONFIDENCE = 0.8
_MEDIUM_CONFIDENCE = 0.6
_MIN_CONFIDENCE = 0.1
_MAX_CONFIDENCE = 1.0

_GENERAL_LIMITATIONS = (
    "Analysis reflects market conditions and data available at the time of analysis",
    "External factors such as regulatory changes, geopolitical events, or market "
    "crashes may override analysis conclusions",
    "Individual risk tolerance and investment objectives should be considered "
    "alongside this analysis",
)

_SOURCE_LIMITATIONS = {
    "fundamental": "Fundamental analysis limited by incomplete financial data or recent corporate changes",
    "technical": "Technical analysis constrained by insufficient price history or unusual market conditions",
    "esg": "ESG analysis limited by incomplete sustainability reporting or recent policy changes",
}

# Factor themes, matched in order; a factor joins the first theme whose
# keywords appear as whole words in its description.
_THEME_KEYWORDS = (
    ("growth", ("growth", "revenue", "earnings", "expansion", "increase", "rising", "accelerating")),
    ("profitability", ("profit", "margin", "roe", "roa", "return", "income", "profitable")),
    ("valuation", ("valuation", "pe", "pb", "price", "expensive", "cheap", "overvalued",
                   "undervalued", "fair value")),
    ("momentum", ("momentum", "trend", "moving average", "macd", "rsi", "breakout",
                  "uptrend", "downtrend")),
    ("sustainability", ("esg", "environmental", "social", "governance", "sustainability",
                        "green", "carbon")),
    ("risk", ("risk", "debt", "leverage", "volatility", "controversy", "uncertainty", "exposure")),
    ("quality", ("quality", "management", "transparency", "leadership", "execution")),
    ("market_sentiment", ("sentiment", "market", "investor", "confidence", "optimism",
                          "pessimism", "outlook")),
    ("competitive_position", ("competitive", "market share", "advantage", "moat",
                              "differentiation")),
)
_THEME_PATTERNS = tuple(
    (theme, re.compile(r"\b(?:" + "|".join(re.escape(k) for k in keywords) + r")s?\b"))
    for theme, keywords in _THEME_KEYWORDS
)


def factor_theme(description: str) -> Optional[str]:
    """Theme of a factor description, or None when no keyword matches."""
    text = description.lower()
    for theme, pattern in _THEME_PATTERNS:
        if pattern.search(text):
            return theme
    return None


# ---------------------------------------------------------------------------
# Data classes
# ---------------------------------------------------------------------------
@dataclass(frozen=True)
class SynthesisInput:
    ticker: str
    context: str
    fundamental: AnalysisOutput
    technical: AnalysisOutput
    esg: AnalysisOutput
    timeframe: Optional[str] = None

    def __post_init__(self) -> None:
        if not isinstance(self.ticker, str) or not self.ticker.strip():
            raise InvalidInputError("ticker must be a non-empty string")
        if self.context not in CONTEXTS:
            raise InvalidInputError(f"context must be one of: {', '.join(CONTEXTS)}")
        if self.timeframe is not None and self.timeframe not in TIMEFRAMES:
            raise InvalidInputError(f"timeframe must be one of: {', '.join(TIMEFRAMES)}")
        for source in SOURCES:
            object.__setattr__(self, source, ensure_output(getattr(self, source), source))

    def outputs(self) -> Dict[str, AnalysisOutput]:
        return {source: getattr(self, source) for source in SOURCES}

    def scores(self) -> Dict[str, float]:
        return {source: out.score for source, out in self.outputs().items()}

    def confidences(self) -> Dict[str, float]:
        return {source: out.confidence for source, out in self.outputs().items()}

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "SynthesisInput":
        """Build from a wire payload with ``*_result`` sub-objects."""
        try:
            return cls(
                ticker=data["ticker"],
                context=data["context"],
                timeframe=data.get("timeframe"),
                fundamental=data["fundamental_result"],
                technical=data["technical_result"],
                esg=data["esg_result"],
            )
        except KeyError as exc:
            raise InvalidInputError(f"Synthesis input missing field {exc}") from exc


@dataclass(frozen=True)
class ConvergenceFactor:
    category: str
    description: str
    weight: float
    supporting_analyses: Tuple[str, ...]
    metadata: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "supporting_analyses", tuple(self.supporting_analyses))
        object.__setattr__(self, "metadata", freeze(dict(self.metadata)))

    def to_dict(self) -> dict:
        return {
            "category": self.category,
            "description": self.description,
            "weight": round(self.weight, 4),
            "supporting_analyses": list(self.supporting_analyses),
            "metadata": thaw(self.metadata),
        }


@dataclass(frozen=True)
class DivergenceFactor:
    category: str
    description: str
    weight: float
    conflicting_analyses: Tuple[str, ...]
    metadata: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "conflicting_analyses", tuple(self.conflicting_analyses))
        object.__setattr__(self, "metadata", freeze(dict(self.metadata)))

    def to_dict(self) -> dict:
        return {
            "category": self.category,
            "description": self.description,
            "weight": round(self.weight, 4),
            "conflicting_analyses": list(self.conflicting_analyses),
            "metadata": thaw(self.metadata),
        }


@dataclass(frozen=True)
class SynthesisReport:
    summary: str
    recommendation: str
    fundamental: AnalysisOutput
    technical: AnalysisOutput
    esg: AnalysisOutput
    weighting: Mapping[str, Any]
    methodology: str
    key_insights: Tuple[str, ...]
    limitations: Tuple[str, ...]
    confidence_level: str
    metadata: Mapping[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "summary": self.summary,
            "recommendation": self.recommendation,
            "fundamental": self.fundamental.to_dict(),
            "technical": self.technical.to_dict(),
            "esg": self.esg.to_dict(),
            "weighting": thaw(self.weighting),
            "synthesis_methodology": self.methodology,
            "key_insights": list(self.key_insights),
            "limitations": list(self.limitations),
            "confidence_level": self.confidence_level,
            "metadata": thaw(self.metadata),
        }


@dataclass(frozen=True)
class SynthesisOutput:
    synthesis_score: int
    convergence_factors: Tuple[ConvergenceFactor, ...]
    divergence_factors: Tuple[DivergenceFactor, ...]
    report: SynthesisReport
    confidence: float
    trade_parameters: Optional[TradeParameters] = None

    @property
    def recommendation(self) -> str:
        return self.report.recommendation

    def to_dict(self) -> dict:
        return {
            "synthesis_score": self.synthesis_score,
            "convergence_factors": [f.to_dict() for f in self.convergence_factors],
            "divergence_factors": [f.to_dict() for f in self.divergence_factors],
            "full_report": self.report.to_dict(),
            "confidence": round(self.confidence, 4),
            "trade_parameters": (
                self.trade_parameters.to_dict() if self.trade_parameters is not None else None
            ),
        }


# ---------------------------------------------------------------------------
# Bands
# ---------------------------------------------------------------------------
def get_recommendation(score: float, bands: Optional[Sequence[Tuple[float, str]]] = None) -> str:
    """Map a 0-100 score onto its recommendation band."""
    bands = bands if bands is not None else SynthesisConfig().recommendation_bands
    for upper, label in bands:
        if score < upper:
            return label
    return "strong_buy"


def get_confidence_level(confidence: float) -> str:
    if confidence >= _HIGH_CONFIDENCE:
        return "high"
    if confidence >= _MEDIUM_CONFIDENCE:
        return "medium"
    return "low"


# ---------------------------------------------------------------------------
# Envelopes
# ---------------------------------------------------------------------------
def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def envelope_success(data: Any, request_id: str, timestamp: Optional[str] = None) -> dict:
    """Wrap a result the way an HTTP layer returns it."""
    payload = data.to_dict() if hasattr(data, "to_dict") else data
    return {
        "success": True,
        "data": payload,
        "request_id": request_id,
        "timestamp": timestamp or _now_iso(),
    }


def envelope_error(exc: BaseException, request_id: str, timestamp: Optional[str] = None) -> dict:
    """Error envelope; unknown exceptions are reported without their message."""
    if isinstance(exc, Signal360Error):
        error = exc.to_dict()
    else:
        logger.error("Unexpected error for request %s: %s", request_id, type(exc).__name__)
        error = {"code": "INTERNAL_ERROR", "message": "An unexpected error occurred"}
    return {
        "success": False,
        "error": error,
        "request_id": request_id,
        "timestamp": timestamp or _now_iso(),
    }


# =====================================================================
# Synthesis Engine
# =====================================================================
class SynthesisEngine:
    """Combine three source analyses into one weighted signal."""

    def __init__(self, config: Optional[SynthesisConfig] = None) -> None:
        self.config = config or SynthesisConfig()

    # ------------------------------------------------------------------
    # 1. Weighting
    # ------------------------------------------------------------------
    def effective_weights(self, context: str, timeframe: Optional[str]) -> Dict[str, float]:
        """Base weights, adjusted and renormalized for trading timeframes."""
        base = self.config.weights_for(context).as_dict()
        if context != "trading" or not timeframe:
            return base
        adjust = self.config.timeframe_adjustments.get(timeframe)
        if not adjust:
            return base
        raw = {s: base[s] * adjust.get(s, 1.0) for s in SOURCES}
        total = sum(raw.values())
        if total <= 0:
            return base
        return {s: w / total for s, w in raw.items()}

    @staticmethod
    def weighted_score(scores: Mapping[str, float], weights: Mapping[str, float]) -> int:
        total = sum(weights[s] for s in SOURCES)
        if total <= 0:
            return 50
        return round_score(sum(weights[s] * scores[s] for s in SOURCES) / total)

    # ------------------------------------------------------------------
    # 2. Convergence / divergence
    # ------------------------------------------------------------------
    def score_band_convergence(self, scores: Mapping[str, float]) -> Optional[ConvergenceFactor]:
        """The single all-source factor: every score on one side of neutral."""
        cfg = self.config
        values = [scores[s] for s in SOURCES]
        spread = max(values) - min(values)
        if spread > cfg.convergence_band:
            return None

        if all(v >= cfg.bullish_threshold for v in values):
            direction = "bullish"
        elif all(v <= cfg.bearish_threshold for v in values):
            direction = "bearish"
        else:
            return None

        mean = sum(values) / len(values)
        weight = max(0.1, min(1.0, abs(mean - 50.0) / 50.0))
        label = "positive" if direction == "bullish" else "negative"
        return ConvergenceFactor(
            category=f"{direction}_convergence",
            description=f"Strong {label} signals across all analyses (avg: {mean:.1f})",
            weight=weight,
            supporting_analyses=SOURCES,
            metadata={
                "direction": direction,
                "fundamental_score": scores["fundamental"],
                "technical_score": scores["technical"],
                "esg_score": scores["esg"],
                "average_score": mean,
                "score_spread": spread,
            },
        )

    @staticmethod
    def thematic_convergence(inp: SynthesisInput) -> List[ConvergenceFactor]:
        """Factors from two or more sources that share a theme and a direction."""
        outputs = inp.outputs().values()
        ordered: List[AnalysisFactor] = [f for out in outputs for f in out.positive_factors]
        ordered += [f for out in outputs for f in out.negative_factors]

        themes: Dict[str, List[AnalysisFactor]] = {}
        for f in ordered:
            theme = factor_theme(f.description)
            if theme is not None:
                themes.setdefault(theme, []).append(f)

        out: List[ConvergenceFactor] = []
        for theme, factors in themes.items():
            categories = tuple(s for s in SOURCES if any(f.category == s for f in factors))
            if len(factors) < 2 or len(categories) < 2:
                continue
            if all(f.is_positive for f in factors):
                label = "Positive"
            elif not any(f.is_positive for f in factors):
                label = "Negative"
            else:
                continue
            avg_weight = sum(f.weight for f in factors) / len(factors)
            avg_confidence = sum(f.confidence for f in factors) / len(factors)
            out.append(ConvergenceFactor(
                category="thematic",
                description=f"{label} convergence on {theme} across multiple analyses",
                weight=min(0.8, avg_weight * avg_confidence),
                supporting_analyses=categories,
                metadata={
                    "theme": theme,
                    "factor_count": len(factors),
                    "average_weight": avg_weight,
                    "average_confidence": avg_confidence,
                },
            ))
        return out

    @staticmethod
    def context_convergence(inp: SynthesisInput, scores: Mapping[str, float]) -> List[ConvergenceFactor]:
        """Pairwise alignment that matters for the request context."""
        if inp.context == "trading":
            tech, esg = scores["technical"], scores["esg"]
            gap = abs(tech - esg)
            if gap < 15 and tech > 60:
                return [ConvergenceFactor(
                    category="momentum",
                    description="Technical and sentiment analysis align for positive trading momentum",
                    weight=0.7,
                    supporting_analyses=("technical", "esg"),
                    metadata={
                        "technical_score": tech,
                        "esg_score": esg,
                        "alignment_strength": 15 - gap,
                    },
                )]
        else:
            fund, esg = scores["fundamental"], scores["esg"]
            gap = abs(fund - esg)
            if gap < 20 and fund > 55:
                return [ConvergenceFactor(
                    category="sustainability",
                    description="Fundamental strength aligns with ESG quality for sustainable investment",
                    weight=0.6,
                    supporting_analyses=("fundamental", "esg"),
                    metadata={
                        "fundamental_score": fund,
                        "esg_score": esg,
                        "alignment_strength": 20 - gap,
                    },
                )]
        return []

    def find_convergence(
        self,
        inp: SynthesisInput,
        scores: Mapping[str, float],
    ) -> List[ConvergenceFactor]:
        out: List[ConvergenceFactor] = []
        band = self.score_band_convergence(scores)
        if band is not None:
            out.append(band)
        out.extend(self.thematic_convergence(inp))
        out.extend(self.context_convergence(inp, scores))
        return out

    def find_divergence(
        self,
        inp: SynthesisInput,
        scores: Mapping[str, float],
        confidences: Mapping[str, float],
    ) -> List[DivergenceFactor]:
        cfg = self.config
        out: List[DivergenceFactor] = []

        for a, b in itertools.combinations(SOURCES, 2):
            delta = abs(scores[a] - scores[b])
            if delta < cfg.divergence_threshold:
                continue
            out.append(DivergenceFactor(
                category="score_divergence",
                description=(
                    f"Significant score divergence: {a} ({scores[a]:g}) vs "
                    f"{b} ({scores[b]:g}) - {delta:g} point spread"
                ),
                weight=min(0.9, delta / 100.0),
                conflicting_analyses=(a, b),
                metadata={
                    f"{a}_score": scores[a],
                    f"{b}_score": scores[b],
                    "delta": delta,
                },
            ))

        conf_values = [confidences[s] for s in SOURCES]
        conf_range = max(conf_values) - min(conf_values)
        if conf_range >= cfg.confidence_conflict:
            hi = max(SOURCES, key=lambda s: confidences[s])
            lo = min(SOURCES, key=lambda s: confidences[s])
            out.append(DivergenceFactor(
                category="confidence_conflict",
                description=(
                    f"Significant confidence variation: {hi} ({confidences[hi]:.0%}) "
                    f"vs {lo} ({confidences[lo]:.0%})"
                ),
                weight=0.5,
                conflicting_analyses=SOURCES,
                metadata={
                    "confidence_range": conf_range,
                    "max_confidence_analysis": hi,
                    "min_confidence_analysis": lo,
                },
            ))

        if inp.context == "trading" and inp.timeframe in ("1D", "1W"):
            tech = scores["technical"]
            long_term = (scores["fundamental"] + scores["esg"]) / 2.0
            gap = abs(tech - long_term)
            if gap >= cfg.divergence_threshold and long_term > tech + 10:
                out.append(DivergenceFactor(
                    category="time_horizon_conflict",
                    description=(
                        f"Short-term technical weakness ({tech:g}) conflicts with "
                        f"stronger long-term outlook ({long_term:.1f})"
                    ),
                    weight=0.7,
                    conflicting_analyses=SOURCES,
                    metadata={
                        "timeframe": inp.timeframe,
                        "technical_score": tech,
                        "long_term_average": long_term,
                        "conflict_magnitude": gap,
                    },
                ))

        quality_momentum = self.quality_momentum_conflict(scores)
        if quality_momentum is not None:
            out.append(quality_momentum)
        out.extend(self.context_divergence(inp, scores))
        return out

    @staticmethod
    def quality_momentum_conflict(scores: Mapping[str, float]) -> Optional[DivergenceFactor]:
        """Strong fundamentals against weak technicals, or the reverse."""
        fund, tech = scores["fundamental"], scores["technical"]
        if fund > 70 and tech < 40:
            kind = "quality_over_momentum"
            description = (
                f"High fundamental quality ({fund:g}) conflicts with poor technical momentum ({tech:g})"
            )
        elif fund < 40 and tech > 70:
            kind = "momentum_over_quality"
            description = (
                f"Strong technical momentum ({tech:g}) conflicts with weak fundamentals ({fund:g})"
            )
        else:
            return None
        return DivergenceFactor(
            category="quality_momentum_conflict",
            description=description,
            weight=0.6,
            conflicting_analyses=("fundamental", "technical"),
            metadata={"quality_score": fund, "momentum_score": tech, "conflict_type": kind},
        )

    @staticmethod
    def context_divergence(inp: SynthesisInput, scores: Mapping[str, float]) -> List[DivergenceFactor]:
        """Day-trading and sustainability conflicts."""
        fund = scores["fundamental"]
        if inp.context == "trading":
            tech = scores["technical"]
            if inp.timeframe == "1D" and abs(tech - fund) > 30:
                return [DivergenceFactor(
                    category="timeframe_conflict",
                    description="Day trading signals conflict with underlying fundamentals",
                    weight=0.5,
                    conflicting_analyses=("technical", "fundamental"),
                    metadata={
                        "timeframe": inp.timeframe,
                        "technical_score": tech,
                        "fundamental_score": fund,
                    },
                )]
        else:
            esg = scores["esg"]
            if fund > 70 and esg < 40:
                return [DivergenceFactor(
                    category="sustainability_conflict",
                    description="Strong financial performance conflicts with poor ESG practices",
                    weight=0.6,
                    conflicting_analyses=("fundamental", "esg"),
                    metadata={
                        "fundamental_score": fund,
                        "esg_score": esg,
                        "conflict_type": "financial_vs_sustainability",
                    },
                )]
        return []

    # ------------------------------------------------------------------
    # 3. Confidence
    # ------------------------------------------------------------------
    def blended_confidence(
        self,
        scores: Mapping[str, float],
        confidences: Mapping[str, float],
        weights: Mapping[str, float],
    ) -> float:
        """Weighted source confidence shrunk by the largest pairwise score gap."""
        total = sum(weights[s] for s in SOURCES)
        base = (
            sum(weights[s] * confidences[s] for s in SOURCES) / total
            if total > 0 else sum(confidences.values()) / len(SOURCES)
        )
        max_delta = max(abs(scores[a] - scores[b]) for a, b in itertools.combinations(SOURCES, 2))
        consistency = max(self.config.min_consistency_factor, 1.0 - max_delta / 100.0)
        return max(_MIN_CONFIDENCE, min(_MAX_CONFIDENCE, base * consistency))

    # ------------------------------------------------------------------
    # 4. Report
    # ------------------------------------------------------------------
    @staticmethod
    def _summary(
        inp: SynthesisInput,
        score: int,
        recommendation: str,
        confidence: float,
        convergence: Sequence[ConvergenceFactor],
        divergence: Sequence[DivergenceFactor],
    ) -> str:
        tf = f" ({inp.timeframe})" if inp.timeframe else ""
        parts = [
            f"{inp.ticker} receives a synthesis score of {score}/100 for {inp.context}{tf}, "
            f"resulting in a {recommendation.replace('_', ' ').upper()} recommendation "
            f"with {confidence:.0%} confidence."
        ]
        if convergence:
            top = max(convergence, key=lambda f: f.weight)
            parts.append(f"Primary strength: {top.description.lower()}.")
        if divergence:
            top = max(divergence, key=lambda f: f.weight)
            parts.append(f"Key concern: {top.description.lower()}.")
        parts.append(
            f"Component scores: Fundamental ({inp.fundamental.score:g}), "
            f"Technical ({inp.technical.score:g}), ESG ({inp.esg.score:g})."
        )
        return " ".join(parts)

    def _methodology(self, inp: SynthesisInput, base: Mapping[str, float],
                     effective: Mapping[str, float]) -> str:
        parts = [
            f"Context-aware weighted synthesis for {inp.context}.",
            "Base weights: " + ", ".join(f"{s.capitalize()} ({base[s]:.0%})" for s in SOURCES) + ".",
        ]
        if dict(base) != dict(effective):
            parts.append(
                f"Adjusted for the {inp.timeframe} timeframe to: "
                + ", ".join(f"{s.capitalize()} ({effective[s]:.0%})" for s in SOURCES) + "."
            )
        parts.append(
            f"Convergence requires all scores within {self.config.convergence_band:g} points and "
            f"jointly above {self.config.bullish_threshold:g} or below "
            f"{self.config.bearish_threshold:g}; pairwise gaps of "
            f"{self.config.divergence_threshold:g}+ points are reported as divergence."
        )
        parts.append("Confidence is the weighted source confidence reduced by the largest score gap.")
        return " ".join(parts)

    @staticmethod
    def _key_insights(
        inp: SynthesisInput,
        score: int,
        convergence: Sequence[ConvergenceFactor],
        divergence: Sequence[DivergenceFactor],
    ) -> List[str]:
        insights: List[str] = []
        if score >= 75:
            insights.append(f"Strong overall signal suggests favorable {inp.context} opportunity")
        elif score <= 35:
            insights.append(f"Weak overall signal suggests caution or avoidance for {inp.context}")
        else:
            insights.append("Mixed signals require careful consideration of individual analysis components")

        if inp.context == "trading":
            tech = inp.technical.score
            if tech > 70:
                insights.append("Strong technical momentum supports short-term trading opportunities")
            elif tech < 40:
                insights.append("Weak technical signals suggest waiting for better entry points")
            if inp.timeframe == "1D":
                insights.append("Day trading requires close monitoring of intraday momentum and volume")
        else:
            fund, esg = inp.fundamental.score, inp.esg.score
            if fund > 70 and esg > 60:
                insights.append("Strong fundamentals and ESG profile support long-term investment thesis")
            elif fund > 70 and esg < 40:
                insights.append("Consider ESG risks despite strong financial metrics")

        if len(convergence) > len(divergence):
            insights.append("Multiple analyses align, increasing confidence in the overall assessment")
        elif len(divergence) > len(convergence):
            insights.append("Conflicting signals between analyses warrant additional due diligence")

        values = [inp.fundamental.score, inp.technical.score, inp.esg.score]
        mean = sum(values) / len(values)
        variance = sum((v - mean) ** 2 for v in values) / len(values)
        if variance > 400:
            insights.append("High variance between analysis types suggests elevated uncertainty and risk")
        return insights

    @staticmethod
    def _limitations(inp: SynthesisInput, confidence: float, factor_count: int) -> List[str]:
        limitations: List[str] = []
        if confidence < 0.5:
            limitations.append(
                "Low analysis confidence due to significant data quality issues or conflicting signals"
            )
        elif confidence < 0.7:
            limitations.append(
                "Moderate analysis confidence suggests some data limitations or minor "
                "conflicts between analyses"
            )
        if factor_count == 0:
            limitations.append("No convergence or divergence patterns were identified between analyses")

        if inp.context == "trading":
            if inp.timeframe == "1D":
                limitations.append(
                    "Intraday analysis is highly susceptible to market noise, news events, "
                    "and low-volume conditions"
                )
            elif inp.timeframe == "1W":
                limitations.append(
                    "Weekly trading analysis may miss important intraday momentum shifts"
                )
        else:
            limitations.append(
                "Long-term investment analysis assumes stable market conditions and business fundamentals"
            )

        for source, out in inp.outputs().items():
            if out.confidence < 0.6:
                limitations.append(_SOURCE_LIMITATIONS[source])

        limitations.extend(_GENERAL_LIMITATIONS)
        return limitations

    # ------------------------------------------------------------------
    # 5. Entry point
    # ------------------------------------------------------------------
    def synthesize(self, inp: SynthesisInput) -> SynthesisOutput:
        """Run the full synthesis for one request.

        Raises:
            InvalidInputError: malformed input (validated on construction of
                ``SynthesisInput`` and the nested ``AnalysisOutput`` objects).
        """
        if not isinstance(inp, SynthesisInput):
            raise InvalidInputError(f"Expected SynthesisInput, got {type(inp).__name__}")

        logger.info("Synthesis started: %s (context=%s, timeframe=%s)",
                    inp.ticker, inp.context, inp.timeframe)

        scores = inp.scores()
        confidences = inp.confidences()
        base = self.config.weights_for(inp.context).as_dict()
        effective = self.effective_weights(inp.context, inp.timeframe)

        score = self.weighted_score(scores, effective)
        convergence = self.find_convergence(inp, scores)
        divergence = self.find_divergence(inp, scores, confidences)
        confidence = self.blended_confidence(scores, confidences, base)
        recommendation = get_recommendation(score, self.config.recommendation_bands)

        trade_params = None
        current_price = inp.technical.details.get("current_price")
        if (
            self.config.include_trade_parameters
            and isinstance(current_price, numbers.Real)
            and not isinstance(current_price, bool)
            and current_price > 0
        ):
            trade_params = compute_trade_parameters(
                inp.ticker, inp.context, inp.timeframe, inp.technical, score, current_price,
            )

        report = SynthesisReport(
            summary=self._summary(inp, score, recommendation, confidence, convergence, divergence),
            recommendation=recommendation,
            fundamental=inp.fundamental,
            technical=inp.technical,
            esg=inp.esg,
            weighting=freeze({
                "base": base,
                "effective": effective,
                "timeframe_adjusted": base != effective,
            }),
            methodology=self._methodology(inp, base, effective),
            key_insights=tuple(self._key_insights(inp, score, convergence, divergence)),
            limitations=tuple(self._limitations(inp, confidence, len(convergence) + len(divergence))),
            confidence_level=get_confidence_level(confidence),
            metadata=freeze({
                "ticker": inp.ticker,
                "context": inp.context,
                "timeframe": inp.timeframe,
                "data_sources": list(DATA_SOURCES),
                "engine_version": ENGINE_VERSION,
                "convergence_factors": len(convergence),
                "divergence_factors": len(divergence),
            }),
        )

        logger.info("Synthesis completed for %s: score=%d recommendation=%s confidence=%.2f",
                    inp.ticker, score, recommendation, confidence)

        return SynthesisOutput(
            synthesis_score=score,
            convergence_factors=tuple(convergence),
            divergence_factors=tuple(divergence),
            report=report,
            confidence=confidence,
            trade_parameters=trade_params,
        )

"""Tests for signal360.analysis.synthesis -- weighting, agreement, confidence, report."""

import numpy as np
import pytest

from signal360.analysis.base import AnalysisFactor, AnalysisOutput
from signal360.analysis.synthesis import (
    SynthesisEngine,
    SynthesisInput,
    envelope_error,
    envelope_success,
    factor_theme,
    get_confidence_level,
    get_recommendation,
)
from signal360.config import SynthesisConfig
from signal360.errors import InvalidInputError, UpstreamFailureError

from conftest import make_output


def _input(f, t, e, context="investment", timeframe=None, confidences=(0.8, 0.8, 0.8),
           technical_details=None, ticker="AAPL"):
    return SynthesisInput(
        ticker=ticker,
        context=context,
        timeframe=timeframe,
        fundamental=make_output(f, confidences[0]),
        technical=make_output(t, confidences[1], details=technical_details),
        esg=make_output(e, confidences[2]),
    )


def _scores(f, t, e):
    return {"fundamental": f, "technical": t, "esg": e}


# ---------------------------------------------------------------------------
# Weighted score
# ---------------------------------------------------------------------------

class TestWeightedScore:

    def setup_method(self):
        self.engine = SynthesisEngine()

    def test_all_zero_is_strong_sell(self):
        out = self.engine.synthesize(_input(0, 0, 0))
        assert out.synthesis_score == 0
        assert out.recommendation == "strong_sell"

    def test_all_hundred_is_strong_buy(self):
        out = self.engine.synthesize(_input(100, 100, 100))
        assert out.synthesis_score == 100
        assert out.recommendation == "strong_buy"
        categories = [f.category for f in out.convergence_factors]
        assert categories == ["bullish_convergence", "sustainability"]

    def test_investment_weights(self):
        assert self.engine.synthesize(_input(70, 50, 60)).synthesis_score == 63

    def test_mixed_scores_with_divergence(self):
        out = self.engine.synthesize(_input(85, 35, 75))
        assert out.synthesis_score == 72
        assert out.recommendation == "buy"
        assert [f.category for f in out.convergence_factors] == ["sustainability"]
        pairs = [f.conflicting_analyses for f in out.divergence_factors[:2]]
        assert pairs == [("fundamental", "technical"), ("technical", "esg")]
        assert out.divergence_factors[2].category == "quality_momentum_conflict"
        assert out.divergence_factors[0].weight == pytest.approx(0.5)
        assert out.divergence_factors[1].weight == pytest.approx(0.4)
        assert dict(out.divergence_factors[0].metadata) == {
            "fundamental_score": 85.0, "technical_score": 35.0, "delta": 50.0,
        }

    def test_trading_timeframe_adjustment(self):
        weights = self.engine.effective_weights("trading", "1D")
        assert weights["technical"] == pytest.approx(0.78 / 1.03)
        assert weights["fundamental"] == pytest.approx(0.175 / 1.03)
        assert weights["esg"] == pytest.approx(0.075 / 1.03)
        assert sum(weights.values()) == pytest.approx(1.0)

    def test_no_adjustment_without_timeframe_or_for_investment(self):
        base_trading = {"fundamental": 0.25, "technical": 0.6, "esg": 0.15}
        assert self.engine.effective_weights("trading", None) == base_trading
        assert self.engine.effective_weights("investment", "1D") == {
            "fundamental": 0.5, "technical": 0.2, "esg": 0.3,
        }

    def test_weighting_reported(self):
        adjusted = self.engine.synthesize(_input(60, 60, 60, "trading", "1D"))
        plain = self.engine.synthesize(_input(60, 60, 60, "trading"))
        assert adjusted.report.weighting["timeframe_adjusted"] is True
        assert plain.report.weighting["timeframe_adjusted"] is False

    def test_score_always_int_in_range(self):
        for f, t, e in [(0, 100, 50), (33.3, 66.6, 99.9), (12.5, 12.5, 12.5)]:
            score = self.engine.synthesize(_input(f, t, e, "trading", "1W")).synthesis_score
            assert isinstance(score, int)
            assert 0 <= score <= 100


# ---------------------------------------------------------------------------
# Convergence / divergence
# ---------------------------------------------------------------------------

class TestConvergence:

    def setup_method(self):
        self.engine = SynthesisEngine()

    def test_weight_scales_with_distance_from_neutral(self):
        at_sixty = self.engine.score_band_convergence(_scores(60, 60, 60))
        at_hundred = self.engine.score_band_convergence(_scores(100, 100, 100))
        assert at_sixty.weight == pytest.approx(0.2)
        assert at_hundred.weight == pytest.approx(1.0)

    def test_bearish_convergence(self):
        factor = self.engine.score_band_convergence(_scores(20, 30, 25))
        assert factor.category == "bearish_convergence"
        assert factor.metadata["direction"] == "bearish"
        assert factor.supporting_analyses == ("fundamental", "technical", "esg")

    def test_spread_limit(self):
        assert self.engine.score_band_convergence(_scores(60, 91, 60)) is None
        assert self.engine.score_band_convergence(_scores(60, 90, 60)) is not None

    def test_neutral_scores_do_not_converge(self):
        assert self.engine.score_band_convergence(_scores(50, 50, 50)) is None
        assert self.engine.find_convergence(_input(50, 50, 50), _scores(50, 50, 50)) == []

    def test_single_score_band_factor(self):
        factors = self.engine.find_convergence(_input(90, 90, 90), _scores(90, 90, 90))
        bands = [f for f in factors if f.category.endswith("_convergence")]
        assert len(bands) == 1

    def test_sustainability_alignment_for_investment(self):
        out = self.engine.synthesize(_input(75, 30, 70))
        assert [f.category for f in out.convergence_factors] == ["sustainability"]
        factor = out.convergence_factors[0]
        assert factor.weight == pytest.approx(0.6)
        assert factor.supporting_analyses == ("fundamental", "esg")
        assert factor.metadata["alignment_strength"] == pytest.approx(15.0)

    def test_sustainability_needs_strong_fundamentals(self):
        out = self.engine.synthesize(_input(55, 30, 50))
        assert out.convergence_factors == ()

    def test_momentum_alignment_for_trading(self):
        out = self.engine.synthesize(_input(50, 70, 65, "trading", "1M"))
        assert [f.category for f in out.convergence_factors] == ["momentum"]
        factor = out.convergence_factors[0]
        assert factor.weight == pytest.approx(0.7)
        assert factor.supporting_analyses == ("technical", "esg")
        assert factor.metadata["alignment_strength"] == pytest.approx(10.0)

    def test_no_momentum_alignment_for_investment(self):
        out = self.engine.synthesize(_input(50, 70, 65))
        assert "momentum" not in [f.category for f in out.convergence_factors]

    def test_thematic_convergence_across_sources(self):
        inp = SynthesisInput(
            ticker="AAPL", context="investment",
            fundamental=make_output(50, factors=(
                AnalysisFactor("fundamental", "positive", "Revenue growth accelerating", 0.8, 0.9),
            )),
            technical=make_output(50),
            esg=make_output(50, factors=(
                AnalysisFactor("esg", "positive", "Green revenue growth", 0.6, 0.8),
            )),
        )
        factors = SynthesisEngine.thematic_convergence(inp)
        assert len(factors) == 1
        factor = factors[0]
        assert factor.category == "thematic"
        assert factor.metadata["theme"] == "growth"
        assert factor.metadata["factor_count"] == 2
        assert factor.supporting_analyses == ("fundamental", "esg")
        assert factor.weight == pytest.approx(0.7 * 0.85)
        assert factor.description.startswith("Positive")

    def test_thematic_requires_two_sources_and_one_direction(self):
        single_source = SynthesisInput(
            ticker="AAPL", context="investment",
            fundamental=make_output(50, factors=(
                AnalysisFactor("fundamental", "positive", "Revenue growth", 0.8, 0.9),
                AnalysisFactor("fundamental", "positive", "Earnings expansion", 0.8, 0.9),
            )),
            technical=make_output(50), esg=make_output(50),
        )
        mixed = SynthesisInput(
            ticker="AAPL", context="investment",
            fundamental=make_output(50, factors=(
                AnalysisFactor("fundamental", "positive", "Revenue growth", 0.8, 0.9),
            )),
            technical=make_output(50),
            esg=make_output(50, factors=(
                AnalysisFactor("esg", "negative", "Slowing revenue", 0.8, 0.9),
            )),
        )
        assert SynthesisEngine.thematic_convergence(single_source) == []
        assert SynthesisEngine.thematic_convergence(mixed) == []

    def test_factor_theme_matches_whole_words(self):
        assert factor_theme("Attractive PE ratio") == "valuation"
        assert factor_theme("Margins expanding") == "profitability"
        assert factor_theme("Carbon emissions falling") == "sustainability"
        assert factor_theme("Untapped potential") is None


class TestDivergence:

    def setup_method(self):
        self.engine = SynthesisEngine()

    def test_confidence_conflict(self):
        out = self.engine.synthesize(_input(60, 60, 60, confidences=(0.9, 0.5, 0.9)))
        categories = [f.category for f in out.divergence_factors]
        assert categories == ["confidence_conflict"]
        factor = out.divergence_factors[0]
        assert factor.weight == pytest.approx(0.5)
        assert factor.metadata["min_confidence_analysis"] == "technical"

    def test_time_horizon_conflict_for_short_trading(self):
        out = self.engine.synthesize(_input(80, 40, 80, "trading", "1D"))
        categories = [f.category for f in out.divergence_factors]
        assert categories == [
            "score_divergence", "score_divergence", "time_horizon_conflict", "timeframe_conflict",
        ]
        assert out.divergence_factors[2].weight == pytest.approx(0.7)

    def test_no_time_horizon_conflict_for_longer_timeframes(self):
        out = self.engine.synthesize(_input(80, 40, 80, "trading", "1M"))
        assert "time_horizon_conflict" not in [f.category for f in out.divergence_factors]

    def test_divergence_weight_capped(self):
        out = self.engine.synthesize(_input(100, 0, 50))
        assert out.divergence_factors[0].weight == pytest.approx(0.9)

    def test_quality_over_momentum(self):
        factor = SynthesisEngine.quality_momentum_conflict(_scores(80, 30, 50))
        assert factor.category == "quality_momentum_conflict"
        assert factor.weight == pytest.approx(0.6)
        assert factor.conflicting_analyses == ("fundamental", "technical")
        assert factor.metadata["conflict_type"] == "quality_over_momentum"

    def test_momentum_over_quality(self):
        factor = SynthesisEngine.quality_momentum_conflict(_scores(30, 80, 50))
        assert factor.metadata["conflict_type"] == "momentum_over_quality"
        assert factor.metadata["momentum_score"] == 80

    def test_no_quality_momentum_conflict_at_boundaries(self):
        assert SynthesisEngine.quality_momentum_conflict(_scores(70, 30, 50)) is None
        assert SynthesisEngine.quality_momentum_conflict(_scores(80, 40, 50)) is None

    def test_timeframe_conflict_only_for_day_trading(self):
        day = self.engine.synthesize(_input(75, 40, 60, "trading", "1D"))
        week = self.engine.synthesize(_input(75, 40, 60, "trading", "1W"))
        day_categories = [f.category for f in day.divergence_factors]
        assert "timeframe_conflict" in day_categories
        assert "timeframe_conflict" not in [f.category for f in week.divergence_factors]
        factor = day.divergence_factors[day_categories.index("timeframe_conflict")]
        assert factor.weight == pytest.approx(0.5)
        assert factor.conflicting_analyses == ("technical", "fundamental")

    def test_sustainability_conflict_for_investment(self):
        out = self.engine.synthesize(_input(80, 60, 30))
        factor = out.divergence_factors[-1]
        assert factor.category == "sustainability_conflict"
        assert factor.weight == pytest.approx(0.6)
        assert factor.conflicting_analyses == ("fundamental", "esg")
        assert factor.metadata["conflict_type"] == "financial_vs_sustainability"

    def test_no_sustainability_conflict_for_trading(self):
        out = self.engine.synthesize(_input(80, 60, 30, "trading", "1M"))
        assert "sustainability_conflict" not in [f.category for f in out.divergence_factors]


# ---------------------------------------------------------------------------
# Confidence
# ---------------------------------------------------------------------------

class TestConfidence:

    def setup_method(self):
        self.engine = SynthesisEngine()

    def test_agreement_keeps_source_confidence(self):
        out = self.engine.synthesize(_input(70, 70, 70, confidences=(0.9, 0.9, 0.9)))
        assert out.confidence == pytest.approx(0.9)
        assert out.report.confidence_level == "high"

    def test_disagreement_floor_on_consistency(self):
        # max gap 70 -> consistency max(0.5, 0.3) = 0.5
        out = self.engine.synthesize(_input(90, 20, 90))
        assert out.confidence == pytest.approx(0.4)
        assert out.report.confidence_level == "low"

    def test_clamped_to_minimum(self):
        out = self.engine.synthesize(_input(90, 20, 90, confidences=(0.1, 0.1, 0.1)))
        assert out.confidence == pytest.approx(0.1)

    def test_uses_base_weights(self):
        out = self.engine.synthesize(
            _input(60, 60, 60, "trading", "1D", confidences=(0.9, 0.5, 0.9)),
        )
        assert out.confidence == pytest.approx(0.25 * 0.9 + 0.6 * 0.5 + 0.15 * 0.9)


# ---------------------------------------------------------------------------
# Bands
# ---------------------------------------------------------------------------

class TestBands:

    def test_recommendation_edges(self):
        cases = [
            (0, "strong_sell"), (19.99, "strong_sell"), (20, "sell"), (39, "sell"),
            (40, "hold"), (59, "hold"), (60, "buy"), (79, "buy"),
            (80, "strong_buy"), (100, "strong_buy"),
        ]
        for score, label in cases:
            assert get_recommendation(score) == label

    def test_custom_bands(self):
        bands = ((50.0, "sell"), (70.0, "hold"))
        assert get_recommendation(49, bands) == "sell"
        assert get_recommendation(69, bands) == "hold"
        assert get_recommendation(70, bands) == "strong_buy"

    def test_confidence_levels(self):
        assert get_confidence_level(0.8) == "high"
        assert get_confidence_level(0.79) == "medium"
        assert get_confidence_level(0.6) == "medium"
        assert get_confidence_level(0.59) == "low"


# ---------------------------------------------------------------------------
# Report and output
# ---------------------------------------------------------------------------

class TestReport:

    def setup_method(self):
        self.engine = SynthesisEngine()

    def test_output_keys(self):
        data = self.engine.synthesize(_input(70, 50, 60)).to_dict()
        assert set(data) == {
            "synthesis_score", "convergence_factors", "divergence_factors",
            "full_report", "confidence", "trade_parameters",
        }
        assert set(data["full_report"]) == {
            "summary", "recommendation", "fundamental", "technical", "esg",
            "weighting", "synthesis_methodology", "key_insights", "limitations",
            "confidence_level", "metadata",
        }

    def test_no_timestamp_in_output(self):
        data = self.engine.synthesize(_input(70, 50, 60)).to_dict()
        assert "timestamp" not in data
        assert "timestamp" not in data["full_report"]
        assert "timestamp" not in data["full_report"]["metadata"]

    def test_deterministic(self):
        inp = _input(85, 35, 75, "trading", "1W")
        assert self.engine.synthesize(inp).to_dict() == self.engine.synthesize(inp).to_dict()

    def test_metadata(self):
        meta = self.engine.synthesize(_input(85, 35, 75)).report.metadata
        assert meta["ticker"] == "AAPL"
        assert meta["engine_version"] == "1.0.0"
        assert meta["divergence_factors"] == 3
        assert meta["convergence_factors"] == 1

    def test_summary_mentions_score_and_recommendation(self):
        summary = self.engine.synthesize(_input(100, 100, 100)).report.summary
        assert "100/100" in summary
        assert "STRONG BUY" in summary

    def test_limitation_when_no_patterns(self):
        limitations = self.engine.synthesize(_input(50, 55, 45)).report.limitations
        assert "No convergence or divergence patterns were identified between analyses" in limitations

    def test_source_confidence_limitation(self):
        out = self.engine.synthesize(_input(60, 60, 60, confidences=(0.8, 0.5, 0.8)))
        assert any(lim.startswith("Technical analysis constrained") for lim in out.report.limitations)

    def test_sources_echoed(self):
        out = self.engine.synthesize(_input(85, 35, 75))
        assert out.report.fundamental.score == 85
        assert out.report.technical.score == 35


class TestTradeParameterHook:

    def test_present_when_price_known(self, technical_details):
        out = SynthesisEngine().synthesize(
            _input(80, 80, 80, "trading", "1D", technical_details=technical_details),
        )
        assert out.trade_parameters is not None
        assert out.trade_parameters.entry_price > 0

    def test_absent_without_price(self):
        assert SynthesisEngine().synthesize(_input(80, 80, 80)).trade_parameters is None

    def test_disabled_by_config(self, technical_details):
        engine = SynthesisEngine(SynthesisConfig(include_trade_parameters=False))
        out = engine.synthesize(_input(80, 80, 80, technical_details=technical_details))
        assert out.trade_parameters is None


# ---------------------------------------------------------------------------
# Validation and envelopes
# ---------------------------------------------------------------------------

class TestValidation:

    def test_empty_ticker(self):
        with pytest.raises(InvalidInputError):
            _input(50, 50, 50, ticker=" ")

    def test_unknown_context_and_timeframe(self):
        with pytest.raises(InvalidInputError):
            _input(50, 50, 50, context="speculation")
        with pytest.raises(InvalidInputError):
            _input(50, 50, 50, context="trading", timeframe="2H")

    def test_out_of_range_score_rejected(self):
        with pytest.raises(InvalidInputError):
            SynthesisInput(
                ticker="AAPL", context="investment",
                fundamental={"score": 150, "confidence": 0.8},
                technical=make_output(50), esg=make_output(50),
            )

    def test_numpy_scalars_accepted(self):
        out = AnalysisOutput(score=np.int64(70), confidence=np.float64(0.8))
        assert out.score == 70.0
        assert out.confidence == pytest.approx(0.8)
        with pytest.raises(InvalidInputError):
            AnalysisOutput(score=True, confidence=0.8)

    def test_dict_sources_coerced(self):
        inp = SynthesisInput.from_dict({
            "ticker": "AAPL",
            "context": "investment",
            "fundamental_result": {"score": 70, "confidence": 0.8},
            "technical_result": {"score": 50, "confidence": 0.8, "factors": []},
            "esg_result": {"score": 60, "confidence": 0.8},
        })
        assert isinstance(inp.fundamental, AnalysisOutput)
        assert SynthesisEngine().synthesize(inp).synthesis_score == 63

    def test_missing_result_rejected(self):
        with pytest.raises(InvalidInputError):
            SynthesisInput.from_dict({
                "ticker": "AAPL", "context": "investment",
                "fundamental_result": {"score": 70, "confidence": 0.8},
                "technical_result": {"score": 50, "confidence": 0.8},
            })

    def test_synthesize_requires_input_object(self):
        with pytest.raises(InvalidInputError):
            SynthesisEngine().synthesize({"ticker": "AAPL"})


class TestEnvelopes:

    def test_success(self):
        out = SynthesisEngine().synthesize(_input(70, 50, 60))
        env = envelope_success(out, "req-1", timestamp="2024-01-01T00:00:00+00:00")
        assert env == {
            "success": True,
            "data": out.to_dict(),
            "request_id": "req-1",
            "timestamp": "2024-01-01T00:00:00+00:00",
        }

    def test_known_error(self):
        env = envelope_error(UpstreamFailureError("esg", "esg analysis failed"), "req-2")
        assert env["success"] is False
        assert env["error"]["code"] == "UPSTREAM_FAILURE"
        assert env["error"]["source"] == "esg"
        assert env["timestamp"]

    def test_unexpected_error_is_masked(self):
        env = envelope_error(ValueError("db password leaked"), "req-3")
        assert env["error"] == {"code": "INTERNAL_ERROR", "message": "An unexpected error occurred"}
        assert "leaked" not in str(env)

"""Tests for signal360.pipeline -- concurrent gather, retries, timeouts, failures."""

import time
from unittest.mock import MagicMock, patch

import pytest

from signal360.analysis.base import AnalysisOutput, BaseAnalyzer
from signal360.analysis.synthesis import SynthesisOutput
from signal360.analysis.technical import TechnicalAnalyzerPlugin
from signal360.config import PipelineConfig
from signal360.errors import InvalidInputError, UpstreamFailureError
from signal360.pipeline.context import PipelineContext
from signal360.pipeline.engine import SynthesisPipeline

from conftest import make_output


FAST_RETRY = PipelineConfig(
    source_timeout_seconds=5.0,
    retry_attempts=2,
    backoff_min_seconds=0,
    backoff_max_seconds=0,
)


def _fixed(score, confidence=0.8):
    def source(ticker, context, timeframe):
        return make_output(score, confidence)
    return source


class _Flaky:
    """Fails the first *failures* calls, then succeeds."""

    def __init__(self, failures, score=70):
        self.failures = failures
        self.score = score
        self.calls = 0

    def __call__(self, ticker, context, timeframe):
        self.calls += 1
        if self.calls <= self.failures:
            raise ConnectionError("upstream unavailable")
        return make_output(self.score)


class _StaticESG(BaseAnalyzer):
    name = "esg"

    def analyze(self, ticker, context, timeframe=None):
        return make_output(65, 0.7)


class TestSynthesisPipeline:

    def setup_method(self):
        self.market_data = MagicMock()

    def _pipeline(self, fundamental, esg, config=FAST_RETRY):
        return SynthesisPipeline(
            fundamental_source=fundamental,
            esg_source=esg,
            technical=TechnicalAnalyzerPlugin(market_data=self.market_data),
            config=config,
        )

    def test_run_with_supplied_bars(self, sample_ohlcv):
        pipeline = self._pipeline(_fixed(70), _fixed(60))
        out = pipeline.run("AAPL", "investment", bars=sample_ohlcv)

        assert isinstance(out, SynthesisOutput)
        assert 0 <= out.synthesis_score <= 100
        self.market_data.get_price_history.assert_not_called()

        ctx = pipeline.last_context
        assert ctx.complete
        assert ctx.timeframe == "1Y"
        assert ctx.attempts == {"fundamental": 1, "technical": 1, "esg": 1}
        assert {"fundamental", "technical", "esg", "total"} <= set(ctx.timing)

    def test_fetches_history_without_bars(self, sample_ohlcv):
        self.market_data.get_price_history.return_value = sample_ohlcv
        pipeline = self._pipeline(_fixed(70), _fixed(60))
        out = pipeline.run("AAPL", "trading")

        self.market_data.get_price_history.assert_called_once_with("AAPL", "1D", "trading")
        assert out.report.metadata["timeframe"] == "1D"

    def test_matches_direct_synthesis(self, sample_ohlcv):
        pipeline = self._pipeline(_fixed(70), _fixed(60))
        a = pipeline.run("AAPL", "trading", "1W", bars=sample_ohlcv)
        b = pipeline.run("AAPL", "trading", "1W", bars=sample_ohlcv)
        assert a.to_dict() == b.to_dict()

    def test_transient_failure_retried(self, sample_ohlcv):
        flaky = _Flaky(failures=1)
        pipeline = self._pipeline(flaky, _fixed(60))
        pipeline.run("AAPL", "investment", bars=sample_ohlcv)
        assert flaky.calls == 2
        assert pipeline.last_context.attempts["fundamental"] == 2

    def test_persistent_failure_aborts(self, sample_ohlcv):
        broken = _Flaky(failures=10)
        pipeline = self._pipeline(_fixed(70), broken)
        with pytest.raises(UpstreamFailureError) as excinfo:
            pipeline.run("AAPL", "investment", bars=sample_ohlcv)
        assert excinfo.value.source == "esg"
        assert "ConnectionError" in excinfo.value.details
        assert broken.calls == 2
        assert pipeline.last_context.errors[0]["source"] == "esg"

    def test_missing_result_aborts(self, sample_ohlcv):
        pipeline = self._pipeline(lambda t, c, tf: None, _fixed(60))
        with pytest.raises(UpstreamFailureError) as excinfo:
            pipeline.run("AAPL", "investment", bars=sample_ohlcv)
        assert excinfo.value.source == "fundamental"

    def test_timeout_aborts(self, sample_ohlcv):
        def slow(ticker, context, timeframe):
            time.sleep(1.0)
            return make_output(60)

        config = PipelineConfig(source_timeout_seconds=0.2, retry_attempts=1,
                                backoff_min_seconds=0, backoff_max_seconds=0)
        pipeline = self._pipeline(_fixed(70), slow, config=config)
        with pytest.raises(UpstreamFailureError) as excinfo:
            pipeline.run("AAPL", "investment", bars=sample_ohlcv)
        assert excinfo.value.source == "esg"
        assert "TimeoutError" in excinfo.value.details

    def test_insufficient_bars_not_retried(self, short_ohlcv):
        pipeline = self._pipeline(_fixed(70), _fixed(60))
        with pytest.raises(UpstreamFailureError) as excinfo:
            pipeline.run("AAPL", "trading", "1D", bars=short_ohlcv)
        assert excinfo.value.source == "technical"
        assert excinfo.value.details.startswith("INSUFFICIENT_DATA")
        assert pipeline.last_context.attempts["technical"] == 1

    def test_abort_stops_other_workers(self, short_ohlcv):
        calls = []

        def slow_failure(ticker, context, timeframe):
            calls.append(time.monotonic())
            time.sleep(0.3)
            raise ConnectionError("upstream unavailable")

        config = PipelineConfig(source_timeout_seconds=5.0, retry_attempts=5,
                                backoff_min_seconds=0, backoff_max_seconds=0)
        pipeline = self._pipeline(slow_failure, _fixed(60), config=config)
        with pytest.raises(UpstreamFailureError) as excinfo:
            pipeline.run("AAPL", "trading", "1D", bars=short_ohlcv)
        assert excinfo.value.source == "technical"

        # Let the fundamental worker finish its in-flight attempt
        time.sleep(0.6)
        ctx = pipeline.last_context
        assert ctx.cancelled.is_set()
        assert len(calls) <= 1
        assert "fundamental" not in ctx.results
        assert "fundamental" not in ctx.attempts

    def test_invalid_context_rejected_before_fetch(self):
        fundamental = MagicMock()
        pipeline = self._pipeline(fundamental, _fixed(60))
        with pytest.raises(InvalidInputError):
            pipeline.run("AAPL", "speculation")
        with pytest.raises(InvalidInputError):
            pipeline.run("AAPL", "trading", "2H")
        fundamental.assert_not_called()

    def test_dict_and_analyzer_sources(self, sample_ohlcv):
        def as_dict(ticker, context, timeframe):
            return {"score": 72, "confidence": 0.9, "factors": []}

        pipeline = self._pipeline(as_dict, _StaticESG())
        out = pipeline.run("AAPL", "investment", bars=sample_ohlcv)
        assert isinstance(out.report.fundamental, AnalysisOutput)
        assert out.report.fundamental.score == 72
        assert out.report.esg.score == 65


class TestPipelineContext:

    def test_complete_only_with_all_sources(self):
        ctx = PipelineContext(ticker="AAPL", context="trading")
        ctx.set_result("fundamental", make_output(50))
        ctx.set_result("technical", make_output(50))
        assert not ctx.complete
        ctx.set_result("esg", make_output(50))
        assert ctx.complete
        assert ctx.get_result("esg").score == 50
        assert ctx.get_result("missing") is None


class TestDefaultTechnicalSource:

    @patch("signal360.pipeline.engine.DataCache")
    def test_price_cache_sized_from_config(self, mock_cache):
        config = PipelineConfig(cache_ttl_hours=6.0, cache_max_entries=32)
        pipeline = SynthesisPipeline(_fixed(70), _fixed(60), config=config)

        mock_cache.assert_called_once_with("price_history", ttl_hours=6.0, max_entries=32)
        assert pipeline.technical._market_data.cache is mock_cache.return_value
        assert pipeline.sources["technical"] is pipeline.technical

    def test_injected_technical_source_kept(self):
        plugin = TechnicalAnalyzerPlugin(market_data=MagicMock())
        pipeline = SynthesisPipeline(_fixed(70), _fixed(60), technical=plugin)
        assert pipeline.technical is plugin

"""SynthesisPipeline: run the three source analyses concurrently, then synthesize.

Each source runs on a ``ThreadPoolExecutor`` worker with its own retry
policy (tenacity, exponential backoff).  The futures are joined with a
timeout.  Any source that still fails aborts the request with
``UpstreamFailureError``: there is no partial synthesis, and the other
workers stop at their next attempt.
"""

from __future__ import annotations

import threading
import time
from concurrent.futures import FIRST_EXCEPTION, ThreadPoolExecutor, wait
from typing import Any, Callable, Optional, Union

from tenacity import (
    Retrying,
    retry_if_not_exception_type,
    stop_after_attempt,
    stop_when_event_set,
    wait_exponential,
)

from signal360.analysis.base import AnalysisOutput, BaseAnalyzer, ensure_output
from signal360.analysis.synthesis import SynthesisEngine, SynthesisInput, SynthesisOutput
from signal360.analysis.technical import TechnicalAnalyzerPlugin
from signal360.config import CONTEXTS, SOURCES, TIMEFRAMES, PipelineConfig, default_timeframe
from signal360.data_sources.market_data import MarketDataClient, PriceSeries
from signal360.errors import (
    InsufficientDataError,
    InvalidInputError,
    UpstreamFailureError,
)
from signal360.pipeline.context import PipelineContext
from signal360.utils.cache import DataCache
from signal360.utils.logger import setup_logger

logger = setup_logger("pipeline")

SourceCallable = Callable[[str, str, Optional[str]], Any]
Source = Union[BaseAnalyzer, SourceCallable]


class _RequestAborted(Exception):
    """Raised inside a worker once another source has aborted the request."""


# Failures that retrying cannot fix
_NON_RETRYABLE = (InvalidInputError, InsufficientDataError, _RequestAborted)


class SynthesisPipeline:
    """Orchestrates one synthesis request end to end.

    Attributes:
        engine: synthesis engine applied once all sources have returned.
        sources: source name -> analyzer (``BaseAnalyzer`` or a callable
            ``(ticker, context, timeframe) -> AnalysisOutput | dict``).
        config: worker count, per-source timeout and retry policy.
        last_context: ``PipelineContext`` of the most recent ``run()``.
    """

    def __init__(
        self,
        fundamental_source: Source,
        esg_source: Source,
        technical: Optional[TechnicalAnalyzerPlugin] = None,
        engine: Optional[SynthesisEngine] = None,
        config: Optional[PipelineConfig] = None,
    ) -> None:
        self.engine = engine or SynthesisEngine()
        self.config = config or PipelineConfig()
        if technical is None:
            cache = DataCache(
                "price_history",
                ttl_hours=self.config.cache_ttl_hours,
                max_entries=self.config.cache_max_entries,
            )
            technical = TechnicalAnalyzerPlugin(market_data=MarketDataClient(cache=cache))
        self.technical = technical
        self.sources: dict[str, Source] = {
            "fundamental": fundamental_source,
            "technical": self.technical,
            "esg": esg_source,
        }
        self._lock = threading.Lock()
        self.last_context: Optional[PipelineContext] = None

    # ------------------------------------------------------------------
    # Source execution
    # ------------------------------------------------------------------
    def _invoke(self, source: str, ctx: PipelineContext) -> AnalysisOutput:
        """Call one source once and coerce its result."""
        if ctx.cancelled.is_set():
            raise _RequestAborted(source)
        if source == "technical" and ctx.bars is not None:
            result = self.technical.analyze_bars(ctx.ticker, ctx.bars, ctx.context, ctx.timeframe)
        else:
            target = self.sources[source]
            if isinstance(target, BaseAnalyzer):
                result = target.analyze(ctx.ticker, ctx.context, ctx.timeframe)
            else:
                result = target(ctx.ticker, ctx.context, ctx.timeframe)
        if result is None:
            raise UpstreamFailureError(source, f"{source} analysis returned no result")
        return ensure_output(result, source)

    def _retrying(self, source: str, ctx: PipelineContext) -> Retrying:
        cfg = self.config

        def _log_retry(retry_state) -> None:
            exc = retry_state.outcome.exception() if retry_state.outcome else None
            logger.warning(
                "Source %s failed, retrying (%d/%d): %s",
                source, retry_state.attempt_number, cfg.retry_attempts, exc,
            )

        return Retrying(
            stop=stop_after_attempt(cfg.retry_attempts) | stop_when_event_set(ctx.cancelled),
            wait=wait_exponential(
                multiplier=1, min=cfg.backoff_min_seconds, max=cfg.backoff_max_seconds,
            ),
            retry=retry_if_not_exception_type(_NON_RETRYABLE),
            reraise=True,
            before_sleep=_log_retry,
        )

    def _run_source(self, source: str, ctx: PipelineContext) -> AnalysisOutput:
        """Run one source with retries, recording timing and attempts."""
        start = time.monotonic()
        attempts = 0
        try:
            for attempt in self._retrying(source, ctx):
                with attempt:
                    attempts = attempt.retry_state.attempt_number
                    output = self._invoke(source, ctx)
        finally:
            elapsed = time.monotonic() - start
            with self._lock:
                if not ctx.cancelled.is_set():
                    ctx.timing[source] = round(elapsed, 3)
                    ctx.attempts[source] = attempts
        with self._lock:
            # An aborted request keeps the state it had when it failed
            if ctx.cancelled.is_set():
                raise _RequestAborted(source)
            ctx.set_result(source, output)
        logger.info("Source %s completed in %.2fs (score=%.0f)", source, elapsed, output.score)
        return output

    def _fail(self, ctx: PipelineContext, source: str, exc: BaseException) -> UpstreamFailureError:
        """Record *exc* against *source* and stop the remaining workers."""
        with self._lock:
            ctx.cancelled.set()
        ctx.errors.append({"source": source, "error": str(exc), "type": type(exc).__name__})
        logger.error("Source %s failed for %s: %s", source, ctx.ticker, exc)
        if isinstance(exc, UpstreamFailureError):
            return exc
        code = getattr(exc, "code", None)
        details = f"{type(exc).__name__}: {exc}" if code is None else f"{code}: {exc}"
        return UpstreamFailureError(source, f"{source} analysis failed for {ctx.ticker}", details)

    def gather(self, ctx: PipelineContext) -> dict[str, AnalysisOutput]:
        """Run all three sources concurrently and join them with a timeout.

        Raises:
            UpstreamFailureError: a source failed after retries or timed out.
        """
        executor = ThreadPoolExecutor(max_workers=self.config.max_workers)
        try:
            futures = {executor.submit(self._run_source, s, ctx): s for s in SOURCES}
            done, pending = wait(
                futures, timeout=self.config.source_timeout_seconds, return_when=FIRST_EXCEPTION,
            )
            for future in done:
                exc = future.exception()
                if exc is not None:
                    raise self._fail(ctx, futures[future], exc) from exc
            if pending:
                source = sorted(futures[f] for f in pending)[0]
                raise self._fail(
                    ctx, source,
                    TimeoutError(f"no result within {self.config.source_timeout_seconds:g}s"),
                )
        finally:
            executor.shutdown(wait=False, cancel_futures=True)
        return {s: ctx.results[s] for s in SOURCES}

    # ------------------------------------------------------------------
    # Main orchestration
    # ------------------------------------------------------------------
    def run(
        self,
        ticker: str,
        context: str,
        timeframe: Optional[str] = None,
        bars: Optional[PriceSeries] = None,
    ) -> SynthesisOutput:
        """Gather the three analyses for *ticker* and synthesize them.

        Args:
            ticker: symbol to analyze.
            context: ``"investment"`` or ``"trading"``.
            timeframe: one of 1D/1W/1M/3M/6M/1Y; defaults by context.
            bars: optional price series; when given, the technical source
                analyzes it instead of fetching history.

        Raises:
            InvalidInputError: unknown context or timeframe.
            UpstreamFailureError: any source produced no AnalysisOutput.
        """
        if context not in CONTEXTS:
            raise InvalidInputError(f"context must be one of: {', '.join(CONTEXTS)}")
        timeframe = timeframe or default_timeframe(context)
        if timeframe not in TIMEFRAMES:
            raise InvalidInputError(f"timeframe must be one of: {', '.join(TIMEFRAMES)}")

        ctx = PipelineContext(ticker=ticker, context=context, timeframe=timeframe, bars=bars)
        self.last_context = ctx
        pipeline_start = time.monotonic()
        logger.info("Synthesis pipeline started: %s (context=%s, timeframe=%s, run=%s)",
                    ticker, context, timeframe, ctx.run_id)

        results = self.gather(ctx)
        output = self.engine.synthesize(SynthesisInput(
            ticker=ticker,
            context=context,
            timeframe=timeframe,
            fundamental=results["fundamental"],
            technical=results["technical"],
            esg=results["esg"],
        ))

        total = time.monotonic() - pipeline_start
        ctx.timing["total"] = round(total, 3)
        logger.info("Synthesis pipeline completed in %.1fs: %s score=%d",
                    total, ticker, output.synthesis_score)
        return output

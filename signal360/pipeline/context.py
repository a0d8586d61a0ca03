"""PipelineContext: per-request state bag passed through a synthesis run."""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional

from signal360.analysis.base import AnalysisOutput
from signal360.data_sources.market_data import PriceSeries


@dataclass
class PipelineContext:
    """Accumulates source results and timing as a synthesis request executes."""

    # Input
    ticker: str
    context: str
    timeframe: Optional[str] = None
    bars: Optional[PriceSeries] = None
    run_id: str = field(default_factory=lambda: datetime.now().strftime("%Y%m%d_%H%M%S_%f"))

    # Source results: source name -> AnalysisOutput
    results: dict[str, AnalysisOutput] = field(default_factory=dict)

    # Pipeline metadata
    timing: dict[str, float] = field(default_factory=dict)
    attempts: dict[str, int] = field(default_factory=dict)
    errors: list[dict[str, Any]] = field(default_factory=list)
    started_at: datetime = field(default_factory=datetime.now)
    # Set once any source fails; remaining workers stop retrying
    cancelled: threading.Event = field(default_factory=threading.Event, repr=False, compare=False)

    def set_result(self, source: str, output: AnalysisOutput) -> None:
        self.results[source] = output

    def get_result(self, source: str) -> AnalysisOutput | None:
        return self.results.get(source)

    @property
    def complete(self) -> bool:
        return all(s in self.results for s in ("fundamental", "technical", "esg"))

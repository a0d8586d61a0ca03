"""Shared pytest fixtures for the Signal360 test suite.

Provides synthetic price data with fixed random seed for reproducibility.
All fixtures are independent of external APIs.
"""

import numpy as np
import pandas as pd
import pytest

from signal360.analysis.base import AnalysisOutput
from signal360.data_sources.market_data import frame_to_bars


def make_ohlcv(n=252, seed=42, start_price=150.0, trend=0.0004, vol=0.015):
    """Generate a synthetic OHLCV DataFrame (geometric Brownian motion)."""
    np.random.seed(seed)
    dates = pd.bdate_range(start="2023-01-02", periods=n)
    log_returns = np.random.normal(trend, vol, n)
    close = start_price * np.exp(np.cumsum(log_returns))
    high = close * (1 + np.abs(np.random.normal(0.002, 0.005, n)))
    low = close * (1 - np.abs(np.random.normal(0.002, 0.005, n)))
    open_ = close * (1 + np.random.normal(0, 0.003, n))
    volume = np.random.randint(1_000_000, 10_000_000, n).astype(float)
    return pd.DataFrame(
        {"Open": open_, "High": high, "Low": low, "Close": close, "Volume": volume},
        index=dates,
    )


def make_output(score, confidence=0.8, details=None, factors=()):
    """AnalysisOutput stand-in for a fundamental/technical/ESG source."""
    return AnalysisOutput(
        score=score, factors=factors, details=details or {}, confidence=confidence,
    )


# ---------------------------------------------------------------------------
# 1. OHLCV fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def sample_ohlcv():
    """252 daily bars starting near 150, daily drift ~0.04%, vol ~1.5%."""
    return make_ohlcv()


@pytest.fixture
def sample_bars(sample_ohlcv):
    """The same series as a list of PriceBar."""
    return frame_to_bars(sample_ohlcv)


@pytest.fixture
def short_ohlcv():
    """Five bars: below every indicator period and the analysis minimum."""
    return make_ohlcv(n=5)


# ---------------------------------------------------------------------------
# 2. Source outputs
# ---------------------------------------------------------------------------

@pytest.fixture
def technical_details():
    """Technical details carrying what trade parameters need."""
    return {
        "current_price": 100.0,
        "momentum_indicators": {"atr": 2.0},
        "support_resistance": {"support_levels": [], "resistance_levels": []},
    }

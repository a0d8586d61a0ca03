"""Data source modules."""

from .market_data import MarketDataClient, PriceBar

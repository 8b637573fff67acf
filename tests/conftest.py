"""Pytest configuration helpers for the test suite."""
import sys
from pathlib import Path

import pandas as pd
import pytest

_SRC = Path(__file__).resolve().parents[1] / "src"
if _SRC.is_dir():
    p = str(_SRC)
    if p not in sys.path:
        sys.path.insert(0, p)

from portfolio_backtester.config import AssetAllocation, FetchConfig, PortfolioConfig  # noqa: E402


def month_index(start="2020-01-31", periods=12):
    return pd.date_range(start, periods=periods, freq="ME")


def make_config(weights, start="2020-01-31", end="2020-12-31", **kw):
    assets = tuple(AssetAllocation(t, w) for t, w in weights.items())
    return PortfolioConfig(assets=assets, start_date=start, end_date=end, **kw)


@pytest.fixture
def flat_prices():
    """One asset at 10.00 for twelve months."""
    return pd.DataFrame({"AAA": [10.0] * 12}, index=month_index())


@pytest.fixture
def fast_fetch():
    return FetchConfig(timeout=5.0, max_retries=2, backoff_seconds=0.0, max_workers=4, cache_dir=None)


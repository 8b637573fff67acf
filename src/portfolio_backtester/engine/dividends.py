"""Dividend schedules.

Explicit per-share events come from the price source (``dividends`` frame,
month-end index, one column per ticker). Without events, an asset's annual
``dividend_yield`` is paid in March, August and October, one third each.
"""
from typing import Mapping, Optional

import pandas as pd

from .calendar import month_end, sum_by_month

YIELD_PAY_MONTHS = (3, 8, 10)


class DividendSchedule:
    def __init__(self, assets, events: Optional[pd.DataFrame] = None):
        self.yields = {a.ticker: float(a.dividend_yield) for a in assets}
        self.events = sum_by_month(events) if events is not None else pd.DataFrame()

    def has_events(self, ticker: str) -> bool:
        return ticker in self.events.columns and bool((self.events[ticker].fillna(0.0) > 0).any())

    def per_share(self, ticker: str, month, price: float) -> float:
        month = month_end(month)
        if self.has_events(ticker):
            if month in self.events.index:
                v = self.events.at[month, ticker]
                return float(v) if pd.notna(v) and v > 0 else 0.0
            return 0.0
        y = self.yields.get(ticker, 0.0)
        if y > 0 and month.month in YIELD_PAY_MONTHS:
            return price * y / len(YIELD_PAY_MONTHS)
        return 0.0

    def payouts(self, holdings: Mapping[str, float], month, prices: Mapping[str, float]):
        """Yield (ticker, per_share, quantity, amount) for each held ticker paying this month."""
        for t, q in holdings.items():
            if q <= 0 or t not in prices:
                continue
            ps = self.per_share(t, month, prices[t])
            if ps > 0:
                yield t, ps, q, ps * q

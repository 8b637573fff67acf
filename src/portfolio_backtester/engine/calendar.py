import pandas as pd


def month_end(value) -> pd.Timestamp:
    """Snap any date-like value to its calendar month end (midnight)."""
    ts = pd.Timestamp(value)
    if ts.tzinfo is not None:
        ts = ts.tz_localize(None)
    return (ts + pd.offsets.MonthEnd(0)).normalize()


def month_range(start, end) -> pd.DatetimeIndex:
    return pd.date_range(month_end(start), month_end(end), freq="ME")


def months_between(start, end) -> int:
    """Inclusive number of calendar months from start to end (0 if reversed)."""
    s, e = month_end(start), month_end(end)
    if s > e:
        return 0
    return (e.year - s.year) * 12 + (e.month - s.month) + 1


def month_key(value):
    ts = pd.Timestamp(value)
    return ts.year, ts.month


def snap_frame(prices: pd.DataFrame) -> pd.DataFrame:
    """Reindex a price frame onto month-end dates, keeping the last row of each month."""
    if prices.empty:
        return prices
    idx = pd.DatetimeIndex([month_end(d) for d in prices.index])
    out = prices.copy()
    out.index = idx
    return out[~out.index.duplicated(keep="last")].sort_index()


def sum_by_month(events: pd.DataFrame) -> pd.DataFrame:
    """Snap an event frame (dividends) onto month-end dates, adding up same-month rows."""
    if events.empty:
        return events
    idx = pd.DatetimeIndex([month_end(d) for d in events.index])
    return events.groupby(idx).sum(min_count=1).sort_index()

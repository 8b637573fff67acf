import io
import logging
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from concurrent.futures import TimeoutError as FuturesTimeout
from dataclasses import dataclass, field
from typing import Dict, Iterable, Optional, Protocol, Tuple

import pandas as pd

from ..config import FetchConfig
from ..errors import BacktestCancelled, FetchError
from ..engine.calendar import month_end, snap_frame, sum_by_month
from .cache import PriceCache

logger = logging.getLogger(__name__)


class PriceSource(Protocol):
    def fetch_ticker(self, ticker: str, start, end) -> Tuple[pd.Series, pd.Series]:
        """(month-end close, month-end dividends per share) for one ticker."""
        ...


@dataclass(frozen=True)
class PriceData:
    prices: pd.DataFrame                         # month-end index, one column per ticker
    dividends: pd.DataFrame                      # per-share amounts summed per month
    failed: Dict[str, str] = field(default_factory=dict)


def _empty_series(name=None):
    return pd.Series(dtype=float, index=pd.DatetimeIndex([]), name=name)


def _strip_tz(index):
    index = pd.DatetimeIndex(index)
    return index.tz_localize(None) if index.tz is not None else index


class YahooPriceSource:
    """Per-ticker Yahoo history through yfinance.

    With ``with_dividends`` the close is unadjusted and dividend events are
    returned separately, so the simulator can credit them without counting
    them twice. Without it the close is total-return adjusted.
    """

    def __init__(self, with_dividends: bool = True, timeout: float = 30.0):
        self.with_dividends = with_dividends
        self.timeout = timeout

    def fetch_ticker(self, ticker, start, end):
        import yfinance as yf

        hist = yf.Ticker(ticker).history(
            start=pd.Timestamp(start).replace(day=1).strftime("%Y-%m-%d"),
            end=(month_end(end) + pd.Timedelta(days=1)).strftime("%Y-%m-%d"),
            interval="1d",
            auto_adjust=not self.with_dividends,
            actions=True,
            timeout=self.timeout,
        )
        if hist is None or hist.empty or "Close" not in hist.columns:
            return _empty_series(ticker), _empty_series(ticker)
        hist.index = _strip_tz(hist.index)
        close = hist["Close"].resample("ME").last().dropna()
        if self.with_dividends and "Dividends" in hist.columns:
            divs = hist["Dividends"].resample("ME").sum()
            divs = divs[divs > 0]
        else:
            divs = _empty_series(ticker)
        return close.rename(ticker), divs.rename(ticker)


class FramePriceSource:
    """Price source over frames already in memory (tests, CSV imports, replays)."""

    def __init__(self, prices: pd.DataFrame, dividends: Optional[pd.DataFrame] = None):
        self.prices = snap_frame(prices)
        self.dividends = sum_by_month(dividends) if dividends is not None else pd.DataFrame()

    @classmethod
    def from_points(cls, points: Iterable, dividends: Optional[pd.DataFrame] = None):
        rows = [(p.date, p.ticker, p.price) for p in points]
        frame = pd.DataFrame(rows, columns=["date", "ticker", "price"])
        prices = frame.pivot_table(index="date", columns="ticker", values="price", aggfunc="last")
        prices.columns.name = None
        return cls(prices, dividends)

    def fetch_ticker(self, ticker, start, end):
        lo, hi = month_end(start), month_end(end)
        if ticker in self.prices.columns:
            close = self.prices[ticker].dropna()
            close = close[(close.index >= lo) & (close.index <= hi)]
        else:
            close = _empty_series(ticker)
        if ticker in self.dividends.columns:
            divs = self.dividends[ticker].dropna()
            divs = divs[(divs.index >= lo) & (divs.index <= hi)]
        else:
            divs = _empty_series(ticker)
        return close, divs


def _fetch_with_retries(source: PriceSource, ticker, start, end, cfg: FetchConfig, cancel=None):
    last_exc = None
    for attempt in range(cfg.max_retries):
        if cancel is not None:
            cancel.raise_if_cancelled(f"fetching {ticker}")
        try:
            return source.fetch_ticker(ticker, start, end)
        except (FetchError, OSError, ValueError, KeyError, RuntimeError) as exc:
            last_exc = exc
            logger.warning("%s: fetch failed (attempt %d/%d): %s", ticker, attempt + 1, cfg.max_retries, exc)
            if attempt < cfg.max_retries - 1:
                time.sleep(cfg.backoff_seconds * (2 ** attempt))
    raise FetchError(f"{ticker}: giving up after {cfg.max_retries} attempts: {last_exc}")


def _cache_key(source, ticker, start, end):
    return f"{type(source).__name__}|{ticker}|{month_end(start):%Y-%m}|{month_end(end):%Y-%m}"


def fetch_all(source: PriceSource, tickers, start, end, cfg: Optional[FetchConfig] = None,
              cache: Optional[PriceCache] = None, cancel=None) -> PriceData:
    """Fan out one fetch per ticker on a thread pool and gather month-end frames.

    Runs entirely before simulation. Tickers that keep failing are reported in
    ``failed`` and left without data; if every ticker fails, FetchError.
    """
    cfg = cfg or FetchConfig()
    tickers = list(dict.fromkeys(tickers))
    closes, divs, failed = {}, {}, {}

    todo = []
    for t in tickers:
        cached = cache.get("px", _cache_key(source, t, start, end)) if cache is not None else None
        if cached is not None:
            closes[t] = cached["close"].dropna()
            divs[t] = cached["dividend"].dropna() if "dividend" in cached.columns else _empty_series(t)
        else:
            todo.append(t)

    if todo:
        workers = max(1, min(cfg.max_workers, len(todo)))
        pool = ThreadPoolExecutor(max_workers=workers, thread_name_prefix="fetch")
        try:
            futures = {pool.submit(_fetch_with_retries, source, t, start, end, cfg, cancel): t for t in todo}
            deadline = cfg.timeout * cfg.max_retries + cfg.backoff_seconds * (2 ** cfg.max_retries)
            try:
                for fut in as_completed(futures, timeout=deadline):
                    t = futures[fut]
                    try:
                        close, div = fut.result()
                    except FetchError as exc:
                        failed[t] = str(exc)
                        continue
                    closes[t], divs[t] = close, div
                    if cache is not None:
                        frame = pd.DataFrame({"close": close, "dividend": div})
                        cache.put("px", _cache_key(source, t, start, end), frame)
            except FuturesTimeout:
                for fut, t in futures.items():
                    if not fut.done():
                        fut.cancel()
                        failed[t] = f"timed out after {deadline:.0f}s"
        finally:
            pool.shutdown(wait=False, cancel_futures=True)

    if cancel is not None and cancel.cancelled:
        raise BacktestCancelled("cancelled while fetching prices")
    if tickers and not any(len(closes.get(t, ())) for t in tickers):
        raise FetchError(f"no price data for any of {tickers}: {failed}")
    for t, msg in failed.items():
        logger.warning("%s: no data (%s)", t, msg)

    prices = pd.DataFrame({t: closes[t] for t in tickers if t in closes})
    dividends = pd.DataFrame({t: divs[t] for t in tickers if t in divs and len(divs[t])})
    return PriceData(
        prices=snap_frame(prices).sort_index(),
        dividends=sum_by_month(dividends) if not dividends.empty else dividends,
        failed=failed,
    )


def fetch_fred_series(series_id, start=None, end=None, cache: Optional[PriceCache] = None,
                      timeout: float = 30.0):
    """
    Fetch a FRED series via CSV endpoints (no API key), bypassing system proxies.
    Tries 'downloaddata' then 'fredgraph' CSV. Caches monthly, month-end data.
    """
    import certifi
    import requests

    key = f"{series_id}|{start}|{end}"
    if cache is not None:
        cached = cache.get("fred", key)
        if cached is not None:
            return cached

    urls = [
        f"https://fred.stlouisfed.org/series/{series_id}/downloaddata/{series_id}.csv&frequency=m",
        f"https://fred.stlouisfed.org/graph/fredgraph.csv?id={series_id}&frequency=m",
    ]

    sess = requests.Session()
    # ignore proxy environment variables that may be misconfigured
    sess.trust_env = False
    headers = {"User-Agent": "portfolio-backtester/0.2"}

    last_exc = None
    for url in urls:
        try:
            r = sess.get(
                url,
                timeout=timeout,
                verify=certifi.where(),
                headers=headers,
                allow_redirects=True,
                proxies={"http": None, "https": None},
            )
            r.raise_for_status()
            df = pd.read_csv(io.StringIO(r.text))

            cols_lower = {c.lower(): c for c in df.columns}
            date_col = cols_lower.get("observation_date") or cols_lower.get("date")
            if date_col is None:
                raise ValueError("CSV missing observation_date column")
            df[date_col] = pd.to_datetime(df[date_col])

            if series_id not in df.columns:
                value_cols = [c for c in df.columns if c != date_col]
                if not value_cols:
                    raise ValueError("CSV missing value column")
                df = df.rename(columns={value_cols[0]: series_id})

            df[series_id] = pd.to_numeric(df[series_id], errors="coerce")
            df = df.dropna(subset=[series_id]).set_index(date_col)[[series_id]]

            if start is not None:
                df = df[df.index >= pd.to_datetime(start)]
            if end is not None:
                df = df[df.index <= pd.to_datetime(end)]

            df = df.resample("ME").last()
            if cache is not None:
                cache.put("fred", key, df)
            return df
        except (requests.RequestException, ValueError) as e:
            logger.warning("FRED %s via %s failed: %s", series_id, url, e)
            last_exc = e

    raise FetchError(f"Failed to fetch FRED series {series_id}: {last_exc}")

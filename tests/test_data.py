import pandas as pd
import pytest

from conftest import month_index
from portfolio_backtester.data.cache import CacheHealth, PriceCache
from portfolio_backtester.data.fetchers import FramePriceSource, fetch_all, fetch_fred_series
from portfolio_backtester.engine.simulator import CancelToken
from portfolio_backtester.errors import BacktestCancelled, FetchError
from portfolio_backtester.models import PricePoint


class CountingSource(FramePriceSource):
    def __init__(self, prices, dividends=None):
        super().__init__(prices, dividends)
        self.calls = 0

    def fetch_ticker(self, ticker, start, end):
        self.calls += 1
        return super().fetch_ticker(ticker, start, end)


def test_cache_health_trips_and_recovers():
    health = CacheHealth(max_failures=2, cooldown=3600)
    health.record_failure(OSError("disk full"))
    assert health.available
    health.record_failure(OSError("disk full"))
    assert not health.available
    health.record_success()
    assert health.available
    assert health.failures == 0


def test_cache_health_cooldown_expires():
    health = CacheHealth(max_failures=1, cooldown=0)
    health.record_failure(OSError("boom"))
    assert health.available


def test_price_cache_disk_round_trip(tmp_path):
    frame = pd.DataFrame({"close": [1.0, 2.0]}, index=month_index(periods=2))
    PriceCache(tmp_path).put("px", "k", frame)
    restored = PriceCache(tmp_path).get("px", "k")
    assert list(restored["close"]) == [1.0, 2.0]
    assert list(restored.index) == list(frame.index)


def test_price_cache_write_failure_is_recorded(tmp_path):
    blocker = tmp_path / "not-a-dir"
    blocker.write_text("x", encoding="utf-8")
    cache = PriceCache(blocker / "sub")
    cache.put("px", "k", pd.DataFrame({"close": [1.0]}))
    assert cache.health.failures == 1
    assert cache.get("px", "k") is not None


def test_fetch_all_uses_cache(flat_prices, fast_fetch):
    divs = pd.DataFrame({"AAA": [0.25]}, index=[pd.Timestamp("2020-06-30")])
    source = CountingSource(flat_prices, divs)
    cache = PriceCache(cache_dir=None)
    first = fetch_all(source, ["AAA"], "2020-01-31", "2020-12-31", fast_fetch, cache)
    second = fetch_all(source, ["AAA"], "2020-01-31", "2020-12-31", fast_fetch, cache)
    assert source.calls == 1
    assert list(second.prices["AAA"]) == list(first.prices["AAA"])
    assert second.dividends.loc["2020-06-30", "AAA"] == pytest.approx(0.25)


def test_fetch_all_snaps_to_month_end(fast_fetch):
    daily = pd.DataFrame({"AAA": [10.0, 11.0]}, index=pd.to_datetime(["2020-01-15", "2020-02-14"]))
    data = fetch_all(FramePriceSource(daily), ["AAA"], "2020-01-01", "2020-02-29", fast_fetch)
    assert list(data.prices.index) == [pd.Timestamp("2020-01-31"), pd.Timestamp("2020-02-29")]
    assert data.dividends.empty


def test_same_month_dividends_are_added_up(flat_prices, fast_fetch):
    events = pd.DataFrame({"AAA": [0.1, 0.2, 0.4]},
                          index=pd.to_datetime(["2020-03-05", "2020-03-20", "2020-06-30"]))
    source = FramePriceSource(flat_prices, events)
    _, divs = source.fetch_ticker("AAA", "2020-01-31", "2020-12-31")
    assert list(divs.index) == [pd.Timestamp("2020-03-31"), pd.Timestamp("2020-06-30")]
    assert list(divs) == pytest.approx([0.3, 0.4])

    data = fetch_all(source, ["AAA"], "2020-01-31", "2020-12-31", fast_fetch)
    assert data.dividends.loc["2020-03-31", "AAA"] == pytest.approx(0.3)


def test_fetch_all_honours_cancel(flat_prices, fast_fetch):
    token = CancelToken()
    token.cancel()
    with pytest.raises(BacktestCancelled):
        fetch_all(FramePriceSource(flat_prices), ["AAA"], "2020-01-31", "2020-12-31", fast_fetch, cancel=token)


def test_price_points():
    points = [PricePoint("AAA", "2020-01-15", 10.0), PricePoint("AAA", "2020-02-10", 11.0),
              PricePoint("BBB", "2020-01-31", 5.0)]
    source = FramePriceSource.from_points(points)
    close, _ = source.fetch_ticker("AAA", "2020-01-01", "2020-12-31")
    assert list(close) == [10.0, 11.0]
    assert close.index[0] == pd.Timestamp("2020-01-31")
    with pytest.raises(ValueError):
        PricePoint("AAA", "2020-01-31", 0.0)


class _FakeResponse:
    def __init__(self, text):
        self.text = text

    def raise_for_status(self):
        pass


def test_fred_series_parsed_to_month_end(monkeypatch):
    import requests

    csv = "observation_date,TB3MS\n2020-01-01,1.52\n2020-02-01,1.52\n2020-03-01,.\n2020-04-01,0.14\n"
    seen = []

    def fake_get(self, url, **kw):
        seen.append((url, kw.get("proxies")))
        return _FakeResponse(csv)

    monkeypatch.setattr(requests.Session, "get", fake_get)
    cache = PriceCache(cache_dir=None)
    df = fetch_fred_series("TB3MS", start="2020-01-01", end="2020-04-30", cache=cache)
    assert list(df.index) == list(month_index("2020-01-31", 4))
    assert df["TB3MS"].iloc[0] == pytest.approx(1.52)
    assert pd.isna(df["TB3MS"].iloc[2])
    assert seen[0][1] == {"http": None, "https": None}

    fetch_fred_series("TB3MS", start="2020-01-01", end="2020-04-30", cache=cache)
    assert len(seen) == 1


def test_fred_failure_raises_fetch_error(monkeypatch):
    import requests

    def refuse(self, url, **kw):
        raise requests.ConnectionError("offline")

    monkeypatch.setattr(requests.Session, "get", refuse)
    with pytest.raises(FetchError, match="TB3MS"):
        fetch_fred_series("TB3MS")

from collections import Counter

import numpy as np
import pandas as pd
import pytest

from conftest import make_config, month_index
from portfolio_backtester.config import EngineConfig
from portfolio_backtester.data.fetchers import FramePriceSource
from portfolio_backtester.data.store import InMemoryStore, JsonFileStore
from portfolio_backtester.engine.simulator import CancelToken
from portfolio_backtester.errors import (
    BacktestCancelled, FetchError, InsufficientDataError, InvalidAllocationError, NoTickersError,
    PriceGapError,
)
from portfolio_backtester.service import run_backtest, run_backtests


class FlakySource(FramePriceSource):
    """Fails the first ``failures`` calls for each ticker."""

    def __init__(self, prices, failures=1, broken=()):
        super().__init__(prices)
        self.failures = failures
        self.broken = set(broken)
        self.calls = Counter()

    def fetch_ticker(self, ticker, start, end):
        self.calls[ticker] += 1
        if ticker in self.broken or self.calls[ticker] <= self.failures:
            raise OSError(f"connection reset fetching {ticker}")
        return super().fetch_ticker(ticker, start, end)


def _stored_runs(store):
    return sum(len(v) for v in store.results.values())


def test_successful_run_is_persisted(flat_prices, fast_fetch):
    store = InMemoryStore()
    cfg = make_config({"AAA": 1.0}, monthly_contribution=100, name="flat")
    result = run_backtest(cfg, FramePriceSource(flat_prices), store=store, fetch=fast_fetch)

    assert result.final_value == pytest.approx(1200.0)
    assert result.planned_investment == pytest.approx(1200.0)
    assert result.missed_contributions == 0
    assert result.quality == {"AAA": "excellent"}
    assert _stored_runs(store) == 1
    (pid,) = store.configs
    saved = store.load_results(pid)[0]
    assert saved["final_value"] == pytest.approx(1200.0)
    assert len(saved["evolution"]) == 12
    assert len(saved["transactions"]) == 24


def test_json_store_round_trip(flat_prices, fast_fetch, tmp_path):
    store = JsonFileStore(tmp_path)
    cfg = make_config({"AAA": 1.0}, monthly_contribution=100, portfolio_id="flat")
    run_backtest(cfg, FramePriceSource(flat_prices), store=store, fetch=fast_fetch)
    assert store.load_config("flat") == cfg
    assert len(store.load_results("flat")) == 1


def test_shortened_window_reports_missed_contributions(fast_fetch):
    idx = month_index("2020-01-31", 24)
    prices = pd.DataFrame({"AAA": [np.nan] * 6 + [10.0] * 18}, index=idx)
    cfg = make_config({"AAA": 1.0}, "2020-01-31", "2021-12-31", monthly_contribution=100)
    result = run_backtest(cfg, FramePriceSource(prices), fetch=fast_fetch)
    assert result.months == 18
    assert result.missed_contributions == 6
    assert result.planned_investment == pytest.approx(2400.0)
    assert result.total_invested == pytest.approx(1800.0)
    assert any("Period adjusted" in w for w in result.warnings)


@pytest.mark.parametrize("weights, exc", [
    ({}, NoTickersError),
    ({"AAA": 0.5, "BBB": 0.4}, InvalidAllocationError),
    ({"AAA": 1.2}, InvalidAllocationError),
])
def test_invalid_configs_fail_before_fetching(weights, exc, flat_prices, fast_fetch):
    source = FlakySource(flat_prices, failures=0)
    store = InMemoryStore()
    with pytest.raises(exc):
        run_backtest(make_config(weights), source, store=store, fetch=fast_fetch)
    assert not source.calls
    assert _stored_runs(store) == 0


def test_insufficient_data_persists_nothing(fast_fetch):
    idx = month_index("2020-01-31", 24)
    prices = pd.DataFrame({"AAA": [10.0] * 8 + [np.nan] * 16}, index=idx)
    cfg = make_config({"AAA": 1.0}, "2020-01-31", "2021-12-31", monthly_contribution=100)
    store = InMemoryStore()
    with pytest.raises(InsufficientDataError) as info:
        run_backtest(cfg, FramePriceSource(prices), store=store, fetch=fast_fetch)
    assert info.value.months_available == 8
    assert info.value.quality == {"AAA": "poor"}
    assert _stored_runs(store) == 0
    assert not store.configs


def test_price_gap_persists_nothing(fast_fetch):
    values = [10.0] * 4 + [np.nan, np.nan] + [10.0] * 6
    prices = pd.DataFrame({"AAA": values}, index=month_index())
    store = InMemoryStore()
    with pytest.raises(PriceGapError):
        run_backtest(make_config({"AAA": 1.0}, monthly_contribution=100), FramePriceSource(prices),
                     store=store, fetch=fast_fetch)
    assert _stored_runs(store) == 0


def test_fetch_is_retried(flat_prices, fast_fetch):
    source = FlakySource(flat_prices, failures=1)
    result = run_backtest(make_config({"AAA": 1.0}, monthly_contribution=100), source, fetch=fast_fetch)
    assert source.calls["AAA"] == 2
    assert result.final_value == pytest.approx(1200.0)


def test_fetch_gives_up(flat_prices, fast_fetch):
    source = FlakySource(flat_prices, broken=["AAA"])
    with pytest.raises(FetchError):
        run_backtest(make_config({"AAA": 1.0}), source, fetch=fast_fetch)
    assert source.calls["AAA"] == fast_fetch.max_retries


def test_one_failed_ticker_is_excluded_with_warning(flat_prices, fast_fetch):
    prices = flat_prices.assign(BBB=20.0)
    source = FlakySource(prices, failures=0, broken=["BBB"])
    cfg = make_config({"AAA": 0.5, "BBB": 0.5}, monthly_contribution=100)
    result = run_backtest(cfg, source, fetch=fast_fetch)
    assert result.final_value == pytest.approx(1200.0)
    assert any("BBB: fetch failed" in w for w in result.warnings)
    assert result.quality["BBB"] == "poor"


def test_strict_engine_rejects_partial_history(fast_fetch):
    idx = month_index("2020-01-31", 24)
    prices = pd.DataFrame({"AAA": [10.0] * 24, "BBB": [np.nan] * 12 + [5.0] * 12}, index=idx)
    cfg = make_config({"AAA": 0.5, "BBB": 0.5}, "2020-01-31", "2021-12-31")
    engine = EngineConfig(adaptive=False, min_months=18)
    with pytest.raises(InsufficientDataError):
        run_backtest(cfg, FramePriceSource(prices), engine=engine, fetch=fast_fetch)


def test_batch_keeps_order_and_isolates_failures(flat_prices, fast_fetch):
    store = InMemoryStore()
    configs = [
        make_config({"AAA": 1.0}, monthly_contribution=100, name="a"),
        make_config({"AAA": 0.7}, name="bad"),
        make_config({"AAA": 1.0}, initial_capital=500, name="c"),
    ]
    outcomes = run_backtests(configs, FramePriceSource(flat_prices), store=store, fetch=fast_fetch)
    assert [o.config.name for o in outcomes] == ["a", "bad", "c"]
    assert [o.ok for o in outcomes] == [True, False, True]
    assert isinstance(outcomes[1].error, InvalidAllocationError)
    assert outcomes[0].result.final_value == pytest.approx(1200.0)
    assert outcomes[2].result.final_value == pytest.approx(500.0)
    assert _stored_runs(store) == 2


def test_cancelled_batch(flat_prices, fast_fetch):
    token = CancelToken()
    token.cancel()
    store = InMemoryStore()
    configs = [make_config({"AAA": 1.0}, monthly_contribution=100) for _ in range(3)]
    outcomes = run_backtests(configs, FramePriceSource(flat_prices), store=store, fetch=fast_fetch, cancel=token)
    assert all(isinstance(o.error, BacktestCancelled) for o in outcomes)
    assert _stored_runs(store) == 0


def test_unreachable_risk_free_series_falls_back_to_constant(monkeypatch, flat_prices, fast_fetch):
    import requests

    def refuse(self, url, **kw):
        raise requests.ConnectionError("offline")

    monkeypatch.setattr(requests.Session, "get", refuse)
    engine = EngineConfig(risk_free_series="TB3MS", risk_free_annual=0.02)
    prices = flat_prices.assign(AAA=10 * 1.01 ** np.arange(12))
    result = run_backtest(make_config({"AAA": 1.0}, initial_capital=1000), FramePriceSource(prices),
                          engine=engine, fetch=fast_fetch)
    assert result.final_value == pytest.approx(1000 * 1.01 ** 11)
    assert result.sharpe_ratio is None

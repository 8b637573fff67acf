import numpy as np
import pandas as pd
import pytest

from conftest import make_config, month_index
from portfolio_backtester.analytics.metrics import compute_metrics
from portfolio_backtester.config import Goal
from portfolio_backtester.engine.simulator import CancelToken, simulate
from portfolio_backtester.errors import BacktestCancelled, PriceGapError
from portfolio_backtester.models import Dividend, Trade, TransactionType, Withdrawal, transaction_to_dict


def _trade_directions(snap):
    sold = {tx.ticker for tx in snap.transactions if isinstance(tx, Trade) and not tx.is_buy}
    bought = {tx.ticker for tx in snap.transactions if isinstance(tx, Trade) and tx.is_buy}
    return sold, bought


def test_flat_prices_with_contributions(flat_prices):
    cfg = make_config({"AAA": 1.0}, monthly_contribution=100)
    run = simulate(cfg, flat_prices)
    assert len(run.snapshots) == 12
    for s in run.snapshots:
        credits = [tx for tx in s.transactions if tx.kind is TransactionType.CASH_CREDIT]
        assert [tx.amount for tx in credits] == [100.0]
        assert s.monthly_return == pytest.approx(0.0)
        assert s.cash_balance >= 0
    last = run.snapshots[-1]
    assert last.total_value == pytest.approx(1200.0)
    assert last.holdings["AAA"] == pytest.approx(120.0)

    result = compute_metrics(cfg, run)
    assert result.total_invested == pytest.approx(1200.0)
    assert result.total_return == pytest.approx(0.0)
    assert result.max_drawdown == pytest.approx(0.0)


def test_initial_capital_and_contribution_both_land_in_first_month(flat_prices):
    cfg = make_config({"AAA": 1.0}, monthly_contribution=100, initial_capital=1000)
    first = simulate(cfg, flat_prices).snapshots[0]
    sources = sorted(tx.source for tx in first.transactions if tx.kind is TransactionType.CASH_CREDIT)
    assert sources == ["contribution", "initial"]
    assert first.contribution == pytest.approx(1100.0)
    assert first.total_value == pytest.approx(1100.0)


def test_two_missing_months_for_a_held_ticker_is_an_error():
    values = [10.0, 11.0, 12.0, np.nan, np.nan] + [15.0] * 7
    prices = pd.DataFrame({"AAA": values}, index=month_index())
    cfg = make_config({"AAA": 1.0}, monthly_contribution=100)
    with pytest.raises(PriceGapError) as info:
        simulate(cfg, prices)
    assert info.value.ticker == "AAA"
    assert info.value.missing_months == 2
    assert info.value.date == pd.Timestamp("2020-05-31")


def test_single_missing_month_carries_last_price():
    values = [10.0, 11.0, 12.0, 13.0, np.nan] + [15.0] * 7
    prices = pd.DataFrame({"AAA": values}, index=month_index())
    cfg = make_config({"AAA": 1.0}, monthly_contribution=100)
    run = simulate(cfg, prices)
    assert run.snapshots[4].prices["AAA"] == pytest.approx(13.0)
    assert run.snapshots[5].prices["AAA"] == pytest.approx(15.0)


def _one_dividend():
    return pd.DataFrame({"AAA": [0.5]}, index=[pd.Timestamp("2020-04-30")])


def test_withdrawn_dividend_counts_toward_total_return(flat_prices):
    cfg = make_config({"AAA": 1.0}, initial_capital=1000, dividend_policy="withdraw")
    run = simulate(cfg, flat_prices, _one_dividend())
    april = run.snapshots[3]
    divs = [tx for tx in april.transactions if isinstance(tx, Dividend)]
    outs = [tx for tx in april.transactions if isinstance(tx, Withdrawal)]
    assert [d.amount for d in divs] == [pytest.approx(50.0)]
    assert [w.amount for w in outs] == [pytest.approx(50.0)]
    assert outs[0].ticker == "AAA" and outs[0].quantity == 0
    assert april.monthly_return == pytest.approx(0.05)

    result = compute_metrics(cfg, run)
    assert result.total_withdrawn == pytest.approx(50.0)
    assert result.total_dividends == pytest.approx(50.0)
    assert result.final_value == pytest.approx(1000.0)
    assert result.total_return == pytest.approx(0.05)


def test_reinvested_dividend_buys_shares(flat_prices):
    cfg = make_config({"AAA": 1.0}, initial_capital=1000)
    run = simulate(cfg, flat_prices, _one_dividend())
    assert run.snapshots[3].holdings["AAA"] == pytest.approx(105.0)
    result = compute_metrics(cfg, run)
    assert result.final_value == pytest.approx(1050.0)
    assert result.total_withdrawn == 0
    assert result.total_return == pytest.approx(0.05)


def test_two_dividends_in_one_month_are_both_paid(flat_prices):
    events = pd.DataFrame({"AAA": [0.2, 0.3]}, index=pd.to_datetime(["2020-04-01", "2020-04-28"]))
    cfg = make_config({"AAA": 1.0}, initial_capital=1000, dividend_policy="withdraw")
    april = simulate(cfg, flat_prices, events).snapshots[3]
    divs = [tx for tx in april.transactions if isinstance(tx, Dividend)]
    assert [d.amount for d in divs] == [pytest.approx(50.0)]
    assert divs[0].per_share == pytest.approx(0.5)


def test_cash_dividend_stays_uninvested(flat_prices):
    cfg = make_config({"AAA": 1.0}, initial_capital=1000, monthly_contribution=100, dividend_policy="cash")
    run = simulate(cfg, flat_prices, _one_dividend())
    for s in run.snapshots[3:]:
        assert s.cash_balance == pytest.approx(65.0)
    assert run.snapshots[-1].total_value == pytest.approx(1000 + 1200 + 65)


def test_scheduled_withdrawal_sells_pro_rata(flat_prices):
    goal = Goal(name="tuition", amount=-300.0, start_month=6, frequency=1, repeats=1)
    cfg = make_config({"AAA": 1.0}, initial_capital=1000, goals=(goal,))
    run = simulate(cfg, flat_prices)
    july = run.snapshots[6]
    sales = [tx for tx in july.transactions if isinstance(tx, Withdrawal)]
    assert len(sales) == 1
    assert sales[0].ticker == "AAA"
    assert sales[0].quantity == pytest.approx(30.0)
    assert july.holdings["AAA"] == pytest.approx(70.0)
    assert july.monthly_return == pytest.approx(0.0)

    result = compute_metrics(cfg, run)
    assert result.final_value == pytest.approx(700.0)
    assert result.total_withdrawn == pytest.approx(300.0)
    assert result.total_return == pytest.approx(0.0)


def test_partial_asset_is_liquidated_once_its_data_ends():
    idx = month_index("2020-01-31", 24)
    prices = pd.DataFrame({
        "X": np.linspace(10, 20, 24),
        "Y": [50.0] * 24,
        "Z": [10.0] * 6 + [np.nan] * 18,
    }, index=idx)
    cfg = make_config({"X": 0.4, "Y": 0.4, "Z": 0.2}, "2020-01-31", "2021-12-31", monthly_contribution=100)
    run = simulate(cfg, prices)

    assert len(run.snapshots) == 24
    assert run.snapshots[5].holdings["Z"] > 0
    july = run.snapshots[6]
    assert "Z" not in july.holdings
    z_sales = [tx for tx in july.transactions if isinstance(tx, Trade) and tx.ticker == "Z"]
    assert len(z_sales) == 1 and z_sales[0].kind is TransactionType.SELL_REBALANCE
    assert run.retired == ("Z",)
    for s in run.snapshots[6:]:
        assert "Z" not in s.holdings
        assert sum(s.targets.values()) == pytest.approx(1.0)
    assert all(s.cash_balance >= 0 for s in run.snapshots)


def test_rebalancing_months_are_one_directional_and_back_in_band():
    idx = month_index()
    prices = pd.DataFrame({"X": [10.0] * 6 + [20.0] * 6, "Y": [10.0] * 6 + [5.0] * 6}, index=idx)
    cfg = make_config({"X": 0.5, "Y": 0.5}, initial_capital=1000, monthly_contribution=50)
    run = simulate(cfg, prices)

    assert run.snapshots[6].rebalanced
    for s in run.snapshots:
        sold, bought = _trade_directions(s)
        assert not sold & bought
        assert s.cash_balance >= 0
        if s.rebalanced:
            w = s.weights()
            for t, f in s.targets.items():
                assert abs(w.get(t, 0.0) - f) <= cfg.rebalance_threshold + 1e-9


def test_monthly_return_strips_external_flows():
    idx = month_index()
    prices = pd.DataFrame({"X": 10 * 1.01 ** np.arange(12)}, index=idx)
    goal = Goal(name="car", amount=-200.0, start_month=8, frequency=1, repeats=1)
    cfg = make_config({"X": 1.0}, initial_capital=1000, monthly_contribution=100, goals=(goal,))
    run = simulate(cfg, prices)
    snaps = run.snapshots
    for prev, cur in zip(snaps, snaps[1:]):
        expected = (cur.total_value - prev.total_value - cur.net_flow) / prev.total_value
        assert cur.monthly_return == pytest.approx(expected)
        assert cur.monthly_return == pytest.approx(0.01)


def test_whole_shares_only(flat_prices):
    prices = flat_prices * 3
    cfg = make_config({"AAA": 1.0}, monthly_contribution=100, fractional_shares=False)
    run = simulate(cfg, prices)
    assert run.snapshots[0].holdings["AAA"] == 3
    assert run.snapshots[0].cash_balance == pytest.approx(10.0)
    for s in run.snapshots:
        assert float(s.holdings["AAA"]).is_integer()


def test_same_inputs_same_snapshots(flat_prices):
    prices = flat_prices.copy()
    prices["BBB"] = np.linspace(5, 8, 12)
    cfg = make_config({"AAA": 0.3, "BBB": 0.7}, monthly_contribution=250)
    a, b = simulate(cfg, prices).snapshots, simulate(cfg, prices).snapshots
    assert [s.total_value for s in a] == [s.total_value for s in b]
    assert [[transaction_to_dict(tx) for tx in s.transactions] for s in a] == \
        [[transaction_to_dict(tx) for tx in s.transactions] for s in b]
    ids = [tx.id for s in a for tx in s.transactions]
    assert len(ids) == len(set(ids))


def test_cancelled_before_start(flat_prices):
    token = CancelToken()
    token.cancel()
    with pytest.raises(BacktestCancelled):
        simulate(make_config({"AAA": 1.0}, monthly_contribution=100), flat_prices, cancel=token)

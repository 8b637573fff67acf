import logging
from typing import Optional, Sequence

import numpy as np
import pandas as pd

from ..models import (
    AssetPerformance, BacktestResult, CashMovement, Dividend, Trade, TransactionType, Withdrawal,
)

logger = logging.getLogger(__name__)

_FLAT = 1e-12   # dispersion below this is float noise


def twrr_annualized(monthly_returns) -> float:
    """Geometric link of the monthly returns, annualized."""
    r = np.asarray(monthly_returns, dtype=float)
    if r.size == 0:
        return 0.0
    g = np.prod(1.0 + r)
    years = r.size / 12.0
    return g ** (1 / years) - 1.0


def annualized_return(total_return: float, months: int) -> float:
    if total_return <= -1.0:
        return -1.0
    if months <= 0:
        return 0.0
    return (1.0 + total_return) ** (12.0 / months) - 1.0


def mwrr_irr(contributions, withdrawals, final_value: float) -> Optional[float]:
    """Annualized money-weighted return (IRR) from the investor's point of view."""
    import numpy_financial as npf
    series = -np.asarray(contributions, dtype=float) + np.asarray(withdrawals, dtype=float)
    if series.size == 0 or not (series < 0).any():
        return None
    series[-1] += final_value
    irr = npf.irr(series)
    if irr is None or not np.isfinite(irr):
        return None
    return float(irr) * 12.0


def volatility(monthly_returns) -> Optional[float]:
    r = np.asarray(monthly_returns, dtype=float)
    if r.size < 2:
        return None
    return float(r.std(ddof=1) * np.sqrt(12))


def sharpe_sortino(monthly_returns, rf_m):
    """(sharpe, sortino) annualized; None when fewer than two returns or no dispersion."""
    r = np.asarray(monthly_returns, dtype=float)
    if r.size < 2:
        return None, None
    rf = np.broadcast_to(np.asarray(rf_m, dtype=float), r.shape) if np.ndim(rf_m) == 0 \
        else np.asarray(rf_m, dtype=float)[: r.size]
    ex = r - rf
    mean_m = ex.mean()
    vol_m = ex.std(ddof=1)
    downside = np.where(ex < 0, ex, 0.0)
    dvol_m = downside.std(ddof=1)
    sharpe = float(mean_m / vol_m * np.sqrt(12)) if vol_m > _FLAT else None
    sortino = float(mean_m / dvol_m * np.sqrt(12)) if dvol_m > _FLAT else None
    return sharpe, sortino


def max_drawdown(values) -> float:
    """Largest peak-to-trough decline as a positive fraction (0.25 == -25%)."""
    x = np.asarray(values, dtype=float)
    if x.size == 0:
        return 0.0
    peak = np.maximum.accumulate(x)
    with np.errstate(divide="ignore", invalid="ignore"):
        dd = np.where(peak > 0, (peak - x) / peak, 0.0)
    return float(dd.max())


def risk_free_monthly(index, annual: float = 0.0, tb3ms: Optional[pd.DataFrame] = None) -> pd.Series:
    """Monthly risk-free series on ``index``: a constant annual rate, or FRED TB3MS (percent)."""
    index = pd.DatetimeIndex(index)
    if tb3ms is not None and not tb3ms.empty:
        col = tb3ms["TB3MS"] if "TB3MS" in tb3ms.columns else tb3ms.iloc[:, 0]
        rf = (1.0 + col.reindex(index) / 100.0) ** (1 / 12.0) - 1.0
        return rf.ffill().fillna((1.0 + annual) ** (1 / 12.0) - 1.0).rename("rf_m")
    return pd.Series((1.0 + annual) ** (1 / 12.0) - 1.0, index=index, name="rf_m")


class _AssetBook:
    __slots__ = ("shares", "cost", "bought", "dividends")

    def __init__(self):
        self.shares = 0.0
        self.cost = 0.0
        self.bought = 0.0
        self.dividends = 0.0

    def buy(self, qty, amount):
        self.shares += qty
        self.cost += amount
        self.bought += amount

    def sell(self, qty):
        if self.shares <= 0:
            return
        frac = min(qty / self.shares, 1.0)
        self.cost -= self.cost * frac
        self.shares = max(self.shares - qty, 0.0)


def compute_metrics(config, run, rf_m=None, transactions: Optional[Sequence] = None) -> BacktestResult:
    """Fold a simulation run into a BacktestResult.

    Transactions are consumed with one cursor in date order, each exactly once,
    alongside the snapshot they belong to.
    """
    snaps = run.snapshots
    if not snaps:
        raise ValueError("no snapshots to measure")
    txs = list(transactions) if transactions is not None else [t for s in snaps for t in s.transactions]
    txs.sort(key=lambda t: t.date)

    invested = withdrawn = dividends = 0.0
    contributions, withdrawals = [], []
    books = {a.ticker: _AssetBook() for a in config.assets}
    cursor = 0
    for snap in snaps:
        c_in = c_out = 0.0
        while cursor < len(txs) and txs[cursor].date <= snap.date:
            tx = txs[cursor]
            cursor += 1
            if isinstance(tx, CashMovement):
                if tx.kind is TransactionType.CASH_CREDIT:
                    invested += tx.amount
                    c_in += tx.amount
                else:
                    withdrawn += tx.amount
                    c_out += tx.amount
            elif isinstance(tx, Withdrawal):
                withdrawn += tx.amount
                c_out += tx.amount
                if tx.ticker and tx.quantity > 0:
                    books.setdefault(tx.ticker, _AssetBook()).sell(tx.quantity)
            elif isinstance(tx, Dividend):
                dividends += tx.amount
                books.setdefault(tx.ticker, _AssetBook()).dividends += tx.amount
            elif isinstance(tx, Trade):
                book = books.setdefault(tx.ticker, _AssetBook())
                if tx.is_buy:
                    book.buy(tx.quantity, tx.amount)
                else:
                    book.sell(tx.quantity)
        contributions.append(c_in)
        withdrawals.append(c_out)
    if cursor != len(txs):
        logger.warning("%d transactions dated after the last snapshot were ignored", len(txs) - cursor)

    last = snaps[-1]
    final_value = last.total_value
    months = len(snaps)
    returns = np.array([s.monthly_return for s in snaps[1:]], dtype=float)
    if rf_m is None:
        rf_m = 0.0
    elif isinstance(rf_m, pd.Series):
        rf_m = rf_m.reindex(pd.DatetimeIndex([s.date for s in snaps[1:]])).fillna(0.0).to_numpy()

    total_return = (final_value + withdrawn - invested) / invested if invested > 0 else 0.0
    sharpe, sortino = sharpe_sortino(returns, rf_m)

    first_prices = {}
    for s in snaps:
        for t, p in s.prices.items():
            first_prices.setdefault(t, p)
    invested_final = sum(q * last.prices[t] for t, q in last.holdings.items())
    perf = []
    for a in config.assets:
        book = books.get(a.ticker, _AssetBook())
        shares = last.holdings.get(a.ticker, 0.0)
        price = last.prices.get(a.ticker)
        value = shares * price if price is not None else 0.0
        p0 = first_prices.get(a.ticker)
        last_seen = next((s.prices[a.ticker] for s in reversed(snaps) if a.ticker in s.prices), None)
        perf.append(AssetPerformance(
            ticker=a.ticker,
            target_fraction=a.target_fraction,
            final_shares=shares,
            final_value=value,
            invested=book.bought,
            contribution_share=value / invested_final if invested_final > 0 else 0.0,
            standalone_return=(last_seen / p0 - 1.0) if p0 and last_seen else 0.0,
            total_dividends=book.dividends,
            average_price=book.cost / book.shares if book.shares > 0 else None,
        ))

    return BacktestResult(
        total_return=total_return,
        annualized_return=annualized_return(total_return, months),
        volatility=volatility(returns),
        sharpe_ratio=sharpe,
        sortino_ratio=sortino,
        max_drawdown=max_drawdown([s.total_value for s in snaps]),
        positive_months=int((returns > 0).sum()),
        negative_months=int((returns < 0).sum()),
        total_invested=invested,
        total_withdrawn=withdrawn,
        final_value=final_value,
        final_cash=last.cash_balance,
        total_dividends=dividends,
        money_weighted_return=mwrr_irr(contributions, withdrawals, final_value),
        time_weighted_return=float(twrr_annualized(returns)),
        months=months,
        effective_start=snaps[0].date,
        effective_end=last.date,
        asset_performance=tuple(perf),
        snapshots=tuple(snaps),
    )

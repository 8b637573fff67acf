import logging
import threading
from dataclasses import dataclass, replace
from types import MappingProxyType
from typing import Dict, Optional, Tuple

import pandas as pd

from ..config import EngineConfig, PortfolioConfig
from ..errors import BacktestCancelled, PriceGapError
from ..models import (
    CashMovement, Dividend, MonthlySnapshot, PortfolioState, Trade, TransactionType,
    Withdrawal, freeze_state, stable_id,
)
from .calendar import snap_frame
from .cashflows import split_flows
from .dividends import DividendSchedule
from .rebalancer import RebalancingEngine
from .validator import AvailabilityPlan, DataAvailabilityStrategy, normalize, strategy_for

logger = logging.getLogger(__name__)


class CancelToken:
    """Cooperative cancellation shared by a batch of runs; checked between months and fetches."""

    def __init__(self):
        self._event = threading.Event()

    def cancel(self):
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self, where: str = ""):
        if self._event.is_set():
            raise BacktestCancelled(f"cancelled{': ' + where if where else ''}")


@dataclass(frozen=True)
class SimulationRun:
    plan: AvailabilityPlan
    snapshots: Tuple[MonthlySnapshot, ...]
    retired: Tuple[str, ...] = ()


def _with_stable_ids(month, txs):
    """Replace random ids with ones keyed on (month, position, kind, ticker)."""
    return tuple(
        replace(tx, id=stable_id(month.strftime("%Y-%m"), seq, tx.kind.value, tx.ticker))
        for seq, tx in enumerate(txs)
    )


class _PriceBook:
    """Month-by-month price lookup with bounded carry-forward of missing prices."""

    def __init__(self, prices: pd.DataFrame, max_carry: int):
        self.prices = snap_frame(prices)
        self.max_carry = int(max_carry)
        self.last: Dict[str, float] = {}
        self.missing: Dict[str, int] = {}

    def advance(self, month, tickers):
        out, gaps = {}, {}
        row = self.prices.loc[month] if month in self.prices.index else None
        for t in tickers:
            v = row.get(t) if row is not None else None
            if v is not None and pd.notna(v) and v > 0:
                self.last[t] = float(v)
                self.missing[t] = 0
                out[t] = float(v)
                continue
            self.missing[t] = self.missing.get(t, 0) + 1
            if t in self.last and self.missing[t] <= self.max_carry:
                logger.debug("%s: carrying %s price forward into %s", t, self.last[t], month.date())
                out[t] = self.last[t]
            else:
                gaps[t] = self.missing[t]
        return out, gaps


class PortfolioSimulator:
    """Deterministic month-by-month replay of a PortfolioConfig over historical prices.

    Each month: dividends, price movement (with carry-forward), contributions,
    withdrawals, rebalancing, snapshot. Nothing here touches the network.
    """

    def __init__(self, config: PortfolioConfig, engine: Optional[EngineConfig] = None,
                 strategy: Optional[DataAvailabilityStrategy] = None):
        self.config = config
        self.engine = engine or EngineConfig()
        self.strategy = strategy or strategy_for(self.engine.adaptive, self.engine.min_months)
        self.rebalancer = RebalancingEngine(
            threshold=config.rebalance_threshold,
            tolerance_qty=self.engine.tolerance_qty,
            fractional_shares=config.fractional_shares,
            min_cash_to_invest=self.engine.min_cash_to_invest,
        )

    def plan(self, prices: pd.DataFrame) -> AvailabilityPlan:
        return self.strategy.resolve_period_and_allocations(
            self.config.assets, self.config.start_date, self.config.end_date, prices
        )

    def run(self, prices: pd.DataFrame, dividends: Optional[pd.DataFrame] = None,
            cancel: Optional[CancelToken] = None, plan: Optional[AvailabilityPlan] = None) -> SimulationRun:
        cfg = self.config
        plan = plan or self.plan(prices)
        months = plan.months
        book = _PriceBook(prices, self.engine.max_carry_forward)
        schedule = DividendSchedule(cfg.assets, dividends)
        contrib, withdraw = split_flows(cfg.monthly_contribution, cfg.goals, len(months))

        state = PortfolioState(holdings={}, cash_balance=0.0)
        reserved = 0.0          # idle cash held aside by the "cash" dividend policy
        retired = set()
        snapshots = []
        prev_total = 0.0

        for i, month in enumerate(months):
            if cancel is not None:
                cancel.raise_if_cancelled(f"before {month:%Y-%m}")
            state.as_of = month
            txs = []

            targets = plan.targets_for(month)
            if retired:
                targets = normalize({t: w for t, w in targets.items() if t not in retired})
            held = [t for t, q in state.holdings.items() if q > 0]
            prices_m, gaps = book.advance(month, sorted(set(plan.tickers) | set(held)))
            for t, n in gaps.items():
                if t in held or t in plan.anchors:
                    raise PriceGapError(t, month, n)
            if any(t not in prices_m for t in targets):
                targets = normalize({t: w for t, w in targets.items() if t in prices_m})

            # 1) dividends on holdings carried into this month
            div_total = 0.0
            withdrawn = 0.0
            for t, ps, q, amount in schedule.payouts(state.holdings, month, prices_m):
                txs.append(Dividend(date=month, ticker=t, amount=amount, per_share=ps, quantity=q))
                div_total += amount
                state.cash_balance += amount
                if cfg.dividend_policy == "cash":
                    reserved += amount
                elif cfg.dividend_policy == "withdraw":
                    txs.append(Withdrawal(date=month, amount=amount, ticker=t, reason="dividend withdrawn"))
                    state.cash_balance -= amount
                    withdrawn += amount

            # 2) price movement is implicit: holdings are valued at this month's prices

            # 3) contributions
            contribution = 0.0
            if i == 0 and cfg.initial_capital > 0:
                txs.append(CashMovement(kind=TransactionType.CASH_CREDIT, date=month,
                                        amount=float(cfg.initial_capital), source="initial"))
                contribution += float(cfg.initial_capital)
            if contrib[i] > 0:
                txs.append(CashMovement(kind=TransactionType.CASH_CREDIT, date=month,
                                        amount=float(contrib[i]), source="contribution"))
                contribution += float(contrib[i])
            state.cash_balance += contribution

            # scheduled withdrawals
            if withdraw[i] > 0:
                w_txs, reserved = self._withdraw(state, float(withdraw[i]), prices_m, reserved, month)
                txs.extend(w_txs)
                withdrawn += sum(tx.amount for tx in w_txs)

            # 4) rebalancing and cash deployment
            investable = max(state.cash_balance - reserved, 0.0)
            outcome = self.rebalancer.run(state.holdings, investable, prices_m, targets)
            for o in outcome.orders:
                reason = "cash deployment" if o.kind is TransactionType.BUY else "rebalance"
                if o.kind is TransactionType.SELL_REBALANCE and targets.get(o.ticker, 0.0) <= 0:
                    reason = "liquidation: no target allocation"
                    if o.ticker not in outcome.holdings:
                        retired.add(o.ticker)
                txs.append(Trade(kind=o.kind, date=month, ticker=o.ticker,
                                 quantity=o.quantity, price=o.price, reason=reason))
            state.holdings = {t: q for t, q in outcome.holdings.items() if q > 0}
            state.cash_balance = outcome.cash + (state.cash_balance - investable)
            reserved = min(reserved, state.cash_balance)
            if state.cash_balance < 0:
                # float residue only; every spend above is capped by available cash
                state.cash_balance = 0.0

            # 5) snapshot
            total = state.value(prices_m)
            net_flow = contribution - withdrawn
            ret = (total - prev_total - net_flow) / prev_total if i > 0 and prev_total > 0 else 0.0
            snapshots.append(freeze_state(
                state,
                prices=MappingProxyType(dict(prices_m)),
                total_value=total,
                monthly_return=ret,
                contribution=contribution,
                withdrawn=withdrawn,
                dividends=div_total,
                targets=MappingProxyType(dict(targets)),
                rebalanced=outcome.rebalanced,
                transactions=_with_stable_ids(month, txs),
            ))
            logger.debug("%s value=%.2f cash=%.2f return=%.4f orders=%d",
                         month.strftime("%Y-%m"), total, state.cash_balance, ret, len(outcome.orders))
            prev_total = total

        logger.info("simulated %d months %s..%s, final value %.2f",
                    len(snapshots), plan.start.strftime("%Y-%m"), plan.end.strftime("%Y-%m"),
                    snapshots[-1].total_value if snapshots else 0.0)
        return SimulationRun(plan=plan, snapshots=tuple(snapshots), retired=tuple(sorted(retired)))

    def _withdraw(self, state: PortfolioState, amount: float, prices, reserved: float, month):
        """Fund a withdrawal from cash first, then by selling holdings pro rata to value."""
        total = state.value(prices)
        if amount > total:
            logger.warning("%s: withdrawal %.2f exceeds portfolio value %.2f; capped",
                           month.strftime("%Y-%m"), amount, total)
            amount = total
        txs = []
        from_cash = min(amount, state.cash_balance)
        if from_cash > 0:
            txs.append(Withdrawal(date=month, amount=from_cash, reason="scheduled withdrawal"))
            state.cash_balance -= from_cash
            reserved = max(reserved - from_cash, 0.0)
        remaining = amount - from_cash
        invested = state.invested_value(prices)
        if remaining > 0 and invested > 0:
            share = min(remaining / invested, 1.0)
            for t in sorted(state.holdings):
                q = state.holdings[t]
                sell_q = q if share >= 1.0 else q * share
                if sell_q <= 0:
                    continue
                txs.append(Withdrawal(date=month, amount=sell_q * prices[t], ticker=t,
                                      quantity=sell_q, price=prices[t], reason="scheduled withdrawal"))
                state.holdings[t] = q - sell_q
            state.holdings = {t: q for t, q in state.holdings.items() if q > 1e-12}
        return txs, reserved


def simulate(config: PortfolioConfig, prices: pd.DataFrame, dividends: Optional[pd.DataFrame] = None,
             engine: Optional[EngineConfig] = None, strategy: Optional[DataAvailabilityStrategy] = None,
             cancel: Optional[CancelToken] = None) -> SimulationRun:
    """Pure function of (config, prices): same inputs, same snapshots."""
    return PortfolioSimulator(config, engine, strategy).run(prices, dividends, cancel)

"""Net-position rebalancing.

One signed delta per ticker, so a pass can never both sell and buy the same
ticker. Idle cash is deployed separately and only into underweight tickers.
"""
import logging
import math
from dataclasses import dataclass
from typing import Dict, List, Mapping, Tuple

from ..models import TransactionType

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Order:
    kind: TransactionType
    ticker: str
    quantity: float
    price: float

    @property
    def amount(self) -> float:
        return self.quantity * self.price

    @property
    def is_buy(self) -> bool:
        return self.kind in (TransactionType.BUY, TransactionType.BUY_REBALANCE)


@dataclass(frozen=True)
class RebalanceOutcome:
    orders: Tuple[Order, ...]
    holdings: Mapping[str, float]
    cash: float
    deviation: float            # max |weight - target| after cash deployment, before the net pass
    rebalanced: bool

    @property
    def sells(self) -> List[Order]:
        return [o for o in self.orders if not o.is_buy]

    @property
    def buys(self) -> List[Order]:
        return [o for o in self.orders if o.is_buy]


def invested_value(holdings: Mapping[str, float], prices: Mapping[str, float]) -> float:
    return sum(q * prices[t] for t, q in holdings.items() if q > 0)


def current_weights(holdings: Mapping[str, float], prices: Mapping[str, float]) -> Dict[str, float]:
    """Weights on the invested base (cash excluded)."""
    total = invested_value(holdings, prices)
    if total <= 0:
        return {}
    return {t: q * prices[t] / total for t, q in holdings.items() if q > 0}


class RebalancingEngine:
    def __init__(self, threshold: float = 0.05, tolerance_qty: float = 1e-6,
                 fractional_shares: bool = True, min_cash_to_invest: float = 0.01):
        self.threshold = float(threshold)
        self.tolerance_qty = float(tolerance_qty)
        self.fractional_shares = bool(fractional_shares)
        self.min_cash_to_invest = float(min_cash_to_invest)

    def _qty(self, raw: float) -> float:
        if self.fractional_shares:
            return raw
        return float(math.floor(raw + 1e-9))

    def max_deviation(self, holdings, prices, targets) -> float:
        weights = current_weights(holdings, prices)
        if not weights:
            return 0.0
        tickers = set(weights) | set(targets)
        return max(abs(weights.get(t, 0.0) - targets.get(t, 0.0)) for t in tickers)

    def orphans(self, holdings, targets) -> List[str]:
        """Held tickers that have no target (liquidated on the next pass)."""
        return sorted(t for t, q in holdings.items() if q > 0 and targets.get(t, 0.0) <= 0)

    def needs_rebalance(self, holdings, prices, targets) -> bool:
        if self.orphans(holdings, targets):
            return True
        return self.max_deviation(holdings, prices, targets) > self.threshold

    def deploy_cash(self, holdings, cash, prices, targets):
        """Invest idle cash into tickers below target on the (invested + cash) base.

        Each underweight ticker receives cash in proportion to its gap. Nothing
        is sold and overweight tickers are left alone.
        """
        holdings = dict(holdings)
        if cash < self.min_cash_to_invest or not targets:
            return [], holdings, cash
        base = invested_value(holdings, prices) + cash
        gaps = {}
        for t, f in targets.items():
            g = f * base - holdings.get(t, 0.0) * prices[t]
            if g > 0:
                gaps[t] = g
        total_gap = sum(gaps.values())
        if total_gap <= 0:
            return [], holdings, cash

        budget = min(cash, total_gap)
        orders, spent = [], 0.0
        for t in sorted(gaps):
            qty = self._qty(budget * gaps[t] / total_gap / prices[t])
            if qty <= self.tolerance_qty:
                continue
            orders.append(Order(TransactionType.BUY, t, qty, prices[t]))
            holdings[t] = holdings.get(t, 0.0) + qty
            spent += qty * prices[t]
        return orders, holdings, max(cash - spent, 0.0)

    def rebalance(self, holdings, cash, prices, targets, keep=()):
        """Net-position pass on the invested base. Sells first, buys capped by cash.

        Tickers in ``keep`` were already bought in the same pass and are not sold.
        """
        holdings = dict(holdings)
        total = invested_value(holdings, prices)
        if total <= 0:
            return [], holdings, cash

        deltas = {}
        for t in sorted(set(targets) | {t for t, q in holdings.items() if q > 0}):
            target_qty = total * targets.get(t, 0.0) / prices[t]
            delta = target_qty - holdings.get(t, 0.0)
            if abs(delta) > self.tolerance_qty:
                deltas[t] = delta

        orders = []
        for t, d in deltas.items():
            if d >= 0 or (t in keep and targets.get(t, 0.0) > 0):
                continue
            held = holdings.get(t, 0.0)
            qty = held if targets.get(t, 0.0) <= 0 else min(self._qty(-d), held)
            if qty <= self.tolerance_qty:
                continue
            orders.append(Order(TransactionType.SELL_REBALANCE, t, qty, prices[t]))
            cash += qty * prices[t]
            if qty >= held:
                holdings.pop(t, None)
            else:
                holdings[t] = held - qty

        wanted = {t: d for t, d in deltas.items() if d > 0}
        needed = sum(d * prices[t] for t, d in wanted.items())
        scale = min(1.0, cash / needed) if needed > 0 else 0.0
        if scale < 1.0:
            logger.debug("buys scaled by %.4f to fit cash %.2f (needed %.2f)", scale, cash, needed)
        spent = 0.0
        for t, d in wanted.items():
            qty = self._qty(d * scale)
            if qty <= self.tolerance_qty:
                continue
            orders.append(Order(TransactionType.BUY_REBALANCE, t, qty, prices[t]))
            holdings[t] = holdings.get(t, 0.0) + qty
            spent += qty * prices[t]
        return orders, holdings, max(cash - spent, 0.0)

    def run(self, holdings, cash, prices, targets, force: bool = False) -> RebalanceOutcome:
        orders, holdings, cash = self.deploy_cash(holdings, cash, prices, targets)
        bought = {o.ticker for o in orders}
        deviation = self.max_deviation(holdings, prices, targets)
        rebalanced = False
        if force or self.needs_rebalance(holdings, prices, targets):
            more, holdings, cash = self.rebalance(holdings, cash, prices, targets, keep=bought)
            orders.extend(more)
            rebalanced = bool(more)
            if rebalanced:
                logger.debug("rebalanced: deviation %.4f, %d orders", deviation, len(more))
        return RebalanceOutcome(tuple(orders), holdings, cash, deviation, rebalanced)

"""Domain records shared by the simulator, the metrics and the ledger.

Transactions form a closed sum type: ``CashMovement``, ``Trade``,
``Withdrawal`` and ``Dividend``. Each kind only carries the fields that make
sense for it; ``kind`` tells them apart and ``key`` gives the
``(month, type, ticker)`` identity used for deduplication.
"""
import uuid
from dataclasses import dataclass, field, replace
from enum import Enum
from types import MappingProxyType
from typing import Dict, Mapping, Optional, Tuple, Union

import pandas as pd

from .engine.calendar import month_end


class TransactionType(str, Enum):
    CASH_CREDIT = "CASH_CREDIT"
    CASH_DEBIT = "CASH_DEBIT"
    BUY = "BUY"
    SELL = "SELL"
    BUY_REBALANCE = "BUY_REBALANCE"
    SELL_REBALANCE = "SELL_REBALANCE"
    DIVIDEND = "DIVIDEND"
    SELL_WITHDRAWAL = "SELL_WITHDRAWAL"


class TransactionStatus(str, Enum):
    PENDING = "PENDING"
    CONFIRMED = "CONFIRMED"
    REJECTED = "REJECTED"
    EXECUTED = "EXECUTED"


CASH_KINDS = frozenset({TransactionType.CASH_CREDIT, TransactionType.CASH_DEBIT})
TRADE_KINDS = frozenset({
    TransactionType.BUY,
    TransactionType.SELL,
    TransactionType.BUY_REBALANCE,
    TransactionType.SELL_REBALANCE,
})
BUY_KINDS = frozenset({TransactionType.BUY, TransactionType.BUY_REBALANCE})


def new_id() -> str:
    return uuid.uuid4().hex


_ID_NAMESPACE = uuid.uuid5(uuid.NAMESPACE_URL, "portfolio-backtester/transaction")


def stable_id(*parts) -> str:
    """Id derived from ``parts`` only, so rerunning the same inputs reproduces it."""
    return uuid.uuid5(_ID_NAMESPACE, "|".join("" if p is None else str(p) for p in parts)).hex


@dataclass(frozen=True)
class PricePoint:
    ticker: str
    date: pd.Timestamp
    price: float

    def __post_init__(self):
        if not self.price > 0:
            raise ValueError(f"{self.ticker}: price must be > 0, got {self.price}")
        object.__setattr__(self, "date", month_end(self.date))


@dataclass(frozen=True)
class CashMovement:
    kind: TransactionType
    date: pd.Timestamp
    amount: float
    source: str = "contribution"    # initial | contribution | manual
    id: str = field(default_factory=new_id)
    status: TransactionStatus = TransactionStatus.EXECUTED
    reason: str = ""
    created_at: Optional[pd.Timestamp] = None    # when a suggestion entered the ledger

    def __post_init__(self):
        if self.kind not in CASH_KINDS:
            raise ValueError(f"{self.kind} is not a cash movement")

    @property
    def ticker(self) -> Optional[str]:
        return None

    @property
    def key(self):
        return (month_end(self.date), self.kind, None)


@dataclass(frozen=True)
class Trade:
    kind: TransactionType
    date: pd.Timestamp
    ticker: str
    quantity: float
    price: float
    id: str = field(default_factory=new_id)
    status: TransactionStatus = TransactionStatus.EXECUTED
    reason: str = ""
    created_at: Optional[pd.Timestamp] = None

    def __post_init__(self):
        if self.kind not in TRADE_KINDS:
            raise ValueError(f"{self.kind} is not a trade")
        if self.quantity < 0:
            raise ValueError("trade quantity is unsigned; the kind carries the direction")

    @property
    def amount(self) -> float:
        return self.quantity * self.price

    @property
    def is_buy(self) -> bool:
        return self.kind in BUY_KINDS

    @property
    def key(self):
        return (month_end(self.date), self.kind, self.ticker)


@dataclass(frozen=True)
class Withdrawal:
    date: pd.Timestamp
    amount: float
    ticker: Optional[str] = None    # set when shares were sold to fund the withdrawal
    quantity: float = 0.0
    price: Optional[float] = None
    id: str = field(default_factory=new_id)
    status: TransactionStatus = TransactionStatus.EXECUTED
    reason: str = ""
    created_at: Optional[pd.Timestamp] = None
    kind: TransactionType = field(default=TransactionType.SELL_WITHDRAWAL, init=False)

    @property
    def key(self):
        return (month_end(self.date), self.kind, self.ticker)


@dataclass(frozen=True)
class Dividend:
    date: pd.Timestamp
    ticker: str
    amount: float
    per_share: float
    quantity: float
    id: str = field(default_factory=new_id)
    status: TransactionStatus = TransactionStatus.EXECUTED
    reason: str = ""
    created_at: Optional[pd.Timestamp] = None
    kind: TransactionType = field(default=TransactionType.DIVIDEND, init=False)

    @property
    def key(self):
        return (month_end(self.date), self.kind, self.ticker)


Transaction = Union[CashMovement, Trade, Withdrawal, Dividend]


def with_status(tx: Transaction, status: TransactionStatus) -> Transaction:
    return replace(tx, status=status)


def transaction_to_dict(tx: Transaction) -> dict:
    out = {
        "id": tx.id,
        "type": tx.kind.value,
        "date": month_end(tx.date).strftime("%Y-%m-%d") if tx.date is not None else None,
        "ticker": tx.ticker,
        "amount": float(tx.amount),
        "status": tx.status.value,
        "reason": tx.reason,
        "created_at": tx.created_at.isoformat() if tx.created_at is not None else None,
    }
    if isinstance(tx, CashMovement):
        out["source"] = tx.source
    elif isinstance(tx, Trade):
        out.update(quantity=tx.quantity, price=tx.price)
    elif isinstance(tx, Withdrawal):
        out.update(quantity=tx.quantity, price=tx.price)
    elif isinstance(tx, Dividend):
        out.update(quantity=tx.quantity, per_share=tx.per_share)
    return out


def transaction_from_dict(raw: dict) -> Transaction:
    kind = TransactionType(raw["type"])
    common = dict(
        id=raw.get("id") or new_id(),
        status=TransactionStatus(raw.get("status", "PENDING")),
        reason=raw.get("reason", ""),
        created_at=pd.Timestamp(raw["created_at"]) if raw.get("created_at") else None,
    )
    date = month_end(raw["date"])
    if kind in CASH_KINDS:
        return CashMovement(kind=kind, date=date, amount=float(raw["amount"]),
                            source=raw.get("source", "contribution"), **common)
    if kind in TRADE_KINDS:
        return Trade(kind=kind, date=date, ticker=raw["ticker"],
                     quantity=float(raw["quantity"]), price=float(raw["price"]), **common)
    if kind is TransactionType.SELL_WITHDRAWAL:
        price = raw.get("price")
        return Withdrawal(date=date, amount=float(raw["amount"]), ticker=raw.get("ticker"),
                          quantity=float(raw.get("quantity") or 0.0),
                          price=None if price is None else float(price), **common)
    return Dividend(date=date, ticker=raw["ticker"], amount=float(raw["amount"]),
                    per_share=float(raw.get("per_share") or 0.0),
                    quantity=float(raw.get("quantity") or 0.0), **common)


@dataclass
class PortfolioState:
    """Working state of one simulated month; frozen into a snapshot at month end."""
    holdings: Dict[str, float]
    cash_balance: float
    as_of: Optional[pd.Timestamp] = None

    def value(self, prices: Mapping[str, float]) -> float:
        return sum(q * prices[t] for t, q in self.holdings.items() if q > 0) + self.cash_balance

    def invested_value(self, prices: Mapping[str, float]) -> float:
        return sum(q * prices[t] for t, q in self.holdings.items() if q > 0)


@dataclass(frozen=True)
class MonthlySnapshot:
    date: pd.Timestamp
    holdings: Mapping[str, float]
    prices: Mapping[str, float]
    cash_balance: float
    total_value: float
    monthly_return: float
    contribution: float
    withdrawn: float
    dividends: float
    targets: Mapping[str, float]
    rebalanced: bool
    transactions: Tuple[Transaction, ...]

    @property
    def net_flow(self) -> float:
        return self.contribution - self.withdrawn

    def weights(self) -> Dict[str, float]:
        invested = sum(q * self.prices[t] for t, q in self.holdings.items() if q > 0)
        if invested <= 0:
            return {}
        return {t: q * self.prices[t] / invested for t, q in self.holdings.items() if q > 0}


def freeze_state(state: PortfolioState, **fields) -> MonthlySnapshot:
    return MonthlySnapshot(
        date=state.as_of,
        holdings=MappingProxyType({t: q for t, q in state.holdings.items() if q > 0}),
        cash_balance=state.cash_balance,
        **fields,
    )


@dataclass(frozen=True)
class AssetPerformance:
    ticker: str
    target_fraction: float
    final_shares: float
    final_value: float
    invested: float
    contribution_share: float
    standalone_return: float
    total_dividends: float
    average_price: Optional[float]


@dataclass(frozen=True)
class BacktestResult:
    total_return: float
    annualized_return: float
    volatility: Optional[float]
    sharpe_ratio: Optional[float]
    sortino_ratio: Optional[float]
    max_drawdown: float
    positive_months: int
    negative_months: int
    total_invested: float
    total_withdrawn: float
    final_value: float
    final_cash: float
    total_dividends: float
    money_weighted_return: Optional[float]
    months: int
    effective_start: pd.Timestamp
    effective_end: pd.Timestamp
    planned_investment: float = 0.0
    missed_contributions: int = 0
    time_weighted_return: Optional[float] = None
    quality: Mapping[str, str] = field(default_factory=dict)
    warnings: Tuple[str, ...] = ()
    recommendations: Tuple[str, ...] = ()
    asset_performance: Tuple[AssetPerformance, ...] = ()
    snapshots: Tuple[MonthlySnapshot, ...] = ()

    @property
    def transactions(self) -> Tuple[Transaction, ...]:
        return tuple(tx for snap in self.snapshots for tx in snap.transactions)

    def monthly_returns(self) -> pd.Series:
        return pd.Series(
            [s.monthly_return for s in self.snapshots[1:]],
            index=pd.DatetimeIndex([s.date for s in self.snapshots[1:]]),
            name="monthly_return",
        )

    def evolution_frame(self) -> pd.DataFrame:
        rows = [
            {
                "date": s.date,
                "value": s.total_value,
                "cash": s.cash_balance,
                "monthly_return": s.monthly_return,
                "contribution": s.contribution,
                "withdrawn": s.withdrawn,
                "dividends": s.dividends,
                "rebalanced": s.rebalanced,
            }
            for s in self.snapshots
        ]
        return pd.DataFrame(rows).set_index("date") if rows else pd.DataFrame()

    def summary(self) -> dict:
        return {
            "total_return": self.total_return,
            "annualized_return": self.annualized_return,
            "volatility": self.volatility,
            "sharpe_ratio": self.sharpe_ratio,
            "sortino_ratio": self.sortino_ratio,
            "max_drawdown": self.max_drawdown,
            "positive_months": self.positive_months,
            "negative_months": self.negative_months,
            "total_invested": self.total_invested,
            "total_withdrawn": self.total_withdrawn,
            "final_value": self.final_value,
            "final_cash": self.final_cash,
            "total_dividends": self.total_dividends,
            "money_weighted_return": self.money_weighted_return,
            "time_weighted_return": self.time_weighted_return,
            "months": self.months,
            "effective_start": self.effective_start.strftime("%Y-%m-%d"),
            "effective_end": self.effective_end.strftime("%Y-%m-%d"),
            "planned_investment": self.planned_investment,
            "missed_contributions": self.missed_contributions,
            "quality": dict(self.quality),
            "warnings": list(self.warnings),
            "recommendations": list(self.recommendations),
        }

import logging
from datetime import date
from typing import List, Optional

import pandas as pd

from ..config import EngineConfig
from ..engine.calendar import month_end
from ..engine.dividends import DividendSchedule
from ..engine.rebalancer import RebalancingEngine
from ..engine.validator import normalize
from ..models import CashMovement, Dividend, Trade, Transaction, TransactionStatus, TransactionType
from .ledger import SETTLED, TransactionLedger

logger = logging.getLogger(__name__)


def _latest_prices(price_source, tickers, month):
    """Last close at or before ``month`` per ticker, looking back a year; plus this month's dividends."""
    prices, events = {}, {}
    start = month - pd.DateOffset(months=12)
    for t in tickers:
        close, divs = price_source.fetch_ticker(t, start, month)
        close = close[close.index <= month].dropna()
        close = close[close > 0]
        if len(close):
            prices[t] = float(close.iloc[-1])
        if len(divs):
            events[t] = divs
    return prices, (pd.DataFrame(events) if events else None)


def _counts_toward_cash(ledger: TransactionLedger, tx: Transaction) -> bool:
    """Whether a proposed inflow should be planned with: not rejected, not already settled."""
    dup = ledger.find_duplicate(tx)
    if dup is None:
        return True
    return dup.status not in SETTLED and dup.status is not TransactionStatus.REJECTED


def suggest_transactions(portfolio_id: str, store, price_source, as_of=None,
                         engine: Optional[EngineConfig] = None,
                         ledger: Optional[TransactionLedger] = None,
                         now=None) -> List[Transaction]:
    """Propose this month's contribution, dividends, cash deployment and rebalancing.

    Proposals are deduplicated against the ledger and written as PENDING;
    the ones actually added are returned. Running it again on an unchanged
    ledger adds nothing. Suggestions left PENDING longer than
    ``engine.suggestion_ttl_days`` are dropped first, so their keys can be
    proposed again.
    """
    engine = engine or EngineConfig()
    config = store.load_config(portfolio_id)
    ledger = ledger or TransactionLedger.load(store, portfolio_id, engine)
    ledger.expire_pending(engine.suggestion_ttl_days, now=now)
    version = ledger.version
    month = month_end(as_of or date.today())

    holdings = ledger.holdings()
    cash = max(ledger.cash_balance(), 0.0)
    tickers = sorted(set(config.tickers()) | set(holdings))
    prices, events = _latest_prices(price_source, tickers, month)

    proposals: List[Transaction] = []
    if config.monthly_contribution > 0:
        tx = CashMovement(kind=TransactionType.CASH_CREDIT, date=month,
                          amount=float(config.monthly_contribution), source="contribution",
                          reason="monthly contribution")
        proposals.append(tx)
        if _counts_toward_cash(ledger, tx):
            cash += tx.amount

    schedule = DividendSchedule(config.assets, events)
    for t, ps, q, amount in schedule.payouts(holdings, month, prices):
        tx = Dividend(date=month, ticker=t, amount=amount, per_share=ps, quantity=q, reason="dividend")
        proposals.append(tx)
        if _counts_toward_cash(ledger, tx):
            cash += amount

    missing = [t for t in holdings if t not in prices]
    if missing:
        logger.warning("no recent price for held %s; skipping trade suggestions", missing)
    else:
        targets = normalize({t: w for t, w in config.target_map().items() if t in prices})
        rebalancer = RebalancingEngine(
            threshold=config.rebalance_threshold,
            tolerance_qty=engine.tolerance_qty,
            fractional_shares=config.fractional_shares,
            min_cash_to_invest=engine.min_cash_to_invest,
        )
        outcome = rebalancer.run(holdings, cash, prices, targets)
        for o in outcome.orders:
            proposals.append(Trade(kind=o.kind, date=month, ticker=o.ticker, quantity=o.quantity,
                                   price=o.price,
                                   reason="cash deployment" if o.kind is TransactionType.BUY else "rebalance"))

    added = ledger.add_suggestions(proposals, expected_version=version, now=now)
    logger.info("portfolio %s %s: %d proposed, %d new", portfolio_id, month.strftime("%Y-%m"),
                len(proposals), len(added))
    return added

"""Per-portfolio transaction ledger.

Suggestions enter as PENDING and only move on explicit request:

    PENDING -> CONFIRMED -> EXECUTED
    PENDING -> REJECTED            (terminal)
    CONFIRMED | EXECUTED -> PENDING  (revert)

A ``(month, type, ticker)`` key that already exists in any of these statuses
is never suggested again. Dividends match on ``(ticker, month)`` and an
amount within tolerance instead, because data sources revise them.
Writes hold a lock and pass the version they read to the store, which bumps
it. A writer that read an older version, in this process or another, gets
ConcurrencyConflictError instead of racing the duplicate check. Suggestions
left PENDING past the configured TTL are dropped by ``expire_pending``.
"""
import logging
import threading
from dataclasses import replace
from typing import Dict, Iterable, List, Optional

import pandas as pd

from ..config import EngineConfig
from ..engine.calendar import month_key
from ..errors import ConcurrencyConflictError, InvalidTransitionError, TransactionNotFoundError
from ..models import (
    CashMovement, Dividend, Trade, Transaction, TransactionStatus, TransactionType, Withdrawal,
    with_status,
)

logger = logging.getLogger(__name__)

S = TransactionStatus
BLOCKING = frozenset({S.PENDING, S.CONFIRMED, S.REJECTED, S.EXECUTED})
SETTLED = frozenset({S.CONFIRMED, S.EXECUTED})

TRANSITIONS = {
    "confirm": (frozenset({S.PENDING}), S.CONFIRMED),
    "execute": (frozenset({S.CONFIRMED}), S.EXECUTED),
    "reject": (frozenset({S.PENDING}), S.REJECTED),
    "revert": (frozenset({S.CONFIRMED, S.EXECUTED}), S.PENDING),
}


def dividends_match(existing: Dividend, new: Dividend, tolerance: float = 0.05, min_abs: float = 0.01) -> bool:
    if existing.ticker != new.ticker or month_key(existing.date) != month_key(new.date):
        return False
    return abs(existing.amount - new.amount) <= max(min_abs, tolerance * abs(new.amount))


class TransactionLedger:
    def __init__(self, portfolio_id: str, transactions: Iterable[Transaction] = (),
                 dividend_tolerance: float = 0.05, dividend_min_abs: float = 0.01,
                 store=None, version: int = 0):
        self.portfolio_id = portfolio_id
        self.dividend_tolerance = float(dividend_tolerance)
        self.dividend_min_abs = float(dividend_min_abs)
        self.store = store
        self._entries: Dict[str, Transaction] = {tx.id: tx for tx in transactions}
        self._lock = threading.RLock()
        self.version = version

    @classmethod
    def load(cls, store, portfolio_id: str, engine: Optional[EngineConfig] = None):
        engine = engine or EngineConfig()
        transactions, version = store.load_ledger(portfolio_id)
        return cls(portfolio_id, transactions,
                   dividend_tolerance=engine.dividend_match_tolerance,
                   dividend_min_abs=engine.dividend_match_min_abs,
                   store=store, version=version)

    def refresh(self):
        """Reload entries and version from the store, dropping what this instance saw."""
        if self.store is None:
            return
        with self._lock:
            transactions, self.version = self.store.load_ledger(self.portfolio_id)
            self._entries = {tx.id: tx for tx in transactions}

    def __len__(self):
        return len(self._entries)

    def entries(self, status: Optional[TransactionStatus] = None) -> List[Transaction]:
        with self._lock:
            txs = list(self._entries.values())
        return [tx for tx in txs if status is None or tx.status is status]

    def get(self, tx_id: str) -> Transaction:
        with self._lock:
            try:
                return self._entries[tx_id]
            except KeyError:
                raise TransactionNotFoundError(tx_id) from None

    # -- deduplication ------------------------------------------------------

    def find_duplicate(self, tx: Transaction, extra: Iterable[Transaction] = ()) -> Optional[Transaction]:
        with self._lock:
            pool = list(self._entries.values())
        pool.extend(extra)
        for other in pool:
            if other.status not in BLOCKING or other.kind is not tx.kind:
                continue
            if isinstance(tx, Dividend):
                if dividends_match(other, tx, self.dividend_tolerance, self.dividend_min_abs):
                    return other
            elif other.key == tx.key:
                return other
        return None

    def _check_version(self, expected_version: Optional[int]):
        if expected_version is not None and expected_version != self.version:
            raise ConcurrencyConflictError(
                f"ledger {self.portfolio_id} is at version {self.version}, expected {expected_version}"
            )

    def _commit(self, entries: Dict[str, Transaction]):
        """Swap in ``entries``. The store rejects the write if another writer got there first."""
        if self.store is not None:
            version = self.store.save_transactions(self.portfolio_id, list(entries.values()),
                                                   expected_version=self.version)
        else:
            version = self.version + 1
        self._entries = entries
        self.version = version

    def add_suggestions(self, items: Iterable[Transaction], expected_version: Optional[int] = None,
                        now: Optional[pd.Timestamp] = None) -> List[Transaction]:
        """Write the non-duplicate items as PENDING and return what was added."""
        stamp = pd.Timestamp.now() if now is None else pd.Timestamp(now)
        with self._lock:
            self._check_version(expected_version)
            added = []
            for tx in items:
                tx = replace(tx, status=S.PENDING,
                             created_at=stamp if tx.created_at is None else tx.created_at)
                dup = self.find_duplicate(tx, added)
                if dup is not None:
                    logger.debug("skipping %s %s %s: matches %s (%s)",
                                 tx.kind.value, tx.ticker, tx.date.date(), dup.id, dup.status.value)
                    continue
                added.append(tx)
            if added:
                entries = dict(self._entries)
                entries.update((tx.id, tx) for tx in added)
                self._commit(entries)
                logger.info("ledger %s: %d new suggestion(s)", self.portfolio_id, len(added))
            return added

    def expire_pending(self, ttl_days: Optional[int], now: Optional[pd.Timestamp] = None,
                       expected_version: Optional[int] = None) -> List[Transaction]:
        """Drop suggestions left PENDING for more than ``ttl_days``.

        Manually recorded entries carry no ``created_at`` and never expire.
        """
        if ttl_days is None:
            return []
        cutoff = (pd.Timestamp.now() if now is None else pd.Timestamp(now)) - pd.Timedelta(days=ttl_days)
        with self._lock:
            self._check_version(expected_version)
            stale = [tx for tx in self._entries.values()
                     if tx.status is S.PENDING and tx.created_at is not None and tx.created_at < cutoff]
            if stale:
                gone = {tx.id for tx in stale}
                self._commit({i: tx for i, tx in self._entries.items() if i not in gone})
                logger.info("ledger %s: expired %d pending suggestion(s)", self.portfolio_id, len(stale))
            return stale

    def record(self, tx: Transaction, expected_version: Optional[int] = None) -> Transaction:
        """Record a user-entered transaction as given (e.g. a manual deposit)."""
        with self._lock:
            self._check_version(expected_version)
            dup = self.find_duplicate(tx)
            if dup is not None:
                raise ConcurrencyConflictError(f"{tx.kind.value} {tx.ticker} {tx.date:%Y-%m} already recorded as {dup.id}")
            self._commit({**self._entries, tx.id: tx})
            return tx

    # -- state machine ------------------------------------------------------

    def _transition(self, action: str, tx_ids, expected_version: Optional[int]) -> List[Transaction]:
        allowed, target = TRANSITIONS[action]
        with self._lock:
            self._check_version(expected_version)
            current = [self.get(i) for i in tx_ids]
            for tx in current:
                if tx.status not in allowed:
                    raise InvalidTransitionError(f"cannot {action} {tx.id}: status is {tx.status.value}")
            updated = [with_status(tx, target) for tx in current]
            if target is S.PENDING:
                # a reverted suggestion gets a fresh TTL
                now = pd.Timestamp.now()
                updated = [replace(tx, created_at=now) if tx.created_at is not None else tx for tx in updated]
            if updated:
                entries = dict(self._entries)
                entries.update((tx.id, tx) for tx in updated)
                self._commit(entries)
            return updated

    def confirm(self, tx_id: str, expected_version: Optional[int] = None) -> Transaction:
        return self._transition("confirm", [tx_id], expected_version)[0]

    def confirm_batch(self, tx_ids, expected_version: Optional[int] = None) -> List[Transaction]:
        """All or nothing: one invalid id or status leaves the ledger untouched."""
        return self._transition("confirm", list(tx_ids), expected_version)

    def execute(self, tx_id: str, expected_version: Optional[int] = None) -> Transaction:
        return self._transition("execute", [tx_id], expected_version)[0]

    def reject(self, tx_id: str, expected_version: Optional[int] = None) -> Transaction:
        return self._transition("reject", [tx_id], expected_version)[0]

    def revert(self, tx_id: str, expected_version: Optional[int] = None) -> Transaction:
        return self._transition("revert", [tx_id], expected_version)[0]

    # -- derived state --------------------------------------------------------

    def holdings(self) -> Dict[str, float]:
        out: Dict[str, float] = {}
        for tx in self.entries():
            if tx.status not in SETTLED:
                continue
            if isinstance(tx, Trade):
                sign = 1.0 if tx.is_buy else -1.0
                out[tx.ticker] = out.get(tx.ticker, 0.0) + sign * tx.quantity
            elif isinstance(tx, Withdrawal) and tx.ticker and tx.quantity > 0:
                out[tx.ticker] = out.get(tx.ticker, 0.0) - tx.quantity
        return {t: q for t, q in out.items() if q > 1e-12}

    def cash_balance(self) -> float:
        cash = 0.0
        for tx in self.entries():
            if tx.status not in SETTLED:
                continue
            if isinstance(tx, CashMovement):
                cash += tx.amount if tx.kind is TransactionType.CASH_CREDIT else -tx.amount
            elif isinstance(tx, Trade):
                cash += -tx.amount if tx.is_buy else tx.amount
            elif isinstance(tx, Dividend):
                cash += tx.amount
            elif isinstance(tx, Withdrawal) and not tx.quantity > 0:
                cash -= tx.amount
        return cash

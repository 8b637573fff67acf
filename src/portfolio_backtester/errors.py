"""Exception taxonomy for backtests and the transaction ledger."""
from typing import Dict, List, Optional


class BacktestError(Exception):
    """Base class for every error raised by the engine."""


class NoTickersError(BacktestError):
    pass


class InvalidAllocationError(BacktestError):
    pass


class InsufficientDataError(BacktestError):
    """The feasible simulation window is shorter than the required minimum.

    Carries the best window that was found and the per-asset quality tiers so
    a caller can explain why the requested range could not be honoured.
    """

    def __init__(self, message: str, adjusted_start=None, adjusted_end=None,
                 months_available: int = 0, quality: Optional[Dict[str, str]] = None,
                 warnings: Optional[List[str]] = None):
        super().__init__(message)
        self.adjusted_start = adjusted_start
        self.adjusted_end = adjusted_end
        self.months_available = months_available
        self.quality = dict(quality or {})
        self.warnings = list(warnings or [])


class PriceGapError(BacktestError):
    def __init__(self, ticker: str, date, missing_months: int):
        super().__init__(
            f"{ticker}: no price for {missing_months} consecutive months up to {date:%Y-%m}"
        )
        self.ticker = ticker
        self.date = date
        self.missing_months = missing_months


class ConcurrencyConflictError(BacktestError):
    pass


class InvalidTransitionError(BacktestError):
    pass


class TransactionNotFoundError(BacktestError):
    pass


class PortfolioNotFoundError(BacktestError):
    pass


class FetchError(BacktestError):
    pass


class BacktestCancelled(BacktestError):
    pass

import json
import math
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Literal, Optional, Tuple

from .errors import InvalidAllocationError, NoTickersError

DividendPolicy = Literal["reinvest", "cash", "withdraw"]


@dataclass(frozen=True)
class AssetAllocation:
    ticker: str
    target_fraction: float          # 0..1
    name: str = ""
    dividend_yield: float = 0.0     # annual, used when no dividend events are supplied


@dataclass(frozen=True)
class Goal:
    name: str
    amount: float           # +contribution, -withdrawal (end of month)
    start_month: int        # 0=first simulated month
    frequency: Literal[1, 4, 12]  # times per year: 1=annual, 4=quarterly, 12=monthly
    repeats: int            # number of payments


@dataclass(frozen=True)
class PortfolioConfig:
    assets: Tuple[AssetAllocation, ...]
    start_date: str                 # 'YYYY-MM-DD', aligned to month end
    end_date: str
    monthly_contribution: float = 0.0
    rebalance_threshold: float = 0.05
    initial_capital: float = 0.0
    goals: Tuple[Goal, ...] = ()
    dividend_policy: DividendPolicy = "reinvest"
    fractional_shares: bool = True
    portfolio_id: Optional[str] = None
    name: str = ""

    def tickers(self):
        return [a.ticker for a in self.assets]

    def weights_vector(self):
        import numpy as np
        return np.array([a.target_fraction for a in self.assets], dtype=float)

    def target_map(self):
        return {a.ticker: float(a.target_fraction) for a in self.assets}

    def validate(self, tolerance: float = 1e-4) -> None:
        """Raise if the allocation cannot be simulated as given."""
        if not self.assets:
            raise NoTickersError("portfolio has no assets")
        seen = set()
        for a in self.assets:
            if not a.ticker or not a.ticker.strip():
                raise InvalidAllocationError("empty ticker in allocation")
            if a.ticker in seen:
                raise InvalidAllocationError(f"duplicate ticker {a.ticker}")
            seen.add(a.ticker)
            if not math.isfinite(a.target_fraction) or a.target_fraction < 0 or a.target_fraction > 1:
                raise InvalidAllocationError(
                    f"{a.ticker}: target fraction {a.target_fraction} outside [0, 1]"
                )
        total = float(self.weights_vector().sum())
        if abs(total - 1.0) > tolerance:
            raise InvalidAllocationError(f"target fractions sum to {total:.6f}, expected 1")
        if self.monthly_contribution < 0:
            raise InvalidAllocationError("monthly contribution must be >= 0")
        if self.initial_capital < 0:
            raise InvalidAllocationError("initial capital must be >= 0")
        if not 0 <= self.rebalance_threshold < 1:
            raise InvalidAllocationError("rebalance threshold must be in [0, 1)")
        if self.dividend_policy not in ("reinvest", "cash", "withdraw"):
            raise InvalidAllocationError(f"unknown dividend policy {self.dividend_policy!r}")


@dataclass(frozen=True)
class EngineConfig:
    min_months: int = 12
    adaptive: bool = True               # redistribute weight of partially covered tickers
    allocation_tolerance: float = 1e-4
    tolerance_qty: float = 1e-6         # net deltas below this are not traded
    max_carry_forward: int = 1          # consecutive months a missing price may be carried
    min_cash_to_invest: float = 0.01
    risk_free_annual: float = 0.0
    risk_free_series: Optional[str] = None   # e.g. "TB3MS" to use the FRED 3-month T-bill rate
    dividend_match_tolerance: float = 0.05
    dividend_match_min_abs: float = 0.01
    suggestion_ttl_days: Optional[int] = 30  # unanswered PENDING suggestions expire; None keeps them


@dataclass(frozen=True)
class FetchConfig:
    timeout: float = 30.0
    max_retries: int = 3
    backoff_seconds: float = 1.0
    max_workers: int = 8
    cache_dir: str = "data_cache"


def portfolio_config_from_dict(raw: dict) -> PortfolioConfig:
    assets = tuple(
        AssetAllocation(
            ticker=str(a["ticker"]).upper(),
            target_fraction=float(a.get("target_fraction", a.get("allocation", 0.0))),
            name=a.get("name", ""),
            dividend_yield=float(a.get("dividend_yield", 0.0)),
        )
        for a in raw.get("assets", [])
    )
    goals = tuple(Goal(**g) for g in raw.get("goals", []))
    return PortfolioConfig(
        assets=assets,
        start_date=str(raw["start_date"]),
        end_date=str(raw["end_date"]),
        monthly_contribution=float(raw.get("monthly_contribution", 0.0)),
        rebalance_threshold=float(raw.get("rebalance_threshold", 0.05)),
        initial_capital=float(raw.get("initial_capital", 0.0)),
        goals=goals,
        dividend_policy=raw.get("dividend_policy", "reinvest"),
        fractional_shares=bool(raw.get("fractional_shares", True)),
        portfolio_id=raw.get("portfolio_id"),
        name=raw.get("name", ""),
    )


def portfolio_config_to_dict(cfg: PortfolioConfig) -> dict:
    return asdict(cfg)


def load_portfolio_config(path) -> PortfolioConfig:
    with open(Path(path), encoding="utf-8") as fh:
        return portfolio_config_from_dict(json.load(fh))

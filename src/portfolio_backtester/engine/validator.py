"""Data availability: feasible simulation window, per-asset quality, weight redistribution.

The simulator never looks at raw coverage itself. It asks a
``DataAvailabilityStrategy`` for an ``AvailabilityPlan`` and then only calls
``plan.targets_for(month)`` while stepping through ``plan.months``.
"""
import logging
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Dict, Iterable, Mapping, Optional, Protocol, Tuple

import pandas as pd

from ..config import AssetAllocation
from ..errors import InsufficientDataError, NoTickersError
from .calendar import month_end, month_range, snap_frame

logger = logging.getLogger(__name__)

QUALITY_TIERS = (("excellent", 0.95), ("good", 0.80), ("fair", 0.60))
QUALITY_SCORE = {"excellent": 4, "good": 3, "fair": 2, "poor": 1}
MIN_MONTHS = 12


def quality_tier(coverage: float) -> str:
    for name, floor in QUALITY_TIERS:
        if coverage >= floor:
            return name
    return "poor"


@dataclass(frozen=True)
class AssetCoverage:
    ticker: str
    first_date: Optional[pd.Timestamp]
    last_date: Optional[pd.Timestamp]
    months_available: int
    months_expected: int

    @property
    def coverage(self) -> float:
        if self.months_expected <= 0:
            return 0.0
        return self.months_available / self.months_expected

    @property
    def quality(self) -> str:
        return quality_tier(self.coverage)

    @property
    def has_data(self) -> bool:
        return self.months_available > 0

    def covers(self, month) -> bool:
        return self.has_data and self.first_date <= month <= self.last_date


def assess_coverage(tickers: Iterable[str], prices: pd.DataFrame, start, end) -> Dict[str, AssetCoverage]:
    """Per-ticker first/last valid month and coverage ratio inside [start, end]."""
    months = month_range(start, end)
    frame = snap_frame(prices).reindex(index=months) if not prices.empty else pd.DataFrame(index=months)
    out = {}
    for t in tickers:
        if t in frame.columns:
            col = pd.to_numeric(frame[t], errors="coerce")
            valid = col[col > 0].dropna()
        else:
            valid = pd.Series(dtype=float)
        out[t] = AssetCoverage(
            ticker=t,
            first_date=valid.index.min() if len(valid) else None,
            last_date=valid.index.max() if len(valid) else None,
            months_available=int(len(valid)),
            months_expected=len(months),
        )
    return out


def _common_window(cov: Mapping[str, AssetCoverage], anchors) -> Tuple[Optional[pd.Timestamp], Optional[pd.Timestamp], int]:
    if not anchors:
        return None, None, 0
    start = max(cov[t].first_date for t in anchors)
    end = min(cov[t].last_date for t in anchors)
    if start > end:
        return start, end, 0
    return start, end, len(month_range(start, end))


def normalize(weights: Mapping[str, float]) -> Dict[str, float]:
    total = sum(w for w in weights.values() if w > 0)
    if total <= 0:
        return {}
    return {t: w / total for t, w in weights.items() if w > 0}


@dataclass(frozen=True)
class AvailabilityPlan:
    start: pd.Timestamp
    end: pd.Timestamp
    base_targets: Mapping[str, float]
    coverage: Mapping[str, AssetCoverage]
    anchors: Tuple[str, ...]
    partial: Tuple[str, ...] = ()
    excluded: Tuple[str, ...] = ()
    warnings: Tuple[str, ...] = ()
    recommendations: Tuple[str, ...] = ()
    redistribute: bool = True
    _cache: dict = field(default_factory=dict, repr=False, compare=False)

    @property
    def months(self) -> pd.DatetimeIndex:
        return month_range(self.start, self.end)

    @property
    def quality(self) -> Dict[str, str]:
        return {t: c.quality for t, c in self.coverage.items()}

    @property
    def tickers(self) -> Tuple[str, ...]:
        return self.anchors + self.partial

    def targets_for(self, month) -> Dict[str, float]:
        """Target fractions for ``month``; sums to 1 whenever any ticker is active."""
        month = month_end(month)
        if month not in self._cache:
            if self.redistribute:
                active = {
                    t: w for t, w in self.base_targets.items()
                    if t in self.anchors or (t in self.partial and self.coverage[t].covers(month))
                }
            else:
                active = {t: w for t, w in self.base_targets.items() if t in self.anchors}
            self._cache[month] = MappingProxyType(normalize(active))
        return dict(self._cache[month])


class DataAvailabilityStrategy(Protocol):
    def resolve_period_and_allocations(self, assets: Tuple[AssetAllocation, ...], start, end,
                                       prices: pd.DataFrame) -> AvailabilityPlan:
        ...


def _quality_messages(cov: Mapping[str, AssetCoverage], months: int):
    warnings, recs = [], []
    missing = [t for t, c in cov.items() if not c.has_data]
    poor = [t for t, c in cov.items() if c.has_data and c.quality == "poor"]
    fair = [t for t, c in cov.items() if c.quality == "fair"]
    if missing:
        warnings.append(f"{len(missing)} asset(s) without price history: {', '.join(missing)}")
        recs.append("Consider removing assets without price history or choosing alternatives")
    if poor:
        warnings.append(f"{len(poor)} asset(s) with poor data quality: {', '.join(poor)}")
        recs.append("Assets with poor data quality may reduce the accuracy of the results")
    if fair:
        warnings.append(f"{len(fair)} asset(s) with fair data quality: {', '.join(fair)}")
    if months < 24:
        warnings.append("Short period; metrics may be less reliable")
    if MIN_MONTHS <= months < 36:
        recs.append("For more robust results consider a period of at least 3 years")
    if len(cov) > 10:
        recs.append("Portfolios with many assets are harder to rebalance")
    with_data = [c for c in cov.values() if c.has_data]
    if with_data:
        avg = sum(QUALITY_SCORE[c.quality] for c in with_data) / len(with_data)
        if avg >= 3.5:
            recs.append("Overall data quality is excellent for backtesting")
        elif avg >= 2.5:
            recs.append("Overall data quality is adequate for backtesting")
        else:
            recs.append("Consider revising the asset selection for better data quality")
    return warnings, recs


def _insufficient(cov, best, min_months, extra_warnings=()):
    start, end, n = best
    quality = {t: c.quality for t, c in cov.items()}
    warnings, _ = _quality_messages(cov, n)
    warnings = list(extra_warnings) + warnings
    if start is not None and n > 0:
        msg = (f"only {n} months of common data ({start:%Y-%m} to {end:%Y-%m}); "
               f"at least {min_months} required")
    else:
        msg = f"no common data window; at least {min_months} months required"
    return InsufficientDataError(msg, adjusted_start=start, adjusted_end=end,
                                 months_available=n, quality=quality, warnings=warnings)


class AdaptiveAvailability:
    """Shortens the window and redistributes weight of partially covered assets."""

    def __init__(self, min_months: int = MIN_MONTHS):
        self.min_months = int(min_months)

    def resolve_period_and_allocations(self, assets, start, end, prices):
        if not assets:
            raise NoTickersError("no assets to validate")
        base = {a.ticker: float(a.target_fraction) for a in assets}
        cov = assess_coverage(base, prices, start, end)

        excluded = tuple(t for t, c in cov.items() if not c.has_data)
        anchors = [t for t, c in cov.items() if c.has_data]
        partial = []
        best = (None, None, 0)
        window = _common_window(cov, anchors)
        while anchors:
            window = _common_window(cov, anchors)
            if window[2] > best[2]:
                best = window
            if window[2] >= self.min_months:
                break
            worst = min(anchors, key=lambda t: (cov[t].coverage, cov[t].months_available, t))
            logger.info("dropping %s from the anchor set (coverage %.0f%%)", worst, 100 * cov[worst].coverage)
            anchors.remove(worst)
            partial.append(worst)
        if not anchors:
            raise _insufficient(cov, best, self.min_months)

        w_start, w_end, n = window
        # partial tickers with no overlap with the window are effectively excluded
        partial = [t for t in partial if cov[t].last_date >= w_start and cov[t].first_date <= w_end]
        dropped = [t for t in cov if t not in anchors and t not in partial and t not in excluded]

        warnings, recs = _quality_messages(cov, n)
        req_start, req_end = month_end(start), month_end(end)
        if (w_start, w_end) != (req_start, req_end):
            warnings.append(f"Period adjusted to {w_start:%Y-%m} .. {w_end:%Y-%m} "
                            f"(requested {req_start:%Y-%m} .. {req_end:%Y-%m})")
        for t in partial:
            c = cov[t]
            warnings.append(f"{t}: data only from {c.first_date:%Y-%m} to {c.last_date:%Y-%m}; "
                            f"its weight is redistributed in months without data")
        for t in list(excluded) + dropped:
            warnings.append(f"{t}: no data in the simulation window; weight redistributed")
        for w in warnings:
            logger.warning(w)

        return AvailabilityPlan(
            start=w_start,
            end=w_end,
            base_targets=MappingProxyType(base),
            coverage=MappingProxyType(cov),
            anchors=tuple(t for t in base if t in anchors),
            partial=tuple(t for t in base if t in partial),
            excluded=tuple(excluded) + tuple(dropped),
            warnings=tuple(warnings),
            recommendations=tuple(recs),
            redistribute=True,
        )


class StrictAvailability:
    """Every asset must cover the whole common window; nothing is redistributed."""

    def __init__(self, min_months: int = MIN_MONTHS):
        self.min_months = int(min_months)

    def resolve_period_and_allocations(self, assets, start, end, prices):
        if not assets:
            raise NoTickersError("no assets to validate")
        base = {a.ticker: float(a.target_fraction) for a in assets}
        cov = assess_coverage(base, prices, start, end)
        missing = [t for t, c in cov.items() if not c.has_data]
        if missing:
            raise _insufficient(cov, (None, None, 0), self.min_months,
                                [f"no price history for {', '.join(missing)}"])
        window = _common_window(cov, list(base))
        if window[2] < self.min_months:
            raise _insufficient(cov, window, self.min_months)
        warnings, recs = _quality_messages(cov, window[2])
        return AvailabilityPlan(
            start=window[0],
            end=window[1],
            base_targets=MappingProxyType(base),
            coverage=MappingProxyType(cov),
            anchors=tuple(base),
            warnings=tuple(warnings),
            recommendations=tuple(recs),
            redistribute=False,
        )


def strategy_for(adaptive: bool = True, min_months: int = MIN_MONTHS) -> DataAvailabilityStrategy:
    return AdaptiveAvailability(min_months) if adaptive else StrictAvailability(min_months)

"""Run one backtest, or many in parallel.

A run is strictly sequential: validate, fetch everything, resolve the data
window, simulate, measure, then persist. Nothing is saved unless every step
succeeded.
"""
import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, replace
from typing import List, Optional, Sequence

from .analytics.metrics import compute_metrics, risk_free_monthly
from .config import EngineConfig, FetchConfig, PortfolioConfig
from .data.cache import PriceCache
from .data.fetchers import PriceSource, YahooPriceSource, fetch_all, fetch_fred_series
from .engine.calendar import months_between
from .engine.cashflows import build_cashflow_vector
from .engine.simulator import CancelToken, PortfolioSimulator
from .engine.validator import DataAvailabilityStrategy
from .errors import BacktestError, FetchError
from .models import BacktestResult

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BatchOutcome:
    config: PortfolioConfig
    result: Optional[BacktestResult] = None
    error: Optional[BacktestError] = None

    @property
    def ok(self) -> bool:
        return self.error is None


def _risk_free(engine: EngineConfig, index, cache: Optional[PriceCache], fetch: FetchConfig):
    tb3 = None
    if engine.risk_free_series:
        try:
            tb3 = fetch_fred_series(engine.risk_free_series, start=index.min(), end=index.max(),
                                    cache=cache, timeout=fetch.timeout)
        except FetchError as exc:
            logger.warning("risk-free series unavailable, using %.2f%% p.a.: %s",
                           100 * engine.risk_free_annual, exc)
    return risk_free_monthly(index, engine.risk_free_annual, tb3)


def run_backtest(config: PortfolioConfig, price_source: Optional[PriceSource] = None, store=None,
                 engine: Optional[EngineConfig] = None, fetch: Optional[FetchConfig] = None,
                 strategy: Optional[DataAvailabilityStrategy] = None,
                 cache: Optional[PriceCache] = None,
                 cancel: Optional[CancelToken] = None) -> BacktestResult:
    engine = engine or EngineConfig()
    fetch = fetch or FetchConfig()
    config.validate(engine.allocation_tolerance)
    source = price_source or YahooPriceSource(timeout=fetch.timeout)

    logger.info("backtest %s: %s from %s to %s", config.name or config.portfolio_id or "-",
                ",".join(config.tickers()), config.start_date, config.end_date)
    data = fetch_all(source, config.tickers(), config.start_date, config.end_date, fetch, cache, cancel)

    sim = PortfolioSimulator(config, engine, strategy)
    run = sim.run(data.prices, data.dividends, cancel)
    plan = run.plan

    rf = _risk_free(engine, plan.months, cache, fetch)
    result = compute_metrics(config, run, rf)

    requested = months_between(config.start_date, config.end_date)
    goals_in = build_cashflow_vector(config.goals, requested)
    planned = config.initial_capital + config.monthly_contribution * requested + float(goals_in[goals_in > 0].sum())
    warnings = list(plan.warnings) + [f"{t}: fetch failed ({msg})" for t, msg in data.failed.items()]
    result = replace(
        result,
        quality=plan.quality,
        warnings=tuple(warnings),
        recommendations=plan.recommendations,
        planned_investment=planned,
        missed_contributions=max(requested - result.months, 0),
    )

    if store is not None:
        portfolio_id, run_id = store.save_run(config, result)
        logger.info("backtest stored as %s/%s", portfolio_id, run_id)
    logger.info("total return %.2f%%, annualized %.2f%%, max drawdown %.2f%%",
                100 * result.total_return, 100 * result.annualized_return, 100 * result.max_drawdown)
    return result


def run_backtests(configs: Sequence[PortfolioConfig], price_source: Optional[PriceSource] = None,
                  store=None, engine: Optional[EngineConfig] = None, fetch: Optional[FetchConfig] = None,
                  cache: Optional[PriceCache] = None, cancel: Optional[CancelToken] = None,
                  max_workers: int = 4) -> List[BatchOutcome]:
    """Independent runs on a thread pool sharing one price cache and one cancel token.

    Each config gets an outcome in input order, holding either a result or the
    BacktestError that stopped it.
    """
    cache = cache or PriceCache(cache_dir=None)
    cancel = cancel or CancelToken()

    def one(cfg):
        try:
            return BatchOutcome(cfg, result=run_backtest(cfg, price_source, store, engine, fetch,
                                                         cache=cache, cancel=cancel))
        except BacktestError as exc:
            logger.warning("backtest %s failed: %s", cfg.name or cfg.portfolio_id or "-", exc)
            return BatchOutcome(cfg, error=exc)

    if not configs:
        return []
    with ThreadPoolExecutor(max_workers=max(1, min(max_workers, len(configs))),
                            thread_name_prefix="backtest") as pool:
        return list(pool.map(one, configs))

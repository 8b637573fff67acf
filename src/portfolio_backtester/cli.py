import argparse
import json
import logging
import sys

from .config import EngineConfig, FetchConfig, load_portfolio_config
from .data.cache import PriceCache
from .data.fetchers import YahooPriceSource
from .data.store import JsonFileStore
from .errors import BacktestError, InsufficientDataError
from .ledger.ledger import TransactionLedger
from .ledger.suggestions import suggest_transactions
from .logutil import configure_logging
from .models import transaction_to_dict
from .service import run_backtest

logger = logging.getLogger(__name__)


def _pct(x):
    return "n/a" if x is None else f"{100 * x:.2f}%"


def _print_result(result):
    print(f"=== Backtest {result.effective_start:%Y-%m} .. {result.effective_end:%Y-%m} ({result.months} months) ===")
    print(f"Invested:        ${result.total_invested:,.2f}")
    print(f"Withdrawn:       ${result.total_withdrawn:,.2f}")
    print(f"Final value:     ${result.final_value:,.2f}  (cash ${result.final_cash:,.2f})")
    print(f"Dividends:       ${result.total_dividends:,.2f}")
    print(f"Total return:    {_pct(result.total_return)}")
    print(f"Annualized:      {_pct(result.annualized_return)}")
    print(f"Money-weighted:  {_pct(result.money_weighted_return)}")
    print(f"Volatility:      {_pct(result.volatility)}")
    sharpe = "n/a" if result.sharpe_ratio is None else f"{result.sharpe_ratio:.2f}"
    print(f"Sharpe:          {sharpe}")
    print(f"Max drawdown:    {_pct(result.max_drawdown)}")
    print(f"Months +/-:      {result.positive_months}/{result.negative_months}")
    for a in result.asset_performance:
        print(f"  {a.ticker:<8} {a.final_shares:>12.4f} sh  ${a.final_value:>14,.2f}  "
              f"{_pct(a.contribution_share):>8} of assets  standalone {_pct(a.standalone_return)}")
    for t, q in sorted(result.quality.items()):
        print(f"  quality {t}: {q}")
    for w in result.warnings:
        print(f"  ! {w}")
    for r in result.recommendations:
        print(f"  - {r}")


def cmd_run(args):
    config = load_portfolio_config(args.config)
    engine = EngineConfig(min_months=args.min_months, adaptive=not args.strict,
                          risk_free_annual=args.risk_free, risk_free_series=args.risk_free_series)
    fetch = FetchConfig(cache_dir=args.cache_dir)
    store = JsonFileStore(args.store) if args.store else None
    result = run_backtest(config, YahooPriceSource(timeout=fetch.timeout), store=store,
                          engine=engine, fetch=fetch, cache=PriceCache(args.cache_dir))
    if args.json:
        print(json.dumps(result.summary(), indent=2, default=str))
    else:
        _print_result(result)
    return 0


def cmd_suggest(args):
    store = JsonFileStore(args.store)
    added = suggest_transactions(args.portfolio_id, store, YahooPriceSource(), as_of=args.as_of)
    print(json.dumps([transaction_to_dict(tx) for tx in added], indent=2, default=str))
    return 0


def cmd_ledger(args):
    store = JsonFileStore(args.store)
    ledger = TransactionLedger.load(store, args.portfolio_id)
    if args.action == "list":
        rows = [transaction_to_dict(tx) for tx in ledger.entries()]
        print(json.dumps(rows, indent=2, default=str))
        return 0
    if args.action == "confirm":
        done = ledger.confirm_batch(args.ids)
    else:
        done = [getattr(ledger, args.action)(i) for i in args.ids]
    for tx in done:
        print(f"{tx.id} {tx.kind.value} {tx.ticker or ''} -> {tx.status.value}")
    return 0


def build_parser():
    p = argparse.ArgumentParser(prog="portfolio-backtest", description="Monthly portfolio backtester")
    p.add_argument("--log-level", default="INFO")
    sub = p.add_subparsers(dest="command", required=True)

    r = sub.add_parser("run", help="backtest a portfolio config (JSON)")
    r.add_argument("config")
    r.add_argument("--strict", action="store_true", help="no weight redistribution for partial data")
    r.add_argument("--min-months", type=int, default=12)
    r.add_argument("--risk-free", type=float, default=0.0, help="annual risk-free rate, e.g. 0.03")
    r.add_argument("--risk-free-series", default=None, help="FRED series id, e.g. TB3MS")
    r.add_argument("--cache-dir", default="data_cache")
    r.add_argument("--store", default=None, help="directory to save config and result")
    r.add_argument("--json", action="store_true")
    r.set_defaults(func=cmd_run)

    s = sub.add_parser("suggest", help="suggest this month's transactions for a stored portfolio")
    s.add_argument("portfolio_id")
    s.add_argument("--store", default="portfolios")
    s.add_argument("--as-of", default=None)
    s.set_defaults(func=cmd_suggest)

    lg = sub.add_parser("ledger", help="list or change ledger entries")
    lg.add_argument("action", choices=["list", "confirm", "execute", "reject", "revert"])
    lg.add_argument("portfolio_id")
    lg.add_argument("ids", nargs="*")
    lg.add_argument("--store", default="portfolios")
    lg.set_defaults(func=cmd_ledger)
    return p


def main(argv=None):
    args = build_parser().parse_args(argv)
    configure_logging(args.log_level)
    try:
        return args.func(args)
    except InsufficientDataError as exc:
        logger.error("%s", exc)
        for t, q in sorted(exc.quality.items()):
            print(f"  quality {t}: {q}", file=sys.stderr)
        if exc.adjusted_start is not None:
            print(f"  best window: {exc.adjusted_start:%Y-%m} .. {exc.adjusted_end:%Y-%m}", file=sys.stderr)
        return 2
    except BacktestError as exc:
        logger.error("%s", exc)
        return 1


if __name__ == "__main__":
    sys.exit(main())

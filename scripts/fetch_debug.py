# scripts/fetch_debug.py
# Run:  python scripts/fetch_debug.py VTI TLT GLD --start 2015-01-31 --end 2024-12-31

import argparse
import logging

from portfolio_backtester.config import FetchConfig
from portfolio_backtester.data.fetchers import YahooPriceSource, fetch_all, fetch_fred_series
from portfolio_backtester.engine.validator import assess_coverage
from portfolio_backtester.errors import FetchError
from portfolio_backtester.logutil import configure_logging

logger = logging.getLogger("fetch_debug")


def main():
    ap = argparse.ArgumentParser()
    ap.add_argument("tickers", nargs="*", default=["VTI", "TLT", "IEF", "GSG", "GLD"])
    ap.add_argument("--start", default="2005-01-31")
    ap.add_argument("--end", default="2024-12-31")
    ap.add_argument("--fred", nargs="*", default=["TB3MS"])
    args = ap.parse_args()
    configure_logging("DEBUG")

    # 1) Yahoo monthly prices + dividends
    try:
        data = fetch_all(YahooPriceSource(), args.tickers, args.start, args.end, FetchConfig(max_retries=2))
        print("\n=== Yahoo monthly prices (tail) ===")
        print(data.prices.tail(10))
        print(f"\nYahoo shape: {data.prices.shape} (rows x cols)")
        print(f"Dividend events: {int(data.dividends.count().sum()) if not data.dividends.empty else 0}")
        data.prices.to_csv("yahoo_prices_monthly.csv")
        logger.info("Saved: yahoo_prices_monthly.csv")

        print("\n=== Coverage ===")
        for t, c in assess_coverage(args.tickers, data.prices, args.start, args.end).items():
            span = f"{c.first_date:%Y-%m}..{c.last_date:%Y-%m}" if c.has_data else "no data"
            print(f"{t:<8} {span:<18} {c.months_available:>4}/{c.months_expected:<4} "
                  f"{100 * c.coverage:6.1f}%  {c.quality}")
        for t, msg in data.failed.items():
            print(f"{t:<8} FAILED: {msg}")
    except FetchError as e:
        logger.error("YAHOO ERROR: %s", e)

    # 2) FRED series (monthly)
    for sid in args.fred:
        try:
            df = fetch_fred_series(sid, start=args.start, end=args.end)
            print(f"\n=== FRED {sid} monthly (tail) ===")
            print(df.tail(12))
            print(f"\nFRED {sid} shape: {df.shape}\n")
        except FetchError as e:
            logger.error("FRED ERROR for %s: %s", sid, e)


if __name__ == "__main__":
    main()

from portfolio_backtester.config import AssetAllocation, EngineConfig, Goal, PortfolioConfig
from portfolio_backtester.data.cache import PriceCache
from portfolio_backtester.data.fetchers import YahooPriceSource
from portfolio_backtester.logutil import configure_logging
from portfolio_backtester.service import run_backtest


def main():
    configure_logging("INFO")

    # 1) Portfolio
    cfg = PortfolioConfig(
        assets=(
            AssetAllocation("VTI", 0.30, "Vanguard Total Stock Market ETF"),
            AssetAllocation("TLT", 0.40, "iShares 20+ Year Treasury Bond ETF"),
            AssetAllocation("IEF", 0.15, "iShares 7-10 Year Treasury Bond ETF"),
            AssetAllocation("GSG", 0.075, "iShares S&P GSCI Commodity-Indexed Trust"),
            AssetAllocation("GLD", 0.075, "SPDR Gold Shares"),
        ),
        start_date="2010-01-31",
        end_date="2024-12-31",
        initial_capital=100_000,
        monthly_contribution=1_000,
        rebalance_threshold=0.05,
        goals=(
            # Withdraw $5,000 once a year for 5 years, starting in year 10
            Goal("Tuition", amount=-5000, start_month=120, frequency=1, repeats=5),
        ),
        name="All-weather style",
    )

    # 2) Run against Yahoo data, T-bill rate from FRED
    engine = EngineConfig(risk_free_series="TB3MS")
    result = run_backtest(cfg, YahooPriceSource(), engine=engine, cache=PriceCache())

    # 3) Simple summary
    def pct(x): return "n/a" if x is None else f"{100*x:.1f}%"
    print(f"=== Backtest {result.effective_start:%Y-%m} .. {result.effective_end:%Y-%m} ===")
    print(f"Invested: ${result.total_invested:,.0f}  Withdrawn: ${result.total_withdrawn:,.0f}")
    print(f"Final value: ${result.final_value:,.0f}")
    print(f"Total return: {pct(result.total_return)}  Annualized: {pct(result.annualized_return)}")
    print(f"Money-weighted: {pct(result.money_weighted_return)}")
    print(f"Volatility: {pct(result.volatility)}  Max Drawdown: {pct(result.max_drawdown)}")
    print(f"Sharpe: {result.sharpe_ratio:.2f}" if result.sharpe_ratio is not None else "Sharpe: n/a")
    print(result.evolution_frame().tail(12))


if __name__ == "__main__":
    main()

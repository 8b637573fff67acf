import numpy as np


def _step_months_from_frequency(freq: int) -> int:
    # freq is payments per year: 12->1 month, 4->3 months, 1->12 months
    return int(12 // freq)


def build_cashflow_vector(goals, horizon_m: int):
    """Return a (horizon_m,) vector of end-of-month goal cashflows.
    Positive = contribution (deposit), Negative = withdrawal.
    """
    cf = np.zeros(horizon_m, dtype=float)
    for g in goals:
        if int(g.frequency) not in (1, 4, 12):
            raise ValueError(f"goal {g.name!r}: frequency must be 1, 4 or 12")
        due = int(g.start_month)
        step = _step_months_from_frequency(int(g.frequency))
        for _ in range(int(g.repeats)):
            if 0 <= due < horizon_m:
                cf[due] += float(g.amount)
            due += step
    return cf


def split_flows(monthly_contribution: float, goals, horizon_m: int):
    """(contributions, withdrawals) per month, both non-negative.

    The regular contribution lands every month, month 0 included. Goal flows
    of the same month are netted with each other before splitting.
    """
    cf = build_cashflow_vector(goals, horizon_m)
    contrib = np.full(horizon_m, float(monthly_contribution)) + np.clip(cf, 0.0, None)
    withdraw = np.clip(-cf, 0.0, None)
    return contrib, withdraw

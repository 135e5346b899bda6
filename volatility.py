"""
Volatility measures used by the signal pipeline.

Functions
---------

* ``estimate_volatility(prices, window_days)`` – windowed volatility from
  natural-log returns, expressed as a percentage.  Stored on every snapshot
  and compared across history, so the arithmetic is kept deliberately
  sequential.
* ``history_stats(prices)`` – arithmetic mean price and the population
  standard deviation over that mean (percent).  These are the figures quoted
  in prediction prompts and reports.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Iterable, Optional

import numpy as np

from market_models import VOLATILITY_WINDOW_DAYS, parse_number, round_half_up


def _sequential_sum(values: Iterable[float]) -> float:
    # ``sum`` compensates float error on newer interpreters; historical
    # figures were produced with a plain left-to-right accumulation.
    total = 0.0
    for value in values:
        total += value
    return total


def estimate_volatility(
    prices: Iterable[object], window_days: int = VOLATILITY_WINDOW_DAYS
) -> Optional[float]:
    """
    Estimate volatility from consecutive log returns.

    Parameters
    ----------
    prices : iterable
        Chronological price observations.  Non-numeric, non-finite and
        non-positive entries are discarded before returns are taken.
    window_days : int, optional
        Upper bound on the number of return periods used to scale the
        per-period deviation (default 7).

    Returns
    -------
    float or None
        ``stddev(log_returns) * sqrt(min(n_returns, window_days)) * 100``
        rounded half-up to two decimals, or ``None`` with fewer than two
        usable prices.
    """

    cleaned = [p for p in (parse_number(v) for v in prices) if p is not None and p > 0]
    if len(cleaned) < 2:
        return None

    log_returns = []
    for previous, current in zip(cleaned, cleaned[1:]):
        log_returns.append(math.log(current / previous))
    if not log_returns:
        return None

    count = len(log_returns)
    mean = _sequential_sum(log_returns) / count
    variance = _sequential_sum((r - mean) ** 2 for r in log_returns) / count
    std_dev = math.sqrt(variance)
    if not math.isfinite(std_dev):
        return None

    volatility = std_dev * math.sqrt(min(count, window_days))
    if not math.isfinite(volatility):
        return None
    return round_half_up(volatility * 100, 2)


@dataclass(frozen=True)
class HistoryStats:
    avg_price: float
    volatility: float


def history_stats(prices: Iterable[object]) -> HistoryStats:
    """Return the mean price and the coefficient of variation in percent.

    An empty series yields zeros so the prompt and heuristic still receive
    numbers.
    """

    values = np.asarray(
        [p for p in (parse_number(v) for v in prices) if p is not None], dtype=float
    )
    if values.size == 0:
        return HistoryStats(avg_price=0.0, volatility=0.0)
    avg_price = float(np.mean(values))
    if avg_price == 0:
        return HistoryStats(avg_price=avg_price, volatility=0.0)
    volatility = float(np.std(values) / avg_price * 100)
    return HistoryStats(avg_price=avg_price, volatility=volatility)


__all__ = ["HistoryStats", "estimate_volatility", "history_stats"]

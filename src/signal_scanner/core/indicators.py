"""
Technical indicator computations over a plain sequence of closes.

Every function is pure and tolerant of short history: instead of NaN it
returns a defined fallback (mean of what is there, neutral RSI, zero momentum).
"""
from __future__ import annotations

import math
from datetime import datetime, timezone
from typing import Dict, List, Sequence

import numpy as np

from signal_scanner.core.models import WEEKDAYS, DayOfWeekStats, Indicators, PricePoint

TRADING_DAYS_PER_YEAR = 252


def sma(prices: Sequence[float], period: int) -> float:
    if not prices:
        return 0.0
    window = prices[-period:] if len(prices) >= period else prices
    return float(np.mean(window))


def ema(prices: Sequence[float], period: int) -> float:
    if not prices:
        return 0.0
    if len(prices) < period:
        return sma(prices, len(prices))
    k = 2 / (period + 1)
    value = sma(prices[:period], period)
    for price in prices[period:]:
        value = price * k + value * (1 - k)
    return value


def rsi(prices: Sequence[float], period: int = 14) -> float:
    if len(prices) < period + 1:
        return 50.0
    changes = [prices[i] - prices[i - 1] for i in range(len(prices) - period, len(prices))]
    avg_gain = sum(c for c in changes if c > 0) / period
    avg_loss = sum(-c for c in changes if c < 0) / period
    if avg_loss == 0:
        return 100.0
    rs = avg_gain / avg_loss
    return 100 - (100 / (1 + rs))


def macd(prices: Sequence[float]) -> Dict[str, float]:
    """MACD line, 9-period signal and histogram.

    The signal line needs the MACD history, rebuilt by re-running EMA12/EMA26
    at every cutoff with at least 26 samples.
    """
    line = ema(prices, 12) - ema(prices, 26)
    history: List[float] = [
        ema(prices[:cutoff], 12) - ema(prices[:cutoff], 26)
        for cutoff in range(26, len(prices) + 1)
    ]
    signal = ema(history, 9) if len(history) >= 9 else line
    return {"macd": line, "signal": signal, "histogram": line - signal}


def daily_returns(prices: Sequence[float]) -> List[float]:
    return [(prices[i] - prices[i - 1]) / prices[i - 1] for i in range(1, len(prices)) if prices[i - 1]]


def volatility(prices: Sequence[float], period: int = 20) -> float:
    """Annualized standard deviation of daily returns, in percent."""
    if len(prices) < 2:
        return 0.0
    returns = daily_returns(prices[-(period + 1):])
    if not returns:
        return 0.0
    return float(np.std(returns)) * math.sqrt(TRADING_DAYS_PER_YEAR) * 100


def momentum(prices: Sequence[float], period: int = 10) -> float:
    if len(prices) < period + 1:
        return 0.0
    past = prices[-1 - period]
    if past == 0:
        return 0.0
    return (prices[-1] - past) / past * 100


def compute_indicators(prices: Sequence[float]) -> Indicators:
    m = macd(prices)
    return Indicators(
        rsi=rsi(prices),
        sma20=sma(prices, 20),
        sma50=sma(prices, 50),
        ema12=ema(prices, 12),
        ema26=ema(prices, 26),
        macd=m["macd"],
        macd_signal=m["signal"],
        macd_histogram=m["histogram"],
        momentum=momentum(prices),
        volatility=volatility(prices),
    )


def weekday_name(timestamp: int) -> str:
    return datetime.fromtimestamp(timestamp, tz=timezone.utc).strftime("%A")


def day_of_week_stats(points: Sequence[PricePoint]) -> Dict[str, DayOfWeekStats]:
    """Bucket day-over-day returns by the weekday of the later bar (Mon-Fri only)."""
    buckets: Dict[str, List[float]] = {day: [] for day in WEEKDAYS}
    for prev, cur in zip(points, points[1:]):
        day = weekday_name(cur.timestamp)
        if day not in buckets or not prev.close:
            continue
        buckets[day].append((cur.close - prev.close) / prev.close * 100)

    stats = {}
    for day, returns in buckets.items():
        if returns:
            wins = sum(1 for r in returns if r > 0)
            stats[day] = DayOfWeekStats(
                avg_return=sum(returns) / len(returns),
                win_rate=wins / len(returns),
                sample_count=len(returns),
            )
        else:
            stats[day] = DayOfWeekStats()
    return stats


def best_day(stats: Dict[str, DayOfWeekStats]) -> str:
    best, best_return = WEEKDAYS[0], -math.inf
    for day in WEEKDAYS:
        if day in stats and stats[day].avg_return > best_return:
            best, best_return = day, stats[day].avg_return
    return best

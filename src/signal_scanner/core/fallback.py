"""Deterministic synthetic price series, used when live data is unavailable."""
from __future__ import annotations

from datetime import date, datetime, time as dt_time, timedelta, timezone
from typing import Iterator, List, Optional

from signal_scanner.core.models import PricePoint

_LCG_MODULUS = 2147483647
_LCG_MULTIPLIER = 16807


def _lcg(seed: int) -> Iterator[float]:
    """Park-Miller minimal standard generator yielding floats in [0, 1)."""
    while True:
        seed = (seed * _LCG_MULTIPLIER) % _LCG_MODULUS
        yield (seed - 1) / (_LCG_MODULUS - 1)


def generate_fallback_series(symbol: str, today: Optional[date] = None, days: int = 182) -> List[PricePoint]:
    """Roughly six months of weekday bars, the same for the same symbol and day."""
    today = today or datetime.now(timezone.utc).date()
    price = 30.0 + (ord(symbol[0]) % 100 if symbol else 0)
    vol = 0.01 + (len(symbol) % 5) * 0.003
    rand = _lcg(sum(ord(c) for c in symbol) or 1)

    points = []
    day = today - timedelta(days=days)
    while day <= today:
        if day.weekday() < 5:
            price *= 1 + (next(rand) - 0.48) * vol * 2
            ts = int(datetime.combine(day, dt_time(16, 0), tzinfo=timezone.utc).timestamp())
            points.append(PricePoint(
                date=day.isoformat(),
                timestamp=ts,
                open=price * (1 + (next(rand) - 0.5) * vol * 0.5),
                high=price * (1 + next(rand) * vol),
                low=price * (1 - next(rand) * vol),
                close=price,
                volume=float(int(500_000 + next(rand) * 3_000_000)),
            ))
        day += timedelta(days=1)
    return points

"""Shared builders and fakes for the test suite."""
import sqlite3
from datetime import date, datetime, time, timedelta, timezone
from typing import Callable, Dict, List, Optional, Sequence, Union

from signal_scanner.core.catalog import Catalog
from signal_scanner.core.errors import GatewayError
from signal_scanner.core.models import InstrumentMetadata, PricePoint, ScanLogEntry, ScanMode
from signal_scanner.db.cache_store import MemoryCacheStore

MONDAY = date(2024, 1, 1)


def trading_days(count: int, start: date = MONDAY) -> List[date]:
    days = []
    day = start
    while len(days) < count:
        if day.weekday() < 5:
            days.append(day)
        day += timedelta(days=1)
    return days


def make_series(closes: Sequence[float], start: date = MONDAY, days: Optional[Sequence[date]] = None) -> List[PricePoint]:
    days = list(days) if days is not None else trading_days(len(closes), start)
    points = []
    for day, close in zip(days, closes):
        ts = int(datetime.combine(day, time(14, 30), tzinfo=timezone.utc).timestamp())
        points.append(PricePoint(
            date=day.isoformat(), timestamp=ts,
            open=close, high=close * 1.01, low=close * 0.99, close=close, volume=1_000_000,
        ))
    return points


def rising(n: int = 60, start: float = 100.0, step: float = 0.5) -> List[float]:
    return [start + i * step for i in range(n)]


def chart_payload(closes: Sequence[float], gaps: Sequence[int] = ()) -> Dict:
    """Yahoo-shaped chart JSON; indices in ``gaps`` get a null close."""
    points = make_series(closes)
    close = [None if i in gaps else p.close for i, p in enumerate(points)]
    return {
        "chart": {
            "result": [{
                "meta": {"symbol": "TEST", "currency": "CAD"},
                "timestamp": [p.timestamp for p in points],
                "indicators": {"quote": [{
                    "open": [p.open for p in points],
                    "high": [p.high for p in points],
                    "low": [p.low for p in points],
                    "close": close,
                    "volume": [p.volume for p in points],
                }]},
            }],
            "error": None,
        }
    }


def make_catalog(symbols: Sequence[str], tracked: Sequence[str] = ()) -> Catalog:
    def meta(s: str, **extra) -> InstrumentMetadata:
        return InstrumentMetadata(symbol=s, provider_symbol=f"{s}.TO", name=f"{s} Corp", category="Test", **extra)

    return Catalog(
        tracked=[meta(s, mer=0.2, dividend_yield=3.0) for s in tracked],
        universe=[meta(s) for s in symbols],
        mode_sizes={ScanMode.SMALL: 3, ScanMode.MEDIUM: None, ScanMode.FULL: None},
    )


Outcome = Union[List[PricePoint], Exception]


class FakeGateway:
    """Serves canned series or errors keyed by provider symbol and records every call."""

    def __init__(self, outcomes: Optional[Dict[str, Outcome]] = None, default: Optional[Outcome] = None):
        self.outcomes = dict(outcomes or {})
        self.default = default if default is not None else make_series(rising())
        self.calls: List[str] = []
        self.on_fetch: Optional[Callable[[str], None]] = None
        self.search_results: Union[List, Exception] = []
        self.closed = False

    def _outcome(self, symbol: str) -> List[PricePoint]:
        self.calls.append(symbol)
        if self.on_fetch:
            self.on_fetch(symbol)
        outcome = self.outcomes.get(symbol, self.default)
        if isinstance(outcome, Exception):
            raise outcome
        return list(outcome)

    async def fetch_series(self, symbol: str) -> List[PricePoint]:
        return self._outcome(symbol)

    async def fetch_series_logged(self, symbol: str, entry: ScanLogEntry) -> List[PricePoint]:
        entry.route_used = "direct"
        entry.duration_ms = 120.0
        try:
            points = self._outcome(symbol)
        except GatewayError as e:
            entry.http_status = e.http_status or 0
            entry.note = str(e)
            raise
        entry.http_status = 200
        entry.bar_count = len(points)
        entry.response_bytes = 1000
        return points

    async def search(self, query: str):
        self.calls.append(f"search:{query}")
        if isinstance(self.search_results, Exception):
            raise self.search_results
        return list(self.search_results)

    async def close(self) -> None:
        self.closed = True


class FakeClock:
    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start
        self.sleeps: List[float] = []

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


class BrokenStore(MemoryCacheStore):
    """Reads work, every write fails with a non-capacity storage error."""

    async def put(self, key: str, payload: str) -> None:
        raise sqlite3.OperationalError("disk I/O error")

    async def close(self) -> None:
        pass

"""
Market data gateway for the Yahoo Finance chart and search endpoints.

Two routes are supported:
- direct: one request with identifying headers and a fixed timeout
- relay: the request is wrapped by each configured pass-through relay in
  order until one answers 2xx. A 429 stops immediately.

The chart payload is validated against a strict schema before any bar is
used; bars with a missing OHLCV field are dropped.
"""
from __future__ import annotations

import asyncio
import json
import logging
import time
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple
from urllib.parse import quote, urlencode

import aiohttp
from pydantic import BaseModel, ValidationError

from signal_scanner.core.config import Settings
from signal_scanner.core.errors import (
    GatewayError,
    GatewayTimeoutError,
    NetworkError,
    RateLimitedError,
    UpstreamFormatError,
)
from signal_scanner.core.models import PricePoint, ScanLogEntry, SearchResult

logger = logging.getLogger(__name__)

DEFAULT_HEADERS = {
    "User-Agent": "Mozilla/5.0 (compatible; signal-scanner/0.1)",
    "Accept": "application/json",
}
SEARCH_TYPES = ("EQUITY", "ETF")


# ---------------------------
# Provider schema
# ---------------------------
class ChartQuote(BaseModel):
    open: List[Optional[float]] = []
    high: List[Optional[float]] = []
    low: List[Optional[float]] = []
    close: List[Optional[float]] = []
    volume: List[Optional[float]] = []


class ChartIndicators(BaseModel):
    quote: List[ChartQuote]


class ChartResult(BaseModel):
    meta: Dict[str, Any] = {}
    timestamp: List[int] = []
    indicators: ChartIndicators


class ChartBody(BaseModel):
    result: Optional[List[ChartResult]] = None
    error: Optional[Any] = None


class ChartResponse(BaseModel):
    chart: ChartBody


def parse_chart(payload: Any) -> List[PricePoint]:
    """Validate a chart payload and return complete bars in ascending time order."""
    try:
        response = ChartResponse.model_validate(payload)
    except ValidationError as e:
        raise UpstreamFormatError(f"unexpected chart shape: {e.error_count()} validation error(s)") from e

    results = response.chart.result
    if not results:
        detail = response.chart.error
        raise UpstreamFormatError(f"chart has no result{f': {detail}' if detail else ''}")
    result = results[0]
    if not result.indicators.quote:
        raise UpstreamFormatError("chart has no quote block")
    q = result.indicators.quote[0]

    def at(values: List[Optional[float]], i: int) -> Optional[float]:
        return values[i] if i < len(values) else None

    points = []
    for i, ts in enumerate(result.timestamp):
        fields = (at(q.open, i), at(q.high, i), at(q.low, i), at(q.close, i), at(q.volume, i))
        if any(v is None for v in fields):
            continue
        o, h, l, c, v = fields
        points.append(PricePoint(
            date=datetime.fromtimestamp(ts, tz=timezone.utc).date().isoformat(),
            timestamp=ts, open=o, high=h, low=l, close=c, volume=v,
        ))

    if not points:
        raise UpstreamFormatError("chart contains no complete OHLCV bars")
    points.sort(key=lambda p: p.timestamp)
    return points


def parse_search(payload: Any) -> List[SearchResult]:
    quotes = payload.get("quotes") if isinstance(payload, dict) else None
    if not isinstance(quotes, list):
        return []
    results = []
    for q in quotes:
        if not isinstance(q, dict) or q.get("quoteType") not in SEARCH_TYPES or not q.get("symbol"):
            continue
        results.append(SearchResult(
            symbol=q["symbol"],
            name=q.get("shortname") or q.get("longname") or q["symbol"],
            exchange=q.get("exchDisp") or "Unknown",
            type=q.get("quoteType") or "EQUITY",
        ))
    return results


class MarketDataGateway:

    def __init__(
        self,
        settings: Optional[Settings] = None,
        session: Optional[aiohttp.ClientSession] = None,
        clock: Callable[[], float] = time.perf_counter,
    ) -> None:
        self.settings = settings or Settings()
        self._session = session
        self._owns_session = session is None
        self._clock = clock

    async def __aenter__(self) -> "MarketDataGateway":
        return self

    async def __aexit__(self, *exc) -> None:
        await self.close()

    async def close(self) -> None:
        if self._session is not None and self._owns_session:
            await self._session.close()
        self._session = None

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(headers=DEFAULT_HEADERS)
            self._owns_session = True
        return self._session

    def chart_url(self, symbol: str) -> str:
        params = urlencode({"range": "6mo", "interval": "1d", "includePrePost": "false"})
        return f"{self.settings.chart_base_url}/{quote(symbol, safe='')}?{params}"

    def search_url(self, query: str) -> str:
        params = urlencode({"q": query, "quotesCount": 12, "newsCount": 0, "listsCount": 0, "enableFuzzyQuery": "false"})
        return f"{self.settings.search_base_url}?{params}"

    # ---------------------------
    # Public API
    # ---------------------------
    async def fetch_series(self, symbol: str) -> List[PricePoint]:
        """Plain fetch for single-symbol lookups. Raises a GatewayError subclass on failure."""
        payload, _ = await self._get_json(self.chart_url(symbol), None)
        return parse_chart(payload)

    async def fetch_series_logged(self, symbol: str, entry: ScanLogEntry) -> List[PricePoint]:
        """Same as fetch_series but records timing, size, route and status on ``entry``.

        The entry is left pending; the caller decides the final status.
        """
        started = self._clock()
        try:
            payload, size = await self._get_json(self.chart_url(symbol), entry)
            entry.response_bytes = size
            points = parse_chart(payload)
            entry.bar_count = len(points)
            return points
        except GatewayError as e:
            entry.note = _join_note(entry.note, str(e))
            raise
        finally:
            entry.duration_ms = round((self._clock() - started) * 1000, 1)

    async def search(self, query: str) -> List[SearchResult]:
        if not query or not query.strip():
            return []
        payload, _ = await self._get_json(self.search_url(query.strip()), None)
        return parse_search(payload)

    # ---------------------------
    # Routing
    # ---------------------------
    async def _get_json(self, url: str, entry: Optional[ScanLogEntry]) -> Tuple[Any, int]:
        if self.settings.route_mode == "relay":
            body = await self._request_via_relays(url, entry)
        else:
            body = await self._request_direct(url, entry)
        try:
            return json.loads(body), len(body)
        except ValueError as e:
            raise UpstreamFormatError(f"response is not JSON ({len(body)} bytes)") from e

    def _timeout(self) -> aiohttp.ClientTimeout:
        return aiohttp.ClientTimeout(total=self.settings.request_timeout)

    async def _request_direct(self, url: str, entry: Optional[ScanLogEntry]) -> bytes:
        if entry is not None:
            entry.route_used = "direct"
        session = self._get_session()
        try:
            async with session.get(url, headers=DEFAULT_HEADERS, timeout=self._timeout()) as response:
                if entry is not None:
                    entry.http_status = response.status
                if response.status == 429:
                    raise RateLimitedError()
                if not 200 <= response.status < 300:
                    raise NetworkError(f"HTTP {response.status}", http_status=response.status)
                return await response.read()
        except asyncio.TimeoutError as e:
            raise GatewayTimeoutError(f"timed out after {self.settings.request_timeout:g}s") from e
        except aiohttp.ClientError as e:
            raise NetworkError(f"connection failed: {e}") from e

    async def _request_via_relays(self, url: str, entry: Optional[ScanLogEntry]) -> bytes:
        relays = self.settings.relays
        if not relays:
            raise NetworkError("no relays configured")
        session = self._get_session()
        encoded = quote(url, safe="")
        errors = []
        all_timeouts = True

        for index, (name, template) in enumerate(relays):
            if entry is not None:
                entry.route_used = name
                entry.used_fallback_route = index > 0
            relay_url = template.format(url=encoded)
            try:
                async with session.get(relay_url, timeout=self._timeout()) as response:
                    if entry is not None:
                        entry.http_status = response.status
                    if response.status == 429:
                        # hammering a rate-limited provider through another relay only makes it worse
                        raise RateLimitedError(f"relay {name} returned HTTP 429")
                    if 200 <= response.status < 300:
                        return await response.read()
                    all_timeouts = False
                    errors.append(f"{name}: HTTP {response.status}")
            except asyncio.TimeoutError:
                errors.append(f"{name}: timeout")
            except aiohttp.ClientError as e:
                all_timeouts = False
                errors.append(f"{name}: {e.__class__.__name__}")
            logger.debug("Relay %s failed for %s, trying next", name, url)

        detail = "; ".join(errors)
        if all_timeouts:
            raise GatewayTimeoutError(f"all relays timed out ({detail})")
        raise NetworkError(f"all relays failed ({detail})")


def _join_note(note: str, extra: str) -> str:
    return f"{note}; {extra}" if note else extra

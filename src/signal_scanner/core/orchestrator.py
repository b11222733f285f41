"""
Scan orchestration.

One ScanOrchestrator owns the in-flight result buffer and failed list of
the current run. The loop is cooperative and single-in-flight: it paces
every upstream call through a FixedIntervalGate, publishes a fresh
ScanState after each symbol and polls a cancellation flag between calls.

Cache-first:
- valid record with no failed symbols: returned as is, no network
- valid record with failed symbols: cached results are carried over and
  only the universe minus those results is fetched
- no valid record, or forced: full universe
"""
from __future__ import annotations

import logging
import time
from typing import Awaitable, Callable, Dict, Iterable, List, Optional

from signal_scanner.clients.yahoo_client import MarketDataGateway
from signal_scanner.core.catalog import Catalog
from signal_scanner.core.config import Settings
from signal_scanner.core.errors import (
    GatewayError,
    GatewayTimeoutError,
    RateLimitedError,
    ScanInProgressError,
)
from signal_scanner.core.fallback import generate_fallback_series
from signal_scanner.core.models import (
    DataSource,
    InstrumentMetadata,
    LogStatus,
    ScanLogEntry,
    ScanLogStats,
    ScanMode,
    ScanState,
    ScoredInstrument,
    SearchResult,
)
from signal_scanner.core.rate_limiter import FixedIntervalGate
from signal_scanner.core.scoring import ScoringWeights, process_instrument
from signal_scanner.core.telemetry import ScanLog
from signal_scanner.db.cache_store import CacheStore
from signal_scanner.db.scan_cache import TRACKED_KEY, ScanCache

logger = logging.getLogger(__name__)

MIN_SCAN_BARS = 10
MIN_LOOKUP_BARS = 5
SCAN_HISTORY_BARS = 30
TRACKED_HISTORY_BARS = 60

Listener = Callable[[ScanState], Awaitable[None]]


def rank_results(*groups: Iterable[ScoredInstrument]) -> List[ScoredInstrument]:
    """Merge by symbol (later groups win) and sort by descending signal confidence."""
    merged: Dict[str, ScoredInstrument] = {}
    for group in groups:
        for item in group:
            merged[item.symbol] = item
    return sorted(merged.values(), key=lambda r: r.signal_confidence, reverse=True)


class ScanOrchestrator:

    def __init__(
        self,
        gateway: MarketDataGateway,
        cache: ScanCache,
        catalog: Optional[Catalog] = None,
        gate: Optional[FixedIntervalGate] = None,
        log: Optional[ScanLog] = None,
        weights: Optional[ScoringWeights] = None,
        tracked_ttl: Optional[float] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.gateway = gateway
        self.cache = cache
        self.catalog = catalog or Catalog.load()
        self.gate = gate or FixedIntervalGate(0.25)
        self.log = log or ScanLog()
        self.weights = weights or ScoringWeights()
        self.tracked_ttl = tracked_ttl
        self._clock = clock
        self._state = ScanState()
        self._listeners: List[Listener] = []
        self._running = False
        self._cancel_requested = False

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        store: CacheStore,
        gateway: Optional[MarketDataGateway] = None,
        catalog: Optional[Catalog] = None,
    ) -> "ScanOrchestrator":
        return cls(
            gateway=gateway or MarketDataGateway(settings),
            cache=ScanCache(store, ttl=settings.cache_ttl),
            catalog=catalog,
            gate=FixedIntervalGate(settings.scan_delay),
            weights=settings.scoring,
            tracked_ttl=settings.tracked_ttl,
        )

    # ---------------------------
    # Observables
    # ---------------------------
    @property
    def state(self) -> ScanState:
        return self._state

    @property
    def scanning(self) -> bool:
        return self._running

    def log_entries(self) -> List[ScanLogEntry]:
        return self.log.entries()

    def stats(self) -> ScanLogStats:
        return self.log.stats()

    def throttle_warnings(self) -> List[str]:
        return self.log.throttle_warnings()

    def subscribe(self, listener: Listener) -> None:
        """Register an async callback awaited after every published state."""
        self._listeners.append(listener)

    def unsubscribe(self, listener: Listener) -> None:
        try:
            self._listeners.remove(listener)
        except ValueError:
            pass

    async def _publish(self, **changes) -> None:
        self._state = self._state.model_copy(update=changes)
        for listener in list(self._listeners):
            try:
                await listener(self._state)
            except Exception:
                # a broken observer must not break the scan
                logger.exception("Scan state listener %r failed", listener)

    # ---------------------------
    # Commands
    # ---------------------------
    async def run_scan(self, mode: ScanMode, force: bool = False) -> ScanState:
        mode = ScanMode(mode)
        if self._running:
            raise ScanInProgressError("a scan is already running")
        self._running = True
        self._cancel_requested = False
        try:
            return await self._run(mode, force)
        finally:
            self._running = False

    async def force_rescan(self, mode: ScanMode) -> ScanState:
        return await self.run_scan(mode, force=True)

    async def flush_cache(self, mode: Optional[ScanMode] = None) -> None:
        await self.cache.flush(ScanMode(mode) if mode is not None else None)

    def cancel_scan(self) -> bool:
        """Request cancellation; takes effect before the next upstream call."""
        if not self._running:
            return False
        self._cancel_requested = True
        logger.info("Scan cancellation requested")
        return True

    async def _run(self, mode: ScanMode, force: bool) -> ScanState:
        universe = self.catalog.scan_universe(mode)
        if not universe:
            await self._publish(
                mode=mode, scanning=False, results=[], scanned=0, total=0, progress=100.0,
                status_text="Nothing to scan", failed_symbols=[], failed_count=0,
                retry_mode=False, cancelled=False,
            )
            return self._state

        if force:
            await self.cache.flush(mode)
            record = None
        else:
            record = await self.cache.load(mode)

        if record is not None and not record.failed_symbols:
            logger.info("Cache hit for %s scan: %d results, nothing to retry", mode.value, len(record.results))
            await self._publish(
                mode=mode, scanning=False, results=list(record.results), scanned=len(universe),
                total=len(universe), progress=100.0,
                status_text=f"Using cached results ({len(record.results)} instruments)",
                failed_symbols=[], failed_count=0, retry_mode=False,
                last_scan=record.timestamp, cancelled=False,
            )
            return self._state

        carried: List[ScoredInstrument] = []
        if record is not None:
            in_universe = {m.symbol for m in universe}
            carried = [r for r in record.results if r.symbol in in_universe]
        done = {r.symbol for r in carried}
        targets = [m for m in universe if m.symbol not in done]
        return await self._scan(mode, targets, carried, retry_mode=record is not None)

    async def _scan(
        self,
        mode: ScanMode,
        targets: List[InstrumentMetadata],
        carried: List[ScoredInstrument],
        retry_mode: bool,
    ) -> ScanState:
        total = len(targets)
        fresh: Dict[str, ScoredInstrument] = {}
        failed: List[str] = []
        cancelled = False
        self.log.reset()

        if retry_mode:
            logger.info("Retrying %d failed symbols for %s scan (%d cached)", total, mode.value, len(carried))
            status = f"Retrying {total} previously failed symbols"
        else:
            logger.info("Starting full %s scan of %d symbols", mode.value, total)
            status = f"Scanning {total} symbols"
        await self._publish(
            mode=mode, scanning=True, results=rank_results(carried), scanned=0, total=total,
            progress=0.0, status_text=status, failed_symbols=[], failed_count=0,
            retry_mode=retry_mode, cancelled=False,
        )

        for index, meta in enumerate(targets):
            if not self._cancel_requested:
                await self.gate.wait()
            if self._cancel_requested:
                remainder = targets[index:]
                for offset, skipped in enumerate(remainder):
                    self.log.skip(skipped.symbol, index + offset, "scan cancelled")
                failed.extend(m.symbol for m in remainder)
                cancelled = True
                logger.info("Scan cancelled with %d symbols unattempted", len(remainder))
                break

            result = await self._fetch_one(meta, index)
            if result is None:
                failed.append(meta.symbol)
            else:
                fresh[meta.symbol] = result
            scanned = index + 1
            await self._publish(
                results=rank_results(carried, fresh.values()),
                scanned=scanned,
                progress=scanned / total * 100,
                status_text=f"Scanned {scanned}/{total}: {meta.symbol}",
                failed_symbols=list(failed),
                failed_count=len(failed),
            )

        final = rank_results(carried, (r.with_history_tail(SCAN_HISTORY_BARS) for r in fresh.values()))
        await self.cache.save(mode, final, failed)

        if cancelled:
            status = f"Scan cancelled: {len(final)} results kept, {len(failed)} symbols left for retry"
        else:
            status = f"Scan complete: {len(fresh)} fetched, {len(failed)} failed"
        logger.info("%s scan finished. %s", mode.value, status)
        await self._publish(
            scanning=False, results=final, failed_symbols=list(failed), failed_count=len(failed),
            progress=100.0 if not cancelled else self._state.progress,
            status_text=status, last_scan=self._clock(), cancelled=cancelled,
        )
        return self._state

    async def _fetch_one(self, meta: InstrumentMetadata, index: int) -> Optional[ScoredInstrument]:
        """Fetch and score one symbol; None marks it failed for this run."""
        entry = self.log.open(meta.symbol, index)
        try:
            series = await self.gateway.fetch_series_logged(meta.provider_symbol, entry)
        except RateLimitedError as e:
            entry.finish(LogStatus.THROTTLED)
            logger.warning("%s throttled: %s", meta.symbol, e)
            return None
        except GatewayTimeoutError as e:
            entry.finish(LogStatus.TIMEOUT)
            logger.warning("%s timed out: %s", meta.symbol, e)
            return None
        except GatewayError as e:
            entry.finish(LogStatus.FAILED)
            logger.warning("%s failed: %s", meta.symbol, e)
            return None
        except Exception as e:
            # keep scanning; one bad symbol never aborts the run
            entry.finish(LogStatus.FAILED, f"unexpected error: {e.__class__.__name__}")
            logger.exception("Unexpected error fetching %s", meta.symbol)
            return None

        if len(series) <= MIN_SCAN_BARS:
            entry.finish(LogStatus.FAILED, f"only {len(series)} usable bars")
            logger.warning("%s returned only %d usable bars", meta.symbol, len(series))
            return None

        entry.finish(LogStatus.SUCCESS)
        return process_instrument(meta, series, DataSource.LIVE, self.weights)

    # ---------------------------
    # Tracked set, lookups, search
    # ---------------------------
    async def load_tracked(self, force: bool = False) -> List[ScoredInstrument]:
        """Scored tracked ETFs; symbols without live data get a synthetic series."""
        if not force:
            record = await self.cache.load(TRACKED_KEY, ttl=self.tracked_ttl)
            if record is not None:
                return [r.model_copy(update={"data_source": DataSource.CACHED}) for r in record.results]

        results: List[ScoredInstrument] = []
        live = 0
        for meta in self.catalog.tracked:
            await self.gate.wait()
            series = await self._fetch_quietly(meta.provider_symbol)
            if len(series) > MIN_SCAN_BARS:
                results.append(process_instrument(meta, series, DataSource.LIVE, self.weights))
                live += 1
            else:
                fallback = generate_fallback_series(meta.symbol)
                results.append(process_instrument(meta, fallback, DataSource.FALLBACK, self.weights))

        if live:
            await self.cache.save(TRACKED_KEY, [r.with_history_tail(TRACKED_HISTORY_BARS) for r in results], [])
        else:
            logger.warning("No live data for any tracked instrument, showing estimates")
        return results

    async def lookup(self, symbol: str, name: Optional[str] = None) -> ScoredInstrument:
        meta = self.catalog.get(symbol)
        if meta is None:
            display = symbol[:-3] if symbol.upper().endswith(".TO") else symbol
            meta = InstrumentMetadata(
                symbol=display,
                provider_symbol=symbol,
                name=name or symbol,
                category="Lookup",
                description=f"{name or symbol}. Data from Yahoo Finance.",
            )
        series = await self._fetch_quietly(meta.provider_symbol)
        if len(series) > MIN_LOOKUP_BARS:
            return process_instrument(meta, series, DataSource.LIVE, self.weights)
        return process_instrument(meta, generate_fallback_series(meta.provider_symbol), DataSource.FALLBACK, self.weights)

    async def search(self, query: str) -> List[SearchResult]:
        try:
            return await self.gateway.search(query)
        except GatewayError as e:
            logger.warning("Search for %r failed: %s", query, e)
            return []

    async def _fetch_quietly(self, provider_symbol: str):
        try:
            return await self.gateway.fetch_series(provider_symbol)
        except GatewayError as e:
            logger.warning("Fetch for %s failed: %s", provider_symbol, e)
            return []

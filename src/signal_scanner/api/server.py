"""
FastAPI server exposing scan control and read-only scan observables.
This file wires:
- ScanOrchestrator (scan commands, tracked set, lookups)
- SqliteCacheStore (persisted scan cache) when no orchestrator is injected
- Web endpoints for control and inspection
"""
import asyncio
import logging
from typing import Dict, List, Optional

from fastapi import FastAPI, HTTPException

from signal_scanner.core.config import get_settings
from signal_scanner.core.errors import ScanInProgressError
from signal_scanner.core.models import (
    WEEKDAYS,
    ScanLogEntry,
    ScanMode,
    ScanState,
    ScoredInstrument,
    SearchResult,
)
from signal_scanner.core.orchestrator import ScanOrchestrator
from signal_scanner.core.scoring import rank_by_weekday, signal_counts
from signal_scanner.db.cache_store import create_and_init

logger = logging.getLogger(__name__)


def _log_scan_outcome(task: "asyncio.Task") -> None:
    if task.cancelled():
        logger.warning("Background scan task was cancelled")
        return
    exc = task.exception()
    if exc is not None:
        logger.error("Background scan failed", exc_info=exc)


def create_app(orchestrator: Optional[ScanOrchestrator] = None) -> FastAPI:
    app = FastAPI(title="Signal Scanner API", version="0.1.0")
    app.state.orchestrator = orchestrator
    app.state.scan_task = None

    @app.on_event("startup")
    async def startup_event():
        if app.state.orchestrator is not None:
            return
        settings = get_settings()
        store = await create_and_init(settings.db_path, max_bytes=settings.max_cache_bytes)
        app.state.store = store
        app.state.orchestrator = ScanOrchestrator.from_settings(settings, store)
        logger.info("Scanner ready (route=%s, db=%s)", settings.route_mode, settings.db_path)

    @app.on_event("shutdown")
    async def shutdown_event():
        task = app.state.scan_task
        if task is not None and not task.done():
            app.state.orchestrator.cancel_scan()
            await task
        if getattr(app.state, "store", None) is not None:
            await app.state.orchestrator.gateway.close()
            await app.state.store.close()

    def orch() -> ScanOrchestrator:
        if app.state.orchestrator is None:
            raise HTTPException(status_code=503, detail="Scanner not initialized")
        return app.state.orchestrator

    def scan_running() -> bool:
        task = app.state.scan_task
        return orch().scanning or (task is not None and not task.done())

    async def start_scan(mode: ScanMode, force: bool, wait: bool) -> Dict:
        o = orch()
        if scan_running():
            raise HTTPException(status_code=409, detail="A scan is already running")
        if wait:
            try:
                state = await o.run_scan(mode, force=force)
            except ScanInProgressError as e:
                raise HTTPException(status_code=409, detail=str(e))
            return {"status": "completed", "state": state.model_dump(mode="json")}
        task = asyncio.create_task(o.run_scan(mode, force=force))
        task.add_done_callback(_log_scan_outcome)
        app.state.scan_task = task
        return {"status": "started", "mode": mode.value, "force": force}

    @app.post("/scan/cancel")
    async def cancel_scan():
        return {"cancelled": orch().cancel_scan()}

    @app.post("/scan/{mode}")
    async def run_scan(mode: ScanMode, wait: bool = False):
        """Cache-first scan: serves a clean cache, retries only failed symbols otherwise."""
        return await start_scan(mode, force=False, wait=wait)

    @app.post("/scan/{mode}/force")
    async def force_rescan(mode: ScanMode, wait: bool = False):
        return await start_scan(mode, force=True, wait=wait)

    @app.delete("/cache")
    async def flush_cache(mode: Optional[ScanMode] = None):
        await orch().flush_cache(mode)
        return {"flushed": mode.value if mode else "all"}

    @app.get("/scan/state", response_model=ScanState)
    async def scan_state():
        return orch().state

    @app.get("/scan/summary")
    async def scan_summary():
        return signal_counts(orch().state.results)

    @app.get("/scan/logs", response_model=List[ScanLogEntry])
    async def scan_logs():
        return orch().log_entries()

    @app.get("/scan/stats")
    async def scan_stats():
        o = orch()
        return {"stats": o.stats().model_dump(), "warnings": o.throttle_warnings()}

    @app.get("/tracked", response_model=List[ScoredInstrument])
    async def tracked(force: bool = False):
        return await orch().load_tracked(force=force)

    @app.get("/lookup/{symbol}", response_model=ScoredInstrument)
    async def lookup(symbol: str, name: Optional[str] = None):
        return await orch().lookup(symbol, name=name)

    @app.get("/search", response_model=List[SearchResult])
    async def search(q: str = ""):
        return await orch().search(q)

    @app.get("/picks/{day}", response_model=List[ScoredInstrument])
    async def weekday_picks(day: str, limit: int = 10):
        day = day.capitalize()
        if day not in WEEKDAYS:
            raise HTTPException(status_code=400, detail=f"day must be one of {', '.join(WEEKDAYS)}")
        return rank_by_weekday(orch().state.results, day)[:limit]

    @app.get("/health")
    async def health():
        return {"status": "ok"}

    return app

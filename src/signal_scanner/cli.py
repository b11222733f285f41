"""
cli.py

Usage:
    signal-scanner scan                       # cache-first scan of the small universe
    signal-scanner scan --mode full --force   # full re-fetch, ignoring the cache
    signal-scanner flush --mode medium        # drop one cached scan (all if omitted)
    signal-scanner tracked                    # tracked ETF set
    signal-scanner lookup XEQT.TO
    signal-scanner search "royal bank"
    signal-scanner serve --port 8000
"""

import argparse
import asyncio
import logging
import signal
from typing import List

from signal_scanner.core.config import configure_logging, get_settings
from signal_scanner.core.models import ScanMode, ScanState, ScoredInstrument
from signal_scanner.core.orchestrator import ScanOrchestrator
from signal_scanner.core.scoring import signal_counts
from signal_scanner.db.cache_store import create_and_init

logger = logging.getLogger(__name__)


def format_row(item: ScoredInstrument) -> str:
    return (
        f"{item.symbol:<8} {item.signal.value:<11} {item.signal_confidence:>5.0f} "
        f"{item.price:>10.2f} {item.change_percent:>+7.2f}% "
        f"ST {item.short_term_score:>3.0f}  LT {item.long_term_score:>3.0f}  "
        f"RSI {item.indicators.rsi:>5.1f}  {item.data_source.value}"
    )


def print_results(items: List[ScoredInstrument], limit: int) -> None:
    for item in items[:limit]:
        print(format_row(item))


async def print_progress(state: ScanState) -> None:
    if state.scanning:
        print(f"\r[{state.progress:5.1f}%] {state.status_text:<60}", end="", flush=True)


async def _run(args: argparse.Namespace) -> int:
    settings = get_settings()
    store = await create_and_init(settings.db_path, max_bytes=settings.max_cache_bytes)
    orchestrator = ScanOrchestrator.from_settings(settings, store)
    try:
        if args.command == "scan":
            orchestrator.subscribe(print_progress)
            loop = asyncio.get_running_loop()
            try:
                loop.add_signal_handler(signal.SIGINT, orchestrator.cancel_scan)
                handled = True
            except (NotImplementedError, RuntimeError):
                handled = False
            try:
                state = await orchestrator.run_scan(ScanMode(args.mode), force=args.force)
            finally:
                if handled:
                    loop.remove_signal_handler(signal.SIGINT)
            print()
            print(state.status_text)
            print_results(state.results, args.limit)
            counts = ", ".join(f"{n} {label}" for label, n in signal_counts(state.results).items() if n)
            if counts:
                print(counts)
            for warning in orchestrator.throttle_warnings():
                print(f"! {warning}")
            if state.failed_symbols:
                print(f"Failed ({state.failed_count}): {', '.join(state.failed_symbols)}")
        elif args.command == "flush":
            await orchestrator.flush_cache(ScanMode(args.mode) if args.mode else None)
            print(f"Flushed {args.mode or 'all modes'}")
        elif args.command == "tracked":
            print_results(await orchestrator.load_tracked(force=args.force), args.limit)
        elif args.command == "lookup":
            item = await orchestrator.lookup(args.symbol)
            print(format_row(item))
            for reason in item.signal_reasoning:
                print(f"  - {reason}")
            print(f"  best day: {item.best_day}")
        elif args.command == "search":
            for r in await orchestrator.search(args.query):
                print(f"{r.symbol:<12} {r.type:<7} {r.exchange:<12} {r.name}")
    finally:
        await orchestrator.gateway.close()
        await store.close()
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="signal-scanner", description="Rank stocks and ETFs by technical signal.")
    sub = parser.add_subparsers(dest="command", required=True)
    modes = [m.value for m in ScanMode]

    scan = sub.add_parser("scan", help="Run a cache-first scan.")
    scan.add_argument("--mode", choices=modes, default=ScanMode.SMALL.value)
    scan.add_argument("--force", action="store_true", help="Ignore the cache and re-fetch everything.")
    scan.add_argument("--limit", type=int, default=25, help="Rows to print.")

    flush = sub.add_parser("flush", help="Drop cached scan results.")
    flush.add_argument("--mode", choices=modes, default=None)

    tracked = sub.add_parser("tracked", help="Score the tracked ETF set.")
    tracked.add_argument("--force", action="store_true")
    tracked.add_argument("--limit", type=int, default=50)

    lookup = sub.add_parser("lookup", help="Score a single symbol.")
    lookup.add_argument("symbol")

    search = sub.add_parser("search", help="Search the provider for symbols.")
    search.add_argument("query")

    serve = sub.add_parser("serve", help="Run the HTTP API.")
    serve.add_argument("--host", default="127.0.0.1")
    serve.add_argument("--port", type=int, default=8000)
    return parser


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    configure_logging(get_settings().log_level)
    if args.command == "serve":
        import uvicorn

        uvicorn.run("signal_scanner.app:app", host=args.host, port=args.port)
        return 0
    return asyncio.run(_run(args))


if __name__ == "__main__":
    raise SystemExit(main())

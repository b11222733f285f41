"""
Scan telemetry: an append-only log of fetch attempts plus derived
statistics and advisory throttling heuristics. Nothing here feeds back
into the scan loop.
"""
from __future__ import annotations

import time
from typing import Callable, List, Optional

from signal_scanner.core.models import LogStatus, ScanLogEntry, ScanLogStats

FAILURE_STATUSES = (LogStatus.FAILED, LogStatus.TIMEOUT, LogStatus.THROTTLED)


class ScanLog:
    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self._entries: List[ScanLogEntry] = []
        self._next_id = 0
        self.started_at = clock()

    def reset(self) -> None:
        self._entries = []
        self._next_id = 0
        self.started_at = self._clock()

    def open(self, symbol: str, batch_index: int = 0) -> ScanLogEntry:
        self._next_id += 1
        entry = ScanLogEntry(id=self._next_id, timestamp=self._clock(), symbol=symbol, batch_index=batch_index)
        self._entries.append(entry)
        return entry

    def skip(self, symbol: str, batch_index: int, note: str) -> ScanLogEntry:
        entry = self.open(symbol, batch_index)
        entry.finish(LogStatus.SKIPPED, note)
        return entry

    def __len__(self) -> int:
        return len(self._entries)

    def entries(self) -> List[ScanLogEntry]:
        """Copies, so observers never see an entry change under them."""
        return [e.model_copy() for e in self._entries]

    def stats(self, now: Optional[float] = None) -> ScanLogStats:
        return compute_stats(self._entries, self.started_at, self._clock() if now is None else now)

    def throttle_warnings(self) -> List[str]:
        return detect_throttling(self._entries)


def compute_stats(entries: List[ScanLogEntry], started_at: float, now: float) -> ScanLogStats:
    completed = [e for e in entries if e.status is not LogStatus.PENDING]
    attempted = [e for e in completed if e.status is not LogStatus.SKIPPED]
    successes = [e for e in completed if e.status is LogStatus.SUCCESS]
    durations = [e.duration_ms for e in successes if e.duration_ms > 0]

    route_counts = {}
    for e in attempted:
        if e.route_used:
            route_counts[e.route_used] = route_counts.get(e.route_used, 0) + 1

    elapsed = max(0.0, now - started_at)
    return ScanLogStats(
        total_requests=len(attempted),
        success_count=len(successes),
        failed_count=sum(1 for e in completed if e.status is LogStatus.FAILED),
        timeout_count=sum(1 for e in completed if e.status is LogStatus.TIMEOUT),
        throttled_count=sum(1 for e in completed if e.status is LogStatus.THROTTLED),
        skipped_count=sum(1 for e in completed if e.status is LogStatus.SKIPPED),
        avg_response_ms=round(sum(durations) / len(durations)) if durations else 0,
        fastest_ms=round(min(durations)) if durations else 0,
        slowest_ms=round(max(durations)) if durations else 0,
        total_bytes=sum(e.response_bytes for e in completed),
        route_counts=route_counts,
        fallback_count=sum(1 for e in entries if e.used_fallback_route),
        started_at=started_at,
        elapsed_sec=round(elapsed, 1),
        requests_per_sec=round(len(attempted) / elapsed, 1) if elapsed > 0 else 0.0,
    )


def detect_throttling(entries: List[ScanLogEntry]) -> List[str]:
    warnings = []
    attempted = [e for e in entries if e.status not in (LogStatus.PENDING, LogStatus.SKIPPED)]
    successes = [e for e in attempted if e.status is LogStatus.SUCCESS and e.duration_ms > 0]

    if len(successes) >= 10:
        avg_first = sum(e.duration_ms for e in successes[:5]) / 5
        avg_last = sum(e.duration_ms for e in successes[-5:]) / 5
        if avg_last > avg_first * 3 and avg_last > 2000:
            warnings.append(
                f"THROTTLING DETECTED: recent requests avg {avg_last:.0f}ms vs initial "
                f"{avg_first:.0f}ms ({avg_last / avg_first:.0f}x slower)"
            )
        elif avg_last > avg_first * 2 and avg_last > 1500:
            warnings.append(f"Slowdown: recent avg {avg_last:.0f}ms vs initial {avg_first:.0f}ms")

    recent = attempted[-20:]
    recent_failures = sum(1 for e in recent if e.status in FAILURE_STATUSES)
    if recent_failures > 10:
        warnings.append(f"HIGH FAILURE RATE: {recent_failures}/{len(recent)} recent requests failed")
    elif recent_failures > 5:
        warnings.append(f"Elevated failures: {recent_failures}/{len(recent)} recent requests failed")

    fallbacks = sum(1 for e in attempted if e.used_fallback_route)
    if fallbacks > 5 and fallbacks > len(attempted) * 0.3:
        warnings.append(
            f"Primary relay failing often: {fallbacks}/{len(attempted)} requests fell back to a secondary relay"
        )

    very_fast = sum(1 for e in successes if e.duration_ms < 50)
    if very_fast > 5 and very_fast > len(successes) * 0.3:
        warnings.append(f"{very_fast} responses under 50ms: relay may be serving cached or empty data")

    return warnings

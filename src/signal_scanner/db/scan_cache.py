"""
TTL'd scan cache keyed by scan mode (plus the reserved ``tracked`` key).

A record holds the ranked results and the symbols that failed, so the next
run can retry only those. Write failures degrade to a truncated record and
are never raised to the scan.
"""
import logging
import time
from typing import Callable, Iterable, Optional, Union

from pydantic import ValidationError

from signal_scanner.core.errors import StorageFullError
from signal_scanner.core.models import ScanCacheRecord, ScanMode, ScoredInstrument
from signal_scanner.db.cache_store import CacheStore

logger = logging.getLogger(__name__)

TRACKED_KEY = "tracked"
DEGRADED_RESULT_LIMIT = 100

CacheKey = Union[ScanMode, str]


def _key(mode: CacheKey) -> str:
    return mode.value if isinstance(mode, ScanMode) else str(mode)


class ScanCache:
    def __init__(
        self,
        store: CacheStore,
        ttl: float = 30 * 60,
        clock: Callable[[], float] = time.time,
        degraded_limit: int = DEGRADED_RESULT_LIMIT,
    ) -> None:
        self.store = store
        self.ttl = ttl
        self._clock = clock
        self.degraded_limit = degraded_limit

    async def load(self, mode: CacheKey, ttl: Optional[float] = None) -> Optional[ScanCacheRecord]:
        """Return the record for ``mode`` if present and younger than the TTL."""
        raw = await self.store.get(_key(mode))
        if raw is None:
            return None
        try:
            record = ScanCacheRecord.model_validate_json(raw)
        except ValidationError:
            logger.warning("Discarding unreadable cache record for %s", _key(mode))
            return None
        age = self._clock() - record.timestamp
        if age >= (self.ttl if ttl is None else ttl):
            logger.debug("Cache record for %s expired (%.0fs old)", _key(mode), age)
            return None
        return record

    async def save(
        self,
        mode: CacheKey,
        results: Iterable[ScoredInstrument],
        failed_symbols: Iterable[str],
    ) -> bool:
        """Persist a record; returns False if even the degraded write failed."""
        results = list(results)
        failed = list(failed_symbols)
        record = ScanCacheRecord(timestamp=self._clock(), results=results, failed_symbols=failed)
        try:
            await self.store.put(_key(mode), record.model_dump_json())
            return True
        except StorageFullError as e:
            logger.warning("Cache write for %s failed (%s), retrying with %d results", _key(mode), e, self.degraded_limit)
        except Exception:
            logger.exception("Cache write for %s failed, cache not updated", _key(mode))
            return False

        # dropped results become failed so the next run fetches them again
        dropped = [r.symbol for r in results[self.degraded_limit:]]
        degraded = record.model_copy(update={
            "results": results[: self.degraded_limit],
            "failed_symbols": failed + dropped,
        })
        try:
            await self.store.put(_key(mode), degraded.model_dump_json())
            return True
        except Exception as e:
            logger.warning("Degraded cache write for %s failed too, cache not updated: %s", _key(mode), e)
            return False

    async def flush(self, mode: Optional[CacheKey] = None) -> None:
        """Drop one mode's record, or every record when ``mode`` is None."""
        if mode is None:
            await self.store.clear()
            logger.info("Flushed all scan cache records")
        else:
            await self.store.delete(_key(mode))
            logger.info("Flushed scan cache for %s", _key(mode))

"""
Data models for the scanner subsystem.
No implementation logic beyond small helpers, only Pydantic models and typed structures.
"""

from enum import Enum
from typing import Dict, List, Optional
import time

from pydantic import BaseModel, ConfigDict, Field


WEEKDAYS = ("Monday", "Tuesday", "Wednesday", "Thursday", "Friday")


class Signal(str, Enum):
    STRONG_BUY = "STRONG BUY"
    BUY = "BUY"
    HOLD = "HOLD"
    WATCH = "WATCH"
    SELL = "SELL"


class DataSource(str, Enum):
    LIVE = "live"
    CACHED = "cached"
    FALLBACK = "fallback"


class LogStatus(str, Enum):
    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"
    TIMEOUT = "timeout"
    THROTTLED = "throttled"
    SKIPPED = "skipped"


class ScanMode(str, Enum):
    SMALL = "small"
    MEDIUM = "medium"
    FULL = "full"


class PricePoint(BaseModel):
    """One daily OHLCV bar. Bars with a missing field never get this far."""
    model_config = ConfigDict(frozen=True)

    date: str = Field(..., description="Trading day, YYYY-MM-DD (UTC)")
    timestamp: int = Field(..., description="Unix timestamp of the bar")
    open: float
    high: float
    low: float
    close: float
    volume: float


class Indicators(BaseModel):
    model_config = ConfigDict(frozen=True)

    rsi: float
    sma20: float
    sma50: float
    ema12: float
    ema26: float
    macd: float
    macd_signal: float
    macd_histogram: float
    momentum: float
    volatility: float


class DayOfWeekStats(BaseModel):
    model_config = ConfigDict(frozen=True)

    avg_return: float = Field(0.0, description="Mean daily return in percent")
    win_rate: float = Field(0.5, description="Fraction of positive days (0..1)")
    sample_count: int = 0


class PriceRange(BaseModel):
    model_config = ConfigDict(frozen=True)

    high: float
    low: float


class InstrumentMetadata(BaseModel):
    """Static catalog record for one tradable instrument."""
    model_config = ConfigDict(frozen=True)

    symbol: str = Field(..., description="Display symbol")
    provider_symbol: str = Field(..., description="Symbol as the upstream provider knows it")
    name: str
    category: str = ""
    mer: float = Field(0.0, description="Management expense ratio in percent")
    dividend_yield: float = Field(0.0, description="Dividend yield in percent")
    description: str = ""


class ScoredInstrument(BaseModel):
    """Fully analysed instrument. A new instance is built on every fetch+compute cycle."""
    model_config = ConfigDict(frozen=True)

    symbol: str
    provider_symbol: str
    name: str
    category: str
    price: float
    previous_close: float
    change: float
    change_percent: float
    volume: float
    history: List[PricePoint]
    indicators: Indicators
    short_term_score: float
    long_term_score: float
    signal: Signal
    signal_confidence: float
    signal_reasoning: List[str]
    day_of_week: Dict[str, DayOfWeekStats]
    best_day: str
    mer: float
    dividend_yield: float
    description: str
    data_source: DataSource
    week_high_low: PriceRange
    avg_volume: float

    def with_history_tail(self, bars: int) -> "ScoredInstrument":
        """Return a copy carrying only the last ``bars`` points of history."""
        return self.model_copy(update={"history": list(self.history[-bars:])})


class ScanLogEntry(BaseModel):
    """Telemetry for one attempted fetch. Mutable until finished."""

    id: int
    timestamp: float = Field(default_factory=time.time)
    symbol: str
    status: LogStatus = LogStatus.PENDING
    route_used: str = ""
    used_fallback_route: bool = False
    duration_ms: float = 0.0
    response_bytes: int = 0
    bar_count: int = 0
    http_status: int = 0
    note: str = ""
    batch_index: int = 0

    def finish(self, status: LogStatus, note: Optional[str] = None) -> None:
        if self.status is not LogStatus.PENDING:
            raise ValueError(f"log entry {self.id} for {self.symbol} already finished as {self.status.value}")
        if status is LogStatus.PENDING:
            raise ValueError("cannot finish a log entry as pending")
        self.status = status
        if note:
            self.note = f"{self.note}; {note}" if self.note else note


class ScanLogStats(BaseModel):
    total_requests: int = 0
    success_count: int = 0
    failed_count: int = 0
    timeout_count: int = 0
    throttled_count: int = 0
    skipped_count: int = 0
    avg_response_ms: float = 0.0
    fastest_ms: float = 0.0
    slowest_ms: float = 0.0
    total_bytes: int = 0
    route_counts: Dict[str, int] = Field(default_factory=dict)
    fallback_count: int = 0
    started_at: float = 0.0
    elapsed_sec: float = 0.0
    requests_per_sec: float = 0.0


class ScanCacheRecord(BaseModel):
    timestamp: float = Field(default_factory=time.time)
    results: List[ScoredInstrument] = Field(default_factory=list)
    failed_symbols: List[str] = Field(default_factory=list)


class SearchResult(BaseModel):
    symbol: str
    name: str
    exchange: str = "Unknown"
    type: str = "EQUITY"


class ScanState(BaseModel):
    """Snapshot published to observers; replaced wholesale, never mutated."""
    model_config = ConfigDict(frozen=True)

    mode: Optional[ScanMode] = None
    scanning: bool = False
    results: List[ScoredInstrument] = Field(default_factory=list)
    scanned: int = 0
    total: int = 0
    progress: float = 0.0
    status_text: str = "Idle"
    failed_symbols: List[str] = Field(default_factory=list)
    failed_count: int = 0
    retry_mode: bool = False
    last_scan: Optional[float] = None
    cancelled: bool = False

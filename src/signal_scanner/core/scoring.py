"""
Composite scores, trade signal and the per-instrument processing entry point.

The increments below are empirical. Band thresholds are fixed, the
increments live in ScoringWeights so they can be tuned from config.yaml.
"""
from __future__ import annotations

from collections import Counter
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from pydantic import BaseModel, Field

from signal_scanner.core import indicators as ind
from signal_scanner.core.models import (
    DataSource,
    Indicators,
    InstrumentMetadata,
    PricePoint,
    PriceRange,
    ScoredInstrument,
    Signal,
)

SIGNAL_CLAMP = (10.0, 95.0)
HORIZON_CLAMP = (5.0, 98.0)


class SignalWeights(BaseModel):
    base: float = 50
    rsi_oversold: float = 20
    rsi_near_oversold: float = 10
    rsi_overbought: float = -15
    rsi_bullish: float = 5
    above_both_sma: float = 15
    above_sma20: float = 8
    below_both_sma: float = -10
    macd_bullish: float = 10
    macd_bearish: float = -8
    momentum_strong: float = 8
    momentum_positive: float = 4
    momentum_weak: float = -8
    daily_gain: float = 5
    daily_loss: float = -5


class ShortTermWeights(BaseModel):
    base: float = 50
    momentum_strong: float = 20
    momentum_positive: float = 12
    momentum_slight: float = 5
    momentum_weak: float = -15
    momentum_slight_negative: float = -5
    rsi_oversold: float = 15
    rsi_overbought: float = 5
    rsi_above_mid: float = 8
    macd_positive: float = 10
    macd_non_positive: float = -5
    volatility_high: float = 10
    volatility_moderate: float = 5
    daily_gain: float = 5
    daily_drop_bounce: float = 5


class LongTermWeights(BaseModel):
    base: float = 50
    above_sma50: float = 12
    below_sma50: float = -8
    sma_aligned: float = 8
    mer_very_low: float = 15
    mer_low: float = 10
    mer_moderate: float = 5
    mer_high: float = -5
    yield_high: float = 12
    yield_good: float = 8
    yield_some: float = 4
    volatility_low: float = 10
    volatility_moderate: float = 5
    volatility_high: float = -5
    momentum_positive: float = 5


class ScoringWeights(BaseModel):
    signal: SignalWeights = Field(default_factory=SignalWeights)
    short_term: ShortTermWeights = Field(default_factory=ShortTermWeights)
    long_term: LongTermWeights = Field(default_factory=LongTermWeights)


DEFAULT_WEIGHTS = ScoringWeights()


def _clamp(value: float, bounds: Tuple[float, float]) -> float:
    return max(bounds[0], min(bounds[1], value))


def label_for_score(score: float) -> Signal:
    if score >= 80:
        return Signal.STRONG_BUY
    if score >= 65:
        return Signal.BUY
    if score >= 45:
        return Signal.HOLD
    if score >= 30:
        return Signal.WATCH
    return Signal.SELL


def generate_signal(
    tech: Indicators,
    price: float,
    change_percent: float,
    weights: Optional[SignalWeights] = None,
) -> Tuple[Signal, float, List[str]]:
    """Return (label, confidence, reasoning) for the latest bar."""
    w = weights or DEFAULT_WEIGHTS.signal
    score = w.base
    reasoning: List[str] = []

    if tech.rsi < 30:
        score += w.rsi_oversold
        reasoning.append(f"RSI at {tech.rsi:.1f}: oversold territory, potential bounce")
    elif tech.rsi < 40:
        score += w.rsi_near_oversold
        reasoning.append(f"RSI at {tech.rsi:.1f}: approaching oversold")
    elif tech.rsi > 70:
        score += w.rsi_overbought
        reasoning.append(f"RSI at {tech.rsi:.1f}: overbought, caution advised")
    elif tech.rsi > 60:
        score += w.rsi_bullish
        reasoning.append(f"RSI at {tech.rsi:.1f}: bullish momentum")
    else:
        reasoning.append(f"RSI at {tech.rsi:.1f}: neutral zone")

    if price > tech.sma20 and price > tech.sma50:
        score += w.above_both_sma
        reasoning.append("Price above both 20-day and 50-day SMA: strong uptrend")
    elif price > tech.sma20:
        score += w.above_sma20
        reasoning.append("Price above 20-day SMA: short-term uptrend")
    elif price < tech.sma20 and price < tech.sma50:
        score += w.below_both_sma
        reasoning.append("Price below both moving averages: downtrend")

    if tech.macd_histogram > 0 and tech.macd > 0:
        score += w.macd_bullish
        reasoning.append("MACD histogram positive: bullish momentum confirmed")
    elif tech.macd_histogram < 0 and tech.macd < 0:
        score += w.macd_bearish
        reasoning.append("MACD histogram negative: bearish momentum")

    if tech.momentum > 5:
        score += w.momentum_strong
        reasoning.append(f"Strong 10-day momentum: +{tech.momentum:.1f}%")
    elif tech.momentum > 2:
        score += w.momentum_positive
        reasoning.append(f"Positive momentum: +{tech.momentum:.1f}%")
    elif tech.momentum < -5:
        score += w.momentum_weak
        reasoning.append(f"Weak momentum: {tech.momentum:.1f}%")

    if change_percent > 1:
        score += w.daily_gain
        reasoning.append(f"Up {change_percent:.1f}% on the last session")
    elif change_percent < -1:
        score += w.daily_loss
        reasoning.append(f"Down {abs(change_percent):.1f}% on the last session")

    score = _clamp(score, SIGNAL_CLAMP)
    return label_for_score(score), score, reasoning


def short_term_score(tech: Indicators, change_percent: float, weights: Optional[ShortTermWeights] = None) -> float:
    w = weights or DEFAULT_WEIGHTS.short_term
    score = w.base

    if tech.momentum > 5:
        score += w.momentum_strong
    elif tech.momentum > 2:
        score += w.momentum_positive
    elif tech.momentum > 0:
        score += w.momentum_slight
    elif tech.momentum < -5:
        score += w.momentum_weak
    elif tech.momentum < 0:
        score += w.momentum_slight_negative

    if tech.rsi < 30:
        score += w.rsi_oversold
    elif tech.rsi > 70:
        # riding the trend
        score += w.rsi_overbought
    elif tech.rsi > 50:
        score += w.rsi_above_mid

    score += w.macd_positive if tech.macd_histogram > 0 else w.macd_non_positive

    # volatility is opportunity on a short horizon
    if tech.volatility > 25:
        score += w.volatility_high
    elif tech.volatility > 15:
        score += w.volatility_moderate

    if change_percent > 1.5:
        score += w.daily_gain
    elif change_percent < -2:
        score += w.daily_drop_bounce

    return _clamp(score, HORIZON_CLAMP)


def long_term_score(
    tech: Indicators,
    price: float,
    mer: float,
    dividend_yield: float,
    weights: Optional[LongTermWeights] = None,
) -> float:
    w = weights or DEFAULT_WEIGHTS.long_term
    score = w.base

    score += w.above_sma50 if price > tech.sma50 else w.below_sma50
    if price > tech.sma20 and tech.sma20 > tech.sma50:
        score += w.sma_aligned

    if mer < 0.1:
        score += w.mer_very_low
    elif mer < 0.25:
        score += w.mer_low
    elif mer < 0.4:
        score += w.mer_moderate
    else:
        score += w.mer_high

    if dividend_yield > 4:
        score += w.yield_high
    elif dividend_yield > 2.5:
        score += w.yield_good
    elif dividend_yield > 1:
        score += w.yield_some

    if tech.volatility < 12:
        score += w.volatility_low
    elif tech.volatility < 20:
        score += w.volatility_moderate
    elif tech.volatility > 30:
        score += w.volatility_high

    if tech.momentum > 0:
        score += w.momentum_positive

    return _clamp(score, HORIZON_CLAMP)


def process_instrument(
    meta: InstrumentMetadata,
    history: Sequence[PricePoint],
    source: DataSource,
    weights: Optional[ScoringWeights] = None,
) -> ScoredInstrument:
    """Turn a fetched series into a ScoredInstrument. The only entry point the orchestrator uses."""
    w = weights or DEFAULT_WEIGHTS
    history = list(history)
    closes = [p.close for p in history]
    tech = ind.compute_indicators(closes)
    dow = ind.day_of_week_stats(history)

    last = history[-1] if history else None
    prev = history[-2] if len(history) > 1 else last
    price = last.close if last else 0.0
    previous_close = prev.close if prev and prev.close else price
    change = price - previous_close
    change_percent = change / previous_close * 100 if previous_close > 0 else 0.0
    volume = last.volume if last else 0.0

    signal, confidence, reasoning = generate_signal(tech, price, change_percent, w.signal)

    recent_volumes = [p.volume for p in history[-20:]]
    return ScoredInstrument(
        symbol=meta.symbol,
        provider_symbol=meta.provider_symbol,
        name=meta.name,
        category=meta.category,
        price=price,
        previous_close=previous_close,
        change=change,
        change_percent=change_percent,
        volume=volume,
        history=history,
        indicators=tech,
        short_term_score=short_term_score(tech, change_percent, w.short_term),
        long_term_score=long_term_score(tech, price, meta.mer, meta.dividend_yield, w.long_term),
        signal=signal,
        signal_confidence=confidence,
        signal_reasoning=reasoning,
        day_of_week=dow,
        best_day=ind.best_day(dow),
        mer=meta.mer,
        dividend_yield=meta.dividend_yield,
        description=meta.description,
        data_source=source,
        week_high_low=PriceRange(
            high=max((p.high for p in history), default=price),
            low=min((p.low for p in history), default=price),
        ),
        avg_volume=sum(recent_volumes) / len(recent_volumes) if recent_volumes else volume,
    )


def rank_by_weekday(instruments: Iterable[ScoredInstrument], day: str) -> List[ScoredInstrument]:
    """Instruments with samples on ``day``, best historical performers first."""
    def weekday_score(item: ScoredInstrument) -> float:
        stats = item.day_of_week[day]
        return stats.avg_return * 0.6 + (stats.win_rate * 100 - 50) * 0.4

    eligible = [i for i in instruments if day in i.day_of_week and i.day_of_week[day].sample_count > 0]
    return sorted(eligible, key=weekday_score, reverse=True)


def signal_counts(instruments: Iterable[ScoredInstrument]) -> Dict[str, int]:
    counts = Counter(i.signal for i in instruments)
    return {s.value: counts.get(s, 0) for s in Signal}

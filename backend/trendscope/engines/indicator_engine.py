"""
Trendscope — Indicator Library

Pure indicator functions over a bar sequence: RSI, ATR, EMA, EMA crossover
events, and volume trend. Every function is deterministic and returns a
neutral default on insufficient data instead of raising.

Uses the `ta` library for indicator calculations on pandas DataFrames.
"""

from __future__ import annotations

import math
from typing import Iterable, Optional

import numpy as np
import pandas as pd
from ta.momentum import RSIIndicator
from ta.trend import EMAIndicator
from ta.volatility import AverageTrueRange

from trendscope.models import OHLCV, EMAAlignment, IndicatorSnapshot

NEUTRAL_RSI = 50.0
EMA_PERIODS = (7, 50, 100)


# ──────────────────────────────────────────────
# Bar Hygiene
# ──────────────────────────────────────────────

def filter_valid_bars(bars: Iterable[OHLCV]) -> list[OHLCV]:
    """Drop malformed bars and return the rest in ascending timestamp order.

    A bar is malformed when high < low, the close is not positive, or any
    price is NaN. Duplicate timestamps keep the first occurrence.
    """
    seen = set()
    valid: list[OHLCV] = []
    for bar in sorted(bars, key=lambda b: b.timestamp):
        prices = (bar.open, bar.high, bar.low, bar.close)
        if any(math.isnan(p) for p in prices):
            continue
        if bar.high < bar.low or bar.close <= 0:
            continue
        if bar.timestamp in seen:
            continue
        seen.add(bar.timestamp)
        valid.append(bar)
    return valid


def bars_to_dataframe(bars: list[OHLCV]) -> pd.DataFrame:
    """Convert OHLCV bars to a pandas DataFrame indexed by timestamp."""
    data = {
        "timestamp": [b.timestamp for b in bars],
        "open": [b.open for b in bars],
        "high": [b.high for b in bars],
        "low": [b.low for b in bars],
        "close": [b.close for b in bars],
        "volume": [float(b.volume) for b in bars],
    }
    df = pd.DataFrame(data)
    df.set_index("timestamp", inplace=True)
    return df


def _last_or(series: pd.Series, default: float) -> float:
    value = series.iloc[-1] if len(series) else None
    if value is None or np.isnan(value) or np.isinf(value):
        return default
    return float(value)


# ──────────────────────────────────────────────
# Core Indicators
# ──────────────────────────────────────────────

def rsi(bars: list[OHLCV], period: int = 14) -> float:
    """Wilder RSI of the last bar. Neutral 50 with fewer than period+1 bars."""
    if len(bars) < period + 1:
        return NEUTRAL_RSI
    close = pd.Series([b.close for b in bars], dtype=float)
    return _last_or(RSIIndicator(close, window=period).rsi(), NEUTRAL_RSI)


def atr(bars: list[OHLCV], period: int = 14) -> float:
    """Wilder ATR of the last bar. Zero with fewer than period+1 bars."""
    if len(bars) < period + 1:
        return 0.0
    df = bars_to_dataframe(bars)
    series = AverageTrueRange(df["high"], df["low"], df["close"], window=period).average_true_range()
    return _last_or(series, 0.0)


def ema(bars: list[OHLCV], period: int) -> float:
    """EMA of the last close. Falls back to the first close when data is short."""
    if not bars:
        return 0.0
    if len(bars) < period:
        return float(bars[0].close)
    close = pd.Series([b.close for b in bars], dtype=float)
    return _last_or(EMAIndicator(close, window=period).ema_indicator(), float(bars[0].close))


def ema_series(closes: list[float], period: int) -> list[Optional[float]]:
    """EMA over a list of closes, same length as the input.

    Positions before ``period - 1`` are None.
    """
    if len(closes) < period:
        return [None] * len(closes)
    series = EMAIndicator(pd.Series(closes, dtype=float), window=period).ema_indicator()
    return [None if np.isnan(v) else float(v) for v in series]


# ──────────────────────────────────────────────
# EMA Alignment & Crossovers
# ──────────────────────────────────────────────

def ema_alignment(ema7: float, ema50: float, ema100: float) -> EMAAlignment:
    """Classify the ordering of the EMA(7/50/100) triple."""
    if ema7 > ema50 > ema100:
        return EMAAlignment.ALL_BULLISH
    if ema7 < ema50 < ema100:
        return EMAAlignment.ALL_BEARISH
    if ema7 > ema50:
        return EMAAlignment.SEVEN_OVER_50
    if ema7 > ema100:
        return EMAAlignment.SEVEN_OVER_100
    if ema50 > ema100:
        return EMAAlignment.FIFTY_OVER_100
    return EMAAlignment.MIXED


_CROSS_PAIRS = ((7, 50), (7, 100), (50, 100))


def ema_crossovers(bars: list[OHLCV]) -> list[str]:
    """Crossover events between the previous bar and the current bar.

    Only state transitions are reported. Two fast-above-slow bars in a row
    produce nothing; a flip from at-or-below to above produces
    ``"7above50"`` and so on.
    """
    slowest = max(EMA_PERIODS)
    if len(bars) < slowest + 1:
        return []

    closes = [b.close for b in bars]
    series = {p: ema_series(closes, p) for p in EMA_PERIODS}

    events = []
    for fast, slow in _CROSS_PAIRS:
        prev_fast, cur_fast = series[fast][-2], series[fast][-1]
        prev_slow, cur_slow = series[slow][-2], series[slow][-1]
        if None in (prev_fast, cur_fast, prev_slow, cur_slow):
            continue
        if prev_fast <= prev_slow and cur_fast > cur_slow:
            events.append(f"{fast}above{slow}")
        elif prev_fast >= prev_slow and cur_fast < cur_slow:
            events.append(f"{fast}below{slow}")
    return events


# ──────────────────────────────────────────────
# Volume
# ──────────────────────────────────────────────

def volume_trend(bars: list[OHLCV], period: int = 5) -> tuple[bool, float]:
    """Compare the latest ``period`` volumes with the ``period`` before them.

    Returns:
        (increasing, percent_change). ``(False, 0.0)`` when fewer than
        ``2 * period`` bars or the prior average is zero.
    """
    if len(bars) < period * 2:
        return False, 0.0

    recent = [b.volume for b in bars[-period:]]
    prior = [b.volume for b in bars[-2 * period:-period]]
    recent_avg = sum(recent) / period
    prior_avg = sum(prior) / period
    if prior_avg == 0:
        return recent_avg > 0, 0.0

    pct = (recent_avg - prior_avg) / prior_avg * 100
    return recent_avg > prior_avg, round(pct, 2)


def volume_ratio(bars: list[OHLCV], lookback: int = 20) -> float:
    """Last bar's volume relative to the mean of the preceding bars."""
    if len(bars) < 2:
        return 1.0
    history = [b.volume for b in bars[-lookback - 1:-1]]
    mean = sum(history) / len(history)
    if mean <= 0:
        return 1.0
    return bars[-1].volume / mean


# ──────────────────────────────────────────────
# Snapshot
# ──────────────────────────────────────────────

def compute_snapshot(bars: list[OHLCV]) -> IndicatorSnapshot:
    """Build the indicator snapshot for the last bar of ``bars``."""
    if not bars:
        return IndicatorSnapshot()

    last_close = bars[-1].close
    atr_value = atr(bars)
    ema7, ema50, ema100 = (ema(bars, p) for p in EMA_PERIODS)
    increasing, trend_pct = volume_trend(bars)

    return IndicatorSnapshot(
        rsi=rsi(bars),
        atr=atr_value,
        atr_pct=atr_value / last_close * 100 if last_close > 0 else 0.0,
        ema7=ema7,
        ema50=ema50,
        ema100=ema100,
        ema_alignment=ema_alignment(ema7, ema50, ema100),
        ema_crossovers=ema_crossovers(bars),
        volume_increasing=increasing,
        volume_trend_pct=trend_pct,
        volume_ratio=volume_ratio(bars),
    )

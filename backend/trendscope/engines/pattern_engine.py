"""
Trendscope — Pattern Detection Engine

Slides a bar window across a series, asks the trendline engine for channel
structure at each position, and synthesizes Pattern records.

Pattern families:
  Triangle:  Ascending / Descending (trend-aligned EMAs), Symmetrical (flat)
  Flag:      Bull / Bear (sloped channel, EMAs not fully aligned)
  Channel:   Ascending / Descending (channel against the EMA stack)

Deterministic analysis: an identical bar window always yields an identical
pattern apart from ``scanned_at``.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Callable, Optional

import numpy as np
import structlog

from trendscope.config import get_settings
from trendscope.engines import indicator_engine as ind
from trendscope.engines.confidence_engine import ConfidenceEngine
from trendscope.engines.trendline_engine import MIN_CHANNEL_BARS, TrendlineEngine
from trendscope.models import (
    OHLCV,
    Channel,
    ChannelPattern,
    ChannelType,
    Direction,
    EMAAlignment,
    FlagPattern,
    Pattern,
    TrianglePattern,
)

log = structlog.get_logger(__name__)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def channel_direction(channel_type: ChannelType) -> Direction:
    """Ascending -> bullish, descending -> bearish, anything else -> neutral."""
    if channel_type == ChannelType.ASCENDING:
        return Direction.BULLISH
    if channel_type == ChannelType.DESCENDING:
        return Direction.BEARISH
    return Direction.NEUTRAL


def classify_pattern(channel_type: ChannelType, alignment: EMAAlignment) -> tuple[str, str]:
    """Pattern name and family for a channel type and EMA alignment.

    Returns:
        (pattern_type, family) where family is "channel", "flag" or "triangle".
    """
    if channel_type == ChannelType.ASCENDING:
        if alignment == EMAAlignment.ALL_BULLISH:
            return "Ascending Triangle", "triangle"
        if alignment == EMAAlignment.ALL_BEARISH:
            return "Ascending Channel", "channel"
        return "Bull Flag", "flag"
    if channel_type == ChannelType.DESCENDING:
        if alignment == EMAAlignment.ALL_BEARISH:
            return "Descending Triangle", "triangle"
        if alignment == EMAAlignment.ALL_BULLISH:
            return "Descending Channel", "channel"
        return "Bear Flag", "flag"
    return "Symmetrical Triangle", "triangle"


class PatternEngine:
    """Sliding-window channel pattern detector.

    Usage:
        engine = PatternEngine()
        patterns = engine.detect(bars, symbol="AAPL", timeframe="1h")
    """

    def __init__(
        self,
        trendline_engine: Optional[TrendlineEngine] = None,
        confidence_engine: Optional[ConfidenceEngine] = None,
        window_size: Optional[int] = None,
        step: Optional[int] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        settings = get_settings()
        self.trendlines = trendline_engine or TrendlineEngine()
        self.confidence = confidence_engine or ConfidenceEngine()
        self.min_window = max(MIN_CHANNEL_BARS, settings.pattern_min_window)
        self.window_size = max(self.min_window, window_size or settings.pattern_window)
        self.step = max(1, step or settings.pattern_step)
        self.clock = clock or utc_now

        self.target_distance_multiple = settings.target_distance_multiple
        self.target_atr_multiple = settings.target_atr_multiple
        self.target_min_move_pct = settings.target_min_move_pct
        self.stop_buffer_pct = settings.stop_buffer_pct

    # ──────────────────────────────────────────
    # Public API
    # ──────────────────────────────────────────

    def detect(
        self,
        bars: list[OHLCV],
        symbol: str = "",
        timeframe: str = "1d",
    ) -> list[Pattern]:
        """Detect channel-based patterns across every window position.

        Args:
            bars: OHLCV history in any order; malformed bars are dropped.
            symbol: Ticker recorded on each pattern.
            timeframe: Timeframe of ``bars``.

        Returns:
            One pattern per qualifying window, oldest first. Empty when fewer
            than 7 valid bars are supplied.
        """
        valid = ind.filter_valid_bars(bars)
        if len(valid) < self.min_window:
            log.debug("pattern.insufficient_data", symbol=symbol, timeframe=timeframe, bars=len(valid))
            return []

        window_size = max(self.min_window, min(self.window_size, len(valid)))
        scanned_at = self.clock()

        # windows are anchored at the newest bar so the latest one is always scanned
        ends = range(len(valid), window_size - 1, -self.step)

        patterns: list[Pattern] = []
        for end in reversed(ends):
            pattern = self.detect_window(valid[:end], window_size, symbol, timeframe, scanned_at)
            if pattern is not None:
                patterns.append(pattern)

        log.info(
            "pattern.detect_complete",
            symbol=symbol,
            timeframe=timeframe,
            bars=len(valid),
            window=window_size,
            patterns=len(patterns),
        )
        return patterns

    def detect_window(
        self,
        history: list[OHLCV],
        window_size: int,
        symbol: str = "",
        timeframe: str = "1d",
        scanned_at: Optional[datetime] = None,
    ) -> Optional[Pattern]:
        """Build a pattern for the window ending at the last bar of ``history``.

        Indicators see the whole ``history`` prefix (no look-ahead); the
        channel is fitted on the trailing ``window_size`` bars only.
        """
        window = history[-window_size:]
        if len(window) < self.min_window:
            return None

        snapshot = ind.compute_snapshot(history)
        channel = self.trendlines.identify_channel(window, atr_value=snapshot.atr)
        if channel is None or channel.channel_type == ChannelType.NONE:
            return None

        direction = channel_direction(channel.channel_type)
        pattern_type, family = classify_pattern(channel.channel_type, snapshot.ema_alignment)
        entry = window[-1].close
        target, target_source = self.compute_target(entry, direction, channel, snapshot.atr)
        stop = self.compute_stop(entry, direction, channel)
        confidence = self.confidence.score(snapshot, channel.trendlines).total
        created_at = window[-1].timestamp

        base = dict(
            id=self._pattern_id(symbol, timeframe, created_at, pattern_type),
            symbol=symbol,
            timeframe=timeframe,
            pattern_type=pattern_type,
            direction=direction,
            channel_type=channel.channel_type,
            entry_price=entry,
            target_price=target,
            stop_loss=stop,
            confidence_score=confidence,
            support_level=channel.support_price,
            resistance_level=channel.resistance_price,
            indicators=snapshot,
            created_at=created_at,
            scanned_at=scanned_at or self.clock(),
            notes=f"Suggested PT ({target_source})",
        )

        if family == "channel":
            return ChannelPattern(
                **base,
                channel_width=channel.width,
                touch_points=channel.touch_points,
                established=channel.established,
            )
        if family == "flag":
            first = window[0].close
            return FlagPattern(
                **base,
                pole_change_pct=(entry - first) / first * 100 if first else 0.0,
                flag_slope=(channel.support_line.slope + channel.resistance_line.slope) / 2,
            )
        return TrianglePattern(
            **base,
            apex_index=self._apex_index(channel),
            convergence=self._convergence(channel),
        )

    # ──────────────────────────────────────────
    # Price Levels
    # ──────────────────────────────────────────

    def compute_target(
        self,
        entry: float,
        direction: Direction,
        channel: Channel,
        atr_value: float,
    ) -> tuple[float, str]:
        """Profit target and the name of the rule that produced it.

        The nearest level beyond entry is projected at 1.5x the distance to
        it; without one, 7x ATR is used. Either way the move is floored at
        the minimum percent move.
        """
        min_move = entry * self.target_min_move_pct / 100

        if direction == Direction.BEARISH:
            candidates = [lv.price for lv in channel.support_levels if lv.price < entry]
            if channel.support_price < entry:
                candidates.append(channel.support_price)
            if candidates:
                nearest = max(candidates)
                target = entry - (entry - nearest) * self.target_distance_multiple
                source = "support level"
            else:
                target = entry - atr_value * self.target_atr_multiple
                source = "ATR projection"
            return max(0.0, min(target, entry - min_move)), source

        candidates = [lv.price for lv in channel.resistance_levels if lv.price > entry]
        if channel.resistance_price > entry:
            candidates.append(channel.resistance_price)
        if candidates:
            nearest = min(candidates)
            target = entry + (nearest - entry) * self.target_distance_multiple
            source = "resistance level"
        else:
            target = entry + atr_value * self.target_atr_multiple
            source = "ATR projection"
        return max(target, entry + min_move), source

    def compute_stop(
        self,
        entry: float,
        direction: Direction,
        channel: Channel,
    ) -> Optional[float]:
        """Stop 1% beyond the nearest protective support/resistance, if any."""
        buffer = self.stop_buffer_pct / 100

        if direction == Direction.BULLISH:
            candidates = [channel.support_price] + [lv.price for lv in channel.support_levels]
            below = [p for p in candidates if 0 < p < entry]
            return max(below) * (1 - buffer) if below else None

        if direction == Direction.BEARISH:
            candidates = [channel.resistance_price] + [lv.price for lv in channel.resistance_levels]
            above = [p for p in candidates if p > entry]
            return min(above) * (1 + buffer) if above else None

        return None

    # ──────────────────────────────────────────
    # Private Helpers
    # ──────────────────────────────────────────

    @staticmethod
    def _pattern_id(symbol: str, timeframe: str, created_at: datetime, pattern_type: str) -> str:
        slug = pattern_type.lower().replace(" ", "_")
        return f"{symbol}_{timeframe}_{int(created_at.timestamp())}_{slug}"

    @staticmethod
    def _apex_index(channel: Channel) -> Optional[float]:
        """Bar index where the two lines meet; None when parallel."""
        s, r = channel.support_line, channel.resistance_line
        if np.isclose(s.slope, r.slope):
            return None
        return (r.intercept - s.intercept) / (s.slope - r.slope)

    @staticmethod
    def _convergence(channel: Channel) -> float:
        """Current channel width divided by the width at window start."""
        start_width = channel.resistance_line.price_at(0) - channel.support_line.price_at(0)
        if start_width <= 0:
            return 1.0
        return channel.width / start_width


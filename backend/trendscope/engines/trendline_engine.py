"""
Trendscope — Trendline & Channel Identifier

Regression-based support/resistance lines and channel classification.

Swing highs/lows are located first, then a least-squares line is fitted
through each side and projected to the current bar. Swings are also
clustered (tolerance = ATR x 0.5) into horizontal pivot levels that the
pattern detector and the confirmation engine use for targets.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

import numpy as np
import structlog

from trendscope.config import get_settings
from trendscope.engines import indicator_engine as ind
from trendscope.models import (
    OHLCV,
    Channel,
    ChannelType,
    Direction,
    PriceLevel,
    Trendline,
    TrendlineSide,
)

log = structlog.get_logger(__name__)

MIN_CHANNEL_BARS = 7
FALLBACK_TOLERANCE_PCT = 0.005   # used when ATR is zero


class TrendlineEngine:
    """Fits support/resistance trendlines and classifies channels.

    Usage:
        engine = TrendlineEngine()
        channel = engine.identify_channel(bars)
    """

    def __init__(
        self,
        swing_order: Optional[int] = None,
        slope_threshold: Optional[float] = None,
        cluster_atr_multiple: Optional[float] = None,
    ):
        settings = get_settings()
        self.swing_order = swing_order or settings.swing_order
        self.slope_threshold = slope_threshold if slope_threshold is not None else settings.slope_threshold
        self.cluster_atr_multiple = (
            cluster_atr_multiple if cluster_atr_multiple is not None else settings.cluster_atr_multiple
        )

    # ──────────────────────────────────────────
    # Public API
    # ──────────────────────────────────────────

    def identify_channel(
        self,
        bars: list[OHLCV],
        atr_value: Optional[float] = None,
    ) -> Optional[Channel]:
        """Identify the channel formed by the swing structure of ``bars``.

        Args:
            bars: Ascending bar window (at least 7 bars).
            atr_value: ATR to derive the touch/cluster tolerance from.
                Computed from ``bars`` when omitted.

        Returns:
            A Channel (whose type may be ``none``), or None when either side
            lacks the two swings needed for a line.
        """
        if len(bars) < MIN_CHANNEL_BARS:
            return None

        if atr_value is None:
            atr_value = ind.atr(bars)
        tolerance = self._tolerance(bars, atr_value)

        h = np.array([b.high for b in bars])
        l = np.array([b.low for b in bars])
        swing_highs = self.find_swings(h, mode="high", order=self.swing_order)
        swing_lows = self.find_swings(l, mode="low", order=self.swing_order)

        if len(swing_highs) < 2 or len(swing_lows) < 2:
            return None

        support = self.fit_trendline(swing_lows, TrendlineSide.SUPPORT, bars, tolerance)
        resistance = self.fit_trendline(swing_highs, TrendlineSide.RESISTANCE, bars, tolerance)
        if support is None or resistance is None:
            return None

        channel_type = self.classify_channel(support.slope, resistance.slope, self.slope_threshold)
        touch_points = support.touch_count + resistance.touch_count
        log.debug(
            "trendline.channel",
            channel_type=channel_type.value,
            support_slope=round(support.slope, 4),
            resistance_slope=round(resistance.slope, 4),
            touch_points=touch_points,
        )

        return Channel(
            channel_type=channel_type,
            support_line=support,
            resistance_line=resistance,
            strength=(support.strength + resistance.strength) / 2,
            touch_points=touch_points,
            established=touch_points >= 3,
            support_levels=self.cluster_levels(
                [v for _, v in swing_lows], tolerance, TrendlineSide.SUPPORT
            ),
            resistance_levels=self.cluster_levels(
                [v for _, v in swing_highs], tolerance, TrendlineSide.RESISTANCE
            ),
        )

    def find_levels(
        self,
        bars: list[OHLCV],
        atr_value: Optional[float] = None,
    ) -> list[PriceLevel]:
        """Clustered support and resistance pivot levels, sorted by price."""
        if len(bars) < MIN_CHANNEL_BARS:
            return []
        if atr_value is None:
            atr_value = ind.atr(bars)
        tolerance = self._tolerance(bars, atr_value)

        h = np.array([b.high for b in bars])
        l = np.array([b.low for b in bars])
        highs = [v for _, v in self.find_swings(h, mode="high", order=self.swing_order)]
        lows = [v for _, v in self.find_swings(l, mode="low", order=self.swing_order)]

        levels = self.cluster_levels(lows, tolerance, TrendlineSide.SUPPORT)
        levels += self.cluster_levels(highs, tolerance, TrendlineSide.RESISTANCE)
        return sorted(levels, key=lambda lv: lv.price)

    def fit_trendline(
        self,
        points: list[tuple[int, float]],
        side: TrendlineSide,
        bars: list[OHLCV],
        tolerance: float,
    ) -> Optional[Trendline]:
        """Least-squares line through swing points, scored against ``bars``.

        A touch is a bar whose low (support) or high (resistance) lies within
        ``tolerance`` of the line. A bounce is a touch whose next close stays
        on the correct side of the line.
        """
        if len(points) < 2:
            return None
        xs = np.array([idx for idx, _ in points], dtype=float)
        ys = np.array([val for _, val in points], dtype=float)
        if xs[0] == xs[-1]:
            return None

        slope, intercept = np.polyfit(xs, ys, 1)
        slope = float(slope)
        intercept = float(intercept)
        start_index = int(xs[0])
        end_index = int(xs[-1])

        touches = 0
        eligible = 0
        bounces = 0
        for i in range(start_index, len(bars)):
            line = slope * i + intercept
            price = bars[i].low if side == TrendlineSide.SUPPORT else bars[i].high
            if abs(price - line) > tolerance:
                continue
            touches += 1
            if i + 1 >= len(bars):
                continue
            eligible += 1
            next_line = slope * (i + 1) + intercept
            next_close = bars[i + 1].close
            if side == TrendlineSide.SUPPORT and next_close > next_line:
                bounces += 1
            elif side == TrendlineSide.RESISTANCE and next_close < next_line:
                bounces += 1

        bounce_pct = bounces / eligible * 100 if eligible else 0.0
        current_index = len(bars) - 1

        return Trendline(
            side=side,
            slope=slope,
            intercept=intercept,
            start_index=start_index,
            end_index=end_index,
            start_price=slope * start_index + intercept,
            end_price=slope * end_index + intercept,
            current_price=slope * current_index + intercept,
            strength=self.trendline_strength(touches, bounce_pct, end_index - start_index),
            touch_count=touches,
            bounce_percentage=bounce_pct,
        )

    # ──────────────────────────────────────────
    # Pure Helpers
    # ──────────────────────────────────────────

    @staticmethod
    def classify_channel(
        support_slope: float,
        resistance_slope: float,
        threshold: float = 0.1,
    ) -> ChannelType:
        """Channel type from the slope pair.

        Both flat -> horizontal, both rising -> ascending, both falling ->
        descending, anything else (diverging, one flat) -> none.
        """
        if abs(support_slope) < threshold and abs(resistance_slope) < threshold:
            return ChannelType.HORIZONTAL
        if support_slope > threshold and resistance_slope > threshold:
            return ChannelType.ASCENDING
        if support_slope < -threshold and resistance_slope < -threshold:
            return ChannelType.DESCENDING
        return ChannelType.NONE

    @staticmethod
    def trendline_strength(touches: int, bounce_pct: float, length: int) -> float:
        """Weighted blend of touch count, bounce reliability, and line length."""
        touch_factor = min(1.0, touches / 5)
        bounce_factor = max(0.0, min(1.0, bounce_pct / 100))
        length_factor = min(1.0, max(0, length) / 30)
        return touch_factor * 0.4 + bounce_factor * 0.4 + length_factor * 0.2

    @staticmethod
    def find_swings(data: np.ndarray, mode: str = "high", order: int = 1) -> list[tuple[int, float]]:
        """Find swing highs or lows. Returns list of (index, value).

        A swing strictly exceeds every neighbour within ``order`` bars on
        each side (above for highs, below for lows).
        """
        swings = []
        for i in range(order, len(data) - order):
            neighbours = [data[i - j] for j in range(1, order + 1)] + \
                         [data[i + j] for j in range(1, order + 1)]
            if mode == "high":
                if all(data[i] > n for n in neighbours):
                    swings.append((i, float(data[i])))
            else:
                if all(data[i] < n for n in neighbours):
                    swings.append((i, float(data[i])))
        return swings

    @staticmethod
    def cluster_levels(
        values: list[float],
        tolerance: float,
        side: TrendlineSide,
    ) -> list[PriceLevel]:
        """Cluster nearby swing prices and count touches per cluster."""
        if not values:
            return []

        sorted_values = sorted(values)
        clusters: list[list[float]] = [[sorted_values[0]]]
        for value in sorted_values[1:]:
            if abs(value - clusters[-1][-1]) <= tolerance:
                clusters[-1].append(value)
            else:
                clusters.append([value])

        return [
            PriceLevel(price=float(np.mean(c)), touches=len(c), side=side)
            for c in clusters
        ]

    def _tolerance(self, bars: list[OHLCV], atr_value: float) -> float:
        if atr_value > 0:
            return atr_value * self.cluster_atr_multiple
        mean_close = float(np.mean([b.close for b in bars])) if bars else 0.0
        return mean_close * FALLBACK_TOLERANCE_PCT


# ──────────────────────────────────────────────
# Channel Breakouts
# ──────────────────────────────────────────────

BREAKOUT_ATR_MULTIPLE = 0.5


@dataclass(frozen=True)
class ChannelBreakout:
    """Close beyond a channel boundary in the trade direction.

    ``strength`` is the distance past the boundary in units of ATR x 0.5.
    """
    is_breakout: bool = False
    strength: float = 0.0

    def to_dict(self) -> dict:
        return {"is_breakout": self.is_breakout, "strength": round(self.strength, 4)}


def price_breakout(
    price: float,
    direction: Direction,
    channel: Optional[Channel],
    atr_value: float = 0.0,
) -> ChannelBreakout:
    """Check one price against a channel's projected boundaries.

    Only established channels can be broken. Bullish breaks close above the
    resistance line, bearish ones below the support line. Neutral patterns
    never break out.
    """
    if channel is None or not channel.established or channel.channel_type == ChannelType.NONE:
        return ChannelBreakout()

    threshold = atr_value * BREAKOUT_ATR_MULTIPLE
    if threshold <= 0:
        threshold = price * FALLBACK_TOLERANCE_PCT

    if direction == Direction.BULLISH and price > channel.resistance_price:
        return ChannelBreakout(True, (price - channel.resistance_price) / threshold)
    if direction == Direction.BEARISH and price < channel.support_price:
        return ChannelBreakout(True, (channel.support_price - price) / threshold)
    return ChannelBreakout()


def detect_channel_breakout(
    bars: list[OHLCV],
    direction: Direction,
    channel: Optional[Channel],
    atr_value: Optional[float] = None,
) -> ChannelBreakout:
    """Whether the latest close of ``bars`` breaks ``channel`` in ``direction``.

    Args:
        bars: Primary-timeframe bars; malformed bars are dropped.
        direction: Trade direction of the pattern.
        channel: Channel to test, typically from a higher timeframe.
        atr_value: ATR of ``bars``; computed when omitted.

    Returns:
        ChannelBreakout; no breakout when fewer than 7 valid bars.
    """
    valid = ind.filter_valid_bars(bars)
    if len(valid) < MIN_CHANNEL_BARS:
        return ChannelBreakout()
    if atr_value is None:
        atr_value = ind.atr(valid)
    return price_breakout(valid[-1].close, direction, channel, atr_value)

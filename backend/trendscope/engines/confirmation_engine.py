"""
Trendscope — Multi-Timeframe Confirmation Engine

Cross-checks a pattern against channels on one or two coarser timeframes.

Per higher timeframe (level 1 = next coarser, level 2 = the one after):
  compatible direction   -> confirmed, confidence x1.3 (level 1) / x1.4 (level 2)
  entry breaks channel   -> additionally x1.25 when compatible and the channel is established
  opposing direction     -> confidence x0.7 (level 1) / x0.6 (level 2)
  entry inside channel   -> confirmed (optional override, support x0.98 .. resistance x1.02)

On confirmation the target is blended toward clustered pivot levels of the
confirming timeframes. The score is clamped to [0, 100] after every step.
The input pattern is never mutated; an enriched copy is returned.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional, Sequence

import structlog

from trendscope.config import get_settings
from trendscope.engines import indicator_engine as ind
from trendscope.engines.confidence_engine import clamp_confidence
from trendscope.engines.pattern_engine import channel_direction
from trendscope.engines.trendline_engine import TrendlineEngine, price_breakout
from trendscope.models import (
    OHLCV,
    Channel,
    ChannelType,
    Direction,
    Pattern,
    PriceLevel,
    TrendlineSide,
)

log = structlog.get_logger(__name__)


# ──────────────────────────────────────────────
# Timeframe Hierarchy
# ──────────────────────────────────────────────

TIMEFRAME_HIERARCHY: dict[str, list[str]] = {
    "1m": ["5m", "15m"],
    "5m": ["15m", "1h"],
    "15m": ["1h", "4h"],
    "30m": ["1h", "4h"],
    "1h": ["4h", "1d"],
    "4h": ["1d", "1wk"],
    "1d": ["1wk", "1mo"],
    "1wk": ["1mo"],
    "1mo": [],
}

_WEEKLY = {"1wk", "1w", "weekly"}
_DAILY = {"1d", "daily"}


def higher_timeframes(timeframe: str, depth: int = 2) -> list[str]:
    """Coarser timeframes used to confirm ``timeframe``, nearest first."""
    return TIMEFRAME_HIERARCHY.get(timeframe, [])[:depth]


# ──────────────────────────────────────────────
# Rubric Functions
# ──────────────────────────────────────────────

def is_direction_compatible(pattern_direction: Direction, htf_direction: Direction) -> bool:
    """Same direction, or either side neutral."""
    return (
        pattern_direction == htf_direction
        or pattern_direction == Direction.NEUTRAL
        or htf_direction == Direction.NEUTRAL
    )


def confirmation_multiplier(level: int) -> float:
    return 1.3 if level <= 1 else 1.4


def counter_trend_multiplier(level: int) -> float:
    return 0.7 if level <= 1 else 0.6


def breakout_multiplier() -> float:
    """Extra boost when entry breaks a compatible higher-timeframe channel."""
    return 1.25


def apply_multiplier(score: float, multiplier: float) -> float:
    """Scale a confidence score and clamp the result."""
    return clamp_confidence(score * multiplier)


def is_inside_channel(
    price: float,
    channel: Channel,
    lower_band: float = 0.98,
    upper_band: float = 1.02,
) -> bool:
    """True when ``price`` sits within the widened channel bounds."""
    return channel.support_price * lower_band < price < channel.resistance_price * upper_band


def timeframe_rank_weight(timeframe: str) -> int:
    """Pivot weight by timeframe: weekly 3, daily 2, everything else 1."""
    if timeframe in _WEEKLY:
        return 3
    if timeframe in _DAILY:
        return 2
    return 1


def blend_weight(confirming_count: int) -> float:
    """Share of the higher-timeframe target in the blended target."""
    return min(0.3 + 0.2 * confirming_count, 0.7)


def weighted_level_target(
    levels: Sequence[tuple[float, str]],
    entry: float,
    max_levels: int = 3,
) -> Optional[float]:
    """Timeframe-weighted mean of the ``max_levels`` levels nearest ``entry``.

    Args:
        levels: (price, timeframe) pairs already filtered to the trade side.
        entry: Pattern entry price.
        max_levels: How many of the nearest levels to use.

    Returns:
        Weighted target, or None when no levels are given.
    """
    nearest = sorted(levels, key=lambda lv: abs(lv[0] - entry))[:max_levels]
    total_weight = sum(timeframe_rank_weight(tf) for _, tf in nearest)
    if total_weight == 0:
        return None
    return sum(price * timeframe_rank_weight(tf) for price, tf in nearest) / total_weight


def blend_target(prior_target: float, htf_target: float, confirming_count: int) -> float:
    w = blend_weight(confirming_count)
    return prior_target * (1 - w) + htf_target * w


# ──────────────────────────────────────────────
# Engine
# ──────────────────────────────────────────────

@dataclass
class HigherTimeframeContext:
    """Channel and pivot levels of one coarser timeframe."""
    timeframe: str
    channel: Optional[Channel] = None
    levels: list[PriceLevel] = field(default_factory=list)


class ConfirmationEngine:
    """Applies higher-timeframe confirmation to patterns.

    Usage:
        engine = ConfirmationEngine()
        ctx = engine.build_context("1d", daily_bars)
        confirmed = engine.confirm(pattern, [ctx])
    """

    def __init__(
        self,
        trendline_engine: Optional[TrendlineEngine] = None,
        inside_channel_override: Optional[bool] = None,
        context_window: int = 50,
    ):
        settings = get_settings()
        self.trendlines = trendline_engine or TrendlineEngine()
        self.inside_channel_override = (
            inside_channel_override
            if inside_channel_override is not None
            else settings.confirmation_inside_channel_override
        )
        self.context_window = context_window

    def build_context(self, timeframe: str, bars: list[OHLCV]) -> HigherTimeframeContext:
        """Fit the channel and pivot levels for a higher-timeframe series."""
        valid = ind.filter_valid_bars(bars)[-self.context_window:]
        atr_value = ind.atr(valid)
        return HigherTimeframeContext(
            timeframe=timeframe,
            channel=self.trendlines.identify_channel(valid, atr_value=atr_value),
            levels=self.trendlines.find_levels(valid, atr_value=atr_value),
        )

    def confirm(
        self,
        pattern: Pattern,
        contexts: Sequence[HigherTimeframeContext],
    ) -> Pattern:
        """Return an enriched copy of ``pattern`` after cross-checking it.

        Args:
            pattern: Pattern detected on the primary timeframe.
            contexts: One or two higher-timeframe contexts, nearest first.

        Returns:
            Copy with updated confidence, target, and confirmation flags.
        """
        score = pattern.confidence_score
        confirmed = pattern.higher_timeframe_confirmed
        confirming = list(pattern.confirming_timeframes)
        details = dict(pattern.confirmation_details)
        notes = pattern.notes
        entry = pattern.entry_price

        for level, ctx in enumerate(contexts[:2], start=1):
            channel = ctx.channel
            if channel is None:
                details[ctx.timeframe] = "skipped"
                continue

            outcome = "skipped"
            if channel.channel_type != ChannelType.NONE:
                htf_direction = channel_direction(channel.channel_type)
                if is_direction_compatible(pattern.direction, htf_direction):
                    score = apply_multiplier(score, confirmation_multiplier(level))
                    outcome = "compatible"
                    notes = f"Suggested PT ({ctx.timeframe} confirmation)"
                    breakout = price_breakout(entry, pattern.direction, channel, pattern.indicators.atr)
                    if breakout.is_breakout:
                        score = apply_multiplier(score, breakout_multiplier())
                        outcome = "breakout"
                        notes = f"Suggested PT ({ctx.timeframe} breakout)"
                else:
                    score = apply_multiplier(score, counter_trend_multiplier(level))
                    outcome = "counter_trend"
                    notes = "Suggested PT (counter-trend)"

            if (
                outcome not in ("compatible", "breakout")
                and self.inside_channel_override
                and is_inside_channel(entry, channel)
            ):
                outcome = "inside_channel"
                notes = f"Suggested PT ({ctx.timeframe} channel)"

            details[ctx.timeframe] = outcome
            if outcome in ("compatible", "breakout", "inside_channel"):
                confirmed = True
                if ctx.timeframe not in confirming:
                    confirming.append(ctx.timeframe)
            score = clamp_confidence(score)

        target = pattern.target_price
        if confirmed and confirming:
            target = self._recompute_target(pattern, contexts, confirming)

        log.debug(
            "confirmation.applied",
            pattern_id=pattern.id,
            before=round(pattern.confidence_score, 2),
            after=round(score, 2),
            confirmed=confirmed,
            confirming=confirming,
        )

        return pattern.model_copy(update={
            "confidence_score": clamp_confidence(score),
            "higher_timeframe_confirmed": confirmed,
            "confirming_timeframes": confirming,
            "confirmation_details": details,
            "target_price": target,
            "notes": notes,
        })

    def confirm_batch(
        self,
        patterns: Sequence[Pattern],
        contexts: Sequence[HigherTimeframeContext],
    ) -> list[Pattern]:
        """Confirm many patterns against the same higher-timeframe contexts."""
        return [self.confirm(p, contexts) for p in patterns]

    # ──────────────────────────────────────────
    # Private Helpers
    # ──────────────────────────────────────────

    @staticmethod
    def _recompute_target(
        pattern: Pattern,
        contexts: Sequence[HigherTimeframeContext],
        confirming: list[str],
    ) -> float:
        entry = pattern.entry_price
        bearish = pattern.direction == Direction.BEARISH

        candidates: list[tuple[float, str]] = []
        for ctx in contexts:
            if ctx.timeframe not in confirming:
                continue
            for lv in ctx.levels:
                if bearish and lv.side == TrendlineSide.SUPPORT and lv.price < entry:
                    candidates.append((lv.price, ctx.timeframe))
                elif not bearish and lv.side == TrendlineSide.RESISTANCE and lv.price > entry:
                    candidates.append((lv.price, ctx.timeframe))

        htf_target = weighted_level_target(candidates, entry)
        if htf_target is None:
            return pattern.target_price
        return blend_target(pattern.target_price, htf_target, len(confirming))

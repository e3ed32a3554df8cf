"""
Trendscope — Confidence Scorer

Additive rubric from a base of 50, clamped to [0, 100]. Each term is a
standalone function so it can be audited and recalibrated on its own:

  RSI extremity        +15 / +7
  Volume surge         +15 / +7
  ATR elevation        +15 / +7
  EMA alignment        +15 / +7
  Trendline strength   +15 / +10 / +5   (avg > 0.7 / 0.5 / 0.3)
  Bounce reliability   +15 / +10 / +5   (avg >= 75 / 60 / 50 %)
"""

from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Sequence

from trendscope.models import EMAAlignment, IndicatorSnapshot, Trendline

BASE_SCORE = 50.0
MIN_SCORE = 0.0
MAX_SCORE = 100.0


# ──────────────────────────────────────────────
# Rubric Terms
# ──────────────────────────────────────────────

def rsi_extremity_points(rsi: float) -> float:
    if rsi < 30 or rsi > 70:
        return 15.0
    if rsi < 40 or rsi > 60:
        return 7.0
    return 0.0


def volume_surge_points(volume_ratio: float) -> float:
    """Points for the last bar's volume relative to its trailing mean."""
    if volume_ratio > 2.0:
        return 15.0
    if volume_ratio > 1.5:
        return 7.0
    return 0.0


def atr_elevation_points(atr_pct: float) -> float:
    """Points for ATR expressed as a percent of the last close."""
    if atr_pct > 2.0:
        return 15.0
    if atr_pct > 1.0:
        return 7.0
    return 0.0


def ema_alignment_points(alignment: EMAAlignment) -> float:
    if alignment in (EMAAlignment.ALL_BULLISH, EMAAlignment.ALL_BEARISH):
        return 15.0
    if alignment in (EMAAlignment.SEVEN_OVER_50, EMAAlignment.SEVEN_OVER_100):
        return 7.0
    return 0.0


def trendline_strength_points(avg_strength: float) -> float:
    if avg_strength > 0.7:
        return 15.0
    if avg_strength > 0.5:
        return 10.0
    if avg_strength > 0.3:
        return 5.0
    return 0.0


def bounce_reliability_points(avg_bounce_pct: float) -> float:
    if avg_bounce_pct >= 75:
        return 15.0
    if avg_bounce_pct >= 60:
        return 10.0
    if avg_bounce_pct >= 50:
        return 5.0
    return 0.0


def clamp_confidence(score: float) -> float:
    """Clamp a confidence score into [0, 100]."""
    return max(MIN_SCORE, min(MAX_SCORE, score))


# ──────────────────────────────────────────────
# Scorer
# ──────────────────────────────────────────────

@dataclass
class ConfidenceBreakdown:
    """Per-term contributions and the clamped total."""
    rsi: float = 0.0
    volume: float = 0.0
    atr: float = 0.0
    ema: float = 0.0
    trendline_strength: float = 0.0
    bounce_reliability: float = 0.0
    total: float = BASE_SCORE

    def to_dict(self) -> dict:
        return asdict(self)


class ConfidenceEngine:
    """Combines indicator values and trendline metadata into one score.

    Usage:
        engine = ConfidenceEngine()
        breakdown = engine.score(snapshot, channel.trendlines)
        confidence = breakdown.total
    """

    def score(
        self,
        snapshot: IndicatorSnapshot,
        trendlines: Sequence[Trendline],
    ) -> ConfidenceBreakdown:
        """Score a pattern candidate.

        Args:
            snapshot: Indicators for the last bar of the window.
            trendlines: Lines backing the pattern; empty means no line terms.

        Returns:
            ConfidenceBreakdown whose ``total`` is always within [0, 100].
        """
        if trendlines:
            avg_strength = sum(t.strength for t in trendlines) / len(trendlines)
            avg_bounce = sum(t.bounce_percentage for t in trendlines) / len(trendlines)
        else:
            avg_strength = 0.0
            avg_bounce = 0.0

        breakdown = ConfidenceBreakdown(
            rsi=rsi_extremity_points(snapshot.rsi),
            volume=volume_surge_points(snapshot.volume_ratio),
            atr=atr_elevation_points(snapshot.atr_pct),
            ema=ema_alignment_points(snapshot.ema_alignment),
            trendline_strength=trendline_strength_points(avg_strength),
            bounce_reliability=bounce_reliability_points(avg_bounce),
        )
        breakdown.total = clamp_confidence(
            BASE_SCORE
            + breakdown.rsi
            + breakdown.volume
            + breakdown.atr
            + breakdown.ema
            + breakdown.trendline_strength
            + breakdown.bounce_reliability
        )
        return breakdown

"""
Trendscope — Pattern Detector Tests

Sliding-window detection, pattern classification, price levels,
insufficient data and idempotence.
"""

import sys
from datetime import datetime, timedelta, timezone

import pytest

sys.path.insert(0, "backend")

FIXED_NOW = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)


def _zigzag_bars(n=24, slope=1.0, start=102.0):
    """Helper: bars whose swing lows/highs sit on two parallel lines."""
    from trendscope.models import OHLCV

    bars = []
    base = datetime(2024, 1, 1)
    for i in range(n):
        c = start + slope * i
        high, low = c + 1, c - 1
        if i % 4 == 0:
            low = c - 3.5
        elif i % 4 == 2:
            high = c + 3.5
        bars.append(OHLCV(
            timestamp=base + timedelta(days=i),
            open=c, high=high, low=low, close=c,
            volume=1_000_000 + i * 1000,
        ))
    return bars


def _flat_channel(support, resistance, support_levels=(), resistance_levels=()):
    """Helper: horizontal-line channel with optional pivot levels."""
    from trendscope.models import Channel, ChannelType, PriceLevel, Trendline, TrendlineSide

    def line(price, side):
        return Trendline(
            side=side, slope=0.0, intercept=price, start_index=0, end_index=10,
            start_price=price, end_price=price, current_price=price,
            strength=0.5, touch_count=2, bounce_percentage=50.0,
        )

    return Channel(
        channel_type=ChannelType.HORIZONTAL,
        support_line=line(support, TrendlineSide.SUPPORT),
        resistance_line=line(resistance, TrendlineSide.RESISTANCE),
        strength=0.5,
        support_levels=[PriceLevel(price=p, touches=2, side=TrendlineSide.SUPPORT) for p in support_levels],
        resistance_levels=[PriceLevel(price=p, touches=2, side=TrendlineSide.RESISTANCE) for p in resistance_levels],
    )


# ═══════════════════════════════════════════════
#  CLASSIFICATION
# ═══════════════════════════════════════════════

class TestClassifyPattern:

    def test_mapping_table(self):
        from trendscope.engines.pattern_engine import classify_pattern
        from trendscope.models import ChannelType as C, EMAAlignment as E

        assert classify_pattern(C.ASCENDING, E.ALL_BULLISH) == ("Ascending Triangle", "triangle")
        assert classify_pattern(C.ASCENDING, E.ALL_BEARISH) == ("Ascending Channel", "channel")
        assert classify_pattern(C.ASCENDING, E.SEVEN_OVER_50) == ("Bull Flag", "flag")
        assert classify_pattern(C.DESCENDING, E.ALL_BEARISH) == ("Descending Triangle", "triangle")
        assert classify_pattern(C.DESCENDING, E.ALL_BULLISH) == ("Descending Channel", "channel")
        assert classify_pattern(C.DESCENDING, E.MIXED) == ("Bear Flag", "flag")
        assert classify_pattern(C.HORIZONTAL, E.ALL_BULLISH) == ("Symmetrical Triangle", "triangle")

    def test_channel_direction(self):
        from trendscope.engines.pattern_engine import channel_direction
        from trendscope.models import ChannelType, Direction

        assert channel_direction(ChannelType.ASCENDING) == Direction.BULLISH
        assert channel_direction(ChannelType.DESCENDING) == Direction.BEARISH
        assert channel_direction(ChannelType.HORIZONTAL) == Direction.NEUTRAL


# ═══════════════════════════════════════════════
#  DETECTION
# ═══════════════════════════════════════════════

class TestDetect:

    def test_insufficient_data_returns_empty(self):
        from trendscope.engines.pattern_engine import PatternEngine
        assert PatternEngine().detect(_zigzag_bars(6), symbol="AAPL") == []
        assert PatternEngine().detect([], symbol="AAPL") == []

    def test_malformed_bars_count_as_missing(self):
        from trendscope.engines.pattern_engine import PatternEngine
        from trendscope.models import OHLCV

        bars = _zigzag_bars(6) + [
            OHLCV(timestamp=datetime(2024, 2, 1), open=10, high=5, low=20, close=10)
        ]
        assert PatternEngine().detect(bars) == []

    def test_ascending_zigzag_yields_bullish_flags(self):
        from trendscope.engines.pattern_engine import PatternEngine
        from trendscope.models import Direction, FlagPattern

        bars = _zigzag_bars(24, slope=1.0)
        patterns = PatternEngine(clock=lambda: FIXED_NOW).detect(bars, symbol="AAPL", timeframe="1h")

        # window 20 over 24 bars -> 5 positions, each with an ascending channel
        assert len(patterns) == 5
        for p in patterns:
            assert isinstance(p, FlagPattern)
            assert p.pattern_type == "Bull Flag"
            assert p.direction == Direction.BULLISH
            assert p.target_price >= p.entry_price * 1.05 - 1e-9
            assert p.stop_loss is not None and p.stop_loss < p.entry_price
            assert 0 <= p.confidence_score <= 100
            assert p.scanned_at == FIXED_NOW

        assert len({p.id for p in patterns}) == 5
        assert patterns[-1].created_at == bars[-1].timestamp
        assert patterns[-1].entry_price == bars[-1].close

    def test_last_window_levels(self):
        from trendscope.engines.pattern_engine import PatternEngine

        patterns = PatternEngine().detect(_zigzag_bars(24, slope=1.0), symbol="AAPL")
        last = patterns[-1]
        # entry 125; nearest resistance 127.5 -> 128.75, floored at +5% = 131.25
        assert last.entry_price == pytest.approx(125.0)
        assert last.target_price == pytest.approx(131.25)
        # support line projects to 121.5 at the last bar, stop 1% below
        assert last.stop_loss == pytest.approx(121.5 * 0.99)
        assert last.id.startswith("AAPL_1d_")
        assert last.id.endswith("_bull_flag")

    def test_descending_zigzag_yields_bearish(self):
        from trendscope.engines.pattern_engine import PatternEngine
        from trendscope.models import Direction

        patterns = PatternEngine().detect(_zigzag_bars(24, slope=-1.0, start=150.0))
        assert patterns
        for p in patterns:
            assert p.direction == Direction.BEARISH
            assert p.pattern_type == "Bear Flag"
            assert p.target_price <= p.entry_price * 0.95 + 1e-9
            assert p.stop_loss is not None and p.stop_loss > p.entry_price

    def test_flat_zigzag_yields_symmetrical_triangle(self):
        from trendscope.engines.pattern_engine import PatternEngine
        from trendscope.models import Direction, TrianglePattern

        patterns = PatternEngine().detect(_zigzag_bars(24, slope=0.0))
        assert patterns
        for p in patterns:
            assert isinstance(p, TrianglePattern)
            assert p.pattern_type == "Symmetrical Triangle"
            assert p.direction == Direction.NEUTRAL
            assert p.stop_loss is None
            assert p.apex_index is None
            assert p.target_price == pytest.approx(107.25)

    def test_step_reduces_positions(self):
        from trendscope.engines.pattern_engine import PatternEngine
        patterns = PatternEngine(step=2).detect(_zigzag_bars(24))
        assert len(patterns) == 3

    def test_step_always_scans_latest_window(self):
        from trendscope.engines.pattern_engine import PatternEngine

        bars = _zigzag_bars(24)
        patterns = PatternEngine(step=3).detect(bars)
        # windows end at bars 24 and 21; the one ending at bar 18 is too short
        assert len(patterns) == 2
        assert patterns[-1].created_at == bars[-1].timestamp
        assert patterns[0].created_at == bars[20].timestamp

    def test_idempotent(self):
        from trendscope.engines.pattern_engine import PatternEngine

        bars = _zigzag_bars(30, slope=1.0)
        first = PatternEngine(clock=lambda: FIXED_NOW).detect(bars, symbol="MSFT")
        second = PatternEngine(clock=lambda: FIXED_NOW).detect(list(reversed(bars)), symbol="MSFT")
        assert first == second

    def test_identical_window_differs_only_in_scan_time(self):
        from trendscope.engines.pattern_engine import PatternEngine

        bars = _zigzag_bars(24)
        a = PatternEngine(clock=lambda: FIXED_NOW).detect_window(bars, 20, "AAPL", "1d")
        b = PatternEngine(clock=lambda: FIXED_NOW + timedelta(hours=1)).detect_window(bars, 20, "AAPL", "1d")
        assert a.scanned_at != b.scanned_at
        assert a.model_dump(exclude={"scanned_at"}) == b.model_dump(exclude={"scanned_at"})


# ═══════════════════════════════════════════════
#  TARGET & STOP
# ═══════════════════════════════════════════════

class TestPriceLevels:

    def test_target_from_nearest_resistance(self):
        from trendscope.engines.pattern_engine import PatternEngine
        from trendscope.models import Direction

        channel = _flat_channel(90, 120, resistance_levels=(110, 130))
        target, source = PatternEngine().compute_target(100, Direction.BULLISH, channel, 1.0)
        assert target == pytest.approx(115.0)
        assert source == "resistance level"

    def test_target_atr_fallback(self):
        from trendscope.engines.pattern_engine import PatternEngine
        from trendscope.models import Direction

        channel = _flat_channel(90, 95)
        target, source = PatternEngine().compute_target(100, Direction.BULLISH, channel, 2.0)
        assert target == pytest.approx(114.0)
        assert source == "ATR projection"

    def test_target_minimum_move(self):
        from trendscope.engines.pattern_engine import PatternEngine
        from trendscope.models import Direction

        channel = _flat_channel(90, 95)
        target, _ = PatternEngine().compute_target(100, Direction.BULLISH, channel, 0.1)
        assert target == pytest.approx(105.0)

    def test_bearish_target_mirrors(self):
        from trendscope.engines.pattern_engine import PatternEngine
        from trendscope.models import Direction

        channel = _flat_channel(90, 110, support_levels=(80,))
        target, source = PatternEngine().compute_target(100, Direction.BEARISH, channel, 1.0)
        assert target == pytest.approx(85.0)
        assert source == "support level"

    def test_stops(self):
        from trendscope.engines.pattern_engine import PatternEngine
        from trendscope.models import Direction

        engine = PatternEngine()
        channel = _flat_channel(90, 110, support_levels=(95,))
        assert engine.compute_stop(100, Direction.BULLISH, channel) == pytest.approx(95 * 0.99)
        assert engine.compute_stop(100, Direction.BEARISH, channel) == pytest.approx(110 * 1.01)
        assert engine.compute_stop(100, Direction.NEUTRAL, channel) is None

    def test_stop_absent_without_protective_level(self):
        from trendscope.engines.pattern_engine import PatternEngine
        from trendscope.models import Direction

        channel = _flat_channel(105, 110)
        assert PatternEngine().compute_stop(100, Direction.BULLISH, channel) is None

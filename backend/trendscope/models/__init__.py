"""
Trendscope — Pydantic Models

All I/O schemas for the analytic core. Engines return these, the scan
orchestrator passes them around, caches serialize them.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field


# ──────────────────────────────────────────────
# Enums
# ──────────────────────────────────────────────

class TimeFrame(str, Enum):
    """Supported chart timeframes."""
    M1 = "1m"
    M5 = "5m"
    M15 = "15m"
    M30 = "30m"
    H1 = "1h"
    H4 = "4h"
    D1 = "1d"
    W1 = "1wk"
    MO = "1mo"


class Direction(str, Enum):
    """Predicted price direction of a pattern."""
    BULLISH = "bullish"
    BEARISH = "bearish"
    NEUTRAL = "neutral"


class ChannelType(str, Enum):
    """Channel classification from the support/resistance slope pair."""
    ASCENDING = "ascending"
    DESCENDING = "descending"
    HORIZONTAL = "horizontal"
    NONE = "none"


class TrendlineSide(str, Enum):
    SUPPORT = "support"
    RESISTANCE = "resistance"


class EMAAlignment(str, Enum):
    """Ordering of the EMA(7/50/100) triple on the latest bar."""
    ALL_BULLISH = "allBullish"
    ALL_BEARISH = "allBearish"
    SEVEN_OVER_50 = "7over50"
    SEVEN_OVER_100 = "7over100"
    FIFTY_OVER_100 = "50over100"
    MIXED = "mixed"


class TradeState(str, Enum):
    """Backtest trade lifecycle."""
    AWAITING_ENTRY = "AWAITING_ENTRY"
    OPEN = "OPEN"
    CLOSED_TARGET = "CLOSED_TARGET"
    CLOSED_STOP = "CLOSED_STOP"
    CLOSED_TIMEOUT = "CLOSED_TIMEOUT"


class TieBreak(str, Enum):
    """Which exit wins when a single bar touches both target and stop."""
    STOP_FIRST = "stop_first"
    TARGET_FIRST = "target_first"


# ──────────────────────────────────────────────
# Market Data Models
# ──────────────────────────────────────────────

class OHLCV(BaseModel):
    """Single OHLCV bar."""
    model_config = ConfigDict(frozen=True)

    timestamp: datetime
    open: float
    high: float
    low: float
    close: float
    volume: int = 0


# ──────────────────────────────────────────────
# Indicator Models
# ──────────────────────────────────────────────

class IndicatorSnapshot(BaseModel):
    """Indicator values for the last bar of a window. Ephemeral, per scan."""
    model_config = ConfigDict(frozen=True)

    rsi: float = 50.0
    atr: float = 0.0
    atr_pct: float = 0.0                 # ATR as % of last close
    ema7: float = 0.0
    ema50: float = 0.0
    ema100: float = 0.0
    ema_alignment: EMAAlignment = EMAAlignment.MIXED
    ema_crossovers: list[str] = Field(default_factory=list)
    volume_increasing: bool = False
    volume_trend_pct: float = 0.0
    volume_ratio: float = 1.0            # last volume / trailing mean


# ──────────────────────────────────────────────
# Trendline / Channel Models
# ──────────────────────────────────────────────

class Trendline(BaseModel):
    """Least-squares line through swing points, projected to the current bar."""
    model_config = ConfigDict(frozen=True)

    side: TrendlineSide
    slope: float
    intercept: float
    start_index: int
    end_index: int
    start_price: float
    end_price: float
    current_price: float
    strength: float = Field(ge=0.0, le=1.0)
    touch_count: int = 0
    bounce_percentage: float = Field(default=0.0, ge=0.0, le=100.0)

    def price_at(self, index: float) -> float:
        """Line value at a bar index."""
        return self.slope * index + self.intercept


class PriceLevel(BaseModel):
    """Clustered horizontal pivot level."""
    model_config = ConfigDict(frozen=True)

    price: float
    touches: int
    side: TrendlineSide


class Channel(BaseModel):
    """Paired support and resistance trendlines classified by slope."""
    model_config = ConfigDict(frozen=True)

    channel_type: ChannelType
    support_line: Trendline
    resistance_line: Trendline
    strength: float = Field(ge=0.0, le=1.0)
    touch_points: int = 0
    established: bool = False
    support_levels: list[PriceLevel] = Field(default_factory=list)
    resistance_levels: list[PriceLevel] = Field(default_factory=list)

    @property
    def support_price(self) -> float:
        return self.support_line.current_price

    @property
    def resistance_price(self) -> float:
        return self.resistance_line.current_price

    @property
    def width(self) -> float:
        return self.resistance_line.current_price - self.support_line.current_price

    @property
    def trendlines(self) -> list[Trendline]:
        return [self.support_line, self.resistance_line]


# ──────────────────────────────────────────────
# Pattern Models (tagged by family)
# ──────────────────────────────────────────────

class PatternBase(BaseModel):
    """Fields shared by every pattern family.

    Patterns are immutable once emitted. Confirmation produces an enriched
    copy through ``model_copy(update=...)``.
    """
    model_config = ConfigDict(frozen=True)

    id: str
    symbol: str
    timeframe: str
    pattern_type: str
    direction: Direction
    channel_type: ChannelType
    entry_price: float
    target_price: float
    stop_loss: Optional[float] = None
    confidence_score: float = Field(ge=0.0, le=100.0)
    higher_timeframe_confirmed: bool = False
    confirming_timeframes: list[str] = Field(default_factory=list)
    confirmation_details: dict[str, str] = Field(default_factory=dict)
    support_level: Optional[float] = None
    resistance_level: Optional[float] = None
    indicators: IndicatorSnapshot = Field(default_factory=IndicatorSnapshot)
    created_at: datetime
    scanned_at: Optional[datetime] = None
    notes: str = ""


class ChannelPattern(PatternBase):
    """Price travelling between two roughly parallel trendlines."""
    family: Literal["channel"] = "channel"
    channel_width: float = 0.0
    touch_points: int = 0
    established: bool = False


class FlagPattern(PatternBase):
    """Short consolidation channel against or along a prior move."""
    family: Literal["flag"] = "flag"
    pole_change_pct: float = 0.0
    flag_slope: float = 0.0


class TrianglePattern(PatternBase):
    """Converging or flat-sided support/resistance pair."""
    family: Literal["triangle"] = "triangle"
    apex_index: Optional[float] = None
    convergence: float = 1.0


Pattern = Annotated[
    Union[ChannelPattern, FlagPattern, TrianglePattern],
    Field(discriminator="family"),
]


# ──────────────────────────────────────────────
# Backtest Models
# ──────────────────────────────────────────────

class BacktestResult(BaseModel):
    """Terminal outcome of one simulated trade."""
    model_config = ConfigDict(frozen=True)

    pattern_id: str
    symbol: str = ""
    pattern_type: str = ""
    state: TradeState
    entry_date: datetime
    entry_price: float
    exit_date: datetime
    exit_price: float
    profit_loss_percent: float
    max_drawdown: float = Field(ge=0.0)   # percent of entry price
    candles_to_breakout: int
    successful: bool
    predicted_direction: Direction
    actual_direction: Direction

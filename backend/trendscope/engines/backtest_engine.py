"""
Trendscope — Backtest Simulator

Forward-simulates each pattern as a trade against the bars that follow it.

State machine per trade:
    AWAITING_ENTRY → OPEN → CLOSED_TARGET | CLOSED_STOP | CLOSED_TIMEOUT

Exit checks start on the bar after entry. When one bar touches both the
target and the stop, the configured TieBreak decides which exit wins.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import TYPE_CHECKING, Optional, Sequence

import structlog

from trendscope.config import get_settings
from trendscope.engines import indicator_engine as ind
from trendscope.models import (
    OHLCV,
    BacktestResult,
    Direction,
    Pattern,
    TieBreak,
    TradeState,
)

if TYPE_CHECKING:
    from trendscope.engines.pattern_engine import PatternEngine

log = structlog.get_logger(__name__)


# ──────────────────────────────────────────────
# Summary
# ──────────────────────────────────────────────

@dataclass
class BacktestSummary:
    """Aggregate statistics over a set of simulated trades."""
    total: int = 0
    successful: int = 0
    failed: int = 0
    win_rate: float = 0.0                 # percent
    avg_profit_pct: float = 0.0
    avg_loss_pct: float = 0.0
    max_profit_pct: float = 0.0
    max_loss_pct: float = 0.0
    risk_reward: Optional[float] = None
    profit_factor: Optional[float] = None
    avg_candles_to_exit: float = 0.0
    by_pattern_type: dict[str, dict] = field(default_factory=dict)
    by_state: dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return asdict(self)


# ──────────────────────────────────────────────
# Engine
# ──────────────────────────────────────────────

class BacktestEngine:
    """Simulates pattern trades and aggregates the outcomes.

    Usage:
        engine = BacktestEngine(horizon=30)
        result = engine.simulate(pattern, bars)
        summary = engine.summarize(results)
    """

    def __init__(
        self,
        horizon: Optional[int] = None,
        tie_break: Optional[TieBreak | str] = None,
    ):
        settings = get_settings()
        self.horizon = max(1, horizon or settings.backtest_horizon)
        self.tie_break = TieBreak(tie_break or settings.backtest_tie_break)

    def simulate(self, pattern: Pattern, bars: list[OHLCV]) -> Optional[BacktestResult]:
        """Run one pattern through the trade state machine.

        Args:
            pattern: Pattern to trade; entry, target, stop and direction
                are taken from it as-is.
            bars: Price history containing the pattern's bars and the bars
                that follow it.

        Returns:
            Terminal BacktestResult, or None when there is no entry bar or
            too little forward data to reach an exit.
        """
        valid = ind.filter_valid_bars(bars)
        entry_index = self._entry_index(valid, pattern)
        if entry_index is None:
            log.debug("backtest.no_entry_bar", pattern_id=pattern.id)
            return None

        # AWAITING_ENTRY -> OPEN at the entry bar
        bearish = pattern.direction == Direction.BEARISH
        entry = pattern.entry_price
        target = pattern.target_price
        stop = pattern.stop_loss
        max_drawdown = 0.0

        last_index = min(entry_index + self.horizon, len(valid) - 1)

        for i in range(entry_index + 1, last_index + 1):
            bar = valid[i]
            max_drawdown = max(max_drawdown, self.bar_drawdown(bar, entry, bearish))

            exit_state = self.check_exit(bar, target, stop, bearish, self.tie_break)
            if exit_state is None:
                continue

            exit_price = target if exit_state == TradeState.CLOSED_TARGET else stop
            return self._result(
                pattern, exit_state, valid[entry_index], valid[i], exit_price,
                max_drawdown, i - entry_index,
            )

        if entry_index + self.horizon > len(valid) - 1:
            log.debug(
                "backtest.insufficient_forward_data",
                pattern_id=pattern.id,
                available=len(valid) - 1 - entry_index,
                horizon=self.horizon,
            )
            return None

        exit_bar = valid[entry_index + self.horizon]
        return self._result(
            pattern, TradeState.CLOSED_TIMEOUT, valid[entry_index], exit_bar,
            exit_bar.close, max_drawdown, self.horizon,
        )

    def simulate_many(self, patterns: Sequence[Pattern], bars: list[OHLCV]) -> list[BacktestResult]:
        """Simulate every pattern against the same series, dropping Nones."""
        results = []
        for p in patterns:
            result = self.simulate(p, bars)
            if result is not None:
                results.append(result)
        return results

    def backtest_history(
        self,
        bars: list[OHLCV],
        detector: "PatternEngine",
        symbol: str = "",
        timeframe: str = "1d",
    ) -> list[BacktestResult]:
        """Detect patterns over a full history and trade each one forward."""
        patterns = detector.detect(bars, symbol=symbol, timeframe=timeframe)
        results = self.simulate_many(patterns, bars)
        log.info(
            "backtest.history_complete",
            symbol=symbol,
            timeframe=timeframe,
            patterns=len(patterns),
            trades=len(results),
        )
        return results

    # ──────────────────────────────────────────
    # Aggregation
    # ──────────────────────────────────────────

    @staticmethod
    def summarize(results: Sequence[BacktestResult]) -> BacktestSummary:
        """Aggregate win rate, P/L extremes, profit factor and breakdowns."""
        summary = BacktestSummary(total=len(results))
        if not results:
            return summary

        profits = [r.profit_loss_percent for r in results if r.profit_loss_percent > 0]
        losses = [r.profit_loss_percent for r in results if r.profit_loss_percent < 0]

        summary.successful = sum(1 for r in results if r.successful)
        summary.failed = summary.total - summary.successful
        summary.win_rate = round(summary.successful / summary.total * 100, 2)
        summary.avg_profit_pct = round(sum(profits) / len(profits), 4) if profits else 0.0
        summary.avg_loss_pct = round(sum(losses) / len(losses), 4) if losses else 0.0
        summary.max_profit_pct = max(profits) if profits else 0.0
        summary.max_loss_pct = min(losses) if losses else 0.0
        summary.avg_candles_to_exit = round(
            sum(r.candles_to_breakout for r in results) / summary.total, 2
        )

        if summary.avg_loss_pct < 0:
            summary.risk_reward = round(summary.avg_profit_pct / abs(summary.avg_loss_pct), 4)
        if losses:
            summary.profit_factor = round(sum(profits) / abs(sum(losses)), 4)

        for r in results:
            bucket = summary.by_pattern_type.setdefault(
                r.pattern_type or "unknown", {"total": 0, "successful": 0, "win_rate": 0.0}
            )
            bucket["total"] += 1
            bucket["successful"] += int(r.successful)
            summary.by_state[r.state.value] = summary.by_state.get(r.state.value, 0) + 1

        for bucket in summary.by_pattern_type.values():
            bucket["win_rate"] = round(bucket["successful"] / bucket["total"] * 100, 2)

        return summary

    # ──────────────────────────────────────────
    # Pure Helpers
    # ──────────────────────────────────────────

    @staticmethod
    def check_exit(
        bar: OHLCV,
        target: float,
        stop: Optional[float],
        bearish: bool,
        tie_break: TieBreak = TieBreak.STOP_FIRST,
    ) -> Optional[TradeState]:
        """Exit state triggered by ``bar``, or None while the trade stays open."""
        if bearish:
            hit_target = bar.low <= target
            hit_stop = stop is not None and bar.high >= stop
        else:
            hit_target = bar.high >= target
            hit_stop = stop is not None and bar.low <= stop

        if hit_target and hit_stop:
            if tie_break == TieBreak.TARGET_FIRST:
                return TradeState.CLOSED_TARGET
            return TradeState.CLOSED_STOP
        if hit_stop:
            return TradeState.CLOSED_STOP
        if hit_target:
            return TradeState.CLOSED_TARGET
        return None

    @staticmethod
    def bar_drawdown(bar: OHLCV, entry: float, bearish: bool) -> float:
        """Adverse excursion of ``bar`` as a percent of entry, never negative."""
        if entry <= 0:
            return 0.0
        if bearish:
            return (max(bar.high, entry) - entry) / entry * 100
        return (entry - min(bar.low, entry)) / entry * 100

    @staticmethod
    def profit_loss_percent(entry: float, exit_price: float, bearish: bool) -> float:
        sign = -1 if bearish else 1
        if entry <= 0:
            return 0.0
        return round((exit_price - entry) / entry * 100 * sign, 4)

    # ──────────────────────────────────────────
    # Private Helpers
    # ──────────────────────────────────────────

    @staticmethod
    def _entry_index(bars: list[OHLCV], pattern: Pattern) -> Optional[int]:
        for i, bar in enumerate(bars):
            if bar.timestamp >= pattern.created_at:
                return i
        return None

    def _result(
        self,
        pattern: Pattern,
        state: TradeState,
        entry_bar: OHLCV,
        exit_bar: OHLCV,
        exit_price: float,
        max_drawdown: float,
        candles: int,
    ) -> BacktestResult:
        bearish = pattern.direction == Direction.BEARISH
        pnl = self.profit_loss_percent(pattern.entry_price, exit_price, bearish)

        if state == TradeState.CLOSED_TARGET:
            successful = True
        elif state == TradeState.CLOSED_STOP:
            successful = False
        else:
            successful = pnl > 0

        if exit_price > pattern.entry_price:
            actual = Direction.BULLISH
        elif exit_price < pattern.entry_price:
            actual = Direction.BEARISH
        else:
            actual = Direction.NEUTRAL

        log.debug(
            "backtest.trade_closed",
            pattern_id=pattern.id,
            state=state.value,
            pnl=pnl,
            candles=candles,
        )

        return BacktestResult(
            pattern_id=pattern.id,
            symbol=pattern.symbol,
            pattern_type=pattern.pattern_type,
            state=state,
            entry_date=entry_bar.timestamp,
            entry_price=pattern.entry_price,
            exit_date=exit_bar.timestamp,
            exit_price=exit_price,
            profit_loss_percent=pnl,
            max_drawdown=round(max_drawdown, 4),
            candles_to_breakout=candles,
            successful=successful,
            predicted_direction=pattern.direction,
            actual_direction=actual,
        )

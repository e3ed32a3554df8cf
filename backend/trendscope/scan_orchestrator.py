"""
Trendscope — Scan Orchestrator

Async fan-out over symbols on a bounded task pool. The analytic engines are
synchronous and pure; they run in worker threads via ``asyncio.to_thread``
so the event loop keeps serving fetches and sibling tasks.

Per symbol:
  1. Fetch bars from the provider
  2. Detect patterns
  3. Fetch higher-timeframe bars concurrently and fit their channels
  4. Confirm, sort by confidence, cache

A failing task (provider error, bad symbol, open circuit) is logged and
becomes an empty result; it never cancels its siblings.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from typing import Awaitable, Callable, Optional, Protocol, Sequence, TypeVar

import structlog
from pydantic import TypeAdapter

from trendscope.cache import ResultCache, make_cache_key
from trendscope.config import Settings, get_settings
from trendscope.engines.backtest_engine import BacktestEngine, BacktestSummary
from trendscope.engines.confirmation_engine import (
    ConfirmationEngine,
    HigherTimeframeContext,
    higher_timeframes,
)
from trendscope.engines.pattern_engine import PatternEngine, utc_now
from trendscope.models import OHLCV, BacktestResult, Pattern
from trendscope.observability import ScanMetrics, trace_span
from trendscope.utils.validators import validate_symbol, validate_timeframe

log = structlog.get_logger(__name__)

T = TypeVar("T")
R = TypeVar("R")

_PATTERN_LIST = TypeAdapter(list[Pattern])


class BarProvider(Protocol):
    """Source of OHLCV bars. May return fewer bars than requested."""

    async def get_bars(self, symbol: str, timeframe: str, lookback: int) -> list[OHLCV]: ...


@dataclass
class BacktestReport:
    """Simulated trades for one symbol plus their aggregate statistics."""
    symbol: str
    timeframe: str
    results: list[BacktestResult] = field(default_factory=list)
    summary: BacktestSummary = field(default_factory=BacktestSummary)

    def to_dict(self) -> dict:
        return {
            "symbol": self.symbol,
            "timeframe": self.timeframe,
            "results": [r.model_dump(mode="json") for r in self.results],
            "summary": self.summary.to_dict(),
        }


class ScanOrchestrator:
    """Runs pattern scans and backtests across many symbols.

    Usage:
        orchestrator = ScanOrchestrator(YFinanceBarProvider(), cache=TTLCache(300))
        by_symbol = await orchestrator.scan_symbols(["AAPL", "MSFT"], "1h")
    """

    def __init__(
        self,
        provider: BarProvider,
        cache: Optional[ResultCache] = None,
        settings: Optional[Settings] = None,
        clock: Optional[Callable[[], datetime]] = None,
        pattern_engine: Optional[PatternEngine] = None,
        confirmation_engine: Optional[ConfirmationEngine] = None,
        backtest_engine: Optional[BacktestEngine] = None,
        metrics: Optional[ScanMetrics] = None,
    ):
        self.settings = settings or get_settings()
        self.provider = provider
        self.cache = cache
        self.clock = clock or utc_now
        self.max_concurrency = self.settings.scan_max_concurrency
        self.batch_delay = self.settings.scan_batch_delay_seconds
        self.lookback = self.settings.scan_lookback_bars

        self.patterns = pattern_engine or PatternEngine(clock=self.clock)
        self.confirmation = confirmation_engine or ConfirmationEngine(
            inside_channel_override=self.settings.confirmation_inside_channel_override,
        )
        self.backtester = backtest_engine or BacktestEngine(
            horizon=self.settings.backtest_horizon,
            tie_break=self.settings.backtest_tie_break,
        )
        self.metrics = metrics or ScanMetrics()

    # ──────────────────────────────────────────
    # Scanning
    # ──────────────────────────────────────────

    async def scan_symbol(self, symbol: str, timeframe: str) -> list[Pattern]:
        """Detect and confirm patterns for one symbol, highest confidence first.

        Raises:
            ValueError: Malformed symbol or timeframe.
        """
        symbol = validate_symbol(symbol)
        tf = validate_timeframe(timeframe).value
        key = make_cache_key("patterns", symbol, tf)

        if self.cache is not None:
            hit = self.cache.get(key)
            if hit is not None:
                log.debug("scan.cache_hit", symbol=symbol, timeframe=tf)
                return _PATTERN_LIST.validate_python(hit)

        bars = await self._fetch(symbol, tf)

        with trace_span("scan.detect", metadata={"symbol": symbol, "timeframe": tf}, metrics=self.metrics):
            patterns = await asyncio.to_thread(self.patterns.detect, bars, symbol=symbol, timeframe=tf)

        if patterns:
            contexts = await self._higher_timeframe_contexts(symbol, tf)
            with trace_span("scan.confirm", metadata={"symbol": symbol}, metrics=self.metrics):
                patterns = await asyncio.to_thread(self.confirmation.confirm_batch, patterns, contexts)

        patterns.sort(key=lambda p: p.confidence_score, reverse=True)

        if self.cache is not None:
            self.cache.set(key, [p.model_dump(mode="json") for p in patterns])

        log.info("scan.symbol_complete", symbol=symbol, timeframe=tf, bars=len(bars), patterns=len(patterns))
        return patterns

    async def scan_symbols(self, symbols: Sequence[str], timeframe: str) -> dict[str, list[Pattern]]:
        """Scan every symbol on the bounded pool. Failed symbols map to []."""
        symbols = list(symbols)
        results = await self._run_bounded(
            "scan.symbol",
            symbols,
            lambda s: self.scan_symbol(s, timeframe),
            lambda s: [],
        )
        log.info(
            "scan.batch_complete",
            symbols=len(symbols),
            with_patterns=sum(1 for r in results if r),
        )
        return dict(zip(symbols, results))

    # ──────────────────────────────────────────
    # Backtesting
    # ──────────────────────────────────────────

    async def backtest_symbol(
        self,
        symbol: str,
        timeframe: str,
        patterns: Optional[Sequence[Pattern]] = None,
    ) -> BacktestReport:
        """Simulate ``patterns`` (or every historical detection) for one symbol."""
        symbol = validate_symbol(symbol)
        tf = validate_timeframe(timeframe).value
        bars = await self._fetch(symbol, tf)

        with trace_span("scan.backtest", metadata={"symbol": symbol, "timeframe": tf}, metrics=self.metrics):
            if patterns is None:
                results = await asyncio.to_thread(
                    self.backtester.backtest_history, bars, self.patterns, symbol=symbol, timeframe=tf,
                )
            else:
                results = await asyncio.to_thread(self.backtester.simulate_many, list(patterns), bars)

        return BacktestReport(
            symbol=symbol,
            timeframe=tf,
            results=results,
            summary=self.backtester.summarize(results),
        )

    async def backtest_symbols(self, symbols: Sequence[str], timeframe: str) -> dict[str, BacktestReport]:
        """Historical backtest for every symbol. Failed symbols get an empty report."""
        symbols = list(symbols)
        reports = await self._run_bounded(
            "scan.backtest_symbol",
            symbols,
            lambda s: self.backtest_symbol(s, timeframe),
            lambda s: BacktestReport(symbol=s, timeframe=str(timeframe)),
        )
        return dict(zip(symbols, reports))

    # ──────────────────────────────────────────
    # Task Pool
    # ──────────────────────────────────────────

    async def _run_bounded(
        self,
        stage: str,
        items: list[T],
        worker: Callable[[T], Awaitable[R]],
        fallback: Callable[[T], R],
    ) -> list[R]:
        """Run ``worker`` over ``items`` on a pool of ``max_concurrency`` slots.

        A task starts as soon as a slot frees up. Starts are rate limited:
        after every ``max_concurrency`` starts the next one waits
        ``batch_delay`` seconds. Results keep input order; an item whose
        worker raises yields ``fallback(item)``.
        """
        semaphore = asyncio.Semaphore(self.max_concurrency)
        pacing = asyncio.Lock()
        started = 0

        async def guarded(item: T) -> R:
            nonlocal started
            async with semaphore:
                async with pacing:
                    if started and started % self.max_concurrency == 0 and self.batch_delay > 0:
                        await asyncio.sleep(self.batch_delay)
                    started += 1
                try:
                    with trace_span(stage, metadata={"item": str(item)}, metrics=self.metrics):
                        return await worker(item)
                except Exception as exc:
                    log.warning("scan.task_failed", stage=stage, item=str(item), error=str(exc))
                    return fallback(item)

        return list(await asyncio.gather(*(guarded(item) for item in items)))

    # ──────────────────────────────────────────
    # Private Helpers
    # ──────────────────────────────────────────

    async def _fetch(self, symbol: str, timeframe: str) -> list[OHLCV]:
        with trace_span("scan.fetch", metadata={"symbol": symbol, "timeframe": timeframe}, metrics=self.metrics):
            return await self.provider.get_bars(symbol, timeframe, self.lookback)

    async def _higher_timeframe_contexts(self, symbol: str, timeframe: str) -> list[HigherTimeframeContext]:
        """Contexts for the next one or two coarser timeframes, nearest first.

        A timeframe whose fetch fails contributes a context without a
        channel, which confirmation treats as skipped.
        """
        htfs = higher_timeframes(timeframe)
        if not htfs:
            return []

        bar_sets: list[list[OHLCV]] = await self._run_bounded(
            "scan.fetch_higher",
            htfs,
            lambda htf: self._fetch(symbol, htf),
            lambda htf: [],
        )
        return await asyncio.to_thread(
            lambda: [self.confirmation.build_context(htf, bars) for htf, bars in zip(htfs, bar_sets)]
        )

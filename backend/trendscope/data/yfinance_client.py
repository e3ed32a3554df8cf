"""
Trendscope — yfinance Bar Provider

Free OHLCV source for scans. Wraps yfinance with retry and a circuit breaker
and delivers validated, ascending OHLCV models. yfinance has no 4h interval,
so 4h bars are resampled from 60m bars.
"""

from __future__ import annotations

import asyncio
import math
from typing import Optional

import pandas as pd
import structlog
import yfinance as yf

from trendscope.config import get_settings
from trendscope.engines.indicator_engine import filter_valid_bars
from trendscope.models import OHLCV, TimeFrame
from trendscope.utils.circuit_breaker import CircuitBreaker, get_breaker
from trendscope.utils.retry import with_retry
from trendscope.utils.validators import validate_symbol, validate_timeframe

log = structlog.get_logger(__name__)

# timeframe -> (yfinance interval, yfinance period)
_YF_PARAMS: dict[TimeFrame, tuple[str, str]] = {
    TimeFrame.M1: ("1m", "5d"),
    TimeFrame.M5: ("5m", "5d"),
    TimeFrame.M15: ("15m", "5d"),
    TimeFrame.M30: ("30m", "5d"),
    TimeFrame.H1: ("60m", "1mo"),
    TimeFrame.H4: ("60m", "3mo"),
    TimeFrame.D1: ("1d", "2y"),
    TimeFrame.W1: ("1wk", "5y"),
    TimeFrame.MO: ("1mo", "max"),
}

_OHLCV_AGG = {"Open": "first", "High": "max", "Low": "min", "Close": "last", "Volume": "sum"}


def yfinance_params(timeframe: TimeFrame) -> tuple[str, str]:
    """yfinance (interval, period) used to fetch ``timeframe``."""
    return _YF_PARAMS[timeframe]


def resample_ohlcv(df: pd.DataFrame, rule: str = "4h") -> pd.DataFrame:
    """Aggregate an OHLCV frame (yfinance column names) to a coarser bar size."""
    if df.empty:
        return df
    return df.resample(rule).agg(_OHLCV_AGG).dropna(subset=["Open", "High", "Low", "Close"])


def frame_to_bars(df: pd.DataFrame) -> list[OHLCV]:
    """Convert a yfinance history frame into OHLCV models, skipping NaN rows."""
    bars = []
    for idx, row in df.iterrows():
        prices = [row["Open"], row["High"], row["Low"], row["Close"]]
        if any(p is None or math.isnan(float(p)) for p in prices):
            continue
        volume = row.get("Volume", 0)
        bars.append(
            OHLCV(
                timestamp=idx.to_pydatetime(),
                open=round(float(row["Open"]), 4),
                high=round(float(row["High"]), 4),
                low=round(float(row["Low"]), 4),
                close=round(float(row["Close"]), 4),
                volume=0 if volume is None or math.isnan(float(volume)) else int(volume),
            )
        )
    return bars


class YFinanceBarProvider:
    """Async bar provider backed by yfinance.

    The blocking yfinance call runs in a worker thread. Transient errors are
    retried with backoff; repeated failures open the ``yfinance`` breaker.

    Usage:
        provider = YFinanceBarProvider()
        bars = await provider.get_bars("AAPL", "1h", lookback=300)
    """

    def __init__(self, breaker: Optional[CircuitBreaker] = None):
        settings = get_settings()
        self._breaker = breaker or get_breaker(
            "yfinance",
            failure_threshold=settings.provider_failure_threshold,
            recovery_timeout=settings.provider_recovery_timeout,
        )
        self._download = with_retry(
            max_attempts=settings.provider_max_retries,
            base_delay=0.5,
        )(self._download_once)

    async def get_bars(self, symbol: str, timeframe: str | TimeFrame, lookback: int = 300) -> list[OHLCV]:
        """Fetch up to ``lookback`` most recent bars, oldest first.

        Raises:
            ValueError: Malformed symbol or unknown timeframe.
            CircuitOpenError: yfinance has been failing; no request was made.
        """
        symbol = validate_symbol(symbol)
        tf = validate_timeframe(timeframe)
        return await asyncio.to_thread(self._fetch, symbol, tf, lookback)

    def _fetch(self, symbol: str, timeframe: TimeFrame, lookback: int) -> list[OHLCV]:
        interval, period = yfinance_params(timeframe)
        df = self._breaker.call(lambda: self._download(symbol, interval, period))

        if df is None or df.empty:
            log.warning("yfinance.no_bars", symbol=symbol, timeframe=timeframe.value)
            return []

        if timeframe == TimeFrame.H4:
            df = resample_ohlcv(df, "4h")

        bars = filter_valid_bars(frame_to_bars(df))[-lookback:]
        log.info("yfinance.bars_fetched", symbol=symbol, timeframe=timeframe.value, count=len(bars))
        return bars

    @staticmethod
    def _download_once(symbol: str, interval: str, period: str) -> pd.DataFrame:
        return yf.Ticker(symbol).history(period=period, interval=interval, auto_adjust=True)

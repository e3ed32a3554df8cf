"""
Trendscope — Resilience, Validation & Configuration Tests

Retry backoff, circuit breaker state machine, input validators, settings,
and the yfinance bar provider (offline unless marked slow).
"""

import asyncio
import sys

import pytest

sys.path.insert(0, "backend")


# ════════════════════════════════════════════════
#  RETRY
# ════════════════════════════════════════════════

class TestRetry:

    def test_succeeds_after_transient_failure(self):
        from trendscope.utils.retry import with_retry
        call_count = 0

        @with_retry(max_attempts=3, base_delay=0.01)
        def flaky():
            nonlocal call_count
            call_count += 1
            if call_count < 3:
                raise ConnectionError("reset")
            return "ok"

        assert flaky() == "ok"
        assert call_count == 3

    def test_exhausted_reraises(self):
        from trendscope.utils.retry import with_retry

        @with_retry(max_attempts=2, base_delay=0.01)
        def always_fail():
            raise TimeoutError("timed out")

        with pytest.raises(TimeoutError, match="timed out"):
            always_fail()

    def test_non_transient_not_retried(self):
        from trendscope.utils.retry import with_retry
        call_count = 0

        @with_retry(max_attempts=3, base_delay=0.01)
        def bad_input():
            nonlocal call_count
            call_count += 1
            raise ValueError("bad symbol")

        with pytest.raises(ValueError):
            bad_input()
        assert call_count == 1

    def test_async_retry(self):
        from trendscope.utils.retry import with_retry
        call_count = 0

        @with_retry(max_attempts=3, base_delay=0.01)
        async def async_flaky():
            nonlocal call_count
            call_count += 1
            if call_count < 2:
                raise ConnectionError("refused")
            return "async_ok"

        assert asyncio.run(async_flaky()) == "async_ok"
        assert call_count == 2

    def test_on_retry_callback(self):
        from trendscope.utils.retry import with_retry
        seen = []

        @with_retry(max_attempts=3, base_delay=0.01, on_retry=lambda a, e, d: seen.append(a))
        def flaky():
            if len(seen) < 2:
                raise OSError("socket")
            return "ok"

        assert flaky() == "ok"
        assert seen == [1, 2]

    def test_backoff_delays(self):
        from trendscope.utils.retry import compute_delay
        delays = [compute_delay(a, 1.0, 30.0, 2.0, jitter=False) for a in (1, 2, 3)]
        assert delays == [1.0, 2.0, 4.0]
        assert compute_delay(10, 1.0, 5.0, 2.0, jitter=False) == 5.0


# ════════════════════════════════════════════════
#  CIRCUIT BREAKER
# ════════════════════════════════════════════════

class TestCircuitBreaker:

    def _breaker(self, now):
        from trendscope.utils.circuit_breaker import CircuitBreaker
        return CircuitBreaker("test", failure_threshold=2, recovery_timeout=10, clock=lambda: now[0])

    def _fail(self):
        raise ConnectionError("down")

    def test_opens_after_threshold(self):
        from trendscope.utils.circuit_breaker import CircuitOpenError, CircuitState

        now = [0.0]
        breaker = self._breaker(now)
        for _ in range(2):
            with pytest.raises(ConnectionError):
                breaker.call(self._fail)
        assert breaker.state == CircuitState.OPEN

        calls = []
        with pytest.raises(CircuitOpenError) as exc_info:
            breaker.call(lambda: calls.append(1))
        assert calls == []
        assert exc_info.value.service == "test"

    def test_half_open_trial_success_closes(self):
        from trendscope.utils.circuit_breaker import CircuitState

        now = [0.0]
        breaker = self._breaker(now)
        for _ in range(2):
            with pytest.raises(ConnectionError):
                breaker.call(self._fail)

        now[0] = 10.0
        assert breaker.state == CircuitState.HALF_OPEN
        assert breaker.call(lambda: "bars") == "bars"
        assert breaker.state == CircuitState.CLOSED
        assert breaker.failure_count == 0

    def test_half_open_trial_failure_reopens(self):
        from trendscope.utils.circuit_breaker import CircuitState

        now = [0.0]
        breaker = self._breaker(now)
        for _ in range(2):
            with pytest.raises(ConnectionError):
                breaker.call(self._fail)

        now[0] = 10.0
        with pytest.raises(ConnectionError):
            breaker.call(self._fail)
        assert breaker.state == CircuitState.OPEN

    def test_success_resets_count(self):
        from trendscope.utils.circuit_breaker import CircuitState

        breaker = self._breaker([0.0])
        with pytest.raises(ConnectionError):
            breaker.call(self._fail)
        breaker.call(lambda: None)
        with pytest.raises(ConnectionError):
            breaker.call(self._fail)
        assert breaker.state == CircuitState.CLOSED

    def test_registry_returns_same_instance(self):
        from trendscope.utils.circuit_breaker import get_all_breaker_states, get_breaker

        a = get_breaker("registry-test")
        assert get_breaker("registry-test") is a
        assert get_all_breaker_states()["registry-test"] == "CLOSED"


# ════════════════════════════════════════════════
#  VALIDATORS
# ════════════════════════════════════════════════

class TestValidators:

    def test_symbols(self):
        from trendscope.utils.validators import validate_symbol
        assert validate_symbol(" aapl ") == "AAPL"
        assert validate_symbol("brk.b") == "BRK.B"
        assert validate_symbol("^gspc") == "^GSPC"
        assert validate_symbol("btc-usd") == "BTC-USD"

    @pytest.mark.parametrize("raw", ["", "   ", "??", "AAPL MSFT", "A" * 12])
    def test_rejects_garbage(self, raw):
        from trendscope.utils.validators import validate_symbol
        with pytest.raises(ValueError):
            validate_symbol(raw)

    def test_timeframes(self):
        from trendscope.models import TimeFrame
        from trendscope.utils.validators import validate_timeframe

        assert validate_timeframe("1h") == TimeFrame.H1
        assert validate_timeframe("1H") == TimeFrame.H1
        assert validate_timeframe("weekly") == TimeFrame.W1
        assert validate_timeframe("1w") == TimeFrame.W1
        assert validate_timeframe("1m") == TimeFrame.M1
        assert validate_timeframe("1M") == TimeFrame.MO
        assert validate_timeframe(TimeFrame.D1) == TimeFrame.D1

    def test_bad_timeframe(self):
        from trendscope.utils.validators import validate_timeframe
        with pytest.raises(ValueError, match="Invalid timeframe"):
            validate_timeframe("3d")


# ════════════════════════════════════════════════
#  CONFIGURATION
# ════════════════════════════════════════════════

class TestSettings:

    def test_defaults(self):
        from trendscope.config import Settings

        s = Settings()
        assert s.pattern_window == 20
        assert s.backtest_horizon == 30
        assert s.backtest_tie_break == "stop_first"
        assert s.scan_max_concurrency == 5
        assert s.scan_batch_delay_seconds == 1.0
        assert s.confirmation_inside_channel_override is True
        assert not s.is_production

    def test_env_override(self, monkeypatch):
        from trendscope.config import Settings

        monkeypatch.setenv("TRENDSCOPE_PATTERN_WINDOW", "30")
        monkeypatch.setenv("TRENDSCOPE_APP_ENV", "production")
        s = Settings()
        assert s.pattern_window == 30
        assert s.is_production

    def test_tie_break_validated_at_startup(self, monkeypatch):
        from pydantic import ValidationError
        from trendscope.config import Settings
        from trendscope.models import TieBreak

        monkeypatch.setenv("TRENDSCOPE_BACKTEST_TIE_BREAK", "target_first")
        assert Settings().backtest_tie_break == TieBreak.TARGET_FIRST

        monkeypatch.setenv("TRENDSCOPE_BACKTEST_TIE_BREAK", "target_frist")
        with pytest.raises(ValidationError):
            Settings()

    def test_window_minimum_enforced(self):
        from pydantic import ValidationError
        from trendscope.config import Settings

        with pytest.raises(ValidationError):
            Settings(pattern_window=3)

    def test_get_settings_is_cached(self):
        from trendscope.config import get_settings
        assert get_settings() is get_settings()


# ════════════════════════════════════════════════
#  YFINANCE BAR PROVIDER
# ════════════════════════════════════════════════

class TestYFinanceBarProvider:

    def _hourly_frame(self, hours=8):
        import pandas as pd

        index = pd.date_range("2024-01-02 00:00", periods=hours, freq="h", tz="UTC")
        return pd.DataFrame(
            {
                "Open": [100.0 + i for i in range(hours)],
                "High": [101.0 + i for i in range(hours)],
                "Low": [99.0 + i for i in range(hours)],
                "Close": [100.5 + i for i in range(hours)],
                "Volume": [1000] * hours,
            },
            index=index,
        )

    def test_params(self):
        from trendscope.data.yfinance_client import yfinance_params
        from trendscope.models import TimeFrame
        assert yfinance_params(TimeFrame.H1) == ("60m", "1mo")
        assert yfinance_params(TimeFrame.H4)[0] == "60m"

    def test_resample_to_4h(self):
        from trendscope.data.yfinance_client import resample_ohlcv

        out = resample_ohlcv(self._hourly_frame(8), "4h")
        assert len(out) == 2
        first = out.iloc[0]
        assert first["Open"] == 100.0
        assert first["High"] == 104.0
        assert first["Low"] == 99.0
        assert first["Close"] == 103.5
        assert first["Volume"] == 4000

    def test_frame_to_bars_skips_nan(self):
        import math
        from trendscope.data.yfinance_client import frame_to_bars

        df = self._hourly_frame(3)
        df.iloc[1, df.columns.get_loc("Close")] = math.nan
        bars = frame_to_bars(df)
        assert len(bars) == 2
        assert bars[0].close == 100.5

    def test_get_bars_offline(self):
        from trendscope.data.yfinance_client import YFinanceBarProvider
        from trendscope.utils.circuit_breaker import CircuitBreaker

        provider = YFinanceBarProvider(breaker=CircuitBreaker("yfinance-test"))
        provider._download = lambda symbol, interval, period: self._hourly_frame(8)

        bars = asyncio.run(provider.get_bars("aapl", "4h", lookback=10))
        assert len(bars) == 2
        assert bars[0].timestamp < bars[1].timestamp
        assert bars[1].close == 107.5

        hourly = asyncio.run(provider.get_bars("AAPL", "1h", lookback=3))
        assert len(hourly) == 3
        assert hourly[-1].close == 107.5

    def test_empty_frame_yields_no_bars(self):
        import pandas as pd
        from trendscope.data.yfinance_client import YFinanceBarProvider
        from trendscope.utils.circuit_breaker import CircuitBreaker

        provider = YFinanceBarProvider(breaker=CircuitBreaker("yfinance-empty"))
        provider._download = lambda symbol, interval, period: pd.DataFrame()
        assert asyncio.run(provider.get_bars("AAPL", "1d")) == []

    def test_invalid_symbol_rejected_before_fetch(self):
        from trendscope.data.yfinance_client import YFinanceBarProvider

        provider = YFinanceBarProvider()
        with pytest.raises(ValueError):
            asyncio.run(provider.get_bars("not a symbol", "1d"))

    @pytest.mark.slow
    def test_live_daily_bars(self):
        from trendscope.data.yfinance_client import YFinanceBarProvider

        bars = asyncio.run(YFinanceBarProvider().get_bars("AAPL", "1d", lookback=50))
        assert 0 < len(bars) <= 50
        assert all(b.high >= b.low for b in bars)


# ════════════════════════════════════════════════
#  OBSERVABILITY
# ════════════════════════════════════════════════

class TestObservability:

    def test_span_records_success_and_failure(self):
        from trendscope.observability import ScanMetrics, trace_span

        metrics = ScanMetrics()
        with trace_span("scan.detect", metadata={"symbol": "AAPL"}, metrics=metrics):
            pass
        with pytest.raises(RuntimeError):
            with trace_span("scan.detect", metrics=metrics):
                raise RuntimeError("boom")

        stats = metrics.get_stats()["scan.detect"]
        assert stats["total_calls"] == 2
        assert stats["error_count"] == 1
        assert stats["error_rate"] == 0.5

    def test_traced_sync_and_async(self):
        from trendscope.observability import ScanMetrics, traced

        metrics = ScanMetrics()

        @traced("sync.stage", metrics=metrics)
        def double(x):
            return x * 2

        @traced("async.stage", metrics=metrics)
        async def triple(x):
            return x * 3

        assert double(2) == 4
        assert asyncio.run(triple(2)) == 6
        stats = metrics.get_stats()
        assert stats["sync.stage"]["total_calls"] == 1
        assert stats["async.stage"]["total_calls"] == 1

    def test_reset(self):
        from trendscope.observability import ScanMetrics

        metrics = ScanMetrics()
        metrics.record_call("scan.fetch", 12.0)
        metrics.reset()
        assert metrics.get_stats() == {}

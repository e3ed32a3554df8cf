"""
Trendscope — Observability

Lightweight span timing and per-stage scan metrics, logged through structlog.

Usage:
    with trace_span("scan.detect", metadata={"symbol": "AAPL"}):
        patterns = engine.detect(bars)

    @traced("scan.fetch")
    async def fetch(...):
        ...
"""

from __future__ import annotations

import asyncio
import functools
import threading
import time
from contextlib import contextmanager
from typing import Any, Callable, Optional

import structlog

logger = structlog.get_logger(__name__)

SLOW_SPAN_SECONDS = 5.0


# ──────────────────────────────────────────────
# Spans
# ──────────────────────────────────────────────

@contextmanager
def trace_span(
    name: str,
    metadata: Optional[dict] = None,
    metrics: Optional["ScanMetrics"] = None,
):
    """Time a block of code and log its duration.

    Args:
        name: Span name, e.g. "scan.detect".
        metadata: Extra key/values attached to the log events.
        metrics: When given, the span is recorded as one call of ``name``,
            failed if the block raises.
    """
    extra = {"span_name": name, **(metadata or {})}
    start = time.perf_counter()
    success = True
    logger.debug("trace_span_start", **extra)
    try:
        yield
    except BaseException:
        success = False
        raise
    finally:
        elapsed = time.perf_counter() - start
        elapsed_ms = round(elapsed * 1000, 2)
        logger.debug("trace_span_end", elapsed_ms=elapsed_ms, success=success, **extra)
        if elapsed > SLOW_SPAN_SECONDS:
            logger.warning("trace_span_slow", elapsed_s=round(elapsed, 2), **extra)
        if metrics is not None:
            metrics.record_call(name, elapsed_ms, success=success)


def traced(name: Optional[str] = None, metrics: Optional["ScanMetrics"] = None):
    """Decorator form of ``trace_span`` for sync and async functions."""
    def decorator(func: Callable) -> Callable:
        span_name = name or f"{func.__module__}.{func.__qualname__}"

        @functools.wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> Any:
            with trace_span(span_name, metrics=metrics):
                return func(*args, **kwargs)

        @functools.wraps(func)
        async def async_wrapper(*args: Any, **kwargs: Any) -> Any:
            with trace_span(span_name, metrics=metrics):
                return await func(*args, **kwargs)

        if asyncio.iscoroutinefunction(func):
            return async_wrapper
        return wrapper

    return decorator


# ──────────────────────────────────────────────
# Scan Metrics
# ──────────────────────────────────────────────

class ScanMetrics:
    """Call counts, latency and error rate per scan stage."""

    def __init__(self):
        self._call_counts: dict[str, int] = {}
        self._total_latency: dict[str, float] = {}
        self._error_counts: dict[str, int] = {}
        self._lock = threading.Lock()

    def record_call(self, stage: str, latency_ms: float, success: bool = True):
        with self._lock:
            self._call_counts[stage] = self._call_counts.get(stage, 0) + 1
            self._total_latency[stage] = self._total_latency.get(stage, 0.0) + latency_ms
            if not success:
                self._error_counts[stage] = self._error_counts.get(stage, 0) + 1

    def get_stats(self) -> dict[str, dict]:
        stats = {}
        with self._lock:
            for stage, calls in self._call_counts.items():
                errors = self._error_counts.get(stage, 0)
                stats[stage] = {
                    "total_calls": calls,
                    "avg_latency_ms": round(self._total_latency.get(stage, 0.0) / max(calls, 1), 2),
                    "error_count": errors,
                    "error_rate": round(errors / max(calls, 1), 4),
                }
        return stats

    def reset(self):
        with self._lock:
            self._call_counts.clear()
            self._total_latency.clear()
            self._error_counts.clear()

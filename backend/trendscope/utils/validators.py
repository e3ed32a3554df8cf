"""
Trendscope — Input Validators

Normalize symbols and timeframes before they reach a provider.
Both raise ValueError; the scan orchestrator isolates that per task.
"""

from __future__ import annotations

import re

from trendscope.models import TimeFrame

# 1-10 chars: letters/digits with optional class, index, or exchange suffix (BRK.B, ^GSPC, BTC-USD)
_SYMBOL_RE = re.compile(r"^\^?[A-Z0-9]{1,10}([.\-=][A-Z0-9]{1,6})?$")

_TIMEFRAME_ALIASES = {
    "1w": TimeFrame.W1,
    "weekly": TimeFrame.W1,
    "1W": TimeFrame.W1,
    "daily": TimeFrame.D1,
    "1D": TimeFrame.D1,
    "60m": TimeFrame.H1,
    "1M": TimeFrame.MO,
    "monthly": TimeFrame.MO,
}


def validate_symbol(raw: str) -> str:
    """Strip and upper-case a symbol, rejecting empty or malformed input.

    >>> validate_symbol(' aapl ')
    'AAPL'
    >>> validate_symbol('brk.b')
    'BRK.B'
    """
    symbol = (raw or "").strip().upper()
    if not symbol:
        raise ValueError("Symbol cannot be empty")
    if not _SYMBOL_RE.match(symbol):
        raise ValueError(f"Invalid symbol '{symbol}'")
    return symbol


def validate_timeframe(raw: str | TimeFrame) -> TimeFrame:
    """Map a timeframe string or alias to TimeFrame.

    >>> validate_timeframe('weekly')
    <TimeFrame.W1: '1wk'>
    """
    if isinstance(raw, TimeFrame):
        return raw
    value = (raw or "").strip()
    if value in _TIMEFRAME_ALIASES:
        return _TIMEFRAME_ALIASES[value]
    try:
        return TimeFrame(value.lower())
    except ValueError:
        valid = ", ".join(tf.value for tf in TimeFrame)
        raise ValueError(f"Invalid timeframe '{raw}'. Expected one of: {valid}") from None

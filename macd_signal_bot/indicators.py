from __future__ import annotations
from dataclasses import dataclass
from typing import List, Optional, Sequence

from .errors import InsufficientData


@dataclass(frozen=True)
class MacdResult:
    macd_line: List[float]
    signal_line: List[float]
    histogram: List[float]


def ema_next(prev_ema: Optional[float], x: float, length: int) -> float:
    if length <= 1:
        return x
    alpha = 2.0 / (length + 1.0)
    return x if prev_ema is None else (alpha * x + (1.0 - alpha) * prev_ema)


def ema(series: Sequence[float], period: int) -> List[float]:
    """Recursive EMA seeded with the first value (not an SMA seed)."""
    out: List[float] = []
    prev: Optional[float] = None
    for x in series:
        prev = ema_next(prev, float(x), period)
        out.append(prev)
    return out


def macd(close_prices: Sequence[float], fast_period: int = 12, slow_period: int = 26, signal_period: int = 9) -> MacdResult:
    if len(close_prices) < slow_period:
        raise InsufficientData(f"MACD needs {slow_period} closes, got {len(close_prices)}")

    fast = ema(close_prices, fast_period)
    slow = ema(close_prices, slow_period)
    macd_line = [f - s for f, s in zip(fast, slow)]
    signal_line = ema(macd_line, signal_period)
    histogram = [m - s for m, s in zip(macd_line, signal_line)]
    return MacdResult(macd_line=macd_line, signal_line=signal_line, histogram=histogram)


def sma(values: Sequence[float], length: int) -> Optional[float]:
    if length <= 0 or len(values) < length:
        return None
    return sum(values[-length:]) / float(length)


def smoothed_sma(values: Sequence[float], period: int) -> Optional[float]:
    """SMA of the rolling SMA series (double smoothing).

    Returns None while fewer than ``2 * period`` values are available.
    """
    if period <= 0 or len(values) < 2 * period:
        return None
    n = len(values)
    # Only the last `period` points of the first SMA series feed the second SMA.
    firsts = [sum(values[i - period + 1:i + 1]) / float(period) for i in range(n - period, n)]
    return sma(firsts, period)


def pct_change(new: float, old: float) -> Optional[float]:
    if old == 0:
        return None
    return (new - old) / old * 100.0

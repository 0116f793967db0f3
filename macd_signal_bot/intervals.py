from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Optional


@dataclass(frozen=True)
class IntervalConfig:
    name: str
    exchange: str  # Bybit v5 kline interval code
    minutes: int
    take_profit_percent: float
    validity_hours: float
    higher_timeframe: Optional[str]

    @property
    def duration_ms(self) -> int:
        return self.minutes * 60_000


INTERVALS: Dict[str, IntervalConfig] = {
    c.name: c
    for c in (
        IntervalConfig("1m", "1", 1, 0.6, 1, "3m"),
        IntervalConfig("3m", "3", 3, 0.8, 1, "5m"),
        IntervalConfig("5m", "5", 5, 1.0, 1, "15m"),
        IntervalConfig("15m", "15", 15, 1.5, 2, "30m"),
        IntervalConfig("30m", "30", 30, 2.0, 2, "1h"),
        IntervalConfig("1h", "60", 60, 2.5, 4, "2h"),
        IntervalConfig("2h", "120", 120, 3.0, 8, "4h"),
        IntervalConfig("4h", "240", 240, 3.5, 16, "6h"),
        IntervalConfig("6h", "360", 360, 4.0, 32, "1d"),
        IntervalConfig("1d", "D", 1440, 5.0, 96, "1w"),
        IntervalConfig("1w", "W", 10080, 8.0, 168, "1M"),
        IntervalConfig("1M", "M", 43200, 10.0, 720, None),
    )
}

_BY_EXCHANGE: Dict[str, IntervalConfig] = {c.exchange: c for c in INTERVALS.values()}


def normalize_interval(interval: str) -> str:
    """Map user/exchange spellings (``15M``, ``15``, ``1H``, ``D``) to the table key.

    ``1M`` (month) is the only case-sensitive spelling.
    """
    raw = (interval or "").strip()
    if raw in INTERVALS:
        return raw
    if raw in _BY_EXCHANGE:
        return _BY_EXCHANGE[raw].name
    low = raw.lower()
    if low in INTERVALS:
        return low
    raise ValueError(
        f"Unsupported interval: {interval!r}. Supported intervals: " + ", ".join(INTERVALS)
    )


def interval_config(interval: str) -> IntervalConfig:
    return INTERVALS[normalize_interval(interval)]


def from_exchange(code: str) -> str:
    cfg = _BY_EXCHANGE.get(str(code))
    if cfg is None:
        raise ValueError(f"Unknown exchange interval code: {code!r}")
    return cfg.name


def higher_timeframe(interval: str) -> Optional[str]:
    return interval_config(interval).higher_timeframe

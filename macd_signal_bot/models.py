from __future__ import annotations
from dataclasses import dataclass
from typing import Optional


LONG = "long"
SHORT = "short"

ACTIVE = "active"
SUCCESS = "success"
FAILURE = "failure"


@dataclass(frozen=True)
class Candle:
    start_time_ms: int
    open: float
    high: float
    low: float
    close: float
    volume: float
    turnover: float = 0.0


@dataclass(frozen=True, order=True)
class Pair:
    symbol: str
    interval: str

    def __str__(self) -> str:
        return f"{self.symbol}:{self.interval}"


@dataclass
class Subscription:
    user_id: str
    symbol: str
    interval: str
    take_profit: Optional[float] = None  # percent, overrides the interval default in messages
    active: bool = True


@dataclass(frozen=True)
class MessageRef:
    chat_id: str
    message_id: int


@dataclass
class Signal:
    id: str
    scope: str  # broadcast channel id
    symbol: str
    interval: str
    side: str  # long or short
    entry_price: float
    entry_time_ms: int
    take_profit_percent: float
    validity_hours: float
    status: str = ACTIVE
    max_favorable_excursion: float = 0.0
    notified: bool = False
    message_ref: Optional[MessageRef] = None
    exit_price: Optional[float] = None
    pnl_percent: Optional[float] = None
    closed_at_ms: Optional[int] = None

    @property
    def pair(self) -> Pair:
        return Pair(self.symbol, self.interval)


@dataclass(frozen=True)
class SignalCandidate:
    symbol: str
    interval: str
    side: str
    entry_price: float
    entry_time_ms: int


@dataclass(frozen=True)
class SignalEvent:
    signal_id: str
    symbol: str
    interval: str
    side: str
    entry_price: float
    entry_time_ms: int
    take_profit_percent: float
    validity_hours: float

    @classmethod
    def from_signal(cls, sig: Signal) -> "SignalEvent":
        return cls(
            signal_id=sig.id,
            symbol=sig.symbol,
            interval=sig.interval,
            side=sig.side,
            entry_price=sig.entry_price,
            entry_time_ms=sig.entry_time_ms,
            take_profit_percent=sig.take_profit_percent,
            validity_hours=sig.validity_hours,
        )


@dataclass(frozen=True)
class UpdateEvent:
    signal_id: str
    symbol: str
    interval: str
    side: str
    status: str
    entry_price: float
    exit_price: float
    pnl_percent: float
    max_favorable_excursion: float

    @classmethod
    def from_signal(cls, sig: Signal) -> "UpdateEvent":
        return cls(
            signal_id=sig.id,
            symbol=sig.symbol,
            interval=sig.interval,
            side=sig.side,
            status=sig.status,
            entry_price=sig.entry_price,
            exit_price=sig.exit_price if sig.exit_price is not None else sig.entry_price,
            pnl_percent=sig.pnl_percent if sig.pnl_percent is not None else 0.0,
            max_favorable_excursion=sig.max_favorable_excursion,
        )

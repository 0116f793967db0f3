from __future__ import annotations

import dataclasses
import logging
import time
from typing import AsyncIterator, Callable, Dict, Iterable, List, Optional, Protocol, Union

from .intervals import normalize_interval
from .models import ACTIVE, Candle, MessageRef, Signal, SignalEvent, Subscription, UpdateEvent

log = logging.getLogger("store")


class MarketDataSource(Protocol):
    async def fetch_historical_candles(self, symbol: str, interval: str, limit: int) -> List[Candle]: ...

    async def subscribe(self, symbol: str, interval: str) -> None: ...

    async def unsubscribe(self, symbol: str, interval: str) -> None: ...

    def stream(self) -> AsyncIterator[object]: ...


class Notifier(Protocol):
    async def notify(self, scope: str, event: Union[SignalEvent, UpdateEvent]) -> Optional[MessageRef]: ...

    async def reply(self, ref: MessageRef, event: UpdateEvent) -> Optional[MessageRef]: ...


class SignalStore(Protocol):
    async def save(self, signal: Signal) -> None: ...

    async def update_status(
        self,
        signal_id: str,
        status: str,
        exit_price: float,
        pnl: float,
        *,
        closed_at_ms: Optional[int] = None,
    ) -> bool: ...

    async def find_active_by_scope(self, symbol: str, interval: str, scope: str) -> List[Signal]: ...

    async def delete_older_than(self, days: int) -> int: ...

    async def list_signals(self, since_ms: Optional[int] = None) -> List[Signal]: ...


class SubscriptionStore(Protocol):
    def list_active(self) -> List[Subscription]: ...

    def find_matching(self, symbol: str, interval: str) -> List[Subscription]: ...


class InMemorySignalStore:
    """Dict-backed SignalStore. Hands out copies so callers never alias stored rows."""

    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self._rows: Dict[str, Signal] = {}
        self._clock = clock

    async def save(self, signal: Signal) -> None:
        self._rows[signal.id] = dataclasses.replace(signal)

    async def update_status(
        self,
        signal_id: str,
        status: str,
        exit_price: float,
        pnl: float,
        *,
        closed_at_ms: Optional[int] = None,
    ) -> bool:
        row = self._rows.get(signal_id)
        # Only an active row can transition; a second resolution is refused.
        if row is None or row.status != ACTIVE:
            return False
        row.status = status
        row.exit_price = exit_price
        row.pnl_percent = pnl
        row.closed_at_ms = closed_at_ms if closed_at_ms is not None else int(self._clock() * 1000)
        return True

    async def find_active_by_scope(self, symbol: str, interval: str, scope: str) -> List[Signal]:
        return [
            dataclasses.replace(s)
            for s in self._rows.values()
            if s.status == ACTIVE and s.symbol == symbol and s.interval == interval and s.scope == scope
        ]

    async def get(self, signal_id: str) -> Optional[Signal]:
        row = self._rows.get(signal_id)
        return dataclasses.replace(row) if row else None

    async def delete_older_than(self, days: int) -> int:
        cutoff = int(self._clock() * 1000) - int(days) * 86_400_000
        stale = [sid for sid, s in self._rows.items() if s.status != ACTIVE and s.entry_time_ms < cutoff]
        for sid in stale:
            del self._rows[sid]
        return len(stale)

    async def list_signals(self, since_ms: Optional[int] = None) -> List[Signal]:
        rows = sorted(self._rows.values(), key=lambda s: s.entry_time_ms)
        return [dataclasses.replace(s) for s in rows if since_ms is None or s.entry_time_ms >= since_ms]


class InMemorySubscriptionStore:
    """Subscriptions held in memory; listeners fire on every change."""

    def __init__(self, subscriptions: Iterable[Subscription] = ()) -> None:
        self._subs: List[Subscription] = []
        self._listeners: List[Callable[[], None]] = []
        for sub in subscriptions:
            self._subs.append(self._normalized(sub))

    @staticmethod
    def _normalized(sub: Subscription) -> Subscription:
        return dataclasses.replace(sub, symbol=sub.symbol.upper(), interval=normalize_interval(sub.interval))

    def add_listener(self, cb: Callable[[], None]) -> None:
        self._listeners.append(cb)

    def _changed(self) -> None:
        for cb in self._listeners:
            try:
                cb()
            except Exception as e:
                log.warning("subscription_listener_failed err=%s", e)

    def add(self, sub: Subscription) -> Subscription:
        sub = self._normalized(sub)
        self._subs = [
            s for s in self._subs
            if not (s.user_id == sub.user_id and s.symbol == sub.symbol and s.interval == sub.interval)
        ]
        self._subs.append(sub)
        self._changed()
        return sub

    def remove(self, user_id: str, symbol: str, interval: str) -> bool:
        symbol = symbol.upper()
        interval = normalize_interval(interval)
        before = len(self._subs)
        self._subs = [
            s for s in self._subs
            if not (s.user_id == user_id and s.symbol == symbol and s.interval == interval)
        ]
        removed = len(self._subs) != before
        if removed:
            self._changed()
        return removed

    def list_active(self) -> List[Subscription]:
        return [dataclasses.replace(s) for s in self._subs if s.active]

    def find_matching(self, symbol: str, interval: str) -> List[Subscription]:
        return [s for s in self.list_active() if s.symbol == symbol.upper() and s.interval == interval]

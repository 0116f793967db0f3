from __future__ import annotations

import asyncio
import dataclasses
import logging
import uuid
from typing import Dict, List, Optional, Tuple, Union

from .errors import InvariantViolation
from .intervals import interval_config
from .models import (
    ACTIVE,
    FAILURE,
    LONG,
    SUCCESS,
    Candle,
    MessageRef,
    Pair,
    Signal,
    SignalCandidate,
    SignalEvent,
    UpdateEvent,
)
from .store import Notifier, SignalStore, SubscriptionStore

log = logging.getLogger("lifecycle")


def favorable_excursion(side: str, entry_price: float, candle: Candle) -> float:
    """Percent move in the signal's favour: candle high for long, low for short."""
    if entry_price == 0:
        return 0.0
    if side == LONG:
        return (candle.high - entry_price) / entry_price * 100.0
    return (entry_price - candle.low) / entry_price * 100.0


def profit_percent(side: str, entry_price: float, price: float) -> float:
    if entry_price == 0:
        return 0.0
    if side == LONG:
        return (price - entry_price) / entry_price * 100.0
    return (entry_price - price) / entry_price * 100.0


def resolve_status(signal: Signal, now_ms: int) -> Optional[str]:
    """Terminal status due for an active signal, success checked before expiry."""
    if signal.status != ACTIVE:
        return None
    if signal.max_favorable_excursion >= signal.take_profit_percent:
        return SUCCESS
    if now_ms - signal.entry_time_ms >= signal.validity_hours * 3_600_000:
        return FAILURE
    return None


class SignalLifecycleManager:
    """Creates signals and drives them from active to success or failure.

    All work for one (scope, symbol, interval) runs under a single lock, so two
    in-flight candles can neither create two signals nor resolve one twice.
    """

    def __init__(
        self,
        store: SignalStore,
        notifier: Notifier,
        *,
        scope: str,
        subscriptions: Optional[SubscriptionStore] = None,
    ) -> None:
        self.store = store
        self.notifier = notifier
        self.scope = scope
        self.subscriptions = subscriptions
        self._locks: Dict[Tuple[str, str, str], asyncio.Lock] = {}

    def _lock(self, symbol: str, interval: str) -> asyncio.Lock:
        key = (self.scope, symbol, interval)
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        return lock

    async def create(self, candidate: SignalCandidate) -> Optional[Signal]:
        cfg = interval_config(candidate.interval)
        async with self._lock(candidate.symbol, candidate.interval):
            try:
                await self._ensure_no_active(candidate.symbol, candidate.interval)
            except InvariantViolation as e:
                log.warning("candidate_dropped symbol=%s interval=%s err=%s", candidate.symbol, candidate.interval, e)
                return None

            sig = Signal(
                id=uuid.uuid4().hex,
                scope=self.scope,
                symbol=candidate.symbol,
                interval=candidate.interval,
                side=candidate.side,
                entry_price=candidate.entry_price,
                entry_time_ms=candidate.entry_time_ms,
                take_profit_percent=cfg.take_profit_percent,
                validity_hours=cfg.validity_hours,
            )
            try:
                await self.store.save(sig)
            except Exception as e:
                log.error("signal_save_failed symbol=%s interval=%s err=%s", sig.symbol, sig.interval, e)
                return None

            log.info(
                "signal_created id=%s symbol=%s interval=%s side=%s entry=%s tp=%.2f%% validity=%sh",
                sig.id, sig.symbol, sig.interval, sig.side, sig.entry_price,
                sig.take_profit_percent, sig.validity_hours,
            )

            event = SignalEvent.from_signal(sig)
            ref = await self._notify(self.scope, event)
            if ref is not None:
                sig.message_ref = ref
                try:
                    await self.store.save(sig)
                except Exception as e:
                    log.warning("signal_message_ref_save_failed id=%s err=%s", sig.id, e)

        # Subscriber copies go out after the lock is released.
        await self._fan_out(sig, event)
        return sig

    async def _ensure_no_active(self, symbol: str, interval: str) -> None:
        active = await self.store.find_active_by_scope(symbol, interval, self.scope)
        if active:
            raise InvariantViolation(f"active signal {active[0].id} already open for scope={self.scope}")

    async def evaluate(self, pair: Pair, candle: Candle, *, now_ms: Optional[int] = None) -> List[Signal]:
        """Advance excursion for every active signal of ``pair``; returns the ones resolved."""
        if now_ms is None:
            now_ms = candle.start_time_ms + interval_config(pair.interval).duration_ms
        resolved: List[Signal] = []
        async with self._lock(pair.symbol, pair.interval):
            try:
                active = await self.store.find_active_by_scope(pair.symbol, pair.interval, self.scope)
            except Exception as e:
                log.warning("active_lookup_failed pair=%s err=%s", pair, e)
                return resolved
            for sig in active:
                done = await self._evaluate_one(sig, candle, now_ms)
                if done is not None:
                    resolved.append(done)

        for sig in resolved:
            await self._fan_out(sig, UpdateEvent.from_signal(sig))
        return resolved

    async def _evaluate_one(self, sig: Signal, candle: Candle, now_ms: int) -> Optional[Signal]:
        if sig.status != ACTIVE:
            return None

        excursion = favorable_excursion(sig.side, sig.entry_price, candle)
        advanced = excursion > sig.max_favorable_excursion
        if advanced:
            sig.max_favorable_excursion = excursion
            try:
                await self.store.save(sig)
            except Exception as e:
                log.warning("signal_excursion_save_failed id=%s err=%s", sig.id, e)

        status = resolve_status(sig, now_ms)
        if status is None:
            return None

        exit_price = candle.close
        pnl = sig.max_favorable_excursion if status == SUCCESS else profit_percent(sig.side, sig.entry_price, exit_price)
        try:
            applied = await self.store.update_status(sig.id, status, exit_price, pnl, closed_at_ms=now_ms)
        except Exception as e:
            # Status unchanged; the next candle retries.
            log.error("signal_resolve_failed id=%s status=%s err=%s", sig.id, status, e)
            return None
        if not applied:
            log.info("signal_already_resolved id=%s", sig.id)
            return None

        sig = dataclasses.replace(sig, status=status, exit_price=exit_price, pnl_percent=pnl, closed_at_ms=now_ms)
        log.info(
            "signal_resolved id=%s symbol=%s interval=%s side=%s status=%s entry=%s exit=%s pnl=%.2f%% mfe=%.2f%%",
            sig.id, sig.symbol, sig.interval, sig.side, status, sig.entry_price, exit_price,
            pnl, sig.max_favorable_excursion,
        )

        event = UpdateEvent.from_signal(sig)
        if sig.message_ref is not None:
            ref = await self._reply(sig.message_ref, event)
        else:
            ref = await self._notify(self.scope, event)
        if ref is not None:
            sig.notified = True
            try:
                await self.store.save(sig)
            except Exception as e:
                log.warning("signal_notified_save_failed id=%s err=%s", sig.id, e)
        return sig

    async def purge(self, days: int) -> int:
        removed = await self.store.delete_older_than(days)
        if removed:
            log.info("signals_purged count=%d older_than_days=%d", removed, days)
        return removed

    async def _notify(self, chat: str, event: Union[SignalEvent, UpdateEvent]) -> Optional[MessageRef]:
        try:
            return await self.notifier.notify(chat, event)
        except Exception as e:
            log.warning("notify_failed chat=%s signal=%s err=%s", chat, event.signal_id, e)
            return None

    async def _reply(self, ref: MessageRef, event: UpdateEvent) -> Optional[MessageRef]:
        try:
            return await self.notifier.reply(ref, event)
        except Exception as e:
            log.warning("reply_failed chat=%s signal=%s err=%s", ref.chat_id, event.signal_id, e)
            return None

    async def _fan_out(self, sig: Signal, event: Union[SignalEvent, UpdateEvent]) -> None:
        if self.subscriptions is None:
            return
        sends = []
        for sub in self.subscriptions.find_matching(sig.symbol, sig.interval):
            if sub.user_id == self.scope:
                continue
            personal = event
            if isinstance(event, SignalEvent) and sub.take_profit is not None:
                personal = dataclasses.replace(event, take_profit_percent=float(sub.take_profit))
            sends.append(self._notify(sub.user_id, personal))
        if sends:
            await asyncio.gather(*sends)

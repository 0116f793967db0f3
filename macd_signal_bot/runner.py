from __future__ import annotations

import asyncio
import logging
import time
from typing import List, Optional, Set

from .config import Config
from .errors import DataUnavailable, TransientNetworkError
from .intervals import normalize_interval
from .lifecycle import SignalLifecycleManager
from .metrics import compute_metrics
from .models import ACTIVE, Candle, Pair
from .notifier.telegram import TelegramNotifier
from .pair_stream import PairState, PairStreamManager
from .providers.bybit import BybitProvider
from .signal_generator import SignalGenerator
from .store import InMemorySignalStore, InMemorySubscriptionStore, Notifier, SignalStore

log = logging.getLogger("runner")


class SignalRunner:
    def __init__(
        self,
        cfg: Config,
        *,
        provider=None,
        subscriptions: Optional[InMemorySubscriptionStore] = None,
        store: Optional[SignalStore] = None,
        notifier: Optional[Notifier] = None,
    ):
        self.cfg = cfg
        self.provider = provider or BybitProvider(
            category=cfg.provider.category,
            testnet=cfg.provider.testnet,
            rest_timeout_s=cfg.provider.rest_timeout_s,
            ws_heartbeat_s=cfg.provider.ws_heartbeat_s,
        )
        self.subscriptions = subscriptions or InMemorySubscriptionStore(cfg.subscriptions)
        self.store = store or InMemorySignalStore()
        if notifier is None:
            notifier = TelegramNotifier(
                token=cfg.telegram.token if cfg.telegram.enabled else "",
                parse_mode=cfg.telegram.parse_mode,
                disable_web_page_preview=cfg.telegram.disable_web_page_preview,
            )
        self.notifier = notifier

        self.scope = cfg.scope
        self.lifecycle = SignalLifecycleManager(
            self.store,
            self.notifier,
            scope=self.scope,
            subscriptions=self.subscriptions if cfg.telegram.notify_subscribers else None,
        )
        self.generator = SignalGenerator(self.provider, self.store, cfg.strategy, scope=self.scope)
        self.streams = PairStreamManager(
            self.provider,
            self._on_closed_candle,
            cfg.strategy,
            warmup_candles=cfg.provider.warmup_candles,
            warmup_concurrency=cfg.provider.warmup_concurrency,
            queue_size=cfg.provider.queue_size,
        )

        self.broadcast_symbols: List[str] = list(cfg.broadcast.symbols or [])
        self._reconcile_needed = asyncio.Event()
        self.subscriptions.add_listener(self.request_reconcile)

    def desired_pairs(self) -> Set[Pair]:
        """Active subscriptions plus the broadcast symbol × interval grid."""
        pairs: Set[Pair] = set()
        for sub in self.subscriptions.list_active():
            try:
                pairs.add(Pair(sub.symbol.upper(), normalize_interval(sub.interval)))
            except ValueError as e:
                log.warning("subscription_skipped user=%s err=%s", sub.user_id, e)
        if self.cfg.broadcast.enabled:
            for sym in self.broadcast_symbols:
                for iv in self.cfg.broadcast.intervals:
                    pairs.add(Pair(sym.upper(), normalize_interval(iv)))
        return pairs

    def request_reconcile(self) -> None:
        self._reconcile_needed.set()

    async def reconcile(self, *, wait: bool = True) -> None:
        await self.streams.reconcile(self.desired_pairs(), wait=wait)

    async def _on_closed_candle(self, state: PairState, candle: Candle) -> None:
        await self.lifecycle.evaluate(state.pair, candle)
        candidate = await self.generator.evaluate(state)
        if candidate is not None:
            await self.lifecycle.create(candidate)

    async def refresh_top_symbols(self) -> None:
        top_n = int(self.cfg.broadcast.top_symbols)
        if not self.cfg.broadcast.enabled or top_n <= 0:
            return
        try:
            symbols = await self.provider.fetch_top_volume_symbols(top_n)
        except TransientNetworkError as e:
            log.warning("top_symbols_refresh_failed err=%s keep=%d", e, len(self.broadcast_symbols))
            return
        if symbols and symbols != self.broadcast_symbols:
            log.info("broadcast_symbols_updated old=%s new=%s", self.broadcast_symbols, symbols)
            self.broadcast_symbols = symbols
            self.request_reconcile()

    async def run_maintenance(self) -> None:
        m = self.cfg.maintenance
        signals = await self.store.list_signals(since_ms=int(time.time() * 1000) - m.retention_days * 86_400_000)
        metrics = compute_metrics(signals)
        log.info(
            "signal_metrics total=%d success_rate=%.1f%% avg_profit=%.2f%% avg_loss=%.2f%% profit_factor=%.2f "
            "best=%.2f%% worst=%.2f%% win_streak=%d loss_streak=%d avg_hold_h=%.1f",
            metrics.total_signals, metrics.success_rate, metrics.average_profit, metrics.average_loss,
            metrics.profit_factor, metrics.best_trade, metrics.worst_trade, metrics.win_streak,
            metrics.loss_streak, metrics.average_holding_time_ms / 3_600_000,
        )
        await self.expire_unwatched()
        await self.lifecycle.purge(m.retention_days)

    async def expire_unwatched(self, now_ms: Optional[int] = None) -> int:
        """Resolve due signals of pairs that no longer receive candles."""
        if now_ms is None:
            now_ms = int(time.time() * 1000)
        watched = self.streams.subscribed
        resolved = 0
        for sig in await self.store.list_signals():
            if sig.status != ACTIVE or sig.scope != self.scope or sig.pair in watched:
                continue
            if now_ms - sig.entry_time_ms < sig.validity_hours * 3_600_000:
                continue
            try:
                candles = await self.provider.fetch_historical_candles(sig.symbol, sig.interval, 1)
            except (DataUnavailable, TransientNetworkError) as e:
                log.warning("expiry_price_unavailable id=%s pair=%s err=%s", sig.id, sig.pair, e)
                continue
            if not candles:
                log.warning("expiry_price_unavailable id=%s pair=%s err=no candles", sig.id, sig.pair)
                continue
            resolved += len(await self.lifecycle.evaluate(sig.pair, candles[-1], now_ms=now_ms))
        if resolved:
            log.info("unwatched_signals_resolved count=%d", resolved)
        return resolved

    async def _reconcile_loop(self) -> None:
        interval = max(1.0, float(self.cfg.maintenance.reconcile_interval_s))
        while True:
            try:
                await asyncio.wait_for(self._reconcile_needed.wait(), timeout=interval)
            except asyncio.TimeoutError:
                pass  # periodic pass retries failed warm-ups
            self._reconcile_needed.clear()
            try:
                await self.reconcile(wait=False)
            except Exception as e:
                log.exception("reconcile_failed err=%s", e)
            try:
                await self.expire_unwatched()
            except Exception as e:
                log.exception("expiry_sweep_failed err=%s", e)

    async def _top_symbols_loop(self) -> None:
        interval = max(60.0, float(self.cfg.broadcast.refresh_hours) * 3600)
        while True:
            await asyncio.sleep(interval)
            try:
                await self.refresh_top_symbols()
            except Exception as e:
                log.exception("top_symbols_refresh_failed err=%s", e)

    async def _maintenance_loop(self) -> None:
        interval = max(60.0, float(self.cfg.maintenance.interval_hours) * 3600)
        while True:
            await asyncio.sleep(interval)
            try:
                await self.run_maintenance()
            except Exception as e:
                log.exception("maintenance_failed err=%s", e)

    async def run_forever(self) -> None:
        if not self.cfg.broadcast.enabled and not self.subscriptions.list_active():
            raise ValueError("Nothing to watch: broadcast disabled and no subscriptions configured.")

        await self.refresh_top_symbols()
        self.request_reconcile()
        tasks = [
            asyncio.create_task(self._reconcile_loop(), name="reconcile"),
            asyncio.create_task(self._top_symbols_loop(), name="top-symbols"),
            asyncio.create_task(self._maintenance_loop(), name="maintenance"),
        ]
        if isinstance(self.notifier, TelegramNotifier) and self.cfg.telegram.channel_id:
            await self.notifier.send_text(self.cfg.telegram.channel_id, f"{self.cfg.app.name}: started.")

        try:
            async for evt in self.provider.stream():
                self.streams.dispatch(evt.pair, evt.candle)
        finally:
            for t in tasks:
                t.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            await self.streams.close()

from __future__ import annotations

import asyncio
import logging
from collections import deque
from typing import Awaitable, Callable, Deque, Dict, Iterable, List, Optional, Set

from .config import StrategyConfig
from .errors import DataUnavailable, InsufficientData
from .indicators import macd, smoothed_sma
from .models import Candle, Pair
from .store import MarketDataSource

log = logging.getLogger("pair_stream")

CandleHandler = Callable[["PairState", Candle], Awaitable[None]]


class PairState:
    """Rolling window and indicator history of one (symbol, interval) stream.

    Only the owning pair's worker mutates it, one closed candle at a time.
    """

    def __init__(self, pair: Pair, strategy: StrategyConfig) -> None:
        self.pair = pair
        self.strategy = strategy
        self.candles: Deque[Candle] = deque(maxlen=max(1, int(strategy.window_size)))
        self.histogram: List[float] = []
        self.sma_volumes: Deque[float] = deque(maxlen=2)
        self.prev_histogram_abs: float = 0.0

    @property
    def last_candle(self) -> Optional[Candle]:
        return self.candles[-1] if self.candles else None

    def seed(self, candles: Iterable[Candle]) -> None:
        for c in sorted(candles, key=lambda c: c.start_time_ms):
            self._push(c)
        self.refresh()
        if self.histogram:
            self.prev_histogram_abs = abs(self.histogram[-1])

    def update(self, candle: Candle) -> bool:
        """Append a closed candle and recompute indicators. False for a stale/duplicate candle."""
        if not self._push(candle):
            return False
        self.refresh()
        return True

    def _push(self, candle: Candle) -> bool:
        last = self.last_candle
        if last is not None and candle.start_time_ms <= last.start_time_ms:
            return False
        self.candles.append(candle)
        return True

    def refresh(self) -> None:
        s = self.strategy
        closes = [c.close for c in self.candles]
        try:
            self.histogram = macd(closes, s.fast_period, s.slow_period, s.signal_period).histogram
        except InsufficientData:
            self.histogram = []

        sample = smoothed_sma([c.volume for c in self.candles], s.volume_sma_period)
        if sample is not None:
            self.sma_volumes.append(sample)


class PairWorker:
    """Serial consumer of one pair's closed candles."""

    def __init__(self, state: PairState, handler: CandleHandler, queue_size: int) -> None:
        self.state = state
        self.handler = handler
        self.queue: "asyncio.Queue[Candle]" = asyncio.Queue(maxsize=max(1, int(queue_size)))
        self.task: Optional[asyncio.Task] = None

    def start(self) -> None:
        self.task = asyncio.create_task(self._run(), name=f"pair-worker:{self.state.pair}")

    async def stop(self) -> None:
        if self.task is None:
            return
        self.task.cancel()
        try:
            await self.task
        except asyncio.CancelledError:
            pass
        self.task = None

    async def _run(self) -> None:
        pair = self.state.pair
        while True:
            candle = await self.queue.get()
            try:
                if not self.state.update(candle):
                    log.debug("candle_duplicate pair=%s start=%s", pair, candle.start_time_ms)
                    continue
                await self.handler(self.state, candle)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                log.exception("candle_handler_failed pair=%s start=%s err=%s", pair, candle.start_time_ms, e)
            finally:
                self.queue.task_done()


class PairStreamManager:
    def __init__(
        self,
        source: MarketDataSource,
        handler: CandleHandler,
        strategy: StrategyConfig,
        *,
        warmup_candles: int = 300,
        warmup_concurrency: int = 5,
        queue_size: int = 500,
    ) -> None:
        self.source = source
        self.handler = handler
        self.strategy = strategy
        self.warmup_candles = int(warmup_candles)
        self.queue_size = int(queue_size)
        self._sem = asyncio.Semaphore(max(1, int(warmup_concurrency)))
        self._lock = asyncio.Lock()
        self._workers: Dict[Pair, PairWorker] = {}
        self._warming: Dict[Pair, asyncio.Task] = {}

    @property
    def subscribed(self) -> Set[Pair]:
        return set(self._workers)

    @property
    def warming(self) -> Set[Pair]:
        return set(self._warming)

    def state(self, pair: Pair) -> Optional[PairState]:
        worker = self._workers.get(pair)
        return worker.state if worker else None

    async def reconcile(self, desired: Iterable[Pair], *, wait: bool = True) -> None:
        """Bring live subscriptions in line with ``desired``.

        With ``wait=False`` warm-ups keep running in the background and a later
        reconcile may cancel them.
        """
        desired = set(desired)
        async with self._lock:
            current = set(self._workers) | set(self._warming)
            to_remove = current - desired
            to_add = desired - current
            if to_remove or to_add:
                log.info(
                    "reconcile desired=%d current=%d add=%d remove=%d",
                    len(desired), len(current), len(to_add), len(to_remove),
                )
            for pair in sorted(to_remove):
                await self._remove(pair)
            started = [self._start_warmup(pair) for pair in sorted(to_add)]

        if wait and started:
            await asyncio.gather(*started, return_exceptions=True)

    def _start_warmup(self, pair: Pair) -> asyncio.Task:
        task = asyncio.create_task(self._warmup(pair), name=f"warmup:{pair}")
        self._warming[pair] = task

        def _done(t: asyncio.Task, p: Pair = pair) -> None:
            if self._warming.get(p) is t:
                del self._warming[p]

        task.add_done_callback(_done)
        return task

    def _is_current(self, pair: Pair) -> bool:
        return self._warming.get(pair) is asyncio.current_task()

    async def _warmup(self, pair: Pair) -> bool:
        try:
            async with self._sem:
                candles = await self.source.fetch_historical_candles(pair.symbol, pair.interval, self.warmup_candles)
            if not candles:
                raise DataUnavailable("no historical candles")
        except asyncio.CancelledError:
            log.info("warmup_cancelled pair=%s", pair)
            raise
        except Exception as e:
            log.warning("warmup_failed pair=%s err=%s", pair, e)
            return False

        if not self._is_current(pair):
            log.info("warmup_dropped pair=%s reason=removed", pair)
            return False

        state = PairState(pair, self.strategy)
        state.seed(candles)

        try:
            await self.source.subscribe(pair.symbol, pair.interval)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            log.warning("subscribe_failed pair=%s err=%s", pair, e)
            return False

        if not self._is_current(pair):
            # Removed while subscribing.
            await self._unsubscribe(pair)
            return False

        worker = PairWorker(state, self.handler, self.queue_size)
        worker.start()
        self._workers[pair] = worker
        del self._warming[pair]
        log.info(
            "pair_added pair=%s candles=%d histogram=%d sma_samples=%d",
            pair, len(state.candles), len(state.histogram), len(state.sma_volumes),
        )
        return True

    async def _remove(self, pair: Pair) -> None:
        task = self._warming.pop(pair, None)
        if task is not None:
            task.cancel()
        worker = self._workers.pop(pair, None)
        if worker is not None:
            await worker.stop()
        await self._unsubscribe(pair)
        log.info("pair_removed pair=%s", pair)

    async def _unsubscribe(self, pair: Pair) -> None:
        try:
            await self.source.unsubscribe(pair.symbol, pair.interval)
        except Exception as e:
            log.warning("unsubscribe_failed pair=%s err=%s", pair, e)

    def dispatch(self, pair: Pair, candle: Candle) -> bool:
        worker = self._workers.get(pair)
        if worker is None:
            log.debug("event_dropped pair=%s reason=not_subscribed", pair)
            return False
        try:
            worker.queue.put_nowait(candle)
        except asyncio.QueueFull:
            log.warning("event_dropped pair=%s reason=queue_full size=%d", pair, worker.queue.maxsize)
            return False
        return True

    async def join(self) -> None:
        """Wait until every queued candle has been handled."""
        for worker in list(self._workers.values()):
            await worker.queue.join()

    async def close(self) -> None:
        async with self._lock:
            for task in self._warming.values():
                task.cancel()
            self._warming.clear()
            workers = list(self._workers.values())
            self._workers.clear()
        for worker in workers:
            await worker.stop()

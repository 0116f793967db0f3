from __future__ import annotations

import logging
from typing import Optional, Sequence

from .config import StrategyConfig
from .errors import DataUnavailable, TransientNetworkError
from .indicators import macd, pct_change
from .intervals import interval_config
from .models import LONG, SHORT, Pair, SignalCandidate
from .pair_stream import PairState
from .store import MarketDataSource, SignalStore

log = logging.getLogger("signals")


def direction_confirmed(histogram: Sequence[float], candles: int) -> bool:
    """True when the last ``candles`` histogram values share the sign of the latest one."""
    if candles <= 0 or len(histogram) < candles:
        return False
    tail = histogram[-candles:]
    if tail[-1] > 0:
        return all(v > 0 for v in tail)
    if tail[-1] < 0:
        return all(v < 0 for v in tail)
    return False


def volume_confirmed(
    volume_change_pct: Optional[float],
    sma_samples: Sequence[float],
    *,
    min_change_pct: float,
    spike_pct: float,
) -> bool:
    if volume_change_pct is None:
        return False
    sma_rising = len(sma_samples) >= 2 and sma_samples[-1] > sma_samples[-2]
    return (volume_change_pct > min_change_pct and sma_rising) or volume_change_pct > spike_pct


def higher_timeframe_confirms(side: str, htf_histogram: Sequence[float]) -> bool:
    """Long wants a positive (or negative but shrinking) HTF histogram; short mirrors it."""
    if not htf_histogram:
        return False
    last = htf_histogram[-1]
    prev = htf_histogram[-2] if len(htf_histogram) >= 2 else None
    shrinking = prev is not None and abs(last) < abs(prev)
    if side == LONG:
        return last > 0 or (last < 0 and shrinking)
    if side == SHORT:
        return last < 0 or (last > 0 and shrinking)
    return False


class SignalGenerator:
    """Turns a pair's freshly updated indicator state into an optional candidate.

    Steps, in order: direction confirmation, momentum-fading filter, volume
    confirmation, higher-timeframe confirmation, no active signal in scope.
    """

    def __init__(self, source: MarketDataSource, store: SignalStore, strategy: StrategyConfig, *, scope: str) -> None:
        self.source = source
        self.store = store
        self.strategy = strategy
        self.scope = scope

    async def evaluate(self, state: PairState) -> Optional[SignalCandidate]:
        s = self.strategy
        pair = state.pair
        hist = state.histogram
        candles = state.candles
        if not hist or len(candles) < 2:
            return None

        latest = hist[-1]
        latest_abs = abs(latest)
        prev_abs = state.prev_histogram_abs
        if s.fade_reference == "previous":
            state.prev_histogram_abs = latest_abs

        if not direction_confirmed(hist, s.direction_candles):
            return None

        if not latest_abs < prev_abs:
            # Still strengthening: remember the new magnitude and wait for it to fade.
            state.prev_histogram_abs = latest_abs
            return None

        vol_change = pct_change(candles[-1].volume, candles[-2].volume)
        if not volume_confirmed(
            vol_change,
            list(state.sma_volumes),
            min_change_pct=s.volume_change_min_pct,
            spike_pct=s.volume_spike_pct,
        ):
            return None

        side = SHORT if latest > 0 else LONG
        try:
            htf_hist = await self._higher_timeframe_histogram(pair)
        except DataUnavailable as e:
            log.debug("htf_unavailable pair=%s err=%s", pair, e)
            return None
        except TransientNetworkError as e:
            log.warning("htf_fetch_failed pair=%s err=%s", pair, e)
            return None

        if not higher_timeframe_confirms(side, htf_hist):
            log.debug("htf_rejected pair=%s side=%s htf_hist=%.6f", pair, side, htf_hist[-1])
            return None

        active = await self.store.find_active_by_scope(pair.symbol, pair.interval, self.scope)
        if active:
            log.info("candidate_skipped pair=%s side=%s reason=active_signal id=%s", pair, side, active[0].id)
            return None

        last = candles[-1]
        cand = SignalCandidate(
            symbol=pair.symbol,
            interval=pair.interval,
            side=side,
            entry_price=last.close,
            entry_time_ms=last.start_time_ms + interval_config(pair.interval).duration_ms,
        )
        log.info(
            "candidate pair=%s side=%s entry=%s hist=%.6f prev_abs=%.6f vol_change=%.1f htf_hist=%.6f",
            pair, side, cand.entry_price, latest, prev_abs, vol_change, htf_hist[-1],
        )
        return cand

    async def _higher_timeframe_histogram(self, pair: Pair) -> Sequence[float]:
        htf = interval_config(pair.interval).higher_timeframe
        if htf is None:
            raise DataUnavailable(f"no higher timeframe for {pair.interval}")
        candles = await self.source.fetch_historical_candles(pair.symbol, htf, self.strategy.htf_candles)
        s = self.strategy
        # InsufficientData is a DataUnavailable
        return macd([c.close for c in candles], s.fast_period, s.slow_period, s.signal_period).histogram

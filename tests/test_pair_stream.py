import asyncio

from fakes import FakeSource, candle, linear_candles

from macd_signal_bot.config import StrategyConfig
from macd_signal_bot.models import Pair
from macd_signal_bot.pair_stream import PairState, PairStreamManager

A = Pair("AAAUSDT", "15m")
B = Pair("BBBUSDT", "15m")
C = Pair("CCCUSDT", "15m")


def _history(*pairs, n=40):
    return {(p.symbol, p.interval): linear_candles(n, 100.0, 1.0) for p in pairs}


async def _noop(state, c):
    return None


def test_seed_sets_histogram_and_reference():
    st = PairState(A, StrategyConfig())
    st.seed(reversed(linear_candles(40, 100.0, 1.0)))
    assert [c.start_time_ms for c in st.candles] == sorted(c.start_time_ms for c in st.candles)
    assert len(st.histogram) == 40
    assert st.prev_histogram_abs == abs(st.histogram[-1])
    assert len(st.sma_volumes) == 1


def test_short_history_has_no_histogram():
    st = PairState(A, StrategyConfig())
    st.seed(linear_candles(10, 100.0, 1.0))
    assert st.histogram == []
    assert st.prev_histogram_abs == 0.0


def test_update_rejects_stale_and_duplicate_candles():
    st = PairState(A, StrategyConfig())
    st.seed(linear_candles(30, 100.0, 1.0))
    assert not st.update(candle(29, 500.0))
    assert not st.update(candle(5, 500.0))
    assert st.update(candle(30, 130.0))
    assert st.candles[-1].close == 130.0


def test_window_is_capped():
    st = PairState(A, StrategyConfig(window_size=30))
    st.seed(linear_candles(40, 100.0, 1.0))
    assert len(st.candles) == 30
    assert st.candles[0].start_time_ms == candle(10, 0.0).start_time_ms
    st.update(candle(40, 140.0))
    assert len(st.candles) == 30
    assert st.candles[0].start_time_ms == candle(11, 0.0).start_time_ms


def test_reconcile_applies_only_the_difference():
    async def _run():
        src = FakeSource(_history(A, B, C))
        mgr = PairStreamManager(src, _noop, StrategyConfig())
        await mgr.reconcile({B, C})
        worker_b = mgr._workers[B]
        src.fetches.clear()
        src.calls.clear()
        await mgr.reconcile({A, B})
        result = (set(mgr.subscribed), list(src.fetches), list(src.calls), mgr._workers[B] is worker_b)
        await mgr.close()
        return result

    subscribed, fetches, calls, same_b = asyncio.run(_run())
    assert subscribed == {A, B}
    assert fetches == [("AAAUSDT", "15m", 300)]
    assert calls == [("unsubscribe", "CCCUSDT", "15m"), ("subscribe", "AAAUSDT", "15m")]
    assert same_b


def test_reconcile_twice_is_a_noop():
    async def _run():
        src = FakeSource(_history(A))
        mgr = PairStreamManager(src, _noop, StrategyConfig())
        await mgr.reconcile({A})
        await mgr.reconcile({A})
        await mgr.close()
        return src

    src = asyncio.run(_run())
    assert len(src.fetches) == 1
    assert src.calls == [("subscribe", "AAAUSDT", "15m")]


def test_failed_warmup_is_retried_on_next_reconcile():
    async def _run():
        src = FakeSource(_history(A))
        src.fail.add((A.symbol, A.interval))
        mgr = PairStreamManager(src, _noop, StrategyConfig())
        await mgr.reconcile({A})
        after_fail = (set(mgr.subscribed), set(mgr.warming))
        src.fail.clear()
        await mgr.reconcile({A})
        result = (after_fail, set(mgr.subscribed), len(src.fetches))
        await mgr.close()
        return result

    after_fail, subscribed, fetches = asyncio.run(_run())
    assert after_fail == (set(), set())
    assert subscribed == {A}
    assert fetches == 2


def test_empty_history_is_not_subscribed():
    async def _run():
        src = FakeSource()
        mgr = PairStreamManager(src, _noop, StrategyConfig())
        await mgr.reconcile({A})
        return set(mgr.subscribed), src.calls

    subscribed, calls = asyncio.run(_run())
    assert subscribed == set()
    assert calls == []


def test_removed_pair_cancels_inflight_warmup():
    async def _run():
        src = FakeSource(_history(A))
        gate = asyncio.Event()
        src.gates[(A.symbol, A.interval)] = gate
        mgr = PairStreamManager(src, _noop, StrategyConfig())
        await mgr.reconcile({A}, wait=False)
        await asyncio.sleep(0)
        assert mgr.warming == {A}
        await mgr.reconcile(set())
        gate.set()
        await asyncio.sleep(0)
        await asyncio.sleep(0)
        return set(mgr.subscribed), set(mgr.warming), src

    subscribed, warming, src = asyncio.run(_run())
    assert subscribed == set()
    assert warming == set()
    assert ("subscribe", "AAAUSDT", "15m") not in src.calls
    assert (A.symbol, A.interval) not in src.subscribed


def test_candles_are_handled_in_order_per_pair():
    seen = []

    async def handler(state, c):
        await asyncio.sleep(0)
        seen.append((state.pair, c.start_time_ms))

    async def _run():
        src = FakeSource(_history(A, B, n=30))
        mgr = PairStreamManager(src, handler, StrategyConfig())
        await mgr.reconcile({A, B})
        for i in range(30, 35):
            assert mgr.dispatch(A, candle(i, 100.0 + i))
            assert mgr.dispatch(B, candle(i, 100.0 + i))
        # duplicate is dropped by the worker
        mgr.dispatch(A, candle(34, 999.0))
        await mgr.join()
        state_a = mgr.state(A)
        await mgr.close()
        return state_a

    state_a = asyncio.run(_run())
    for pair in (A, B):
        starts = [ts for p, ts in seen if p == pair]
        assert starts == [candle(i, 0.0).start_time_ms for i in range(30, 35)]
    assert state_a.candles[-1].close == 134.0


def test_dispatch_to_unknown_pair_is_dropped():
    async def _run():
        mgr = PairStreamManager(FakeSource(), _noop, StrategyConfig())
        return mgr.dispatch(A, candle(0, 1.0))

    assert asyncio.run(_run()) is False


def test_handler_error_does_not_stop_worker():
    handled = []

    async def handler(state, c):
        handled.append(c.start_time_ms)
        if len(handled) == 1:
            raise RuntimeError("boom")

    async def _run():
        mgr = PairStreamManager(FakeSource(_history(A, n=30)), handler, StrategyConfig())
        await mgr.reconcile({A})
        mgr.dispatch(A, candle(30, 130.0))
        mgr.dispatch(A, candle(31, 131.0))
        await mgr.join()
        await mgr.close()

    asyncio.run(_run())
    assert len(handled) == 2


def test_full_queue_drops_event():
    async def _run():
        gate = asyncio.Event()

        async def handler(state, c):
            await gate.wait()

        mgr = PairStreamManager(FakeSource(_history(A, n=30)), handler, StrategyConfig(), queue_size=1)
        await mgr.reconcile({A})
        first = mgr.dispatch(A, candle(30, 130.0))
        await asyncio.sleep(0)  # worker takes it and blocks
        second = mgr.dispatch(A, candle(31, 131.0))
        third = mgr.dispatch(A, candle(32, 132.0))
        gate.set()
        await mgr.join()
        await mgr.close()
        return first, second, third

    assert asyncio.run(_run()) == (True, True, False)

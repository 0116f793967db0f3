import asyncio

from fakes import FakeNotifier, FakeSource, M15, candle, linear_candles

from macd_signal_bot.config import BroadcastConfig, Config, TelegramConfig
from macd_signal_bot.models import FAILURE, LONG, SHORT, SUCCESS, Pair, Signal, SignalEvent, Subscription, UpdateEvent
from macd_signal_bot.runner import SignalRunner

PAIR = Pair("BTCUSDT", "15m")


def _cfg(**broadcast) -> Config:
    opts = dict(enabled=True, symbols=["BTCUSDT"], top_symbols=0, intervals=["15m"])
    opts.update(broadcast)
    return Config(broadcast=BroadcastConfig(**opts), telegram=TelegramConfig(channel_id="@chan"))


def _price(t: int) -> float:
    return 100.0 + t


def test_rising_price_with_volume_spike_and_bearish_htf_emits_one_short():
    # Close rises linearly so the 15m histogram is positive and fading from ~t=30.
    # Candle 35 brings a 10x volume spike; the 30m trend is falling.
    history = [candle(t, _price(t)) for t in range(35)]
    live = [candle(35, _price(35), volume=1000.0)]
    live.append(candle(36, _price(36)))
    live.append(candle(37, _price(37), low=132.0))
    live += [candle(t, _price(t)) for t in (38, 39)]

    src = FakeSource({
        ("BTCUSDT", "15m"): history,
        ("BTCUSDT", "30m"): linear_candles(40, 200.0, -1.0, step_ms=2 * M15),
    })
    notifier = FakeNotifier()

    async def _run():
        runner = SignalRunner(_cfg(), provider=src, notifier=notifier)
        await runner.reconcile()
        assert runner.streams.subscribed == {PAIR}

        snapshots = []
        for c in live:
            assert runner.streams.dispatch(PAIR, c)
            await runner.streams.join()
            snapshots.append(await runner.store.list_signals())
        await runner.streams.close()
        return snapshots

    snapshots = asyncio.run(_run())

    assert [len(s) for s in snapshots] == [1, 1, 1, 1, 1]
    created = snapshots[0][0]
    assert created.side == SHORT
    assert created.entry_price == 135.0
    assert created.entry_time_ms == 36 * M15
    assert created.status == "active"

    # candle 36 moves against the short; candle 37 dips to 132 (2.2% > 1.5%)
    assert snapshots[1][0].status == "active"
    final = snapshots[2][0]
    assert final.status == SUCCESS
    assert final.max_favorable_excursion == (135.0 - 132.0) / 135.0 * 100.0
    assert final.closed_at_ms == 38 * M15
    assert snapshots[-1][0].id == created.id

    assert [type(e) for _, e in notifier.sent] == [SignalEvent]
    assert [type(e) for _, e in notifier.replies] == [UpdateEvent]
    # the HTF is only consulted once every 15m filter has passed
    assert [f for f in src.fetches if f[1] == "30m"] == [("BTCUSDT", "30m", 100)]


def test_desired_pairs_union_of_subscriptions_and_broadcast():
    async def _run():
        cfg = _cfg(symbols=["BTCUSDT", "ethusdt"], intervals=["15m", "1h"])
        cfg.subscriptions = [
            Subscription(user_id="1", symbol="solusdt", interval="5"),
            Subscription(user_id="2", symbol="BTCUSDT", interval="15m"),
            Subscription(user_id="3", symbol="DOGEUSDT", interval="1h", active=False),
        ]
        runner = SignalRunner(cfg, provider=FakeSource(), notifier=FakeNotifier())
        return runner.desired_pairs()

    assert asyncio.run(_run()) == {
        Pair("BTCUSDT", "15m"), Pair("BTCUSDT", "1h"),
        Pair("ETHUSDT", "15m"), Pair("ETHUSDT", "1h"),
        Pair("SOLUSDT", "5m"),
    }


def test_subscription_change_requests_reconcile():
    async def _run():
        runner = SignalRunner(_cfg(enabled=False), provider=FakeSource(), notifier=FakeNotifier())
        before = runner._reconcile_needed.is_set()
        runner.subscriptions.add(Subscription(user_id="9", symbol="adausdt", interval="15m"))
        return before, runner._reconcile_needed.is_set(), runner.desired_pairs()

    before, after, pairs = asyncio.run(_run())
    assert before is False
    assert after is True
    assert pairs == {Pair("ADAUSDT", "15m")}


def test_top_symbol_refresh_replaces_broadcast_list():
    async def _run():
        src = FakeSource()
        src.top_symbols = ["ETHUSDT", "BTCUSDT", "SOLUSDT"]
        runner = SignalRunner(_cfg(top_symbols=2), provider=src, notifier=FakeNotifier())
        await runner.refresh_top_symbols()
        return runner.broadcast_symbols, runner._reconcile_needed.is_set()

    symbols, requested = asyncio.run(_run())
    assert symbols == ["ETHUSDT", "BTCUSDT"]
    assert requested is True


class BrokenTickersSource(FakeSource):
    def __init__(self):
        super().__init__()
        self.top_calls = 0

    async def fetch_top_volume_symbols(self, top_n):
        self.top_calls += 1
        raise ValueError("Expecting value: line 1 column 1 (char 0)")


def test_top_symbol_loop_survives_unexpected_errors(monkeypatch):
    sleeps = []

    async def fake_sleep(delay):
        sleeps.append(delay)
        if len(sleeps) > 3:
            raise asyncio.CancelledError

    async def _run():
        src = BrokenTickersSource()
        runner = SignalRunner(_cfg(top_symbols=5), provider=src, notifier=FakeNotifier())
        monkeypatch.setattr(asyncio, "sleep", fake_sleep)
        try:
            await runner._top_symbols_loop()
        except asyncio.CancelledError:
            pass
        finally:
            monkeypatch.undo()
        return src, runner.broadcast_symbols

    src, symbols = asyncio.run(_run())
    assert src.top_calls == 3
    assert symbols == ["BTCUSDT"]


def test_unwatched_signal_expires_on_wall_clock():
    hour = 3_600_000

    async def _run():
        src = FakeSource({("ETHUSDT", "15m"): [candle(10, 99.0)]})
        runner = SignalRunner(_cfg(), provider=src, notifier=FakeNotifier())
        for sid, entry_ms in (("due", 0), ("fresh", 2 * hour)):
            await runner.store.save(Signal(
                id=sid, scope="@chan", symbol="ETHUSDT", interval="15m", side=LONG, entry_price=100.0,
                entry_time_ms=entry_ms, take_profit_percent=1.5, validity_hours=2,
            ))
        resolved = await runner.expire_unwatched(now_ms=3 * hour)
        return resolved, await runner.store.get("due"), await runner.store.get("fresh")

    resolved, due, fresh = asyncio.run(_run())
    assert resolved == 1
    assert due.status == FAILURE
    assert due.pnl_percent == -1.0
    assert due.closed_at_ms == 3 * 3_600_000
    assert fresh.status == "active"


def test_watched_pair_is_left_to_candle_evaluation():
    async def _run():
        src = FakeSource({("BTCUSDT", "15m"): [candle(t, 100.0 + t) for t in range(35)]})
        runner = SignalRunner(_cfg(), provider=src, notifier=FakeNotifier())
        await runner.reconcile()
        await runner.store.save(Signal(
            id="live", scope="@chan", symbol="BTCUSDT", interval="15m", side=LONG, entry_price=100.0,
            entry_time_ms=0, take_profit_percent=1.5, validity_hours=2,
        ))
        fetches_before = len(src.fetches)
        resolved = await runner.expire_unwatched(now_ms=10 * 3_600_000)
        await runner.streams.close()
        return resolved, len(src.fetches) - fetches_before

    assert asyncio.run(_run()) == (0, 0)
